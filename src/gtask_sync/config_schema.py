"""Typed schema for the YAML configuration of gtask_sync.

A config file has three sections, all optional::

    tasks:
      access_token: ${GTASK_ACCESS_TOKEN}
      max_parallel_requests: 4
    sync:
      markdown_dir: ~/notes/tasks
      keep_completed: true
      conflict_strategy: timestamp
      match_strategies: [title, position]
    logging:
      level: INFO
      file: null

Usage:
    from gtask_sync.config_schema import load_unified_config, resolve_config

    unified = load_unified_config()
    config = resolve_config(unified, access_token="...")
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from .config import Config

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Section models
# ---------------------------------------------------------------------------


class TasksApiConfig(BaseModel):
    """Tasks API connection settings.

    All fields are optional: env vars and explicit arguments can supply
    them at runtime instead.
    """

    access_token: str | None = Field(
        default=None, description="OAuth access token"
    )
    api_url: str | None = Field(default=None, description="API base URL")
    max_parallel_requests: int = Field(
        default=4,
        ge=1,
        le=100,
        description="Maximum concurrent API requests (1-100)",
    )

    model_config = {"frozen": True}


class SyncConfig(BaseModel):
    """Sync behaviour settings."""

    markdown_dir: str | None = Field(
        default=None, description="Directory scanned for Markdown files"
    )
    mapping_file: str | None = Field(
        default=None, description="Identity mapping file"
    )
    keep_completed: bool = Field(
        default=True,
        description="Keep completed tasks locally after remote deletion",
    )
    conflict_strategy: str = Field(
        default="timestamp",
        description="timestamp, local-wins or remote-wins",
    )
    match_strategies: list[str] = Field(
        default_factory=lambda: ["title", "position"],
        description="Fallback identity matchers, in order",
    )
    debug: bool = Field(default=False, description="Enable debug mode")

    model_config = {"frozen": True}


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        file: Optional log file path.
    """

    level: str = Field(default="INFO", description="Log level")
    file: str | None = Field(default=None, description="Log file path")

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Top-level unified config
# ---------------------------------------------------------------------------


class UnifiedConfig(BaseModel):
    """Top-level configuration.

    Every section has defaults, so ``UnifiedConfig()`` is always valid.
    """

    tasks: TasksApiConfig = Field(default_factory=TasksApiConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"frozen": True}


def build_config(raw_data: dict) -> UnifiedConfig:
    """Construct a ``UnifiedConfig`` from the raw dict returned by
    ``load_hierarchical_config()``.

    Missing sections get defaults.

    Args:
        raw_data: Merged configuration dictionary.

    Returns:
        Validated ``UnifiedConfig`` instance.
    """
    if not raw_data:
        return UnifiedConfig()

    return UnifiedConfig(**raw_data)


def to_fallbacks(unified: UnifiedConfig) -> dict[str, Any]:
    """Flatten the ``tasks`` and ``sync`` sections for ``load_config()``.

    Unset optional values are left out so they do not shadow defaults.
    """
    flat: dict[str, Any] = {}
    flat.update(unified.tasks.model_dump(exclude_none=True))
    flat.update(unified.sync.model_dump(exclude_none=True))
    return flat


def load_unified_config() -> UnifiedConfig:
    """Load ``.env``, then discover and validate the YAML files.

    The nearest ``.env`` at or above the working directory is loaded
    first, so ``${VAR}`` interpolation in the YAML can use its values.
    Variables already set in the environment win over it.
    """
    from .config_loader import load_hierarchical_config

    load_dotenv(find_dotenv(usecwd=True))
    return build_config(load_hierarchical_config())


def resolve_config(
    unified: UnifiedConfig | None = None, **overrides: Any
) -> Config:
    """Apply env vars and *overrides* on top of the YAML configuration.

    Args:
        unified: Already loaded configuration; ``load_unified_config()``
            is called when omitted.
        **overrides: Passed to ``load_config()``.

    Raises:
        ValueError: If the resulting configuration is invalid.
    """
    from .config import load_config

    if unified is None:
        unified = load_unified_config()
    return load_config(yaml_fallbacks=to_fallbacks(unified), **overrides)
