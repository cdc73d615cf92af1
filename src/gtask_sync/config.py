"""Configuration for the Markdown / Google Tasks sync engine.

Reads API credentials and sync settings from explicit arguments,
environment variables, .env files, and YAML config file fallbacks.

Precedence (highest to lowest):
    Explicit args > Environment variables > .env file > YAML config > Built-in defaults

Environment variables:
    GTASK_ACCESS_TOKEN: OAuth access token for the Tasks API (required)
    GTASK_API_URL: Tasks API base URL (optional)
    GTASK_MARKDOWN_DIR: Directory scanned for Markdown task files (optional, default: .)
    GTASK_MAPPING_FILE: Location of the identity mapping file (optional)
    GTASK_KEEP_COMPLETED: Keep completed tasks deleted remotely (optional, default: true)
    GTASK_MAX_PARALLEL_REQUESTS: Max parallel API requests (optional, default: 4)
    GTASK_CONFLICT_STRATEGY: timestamp, local-wins or remote-wins (optional, default: timestamp)
"""

import logging
import os
from dataclasses import dataclass, field
from urllib.parse import urlparse

from .sync.matcher import VALID_MATCH_STRATEGIES
from .sync.resolver import VALID_STRATEGIES

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://tasks.googleapis.com/tasks/v1"
DEFAULT_MAPPING_FILE = "~/.local/share/gtask/mappings.json"


@dataclass
class Config:
    access_token: str
    api_url: str = DEFAULT_API_URL
    markdown_dir: str = "."
    mapping_file: str = DEFAULT_MAPPING_FILE
    keep_completed: bool = True
    max_parallel_requests: int = 4
    conflict_strategy: str = "timestamp"
    match_strategies: list[str] = field(
        default_factory=lambda: ["title", "position"]
    )
    debug: bool = False


def validate_config(config: Config) -> None:
    """Validate configuration values and raise ValueError if invalid.

    Args:
        config: Config instance to validate.

    Raises:
        ValueError: If the URL, token or a strategy name is invalid.
    """
    config.api_url = config.api_url.strip()

    if not config.api_url.startswith(("http://", "https://")):
        raise ValueError(
            f"Invalid API URL '{config.api_url}': must start with http:// or https://"
        )

    parsed = urlparse(config.api_url)
    if not parsed.hostname:
        raise ValueError(
            f"Invalid API URL '{config.api_url}': URL must include a hostname"
        )

    config.api_url = config.api_url.removesuffix("/")

    if not config.access_token.strip():
        raise ValueError(
            "Access token cannot be empty. Set GTASK_ACCESS_TOKEN environment variable."
        )

    if config.conflict_strategy not in VALID_STRATEGIES:
        raise ValueError(
            f"Invalid conflict strategy '{config.conflict_strategy}': must be one of {list(VALID_STRATEGIES)}"
        )

    for name in config.match_strategies:
        if name not in VALID_MATCH_STRATEGIES:
            raise ValueError(
                f"Invalid match strategy '{name}': must be one of {list(VALID_MATCH_STRATEGIES)}"
            )

    if config.api_url.startswith("http://"):
        logger.warning(
            "WARNING: API URL is not HTTPS; the access token is sent in clear text."
        )


def load_config(
    access_token: str | None = None,
    api_url: str | None = None,
    markdown_dir: str | None = None,
    mapping_file: str | None = None,
    debug: bool = False,
    yaml_fallbacks: dict | None = None,
) -> Config:
    """Load configuration with unified precedence.

    Resolution order for each field (highest to lowest):
        explicit arg > env var / .env > yaml_fallbacks > built-in default

    .env values are read through ``os.getenv()``, so ``load_dotenv()`` must
    have run first; ``config_schema.resolve_config()`` takes care of that.

    Args:
        access_token: Override access token.
        api_url: Override API base URL.
        markdown_dir: Override Markdown directory.
        mapping_file: Override mapping file location.
        debug: Enable debug logging.
        yaml_fallbacks: Flat dict of values from the YAML ``tasks`` and
            ``sync`` sections.  Used as fallback when arg and env var are
            both unset.

    Returns:
        Validated Config instance.

    Raises:
        ValueError: If the access token is missing after checking all
            sources, or a value is out of range.
    """
    fb = yaml_fallbacks or {}

    # --- String fields: arg > env > YAML > default ---

    token = access_token or os.getenv("GTASK_ACCESS_TOKEN") or fb.get("access_token")
    if not token:
        raise ValueError(
            "Access token not found. Set GTASK_ACCESS_TOKEN environment variable, "
            "pass access_token, or add 'access_token' to config.yml."
        )

    final_api_url = (
        api_url or os.getenv("GTASK_API_URL") or fb.get("api_url") or DEFAULT_API_URL
    )
    final_markdown_dir = (
        markdown_dir or os.getenv("GTASK_MARKDOWN_DIR") or fb.get("markdown_dir") or "."
    )
    final_mapping_file = (
        mapping_file
        or os.getenv("GTASK_MAPPING_FILE")
        or fb.get("mapping_file")
        or DEFAULT_MAPPING_FILE
    )
    final_strategy = (
        os.getenv("GTASK_CONFLICT_STRATEGY")
        or fb.get("conflict_strategy")
        or "timestamp"
    )

    # --- Boolean fields: arg > env > YAML > default ---

    def get_bool_env(key: str) -> bool | None:
        """Return True/False from env var, or None if unset."""
        val = os.getenv(key)
        if val is None:
            return None
        return val.lower() in ("true", "1", "yes", "on")

    env_keep = get_bool_env("GTASK_KEEP_COMPLETED")
    if env_keep is not None:
        final_keep = env_keep
    else:
        final_keep = bool(fb.get("keep_completed", True))

    if debug:
        final_debug = True
    else:
        env_debug = get_bool_env("GTASK_DEBUG")
        if env_debug is not None:
            final_debug = env_debug
        else:
            final_debug = bool(fb.get("debug", False))

    # --- Numeric fields: env > YAML > default ---

    max_parallel_raw = os.getenv("GTASK_MAX_PARALLEL_REQUESTS")
    if max_parallel_raw is not None:
        try:
            final_max_parallel = int(max_parallel_raw)
        except ValueError:
            raise ValueError(
                f"Invalid GTASK_MAX_PARALLEL_REQUESTS '{max_parallel_raw}': must be a number between 1 and 100"
            ) from None
        if not (1 <= final_max_parallel <= 100):
            raise ValueError(
                f"Invalid GTASK_MAX_PARALLEL_REQUESTS '{max_parallel_raw}': must be a number between 1 and 100"
            )
    elif "max_parallel_requests" in fb:
        final_max_parallel = int(fb["max_parallel_requests"])
    else:
        final_max_parallel = 4

    match_strategies = list(fb.get("match_strategies", ["title", "position"]))

    config = Config(
        access_token=token.strip(),
        api_url=final_api_url,
        markdown_dir=os.path.expanduser(final_markdown_dir),
        mapping_file=os.path.expanduser(final_mapping_file),
        keep_completed=final_keep,
        max_parallel_requests=final_max_parallel,
        conflict_strategy=final_strategy,
        match_strategies=match_strategies,
        debug=final_debug,
    )

    validate_config(config)

    return config
