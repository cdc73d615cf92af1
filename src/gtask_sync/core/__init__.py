"""Tasks API client and async helpers shared by the sync engine."""

from .async_utils import run_sync, run_sync_limited
from .client import TasksApiError, TasksClient

__all__ = ["TasksApiError", "TasksClient", "run_sync", "run_sync_limited"]
