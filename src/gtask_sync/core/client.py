from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Any

import requests

if TYPE_CHECKING:
    from ..config import Config

logger = logging.getLogger(__name__)

# Fields the service accepts on a task resource.
_TASK_FIELDS = ("title", "status", "notes", "due")


class TasksApiError(Exception):
    """A Tasks API request failed.

    Attributes:
        status: HTTP status code, or ``None`` for transport failures.
    """

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class TasksClient:
    def __init__(self, config: Config):
        self.config = config
        self._thread_local = threading.local()
        self.base_url = config.api_url.rstrip("/")

    @property
    def session(self) -> requests.Session:
        """Session of the calling thread."""
        return self._get_session()

    def _get_session(self) -> requests.Session:
        """Get or create a thread-local requests.Session."""
        if not hasattr(self._thread_local, "session"):
            self._thread_local.session = self._create_session()
        return self._thread_local.session

    def _create_session(self) -> requests.Session:
        session = requests.Session()
        session.headers["Authorization"] = f"Bearer {self.config.access_token}"
        session.headers["Accept"] = "application/json"
        return session

    def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
    ) -> Any:
        """
        Make a request against the Tasks API and decode the JSON reply.

        Raises:
            TasksApiError: On transport errors and non-2xx replies.
        """
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            response = self._get_session().request(
                method,
                url,
                params=params,
                json=body,
                timeout=(10, 60),
            )
        except requests.RequestException as e:
            raise TasksApiError(f"{method} {path} failed: {e}") from e

        if not response.ok:
            detail = response.text[:200]
            try:
                detail = response.json()["error"]["message"]
            except (ValueError, KeyError, TypeError):
                pass
            raise TasksApiError(
                f"{method} {path} returned {response.status_code}: {detail}",
                status=response.status_code,
            )

        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    def _paginate(self, path: str, params: dict[str, Any]) -> list[dict]:
        """Collect ``items`` from every page of a list endpoint."""
        items: list[dict] = []
        page_params = dict(params)
        while True:
            data = self._request("GET", path, params=page_params) or {}
            items.extend(data.get("items", []))
            token = data.get("nextPageToken")
            if not token:
                return items
            page_params = {**params, "pageToken": token}

    # ------------------------------------------------------------------
    # Task lists
    # ------------------------------------------------------------------

    def list_lists(self) -> list[dict]:
        """
        List every task list of the account.

        Returns:
            Task list resources (``id``, ``title``, ``updated``)
        """
        return self._paginate("users/@me/lists", {"maxResults": 100})

    def create_list(self, title: str) -> dict:
        """
        Create a task list.
        """
        return self._request("POST", "users/@me/lists", body={"title": title})

    def find_or_create_list(self, title: str) -> dict:
        """
        Return the task list named *title*, creating it if needed.
        """
        for task_list in self.list_lists():
            if task_list.get("title") == title:
                return task_list
        logger.info("Creating task list '%s'", title)
        return self.create_list(title)

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def list_tasks(self, list_id: str) -> list[dict]:
        """
        List all tasks of a list, completed and hidden ones included.

        Deleted tasks are dropped.
        """
        items = self._paginate(
            f"lists/{list_id}/tasks",
            {
                "maxResults": 100,
                "showCompleted": "true",
                "showHidden": "true",
                "showDeleted": "false",
            },
        )
        return [item for item in items if not item.get("deleted")]

    def create_task(
        self,
        list_id: str,
        body: dict[str, Any],
        parent_id: str | None = None,
    ) -> dict:
        """
        Create a task.

        Args:
            list_id: Task list to create the task in
            body: Task fields (title, status, notes, due)
            parent_id: Remote id of the parent task, for subtasks

        Returns:
            The created task resource, including ``id`` and ``updated``
        """
        payload = {k: v for k, v in body.items() if k in _TASK_FIELDS and v is not None}
        params = {"parent": parent_id} if parent_id else None
        return self._request(
            "POST", f"lists/{list_id}/tasks", params=params, body=payload
        )

    def update_task(
        self, list_id: str, task_id: str, fields: dict[str, Any]
    ) -> dict:
        """
        Patch a task.

        A ``None`` value for ``notes`` or ``due`` clears the field.
        Marking a task ``needsAction`` also clears its completion time.

        Returns:
            The updated task resource
        """
        payload = {k: v for k, v in fields.items() if k in _TASK_FIELDS}
        if payload.get("status") == "needsAction":
            payload["completed"] = None
        return self._request(
            "PATCH", f"lists/{list_id}/tasks/{task_id}", body=payload
        )

    def delete_task(self, list_id: str, task_id: str) -> None:
        """
        Delete a task.
        """
        self._request("DELETE", f"lists/{list_id}/tasks/{task_id}")
