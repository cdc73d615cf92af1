"""Shared pytest fixtures for gtask-sync tests."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest
from dotenv import load_dotenv

from gtask_sync.config import Config
from gtask_sync.core.client import TasksApiError
from gtask_sync.sync.timestamps import format_timestamp

load_dotenv()


class FakeTasksClient:
    """In-memory stand-in for ``TasksClient``.

    Lists and tasks are plain dicts shaped like API resources.  Every call
    is recorded in ``calls``.  ``fail_titles`` makes create/update of a
    task with that title raise; ``fail_deletes`` does the same for
    deletions by remote id.  Each write advances a fake clock by one
    second so ``updated`` timestamps are strictly increasing.
    """

    def __init__(self) -> None:
        self.lists: dict[str, str] = {}
        self.tasks: dict[str, dict[str, dict]] = {}
        self.calls: list[tuple] = []
        self.fail_titles: set[str] = set()
        self.fail_deletes: set[str] = set()
        self.fail_list_lists = False
        self._counter = 0
        self._clock = datetime(2025, 6, 1, tzinfo=timezone.utc)
        self._lock = threading.Lock()

    # -- setup helpers -------------------------------------------------

    def _next(self) -> int:
        with self._lock:
            self._counter += 1
            return self._counter

    def tick(self) -> str:
        """Advance the fake clock and return the new RFC 3339 stamp."""
        with self._lock:
            self._clock += timedelta(seconds=1)
            return format_timestamp(self._clock)

    def add_list(self, title: str) -> str:
        list_id = f"list{self._next()}"
        self.lists[list_id] = title
        self.tasks[list_id] = {}
        return list_id

    def add_task(
        self,
        list_id: str,
        title: str,
        status: str = "needsAction",
        notes: str | None = None,
        due: str | None = None,
        parent: str | None = None,
        updated: str | None = None,
    ) -> str:
        number = self._next()
        task_id = f"task{number}"
        resource = {
            "id": task_id,
            "title": title,
            "status": status,
            "position": f"{number:020d}",
            "updated": updated or self.tick(),
        }
        if notes:
            resource["notes"] = notes
        if due:
            resource["due"] = due
        if parent:
            resource["parent"] = parent
        self.tasks[list_id][task_id] = resource
        return task_id

    def find(self, list_id: str, title: str) -> dict | None:
        for task in self.tasks.get(list_id, {}).values():
            if task["title"] == title:
                return task
        return None

    def list_id_for(self, title: str) -> str | None:
        for list_id, name in self.lists.items():
            if name == title:
                return list_id
        return None

    # -- TasksClient surface -------------------------------------------

    def list_lists(self) -> list[dict]:
        self.calls.append(("list_lists",))
        if self.fail_list_lists:
            raise TasksApiError("GET users/@me/lists returned 503", status=503)
        return [{"id": i, "title": t} for i, t in self.lists.items()]

    def find_or_create_list(self, title: str) -> dict:
        self.calls.append(("find_or_create_list", title))
        list_id = self.list_id_for(title) or self.add_list(title)
        return {"id": list_id, "title": title}

    def list_tasks(self, list_id: str) -> list[dict]:
        self.calls.append(("list_tasks", list_id))
        return [dict(task) for task in self.tasks.get(list_id, {}).values()]

    def create_task(
        self, list_id: str, body: dict, parent_id: str | None = None
    ) -> dict:
        self.calls.append(("create_task", list_id, body.get("title"), parent_id))
        if body.get("title") in self.fail_titles:
            raise TasksApiError("POST tasks returned 500: backend error", status=500)
        if list_id not in self.tasks:
            raise TasksApiError("POST tasks returned 404: list not found", status=404)
        task_id = self.add_task(
            list_id,
            body["title"],
            status=body.get("status") or "needsAction",
            notes=body.get("notes"),
            due=body.get("due"),
            parent=parent_id,
        )
        return dict(self.tasks[list_id][task_id])

    def update_task(self, list_id: str, task_id: str, fields: dict) -> dict:
        self.calls.append(("update_task", list_id, task_id))
        if fields.get("title") in self.fail_titles:
            raise TasksApiError("PATCH task returned 500: backend error", status=500)
        task = self.tasks.get(list_id, {}).get(task_id)
        if task is None:
            raise TasksApiError("PATCH task returned 404: not found", status=404)
        for key, value in fields.items():
            if value is None:
                task.pop(key, None)
            else:
                task[key] = value
        task["updated"] = self.tick()
        return dict(task)

    def delete_task(self, list_id: str, task_id: str) -> None:
        self.calls.append(("delete_task", list_id, task_id))
        if task_id in self.fail_deletes:
            raise TasksApiError("DELETE task returned 503", status=503)
        tasks = self.tasks.get(list_id, {})
        tasks.pop(task_id, None)
        for child_id in [k for k, v in tasks.items() if v.get("parent") == task_id]:
            tasks.pop(child_id)


@pytest.fixture(autouse=True)
def _reset_semaphore(monkeypatch):
    """Start every test without a semaphore bound to an old event loop."""
    import gtask_sync.core.async_utils as mod

    monkeypatch.setattr(mod, "_semaphore", None)


@pytest.fixture
def mock_config(tmp_path):
    """Create a Config pointing at a scratch Markdown dir and mapping file."""
    notes = tmp_path / "notes"
    notes.mkdir()
    return Config(
        access_token="test-token",
        markdown_dir=str(notes),
        mapping_file=str(tmp_path / "state" / "mappings.json"),
    )


@pytest.fixture
def fake_client():
    """A fresh in-memory Tasks service."""
    return FakeTasksClient()
