from __future__ import annotations

import threading

from unblock.errors import NotFound
from unblock.schemas import Task, TaskStatus


class TaskStore:
    """Current snapshot per task id. Snapshots are immutable models."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tasks: dict[str, Task] = {}

    def upsert(self, task: Task) -> None:
        with self._lock:
            self._tasks[task.id] = task

    def get(self, task_id: str) -> Task | None:
        with self._lock:
            return self._tasks.get(task_id)

    def must_get(self, task_id: str) -> Task:
        task = self.get(task_id)
        if task is None:
            raise NotFound("task", task_id)
        return task

    def list(self, status: TaskStatus | str | None = None) -> list[Task]:
        """Newest first, optionally filtered by status."""
        with self._lock:
            tasks = list(self._tasks.values())
        if status is not None:
            wanted = TaskStatus(status)
            tasks = [t for t in tasks if t.status == wanted]
        return sorted(tasks, key=lambda t: t.created_at_ms, reverse=True)

    def lineage(self, task_id: str) -> list[Task]:
        """Follow ``previous_task_id`` links back to the first attempt (oldest first)."""
        chain: list[Task] = []
        cur = self.get(task_id)
        seen: set[str] = set()
        while cur is not None and cur.id not in seen:
            seen.add(cur.id)
            chain.append(cur)
            cur = self.get(cur.previous_task_id) if cur.previous_task_id else None
        return list(reversed(chain))

    def __len__(self) -> int:
        with self._lock:
            return len(self._tasks)
