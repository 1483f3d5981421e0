"""Per-project single-writer serialization."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

from living_story.config import LOCK_TIMEOUT_SECONDS


class LockTimeout(RuntimeError):
    def __init__(self, project_id: str, timeout_seconds: float):
        super().__init__(f"project {project_id} lock not acquired within {timeout_seconds}s")
        self.project_id = project_id


class ProjectLocks:
    def __init__(self, timeout_seconds: float | None = None) -> None:
        self._timeout_seconds = LOCK_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds
        self._locks: dict[str, asyncio.Lock] = {}
        # holders + waiters per project; the lock is dropped when it reaches zero
        self._users: dict[str, int] = {}

    def lock_for(self, project_id: str) -> asyncio.Lock:
        lock = self._locks.get(project_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[project_id] = lock
        return lock

    def __len__(self) -> int:
        return len(self._locks)

    def _leave(self, project_id: str) -> None:
        remaining = self._users[project_id] - 1
        if remaining:
            self._users[project_id] = remaining
            return
        del self._users[project_id]
        self._locks.pop(project_id, None)

    @asynccontextmanager
    async def hold(self, project_id: str) -> AsyncIterator[None]:
        lock = self.lock_for(project_id)
        self._users[project_id] = self._users.get(project_id, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self._timeout_seconds)
            except asyncio.TimeoutError as exc:
                raise LockTimeout(project_id, self._timeout_seconds) from exc
            try:
                yield
            finally:
                lock.release()
        finally:
            self._leave(project_id)
