"""Polling-based notification surface; holds no state of its own."""

from __future__ import annotations

from living_story.config import POLL_INTERVAL_SECONDS, SUMMARY_PREVIEW_LIMIT
from living_story.models import ChangeSummaryView, ResolutionResult, StoryChange
from living_story.services.change_queue import ChangeQueue

RECENT_CHANGES_WINDOW = 10


class NotificationSurface:
    def __init__(
        self,
        queue: ChangeQueue,
        *,
        preview_limit: int | None = None,
        poll_interval_seconds: float | None = None,
    ) -> None:
        self._queue = queue
        self._preview_limit = SUMMARY_PREVIEW_LIMIT if preview_limit is None else preview_limit
        self._poll_interval_seconds = (
            POLL_INTERVAL_SECONDS if poll_interval_seconds is None else poll_interval_seconds
        )

    def summary(self, project_id: str) -> ChangeSummaryView:
        pending = self._queue.list_pending(project_id)
        recent = self._queue.list_history(project_id, limit=RECENT_CHANGES_WINDOW)
        timestamps = [record.change.timestamp for record in pending]
        timestamps.extend(change.timestamp for change in recent)
        return ChangeSummaryView(
            project_id=project_id,
            pending_count=len(pending),
            recent_changes_count=len(recent),
            last_change=max(timestamps) if timestamps else None,
            previews=[
                record.preview
                for record in pending[: self._preview_limit]
                if record.preview is not None
            ],
            poll_interval_seconds=self._poll_interval_seconds,
        )

    async def accept(self, project_id: str, change_id: str) -> StoryChange:
        return await self._queue.accept(change_id, project_id=project_id)

    async def reject(self, project_id: str, change_id: str) -> StoryChange:
        return await self._queue.reject(change_id, project_id=project_id)

    async def accept_all(self, project_id: str) -> list[ResolutionResult]:
        return await self._queue.accept_all(project_id)

    async def reject_all(self, project_id: str) -> list[ResolutionResult]:
        return await self._queue.reject_all(project_id)
