from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from living_story.models import StoryChange


class LivingStoryError(RuntimeError):
    """Base error for consistency engine failures (fail fast, no silent fallback)."""

    code = "living_story_error"


class ChangeNotFound(LivingStoryError):
    code = "change_not_found"

    def __init__(self, change_id: str):
        super().__init__(f"change not found: {change_id}")
        self.change_id = change_id


class PhaseNotFound(LivingStoryError):
    code = "phase_not_found"

    def __init__(self, project_id: str, phase: int):
        super().__init__(f"phase {phase} has no content for project {project_id}")
        self.project_id = project_id
        self.phase = phase


class ChangeNotPending(LivingStoryError):
    """The change was already resolved; accept/reject apply at most once."""

    code = "change_not_pending"

    def __init__(self, change: "StoryChange"):
        super().__init__(f"change {change.id} is {change.status.value}, not pending")
        self.change = change


class StaleChange(LivingStoryError):
    """CAS mismatch: the live value no longer equals the recorded old_value.

    The change has already been persisted as rejected with resolution ``stale``
    when this is raised.
    """

    code = "stale_change"

    def __init__(self, change: "StoryChange"):
        super().__init__(f"change {change.id} is stale: {change.field} was modified")
        self.change = change


class NotApplied(LivingStoryError):
    code = "not_applied"

    def __init__(self, change: "StoryChange"):
        super().__init__(f"change {change.id} is {change.status.value}, only applied changes can be undone")
        self.change = change


class AnalysisUnavailable(LivingStoryError):
    """Generator call failed, timed out or returned unusable output."""

    code = "analysis_unavailable"

    def __init__(self, message: str, *, project_id: str, phase: int):
        super().__init__(message)
        self.project_id = project_id
        self.phase = phase


class ConcurrentWriteConflict(LivingStoryError):
    """Project lock still contended after one automatic retry."""

    code = "concurrent_write_conflict"
    retryable = True

    def __init__(self, project_id: str):
        super().__init__(f"project {project_id} is busy, retry later")
        self.project_id = project_id


class VersionConflict(LivingStoryError):
    code = "version_conflict"

    def __init__(self, project_id: str, phase: int, expected: int | None, actual: int | None):
        super().__init__(
            f"phase {phase} version mismatch for project {project_id}: "
            f"expected {expected}, found {actual}"
        )
        self.project_id = project_id
        self.phase = phase
        self.expected = expected
        self.actual = actual
