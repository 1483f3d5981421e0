from __future__ import annotations

from typing import Any, Iterable, Mapping, Protocol, Sequence

from living_story.models import ChangeRecord, ChangeStatus, PhaseRecord, StoryChange
from living_story.phases import Phase


class StoryStoragePort(Protocol):
    def get_phase(self, *, project_id: str, phase: Phase) -> PhaseRecord | None: ...

    def list_phases(self, *, project_id: str) -> list[PhaseRecord]: ...

    def write_phase(
        self,
        *,
        project_id: str,
        phase: Phase,
        value: Mapping[str, Any],
        expected_version: int | None,
        changes: Sequence[ChangeRecord] = (),
    ) -> PhaseRecord:
        """Write a phase value (version + 1) and upsert ``changes`` atomically.

        ``expected_version`` is the version the caller read (``None`` when the
        phase had no content); a mismatch raises ``VersionConflict``.
        """
        ...

    def insert_changes(self, records: Sequence[ChangeRecord]) -> list[ChangeRecord]:
        """Insert new records, assigning ``sequence``; returns the stored records."""
        ...

    def update_change(self, change: StoryChange) -> StoryChange: ...

    def get_change(self, *, change_id: str) -> ChangeRecord | None: ...

    def find_change(
        self,
        *,
        project_id: str,
        phase: Phase,
        field: str,
        source_phase: Phase,
        source_version: int,
    ) -> ChangeRecord | None: ...

    def list_changes(
        self,
        *,
        project_id: str,
        statuses: Iterable[ChangeStatus] | None = None,
    ) -> list[ChangeRecord]:
        """Records ordered by (timestamp, sequence) ascending."""
        ...
