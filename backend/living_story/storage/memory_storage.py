"""In-process storage adapter; every read and write runs under one lock."""

from __future__ import annotations

import copy
import itertools
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping, Sequence

from living_story.errors import ChangeNotFound, VersionConflict
from living_story.models import ChangeRecord, ChangeStatus, PhaseRecord, StoryChange
from living_story.phases import Phase


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryStoryStorage:
    def __init__(self, clock: Callable[[], datetime] = _utc_now) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._phases: dict[tuple[str, Phase], PhaseRecord] = {}
        self._changes: dict[str, ChangeRecord] = {}
        self._by_project: dict[str, list[str]] = {}
        self._sequence = itertools.count(1)

    def get_phase(self, *, project_id: str, phase: Phase) -> PhaseRecord | None:
        with self._lock:
            record = self._phases.get((project_id, phase))
            return record.model_copy(deep=True) if record is not None else None

    def list_phases(self, *, project_id: str) -> list[PhaseRecord]:
        with self._lock:
            records = [
                record.model_copy(deep=True)
                for (owner, _), record in self._phases.items()
                if owner == project_id
            ]
        return sorted(records, key=lambda record: record.phase)

    def write_phase(
        self,
        *,
        project_id: str,
        phase: Phase,
        value: Mapping[str, Any],
        expected_version: int | None,
        changes: Sequence[ChangeRecord] = (),
    ) -> PhaseRecord:
        with self._lock:
            current = self._phases.get((project_id, phase))
            actual = current.version if current is not None else None
            if actual != expected_version:
                raise VersionConflict(project_id, phase, expected_version, actual)
            record = PhaseRecord(
                project_id=project_id,
                phase=phase,
                value=copy.deepcopy(dict(value)),
                version=(actual or 0) + 1,
                updated_at=self._clock(),
            )
            self._phases[(project_id, phase)] = record
            for change_record in changes:
                self._upsert_locked(change_record)
            return record.model_copy(deep=True)

    def _upsert_locked(self, record: ChangeRecord) -> ChangeRecord:
        change = record.change
        existing = self._changes.get(change.id)
        if existing is None:
            if change.sequence == 0:
                change = change.model_copy(update={"sequence": next(self._sequence)})
            self._by_project.setdefault(change.project_id, []).append(change.id)
            stored = ChangeRecord(change=change, preview=record.preview)
        else:
            stored = ChangeRecord(change=change, preview=record.preview or existing.preview)
        self._changes[change.id] = stored
        return stored

    def insert_changes(self, records: Sequence[ChangeRecord]) -> list[ChangeRecord]:
        with self._lock:
            for record in records:
                if record.change.id in self._changes:
                    raise ValueError(f"change already exists: {record.change.id}")
            return [self._upsert_locked(record) for record in records]

    def update_change(self, change: StoryChange) -> StoryChange:
        with self._lock:
            existing = self._changes.get(change.id)
            if existing is None:
                raise ChangeNotFound(change.id)
            self._changes[change.id] = ChangeRecord(change=change, preview=existing.preview)
            return change

    def get_change(self, *, change_id: str) -> ChangeRecord | None:
        with self._lock:
            return self._changes.get(change_id)

    def find_change(
        self,
        *,
        project_id: str,
        phase: Phase,
        field: str,
        source_phase: Phase,
        source_version: int,
    ) -> ChangeRecord | None:
        key = (project_id, int(phase), field, int(source_phase), source_version)
        with self._lock:
            for change_id in self._by_project.get(project_id, []):
                record = self._changes[change_id]
                if record.change.dedupe_key == key:
                    return record
        return None

    def list_changes(
        self,
        *,
        project_id: str,
        statuses: Iterable[ChangeStatus] | None = None,
    ) -> list[ChangeRecord]:
        wanted = set(statuses) if statuses is not None else None
        with self._lock:
            records = [
                self._changes[change_id]
                for change_id in self._by_project.get(project_id, [])
            ]
        if wanted is not None:
            records = [record for record in records if record.change.status in wanted]
        return sorted(
            records,
            key=lambda record: (record.change.timestamp, record.change.sequence),
        )
