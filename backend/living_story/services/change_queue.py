"""Pending-change state machine: enqueue / accept / reject / undo with CAS."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Sequence, TypeVar

from living_story.config import HISTORY_LIMIT
from living_story.errors import (
    ChangeNotFound,
    ChangeNotPending,
    ConcurrentWriteConflict,
    LivingStoryError,
    NotApplied,
    PhaseNotFound,
    StaleChange,
    VersionConflict,
)
from living_story.models import (
    RESOLUTION_STALE,
    RESOLUTION_USER,
    RESOLVED_STATUSES,
    ChangeRecord,
    ChangeStatus,
    ChangeType,
    PhaseDiff,
    PhaseRecord,
    ResolutionResult,
    StoryChange,
    UndoResult,
)
from living_story.phases import Phase, get_path, set_path, validate_phase_content
from living_story.services.change_detector import ChangeDetector
from living_story.services.dependency_matrix import DependencyMatrix
from living_story.services.impact_analyzer import ProposedChange
from living_story.services.project_locks import LockTimeout, ProjectLocks
from living_story.storage.ports import StoryStoragePort

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MISSING = object()


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_change_id() -> str:
    return uuid.uuid4().hex


@dataclass
class EnqueueResult:
    enqueued: list[StoryChange] = field(default_factory=list)
    duplicates: int = 0


@dataclass
class ManualCommit:
    record: PhaseRecord
    previous: PhaseRecord | None
    diff: PhaseDiff | None
    changes: list[StoryChange]


class ChangeQueue:
    """变更队列：所有写操作在项目锁内串行执行，并以版本号做存储层 CAS 兜底。"""

    def __init__(
        self,
        storage: StoryStoragePort,
        locks: ProjectLocks | None = None,
        *,
        detector: ChangeDetector | None = None,
        matrix: DependencyMatrix | None = None,
        history_limit: int | None = None,
        clock: Callable[[], datetime] = _utc_now,
        id_factory: Callable[[], str] = _new_change_id,
    ) -> None:
        self._storage = storage
        self._locks = locks or ProjectLocks()
        self._detector = detector or ChangeDetector()
        self._matrix = matrix or DependencyMatrix()
        self._history_limit = HISTORY_LIMIT if history_limit is None else history_limit
        self._clock = clock
        self._id_factory = id_factory

    @property
    def storage(self) -> StoryStoragePort:
        return self._storage

    async def _run_serialized(self, project_id: str, operation: Callable[[], T]) -> T:
        for attempt in (1, 2):
            try:
                async with self._locks.hold(project_id):
                    return operation()
            except (LockTimeout, VersionConflict) as exc:
                if attempt == 1:
                    logger.warning("write conflict on project %s, retrying: %s", project_id, exc)
                    continue
                raise ConcurrentWriteConflict(project_id) from exc
        raise AssertionError("unreachable")

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    def _require(self, change_id: str, project_id: str | None) -> ChangeRecord:
        record = self._storage.get_change(change_id=change_id)
        if record is None:
            raise ChangeNotFound(change_id)
        if project_id is not None and record.change.project_id != project_id:
            raise ChangeNotFound(change_id)
        return record

    def get(self, change_id: str, *, project_id: str | None = None) -> ChangeRecord:
        return self._require(change_id, project_id)

    def list_pending(self, project_id: str) -> list[ChangeRecord]:
        return self._storage.list_changes(project_id=project_id, statuses=[ChangeStatus.pending])

    def list_history(self, project_id: str, limit: int | None = None) -> list[StoryChange]:
        limit = self._history_limit if limit is None else limit
        if limit <= 0:
            raise ValueError("limit must be > 0")
        records = self._storage.list_changes(project_id=project_id, statuses=RESOLVED_STATUSES)
        return [record.change for record in reversed(records)][:limit]

    # ------------------------------------------------------------------
    # enqueue
    # ------------------------------------------------------------------

    async def enqueue(self, proposals: Sequence[ProposedChange]) -> EnqueueResult:
        if not proposals:
            return EnqueueResult()
        result = EnqueueResult()
        by_project: dict[str, list[ProposedChange]] = {}
        for proposal in proposals:
            by_project.setdefault(proposal.change.project_id, []).append(proposal)
        for project_id, items in by_project.items():
            partial = await self._run_serialized(project_id, lambda items=items: self._enqueue_locked(items))
            result.enqueued.extend(partial.enqueued)
            result.duplicates += partial.duplicates
        return result

    def _enqueue_locked(self, proposals: Sequence[ProposedChange]) -> EnqueueResult:
        result = EnqueueResult()
        fresh: list[ChangeRecord] = []
        seen: set[tuple[str, int, str, int, int]] = set()
        for proposal in proposals:
            change = proposal.change
            key = change.dedupe_key
            if key in seen or self._storage.find_change(
                project_id=change.project_id,
                phase=change.phase,
                field=change.field,
                source_phase=change.source_phase,
                source_version=change.source_version,
            ) is not None:
                result.duplicates += 1
                continue
            seen.add(key)
            pending = change.model_copy(update={"status": ChangeStatus.pending})
            fresh.append(ChangeRecord(change=pending, preview=proposal.preview))
        stored = self._storage.insert_changes(fresh)
        result.enqueued = [record.change for record in stored]
        if stored or result.duplicates:
            logger.info(
                "enqueued %d change(s), skipped %d duplicate(s)",
                len(stored),
                result.duplicates,
            )
        return result

    # ------------------------------------------------------------------
    # accept / reject
    # ------------------------------------------------------------------

    def _live_value(self, change: StoryChange, phase_record: PhaseRecord | None) -> Any:
        if phase_record is None:
            return _MISSING
        try:
            return get_path(change.phase, phase_record.value, change.field)
        except ValueError:
            return _MISSING

    def _accept_locked(self, change_id: str, project_id: str | None) -> StoryChange:
        change = self._require(change_id, project_id).change
        if change.status != ChangeStatus.pending:
            raise ChangeNotPending(change)
        phase_record = self._storage.get_phase(project_id=change.project_id, phase=change.phase)
        live = self._live_value(change, phase_record)
        if live is _MISSING or live != change.old_value:
            stale = change.model_copy(
                update={"status": ChangeStatus.rejected, "resolution": RESOLUTION_STALE}
            )
            self._storage.update_change(stale)
            logger.info("change %s auto-rejected: %s was modified", change.id, change.field)
            raise StaleChange(stale)
        value = set_path(change.phase, phase_record.value, change.field, change.new_value)
        applied = change.model_copy(
            update={"status": ChangeStatus.applied, "applied_at": self._clock()}
        )
        self._storage.write_phase(
            project_id=change.project_id,
            phase=change.phase,
            value=value,
            expected_version=phase_record.version,
            changes=[ChangeRecord(change=applied)],
        )
        return applied

    def _reject_locked(self, change_id: str, project_id: str | None) -> StoryChange:
        change = self._require(change_id, project_id).change
        if change.status == ChangeStatus.rejected:
            return change
        if change.status != ChangeStatus.pending:
            raise ChangeNotPending(change)
        rejected = change.model_copy(
            update={"status": ChangeStatus.rejected, "resolution": RESOLUTION_USER}
        )
        return self._storage.update_change(rejected)

    def _project_of(self, change_id: str, project_id: str | None) -> str:
        return self._require(change_id, project_id).change.project_id

    async def accept(self, change_id: str, *, project_id: str | None = None) -> StoryChange:
        owner = self._project_of(change_id, project_id)
        return await self._run_serialized(owner, lambda: self._accept_locked(change_id, owner))

    async def reject(self, change_id: str, *, project_id: str | None = None) -> StoryChange:
        owner = self._project_of(change_id, project_id)
        return await self._run_serialized(owner, lambda: self._reject_locked(change_id, owner))

    def _resolve_all_locked(
        self,
        project_id: str,
        resolve: Callable[[str, str | None], StoryChange],
    ) -> list[ResolutionResult]:
        results: list[ResolutionResult] = []
        for record in self.list_pending(project_id):
            change_id = record.change.id
            try:
                resolved = resolve(change_id, project_id)
            except StaleChange as exc:
                results.append(
                    ResolutionResult(
                        change_id=change_id,
                        status=exc.change.status,
                        resolution=exc.change.resolution,
                        error=exc.code,
                    )
                )
                continue
            except VersionConflict:
                raise
            except LivingStoryError as exc:
                current = self._storage.get_change(change_id=change_id)
                status = current.change.status if current is not None else record.change.status
                results.append(ResolutionResult(change_id=change_id, status=status, error=exc.code))
                continue
            except ValueError as exc:
                logger.warning("change %s could not be resolved: %s", change_id, exc)
                results.append(
                    ResolutionResult(change_id=change_id, status=record.change.status, error=str(exc))
                )
                continue
            results.append(
                ResolutionResult(
                    change_id=change_id,
                    status=resolved.status,
                    resolution=resolved.resolution,
                )
            )
        return results

    async def accept_all(self, project_id: str) -> list[ResolutionResult]:
        return await self._run_serialized(
            project_id, lambda: self._resolve_all_locked(project_id, self._accept_locked)
        )

    async def reject_all(self, project_id: str) -> list[ResolutionResult]:
        return await self._run_serialized(
            project_id, lambda: self._resolve_all_locked(project_id, self._reject_locked)
        )

    # ------------------------------------------------------------------
    # undo
    # ------------------------------------------------------------------

    def _undo_locked(self, change_id: str, project_id: str | None) -> UndoResult:
        change = self._require(change_id, project_id).change
        if change.status != ChangeStatus.applied:
            raise NotApplied(change)
        phase_record = self._storage.get_phase(project_id=change.project_id, phase=change.phase)
        if phase_record is None:
            raise PhaseNotFound(change.project_id, int(change.phase))
        live = self._live_value(change, phase_record)
        if live is _MISSING:
            live = None
        if live != change.new_value:
            # Last writer wins: the field moved on since apply, undo still restores old_value.
            logger.warning(
                "undo of %s overwrites %s, live value differs from applied value",
                change.id,
                change.field,
            )
        value = set_path(change.phase, phase_record.value, change.field, change.old_value)
        now = self._clock()
        reversal = StoryChange(
            id=self._id_factory(),
            project_id=change.project_id,
            phase=change.phase,
            type=ChangeType.auto_update,
            field=change.field,
            old_value=live,
            new_value=change.old_value,
            reason=f"Undo: {change.reason}",
            affected_phases=change.affected_phases,
            status=ChangeStatus.applied,
            timestamp=now,
            source_phase=change.phase,
            source_version=phase_record.version + 1,
            applied_at=now,
            reverts=change.id,
        )
        reverted = change.model_copy(
            update={"status": ChangeStatus.reverted, "reverted_by": reversal.id}
        )
        self._storage.write_phase(
            project_id=change.project_id,
            phase=change.phase,
            value=value,
            expected_version=phase_record.version,
            changes=[ChangeRecord(change=reverted), ChangeRecord(change=reversal)],
        )
        stored = self._storage.get_change(change_id=reversal.id)
        return UndoResult(change=reverted, reversal=stored.change if stored else reversal)

    async def undo(self, change_id: str, *, project_id: str | None = None) -> UndoResult:
        owner = self._project_of(change_id, project_id)
        return await self._run_serialized(owner, lambda: self._undo_locked(change_id, owner))

    # ------------------------------------------------------------------
    # manual edits
    # ------------------------------------------------------------------

    def _commit_locked(self, project_id: str, phase: Phase, value: dict[str, Any]) -> ManualCommit:
        previous = self._storage.get_phase(project_id=project_id, phase=phase)
        diff = self._detector.detect(phase, previous.value if previous else None, value)
        version = (previous.version if previous else 0) + 1
        now = self._clock()
        changes: list[StoryChange] = []
        if diff is not None:
            affected = self._matrix.downstream_of(phase)
            for path, delta in diff.fields.items():
                changes.append(
                    StoryChange(
                        id=self._id_factory(),
                        project_id=project_id,
                        phase=phase,
                        type=ChangeType.manual_edit,
                        field=path,
                        old_value=delta.before,
                        new_value=delta.after,
                        reason=f"Manual edit of {phase.label}: {path}",
                        affected_phases=affected,
                        status=ChangeStatus.applied,
                        timestamp=now,
                        source_phase=phase,
                        source_version=version,
                        applied_at=now,
                    )
                )
        record = self._storage.write_phase(
            project_id=project_id,
            phase=phase,
            value=value,
            expected_version=previous.version if previous else None,
            changes=[ChangeRecord(change=change) for change in changes],
        )
        stored = [self._storage.get_change(change_id=change.id) for change in changes]
        return ManualCommit(
            record=record,
            previous=previous,
            diff=diff,
            changes=[item.change for item in stored if item is not None],
        )

    async def commit_manual_edit(
        self,
        project_id: str,
        phase: Phase,
        value: Mapping[str, Any],
    ) -> ManualCommit:
        validated = validate_phase_content(phase, value)
        return await self._run_serialized(
            project_id, lambda: self._commit_locked(project_id, phase, validated)
        )
