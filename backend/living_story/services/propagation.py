"""Commit -> detect -> analyze -> enqueue orchestration."""

from __future__ import annotations

import logging
from typing import Any, Mapping

from living_story.errors import AnalysisUnavailable, ConcurrentWriteConflict, NotApplied
from living_story.models import (
    ChangeStatus,
    ChangeType,
    FieldDelta,
    PhaseCommitView,
    PhaseDiff,
    PropagationView,
)
from living_story.phases import Phase
from living_story.services.change_queue import ChangeQueue
from living_story.services.impact_analyzer import ImpactAnalyzer

logger = logging.getLogger(__name__)


class PropagationPipeline:
    """提交阶段内容后触发下游影响分析；分析失败不回滚已提交内容。"""

    def __init__(self, queue: ChangeQueue, analyzer: ImpactAnalyzer) -> None:
        self._queue = queue
        self._analyzer = analyzer

    async def _propagate(
        self,
        project_id: str,
        phase: Phase,
        diff: PhaseDiff | None,
        *,
        source_version: int,
        source_content: Mapping[str, Any],
    ) -> PropagationView:
        if diff is None:
            return PropagationView(status="none")
        try:
            proposals = await self._analyzer.analyze(
                project_id,
                phase,
                diff,
                source_version=source_version,
                source_content=source_content,
            )
        except AnalysisUnavailable as exc:
            logger.warning(
                "analysis unavailable for project %s phase %d: %s",
                project_id,
                int(phase),
                exc,
            )
            return PropagationView(status="unavailable", detail=str(exc))
        if not proposals:
            return PropagationView(status="none")
        try:
            result = await self._queue.enqueue(proposals)
        except ConcurrentWriteConflict as exc:
            # The commit already landed; proposals can be recovered via repropagate.
            logger.warning(
                "enqueue skipped for project %s phase %d: %s", project_id, int(phase), exc
            )
            return PropagationView(status="unavailable", detail=str(exc))
        return PropagationView(
            status="queued" if result.enqueued else "none",
            enqueued=result.enqueued,
            duplicates=result.duplicates,
        )

    async def commit_phase(
        self,
        project_id: str,
        phase: Phase,
        value: Mapping[str, Any],
    ) -> PhaseCommitView:
        commit = await self._queue.commit_manual_edit(project_id, phase, value)
        propagation = await self._propagate(
            project_id,
            phase,
            commit.diff,
            source_version=commit.record.version,
            source_content=commit.record.value,
        )
        return PhaseCommitView(
            phase=commit.record,
            manual_changes=commit.changes,
            propagation=propagation,
        )

    async def repropagate(self, project_id: str, change_id: str) -> PropagationView:
        change = self._queue.get(change_id, project_id=project_id).change
        if change.type != ChangeType.manual_edit:
            raise ValueError("only manual edits can be re-propagated")
        if change.status != ChangeStatus.applied:
            raise NotApplied(change)
        event = [
            record.change
            for record in self._queue.storage.list_changes(project_id=project_id)
            if record.change.type == ChangeType.manual_edit
            and record.change.source_phase == change.source_phase
            and record.change.source_version == change.source_version
            and record.change.status == ChangeStatus.applied
        ]
        diff = PhaseDiff(
            phase=change.phase,
            fields={
                item.field: FieldDelta(before=item.old_value, after=item.new_value)
                for item in event
            },
        )
        source = self._queue.storage.get_phase(project_id=project_id, phase=change.phase)
        return await self._propagate(
            project_id,
            change.phase,
            diff,
            source_version=change.source_version,
            source_content=source.value if source is not None else {},
        )
