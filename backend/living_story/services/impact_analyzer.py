"""Downstream impact analysis: upstream diff -> pending StoryChange proposals."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Protocol, Sequence

from living_story.config import (
    ANALYSIS_TIMEOUT_SECONDS,
    RISK_HIGH_FIELD_COUNT,
    RISK_MEDIUM_FIELD_COUNT,
)
from living_story.errors import AnalysisUnavailable
from living_story.models import (
    ChangePreview,
    ChangeType,
    FieldChangePreview,
    ImpactRequest,
    PhaseDiff,
    PhaseImpact,
    ProposedEdit,
    StoryChange,
)
from living_story.phases import Phase, field_spec, get_path, set_path, top_level_field
from living_story.services.dependency_matrix import DependencyMatrix, PhaseDependency
from living_story.storage.ports import StoryStoragePort
from living_story.utils.phase_graph import build_impact_reason, calculate_risk_level

logger = logging.getLogger(__name__)


class ContentGenerator(Protocol):
    async def propose_edits(self, request: ImpactRequest) -> list[ProposedEdit]: ...


@dataclass(frozen=True)
class RiskPolicy:
    high_field_count: int = RISK_HIGH_FIELD_COUNT
    medium_field_count: int = RISK_MEDIUM_FIELD_COUNT

    def __post_init__(self) -> None:
        if self.medium_field_count > self.high_field_count:
            raise ValueError("medium_field_count must be <= high_field_count")

    def level(self, fields: Sequence[str], *, structural: bool) -> str:
        return calculate_risk_level(
            len(fields),
            structural=structural,
            high_count=self.high_field_count,
            medium_count=self.medium_field_count,
        )


@dataclass(frozen=True)
class ProposedChange:
    change: StoryChange
    preview: ChangePreview


@dataclass(frozen=True)
class _Target:
    dependency: PhaseDependency
    content: dict[str, Any]


@dataclass(frozen=True)
class _ValidatedEdit:
    edit: ProposedEdit
    old_value: Any
    structural: bool


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_change_id() -> str:
    return uuid.uuid4().hex


class ImpactAnalyzer:
    """对一次上游修改调用生成器，产出逐字段的待审阅变更。

    All generator calls for one detection event run concurrently under a single
    timeout. Any failure, timeout or invalid edit fails the whole event with
    ``AnalysisUnavailable``; partial results are never returned.
    """

    def __init__(
        self,
        storage: StoryStoragePort,
        generator: ContentGenerator,
        *,
        matrix: DependencyMatrix | None = None,
        risk_policy: RiskPolicy | None = None,
        timeout_seconds: float | None = None,
        clock: Callable[[], datetime] = _utc_now,
        id_factory: Callable[[], str] = _new_change_id,
    ) -> None:
        self._storage = storage
        self._generator = generator
        self._matrix = matrix or DependencyMatrix()
        self._risk_policy = risk_policy or RiskPolicy()
        self._timeout_seconds = ANALYSIS_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds
        self._clock = clock
        self._id_factory = id_factory

    @property
    def matrix(self) -> DependencyMatrix:
        return self._matrix

    def _collect_targets(self, project_id: str, diff: PhaseDiff) -> list[_Target]:
        targets: list[_Target] = []
        for dependency in self._matrix.dependencies_for(diff.phase, diff.changed_fields):
            record = self._storage.get_phase(project_id=project_id, phase=dependency.target_phase)
            if record is None:
                continue
            targets.append(_Target(dependency=dependency, content=record.value))
        return targets

    @staticmethod
    def _build_request(
        project_id: str,
        diff: PhaseDiff,
        source_content: Mapping[str, Any],
        target: _Target,
    ) -> ImpactRequest:
        dependency = target.dependency
        relevant = {
            path: delta
            for path, delta in diff.fields.items()
            if top_level_field(path) in dependency.fields
        }
        return ImpactRequest(
            project_id=project_id,
            source_phase=dependency.source_phase,
            target_phase=dependency.target_phase,
            diff=relevant,
            source_content=dict(source_content),
            target_content=target.content,
            update_type=dependency.update_type,
            priority=dependency.priority,
            dependency_fields=list(dependency.fields),
        )

    @staticmethod
    def _validate_edits(
        phase: Phase,
        content: Mapping[str, Any],
        edits: Sequence[ProposedEdit],
    ) -> list[_ValidatedEdit]:
        validated: list[_ValidatedEdit] = []
        seen: set[str] = set()
        for edit in edits:
            if not 0.0 <= edit.confidence <= 1.0:
                raise ValueError(f"confidence out of range for {edit.field!r}: {edit.confidence}")
            spec = field_spec(phase, edit.field)
            current = get_path(phase, content, edit.field)
            set_path(phase, content, edit.field, edit.new_value)
            if edit.new_value == current or edit.field in seen:
                continue
            seen.add(edit.field)
            validated.append(
                _ValidatedEdit(
                    edit=edit,
                    old_value=current,
                    structural=spec.structural or edit.structural,
                )
            )
        return validated

    async def _call_generator(self, requests: Sequence[ImpactRequest]) -> list[list[ProposedEdit]]:
        return list(
            await asyncio.wait_for(
                asyncio.gather(*(self._generator.propose_edits(request) for request in requests)),
                timeout=self._timeout_seconds,
            )
        )

    async def analyze(
        self,
        project_id: str,
        phase: Phase,
        diff: PhaseDiff | None,
        *,
        source_version: int,
        source_content: Mapping[str, Any] | None = None,
    ) -> list[ProposedChange]:
        if diff is None or not diff.fields:
            return []
        targets = self._collect_targets(project_id, diff)
        if not targets:
            return []
        if source_content is None:
            record = self._storage.get_phase(project_id=project_id, phase=phase)
            source_content = record.value if record is not None else {}
        requests = [self._build_request(project_id, diff, source_content, target) for target in targets]

        try:
            responses = await self._call_generator(requests)
        except asyncio.TimeoutError as exc:
            raise AnalysisUnavailable(
                f"analysis timed out after {self._timeout_seconds}s",
                project_id=project_id,
                phase=phase,
            ) from exc
        except Exception as exc:
            raise AnalysisUnavailable(
                f"generator failed: {exc}",
                project_id=project_id,
                phase=phase,
            ) from exc

        per_target: list[tuple[_Target, list[_ValidatedEdit]]] = []
        for target, edits in zip(targets, responses):
            try:
                validated = self._validate_edits(target.dependency.target_phase, target.content, edits)
            except ValueError as exc:
                raise AnalysisUnavailable(
                    f"invalid edit for phase {int(target.dependency.target_phase)}: {exc}",
                    project_id=project_id,
                    phase=phase,
                ) from exc
            per_target.append((target, validated))

        impact = self._build_impact(per_target)
        timestamp = self._clock()
        proposals: list[ProposedChange] = []
        for target, validated in per_target:
            target_phase = target.dependency.target_phase
            affected = self._matrix.downstream_of(target_phase)
            phase_impact = [impact[target_phase]] + [impact[p] for p in affected]
            for item in validated:
                change = StoryChange(
                    id=self._id_factory(),
                    project_id=project_id,
                    phase=target_phase,
                    type=ChangeType.auto_update,
                    field=item.edit.field,
                    old_value=item.old_value,
                    new_value=item.edit.new_value,
                    reason=item.edit.reason,
                    affected_phases=affected,
                    timestamp=timestamp,
                    source_phase=phase,
                    source_version=source_version,
                )
                preview = ChangePreview(
                    change_id=change.id,
                    phase=target_phase,
                    changes=[
                        FieldChangePreview(
                            field=item.edit.field,
                            before=item.old_value,
                            after=item.edit.new_value,
                            confidence=item.edit.confidence,
                            reason=item.edit.reason,
                        )
                    ],
                    impact=phase_impact,
                )
                proposals.append(ProposedChange(change=change, preview=preview))
            if validated:
                logger.info(
                    "%s: %d proposal(s)",
                    build_impact_reason(phase, target_phase, diff.changed_fields),
                    len(validated),
                )
        return proposals

    def _build_impact(
        self,
        per_target: Sequence[tuple[_Target, Sequence[_ValidatedEdit]]],
    ) -> dict[Phase, PhaseImpact]:
        fields: dict[Phase, list[str]] = {p: [] for p in Phase}
        structural: dict[Phase, bool] = {p: False for p in Phase}
        for target, validated in per_target:
            target_phase = target.dependency.target_phase
            for item in validated:
                fields[target_phase].append(item.edit.field)
                structural[target_phase] = structural[target_phase] or item.structural
        return {
            p: PhaseImpact(
                phase=p,
                affected_fields=fields[p],
                risk_level=self._risk_policy.level(fields[p], structural=structural[p]),
            )
            for p in Phase
        }
