"""Phase graph helpers for dependency and impact analysis."""

from __future__ import annotations

from typing import Iterable, Mapping, Sequence

from living_story.phases import Phase


def build_field_phase_index(
    dependencies: Iterable[tuple[Phase, Phase, Sequence[str]]],
) -> dict[tuple[Phase, str], set[Phase]]:
    """(source phase, source field) -> downstream phases fed by that field."""
    field_to_phases: dict[tuple[Phase, str], set[Phase]] = {}
    for source, target, fields in dependencies:
        for field in fields:
            field_to_phases.setdefault((source, field), set()).add(target)
    return field_to_phases


def collect_impacted_phases(
    field_to_phases: Mapping[tuple[Phase, str], set[Phase]],
    source: Phase,
    fields: Sequence[str],
) -> list[Phase]:
    impacted: set[Phase] = set()
    for field in fields:
        impacted.update(field_to_phases.get((source, field), set()))
    return sorted(impacted)


def calculate_risk_level(
    field_count: int,
    *,
    structural: bool,
    high_count: int,
    medium_count: int,
) -> str:
    if structural or field_count > high_count:
        return "high"
    if field_count >= medium_count:
        return "medium"
    return "low"


def build_impact_reason(
    source: Phase,
    target: Phase,
    changed_fields: Sequence[str],
) -> str:
    joined = ", ".join(changed_fields)
    return (
        f"{len(changed_fields)} field change(s) in {source.label} ({joined}) "
        f"may affect {target.label}"
    )
