"""Dependency matrix between story phases."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Sequence

from living_story.phases import Phase, top_level_field
from living_story.utils.phase_graph import build_field_phase_index, collect_impacted_phases

UpdateType = Literal["intelligent_merge", "field_specific", "full_regenerate"]
Priority = Literal["high", "medium", "low"]


@dataclass(frozen=True)
class PhaseDependency:
    source_phase: Phase
    target_phase: Phase
    fields: tuple[str, ...]
    update_type: UpdateType
    priority: Priority

    def __post_init__(self) -> None:
        if self.target_phase <= self.source_phase:
            raise ValueError("target_phase must be downstream of source_phase")
        if not self.fields:
            raise ValueError("dependency fields must not be empty")


DEFAULT_DEPENDENCIES: tuple[PhaseDependency, ...] = (
    PhaseDependency(
        Phase.STORY_DNA,
        Phase.SCENE_STRUCTURE,
        ("summary", "theme", "genre_indicators", "emotional_core", "characters"),
        "intelligent_merge",
        "high",
    ),
    PhaseDependency(
        Phase.STORY_DNA,
        Phase.SCENE_BEATS,
        ("summary", "theme", "characters"),
        "intelligent_merge",
        "medium",
    ),
    PhaseDependency(
        Phase.STORY_DNA,
        Phase.EXECUTIVE_DOCUMENT,
        ("summary", "theme"),
        "field_specific",
        "low",
    ),
    PhaseDependency(
        Phase.SCENE_STRUCTURE,
        Phase.SCENE_BEATS,
        ("stakes", "scenes", "arc_analysis", "thematic_analysis"),
        "intelligent_merge",
        "high",
    ),
    PhaseDependency(
        Phase.SCENE_STRUCTURE,
        Phase.EXECUTIVE_DOCUMENT,
        ("stakes", "scenes", "arc_analysis"),
        "field_specific",
        "low",
    ),
    PhaseDependency(
        Phase.SCENE_BEATS,
        Phase.EXECUTIVE_DOCUMENT,
        ("scene_breakdowns", "character_tracking", "production_summary"),
        "field_specific",
        "low",
    ),
)


class DependencyMatrix:
    def __init__(self, dependencies: Sequence[PhaseDependency] = DEFAULT_DEPENDENCIES) -> None:
        self._dependencies = tuple(dependencies)
        self._field_to_phases = build_field_phase_index(
            (dep.source_phase, dep.target_phase, dep.fields) for dep in self._dependencies
        )

    @property
    def dependencies(self) -> tuple[PhaseDependency, ...]:
        return self._dependencies

    def downstream_of(self, phase: Phase) -> list[Phase]:
        return sorted({dep.target_phase for dep in self._dependencies if dep.source_phase == phase})

    def dependencies_for(self, phase: Phase, changed_fields: Sequence[str]) -> list[PhaseDependency]:
        heads = list(dict.fromkeys(top_level_field(path) for path in changed_fields))
        targets = collect_impacted_phases(self._field_to_phases, phase, heads)
        return [
            dep
            for dep in self._dependencies
            if dep.source_phase == phase and dep.target_phase in targets
        ]
