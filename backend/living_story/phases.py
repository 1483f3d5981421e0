"""四阶段内容模型：Story DNA → Scene Structure → Scene Beats → Executive Document。

Each phase payload is a pydantic model; the union is tagged by :class:`Phase`.
Fields are addressed by dotted path (``stakes``, ``scenes.2.stakes``). The
first segment must be listed in ``PHASE_FIELDS``; later segments walk mappings
by key and lists by integer index.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Dict, List, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class Phase(IntEnum):
    STORY_DNA = 1
    SCENE_STRUCTURE = 2
    SCENE_BEATS = 3
    EXECUTIVE_DOCUMENT = 4

    @property
    def label(self) -> str:
        return _PHASE_LABELS[self]


_PHASE_LABELS = {
    Phase.STORY_DNA: "Story DNA",
    Phase.SCENE_STRUCTURE: "Scene Structure",
    Phase.SCENE_BEATS: "Scene Beats",
    Phase.EXECUTIVE_DOCUMENT: "Executive Document",
}


class _PhaseModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class StoryDNA(_PhaseModel):
    """Phase 1：故事内核。"""

    summary: str = Field(..., min_length=1, description="一句话故事")
    theme: str = ""
    genre_indicators: List[str] = Field(default_factory=list)
    emotional_core: str = ""
    characters: List[str] = Field(default_factory=list)


class StructureScene(_PhaseModel):
    scene_number: int = Field(..., ge=1)
    title: str
    summary: str = ""
    stakes: str = ""
    character_arc: str = ""
    conflict_type: Literal["internal", "interpersonal", "external", "societal"] = "internal"
    tension_level: int = Field(default=5, ge=1, le=10)
    purpose: str = ""


class ArcAnalysis(_PhaseModel):
    overall_progression: str = ""
    escalation_pattern: str = ""
    resolution_approach: str = ""


class ThematicAnalysis(_PhaseModel):
    central_theme: str = ""
    thematic_progression: List[str] = Field(default_factory=list)
    resolution: str = ""


class SceneStructure(_PhaseModel):
    """Phase 2：场景结构。"""

    stakes: str = ""
    scenes: List[StructureScene] = Field(default_factory=list)
    arc_analysis: ArcAnalysis = Field(default_factory=ArcAnalysis)
    thematic_analysis: Optional[ThematicAnalysis] = None


class Beat(_PhaseModel):
    beat_number: int = Field(..., ge=1)
    beat_title: str
    action_description: str = ""
    character_focus: List[str] = Field(default_factory=list)
    tension_moment: str = ""
    story_function: str = ""


class SceneBreakdown(_PhaseModel):
    scene_number: int = Field(..., ge=1)
    scene_title: str
    beats: List[Beat] = Field(default_factory=list)


class CharacterTracking(_PhaseModel):
    main_characters: List[str] = Field(default_factory=list)
    consistency_notes: List[str] = Field(default_factory=list)


class ProductionSummary(_PhaseModel):
    total_beats: int = Field(default=0, ge=0)
    estimated_runtime: str = ""
    production_complexity: Literal["low", "medium", "high"] = "medium"


class SceneBeats(_PhaseModel):
    """Phase 3：节拍拆解。"""

    scene_breakdowns: List[SceneBreakdown] = Field(default_factory=list)
    character_tracking: CharacterTracking = Field(default_factory=CharacterTracking)
    production_summary: ProductionSummary = Field(default_factory=ProductionSummary)


class ExecutiveDocument(_PhaseModel):
    """Phase 4：执行文档。"""

    format: Literal["beat_sheet", "screenplay", "treatment", "outline"] = "treatment"
    title: str = ""
    logline: str = ""
    synopsis: str = ""
    content: str = ""
    export_ready: bool = False


PhaseContent = Union[StoryDNA, SceneStructure, SceneBeats, ExecutiveDocument]

PHASE_MODELS: Dict[Phase, type[_PhaseModel]] = {
    Phase.STORY_DNA: StoryDNA,
    Phase.SCENE_STRUCTURE: SceneStructure,
    Phase.SCENE_BEATS: SceneBeats,
    Phase.EXECUTIVE_DOCUMENT: ExecutiveDocument,
}


@dataclass(frozen=True)
class FieldSpec:
    name: str
    structural: bool = False


def _fields(*specs: FieldSpec) -> Dict[str, FieldSpec]:
    return {spec.name: spec for spec in specs}


# Structural fields reshape downstream phases (scene lists, breakdowns);
# edits to them are always high risk.
PHASE_FIELDS: Dict[Phase, Dict[str, FieldSpec]] = {
    Phase.STORY_DNA: _fields(
        FieldSpec("summary", structural=True),
        FieldSpec("theme"),
        FieldSpec("genre_indicators"),
        FieldSpec("emotional_core"),
        FieldSpec("characters", structural=True),
    ),
    Phase.SCENE_STRUCTURE: _fields(
        FieldSpec("stakes"),
        FieldSpec("scenes", structural=True),
        FieldSpec("arc_analysis"),
        FieldSpec("thematic_analysis"),
    ),
    Phase.SCENE_BEATS: _fields(
        FieldSpec("scene_breakdowns", structural=True),
        FieldSpec("character_tracking"),
        FieldSpec("production_summary"),
    ),
    Phase.EXECUTIVE_DOCUMENT: _fields(
        FieldSpec("format", structural=True),
        FieldSpec("title"),
        FieldSpec("logline"),
        FieldSpec("synopsis"),
        FieldSpec("content"),
        FieldSpec("export_ready"),
    ),
}


def parse_phase(value: int | Phase) -> Phase:
    try:
        return Phase(int(value))
    except ValueError as exc:
        raise ValueError(f"phase must be 1-4, got {value!r}") from exc


def validate_phase_content(phase: Phase, value: Mapping[str, Any]) -> dict[str, Any]:
    """Validate a raw payload against its phase model and return the JSON form."""
    model = PHASE_MODELS[phase].model_validate(dict(value))
    return model.model_dump(mode="json")


def split_path(path: str) -> list[str]:
    if not isinstance(path, str) or not path.strip():
        raise ValueError("field path is required")
    segments = path.split(".")
    if any(not segment for segment in segments):
        raise ValueError(f"invalid field path: {path!r}")
    return segments


def top_level_field(path: str) -> str:
    return split_path(path)[0]


def field_spec(phase: Phase, path: str) -> FieldSpec:
    head = top_level_field(path)
    spec = PHASE_FIELDS[phase].get(head)
    if spec is None:
        raise ValueError(f"field {head!r} is not addressable in phase {int(phase)}")
    return spec


def _step(container: Any, segment: str, path: str) -> Any:
    if isinstance(container, Mapping):
        return container.get(segment)
    if isinstance(container, list):
        if not segment.isdigit():
            raise ValueError(f"list index expected at {segment!r} in {path!r}")
        index = int(segment)
        if index >= len(container):
            raise ValueError(f"index {index} out of range in {path!r}")
        return container[index]
    raise ValueError(f"cannot descend into {segment!r} in {path!r}")


def get_path(phase: Phase, content: Mapping[str, Any], path: str) -> Any:
    """Read the value at ``path``; a missing mapping key reads as ``None``."""
    field_spec(phase, path)
    current: Any = content
    for segment in split_path(path):
        if current is None:
            return None
        current = _step(current, segment, path)
    return current


def set_path(
    phase: Phase,
    content: Mapping[str, Any],
    path: str,
    value: Any,
) -> dict[str, Any]:
    """Return a validated copy of ``content`` with ``path`` set to ``value``."""
    field_spec(phase, path)
    segments = split_path(path)
    updated = copy.deepcopy(dict(content))
    parent: Any = updated
    for segment in segments[:-1]:
        parent = _step(parent, segment, path)
        if parent is None:
            raise ValueError(f"cannot set {path!r}: {segment!r} is empty")
    last = segments[-1]
    if isinstance(parent, dict):
        parent[last] = copy.deepcopy(value)
    elif isinstance(parent, list):
        _step(parent, last, path)
        parent[int(last)] = copy.deepcopy(value)
    else:
        raise ValueError(f"cannot set {path!r}")
    return validate_phase_content(phase, updated)
