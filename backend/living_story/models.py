"""核心领域模型定义：StoryChange / ChangePreview / 阶段记录与接口视图。"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from living_story.phases import Phase


class ChangeType(str, Enum):
    manual_edit = "manual_edit"
    auto_update = "auto_update"


class ChangeStatus(str, Enum):
    pending = "pending"
    accepted = "accepted"
    rejected = "rejected"
    applied = "applied"
    reverted = "reverted"


RESOLVED_STATUSES = (
    ChangeStatus.accepted,
    ChangeStatus.applied,
    ChangeStatus.rejected,
    ChangeStatus.reverted,
)

RESOLUTION_STALE = "stale"
RESOLUTION_USER = "user"

RiskLevel = Literal["low", "medium", "high"]


class StoryChange(BaseModel):
    """单字段变更记录；创建后不可变，状态迁移通过 model_copy 产生新记录。"""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    project_id: str = Field(..., min_length=1)
    phase: Phase
    type: ChangeType
    field: str = Field(..., min_length=1)
    old_value: Any = None
    new_value: Any = None
    reason: str
    affected_phases: List[Phase] = Field(default_factory=list)
    status: ChangeStatus = ChangeStatus.pending
    timestamp: datetime
    sequence: int = Field(default=0, ge=0)
    source_phase: Phase
    source_version: int = Field(..., ge=1)
    applied_at: Optional[datetime] = None
    resolution: Optional[str] = None
    reverts: Optional[str] = None
    reverted_by: Optional[str] = None

    @field_validator("affected_phases")
    @classmethod
    def ensure_ordered(cls, value: List[Phase]) -> List[Phase]:
        return sorted(set(value))

    @model_validator(mode="after")
    def ensure_downstream(self) -> "StoryChange":
        if any(target <= self.phase for target in self.affected_phases):
            raise ValueError("affected_phases must be strictly downstream of phase")
        if self.source_phase > self.phase:
            raise ValueError("source_phase must not be downstream of phase")
        return self

    @property
    def dedupe_key(self) -> tuple[str, int, str, int, int]:
        return (
            self.project_id,
            int(self.phase),
            self.field,
            int(self.source_phase),
            self.source_version,
        )


class FieldChangePreview(BaseModel):
    field: str
    before: Any = None
    after: Any = None
    confidence: float = Field(..., ge=0.0, le=1.0)
    reason: str


class PhaseImpact(BaseModel):
    phase: Phase
    affected_fields: List[str] = Field(default_factory=list)
    risk_level: RiskLevel


class ChangePreview(BaseModel):
    change_id: str
    phase: Phase
    changes: List[FieldChangePreview] = Field(default_factory=list)
    impact: List[PhaseImpact] = Field(default_factory=list)


class ChangeRecord(BaseModel):
    """持久化单元：变更与其预览一同存储。"""

    change: StoryChange
    preview: Optional[ChangePreview] = None


class PhaseRecord(BaseModel):
    project_id: str
    phase: Phase
    value: Dict[str, Any]
    version: int = Field(..., ge=1)
    updated_at: datetime


class FieldDelta(BaseModel):
    before: Any = None
    after: Any = None


class PhaseDiff(BaseModel):
    phase: Phase
    fields: Dict[str, FieldDelta]

    @property
    def changed_fields(self) -> List[str]:
        return list(self.fields)


class ProposedEdit(BaseModel):
    """生成器返回的单字段建议。"""

    field: str = Field(..., min_length=1)
    new_value: Any = None
    confidence: float = Field(..., ge=0.0, le=1.0)
    reason: str = Field(..., min_length=1)
    structural: bool = False


class ProposedEditList(BaseModel):
    edits: List[ProposedEdit] = Field(default_factory=list)


class ImpactRequest(BaseModel):
    """发送给内容生成器的影响分析请求。"""

    project_id: str
    source_phase: Phase
    target_phase: Phase
    diff: Dict[str, FieldDelta]
    source_content: Dict[str, Any]
    target_content: Dict[str, Any]
    update_type: str
    priority: str
    dependency_fields: List[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# HTTP views
# ---------------------------------------------------------------------------


class PendingChangeView(BaseModel):
    change: StoryChange
    preview: Optional[ChangePreview] = None


class PendingChangesView(BaseModel):
    project_id: str
    pending: List[PendingChangeView]


class ChangeHistoryView(BaseModel):
    project_id: str
    history: List[StoryChange]


class ResolutionResult(BaseModel):
    change_id: str
    status: ChangeStatus
    resolution: Optional[str] = None
    error: Optional[str] = None


class BatchResolutionView(BaseModel):
    project_id: str
    results: List[ResolutionResult]


class UndoResult(BaseModel):
    change: StoryChange
    reversal: StoryChange


class PropagationView(BaseModel):
    status: Literal["none", "queued", "unavailable"]
    enqueued: List[StoryChange] = Field(default_factory=list)
    duplicates: int = 0
    detail: Optional[str] = None


class PhaseCommitView(BaseModel):
    phase: PhaseRecord
    manual_changes: List[StoryChange] = Field(default_factory=list)
    propagation: PropagationView


class ChangeSummaryView(BaseModel):
    project_id: str
    pending_count: int
    recent_changes_count: int
    last_change: Optional[datetime] = None
    previews: List[ChangePreview] = Field(default_factory=list)
    poll_interval_seconds: float
