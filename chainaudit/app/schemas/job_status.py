"""
Job lifecycle schema.

JobStatus is the only mutable model in the engine. It is mutated by the
state machine that owns the job and by the orchestrator when it
reconciles terminal outcomes. Readers always receive deep copies.

IMPORTANT:
- progress MUST be monotonically non-decreasing (use advance_progress)
- a terminal state is final
- stages holds an entry only for stages that were started or skipped
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from chainaudit.app.schemas.stages import PipelineStage


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobState(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED}
)


class StageState(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class StageStatus(BaseModel):
    status: StageState = StageState.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    degraded: bool = Field(
        False,
        description="Optional stage failed and passed its input through",
    )
    error: Optional[str] = None

    model_config = ConfigDict(validate_assignment=True)


class JobStatus(BaseModel):
    job_id: str
    status: JobState = JobState.QUEUED
    progress: int = Field(0, ge=0, le=100)
    current_stage: Optional[PipelineStage] = None
    stages: Dict[PipelineStage, StageStatus] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    network: str
    total_files: int = 0
    error: Optional[str] = None

    # ------------------------------------------------------------------
    # Mutation helpers
    # ------------------------------------------------------------------

    def advance_progress(self, value: int) -> None:
        self.progress = max(self.progress, min(100, value))
        self.touch()

    def stage_state(self, stage: PipelineStage) -> StageState:
        entry = self.stages.get(stage)
        return entry.status if entry is not None else StageState.PENDING

    def touch(self) -> None:
        self.updated_at = utcnow()

    def snapshot(self) -> "JobStatus":
        return self.model_copy(deep=True)

    model_config = ConfigDict(validate_assignment=True)
