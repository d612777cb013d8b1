"""
Audit request schema.

An AuditRequest is immutable once submitted. Structural shape is
enforced here; submission rules that depend on the capability registry
(network implemented, file extensions, limits) are enforced by the
orchestrator and surface as AuditValidationError.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from chainaudit.app.schemas.findings import Severity
from chainaudit.app.schemas.stages import OPTIONAL_STAGES, PipelineStage


class UploadedFile(BaseModel):
    file_name: str = Field(..., description="File name as uploaded, e.g. 'lib.rs'")
    content: str = Field(..., description="UTF-8 source text")
    path: Optional[str] = Field(
        None,
        description="Project-relative path, e.g. 'programs/vault/src/lib.rs'",
    )
    mime_type: Optional[str] = None

    @property
    def display_path(self) -> str:
        return self.path or self.file_name

    model_config = ConfigDict(frozen=True, extra="forbid")


class AuditConfiguration(BaseModel):
    """
    Per-request execution options.

    Mandatory stages always run. Optional stages may be switched off,
    in which case they are recorded as skipped.
    """

    enabled_stages: Optional[List[PipelineStage]] = Field(
        None,
        description="Optional stages to run. None means all of them.",
    )

    severity_threshold: Severity = Field(
        Severity.INFORMATIONAL,
        description="Findings below this severity are dropped from the report",
    )

    confidence_threshold: Optional[float] = Field(
        None,
        ge=0.0,
        le=1.0,
        description="Overrides the service default false-positive threshold",
    )

    ai_analysis_enabled: bool = True
    external_tools_enabled: bool = True

    timeout_ms: Optional[int] = Field(
        None,
        gt=0,
        description="Whole-job deadline in milliseconds",
    )

    def stage_enabled(self, stage: PipelineStage) -> bool:
        if stage not in OPTIONAL_STAGES:
            return True
        if stage == PipelineStage.AI_ANALYSIS and not self.ai_analysis_enabled:
            return False
        if (
            stage == PipelineStage.EXTERNAL_TOOLS
            and not self.external_tools_enabled
        ):
            return False
        if self.enabled_stages is None:
            return True
        return stage in self.enabled_stages

    model_config = ConfigDict(frozen=True, extra="forbid")


class AuditMetadata(BaseModel):
    uploaded_at: Optional[datetime] = None
    client_id: Optional[str] = None
    priority: Literal["low", "normal", "high"] = "normal"
    tags: List[str] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True, extra="forbid")


class AuditRequest(BaseModel):
    job_id: str = Field(
        default_factory=lambda: str(uuid4()),
        description="Unique job identifier. Generated when omitted.",
    )
    project_name: str = Field("", description="Human-readable project name")
    network: str = Field(..., description="Target network, e.g. 'solana'")
    language: Optional[str] = Field(
        None,
        description="Declared source language; must match the network if given",
    )
    files: List[UploadedFile] = Field(default_factory=list)
    configuration: AuditConfiguration = Field(default_factory=AuditConfiguration)
    metadata: AuditMetadata = Field(default_factory=AuditMetadata)

    @field_validator("network", "language")
    @classmethod
    def normalize_identifier(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        return v.strip().lower()

    model_config = ConfigDict(frozen=True, extra="forbid")
