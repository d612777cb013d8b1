from __future__ import annotations

import json
from typing import Any, Dict, Optional
from enum import Enum
from datetime import datetime, timezone
from uuid import uuid4, UUID

from pydantic import BaseModel, Field, ConfigDict


# ----------------------------------------------------------------------
# Event Types (Finite and Versioned)
# ----------------------------------------------------------------------
class AuditEventType(str, Enum):
    """
    Typed lifecycle events emitted while an audit job runs.

    NOTE:
    This enum is finite and versioned.
    New entries must preserve observational semantics.
    """

    # ------------------------------------------------------------------
    # Job Lifecycle
    # ------------------------------------------------------------------
    AUDIT_STARTED = "audit_started"
    AUDIT_COMPLETED = "audit_completed"
    AUDIT_FAILED = "audit_failed"
    AUDIT_CANCELLED = "audit_cancelled"

    # ------------------------------------------------------------------
    # Stage Lifecycle
    # ------------------------------------------------------------------
    STAGE_STARTED = "stage_started"
    STAGE_COMPLETED = "stage_completed"
    STAGE_FAILED = "stage_failed"
    STAGE_SKIPPED = "stage_skipped"
    PROGRESS = "progress"

    # ------------------------------------------------------------------
    # Enrichment (Observational, Non-Authoritative)
    # ------------------------------------------------------------------
    ENRICHMENT_STARTED = "enrichment_started"
    ENRICHMENT_COMPLETED = "enrichment_completed"


TERMINAL_EVENT_TYPES = frozenset(
    {
        AuditEventType.AUDIT_COMPLETED,
        AuditEventType.AUDIT_FAILED,
        AuditEventType.AUDIT_CANCELLED,
    }
)


# ----------------------------------------------------------------------
# Event Model
# ----------------------------------------------------------------------
class AuditEvent(BaseModel):
    """
    An immutable observation of a transition within an audit job.

    Events are:
    - strictly observational
    - transport-agnostic
    - not authoritative (JobStatus is)
    """

    event_id: UUID = Field(default_factory=uuid4)
    audit_id: str = Field(..., description="The audit job identifier")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    event_type: AuditEventType

    # Optional contextual metadata (stage, progress, counts, etc.)
    details: Optional[Dict[str, Any]] = None

    @property
    def is_terminal(self) -> bool:
        return self.event_type in TERMINAL_EVENT_TYPES

    def to_sse_payload(self) -> str:
        """
        Render the event as a single Server-Sent Events frame.
        """
        data = json.dumps(self.model_dump(mode="json"), ensure_ascii=False)
        return f"event: {self.event_type.value}\ndata: {data}\n\n"

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )
