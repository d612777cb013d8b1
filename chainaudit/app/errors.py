"""
Error taxonomy for the audit engine.

Fatal vs. non-fatal is decided by the type:
- AuditValidationError is raised at submission time; no job is created.
- StageExecutionError aborts the remaining stages of one job only.
- PipelineStoppedError surfaces as a cancelled job, never a failed one.
- EnrichmentFailure is always absorbed by the stage that called the
  enrichment collaborator or external tool.
"""

from __future__ import annotations

from typing import Optional


class AuditError(Exception):
    """Base class for all audit engine errors."""


# ----------------------------------------------------------------------
# Submission-time errors
# ----------------------------------------------------------------------


class AuditValidationError(AuditError):
    """The audit request is malformed or cannot be served."""


class UnsupportedNetworkError(AuditValidationError):
    """The requested network is unknown or not implemented."""

    def __init__(self, network: str) -> None:
        self.network = network
        super().__init__(
            f"Network '{network}' is not supported for auditing"
        )


# ----------------------------------------------------------------------
# Pipeline execution errors
# ----------------------------------------------------------------------


class StageExecutionError(AuditError):
    """A mandatory pipeline stage raised."""

    def __init__(self, stage: str, cause: BaseException) -> None:
        self.stage = stage
        self.cause = cause
        super().__init__(f"Stage '{stage}' failed: {cause}")


class PipelineStoppedError(AuditError):
    """The stop flag was set before a stage could start."""

    def __init__(self, stage: str) -> None:
        self.stage = stage
        super().__init__(f"Pipeline stopped before stage '{stage}'")


class EnrichmentFailure(AuditError):
    """An optional enrichment call or external tool failed."""

    def __init__(self, failure_type: str, message: Optional[str] = None) -> None:
        self.failure_type = failure_type
        super().__init__(message or failure_type)


# ----------------------------------------------------------------------
# Query errors (orchestrator API)
# ----------------------------------------------------------------------


class JobNotFoundError(AuditError):
    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Audit job '{job_id}' not found")


class ReportNotAvailableError(AuditError):
    def __init__(self, job_id: str, state: str) -> None:
        self.job_id = job_id
        self.state = state
        super().__init__(
            f"Report for audit job '{job_id}' is not available (state: {state})"
        )


class JobAlreadyFinishedError(AuditError):
    def __init__(self, job_id: str, state: str) -> None:
        self.job_id = job_id
        self.state = state
        super().__init__(
            f"Audit job '{job_id}' already finished with state '{state}'"
        )
