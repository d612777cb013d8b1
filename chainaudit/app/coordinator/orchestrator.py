"""
Audit orchestrator.

The orchestrator is the engine's public entry point. It validates
submissions, creates one pipeline per job, runs it as a background
task, and answers status / report / cancellation queries.

IMPORTANT:
The orchestrator does not analyze code.

Its responsibilities are:
- rejecting invalid submissions before a job exists
- owning the job registry and background tasks
- persisting status snapshots and completed reports
- publishing terminal lifecycle events (exactly one per job)

It MUST NOT:
- interpret findings
- alter reports
- let one job's failure affect another job
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, NamedTuple, Optional

from pydantic import BaseModel, Field

from chainaudit.app.config import ChainAuditConfig
from chainaudit.app.errors import (
    AuditValidationError,
    JobAlreadyFinishedError,
    JobNotFoundError,
    PipelineStoppedError,
    ReportNotAvailableError,
    StageExecutionError,
)
from chainaudit.app.pipeline.factory import AuditPipeline, PipelineFactory
from chainaudit.app.registry.capabilities import CapabilityEntry, get_network_settings
from chainaudit.app.schemas.audit_report import StandardAuditReport
from chainaudit.app.schemas.audit_request import AuditRequest
from chainaudit.app.schemas.job_status import JobState, JobStatus
from chainaudit.app.storage.repository import InMemoryRepository, Repository

# Events (observational only)
from chainaudit.app.events import (
    AuditEvent,
    AuditEventType,
    AuditEventEmitter,
    NullEventEmitter,
    safe_emit,
)

logger = logging.getLogger(__name__)

SHUTDOWN_REASON = "Service shutting down"

TERMINAL_EVENT_FOR_STATE = {
    JobState.COMPLETED: AuditEventType.AUDIT_COMPLETED,
    JobState.FAILED: AuditEventType.AUDIT_FAILED,
    JobState.CANCELLED: AuditEventType.AUDIT_CANCELLED,
}


class AuditStatistics(BaseModel):
    total: int = 0
    queued: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    network_breakdown: Dict[str, int] = Field(default_factory=dict)


class _Job:
    def __init__(self, *, request: AuditRequest, pipeline: AuditPipeline) -> None:
        self.request = request
        self.pipeline = pipeline
        self.task: Optional["asyncio.Task[None]"] = None

    @property
    def status(self) -> JobStatus:
        return self.pipeline.state_machine.status


class _FinishedJob(NamedTuple):
    state: JobState
    network: str


class _JobEventRelay:
    """
    Persists a status snapshot on every event, then forwards it.
    """

    def __init__(
        self,
        *,
        job: _Job,
        statuses: Repository[JobStatus],
        notifier: AuditEventEmitter,
    ) -> None:
        self._job = job
        self._statuses = statuses
        self._notifier = notifier

    async def emit(self, event: AuditEvent) -> None:
        await self._statuses.save(event.audit_id, self._job.status.snapshot())
        await safe_emit(self._notifier, event)


class AuditOrchestrator:
    def __init__(
        self,
        *,
        factory: Optional[PipelineFactory] = None,
        status_repository: Optional[Repository[JobStatus]] = None,
        report_repository: Optional[Repository[StandardAuditReport]] = None,
        notifier: Optional[AuditEventEmitter] = None,
        config: Optional[ChainAuditConfig] = None,
    ) -> None:
        self.config = config or (factory.config if factory else ChainAuditConfig())
        self.factory = factory or PipelineFactory(config=self.config)
        self.notifier = notifier or NullEventEmitter()

        self._statuses: Repository[JobStatus] = (
            status_repository or InMemoryRepository()
        )
        self._reports: Repository[StandardAuditReport] = (
            report_repository or InMemoryRepository()
        )
        self._jobs: Dict[str, _Job] = {}
        self._finished: Dict[str, _FinishedJob] = {}

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def start_audit(self, request: AuditRequest) -> str:
        """
        Validate a request and schedule its pipeline.

        Returns the job id immediately; analysis runs in the background.

        Raises:
            AuditValidationError: the request cannot be served. No job,
                status or event exists afterwards.
        """
        self._validate(request)

        pipeline = self.factory.create_pipeline(
            request.network,
            request.job_id,
            total_files=len(request.files),
        )
        job = _Job(request=request, pipeline=pipeline)
        self._jobs[request.job_id] = job

        await self._statuses.save(request.job_id, job.status.snapshot())

        job.task = asyncio.create_task(
            self._process_audit(job),
            name=f"audit-{request.job_id}",
        )

        logger.info(
            "Accepted audit %s (%s, %d file(s))",
            request.job_id,
            request.network,
            len(request.files),
        )
        return request.job_id

    def _validate(self, request: AuditRequest) -> None:
        if request.job_id in self._jobs or request.job_id in self._finished:
            raise AuditValidationError(f"Audit job '{request.job_id}' already exists")

        if not request.files:
            raise AuditValidationError("At least one file is required")

        if len(request.files) > self.config.MAX_FILES:
            raise AuditValidationError(
                f"Too many files: {len(request.files)} exceeds {self.config.MAX_FILES}"
            )

        max_bytes = self.config.MAX_FILE_SIZE_KB * 1024
        for upload in request.files:
            if not upload.file_name.strip():
                raise AuditValidationError("Every file requires a file name")
            if not upload.content:
                raise AuditValidationError(f"File '{upload.display_path}' is empty")
            if len(upload.content.encode("utf-8")) > max_bytes:
                raise AuditValidationError(
                    f"File '{upload.display_path}' exceeds "
                    f"{self.config.MAX_FILE_SIZE_KB} KB"
                )

        capability = self.factory.ensure_supported(request.network)

        if request.language and request.language != capability.language:
            raise AuditValidationError(
                f"Language '{request.language}' does not match network "
                f"'{request.network}' ({capability.language})"
            )

        settings = get_network_settings(request.network)
        if not any(settings.accepts_file(f.display_path) for f in request.files):
            raise AuditValidationError(
                f"No source files with extensions {settings.file_extensions} "
                f"for network '{request.network}'"
            )

    # ------------------------------------------------------------------
    # Background execution
    # ------------------------------------------------------------------

    async def _process_audit(self, job: _Job) -> None:
        job_id = job.request.job_id
        state_machine = job.pipeline.state_machine
        relay = _JobEventRelay(job=job, statuses=self._statuses, notifier=self.notifier)

        await relay.emit(
            AuditEvent(
                audit_id=job_id,
                event_type=AuditEventType.AUDIT_STARTED,
                details={
                    "network": job.request.network,
                    "total_files": len(job.request.files),
                },
            )
        )

        details: dict = {}
        try:
            report = await state_machine.run(job.request, emitter=relay)

        except (PipelineStoppedError, StageExecutionError) as exc:
            details["stage"] = exc.stage

        except Exception as exc:
            logger.exception("Audit %s crashed outside a stage", job_id)
            state_machine.fail(str(exc) or type(exc).__name__)

        else:
            if job.status.status is JobState.COMPLETED:
                await self._reports.save(job_id, report)
                details = {
                    "security_score": report.summary.security_score,
                    "overall_risk_level": report.summary.overall_risk_level,
                    "total_issues": report.summary.total_issues,
                }
                logger.info(
                    "Audit %s completed: score=%d risk=%s issues=%d",
                    job_id,
                    report.summary.security_score,
                    report.summary.overall_risk_level,
                    report.summary.total_issues,
                )
            else:
                # Cancelled while the last stage was running
                logger.info("Discarding report for cancelled audit %s", job_id)

        # Final state decides the event; a stop may land mid-stage
        state = job.status.status
        if state is JobState.FAILED:
            details["error"] = job.status.error
        elif state is JobState.CANCELLED:
            details["reason"] = job.status.error

        await relay.emit(
            AuditEvent(
                audit_id=job_id,
                event_type=TERMINAL_EVENT_FOR_STATE[state],
                details=details,
            )
        )
        self._retire(job)

    def _retire(self, job: _Job) -> None:
        """
        Release a finished job's pipeline and request.

        Its final status snapshot already lives in the status repository;
        only what statistics need is kept in memory.
        """
        job_id = job.request.job_id
        self._finished[job_id] = _FinishedJob(
            state=job.status.status,
            network=job.request.network,
        )
        self._jobs.pop(job_id, None)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_status(self, job_id: str) -> JobStatus:
        job = self._jobs.get(job_id)
        if job is not None:
            return job.status.snapshot()

        status = await self._statuses.get(job_id)
        if status is None:
            raise JobNotFoundError(job_id)
        return status

    async def get_report(self, job_id: str) -> StandardAuditReport:
        status = await self.get_status(job_id)
        if status.status is not JobState.COMPLETED:
            raise ReportNotAvailableError(job_id, status.status.value)

        report = await self._reports.get(job_id)
        if report is None:
            raise ReportNotAvailableError(job_id, status.status.value)
        return report

    async def cancel_audit(self, job_id: str) -> JobStatus:
        """
        Request cooperative cancellation.

        The stage that is currently running finishes; no later stage
        starts. Finished jobs cannot be cancelled.
        """
        job = self._jobs.get(job_id)
        if job is None:
            status = await self._statuses.get(job_id)
            if status is None:
                raise JobNotFoundError(job_id)
            raise JobAlreadyFinishedError(job_id, status.status.value)

        if job.status.status.is_terminal:
            raise JobAlreadyFinishedError(job_id, job.status.status.value)

        job.pipeline.state_machine.stop()
        snapshot = job.status.snapshot()
        await self._statuses.save(job_id, snapshot)

        logger.info("Cancellation requested for audit %s", job_id)
        return snapshot

    async def wait_for(self, job_id: str) -> JobStatus:
        """
        Wait until the job's background task has finished.

        Jobs that already finished answer from the status repository.
        """
        job = self._jobs.get(job_id)
        if job is not None and job.task is not None:
            await asyncio.shield(job.task)
        return await self.get_status(job_id)

    def list_networks(self) -> List[CapabilityEntry]:
        return self.factory.capabilities()

    def get_statistics(self) -> AuditStatistics:
        stats = AuditStatistics()
        counters = {
            JobState.QUEUED: "queued",
            JobState.PROCESSING: "active",
            JobState.COMPLETED: "completed",
            JobState.FAILED: "failed",
            JobState.CANCELLED: "cancelled",
        }

        outcomes = list(self._finished.values()) + [
            _FinishedJob(state=job.status.status, network=job.request.network)
            for job in self._jobs.values()
        ]

        for state, network in outcomes:
            stats.total += 1
            field = counters[state]
            setattr(stats, field, getattr(stats, field) + 1)

            stats.network_breakdown[network] = stats.network_breakdown.get(network, 0) + 1

        return stats

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def shutdown(self) -> None:
        """
        Stop every live job and wait for the background tasks to settle.
        """
        tasks = []
        for job in self._jobs.values():
            if not job.status.status.is_terminal:
                job.pipeline.state_machine.stop(SHUTDOWN_REASON)
            if job.task is not None and not job.task.done():
                tasks.append(job.task)

        if tasks:
            logger.info("Waiting for %d audit task(s) to stop", len(tasks))
            await asyncio.gather(*tasks, return_exceptions=True)
