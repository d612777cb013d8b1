"""
Generic stage state machine.

This module provides the network-agnostic execution engine that drives
any NetworkAnalyzer through the seven fixed audit stages for one job.

IMPORTANT:
- Stages run strictly in sequence; stage N+1 never starts before
  stage N has produced its result.
- The stop flag is checked before every stage. A stage that is already
  running is never interrupted by a stop request.
- Mandatory stages (preprocess, parser, static-analysis, aggregation)
  are fatal on failure. Optional stages (semantic-analysis, ai-analysis,
  external-tools) degrade to their input findings.
- Terminal job states are reached once and never left.
- Events are observational. Emission failures never affect execution.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, List, Optional, TypeVar

from chainaudit.app.errors import PipelineStoppedError, StageExecutionError
from chainaudit.app.pipeline.analyzer_base import NetworkAnalyzer
from chainaudit.app.schemas.audit_report import StandardAuditReport
from chainaudit.app.schemas.audit_request import AuditRequest
from chainaudit.app.schemas.findings import Finding
from chainaudit.app.schemas.job_status import (
    JobState,
    JobStatus,
    StageState,
    StageStatus,
    utcnow,
)
from chainaudit.app.schemas.stages import PIPELINE_STAGES, PipelineStage

# Events (observational only)
from chainaudit.app.events import (
    AuditEvent,
    AuditEventType,
    AuditEventEmitter,
    NullEventEmitter,
    safe_emit,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

CANCELLED_BY_USER = "Job cancelled by user"


class StageStateMachine:
    """
    Per-job executor for the seven audit stages.

    This state machine owns:
    - stage ordering and sequencing
    - per-stage timing and progress accounting
    - the job's JobStatus

    It does NOT own:
    - network-specific analysis (the analyzer does)
    - persistence or notification fan-out (the orchestrator does)
    """

    def __init__(
        self,
        *,
        job_id: str,
        network: str,
        analyzer: NetworkAnalyzer,
        total_files: int = 0,
        default_timeout_ms: Optional[int] = None,
    ) -> None:
        self.job_id = job_id
        self.network = network
        self._analyzer = analyzer
        self._default_timeout_ms = default_timeout_ms

        self._stop_requested = False
        self._finished_stages = 0
        self._deadline: Optional[float] = None
        self._timeout_ms: Optional[int] = None
        self._emitter: AuditEventEmitter = NullEventEmitter()

        self.status = JobStatus(
            job_id=job_id,
            network=network,
            total_files=total_files,
        )

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    @property
    def stopped(self) -> bool:
        return self._stop_requested

    def stop(self, reason: str = CANCELLED_BY_USER) -> bool:
        """
        Request cooperative cancellation.

        Returns True when the job transitioned to cancelled.
        """
        self._stop_requested = True
        return self._transition(JobState.CANCELLED, error=reason)

    def fail(self, error: str) -> bool:
        return self._transition(JobState.FAILED, error=error)

    def _transition(self, state: JobState, *, error: Optional[str] = None) -> bool:
        if self.status.status.is_terminal:
            return False

        self.status.status = state
        if error is not None:
            self.status.error = error
        if state.is_terminal:
            self.status.completed_at = utcnow()
        self.status.touch()
        return True

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(
        self,
        request: AuditRequest,
        *,
        emitter: Optional[AuditEventEmitter] = None,
    ) -> StandardAuditReport:
        """
        Execute all stages in strict order and return the report.

        Raises:
            PipelineStoppedError: the stop flag was observed before a stage.
            StageExecutionError: a mandatory stage raised or timed out.
        """
        self._emitter = emitter or NullEventEmitter()
        self._analyzer.bind_emitter(self._emitter)

        self._timeout_ms = (
            request.configuration.timeout_ms or self._default_timeout_ms
        )
        if self._timeout_ms is not None:
            loop = asyncio.get_running_loop()
            self._deadline = loop.time() + self._timeout_ms / 1000

        self._transition(JobState.PROCESSING)

        analyzer = self._analyzer
        configuration = request.configuration

        # --------------------------------------------------------------
        # Mandatory structural stages
        # --------------------------------------------------------------
        preprocessed = await self._run_mandatory(
            PipelineStage.PREPROCESS,
            lambda: analyzer.preprocess(request),
        )
        parsed = await self._run_mandatory(
            PipelineStage.PARSER,
            lambda: analyzer.parse(preprocessed),
        )
        findings: List[Finding] = await self._run_mandatory(
            PipelineStage.STATIC_ANALYSIS,
            lambda: analyzer.static_analysis(parsed),
        )

        # --------------------------------------------------------------
        # Optional additive stages
        # --------------------------------------------------------------
        for stage, operation in (
            (PipelineStage.SEMANTIC_ANALYSIS, analyzer.semantic_analysis),
            (PipelineStage.AI_ANALYSIS, analyzer.ai_analysis),
            (PipelineStage.EXTERNAL_TOOLS, analyzer.external_tools_analysis),
        ):
            if not configuration.stage_enabled(stage):
                await self._skip(stage)
                continue
            findings = await self._run_optional(stage, operation, findings)

        # --------------------------------------------------------------
        # Aggregation (mandatory)
        # --------------------------------------------------------------
        report = await self._run_mandatory(
            PipelineStage.AGGREGATION,
            lambda: analyzer.aggregate_results(findings),
        )

        if self._transition(JobState.COMPLETED):
            self.status.advance_progress(100)
            self.status.current_stage = None

        return report

    # ------------------------------------------------------------------
    # Stage execution
    # ------------------------------------------------------------------

    def _check_stopped(self, stage: PipelineStage) -> None:
        if self._stop_requested:
            logger.info(
                "Job %s stopped before stage %s", self.job_id, stage.value
            )
            raise PipelineStoppedError(stage.value)

    async def _begin(self, stage: PipelineStage) -> StageStatus:
        entry = StageStatus(status=StageState.PROCESSING, started_at=utcnow())
        self.status.stages[stage] = entry
        self.status.current_stage = stage
        self.status.touch()

        await self._emit(
            AuditEventType.STAGE_STARTED,
            {"stage": stage.value},
        )
        await self._emit_progress(stage)
        return entry

    async def _finish(
        self,
        stage: PipelineStage,
        entry: StageStatus,
        started: float,
        *,
        degraded: bool = False,
        findings_count: Optional[int] = None,
    ) -> None:
        entry.status = StageState.COMPLETED
        entry.completed_at = utcnow()
        entry.duration_ms = int((time.perf_counter() - started) * 1000)
        entry.degraded = degraded

        self._finished_stages += 1
        self.status.advance_progress(self._progress_value())

        details = {
            "stage": stage.value,
            "duration_ms": entry.duration_ms,
            "degraded": degraded,
        }
        if findings_count is not None:
            details["findings_count"] = findings_count

        await self._emit(AuditEventType.STAGE_COMPLETED, details)
        await self._emit_progress(stage)

    async def _run_mandatory(
        self,
        stage: PipelineStage,
        body: Callable[[], Awaitable[T]],
    ) -> T:
        self._check_stopped(stage)
        entry = await self._begin(stage)
        started = time.perf_counter()

        try:
            result = await self._within_deadline(body)
        except Exception as exc:
            entry.status = StageState.FAILED
            entry.completed_at = utcnow()
            entry.duration_ms = int((time.perf_counter() - started) * 1000)
            entry.error = self._describe(exc)

            self.fail(f"{stage.value}: {entry.error}")

            logger.warning(
                "Job %s failed in stage %s: %s",
                self.job_id,
                stage.value,
                entry.error,
            )
            await self._emit(
                AuditEventType.STAGE_FAILED,
                {
                    "stage": stage.value,
                    "error": entry.error,
                    "exception_type": type(exc).__name__,
                },
            )
            raise StageExecutionError(stage.value, exc) from exc

        await self._finish(
            stage,
            entry,
            started,
            findings_count=len(result) if isinstance(result, list) else None,
        )
        return result

    async def _run_optional(
        self,
        stage: PipelineStage,
        operation: Callable[[List[Finding]], Awaitable[List[Finding]]],
        findings: List[Finding],
    ) -> List[Finding]:
        self._check_stopped(stage)
        entry = await self._begin(stage)
        started = time.perf_counter()

        degraded = False
        try:
            produced = await self._within_deadline(lambda: operation(list(findings)))
            merged = self._merge_additive(stage, findings, produced)
        except Exception as exc:
            # Analyzers should absorb their own enrichment failures;
            # reaching this branch means the analyzer broke that contract.
            degraded = True
            entry.error = self._describe(exc)
            merged = list(findings)
            logger.warning(
                "Optional stage %s degraded for job %s: %s",
                stage.value,
                self.job_id,
                entry.error,
            )

        await self._finish(
            stage,
            entry,
            started,
            degraded=degraded,
            findings_count=len(merged),
        )
        return merged

    async def _skip(self, stage: PipelineStage) -> None:
        self._check_stopped(stage)
        self.status.stages[stage] = StageStatus(
            status=StageState.SKIPPED,
            completed_at=utcnow(),
            duration_ms=0,
        )
        self._finished_stages += 1
        self.status.advance_progress(self._progress_value())

        await self._emit(AuditEventType.STAGE_SKIPPED, {"stage": stage.value})
        await self._emit_progress(stage)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _within_deadline(self, body: Callable[[], Awaitable[T]]) -> T:
        if self._deadline is None:
            return await body()

        remaining = self._deadline - asyncio.get_running_loop().time()
        try:
            return await asyncio.wait_for(body(), timeout=max(remaining, 0))
        except asyncio.TimeoutError as exc:
            raise TimeoutError(
                f"job deadline of {self._timeout_ms} ms exceeded"
            ) from exc

    def _merge_additive(
        self,
        stage: PipelineStage,
        inputs: List[Finding],
        produced: List[Finding],
    ) -> List[Finding]:
        if not isinstance(produced, list):
            raise TypeError(
                f"{stage.value} returned {type(produced).__name__}, expected a list"
            )

        known = {f.id for f in inputs}
        returned = {f.id for f in produced}
        missing = known - returned
        if missing:
            logger.warning(
                "Stage %s dropped %d finding(s) for job %s; restoring them",
                stage.value,
                len(missing),
                self.job_id,
            )

        merged = list(inputs)
        for finding in produced:
            if finding.id not in known:
                known.add(finding.id)
                merged.append(finding)
        return merged

    def _progress_value(self) -> int:
        return round(self._finished_stages / len(PIPELINE_STAGES) * 100)

    @staticmethod
    def _describe(exc: BaseException) -> str:
        return str(exc) or type(exc).__name__

    async def _emit_progress(self, stage: PipelineStage) -> None:
        await self._emit(
            AuditEventType.PROGRESS,
            {
                "stage": stage.value,
                "progress": self.status.progress,
                "completed_stages": self._finished_stages,
            },
        )

    async def _emit(self, event_type: AuditEventType, details: dict) -> None:
        await safe_emit(
            self._emitter,
            AuditEvent(
                audit_id=self.job_id,
                event_type=event_type,
                details=details,
            ),
        )
