"""
FastAPI entrypoint for the ChainAudit service.

This module defines the public HTTP interface for smart-contract audits.
Submissions are validated synchronously and analyzed in the background;
clients poll status, fetch the report once the job has completed, or
follow progress as a Server-Sent Events stream.

The HTTP layer is a thin adapter over AuditOrchestrator. It holds no
audit state of its own.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.responses import Response

from chainaudit.app.config import ChainAuditConfig
from chainaudit.app.coordinator.orchestrator import (
    TERMINAL_EVENT_FOR_STATE,
    AuditOrchestrator,
    AuditStatistics,
)
from chainaudit.app.enrichment.azure_openai import AzureOpenAIEnrichmentService
from chainaudit.app.enrichment.service import EnrichmentService, NullEnrichmentService
from chainaudit.app.errors import (
    AuditValidationError,
    JobAlreadyFinishedError,
    JobNotFoundError,
    ReportNotAvailableError,
)
from chainaudit.app.pipeline.factory import PipelineFactory
from chainaudit.app.registry.capabilities import CapabilityEntry
from chainaudit.app.schemas.audit_report import StandardAuditReport
from chainaudit.app.schemas.audit_request import AuditRequest
from chainaudit.app.schemas.job_status import JobState, JobStatus
from chainaudit.app.tools.runner import SubprocessToolRunner

# Events / streaming
from chainaudit.app.events import AuditEvent, BroadcastNotifier

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Presentation helpers (presentation-only)
# ---------------------------------------------------------------------------

def pretty_json(data: Any) -> str:
    """
    Pretty-print JSON for human-readable output.
    """
    return json.dumps(
        data,
        ensure_ascii=False,
        allow_nan=False,
        indent=2,
        separators=(", ", ": "),
    )


class PrettyJSONResponse(Response):
    """
    Pretty-printed JSON response for human-readable console output.
    """

    media_type = "application/json"

    def render(self, content: Any) -> bytes:
        return pretty_json(content).encode("utf-8")


# ---------------------------------------------------------------------------
# Application setup
# ---------------------------------------------------------------------------

app = FastAPI(
    title="ChainAudit Service",
    description="Multi-network smart-contract audit pipeline",
    version="1.0.0",
)


def build_enrichment(config: ChainAuditConfig) -> EnrichmentService:
    if config.ENRICHMENT_PROVIDER == "azure_openai":
        return AzureOpenAIEnrichmentService(
            endpoint=config.AZURE_OPENAI_ENDPOINT,
            deployment=config.AZURE_OPENAI_DEPLOYMENT,
            api_version=config.AZURE_OPENAI_API_VERSION,
        )
    return NullEnrichmentService()


def build_orchestrator(config: ChainAuditConfig) -> AuditOrchestrator:
    factory = PipelineFactory(
        config=config,
        enrichment=build_enrichment(config),
        tool_runner=(
            SubprocessToolRunner(timeout_seconds=config.EXTERNAL_TOOL_TIMEOUT_SECONDS)
            if config.ENABLE_EXTERNAL_TOOLS
            else None
        ),
    )
    return AuditOrchestrator(
        factory=factory,
        notifier=app.state.notifier,
        config=config,
    )


# ---------------------------------------------------------------------------
# Startup / Shutdown
# ---------------------------------------------------------------------------

@app.on_event("startup")
def startup_event() -> None:
    """
    Application startup hook.

    Configuration is loaded once and treated as immutable for the lifetime
    of the process. Enrichment and external tools are wired explicitly here.
    """
    config = ChainAuditConfig.from_env()

    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app.state.config = config
    app.state.notifier = BroadcastNotifier()
    app.state.orchestrator = build_orchestrator(config)

    logger.info(
        "ChainAudit started (enrichment=%s, external_tools=%s)",
        config.ENRICHMENT_PROVIDER,
        config.ENABLE_EXTERNAL_TOOLS,
    )


@app.on_event("shutdown")
async def shutdown_event() -> None:
    """Stop live audits and wait for their tasks."""
    orchestrator: AuditOrchestrator = app.state.orchestrator
    await orchestrator.shutdown()


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

@app.exception_handler(AuditValidationError)
async def audit_validation_error_handler(
    request: Request, exc: AuditValidationError
) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"detail": json.loads(json.dumps(exc.errors(), default=str))},
    )


# ---------------------------------------------------------------------------
# API Routes
# ---------------------------------------------------------------------------

@app.post(
    "/audits",
    status_code=202,
    response_class=PrettyJSONResponse,
    summary="Submit an audit",
)
async def submit_audit(request: AuditRequest) -> Dict[str, str]:
    """
    Validate and schedule an audit. Analysis runs in the background.
    """
    orchestrator: AuditOrchestrator = app.state.orchestrator
    job_id = await orchestrator.start_audit(request)
    return {"job_id": job_id, "status": JobState.QUEUED.value}


@app.get(
    "/audits/{job_id}",
    response_model=JobStatus,
    response_class=PrettyJSONResponse,
    summary="Audit status",
)
async def get_audit_status(job_id: str) -> JobStatus:
    orchestrator: AuditOrchestrator = app.state.orchestrator
    try:
        return await orchestrator.get_status(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.get(
    "/audits/{job_id}/report",
    response_model=StandardAuditReport,
    response_class=PrettyJSONResponse,
    summary="Completed audit report",
)
async def get_audit_report(job_id: str) -> StandardAuditReport:
    orchestrator: AuditOrchestrator = app.state.orchestrator
    try:
        return await orchestrator.get_report(job_id)
    except (JobNotFoundError, ReportNotAvailableError) as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.post(
    "/audits/{job_id}/cancel",
    response_model=JobStatus,
    response_class=PrettyJSONResponse,
    summary="Cancel a running audit",
)
async def cancel_audit(job_id: str) -> JobStatus:
    orchestrator: AuditOrchestrator = app.state.orchestrator
    try:
        return await orchestrator.cancel_audit(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except JobAlreadyFinishedError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


@app.get(
    "/networks",
    response_model=List[CapabilityEntry],
    response_class=PrettyJSONResponse,
    summary="Supported networks",
)
def list_networks() -> List[CapabilityEntry]:
    orchestrator: AuditOrchestrator = app.state.orchestrator
    return orchestrator.list_networks()


@app.get(
    "/statistics",
    response_model=AuditStatistics,
    response_class=PrettyJSONResponse,
    summary="Job statistics",
)
def get_statistics() -> AuditStatistics:
    orchestrator: AuditOrchestrator = app.state.orchestrator
    return orchestrator.get_statistics()


# ---------------------------------------------------------------------------
# Streaming progress (SSE)
# ---------------------------------------------------------------------------

@app.get(
    "/audits/{job_id}/events",
    summary="Audit progress stream",
)
async def stream_audit_events(job_id: str):
    """
    Stream an audit's lifecycle events.

    This endpoint is observational only:
    - Client disconnects do NOT cancel the audit
    - A job that already finished yields its terminal event and closes
    """
    orchestrator: AuditOrchestrator = app.state.orchestrator
    notifier: BroadcastNotifier = app.state.notifier

    queue = notifier.subscribe(job_id)
    try:
        status = await orchestrator.get_status(job_id)
    except JobNotFoundError as exc:
        notifier.unsubscribe(job_id, queue)
        raise HTTPException(status_code=404, detail=str(exc)) from exc

    if status.status.is_terminal and not queue.closed:
        notifier.unsubscribe(job_id, queue)
        await queue.emit(
            AuditEvent(
                audit_id=job_id,
                event_type=TERMINAL_EVENT_FOR_STATE[status.status],
                details={"status": status.status.value, "error": status.error},
            )
        )

    async def event_stream():
        try:
            async for event in queue.stream():
                yield event.to_sse_payload()
        except asyncio.CancelledError:
            # Client disconnected; audit continues
            notifier.unsubscribe(job_id, queue)
            raise

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )


# ---------------------------------------------------------------------------
# Health Check
# ---------------------------------------------------------------------------

@app.get(
    "/health",
    summary="Service health check",
)
def health_check() -> JSONResponse:
    """Simple health check endpoint."""
    return JSONResponse(
        content={
            "status": "ok",
            "service": "chainaudit",
        }
    )
