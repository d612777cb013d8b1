from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from chainaudit.app.aggregation.report_builder import ReportContext, build_standard_report
from chainaudit.app.errors import EnrichmentFailure
from chainaudit.app.events import AuditEvent, AuditEventEmitter, AuditEventType
from chainaudit.app.schemas.audit_report import ReportEnrichment, StandardAuditReport
from chainaudit.app.schemas.audit_request import (
    AuditConfiguration,
    AuditRequest,
    UploadedFile,
)
from chainaudit.app.schemas.findings import (
    Finding,
    FindingSource,
    Severity,
    SourceLocation,
)
from chainaudit.tests.fixtures.contracts import SOLANA_NATIVE_VAULT


def make_finding(
    finding_id: str = "F-1",
    *,
    severity: Severity = Severity.HIGH,
    confidence: float = 0.9,
    exploitability: float = 0.5,
    category: str = "access_control",
    file: str = "src/lib.rs",
    line: int = 10,
    snippet: str = "invoke(&ix, &accounts)?;",
    title: str = "Missing Signer Check",
    function: Optional[str] = None,
    source: FindingSource = FindingSource.STATIC,
) -> Finding:
    return Finding(
        id=finding_id,
        title=title,
        description=f"{title} description",
        severity=severity,
        confidence=confidence,
        exploitability=exploitability,
        category=category,
        location=SourceLocation(
            file=file,
            start_line=line,
            function=function,
            snippet=snippet,
        ),
        recommendation="Fix it.",
        source=source,
    )


def make_request(
    network: str = "solana",
    *,
    files: Optional[List[UploadedFile]] = None,
    job_id: Optional[str] = None,
    **configuration: Any,
) -> AuditRequest:
    payload: Dict[str, Any] = {
        "network": network,
        "project_name": "vault",
        "files": files
        if files is not None
        else [
            UploadedFile(
                file_name="lib.rs",
                path="src/lib.rs",
                content=SOLANA_NATIVE_VAULT,
            )
        ],
        "configuration": AuditConfiguration(**configuration),
    }
    if job_id is not None:
        payload["job_id"] = job_id
    return AuditRequest(**payload)


# ----------------------------------------------------------------------
# Event capture
# ----------------------------------------------------------------------


class ListEventEmitter:
    """
    Records every emitted event in order.
    """

    def __init__(self) -> None:
        self.events: List[AuditEvent] = []

    async def emit(self, event: AuditEvent) -> None:
        self.events.append(event)

    def types(self) -> List[AuditEventType]:
        return [e.event_type for e in self.events]

    def of_type(self, event_type: AuditEventType) -> List[AuditEvent]:
        return [e for e in self.events if e.event_type == event_type]


class FailingEventEmitter:
    async def emit(self, event: AuditEvent) -> None:
        raise RuntimeError("emitter offline")


# ----------------------------------------------------------------------
# Stub analyzer
# ----------------------------------------------------------------------

Hook = Callable[[], Awaitable[None]]


class StubAnalyzer:
    """
    Structurally valid NetworkAnalyzer with scripted behavior.

    - fail_in: stage method names that raise RuntimeError
    - hooks: awaited at the start of the named stage method
    - extra: findings each optional stage appends
    """

    network = "solana"

    def __init__(
        self,
        *,
        static_findings: Optional[List[Finding]] = None,
        extra: Optional[Dict[str, List[Finding]]] = None,
        fail_in: Optional[List[str]] = None,
        hooks: Optional[Dict[str, Hook]] = None,
        drop_inputs_in: Optional[List[str]] = None,
    ) -> None:
        self.static_findings = static_findings or []
        self.extra = extra or {}
        self.fail_in = set(fail_in or [])
        self.hooks = hooks or {}
        self.drop_inputs_in = set(drop_inputs_in or [])
        self.calls: List[str] = []
        self.aggregated_input: Optional[List[Finding]] = None
        self.emitter: Optional[AuditEventEmitter] = None

    def bind_emitter(self, emitter: AuditEventEmitter) -> None:
        self.emitter = emitter

    async def _enter(self, name: str) -> None:
        self.calls.append(name)
        hook = self.hooks.get(name)
        if hook is not None:
            await hook()
        if name in self.fail_in:
            raise RuntimeError(f"{name} exploded")

    async def preprocess(self, request: AuditRequest) -> Dict[str, Any]:
        await self._enter("preprocess")
        return {"files": len(request.files)}

    async def parse(self, preprocessed: Dict[str, Any]) -> Dict[str, Any]:
        await self._enter("parse")
        return {"parsed": preprocessed}

    async def static_analysis(self, parsed: Dict[str, Any]) -> List[Finding]:
        await self._enter("static_analysis")
        return list(self.static_findings)

    async def _optional(self, name: str, findings: List[Finding]) -> List[Finding]:
        await self._enter(name)
        base = [] if name in self.drop_inputs_in else list(findings)
        return base + list(self.extra.get(name, []))

    async def semantic_analysis(self, findings: List[Finding]) -> List[Finding]:
        return await self._optional("semantic_analysis", findings)

    async def ai_analysis(self, findings: List[Finding]) -> List[Finding]:
        return await self._optional("ai_analysis", findings)

    async def external_tools_analysis(self, findings: List[Finding]) -> List[Finding]:
        return await self._optional("external_tools_analysis", findings)

    async def aggregate_results(self, findings: List[Finding]) -> StandardAuditReport:
        await self._enter("aggregate_results")
        self.aggregated_input = list(findings)
        return build_standard_report(
            findings,
            context=ReportContext(
                job_id="stub-job-0001",
                project_name="stub",
                network="solana",
                platform="Solana",
                language="rust",
                started_at=datetime.now(timezone.utc),
            ),
        )


def stub_builder(analyzer: StubAnalyzer):
    """Analyzer builder for PipelineFactory that always returns `analyzer`."""

    def build(**_: Any) -> StubAnalyzer:
        return analyzer

    return build


# ----------------------------------------------------------------------
# Enrichment double
# ----------------------------------------------------------------------


class ScriptedEnrichment:
    """
    EnrichmentService double.

    Lists get `findings` appended (or raise when fail_findings is set);
    reports get an enrichment block (or raise when fail_report is set).
    When given an emitter it announces each call the way the real
    provider does.
    """

    provider = "scripted"

    def __init__(
        self,
        *,
        findings: Optional[List[Finding]] = None,
        fail_findings: bool = False,
        fail_report: bool = False,
    ) -> None:
        self.findings = findings or []
        self.fail_findings = fail_findings
        self.fail_report = fail_report
        self.calls: List[str] = []

    async def enhance(
        self,
        value,
        *,
        source_text: str,
        network: str,
        audit_id: Optional[str] = None,
        emitter=None,
    ):
        mode = "findings" if isinstance(value, list) else "report"
        if emitter is not None and audit_id is not None:
            await emitter.emit(
                AuditEvent(
                    audit_id=audit_id,
                    event_type=AuditEventType.ENRICHMENT_STARTED,
                    details={"provider": self.provider, "mode": mode},
                )
            )

        if isinstance(value, list):
            self.calls.append("findings")
            if self.fail_findings:
                raise EnrichmentFailure("timeout")
            return list(value) + list(self.findings)

        self.calls.append("report")
        if self.fail_report:
            raise EnrichmentFailure("refusal")
        return value.model_copy(
            update={
                "enrichment": ReportEnrichment(
                    provider=self.provider,
                    executive_summary=f"{network} summary",
                ),
                "appendix": value.appendix.model_copy(
                    update={"enrichment_status": "applied"}
                ),
            }
        )
