from __future__ import annotations

from typing import List, Protocol

from chainaudit.app.events import AuditEventEmitter
from chainaudit.app.schemas.analysis import ParseResult, PreprocessResult
from chainaudit.app.schemas.audit_report import StandardAuditReport
from chainaudit.app.schemas.audit_request import AuditRequest
from chainaudit.app.schemas.findings import Finding


class NetworkAnalyzer(Protocol):
    """
    Contract implemented once per supported network.

    The stage state machine calls the seven operations in this order,
    each receiving the previous operation's output. An analyzer instance
    serves exactly one job and may keep job state between calls.

    Invariants:
    - semantic_analysis, ai_analysis and external_tools_analysis are
      strictly additive: every input finding is present in the output
    - ai_analysis and external_tools_analysis absorb collaborator
      failures and return their input unchanged
    - aggregate_results returns the un-enriched report when report
      enrichment fails
    - events emitted through the bound emitter are observational
    """

    network: str

    def bind_emitter(self, emitter: AuditEventEmitter) -> None:
        """Receive the job's event emitter before the first stage runs."""
        ...

    async def preprocess(self, request: AuditRequest) -> PreprocessResult:
        ...

    async def parse(self, preprocessed: PreprocessResult) -> ParseResult:
        ...

    async def static_analysis(self, parsed: ParseResult) -> List[Finding]:
        ...

    async def semantic_analysis(self, findings: List[Finding]) -> List[Finding]:
        ...

    async def ai_analysis(self, findings: List[Finding]) -> List[Finding]:
        ...

    async def external_tools_analysis(
        self, findings: List[Finding]
    ) -> List[Finding]:
        ...

    async def aggregate_results(
        self, findings: List[Finding]
    ) -> StandardAuditReport:
        ...
