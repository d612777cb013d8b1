from __future__ import annotations

from typing import List, Optional, Protocol, TypeVar

from chainaudit.app.events import AuditEventEmitter
from chainaudit.app.schemas.audit_report import StandardAuditReport
from chainaudit.app.schemas.findings import Finding

V = TypeVar("V", List[Finding], StandardAuditReport)


class EnrichmentService(Protocol):
    """
    External enrichment collaborator (AI analysis, report narrative).

    enhance() is fallible: callers MUST treat any exception as
    "no enrichment" and continue with their pre-enrichment value.

    For a finding list the returned list is treated as a superset
    candidate: callers keep every input finding and append only
    findings whose ids are new.
    """

    provider: str

    async def enhance(
        self,
        value: V,
        *,
        source_text: str,
        network: str,
        audit_id: Optional[str] = None,
        emitter: Optional[AuditEventEmitter] = None,
    ) -> V:
        ...


class NullEnrichmentService:
    """
    Enrichment disabled: every value is returned unchanged.
    """

    provider = "disabled"

    async def enhance(
        self,
        value: V,
        *,
        source_text: str,
        network: str,
        audit_id: Optional[str] = None,
        emitter: Optional[AuditEventEmitter] = None,
    ) -> V:
        return value
