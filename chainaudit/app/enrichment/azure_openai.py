"""
Azure OpenAI enrichment service.

Two enrichment modes share one structured-output call path:
- finding lists: the model proposes ADDITIONAL findings, which are
  converted into canonical Finding objects with source=ai
- reports: the model writes an advisory executive summary and extra
  recommendations, attached as the report's enrichment block

IMPORTANT:
- Enrichment is advisory. It MUST NOT change existing findings,
  severities or summary counts.
- Every provider failure is raised as EnrichmentFailure with a
  normalized failure_type; callers decide to absorb it.
"""

from __future__ import annotations

import json
from typing import Any, List, Optional, Type

from pydantic import BaseModel, ConfigDict

from azure.identity import (
    DefaultAzureCredential,
    get_bearer_token_provider,
)
from azure.core.exceptions import (
    ServiceResponseTimeoutError,
    HttpResponseError,
    ClientAuthenticationError,
)

from openai import APITimeoutError, AsyncAzureOpenAI

from chainaudit.app.errors import EnrichmentFailure
from chainaudit.app.schemas.audit_report import (
    ReportEnrichment,
    StandardAuditReport,
)
from chainaudit.app.schemas.findings import (
    Finding,
    FindingSource,
    Severity,
    SourceLocation,
)
from chainaudit.app.utils.hashing import stable_identifier

# Optional events (observational only)
from chainaudit.app.events import (
    AuditEvent,
    AuditEventType,
    AuditEventEmitter,
    NullEventEmitter,
    safe_emit,
)


SYSTEM_PROMPT = (
    "You are a smart-contract security auditor. You receive sanitized "
    "contract source code and the findings already produced by "
    "deterministic analyzers. Only report issues that are grounded in "
    "the provided source. Never repeat an existing finding. Use the "
    "exact file paths and 1-based line numbers from the source."
)


# ----------------------------------------------------------------------
# Structured output schemas (model-facing)
# ----------------------------------------------------------------------


class AIFindingDraft(BaseModel):
    title: str
    description: str
    severity: Severity
    confidence: float
    exploitability: float
    category: str
    file: str
    line: int
    snippet: str
    recommendation: str

    model_config = ConfigDict(extra="forbid")


class AIFindingsOutput(BaseModel):
    findings: List[AIFindingDraft]

    model_config = ConfigDict(extra="forbid")


class ReportInsightsOutput(BaseModel):
    executive_summary: str
    additional_recommendations: List[str]

    model_config = ConfigDict(extra="forbid")


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def draft_to_finding(draft: AIFindingDraft, *, network: str) -> Finding:
    """
    Convert a model draft into a canonical AI finding.
    """
    line = max(draft.line, 0)
    return Finding(
        id=f"AI-{stable_identifier(network, draft.category, draft.file, line, draft.title)}",
        title=draft.title,
        description=draft.description,
        severity=draft.severity,
        confidence=_clamp(draft.confidence),
        exploitability=_clamp(draft.exploitability),
        category=draft.category,
        location=SourceLocation(
            file=draft.file,
            start_line=line,
            snippet=draft.snippet,
        ),
        recommendation=draft.recommendation,
        source=FindingSource.AI,
        tool="azure-openai",
    )


# ----------------------------------------------------------------------
# Azure OpenAI Enrichment Service (Entra ID)
# ----------------------------------------------------------------------


class AzureOpenAIEnrichmentService:
    """
    Azure OpenAI implementation of EnrichmentService.

    Authentication uses Entra ID (DefaultAzureCredential); no API keys
    are read. A preconfigured client may be injected instead.
    """

    provider = "azure_openai"

    def __init__(
        self,
        *,
        endpoint: str = "",
        deployment: str,
        api_version: str = "",
        timeout_seconds: float = 30.0,
        max_source_chars: int = 60_000,
        client: Optional[Any] = None,
    ) -> None:
        self._deployment = deployment
        self._max_source_chars = max_source_chars

        if client is not None:
            self._client = client
            return

        credential = DefaultAzureCredential()
        token_provider = get_bearer_token_provider(
            credential,
            "https://cognitiveservices.azure.com/.default",
        )

        self._client = AsyncAzureOpenAI(
            azure_endpoint=endpoint,
            azure_ad_token_provider=token_provider,
            api_version=api_version,
            timeout=timeout_seconds,
        )

    async def enhance(
        self,
        value,
        *,
        source_text: str,
        network: str,
        audit_id: Optional[str] = None,
        emitter: Optional[AuditEventEmitter] = None,
    ):
        emitter = emitter or NullEventEmitter()

        if isinstance(value, StandardAuditReport):
            mode = "report"
        elif isinstance(value, list):
            mode = "findings"
        else:
            raise TypeError(
                f"Cannot enrich value of type {type(value).__name__}"
            )

        if audit_id is not None:
            await safe_emit(
                emitter,
                AuditEvent(
                    audit_id=audit_id,
                    event_type=AuditEventType.ENRICHMENT_STARTED,
                    details={
                        "mode": mode,
                        "provider": self.provider,
                        "model_deployment": self._deployment,
                    },
                ),
            )

        failure_type: Optional[str] = None
        try:
            if mode == "report":
                return await self._enhance_report(
                    value, source_text=source_text, network=network
                )
            return await self._enhance_findings(
                value, source_text=source_text, network=network
            )
        except EnrichmentFailure as exc:
            failure_type = exc.failure_type
            raise
        finally:
            if audit_id is not None:
                await safe_emit(
                    emitter,
                    AuditEvent(
                        audit_id=audit_id,
                        event_type=AuditEventType.ENRICHMENT_COMPLETED,
                        details={
                            "mode": mode,
                            "success": failure_type is None,
                            "failure_type": failure_type,
                        },
                    ),
                )

    # ------------------------------------------------------------------
    # Modes
    # ------------------------------------------------------------------

    async def _enhance_findings(
        self,
        findings: List[Finding],
        *,
        source_text: str,
        network: str,
    ) -> List[Finding]:
        existing = [
            {
                "title": f.title,
                "severity": f.severity.value,
                "category": f.category,
                "file": f.location.file,
                "line": f.location.start_line,
            }
            for f in findings
        ]

        output = await self._parse(
            instructions=(
                f"Network: {network}.\n"
                "Identify additional security issues the existing findings "
                "missed. Return an empty list when there are none."
            ),
            payload={"existing_findings": existing},
            source_text=source_text,
            output_schema=AIFindingsOutput,
        )

        known = {f.id for f in findings}
        result = list(findings)
        for draft in output.findings:
            finding = draft_to_finding(draft, network=network)
            if finding.id not in known:
                known.add(finding.id)
                result.append(finding)
        return result

    async def _enhance_report(
        self,
        report: StandardAuditReport,
        *,
        source_text: str,
        network: str,
    ) -> StandardAuditReport:
        payload = {
            "summary": report.summary.model_dump(mode="json"),
            "findings": [
                {
                    "id": f.id,
                    "title": f.title,
                    "severity": f.severity.value,
                    "category": f.category,
                }
                for f in report.findings
            ],
        }

        output = await self._parse(
            instructions=(
                f"Network: {network}.\n"
                "Write a concise executive summary of this audit for a "
                "non-specialist reader and list any additional "
                "recommendations. Do not restate individual findings."
            ),
            payload=payload,
            source_text=source_text,
            output_schema=ReportInsightsOutput,
        )

        return report.model_copy(
            update={
                "enrichment": ReportEnrichment(
                    provider=self.provider,
                    executive_summary=output.executive_summary,
                    additional_recommendations=list(
                        output.additional_recommendations
                    ),
                ),
                "appendix": report.appendix.model_copy(
                    update={"enrichment_status": "applied"}
                ),
            }
        )

    # ------------------------------------------------------------------
    # Provider call
    # ------------------------------------------------------------------

    async def _parse(
        self,
        *,
        instructions: str,
        payload: dict,
        source_text: str,
        output_schema: Type[BaseModel],
    ) -> Any:
        payload_json = json.dumps(
            payload,
            ensure_ascii=False,
            sort_keys=True,
            separators=(",", ":"),
        )

        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {
                "role": "user",
                "content": (
                    "--- BEGIN SOURCE ---\n"
                    f"{source_text[: self._max_source_chars]}\n"
                    "--- END SOURCE ---"
                ),
            },
            {"role": "user", "content": f"{instructions}\n\n{payload_json}"},
        ]

        try:
            response = await self._client.chat.completions.parse(
                model=self._deployment,
                messages=messages,
                response_format=output_schema,
            )
        except (ServiceResponseTimeoutError, APITimeoutError) as exc:
            raise EnrichmentFailure("timeout", str(exc)) from exc
        except (HttpResponseError, ClientAuthenticationError, Exception) as exc:
            raise EnrichmentFailure("unexpected_error", str(exc)) from exc

        message = response.choices[0].message
        parsed = getattr(message, "parsed", None)

        if parsed is None:
            if getattr(message, "refusal", None):
                raise EnrichmentFailure("refusal", message.refusal)
            raise EnrichmentFailure(
                "schema_violation", "Model returned no structured output"
            )

        return parsed
