"""
Azure OpenAI enrichment service tests.

The OpenAI client is replaced by a fake exposing
`chat.completions.parse`; no network access happens.
"""

from __future__ import annotations

from datetime import datetime, timezone
from types import SimpleNamespace

import anyio
import pytest
from azure.core.exceptions import ServiceResponseTimeoutError

from chainaudit.app.aggregation.report_builder import ReportContext, build_standard_report
from chainaudit.app.enrichment.azure_openai import (
    AIFindingDraft,
    AIFindingsOutput,
    AzureOpenAIEnrichmentService,
    ReportInsightsOutput,
    draft_to_finding,
)
from chainaudit.app.errors import EnrichmentFailure
from chainaudit.app.events import AuditEventType
from chainaudit.app.schemas.findings import FindingSource, Severity
from chainaudit.tests.helpers import ListEventEmitter, make_finding


# ----------------------------------------------------------------------
# Test doubles
# ----------------------------------------------------------------------
class FakeCompletions:
    def __init__(self, *, parsed=None, refusal=None, error=None) -> None:
        self.parsed = parsed
        self.refusal = refusal
        self.error = error
        self.requests = []

    async def parse(self, *, model, messages, response_format):
        self.requests.append(
            {"model": model, "messages": messages, "response_format": response_format}
        )
        if self.error is not None:
            raise self.error
        message = SimpleNamespace(parsed=self.parsed, refusal=self.refusal)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _service(completions: FakeCompletions) -> AzureOpenAIEnrichmentService:
    client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    return AzureOpenAIEnrichmentService(deployment="audit-gpt", client=client)


def _context() -> ReportContext:
    return ReportContext(
        job_id="job-enrich-0001",
        project_name="vault",
        network="solana",
        platform="Solana",
        language="rust",
        started_at=datetime(2026, 1, 5, 9, 30, tzinfo=timezone.utc),
    )


def _draft(**overrides) -> AIFindingDraft:
    values = dict(
        title="Unbounded Loop Over Accounts",
        description="Iterates over all remaining accounts.",
        severity=Severity.MEDIUM,
        confidence=1.4,
        exploitability=-0.2,
        category="resource_management",
        file="src/lib.rs",
        line=22,
        snippet="for account in accounts.iter() {",
        recommendation="Bound the number of accounts processed.",
    )
    values.update(overrides)
    return AIFindingDraft(**values)


# ----------------------------------------------------------------------
# Finding mode
# ----------------------------------------------------------------------
def test_ai_findings_are_appended_and_normalized():
    """
    Guarantees:
    - existing findings are returned unchanged and first
    - drafts become canonical AI findings with clamped scores
    - drafts with an already-known id are not duplicated
    """

    async def _run():
        draft = _draft()
        duplicate_id = draft_to_finding(draft, network="solana").id
        existing = [make_finding("F-1"), make_finding(duplicate_id, line=22)]
        completions = FakeCompletions(parsed=AIFindingsOutput(findings=[draft, _draft(line=40)]))

        result = await _service(completions).enhance(
            existing,
            source_text="fn main() {}",
            network="solana",
        )

        assert result[:2] == existing
        assert len(result) == 3
        added = result[2]
        assert added.source == FindingSource.AI
        assert added.location.start_line == 40
        assert added.confidence == 1.0
        assert added.exploitability == 0.0
        assert added.tool == "azure-openai"
        assert added.id.startswith("AI-")

        request = completions.requests[0]
        assert request["model"] == "audit-gpt"
        assert request["response_format"] is AIFindingsOutput
        assert "fn main() {}" in request["messages"][1]["content"]

    anyio.run(_run)


def test_source_text_is_truncated():
    async def _run():
        completions = FakeCompletions(parsed=AIFindingsOutput(findings=[]))
        client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
        service = AzureOpenAIEnrichmentService(
            deployment="audit-gpt", client=client, max_source_chars=10
        )

        await service.enhance([], source_text="x" * 50, network="near")

        content = completions.requests[0]["messages"][1]["content"]
        assert "x" * 10 in content
        assert "x" * 11 not in content

    anyio.run(_run)


# ----------------------------------------------------------------------
# Report mode
# ----------------------------------------------------------------------
def test_report_enrichment_is_advisory():
    async def _run():
        report = build_standard_report([make_finding("F-1")], context=_context())
        completions = FakeCompletions(
            parsed=ReportInsightsOutput(
                executive_summary="One high severity issue.",
                additional_recommendations=["Add fuzzing"],
            )
        )

        enriched = await _service(completions).enhance(
            report,
            source_text="fn main() {}",
            network="solana",
        )

        assert enriched.enrichment.provider == "azure_openai"
        assert enriched.enrichment.executive_summary == "One high severity issue."
        assert enriched.enrichment.additional_recommendations == ["Add fuzzing"]
        assert enriched.appendix.enrichment_status == "applied"
        assert enriched.findings == report.findings
        assert enriched.summary == report.summary
        assert report.enrichment is None

    anyio.run(_run)


# ----------------------------------------------------------------------
# Failure mapping
# ----------------------------------------------------------------------
@pytest.mark.parametrize(
    "completions, failure_type",
    [
        (FakeCompletions(error=ServiceResponseTimeoutError("slow")), "timeout"),
        (FakeCompletions(error=RuntimeError("boom")), "unexpected_error"),
        (FakeCompletions(parsed=None, refusal="I cannot help"), "refusal"),
        (FakeCompletions(parsed=None), "schema_violation"),
    ],
)
def test_provider_failures_are_normalized(completions, failure_type):
    async def _run():
        with pytest.raises(EnrichmentFailure) as excinfo:
            await _service(completions).enhance(
                [make_finding()],
                source_text="",
                network="solana",
            )

        assert excinfo.value.failure_type == failure_type

    anyio.run(_run)


def test_enrichment_events_report_outcome():
    async def _run():
        events = ListEventEmitter()
        failing = FakeCompletions(parsed=None, refusal="no")

        with pytest.raises(EnrichmentFailure):
            await _service(failing).enhance(
                [],
                source_text="",
                network="solana",
                audit_id="job-ai",
                emitter=events,
            )

        assert events.types() == [
            AuditEventType.ENRICHMENT_STARTED,
            AuditEventType.ENRICHMENT_COMPLETED,
        ]
        completed = events.events[-1].details
        assert completed["success"] is False
        assert completed["failure_type"] == "refusal"
        assert completed["mode"] == "findings"

    anyio.run(_run)


def test_unsupported_value_type_is_rejected():
    async def _run():
        with pytest.raises(TypeError):
            await _service(FakeCompletions()).enhance(
                "not a report", source_text="", network="solana"
            )

    anyio.run(_run)


# ----------------------------------------------------------------------
# Construction
# ----------------------------------------------------------------------
def test_managed_identity_construction_without_api_keys(monkeypatch):
    """
    Guarantees:
    - the service can be constructed with Entra ID credentials only
    - no API keys are required at initialization time
    """

    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("AZURE_OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("AZURE_CLIENT_SECRET", raising=False)

    service = AzureOpenAIEnrichmentService(
        endpoint="https://example.openai.azure.com",
        deployment="dummy-deployment",
        api_version="2024-08-01-preview",
    )

    assert service.provider == "azure_openai"
