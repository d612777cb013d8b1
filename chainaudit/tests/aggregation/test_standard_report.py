from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from chainaudit.app.aggregation.report_builder import (
    ReportContext,
    build_standard_report,
    overall_recommendation,
)
from chainaudit.app.schemas.audit_report import StandardAuditReport
from chainaudit.app.schemas.findings import Severity
from chainaudit.tests.helpers import make_finding


STARTED = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def _context(**overrides) -> ReportContext:
    values = dict(
        job_id="3f0c2a9e-1b7d-4c55-9a64-5e2d8c1f9ab7",
        project_name="vault",
        network="solana",
        platform="Solana",
        language="rust",
        started_at=STARTED,
        tools_used=["rust-parser", "solana-rules"],
        glossary={"PDA": "Program Derived Address"},
        methodology=["Static rule evaluation"],
        files_analyzed=1,
        total_lines=40,
    )
    values.update(overrides)
    return ReportContext(**values)


def test_summary_counts_match_findings():
    """
    Guarantees:
    - summary counts equal per-severity counts of the finding list
    - total_issues equals the finding count
    - report findings are numbered sequentially in input order
    """
    findings = [
        make_finding("c1", severity=Severity.CRITICAL, line=1),
        make_finding("h1", severity=Severity.HIGH, line=2),
        make_finding("h2", severity=Severity.HIGH, line=3),
        make_finding("l1", severity=Severity.LOW, line=4, category="code_quality"),
    ]

    report = build_standard_report(
        findings,
        context=_context(),
        finished_at=STARTED + timedelta(seconds=2),
    )

    summary = report.summary
    assert summary.total_issues == 4
    assert summary.critical == 1
    assert summary.high == 2
    assert summary.medium == 0
    assert summary.low == 1
    assert summary.informational == 0
    assert summary.security_score == 100 - 25 - 20 - 2
    assert summary.overall_risk_level == "Critical"
    assert summary.recommendation == (
        "URGENT: Fix 1 critical issue immediately before deployment."
    )
    assert summary.deployment_readiness.startswith("NOT READY")

    assert [f.id for f in report.findings] == ["FND-001", "FND-002", "FND-003", "FND-004"]
    assert [f.finding_id for f in report.findings] == ["c1", "h1", "h2", "l1"]


def test_metadata_and_appendix():
    report = build_standard_report(
        [make_finding(line=5)],
        context=_context(),
        finished_at=STARTED + timedelta(milliseconds=1500),
    )

    metadata = report.report_metadata
    assert metadata.report_id == "AUDIT-2026-8C1F9AB7"
    assert metadata.platform == "Solana"
    assert metadata.target_contract == "vault"
    assert metadata.audit_date.tzinfo is not None

    appendix = report.appendix
    assert appendix.analysis_duration_ms == 1500
    assert appendix.tools_used == ["rust-parser", "solana-rules"]
    assert appendix.glossary == {"PDA": "Program Derived Address"}
    assert appendix.code_coverage.files_analyzed == 1
    assert appendix.code_coverage.files_with_findings == 1
    assert appendix.enrichment_status == "not_requested"
    assert report.enrichment is None


def test_empty_report_is_clean():
    report = build_standard_report([], context=_context())

    assert report.summary.total_issues == 0
    assert report.summary.security_score == 100
    assert report.summary.overall_risk_level == "Low"
    assert report.summary.recommendation == (
        "Code shows good security practices for Solana development."
    )
    assert report.summary.risk_factors == ["Low security risk profile"]
    assert report.findings == []
    assert report.categories == []


def test_categories_and_recommendations():
    findings = [
        make_finding("a", category="access_control", severity=Severity.CRITICAL, line=1),
        make_finding("b", category="access_control", severity=Severity.MEDIUM, line=2),
        make_finding("c", category="arithmetic_safety", severity=Severity.HIGH, line=3),
    ]

    report = build_standard_report(findings, context=_context())

    by_category = {c.category: c for c in report.categories}
    assert by_category["access_control"].count == 2
    assert by_category["access_control"].highest_severity == Severity.CRITICAL
    assert by_category["arithmetic_safety"].count == 1

    recommendations = report.recommendations
    assert recommendations.immediate[0] == "Address 1 critical security issue immediately"
    assert any("checked arithmetic" in r for r in recommendations.architectural)
    assert len(recommendations.short_term) == 2


def test_overall_recommendation_cascade():
    assert overall_recommendation(0, 2, 0, platform="NEAR Protocol") == (
        "Fix 2 high severity issues before deployment."
    )
    assert overall_recommendation(0, 0, 3, platform="NEAR Protocol") == (
        "Address 3 medium severity issues to improve security."
    )


def test_report_rejects_inconsistent_summary():
    report = build_standard_report(
        [make_finding(severity=Severity.HIGH)],
        context=_context(),
    )
    payload = report.model_dump()
    payload["summary"]["high"] = 0

    with pytest.raises(ValidationError):
        StandardAuditReport.model_validate(payload)


def test_capped_report_keeps_full_summary():
    """
    Guarantees:
    - max_findings caps only the rendered finding list
    - summary counts, score and categories cover every finding
    - the number of findings left out is recorded in the appendix
    """
    findings = [
        make_finding("c1", severity=Severity.CRITICAL, line=1),
        make_finding("h1", severity=Severity.HIGH, line=2),
        make_finding("h2", severity=Severity.HIGH, line=3),
        make_finding("m1", severity=Severity.MEDIUM, line=4),
    ]

    report = build_standard_report(findings, context=_context(), max_findings=2)

    assert [f.severity for f in report.findings] == [Severity.CRITICAL, Severity.HIGH]
    assert report.summary.total_issues == 4
    assert report.summary.high == 2
    assert report.summary.medium == 1
    assert report.summary.security_score == 50
    assert sum(c.count for c in report.categories) == 4
    assert report.appendix.findings_omitted == 2

    uncapped = build_standard_report(findings, context=_context())
    assert uncapped.appendix.findings_omitted == 0
    assert len(uncapped.findings) == 4
