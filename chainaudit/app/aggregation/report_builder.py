"""
Standard report synthesis.

Builds the StandardAuditReport from an already aggregated finding list
(deduplicated, filtered, ranked). Every summary figure is derived from
that list; nothing here inspects source code.
"""

from __future__ import annotations

from collections import OrderedDict
from datetime import datetime, timezone
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from chainaudit.app.aggregation.aggregator import (
    compute_security_score,
    count_by_severity,
    determine_risk_level,
)
from chainaudit.app.schemas.audit_report import (
    Appendix,
    CategorySummary,
    CodeCoverage,
    Recommendations,
    ReportFinding,
    ReportMetadata,
    ReportSummary,
    StandardAuditReport,
)
from chainaudit.app.schemas.findings import Finding, Severity


class ReportContext(BaseModel):
    """
    Job-level facts the report needs besides the findings.
    """

    job_id: str
    project_name: str
    network: str
    platform: str
    language: str
    started_at: datetime
    tools_used: List[str] = Field(default_factory=list)
    glossary: Dict[str, str] = Field(default_factory=dict)
    methodology: List[str] = Field(default_factory=list)
    files_analyzed: int = 0
    total_lines: int = 0

    model_config = ConfigDict(frozen=True, extra="forbid")


# ----------------------------------------------------------------------
# Narrative helpers
# ----------------------------------------------------------------------


def _plural(count: int, noun: str) -> str:
    return f"{count} {noun}{'' if count == 1 else 's'}"


def overall_recommendation(critical: int, high: int, medium: int, *, platform: str) -> str:
    if critical > 0:
        return (
            f"URGENT: Fix {_plural(critical, 'critical issue')} "
            "immediately before deployment."
        )
    if high > 0:
        return f"Fix {_plural(high, 'high severity issue')} before deployment."
    if medium > 0:
        return (
            f"Address {_plural(medium, 'medium severity issue')} "
            "to improve security."
        )
    return f"Code shows good security practices for {platform} development."


def interpret_security_score(score: int) -> str:
    if score >= 90:
        return "Excellent - Strong security posture with minimal vulnerabilities"
    if score >= 70:
        return "Good - Solid security foundation with some areas for improvement"
    if score >= 50:
        return "Fair - Moderate security issues that should be addressed"
    if score >= 30:
        return "Poor - Significant security concerns requiring immediate attention"
    return "Critical - Severe security issues posing immediate risk"


def assess_deployment_readiness(critical: int, high: int, medium: int) -> str:
    if critical > 0:
        return "NOT READY - Critical issues must be resolved before deployment"
    if high > 3:
        return "NOT RECOMMENDED - Multiple high-severity issues require resolution"
    if high > 0:
        return "CONDITIONAL - High-severity issues should be addressed before deployment"
    if medium > 10:
        return "REVIEW REQUIRED - Consider addressing medium-severity issues"
    return "READY - No blocking security issues identified"


def identify_risk_factors(critical: int, high: int, medium: int) -> List[str]:
    factors: List[str] = []
    if critical > 0:
        factors.append("Critical security vulnerabilities present")
    if high > 2:
        factors.append("Multiple high-severity issues detected")
    if medium > 5:
        factors.append("Significant number of medium-severity issues")
    if critical + high > 10:
        factors.append("High vulnerability density")
    return factors or ["Low security risk profile"]


def build_recommendations(
    findings: List[Finding],
    counts: Dict[Severity, int],
    categories: List[CategorySummary],
) -> Recommendations:
    critical = counts[Severity.CRITICAL]
    high = counts[Severity.HIGH]

    immediate: List[str] = []
    if critical > 0:
        immediate.append(
            f"Address {_plural(critical, 'critical security issue')} immediately"
        )
        immediate.append("Do not deploy to mainnet until critical issues are resolved")
    if high > 0:
        immediate.append(
            f"Schedule an immediate fix for {_plural(high, 'high-severity issue')}"
        )
    for finding in findings:
        if finding.severity == Severity.CRITICAL and finding.recommendation:
            immediate.append(f"{finding.title}: {finding.recommendation}")

    short_term = [
        f"{finding.title}: {finding.recommendation}"
        for finding in findings
        if finding.severity in (Severity.HIGH, Severity.MEDIUM)
        and finding.recommendation
    ]

    long_term = [
        f"Review {summary.category.replace('_', ' ')} patterns "
        f"({summary.count} related findings)"
        for summary in categories
        if summary.count >= 3
    ]
    long_term.append("Integrate automated security scanning into CI/CD")

    architectural: List[str] = []
    category_names = {summary.category for summary in categories}
    if "access_control" in category_names:
        architectural.append(
            "Centralize authorization checks instead of repeating them per instruction"
        )
    if category_names & {"cross_program_invocation", "cross_contract_calls"}:
        architectural.append(
            "Restrict external call targets to an explicit allow-list of program ids"
        )
    if "arithmetic_safety" in category_names:
        architectural.append(
            "Adopt checked arithmetic helpers for all balance and supply math"
        )

    return Recommendations(
        immediate=immediate,
        short_term=short_term,
        long_term=long_term,
        architectural=architectural,
        security_best_practices=[
            "Validate every account or caller before acting on it",
            "Keep privileged operations behind explicit authority checks",
            "Pin and audit dependency versions",
        ],
        testing_and_validation=[
            "Unit-cover every privileged instruction, including failure paths",
            "Fuzz inputs that reach arithmetic on balances",
            "Add integration coverage for cross-program or cross-contract flows",
        ],
    )


def summarize_categories(findings: List[Finding]) -> List[CategorySummary]:
    grouped: "OrderedDict[str, List[Finding]]" = OrderedDict()
    for finding in findings:
        grouped.setdefault(finding.category, []).append(finding)

    summaries = []
    for category, items in grouped.items():
        summaries.append(
            CategorySummary(
                category=category,
                count=len(items),
                highest_severity=max(
                    (f.severity for f in items), key=lambda s: s.rank
                ),
                average_confidence=round(
                    sum(f.confidence for f in items) / len(items), 2
                ),
            )
        )
    return summaries


def to_report_finding(index: int, finding: Finding) -> ReportFinding:
    location = finding.location
    lines = [location.start_line]
    if location.end_line is not None and location.end_line != location.start_line:
        lines.append(location.end_line)

    return ReportFinding(
        id=f"FND-{index:03d}",
        finding_id=finding.id,
        title=finding.title,
        severity=finding.severity,
        description=finding.description,
        category=finding.category,
        confidence=finding.confidence,
        exploitability=finding.exploitability,
        source=finding.source,
        affected_files=[location.file],
        line_numbers=lines,
        function=location.function,
        code_snippet=location.snippet,
        recommendation=finding.recommendation,
        references=list(finding.references),
        rule_id=finding.rule_id,
        cwe=finding.cwe,
        tool=finding.tool,
        impact=finding.impact,
    )


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------


def build_standard_report(
    findings: List[Finding],
    *,
    context: ReportContext,
    finished_at: Optional[datetime] = None,
    max_findings: Optional[int] = None,
) -> StandardAuditReport:
    """
    Construct the final immutable StandardAuditReport.

    `findings` MUST already be aggregated. Summary, score, categories
    and coverage describe every finding; `max_findings` only caps the
    rendered findings list, and the remainder is counted in
    `appendix.findings_omitted`.
    """
    finished_at = finished_at or datetime.now(timezone.utc)

    counts = count_by_severity(findings)
    critical = counts[Severity.CRITICAL]
    high = counts[Severity.HIGH]
    medium = counts[Severity.MEDIUM]

    score = compute_security_score(counts)
    categories = summarize_categories(findings)

    summary = ReportSummary(
        total_issues=len(findings),
        critical=critical,
        high=high,
        medium=medium,
        low=counts[Severity.LOW],
        informational=counts[Severity.INFORMATIONAL],
        security_score=score,
        overall_risk_level=determine_risk_level(counts),
        recommendation=overall_recommendation(
            critical, high, medium, platform=context.platform
        ),
        score_interpretation=interpret_security_score(score),
        deployment_readiness=assess_deployment_readiness(critical, high, medium),
        risk_factors=identify_risk_factors(critical, high, medium),
    )

    flagged_files = {f.location.file for f in findings}
    lines_flagged = sum(
        (f.location.end_line or f.location.start_line) - f.location.start_line + 1
        for f in findings
    )

    listed = findings if max_findings is None else findings[:max_findings]

    appendix = Appendix(
        tools_used=list(context.tools_used),
        glossary=dict(context.glossary),
        methodology=list(context.methodology),
        analysis_duration_ms=max(
            0, int((finished_at - context.started_at).total_seconds() * 1000)
        ),
        code_coverage=CodeCoverage(
            files_analyzed=context.files_analyzed,
            total_lines=context.total_lines,
            files_with_findings=len(flagged_files),
            lines_flagged=lines_flagged,
        ),
        findings_omitted=len(findings) - len(listed),
    )

    return StandardAuditReport(
        report_metadata=ReportMetadata(
            report_id=(
                f"AUDIT-{finished_at.year}-{context.job_id[-8:].upper()}"
            ),
            job_id=context.job_id,
            platform=context.platform,
            network=context.network,
            language=context.language,
            audit_date=finished_at,
            target_contract=context.project_name or context.job_id,
        ),
        summary=summary,
        findings=[
            to_report_finding(i, finding)
            for i, finding in enumerate(listed, start=1)
        ],
        categories=categories,
        recommendations=build_recommendations(findings, counts, categories),
        appendix=appendix,
    )
