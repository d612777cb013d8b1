"""
Standard audit report.

The StandardAuditReport is the single authoritative output of an audit.
It is produced exactly once per job by the finding aggregator and is
immutable thereafter.

IMPORTANT:
- Summary counts MUST equal the counts derivable from the finding list.
  This is enforced at construction time.
- Optional report enrichment may add narrative (the enrichment block)
  but never changes findings or counts.
"""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from chainaudit.app.schemas.findings import FindingSource, Severity


RiskLevel = Literal["Critical", "High", "Medium", "Low"]
EnrichmentStatus = Literal["not_requested", "applied", "failed"]


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------


class ReportMetadata(BaseModel):
    report_id: str = Field(..., description="e.g. 'AUDIT-2026-1A2B3C4D'")
    job_id: str
    platform: str = Field(..., description="Network display name")
    network: str
    language: str
    auditor: str = "ChainAudit Engine"
    version: str = "1.0"
    audit_date: datetime
    target_contract: str

    model_config = ConfigDict(frozen=True, extra="forbid")


class ReportSummary(BaseModel):
    total_issues: int
    critical: int
    high: int
    medium: int
    low: int
    informational: int
    security_score: int = Field(..., ge=0, le=100)
    overall_risk_level: RiskLevel
    recommendation: str
    score_interpretation: str
    deployment_readiness: str
    risk_factors: List[str] = Field(default_factory=list)

    def count_for(self, severity: Severity) -> int:
        return getattr(self, severity.value)

    model_config = ConfigDict(frozen=True, extra="forbid")


class ReportFinding(BaseModel):
    """
    A finding as presented in the report (sequential id, flattened location).
    """

    id: str = Field(..., description="Sequential report id, e.g. 'FND-001'")
    finding_id: str = Field(..., description="Stable analyzer finding id")
    title: str
    severity: Severity
    description: str
    category: str
    confidence: float
    exploitability: float
    source: FindingSource
    status: Literal["Unresolved"] = "Unresolved"
    affected_files: List[str]
    line_numbers: List[int]
    function: Optional[str] = None
    code_snippet: str = ""
    recommendation: str = ""
    references: List[str] = Field(default_factory=list)
    rule_id: Optional[str] = None
    cwe: Optional[str] = None
    tool: Optional[str] = None
    impact: Optional[str] = None

    model_config = ConfigDict(frozen=True, extra="forbid")


class CategorySummary(BaseModel):
    category: str
    count: int
    highest_severity: Severity
    average_confidence: float

    model_config = ConfigDict(frozen=True, extra="forbid")


class Recommendations(BaseModel):
    immediate: List[str] = Field(default_factory=list)
    short_term: List[str] = Field(default_factory=list)
    long_term: List[str] = Field(default_factory=list)
    architectural: List[str] = Field(default_factory=list)
    security_best_practices: List[str] = Field(default_factory=list)
    testing_and_validation: List[str] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True, extra="forbid")


class CodeCoverage(BaseModel):
    files_analyzed: int
    total_lines: int
    files_with_findings: int
    lines_flagged: int

    model_config = ConfigDict(frozen=True, extra="forbid")


class Appendix(BaseModel):
    tools_used: List[str] = Field(default_factory=list)
    glossary: Dict[str, str] = Field(default_factory=dict)
    methodology: List[str] = Field(default_factory=list)
    analysis_duration_ms: int = 0
    code_coverage: CodeCoverage
    enrichment_status: EnrichmentStatus = "not_requested"
    findings_omitted: int = Field(0, ge=0)

    model_config = ConfigDict(frozen=True, extra="forbid")


class ReportEnrichment(BaseModel):
    """
    Advisory narrative added by the enrichment service.
    """

    provider: str
    executive_summary: str
    additional_recommendations: List[str] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True, extra="forbid")


# ---------------------------------------------------------------------------
# Top-level report (PUBLIC, FROZEN)
# ---------------------------------------------------------------------------


class StandardAuditReport(BaseModel):
    report_metadata: ReportMetadata
    summary: ReportSummary
    findings: List[ReportFinding]
    categories: List[CategorySummary] = Field(default_factory=list)
    recommendations: Recommendations
    appendix: Appendix
    enrichment: Optional[ReportEnrichment] = None

    @model_validator(mode="after")
    def summary_matches_findings(self) -> "StandardAuditReport":
        omitted = self.appendix.findings_omitted
        if self.summary.total_issues != len(self.findings) + omitted:
            raise ValueError(
                "summary.total_issues does not match the number of findings"
            )
        for severity in Severity:
            actual = sum(1 for f in self.findings if f.severity == severity)
            expected = self.summary.count_for(severity)
            # A capped list may hold fewer findings of a severity, never more
            if actual != expected and not (omitted and actual < expected):
                raise ValueError(
                    f"summary.{severity.value} does not match the finding list"
                )
        return self

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )
