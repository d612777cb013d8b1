"""
Finding aggregation.

Turns a raw, possibly overlapping finding list into the final ordered
list that a report is built from.

Order of operations (FIXED):
1. Deduplicate by signature (category, file, line, normalized snippet)
2. Drop false positives (confidence threshold, test/demo/doc heuristics,
   severity threshold)
3. Rank by (severity desc, exploitability desc, confidence desc)

IMPORTANT:
- Report summaries MUST be computed from the output of aggregate(),
  never from the raw input.
- On a duplicate, the first-seen finding wins; only its confidence may
  be raised to the maximum seen.
"""

from __future__ import annotations

import re
from typing import Dict, Iterable, List, Tuple

from chainaudit.app.schemas.audit_report import RiskLevel
from chainaudit.app.schemas.findings import Finding, Severity


DEFAULT_CONFIDENCE_THRESHOLD = 0.3

SEVERITY_WEIGHTS: Dict[Severity, int] = {
    Severity.CRITICAL: 25,
    Severity.HIGH: 10,
    Severity.MEDIUM: 5,
    Severity.LOW: 2,
    Severity.INFORMATIONAL: 0,
}

# Whole words in a path or title: tests/, test_utils.rs, src/testing.rs,
# examples/demo.rs, doc_helpers.rs, docs/, README.md. "contest" or
# "documentation" do not match.
_NON_PRODUCTION_WORD = re.compile(
    r"(?<![a-z0-9])(tests?|testing|examples?|demos?|samples?|docs?|readme)(?![a-z0-9])",
    re.IGNORECASE,
)

_WHITESPACE = re.compile(r"\s+")


Signature = Tuple[str, str, int, str]


# ----------------------------------------------------------------------
# Deduplication
# ----------------------------------------------------------------------


def normalize_snippet(snippet: str) -> str:
    return _WHITESPACE.sub(" ", snippet).strip().lower()


def finding_signature(finding: Finding) -> Signature:
    return (
        finding.category,
        finding.location.file,
        finding.location.start_line,
        normalize_snippet(finding.location.snippet),
    )


def deduplicate(findings: Iterable[Finding]) -> List[Finding]:
    """
    Collapse findings with identical signatures.

    Idempotent: deduplicate(deduplicate(x)) == deduplicate(x).
    """
    merged: Dict[Signature, Finding] = {}

    for finding in findings:
        signature = finding_signature(finding)
        existing = merged.get(signature)

        if existing is None:
            merged[signature] = finding
            continue

        if finding.confidence > existing.confidence:
            merged[signature] = existing.model_copy(
                update={"confidence": finding.confidence}
            )

    return list(merged.values())


# ----------------------------------------------------------------------
# False-positive filtering
# ----------------------------------------------------------------------


def is_non_production(finding: Finding) -> bool:
    """
    True when the finding points at test, example, demo or doc material.
    """
    return bool(
        _NON_PRODUCTION_WORD.search(finding.location.file)
        or _NON_PRODUCTION_WORD.search(finding.title)
    )


def filter_false_positives(
    findings: Iterable[Finding],
    *,
    confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
    severity_threshold: Severity = Severity.INFORMATIONAL,
) -> List[Finding]:
    return [
        f
        for f in findings
        if f.confidence >= confidence_threshold
        and f.severity.rank >= severity_threshold.rank
        and not is_non_production(f)
    ]


# ----------------------------------------------------------------------
# Ranking and scoring
# ----------------------------------------------------------------------


def rank_findings(findings: Iterable[Finding]) -> List[Finding]:
    # sorted() is stable, ties keep their incoming order
    return sorted(
        findings,
        key=lambda f: (-f.severity.rank, -f.exploitability, -f.confidence),
    )


def count_by_severity(findings: Iterable[Finding]) -> Dict[Severity, int]:
    counts = {severity: 0 for severity in Severity}
    for finding in findings:
        counts[finding.severity] += 1
    return counts


def compute_security_score(counts: Dict[Severity, int]) -> int:
    penalty = sum(
        SEVERITY_WEIGHTS[severity] * counts.get(severity, 0)
        for severity in SEVERITY_WEIGHTS
    )
    return max(0, min(100, 100 - penalty))


def determine_risk_level(counts: Dict[Severity, int]) -> RiskLevel:
    critical = counts.get(Severity.CRITICAL, 0)
    high = counts.get(Severity.HIGH, 0)
    medium = counts.get(Severity.MEDIUM, 0)

    if critical > 0:
        return "Critical"
    if high > 2:
        return "High"
    if high > 0 or medium > 5:
        return "Medium"
    return "Low"


# ----------------------------------------------------------------------
# Aggregator
# ----------------------------------------------------------------------


class FindingAggregator:
    """
    Deterministic dedup / filter / rank pipeline for one job.
    """

    def __init__(
        self,
        *,
        confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
        severity_threshold: Severity = Severity.INFORMATIONAL,
    ) -> None:
        self.confidence_threshold = confidence_threshold
        self.severity_threshold = severity_threshold

    def aggregate(self, findings: Iterable[Finding]) -> List[Finding]:
        unique = deduplicate(findings)
        kept = filter_false_positives(
            unique,
            confidence_threshold=self.confidence_threshold,
            severity_threshold=self.severity_threshold,
        )
        return rank_findings(kept)
