"""
Standardized finding schema.

Defines the canonical structure used to report security issues
identified by every analysis stage (static rules, semantic rules,
AI enrichment and external tools).

This schema is:
- immutable once created
- severity-graded with a total order
- confidence- and exploitability-scored
- stage-traceable through the source tag

The only sanctioned change after creation is raising confidence while
merging duplicates, which is done with model_copy(update=...).
"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator
from pydantic import ConfigDict


# ---------------------------------------------------------------------------
# Enumerations (FROZEN CONTRACTS)
# ---------------------------------------------------------------------------


class Severity(str, Enum):
    """
    Severity level of a finding.

    Ordering is intentional and MUST remain stable:
    critical > high > medium > low > informational
    """

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFORMATIONAL = "informational"

    @property
    def rank(self) -> int:
        return SEVERITY_RANK[self]


SEVERITY_RANK = {
    Severity.CRITICAL: 4,
    Severity.HIGH: 3,
    Severity.MEDIUM: 2,
    Severity.LOW: 1,
    Severity.INFORMATIONAL: 0,
}

# Highest first
SEVERITY_ORDER: List[Severity] = sorted(
    SEVERITY_RANK, key=SEVERITY_RANK.get, reverse=True
)


class FindingSource(str, Enum):
    """
    Originating stage family of the finding.
    """

    STATIC = "static"
    SEMANTIC = "semantic"
    AI = "ai"
    EXTERNAL = "external"


# ---------------------------------------------------------------------------
# Location
# ---------------------------------------------------------------------------


class SourceLocation(BaseModel):
    file: str = Field(..., description="Path of the file as uploaded")
    start_line: int = Field(..., ge=0, description="1-based start line (0 = whole file)")
    end_line: Optional[int] = Field(None, ge=0)
    function: Optional[str] = Field(
        None,
        description="Enclosing function, when known",
    )
    snippet: str = Field("", description="Offending source text")

    @model_validator(mode="after")
    def end_not_before_start(self) -> "SourceLocation":
        if self.end_line is not None and self.end_line < self.start_line:
            raise ValueError("end_line must not precede start_line")
        return self

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )


# ---------------------------------------------------------------------------
# Canonical Finding (PUBLIC, FROZEN)
# ---------------------------------------------------------------------------


class Finding(BaseModel):
    """
    Canonical audit finding.

    Represents a single reported issue with its location and
    remediation guidance.
    """

    id: str = Field(
        ...,
        description=(
            "Stable identifier for the finding, "
            "e.g. 'SOL-003-3b7c0e4c1a2f'."
        ),
    )

    title: str = Field(..., description="Short human-readable summary")

    description: str = Field(..., description="What the issue is")

    severity: Severity

    confidence: float = Field(
        ...,
        ge=0.0,
        le=1.0,
        description="How certain the analyzer is that the issue exists",
    )

    exploitability: float = Field(
        0.5,
        ge=0.0,
        le=1.0,
        description="How practical exploitation is",
    )

    category: str = Field(
        ...,
        description="Free-form grouping key, e.g. 'access_control'",
    )

    location: SourceLocation

    recommendation: str = Field("", description="Advisory remediation")

    references: List[str] = Field(default_factory=list)

    source: FindingSource

    rule_id: Optional[str] = Field(
        None,
        description="Identifier of the rule or tool check that fired",
    )

    cwe: Optional[str] = None

    tool: Optional[str] = Field(
        None,
        description="External tool or model that produced the finding",
    )

    impact: Optional[str] = Field(
        None,
        description="Consequence if the issue is exploited",
    )

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )
