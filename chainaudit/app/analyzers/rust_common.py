"""
Shared Rust analysis for Rust-based networks (Solana, NEAR).

This module provides:
- preprocessing (sanitization, secret redaction, file classification,
  complexity, hashing, Cargo dependency extraction, project metadata)
- a coarse structural parser (functions, structs, imports, call
  cross references) built on regular expressions
- the RustNetworkAnalyzer base, which implements every stage of the
  analyzer contract except the network-specific rule sets

IMPORTANT:
- Sanitization MUST preserve line numbers so findings point at the
  uploaded source.
- The parser is heuristic. It is not a Rust front end and never raises
  on unparseable input; it simply finds less.
"""

from __future__ import annotations

import logging
import re
import tempfile
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from chainaudit.app.aggregation.aggregator import FindingAggregator
from chainaudit.app.aggregation.report_builder import (
    ReportContext,
    build_standard_report,
)
from chainaudit.app.enrichment.service import EnrichmentService
from chainaudit.app.events import AuditEventEmitter, NullEventEmitter
from chainaudit.app.registry.capabilities import CapabilityEntry, NetworkSettings
from chainaudit.app.schemas.analysis import (
    CrossReference,
    Dependency,
    FileType,
    FunctionInfo,
    ImportInfo,
    ParsedFile,
    ParseResult,
    PreprocessResult,
    ProcessedFile,
    ProjectMetadata,
    StructInfo,
)
from chainaudit.app.schemas.audit_report import StandardAuditReport
from chainaudit.app.schemas.audit_request import AuditRequest
from chainaudit.app.schemas.findings import (
    Finding,
    FindingSource,
    Severity,
    SourceLocation,
)
from chainaudit.app.tools.runner import ExternalToolRunner
from chainaudit.app.utils.hashing import compute_content_hash, stable_identifier

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Preprocessing
# ---------------------------------------------------------------------------

# String and char literals are matched first so "https://..." or "/*" inside
# a literal is never taken for a comment.
_LITERAL_OR_COMMENT = re.compile(
    r"""(?P<literal>"(?:\\.|[^"\\])*"|'(?:\\.|[^'\\\n])')"""
    r"|(?P<block>/\*.*?\*/)"
    r"|//[^\n]*",
    re.DOTALL,
)
_SECRET_ASSIGNMENT = re.compile(
    r"""(secret|private_key|seed)(\s*[:=]\s*)(["'])[^"']*\3""",
    re.IGNORECASE,
)
_COMPLEXITY_KEYWORDS = re.compile(r"\b(if|while|for|match|loop)\b")
_TOML_SECTION = re.compile(r"^\s*\[([^\]]+)\]\s*$")
_TOML_DEPENDENCY = re.compile(
    r"""^\s*([\w-]+)\s*=\s*(?:"([^"]+)"|\{[^}]*?version\s*=\s*"([^"]+)"[^}]*\})""",
)


def _drop_comment(match: "re.Match[str]") -> str:
    if match.group("literal"):
        return match.group(0)
    if match.group("block"):
        return "\n" * match.group(0).count("\n")
    return ""


def sanitize_rust_source(code: str) -> str:
    """
    Strip comments and redact literal secrets, preserving line numbers.
    """
    code = _LITERAL_OR_COMMENT.sub(_drop_comment, code)
    return _SECRET_ASSIGNMENT.sub(r'\1\2"REDACTED"', code)


def redact_secrets(text: str) -> str:
    return _SECRET_ASSIGNMENT.sub(r'\1\2"REDACTED"', text)


def classify_file(path: str, *, config_files: Iterable[str] = ("Cargo.toml",)) -> FileType:
    name = PurePosixPath(path).name
    lowered = name.lower()

    if lowered.endswith(".rs"):
        return "source"
    if name in set(config_files) or lowered == "cargo.lock":
        return "config"
    if lowered.startswith("readme") or lowered.endswith(".md"):
        return "documentation"
    return "dependency"


def calculate_complexity(code: str) -> int:
    return 1 + len(_COMPLEXITY_KEYWORDS.findall(code))


def extract_cargo_dependencies(manifest: str, content: str) -> List[Dependency]:
    """
    Extract dependencies from every *dependencies table of a Cargo manifest.
    """
    dependencies: List[Dependency] = []
    in_dependency_table = False

    for line in content.splitlines():
        section = _TOML_SECTION.match(line)
        if section:
            in_dependency_table = section.group(1).strip().endswith("dependencies")
            continue
        if not in_dependency_table:
            continue

        match = _TOML_DEPENDENCY.match(line)
        if match:
            dependencies.append(
                Dependency(
                    name=match.group(1),
                    version=match.group(2) or match.group(3),
                    manifest=manifest,
                )
            )

    return dependencies


# ---------------------------------------------------------------------------
# Structural parsing
# ---------------------------------------------------------------------------

_FUNCTION = re.compile(
    r"^[ \t]*(?P<vis>pub(?:\s*\([^)]*\))?\s+)?"
    r"(?:(?:async|const|unsafe|extern\s+\"[^\"]*\")\s+)*"
    r"fn\s+(?P<name>\w+)",
    re.MULTILINE,
)
_STRUCT = re.compile(
    r"^[ \t]*(?:pub(?:\s*\([^)]*\))?\s+)?struct\s+(?P<name>\w+)",
    re.MULTILINE,
)
_IMPORT = re.compile(r"^[ \t]*(?:pub\s+)?use\s+([^;]+);", re.MULTILINE)
_CALL = re.compile(r"\b(\w+)\s*(?:::<[^>]*>)?\s*\(")
_ATTRIBUTE = re.compile(r"^\s*#!?\[")


def line_of(text: str, index: int) -> int:
    return text.count("\n", 0, index) + 1


def _block_end(text: str, open_index: int) -> int:
    """
    Index just past the brace that closes the block opened at open_index.
    """
    depth = 0
    for i in range(open_index, len(text)):
        char = text[i]
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return i + 1
    return len(text)


def _item_extent(text: str, start: int) -> Tuple[int, int]:
    """
    (body_open, end) for the item starting at `start`.

    Items terminated by ';' before any '{' have no body (body_open == -1).
    """
    brace = text.find("{", start)
    semicolon = text.find(";", start)
    if brace == -1 or (semicolon != -1 and semicolon < brace):
        end = semicolon + 1 if semicolon != -1 else len(text)
        return -1, end
    return brace, _block_end(text, brace)


def _leading_attributes(text: str, start: int) -> List[str]:
    lines = text[:start].splitlines()
    attributes: List[str] = []
    for line in reversed(lines):
        stripped = line.strip()
        if not stripped:
            continue
        if _ATTRIBUTE.match(stripped) or (attributes and stripped.endswith(")]")):
            attributes.insert(0, stripped)
            continue
        break
    return attributes


def extract_functions(path: str, source: str) -> List[FunctionInfo]:
    functions: List[FunctionInfo] = []

    for match in _FUNCTION.finditer(source):
        body_open, end = _item_extent(source, match.end())
        if body_open == -1:
            # Trait method declaration without a body
            continue

        signature = " ".join(source[match.start():body_open].split())
        functions.append(
            FunctionInfo(
                name=match.group("name"),
                file=path,
                line=line_of(source, match.start()),
                end_line=line_of(source, end - 1),
                is_public=match.group("vis") is not None,
                attributes=_leading_attributes(source, match.start()),
                signature=signature,
                body=source[match.start():end],
            )
        )

    return functions


def extract_structs(path: str, source: str) -> List[StructInfo]:
    structs: List[StructInfo] = []

    for match in _STRUCT.finditer(source):
        body_open, end = _item_extent(source, match.end())
        structs.append(
            StructInfo(
                name=match.group("name"),
                file=path,
                line=line_of(source, match.start()),
                attributes=_leading_attributes(source, match.start()),
                body=source[match.start():end] if body_open != -1 else "",
            )
        )

    return structs


def extract_imports(path: str, source: str) -> List[ImportInfo]:
    return [
        ImportInfo(
            path=" ".join(match.group(1).split()),
            file=path,
            line=line_of(source, match.start()),
        )
        for match in _IMPORT.finditer(source)
    ]


def build_cross_references(files: List[ParsedFile]) -> List[CrossReference]:
    known = {fn.name for parsed in files for fn in parsed.functions}
    references: List[CrossReference] = []

    for parsed in files:
        for fn in parsed.functions:
            # Skip the signature so the function does not reference itself
            offset = fn.body.find("{")
            if offset == -1:
                continue
            for match in _CALL.finditer(fn.body, offset):
                callee = match.group(1)
                if callee in known and callee != fn.name:
                    references.append(
                        CrossReference(
                            caller=fn.name,
                            callee=callee,
                            file=fn.file,
                            line=fn.line + fn.body.count("\n", 0, match.start()),
                        )
                    )

    return references


# ---------------------------------------------------------------------------
# Rule helpers
# ---------------------------------------------------------------------------


class RuleSpec(BaseModel):
    """
    Declarative description of one detection rule.
    """

    rule_id: str
    title: str
    description: str
    severity: Severity
    confidence: float
    exploitability: float
    category: str
    recommendation: str
    references: List[str] = Field(default_factory=list)
    cwe: Optional[str] = None
    impact: Optional[str] = None
    source: FindingSource = FindingSource.STATIC

    def finding(
        self,
        *,
        file: str,
        line: int,
        snippet: str,
        function: Optional[str] = None,
        end_line: Optional[int] = None,
    ) -> Finding:
        snippet = snippet.strip()
        return Finding(
            id=f"{self.rule_id}-{stable_identifier(self.rule_id, file, line, snippet)}",
            title=self.title,
            description=self.description,
            severity=self.severity,
            confidence=self.confidence,
            exploitability=self.exploitability,
            category=self.category,
            location=SourceLocation(
                file=file,
                start_line=line,
                end_line=end_line,
                function=function,
                snippet=snippet,
            ),
            recommendation=self.recommendation,
            references=list(self.references),
            source=self.source,
            rule_id=self.rule_id,
            cwe=self.cwe,
            impact=self.impact,
        )

    model_config = ConfigDict(frozen=True, extra="forbid")


def body_lines(fn: FunctionInfo) -> Iterator[Tuple[int, str]]:
    """
    (line number, text) for every line of a function, signature included.
    """
    for offset, text in enumerate(fn.body.splitlines()):
        yield fn.line + offset, text


def lines_matching(fn: FunctionInfo, pattern: "re.Pattern[str]") -> Iterator[Tuple[int, str]]:
    for number, text in body_lines(fn):
        if pattern.search(text):
            yield number, text


_ARITHMETIC_TARGET = re.compile(
    r"\b\w*(amount|balance|lamports|supply|total|reward|fee|price|shares|deposit)\w*\b",
    re.IGNORECASE,
)
_OVERFLOW_OP = re.compile(r"\+=|\*=|\s\+\s|\s\*\s")
_UNDERFLOW_OP = re.compile(r"-=|\s-\s")
_CHECKED_MATH = re.compile(r"checked_|saturating_|wrapping_|overflowing_")


def unchecked_arithmetic(
    fn: FunctionInfo,
    *,
    overflow_rule: RuleSpec,
    underflow_rule: Optional[RuleSpec] = None,
) -> List[Finding]:
    findings: List[Finding] = []

    for number, text in body_lines(fn):
        if number == fn.line:
            continue
        if not _ARITHMETIC_TARGET.search(text) or _CHECKED_MATH.search(text):
            continue

        if _OVERFLOW_OP.search(text):
            rule = overflow_rule
        elif underflow_rule is not None and _UNDERFLOW_OP.search(text):
            rule = underflow_rule
        else:
            continue

        findings.append(
            rule.finding(file=fn.file, line=number, snippet=text, function=fn.name)
        )

    return findings


COMPOUND_RISK_PARTNERS = {
    "arithmetic_safety",
    "cross_program_invocation",
    "cross_contract_calls",
    "token_security",
}


def compound_risk_findings(
    findings: List[Finding],
    parsed: ParseResult,
    rule: RuleSpec,
) -> List[Finding]:
    """
    Flag functions where an access-control gap meets value-moving logic.
    """
    categories: Dict[Tuple[str, str], set] = {}
    for finding in findings:
        if finding.location.function is None:
            continue
        key = (finding.location.file, finding.location.function)
        categories.setdefault(key, set()).add(finding.category)

    by_key = {(fn.file, fn.name): fn for fn in parsed.functions()}
    results: List[Finding] = []

    for key, seen in categories.items():
        if "access_control" not in seen or not (seen & COMPOUND_RISK_PARTNERS):
            continue
        fn = by_key.get(key)
        if fn is None:
            continue
        results.append(
            rule.finding(
                file=fn.file,
                line=fn.line,
                end_line=fn.end_line,
                snippet=fn.signature,
                function=fn.name,
            )
        )

    return results


def merge_new(inputs: List[Finding], produced: Iterable[Finding]) -> List[Finding]:
    """
    Inputs verbatim, followed by produced findings with unseen ids.
    """
    known = {f.id for f in inputs}
    merged = list(inputs)
    for finding in produced:
        if finding.id not in known:
            known.add(finding.id)
            merged.append(finding)
    return merged


# ---------------------------------------------------------------------------
# Analyzer base
# ---------------------------------------------------------------------------

METHODOLOGY = [
    "Source preprocessing: comment stripping, secret redaction, file classification",
    "Structural parsing of functions, types and imports",
    "Network-specific static rule evaluation",
    "Semantic analysis of cross-function risk patterns",
    "Optional AI-assisted review",
    "Optional external tool execution (clippy, cargo-audit)",
    "Deduplication, false-positive filtering, severity ranking and scoring",
]


class RustNetworkAnalyzer:
    """
    Analyzer for Rust smart-contract networks.

    Subclasses provide the network identity, glossary, feature markers
    and the two rule sets (_static_findings, _semantic_findings).
    One instance serves exactly one job.
    """

    network: str = ""
    glossary: Dict[str, str] = {}

    # dependency name -> framework label
    framework_markers: Dict[str, str] = {}

    # source regex -> feature label
    feature_markers: Dict[str, str] = {}

    def __init__(
        self,
        *,
        job_id: str,
        capability: CapabilityEntry,
        settings: NetworkSettings,
        enrichment: Optional[EnrichmentService] = None,
        tool_runner: Optional[ExternalToolRunner] = None,
        confidence_threshold: Optional[float] = None,
        max_findings: Optional[int] = None,
    ) -> None:
        self.job_id = job_id
        self.capability = capability
        self.settings = settings
        self._enrichment = enrichment
        self._tool_runner = tool_runner
        self._confidence_threshold = confidence_threshold
        self._max_findings = max_findings

        self._request: Optional[AuditRequest] = None
        self._preprocessed: Optional[PreprocessResult] = None
        self._parsed: Optional[ParseResult] = None
        self._started_at = datetime.now(timezone.utc)
        self._tools_run: List[str] = []
        self._emitter: AuditEventEmitter = NullEventEmitter()

    def bind_emitter(self, emitter: AuditEventEmitter) -> None:
        self._emitter = emitter

    # ------------------------------------------------------------------
    # Stage 1: preprocess
    # ------------------------------------------------------------------

    async def preprocess(self, request: AuditRequest) -> PreprocessResult:
        self._request = request
        self._started_at = datetime.now(timezone.utc)

        files: List[ProcessedFile] = []
        dependencies: List[Dependency] = []

        for upload in request.files:
            path = upload.display_path
            file_type = classify_file(path, config_files=self.settings.config_files)

            if file_type == "source":
                content = sanitize_rust_source(upload.content)
            else:
                content = redact_secrets(upload.content)

            if PurePosixPath(path).name == "Cargo.toml":
                dependencies.extend(extract_cargo_dependencies(path, upload.content))

            files.append(
                ProcessedFile(
                    path=path,
                    file_type=file_type,
                    content=content,
                    size=len(upload.content.encode("utf-8")),
                    line_count=upload.content.count("\n") + 1,
                    complexity=(
                        calculate_complexity(content) if file_type == "source" else 0
                    ),
                    content_hash=compute_content_hash(upload.content),
                )
            )

        self._preprocessed = PreprocessResult(
            job_id=self.job_id,
            network=self.network,
            files=files,
            dependencies=dependencies,
            metadata=self._project_metadata(files, dependencies),
        )
        return self._preprocessed

    def _project_metadata(
        self,
        files: List[ProcessedFile],
        dependencies: List[Dependency],
    ) -> ProjectMetadata:
        sources = [f for f in files if f.file_type == "source"]
        all_source = "\n".join(f.content for f in sources)

        frameworks = sorted(
            {
                self.framework_markers[dep.name]
                for dep in dependencies
                if dep.name in self.framework_markers
            }
        )
        features = sorted(
            {
                label
                for pattern, label in self.feature_markers.items()
                if re.search(pattern, all_source)
            }
        )

        return ProjectMetadata(
            total_files=len(files),
            source_files=len(sources),
            total_lines=sum(f.line_count for f in files),
            total_size=sum(f.size for f in files),
            complexity=sum(f.complexity for f in sources),
            languages=[self.capability.language] if sources else [],
            frameworks=frameworks,
            features=features,
        )

    # ------------------------------------------------------------------
    # Stage 2: parse
    # ------------------------------------------------------------------

    async def parse(self, preprocessed: PreprocessResult) -> ParseResult:
        parsed_files = [
            ParsedFile(
                path=f.path,
                source=f.content,
                functions=extract_functions(f.path, f.content),
                structs=extract_structs(f.path, f.content),
                imports=extract_imports(f.path, f.content),
            )
            for f in preprocessed.source_files()
        ]

        symbol_table: Dict[str, List[str]] = {}
        for parsed in parsed_files:
            for name in [fn.name for fn in parsed.functions] + [
                s.name for s in parsed.structs
            ]:
                owners = symbol_table.setdefault(name, [])
                if parsed.path not in owners:
                    owners.append(parsed.path)

        self._parsed = ParseResult(
            job_id=self.job_id,
            network=self.network,
            files=parsed_files,
            symbol_table=symbol_table,
            cross_references=build_cross_references(parsed_files),
            metadata=preprocessed.metadata,
        )
        return self._parsed

    # ------------------------------------------------------------------
    # Stage 3 / 4: rule sets
    # ------------------------------------------------------------------

    async def static_analysis(self, parsed: ParseResult) -> List[Finding]:
        self._parsed = parsed
        findings = merge_new([], self._static_findings(parsed))
        logger.info(
            "Job %s: %d static finding(s) on %s",
            self.job_id,
            len(findings),
            self.network,
        )
        return findings

    async def semantic_analysis(self, findings: List[Finding]) -> List[Finding]:
        if self._parsed is None:
            return list(findings)
        return merge_new(findings, self._semantic_findings(findings, self._parsed))

    def _static_findings(self, parsed: ParseResult) -> List[Finding]:
        raise NotImplementedError

    def _semantic_findings(
        self, findings: List[Finding], parsed: ParseResult
    ) -> List[Finding]:
        return []

    # ------------------------------------------------------------------
    # Stage 5: AI analysis (fail-soft)
    # ------------------------------------------------------------------

    @property
    def _enrichment_active(self) -> bool:
        return (
            self._enrichment is not None
            and getattr(self._enrichment, "provider", "disabled") != "disabled"
        )

    async def ai_analysis(self, findings: List[Finding]) -> List[Finding]:
        if not self._enrichment_active:
            return list(findings)

        try:
            enriched = await self._enrichment.enhance(
                list(findings),
                source_text=self._source_text(),
                network=self.network,
                audit_id=self.job_id,
                emitter=self._emitter,
            )
        except Exception as exc:
            logger.warning(
                "AI analysis unavailable for job %s: %s", self.job_id, exc
            )
            return list(findings)

        if not isinstance(enriched, list):
            logger.warning(
                "AI analysis for job %s returned %s; ignoring",
                self.job_id,
                type(enriched).__name__,
            )
            return list(findings)

        return merge_new(findings, enriched)

    # ------------------------------------------------------------------
    # Stage 6: external tools (fail-soft)
    # ------------------------------------------------------------------

    async def external_tools_analysis(self, findings: List[Finding]) -> List[Finding]:
        if (
            self._tool_runner is None
            or not self.settings.external_tools
            or self._request is None
        ):
            return list(findings)

        merged = list(findings)
        with tempfile.TemporaryDirectory(prefix="chainaudit-") as tmp:
            workspace = Path(tmp)
            self._materialize(workspace)

            for tool in self.settings.external_tools:
                try:
                    produced = await self._tool_runner.run(tool, workspace=workspace)
                except Exception as exc:
                    logger.warning(
                        "External tool %s failed for job %s: %s",
                        tool,
                        self.job_id,
                        exc,
                    )
                    continue

                self._tools_run.append(tool)
                merged = merge_new(merged, produced)

        return merged

    def _materialize(self, workspace: Path) -> None:
        for upload in self._request.files:
            relative = PurePosixPath(upload.display_path)
            if relative.is_absolute() or ".." in relative.parts:
                relative = PurePosixPath(relative.name)

            target = workspace.joinpath(*relative.parts)
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(upload.content, encoding="utf-8")

    # ------------------------------------------------------------------
    # Stage 7: aggregation
    # ------------------------------------------------------------------

    async def aggregate_results(self, findings: List[Finding]) -> StandardAuditReport:
        configuration = self._request.configuration if self._request else None

        confidence_threshold = (
            configuration.confidence_threshold
            if configuration is not None and configuration.confidence_threshold is not None
            else self._confidence_threshold
        )

        aggregator = FindingAggregator(
            severity_threshold=(
                configuration.severity_threshold
                if configuration is not None
                else Severity.INFORMATIONAL
            ),
            **(
                {"confidence_threshold": confidence_threshold}
                if confidence_threshold is not None
                else {}
            ),
        )

        report = build_standard_report(
            aggregator.aggregate(findings),
            context=self._report_context(),
            max_findings=self._max_findings,
        )

        if not self._enrichment_active:
            return report

        try:
            enriched = await self._enrichment.enhance(
                report,
                source_text=self._source_text(),
                network=self.network,
                audit_id=self.job_id,
                emitter=self._emitter,
            )
        except Exception as exc:
            logger.warning(
                "Report enrichment failed for job %s: %s", self.job_id, exc
            )
            return report.model_copy(
                update={
                    "appendix": report.appendix.model_copy(
                        update={"enrichment_status": "failed"}
                    )
                }
            )

        if not isinstance(enriched, StandardAuditReport):
            logger.warning(
                "Report enrichment for job %s returned %s; ignoring",
                self.job_id,
                type(enriched).__name__,
            )
            return report

        return enriched

    def _report_context(self) -> ReportContext:
        metadata = self._preprocessed.metadata if self._preprocessed else None

        tools = [self.settings.parser]
        tools.extend(self.settings.static_analyzers)
        tools.extend(self.settings.semantic_analyzers)
        if self._enrichment_active:
            tools.append(self._enrichment.provider)
        tools.extend(self._tools_run)

        return ReportContext(
            job_id=self.job_id,
            project_name=self._request.project_name if self._request else "",
            network=self.network,
            platform=self.capability.display_name,
            language=self.capability.language,
            started_at=self._started_at,
            tools_used=list(dict.fromkeys(tools)),
            glossary=dict(self.glossary),
            methodology=list(METHODOLOGY),
            files_analyzed=metadata.source_files if metadata else 0,
            total_lines=metadata.total_lines if metadata else 0,
        )

    def _source_text(self) -> str:
        if self._preprocessed is None:
            return ""
        return "\n\n".join(
            f"// file: {f.path}\n{f.content}"
            for f in self._preprocessed.source_files()
        )
