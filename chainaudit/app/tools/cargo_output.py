"""
Parsers for Rust tool output.

Converts machine-readable output of `cargo clippy --message-format=json`
and `cargo audit --json` into canonical findings. Parsing is pure and
tolerant: malformed lines are skipped, never raised.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, Iterable, List, Optional

from chainaudit.app.schemas.findings import (
    Finding,
    FindingSource,
    Severity,
    SourceLocation,
)
from chainaudit.app.utils.hashing import stable_identifier

logger = logging.getLogger(__name__)


_CLIPPY_LEVELS = {
    "error": Severity.MEDIUM,
    "warning": Severity.LOW,
    "note": Severity.INFORMATIONAL,
    "help": Severity.INFORMATIONAL,
}


def _json_lines(text: str) -> Iterable[Dict[str, Any]]:
    for raw in text.splitlines():
        raw = raw.strip()
        if not raw.startswith("{"):
            continue
        try:
            yield json.loads(raw)
        except json.JSONDecodeError:
            logger.debug("Skipping malformed tool output line")


# ----------------------------------------------------------------------
# clippy
# ----------------------------------------------------------------------


def parse_clippy_output(text: str) -> List[Finding]:
    findings: List[Finding] = []

    for record in _json_lines(text):
        if record.get("reason") != "compiler-message":
            continue

        message = record.get("message") or {}
        severity = _CLIPPY_LEVELS.get(message.get("level", ""))
        if severity is None:
            continue

        spans = message.get("spans") or []
        primary = next((s for s in spans if s.get("is_primary")), None)
        if primary is None:
            continue

        code = (message.get("code") or {}).get("code") or "rustc"
        lint = code.split("::")[-1]
        snippet = "\n".join(
            part.get("text", "") for part in primary.get("text") or []
        ).strip()

        file_name = primary.get("file_name", "")
        line_start = int(primary.get("line_start", 0))
        line_end = int(primary.get("line_end", line_start))

        findings.append(
            Finding(
                id=f"CLIPPY-{stable_identifier(code, file_name, line_start, snippet)}",
                title=f"Clippy: {lint.replace('_', ' ')}",
                description=message.get("message", ""),
                severity=severity,
                confidence=0.95,
                exploitability=0.1,
                category="code_quality",
                location=SourceLocation(
                    file=file_name,
                    start_line=line_start,
                    end_line=max(line_end, line_start),
                    snippet=snippet,
                ),
                recommendation=f"Resolve the `{code}` lint.",
                references=[
                    f"https://rust-lang.github.io/rust-clippy/master/#{lint}"
                ]
                if code.startswith("clippy::")
                else [],
                source=FindingSource.EXTERNAL,
                rule_id=code,
                tool="clippy",
            )
        )

    return findings


# ----------------------------------------------------------------------
# cargo audit
# ----------------------------------------------------------------------


def _manifest_line(manifest_text: Optional[str], package: str) -> int:
    if not manifest_text:
        return 0
    pattern = re.compile(rf"^\s*{re.escape(package)}\s*=", re.MULTILINE)
    match = pattern.search(manifest_text)
    if match is None:
        return 0
    return manifest_text.count("\n", 0, match.start()) + 1


def _advisory_finding(
    entry: Dict[str, Any],
    *,
    severity: Severity,
    kind: str,
    manifest_path: str,
    manifest_text: Optional[str],
) -> Optional[Finding]:
    advisory = entry.get("advisory") or {}
    package = entry.get("package") or {}
    name = package.get("name") or advisory.get("package")
    if not name:
        return None

    version = package.get("version", "unknown")
    advisory_id = advisory.get("id", kind)
    patched = (entry.get("versions") or {}).get("patched") or []
    line = _manifest_line(manifest_text, name)

    if patched:
        recommendation = f"Upgrade {name} to {' or '.join(patched)}."
    else:
        recommendation = f"Replace {name} or pin a version without {advisory_id}."

    return Finding(
        id=f"AUDIT-{stable_identifier(advisory_id, name, version)}",
        title=(
            f"Vulnerable Dependency: {name} v{version}"
            if kind == "vulnerability"
            else f"{kind.capitalize()} Dependency: {name} v{version}"
        ),
        description=advisory.get("title") or advisory.get("description") or kind,
        severity=severity,
        confidence=0.99,
        exploitability=0.5 if kind == "vulnerability" else 0.2,
        category="dependency_vulnerability",
        location=SourceLocation(
            file=manifest_path,
            start_line=line,
            snippet=f'{name} = "{version}"',
        ),
        recommendation=recommendation,
        references=[advisory["url"]] if advisory.get("url") else [],
        source=FindingSource.EXTERNAL,
        rule_id=advisory_id,
        tool="cargo-audit",
    )


def parse_cargo_audit_output(
    text: str,
    *,
    manifest_path: str = "Cargo.toml",
    manifest_text: Optional[str] = None,
) -> List[Finding]:
    try:
        document = json.loads(text)
    except json.JSONDecodeError:
        logger.warning("cargo-audit produced non-JSON output")
        return []

    findings: List[Finding] = []

    for entry in (document.get("vulnerabilities") or {}).get("list") or []:
        advisory = entry.get("advisory") or {}
        severity = Severity.HIGH if advisory.get("cvss") else Severity.MEDIUM
        finding = _advisory_finding(
            entry,
            severity=severity,
            kind="vulnerability",
            manifest_path=manifest_path,
            manifest_text=manifest_text,
        )
        if finding is not None:
            findings.append(finding)

    for kind, entries in (document.get("warnings") or {}).items():
        for entry in entries or []:
            finding = _advisory_finding(
                entry,
                severity=Severity.LOW,
                kind=kind,
                manifest_path=manifest_path,
                manifest_text=manifest_text,
            )
            if finding is not None:
                findings.append(finding)

    return findings
