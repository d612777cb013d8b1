"""
External static tool execution.

Tools run as subprocesses against a materialized copy of the uploaded
project. A tool that is not installed, has no runner, or lacks the
project layout it needs contributes no findings.

IMPORTANT:
- Runners raise EnrichmentFailure on tool failure or timeout; the
  calling analyzer absorbs it.
- Tool output is parsed, never executed.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from pathlib import Path
from typing import List, Protocol, Tuple

from chainaudit.app.errors import EnrichmentFailure
from chainaudit.app.schemas.findings import Finding
from chainaudit.app.tools.cargo_output import (
    parse_cargo_audit_output,
    parse_clippy_output,
)

logger = logging.getLogger(__name__)


class ExternalToolRunner(Protocol):
    async def run(self, tool: str, *, workspace: Path) -> List[Finding]:
        ...


class SubprocessToolRunner:
    """
    Runs cargo-based tools with asyncio subprocesses.
    """

    def __init__(self, *, timeout_seconds: float = 120.0) -> None:
        self._timeout_seconds = timeout_seconds

    async def run(self, tool: str, *, workspace: Path) -> List[Finding]:
        manifest = workspace / "Cargo.toml"

        if tool == "clippy":
            if not manifest.is_file() or shutil.which("cargo") is None:
                logger.info("clippy unavailable for %s; skipping", workspace)
                return []
            stdout, _ = await self._execute(
                ["cargo", "clippy", "--message-format=json", "--quiet"],
                cwd=workspace,
                tool=tool,
                accept_nonzero=True,
            )
            return parse_clippy_output(stdout)

        if tool == "cargo-audit":
            lock_file = workspace / "Cargo.lock"
            if (
                not lock_file.is_file()
                or shutil.which("cargo-audit") is None
            ):
                logger.info("cargo-audit unavailable for %s; skipping", workspace)
                return []
            stdout, _ = await self._execute(
                ["cargo", "audit", "--json"],
                cwd=workspace,
                tool=tool,
                accept_nonzero=True,
            )
            manifest_text = (
                manifest.read_text(encoding="utf-8") if manifest.is_file() else None
            )
            return parse_cargo_audit_output(
                stdout,
                manifest_path="Cargo.toml",
                manifest_text=manifest_text,
            )

        logger.debug("No runner registered for external tool %s", tool)
        return []

    async def _execute(
        self,
        argv: List[str],
        *,
        cwd: Path,
        tool: str,
        accept_nonzero: bool = False,
    ) -> Tuple[str, str]:
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise EnrichmentFailure("tool_unavailable", f"{tool}: {exc}") from exc

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self._timeout_seconds
            )
        except asyncio.TimeoutError as exc:
            process.kill()
            await process.wait()
            raise EnrichmentFailure(
                "timeout",
                f"{tool} exceeded {self._timeout_seconds}s",
            ) from exc

        if process.returncode != 0 and not accept_nonzero:
            raise EnrichmentFailure(
                "tool_error",
                f"{tool} exited with {process.returncode}",
            )

        return (
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )
