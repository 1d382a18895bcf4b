"""Subprocess wrappers for the lint, type-check and test tools."""

import json
import logging
import os
import shlex
import subprocess
import tempfile
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 300.0

# pytest exit code when no tests were collected.
PYTEST_NO_TESTS = 5


class ToolError(Exception):
    """Raised when a checker could not be run or its output not understood."""


@dataclass
class LintReport:
    error_count: int = 0
    warning_count: int = 0
    messages: list[str] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.error_count == 0


@dataclass
class TypecheckReport:
    error_count: int = 0
    messages: list[str] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.error_count == 0


@dataclass
class PytestReport:
    total: int = 0
    passed_count: int = 0
    failed: int = 0
    skipped: int = 0
    failed_names: list[str] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.failed == 0


def _run(cmd: list[str], cwd: str | Path, timeout: float | None) -> subprocess.CompletedProcess:
    logger.debug("Running %s in %s", " ".join(cmd), cwd)
    try:
        return subprocess.run(cmd, cwd=cwd, capture_output=True, text=True, timeout=timeout)
    except subprocess.TimeoutExpired as e:
        raise ToolError(f"{cmd[0]} timed out after {timeout}s") from e
    except OSError as e:
        raise ToolError(f"Could not run {cmd[0]}: {e}") from e


def run_lint(
    files: list[str],
    cwd: str | Path,
    command: str = "ruff check",
    timeout: float | None = DEFAULT_TIMEOUT,
) -> LintReport:
    """Lint files with ruff's JSON output.

    Diagnostics whose code starts with "W" count as warnings.
    """
    cmd = shlex.split(command) + ["--output-format", "json", *files]
    proc = _run(cmd, cwd, timeout)
    if proc.returncode not in (0, 1):
        raise ToolError(f"{cmd[0]} exited with code {proc.returncode}: {proc.stderr.strip()[:500]}")
    try:
        diagnostics = json.loads(proc.stdout or "[]")
    except json.JSONDecodeError as e:
        raise ToolError(f"Unreadable lint output: {proc.stdout[:200]}") from e

    report = LintReport()
    for diag in diagnostics:
        code = diag.get("code") or ""
        if code.startswith("W"):
            report.warning_count += 1
        else:
            report.error_count += 1
        location = diag.get("location") or {}
        report.messages.append(
            f"{diag.get('filename', '?')}:{location.get('row', '?')}: {code} {diag.get('message', '')}".strip()
        )
    return report


def run_typecheck(
    files: list[str],
    cwd: str | Path,
    command: str = "mypy",
    timeout: float | None = DEFAULT_TIMEOUT,
) -> TypecheckReport:
    """Type-check files with mypy, counting `: error:` lines."""
    cmd = shlex.split(command) + ["--no-error-summary", "--hide-error-context", *files]
    proc = _run(cmd, cwd, timeout)
    # mypy: 0 clean, 1 type errors, 2 crash or bad usage.
    if proc.returncode not in (0, 1):
        raise ToolError(f"{cmd[0]} exited with code {proc.returncode}: {(proc.stderr or proc.stdout).strip()[:500]}")
    errors = [line for line in proc.stdout.splitlines() if ": error:" in line]
    return TypecheckReport(error_count=len(errors), messages=errors)


def run_tests(
    files: list[str],
    cwd: str | Path,
    command: str = "pytest",
    timeout: float | None = DEFAULT_TIMEOUT,
) -> PytestReport:
    """Run tests with pytest and read the results from a JUnit XML report."""
    fd, report_path = tempfile.mkstemp(prefix="crew-junit-", suffix=".xml")
    os.close(fd)
    try:
        cmd = shlex.split(command) + ["-q", f"--junitxml={report_path}", *files]
        proc = _run(cmd, cwd, timeout)
        if proc.returncode == PYTEST_NO_TESTS:
            return PytestReport()
        if proc.returncode not in (0, 1):
            raise ToolError(f"{cmd[0]} exited with code {proc.returncode}: {(proc.stderr or proc.stdout).strip()[:500]}")
        return parse_junit_xml(Path(report_path).read_text())
    finally:
        Path(report_path).unlink(missing_ok=True)


def parse_junit_xml(content: str) -> PytestReport:
    try:
        root = ET.fromstring(content)
    except ET.ParseError as e:
        raise ToolError(f"Unreadable test report: {e}") from e

    report = PytestReport()
    for case in root.iter("testcase"):
        report.total += 1
        name = f"{case.get('classname', '')}::{case.get('name', '')}".strip(":")
        if case.find("failure") is not None or case.find("error") is not None:
            report.failed += 1
            report.failed_names.append(name)
        elif case.find("skipped") is not None:
            report.skipped += 1
        else:
            report.passed_count += 1
    return report
