"""Quality gate: validates a brain result before a task is accepted.

Checks run in a fixed order and the first failure wins:

    1. output present and not suspiciously short    (retryable)
    2. output free of error-message patterns        (retryable)
    3. cost within 10% of the daily budget          (not retryable)
    4. lint clean                                   (retryable)
    5. type-check clean                             (retryable)
    6. tests passing                                (retryable)

Checks 4-6 look only at the task's affected Python files that exist in
the workspace, and are skipped when there are none.
"""

import fnmatch
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from crew_orchestrator.db.models import Task
from crew_orchestrator.integrations.brain import BrainResult
from crew_orchestrator.integrations.checkers import (
    DEFAULT_TIMEOUT,
    ToolError,
    run_lint,
    run_tests,
    run_typecheck,
)

logger = logging.getLogger(__name__)

MIN_OUTPUT_LENGTH = 10
# Largest share of the daily budget a single execution may spend.
SINGLE_EXECUTION_BUDGET_SHARE = 0.1

ERROR_PATTERNS = [
    re.compile(r"^Error:", re.IGNORECASE),
    re.compile(r"^Fatal:", re.IGNORECASE),
    re.compile(r"^Exception:", re.IGNORECASE),
    re.compile(r"^Traceback \(most recent call last\)", re.IGNORECASE),
    re.compile(r"command not found", re.IGNORECASE),
    re.compile(r"permission denied", re.IGNORECASE),
]
INCOMPLETE_MARKERS = ("TODO", "FIXME", "XXX", "HACK")

# Only these are handed to the lint, type-check and test tools.
PYTHON_SUFFIXES = (".py", ".pyi")
TEST_FILE_GLOBS = ("test_*.py", "*_test.py", "*.spec.*", "*.test.*")
TEST_DIR_NAMES = {"__tests__", "tests"}


@dataclass(frozen=True)
class QualityResult:
    passed: bool
    retry_eligible: bool = False
    reason: str = ""
    details: dict = field(default_factory=dict)


PASSED = QualityResult(passed=True)


@dataclass
class GateContext:
    task: Task
    result: BrainResult
    budget_cents: float | None
    workdir: Path | None
    gate: "QualityGate"

    def existing_files(self) -> list[str]:
        """Affected files that exist in the workspace, relative to it."""
        if not self.workdir or not self.task.affected_files:
            return []
        return [f for f in self.task.affected_files if (self.workdir / f).is_file()]

    def python_files(self) -> list[str]:
        return [f for f in self.existing_files() if f.endswith(PYTHON_SUFFIXES)]


def is_test_file(path: str) -> bool:
    p = Path(path)
    if any(part in TEST_DIR_NAMES for part in p.parts[:-1]):
        return True
    return any(fnmatch.fnmatch(p.name, pattern) for pattern in TEST_FILE_GLOBS)


# ── Checks ──────────────────────────────────────────────────────────────────


def check_output_present(ctx: GateContext) -> QualityResult:
    output = (ctx.result.output or "").strip()
    if not output:
        return QualityResult(
            False, True, "Brain execution returned empty result",
            {"check_type": "result_exists", "output_length": 0},
        )
    if len(output) < MIN_OUTPUT_LENGTH:
        return QualityResult(
            False, True, "Result is too short to be a valid response",
            {"check_type": "result_exists", "output_length": len(output)},
        )
    return PASSED


def check_error_patterns(ctx: GateContext) -> QualityResult:
    output = ctx.result.output or ""
    for pattern in ERROR_PATTERNS:
        if pattern.search(output):
            return QualityResult(
                False, True, "Output contains error messages",
                {"check_type": "format_compliance", "error_pattern": pattern.pattern},
            )
    markers = [m for m in INCOMPLETE_MARKERS if m in output]
    if markers:
        logger.warning("Output for task %s contains incompletion markers: %s", ctx.task.id, ", ".join(markers))
    return PASSED


def check_cost(ctx: GateContext) -> QualityResult:
    if not ctx.budget_cents:
        return PASSED
    threshold = ctx.budget_cents * SINGLE_EXECUTION_BUDGET_SHARE
    if ctx.result.cost_cents > threshold:
        return QualityResult(
            False, False, "Execution cost exceeds single-task threshold (10% of daily limit)",
            {
                "check_type": "cost_validation",
                "actual_cost_cents": ctx.result.cost_cents,
                "threshold_cents": threshold,
                "daily_limit_cents": ctx.budget_cents,
            },
        )
    return PASSED


def check_lint(ctx: GateContext) -> QualityResult:
    files = ctx.python_files()
    if not files:
        return PASSED
    try:
        report = run_lint(files, ctx.workdir, ctx.gate.lint_command, ctx.gate.timeout)
    except ToolError as e:
        return QualityResult(False, True, f"Lint check failed to run: {e}", {"check_type": "lint", "error": str(e)})
    if not report.passed:
        return QualityResult(
            False, True,
            f"Lint found {report.error_count} error(s) and {report.warning_count} warning(s)",
            {
                "check_type": "lint",
                "error_count": report.error_count,
                "warning_count": report.warning_count,
                "messages": report.messages[:20],
            },
        )
    return PASSED


def check_typecheck(ctx: GateContext) -> QualityResult:
    files = ctx.python_files()
    if not files:
        return PASSED
    try:
        report = run_typecheck(files, ctx.workdir, ctx.gate.typecheck_command, ctx.gate.timeout)
    except ToolError as e:
        return QualityResult(
            False, True, f"Type check failed to run: {e}", {"check_type": "typecheck", "error": str(e)}
        )
    if not report.passed:
        return QualityResult(
            False, True, f"Type checker found {report.error_count} error(s)",
            {"check_type": "typecheck", "error_count": report.error_count, "messages": report.messages[:20]},
        )
    return PASSED


def check_tests(ctx: GateContext) -> QualityResult:
    test_files = [f for f in ctx.python_files() if is_test_file(f)]
    if not test_files:
        return PASSED
    try:
        report = run_tests(test_files, ctx.workdir, ctx.gate.test_command, ctx.gate.timeout)
    except ToolError as e:
        return QualityResult(False, True, "Test execution failed", {"check_type": "tests", "error": str(e)[:500]})
    if not report.passed:
        return QualityResult(
            False, True, f"{report.failed} test(s) failed",
            {
                "check_type": "tests",
                "total_tests": report.total,
                "passed_tests": report.passed_count,
                "failed_tests": report.failed,
                "skipped_tests": report.skipped,
                "failed_test_names": report.failed_names[:10],
            },
        )
    return PASSED


CHECKS: tuple[Callable[[GateContext], QualityResult], ...] = (
    check_output_present,
    check_error_patterns,
    check_cost,
    check_lint,
    check_typecheck,
    check_tests,
)


class QualityGate:
    def __init__(
        self,
        lint_command: str = "ruff check",
        typecheck_command: str = "mypy",
        test_command: str = "pytest",
        timeout: float | None = DEFAULT_TIMEOUT,
        checks: tuple[Callable[[GateContext], QualityResult], ...] = CHECKS,
    ):
        self.lint_command = lint_command
        self.typecheck_command = typecheck_command
        self.test_command = test_command
        self.timeout = timeout
        self.checks = checks

    def validate(
        self,
        task: Task,
        result: BrainResult,
        budget_cents: float | None = None,
        workdir: str | Path | None = None,
    ) -> QualityResult:
        """Run the checks in order, stopping at the first failure."""
        workdir = workdir or task.workspace_path
        ctx = GateContext(
            task=task,
            result=result,
            budget_cents=budget_cents,
            workdir=Path(workdir) if workdir else None,
            gate=self,
        )
        logger.info("Running quality gate for task %s (%s)", task.id, task.title)
        for check in self.checks:
            outcome = check(ctx)
            if not outcome.passed:
                logger.warning(
                    "Quality gate failed for task %s at %s: %s (retryable=%s)",
                    task.id, check.__name__, outcome.reason, outcome.retry_eligible,
                )
                return outcome
        logger.info("Quality gate passed for task %s", task.id)
        return PASSED
