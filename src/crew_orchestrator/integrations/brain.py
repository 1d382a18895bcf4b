"""Reasoning engine ("brain") invocation via the Claude CLI."""

import json
import logging
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)


class BrainError(Exception):
    """Raised when the brain cannot produce a result."""


class BrainTimeoutError(BrainError):
    """Raised when the brain exceeds its time limit."""


@dataclass
class BrainResult:
    output: str
    success: bool = True
    cost_cents: float = 0.0
    duration_ms: int = 0
    input_tokens: int = 0
    output_tokens: int = 0


class Brain(Protocol):
    def execute(
        self, prompt: str, working_directory: str | Path | None = None, timeout: float | None = None
    ) -> BrainResult: ...


class ClaudeCliBrain:
    """Runs `claude -p <prompt> --output-format json` in the workspace."""

    def __init__(
        self,
        command: str = "claude",
        model: str | None = "sonnet",
        permission_mode: str | None = "acceptEdits",
        max_turns: int | None = None,
        timeout: float | None = 600.0,
    ):
        self.command = command
        self.model = model
        self.permission_mode = permission_mode
        self.max_turns = max_turns
        self.timeout = timeout

    def build_command(self, prompt: str) -> list[str]:
        cmd = [self.command, "-p", prompt, "--output-format", "json"]
        if self.model:
            cmd += ["--model", self.model]
        if self.permission_mode:
            cmd += ["--permission-mode", self.permission_mode]
        if self.max_turns:
            cmd += ["--max-turns", str(self.max_turns)]
        return cmd

    def execute(
        self, prompt: str, working_directory: str | Path | None = None, timeout: float | None = None
    ) -> BrainResult:
        timeout = timeout if timeout is not None else self.timeout
        started = time.monotonic()
        try:
            proc = subprocess.run(
                self.build_command(prompt),
                cwd=working_directory,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise BrainTimeoutError(f"Brain timed out after {timeout}s") from e
        except OSError as e:
            raise BrainError(f"Could not run {self.command}: {e}") from e

        elapsed_ms = int((time.monotonic() - started) * 1000)
        if proc.returncode != 0 and not proc.stdout.strip():
            raise BrainError(
                f"{self.command} exited with code {proc.returncode}: {proc.stderr.strip()[:500]}"
            )
        return parse_cli_output(proc.stdout, elapsed_ms, exit_code=proc.returncode)


def parse_cli_output(stdout: str, elapsed_ms: int = 0, exit_code: int = 0) -> BrainResult:
    """Parse the CLI's JSON result envelope.

    Output that is not JSON is returned as plain text.
    """
    try:
        data = json.loads(stdout)
    except json.JSONDecodeError:
        return BrainResult(output=stdout.strip(), success=exit_code == 0, duration_ms=elapsed_ms)

    if not isinstance(data, dict):
        return BrainResult(output=stdout.strip(), success=exit_code == 0, duration_ms=elapsed_ms)

    usage = data.get("usage") or {}
    cost_usd = data.get("total_cost_usd") or data.get("cost_usd") or 0.0
    return BrainResult(
        output=str(data.get("result") or ""),
        success=exit_code == 0 and not data.get("is_error", False),
        cost_cents=round(float(cost_usd) * 100, 4),
        duration_ms=int(data.get("duration_ms") or elapsed_ms),
        input_tokens=int(usage.get("input_tokens") or 0),
        output_tokens=int(usage.get("output_tokens") or 0),
    )
