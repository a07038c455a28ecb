"""Shared plumbing for runtime executors.

Executors never raise for a failing test: tooling problems (missing binary,
timeouts, unreadable output) become failed ``TestResult`` values.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
import time
from dataclasses import dataclass
from typing import Protocol, Sequence

from ..models import TestCase, TestResult

logger = logging.getLogger(__name__)


class TestExecutor(Protocol):
    """Runs one test case and reports a uniform result."""

    def run(self, test_case: TestCase) -> TestResult:
        ...


@dataclass(frozen=True)
class CommandOutcome:
    returncode: int | None
    stdout: str
    stderr: str
    timed_out: bool = False
    missing_binary: bool = False

    @property
    def combined(self) -> str:
        return f"{self.stdout}{self.stderr}"


def split_command(command: str) -> list[str]:
    return shlex.split(command)


def run_command(args: Sequence[str], *, timeout: int, cwd: str | None = None) -> CommandOutcome:
    """Run ``args`` with a wall-clock bound, capturing text output."""
    logger.debug("Running %s (timeout=%ss)", " ".join(args), timeout)
    try:
        completed = subprocess.run(
            list(args),
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as exc:
        return CommandOutcome(
            returncode=None,
            stdout=_as_text(exc.stdout),
            stderr=f"{_as_text(exc.stderr)}\nTIMEOUT: exceeded {timeout} seconds.".lstrip(),
            timed_out=True,
        )
    except FileNotFoundError as exc:
        return CommandOutcome(returncode=None, stdout="", stderr=str(exc), missing_binary=True)
    return CommandOutcome(returncode=completed.returncode, stdout=completed.stdout or "", stderr=completed.stderr or "")


def _as_text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def failed_result(
    test_case: TestCase,
    started: float,
    error: str,
    *,
    stack_trace: str | None = None,
    output: str | None = None,
) -> TestResult:
    return TestResult(
        test_case_id=test_case.id,
        passed=False,
        execution_time=elapsed_since(started),
        error=error,
        stack_trace=stack_trace,
        output=output,
    )


def elapsed_since(started: float) -> float:
    return round(time.monotonic() - started, 3)


def run_all(executor: TestExecutor, test_cases: Sequence[TestCase]) -> list[TestResult]:
    """Run test cases one after another; a compiled runtime shares its scratch directory."""
    return [executor.run(test_case) for test_case in test_cases]
