from __future__ import annotations

import json
import logging
import re
import time
from pathlib import Path
from typing import Any

from ..models import TestCase, TestResult
from ..settings import RuntimeSettings
from .base import elapsed_since, failed_result, run_command, split_command

logger = logging.getLogger(__name__)

_UNSAFE_NAME_RE = re.compile(r"[^\w.-]+")


def interpret_jest_report(stdout: str, stderr: str) -> tuple[bool, str | None, str | None]:
    """Read a ``jest --json`` report into ``(passed, error, stack_trace)``.

    Pass/fail comes from the failed-test counter. Suites that failed to run
    (for example a TypeScript compile error) report zero failed tests and are
    counted as failures too. Output that is not JSON is a failure.
    """
    try:
        report: dict[str, Any] = json.loads(stdout)
    except (json.JSONDecodeError, TypeError):
        error = stderr.strip() or "Unable to parse Jest output"
        return False, error, stderr or None

    suites = report.get("testResults") or []
    if int(report.get("numFailedTests") or 0) > 0:
        for suite in suites:
            for assertion in suite.get("assertionResults") or []:
                if assertion.get("status") == "failed":
                    messages = [str(item) for item in assertion.get("failureMessages") or []]
                    return False, (messages[0] if messages else "Test failed"), "\n".join(messages) or None
        return False, "Test failed", None

    if int(report.get("numFailedTestSuites") or 0) > 0:
        for suite in suites:
            if suite.get("status") == "failed":
                message = str(suite.get("message") or "").strip()
                return False, message or "Test suite failed to run", message or None
        return False, "Test suite failed to run", None

    if report.get("success") is False and int(report.get("numTotalTests") or 0) == 0:
        return False, stderr.strip() or "No tests were run", None
    return True, None, None


class JestExecutor:
    """Writes each test to the scratch directory and runs it with ``jest --json``."""

    def __init__(self, settings: RuntimeSettings) -> None:
        self.settings = settings

    def test_file_path(self, test_case: TestCase) -> Path:
        """Scratch file for one test case; the id suffix keeps same-named cases from other runs apart."""
        stem = _UNSAFE_NAME_RE.sub("_", test_case.name).removesuffix(".test").removesuffix(".spec") or "case"
        return self.settings.work_dir_path / f"{stem}-{test_case.id[:12]}.test.ts"

    def run(self, test_case: TestCase) -> TestResult:
        started = time.monotonic()
        work_dir = self.settings.work_dir_path
        work_dir.mkdir(parents=True, exist_ok=True)
        test_path = self.test_file_path(test_case)
        test_path.write_text(test_case.code, encoding="utf-8")
        try:
            args = [*split_command(self.settings.jest_command), str(test_path), "--json", "--no-coverage"]
            outcome = run_command(args, timeout=self.settings.run_timeout_seconds)
        finally:
            test_path.unlink(missing_ok=True)

        if outcome.missing_binary:
            return failed_result(test_case, started, f"Jest is not available: {outcome.stderr}")
        if outcome.timed_out:
            return failed_result(
                test_case,
                started,
                f"Test run timed out after {self.settings.run_timeout_seconds}s",
                stack_trace=outcome.stderr,
                output=outcome.stdout or None,
            )

        passed, error, stack_trace = interpret_jest_report(outcome.stdout, outcome.stderr)
        logger.info("Jest %s: %s", test_case.name, "passed" if passed else "failed")
        return TestResult(
            test_case_id=test_case.id,
            passed=passed,
            execution_time=elapsed_since(started),
            error=error,
            stack_trace=stack_trace,
            output=outcome.stdout or None,
        )
