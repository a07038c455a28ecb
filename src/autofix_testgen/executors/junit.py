"""JUnit 5 execution through ``javac`` and the console launcher jar.

The console launcher prints a tree report rather than anything structured, so
the verdict is read from text markers. Precedence:

1. any failure marker (``✘``, ``FAILED``, a non-zero "tests failed" count,
   assertion errors, exception text outside a passing line) means failed;
2. otherwise any success marker means passed;
3. otherwise invoked ``testXxx()`` signatures with nothing suspicious mean passed.

A compilation failure short-circuits before anything is run.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import tempfile
import threading
import time
import urllib.error
import urllib.request
from pathlib import Path

from ..models import TestCase, TestResult
from ..settings import RuntimeSettings
from ..stores import SourceRegistry
from .base import elapsed_since, failed_result, run_command

logger = logging.getLogger(__name__)

_CLASS_DECL = r"class\s+(\w+)(?=\s*(?:<|\{|extends\b|implements\b|$))"
_CLASS_RE = re.compile(r"^\s*(?:(?:abstract|final|static)\s+)*" + _CLASS_DECL, re.MULTILINE)
_PUBLIC_CLASS_RE = re.compile(r"^\s*public\s+(?:(?:abstract|final|static)\s+)*" + _CLASS_DECL, re.MULTILINE)
_FAILED_COUNT_RE = re.compile(r"\[\s*([1-9]\d*)\s+tests?\s+failed\s*\]")
_SUCCESS_TEXT_RE = re.compile(r"test run finished|tests? successful", re.IGNORECASE)
_TEST_METHOD_RE = re.compile(r"test\w+\(\)", re.IGNORECASE)
_STACK_LINE_RE = re.compile(r"^\s*at\s+\w+")
_JAR_DOWNLOAD_TIMEOUT_SECONDS = 60
_MAX_ERROR_LINES = 20

SUCCESS_MARK = "✔"
FAILURE_MARK = "✘"


def extract_class_name(code: str, default: str = "TestClass") -> str:
    """Name of the declared top-level class, preferring a public one; prose mentioning "class" is ignored."""
    match = _PUBLIC_CLASS_RE.search(code) or _CLASS_RE.search(code)
    return match.group(1) if match else default


def _has_failure_marker(output: str) -> bool:
    if FAILURE_MARK in output or "FAILED" in output:
        return True
    if "AssertionError" in output or "AssertionFailedError" in output:
        return True
    if _FAILED_COUNT_RE.search(output):
        return True
    return any("Exception" in line and SUCCESS_MARK not in line for line in output.splitlines())


def _has_success_marker(output: str) -> bool:
    return SUCCESS_MARK in output or "SUCCESS" in output or bool(_SUCCESS_TEXT_RE.search(output))


def interpret_junit_output(output: str) -> bool:
    if _has_failure_marker(output):
        return False
    if _has_success_marker(output):
        return True
    return _TEST_METHOD_RE.search(output) is not None


def extract_error_message(output: str) -> str:
    """Pull the lines that look like failures (plus a little trailing context)."""
    lines = output.splitlines()
    picked: list[str] = []
    for idx, line in enumerate(lines):
        lowered = line.lower()
        if (
            "expected" in line
            or "actual" in line
            or "AssertionError" in line
            or "Exception" in line
            or "Error:" in line
            or "cannot find symbol" in line
            or ("package" in line and "does not exist" in line)
            or ("class" in line and "cannot be resolved" in line)
            or "compilation failed" in lowered
            or "FAILED" in line
            or _STACK_LINE_RE.match(line)
        ):
            picked.append(line)
            picked.extend(ctx for ctx in lines[idx + 1 : idx + 4] if ctx.strip())
    if picked:
        return "\n".join(picked[:_MAX_ERROR_LINES])
    return "\n".join(lines[-30:]) or "Test execution failed - see output for details"


class JUnitExecutor:
    """Compiles the test together with its source class, then runs it with the console launcher."""

    def __init__(self, settings: RuntimeSettings, sources: SourceRegistry | None = None) -> None:
        self.settings = settings
        self.sources = sources or SourceRegistry()
        self._jar_lock = threading.Lock()

    def ensure_jar(self) -> Path | None:
        """Return the launcher jar, downloading it once if missing. None when unavailable."""
        jar_path = self.settings.junit_jar_path
        with self._jar_lock:
            if jar_path.is_file():
                return jar_path
            logger.info("JUnit jar not found at %s; downloading %s", jar_path, self.settings.junit_jar_url)
            partial = jar_path.with_suffix(".part")
            try:
                jar_path.parent.mkdir(parents=True, exist_ok=True)
                with urllib.request.urlopen(
                    self.settings.junit_jar_url, timeout=_JAR_DOWNLOAD_TIMEOUT_SECONDS
                ) as response, partial.open("wb") as handle:
                    shutil.copyfileobj(response, handle)
                partial.replace(jar_path)
            except (urllib.error.URLError, OSError) as exc:
                partial.unlink(missing_ok=True)
                logger.warning("Could not download JUnit jar: %s", exc)
                return None
        logger.info("JUnit jar downloaded to %s", jar_path)
        return jar_path

    def _copy_source(self, source_path: str, target_dir: Path) -> Path | None:
        try:
            content = self.sources.read(source_path)
        except OSError as exc:
            logger.debug("Source %s not readable, compiling test alone: %s", source_path, exc)
            return None
        match = _PUBLIC_CLASS_RE.search(content)
        if match is None:
            return None
        copied = target_dir / f"{match.group(1)}.java"
        copied.write_text(content, encoding="utf-8")
        return copied

    def run(self, test_case: TestCase) -> TestResult:
        started = time.monotonic()
        jar = self.ensure_jar()
        if jar is None:
            return failed_result(
                test_case,
                started,
                "JUnit jar not found and could not be downloaded. Place "
                f"{self.settings.junit_jar} at the configured path.",
                stack_trace=f"Download from: {self.settings.junit_jar_url}",
            )

        work_dir = self.settings.work_dir_path
        work_dir.mkdir(parents=True, exist_ok=True)
        class_name = extract_class_name(test_case.code)
        with tempfile.TemporaryDirectory(dir=work_dir, prefix="junit-") as scratch:
            scratch_dir = Path(scratch)
            test_path = scratch_dir / f"{class_name}.java"
            test_path.write_text(test_case.code, encoding="utf-8")
            sources = [str(path) for path in (self._copy_source(test_case.file_path, scratch_dir), test_path) if path]
            classpath = f"{jar}{os.pathsep}{scratch_dir}"

            compiled = run_command(
                ["javac", "-cp", classpath, "-d", str(scratch_dir), *sources],
                timeout=self.settings.compile_timeout_seconds,
            )
            if compiled.missing_binary:
                return failed_result(test_case, started, f"javac is not available: {compiled.stderr}")
            if compiled.timed_out:
                return failed_result(
                    test_case,
                    started,
                    f"Compilation timed out after {self.settings.compile_timeout_seconds}s",
                    stack_trace=compiled.stderr,
                )
            if compiled.returncode != 0:
                diagnostic = compiled.stderr or compiled.stdout or "javac exited with a non-zero status"
                return failed_result(
                    test_case,
                    started,
                    f"Compilation failed: {diagnostic}",
                    stack_trace=diagnostic,
                    output=compiled.stdout or None,
                )

            outcome = run_command(
                ["java", "-jar", str(jar), "--class-path", str(scratch_dir), "--select-class", class_name],
                timeout=self.settings.run_timeout_seconds,
            )

        if outcome.missing_binary:
            return failed_result(test_case, started, f"java is not available: {outcome.stderr}")
        if outcome.timed_out:
            return failed_result(
                test_case,
                started,
                f"Test run timed out after {self.settings.run_timeout_seconds}s",
                stack_trace=outcome.stderr,
                output=outcome.stdout or None,
            )
        if outcome.returncode != 0 and not outcome.stdout and not outcome.stderr:
            return failed_result(test_case, started, f"Test execution failed with exit code {outcome.returncode}")

        text = outcome.combined
        passed = interpret_junit_output(text)
        error: str | None = None
        stack_trace: str | None = None
        if not passed:
            error = extract_error_message(text)
            if len(error) < 20:
                error = outcome.stderr or outcome.stdout or "Test execution failed"
            stack_trace = text
        logger.info("JUnit %s: %s", class_name, "passed" if passed else "failed")
        return TestResult(
            test_case_id=test_case.id,
            passed=passed,
            execution_time=elapsed_since(started),
            error=error,
            stack_trace=stack_trace,
            output=outcome.stdout or None,
        )
