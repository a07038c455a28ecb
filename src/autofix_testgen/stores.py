"""Keyed in-memory stores shared by workflow runs.

Each store guards its map with a lock so concurrent runs can insert without
corrupting entries; the last write for a key wins.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from .models import BugFix, RuntimeKind, TestCase, TestResult, utc_now

logger = logging.getLogger(__name__)


class LookupFailedError(KeyError):
    """Raised when a store has no entry for the requested id."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "lookup failed"


@dataclass
class StoreEntry:
    data: object
    timestamp: datetime = field(default_factory=utc_now)
    user_id: str | None = None


class TestCaseStore:
    """Test cases by id and the latest result per test case id."""

    __test__ = False

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._cases: dict[str, StoreEntry] = {}
        self._results: dict[str, StoreEntry] = {}

    def store_test_case(self, test_case: TestCase, user_id: str | None = None) -> TestCase:
        with self._lock:
            self._cases[test_case.id] = StoreEntry(data=test_case, user_id=user_id)
        return test_case

    def get_test_case(self, test_case_id: str) -> TestCase | None:
        with self._lock:
            entry = self._cases.get(test_case_id)
        return entry.data if entry is not None else None  # type: ignore[return-value]

    def require_test_case(self, test_case_id: str) -> TestCase:
        test_case = self.get_test_case(test_case_id)
        if test_case is None:
            raise LookupFailedError(f"Test case not found: {test_case_id}")
        return test_case

    def replace_code(self, test_case_id: str, code: str) -> TestCase:
        """Swap the test body in place, keeping the id."""
        with self._lock:
            entry = self._cases.get(test_case_id)
            if entry is None:
                raise LookupFailedError(f"Test case not found: {test_case_id}")
            updated = entry.data.model_copy(update={"code": code})  # type: ignore[attr-defined]
            self._cases[test_case_id] = StoreEntry(data=updated, user_id=entry.user_id)
        return updated

    def list_test_cases(self, kind: RuntimeKind | None = None) -> list[TestCase]:
        with self._lock:
            cases = [entry.data for entry in self._cases.values()]
        if kind is not None:
            cases = [case for case in cases if case.type == kind]  # type: ignore[attr-defined]
        return cases  # type: ignore[return-value]

    def store_test_result(self, result: TestResult) -> TestResult:
        with self._lock:
            self._results[result.test_case_id] = StoreEntry(data=result)
        return result

    def get_test_result(self, test_case_id: str) -> TestResult | None:
        with self._lock:
            entry = self._results.get(test_case_id)
        return entry.data if entry is not None else None  # type: ignore[return-value]

    def failed_results(self) -> list[TestResult]:
        with self._lock:
            results = [entry.data for entry in self._results.values()]
        return [result for result in results if not result.passed]  # type: ignore[attr-defined]

    def clear(self) -> None:
        with self._lock:
            self._cases.clear()
            self._results.clear()


class BugFixStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._fixes: dict[str, StoreEntry] = {}

    def store_bug_fix(self, fix: BugFix, user_id: str | None = None) -> BugFix:
        with self._lock:
            self._fixes[fix.id] = StoreEntry(data=fix, user_id=user_id)
        return fix

    def get_bug_fix(self, fix_id: str) -> BugFix | None:
        with self._lock:
            entry = self._fixes.get(fix_id)
        return entry.data if entry is not None else None  # type: ignore[return-value]

    def require_bug_fix(self, fix_id: str) -> BugFix:
        fix = self.get_bug_fix(fix_id)
        if fix is None:
            raise LookupFailedError(f"Bug fix not found: {fix_id}")
        return fix

    def mark_applied(self, fix_id: str) -> bool:
        with self._lock:
            entry = self._fixes.get(fix_id)
            if entry is None:
                return False
            entry.data.applied = True  # type: ignore[attr-defined]
            entry.data.applied_at = utc_now()  # type: ignore[attr-defined]
        return True

    def mark_validated(self, fix_id: str, result: TestResult) -> bool:
        with self._lock:
            entry = self._fixes.get(fix_id)
            if entry is None:
                return False
            entry.data.validated = result.passed  # type: ignore[attr-defined]
            entry.data.retest_result = result  # type: ignore[attr-defined]
        return True

    def fixes_for_test(self, test_case_id: str) -> list[BugFix]:
        with self._lock:
            fixes = [entry.data for entry in self._fixes.values()]
        return [fix for fix in fixes if fix.test_case_id == test_case_id]  # type: ignore[attr-defined]

    def list_bug_fixes(self, applied_only: bool = False) -> list[BugFix]:
        with self._lock:
            fixes = [entry.data for entry in self._fixes.values()]
        if applied_only:
            fixes = [fix for fix in fixes if fix.applied]  # type: ignore[attr-defined]
        return fixes  # type: ignore[return-value]

    def clear(self) -> None:
        with self._lock:
            self._fixes.clear()


class SourceRegistry:
    """Source text by path: registered in-memory content first, the filesystem otherwise."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._overrides: dict[str, str] = {}

    def register(self, path: str, content: str) -> None:
        with self._lock:
            self._overrides[path] = content

    def is_in_memory(self, path: str) -> bool:
        with self._lock:
            return path in self._overrides

    def read(self, path: str) -> str:
        """Return source text. Raises FileNotFoundError when neither source has it."""
        with self._lock:
            content = self._overrides.get(path)
        if content is not None:
            return content
        return Path(path).read_text(encoding="utf-8")

    def write(self, path: str, content: str) -> None:
        with self._lock:
            if path in self._overrides:
                self._overrides[path] = content
                return
        Path(path).write_text(content, encoding="utf-8")
        logger.info("Wrote %d characters to %s", len(content), path)
