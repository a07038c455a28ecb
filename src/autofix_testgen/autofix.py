"""Failure classification and patch generation.

A failing result is blamed on either the generated test or the source under
test. Error text matching one of ``TEST_FAULT_RULES`` is always blamed on the
test; only unmatched failures are put to the generation service for a verdict.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Mapping, Sequence

from .llm import TextGenerator, strip_code_fences
from .models import BugFix, FixTarget, RuntimeKind, TestCase, TestResult
from .stores import BugFixStore, SourceRegistry, TestCaseStore
from .executors.base import TestExecutor

logger = logging.getLogger(__name__)

_VERDICT_RE = re.compile(r"\b(TEST|SOURCE)\b", re.IGNORECASE)
_UPPER_TEST_RE = re.compile(r"\bTEST\b")
_TRACE_CONTEXT_CHARS = 1_000


@dataclass(frozen=True)
class FaultRule:
    """Forces a ``test`` verdict when every fragment occurs in the lowercased error text."""

    name: str
    fragments: tuple[str, ...]

    def matches(self, error_text: str) -> bool:
        lowered = error_text.lower()
        return all(fragment in lowered for fragment in self.fragments)


TEST_FAULT_RULES: tuple[FaultRule, ...] = (
    FaultRule("unresolved-import", ("import",)),
    FaultRule("missing-symbol", ("cannot find",)),
    FaultRule("undefined-reference", ("is not defined",)),
    FaultRule("type-error", ("typeerror",)),
    FaultRule("reference-error", ("referenceerror",)),
    FaultRule("compilation-failure", ("compilation failed",)),
    FaultRule("unresolved-class", ("cannot be resolved",)),
    FaultRule("missing-package", ("package", "does not exist")),
    FaultRule("missing-method", ("no such method",)),
    FaultRule("method-not-found", ("method not found",)),
)


def match_fault_rule(error_text: str, rules: Sequence[FaultRule] = TEST_FAULT_RULES) -> FaultRule | None:
    for rule in rules:
        if rule.matches(error_text):
            return rule
    return None


def parse_verdict(text: str) -> FixTarget:
    """Read a TEST/SOURCE answer. An uppercase TEST anywhere wins; anything unrecognisable blames the test."""
    if _UPPER_TEST_RE.search(text):
        return FixTarget.TEST
    match = _VERDICT_RE.search(text)
    if match is None:
        logger.warning("Unrecognised classifier verdict %r; treating the test as broken", text[:80])
        return FixTarget.TEST
    return FixTarget(match.group(1).lower())


def classify_failure(
    result: TestResult,
    verdict: str | None = None,
    rules: Sequence[FaultRule] = TEST_FAULT_RULES,
) -> FixTarget:
    """Combine the rule table with an optional service verdict; rules always win."""
    if match_fault_rule(_error_text(result), rules) is not None:
        return FixTarget.TEST
    if verdict is None:
        return FixTarget.TEST
    return parse_verdict(verdict)


def _error_text(result: TestResult) -> str:
    return result.error or result.stack_trace or ""


def _trace_block(result: TestResult, label: str, limit: int | None = None) -> str:
    if not result.stack_trace:
        return ""
    trace = result.stack_trace if limit is None else result.stack_trace[:limit]
    return f"\n{label}:\n{trace}\n"


def build_classification_prompt(test_case: TestCase, result: TestResult, source: str) -> str:
    return (
        "You are an expert software engineer. Decide whether the SOURCE CODE has a bug or the TEST is "
        "incorrectly written.\n\n"
        f"Test Name: {test_case.name}\n"
        f"Target Function: {test_case.target_function}\n"
        f"Source File: {test_case.file_path}\n\n"
        f"ERROR MESSAGE:\n{result.error}\n"
        f"{_trace_block(result, 'STACK TRACE')}\n"
        f"SOURCE CODE:\n```\n{source}\n```\n\n"
        f"TEST CODE:\n```\n{test_case.code}\n```\n\n"
        "Check whether the test imports the function correctly, calls it with the right parameter count "
        "and types, and expects behaviour the source actually implements.\n\n"
        'Respond with ONLY one word: "SOURCE" if the source code has a bug, or "TEST" if the test is wrong.'
    )


def build_test_fix_prompt(test_case: TestCase, result: TestResult, source: str) -> str:
    return (
        "You are an expert test engineer. A test is failing because it is incorrectly written. Fix the test "
        "to match the actual behaviour of the source code while keeping what it intends to check.\n\n"
        f"Test Name: {test_case.name}\n"
        f"Target Function: {test_case.target_function}\n"
        f"Source File: {test_case.file_path}\n"
        f"Test Type: {test_case.type.value}\n\n"
        f"ERROR MESSAGE:\n{result.error}\n"
        f"{_trace_block(result, 'FULL ERROR OUTPUT', _TRACE_CONTEXT_CHARS)}\n"
        f"SOURCE CODE:\n```\n{source}\n```\n\n"
        f"CURRENT TEST CODE (THIS IS BROKEN - FIX IT):\n```\n{test_case.code}\n```\n\n"
        "FIX THE TEST:\n"
        "- Fix imports, class names and package declarations\n"
        "- If the source has no package declaration, do not import its class\n"
        "- Match parameter count and types to the function signature exactly\n"
        "- Match expectations to what the function actually returns\n\n"
        "Return ONLY the fixed test code without markdown blocks."
    )


def build_source_fix_prompt(test_case: TestCase, result: TestResult, source: str) -> str:
    return (
        "You are an expert software engineer. The source code has a bug that is causing the test to fail. "
        "Fix the bug.\n\n"
        f"Test Name: {test_case.name}\n"
        f"Target Function: {test_case.target_function}\n"
        f"Source File: {test_case.file_path}\n\n"
        f"ERROR MESSAGE:\n{result.error}\n"
        f"{_trace_block(result, 'STACK TRACE')}\n"
        f"SOURCE CODE:\n```\n{source}\n```\n\n"
        f"TEST CODE (for reference):\n```\n{test_case.code}\n```\n\n"
        f"Fix the bug in {test_case.target_function} and return the COMPLETE source file with the fix "
        "applied, not a fragment. Do not include test code. Return ONLY compilable source without markdown "
        "blocks."
    )


class FixAgent:
    """Classifies failing results and produces (and optionally applies) one BugFix per call."""

    def __init__(
        self,
        generator: TextGenerator,
        test_cases: TestCaseStore,
        bug_fixes: BugFixStore,
        sources: SourceRegistry,
        executors: Mapping[RuntimeKind, TestExecutor] | None = None,
        rules: Sequence[FaultRule] = TEST_FAULT_RULES,
    ) -> None:
        self.generator = generator
        self.test_cases = test_cases
        self.bug_fixes = bug_fixes
        self.sources = sources
        self.executors = dict(executors or {})
        self.rules = tuple(rules)

    def classify(self, test_case: TestCase, result: TestResult, source: str) -> FixTarget:
        rule = match_fault_rule(_error_text(result), self.rules)
        if rule is not None:
            logger.info("Rule %s blames test %s", rule.name, test_case.name)
            return FixTarget.TEST
        verdict = self.generator.generate(build_classification_prompt(test_case, result, source))
        target = parse_verdict(verdict)
        logger.info("Classifier blames %s for %s", target.value, test_case.name)
        return target

    def classify_and_fix(self, result: TestResult, apply_immediately: bool = False) -> BugFix:
        """Produce a fix for one failing result.

        Raises:
            ValueError: If ``result`` passed.
            KeyError: If the referenced test case is not stored.
            OSError: If the source file cannot be read.
        """
        if result.passed:
            raise ValueError(f"Result for {result.test_case_id} passed; nothing to fix")
        test_case = self.test_cases.require_test_case(result.test_case_id)
        source = self.sources.read(test_case.file_path)
        target = self.classify(test_case, result, source)

        if target == FixTarget.TEST:
            fixed = strip_code_fences(self.generator.generate(build_test_fix_prompt(test_case, result, source)))
            original = test_case.code
            description = f"Fixed test case - test was incorrectly written: {result.error}"
        else:
            fixed = strip_code_fences(self.generator.generate(build_source_fix_prompt(test_case, result, source)))
            original = source
            description = f"Auto-fix source code: {result.error}"
        if not fixed:
            raise RuntimeError(f"Empty {target.value} fix returned for {test_case.name}")

        fix = self.bug_fixes.store_bug_fix(
            BugFix(
                test_case_id=test_case.id,
                test_result_id=result.test_case_id,
                target=target,
                description=description,
                original_code=original,
                fixed_code=fixed,
                file_path=test_case.file_path,
                line_start=1,
                line_end=max(1, len(original.splitlines())),
            )
        )
        if apply_immediately:
            return self.apply_fix(fix.id)
        return fix

    def apply_fix(self, fix_id: str) -> BugFix:
        """Write a proposed fix to the test store or the source file. Applying twice is a no-op."""
        fix = self.bug_fixes.require_bug_fix(fix_id)
        if fix.applied:
            return fix
        if fix.target == FixTarget.TEST:
            self.test_cases.replace_code(fix.test_case_id, fix.fixed_code)
        else:
            self.sources.write(fix.file_path, fix.fixed_code)
        self.bug_fixes.mark_applied(fix_id)
        logger.info("Applied %s fix %s for test case %s", fix.target.value, fix_id, fix.test_case_id)
        return fix

    def retest(self, fix_id: str) -> TestResult:
        """Re-run the test behind a fix, cache the result and record whether the fix held."""
        fix = self.bug_fixes.require_bug_fix(fix_id)
        test_case = self.test_cases.require_test_case(fix.test_case_id)
        executor = self.executors.get(test_case.type)
        if executor is None:
            raise LookupError(f"No executor configured for {test_case.type.value}")
        result = executor.run(test_case)
        self.test_cases.store_test_result(result)
        self.bug_fixes.mark_validated(fix_id, result)
        return result
