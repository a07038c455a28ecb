from __future__ import annotations

from pathlib import Path

import pytest

from autofix_testgen.autofix import (
    TEST_FAULT_RULES,
    FaultRule,
    FixAgent,
    classify_failure,
    match_fault_rule,
    parse_verdict,
)
from autofix_testgen.models import FixTarget, RuntimeKind, TestCase, TestResult
from autofix_testgen.stores import BugFixStore, SourceRegistry, TestCaseStore
from fakes import CALCULATOR_JAVA, ScriptedExecutor, ScriptedGenerator


def _store_case(store: TestCaseStore, source_path: Path, code: str = "test for add") -> TestCase:
    return store.store_test_case(
        TestCase(
            name="addTest",
            type=RuntimeKind.JUNIT,
            code=code,
            target_function="add",
            file_path=str(source_path),
        )
    )


def _failure(test_case: TestCase, error: str) -> TestResult:
    return TestResult(test_case_id=test_case.id, passed=False, error=error, stack_trace=error)


def _agent(generator: ScriptedGenerator, executor: ScriptedExecutor | None = None) -> FixAgent:
    return FixAgent(
        generator,
        TestCaseStore(),
        BugFixStore(),
        SourceRegistry(),
        executors={RuntimeKind.JUNIT: executor or ScriptedExecutor()},
    )


@pytest.mark.parametrize(
    "error",
    [
        "SyntaxError: Cannot use import statement outside a module",
        "Calculator.java:3: error: cannot find symbol",
        "ReferenceError: multiply is not defined",
        "TypeError: calc.add is not a function",
        "Compilation failed: CalculatorTest.java:1: error",
        "Calculator cannot be resolved to a type",
        "error: package com.example does not exist",
        "java.lang.NoSuchMethodError: no such method add(II)",
        "Method not found: subtract",
    ],
)
def test_test_fault_signatures_force_test_verdict(error: str) -> None:
    result = TestResult(test_case_id="case-1", passed=False, error=error)
    assert match_fault_rule(error) is not None
    assert classify_failure(result, verdict="SOURCE") == FixTarget.TEST


def test_assertion_failures_defer_to_verdict() -> None:
    result = TestResult(test_case_id="case-1", passed=False, error="expected 4 but was 5")
    assert match_fault_rule("expected 4 but was 5") is None
    assert classify_failure(result, verdict="SOURCE") == FixTarget.SOURCE
    assert classify_failure(result, verdict="test") == FixTarget.TEST


def test_package_rule_needs_both_fragments() -> None:
    rule = next(rule for rule in TEST_FAULT_RULES if rule.name == "missing-package")
    assert rule.matches("package foo does not exist")
    assert not rule.matches("package declared twice")


def test_custom_rule_table_is_honoured() -> None:
    rules = (FaultRule("timeout", ("timed out",)),)
    result = TestResult(test_case_id="case-1", passed=False, error="Test run timed out after 30s")
    assert classify_failure(result, verdict="SOURCE", rules=rules) == FixTarget.TEST
    assert classify_failure(result, verdict="SOURCE", rules=()) == FixTarget.SOURCE


def test_parse_verdict() -> None:
    assert parse_verdict("SOURCE") == FixTarget.SOURCE
    assert parse_verdict("  test.\n") == FixTarget.TEST
    assert parse_verdict("The answer is SOURCE") == FixTarget.SOURCE
    assert parse_verdict("not sure") == FixTarget.TEST


def test_import_error_targets_test_even_when_service_blames_source(calculator_path: Path) -> None:
    generator = ScriptedGenerator(verdict="SOURCE", test_fix="```java\nfixed test\n```")
    agent = _agent(generator)
    case = _store_case(agent.test_cases, calculator_path)

    fix = agent.classify_and_fix(_failure(case, "Cannot find module '../Calculator'; check the import"), True)

    assert fix.target == FixTarget.TEST
    assert fix.fixed_code == "fixed test"
    assert fix.fixed_code != case.code
    assert fix.original_code == "test for add"
    assert fix.file_path == str(calculator_path)
    assert fix.test_result_id == case.id
    assert fix.applied
    assert agent.test_cases.require_test_case(case.id).code == "fixed test"
    assert calculator_path.read_text(encoding="utf-8") == CALCULATOR_JAVA
    assert generator.count("verdict") == 0


def test_unmatched_failure_asks_service_and_fixes_source(calculator_path: Path) -> None:
    generator = ScriptedGenerator(verdict="SOURCE", source_fix="patched calculator")
    agent = _agent(generator)
    case = _store_case(agent.test_cases, calculator_path)

    fix = agent.classify_and_fix(_failure(case, "expected 4 but was 5"), apply_immediately=True)

    assert generator.count("verdict") == 1
    assert fix.target == FixTarget.SOURCE
    assert fix.original_code == CALCULATOR_JAVA
    assert fix.line_start == 1
    assert fix.line_end == len(CALCULATOR_JAVA.splitlines())
    assert calculator_path.read_text(encoding="utf-8") == "patched calculator"
    assert agent.test_cases.require_test_case(case.id).code == "test for add"


def test_proposed_fix_is_not_applied_until_requested(calculator_path: Path) -> None:
    generator = ScriptedGenerator(verdict="TEST", test_fix="fixed test")
    agent = _agent(generator)
    case = _store_case(agent.test_cases, calculator_path)

    fix = agent.classify_and_fix(_failure(case, "expected 4 but was 5"))

    assert not fix.applied
    assert agent.test_cases.require_test_case(case.id).code == "test for add"
    assert agent.bug_fixes.fixes_for_test(case.id) == [fix]

    applied = agent.apply_fix(fix.id)
    assert applied.applied
    assert applied.applied_at is not None
    assert agent.test_cases.require_test_case(case.id).code == "fixed test"

    stamp = applied.applied_at
    assert agent.apply_fix(fix.id).applied_at == stamp


def test_retest_records_result_and_validation(calculator_path: Path) -> None:
    executor = ScriptedExecutor(lambda case: None if case.code == "fixed test" else "expected 1")
    generator = ScriptedGenerator(verdict="TEST", test_fix="fixed test")
    agent = _agent(generator, executor)
    case = _store_case(agent.test_cases, calculator_path)
    fix = agent.classify_and_fix(_failure(case, "expected 4 but was 5"), apply_immediately=True)

    result = agent.retest(fix.id)

    assert result.passed
    assert executor.calls[-1].code == "fixed test"
    assert agent.test_cases.get_test_result(case.id) == result
    stored = agent.bug_fixes.require_bug_fix(fix.id)
    assert stored.validated
    assert stored.retest_result == result


def test_passing_result_is_rejected(calculator_path: Path) -> None:
    agent = _agent(ScriptedGenerator())
    case = _store_case(agent.test_cases, calculator_path)
    with pytest.raises(ValueError):
        agent.classify_and_fix(TestResult(test_case_id=case.id, passed=True))


def test_unknown_test_case_propagates() -> None:
    agent = _agent(ScriptedGenerator())
    with pytest.raises(KeyError):
        agent.classify_and_fix(TestResult(test_case_id="missing", passed=False, error="boom"))


def test_unreadable_source_propagates(tmp_path: Path) -> None:
    agent = _agent(ScriptedGenerator())
    case = _store_case(agent.test_cases, tmp_path / "Gone.java")
    with pytest.raises(FileNotFoundError):
        agent.classify_and_fix(_failure(case, "expected 1"))


def test_empty_fix_is_an_error(calculator_path: Path) -> None:
    agent = _agent(ScriptedGenerator(verdict="SOURCE", source_fix="   "))
    case = _store_case(agent.test_cases, calculator_path)
    with pytest.raises(RuntimeError):
        agent.classify_and_fix(_failure(case, "expected 1"))
    assert agent.bug_fixes.list_bug_fixes() == []


def test_uppercase_test_anywhere_blames_the_test() -> None:
    assert parse_verdict("The source looks right; the TEST is wrong") == FixTarget.TEST
    assert parse_verdict("SOURCE, not the TEST") == FixTarget.TEST
    assert parse_verdict("the source is wrong, not the test") == FixTarget.SOURCE
