from __future__ import annotations

from pathlib import Path

from autofix_testgen.generators import TestCaseGenerator, build_junit_prompt
from autofix_testgen.models import Requirement, RuntimeKind
from autofix_testgen.parsers import parse_code_metadata
from fakes import CALCULATOR_JAVA, ScriptedGenerator


def test_generates_one_junit_case_per_method(calculator_path: Path) -> None:
    generator = ScriptedGenerator(tests=lambda prompt: "```java\nclass AddTest {}\n```")
    requirements = [Requirement(id="req-1", description="adds numbers")]

    metadata, cases = TestCaseGenerator(generator).generate_for_file(str(calculator_path), RuntimeKind.JUNIT, requirements)

    assert metadata.class_name == "Calculator"
    assert [case.name for case in cases] == ["addTest", "divideTest"]
    assert all(case.code == "class AddTest {}" for case in cases)
    assert all(case.type == RuntimeKind.JUNIT for case in cases)
    assert all(case.requirements == ["req-1"] for case in cases)
    assert all(case.file_path == str(calculator_path) for case in cases)
    assert len({case.id for case in cases}) == 2
    assert "adds numbers" in generator.prompts[0]
    assert "Generate comprehensive JUnit 5 test cases" in generator.prompts[0]


def test_jest_prompt_pins_import_path_and_arity(utils_path: Path) -> None:
    generator = ScriptedGenerator()

    _metadata, cases = TestCaseGenerator(generator).generate_for_file(str(utils_path), RuntimeKind.JEST)

    assert [case.name for case in cases] == ["capitalize.test", "sum.test"]
    first = generator.prompts[0]
    import_path = str(utils_path)[: -len(".ts")]
    assert f"import {{ capitalize }} from '{import_path}';" in first
    assert "takes EXACTLY 1 parameter(s)" in first
    assert "value.charAt(0)" in first


def test_empty_generation_falls_back_to_template(utils_path: Path) -> None:
    generator = ScriptedGenerator(tests="")

    _metadata, cases = TestCaseGenerator(generator).generate_for_file(str(utils_path), RuntimeKind.JEST)

    assert "describe('capitalize'" in cases[0].code
    assert "toBeDefined()" in cases[0].code


def test_empty_junit_generation_uses_class_template() -> None:
    metadata = parse_code_metadata("Calculator.java", CALCULATOR_JAVA)

    cases = TestCaseGenerator(ScriptedGenerator(tests="")).generate(metadata, RuntimeKind.JUNIT, [], CALCULATOR_JAVA)

    assert "class AddTest" in cases[0].code
    assert "Calculator.class" in cases[0].code


def test_junit_prompt_reports_package_declaration() -> None:
    metadata = parse_code_metadata("Calculator.java", CALCULATOR_JAVA)
    func = metadata.functions[0]

    without_package = build_junit_prompt(metadata, func, [], CALCULATOR_JAVA)
    with_package = build_junit_prompt(metadata, func, [], "package com.example;\n" + CALCULATOR_JAVA)

    assert "has NO package declaration" in without_package
    assert "declares a package" in with_package
    assert "Method Signature: int add(int a, int b)" in without_package
