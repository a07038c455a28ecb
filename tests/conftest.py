from __future__ import annotations

from pathlib import Path
from typing import Callable

import pytest

from autofix_testgen.models import RuntimeKind
from autofix_testgen.stores import BugFixStore, SourceRegistry, TestCaseStore
from autofix_testgen.workflow import ClosedLoopWorkflow
from fakes import CALCULATOR_JAVA, UTILS_TS, RecordingPublisher, ScriptedExecutor, ScriptedGenerator


@pytest.fixture
def calculator_path(tmp_path: Path) -> Path:
    path = tmp_path / "Calculator.java"
    path.write_text(CALCULATOR_JAVA, encoding="utf-8")
    return path


@pytest.fixture
def utils_path(tmp_path: Path) -> Path:
    path = tmp_path / "utils.ts"
    path.write_text(UTILS_TS, encoding="utf-8")
    return path


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def make_workflow(publisher: RecordingPublisher) -> Callable[..., ClosedLoopWorkflow]:
    def _make(
        generator: ScriptedGenerator,
        executor: ScriptedExecutor,
        *,
        event_publisher: RecordingPublisher | None = None,
    ) -> ClosedLoopWorkflow:
        return ClosedLoopWorkflow(
            generator=generator,
            executors={RuntimeKind.JEST: executor, RuntimeKind.JUNIT: executor},
            publisher=event_publisher or publisher,
            test_cases=TestCaseStore(),
            bug_fixes=BugFixStore(),
            sources=SourceRegistry(),
        )

    return _make
