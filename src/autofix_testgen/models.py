from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import ClassVar

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    return datetime.now(UTC)


class RuntimeKind(str, Enum):
    """Supported test frameworks; each maps to exactly one executor."""

    JEST = "jest"
    JUNIT = "junit"


class WorkflowStage(str, Enum):
    PARSING = "parsing"
    GENERATING = "generating"
    EXECUTING = "executing"
    FIXING = "fixing"
    VALIDATING = "validating"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def order(self) -> int:
        return STAGE_ORDER[self]

    @property
    def is_terminal(self) -> bool:
        return self in {WorkflowStage.COMPLETED, WorkflowStage.FAILED}


STAGE_ORDER: dict[WorkflowStage, int] = {
    WorkflowStage.PARSING: 0,
    WorkflowStage.GENERATING: 1,
    WorkflowStage.EXECUTING: 2,
    WorkflowStage.FIXING: 3,
    WorkflowStage.VALIDATING: 4,
    WorkflowStage.COMPLETED: 5,
    WorkflowStage.FAILED: 5,
}


class FixTarget(str, Enum):
    """Which artifact a fix replaces."""

    TEST = "test"
    SOURCE = "source"


class RequirementType(str, Enum):
    FUNCTIONAL = "functional"
    EDGE_CASE = "edge-case"
    ERROR_HANDLING = "error-handling"
    PERFORMANCE = "performance"


class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Parameter(BaseModel):
    name: str
    type: str = "any"
    optional: bool = False


class FunctionMetadata(BaseModel):
    name: str
    parameters: list[Parameter] = Field(default_factory=list)
    return_type: str = "void"
    visibility: str | None = None
    is_static: bool = False
    line_start: int
    line_end: int
    documentation: str | None = None

    def signature(self, *, java_style: bool = False) -> str:
        if java_style:
            params = ", ".join(f"{p.type} {p.name}" for p in self.parameters)
            return f"{self.return_type} {self.name}({params})"
        params = ", ".join(f"{p.name}{'?' if p.optional else ''}: {p.type}" for p in self.parameters)
        return f"{self.name}({params}): {self.return_type}"


class CodeMetadata(BaseModel):
    """Structural description of one source file."""

    file_path: str
    language: str
    class_name: str | None = None
    functions: list[FunctionMetadata] = Field(default_factory=list)
    imports: list[str] = Field(default_factory=list)


class Requirement(BaseModel):
    """Natural-language acceptance criterion used to bias generated tests."""

    id: str
    description: str
    type: RequirementType = RequirementType.FUNCTIONAL
    priority: Priority = Priority.MEDIUM


class TestCase(BaseModel):
    __test__: ClassVar[bool] = False

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: str
    description: str = ""
    type: RuntimeKind
    code: str
    target_function: str
    file_path: str
    generated_at: datetime = Field(default_factory=utc_now)
    requirements: list[str] = Field(default_factory=list)


class TestResult(BaseModel):
    __test__: ClassVar[bool] = False

    test_case_id: str
    passed: bool
    execution_time: float = 0.0
    error: str | None = None
    stack_trace: str | None = None
    output: str | None = None
    timestamp: datetime = Field(default_factory=utc_now)


class BugFix(BaseModel):
    """One fix attempt for one failing result.

    ``test_result_id`` is the key of the latest-result cache, i.e. the id of
    the test case whose result failed. ``file_path`` is always the source file,
    even when ``target`` is ``test``.
    """

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    test_case_id: str
    test_result_id: str
    target: FixTarget
    description: str
    original_code: str
    fixed_code: str
    file_path: str
    line_start: int = 1
    line_end: int = 1
    applied: bool = False
    applied_at: datetime | None = None
    validated: bool = False
    retest_result: TestResult | None = None


class WorkflowState(BaseModel):
    """Mutable record owned by exactly one workflow run."""

    workflow_id: str
    stage: WorkflowStage = WorkflowStage.PARSING
    code_metadata: CodeMetadata | None = None
    requirements: list[Requirement] = Field(default_factory=list)
    test_cases: list[TestCase] = Field(default_factory=list)
    test_results: list[TestResult] = Field(default_factory=list)
    bug_fixes: list[BugFix] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    retry_count: int = 0

    def record_results(self, results: list[TestResult]) -> None:
        """Merge results into the latest-result view, newest replacing oldest per test case."""
        known = {case.id for case in self.test_cases}
        for result in results:
            if result.test_case_id not in known:
                raise ValueError(f"Result references unknown test case {result.test_case_id}")
            for idx, existing in enumerate(self.test_results):
                if existing.test_case_id == result.test_case_id:
                    self.test_results[idx] = result
                    break
            else:
                self.test_results.append(result)

    def replace_test_case(self, test_case: TestCase) -> None:
        for idx, existing in enumerate(self.test_cases):
            if existing.id == test_case.id:
                self.test_cases[idx] = test_case
                return
        raise KeyError(f"Test case not part of this run: {test_case.id}")

    def failing_results(self) -> list[TestResult]:
        return [result for result in self.test_results if not result.passed]

    def passed_count(self) -> int:
        return sum(1 for result in self.test_results if result.passed)


@dataclass(frozen=True)
class WorkflowConfig:
    """Options for one closed-loop run."""

    file_path: str
    runtime_kind: RuntimeKind | str = RuntimeKind.JEST
    requirements: list[Requirement] = field(default_factory=list)
    auto_apply_fixes: bool = False
    max_retries: int = 3
    file_content: str | None = None
    workflow_id: str = ""
    project_id: str = "default"
    user_id: str = "system"
    channel_name: str | None = None
    notifications_enabled: bool = True

    @property
    def kind(self) -> RuntimeKind:
        return RuntimeKind(self.runtime_kind)

    @property
    def channel(self) -> str:
        return self.channel_name or f"workflow:{self.workflow_id}"

    def normalized(self) -> "WorkflowConfig":
        """Validate and fill defaults. Raises ValueError on invalid input."""
        file_path = self.file_path.strip() if self.file_path else ""
        if not file_path:
            raise ValueError("file_path is required")
        try:
            kind = RuntimeKind(self.runtime_kind)
        except ValueError as exc:
            allowed = ", ".join(item.value for item in RuntimeKind)
            raise ValueError(f"runtime kind must be one of: {allowed}; got {self.runtime_kind!r}") from exc
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got: {self.max_retries}")
        workflow_id = self.workflow_id.strip() or new_workflow_id()
        return WorkflowConfig(
            file_path=file_path,
            runtime_kind=kind,
            requirements=list(self.requirements),
            auto_apply_fixes=self.auto_apply_fixes,
            max_retries=self.max_retries,
            file_content=self.file_content,
            workflow_id=workflow_id,
            project_id=self.project_id or "default",
            user_id=self.user_id or "system",
            channel_name=self.channel_name,
            notifications_enabled=self.notifications_enabled,
        )


def new_workflow_id() -> str:
    stamp = int(utc_now().timestamp() * 1000)
    return f"workflow-{stamp}-{uuid.uuid4().hex[:9]}"
