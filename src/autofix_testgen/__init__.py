from importlib.metadata import PackageNotFoundError, version

from .autofix import TEST_FAULT_RULES, FaultRule, FixAgent, classify_failure, parse_verdict
from .executors import JestExecutor, JUnitExecutor, build_executors
from .generators import TestCaseGenerator
from .models import (
    BugFix,
    CodeMetadata,
    FixTarget,
    FunctionMetadata,
    Requirement,
    RuntimeKind,
    TestCase,
    TestResult,
    WorkflowConfig,
    WorkflowStage,
    WorkflowState,
)
from .notifications import AblyRestPublisher, EventType, WorkflowEvent, WorkflowNotifier
from .parsers import UnsupportedFileTypeError, parse_code_metadata, parse_requirements
from .settings import RuntimeSettings
from .stores import BugFixStore, SourceRegistry, TestCaseStore
from .workflow import ClosedLoopWorkflow, build_default_workflow, format_workflow_summary


def get_version() -> str:
    try:
        return version(__name__)
    except PackageNotFoundError:
        return "0.0.0"


__all__ = [
    "AblyRestPublisher",
    "BugFix",
    "BugFixStore",
    "ClosedLoopWorkflow",
    "CodeMetadata",
    "EventType",
    "FaultRule",
    "FixAgent",
    "FixTarget",
    "FunctionMetadata",
    "JUnitExecutor",
    "JestExecutor",
    "Requirement",
    "RuntimeKind",
    "RuntimeSettings",
    "SourceRegistry",
    "TEST_FAULT_RULES",
    "TestCase",
    "TestCaseGenerator",
    "TestCaseStore",
    "TestResult",
    "UnsupportedFileTypeError",
    "WorkflowConfig",
    "WorkflowEvent",
    "WorkflowNotifier",
    "WorkflowStage",
    "WorkflowState",
    "build_default_workflow",
    "build_executors",
    "classify_failure",
    "format_workflow_summary",
    "get_version",
    "parse_code_metadata",
    "parse_requirements",
]
