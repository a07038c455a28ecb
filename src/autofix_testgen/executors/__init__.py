from __future__ import annotations

from ..models import RuntimeKind
from ..settings import RuntimeSettings
from ..stores import SourceRegistry
from .base import CommandOutcome, TestExecutor, run_all, run_command
from .jest import JestExecutor, interpret_jest_report
from .junit import JUnitExecutor, extract_error_message, interpret_junit_output


def build_executors(
    settings: RuntimeSettings,
    sources: SourceRegistry | None = None,
) -> dict[RuntimeKind, TestExecutor]:
    """One executor per runtime kind."""
    return {
        RuntimeKind.JEST: JestExecutor(settings),
        RuntimeKind.JUNIT: JUnitExecutor(settings, sources=sources),
    }


__all__ = [
    "CommandOutcome",
    "JUnitExecutor",
    "JestExecutor",
    "TestExecutor",
    "build_executors",
    "extract_error_message",
    "interpret_jest_report",
    "interpret_junit_output",
    "run_all",
    "run_command",
]
