"""Closed-loop test workflow: generate, execute, fix, revalidate.

The loop is a LangGraph ``StateGraph``:

    start -> generate -> execute -> complete
                           |
                           v
                          fix <-> validate -> complete | fail

``fix`` runs one classify-and-patch pass over every failing result. With
auto-apply on, ``validate`` re-runs every test case and either completes,
loops back to ``fix`` or fails once the retry budget is spent. With auto-apply
off the pass only proposes fixes and the run ends without re-executing.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, TypedDict

from langgraph.graph import END, START, StateGraph
from langgraph.types import Command

from .autofix import FixAgent
from .executors import build_executors
from .executors.base import TestExecutor, run_all
from .generators import TestCaseGenerator
from .llm import TextGenerator, build_text_generator
from .models import BugFix, RuntimeKind, WorkflowConfig, WorkflowStage, WorkflowState
from .notifications import AblyRestPublisher, EventPublisher, EventType, NullPublisher, WorkflowNotifier
from .parsers import check_supported_file, parse_code_metadata
from .settings import RuntimeSettings
from .stores import BugFixStore, SourceRegistry, TestCaseStore

logger = logging.getLogger(__name__)

# start, generate, execute and the terminal node, plus two nodes per attempt.
_BASE_RECURSION_LIMIT = 12


class ClosedLoopState(TypedDict, total=False):
    run_config: WorkflowConfig
    workflow: WorkflowState
    notifier: WorkflowNotifier
    attempt_fix_ids: list[str]


class ClosedLoopWorkflow:
    """Drives one source file through the test/fix loop under a retry budget.

    Stores are shared across runs handled by this instance; each ``run`` owns
    its own ``WorkflowState`` and notifier.
    """

    def __init__(
        self,
        *,
        generator: TextGenerator,
        executors: Mapping[RuntimeKind, TestExecutor],
        publisher: EventPublisher | None = None,
        test_cases: TestCaseStore | None = None,
        bug_fixes: BugFixStore | None = None,
        sources: SourceRegistry | None = None,
    ) -> None:
        self.test_cases = test_cases or TestCaseStore()
        self.bug_fixes = bug_fixes or BugFixStore()
        self.sources = sources or SourceRegistry()
        self.executors = dict(executors)
        self.publisher: EventPublisher = publisher or NullPublisher()
        self.test_generator = TestCaseGenerator(generator)
        self.fix_agent = FixAgent(
            generator,
            self.test_cases,
            self.bug_fixes,
            self.sources,
            executors=self.executors,
        )
        self.graph = self._build_graph().compile()

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(ClosedLoopState)
        graph.add_node("start", self._start_node)
        graph.add_node("generate", self._generate_node)
        graph.add_node("execute", self._execute_node)
        graph.add_node("fix", self._fix_node)
        graph.add_node("validate", self._validate_node)
        graph.add_node("complete", self._complete_node)
        graph.add_node("fail", self._fail_node)

        graph.add_edge(START, "start")
        graph.add_edge("start", "generate")
        graph.add_edge("complete", END)
        graph.add_edge("fail", END)
        return graph

    @staticmethod
    def _enter(state: ClosedLoopState, stage: WorkflowStage) -> WorkflowState:
        workflow = state["workflow"]
        previous = workflow.stage
        workflow.stage = stage
        logger.info("Workflow %s: %s -> %s", workflow.workflow_id, previous.value, stage.value)
        state["notifier"].emit(
            EventType.STAGE_CHANGED,
            {"stage": stage.value, "previousStage": previous.value},
        )
        return workflow

    @staticmethod
    def _abort(state: ClosedLoopState, stage: WorkflowStage, exc: Exception) -> Command[str]:
        workflow = state["workflow"]
        logger.exception("Workflow %s aborted during %s", workflow.workflow_id, stage.value)
        workflow.errors.append(f"{stage.value} failed: {exc}")
        return Command(goto="fail", update={"workflow": workflow})

    def _executor_for(self, config: WorkflowConfig) -> TestExecutor:
        executor = self.executors.get(config.kind)
        if executor is None:
            raise LookupError(f"No executor configured for {config.kind.value}")
        return executor

    def _start_node(self, state: ClosedLoopState) -> dict[str, Any]:
        config = state["run_config"]
        workflow = state["workflow"]
        state["notifier"].emit(
            EventType.STARTED,
            {
                "filePath": config.file_path,
                "testType": config.kind.value,
                "autoApplyFixes": config.auto_apply_fixes,
                "maxRetries": config.max_retries,
                "requirementCount": len(config.requirements),
            },
        )
        self._enter(state, WorkflowStage.PARSING)
        return {"workflow": workflow, "attempt_fix_ids": []}

    def _generate_node(self, state: ClosedLoopState) -> Command[str]:
        config = state["run_config"]
        workflow = self._enter(state, WorkflowStage.GENERATING)
        try:
            source = self.sources.read(config.file_path)
            metadata = parse_code_metadata(config.file_path, source)
            cases = self.test_generator.generate(metadata, config.kind, list(config.requirements), source)
        except Exception as exc:
            return self._abort(state, WorkflowStage.GENERATING, exc)

        workflow.code_metadata = metadata
        for case in cases:
            self.test_cases.store_test_case(case, user_id=config.user_id)
        workflow.test_cases.extend(cases)
        state["notifier"].emit(
            EventType.TEST_GENERATED,
            {
                "count": len(cases),
                "testCases": [
                    {"id": case.id, "name": case.name, "targetFunction": case.target_function} for case in cases
                ],
            },
        )
        return Command(goto="execute", update={"workflow": workflow})

    def _run_all(self, state: ClosedLoopState, *, is_retest: bool) -> WorkflowState:
        workflow = state["workflow"]
        results = run_all(self._executor_for(state["run_config"]), workflow.test_cases)
        workflow.record_results(results)
        for result in results:
            self.test_cases.store_test_result(result)
        failed = sum(1 for result in results if not result.passed)
        logger.info(
            "Workflow %s: %d passed, %d failed%s",
            workflow.workflow_id,
            len(results) - failed,
            failed,
            f" (attempt {workflow.retry_count + 1})" if is_retest else "",
        )
        state["notifier"].emit(
            EventType.TEST_EXECUTED,
            {
                "total": len(results),
                "passed": len(results) - failed,
                "failed": failed,
                "isRetest": is_retest,
                "attempt": workflow.retry_count + 1 if is_retest else 0,
            },
        )
        return workflow

    def _execute_node(self, state: ClosedLoopState) -> Command[str]:
        self._enter(state, WorkflowStage.EXECUTING)
        try:
            workflow = self._run_all(state, is_retest=False)
        except Exception as exc:
            return self._abort(state, WorkflowStage.EXECUTING, exc)
        if not workflow.failing_results():
            return Command(goto="complete", update={"workflow": workflow})
        return Command(goto="fix", update={"workflow": workflow})

    def _fix_node(self, state: ClosedLoopState) -> Command[str]:
        config = state["run_config"]
        notifier = state["notifier"]
        workflow = self._enter(state, WorkflowStage.FIXING)
        if config.auto_apply_fixes and workflow.retry_count >= config.max_retries:
            logger.info("Workflow %s: retry budget of %d leaves no attempts", workflow.workflow_id, config.max_retries)
            return Command(goto="fail", update={"workflow": workflow})

        failing = workflow.failing_results()
        attempt_fix_ids: list[str] = []
        for position, result in enumerate(failing, start=1):
            notifier.emit(
                EventType.PROGRESS,
                {"stage": WorkflowStage.FIXING.value, "current": position, "total": len(failing)},
            )
            try:
                fix = self.fix_agent.classify_and_fix(result, apply_immediately=config.auto_apply_fixes)
                workflow.bug_fixes.append(fix)
                attempt_fix_ids.append(fix.id)
                if fix.applied:
                    workflow.replace_test_case(self.test_cases.require_test_case(fix.test_case_id))
            except Exception as exc:
                logger.warning("Fix generation failed for %s: %s", result.test_case_id, exc)
                workflow.errors.append(f"Fix generation failed for test case {result.test_case_id}: {exc}")
                continue
            notifier.emit(EventType.FIX_GENERATED, _fix_event_data(fix))

        if not config.auto_apply_fixes:
            goto = "fail" if workflow.failing_results() else "complete"
            return Command(goto=goto, update={"workflow": workflow, "attempt_fix_ids": attempt_fix_ids})
        return Command(goto="validate", update={"workflow": workflow, "attempt_fix_ids": attempt_fix_ids})

    def _validate_node(self, state: ClosedLoopState) -> Command[str]:
        config = state["run_config"]
        self._enter(state, WorkflowStage.VALIDATING)
        try:
            workflow = self._run_all(state, is_retest=True)
        except Exception as exc:
            return self._abort(state, WorkflowStage.VALIDATING, exc)

        latest = {result.test_case_id: result for result in workflow.test_results}
        for fix_id in state.get("attempt_fix_ids", []):
            fix = self.bug_fixes.get_bug_fix(fix_id)
            if fix is not None and fix.test_case_id in latest:
                self.bug_fixes.mark_validated(fix_id, latest[fix.test_case_id])

        if not workflow.failing_results():
            return Command(goto="complete", update={"workflow": workflow})
        workflow.retry_count += 1
        if workflow.retry_count >= config.max_retries:
            logger.info("Workflow %s: retry budget exhausted after %d attempt(s)", workflow.workflow_id, workflow.retry_count)
            return Command(goto="fail", update={"workflow": workflow})
        return Command(goto="fix", update={"workflow": workflow})

    def _complete_node(self, state: ClosedLoopState) -> dict[str, Any]:
        workflow = self._enter(state, WorkflowStage.COMPLETED)
        state["notifier"].emit(
            EventType.COMPLETED,
            {
                "totalTests": len(workflow.test_cases),
                "passed": workflow.passed_count(),
                "bugFixes": len(workflow.bug_fixes),
                "retryCount": workflow.retry_count,
            },
        )
        return {"workflow": workflow}

    def _fail_node(self, state: ClosedLoopState) -> dict[str, Any]:
        workflow = self._enter(state, WorkflowStage.FAILED)
        state["notifier"].emit(
            EventType.FAILED,
            {
                "errors": list(workflow.errors),
                "failed": len(workflow.failing_results()),
                "bugFixes": len(workflow.bug_fixes),
                "retryCount": workflow.retry_count,
            },
        )
        return {"workflow": workflow}

    def run(self, config: WorkflowConfig) -> WorkflowState:
        """Run the loop to a terminal stage.

        Raises:
            ValueError: For invalid configuration, including unsupported file types.
                Everything after validation is reported in the returned state.
        """
        config = config.normalized()
        check_supported_file(config.file_path)
        if config.file_content is not None:
            self.sources.register(config.file_path, config.file_content)

        workflow = WorkflowState(workflow_id=config.workflow_id, requirements=list(config.requirements))
        notifier = WorkflowNotifier(
            self.publisher,
            workflow_id=config.workflow_id,
            channel=config.channel,
            project_id=config.project_id,
            user_id=config.user_id,
            enabled=config.notifications_enabled,
        )
        try:
            result = self.graph.invoke(
                {"run_config": config, "workflow": workflow, "notifier": notifier, "attempt_fix_ids": []},
                config={"recursion_limit": _BASE_RECURSION_LIMIT + 2 * config.max_retries},
            )
            workflow = result["workflow"]
        except Exception as exc:
            logger.exception("Workflow %s aborted", config.workflow_id)
            workflow.errors.append(f"Workflow aborted: {exc}")
            if not workflow.stage.is_terminal:
                workflow.stage = WorkflowStage.FAILED
                notifier.emit(EventType.STAGE_CHANGED, {"stage": WorkflowStage.FAILED.value})
                notifier.emit(EventType.FAILED, {"errors": list(workflow.errors)})
        finally:
            notifier.close()
        return workflow


def _fix_event_data(fix: BugFix) -> dict[str, Any]:
    return {
        "fixId": fix.id,
        "testCaseId": fix.test_case_id,
        "target": fix.target.value,
        "applied": fix.applied,
        "description": fix.description,
    }


def build_default_workflow(
    settings: RuntimeSettings,
    publisher: EventPublisher | None = None,
) -> ClosedLoopWorkflow:
    """Wire the chat model, both executors and the Ably publisher from settings."""
    sources = SourceRegistry()
    return ClosedLoopWorkflow(
        generator=build_text_generator(settings),
        executors=build_executors(settings, sources),
        publisher=publisher or AblyRestPublisher.from_settings(settings),
        sources=sources,
    )


def format_workflow_summary(workflow: WorkflowState) -> str:
    failed = len(workflow.failing_results())
    applied = sum(1 for fix in workflow.bug_fixes if fix.applied)
    lines = [
        f"Workflow {workflow.workflow_id}: {workflow.stage.value}",
        f"  Test cases: {len(workflow.test_cases)}",
        f"  Passed: {workflow.passed_count()}  Failed: {failed}",
        f"  Bug fixes: {len(workflow.bug_fixes)} ({applied} applied)",
        f"  Retries: {workflow.retry_count}",
    ]
    for fix in workflow.bug_fixes:
        status = "validated" if fix.validated else ("applied" if fix.applied else "proposed")
        lines.append(f"    - [{fix.target.value}] {fix.test_case_id}: {status}")
    if workflow.errors:
        lines.append("  Errors:")
        lines.extend(f"    - {error}" for error in workflow.errors)
    return "\n".join(lines)
