"""Entry point for `python -m autofix_testgen` and the `autofix-testgen` CLI script."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path

from autofix_testgen.models import Requirement, WorkflowConfig
from autofix_testgen.notifications import NullPublisher
from autofix_testgen.parsers import parse_requirements
from autofix_testgen.settings import RuntimeSettings
from autofix_testgen.workflow import build_default_workflow, format_workflow_summary


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate, run and auto-fix tests for one source file")
    parser.add_argument("file", help="Java, TypeScript or JavaScript source file")
    parser.add_argument("--test-type", default="jest", choices=["jest", "junit"], help="Test framework to generate for")
    parser.add_argument(
        "--requirement",
        action="append",
        default=[],
        help="Natural-language requirement (repeatable)",
    )
    parser.add_argument(
        "--requirements-file",
        type=Path,
        default=None,
        help="JSON list of requirement strings or objects",
    )
    parser.add_argument(
        "--auto-apply-fixes",
        action="store_true",
        help="Apply fixes and re-run until tests pass or retries run out",
    )
    parser.add_argument("--max-retries", type=int, default=None, help="Retry budget (default: AUTOFIX_MAX_RETRIES)")
    parser.add_argument("--workflow-id", default="", help="Explicit workflow id")
    parser.add_argument("--project-id", default="default")
    parser.add_argument("--user-id", default="system")
    parser.add_argument("--no-notify", action="store_true", help="Do not publish workflow events")
    parser.add_argument("--json", action="store_true", help="Print the final workflow state as JSON")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    return parser.parse_args(argv)


def load_requirements(texts: list[str], requirements_file: Path | None) -> list[Requirement]:
    payload: list[object] = list(texts)
    if requirements_file is not None:
        if not requirements_file.is_file():
            raise FileNotFoundError(f"Requirements file does not exist: {requirements_file}")
        loaded = json.loads(requirements_file.read_text(encoding="utf-8"))
        if not isinstance(loaded, list):
            raise ValueError("requirements file must contain a JSON list")
        payload.extend(loaded)
    return parse_requirements(payload)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = RuntimeSettings.from_env()
        requirements = load_requirements(args.requirement, args.requirements_file)
        config = WorkflowConfig(
            file_path=args.file,
            runtime_kind=args.test_type,
            requirements=requirements,
            auto_apply_fixes=args.auto_apply_fixes,
            max_retries=settings.max_retries if args.max_retries is None else args.max_retries,
            workflow_id=args.workflow_id,
            project_id=args.project_id,
            user_id=args.user_id,
            notifications_enabled=not args.no_notify,
        ).normalized()
        workflow = build_default_workflow(settings, publisher=NullPublisher() if args.no_notify else None)
        state = workflow.run(config)
    except (OSError, ValueError, RuntimeError) as exc:
        logging.error("Unable to run workflow: %s", exc)
        return 1

    if args.json:
        print(state.model_dump_json(indent=2))
    else:
        print(format_workflow_summary(state))
    return 0 if state.stage.value == "completed" else 1


if __name__ == "__main__":
    raise SystemExit(main())
