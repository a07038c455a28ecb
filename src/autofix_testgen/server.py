"""HTTP surface: start workflows in the background and report notifier health."""

from __future__ import annotations

import argparse
import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Sequence

from aiohttp import web

from .models import WorkflowConfig, WorkflowState, new_workflow_id, utc_now
from .notifications import workflow_channel
from .parsers import check_supported_file, parse_requirements
from .settings import RuntimeSettings
from .workflow import ClosedLoopWorkflow, build_default_workflow

logger = logging.getLogger(__name__)

WORKFLOW_KEY = web.AppKey("workflow", ClosedLoopWorkflow)
POOL_KEY = web.AppKey("pool", ThreadPoolExecutor)
PENDING_KEY = web.AppKey("pending", set)

_DEFAULT_WORKERS = 4


def config_from_payload(payload: Any) -> WorkflowConfig:
    """Build a validated WorkflowConfig from a ``/workflow/start`` body. Raises ValueError."""
    if not isinstance(payload, dict):
        raise ValueError("request body must be a JSON object")
    file_path = payload.get("filePath")
    if not isinstance(file_path, str) or not file_path.strip():
        raise ValueError("filePath is required")
    test_type = payload.get("testType") or "jest"
    if test_type not in ("jest", "junit"):
        raise ValueError('testType must be "jest" or "junit"')
    max_retries = payload.get("maxRetries", 2)
    if isinstance(max_retries, bool) or not isinstance(max_retries, int) or max_retries < 0:
        raise ValueError("maxRetries must be a non-negative integer")
    file_content = payload.get("fileContent")
    if file_content is not None and not isinstance(file_content, str):
        raise ValueError("fileContent must be a string")
    config = WorkflowConfig(
        file_path=file_path,
        runtime_kind=test_type,
        requirements=parse_requirements(payload.get("requirements")),
        auto_apply_fixes=bool(payload.get("autoApplyFixes", True)),
        max_retries=max_retries,
        file_content=file_content,
        workflow_id=str(payload.get("workflowId") or new_workflow_id()),
        project_id=str(payload.get("projectId") or "default"),
        user_id=str(payload.get("userId") or "system"),
        channel_name=payload.get("channelName") or None,
        notifications_enabled=bool(payload.get("enableAbly", True)),
    ).normalized()
    check_supported_file(config.file_path)
    return config


async def health(request: web.Request) -> web.Response:
    publisher = request.app[WORKFLOW_KEY].publisher
    state = getattr(publisher, "state", "unknown")
    return web.json_response(
        {
            "status": "healthy",
            "ably": {"connected": publisher.is_ready(), "state": state},
            "timestamp": utc_now().isoformat(),
        }
    )


def _log_outcome(future: asyncio.Future[WorkflowState]) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.error("Workflow error: %s", exc)
        return
    state = future.result()
    logger.info("Workflow %s finished: %s", state.workflow_id, state.stage.value)


async def start_workflow(request: web.Request) -> web.Response:
    try:
        payload = await request.json()
    except ValueError:
        return web.json_response({"error": "request body must be valid JSON"}, status=400)
    try:
        config = config_from_payload(payload)
    except ValueError as exc:
        return web.json_response({"error": str(exc)}, status=400)

    app = request.app
    loop = asyncio.get_running_loop()
    future = loop.run_in_executor(app[POOL_KEY], app[WORKFLOW_KEY].run, config)
    pending = app[PENDING_KEY]
    pending.add(future)
    future.add_done_callback(pending.discard)
    future.add_done_callback(_log_outcome)

    logger.info("Started workflow %s for %s", config.workflow_id, config.file_path)
    return web.json_response(
        {
            "success": True,
            "workflowId": config.workflow_id,
            "status": "started",
            "message": "Test generation workflow initiated",
            "channel": config.channel,
        }
    )


async def workflow_status(request: web.Request) -> web.Response:
    workflow_id = request.match_info["workflow_id"]
    return web.json_response(
        {
            "workflowId": workflow_id,
            "message": "Workflow status not persisted. Subscribe to the channel for real-time updates.",
            "channel": workflow_channel(workflow_id),
        }
    )


async def _shutdown_pool(app: web.Application) -> None:
    app[POOL_KEY].shutdown(wait=False, cancel_futures=True)


def create_app(workflow: ClosedLoopWorkflow, *, max_workers: int = _DEFAULT_WORKERS) -> web.Application:
    app = web.Application()
    app[WORKFLOW_KEY] = workflow
    app[POOL_KEY] = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="workflow")
    app[PENDING_KEY] = set()
    app.router.add_get("/health", health)
    app.router.add_post("/workflow/start", start_workflow)
    app.router.add_get("/workflow/{workflow_id}/status", workflow_status)
    app.on_cleanup.append(_shutdown_pool)
    return app


def main(argv: Sequence[str] | None = None) -> None:
    settings = RuntimeSettings.from_env()
    parser = argparse.ArgumentParser(prog="autofix-testgen-server", description="Serve the closed-loop test workflow over HTTP.")
    parser.add_argument("--host", default=settings.server_host)
    parser.add_argument("--port", type=int, default=settings.server_port)
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    workflow = build_default_workflow(settings)
    logger.info("Serving on %s:%d (notifier %s)", args.host, args.port, workflow.publisher.is_ready())
    web.run_app(create_app(workflow), host=args.host, port=args.port)


if __name__ == "__main__":
    main()
