from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
from aiohttp import test_utils

from autofix_testgen.notifications import EventType
from autofix_testgen.server import config_from_payload, create_app
from fakes import RecordingPublisher, ScriptedExecutor, ScriptedGenerator


async def _wait_for(publisher: RecordingPublisher, event_type: EventType, timeout: float = 5.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while event_type not in publisher.types():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError(f"{event_type.value} never published; saw {publisher.types()}")
        await asyncio.sleep(0.02)


@pytest.mark.asyncio
async def test_health_reports_publisher_state(make_workflow) -> None:
    app = create_app(make_workflow(ScriptedGenerator(), ScriptedExecutor()))
    async with test_utils.TestClient(test_utils.TestServer(app)) as client:
        resp = await client.get("/health")
        body = await resp.json()

    assert resp.status == 200
    assert body["status"] == "healthy"
    assert body["ably"] == {"connected": True, "state": "recording"}
    assert "timestamp" in body


@pytest.mark.asyncio
async def test_start_returns_immediately_and_runs_in_background(
    make_workflow, calculator_path: Path, publisher: RecordingPublisher
) -> None:
    app = create_app(make_workflow(ScriptedGenerator(), ScriptedExecutor()))
    async with test_utils.TestClient(test_utils.TestServer(app)) as client:
        resp = await client.post(
            "/workflow/start",
            json={"filePath": str(calculator_path), "testType": "junit", "workflowId": "wf-http", "projectId": "p1"},
        )
        body = await resp.json()
        await _wait_for(publisher, EventType.COMPLETED)

    assert resp.status == 200
    assert body == {
        "success": True,
        "workflowId": "wf-http",
        "status": "started",
        "message": "Test generation workflow initiated",
        "channel": "workflow:wf-http",
    }
    assert publisher.types()[0] == EventType.STARTED
    assert {channel for channel, _ in publisher.events} == {"workflow:wf-http"}
    assert all(event.project_id == "p1" for _, event in publisher.events)


@pytest.mark.asyncio
async def test_start_with_inline_content(make_workflow, publisher: RecordingPublisher) -> None:
    executor = ScriptedExecutor()
    app = create_app(make_workflow(ScriptedGenerator(), executor))
    async with test_utils.TestClient(test_utils.TestServer(app)) as client:
        resp = await client.post(
            "/workflow/start",
            json={
                "filePath": "virtual/util.ts",
                "fileContent": "export function twice(n: number): number {\n  return n * 2;\n}\n",
                "channelName": "custom-channel",
            },
        )
        body = await resp.json()
        await _wait_for(publisher, EventType.COMPLETED)

    assert body["channel"] == "custom-channel"
    assert [case.target_function for case in executor.calls] == ["twice"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("payload", "message"),
    [
        ({}, "filePath is required"),
        ({"filePath": "a.ts", "testType": "mocha"}, 'testType must be "jest" or "junit"'),
        ({"filePath": "a.py"}, "Unsupported file type: .py"),
        ({"filePath": "a.ts", "maxRetries": -1}, "maxRetries must be a non-negative integer"),
    ],
)
async def test_start_rejects_invalid_requests(make_workflow, payload: dict, message: str) -> None:
    app = create_app(make_workflow(ScriptedGenerator(), ScriptedExecutor()))
    async with test_utils.TestClient(test_utils.TestServer(app)) as client:
        resp = await client.post("/workflow/start", json=payload)
        body = await resp.json()

    assert resp.status == 400
    assert body == {"error": message}


@pytest.mark.asyncio
async def test_start_rejects_malformed_json(make_workflow) -> None:
    app = create_app(make_workflow(ScriptedGenerator(), ScriptedExecutor()))
    async with test_utils.TestClient(test_utils.TestServer(app)) as client:
        resp = await client.post("/workflow/start", data="{not json", headers={"Content-Type": "application/json"})

    assert resp.status == 400


@pytest.mark.asyncio
async def test_status_points_to_channel(make_workflow) -> None:
    app = create_app(make_workflow(ScriptedGenerator(), ScriptedExecutor()))
    async with test_utils.TestClient(test_utils.TestServer(app)) as client:
        resp = await client.get("/workflow/wf-42/status")
        body = await resp.json()

    assert body["workflowId"] == "wf-42"
    assert body["channel"] == "workflow:wf-42"


def test_payload_defaults() -> None:
    config = config_from_payload({"filePath": "src/utils.ts"})

    assert config.kind.value == "jest"
    assert config.auto_apply_fixes is True
    assert config.max_retries == 2
    assert config.project_id == "default"
    assert config.user_id == "system"
    assert config.notifications_enabled is True
    assert config.workflow_id.startswith("workflow-")
