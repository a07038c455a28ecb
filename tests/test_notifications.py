from __future__ import annotations

import base64
from typing import Any

import pytest

from autofix_testgen import notifications
from autofix_testgen.notifications import (
    AblyRestPublisher,
    EventType,
    NullPublisher,
    WorkflowEvent,
    WorkflowNotifier,
    project_channel,
    user_channel,
    workflow_channel,
)
from autofix_testgen.settings import RuntimeSettings
from fakes import RecordingPublisher


def test_event_payload_uses_camel_case() -> None:
    event = WorkflowEvent(type=EventType.STARTED, workflow_id="wf-1", data={"stage": "parsing"})

    payload = event.to_payload()

    assert payload["type"] == "workflow.started"
    assert payload["workflowId"] == "wf-1"
    assert payload["projectId"] == "default"
    assert payload["userId"] == "system"
    assert payload["data"] == {"stage": "parsing"}
    assert isinstance(payload["timestamp"], str)


def test_channel_names() -> None:
    assert workflow_channel("wf-1") == "workflow:wf-1"
    assert user_channel("p1", "u1") == "project:p1:user:u1"
    assert project_channel("p1") == "project:p1:broadcast"


def test_ably_publish_posts_message(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[tuple[str, dict[str, Any], dict[str, str]]] = []
    monkeypatch.setattr(notifications, "_http_post_json", lambda url, payload, headers: calls.append((url, payload, headers)) or {})
    publisher = AblyRestPublisher("app.key:secret", "https://rest.example.test/")

    publisher.publish("workflow:wf 1", WorkflowEvent(type=EventType.COMPLETED, workflow_id="wf 1"))

    url, payload, headers = calls[0]
    assert url == "https://rest.example.test/channels/workflow%3Awf%201/messages"
    assert payload["name"] == "workflow.completed"
    assert payload["data"]["workflowId"] == "wf 1"
    expected = base64.b64encode(b"app.key:secret").decode("ascii")
    assert headers == {"Authorization": f"Basic {expected}"}
    assert publisher.state == "configured"


def test_unconfigured_ably_skips_publishing(monkeypatch: pytest.MonkeyPatch) -> None:
    def fail(*_args: object) -> dict[str, Any]:
        raise AssertionError("should not post")

    monkeypatch.setattr(notifications, "_http_post_json", fail)
    publisher = AblyRestPublisher.from_settings(RuntimeSettings(ably_api_key=""))

    publisher.publish("workflow:x", WorkflowEvent(type=EventType.STARTED, workflow_id="x"))

    assert not publisher.is_ready()
    assert publisher.state == "disabled"
    assert not NullPublisher().is_ready()


def test_notifier_preserves_order_and_identity() -> None:
    publisher = RecordingPublisher()
    notifier = WorkflowNotifier(publisher, workflow_id="wf-9", channel="workflow:wf-9", project_id="p", user_id="u")

    for idx in range(20):
        notifier.emit(EventType.PROGRESS, {"current": idx})
    notifier.close()

    assert [event.data["current"] for _, event in publisher.events] == list(range(20))
    assert {channel for channel, _ in publisher.events} == {"workflow:wf-9"}
    assert all((event.workflow_id, event.project_id, event.user_id) == ("wf-9", "p", "u") for _, event in publisher.events)


def test_notifier_swallows_publisher_errors() -> None:
    notifier = WorkflowNotifier(RecordingPublisher(fail=True), workflow_id="wf", channel="workflow:wf")

    notifier.emit(EventType.STARTED)
    notifier.close()
    notifier.emit(EventType.COMPLETED)


def test_disabled_notifier_emits_nothing() -> None:
    publisher = RecordingPublisher()
    notifier = WorkflowNotifier(publisher, workflow_id="wf", channel="workflow:wf", enabled=False)

    notifier.emit(EventType.STARTED)
    notifier.close()

    assert publisher.events == []
