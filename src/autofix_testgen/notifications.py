"""Best-effort workflow event publishing.

Events go to an Ably channel over the REST API. Publishing happens on a
single background worker per run so the workflow never waits on the network
and events keep their emission order; failures are logged and dropped.
"""

from __future__ import annotations

import base64
import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .models import utc_now
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

_PUBLISH_TIMEOUT_SECONDS = 10


class EventType(str, Enum):
    STARTED = "workflow.started"
    STAGE_CHANGED = "workflow.stage.changed"
    TEST_GENERATED = "workflow.test.generated"
    TEST_EXECUTED = "workflow.test.executed"
    FIX_GENERATED = "workflow.fix.generated"
    COMPLETED = "workflow.completed"
    FAILED = "workflow.failed"
    PROGRESS = "workflow.progress"


class WorkflowEvent(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    type: EventType
    workflow_id: str
    project_id: str = "default"
    user_id: str = "system"
    timestamp: datetime = Field(default_factory=utc_now)
    data: dict[str, Any] = Field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


def workflow_channel(workflow_id: str) -> str:
    return f"workflow:{workflow_id}"


def user_channel(project_id: str, user_id: str) -> str:
    return f"project:{project_id}:user:{user_id}"


def project_channel(project_id: str) -> str:
    return f"project:{project_id}:broadcast"


class EventPublisher(Protocol):
    def publish(self, channel: str, event: WorkflowEvent) -> None:
        ...

    def is_ready(self) -> bool:
        ...


class NullPublisher:
    """Publisher used when notifications are disabled."""

    def publish(self, channel: str, event: WorkflowEvent) -> None:
        logger.debug("Notifications disabled; dropping %s for %s", event.type.value, channel)

    def is_ready(self) -> bool:
        return False

    @property
    def state(self) -> str:
        return "disabled"


def _http_post_json(url: str, payload: dict[str, Any], headers: dict[str, str]) -> dict[str, Any]:
    """POST JSON and return the parsed response (``{}`` for an empty body).

    Raises:
        RuntimeError: If the request fails or the response is not valid JSON.
    """
    request = urllib.request.Request(
        url,
        method="POST",
        headers={"Content-Type": "application/json", **headers},
        data=json.dumps(payload).encode("utf-8"),
    )
    try:
        with urllib.request.urlopen(request, timeout=_PUBLISH_TIMEOUT_SECONDS) as response:
            body = response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace")[:500] if exc.fp is not None else ""
        logger.error("HTTP %d from %s: %s", exc.code, url, detail)
        raise RuntimeError(f"HTTP {exc.code} from {url}: {exc.reason}") from exc
    except urllib.error.URLError as exc:
        raise RuntimeError(f"Failed to reach {url}: {exc.reason}") from exc
    if not body.strip():
        return {}
    try:
        parsed = json.loads(body)
    except json.JSONDecodeError as exc:
        raise RuntimeError(f"Invalid JSON response from {url}") from exc
    return parsed if isinstance(parsed, dict) else {"items": parsed}


class AblyRestPublisher:
    """Publishes events through Ably's REST ``/channels/{name}/messages`` endpoint."""

    def __init__(self, api_key: str, base_url: str = "https://rest.ably.io") -> None:
        self.api_key = api_key.strip()
        self.base_url = base_url.rstrip("/")

    @classmethod
    def from_settings(cls, settings: RuntimeSettings) -> "AblyRestPublisher":
        if not settings.ably_api_key:
            logger.warning("ABLY_API_KEY not set; workflow events will not be published")
        return cls(settings.ably_api_key, settings.ably_rest_url)

    def is_ready(self) -> bool:
        return bool(self.api_key)

    @property
    def state(self) -> str:
        return "configured" if self.is_ready() else "disabled"

    def _auth_header(self) -> str:
        token = base64.b64encode(self.api_key.encode("utf-8")).decode("ascii")
        return f"Basic {token}"

    def publish(self, channel: str, event: WorkflowEvent) -> None:
        if not self.is_ready():
            logger.warning("Ably not configured, skipping %s", event.type.value)
            return
        url = f"{self.base_url}/channels/{urllib.parse.quote(channel, safe='')}/messages"
        _http_post_json(
            url,
            {"name": event.type.value, "data": event.to_payload()},
            {"Authorization": self._auth_header()},
        )
        logger.debug("Published %s to %s", event.type.value, channel)


class WorkflowNotifier:
    """Per-run emitter: stamps run identity onto events and publishes them in the background."""

    def __init__(
        self,
        publisher: EventPublisher,
        *,
        workflow_id: str,
        channel: str,
        project_id: str = "default",
        user_id: str = "system",
        enabled: bool = True,
    ) -> None:
        self.publisher = publisher
        self.workflow_id = workflow_id
        self.channel = channel
        self.project_id = project_id
        self.user_id = user_id
        self.enabled = enabled
        self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"notify-{workflow_id[-9:]}")

    def emit(self, event_type: EventType, data: dict[str, Any] | None = None) -> None:
        """Queue one event. Never raises."""
        if not self.enabled:
            return
        try:
            event = WorkflowEvent(
                type=event_type,
                workflow_id=self.workflow_id,
                project_id=self.project_id,
                user_id=self.user_id,
                data=data or {},
            )
            future = self._pool.submit(self.publisher.publish, self.channel, event)
        except Exception:
            logger.exception("Could not queue %s for %s", event_type.value, self.channel)
            return
        future.add_done_callback(self._log_failure)

    def _log_failure(self, future: Future[None]) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error("Failed to publish workflow event to %s: %s", self.channel, exc)

    def close(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)
