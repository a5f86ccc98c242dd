"""Event publishing to subscribers and external alerts over ntfy."""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable, Sequence
from dataclasses import asdict, dataclass, is_dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Protocol

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0

EVENT_STATE_CHANGED = "controller:stateChanged"
EVENT_PROGRESS_UPDATED = "controller:progressUpdated"
EVENT_APPROVAL_REQUIRED = "controller:approvalRequired"
EVENT_ACTION_COMPLETED = "controller:actionCompleted"
EVENT_USAGE_WARNING = "controller:usageWarning"
EVENT_SESSION_UPDATED = "session:updated"
EVENT_SESSION_LOG = "session:log"

Subscriber = Callable[[str, dict[str, Any]], None]


class NotificationChannel(Protocol):
    def publish(self, event: str, payload: dict[str, Any]) -> None: ...


class AlertService(Protocol):
    def send(
        self,
        title: str,
        message: str,
        *,
        priority: str | None = None,
        tags: Sequence[str] = (),
        actions: Sequence[dict[str, Any]] = (),
    ) -> None: ...

    def action_url(self) -> str | None: ...


def to_payload(value: Any) -> Any:
    """Convert dataclasses/enums/datetimes into JSON-compatible values."""

    if is_dataclass(value) and not isinstance(value, type):
        return {key: to_payload(item) for key, item in asdict(value).items()}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime | date):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(key): to_payload(item) for key, item in value.items()}
    if isinstance(value, list | tuple):
        return [to_payload(item) for item in value]
    return value


class EventBus:
    """In-process fan-out; the channel used by the controller runtime."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: list[Subscriber] = []

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """Register a subscriber; returns a callable that removes it."""

        with self._lock:
            self._subscribers.append(subscriber)

        def _unsubscribe() -> None:
            with self._lock:
                if subscriber in self._subscribers:
                    self._subscribers.remove(subscriber)

        return _unsubscribe

    def publish(self, event: str, payload: dict[str, Any]) -> None:
        logger.debug("Event %s: %s", event, payload)
        with self._lock:
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            try:
                subscriber(event, payload)
            except Exception:
                logger.exception("Subscriber failed for event %s", event)


class Notifier:
    """Publisher helper: never lets a channel or alert failure reach the caller."""

    def __init__(
        self,
        channel: NotificationChannel,
        *,
        alerts: AlertService | None = None,
    ) -> None:
        self.channel = channel
        self.alerts = alerts

    def publish(self, event: str, payload: Any) -> None:
        try:
            self.channel.publish(event, to_payload(payload))
        except Exception:
            logger.exception("Failed to publish event %s", event)

    def alert(
        self,
        title: str,
        message: str,
        *,
        priority: str | None = None,
        tags: Sequence[str] = (),
        actions: Sequence[dict[str, Any]] = (),
    ) -> None:
        if self.alerts is None:
            return
        try:
            self.alerts.send(title, message, priority=priority, tags=tags, actions=actions)
        except Exception:
            logger.exception("Failed to send alert %r", title)

    def approval_actions(self, request_id: str) -> list[dict[str, Any]]:
        """Approve/Reject/Skip buttons posting back to the response topic."""

        if self.alerts is None:
            return []
        url = self.alerts.action_url()
        if url is None:
            return []
        return [
            {
                "action": "http",
                "label": label,
                "url": url,
                "method": "POST",
                "body": json.dumps({"command": command, "requestId": request_id}),
                "clear": True,
            }
            for label, command in (
                ("Approve", "/approve"),
                ("Reject", "/reject"),
                ("Skip", "/skip"),
            )
        ]


@dataclass(slots=True)
class NtfyConfig:
    server_url: str
    topic: str
    response_topic: str | None = None
    auth_token: str | None = None
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS

    @property
    def effective_response_topic(self) -> str:
        return self.response_topic or f"{self.topic}-response"


class NtfyAlertService:
    """Posts alerts to an ntfy server; delivery errors are logged, never raised."""

    def __init__(
        self,
        config: NtfyConfig,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.config = config
        headers: dict[str, str] = {}
        if config.auth_token:
            headers["Authorization"] = f"Bearer {config.auth_token}"
        self._client = httpx.Client(
            base_url=config.server_url.rstrip("/"),
            timeout=httpx.Timeout(config.timeout_seconds, connect=5.0),
            headers=headers,
            transport=transport,
        )

    def action_url(self) -> str | None:
        return f"{self.config.server_url.rstrip('/')}/{self.config.effective_response_topic}"

    def send(
        self,
        title: str,
        message: str,
        *,
        priority: str | None = None,
        tags: Sequence[str] = (),
        actions: Sequence[dict[str, Any]] = (),
    ) -> None:
        headers = {"Title": title}
        if priority:
            headers["Priority"] = priority
        if tags:
            headers["Tags"] = ",".join(tags)
        if actions:
            headers["Actions"] = json.dumps(list(actions))
        try:
            response = self._client.post(
                f"/{self.config.topic}",
                content=message.encode("utf-8"),
                headers=headers,
            )
        except (httpx.HTTPError, UnicodeEncodeError) as exc:
            logger.warning("Failed to send ntfy alert %r: %s", title, exc)
            return
        if not response.is_success:
            logger.warning(
                "ntfy rejected alert %r: HTTP %s",
                title,
                response.status_code,
            )

    def close(self) -> None:
        self._client.close()
