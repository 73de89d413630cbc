from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime

import httpx
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from erasmus_crm.context import get_correlation_id
from erasmus_crm.core.config import Settings, get_settings
from erasmus_crm.crm.models import utcnow


logger = logging.getLogger("erasmus_crm.notifications.outbound")
tracer = trace.get_tracer("erasmus_crm.notifications.outbound")


@dataclass
class DeadLetter:
    notification_type: str
    title: str
    content: str
    reason: str
    correlation_id: str | None = None
    occurred_at: datetime = field(default_factory=utcnow)


class DeadLetterSink:
    """In-process record of owner notifications that could not be delivered."""

    def __init__(self) -> None:
        self._items: list[DeadLetter] = []
        self._lock = threading.Lock()

    def record(self, notification_type: str, title: str, content: str, reason: str) -> DeadLetter:
        letter = DeadLetter(
            notification_type=notification_type,
            title=title,
            content=content,
            reason=reason,
            correlation_id=get_correlation_id(),
        )
        with self._lock:
            self._items.append(letter)
        return letter

    def items(self) -> list[DeadLetter]:
        with self._lock:
            return list(self._items)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


dead_letters = DeadLetterSink()


class OwnerNotificationClient:
    """Posts ``{title, content}`` to the owner notification endpoint.

    Returns whether delivery succeeded; transport errors are reported as ``False``.
    """

    def __init__(self, settings: Settings | None = None, transport: httpx.BaseTransport | None = None) -> None:
        self.settings = settings or get_settings()
        self.transport = transport

    def notify(self, title: str, content: str) -> bool:
        url = self.settings.notify_owner_url
        if not url:
            logger.warning("notification.owner_unconfigured", extra={"status": "notify_owner_url not set"})
            return False

        headers = {"content-type": "application/json"}
        if self.settings.notify_owner_api_key:
            headers["authorization"] = f"Bearer {self.settings.notify_owner_api_key}"
        correlation_id = get_correlation_id()
        if correlation_id:
            headers["x-correlation-id"] = correlation_id

        with tracer.start_as_current_span("notification.owner.send") as span:
            span.set_attribute("correlation_id", correlation_id or "")
            try:
                with httpx.Client(timeout=self.settings.notify_owner_timeout_seconds, transport=self.transport) as client:
                    response = client.post(url, headers=headers, json={"title": title, "content": content})
            except httpx.HTTPError as exc:
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                logger.warning("notification.owner_unreachable", extra={"error": str(exc)[:500]})
                return False

            span.set_attribute("http.status_code", response.status_code)
            if response.status_code >= 300:
                span.set_status(Status(StatusCode.ERROR, f"status {response.status_code}"))
                logger.warning(
                    "notification.owner_rejected",
                    extra={"status_code": response.status_code, "error": response.text[:500]},
                )
                return False
            return True
