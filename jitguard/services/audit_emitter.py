"""
Audit/Alert Emitter.

Events and notifications are delivered on background tasks so that no state
transition ever waits on, or fails because of, a collaborator. Delivery is
retried with backoff; a delivery that still fails is logged and counted.
"""

import asyncio
import json
import logging
import os
from typing import Any, Dict, List, Optional, Set

from jitguard.models.event_models import AuditEvent, Notification
from jitguard.services.collaborators import AuditSink, Notifier
from jitguard.utils.errors import TransientCollaboratorFailure
from jitguard.utils.logging_config import MetricsCollector
from jitguard.utils.retry import call_with_retry


logger = logging.getLogger(__name__)

SENSITIVE_KEYS = ("token", "secret", "password", "code", "credential")


def redact(value: Any) -> Any:
    """Mask values whose keys look like secrets, recursively."""
    if isinstance(value, dict):
        cleaned = {}
        for k, v in value.items():
            if isinstance(k, str) and any(s in k.lower() for s in SENSITIVE_KEYS):
                cleaned[k] = "<REDACTED>"
            else:
                cleaned[k] = redact(v)
        return cleaned
    if isinstance(value, (list, tuple)):
        return [redact(v) for v in value]
    return value


class LoggingAuditSink:
    """Writes audit events to the standard logger."""

    def __init__(self, logger_name: str = "jitguard.audit"):
        self._log = logging.getLogger(logger_name)

    async def emit(self, event: AuditEvent) -> None:
        level = logging.WARNING if event.severity.value in ("HIGH", "CRITICAL") else logging.INFO
        self._log.log(
            level,
            f"{event.event_type} actor={event.actor} severity={event.severity.value} "
            f"risk={event.risk_score} details={json.dumps(redact(event.details), default=str)}",
        )


class JsonlAuditSink:
    """Append-only JSON lines audit log.

    Writes one JSON object per line to ``path`` (``JITGUARD_AUDIT_LOG``,
    defaulting to ``./logs/audit.jsonl``). Keys that look like secrets are
    redacted before writing.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = path or os.getenv("JITGUARD_AUDIT_LOG", "./logs/audit.jsonl")
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)

    def _write(self, line: str) -> None:
        with open(self.path, "a", encoding="utf-8") as fh:
            fh.write(line + "\n")

    async def emit(self, event: AuditEvent) -> None:
        record = event.to_dict()
        record["details"] = redact(record["details"])
        line = json.dumps(record, default=str)
        await asyncio.get_running_loop().run_in_executor(None, self._write, line)

    def read_events(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Read back logged events, newest last."""
        if not os.path.exists(self.path):
            return []
        with open(self.path, "r", encoding="utf-8") as fh:
            events = [json.loads(line) for line in fh if line.strip()]
        return events[-limit:] if limit else events


class LoggingNotifier:
    """Logs notifications instead of delivering them."""

    async def send(self, notification: Notification) -> None:
        logger.info(
            f"Notification '{notification.template}' to {', '.join(notification.recipients)}"
        )


class EventDispatcher:
    """Fire-and-forget delivery of audit events and notifications."""

    def __init__(
        self,
        sink: AuditSink,
        notifier: Optional[Notifier] = None,
        metrics: Optional[MetricsCollector] = None,
        max_retries: int = 2,
        base_delay: float = 0.5,
    ):
        self.sink = sink
        self.notifier = notifier or LoggingNotifier()
        self.metrics = metrics or MetricsCollector()
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._pending: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def emit(self, event: AuditEvent) -> None:
        """Queue an audit event for delivery."""
        self._spawn(self._deliver(self.sink.emit, event, "audit_sink"))

    def notify(self, notification: Notification) -> None:
        """Queue a notification. Empty recipient lists are dropped."""
        if not notification.recipients:
            return
        self._spawn(self._deliver(self.notifier.send, notification, "notifier"))

    def _spawn(self, coro) -> None:
        try:
            task = asyncio.get_running_loop().create_task(coro)
        except RuntimeError:
            coro.close()
            logger.error("EventDispatcher used outside a running event loop; delivery dropped")
            self.metrics.increment_counter("delivery_dropped")
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, func, payload, collaborator: str) -> None:
        try:
            await call_with_retry(
                func, payload, max_retries=self.max_retries, base_delay=self.base_delay
            )
            self.metrics.increment_counter(f"{collaborator}_delivered")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            failure = TransientCollaboratorFailure(
                f"Delivery to {collaborator} failed: {e}", collaborator=collaborator
            )
            logger.error(failure.message)
            self.metrics.increment_counter(f"{collaborator}_failures")

    async def flush(self) -> None:
        """Wait until every queued delivery has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
