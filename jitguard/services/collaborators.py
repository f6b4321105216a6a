"""
Contracts for the engine's external collaborators.

Persistence, delivery and real MFA backends live outside the engine; these
protocols describe what the engine calls on them.
"""

from datetime import datetime
from typing import Protocol, runtime_checkable

from jitguard.models.access_models import MFAMethod
from jitguard.models.event_models import AuditEvent, Notification


@runtime_checkable
class AuditSink(Protocol):
    async def emit(self, event: AuditEvent) -> None:
        ...


@runtime_checkable
class Notifier(Protocol):
    async def send(self, notification: Notification) -> None:
        ...


@runtime_checkable
class MFAProvider(Protocol):
    async def verify_code(
        self, method: MFAMethod, challenge_code: str, user_response: str
    ) -> bool:
        ...

    async def verify_backup(
        self, principal_id: str, backup_method: MFAMethod, backup_code: str
    ) -> bool:
        ...


@runtime_checkable
class FailureSignal(Protocol):
    """Abuse signal consulted by the risk evaluator."""

    def recent_failures(self, principal_id: str, now: datetime) -> int:
        ...
