"""
Privileged Session Manager.

Owns privileged sessions: start, activity recording, idle detection,
expiration and termination. Expirations live in a TTL index; termination
cancels the index entry under the same lock that flips the status, so an
expiration can never fire for a session that was already closed.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Protocol

from jitguard.models.access_models import (
    AccessRequest,
    ExtensionRequest,
    PrivilegedRole,
    PrivilegedSession,
    RiskEvent,
    RiskLevel,
    SessionActivity,
    SessionStatus,
)
from jitguard.models.event_models import AuditEvent, AuditEventType, EventSeverity
from jitguard.services.audit_emitter import EventDispatcher
from jitguard.utils.clock import Clock
from jitguard.utils.errors import InvalidTransitionError, NotFoundError, ValidationError
from jitguard.utils.logging_config import MetricsCollector
from jitguard.utils.ttl_index import TTLIndex


logger = logging.getLogger(__name__)

ACTIVITY_RISK_INCREMENT = 10


class SessionListener(Protocol):
    async def on_session_expired(self, session: PrivilegedSession) -> None:
        ...


class PrivilegedSessionManager:
    """Starts, monitors and closes privileged sessions."""

    def __init__(
        self,
        clock: Clock,
        dispatcher: EventDispatcher,
        metrics: Optional[MetricsCollector] = None,
        idle_timeout_minutes: int = 30,
    ):
        self.clock = clock
        self.dispatcher = dispatcher
        self.metrics = metrics or MetricsCollector()
        self.idle_timeout = timedelta(minutes=idle_timeout_minutes)
        self._sessions: Dict[str, PrivilegedSession] = {}
        self._by_request: Dict[str, str] = {}
        self._expirations = TTLIndex()
        self._listener: Optional[SessionListener] = None
        self._lock = asyncio.Lock()

    def attach(self, listener: SessionListener) -> None:
        self._listener = listener

    async def start_session(
        self, request: AccessRequest, role: PrivilegedRole
    ) -> PrivilegedSession:
        """Open the session for an approved request.

        Raises:
            InvalidTransitionError: The request already has a live session
        """
        async with self._lock:
            existing_id = self._by_request.get(request.id)
            if existing_id is not None:
                existing = self._sessions.get(existing_id)
                if existing is not None and not existing.status.is_terminal:
                    raise InvalidTransitionError(
                        f"Request {request.id} already has active session {existing_id}"
                    )

            now = self.clock.now()
            session = PrivilegedSession(
                id=str(uuid.uuid4()),
                access_request_id=request.id,
                principal_id=request.principal_id,
                role_id=role.id,
                start_time=now,
                scheduled_end=now + timedelta(minutes=request.requested_duration),
                recording_enabled=role.session_recording,
                keystrokes_logged=role.keystroke_logging,
                screen_captured=role.screen_capture,
                current_risk_score=request.risk_score,
                last_activity=now,
            )
            self._sessions[session.id] = session
            self._by_request[request.id] = session.id
            self._expirations.schedule(session.id, session.scheduled_end)

        self.metrics.increment_counter("sessions_started")
        self.dispatcher.emit(
            AuditEvent(
                event_type=AuditEventType.SESSION_STARTED.value,
                severity=EventSeverity.HIGH if request.emergency_access else EventSeverity.MEDIUM,
                actor=request.principal_id,
                timestamp=now,
                risk_score=session.current_risk_score,
                tags=["session", role.id],
                details={
                    "session_id": session.id,
                    "request_id": request.id,
                    "role_id": role.id,
                    "scheduled_end": session.scheduled_end.isoformat(),
                    "recording_enabled": session.recording_enabled,
                },
            )
        )
        logger.info(
            f"Privileged session {session.id} started for {request.principal_label} "
            f"as {role.id} until {session.scheduled_end.isoformat()}"
        )
        return session

    async def record_activity(
        self,
        session_id: str,
        action: str,
        resource: str,
        result: str = "success",
        risk_level: RiskLevel = RiskLevel.LOW,
        command: Optional[str] = None,
    ) -> PrivilegedSession:
        if result not in ("success", "failure", "blocked"):
            raise ValidationError(f"Unknown activity result: {result}")
        async with self._lock:
            session = self._require(session_id)
            if session.status != SessionStatus.ACTIVE:
                raise InvalidTransitionError(
                    f"Session {session_id} is {session.status.value}; activity rejected"
                )
            now = self.clock.now()
            session.activities.append(
                SessionActivity(
                    timestamp=now,
                    action=action,
                    resource=resource,
                    result=result,
                    risk_level=risk_level,
                    command=command,
                )
            )
            session.last_activity = now
            session.idle_flagged = False

            risky = risk_level in (RiskLevel.HIGH, RiskLevel.CRITICAL) or result == "blocked"
            if risky:
                event = "blocked_activity" if result == "blocked" else "high_risk_activity"
                session.risk_events.append(
                    RiskEvent(timestamp=now, event=event, severity=RiskLevel.HIGH)
                )
                session.current_risk_score = min(
                    100, session.current_risk_score + ACTIVITY_RISK_INCREMENT
                )

        if risky:
            logger.warning(
                f"Session {session_id}: {event} {action} on {resource} "
                f"(risk now {session.current_risk_score})"
            )
        return session

    def add_extension_request(self, session_id: str, extension: ExtensionRequest) -> None:
        session = self._require(session_id)
        session.extension_requests.append(extension)

    async def sweep_idle(self, now: Optional[datetime] = None) -> int:
        """Flag sessions idle past the timeout. Never terminates anything."""
        now = now or self.clock.now()
        flagged: List[PrivilegedSession] = []
        async with self._lock:
            for session in self._sessions.values():
                if session.status != SessionStatus.ACTIVE or session.idle_flagged:
                    continue
                last = session.last_activity or session.start_time
                if now - last > self.idle_timeout:
                    session.idle_flagged = True
                    session.suspicious_activity = True
                    session.risk_events.append(
                        RiskEvent(timestamp=now, event="extended_idle_time", severity=RiskLevel.MEDIUM)
                    )
                    flagged.append(session)

        for session in flagged:
            idle_seconds = (now - (session.last_activity or session.start_time)).total_seconds()
            self.metrics.increment_counter("suspicious_activities")
            logger.warning(
                f"Suspicious activity detected: session {session.id} idle for {int(idle_seconds)}s"
            )
            self.dispatcher.emit(
                AuditEvent(
                    event_type=AuditEventType.SESSION_SUSPICIOUS.value,
                    severity=EventSeverity.MEDIUM,
                    actor="system",
                    timestamp=now,
                    risk_score=session.current_risk_score,
                    tags=["session", "idle"],
                    details={
                        "session_id": session.id,
                        "principal_id": session.principal_id,
                        "idle_seconds": idle_seconds,
                    },
                )
            )
        return len(flagged)

    async def expire_due(self, now: Optional[datetime] = None) -> int:
        """Expire every session whose scheduled end has passed."""
        now = now or self.clock.now()
        expired: List[PrivilegedSession] = []
        async with self._lock:
            for session_id in self._expirations.pop_due(now):
                session = self._sessions.get(session_id)
                if session is None or session.status.is_terminal:
                    continue
                self._close(session, SessionStatus.EXPIRED, now, "session_timeout")
                expired.append(session)

        for session in expired:
            self.metrics.increment_counter("sessions_expired")
            logger.info(f"Privileged session {session.id} expired")
            self.dispatcher.emit(
                AuditEvent(
                    event_type=AuditEventType.SESSION_EXPIRED.value,
                    severity=EventSeverity.LOW,
                    actor="system",
                    timestamp=now,
                    risk_score=session.current_risk_score,
                    tags=["session"],
                    details={
                        "session_id": session.id,
                        "request_id": session.access_request_id,
                        "duration": session.duration,
                    },
                )
            )
            if self._listener is not None:
                await self._listener.on_session_expired(session)
        return len(expired)

    async def terminate_session(self, session_id: str, actor: str, reason: str) -> bool:
        """Close a session early. Returns False when it was already closed."""
        async with self._lock:
            session = self._require(session_id)
            if session.status.is_terminal:
                return False
            now = self.clock.now()
            self._close(session, SessionStatus.TERMINATED, now, reason)

        self.metrics.increment_counter("sessions_terminated")
        logger.warning(f"Privileged session {session_id} terminated by {actor}: {reason}")
        self.dispatcher.emit(
            AuditEvent(
                event_type=AuditEventType.SESSION_TERMINATED.value,
                severity=EventSeverity.HIGH,
                actor=actor,
                timestamp=now,
                risk_score=session.current_risk_score,
                tags=["session"],
                details={
                    "session_id": session_id,
                    "request_id": session.access_request_id,
                    "reason": reason,
                },
            )
        )
        return True

    def _close(
        self, session: PrivilegedSession, status: SessionStatus, now: datetime, reason: str
    ) -> None:
        self._expirations.cancel(session.id)
        session.status = status
        session.end_time = now
        session.duration = (now - session.start_time).total_seconds()
        session.termination_reason = reason

    def _require(self, session_id: str) -> PrivilegedSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFoundError(f"Session not found: {session_id}")
        return session

    def get_session(self, session_id: str) -> Optional[PrivilegedSession]:
        return self._sessions.get(session_id)

    def session_for_request(self, request_id: str) -> Optional[PrivilegedSession]:
        session_id = self._by_request.get(request_id)
        return self._sessions.get(session_id) if session_id else None

    def list_sessions(
        self, status: Optional[SessionStatus] = None, principal_id: Optional[str] = None
    ) -> List[PrivilegedSession]:
        sessions = list(self._sessions.values())
        if status is not None:
            sessions = [s for s in sessions if s.status == status]
        if principal_id is not None:
            sessions = [s for s in sessions if s.principal_id == principal_id]
        return sessions

    def active_count(self) -> int:
        return sum(1 for s in self._sessions.values() if s.status == SessionStatus.ACTIVE)

    def next_expiration(self) -> Optional[datetime]:
        return self._expirations.next_deadline()

    def average_duration(self) -> float:
        durations = [s.duration for s in self._sessions.values() if s.duration is not None]
        return sum(durations) / len(durations) if durations else 0.0

    def reap(self, cutoff: datetime) -> int:
        """Drop closed sessions that ended before cutoff."""
        doomed = [
            sid
            for sid, s in self._sessions.items()
            if s.status.is_terminal and s.end_time is not None and s.end_time < cutoff
        ]
        for sid in doomed:
            session = self._sessions.pop(sid)
            if self._by_request.get(session.access_request_id) == sid:
                del self._by_request[session.access_request_id]
        return len(doomed)
