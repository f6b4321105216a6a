"""
Authorization engine context.

Builds every component around one registry handle, one clock and one event
dispatcher, runs the background sweeps, and exposes the operations callers
use. Tests build isolated engines with a ManualClock and fake collaborators.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from jitguard.models.access_models import (
    AccessRequest,
    AccessStatus,
    MFAMethod,
    MFAVerificationResult,
    PrivilegedSession,
    SessionStatus,
)
from jitguard.models.duty_models import DutyAssignment, DutyOperation, OperationDecision
from jitguard.models.event_models import AuditEvent, AuditEventType, EventSeverity
from jitguard.services.access_lifecycle import AccessLifecycleManager
from jitguard.services.audit_emitter import (
    EventDispatcher,
    JsonlAuditSink,
    LoggingAuditSink,
)
from jitguard.services.collaborators import AuditSink, FailureSignal, MFAProvider, Notifier
from jitguard.services.duty_assignments import DutyAssignmentManager
from jitguard.services.duty_conflict_detector import DutyConflictDetector
from jitguard.services.mfa_engine import LocalMFAProvider, MFAChallengeEngine
from jitguard.services.policy_loader import PolicyConfigLoader
from jitguard.services.policy_registry import PolicyRegistry, RegistryHandle
from jitguard.services.risk_evaluator import RecentFailureTracker, RiskEvaluator
from jitguard.services.session_manager import PrivilegedSessionManager
from jitguard.utils.clock import Clock, SystemClock
from jitguard.utils.logging_config import MetricsCollector
from jitguard.utils.settings import EngineSettings


logger = logging.getLogger(__name__)


class BackgroundSweeper:
    """Runs one async job at a fixed interval until stopped."""

    def __init__(
        self,
        name: str,
        interval: float,
        job: Callable[[], Awaitable[Any]],
        metrics: Optional[MetricsCollector] = None,
    ):
        self.name = name
        self.interval = interval
        self.job = job
        self.metrics = metrics
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(), name=f"jitguard-{self.name}")
        logger.debug(f"Sweeper {self.name} started (every {self.interval}s)")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.debug(f"Sweeper {self.name} stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.job()
                await asyncio.sleep(self.interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Sweeper {self.name} error: {e}")
                if self.metrics is not None:
                    self.metrics.increment_counter("sweeper_errors")
                await asyncio.sleep(self.interval)


class AuthorizationEngine:
    """Just-in-time elevation and separation-of-duties enforcement."""

    def __init__(
        self,
        registry: Optional[PolicyRegistry] = None,
        settings: Optional[EngineSettings] = None,
        clock: Optional[Clock] = None,
        audit_sink: Optional[AuditSink] = None,
        notifier: Optional[Notifier] = None,
        mfa_provider: Optional[MFAProvider] = None,
        failure_signal: Optional[FailureSignal] = None,
        policy_source: Optional[Callable[[], PolicyRegistry]] = None,
    ):
        self.settings = settings or EngineSettings()
        self.clock = clock or SystemClock()
        self.metrics = MetricsCollector()
        self.policy_source = policy_source or PolicyConfigLoader(self.settings.policy_path)
        self.registry_handle = RegistryHandle(registry or self.policy_source())

        if audit_sink is None:
            if self.settings.audit_log_path:
                audit_sink = JsonlAuditSink(self.settings.audit_log_path)
            else:
                audit_sink = LoggingAuditSink()
        self.dispatcher = EventDispatcher(
            audit_sink,
            notifier,
            metrics=self.metrics,
            max_retries=self.settings.delivery_retries,
            base_delay=self.settings.delivery_base_delay,
        )

        self.failure_signal = failure_signal or RecentFailureTracker(
            self.settings.recent_failure_window_minutes
        )
        self.mfa_provider = mfa_provider or LocalMFAProvider()
        self.evaluator = RiskEvaluator(time_window_penalty=self.settings.time_window_penalty)
        self.mfa = MFAChallengeEngine(
            self.clock,
            self.mfa_provider,
            self.dispatcher,
            metrics=self.metrics,
            max_attempts=self.settings.mfa_max_attempts,
            failure_tracker=(
                self.failure_signal
                if isinstance(self.failure_signal, RecentFailureTracker)
                else None
            ),
        )
        self.sessions = PrivilegedSessionManager(
            self.clock,
            self.dispatcher,
            metrics=self.metrics,
            idle_timeout_minutes=self.settings.idle_timeout_minutes,
        )
        self.lifecycle = AccessLifecycleManager(
            self.registry_handle,
            self.evaluator,
            self.mfa,
            self.sessions,
            self.dispatcher,
            self.clock,
            metrics=self.metrics,
            failure_signal=self.failure_signal,
            approval_timeout_minutes=self.settings.approval_timeout_minutes,
        )
        self.assignments = DutyAssignmentManager(
            self.registry_handle, self.clock, self.dispatcher, metrics=self.metrics
        )
        self.detector = DutyConflictDetector(
            self.registry_handle,
            self.assignments,
            self.clock,
            self.dispatcher,
            metrics=self.metrics,
            operation_retention_hours=self.settings.operation_retention_hours,
        )

        self._sweepers: List[BackgroundSweeper] = []
        self._started_at: Optional[datetime] = None

    @classmethod
    def from_env(cls, **kwargs) -> "AuthorizationEngine":
        """Engine configured from JITGUARD_* environment variables."""
        return cls(settings=EngineSettings.from_env(), **kwargs)

    @property
    def registry(self) -> PolicyRegistry:
        return self.registry_handle.current

    # Lifecycle

    async def start(self) -> None:
        if self._sweepers:
            return
        s = self.settings
        self._sweepers = [
            BackgroundSweeper("expiration", s.expiration_tick_seconds, self.run_expiration_tick, self.metrics),
            BackgroundSweeper("idle", s.idle_sweep_seconds, self.run_idle_sweep, self.metrics),
            BackgroundSweeper("expiry", s.assignment_sweep_seconds, self.run_expiry_sweep, self.metrics),
            BackgroundSweeper("retention", s.retention_sweep_seconds, self.run_retention_sweep, self.metrics),
        ]
        for sweeper in self._sweepers:
            await sweeper.start()
        self._started_at = self.clock.now()
        logger.info("Authorization engine started")

    async def stop(self) -> None:
        for sweeper in self._sweepers:
            await sweeper.stop()
        self._sweepers = []
        await self.dispatcher.flush()
        logger.info("Authorization engine stopped")

    async def __aenter__(self) -> "AuthorizationEngine":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    # Sweeps

    async def run_expiration_tick(self) -> int:
        return await self.sessions.expire_due(self.clock.now())

    async def run_idle_sweep(self) -> int:
        return await self.sessions.sweep_idle(self.clock.now())

    async def run_expiry_sweep(self) -> Dict[str, int]:
        now = self.clock.now()
        return {
            "assignments": await self.assignments.expire_due(now),
            "approvals": await self.lifecycle.expire_stale_approvals(now),
            "challenges": await self.mfa.expire_stale(now),
        }

    async def run_retention_sweep(self) -> Dict[str, int]:
        now = self.clock.now()
        cutoff = now - timedelta(hours=self.settings.retention_hours)
        reaped = {
            "requests": self.lifecycle.reap(cutoff),
            "challenges": self.mfa.reap(cutoff),
            "sessions": self.sessions.reap(cutoff),
            "assignments": self.assignments.reap(cutoff),
            "operations": self.detector.reap(now),
        }
        if any(reaped.values()):
            logger.debug(f"Retention sweep removed {reaped}")
        return reaped

    # Policy

    async def reload_policy(
        self, source: Optional[Callable[[], PolicyRegistry]] = None
    ) -> PolicyRegistry:
        """Build a new registry and swap it in. The old one stays on failure."""
        previous = self.registry_handle.reload(source or self.policy_source)
        registry = self.registry_handle.current
        self.metrics.increment_counter("policy_reloads")
        self.dispatcher.emit(
            AuditEvent(
                event_type=AuditEventType.POLICY_RELOADED.value,
                severity=EventSeverity.HIGH,
                actor="system",
                timestamp=self.clock.now(),
                tags=["policy"],
                details={
                    "previous_version": previous.version,
                    "version": registry.version,
                    "summary": registry.summary(),
                },
            )
        )
        logger.info(f"Policy reloaded: {registry.summary()}")
        return registry

    # Elevation

    async def request_access(self, principal_id: str, role_id: str, **kwargs) -> AccessRequest:
        return await self.lifecycle.request_access(principal_id, role_id, **kwargs)

    async def submit_decision(
        self, request_id: str, approver_id: str, approver_roles, decision, comment: Optional[str] = None
    ) -> AccessRequest:
        return await self.lifecycle.submit_decision(
            request_id, approver_id, approver_roles, decision, comment
        )

    async def verify_mfa(
        self,
        challenge_id: str,
        response: Optional[str] = None,
        backup_method: Optional[MFAMethod] = None,
        backup_code: Optional[str] = None,
    ) -> MFAVerificationResult:
        return await self.mfa.verify(challenge_id, response, backup_method, backup_code)

    async def revoke(self, request_id: str, actor: str, reason: str = "revoked") -> AccessRequest:
        return await self.lifecycle.revoke(request_id, actor, reason)

    async def request_extension(
        self, session_id: str, additional_minutes: int, justification: str
    ) -> AccessRequest:
        return await self.lifecycle.request_extension(session_id, additional_minutes, justification)

    async def record_activity(
        self, session_id: str, action: str, resource: str, **kwargs
    ) -> PrivilegedSession:
        return await self.sessions.record_activity(session_id, action, resource, **kwargs)

    async def terminate_session(self, session_id: str, actor: str, reason: str) -> bool:
        """End a session and revoke the request behind it."""
        session = self.sessions.get_session(session_id)
        request = self.lifecycle.get_request(session.access_request_id) if session else None
        if request is not None and request.status == AccessStatus.ACTIVE:
            await self.lifecycle.revoke(request.id, actor, reason)
            return True
        return await self.sessions.terminate_session(session_id, actor, reason)

    # Separation of duties

    async def assign_duty(
        self,
        principal_id: str,
        role_id: str,
        assigned_by: str,
        expires_at: Optional[datetime] = None,
        justification: str = "",
    ) -> DutyAssignment:
        return await self.assignments.assign(
            principal_id, role_id, assigned_by, expires_at, justification
        )

    async def check_operation(
        self, principal_id: str, duty_category, operation_type, resource: str, action: str, **kwargs
    ) -> OperationDecision:
        return await self.detector.check_operation(
            principal_id, duty_category, operation_type, resource, action, **kwargs
        )

    async def enforce_operation(
        self, principal_id: str, duty_category, operation_type, resource: str, action: str, **kwargs
    ) -> OperationDecision:
        return await self.detector.enforce_operation(
            principal_id, duty_category, operation_type, resource, action, **kwargs
        )

    async def approve_operation(
        self, operation_id: str, approver_id: str, comment: Optional[str] = None
    ) -> DutyOperation:
        return await self.detector.record_approval(operation_id, approver_id, comment)

    # Observability

    def get_stats(self) -> Dict[str, Any]:
        counters = self.metrics.get_metrics()
        active_sessions = self.sessions.list_sessions(status=SessionStatus.ACTIVE)
        emergency_active = sum(
            1
            for s in active_sessions
            if (r := self.lifecycle.get_request(s.access_request_id)) is not None and r.emergency_access
        )
        return {
            "counters": counters,
            "requests_by_status": self.lifecycle.count_by_status(),
            "pending_approvals": len(self.lifecycle.list_requests(status=AccessStatus.PENDING_APPROVAL)),
            "active_sessions": len(active_sessions),
            "emergency_sessions_active": emergency_active,
            "average_session_duration": self.sessions.average_duration(),
            "pending_mfa_challenges": self.mfa.pending_count(),
            "active_assignments": self.assignments.active_count(),
            "recorded_operations": self.detector.operation_count(),
            "compliance_score": self.detector.compliance_score(),
            "pending_deliveries": self.dispatcher.pending,
            "policy": self.registry.summary(),
        }

    async def health_check(self) -> Dict[str, Any]:
        stats = self.get_stats()
        counters = stats["counters"]
        status = "healthy"
        if counters.get("mfa_failures", 0) > 10:
            status = "warning"
        if stats["compliance_score"] < 95:
            status = "warning"
        if counters.get("suspicious_activities", 0) > 5:
            status = "degraded"
        if counters.get("violations_critical", 0) > 0 and counters.get("operations_overridden", 0) > 0:
            status = "critical"
        if stats["emergency_sessions_active"] > 2:
            status = "critical"
        return {
            "status": status,
            "running": bool(self._sweepers),
            "stats": stats,
        }
