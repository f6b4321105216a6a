"""
Elevation Request Lifecycle Manager.

Owns access requests and drives them through the elevation state machine:

    REQUESTED -> PENDING_APPROVAL | EMERGENCY_ACTIVATED | APPROVED
              -> PENDING_MFA? -> APPROVED -> ACTIVE -> EXPIRED | REVOKED

with DENIED reachable from every pre-active state. Every transition appends
one audit-trail entry to the request and emits one audit event. The MFA
engine and the session manager report back through the on_* callbacks.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Union

from jitguard.models.access_models import (
    AccessRequest,
    AccessRequestType,
    AccessStatus,
    ApprovalDecision,
    ApprovalSlot,
    AuditTrailEntry,
    EmergencyMFAFailurePolicy,
    ExtensionRequest,
    MFAChallenge,
    PrivilegedRole,
    PrivilegedSession,
    SessionStatus,
    Urgency,
)
from jitguard.models.event_models import (
    AuditEvent,
    AuditEventType,
    EventSeverity,
    Notification,
)
from jitguard.services.audit_emitter import EventDispatcher
from jitguard.services.mfa_engine import MFAChallengeEngine
from jitguard.services.policy_registry import PolicyRegistry, RegistryHandle
from jitguard.services.risk_evaluator import RecentFailureTracker, RiskEvaluator
from jitguard.services.session_manager import PrivilegedSessionManager
from jitguard.utils.clock import Clock
from jitguard.utils.errors import (
    ApproverNotAuthorizedError,
    InvalidTransitionError,
    NotFoundError,
    PolicyDenial,
    UnknownRoleError,
    ValidationError,
    coerce_enum,
)
from jitguard.utils.logging_config import MetricsCollector


logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    AccessStatus.REQUESTED: frozenset(
        {
            AccessStatus.PENDING_APPROVAL,
            AccessStatus.EMERGENCY_ACTIVATED,
            AccessStatus.APPROVED,
            AccessStatus.DENIED,
        }
    ),
    AccessStatus.PENDING_APPROVAL: frozenset(
        {AccessStatus.APPROVED, AccessStatus.DENIED, AccessStatus.REVOKED}
    ),
    AccessStatus.EMERGENCY_ACTIVATED: frozenset(
        {AccessStatus.APPROVED, AccessStatus.DENIED, AccessStatus.REVOKED}
    ),
    AccessStatus.APPROVED: frozenset(
        {AccessStatus.PENDING_MFA, AccessStatus.ACTIVE, AccessStatus.REVOKED}
    ),
    AccessStatus.PENDING_MFA: frozenset(
        {AccessStatus.APPROVED, AccessStatus.DENIED, AccessStatus.REVOKED}
    ),
    AccessStatus.ACTIVE: frozenset({AccessStatus.EXPIRED, AccessStatus.REVOKED}),
}

REVOCABLE_STATUSES = frozenset(
    {
        AccessStatus.ACTIVE,
        AccessStatus.APPROVED,
        AccessStatus.PENDING_MFA,
        AccessStatus.PENDING_APPROVAL,
        AccessStatus.EMERGENCY_ACTIVATED,
    }
)

MFA_GATED_STATUSES = frozenset({AccessStatus.PENDING_MFA, AccessStatus.EMERGENCY_ACTIVATED})


def can_transition(current: AccessStatus, target: AccessStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


class AccessLifecycleManager:
    """Creates access requests and moves them through their states."""

    def __init__(
        self,
        registry: RegistryHandle,
        evaluator: RiskEvaluator,
        mfa_engine: MFAChallengeEngine,
        session_manager: PrivilegedSessionManager,
        dispatcher: EventDispatcher,
        clock: Clock,
        metrics: Optional[MetricsCollector] = None,
        failure_signal=None,
        approval_timeout_minutes: int = 24 * 60,
    ):
        self._registry = registry
        self.evaluator = evaluator
        self.mfa = mfa_engine
        self.sessions = session_manager
        self.dispatcher = dispatcher
        self.clock = clock
        self.metrics = metrics or MetricsCollector()
        self.failure_signal = failure_signal
        self.approval_timeout = timedelta(minutes=approval_timeout_minutes)

        self._requests: Dict[str, AccessRequest] = {}
        self._lock = asyncio.Lock()

        mfa_engine.attach(self)
        session_manager.attach(self)

    @property
    def registry(self) -> PolicyRegistry:
        return self._registry.current

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def request_access(
        self,
        principal_id: str,
        role_id: str,
        *,
        principal_name: str = "",
        urgency: Union[Urgency, str] = Urgency.MEDIUM,
        requested_duration: Optional[int] = None,
        request_type: Union[AccessRequestType, str] = AccessRequestType.TEMPORARY_ELEVATION,
        justification: str = "",
        target_resources: Optional[Iterable[str]] = None,
        source_ip: Optional[str] = None,
        emergency_access: bool = False,
        extends_session_id: Optional[str] = None,
    ) -> AccessRequest:
        """Submit an elevation request.

        Returns the stored request in whatever state the policy leaves it:
        PENDING_APPROVAL, EMERGENCY_ACTIVATED, PENDING_MFA or ACTIVE.

        Raises:
            ValidationError: Bad input; nothing is stored
            UnknownRoleError: Role is unknown or inactive; nothing is stored
            PolicyDenial: Request was stored as DENIED (outside time windows)
        """
        role = self.registry.get_privileged_role(role_id)

        try:
            urgency = coerce_enum(Urgency, urgency, "urgency")
            request_type = coerce_enum(AccessRequestType, request_type, "request_type")
            if role is None or not role.active:
                raise UnknownRoleError(f"Privileged role not found or inactive: {role_id}")
            if not principal_id:
                raise ValidationError("principal_id is required")

            is_emergency = (
                emergency_access
                or urgency == Urgency.EMERGENCY
                or request_type == AccessRequestType.EMERGENCY_ACCESS
            )
            if is_emergency and not role.emergency_access:
                raise ValidationError(f"Emergency access not allowed for role: {role_id}")

            duration = (
                requested_duration if requested_duration is not None else role.max_session_duration
            )
            if duration <= 0:
                raise ValidationError(f"Requested duration must be positive: {duration}")
            if duration > role.max_session_duration:
                raise ValidationError(
                    f"Requested duration exceeds maximum: {duration} > {role.max_session_duration}"
                )
        except ValidationError as e:
            self.metrics.increment_counter("requests_rejected")
            logger.warning(f"Access request from {principal_id} for {role_id} rejected: {e}")
            raise

        if is_emergency:
            urgency = Urgency.EMERGENCY

        async with self._lock:
            now = self.clock.now()
            request = AccessRequest(
                id=str(uuid.uuid4()),
                principal_id=principal_id,
                principal_name=principal_name,
                requested_role=role.id,
                requested_duration=duration,
                created_at=now,
                updated_at=now,
                request_type=request_type,
                urgency=urgency,
                justification=justification,
                target_resources=list(target_resources or []),
                source_ip=source_ip,
                mfa_required=role.mfa_required,
                emergency_access=is_emergency,
                extends_session_id=extends_session_id,
            )

            recent = 0
            if self.failure_signal is not None:
                recent = self.failure_signal.recent_failures(principal_id, now)
            assessment = self.evaluator.assess(request, role, now, recent)
            request.risk_score = assessment.score
            request.risk_factors = list(assessment.factors)

            self._requests[request.id] = request
            self.metrics.increment_counter("requests_total")
            if is_emergency:
                self.metrics.increment_counter("emergency_requests")

            request.audit_trail.append(
                AuditTrailEntry(
                    timestamp=now,
                    action="access_requested",
                    actor=principal_id,
                    details={
                        "role": role.id,
                        "urgency": urgency.value,
                        "risk_score": request.risk_score,
                        "risk_factors": list(request.risk_factors),
                        "emergency_access": is_emergency,
                        "extends_session_id": extends_session_id,
                    },
                )
            )
            self._emit(
                AuditEventType.ACCESS_REQUESTED,
                EventSeverity.CRITICAL if is_emergency else EventSeverity.MEDIUM,
                principal_id,
                request,
                {"role": role.id, "justification": justification, "source_ip": source_ip},
            )
            logger.info(
                f"Privileged access requested by {request.principal_label} for {role.id} "
                f"(risk {request.risk_score}, factors {request.risk_factors})"
            )

            if not assessment.within_time_window and not is_emergency:
                self._deny(request, "system", "outside_allowed_time_window")
                denied = True
            else:
                denied = False
                if is_emergency:
                    await self._activate_emergency(request, role)
                elif role.requires_approval:
                    self._open_approval(request, role)
                else:
                    request.automatic_approval = True
                    self._transition(
                        request, AccessStatus.APPROVED, "system", {"automatic_approval": True}
                    )
                    await self._advance_approved(request, role)

        if denied:
            raise PolicyDenial(
                f"Access outside allowed time windows for role {role.id}",
                request=request,
                reason="outside_allowed_time_window",
            )
        return request

    async def _activate_emergency(self, request: AccessRequest, role: PrivilegedRole) -> None:
        self._transition(
            request,
            AccessStatus.EMERGENCY_ACTIVATED,
            request.principal_id,
            {"justification": request.justification},
        )
        data = {
            "request_id": request.id,
            "principal": request.principal_label,
            "role": role.id,
            "justification": request.justification,
            "risk_score": request.risk_score,
        }
        self.dispatcher.notify(
            Notification(
                recipients=list(role.emergency_approvers), template="emergency_access_approval", data=data
            )
        )
        self.dispatcher.notify(
            Notification(
                recipients=list(role.emergency_notifications), template="emergency_access_alert", data=data
            )
        )
        request.emergency_notifications_sent = True
        self._emit(
            AuditEventType.EMERGENCY_ACTIVATED,
            EventSeverity.CRITICAL,
            request.principal_id,
            request,
            {
                "role": role.id,
                "notified": list(role.emergency_notifications),
                "approvers": list(role.emergency_approvers),
            },
            tags=["emergency", "break_glass"],
        )
        logger.warning(
            f"Emergency access activated for {request.principal_label} on {role.id} "
            f"(request {request.id})"
        )

        if role.mfa_required:
            self._issue_challenge(request, role)
        else:
            self._transition(request, AccessStatus.APPROVED, "system", {"emergency": True})
            await self._advance_approved(request, role)

    def _open_approval(self, request: AccessRequest, role: PrivilegedRole) -> None:
        request.approvals = [ApprovalSlot(role=r) for r in role.approver_roles]
        self._transition(
            request,
            AccessStatus.PENDING_APPROVAL,
            "system",
            {
                "required_approvers": list(role.approver_roles),
                "minimum_approvers": role.minimum_approvers,
            },
        )
        self.dispatcher.notify(
            Notification(
                recipients=list(role.approver_roles),
                template="privileged_access_approval",
                data={
                    "request_id": request.id,
                    "principal": request.principal_label,
                    "role": role.id,
                    "justification": request.justification,
                    "risk_score": request.risk_score,
                    "duration": request.requested_duration,
                },
            )
        )

    async def _advance_approved(self, request: AccessRequest, role: PrivilegedRole) -> None:
        """APPROVED -> PENDING_MFA, or straight to ACTIVE when no MFA is owed."""
        if request.mfa_required and not request.mfa_completed:
            self._transition(request, AccessStatus.PENDING_MFA, "system", {})
            self._issue_challenge(request, role)
            return
        await self._activate(request, role)

    async def _activate(self, request: AccessRequest, role: PrivilegedRole) -> None:
        session = await self.sessions.start_session(request, role)
        request.session_id = session.id
        self._transition(
            request,
            AccessStatus.ACTIVE,
            "system",
            {"session_id": session.id, "scheduled_end": session.scheduled_end.isoformat()},
        )
        self.metrics.increment_counter("requests_activated")

    def _issue_challenge(
        self, request: AccessRequest, role: PrivilegedRole, reissue_count: int = 0
    ) -> MFAChallenge:
        challenge = self.mfa.issue(request, role, reissue_count=reissue_count)
        request.mfa_challenge_id = challenge.id
        request.audit_trail.append(
            AuditTrailEntry(
                timestamp=challenge.created_at,
                action="mfa_challenge_reissued" if reissue_count else "mfa_challenge_initiated",
                actor="system",
                details={
                    "challenge_id": challenge.id,
                    "method": challenge.method.value,
                    "expires_at": challenge.expires_at.isoformat(),
                },
            )
        )
        return challenge

    # ------------------------------------------------------------------
    # Approvals
    # ------------------------------------------------------------------

    async def submit_decision(
        self,
        request_id: str,
        approver_id: str,
        approver_roles: Iterable[str],
        decision: Union[ApprovalDecision, str],
        comment: Optional[str] = None,
    ) -> AccessRequest:
        """Record one approver's decision on a pending request.

        Raises:
            ValidationError: Decision is neither approved nor denied
            InvalidTransitionError: Request is not awaiting approval
            ApproverNotAuthorizedError: Approver holds no role with an open slot,
                is the requester, or has already decided
        """
        decision = coerce_enum(ApprovalDecision, decision, "decision")
        if decision == ApprovalDecision.PENDING:
            raise ValidationError("Decision must be approved or denied")
        approver_roles = set(approver_roles)

        async with self._lock:
            request = self._require(request_id)
            if request.status != AccessStatus.PENDING_APPROVAL:
                raise InvalidTransitionError(
                    f"Request {request_id} is {request.status.value}, not pending approval"
                )

            if approver_id == request.principal_id:
                self._reject_approver(request, approver_id, "self_approval")
            if any(slot.approver_id == approver_id for slot in request.approvals):
                self._reject_approver(request, approver_id, "duplicate_decision")
            slot = next(
                (s for s in request.pending_slots() if s.role in approver_roles), None
            )
            if slot is None:
                self._reject_approver(request, approver_id, "no_matching_approver_role")

            now = self.clock.now()
            slot.decision = decision
            slot.approver_id = approver_id
            slot.comment = comment
            slot.decided_at = now
            request.updated_at = now
            request.audit_trail.append(
                AuditTrailEntry(
                    timestamp=now,
                    action="approval_decision",
                    actor=approver_id,
                    details={"role": slot.role, "decision": decision.value, "comment": comment},
                )
            )
            self._emit(
                AuditEventType.APPROVAL_DECISION,
                EventSeverity.MEDIUM,
                approver_id,
                request,
                {"approver_role": slot.role, "decision": decision.value},
            )
            logger.info(
                f"Approver {approver_id} ({slot.role}) {decision.value} request {request.id}"
            )

            role = self.registry.get_privileged_role(request.requested_role)
            if role is None:
                self._deny(request, "system", "role_no_longer_defined")
                return request

            minimum = max(1, role.minimum_approvers)
            approved = request.approved_count()
            if approved >= minimum:
                self._transition(
                    request, AccessStatus.APPROVED, approver_id, {"approved_count": approved}
                )
                await self._advance_approved(request, role)
            elif decision == ApprovalDecision.DENIED:
                if approved + len(request.pending_slots()) < minimum:
                    self._deny(request, approver_id, "approval_denied")

        return request

    def _reject_approver(self, request: AccessRequest, approver_id: str, reason: str) -> None:
        now = self.clock.now()
        request.audit_trail.append(
            AuditTrailEntry(
                timestamp=now,
                action="unauthorized_approval_attempt",
                actor=approver_id,
                details={"reason": reason},
            )
        )
        self._emit(
            AuditEventType.UNAUTHORIZED_APPROVAL,
            EventSeverity.HIGH,
            approver_id,
            request,
            {"reason": reason},
        )
        self.metrics.increment_counter("unauthorized_approvals")
        logger.warning(
            f"Approver {approver_id} rejected on request {request.id}: {reason}"
        )
        raise ApproverNotAuthorizedError(
            f"Approver {approver_id} cannot decide request {request.id}: {reason}"
        )

    # ------------------------------------------------------------------
    # Revocation and extension
    # ------------------------------------------------------------------

    async def revoke(self, request_id: str, actor: str, reason: str = "revoked") -> AccessRequest:
        """Revoke a live or pending request, closing its session and challenge."""
        async with self._lock:
            request = self._require(request_id)
            if request.status not in REVOCABLE_STATUSES:
                raise InvalidTransitionError(
                    f"Request {request_id} cannot be revoked from {request.status.value}"
                )
            self._transition(request, AccessStatus.REVOKED, actor, {"reason": reason})
            self.metrics.increment_counter("requests_revoked")
            if request.session_id:
                await self.sessions.terminate_session(request.session_id, actor, reason)
            if self.mfa.cancel(request.mfa_challenge_id):
                logger.info(f"Pending MFA challenge for request {request.id} cancelled")
        return request

    async def request_extension(
        self, session_id: str, additional_minutes: int, justification: str
    ) -> AccessRequest:
        """Ask for more time on a running session.

        Creates a new request for the same principal and role that goes
        through the normal flow; the running session's end is not touched.
        """
        session = self.sessions.get_session(session_id)
        if session is None:
            raise NotFoundError(f"Session not found: {session_id}")
        if session.status != SessionStatus.ACTIVE:
            raise InvalidTransitionError(
                f"Session {session_id} is {session.status.value}; cannot extend"
            )
        original = self._require(session.access_request_id)

        self.sessions.add_extension_request(
            session_id,
            ExtensionRequest(
                requested_at=self.clock.now(),
                additional_minutes=additional_minutes,
                justification=justification,
                access_request_id=original.id,
            ),
        )
        return await self.request_access(
            original.principal_id,
            original.requested_role,
            principal_name=original.principal_name,
            urgency=original.urgency,
            requested_duration=additional_minutes,
            request_type=original.request_type,
            justification=justification,
            target_resources=original.target_resources,
            source_ip=original.source_ip,
            emergency_access=original.emergency_access,
            extends_session_id=session_id,
        )

    # ------------------------------------------------------------------
    # Callbacks from the MFA engine and the session manager
    # ------------------------------------------------------------------

    def get_request(self, request_id: str) -> Optional[AccessRequest]:
        return self._requests.get(request_id)

    async def on_mfa_verified(self, challenge: MFAChallenge) -> None:
        async with self._lock:
            request = self._requests.get(challenge.access_request_id)
            if request is None or request.status not in MFA_GATED_STATUSES:
                logger.warning(
                    f"MFA verified for challenge {challenge.id} but request is no longer waiting"
                )
                return
            if request.mfa_challenge_id != challenge.id:
                logger.warning(f"Stale MFA challenge {challenge.id} verified; ignoring")
                return

            request.mfa_completed = True
            request.mfa_method = challenge.backup_method_used or challenge.method
            request.mfa_verified_at = challenge.verified_at
            self._transition(
                request,
                AccessStatus.APPROVED,
                request.principal_id,
                {"mfa_method": request.mfa_method.value, "attempts": challenge.attempts},
            )
            role = self.registry.get_privileged_role(request.requested_role)
            if role is None:
                # Policy reloaded without this role; nothing left to activate
                self._transition(request, AccessStatus.REVOKED, "system", {"reason": "role_no_longer_defined"})
                return
            await self._activate(request, role)

    async def on_mfa_exhausted(self, challenge: MFAChallenge) -> Optional[MFAChallenge]:
        async with self._lock:
            request = self._requests.get(challenge.access_request_id)
            if request is None or request.status not in MFA_GATED_STATUSES:
                return None
            role = self.registry.get_privileged_role(request.requested_role)

            retry = (
                request.emergency_access
                and role is not None
                and role.emergency_mfa_failure_policy == EmergencyMFAFailurePolicy.RETRY_ONCE
                and challenge.reissue_count == 0
            )
            self._emit(
                AuditEventType.MFA_EXHAUSTED,
                EventSeverity.CRITICAL if request.emergency_access else EventSeverity.HIGH,
                request.principal_id,
                request,
                {"challenge_id": challenge.id, "attempts": challenge.attempts, "reissued": retry},
                tags=["mfa", "emergency"] if request.emergency_access else ["mfa"],
            )
            if retry:
                replacement = self._issue_challenge(request, role, reissue_count=1)
                logger.warning(
                    f"Emergency MFA exhausted on request {request.id}; replacement challenge issued"
                )
                return replacement

            self._deny(request, "system", "mfa_attempts_exhausted")
            return None

    async def on_mfa_expired(self, challenge: MFAChallenge) -> Optional[AccessRequest]:
        async with self._lock:
            request = self._requests.get(challenge.access_request_id)
            if request is None:
                return None
            if request.status in MFA_GATED_STATUSES and request.mfa_challenge_id == challenge.id:
                self._deny(request, "system", "mfa_challenge_expired")
            return request

    async def on_session_expired(self, session: PrivilegedSession) -> None:
        async with self._lock:
            request = self._requests.get(session.access_request_id)
            if request is None or request.status != AccessStatus.ACTIVE:
                return
            self._transition(
                request, AccessStatus.EXPIRED, "system", {"session_id": session.id}
            )
            self.metrics.increment_counter("requests_expired")

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    async def expire_stale_approvals(self, now: Optional[datetime] = None) -> int:
        """Deny requests that waited for approval longer than the timeout."""
        now = now or self.clock.now()
        count = 0
        async with self._lock:
            for request in list(self._requests.values()):
                if (
                    request.status == AccessStatus.PENDING_APPROVAL
                    and now - request.created_at > self.approval_timeout
                ):
                    self._deny(request, "system", "approval_timeout")
                    count += 1
        if count:
            logger.info(f"Denied {count} request(s) after approval timeout")
        return count

    def reap(self, cutoff: datetime) -> int:
        """Drop terminal requests closed before cutoff."""
        doomed = [
            rid
            for rid, r in self._requests.items()
            if r.status.is_terminal and (r.closed_at or r.created_at) < cutoff
        ]
        for rid in doomed:
            del self._requests[rid]
        return len(doomed)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _require(self, request_id: str) -> AccessRequest:
        request = self._requests.get(request_id)
        if request is None:
            raise NotFoundError(f"Access request not found: {request_id}")
        return request

    def list_requests(
        self, status: Optional[AccessStatus] = None, principal_id: Optional[str] = None
    ) -> List[AccessRequest]:
        requests = list(self._requests.values())
        if status is not None:
            requests = [r for r in requests if r.status == status]
        if principal_id is not None:
            requests = [r for r in requests if r.principal_id == principal_id]
        return requests

    def pending_approvals_for(self, approver_roles: Iterable[str]) -> List[AccessRequest]:
        roles = set(approver_roles)
        return [
            r
            for r in self._requests.values()
            if r.status == AccessStatus.PENDING_APPROVAL
            and any(slot.role in roles for slot in r.pending_slots())
        ]

    def count_by_status(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for request in self._requests.values():
            counts[request.status.value] = counts.get(request.status.value, 0) + 1
        return counts

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _deny(self, request: AccessRequest, actor: str, reason: str) -> None:
        request.denial_reason = reason
        self._transition(request, AccessStatus.DENIED, actor, {"reason": reason})
        self.metrics.increment_counter("requests_denied")
        if isinstance(self.failure_signal, RecentFailureTracker):
            self.failure_signal.record_failure(request.principal_id, self.clock.now())
        logger.warning(f"Access request {request.id} denied: {reason}")

    def _transition(
        self, request: AccessRequest, target: AccessStatus, actor: str, details: Dict
    ) -> None:
        current = request.status
        if not can_transition(current, target):
            raise InvalidTransitionError(
                f"Request {request.id}: {current.value} -> {target.value} not allowed"
            )
        now = self.clock.now()
        request.status = target
        request.updated_at = now
        if target.is_terminal:
            request.closed_at = now
        entry_details = {"from": current.value, "to": target.value}
        entry_details.update(details)
        request.audit_trail.append(
            AuditTrailEntry(timestamp=now, action=target.value, actor=actor, details=entry_details)
        )
        if target == AccessStatus.DENIED:
            event_type, severity = AuditEventType.ACCESS_DENIED, EventSeverity.HIGH
        elif target == AccessStatus.EMERGENCY_ACTIVATED:
            event_type, severity = AuditEventType.ACCESS_TRANSITION, EventSeverity.CRITICAL
        else:
            event_type, severity = AuditEventType.ACCESS_TRANSITION, EventSeverity.LOW
        self._emit(event_type, severity, actor, request, entry_details)
        logger.info(f"Access request {request.id}: {current.value} -> {target.value} by {actor}")

    def _emit(
        self,
        event_type: AuditEventType,
        severity: EventSeverity,
        actor: str,
        request: AccessRequest,
        details: Dict,
        tags: Optional[List[str]] = None,
    ) -> None:
        payload = {"request_id": request.id, "principal_id": request.principal_id}
        payload.update(details)
        self.dispatcher.emit(
            AuditEvent(
                event_type=event_type.value,
                severity=severity,
                actor=actor,
                timestamp=self.clock.now(),
                risk_score=request.risk_score,
                tags=tags or ["privileged_access", request.requested_role],
                details=payload,
            )
        )
