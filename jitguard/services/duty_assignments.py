"""
Duty assignment management.

Binds principals to duty roles for a period. Assignments whose roles are
mutually incompatible at the absolute separation level are refused outright;
weaker incompatibilities are allowed but raise a HIGH audit event.
"""

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Dict, List, Optional

from jitguard.models.access_models import AuditTrailEntry
from jitguard.models.duty_models import (
    AssignmentStatus,
    DutyAssignment,
    DutyRole,
    SeparationLevel,
)
from jitguard.models.event_models import AuditEvent, AuditEventType, EventSeverity
from jitguard.services.audit_emitter import EventDispatcher
from jitguard.services.policy_registry import PolicyRegistry, RegistryHandle
from jitguard.utils.clock import Clock
from jitguard.utils.errors import (
    ConflictViolation,
    InvalidTransitionError,
    NotFoundError,
    UnknownRoleError,
    ValidationError,
)
from jitguard.utils.logging_config import MetricsCollector
from jitguard.utils.ttl_index import TTLIndex


logger = logging.getLogger(__name__)


def roles_incompatible(a: DutyRole, b: DutyRole) -> bool:
    return b.id in a.incompatible_roles or a.id in b.incompatible_roles


class DutyAssignmentManager:
    """Owns duty assignments and their expiry."""

    def __init__(
        self,
        registry: RegistryHandle,
        clock: Clock,
        dispatcher: EventDispatcher,
        metrics: Optional[MetricsCollector] = None,
    ):
        self._registry = registry
        self.clock = clock
        self.dispatcher = dispatcher
        self.metrics = metrics or MetricsCollector()
        self._assignments: Dict[str, DutyAssignment] = {}
        self._by_principal: Dict[str, List[str]] = {}
        self._expirations = TTLIndex()
        self._lock = asyncio.Lock()

    @property
    def registry(self) -> PolicyRegistry:
        return self._registry.current

    async def assign(
        self,
        principal_id: str,
        role_id: str,
        assigned_by: str,
        expires_at: Optional[datetime] = None,
        justification: str = "",
    ) -> DutyAssignment:
        """Assign a duty role to a principal.

        Raises:
            UnknownRoleError: Role unknown or inactive
            ValidationError: Expiry already passed, or role already held
            ConflictViolation: Principal holds a role incompatible at the
                absolute separation level
        """
        role = self.registry.get_duty_role(role_id)
        if role is None or not role.active:
            raise UnknownRoleError(f"Duty role not found or inactive: {role_id}")

        async with self._lock:
            now = self.clock.now()
            if expires_at is not None and expires_at <= now:
                raise ValidationError("Assignment expiry must be in the future")

            current = self._active_locked(principal_id, now)
            if any(a.role_id == role_id for a in current):
                raise ValidationError(f"{principal_id} already holds duty role {role_id}")

            absolute, advisory = [], []
            for held in current:
                other = self.registry.get_duty_role(held.role_id)
                if other is None or not roles_incompatible(role, other):
                    continue
                if SeparationLevel.ABSOLUTE in (
                    role.required_separation_level,
                    other.required_separation_level,
                ):
                    absolute.append(other.id)
                else:
                    advisory.append(other.id)

            if absolute:
                self.metrics.increment_counter("assignments_refused")
                self._emit(
                    AuditEventType.SEPARATION_VIOLATION,
                    EventSeverity.CRITICAL,
                    assigned_by,
                    {
                        "principal_id": principal_id,
                        "role_id": role_id,
                        "conflicting_roles": absolute,
                        "outcome": "refused",
                    },
                )
                logger.warning(
                    f"Refused {role_id} for {principal_id}: absolute conflict with {absolute}"
                )
                raise ConflictViolation(
                    f"Duty role {role_id} conflicts absolutely with {', '.join(absolute)}"
                )

            assignment = DutyAssignment(
                id=str(uuid.uuid4()),
                principal_id=principal_id,
                role_id=role.id,
                duty_category=role.category,
                assigned_by=assigned_by,
                assigned_at=now,
                expires_at=expires_at,
                business_justification=justification,
            )
            assignment.audit_trail.append(
                AuditTrailEntry(
                    timestamp=now,
                    action="assigned",
                    actor=assigned_by,
                    details={"conflicting_roles": advisory} if advisory else {},
                )
            )
            self._assignments[assignment.id] = assignment
            self._by_principal.setdefault(principal_id, []).append(assignment.id)
            if expires_at is not None:
                self._expirations.schedule(assignment.id, expires_at)

        self.metrics.increment_counter("assignments_created")
        self._emit(
            AuditEventType.DUTY_ASSIGNMENT,
            EventSeverity.HIGH if advisory else EventSeverity.LOW,
            assigned_by,
            {
                "assignment_id": assignment.id,
                "principal_id": principal_id,
                "role_id": role_id,
                "action": "assigned",
                "conflicting_roles": advisory,
            },
        )
        if advisory:
            logger.warning(
                f"Assigned {role_id} to {principal_id} despite incompatibility with {advisory}"
            )
        else:
            logger.info(f"Assigned duty role {role_id} to {principal_id}")
        return assignment

    async def revoke(self, assignment_id: str, actor: str, reason: str = "") -> DutyAssignment:
        return await self._close(assignment_id, AssignmentStatus.REVOKED, actor, reason)

    async def suspend(self, assignment_id: str, actor: str, reason: str = "") -> DutyAssignment:
        return await self._close(assignment_id, AssignmentStatus.SUSPENDED, actor, reason)

    async def _close(
        self, assignment_id: str, status: AssignmentStatus, actor: str, reason: str
    ) -> DutyAssignment:
        async with self._lock:
            assignment = self._assignments.get(assignment_id)
            if assignment is None:
                raise NotFoundError(f"Duty assignment not found: {assignment_id}")
            if assignment.status != AssignmentStatus.ACTIVE:
                raise InvalidTransitionError(
                    f"Assignment {assignment_id} is {assignment.status.value}"
                )
            now = self.clock.now()
            assignment.status = status
            self._expirations.cancel(assignment_id)
            assignment.audit_trail.append(
                AuditTrailEntry(timestamp=now, action=status.value, actor=actor, details={"reason": reason})
            )

        self._emit(
            AuditEventType.DUTY_ASSIGNMENT,
            EventSeverity.MEDIUM,
            actor,
            {
                "assignment_id": assignment_id,
                "principal_id": assignment.principal_id,
                "role_id": assignment.role_id,
                "action": status.value,
                "reason": reason,
            },
        )
        logger.info(f"Duty assignment {assignment_id} {status.value} by {actor}")
        return assignment

    def active_assignments(
        self, principal_id: str, now: Optional[datetime] = None
    ) -> List[DutyAssignment]:
        """Active, unexpired assignments. Expired ones are flipped on the way."""
        return self._active_locked(principal_id, now or self.clock.now())

    def _active_locked(self, principal_id: str, now: datetime) -> List[DutyAssignment]:
        active = []
        for assignment_id in self._by_principal.get(principal_id, ()):
            assignment = self._assignments[assignment_id]
            if assignment.status != AssignmentStatus.ACTIVE:
                continue
            if assignment.expires_at is not None and assignment.expires_at <= now:
                self._expire(assignment, now)
                continue
            active.append(assignment)
        return active

    def _expire(self, assignment: DutyAssignment, now: datetime) -> None:
        assignment.status = AssignmentStatus.EXPIRED
        self._expirations.cancel(assignment.id)
        assignment.audit_trail.append(
            AuditTrailEntry(timestamp=now, action="expired", actor="system")
        )
        self.metrics.increment_counter("assignments_expired")
        logger.info(f"Duty assignment {assignment.id} for {assignment.principal_id} expired")

    async def expire_due(self, now: Optional[datetime] = None) -> int:
        now = now or self.clock.now()
        count = 0
        async with self._lock:
            for assignment_id in self._expirations.pop_due(now):
                assignment = self._assignments.get(assignment_id)
                if assignment is None or assignment.status != AssignmentStatus.ACTIVE:
                    continue
                self._expire(assignment, now)
                count += 1
        return count

    def get_assignment(self, assignment_id: str) -> Optional[DutyAssignment]:
        return self._assignments.get(assignment_id)

    def list_assignments(self, principal_id: Optional[str] = None) -> List[DutyAssignment]:
        if principal_id is None:
            return list(self._assignments.values())
        return [self._assignments[a] for a in self._by_principal.get(principal_id, ())]

    def active_count(self) -> int:
        now = self.clock.now()
        return sum(1 for a in self._assignments.values() if a.is_active_at(now))

    def reap(self, cutoff: datetime) -> int:
        """Drop revoked or expired assignments closed before cutoff."""
        doomed = [
            a
            for a in self._assignments.values()
            if a.status in (AssignmentStatus.REVOKED, AssignmentStatus.EXPIRED)
            and a.audit_trail
            and a.audit_trail[-1].timestamp < cutoff
        ]
        for assignment in doomed:
            del self._assignments[assignment.id]
            remaining = [
                aid
                for aid in self._by_principal.get(assignment.principal_id, ())
                if aid != assignment.id
            ]
            if remaining:
                self._by_principal[assignment.principal_id] = remaining
            else:
                self._by_principal.pop(assignment.principal_id, None)
        return len(doomed)

    def _emit(self, event_type: AuditEventType, severity: EventSeverity, actor: str, details) -> None:
        self.dispatcher.emit(
            AuditEvent(
                event_type=event_type.value,
                severity=severity,
                actor=actor,
                timestamp=self.clock.now(),
                tags=["separation_of_duties", "assignment"],
                details=details,
            )
        )
