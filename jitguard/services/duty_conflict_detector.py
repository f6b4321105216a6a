"""
Duty Conflict Detector.

Decides whether a principal may perform a sensitive operation given the
duty roles they hold and what they have done recently. Every check records
a DutyOperation, blocked or not, under the principal's lock so that a
principal's operations are evaluated and recorded one at a time and in
order; different principals are checked in parallel.
"""

import asyncio
import logging
import uuid
from collections import defaultdict
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from jitguard.models.access_models import RiskLevel
from jitguard.models.duty_models import (
    ConflictType,
    DutyCategory,
    DutyOperation,
    EnforcementLevel,
    OperationDecision,
    OperationStatus,
    OperationType,
    RecommendedAction,
    SeparationLevel,
    SeparationRule,
    ViolationResult,
)
from jitguard.models.event_models import (
    AuditEvent,
    AuditEventType,
    EventSeverity,
    Notification,
)
from jitguard.services.audit_emitter import EventDispatcher
from jitguard.services.duty_assignments import DutyAssignmentManager
from jitguard.services.policy_registry import PolicyRegistry, RegistryHandle
from jitguard.utils.clock import Clock
from jitguard.utils.errors import (
    ApproverNotAuthorizedError,
    ConflictViolation,
    InvalidTransitionError,
    NotFoundError,
    coerce_enum,
)
from jitguard.utils.logging_config import MetricsCollector


logger = logging.getLogger(__name__)

ENFORCEMENT_ACTIONS = {
    EnforcementLevel.FATAL: RecommendedAction.BLOCK,
    EnforcementLevel.BLOCKING: RecommendedAction.REQUIRE_APPROVAL,
    EnforcementLevel.ADVISORY: RecommendedAction.WARN,
}

CATEGORY_BASE_RISK = {
    DutyCategory.PAYMENT_PROCESSING: 40,
    DutyCategory.KEY_MANAGEMENT: 35,
    DutyCategory.DEPLOYMENT: 30,
    DutyCategory.SYSTEM_ADMINISTRATION: 25,
}

SEVERITY_RISK = {
    RiskLevel.CRITICAL: 30,
    RiskLevel.HIGH: 20,
    RiskLevel.MEDIUM: 10,
    RiskLevel.LOW: 5,
}

# Operations awaiting sign-off count: the principal has already acted on the duty
COUNTED_STATUSES = frozenset(
    {OperationStatus.EXECUTED, OperationStatus.APPROVED, OperationStatus.PENDING_APPROVAL}
)


def operation_risk_score(
    category: DutyCategory,
    violations: Sequence[ViolationResult],
    proceeded_with_violation: bool,
) -> int:
    score = CATEGORY_BASE_RISK.get(category, 15)
    score += sum(SEVERITY_RISK[v.severity] for v in violations)
    if proceeded_with_violation:
        score += 25
    return max(0, min(100, score))


class DutyConflictDetector:
    """Separation-of-duties check for every sensitive operation."""

    def __init__(
        self,
        registry: RegistryHandle,
        assignments: DutyAssignmentManager,
        clock: Clock,
        dispatcher: EventDispatcher,
        metrics: Optional[MetricsCollector] = None,
        operation_retention_hours: int = 7 * 24,
    ):
        self._registry = registry
        self.assignments = assignments
        self.clock = clock
        self.dispatcher = dispatcher
        self.metrics = metrics or MetricsCollector()
        self.operation_retention_hours = operation_retention_hours
        self._history: Dict[str, List[DutyOperation]] = defaultdict(list)
        self._operations: Dict[str, DutyOperation] = {}
        self._principal_locks: Dict[str, asyncio.Lock] = {}

    @property
    def registry(self) -> PolicyRegistry:
        return self._registry.current

    def _lock_for(self, principal_id: str) -> asyncio.Lock:
        lock = self._principal_locks.get(principal_id)
        if lock is None:
            lock = asyncio.Lock()
            self._principal_locks[principal_id] = lock
        return lock

    async def check_operation(
        self,
        principal_id: str,
        duty_category: Union[DutyCategory, str],
        operation_type: Union[OperationType, str],
        resource: str,
        action: str,
        *,
        emergency_override: bool = False,
        business_justification: Optional[str] = None,
        session_id: Optional[str] = None,
        source_ip: Optional[str] = None,
    ) -> OperationDecision:
        """Evaluate and record one operation attempt.

        Raises:
            ValidationError: Unknown duty category or operation type
        """
        duty_category = coerce_enum(DutyCategory, duty_category, "duty_category")
        operation_type = coerce_enum(OperationType, operation_type, "operation_type")

        async with self._lock_for(principal_id):
            now = self.clock.now()
            registry = self.registry
            violations = self._detect(principal_id, duty_category, now, registry)

            critical = [v for v in violations if v.severity == RiskLevel.CRITICAL]
            overridden = False
            allowed = True
            if critical:
                # Absolute rules never declare exceptions, so they never pass here
                overridable = all(
                    self._rule_allows_exception(registry, v.rule_id) for v in critical
                )
                if emergency_override and overridable:
                    overridden = True
                else:
                    allowed = False

            requires_approval = any(
                v.severity != RiskLevel.CRITICAL
                and v.recommended_action
                in (RecommendedAction.BLOCK, RecommendedAction.REQUIRE_APPROVAL)
                for v in violations
            )
            approver_roles: List[str] = []
            duty_role = next(iter(registry.duty_roles_for_category(duty_category)), None)
            if duty_role is not None and duty_role.requires_approval:
                requires_approval = True
                approver_roles.extend(duty_role.approver_roles)
            for v in violations:
                if v.recommended_action == RecommendedAction.REQUIRE_APPROVAL:
                    rule = registry.get_separation_rule(v.rule_id)
                    if rule is not None:
                        approver_roles.extend(rule.alert_recipients)
            approver_roles = list(dict.fromkeys(approver_roles))

            if not allowed:
                status = OperationStatus.BLOCKED
                requires_approval = False
            elif requires_approval and not overridden:
                status = OperationStatus.PENDING_APPROVAL
            else:
                status = OperationStatus.EXECUTED

            proceeded = allowed and bool(violations)
            risk = operation_risk_score(duty_category, violations, proceeded)
            operation = DutyOperation(
                id=str(uuid.uuid4()),
                principal_id=principal_id,
                duty_category=duty_category,
                operation_type=operation_type,
                resource=resource,
                action=action,
                timestamp=now,
                status=status,
                violations=tuple(violations),
                proceeded_with_violation=proceeded,
                override_reason=(business_justification or "Emergency override") if overridden else None,
                requires_approval=requires_approval,
                risk_score=risk,
                session_id=session_id,
                source_ip=source_ip,
            )
            self._history[principal_id].append(operation)
            self._operations[operation.id] = operation

        decision = OperationDecision(
            operation_id=operation.id,
            allowed=allowed,
            violations=tuple(violations),
            requires_approval=requires_approval,
            approver_roles=tuple(approver_roles),
            overridden=overridden,
            risk_score=risk,
            status=status,
        )
        self._report(operation, decision, emergency_override)
        return decision

    @staticmethod
    def _rule_allows_exception(registry: PolicyRegistry, rule_id: str) -> bool:
        rule = registry.get_separation_rule(rule_id)
        return rule is not None and rule.allowed_exceptions.any()

    async def enforce_operation(
        self,
        principal_id: str,
        duty_category: Union[DutyCategory, str],
        operation_type: Union[OperationType, str],
        resource: str,
        action: str,
        **kwargs,
    ) -> OperationDecision:
        """Like check_operation, but raises ConflictViolation when blocked."""
        decision = await self.check_operation(
            principal_id, duty_category, operation_type, resource, action, **kwargs
        )
        if not decision.allowed:
            rules = ", ".join(v.rule_id for v in decision.violations if v.severity == RiskLevel.CRITICAL)
            raise ConflictViolation(
                f"Operation blocked by separation of duties: {rules}", decision=decision
            )
        return decision

    async def record_approval(
        self, operation_id: str, approver_id: str, comment: Optional[str] = None
    ) -> DutyOperation:
        """Sign off an operation that was allowed subject to approval."""
        operation = self._operations.get(operation_id)
        if operation is None:
            raise NotFoundError(f"Operation not found: {operation_id}")

        async with self._lock_for(operation.principal_id):
            operation = self._operations.get(operation_id)
            if operation is None:
                raise NotFoundError(f"Operation not found: {operation_id}")
            if operation.status != OperationStatus.PENDING_APPROVAL:
                raise InvalidTransitionError(
                    f"Operation {operation_id} is {operation.status.value}, not pending approval"
                )
            if approver_id == operation.principal_id:
                raise ApproverNotAuthorizedError(
                    f"{approver_id} cannot approve their own operation {operation_id}"
                )
            approved = replace(operation, status=OperationStatus.APPROVED)
            self._operations[operation_id] = approved
            history = self._history.get(operation.principal_id, [])
            self._history[operation.principal_id] = [
                approved if op.id == operation_id else op for op in history
            ]

        self.metrics.increment_counter("operations_approved")
        self.dispatcher.emit(
            AuditEvent(
                event_type=AuditEventType.SEPARATION_CHECK.value,
                severity=EventSeverity.MEDIUM,
                actor=approver_id,
                timestamp=self.clock.now(),
                risk_score=approved.risk_score,
                tags=["separation_of_duties", "approval"],
                details={
                    "operation_id": operation_id,
                    "principal_id": approved.principal_id,
                    "operation": approved.label,
                    "status": approved.status.value,
                    "approved_by": approver_id,
                    "comment": comment,
                },
            )
        )
        logger.info(
            f"Operation {approved.label} for {approved.principal_id} approved by {approver_id}"
        )
        return approved

    def _detect(
        self,
        principal_id: str,
        category: DutyCategory,
        now: datetime,
        registry: PolicyRegistry,
    ) -> List[ViolationResult]:
        active = self.assignments.active_assignments(principal_id, now)
        violations: List[ViolationResult] = []

        for rule in registry.rules_for_category(category):
            opposite = rule.opposite_side(category)
            held = [a for a in active if a.duty_category in opposite]
            if held:
                severity = (
                    RiskLevel.CRITICAL
                    if rule.separation_level == SeparationLevel.ABSOLUTE
                    else RiskLevel.HIGH
                )
                violations.append(
                    self._violation(
                        rule,
                        ConflictType.ROLE_CONFLICT,
                        severity,
                        f"Principal holds {', '.join(sorted({a.role_id for a in held}))} "
                        f"which conflicts with {category.value} under {rule.name}",
                        tuple(f"assignment:{a.role_id}" for a in held),
                    )
                )
                continue

            temporal = rule.temporal_separation
            if not temporal.enabled:
                continue
            window = timedelta(hours=temporal.minimum_hours)
            recent = [
                op
                for op in self._history.get(principal_id, ())
                if op.duty_category in opposite
                and op.status in COUNTED_STATUSES
                and now - op.timestamp < window
            ]
            if recent:
                violations.append(
                    self._violation(
                        rule,
                        ConflictType.TEMPORAL_CONFLICT,
                        RiskLevel.MEDIUM,
                        f"{len(recent)} conflicting operation(s) within "
                        f"{temporal.minimum_hours:g}h under {rule.name}",
                        tuple(op.label for op in recent),
                    )
                )
        return violations

    @staticmethod
    def _violation(
        rule: SeparationRule,
        conflict_type: ConflictType,
        severity: RiskLevel,
        description: str,
        conflicting: Tuple[str, ...],
    ) -> ViolationResult:
        overridable = (
            rule.separation_level != SeparationLevel.ABSOLUTE and rule.allowed_exceptions.any()
        )
        return ViolationResult(
            violation_type=conflict_type,
            severity=severity,
            rule_id=rule.id,
            rule_name=rule.name,
            description=description,
            conflicting_operations=conflicting,
            recommended_action=ENFORCEMENT_ACTIONS[rule.enforcement_level],
            can_override=overridable,
            override_requirements=rule.allowed_exceptions.requirements() if overridable else (),
        )

    def _report(
        self, operation: DutyOperation, decision: OperationDecision, emergency_override: bool
    ) -> None:
        self.metrics.increment_counter("operations_total")
        if decision.violations:
            self.metrics.increment_counter("violations_total", len(decision.violations))
            for v in decision.violations:
                self.metrics.increment_counter(f"violations_{v.severity.value}")
        if not decision.allowed:
            self.metrics.increment_counter("operations_blocked")
        if decision.overridden:
            self.metrics.increment_counter("operations_overridden")

        details = {
            "operation_id": operation.id,
            "principal_id": operation.principal_id,
            "duty_category": operation.duty_category.value,
            "operation_type": operation.operation_type.value,
            "resource": operation.resource,
            "action": operation.action,
            "allowed": decision.allowed,
            "status": decision.status.value,
            "requires_approval": decision.requires_approval,
            "emergency_override": emergency_override,
            "violations": [v.to_dict() for v in decision.violations],
        }
        self.dispatcher.emit(
            AuditEvent(
                event_type=AuditEventType.SEPARATION_CHECK.value,
                severity=EventSeverity.HIGH if decision.violations else EventSeverity.LOW,
                actor=operation.principal_id,
                timestamp=operation.timestamp,
                risk_score=decision.risk_score,
                tags=["separation_of_duties", "access_control", "compliance"],
                details=details,
            )
        )

        if not decision.violations:
            logger.info(
                f"Separation check passed for {operation.principal_id} on {operation.label}"
            )
            return

        event_type = (
            AuditEventType.SEPARATION_OVERRIDE if decision.overridden else AuditEventType.SEPARATION_VIOLATION
        )
        has_critical = any(v.severity == RiskLevel.CRITICAL for v in decision.violations)
        self.dispatcher.emit(
            AuditEvent(
                event_type=event_type.value,
                severity=EventSeverity.CRITICAL if decision.overridden or has_critical else EventSeverity.HIGH,
                actor=operation.principal_id,
                timestamp=operation.timestamp,
                risk_score=decision.risk_score,
                tags=["separation_of_duties", "violation"],
                details=details,
            )
        )
        recipients = list(
            dict.fromkeys(
                r
                for v in decision.violations
                for r in self._alert_recipients(v.rule_id)
            )
        )
        self.dispatcher.notify(
            Notification(
                recipients=recipients,
                template=event_type.value,
                data={
                    "operation_id": operation.id,
                    "principal_id": operation.principal_id,
                    "operation": operation.label,
                    "rules": [v.rule_id for v in decision.violations],
                    "allowed": decision.allowed,
                },
            )
        )
        logger.warning(
            f"Separation violation for {operation.principal_id} on {operation.label}: "
            f"{[v.rule_id for v in decision.violations]} "
            f"({'blocked' if not decision.allowed else decision.status.value})"
        )

    def _alert_recipients(self, rule_id: str) -> Iterable[str]:
        rule = self.registry.get_separation_rule(rule_id)
        return rule.alert_recipients if rule is not None else ()

    # Queries

    def get_operation(self, operation_id: str) -> Optional[DutyOperation]:
        return self._operations.get(operation_id)

    def operations_for(self, principal_id: str) -> List[DutyOperation]:
        return list(self._history.get(principal_id, ()))

    def operation_count(self) -> int:
        return len(self._operations)

    def compliance_score(self) -> float:
        total = self.metrics.get("operations_total")
        if not total:
            return 100.0
        violation_rate = self.metrics.get("violations_total") / total * 100
        return max(0.0, 100.0 - violation_rate)

    def retention_horizon(self) -> timedelta:
        hours = max(
            float(self.operation_retention_hours),
            self.registry.longest_temporal_separation_hours(),
        )
        return timedelta(hours=hours)

    def reap(self, now: Optional[datetime] = None) -> int:
        """Drop operations older than the retention horizon."""
        now = now or self.clock.now()
        cutoff = now - self.retention_horizon()
        removed = 0
        for principal_id in list(self._history):
            ops = self._history[principal_id]
            keep = [op for op in ops if op.timestamp >= cutoff]
            for op in ops:
                if op.timestamp < cutoff:
                    self._operations.pop(op.id, None)
                    removed += 1
            if keep:
                self._history[principal_id] = keep
            else:
                del self._history[principal_id]
        for principal_id, lock in list(self._principal_locks.items()):
            if principal_id not in self._history and not lock.locked():
                del self._principal_locks[principal_id]
        if removed:
            logger.debug(f"Cleaned up {removed} old separation operations")
        return removed
