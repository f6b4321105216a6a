"""
Separation-of-duties models.

Duty roles and separation rules are static policy. Assignments bind a
principal to a duty role for a period; operations are the append-only record
of every sensitive action that went through the conflict detector.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from jitguard.models.access_models import AuditTrailEntry, RiskLevel


class DutyCategory(str, Enum):
    DEPLOYMENT = "deployment"
    PAYMENT_PROCESSING = "payment_processing"
    KEY_MANAGEMENT = "key_management"
    USER_MANAGEMENT = "user_management"
    DATA_MANAGEMENT = "data_management"
    SECURITY_ADMINISTRATION = "security_administration"
    SYSTEM_ADMINISTRATION = "system_administration"
    AUDIT_MANAGEMENT = "audit_management"
    COMPLIANCE_MANAGEMENT = "compliance_management"


class OperationType(str, Enum):
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    EXECUTE = "execute"
    APPROVE = "approve"
    REVIEW = "review"
    AUTHORIZE = "authorize"


class ConflictType(str, Enum):
    ROLE_CONFLICT = "role_conflict"
    DUTY_CONFLICT = "duty_conflict"
    TEMPORAL_CONFLICT = "temporal_conflict"
    HIERARCHY_CONFLICT = "hierarchy_conflict"
    VENDOR_CONFLICT = "vendor_conflict"


class SeparationLevel(str, Enum):
    WEAK = "weak"  # Advisory
    STRONG = "strong"  # Mandatory
    ABSOLUTE = "absolute"  # No exceptions


class EnforcementLevel(str, Enum):
    ADVISORY = "advisory"
    BLOCKING = "blocking"
    FATAL = "fatal"


class RecommendedAction(str, Enum):
    BLOCK = "block"
    REQUIRE_APPROVAL = "require_approval"
    WARN = "warn"
    ALLOW = "allow"


class AssignmentStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    EXPIRED = "expired"
    REVOKED = "revoked"


class OperationStatus(str, Enum):
    BLOCKED = "blocked"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    EXECUTED = "executed"


@dataclass(frozen=True)
class DutyRole:
    id: str
    name: str
    category: DutyCategory
    description: str = ""
    permissions: Tuple[str, ...] = ()
    operation_types: Tuple[OperationType, ...] = ()
    incompatible_roles: Tuple[str, ...] = ()
    required_separation_level: SeparationLevel = SeparationLevel.STRONG
    requires_approval: bool = False
    approver_roles: Tuple[str, ...] = ()
    risk_level: RiskLevel = RiskLevel.MEDIUM
    max_operations_per_day: Optional[int] = None
    active: bool = True


@dataclass(frozen=True)
class TemporalSeparation:
    enabled: bool = False
    minimum_hours: float = 0
    maximum_days: Optional[int] = None


@dataclass(frozen=True)
class AllowedExceptions:
    emergency_override: bool = False
    senior_approval: bool = False
    business_justification: bool = False
    timeboxed: bool = False

    def any(self) -> bool:
        return (
            self.emergency_override
            or self.senior_approval
            or self.business_justification
            or self.timeboxed
        )

    def requirements(self) -> Tuple[str, ...]:
        names = []
        if self.emergency_override:
            names.append("emergency_override")
        if self.senior_approval:
            names.append("senior_approval")
        if self.business_justification:
            names.append("business_justification")
        if self.timeboxed:
            names.append("time_limited")
        return tuple(names)


@dataclass(frozen=True)
class SeparationRule:
    id: str
    name: str
    primary_duty: DutyCategory
    conflicting_duties: Tuple[DutyCategory, ...]
    conflict_type: ConflictType = ConflictType.DUTY_CONFLICT
    separation_level: SeparationLevel = SeparationLevel.STRONG
    enforcement_level: EnforcementLevel = EnforcementLevel.BLOCKING
    description: str = ""
    temporal_separation: TemporalSeparation = field(default_factory=TemporalSeparation)
    allowed_exceptions: AllowedExceptions = field(default_factory=AllowedExceptions)
    alert_recipients: Tuple[str, ...] = ()
    regulatory_requirements: Tuple[str, ...] = ()
    priority: int = 0
    enabled: bool = True

    def mentions(self, category: DutyCategory) -> bool:
        return category == self.primary_duty or category in self.conflicting_duties

    def opposite_side(self, category: DutyCategory) -> Tuple[DutyCategory, ...]:
        """Categories that conflict with category under this rule."""
        if category == self.primary_duty:
            return self.conflicting_duties
        if category in self.conflicting_duties:
            return (self.primary_duty,)
        return ()


@dataclass
class DutyAssignment:
    id: str
    principal_id: str
    role_id: str
    duty_category: DutyCategory
    assigned_by: str
    assigned_at: datetime
    expires_at: Optional[datetime] = None
    status: AssignmentStatus = AssignmentStatus.ACTIVE
    business_justification: str = ""
    audit_trail: List[AuditTrailEntry] = field(default_factory=list)

    def is_active_at(self, now: datetime) -> bool:
        if self.status != AssignmentStatus.ACTIVE:
            return False
        return self.expires_at is None or self.expires_at > now


@dataclass(frozen=True)
class ViolationResult:
    violation_type: ConflictType
    severity: RiskLevel
    rule_id: str
    rule_name: str
    description: str
    conflicting_operations: Tuple[str, ...]
    recommended_action: RecommendedAction
    can_override: bool
    override_requirements: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "violation_type": self.violation_type.value,
            "severity": self.severity.value,
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "description": self.description,
            "conflicting_operations": list(self.conflicting_operations),
            "recommended_action": self.recommended_action.value,
            "can_override": self.can_override,
            "override_requirements": list(self.override_requirements),
        }


@dataclass(frozen=True)
class DutyOperation:
    """One attempted sensitive action. Never edited after it is recorded."""

    id: str
    principal_id: str
    duty_category: DutyCategory
    operation_type: OperationType
    resource: str
    action: str
    timestamp: datetime
    status: OperationStatus
    violations: Tuple[ViolationResult, ...] = ()
    proceeded_with_violation: bool = False
    override_reason: Optional[str] = None
    requires_approval: bool = False
    risk_score: int = 0
    session_id: Optional[str] = None
    source_ip: Optional[str] = None

    @property
    def label(self) -> str:
        return f"{self.duty_category.value}:{self.operation_type.value}:{self.resource}"


@dataclass(frozen=True)
class OperationDecision:
    """Outcome returned to the caller of the conflict detector."""

    operation_id: str
    allowed: bool
    violations: Tuple[ViolationResult, ...]
    requires_approval: bool
    approver_roles: Tuple[str, ...]
    overridden: bool
    risk_score: int
    status: OperationStatus
