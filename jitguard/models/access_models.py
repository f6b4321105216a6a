"""
Access Models for just-in-time privileged elevation.

Defines privileged roles, access requests, MFA challenges and privileged
sessions together with the enums that drive their state machines.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class PrivilegeLevel(str, Enum):
    """Privilege tiers, lowest to highest."""

    STANDARD = "standard"
    ELEVATED = "elevated"
    PRIVILEGED = "privileged"
    SUPER_ADMIN = "super_admin"
    EMERGENCY = "emergency"  # Break-glass


class AccessRequestType(str, Enum):
    TEMPORARY_ELEVATION = "temporary_elevation"
    EMERGENCY_ACCESS = "emergency_access"
    ROLE_ASSUMPTION = "role_assumption"
    RESOURCE_ACCESS = "resource_access"
    SYSTEM_MAINTENANCE = "system_maintenance"
    DATA_ACCESS = "data_access"
    SECURITY_INVESTIGATION = "security_investigation"


class MFAMethod(str, Enum):
    TOTP = "totp"
    PUSH = "push"
    SMS = "sms"
    EMAIL = "email"
    HARDWARE_TOKEN = "hardware_token"
    BIOMETRIC = "biometric"
    BACKUP_CODES = "backup_codes"


class AccessStatus(str, Enum):
    """Access request states."""

    REQUESTED = "requested"
    PENDING_APPROVAL = "pending_approval"
    PENDING_MFA = "pending_mfa"
    APPROVED = "approved"
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"
    DENIED = "denied"
    EMERGENCY_ACTIVATED = "emergency_activated"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_ACCESS_STATUSES


TERMINAL_ACCESS_STATUSES = frozenset(
    {AccessStatus.EXPIRED, AccessStatus.REVOKED, AccessStatus.DENIED}
)


class Urgency(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    EMERGENCY = "emergency"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    TERMINATED = "terminated"
    SUSPENDED = "suspended"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.EXPIRED, SessionStatus.TERMINATED)


class ChallengeStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    FAILED = "failed"
    EXPIRED = "expired"


class ApprovalDecision(str, Enum):
    APPROVED = "approved"
    DENIED = "denied"
    PENDING = "pending"


class EmergencyMFAFailurePolicy(str, Enum):
    """What happens when MFA is exhausted on a break-glass request."""

    ESCALATE = "escalate"  # Deny and raise a critical alert
    RETRY_ONCE = "retry_once"  # Issue one replacement challenge first


@dataclass(frozen=True)
class TimeWindow:
    """Allowed access window. Days use 0=Sunday .. 6=Saturday."""

    start: str
    end: str
    timezone: str = "UTC"
    days: Tuple[int, ...] = (0, 1, 2, 3, 4, 5, 6)


@dataclass(frozen=True)
class ResourceAccess:
    databases: Tuple[str, ...] = ()
    services: Tuple[str, ...] = ()
    networks: Tuple[str, ...] = ()
    files: Tuple[str, ...] = ()


@dataclass(frozen=True)
class PrivilegedRole:
    """Privileged role definition. Immutable once loaded."""

    id: str
    name: str
    privilege_level: PrivilegeLevel
    description: str = ""
    permissions: Tuple[str, ...] = ()
    resource_access: ResourceAccess = field(default_factory=ResourceAccess)

    requires_approval: bool = False
    approver_roles: Tuple[str, ...] = ()
    minimum_approvers: int = 0

    mfa_required: bool = True
    allowed_mfa_methods: Tuple[MFAMethod, ...] = (MFAMethod.TOTP,)
    mfa_validity_minutes: int = 60

    max_session_duration: int = 60  # minutes
    allowed_time_windows: Tuple[TimeWindow, ...] = ()

    risk_level: RiskLevel = RiskLevel.MEDIUM
    ip_allowlist: Optional[Tuple[str, ...]] = None

    session_recording: bool = False
    keystroke_logging: bool = False
    screen_capture: bool = False

    emergency_access: bool = False
    emergency_approvers: Tuple[str, ...] = ()
    emergency_notifications: Tuple[str, ...] = ()
    emergency_mfa_failure_policy: EmergencyMFAFailurePolicy = (
        EmergencyMFAFailurePolicy.ESCALATE
    )

    regulations: Tuple[str, ...] = ()
    retention_days: int = 365
    active: bool = True


@dataclass
class AuditTrailEntry:
    timestamp: datetime
    action: str
    actor: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "action": self.action,
            "actor": self.actor,
            "details": self.details,
        }


@dataclass
class ApprovalSlot:
    """One required approval, keyed by approver role."""

    role: str
    decision: ApprovalDecision = ApprovalDecision.PENDING
    approver_id: Optional[str] = None
    comment: Optional[str] = None
    decided_at: Optional[datetime] = None


@dataclass
class AccessRequest:
    """Request for a temporary privileged role."""

    id: str
    principal_id: str
    requested_role: str
    requested_duration: int  # minutes
    created_at: datetime
    principal_name: str = ""
    request_type: AccessRequestType = AccessRequestType.TEMPORARY_ELEVATION
    urgency: Urgency = Urgency.MEDIUM
    justification: str = ""
    target_resources: List[str] = field(default_factory=list)
    source_ip: Optional[str] = None

    status: AccessStatus = AccessStatus.REQUESTED
    risk_score: int = 0
    risk_factors: List[str] = field(default_factory=list)
    approvals: List[ApprovalSlot] = field(default_factory=list)
    automatic_approval: bool = False

    mfa_required: bool = False
    mfa_completed: bool = False
    mfa_method: Optional[MFAMethod] = None
    mfa_verified_at: Optional[datetime] = None
    mfa_challenge_id: Optional[str] = None

    emergency_access: bool = False
    emergency_notifications_sent: bool = False

    session_id: Optional[str] = None
    extends_session_id: Optional[str] = None
    denial_reason: Optional[str] = None

    audit_trail: List[AuditTrailEntry] = field(default_factory=list)
    updated_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None

    @property
    def principal_label(self) -> str:
        return self.principal_name or self.principal_id

    def approved_count(self) -> int:
        return sum(1 for a in self.approvals if a.decision == ApprovalDecision.APPROVED)

    def pending_slots(self) -> List[ApprovalSlot]:
        return [a for a in self.approvals if a.decision == ApprovalDecision.PENDING]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "principal_id": self.principal_id,
            "principal_name": self.principal_name,
            "requested_role": self.requested_role,
            "request_type": self.request_type.value,
            "urgency": self.urgency.value,
            "requested_duration": self.requested_duration,
            "status": self.status.value,
            "risk_score": self.risk_score,
            "risk_factors": list(self.risk_factors),
            "approvals": [
                {
                    "role": a.role,
                    "decision": a.decision.value,
                    "approver_id": a.approver_id,
                    "comment": a.comment,
                    "decided_at": a.decided_at.isoformat() if a.decided_at else None,
                }
                for a in self.approvals
            ],
            "mfa_required": self.mfa_required,
            "mfa_completed": self.mfa_completed,
            "mfa_method": self.mfa_method.value if self.mfa_method else None,
            "emergency_access": self.emergency_access,
            "session_id": self.session_id,
            "extends_session_id": self.extends_session_id,
            "denial_reason": self.denial_reason,
            "created_at": self.created_at.isoformat(),
            "audit_trail": [entry.to_dict() for entry in self.audit_trail],
        }


@dataclass
class SessionActivity:
    timestamp: datetime
    action: str
    resource: str
    result: str = "success"  # success | failure | blocked
    risk_level: RiskLevel = RiskLevel.LOW
    command: Optional[str] = None


@dataclass
class RiskEvent:
    timestamp: datetime
    event: str
    severity: RiskLevel
    automated: bool = True


@dataclass
class ExtensionRequest:
    requested_at: datetime
    additional_minutes: int
    justification: str
    access_request_id: str


@dataclass
class PrivilegedSession:
    """A running elevation."""

    id: str
    access_request_id: str
    principal_id: str
    role_id: str
    start_time: datetime
    scheduled_end: datetime
    status: SessionStatus = SessionStatus.ACTIVE
    end_time: Optional[datetime] = None
    duration: Optional[float] = None  # seconds

    recording_enabled: bool = False
    keystrokes_logged: bool = False
    screen_captured: bool = False

    current_risk_score: int = 0
    suspicious_activity: bool = False
    idle_flagged: bool = False
    last_activity: Optional[datetime] = None
    termination_reason: Optional[str] = None

    activities: List[SessionActivity] = field(default_factory=list)
    risk_events: List[RiskEvent] = field(default_factory=list)
    extension_requests: List[ExtensionRequest] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "access_request_id": self.access_request_id,
            "principal_id": self.principal_id,
            "role_id": self.role_id,
            "status": self.status.value,
            "start_time": self.start_time.isoformat(),
            "scheduled_end": self.scheduled_end.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration": self.duration,
            "recording_enabled": self.recording_enabled,
            "current_risk_score": self.current_risk_score,
            "suspicious_activity": self.suspicious_activity,
            "activity_count": len(self.activities),
            "risk_events": [
                {"event": e.event, "severity": e.severity.value, "timestamp": e.timestamp.isoformat()}
                for e in self.risk_events
            ],
            "termination_reason": self.termination_reason,
        }


@dataclass
class MFAChallenge:
    id: str
    access_request_id: str
    principal_id: str
    method: MFAMethod
    challenge_code: str
    created_at: datetime
    expires_at: datetime
    max_attempts: int = 3
    attempts: int = 0
    status: ChallengeStatus = ChallengeStatus.PENDING
    verified_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    backup_methods_available: Tuple[MFAMethod, ...] = ()
    backup_method_used: Optional[MFAMethod] = None
    reissue_count: int = 0

    @property
    def attempts_remaining(self) -> int:
        return max(0, self.max_attempts - self.attempts)


@dataclass
class RiskAssessment:
    """Output of the risk evaluator."""

    score: int
    factors: List[str]
    within_time_window: bool
    level: RiskLevel


@dataclass
class MFAVerificationResult:
    verified: bool
    challenge_id: str
    status: ChallengeStatus
    attempts: int
    attempts_remaining: int
    method: Optional[MFAMethod] = None
    replacement_challenge_id: Optional[str] = None
