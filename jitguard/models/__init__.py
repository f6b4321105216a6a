"""Domain models for the privileged operation authorization engine."""

from .access_models import (
    AccessRequest,
    AccessRequestType,
    AccessStatus,
    ApprovalDecision,
    ApprovalSlot,
    AuditTrailEntry,
    ChallengeStatus,
    EmergencyMFAFailurePolicy,
    ExtensionRequest,
    MFAChallenge,
    MFAMethod,
    MFAVerificationResult,
    PrivilegedRole,
    PrivilegedSession,
    PrivilegeLevel,
    ResourceAccess,
    RiskAssessment,
    RiskEvent,
    RiskLevel,
    SessionActivity,
    SessionStatus,
    TimeWindow,
    Urgency,
    TERMINAL_ACCESS_STATUSES,
)
from .duty_models import (
    AllowedExceptions,
    AssignmentStatus,
    ConflictType,
    DutyAssignment,
    DutyCategory,
    DutyOperation,
    DutyRole,
    EnforcementLevel,
    OperationDecision,
    OperationStatus,
    OperationType,
    RecommendedAction,
    SeparationLevel,
    SeparationRule,
    TemporalSeparation,
    ViolationResult,
)
from .event_models import AuditEvent, AuditEventType, EventSeverity, Notification
