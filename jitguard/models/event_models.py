"""
Event models for the audit/alert sink and notification dispatch.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List


class EventSeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class AuditEventType(str, Enum):
    ACCESS_REQUESTED = "privileged_access_requested"
    ACCESS_TRANSITION = "privileged_access_transition"
    ACCESS_DENIED = "privileged_access_denied"
    EMERGENCY_ACTIVATED = "emergency_access_activated"
    APPROVAL_DECISION = "approval_decision_recorded"
    UNAUTHORIZED_APPROVAL = "unauthorized_approval_attempt"
    MFA_CHALLENGE_ISSUED = "mfa_challenge_issued"
    MFA_VERIFIED = "mfa_verification_successful"
    MFA_FAILED = "mfa_verification_failed"
    MFA_EXHAUSTED = "mfa_attempts_exhausted"
    SESSION_STARTED = "privileged_session_started"
    SESSION_EXPIRED = "privileged_session_expired"
    SESSION_TERMINATED = "privileged_session_terminated"
    SESSION_SUSPICIOUS = "privileged_session_suspicious"
    SEPARATION_CHECK = "separation_of_duties_check"
    SEPARATION_VIOLATION = "separation_violation_detected"
    SEPARATION_OVERRIDE = "separation_violation_override"
    DUTY_ASSIGNMENT = "duty_assignment_changed"
    POLICY_RELOADED = "policy_reloaded"


@dataclass
class AuditEvent:
    """Structured event delivered to the audit/alert sink."""

    event_type: str
    severity: EventSeverity
    actor: str
    timestamp: datetime
    risk_score: int = 0
    tags: List[str] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "severity": self.severity.value,
            "actor": self.actor,
            "risk_score": self.risk_score,
            "tags": list(self.tags),
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class Notification:
    """Informational message for humans. Never gates a transition."""

    recipients: List[str]
    template: str
    data: Dict[str, Any] = field(default_factory=dict)
