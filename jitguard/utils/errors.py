from enum import Enum
from typing import Any, Dict, Optional


class ErrorCategory(str, Enum):
    CONFIGURATION = "configuration"
    VALIDATION = "validation"
    POLICY = "policy"
    CONFLICT = "conflict"
    COLLABORATOR = "collaborator"
    NOT_FOUND = "not_found"
    STATE = "state"
    PERMISSION = "permission"


class JitGuardError(Exception):
    """Base exception for the authorization engine with a category."""

    def __init__(self, message: str, category: ErrorCategory = ErrorCategory.STATE):
        super().__init__(message)
        self.message = message
        self.category = category

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "category": self.category.value}


class ConfigurationError(JitGuardError):
    """Malformed policy. Raised while loading, never recoverable at runtime."""

    def __init__(self, message: str):
        super().__init__(message, ErrorCategory.CONFIGURATION)


class ValidationError(JitGuardError):
    """Request rejected before any state was created."""

    def __init__(self, message: str):
        super().__init__(message, ErrorCategory.VALIDATION)


class UnknownRoleError(ValidationError):
    """Requested role does not exist or is inactive."""


def coerce_enum(enum_cls, value, field_name: str):
    """Convert value to enum_cls, raising ValidationError for unknown values."""
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(f"Invalid {field_name} {value!r}; expected one of: {allowed}")


class PolicyDenial(JitGuardError):
    """Request reached a terminal denied state."""

    def __init__(self, message: str, request: Optional[Any] = None, reason: str = ""):
        super().__init__(message, ErrorCategory.POLICY)
        self.request = request
        self.reason = reason

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["reason"] = self.reason
        if self.request is not None:
            data["request_id"] = self.request.id
        return data


class MFAChallengeExpiredError(PolicyDenial):
    """MFA challenge expired before it was verified."""


class MFAAttemptsExhaustedError(PolicyDenial):
    """MFA challenge failed after the maximum number of attempts."""


class ConflictViolation(JitGuardError):
    """Separation-of-duties block."""

    def __init__(self, message: str, decision: Optional[Any] = None):
        super().__init__(message, ErrorCategory.CONFLICT)
        self.decision = decision

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        if self.decision is not None:
            data["operation_id"] = self.decision.operation_id
            data["violations"] = [v.rule_id for v in self.decision.violations]
        return data


class TransientCollaboratorFailure(JitGuardError):
    """Delivery to an external collaborator failed."""

    def __init__(self, message: str, collaborator: str = "unknown"):
        super().__init__(message, ErrorCategory.COLLABORATOR)
        self.collaborator = collaborator


class NotFoundError(JitGuardError):
    def __init__(self, message: str):
        super().__init__(message, ErrorCategory.NOT_FOUND)


class InvalidTransitionError(JitGuardError):
    def __init__(self, message: str):
        super().__init__(message, ErrorCategory.STATE)


class ChallengeNotPendingError(JitGuardError):
    """Verification attempted on a verified, failed or expired challenge."""

    def __init__(self, message: str, status: str = ""):
        super().__init__(message, ErrorCategory.STATE)
        self.status = status


class ApproverNotAuthorizedError(JitGuardError):
    def __init__(self, message: str):
        super().__init__(message, ErrorCategory.PERMISSION)
