"""Utilities package for JITGuard."""

from .errors import (
    ErrorCategory,
    JitGuardError,
    ConfigurationError,
    ValidationError,
    UnknownRoleError,
    coerce_enum,
    PolicyDenial,
    MFAChallengeExpiredError,
    MFAAttemptsExhaustedError,
    ConflictViolation,
    TransientCollaboratorFailure,
    NotFoundError,
    InvalidTransitionError,
    ChallengeNotPendingError,
    ApproverNotAuthorizedError,
)
from .clock import Clock, SystemClock, ManualClock
from .logging_config import MetricsCollector, setup_logging, get_logger
from .retry import retry_with_backoff
from .settings import EngineSettings
from .ttl_index import TTLIndex
