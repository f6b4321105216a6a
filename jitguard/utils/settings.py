"""
Runtime settings for the authorization engine.

Values come from JITGUARD_* environment variables with the defaults below.
"""

import os
from dataclasses import dataclass, fields
from typing import Any, Dict, Optional


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


@dataclass
class EngineSettings:
    """Tunables for request handling and background sweeps."""

    policy_path: Optional[str] = None
    audit_log_path: Optional[str] = None

    mfa_max_attempts: int = 3
    time_window_penalty: int = 20
    recent_failure_window_minutes: int = 60
    approval_timeout_minutes: int = 24 * 60

    idle_timeout_minutes: int = 30
    expiration_tick_seconds: float = 1.0
    idle_sweep_seconds: float = 30.0
    assignment_sweep_seconds: float = 60.0
    retention_sweep_seconds: float = 300.0

    retention_hours: int = 24
    operation_retention_hours: int = 7 * 24

    delivery_retries: int = 2
    delivery_base_delay: float = 0.5

    @classmethod
    def from_env(cls) -> "EngineSettings":
        """Build settings from the environment."""
        defaults = cls()
        return cls(
            policy_path=os.getenv("JITGUARD_POLICY_CONFIG") or None,
            audit_log_path=os.getenv("JITGUARD_AUDIT_LOG") or None,
            mfa_max_attempts=_env_int("JITGUARD_MFA_MAX_ATTEMPTS", defaults.mfa_max_attempts),
            time_window_penalty=_env_int(
                "JITGUARD_TIME_WINDOW_PENALTY", defaults.time_window_penalty
            ),
            recent_failure_window_minutes=_env_int(
                "JITGUARD_FAILURE_WINDOW_MINUTES", defaults.recent_failure_window_minutes
            ),
            approval_timeout_minutes=_env_int(
                "JITGUARD_APPROVAL_TIMEOUT_MINUTES", defaults.approval_timeout_minutes
            ),
            idle_timeout_minutes=_env_int(
                "JITGUARD_IDLE_TIMEOUT_MINUTES", defaults.idle_timeout_minutes
            ),
            expiration_tick_seconds=_env_float(
                "JITGUARD_EXPIRATION_TICK_SECONDS", defaults.expiration_tick_seconds
            ),
            idle_sweep_seconds=_env_float(
                "JITGUARD_IDLE_SWEEP_SECONDS", defaults.idle_sweep_seconds
            ),
            assignment_sweep_seconds=_env_float(
                "JITGUARD_ASSIGNMENT_SWEEP_SECONDS", defaults.assignment_sweep_seconds
            ),
            retention_sweep_seconds=_env_float(
                "JITGUARD_RETENTION_SWEEP_SECONDS", defaults.retention_sweep_seconds
            ),
            retention_hours=_env_int("JITGUARD_RETENTION_HOURS", defaults.retention_hours),
            operation_retention_hours=_env_int(
                "JITGUARD_OPERATION_RETENTION_HOURS", defaults.operation_retention_hours
            ),
            delivery_retries=_env_int("JITGUARD_DELIVERY_RETRIES", defaults.delivery_retries),
            delivery_base_delay=_env_float(
                "JITGUARD_DELIVERY_BASE_DELAY", defaults.delivery_base_delay
            ),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}
