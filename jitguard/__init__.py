"""JITGuard: just-in-time privileged access and separation-of-duties enforcement."""

__version__ = "0.1.0"

from jitguard.services.engine import AuthorizationEngine
from jitguard.services.policy_loader import PolicyConfigLoader, load_default_policy
from jitguard.utils.clock import ManualClock, SystemClock
from jitguard.utils.settings import EngineSettings

__all__ = [
    "AuthorizationEngine",
    "EngineSettings",
    "ManualClock",
    "PolicyConfigLoader",
    "SystemClock",
    "load_default_policy",
]
