"""Shared pytest fixtures for JITGuard tests."""

import sys
from pathlib import Path

# Add the project root to Python path to enable 'jitguard' imports
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

import pytest

from jitguard.services.engine import AuthorizationEngine
from jitguard.services.policy_loader import load_default_policy
from jitguard.utils.clock import ManualClock
from jitguard.utils.settings import EngineSettings
from tests.fakes import IN_WINDOW, RecordingNotifier, RecordingSink


@pytest.fixture
def clock():
    """Manual clock parked inside business hours."""
    return ManualClock(IN_WINDOW)


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture(scope="session")
def default_registry():
    """Registry built from the bundled policy."""
    return load_default_policy()


@pytest.fixture
def settings():
    """Engine settings with instant, single-shot delivery."""
    return EngineSettings(delivery_retries=0, delivery_base_delay=0)


@pytest.fixture
def engine(default_registry, settings, clock, sink, notifier):
    """Fully wired engine with a manual clock and recording collaborators."""
    return AuthorizationEngine(
        registry=default_registry,
        settings=settings,
        clock=clock,
        audit_sink=sink,
        notifier=notifier,
    )
