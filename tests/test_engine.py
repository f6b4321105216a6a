"""Tests for the engine context: sweeps, policy reload and health."""

import asyncio
import logging
from datetime import datetime

import pytest

from jitguard.models.access_models import AccessStatus, SessionStatus
from jitguard.models.event_models import AuditEventType
from jitguard.services.engine import AuthorizationEngine, BackgroundSweeper
from jitguard.services.policy_registry import PolicyRegistry
from jitguard.utils.clock import Clock, ManualClock, SystemClock
from jitguard.utils.errors import ConfigurationError, UnknownRoleError
from jitguard.utils.logging_config import setup_logging
from jitguard.utils.settings import EngineSettings
from tests.fakes import IN_WINDOW, challenge_code


async def activate(engine, principal, role="security-investigator", **kwargs):
    request = await engine.request_access(principal, role, **kwargs)
    await engine.verify_mfa(request.mfa_challenge_id, challenge_code(engine, request.mfa_challenge_id))
    assert request.status == AccessStatus.ACTIVE
    return request


class TestPolicyReload:
    @pytest.mark.asyncio
    async def test_reload_swaps_registry(self, engine, sink, default_registry):
        replacement = PolicyRegistry({}, {}, {}, version="v2")

        registry = await engine.reload_policy(lambda: replacement)
        await engine.dispatcher.flush()

        assert registry is replacement
        assert engine.registry is replacement
        reloaded = sink.of_type(AuditEventType.POLICY_RELOADED)
        assert reloaded[0].details["previous_version"] == default_registry.version
        assert reloaded[0].details["version"] == "v2"
        assert engine.metrics.get("policy_reloads") == 1

    @pytest.mark.asyncio
    async def test_failed_reload_keeps_current_registry(self, engine, default_registry):
        def broken():
            raise ConfigurationError("Policy file not found: /nowhere.yaml")

        with pytest.raises(ConfigurationError):
            await engine.reload_policy(broken)

        assert engine.registry is default_registry
        assert engine.metrics.get("policy_reloads") == 0

    @pytest.mark.asyncio
    async def test_new_requests_use_reloaded_roles(self, engine):
        await engine.reload_policy(lambda: PolicyRegistry({}, {}, {}, version="v2"))

        with pytest.raises(UnknownRoleError, match="security-investigator"):
            await engine.request_access("alice", "security-investigator")


class TestSessions:
    @pytest.mark.asyncio
    async def test_terminate_session_revokes_request(self, engine):
        request = await activate(engine, "alice")

        assert await engine.terminate_session(request.session_id, "security-team", "incident") is True

        assert request.status == AccessStatus.REVOKED
        assert engine.sessions.get_session(request.session_id).status == SessionStatus.TERMINATED

    @pytest.mark.asyncio
    async def test_expiration_tick(self, engine, clock):
        request = await activate(engine, "alice", requested_duration=30)
        clock.advance(minutes=31)

        assert await engine.run_expiration_tick() == 1
        assert engine.sessions.get_session(request.session_id).status == SessionStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_retention_sweep_reaps_closed_entities(self, engine, clock):
        request = await activate(engine, "alice", requested_duration=30)
        await engine.revoke(request.id, "security-team")
        clock.advance(hours=engine.settings.retention_hours + 1)

        reaped = await engine.run_retention_sweep()

        assert reaped["requests"] == 1
        assert reaped["sessions"] == 1
        assert engine.lifecycle.get_request(request.id) is None


class TestHealth:
    @pytest.mark.asyncio
    async def test_fresh_engine_is_healthy(self, engine):
        health = await engine.health_check()

        assert health["status"] == "healthy"
        assert health["running"] is False
        assert health["stats"]["compliance_score"] == 100

    @pytest.mark.asyncio
    async def test_stats_keys(self, engine):
        await activate(engine, "alice")

        stats = engine.get_stats()

        assert stats["active_sessions"] == 1
        assert stats["emergency_sessions_active"] == 0
        assert stats["requests_by_status"]["active"] == 1
        assert stats["policy"] == engine.registry.summary()
        assert set(stats) >= {
            "counters",
            "pending_approvals",
            "average_session_duration",
            "pending_mfa_challenges",
            "active_assignments",
            "recorded_operations",
            "pending_deliveries",
        }

    @pytest.mark.asyncio
    async def test_many_emergency_sessions_are_critical(self, engine):
        for principal in ("alice", "bob", "carol"):
            await activate(engine, principal, role="db-admin", emergency_access=True)

        health = await engine.health_check()

        assert health["stats"]["emergency_sessions_active"] == 3
        assert health["status"] == "critical"

    @pytest.mark.asyncio
    async def test_mfa_failures_warn(self, engine):
        engine.metrics.increment_counter("mfa_failures", 11)
        assert (await engine.health_check())["status"] == "warning"


class TestStartStop:
    @pytest.mark.asyncio
    async def test_start_and_stop_sweepers(self, engine):
        await engine.start()
        await engine.start()

        assert (await engine.health_check())["running"] is True
        assert len(engine._sweepers) == 4

        await engine.stop()
        assert (await engine.health_check())["running"] is False

    @pytest.mark.asyncio
    async def test_async_context_manager(self, engine):
        async with engine as running:
            assert running is engine
            assert all(s.running for s in engine._sweepers)
        assert engine._sweepers == []

    @pytest.mark.asyncio
    async def test_sweeper_survives_job_errors(self):
        calls = 0

        async def flaky_job():
            nonlocal calls
            calls += 1
            raise RuntimeError("boom")

        sweeper = BackgroundSweeper("flaky", 0, flaky_job)
        await sweeper.start()
        while calls < 3:
            await asyncio.sleep(0)
        await sweeper.stop()

        assert sweeper.running is False
        assert calls >= 3


class TestConfiguration:
    def test_from_env(self, monkeypatch, default_registry):
        monkeypatch.setenv("JITGUARD_MFA_MAX_ATTEMPTS", "5")
        monkeypatch.setenv("JITGUARD_IDLE_TIMEOUT_MINUTES", "10")
        monkeypatch.setenv("JITGUARD_DELIVERY_BASE_DELAY", "0.25")
        monkeypatch.delenv("JITGUARD_AUDIT_LOG", raising=False)

        engine = AuthorizationEngine.from_env(registry=default_registry)

        assert engine.settings.mfa_max_attempts == 5
        assert engine.settings.idle_timeout_minutes == 10
        assert engine.dispatcher.base_delay == 0.25
        assert engine.registry is default_registry

    def test_invalid_integer_is_rejected(self, monkeypatch):
        monkeypatch.setenv("JITGUARD_RETENTION_HOURS", "a day")

        with pytest.raises(ValueError, match="JITGUARD_RETENTION_HOURS"):
            EngineSettings.from_env()

    def test_settings_to_dict(self):
        values = EngineSettings(mfa_max_attempts=4).to_dict()
        assert values["mfa_max_attempts"] == 4
        assert values["policy_path"] is None

    def test_setup_logging(self):
        root = logging.getLogger()
        previous_level = root.level
        try:
            setup_logging("debug")
            setup_logging("debug")

            assert root.level == logging.DEBUG
            assert len([h for h in root.handlers if getattr(h, "_jitguard", False)]) == 1
            with pytest.raises(ValueError):
                setup_logging("chatty")
        finally:
            for handler in [h for h in root.handlers if getattr(h, "_jitguard", False)]:
                root.removeHandler(handler)
            root.setLevel(previous_level)


class TestClocks:
    def test_bundled_clocks_satisfy_the_protocol(self):
        assert isinstance(SystemClock(), Clock)
        assert isinstance(ManualClock(), Clock)

    def test_any_object_with_now_is_a_clock(self, default_registry, settings):
        class FrozenClock:
            def now(self):
                return IN_WINDOW

        engine = AuthorizationEngine(
            registry=default_registry, settings=settings, clock=FrozenClock()
        )

        assert isinstance(engine.clock, Clock)
        assert engine.clock.now() == IN_WINDOW

    def test_manual_clock_assumes_utc_for_naive_values(self):
        clock = ManualClock()
        clock.set(datetime(2024, 1, 2, 10, 0))
        assert clock.now() == IN_WINDOW
