"""Tests for separation-of-duties checks."""

from datetime import timedelta

import pytest

from jitguard.models.access_models import RiskLevel
from jitguard.models.duty_models import (
    AllowedExceptions,
    ConflictType,
    DutyCategory,
    DutyRole,
    EnforcementLevel,
    OperationStatus,
    RecommendedAction,
    SeparationLevel,
    SeparationRule,
)
from jitguard.models.event_models import AuditEventType
from jitguard.services.duty_conflict_detector import operation_risk_score
from jitguard.services.engine import AuthorizationEngine
from jitguard.services.policy_registry import PolicyRegistry
from jitguard.utils.clock import ManualClock
from jitguard.utils.errors import (
    ApproverNotAuthorizedError,
    ConflictViolation,
    InvalidTransitionError,
    ValidationError,
)
from tests.fakes import IN_WINDOW, RecordingSink


def violation_signature(decision):
    return [(v.rule_id, v.violation_type, v.severity) for v in decision.violations]


class TestRoleConflicts:
    """Assignments on the opposite side of a rule."""

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_absolute_conflict_blocks_without_override(self, engine, sink, notifier):
        await engine.assign_duty("alice", "payment-processor", "admin")

        decision = await engine.check_operation(
            "alice",
            DutyCategory.KEY_MANAGEMENT,
            "update",
            "vault/payments-master",
            "rotate",
            emergency_override=True,
            business_justification="card network outage",
        )

        assert decision.allowed is False
        assert decision.overridden is False
        assert decision.status == OperationStatus.BLOCKED
        assert decision.requires_approval is False
        assert len(decision.violations) == 1
        violation = decision.violations[0]
        assert violation.rule_id == "payment-key-separation"
        assert violation.severity == RiskLevel.CRITICAL
        assert violation.violation_type == ConflictType.ROLE_CONFLICT
        assert violation.recommended_action == RecommendedAction.BLOCK
        assert violation.can_override is False

        operation = engine.detector.get_operation(decision.operation_id)
        assert operation.status == OperationStatus.BLOCKED
        assert operation.override_reason is None
        assert engine.metrics.get("operations_blocked") == 1

        await engine.dispatcher.flush()
        violations = sink.of_type(AuditEventType.SEPARATION_VIOLATION)
        assert len(violations) == 1
        assert violations[0].severity.value == "CRITICAL"
        assert sink.of_type(AuditEventType.SEPARATION_OVERRIDE) == []
        alerts = notifier.by_template(AuditEventType.SEPARATION_VIOLATION.value)
        assert alerts[0].recipients == ["security@company.com", "ciso@company.com"]

    @pytest.mark.asyncio
    async def test_enforce_raises_but_still_records(self, engine):
        await engine.assign_duty("alice", "payment-processor", "admin")

        with pytest.raises(ConflictViolation) as exc_info:
            await engine.enforce_operation(
                "alice", "deployment", "execute", "payments-api", "deploy"
            )

        decision = exc_info.value.decision
        assert decision.allowed is False
        assert engine.detector.get_operation(decision.operation_id) is not None
        assert exc_info.value.to_dict()["violations"] == ["deployment-payment-separation"]

    @pytest.mark.asyncio
    async def test_strong_conflict_requires_approval(self, engine):
        await engine.assign_duty("erin", "security-auditor", "admin")

        decision = await engine.check_operation(
            "erin", "deployment", "execute", "billing-api", "deploy"
        )

        assert decision.allowed is True
        assert decision.status == OperationStatus.PENDING_APPROVAL
        assert decision.requires_approval is True
        assert violation_signature(decision) == [
            ("audit-independence", ConflictType.ROLE_CONFLICT, RiskLevel.HIGH)
        ]
        assert decision.violations[0].can_override is True
        assert "emergency_override" in decision.violations[0].override_requirements
        # duty role approvers first, then the rule's alert recipients
        assert decision.approver_roles == (
            "deployment-manager",
            "release-manager",
            "audit@company.com",
            "compliance@company.com",
        )
        # deployment 30 + high 20 + proceeding with a violation 25
        assert decision.risk_score == 75
        assert engine.detector.get_operation(decision.operation_id).proceeded_with_violation

    @pytest.mark.asyncio
    async def test_clean_operation(self, engine, sink):
        decision = await engine.check_operation(
            "frank", "audit_management", "review", "q1-report", "review"
        )

        assert decision.allowed is True
        assert decision.violations == ()
        assert decision.status == OperationStatus.EXECUTED
        assert decision.requires_approval is False
        assert decision.risk_score == 15

        await engine.dispatcher.flush()
        assert len(sink.of_type(AuditEventType.SEPARATION_CHECK)) == 1
        assert sink.of_type(AuditEventType.SEPARATION_VIOLATION) == []

    @pytest.mark.asyncio
    async def test_expired_assignment_no_longer_conflicts(self, engine, clock):
        await engine.assign_duty(
            "alice", "payment-processor", "admin", expires_at=clock.now() + timedelta(hours=1)
        )
        clock.advance(hours=2)

        decision = await engine.check_operation(
            "alice", "key_management", "update", "vault/key", "rotate"
        )

        assert decision.allowed is True
        assert decision.violations == ()


class TestTemporalSeparation:
    """deployment-payment-separation declares a 24h gap."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("hours,flagged", [(23, True), (25, False)])
    async def test_gap_boundary(self, engine, clock, hours, flagged):
        first = await engine.check_operation(
            "bob", "deployment", "execute", "payments-api", "deploy"
        )
        assert first.violations == ()
        clock.advance(hours=hours)

        decision = await engine.check_operation(
            "bob", "payment_processing", "execute", "batch-42", "settle"
        )

        temporal = [v for v in decision.violations if v.violation_type == ConflictType.TEMPORAL_CONFLICT]
        if flagged:
            assert [v.rule_id for v in temporal] == ["deployment-payment-separation"]
            assert temporal[0].severity == RiskLevel.MEDIUM
            assert temporal[0].conflicting_operations == ("deployment:execute:payments-api",)
        else:
            assert temporal == []

    @pytest.mark.asyncio
    async def test_blocked_operations_do_not_count(self, engine, clock):
        assignment = await engine.assign_duty("carol", "payment-processor", "admin")
        blocked = await engine.check_operation(
            "carol", "deployment", "execute", "payments-api", "deploy"
        )
        assert blocked.status == OperationStatus.BLOCKED
        await engine.assignments.revoke(assignment.id, "admin", "role change")

        clock.advance(hours=1)
        decision = await engine.check_operation(
            "carol", "payment_processing", "execute", "batch-7", "settle"
        )

        assert decision.violations == ()

    @pytest.mark.asyncio
    async def test_operations_requiring_approval_count(self, engine, clock):
        pending = await engine.check_operation(
            "dan", "system_administration", "update", "web-01", "patch"
        )
        assert pending.status == OperationStatus.PENDING_APPROVAL
        clock.advance(hours=3)

        decision = await engine.check_operation(
            "dan", "deployment", "execute", "web", "deploy"
        )

        assert [v.rule_id for v in decision.violations] == ["deployment-system-temporal"]

    @pytest.mark.asyncio
    async def test_other_principals_are_independent(self, engine):
        await engine.check_operation("bob", "deployment", "execute", "payments-api", "deploy")

        decision = await engine.check_operation(
            "zoe", "payment_processing", "execute", "batch-1", "settle"
        )

        assert decision.violations == ()


class TestDeterminism:
    SEQUENCE = [
        ("deployment", "execute", "api", "deploy", 0),
        ("system_administration", "update", "web-01", "patch", 2),
        ("payment_processing", "execute", "batch", "settle", 1),
        ("key_management", "update", "vault", "rotate", 5),
        ("deployment", "execute", "api", "deploy", 30),
    ]

    async def _replay(self, default_registry, settings):
        clock = ManualClock(IN_WINDOW)
        engine = AuthorizationEngine(
            registry=default_registry, settings=settings, clock=clock, audit_sink=RecordingSink()
        )
        await engine.assign_duty("pat", "security-auditor", "admin")
        signatures = []
        for category, op_type, resource, action, hours in self.SEQUENCE:
            clock.advance(hours=hours)
            decision = await engine.check_operation("pat", category, op_type, resource, action)
            signatures.append((violation_signature(decision), decision.status, decision.risk_score))
        await engine.dispatcher.flush()
        return signatures

    @pytest.mark.asyncio
    async def test_replay_yields_same_violations(self, default_registry, settings):
        first = await self._replay(default_registry, settings)
        second = await self._replay(default_registry, settings)

        assert first == second
        assert any(sig for sig, _, _ in first)


class TestRiskAndCompliance:
    def test_operation_risk_is_clamped(self):
        assert operation_risk_score(DutyCategory.USER_MANAGEMENT, (), False) == 15
        assert operation_risk_score(DutyCategory.PAYMENT_PROCESSING, (), True) == 65

    @pytest.mark.asyncio
    async def test_compliance_score_tracks_violations(self, engine):
        assert engine.detector.compliance_score() == 100.0
        await engine.assign_duty("alice", "payment-processor", "admin")

        await engine.check_operation("alice", "key_management", "update", "vault", "rotate")
        await engine.check_operation("bob", "audit_management", "review", "r", "review")

        assert engine.detector.compliance_score() == 50.0

    @pytest.mark.asyncio
    async def test_reap_respects_longest_temporal_rule(self, engine, clock):
        await engine.check_operation("bob", "deployment", "execute", "api", "deploy")
        # audit-independence keeps 168h of history, same as the default retention
        clock.advance(hours=167)
        assert engine.detector.reap() == 0
        clock.advance(hours=2)
        assert engine.detector.reap() == 1
        assert engine.detector.operations_for("bob") == []

    @pytest.mark.asyncio
    async def test_reap_forgets_idle_principal_locks(self, engine, clock):
        await engine.check_operation("bob", "deployment", "execute", "api", "deploy")
        assert "bob" in engine.detector._principal_locks

        clock.advance(hours=169)
        engine.detector.reap()

        assert "bob" not in engine.detector._principal_locks


class TestInputValidation:
    @pytest.mark.asyncio
    async def test_unknown_duty_category(self, engine):
        with pytest.raises(ValidationError, match="duty_category"):
            await engine.check_operation("bob", "astrology", "execute", "api", "deploy")
        assert engine.detector.operation_count() == 0

    @pytest.mark.asyncio
    async def test_unknown_operation_type(self, engine):
        with pytest.raises(ValidationError, match="operation_type"):
            await engine.check_operation("bob", "deployment", "yolo", "api", "deploy")


class TestOperationApproval:
    @pytest.mark.asyncio
    async def test_sign_off_marks_operation_approved(self, engine, sink):
        decision = await engine.check_operation(
            "dan", "system_administration", "update", "web-01", "patch"
        )
        assert decision.status == OperationStatus.PENDING_APPROVAL

        approved = await engine.approve_operation(decision.operation_id, "lead", "change ticket 42")

        assert approved.status == OperationStatus.APPROVED
        assert engine.detector.get_operation(decision.operation_id).status == OperationStatus.APPROVED
        assert engine.detector.operations_for("dan")[0].status == OperationStatus.APPROVED
        await engine.dispatcher.flush()
        assert any(
            e.details.get("approved_by") == "lead"
            for e in sink.of_type(AuditEventType.SEPARATION_CHECK)
        )

    @pytest.mark.asyncio
    async def test_principal_cannot_approve_own_operation(self, engine):
        decision = await engine.check_operation(
            "dan", "system_administration", "update", "web-01", "patch"
        )

        with pytest.raises(ApproverNotAuthorizedError):
            await engine.approve_operation(decision.operation_id, "dan")

    @pytest.mark.asyncio
    async def test_only_pending_operations_can_be_approved(self, engine):
        decision = await engine.check_operation("bob", "user_management", "create", "u-1", "invite")
        assert decision.status == OperationStatus.EXECUTED

        with pytest.raises(InvalidTransitionError):
            await engine.approve_operation(decision.operation_id, "lead")


class TestEmergencyOverride:
    """Critical conflicts on rules that declare an emergency exception.

    PolicyRegistry.build refuses such rules, so the registry is assembled
    directly.
    """

    def _registry(self):
        rule = SeparationRule(
            id="deploy-pay",
            name="Deploy/Pay",
            primary_duty=DutyCategory.DEPLOYMENT,
            conflicting_duties=(DutyCategory.PAYMENT_PROCESSING,),
            separation_level=SeparationLevel.ABSOLUTE,
            enforcement_level=EnforcementLevel.FATAL,
            allowed_exceptions=AllowedExceptions(emergency_override=True),
            alert_recipients=("security@company.com",),
        )
        return PolicyRegistry(
            {},
            {
                "deployer": DutyRole(id="deployer", name="Deployer", category=DutyCategory.DEPLOYMENT),
                "payer": DutyRole(id="payer", name="Payer", category=DutyCategory.PAYMENT_PROCESSING),
            },
            {"deploy-pay": rule},
            version="override-test",
        )

    @pytest.mark.asyncio
    async def test_accepted_override_is_audited_as_critical(self, settings, clock, sink, notifier):
        engine = AuthorizationEngine(
            registry=self._registry(),
            settings=settings,
            clock=clock,
            audit_sink=sink,
            notifier=notifier,
        )
        await engine.assign_duty("alice", "payer", "admin")

        decision = await engine.check_operation(
            "alice",
            "deployment",
            "execute",
            "payments-api",
            "hotfix",
            emergency_override=True,
            business_justification="payments outage",
        )

        assert decision.allowed is True
        assert decision.overridden is True
        assert decision.status == OperationStatus.EXECUTED
        assert violation_signature(decision) == [
            ("deploy-pay", ConflictType.ROLE_CONFLICT, RiskLevel.CRITICAL)
        ]
        operation = engine.detector.get_operation(decision.operation_id)
        assert operation.override_reason == "payments outage"
        assert operation.proceeded_with_violation is True
        assert engine.metrics.get("operations_overridden") == 1

        await engine.dispatcher.flush()
        overrides = sink.of_type(AuditEventType.SEPARATION_OVERRIDE)
        assert len(overrides) == 1
        assert overrides[0].severity.value == "CRITICAL"
        assert sink.of_type(AuditEventType.SEPARATION_VIOLATION) == []
        assert notifier.by_template(AuditEventType.SEPARATION_OVERRIDE.value)[0].recipients == [
            "security@company.com"
        ]
        assert (await engine.health_check())["status"] == "critical"

    @pytest.mark.asyncio
    async def test_without_override_flag_the_operation_is_blocked(self, settings, clock):
        engine = AuthorizationEngine(
            registry=self._registry(), settings=settings, clock=clock, audit_sink=RecordingSink()
        )
        await engine.assign_duty("alice", "payer", "admin")

        decision = await engine.check_operation(
            "alice", "deployment", "execute", "payments-api", "hotfix"
        )

        assert decision.allowed is False
        assert decision.overridden is False
        assert decision.status == OperationStatus.BLOCKED
