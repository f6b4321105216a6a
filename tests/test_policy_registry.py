"""Tests for the role and rule registry."""

from dataclasses import replace

import pytest

from jitguard.models.access_models import PrivilegedRole, PrivilegeLevel, TimeWindow
from jitguard.models.duty_models import (
    AllowedExceptions,
    DutyCategory,
    DutyRole,
    SeparationLevel,
    SeparationRule,
    TemporalSeparation,
)
from jitguard.services.policy_registry import PolicyRegistry, RegistryHandle
from jitguard.utils.errors import ConfigurationError


def make_role(**overrides):
    values = dict(
        id="ops",
        name="Operations",
        privilege_level=PrivilegeLevel.ELEVATED,
        max_session_duration=60,
    )
    values.update(overrides)
    return PrivilegedRole(**values)


class TestRegistryValidation:
    """build() rejects inconsistent policy graphs."""

    def setup_method(self):
        self.duties = [
            DutyRole(id="deployer", name="Deployer", category=DutyCategory.DEPLOYMENT),
            DutyRole(id="payer", name="Payer", category=DutyCategory.PAYMENT_PROCESSING),
        ]
        self.rule = SeparationRule(
            id="deploy-pay",
            name="Deploy/Pay",
            primary_duty=DutyCategory.DEPLOYMENT,
            conflicting_duties=(DutyCategory.PAYMENT_PROCESSING,),
        )

    def build(self, roles=(), duties=None, rules=None):
        return PolicyRegistry.build(
            privileged_roles=list(roles),
            duty_roles=self.duties if duties is None else duties,
            separation_rules=[self.rule] if rules is None else rules,
        )

    def test_valid_policy(self):
        registry = self.build(roles=[make_role()])

        assert registry.get_privileged_role("ops").name == "Operations"
        assert registry.summary() == {
            "privileged_roles": 1,
            "duty_roles": 2,
            "separation_rules": 1,
            "absolute_rules": 0,
        }

    def test_duplicate_ids(self):
        with pytest.raises(ConfigurationError, match="Duplicate"):
            self.build(roles=[make_role(), make_role()])

    def test_unknown_incompatible_role(self):
        duties = [replace(self.duties[0], incompatible_roles=("ghost",)), self.duties[1]]
        with pytest.raises(ConfigurationError, match="ghost"):
            self.build(duties=duties)

    def test_rule_on_unserved_category(self):
        rule = replace(self.rule, conflicting_duties=(DutyCategory.KEY_MANAGEMENT,))
        with pytest.raises(ConfigurationError, match="key_management"):
            self.build(rules=[rule])

    def test_absolute_rule_cannot_declare_exceptions(self):
        rule = replace(
            self.rule,
            separation_level=SeparationLevel.ABSOLUTE,
            allowed_exceptions=AllowedExceptions(emergency_override=True),
        )
        with pytest.raises(ConfigurationError, match="absolute"):
            self.build(rules=[rule])

    def test_temporal_hours_must_be_positive(self):
        rule = replace(self.rule, temporal_separation=TemporalSeparation(enabled=True))
        with pytest.raises(ConfigurationError):
            self.build(rules=[rule])

    def test_approval_without_approvers(self):
        with pytest.raises(ConfigurationError, match="approver"):
            self.build(roles=[make_role(requires_approval=True, minimum_approvers=1)])

    def test_minimum_approvers_above_slots(self):
        role = make_role(requires_approval=True, approver_roles=("cto",), minimum_approvers=2)
        with pytest.raises(ConfigurationError, match="exceeds"):
            self.build(roles=[role])

    def test_emergency_role_needs_someone_to_notify(self):
        with pytest.raises(ConfigurationError, match="notify"):
            self.build(roles=[make_role(emergency_access=True)])

    def test_bad_window_timezone(self):
        window = TimeWindow(start="08:00", end="18:00", timezone="Mars/Olympus")
        with pytest.raises(ConfigurationError, match="timezone"):
            self.build(roles=[make_role(allowed_time_windows=(window,))])

    def test_bad_window_time(self):
        window = TimeWindow(start="8am", end="18:00")
        with pytest.raises(ConfigurationError, match="malformed"):
            self.build(roles=[make_role(allowed_time_windows=(window,))])


class TestRegistryLookups:
    def test_rules_are_ordered_by_priority(self, default_registry):
        priorities = [r.priority for r in default_registry.separation_rules()]
        assert priorities == sorted(priorities, reverse=True)

    def test_rules_for_category(self, default_registry):
        ids = {r.id for r in default_registry.rules_for_category(DutyCategory.KEY_MANAGEMENT)}
        assert ids == {"payment-key-separation", "key-deployment-separation", "audit-independence"}

    def test_duty_roles_for_category(self, default_registry):
        roles = default_registry.duty_roles_for_category(DutyCategory.DEPLOYMENT)
        assert [r.id for r in roles] == ["deployment-engineer"]
        assert default_registry.duty_roles_for_category(DutyCategory.USER_MANAGEMENT) == ()

    def test_longest_temporal_separation(self, default_registry):
        assert default_registry.longest_temporal_separation_hours() == 168

    def test_bundled_policy_values(self, default_registry):
        db_admin = default_registry.get_privileged_role("db-admin")
        assert db_admin.max_session_duration == 240
        assert db_admin.requires_approval is True
        assert db_admin.session_recording is True
        assert default_registry.summary()["absolute_rules"] == 2

    def test_handle_swaps_registry(self, default_registry):
        handle = RegistryHandle(default_registry)
        empty = PolicyRegistry({}, {}, {}, version="v2")

        previous = handle.swap(empty)

        assert previous is default_registry
        assert handle.current is empty
        assert handle.current.get_privileged_role("db-admin") is None

    def test_handle_reload_keeps_registry_on_failure(self, default_registry):
        handle = RegistryHandle(default_registry)

        def broken():
            raise ConfigurationError("bad policy")

        with pytest.raises(ConfigurationError):
            handle.reload(broken)

        assert handle.current is default_registry
