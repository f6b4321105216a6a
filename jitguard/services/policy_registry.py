"""
Role & Rule Registry.

Immutable catalogue of privileged roles, duty roles and separation rules.
Built once from a policy source and validated as a whole; any dangling
reference or contradictory rule is a ConfigurationError at build time.
"""

import logging
from types import MappingProxyType
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple

import pytz

from jitguard.models.access_models import PrivilegedRole, TimeWindow
from jitguard.models.duty_models import (
    DutyCategory,
    DutyRole,
    SeparationLevel,
    SeparationRule,
)
from jitguard.utils.errors import ConfigurationError

logger = logging.getLogger(__name__)


def _index_by_id(kind: str, items: Iterable) -> Dict[str, object]:
    index: Dict[str, object] = {}
    for item in items:
        if not item.id:
            raise ConfigurationError(f"{kind} with empty id")
        if item.id in index:
            raise ConfigurationError(f"Duplicate {kind} id: {item.id}")
        index[item.id] = item
    return index


def _validate_window(role_id: str, window: TimeWindow) -> None:
    for value in (window.start, window.end):
        parts = value.split(":") if isinstance(value, str) else []
        if len(parts) != 2 or not all(p.isdigit() for p in parts):
            raise ConfigurationError(f"Role {role_id}: malformed window time {value!r}")
        hour, minute = int(parts[0]), int(parts[1])
        if not (0 <= hour <= 23 and 0 <= minute <= 59):
            raise ConfigurationError(f"Role {role_id}: window time out of range {value!r}")
    if not window.days or any(d < 0 or d > 6 for d in window.days):
        raise ConfigurationError(f"Role {role_id}: window days must be within 0-6")
    try:
        pytz.timezone(window.timezone)
    except pytz.UnknownTimeZoneError:
        raise ConfigurationError(f"Role {role_id}: unknown timezone {window.timezone!r}")


class PolicyRegistry:
    """Read-only lookup over the loaded policy."""

    def __init__(
        self,
        privileged_roles: Mapping[str, PrivilegedRole],
        duty_roles: Mapping[str, DutyRole],
        separation_rules: Mapping[str, SeparationRule],
        version: str = "v1",
    ):
        self._privileged_roles = MappingProxyType(dict(privileged_roles))
        self._duty_roles = MappingProxyType(dict(duty_roles))
        self._separation_rules = MappingProxyType(dict(separation_rules))
        self.version = version

        by_category: Dict[DutyCategory, List[DutyRole]] = {}
        for role in self._duty_roles.values():
            by_category.setdefault(role.category, []).append(role)
        self._duty_roles_by_category = MappingProxyType(
            {k: tuple(v) for k, v in by_category.items()}
        )

        ordered = sorted(self._separation_rules.values(), key=lambda r: (-r.priority, r.id))
        self._ordered_rules: Tuple[SeparationRule, ...] = tuple(ordered)

    @classmethod
    def build(
        cls,
        privileged_roles: Iterable[PrivilegedRole],
        duty_roles: Iterable[DutyRole],
        separation_rules: Iterable[SeparationRule],
        version: str = "v1",
    ) -> "PolicyRegistry":
        """Validate the policy graph and return a registry.

        Raises:
            ConfigurationError: If any definition is inconsistent
        """
        roles = _index_by_id("privileged role", privileged_roles)
        duties = _index_by_id("duty role", duty_roles)
        rules = _index_by_id("separation rule", separation_rules)

        for role in roles.values():
            cls._validate_privileged_role(role)

        served_categories = {d.category for d in duties.values()}
        for duty in duties.values():
            for other in duty.incompatible_roles:
                if other not in duties:
                    raise ConfigurationError(
                        f"Duty role {duty.id} lists unknown incompatible role {other}"
                    )
                if other == duty.id:
                    raise ConfigurationError(
                        f"Duty role {duty.id} cannot be incompatible with itself"
                    )

        for rule in rules.values():
            cls._validate_rule(rule, served_categories)

        registry = cls(roles, duties, rules, version=version)
        logger.info(
            f"Policy registry built: {len(roles)} privileged roles, "
            f"{len(duties)} duty roles, {len(rules)} separation rules"
        )
        return registry

    @staticmethod
    def _validate_privileged_role(role: PrivilegedRole) -> None:
        if role.max_session_duration <= 0:
            raise ConfigurationError(f"Role {role.id}: max_session_duration must be positive")
        if role.requires_approval:
            if not role.approver_roles:
                raise ConfigurationError(f"Role {role.id} requires approval but has no approver roles")
            if role.minimum_approvers < 1:
                raise ConfigurationError(f"Role {role.id} requires approval but minimum_approvers < 1")
            if role.minimum_approvers > len(role.approver_roles):
                raise ConfigurationError(
                    f"Role {role.id}: minimum_approvers {role.minimum_approvers} exceeds "
                    f"{len(role.approver_roles)} approver roles"
                )
        if len(set(role.approver_roles)) != len(role.approver_roles):
            raise ConfigurationError(f"Role {role.id}: duplicate approver roles")
        if role.mfa_required and not role.allowed_mfa_methods:
            raise ConfigurationError(f"Role {role.id} requires MFA but allows no methods")
        if role.mfa_validity_minutes <= 0:
            raise ConfigurationError(f"Role {role.id}: mfa_validity_minutes must be positive")
        if role.emergency_access and not (role.emergency_approvers or role.emergency_notifications):
            raise ConfigurationError(
                f"Role {role.id} allows emergency access but names nobody to notify"
            )
        for window in role.allowed_time_windows:
            _validate_window(role.id, window)

    @staticmethod
    def _validate_rule(rule: SeparationRule, served_categories) -> None:
        if rule.primary_duty in rule.conflicting_duties:
            raise ConfigurationError(f"Rule {rule.id} conflicts its primary duty with itself")
        for category in (rule.primary_duty,) + tuple(rule.conflicting_duties):
            if category not in served_categories:
                raise ConfigurationError(
                    f"Rule {rule.id} references duty category {category.value} "
                    f"that no duty role serves"
                )
        if rule.separation_level == SeparationLevel.ABSOLUTE and rule.allowed_exceptions.any():
            raise ConfigurationError(f"Rule {rule.id} is absolute and cannot declare exceptions")
        temporal = rule.temporal_separation
        if temporal.enabled and temporal.minimum_hours <= 0:
            raise ConfigurationError(f"Rule {rule.id}: temporal minimum_hours must be positive")

    # Lookups

    def get_privileged_role(self, role_id: str) -> Optional[PrivilegedRole]:
        return self._privileged_roles.get(role_id)

    def get_duty_role(self, role_id: str) -> Optional[DutyRole]:
        return self._duty_roles.get(role_id)

    def get_separation_rule(self, rule_id: str) -> Optional[SeparationRule]:
        return self._separation_rules.get(rule_id)

    def privileged_roles(self) -> Tuple[PrivilegedRole, ...]:
        return tuple(self._privileged_roles.values())

    def duty_roles(self) -> Tuple[DutyRole, ...]:
        return tuple(self._duty_roles.values())

    def duty_roles_for_category(self, category: DutyCategory) -> Tuple[DutyRole, ...]:
        return self._duty_roles_by_category.get(category, ())

    def separation_rules(self) -> Tuple[SeparationRule, ...]:
        return self._ordered_rules

    def enabled_rules(self) -> Tuple[SeparationRule, ...]:
        return tuple(r for r in self._ordered_rules if r.enabled)

    def rules_for_category(self, category: DutyCategory) -> Tuple[SeparationRule, ...]:
        """Enabled rules whose primary or conflicting set includes category."""
        return tuple(r for r in self._ordered_rules if r.enabled and r.mentions(category))

    def longest_temporal_separation_hours(self) -> float:
        hours = [
            r.temporal_separation.minimum_hours
            for r in self._ordered_rules
            if r.temporal_separation.enabled
        ]
        return max(hours) if hours else 0.0

    def summary(self) -> Dict[str, int]:
        return {
            "privileged_roles": len(self._privileged_roles),
            "duty_roles": len(self._duty_roles),
            "separation_rules": len(self._separation_rules),
            "absolute_rules": sum(
                1 for r in self._ordered_rules if r.separation_level == SeparationLevel.ABSOLUTE
            ),
        }


class RegistryHandle:
    """Holds the current registry; reload swaps it in one assignment."""

    def __init__(self, registry: PolicyRegistry):
        self._registry = registry

    @property
    def current(self) -> PolicyRegistry:
        return self._registry

    def swap(self, registry: PolicyRegistry) -> PolicyRegistry:
        previous = self._registry
        self._registry = registry
        return previous

    def reload(self, source: Callable[[], PolicyRegistry]) -> PolicyRegistry:
        """Build a registry from source, then swap it in. Returns the previous one.

        If source raises, the current registry is left in place.
        """
        registry = source()
        return self.swap(registry)
