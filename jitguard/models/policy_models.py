"""
Policy document schemas.

Validates policy files (YAML or JSON) before they are turned into the
immutable role and rule dataclasses held by the registry.
"""

from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from jitguard.models.access_models import (
    EmergencyMFAFailurePolicy,
    MFAMethod,
    PrivilegedRole,
    PrivilegeLevel,
    ResourceAccess,
    RiskLevel,
    TimeWindow,
)
from jitguard.models.duty_models import (
    AllowedExceptions,
    ConflictType,
    DutyCategory,
    DutyRole,
    EnforcementLevel,
    OperationType,
    SeparationLevel,
    SeparationRule,
    TemporalSeparation,
)


def _validate_hhmm(value: str) -> str:
    if not isinstance(value, str) or len(value) != 5 or value[2] != ":":
        raise ValueError("Time must be in HH:MM format")
    try:
        hour, minute = map(int, value.split(":"))
    except ValueError:
        raise ValueError(f"Invalid time format: {value}")
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError(f"Invalid time values: {value}")
    return value


class TimeWindowSchema(BaseModel):
    start: str = Field(..., description="Start time in HH:MM format")
    end: str = Field(..., description="End time in HH:MM format")
    timezone: str = Field(default="UTC", description="Timezone for the window")
    days: List[int] = Field(
        default_factory=lambda: [0, 1, 2, 3, 4, 5, 6],
        description="Days of week (0=Sunday, 6=Saturday)",
    )

    @field_validator("start", "end")
    @classmethod
    def validate_time_format(cls, v):
        return _validate_hhmm(v)

    @field_validator("days")
    @classmethod
    def validate_days(cls, v):
        if not all(0 <= day <= 6 for day in v):
            raise ValueError("Days of week must be between 0-6")
        return v

    def to_model(self) -> TimeWindow:
        return TimeWindow(
            start=self.start, end=self.end, timezone=self.timezone, days=tuple(self.days)
        )


class ResourceAccessSchema(BaseModel):
    databases: List[str] = Field(default_factory=list)
    services: List[str] = Field(default_factory=list)
    networks: List[str] = Field(default_factory=list)
    files: List[str] = Field(default_factory=list)


class PrivilegedRoleSchema(BaseModel):
    id: str
    name: str
    description: str = ""
    privilege_level: PrivilegeLevel
    permissions: List[str] = Field(default_factory=list)
    resource_access: ResourceAccessSchema = Field(default_factory=ResourceAccessSchema)

    requires_approval: bool = False
    approver_roles: List[str] = Field(default_factory=list)
    minimum_approvers: int = Field(default=0, ge=0)

    mfa_required: bool = True
    allowed_mfa_methods: List[MFAMethod] = Field(default_factory=lambda: [MFAMethod.TOTP])
    mfa_validity_minutes: int = Field(default=60, gt=0)

    max_session_duration: int = Field(..., gt=0, description="Minutes")
    allowed_time_windows: List[TimeWindowSchema] = Field(default_factory=list)

    risk_level: RiskLevel = RiskLevel.MEDIUM
    ip_allowlist: Optional[List[str]] = None

    session_recording: bool = False
    keystroke_logging: bool = False
    screen_capture: bool = False

    emergency_access: bool = False
    emergency_approvers: List[str] = Field(default_factory=list)
    emergency_notifications: List[str] = Field(default_factory=list)
    emergency_mfa_failure_policy: EmergencyMFAFailurePolicy = (
        EmergencyMFAFailurePolicy.ESCALATE
    )

    regulations: List[str] = Field(default_factory=list)
    retention_days: int = Field(default=365, ge=0)
    active: bool = True

    def to_model(self) -> PrivilegedRole:
        access = self.resource_access
        return PrivilegedRole(
            id=self.id,
            name=self.name,
            description=self.description,
            privilege_level=self.privilege_level,
            permissions=tuple(self.permissions),
            resource_access=ResourceAccess(
                databases=tuple(access.databases),
                services=tuple(access.services),
                networks=tuple(access.networks),
                files=tuple(access.files),
            ),
            requires_approval=self.requires_approval,
            approver_roles=tuple(self.approver_roles),
            minimum_approvers=self.minimum_approvers,
            mfa_required=self.mfa_required,
            allowed_mfa_methods=tuple(self.allowed_mfa_methods),
            mfa_validity_minutes=self.mfa_validity_minutes,
            max_session_duration=self.max_session_duration,
            allowed_time_windows=tuple(w.to_model() for w in self.allowed_time_windows),
            risk_level=self.risk_level,
            ip_allowlist=tuple(self.ip_allowlist) if self.ip_allowlist is not None else None,
            session_recording=self.session_recording,
            keystroke_logging=self.keystroke_logging,
            screen_capture=self.screen_capture,
            emergency_access=self.emergency_access,
            emergency_approvers=tuple(self.emergency_approvers),
            emergency_notifications=tuple(self.emergency_notifications),
            emergency_mfa_failure_policy=self.emergency_mfa_failure_policy,
            regulations=tuple(self.regulations),
            retention_days=self.retention_days,
            active=self.active,
        )


class DutyRoleSchema(BaseModel):
    id: str
    name: str
    description: str = ""
    category: DutyCategory
    permissions: List[str] = Field(default_factory=list)
    operation_types: List[OperationType] = Field(default_factory=list)
    incompatible_roles: List[str] = Field(default_factory=list)
    required_separation_level: SeparationLevel = SeparationLevel.STRONG
    requires_approval: bool = False
    approver_roles: List[str] = Field(default_factory=list)
    risk_level: RiskLevel = RiskLevel.MEDIUM
    max_operations_per_day: Optional[int] = Field(default=None, gt=0)
    active: bool = True

    def to_model(self) -> DutyRole:
        return DutyRole(
            id=self.id,
            name=self.name,
            description=self.description,
            category=self.category,
            permissions=tuple(self.permissions),
            operation_types=tuple(self.operation_types),
            incompatible_roles=tuple(self.incompatible_roles),
            required_separation_level=self.required_separation_level,
            requires_approval=self.requires_approval,
            approver_roles=tuple(self.approver_roles),
            risk_level=self.risk_level,
            max_operations_per_day=self.max_operations_per_day,
            active=self.active,
        )


class TemporalSeparationSchema(BaseModel):
    enabled: bool = False
    minimum_hours: float = 0
    maximum_days: Optional[int] = None


class AllowedExceptionsSchema(BaseModel):
    emergency_override: bool = False
    senior_approval: bool = False
    business_justification: bool = False
    timeboxed: bool = False


class SeparationRuleSchema(BaseModel):
    id: str
    name: str
    description: str = ""
    primary_duty: DutyCategory
    conflicting_duties: List[DutyCategory] = Field(..., min_length=1)
    conflict_type: ConflictType = ConflictType.DUTY_CONFLICT
    separation_level: SeparationLevel = SeparationLevel.STRONG
    enforcement_level: EnforcementLevel = EnforcementLevel.BLOCKING
    temporal_separation: TemporalSeparationSchema = Field(
        default_factory=TemporalSeparationSchema
    )
    allowed_exceptions: AllowedExceptionsSchema = Field(
        default_factory=AllowedExceptionsSchema
    )
    alert_recipients: List[str] = Field(default_factory=list)
    regulatory_requirements: List[str] = Field(default_factory=list)
    priority: int = 0
    enabled: bool = True

    def to_model(self) -> SeparationRule:
        temporal = self.temporal_separation
        exceptions = self.allowed_exceptions
        return SeparationRule(
            id=self.id,
            name=self.name,
            description=self.description,
            primary_duty=self.primary_duty,
            conflicting_duties=tuple(self.conflicting_duties),
            conflict_type=self.conflict_type,
            separation_level=self.separation_level,
            enforcement_level=self.enforcement_level,
            temporal_separation=TemporalSeparation(
                enabled=temporal.enabled,
                minimum_hours=temporal.minimum_hours,
                maximum_days=temporal.maximum_days,
            ),
            allowed_exceptions=AllowedExceptions(
                emergency_override=exceptions.emergency_override,
                senior_approval=exceptions.senior_approval,
                business_justification=exceptions.business_justification,
                timeboxed=exceptions.timeboxed,
            ),
            alert_recipients=tuple(self.alert_recipients),
            regulatory_requirements=tuple(self.regulatory_requirements),
            priority=self.priority,
            enabled=self.enabled,
        )


class PolicyDocument(BaseModel):
    """Top-level policy file."""

    version: str = "v1"
    privileged_roles: List[PrivilegedRoleSchema] = Field(default_factory=list)
    duty_roles: List[DutyRoleSchema] = Field(default_factory=list)
    separation_rules: List[SeparationRuleSchema] = Field(default_factory=list)
