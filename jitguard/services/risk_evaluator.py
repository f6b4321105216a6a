"""
Risk & Time-Window Evaluator.

Scores an access request from its role, urgency, type, timing, origin and the
principal's recent failures. Pure: the same request, role, time and failure
count always produce the same score and factor list.
"""

import ipaddress
import logging
from collections import defaultdict, deque
from datetime import datetime, time, timedelta
from typing import Deque, Dict, List, Optional, Sequence

import pytz

from jitguard.models.access_models import (
    AccessRequest,
    AccessRequestType,
    PrivilegedRole,
    PrivilegeLevel,
    RiskAssessment,
    RiskLevel,
    TimeWindow,
    Urgency,
)


logger = logging.getLogger(__name__)

PRIVILEGE_POINTS = {
    PrivilegeLevel.EMERGENCY: (50, "emergency_privilege_level"),
    PrivilegeLevel.SUPER_ADMIN: (40, "super_admin_privilege_level"),
    PrivilegeLevel.PRIVILEGED: (30, "privileged_level"),
    PrivilegeLevel.ELEVATED: (20, "elevated_level"),
    PrivilegeLevel.STANDARD: (10, None),
}

URGENCY_POINTS = {
    Urgency.EMERGENCY: (30, "emergency_urgency"),
    Urgency.HIGH: (20, "high_urgency"),
    Urgency.MEDIUM: (10, None),
    Urgency.LOW: (0, None),
}

EMERGENCY_TYPE_POINTS = 25
IP_NOT_ALLOWLISTED_POINTS = 15
LONG_SESSION_POINTS = 10
RECENT_FAILURE_POINTS = 20
RECENT_FAILURE_THRESHOLD = 2


def _parse_hhmm(value: str) -> time:
    hour, minute = value.split(":")
    return time(int(hour), int(minute))


def _in_window(window: TimeWindow, now: datetime) -> bool:
    local = now.astimezone(pytz.timezone(window.timezone))
    # isoweekday: Monday=1 .. Sunday=7; windows use Sunday=0
    weekday = local.isoweekday() % 7
    current = local.time().replace(second=0, microsecond=0)
    start = _parse_hhmm(window.start)
    end = _parse_hhmm(window.end)

    if start <= end:
        return weekday in window.days and start <= current <= end

    # Wraps midnight: the early-morning part belongs to the previous day's window
    if current >= start:
        return weekday in window.days
    if current <= end:
        return (weekday - 1) % 7 in window.days
    return False


def is_within_time_windows(windows: Sequence[TimeWindow], now: datetime) -> bool:
    """True when now falls in any window. No windows means no restriction."""
    if not windows:
        return True
    return any(_in_window(w, now) for w in windows)


def is_ip_allowlisted(source_ip: Optional[str], allowlist: Optional[Sequence[str]]) -> bool:
    """Check an address against a list of addresses or CIDR networks.

    A role without an allowlist accepts every source; a role with one rejects
    requests whose source is missing or unparsable.
    """
    if allowlist is None:
        return True
    if not source_ip:
        return False
    try:
        address = ipaddress.ip_address(source_ip)
    except ValueError:
        logger.warning(f"Unparsable source IP {source_ip!r}")
        return False
    for entry in allowlist:
        try:
            if address in ipaddress.ip_network(entry, strict=False):
                return True
        except ValueError:
            logger.warning(f"Ignoring malformed allowlist entry {entry!r}")
    return False


def risk_band(score: int) -> RiskLevel:
    if score > 70:
        return RiskLevel.HIGH
    if score > 40:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


class RiskEvaluator:
    """Additive risk scoring, clamped to 0-100."""

    def __init__(self, time_window_penalty: int = 20):
        self.time_window_penalty = time_window_penalty

    def assess(
        self,
        draft: AccessRequest,
        role: PrivilegedRole,
        now: datetime,
        recent_failures: int = 0,
    ) -> RiskAssessment:
        score = 0
        factors: List[str] = []

        def add(points: int, tag: Optional[str]) -> None:
            nonlocal score
            score += points
            if tag:
                factors.append(tag)

        add(*PRIVILEGE_POINTS[role.privilege_level])
        add(*URGENCY_POINTS[draft.urgency])

        if draft.request_type == AccessRequestType.EMERGENCY_ACCESS:
            add(EMERGENCY_TYPE_POINTS, "emergency_access_type")

        within = is_within_time_windows(role.allowed_time_windows, now)
        if not within:
            add(self.time_window_penalty, "outside_allowed_time_window")

        if not is_ip_allowlisted(draft.source_ip, role.ip_allowlist):
            add(IP_NOT_ALLOWLISTED_POINTS, "ip_not_allowlisted")

        if draft.requested_duration > role.max_session_duration * 0.5:
            add(LONG_SESSION_POINTS, "long_session_duration")

        if recent_failures > RECENT_FAILURE_THRESHOLD:
            add(RECENT_FAILURE_POINTS, "recent_access_failures")

        score = max(0, min(100, score))
        return RiskAssessment(
            score=score, factors=factors, within_time_window=within, level=risk_band(score)
        )


class RecentFailureTracker:
    """Sliding-window count of denials and MFA failures per principal."""

    def __init__(self, window_minutes: int = 60):
        self.window = timedelta(minutes=window_minutes)
        self._failures: Dict[str, Deque[datetime]] = defaultdict(deque)

    def record_failure(self, principal_id: str, when: datetime) -> None:
        self._failures[principal_id].append(when)

    def recent_failures(self, principal_id: str, now: datetime) -> int:
        entries = self._failures.get(principal_id)
        if not entries:
            return 0
        cutoff = now - self.window
        while entries and entries[0] < cutoff:
            entries.popleft()
        if not entries:
            del self._failures[principal_id]
            return 0
        return sum(1 for t in entries if t <= now)

    def clear(self, principal_id: Optional[str] = None) -> None:
        if principal_id is None:
            self._failures.clear()
        else:
            self._failures.pop(principal_id, None)
