"""Risk scoring. Pure functions, no I/O."""
from __future__ import annotations

import math
from collections.abc import Sequence

from .models import RiskLevel

MAX_SCORE = 10

# Findings at or above this severity count as high severity.
HIGH_SEVERITY_THRESHOLD = 7

# permission_set_score weights and caps
ADMIN_WEIGHT = 8
WILDCARD_WEIGHT, WILDCARD_CAP = 2, 4
SENSITIVE_SERVICE_WEIGHT, SENSITIVE_SERVICE_CAP = 0.5, 2
FINDING_WEIGHT, FINDING_CAP = 0.3, 3
HIGH_SEVERITY_WEIGHT, HIGH_SEVERITY_CAP = 1.5, 4

# account_score
ACCOUNT_FINDING_WEIGHT, ACCOUNT_FINDING_CAP = 0.5, 2

_LEVEL_THRESHOLDS: tuple[tuple[int, RiskLevel], ...] = (
    (9, RiskLevel.CRITICAL),
    (7, RiskLevel.HIGH),
    (4, RiskLevel.MEDIUM),
    (1, RiskLevel.LOW),
)

_DESCRIPTIONS = {
    RiskLevel.CRITICAL: "Immediate attention required",
    RiskLevel.HIGH: "Review recommended",
    RiskLevel.MEDIUM: "Monitor closely",
    RiskLevel.LOW: "Generally acceptable",
    RiskLevel.INFO: "Informational only",
}


def permission_set_score(
    admin_permissions: bool,
    wildcard_actions: int,
    sensitive_services_count: int,
    findings_count: int,
    high_severity_findings_count: int,
) -> int:
    """
    Score a permission set from 0 to 10.

    Every term except the admin flag is capped so that no single dimension
    can saturate the score on its own.
    """
    score = ADMIN_WEIGHT if admin_permissions else 0
    score += min(wildcard_actions * WILDCARD_WEIGHT, WILDCARD_CAP)
    score += min(
        sensitive_services_count * SENSITIVE_SERVICE_WEIGHT, SENSITIVE_SERVICE_CAP
    )
    score += min(findings_count * FINDING_WEIGHT, FINDING_CAP)
    score += min(
        high_severity_findings_count * HIGH_SEVERITY_WEIGHT, HIGH_SEVERITY_CAP
    )
    return min(round_half_up(score), MAX_SCORE)


def account_score(
    permission_set_scores: Sequence[int], account_findings_count: int
) -> int:
    """Highest permission-set score plus a capped bump for account findings."""
    if not permission_set_scores:
        return 0
    score = max(permission_set_scores) + min(
        account_findings_count * ACCOUNT_FINDING_WEIGHT, ACCOUNT_FINDING_CAP
    )
    return min(round_half_up(score), MAX_SCORE)


def level_of(score: float) -> RiskLevel:
    for threshold, level in _LEVEL_THRESHOLDS:
        if score >= threshold:
            return level
    return RiskLevel.INFO


def risk_description(level: RiskLevel) -> str:
    return _DESCRIPTIONS[level]


def is_high_severity(severity: int) -> bool:
    return severity >= HIGH_SEVERITY_THRESHOLD


def round_half_up(value: float) -> int:
    # builtin round() is banker's rounding: round(2.5) == 2
    return int(math.floor(value + 0.5))
