"""Pure data models for iamreach. No I/O, no AWS calls."""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Generic, Optional, TypeVar, Union

from .errors import IamReachError, PartialBatchFailure

T = TypeVar("T")


class Effect(Enum):
    ALLOW = "Allow"
    DENY = "Deny"


class RiskLevel(Enum):
    INFO = "INFO"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class RiskCategory(Enum):
    OVERLY_PERMISSIVE = "OVERLY_PERMISSIVE"
    PRIVILEGE_ESCALATION = "PRIVILEGE_ESCALATION"
    DATA_EXPOSURE = "DATA_EXPOSURE"
    SECURITY_MISCONFIGURATION = "SECURITY_MISCONFIGURATION"
    ADMINISTRATIVE_ACCESS = "ADMINISTRATIVE_ACCESS"
    CROSS_ACCOUNT_ACCESS = "CROSS_ACCOUNT_ACCESS"
    MULTI_ACCOUNT_ACCESS = "MULTI_ACCOUNT_ACCESS"
    SERVICE_SPECIFIC = "SERVICE_SPECIFIC"


class ResourceType(Enum):
    USER = "USER"
    PERMISSION_SET = "PERMISSION_SET"
    POLICY = "POLICY"
    ACCOUNT = "ACCOUNT"


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Result(Generic[T]):
    """Success value or typed error, returned where raising is not wanted."""

    value: Optional[T] = None
    error: Optional[IamReachError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> Result[T]:
        return cls(value=value)

    @classmethod
    def failure(cls, error: IamReachError) -> Result[T]:
        return cls(error=error)

    def unwrap(self) -> T:
        """Return the value, or raise the stored error."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# Organization / Identity Center
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Account:
    """An organization member account, as listed by Organizations."""

    id: str
    name: str
    email: str
    status: str


@dataclass(frozen=True)
class Principal:
    """A user-like identity. ``home_account_id`` is None when unknown."""

    id: str
    display_name: str
    home_account_id: Optional[str] = None


@dataclass(frozen=True)
class IdentityUser:
    """A user as listed by the Identity Center identity store."""

    id: str
    user_name: str
    display_name: Optional[str] = None
    emails: tuple[str, ...] = ()

    @property
    def label(self) -> str:
        return self.display_name or self.user_name or self.id

    def principal(self, home_account_id: Optional[str] = None) -> Principal:
        return Principal(
            id=self.id, display_name=self.label, home_account_id=home_account_id
        )


@dataclass(frozen=True)
class PermissionSetRef:
    arn: str
    name: str


@dataclass(frozen=True)
class CustomerManagedPolicyRef:
    name: str
    path: str = "/"


@dataclass(frozen=True)
class PermissionSetDetails:
    """Fully described permission set, fetched lazily by ARN."""

    arn: str
    name: str
    description: Optional[str] = None
    session_duration: Optional[str] = None
    managed_policy_arns: tuple[str, ...] = ()
    customer_managed_policy_refs: tuple[CustomerManagedPolicyRef, ...] = ()
    inline_policy_document: Optional[str] = None
    # managed policy ARN -> default version document, when it could be fetched
    managed_policy_documents: Mapping[str, Any] = field(
        default_factory=dict, hash=False
    )

    def __post_init__(self) -> None:
        _freeze(self, "managed_policy_documents")

    @classmethod
    def minimal(cls, arn: str, name: Optional[str] = None) -> PermissionSetDetails:
        """A policy-less stand-in for a permission set known only by ARN."""
        return cls(arn=arn, name=name or arn.rsplit("/", 1)[-1] or arn)


@dataclass(frozen=True)
class Assignment:
    principal_id: str
    account_id: str
    permission_set_arn: str


PermissionSetEntry = Union[str, PermissionSetRef, PermissionSetDetails]


@dataclass(frozen=True)
class CrossAccountAccess:
    """One principal's access to one account."""

    account_id: str
    account_name: str
    has_access: bool
    permission_sets: tuple[PermissionSetEntry, ...]
    last_checked: datetime

    @property
    def permission_set_arns(self) -> tuple[str, ...]:
        return tuple(
            entry if isinstance(entry, str) else entry.arn
            for entry in self.permission_sets
        )


@dataclass(frozen=True)
class PrincipalAccessResult:
    """Outcome of resolving one principal inside a bulk call.

    ``error`` is None when resolution succeeded, even if the principal has no
    access anywhere; a failed principal keeps its all-``has_access=False``
    entries alongside the error.
    """

    principal_id: str
    accounts: tuple[CrossAccountAccess, ...]
    error: Optional[IamReachError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def accessible_accounts(self) -> tuple[CrossAccountAccess, ...]:
        return tuple(a for a in self.accounts if a.has_access)


@dataclass(frozen=True)
class BulkAccessResult:
    results: dict[str, PrincipalAccessResult]

    @property
    def failures(self) -> dict[str, IamReachError]:
        return {
            pid: r.error for pid, r in self.results.items() if r.error is not None
        }

    @property
    def partial_failure(self) -> Optional[PartialBatchFailure]:
        failures = self.failures
        if not failures:
            return None
        return PartialBatchFailure(failures)  # type: ignore[arg-type]

    def access_map(self) -> dict[str, list[CrossAccountAccess]]:
        return {pid: list(r.accounts) for pid, r in self.results.items()}


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PolicyStatement:
    """Canonical form of one IAM policy statement.

    ``actions`` is empty only when the raw statement used ``NotAction``
    without ``Action``.
    """

    effect: Effect
    actions: tuple[str, ...]
    resources: tuple[str, ...]
    conditions: Optional[dict] = None


# ---------------------------------------------------------------------------
# Risk
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RiskFinding:
    id: str
    title: str
    description: str
    risk_level: RiskLevel
    category: RiskCategory
    severity: int
    impact: str
    recommendation: str
    resource_type: ResourceType
    resource_name: str
    details: Mapping[str, Any] = field(hash=False)
    created_at: datetime
    resource_arn: Optional[str] = None

    def __post_init__(self) -> None:
        _freeze(self, "details")


@dataclass(frozen=True)
class PolicyAnalysisResult:
    """Risk-relevant facts extracted from a single policy source.

    ``source`` is one of ``"AWS_MANAGED"``, ``"INLINE"``.
    """

    policy_name: str
    policy_arn: Optional[str]
    source: str
    admin_permissions: bool
    wildcard_actions_count: int
    permissions_count: int
    service_permissions: dict[str, tuple[str, ...]]
    findings: tuple[RiskFinding, ...]


@dataclass(frozen=True)
class PermissionSetRisk:
    arn: str
    name: str
    risk_score: int
    risk_level: RiskLevel
    findings: tuple[RiskFinding, ...]
    policy_analysis: tuple[PolicyAnalysisResult, ...]
    admin_permissions: bool
    wildcard_actions: int
    sensitive_services: tuple[str, ...]


@dataclass(frozen=True)
class AccountRiskSummary:
    account_id: str
    account_name: str
    risk_score: int
    risk_level: RiskLevel
    findings: tuple[RiskFinding, ...]
    permission_sets: tuple[PermissionSetRisk, ...]
    admin_access: bool


@dataclass(frozen=True)
class UserRiskProfile:
    principal_id: str
    display_name: str
    overall_risk_score: int
    risk_level: RiskLevel
    findings: tuple[RiskFinding, ...]
    account_access: tuple[AccountRiskSummary, ...]
    total_permission_sets: int
    admin_access: bool
    cross_account_access: bool
    last_analyzed: datetime


@dataclass(frozen=True)
class RiskSummary:
    """Dashboard-level aggregate over many risk profiles."""

    total: int
    critical: int
    high_risk: int
    admin: int
    cross_account: int
    average_risk_score: float
    total_findings: int
    findings_by_category: dict[str, int]
    findings_by_level: dict[str, int]


def _freeze(instance: Any, name: str) -> None:
    # read-only view over a private copy; excluded from __hash__
    value = getattr(instance, name)
    if not isinstance(value, MappingProxyType):
        object.__setattr__(instance, name, MappingProxyType(dict(value)))
