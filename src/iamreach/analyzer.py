"""Turn permission sets and account access into risk scores and findings."""
from __future__ import annotations

import dataclasses
import logging
import uuid
from collections import Counter
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Optional

from .calculator import account_score, is_high_severity, level_of, permission_set_score
from .models import (
    AccountRiskSummary,
    BulkAccessResult,
    CrossAccountAccess,
    Effect,
    PermissionSetDetails,
    PermissionSetEntry,
    PermissionSetRef,
    PermissionSetRisk,
    PolicyAnalysisResult,
    Principal,
    ResourceType,
    RiskCategory,
    RiskFinding,
    RiskLevel,
    RiskSummary,
    UserRiskProfile,
)
from .policy import action_service, load_statements

logger = logging.getLogger(__name__)

DetailsFetcher = Callable[[str], PermissionSetDetails]

# Services that hold or guard sensitive data.
SENSITIVE_SERVICES: frozenset[str] = frozenset(
    {
        "secretsmanager",
        "ssm",
        "kms",
        "certificatemanager",
        "s3",
        "dynamodb",
        "rds",
        "redshift",
        "elasticsearch",
        "opensearch",
    }
)

# Services where ``service:*`` amounts to control over the account itself.
PRIVILEGED_SERVICES: frozenset[str] = frozenset(
    {"iam", "organizations", "account", "sts", "sso", "billing", "support"}
)

DATA_ACTIONS: frozenset[str] = frozenset(
    {
        "s3:GetObject",
        "s3:GetBucketAcl",
        "s3:GetBucketPolicy",
        "dynamodb:GetItem",
        "dynamodb:Query",
        "dynamodb:Scan",
        "rds:DescribeDBInstances",
        "secretsmanager:GetSecretValue",
        "ssm:GetParameter",
        "ssm:GetParametersByPath",
    }
)

ESCALATION_ACTIONS: frozenset[str] = frozenset(
    {
        "iam:CreateRole",
        "iam:AttachRolePolicy",
        "iam:PutRolePolicy",
        "iam:PassRole",
        "sts:AssumeRole",
        "lambda:InvokeFunction",
        "lambda:CreateFunction",
        "ec2:RunInstances",
    }
)

NETWORK_ACTIONS: frozenset[str] = frozenset(
    {
        "ec2:AuthorizeSecurityGroupIngress",
        "ec2:CreateSecurityGroup",
        "ec2:ModifyVpcAttribute",
        "route53:ChangeResourceRecordSets",
    }
)

DESTRUCTIVE_ACTIONS: frozenset[str] = frozenset(
    {
        "s3:DeleteBucket",
        "s3:DeleteObject",
        "dynamodb:DeleteTable",
        "rds:DeleteDBInstance",
        "ec2:TerminateInstances",
        "cloudformation:DeleteStack",
    }
)

_SENSITIVE_ACTION_RULES: tuple[tuple[frozenset[str], RiskCategory, str], ...] = (
    (DATA_ACTIONS, RiskCategory.DATA_EXPOSURE, "Can read sensitive data"),
    (
        ESCALATION_ACTIONS,
        RiskCategory.PRIVILEGE_ESCALATION,
        "Can be chained into broader privileges",
    ),
    (
        NETWORK_ACTIONS,
        RiskCategory.SECURITY_MISCONFIGURATION,
        "Can open network paths into the account",
    ),
    (
        DESTRUCTIVE_ACTIONS,
        RiskCategory.SERVICE_SPECIFIC,
        "Can delete or destroy critical resources",
    ),
)

# Service hints for AWS managed policies whose document is unavailable.
_MANAGED_NAME_SERVICES: tuple[tuple[str, str], ...] = (
    ("s3", "s3"),
    ("ec2", "ec2"),
    ("iam", "iam"),
    ("lambda", "lambda"),
    ("rds", "rds"),
    ("dynamodb", "dynamodb"),
    ("cloudformation", "cloudformation"),
    ("cloudwatch", "cloudwatch"),
)

SOURCE_AWS_MANAGED = "AWS_MANAGED"
SOURCE_INLINE = "INLINE"


class RiskAnalyzer:
    """
    Score permission sets, account access and users.

    Permission sets referenced only by ARN are turned into full details with
    *details_fetcher* (usually ``AccessResolver.fetch_permission_set_details``);
    without one they are analyzed as policy-less stand-ins.  Fetches and
    per-account analysis run on up to *max_workers* threads.
    """

    def __init__(
        self,
        details_fetcher: Optional[DetailsFetcher] = None,
        max_workers: int = 8,
    ) -> None:
        self.details_fetcher = details_fetcher
        self.max_workers = max(1, max_workers)

    # -----------------------------------------------------------------------
    # Permission sets
    # -----------------------------------------------------------------------

    def analyze_permission_set(self, details: PermissionSetDetails) -> PermissionSetRisk:
        analyses: list[PolicyAnalysisResult] = []

        for policy_arn in details.managed_policy_arns:
            document = details.managed_policy_documents.get(policy_arn)
            if document is not None:
                analyses.append(
                    _analyze_document(
                        document,
                        policy_name=_policy_name(policy_arn),
                        policy_arn=policy_arn,
                        source=SOURCE_AWS_MANAGED,
                    )
                )
            else:
                analyses.append(_analyze_managed_arn(policy_arn))

        if details.inline_policy_document:
            analyses.append(
                _analyze_document(
                    details.inline_policy_document,
                    policy_name=details.name,
                    policy_arn=None,
                    source=SOURCE_INLINE,
                )
            )

        admin = any(a.admin_permissions for a in analyses)
        wildcard_actions = sum(a.wildcard_actions_count for a in analyses)
        sensitive_services = sorted(
            {
                service
                for a in analyses
                for service in a.service_permissions
                if service in SENSITIVE_SERVICES
            }
        )
        findings = tuple(f for a in analyses for f in a.findings)

        score = permission_set_score(
            admin_permissions=admin,
            wildcard_actions=wildcard_actions,
            sensitive_services_count=len(sensitive_services),
            findings_count=len(findings),
            high_severity_findings_count=sum(
                1 for f in findings if is_high_severity(f.severity)
            ),
        )
        logger.debug("Permission set %s scored %d", details.name, score)

        return PermissionSetRisk(
            arn=details.arn,
            name=details.name,
            risk_score=score,
            risk_level=level_of(score),
            findings=findings,
            policy_analysis=tuple(analyses),
            admin_permissions=admin,
            wildcard_actions=wildcard_actions,
            sensitive_services=tuple(sensitive_services),
        )

    def analyze_permission_sets(
        self, entries: Iterable[PermissionSetEntry]
    ) -> list[PermissionSetRisk]:
        """
        Analyze many permission sets, fetching details concurrently.

        Raises:
            GatewayError: a permission set could not be fetched.
        """
        details = self._materialize(entries)
        return [self.analyze_permission_set(d) for d in details.values()]

    # -----------------------------------------------------------------------
    # Accounts
    # -----------------------------------------------------------------------

    def analyze_account_access(
        self, principal: Principal, access: CrossAccountAccess
    ) -> AccountRiskSummary:
        """
        Score one account the principal can reach.

        Raises:
            GatewayError: a permission set had to be fetched and could not be.
        """
        details = self._materialize(access.permission_sets)
        return self._account_summary(principal, access, details)

    # -----------------------------------------------------------------------
    # Users
    # -----------------------------------------------------------------------

    def analyze_user(
        self, principal: Principal, accesses: Sequence[CrossAccountAccess]
    ) -> UserRiskProfile:
        """
        Build the complete risk profile of *principal*.

        The overall score is the highest account score: one risky account
        dominates however many harmless ones there are.  Either a full
        profile is returned or the error propagates.

        Raises:
            GatewayError: a permission set had to be fetched and could not be.
        """
        accessible = [a for a in accesses if a.has_access]
        details = self._materialize(
            entry for a in accessible for entry in a.permission_sets
        )

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            summaries = tuple(
                pool.map(
                    lambda a: self._account_summary(principal, a, details), accessible
                )
            )

        admin_access = any(s.admin_access for s in summaries)
        cross_account = any(
            a.account_id != principal.home_account_id for a in accessible
        )
        overall = max((s.risk_score for s in summaries), default=0)

        findings: list[RiskFinding] = [f for s in summaries for f in s.findings]
        if admin_access:
            findings.append(
                _finding(
                    title="Administrative Access Detected",
                    description="User has administrative privileges in one or more accounts",
                    risk_level=RiskLevel.HIGH,
                    category=RiskCategory.ADMINISTRATIVE_ACCESS,
                    severity=8,
                    impact="User has broad administrative control over AWS resources",
                    recommendation=(
                        "Regularly review administrative access and consider "
                        "temporary elevated access patterns"
                    ),
                    resource_type=ResourceType.USER,
                    resource_name=principal.display_name,
                    details={
                        "admin_accounts": [
                            s.account_id for s in summaries if s.admin_access
                        ]
                    },
                )
            )
        if cross_account:
            findings.append(
                _finding(
                    title="Multi-Account Access",
                    description="User has access to multiple AWS accounts",
                    risk_level=RiskLevel.MEDIUM,
                    category=RiskCategory.MULTI_ACCOUNT_ACCESS,
                    severity=5,
                    impact="Potential for lateral movement across account boundaries",
                    recommendation="Implement cross-account access reviews and monitoring",
                    resource_type=ResourceType.USER,
                    resource_name=principal.display_name,
                    details={
                        "total_accounts": len(accesses),
                        "accessible_accounts": len(accessible),
                    },
                )
            )

        return UserRiskProfile(
            principal_id=principal.id,
            display_name=principal.display_name,
            overall_risk_score=overall,
            risk_level=level_of(overall),
            findings=tuple(findings),
            account_access=summaries,
            total_permission_sets=sum(len(a.permission_sets) for a in accesses),
            admin_access=admin_access,
            cross_account_access=cross_account,
            last_analyzed=_now(),
        )

    def analyze_users(
        self, principals: Sequence[Principal], bulk: BulkAccessResult
    ) -> list[UserRiskProfile]:
        """
        Profile every principal whose access resolved in *bulk*.

        Permission sets shared between users are fetched once.  Principals
        missing from *bulk* or whose lookup failed are skipped; the caller
        reports those from ``bulk.failures``.

        Raises:
            GatewayError: a permission set had to be fetched and could not be.
        """
        resolved = [
            p for p in principals if p.id in bulk.results and bulk.results[p.id].ok
        ]
        details = self._materialize(
            entry
            for p in resolved
            for a in bulk.results[p.id].accessible_accounts
            for entry in a.permission_sets
        )
        logger.info(
            "Analyzing %d user(s) over %d distinct permission set(s)",
            len(resolved),
            len(details),
        )
        return [
            self.analyze_user(
                p,
                [
                    dataclasses.replace(
                        a,
                        permission_sets=tuple(
                            details[arn] for arn in a.permission_set_arns
                        ),
                    )
                    for a in bulk.results[p.id].accounts
                ],
            )
            for p in resolved
        ]

    # -----------------------------------------------------------------------
    # Internal helpers
    # -----------------------------------------------------------------------

    def _account_summary(
        self,
        principal: Principal,
        access: CrossAccountAccess,
        details: dict[str, PermissionSetDetails],
    ) -> AccountRiskSummary:
        findings: list[RiskFinding] = []
        if access.account_id != principal.home_account_id:
            findings.append(
                _finding(
                    title="Cross-Account Access",
                    description=f"User has access to external account {access.account_id}",
                    risk_level=RiskLevel.MEDIUM,
                    category=RiskCategory.CROSS_ACCOUNT_ACCESS,
                    severity=5,
                    impact="Potential lateral movement across account boundaries",
                    recommendation="Review and monitor cross-account access",
                    resource_type=ResourceType.ACCOUNT,
                    resource_name=access.account_name or access.account_id,
                    details={"account_id": access.account_id},
                )
            )

        risks = tuple(
            self.analyze_permission_set(details[arn])
            for arn in dict.fromkeys(access.permission_set_arns)
        )
        score = account_score([r.risk_score for r in risks], len(findings))

        return AccountRiskSummary(
            account_id=access.account_id,
            account_name=access.account_name or access.account_id,
            risk_score=score,
            risk_level=level_of(score),
            findings=tuple(findings),
            permission_sets=risks,
            admin_access=any(r.admin_permissions for r in risks),
        )

    def _materialize(
        self, entries: Iterable[PermissionSetEntry]
    ) -> dict[str, PermissionSetDetails]:
        """Map every entry's ARN to full details, fetching where needed."""
        resolved: dict[str, PermissionSetDetails] = {}
        to_fetch: dict[str, Optional[str]] = {}
        for entry in entries:
            if isinstance(entry, PermissionSetDetails):
                resolved[entry.arn] = entry
            elif isinstance(entry, PermissionSetRef):
                to_fetch.setdefault(entry.arn, entry.name)
            else:
                to_fetch.setdefault(entry, None)

        pending = [arn for arn in to_fetch if arn not in resolved]
        if self.details_fetcher is None:
            for arn in pending:
                resolved[arn] = PermissionSetDetails.minimal(arn, to_fetch[arn])
            return resolved

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            for arn, fetched in zip(pending, pool.map(self.details_fetcher, pending)):
                resolved[arn] = fetched
        return resolved


def summarize(profiles: Sequence[UserRiskProfile]) -> RiskSummary:
    """Aggregate counts over many profiles for a dashboard view."""
    findings = [f for p in profiles for f in p.findings]
    total = len(profiles)
    return RiskSummary(
        total=total,
        critical=sum(1 for p in profiles if p.risk_level is RiskLevel.CRITICAL),
        high_risk=sum(
            1 for p in profiles if p.risk_level in (RiskLevel.CRITICAL, RiskLevel.HIGH)
        ),
        admin=sum(1 for p in profiles if p.admin_access),
        cross_account=sum(1 for p in profiles if p.cross_account_access),
        average_risk_score=(
            sum(p.overall_risk_score for p in profiles) / total if total else 0.0
        ),
        total_findings=len(findings),
        findings_by_category=dict(Counter(f.category.value for f in findings)),
        findings_by_level=dict(Counter(f.risk_level.value for f in findings)),
    )


def permission_set_profile(risk: PermissionSetRisk) -> UserRiskProfile:
    """Present a lone permission-set analysis in the shape of a user profile."""
    return UserRiskProfile(
        principal_id=risk.arn,
        display_name=risk.name,
        overall_risk_score=risk.risk_score,
        risk_level=risk.risk_level,
        findings=risk.findings,
        account_access=(),
        total_permission_sets=1,
        admin_access=risk.admin_permissions,
        cross_account_access=False,
        last_analyzed=_now(),
    )


# ---------------------------------------------------------------------------
# Policy analysis
# ---------------------------------------------------------------------------


def _analyze_document(
    document: Any, policy_name: str, policy_arn: Optional[str], source: str
) -> PolicyAnalysisResult:
    result = load_statements(document)
    if not result.ok:
        logger.warning("Could not analyze policy %s: %s", policy_name, result.error)
        return PolicyAnalysisResult(
            policy_name=policy_name,
            policy_arn=policy_arn,
            source=source,
            admin_permissions=False,
            wildcard_actions_count=0,
            permissions_count=0,
            service_permissions={},
            findings=(
                _finding(
                    title="Policy Could Not Be Analyzed",
                    description=f"Policy document is unreadable: {result.error}",
                    risk_level=RiskLevel.INFO,
                    category=RiskCategory.SECURITY_MISCONFIGURATION,
                    severity=1,
                    impact="Risk assessment incomplete",
                    recommendation="Manually review the policy document",
                    resource_type=ResourceType.POLICY,
                    resource_name=policy_name,
                    resource_arn=policy_arn,
                    details={"error": str(result.error)},
                ),
            ),
        )

    admin = False
    wildcard_count = 0
    permissions_count = 0
    services: dict[str, list[str]] = {}
    findings: list[RiskFinding] = []
    flagged_services: set[str] = set()

    for statement in result.unwrap():
        # Deny statements narrow access; they never add risk here.
        if statement.effect is not Effect.ALLOW:
            continue
        permissions_count += len(statement.actions)
        raw = {
            "actions": list(statement.actions),
            "resources": list(statement.resources),
        }

        for action in statement.actions:
            service = action_service(action)
            services.setdefault(service, []).append(action)
            if "*" in action:
                wildcard_count += 1
            if action == "*":
                admin = True
                continue

            if (
                action == f"{service}:*"
                and service not in flagged_services
                and (service in SENSITIVE_SERVICES or service in PRIVILEGED_SERVICES)
            ):
                flagged_services.add(service)
                findings.append(
                    _finding(
                        title="Service-Wide Wildcard on Sensitive Service",
                        description=f"Policy grants every {service} action ({action})",
                        risk_level=RiskLevel.HIGH,
                        category=RiskCategory.OVERLY_PERMISSIVE,
                        severity=7,
                        impact=f"Full control over {service} resources in the account",
                        recommendation="Grant only the specific actions required",
                        resource_type=ResourceType.POLICY,
                        resource_name=policy_name,
                        resource_arn=policy_arn,
                        details={"service": service, "statement": raw},
                    )
                )

            for actions, category, impact in _SENSITIVE_ACTION_RULES:
                if action in actions:
                    findings.append(
                        _finding(
                            title="Sensitive Action Detected",
                            description=f"Policy allows sensitive action: {action}",
                            risk_level=RiskLevel.MEDIUM,
                            category=category,
                            severity=6,
                            impact=impact,
                            recommendation="Add conditions or move to a break-glass access pattern",
                            resource_type=ResourceType.POLICY,
                            resource_name=policy_name,
                            resource_arn=policy_arn,
                            details={"action": action, "statement": raw},
                        )
                    )

        if "*" in statement.resources:
            findings.append(
                _finding(
                    title="Wildcard Resource Access",
                    description="Policy grants access to all resources (*)",
                    risk_level=RiskLevel.HIGH,
                    category=RiskCategory.OVERLY_PERMISSIVE,
                    severity=7,
                    impact="Actions can be performed on any resource in the account",
                    recommendation="Specify explicit resource ARNs or resource patterns",
                    resource_type=ResourceType.POLICY,
                    resource_name=policy_name,
                    resource_arn=policy_arn,
                    details={"statement": raw},
                )
            )

    if admin:
        findings.insert(0, _admin_policy_finding(policy_name, policy_arn, source))

    return PolicyAnalysisResult(
        policy_name=policy_name,
        policy_arn=policy_arn,
        source=source,
        admin_permissions=admin,
        wildcard_actions_count=wildcard_count,
        permissions_count=permissions_count,
        service_permissions={k: tuple(v) for k, v in services.items()},
        findings=tuple(findings),
    )


def _analyze_managed_arn(policy_arn: str) -> PolicyAnalysisResult:
    """Judge an AWS managed policy by its name when its document is missing."""
    name = _policy_name(policy_arn)
    admin = "AdministratorAccess" in policy_arn
    findings: list[RiskFinding] = []
    if admin:
        findings.append(_admin_policy_finding(name, policy_arn, SOURCE_AWS_MANAGED))
    if "PowerUserAccess" in policy_arn:
        findings.append(
            _finding(
                title="Power User Access Policy",
                description="Policy grants broad access excluding IAM management",
                risk_level=RiskLevel.HIGH,
                category=RiskCategory.OVERLY_PERMISSIVE,
                severity=7,
                impact="Extensive access to AWS services with limited restrictions",
                recommendation="Consider more specific policies based on actual job requirements",
                resource_type=ResourceType.POLICY,
                resource_name=name,
                resource_arn=policy_arn,
                details={"policy_type": SOURCE_AWS_MANAGED},
            )
        )

    lowered = name.lower()
    services = {
        service: (f"{service}:*",)
        for hint, service in _MANAGED_NAME_SERVICES
        if hint in lowered
    }
    return PolicyAnalysisResult(
        policy_name=name,
        policy_arn=policy_arn,
        source=SOURCE_AWS_MANAGED,
        admin_permissions=admin,
        wildcard_actions_count=1 if admin else 0,
        permissions_count=0,
        service_permissions=services,
        findings=tuple(findings),
    )


def _admin_policy_finding(
    policy_name: str, policy_arn: Optional[str], source: str
) -> RiskFinding:
    return _finding(
        title="Administrator Access Policy",
        description="Policy grants full administrative access to all AWS services",
        risk_level=RiskLevel.CRITICAL,
        category=RiskCategory.ADMINISTRATIVE_ACCESS,
        severity=10,
        impact="Complete control over AWS account and all resources",
        recommendation=(
            "Restrict administrative access to specific users and use "
            "temporary elevation when possible"
        ),
        resource_type=ResourceType.POLICY,
        resource_name=policy_name,
        resource_arn=policy_arn,
        details={"policy_type": source},
    )


def _finding(
    *,
    title: str,
    description: str,
    risk_level: RiskLevel,
    category: RiskCategory,
    severity: int,
    impact: str,
    recommendation: str,
    resource_type: ResourceType,
    resource_name: str,
    details: dict[str, Any],
    resource_arn: Optional[str] = None,
) -> RiskFinding:
    return RiskFinding(
        id=f"finding-{uuid.uuid4().hex[:12]}",
        title=title,
        description=description,
        risk_level=risk_level,
        category=category,
        severity=severity,
        impact=impact,
        recommendation=recommendation,
        resource_type=resource_type,
        resource_name=resource_name,
        details=details,
        created_at=_now(),
        resource_arn=resource_arn,
    )


def _policy_name(policy_arn: str) -> str:
    return policy_arn.rsplit("/", 1)[-1] or policy_arn


def _now() -> datetime:
    return datetime.now(timezone.utc)
