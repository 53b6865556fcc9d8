"""Tests for iamreach.analyzer: prebuilt permission sets, no AWS."""
import json
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from conftest import ADMIN_POLICY, ADMIN_PS, HOME_ACCOUNT, OTHER_ACCOUNT, READONLY_POLICY, READONLY_PS
from iamreach.analyzer import RiskAnalyzer, permission_set_profile, summarize
from iamreach.errors import GatewayError
from iamreach.models import (
    CrossAccountAccess,
    PermissionSetDetails,
    PermissionSetRef,
    Principal,
    ResourceType,
    RiskCategory,
    RiskLevel,
)
from iamreach.resolver import AccessResolver

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)
ALICE = Principal(id="u-1", display_name="Alice", home_account_id=HOME_ACCOUNT)

ADMIN = PermissionSetDetails(arn=ADMIN_PS, name="PS-Admin", inline_policy_document=ADMIN_POLICY)
READONLY = PermissionSetDetails(
    arn=READONLY_PS, name="PS-ReadOnly", inline_policy_document=READONLY_POLICY
)


def _policy(*statements) -> str:
    return json.dumps({"Version": "2012-10-17", "Statement": list(statements)})


def _ps(inline=None, managed=(), documents=None, name="PS"):
    return PermissionSetDetails(
        arn=f"arn:aws:sso:::permissionSet/ssoins-1/{name.lower()}",
        name=name,
        managed_policy_arns=tuple(managed),
        inline_policy_document=inline,
        managed_policy_documents=documents or {},
    )


def _access(account_id, *entries, has_access=True, name=None):
    return CrossAccountAccess(
        account_id=account_id,
        account_name=name or f"acct-{account_id[-4:]}",
        has_access=has_access,
        permission_sets=tuple(entries),
        last_checked=NOW,
    )


def _categories(findings):
    return [f.category for f in findings]


# ---------------------------------------------------------------------------
# analyze_permission_set
# ---------------------------------------------------------------------------


def test_full_admin_inline_policy_scores_ten():
    risk = RiskAnalyzer().analyze_permission_set(ADMIN)
    assert risk.risk_score == 10
    assert risk.risk_level == RiskLevel.CRITICAL
    assert risk.admin_permissions
    assert risk.wildcard_actions == 1
    assert RiskCategory.ADMINISTRATIVE_ACCESS in _categories(risk.findings)
    assert risk.policy_analysis[0].source == "INLINE"


def test_read_only_wildcard_scores_four():
    risk = RiskAnalyzer().analyze_permission_set(READONLY)
    assert risk.risk_score == 4
    assert risk.risk_level == RiskLevel.MEDIUM
    assert not risk.admin_permissions
    assert risk.sensitive_services == ("s3",)
    assert [f.title for f in risk.findings] == ["Wildcard Resource Access"]


def test_empty_permission_set_scores_zero():
    risk = RiskAnalyzer().analyze_permission_set(PermissionSetDetails.minimal(ADMIN_PS))
    assert risk.risk_score == 0
    assert risk.risk_level == RiskLevel.INFO
    assert risk.findings == ()
    assert risk.policy_analysis == ()


def test_deny_statements_add_no_risk():
    risk = RiskAnalyzer().analyze_permission_set(
        _ps(inline=_policy({"Effect": "Deny", "Action": "*", "Resource": "*"}))
    )
    assert risk.risk_score == 0
    assert not risk.admin_permissions


def test_service_wide_wildcard_on_sensitive_service():
    risk = RiskAnalyzer().analyze_permission_set(
        _ps(inline=_policy({"Effect": "Allow", "Action": ["iam:*", "kms:*"], "Resource": "arn:x"}))
    )
    titles = [f.title for f in risk.findings]
    assert titles.count("Service-Wide Wildcard on Sensitive Service") == 2
    assert risk.sensitive_services == ("kms",)
    assert risk.wildcard_actions == 2


def test_sensitive_actions_categorized():
    risk = RiskAnalyzer().analyze_permission_set(
        _ps(
            inline=_policy(
                {
                    "Effect": "Allow",
                    "Action": ["iam:PassRole", "secretsmanager:GetSecretValue", "s3:DeleteBucket"],
                    "Resource": "arn:aws:s3:::bucket",
                }
            )
        )
    )
    cats = _categories(risk.findings)
    assert RiskCategory.PRIVILEGE_ESCALATION in cats
    assert RiskCategory.DATA_EXPOSURE in cats
    assert RiskCategory.SERVICE_SPECIFIC in cats
    assert all(f.severity == 6 for f in risk.findings)


def test_unparseable_inline_policy_yields_info_finding():
    risk = RiskAnalyzer().analyze_permission_set(_ps(inline="%ZZ not a policy"))
    assert len(risk.findings) == 1
    finding = risk.findings[0]
    assert finding.risk_level == RiskLevel.INFO
    assert finding.category == RiskCategory.SECURITY_MISCONFIGURATION
    assert finding.resource_type == ResourceType.POLICY


@pytest.mark.parametrize(
    "inline",
    [
        '{"Statement": {"Action": [1]}}',
        '{"Statement": {"Action": 5}}',
        '{"Statement": {"Effect": "allow", "Action": "*"}}',
    ],
)
def test_malformed_statement_yields_info_finding_instead_of_raising(inline):
    risk = RiskAnalyzer().analyze_permission_set(_ps(inline=inline))
    assert [f.risk_level for f in risk.findings] == [RiskLevel.INFO]
    assert risk.findings[0].category == RiskCategory.SECURITY_MISCONFIGURATION
    assert not risk.admin_permissions


def test_managed_policy_document_analyzed():
    arn = "arn:aws:iam::aws:policy/AmazonS3FullAccess"
    doc = {"Statement": [{"Effect": "Allow", "Action": "s3:*", "Resource": "*"}]}
    risk = RiskAnalyzer().analyze_permission_set(_ps(managed=[arn], documents={arn: doc}))
    analysis = risk.policy_analysis[0]
    assert analysis.source == "AWS_MANAGED"
    assert analysis.policy_name == "AmazonS3FullAccess"
    assert analysis.service_permissions == {"s3": ("s3:*",)}


def test_managed_admin_policy_judged_by_arn():
    risk = RiskAnalyzer().analyze_permission_set(
        _ps(managed=["arn:aws:iam::aws:policy/AdministratorAccess"])
    )
    assert risk.admin_permissions
    assert risk.risk_level == RiskLevel.CRITICAL


def test_power_user_policy_judged_by_arn():
    risk = RiskAnalyzer().analyze_permission_set(
        _ps(managed=["arn:aws:iam::aws:policy/PowerUserAccess"])
    )
    assert not risk.admin_permissions
    assert [f.risk_level for f in risk.findings] == [RiskLevel.HIGH]


def test_aggregates_across_policies():
    managed = "arn:aws:iam::aws:policy/AdministratorAccess"
    risk = RiskAnalyzer().analyze_permission_set(
        _ps(managed=[managed], inline=READONLY_POLICY)
    )
    assert len(risk.policy_analysis) == 2
    assert risk.admin_permissions
    assert risk.wildcard_actions == 2
    assert len(risk.findings) == sum(len(a.findings) for a in risk.policy_analysis)


# ---------------------------------------------------------------------------
# analyze_account_access
# ---------------------------------------------------------------------------


def test_home_account_has_no_cross_account_finding():
    summary = RiskAnalyzer().analyze_account_access(ALICE, _access(HOME_ACCOUNT, ADMIN))
    assert summary.findings == ()
    assert summary.risk_score == 10
    assert summary.admin_access


def test_other_account_gets_cross_account_finding():
    summary = RiskAnalyzer().analyze_account_access(ALICE, _access(OTHER_ACCOUNT, READONLY))
    assert len(summary.findings) == 1
    finding = summary.findings[0]
    assert finding.category == RiskCategory.CROSS_ACCOUNT_ACCESS
    assert finding.severity == 5
    assert finding.risk_level == RiskLevel.MEDIUM
    assert summary.risk_score == 5


def test_unknown_home_treats_every_account_as_cross_account():
    stranger = Principal(id="u-9", display_name="Unknown")
    summary = RiskAnalyzer().analyze_account_access(stranger, _access(HOME_ACCOUNT, READONLY))
    assert _categories(summary.findings) == [RiskCategory.CROSS_ACCOUNT_ACCESS]


def test_account_without_permission_sets_scores_zero():
    summary = RiskAnalyzer().analyze_account_access(ALICE, _access(OTHER_ACCOUNT))
    assert summary.risk_score == 0
    assert summary.permission_sets == ()


def test_bare_arns_become_minimal_details_without_fetcher():
    summary = RiskAnalyzer().analyze_account_access(ALICE, _access(HOME_ACCOUNT, ADMIN_PS))
    assert summary.permission_sets[0].name == "ps-admin"
    assert summary.permission_sets[0].risk_score == 0


def test_refs_keep_their_name_without_fetcher():
    summary = RiskAnalyzer().analyze_account_access(
        ALICE, _access(HOME_ACCOUNT, PermissionSetRef(ADMIN_PS, "PS-Admin"))
    )
    assert summary.permission_sets[0].name == "PS-Admin"


def test_fetcher_used_for_arns_and_refs():
    fetcher = MagicMock(side_effect=lambda arn: {ADMIN_PS: ADMIN, READONLY_PS: READONLY}[arn])
    summary = RiskAnalyzer(details_fetcher=fetcher).analyze_account_access(
        ALICE, _access(HOME_ACCOUNT, ADMIN_PS, PermissionSetRef(READONLY_PS, "PS-ReadOnly"))
    )
    assert [p.risk_score for p in summary.permission_sets] == [10, 4]
    assert fetcher.call_count == 2


def test_details_entries_are_not_fetched():
    fetcher = MagicMock()
    RiskAnalyzer(details_fetcher=fetcher).analyze_account_access(ALICE, _access(HOME_ACCOUNT, ADMIN))
    fetcher.assert_not_called()


def test_fetch_failure_propagates():
    fetcher = MagicMock(side_effect=GatewayError("denied", error_code="AccessDeniedException"))
    with pytest.raises(GatewayError):
        RiskAnalyzer(details_fetcher=fetcher).analyze_account_access(
            ALICE, _access(HOME_ACCOUNT, ADMIN_PS)
        )


# ---------------------------------------------------------------------------
# analyze_user
# ---------------------------------------------------------------------------


def test_end_to_end_profile():
    profile = RiskAnalyzer().analyze_user(
        ALICE, [_access(HOME_ACCOUNT, ADMIN), _access(OTHER_ACCOUNT, READONLY)]
    )
    assert profile.overall_risk_score == 10
    assert profile.risk_level == RiskLevel.CRITICAL
    assert profile.admin_access
    assert profile.cross_account_access
    assert profile.total_permission_sets == 2

    cats = _categories(profile.findings)
    assert cats.count(RiskCategory.CROSS_ACCOUNT_ACCESS) == 1
    assert cats.count(RiskCategory.MULTI_ACCOUNT_ACCESS) == 1
    user_admin = [
        f
        for f in profile.findings
        if f.category == RiskCategory.ADMINISTRATIVE_ACCESS and f.resource_type == ResourceType.USER
    ]
    assert len(user_admin) == 1
    assert user_admin[0].severity == 8

    by_account = {s.account_id: s.risk_score for s in profile.account_access}
    assert by_account == {HOME_ACCOUNT: 10, OTHER_ACCOUNT: 5}


def test_end_to_end_through_resolver(org_gateway):
    resolver = AccessResolver(org_gateway)
    accesses = resolver.resolve_single("u-1")
    profile = RiskAnalyzer(details_fetcher=resolver.fetch_permission_set_details).analyze_user(
        ALICE, accesses
    )
    assert profile.overall_risk_score == 10
    assert {s.account_id: s.risk_score for s in profile.account_access} == {
        HOME_ACCOUNT: 10,
        OTHER_ACCOUNT: 5,
    }
    # each distinct permission set fetched once
    assert org_gateway.calls[("get_inline_policy", ADMIN_PS)] == 1


def test_multi_account_finding_counts_accounts():
    profile = RiskAnalyzer().analyze_user(
        ALICE,
        [
            _access(HOME_ACCOUNT, READONLY),
            _access(OTHER_ACCOUNT, READONLY),
            _access("333333333333", has_access=False),
        ],
    )
    multi = next(f for f in profile.findings if f.category == RiskCategory.MULTI_ACCOUNT_ACCESS)
    assert multi.details == {"total_accounts": 3, "accessible_accounts": 2}
    assert len(profile.account_access) == 2


def test_home_only_user_is_not_cross_account():
    profile = RiskAnalyzer().analyze_user(ALICE, [_access(HOME_ACCOUNT, READONLY)])
    assert not profile.cross_account_access
    assert profile.findings == ()
    assert profile.overall_risk_score == 4


def test_user_without_access():
    profile = RiskAnalyzer().analyze_user(ALICE, [])
    assert profile.overall_risk_score == 0
    assert profile.risk_level == RiskLevel.INFO
    assert profile.account_access == ()


# ---------------------------------------------------------------------------
# analyze_users
# ---------------------------------------------------------------------------


def test_analyze_users_fetches_shared_permission_sets_once(org_gateway):
    resolver = AccessResolver(org_gateway)
    bulk = resolver.resolve_bulk(["u-1", "u-2", "u-3"])
    principals = [
        Principal(id="u-1", display_name="Alice", home_account_id=HOME_ACCOUNT),
        Principal(id="u-2", display_name="Bob", home_account_id=HOME_ACCOUNT),
        Principal(id="u-3", display_name="Carol", home_account_id=HOME_ACCOUNT),
    ]

    profiles = RiskAnalyzer(
        details_fetcher=resolver.fetch_permission_set_details
    ).analyze_users(principals, bulk)

    assert [(p.principal_id, p.overall_risk_score) for p in profiles] == [
        ("u-1", 10),
        ("u-2", 5),
        ("u-3", 0),
    ]
    assert org_gateway.calls[("get_inline_policy", READONLY_PS)] == 1
    assert org_gateway.calls[("get_inline_policy", ADMIN_PS)] == 1

    summary = summarize(profiles)
    assert summary.total == 3
    assert summary.critical == 1
    assert summary.admin == 1
    assert summary.cross_account == 2


def test_analyze_users_skips_failed_principals(org_gateway):
    org_gateway.fail(
        "list_assignments_for_principal",
        "u-2",
        GatewayError("denied", error_code="AccessDeniedException"),
    )
    bulk = AccessResolver(org_gateway).resolve_bulk(["u-1", "u-2"])
    principals = [ALICE, Principal(id="u-2", display_name="Bob")]

    profiles = RiskAnalyzer().analyze_users(principals, bulk)

    assert [p.principal_id for p in profiles] == ["u-1"]


def test_user_analysis_fails_as_a_whole():
    fetcher = MagicMock(side_effect=GatewayError("gone", error_code="ResourceNotFoundException"))
    with pytest.raises(GatewayError):
        RiskAnalyzer(details_fetcher=fetcher).analyze_user(
            ALICE, [_access(HOME_ACCOUNT, ADMIN), _access(OTHER_ACCOUNT, READONLY_PS)]
        )


# ---------------------------------------------------------------------------
# Batch helpers
# ---------------------------------------------------------------------------


def test_analyze_permission_sets_uses_fetcher():
    fetcher = MagicMock(side_effect=lambda arn: {ADMIN_PS: ADMIN, READONLY_PS: READONLY}[arn])
    risks = RiskAnalyzer(details_fetcher=fetcher).analyze_permission_sets([ADMIN_PS, READONLY_PS])
    assert sorted(r.risk_score for r in risks) == [4, 10]


def test_summarize_profiles():
    analyzer = RiskAnalyzer()
    profiles = [
        analyzer.analyze_user(ALICE, [_access(HOME_ACCOUNT, ADMIN), _access(OTHER_ACCOUNT, READONLY)]),
        analyzer.analyze_user(ALICE, [_access(HOME_ACCOUNT, READONLY)]),
    ]
    summary = summarize(profiles)
    assert summary.total == 2
    assert summary.critical == 1
    assert summary.high_risk == 1
    assert summary.admin == 1
    assert summary.cross_account == 1
    assert summary.average_risk_score == 7.0
    assert summary.total_findings == sum(len(p.findings) for p in profiles)
    assert summary.findings_by_category["MULTI_ACCOUNT_ACCESS"] == 1


def test_summarize_empty():
    summary = summarize([])
    assert summary.total == 0
    assert summary.average_risk_score == 0.0
    assert summary.findings_by_level == {}


def test_permission_set_profile_wraps_risk():
    risk = RiskAnalyzer().analyze_permission_set(ADMIN)
    profile = permission_set_profile(risk)
    assert profile.display_name == "PS-Admin"
    assert profile.risk_level == RiskLevel.CRITICAL
    assert profile.admin_access
