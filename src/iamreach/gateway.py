"""Control-plane gateway: Organizations, IAM Identity Center and IAM.

``Gateway`` is the protocol the resolver depends on; ``Boto3Gateway`` is the
boto3 implementation.  Every botocore failure leaves this module as a
GatewayError or ThrottlingError.
"""
from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, Optional, Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .errors import GatewayError, classify_client_error
from .models import (
    Account,
    Assignment,
    CustomerManagedPolicyRef,
    IdentityUser,
    PermissionSetDetails,
)

logger = logging.getLogger(__name__)

PRINCIPAL_TYPE_USER = "USER"


class Gateway(Protocol):
    """Operations the resolver needs from the control plane."""

    def list_organization_accounts(self) -> list[Account]: ...

    def list_assignments_for_principal(self, principal_id: str) -> list[Assignment]: ...

    def describe_permission_set(self, permission_set_arn: str) -> PermissionSetDetails: ...

    def list_managed_policies(self, permission_set_arn: str) -> list[str]: ...

    def list_customer_managed_policy_refs(
        self, permission_set_arn: str
    ) -> list[CustomerManagedPolicyRef]: ...

    def get_inline_policy(self, permission_set_arn: str) -> Optional[str]: ...

    def get_managed_policy_document(self, policy_arn: str) -> Optional[Any]: ...

    def list_permission_sets(self) -> list[str]: ...

    def describe_user(self, principal_id: str) -> Optional[str]: ...

    def list_users(self) -> list[IdentityUser]: ...


class Boto3Gateway:
    """
    Gateway backed by boto3 clients built from one *session*.

    The Identity Center instance is discovered with ``ListInstances`` on first
    use unless *instance_arn* / *identity_store_id* are given.  *sso_region*
    is the region Identity Center lives in, which may differ from the
    session's default region.
    """

    def __init__(
        self,
        session: boto3.Session,
        instance_arn: Optional[str] = None,
        identity_store_id: Optional[str] = None,
        sso_region: Optional[str] = None,
    ) -> None:
        self._org = session.client("organizations")
        self._iam = session.client("iam")
        self._sso = session.client("sso-admin", region_name=sso_region)
        self._identity = session.client("identitystore", region_name=sso_region)
        self._instance_arn = instance_arn
        self._identity_store_id = identity_store_id
        self._instance_lock = threading.Lock()

    # -- Organizations -------------------------------------------------------

    def list_organization_accounts(self) -> list[Account]:
        accounts: list[Account] = []
        with _aws_call("ListAccounts"):
            for page in self._org.get_paginator("list_accounts").paginate():
                for acc in page.get("Accounts", []):
                    accounts.append(
                        Account(
                            id=acc["Id"],
                            name=acc.get("Name", acc["Id"]),
                            email=acc.get("Email", ""),
                            status=acc.get("Status", "UNKNOWN"),
                        )
                    )
        logger.debug("Listed %d organization accounts", len(accounts))
        return accounts

    # -- Identity Center -----------------------------------------------------

    def list_assignments_for_principal(self, principal_id: str) -> list[Assignment]:
        instance_arn = self.instance_arn
        assignments: list[Assignment] = []
        with _aws_call("ListAccountAssignmentsForPrincipal"):
            paginator = self._sso.get_paginator("list_account_assignments_for_principal")
            for page in paginator.paginate(
                InstanceArn=instance_arn,
                PrincipalId=principal_id,
                PrincipalType=PRINCIPAL_TYPE_USER,
            ):
                for a in page.get("AccountAssignments", []):
                    assignments.append(
                        Assignment(
                            principal_id=a.get("PrincipalId", principal_id),
                            account_id=a["AccountId"],
                            permission_set_arn=a["PermissionSetArn"],
                        )
                    )
        return assignments

    def describe_permission_set(self, permission_set_arn: str) -> PermissionSetDetails:
        with _aws_call("DescribePermissionSet"):
            resp = self._sso.describe_permission_set(
                InstanceArn=self.instance_arn, PermissionSetArn=permission_set_arn
            )
        ps = resp["PermissionSet"]
        return PermissionSetDetails(
            arn=permission_set_arn,
            name=ps.get("Name") or permission_set_arn,
            description=ps.get("Description"),
            session_duration=ps.get("SessionDuration"),
        )

    def list_managed_policies(self, permission_set_arn: str) -> list[str]:
        arns: list[str] = []
        with _aws_call("ListManagedPoliciesInPermissionSet"):
            paginator = self._sso.get_paginator("list_managed_policies_in_permission_set")
            for page in paginator.paginate(
                InstanceArn=self.instance_arn, PermissionSetArn=permission_set_arn
            ):
                arns.extend(p["Arn"] for p in page.get("AttachedManagedPolicies", []))
        return arns

    def list_customer_managed_policy_refs(
        self, permission_set_arn: str
    ) -> list[CustomerManagedPolicyRef]:
        refs: list[CustomerManagedPolicyRef] = []
        with _aws_call("ListCustomerManagedPolicyReferencesInPermissionSet"):
            paginator = self._sso.get_paginator(
                "list_customer_managed_policy_references_in_permission_set"
            )
            for page in paginator.paginate(
                InstanceArn=self.instance_arn, PermissionSetArn=permission_set_arn
            ):
                for ref in page.get("CustomerManagedPolicyReferences", []):
                    refs.append(
                        CustomerManagedPolicyRef(
                            name=ref["Name"], path=ref.get("Path", "/")
                        )
                    )
        return refs

    def get_inline_policy(self, permission_set_arn: str) -> Optional[str]:
        with _aws_call("GetInlinePolicyForPermissionSet"):
            resp = self._sso.get_inline_policy_for_permission_set(
                InstanceArn=self.instance_arn, PermissionSetArn=permission_set_arn
            )
        # The API returns an empty string when no inline policy is attached.
        return resp.get("InlinePolicy") or None

    def list_permission_sets(self) -> list[str]:
        arns: list[str] = []
        with _aws_call("ListPermissionSets"):
            paginator = self._sso.get_paginator("list_permission_sets")
            for page in paginator.paginate(InstanceArn=self.instance_arn):
                arns.extend(page.get("PermissionSets", []))
        return arns

    def describe_user(self, principal_id: str) -> Optional[str]:
        """Return the identity-store display name (or user name) of a user."""
        if not self._identity_store_id:
            self._discover_instance()
        with _aws_call("DescribeUser"):
            resp = self._identity.describe_user(
                IdentityStoreId=self._identity_store_id, UserId=principal_id
            )
        return resp.get("DisplayName") or resp.get("UserName")

    def list_users(self) -> list[IdentityUser]:
        """List every user in the identity store."""
        if not self._identity_store_id:
            self._discover_instance()
        users: list[IdentityUser] = []
        with _aws_call("ListUsers"):
            paginator = self._identity.get_paginator("list_users")
            for page in paginator.paginate(IdentityStoreId=self._identity_store_id):
                for u in page.get("Users", []):
                    users.append(
                        IdentityUser(
                            id=u["UserId"],
                            user_name=u.get("UserName", ""),
                            display_name=u.get("DisplayName"),
                            emails=tuple(
                                e["Value"] for e in u.get("Emails", []) if e.get("Value")
                            ),
                        )
                    )
        logger.debug("Listed %d identity store users", len(users))
        return users

    # -- IAM -----------------------------------------------------------------

    def get_managed_policy_document(self, policy_arn: str) -> Optional[Any]:
        """
        Return the default version document of a managed policy.

        boto3 decodes IAM policy documents, so this is normally a dict; a
        string is returned as-is for the normalizer to decode.
        """
        with _aws_call("GetPolicyVersion"):
            pol = self._iam.get_policy(PolicyArn=policy_arn)["Policy"]
            version = self._iam.get_policy_version(
                PolicyArn=policy_arn, VersionId=pol["DefaultVersionId"]
            )["PolicyVersion"]
        return version.get("Document")

    # -- Instance discovery --------------------------------------------------

    @property
    def instance_arn(self) -> str:
        if not self._instance_arn:
            self._discover_instance()
        return self._instance_arn  # type: ignore[return-value]

    def _discover_instance(self) -> None:
        with self._instance_lock:
            if self._instance_arn and self._identity_store_id:
                return
            with _aws_call("ListInstances"):
                instances: list[dict] = []
                for page in self._sso.get_paginator("list_instances").paginate():
                    instances.extend(page.get("Instances", []))
            if not instances:
                raise GatewayError(
                    "No IAM Identity Center instance found in this region.",
                    error_code="NoSSOInstance",
                    operation="ListInstances",
                )
            first = instances[0]
            if not self._instance_arn:
                self._instance_arn = first["InstanceArn"]
            if not self._identity_store_id:
                self._identity_store_id = first.get("IdentityStoreId")
            logger.debug("Using Identity Center instance %s", self._instance_arn)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


@contextmanager
def _aws_call(operation: str) -> Iterator[None]:
    try:
        yield
    except (ClientError, BotoCoreError) as exc:
        raise classify_client_error(exc, operation=operation) from exc
