"""Shared pytest fixtures for iamreach tests."""
import json
import logging
import threading
from collections import Counter

import boto3
import pytest

from iamreach.errors import GatewayError
from iamreach.models import Account, Assignment, IdentityUser, PermissionSetDetails

# moto is imported lazily inside fixtures so the import error surface is clear.

HOME_ACCOUNT = "111111111111"
OTHER_ACCOUNT = "222222222222"
INSTANCE = "arn:aws:sso:::instance/ssoins-1234567890abcdef"
ADMIN_PS = "arn:aws:sso:::permissionSet/ssoins-1234567890abcdef/ps-admin"
READONLY_PS = "arn:aws:sso:::permissionSet/ssoins-1234567890abcdef/ps-readonly"

ADMIN_POLICY = json.dumps(
    {"Version": "2012-10-17", "Statement": [{"Effect": "Allow", "Action": "*", "Resource": "*"}]}
)
READONLY_POLICY = json.dumps(
    {
        "Version": "2012-10-17",
        "Statement": [{"Effect": "Allow", "Action": "s3:Get*", "Resource": "*"}],
    }
)


@pytest.fixture(autouse=True)
def aws_credentials(monkeypatch):
    """Prevent accidental real AWS calls by setting fake credentials."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")
    for name in (
        "IAMREACH_MAX_WORKERS",
        "IAMREACH_NAME_SAMPLE_SIZE",
        "IAMREACH_MAX_RETRIES",
        "IAMREACH_INITIAL_DELAY",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def moto_iam():
    """Yield a real boto3 IAM client inside a moto mock_aws context."""
    from moto import mock_aws

    with mock_aws():
        yield boto3.client("iam", region_name="us-east-1")


@pytest.fixture
def moto_session():
    """Yield a boto3 Session whose clients talk to moto."""
    from moto import mock_aws

    with mock_aws():
        yield boto3.Session(region_name="us-east-1")


# ---------------------------------------------------------------------------
# Fake gateway
# ---------------------------------------------------------------------------


class FakeGateway:
    """In-memory Gateway with scriptable failures and blocking calls.

    ``fail(method, key, error, times=None)`` makes calls to *method* (for
    *key*, or for every key when *key* is None) raise *error*; *times* limits
    how often.  ``block(method, key, event)`` parks matching calls until the
    event is set.
    """

    def __init__(
        self,
        accounts=(),
        assignments=None,
        permission_sets=None,
        policy_documents=None,
        users=None,
        directory=(),
    ):
        self.accounts = list(accounts)
        self.assignments = dict(assignments or {})
        self.permission_sets = dict(permission_sets or {})
        self.policy_documents = dict(policy_documents or {})
        self.users = dict(users or {})
        self.directory = list(directory)
        self.calls = Counter()
        self.in_flight = 0
        self.peak_in_flight = 0
        self._errors = {}
        self._blocks = {}
        self._lock = threading.Lock()

    def fail(self, method, key, error, times=None):
        self._errors[(method, key)] = [error, times]

    def block(self, method, key, event):
        """Park calls to *method* for *key* (every key when None) until *event* is set."""
        self._blocks[(method, key)] = event

    def _enter(self, method, key=None):
        with self._lock:
            self.calls[(method, key)] += 1
            self.in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
            entry = self._errors.get((method, key)) or self._errors.get((method, None))
            error = None
            if entry is not None and (entry[1] is None or entry[1] > 0):
                error = entry[0]
                if entry[1] is not None:
                    entry[1] -= 1
        try:
            event = self._blocks.get((method, key)) or self._blocks.get((method, None))
            if event is not None:
                event.wait(5)
            if error is not None:
                raise error
        finally:
            with self._lock:
                self.in_flight -= 1

    def list_organization_accounts(self):
        self._enter("list_organization_accounts")
        return list(self.accounts)

    def list_assignments_for_principal(self, principal_id):
        self._enter("list_assignments_for_principal", principal_id)
        return list(self.assignments.get(principal_id, ()))

    def describe_permission_set(self, permission_set_arn):
        self._enter("describe_permission_set", permission_set_arn)
        details = self._permission_set(permission_set_arn)
        return PermissionSetDetails(
            arn=details.arn,
            name=details.name,
            description=details.description,
            session_duration=details.session_duration,
        )

    def list_managed_policies(self, permission_set_arn):
        self._enter("list_managed_policies", permission_set_arn)
        return list(self._permission_set(permission_set_arn).managed_policy_arns)

    def list_customer_managed_policy_refs(self, permission_set_arn):
        self._enter("list_customer_managed_policy_refs", permission_set_arn)
        return list(self._permission_set(permission_set_arn).customer_managed_policy_refs)

    def get_inline_policy(self, permission_set_arn):
        self._enter("get_inline_policy", permission_set_arn)
        return self._permission_set(permission_set_arn).inline_policy_document

    def get_managed_policy_document(self, policy_arn):
        self._enter("get_managed_policy_document", policy_arn)
        if policy_arn not in self.policy_documents:
            raise GatewayError(
                f"Policy {policy_arn} was not found.",
                error_code="NoSuchEntity",
                operation="GetPolicyVersion",
            )
        return self.policy_documents[policy_arn]

    def list_permission_sets(self):
        self._enter("list_permission_sets")
        return list(self.permission_sets)

    def describe_user(self, principal_id):
        self._enter("describe_user", principal_id)
        if principal_id not in self.users:
            raise GatewayError(
                "User not found.", error_code="ResourceNotFoundException"
            )
        return self.users[principal_id]

    def list_users(self):
        self._enter("list_users")
        return list(self.directory)

    def _permission_set(self, arn):
        if arn not in self.permission_sets:
            raise GatewayError(
                f"Permission set {arn} not found.",
                error_code="ResourceNotFoundException",
            )
        return self.permission_sets[arn]


@pytest.fixture
def org_gateway():
    """Two accounts; user ``u-1`` is admin at home and read-only elsewhere."""
    return FakeGateway(
        accounts=[
            Account(id=HOME_ACCOUNT, name="Home", email="home@example.com", status="ACTIVE"),
            Account(id=OTHER_ACCOUNT, name="Data", email="data@example.com", status="ACTIVE"),
        ],
        assignments={
            "u-1": [
                Assignment("u-1", HOME_ACCOUNT, ADMIN_PS),
                Assignment("u-1", OTHER_ACCOUNT, READONLY_PS),
            ],
            "u-2": [Assignment("u-2", OTHER_ACCOUNT, READONLY_PS)],
            "u-3": [],
        },
        permission_sets={
            ADMIN_PS: PermissionSetDetails(
                arn=ADMIN_PS, name="PS-Admin", inline_policy_document=ADMIN_POLICY
            ),
            READONLY_PS: PermissionSetDetails(
                arn=READONLY_PS,
                name="PS-ReadOnly",
                inline_policy_document=READONLY_POLICY,
            ),
        },
        users={"u-1": "Alice Example", "u-2": "Bob Example"},
        directory=[
            IdentityUser("u-1", "alice", "Alice Example", ("alice@example.com",)),
            IdentityUser("u-2", "bob", "Bob Example", ("bob@corp.example",)),
            IdentityUser("u-3", "carol", None, ("carol@example.com",)),
        ],
    )


@pytest.fixture(autouse=True)
def reset_iamreach_logger():
    """Undo the handler the CLI installs so caplog keeps working."""
    yield
    logger = logging.getLogger("iamreach")
    logger.handlers[:] = []
    logger.setLevel(logging.NOTSET)
    logger.propagate = True
