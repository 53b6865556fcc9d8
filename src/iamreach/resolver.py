"""Resolve which accounts and permission sets principals can reach.

All gateway calls go through ``call_with_retry`` and run on a bounded
thread pool.  Worker threads never write shared state: each returns its
own Result and only the calling thread merges them.
"""
from __future__ import annotations

import dataclasses
import logging
import threading
import time
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from functools import partial
from typing import Optional, TypeVar

from .config import ResolverConfig
from .errors import GatewayError, OperationCancelled
from .gateway import Gateway
from .models import (
    Account,
    Assignment,
    BulkAccessResult,
    CrossAccountAccess,
    IdentityUser,
    PermissionSetDetails,
    PermissionSetRef,
    Principal,
    PrincipalAccessResult,
    Result,
)
from .retry import call_with_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")

# How often the bulk loop re-checks the cancel event while waiting.
_POLL_INTERVAL = 0.1


class AccessResolver:
    """
    Build principal -> account -> permission-set graphs from a Gateway.

    The gateway is injected so tests can substitute a fake; *sleep* is the
    backoff sleep used when no cancel event is supplied.
    """

    def __init__(
        self,
        gateway: Gateway,
        config: Optional[ResolverConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.gateway = gateway
        self.config = config or ResolverConfig()
        self._sleep = sleep

    # -----------------------------------------------------------------------
    # Bulk
    # -----------------------------------------------------------------------

    def resolve_bulk(
        self,
        principal_ids: Iterable[str],
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> BulkAccessResult:
        """
        Resolve account access for many principals at once.

        Never raises for gateway failures.  A principal whose lookup fails
        keeps one ``has_access=False`` entry per account and carries the
        error, so "no access" and "lookup failed" stay distinguishable.

        Only ``config.name_sample_size`` distinct permission-set ARNs get
        their names looked up; the others display the ARN.

        *cancel* aborts outstanding work when set; *timeout* (seconds) sets
        it automatically.  Principals finished before that keep their
        results, the rest report OperationCancelled.
        """
        ids = list(dict.fromkeys(principal_ids))
        cancel = cancel or threading.Event()
        timer: Optional[threading.Timer] = None
        if timeout is not None:
            timer = threading.Timer(timeout, cancel.set)
            timer.daemon = True
            timer.start()

        logger.info(
            "Resolving access for %d principal(s), max_workers=%d",
            len(ids),
            self.config.max_workers,
        )
        try:
            accounts_result = self._call(
                self.gateway.list_organization_accounts, "ListAccounts", cancel
            )
            if not accounts_result.ok:
                logger.warning(
                    "Could not list organization accounts: %s", accounts_result.error
                )
                return BulkAccessResult(
                    results={
                        pid: PrincipalAccessResult(
                            principal_id=pid, accounts=(), error=accounts_result.error
                        )
                        for pid in ids
                    }
                )
            accounts = tuple(accounts_result.unwrap())
            checked_at = _now()

            assignment_results = self._run_all(
                {
                    pid: partial(self.gateway.list_assignments_for_principal, pid)
                    for pid in ids
                },
                "ListAccountAssignmentsForPrincipal",
                cancel,
            )

            distinct_arns = sorted(
                {
                    a.permission_set_arn
                    for r in assignment_results.values()
                    if r.ok
                    for a in r.unwrap()
                }
            )
            sample = distinct_arns[: self.config.name_sample_size]
            if len(distinct_arns) > len(sample):
                logger.info(
                    "Resolving names for %d of %d permission sets",
                    len(sample),
                    len(distinct_arns),
                )
            names = self._resolve_names(sample, cancel)

            results: dict[str, PrincipalAccessResult] = {}
            for pid in ids:
                result = assignment_results[pid]
                if result.ok:
                    results[pid] = PrincipalAccessResult(
                        principal_id=pid,
                        accounts=_build_access(
                            accounts, result.unwrap(), names, checked_at
                        ),
                    )
                else:
                    logger.warning(
                        "Access resolution failed for principal %s: %s",
                        pid,
                        result.error,
                    )
                    results[pid] = PrincipalAccessResult(
                        principal_id=pid,
                        accounts=_build_access(accounts, (), names, checked_at),
                        error=result.error,
                    )
        finally:
            if timer is not None:
                timer.cancel()

        bulk = BulkAccessResult(results=results)
        logger.info(
            "Resolved %d principal(s), %d failed",
            len(ids),
            len(bulk.failures),
        )
        return bulk

    # -----------------------------------------------------------------------
    # Single
    # -----------------------------------------------------------------------

    def resolve_single(
        self, principal_id: str, cancel: Optional[threading.Event] = None
    ) -> list[CrossAccountAccess]:
        """
        Resolve one principal, naming every permission set it holds.

        Raises:
            GatewayError: listing accounts or assignments failed (a
                ThrottlingError when retries were exhausted).
        """
        accounts = self._call(
            self.gateway.list_organization_accounts, "ListAccounts", cancel
        ).unwrap()
        checked_at = _now()
        assignments = self._call(
            partial(self.gateway.list_assignments_for_principal, principal_id),
            "ListAccountAssignmentsForPrincipal",
            cancel,
        ).unwrap()
        arns = sorted({a.permission_set_arn for a in assignments})
        names = self._resolve_names(arns, cancel)
        return list(_build_access(accounts, assignments, names, checked_at))

    # -----------------------------------------------------------------------
    # Permission sets and principals
    # -----------------------------------------------------------------------

    def fetch_permission_set_details(
        self, permission_set_arn: str, cancel: Optional[threading.Event] = None
    ) -> PermissionSetDetails:
        """
        Describe a permission set together with all of its policies.

        Managed policy documents that cannot be fetched are left out; the
        analyzer falls back to judging those policies by ARN.

        Raises:
            GatewayError: describing the permission set or listing its
                policies failed.
        """
        gw = self.gateway
        base = self._call(
            partial(gw.describe_permission_set, permission_set_arn),
            "DescribePermissionSet",
            cancel,
        ).unwrap()
        managed = self._call(
            partial(gw.list_managed_policies, permission_set_arn),
            "ListManagedPoliciesInPermissionSet",
            cancel,
        ).unwrap()
        customer = self._call(
            partial(gw.list_customer_managed_policy_refs, permission_set_arn),
            "ListCustomerManagedPolicyReferencesInPermissionSet",
            cancel,
        ).unwrap()
        inline = self._call(
            partial(gw.get_inline_policy, permission_set_arn),
            "GetInlinePolicyForPermissionSet",
            cancel,
        ).unwrap()

        documents = {}
        for policy_arn in managed:
            doc = self._call(
                partial(gw.get_managed_policy_document, policy_arn),
                "GetPolicyVersion",
                cancel,
            )
            if isinstance(doc.error, OperationCancelled):
                raise doc.error
            if doc.ok and doc.value is not None:
                documents[policy_arn] = doc.value
            else:
                logger.warning(
                    "Policy document for %s unavailable (%s); judging it by ARN",
                    policy_arn,
                    doc.error,
                )

        return dataclasses.replace(
            base,
            managed_policy_arns=tuple(managed),
            customer_managed_policy_refs=tuple(customer),
            inline_policy_document=inline,
            managed_policy_documents=documents,
        )

    def list_permission_sets(
        self, cancel: Optional[threading.Event] = None
    ) -> list[str]:
        return self._call(
            self.gateway.list_permission_sets, "ListPermissionSets", cancel
        ).unwrap()

    def list_users(self, cancel: Optional[threading.Event] = None) -> list[IdentityUser]:
        return self._call(self.gateway.list_users, "ListUsers", cancel).unwrap()

    def search_users(
        self, term: str, cancel: Optional[threading.Event] = None
    ) -> list[IdentityUser]:
        """
        Users whose user name, display name or an email contains *term*.

        Matching is case-insensitive; an empty *term* matches everyone.
        """
        needle = term.lower()
        return [
            user
            for user in self.list_users(cancel)
            if needle in user.user_name.lower()
            or needle in (user.display_name or "").lower()
            or any(needle in email.lower() for email in user.emails)
        ]

    def describe_principal(
        self,
        principal_id: str,
        home_account_id: Optional[str] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Principal:
        """Look up a display name; fall back to the id when it is unknown."""
        result = self._call(
            partial(self.gateway.describe_user, principal_id), "DescribeUser", cancel
        )
        if isinstance(result.error, OperationCancelled):
            raise result.error
        if not result.ok:
            logger.warning(
                "Could not describe principal %s: %s", principal_id, result.error
            )
        return Principal(
            id=principal_id,
            display_name=result.value or principal_id,
            home_account_id=home_account_id,
        )

    # -----------------------------------------------------------------------
    # Internal helpers
    # -----------------------------------------------------------------------

    def _call(
        self,
        operation: Callable[[], T],
        name: str,
        cancel: Optional[threading.Event],
    ) -> Result[T]:
        return call_with_retry(
            operation, self.config.retry, cancel=cancel, sleep=self._sleep, name=name
        )

    def _run_all(
        self,
        operations: dict[str, Callable[[], T]],
        name: str,
        cancel: threading.Event,
    ) -> dict[str, Result[T]]:
        """
        Run keyed operations on the worker pool and collect their Results.

        Keys still outstanding when *cancel* is set are reported as
        OperationCancelled; completed ones are kept.
        """
        results: dict[str, Result[T]] = {}
        if not operations:
            return results

        executor = ThreadPoolExecutor(
            max_workers=self.config.max_workers, thread_name_prefix="iamreach"
        )
        try:
            futures: dict[Future, str] = {
                executor.submit(self._call, op, name, cancel): key
                for key, op in operations.items()
            }
            pending = set(futures)
            while pending and not cancel.is_set():
                done, pending = wait(
                    pending, timeout=_POLL_INTERVAL, return_when=FIRST_COMPLETED
                )
                for future in done:
                    results[futures[future]] = _future_result(future, name)
            if pending:
                # pick up anything that finished as the cancel landed
                done, pending = wait(pending, timeout=0)
                for future in done:
                    results[futures[future]] = _future_result(future, name)
                for future in pending:
                    future.cancel()
                    results[futures[future]] = Result.failure(
                        OperationCancelled(operation=name)
                    )
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
        return results

    def _resolve_names(
        self, arns: Sequence[str], cancel: Optional[threading.Event]
    ) -> dict[str, str]:
        """Describe *arns* concurrently; failures keep the ARN as name."""
        described = self._run_all(
            {arn: partial(self.gateway.describe_permission_set, arn) for arn in arns},
            "DescribePermissionSet",
            cancel or threading.Event(),
        )
        names: dict[str, str] = {}
        for arn, result in described.items():
            if result.ok:
                names.setdefault(arn, result.unwrap().name)
            else:
                logger.warning(
                    "Could not resolve name of permission set %s: %s",
                    arn,
                    result.error,
                )
        return names


# ---------------------------------------------------------------------------
# Module helpers
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _future_result(future: Future, name: str) -> Result:
    try:
        return future.result()
    except Exception as exc:  # isolate one bad response from the batch
        logger.error("%s raised unexpectedly: %s", name, exc, exc_info=True)
        return Result.failure(
            GatewayError(str(exc), error_code=exc.__class__.__name__, operation=name)
        )


def _build_access(
    accounts: Sequence[Account],
    assignments: Iterable[Assignment],
    names: dict[str, str],
    checked_at: datetime,
) -> tuple[CrossAccountAccess, ...]:
    by_account: dict[str, list[str]] = {}
    for a in assignments:
        arns = by_account.setdefault(a.account_id, [])
        if a.permission_set_arn not in arns:
            arns.append(a.permission_set_arn)

    unknown = set(by_account) - {acc.id for acc in accounts}
    if unknown:
        logger.debug(
            "Ignoring assignments to accounts outside the organization list: %s",
            ", ".join(sorted(unknown)),
        )

    return tuple(
        CrossAccountAccess(
            account_id=acc.id,
            account_name=acc.name,
            has_access=acc.id in by_account,
            permission_sets=tuple(
                PermissionSetRef(arn=arn, name=names.get(arn, arn))
                for arn in by_account.get(acc.id, ())
            ),
            last_checked=checked_at,
        )
        for acc in accounts
    )


