"""iamreach CLI entry point."""

from __future__ import annotations

import dataclasses
import logging
import sys
from pathlib import Path
from typing import Optional

import boto3
import botocore.exceptions
import click
from rich.console import Console
from rich.logging import RichHandler

from .analyzer import RiskAnalyzer, permission_set_profile, summarize
from .config import ResolverConfig
from .errors import GatewayError, OperationCancelled
from .formatters import get_formatter
from .gateway import Boto3Gateway
from .models import IdentityUser, RiskLevel
from .policy import action_allowed, parse_document
from .resolver import AccessResolver


@dataclasses.dataclass
class _Settings:
    profile: Optional[str]
    region: Optional[str]
    sso_region: Optional[str]
    instance_arn: Optional[str]
    output: str
    max_workers: Optional[int]
    name_sample_size: Optional[int]


@click.group()
@click.option(
    "--profile",
    default=None,
    envvar="AWS_PROFILE",
    help="AWS credentials profile name.",
)
@click.option(
    "--region",
    default=None,
    envvar="AWS_DEFAULT_REGION",
    help="AWS region.",
)
@click.option(
    "--sso-region",
    default=None,
    envvar="IAMREACH_SSO_REGION",
    help="Region of the IAM Identity Center instance (defaults to --region).",
)
@click.option(
    "--instance-arn",
    default=None,
    envvar="IAMREACH_INSTANCE_ARN",
    help="Identity Center instance ARN; discovered when omitted.",
)
@click.option(
    "--output",
    type=click.Choice(["text", "json"]),
    default="text",
    show_default=True,
    help="Output format.",
)
@click.option(
    "--max-workers",
    type=int,
    default=None,
    envvar="IAMREACH_MAX_WORKERS",
    help="Concurrent AWS calls (1-100).",
)
@click.option(
    "--name-sample-size",
    type=int,
    default=None,
    envvar="IAMREACH_NAME_SAMPLE_SIZE",
    help="Permission-set names resolved per bulk lookup.",
)
@click.option("-v", "--verbose", is_flag=True, help="Log debug output to stderr.")
@click.pass_context
def main(
    ctx: click.Context,
    profile: str | None,
    region: str | None,
    sso_region: str | None,
    instance_arn: str | None,
    output: str,
    max_workers: int | None,
    name_sample_size: int | None,
    verbose: bool,
) -> None:
    """Map which AWS accounts Identity Center users reach, and how risky it is.

    Exit code is 2 for errors; see each command for 0/1.
    """
    _configure_logging(verbose)
    ctx.obj = _Settings(
        profile=profile,
        region=region,
        sso_region=sso_region,
        instance_arn=instance_arn,
        output=output,
        max_workers=max_workers,
        name_sample_size=name_sample_size,
    )


@main.command()
@click.argument("principal_ids", nargs=-1)
@click.option("--all-users", is_flag=True, help="Include every identity store user.")
@click.option(
    "--match",
    "match",
    default=None,
    metavar="TERM",
    help="Include users whose name or email contains TERM (case-insensitive).",
)
@click.option(
    "--timeout",
    type=float,
    default=None,
    help="Give up on unfinished principals after this many seconds.",
)
@click.pass_obj
def access(
    settings: _Settings,
    principal_ids: tuple[str, ...],
    all_users: bool,
    match: str | None,
    timeout: float | None,
) -> None:
    """Show the accounts and permission sets each PRINCIPAL_ID can reach.

    Exit code is 0 when every principal resolved, 1 when any lookup failed.
    """
    _require_targets(principal_ids, all_users, match)
    err = Console(stderr=True, highlight=False)
    resolver = _build_resolver(settings, err)

    users = _enumerate_users(resolver, all_users, match, err)
    ids = list(principal_ids) + [u.id for u in users]
    if not ids:
        err.print("[yellow]No users matched.[/yellow]")
        return

    bulk = resolver.resolve_bulk(ids, timeout=timeout)
    get_formatter(settings.output, console=Console(highlight=False)).render_access(bulk)

    partial = bulk.partial_failure
    if partial is not None:
        err.print(f"[yellow]Warning:[/yellow] {partial}")
        sys.exit(1)


@main.command()
@click.argument("principal_ids", nargs=-1)
@click.option("--all-users", is_flag=True, help="Score every identity store user.")
@click.option(
    "--match",
    "match",
    default=None,
    metavar="TERM",
    help="Score users whose name or email contains TERM (case-insensitive).",
)
@click.option(
    "--home-account",
    default=None,
    help="The principals' home account; every other account counts as cross-account.",
)
@click.pass_obj
def risk(
    settings: _Settings,
    principal_ids: tuple[str, ...],
    all_users: bool,
    match: str | None,
    home_account: str | None,
) -> None:
    """Score the access of one or more PRINCIPAL_IDS.

    One principal gets a full profile; several (or --all-users / --match)
    get a per-user table and a summary.  Exit code is 0 when every score is
    INFO..MEDIUM, 1 for any HIGH or CRITICAL score or failed lookup.
    """
    _require_targets(principal_ids, all_users, match)
    err = Console(stderr=True, highlight=False)
    resolver = _build_resolver(settings, err)
    analyzer = RiskAnalyzer(
        details_fetcher=resolver.fetch_permission_set_details,
        max_workers=resolver.config.max_workers,
    )
    formatter = get_formatter(settings.output, console=Console(highlight=False))

    if len(principal_ids) == 1 and not all_users and match is None:
        try:
            accesses = resolver.resolve_single(principal_ids[0])
            principal = resolver.describe_principal(principal_ids[0], home_account)
            profile = analyzer.analyze_user(principal, accesses)
        except GatewayError as exc:
            _handle_gateway_error(exc, err)
            sys.exit(2)

        formatter.render_profile(profile)
        if profile.risk_level in (RiskLevel.HIGH, RiskLevel.CRITICAL):
            sys.exit(1)
        return

    users = _enumerate_users(resolver, all_users, match, err)
    try:
        by_id = {u.id: u.principal(home_account) for u in users}
        for pid in principal_ids:
            if pid not in by_id:
                by_id[pid] = resolver.describe_principal(pid, home_account)
        principals = list(by_id.values())
        if not principals:
            err.print("[yellow]No users matched.[/yellow]")
            return
        bulk = resolver.resolve_bulk([p.id for p in principals])
        profiles = analyzer.analyze_users(principals, bulk)
    except GatewayError as exc:
        _handle_gateway_error(exc, err)
        sys.exit(2)

    formatter.render_summary(summarize(profiles), profiles=profiles)

    partial = bulk.partial_failure
    if partial is not None:
        err.print(f"[yellow]Warning:[/yellow] {partial}")
    if partial is not None or any(
        p.risk_level in (RiskLevel.HIGH, RiskLevel.CRITICAL) for p in profiles
    ):
        sys.exit(1)


@main.command("permission-sets")
@click.pass_obj
def permission_sets(settings: _Settings) -> None:
    """Score every permission set in the Identity Center instance."""
    err = Console(stderr=True, highlight=False)
    resolver = _build_resolver(settings, err)

    try:
        arns = resolver.list_permission_sets()
        analyzer = RiskAnalyzer(
            details_fetcher=resolver.fetch_permission_set_details,
            max_workers=resolver.config.max_workers,
        )
        risks = analyzer.analyze_permission_sets(arns)
    except GatewayError as exc:
        _handle_gateway_error(exc, err)
        sys.exit(2)

    summary = summarize([permission_set_profile(r) for r in risks])
    get_formatter(settings.output, console=Console(highlight=False)).render_summary(
        summary, risks
    )


@main.command("check-action")
@click.argument(
    "policy_file", type=click.Path(exists=True, dir_okay=False, path_type=Path)
)
@click.argument("action")
@click.pass_obj
def check_action(settings: _Settings, policy_file: Path, action: str) -> None:
    """Check offline whether the policy in POLICY_FILE names ACTION.

    Deny statements and conditions are not evaluated.  Exit code is 0 when
    covered, 1 when not.
    """
    err = Console(stderr=True, highlight=False)
    text = policy_file.read_text(encoding="utf-8")

    parsed = parse_document(text)
    if not parsed.ok:
        err.print(f"[bold red]Error:[/bold red] {parsed.error}")
        sys.exit(2)

    covered = action_allowed(text, action)
    get_formatter(settings.output, console=Console(highlight=False)).render_coverage(
        action, covered, str(policy_file)
    )
    if not covered:
        sys.exit(1)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _configure_logging(verbose: bool) -> None:
    logger = logging.getLogger("iamreach")
    logger.handlers[:] = [
        RichHandler(console=Console(stderr=True), show_path=False, markup=False)
    ]
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    logger.propagate = False


def _build_resolver(settings: _Settings, err: Console) -> AccessResolver:
    try:
        config = ResolverConfig.from_env()
    except ValueError as exc:
        err.print(f"[bold red]Error:[/bold red] {exc}")
        sys.exit(2)

    overrides = {}
    if settings.max_workers is not None:
        overrides["max_workers"] = settings.max_workers
    if settings.name_sample_size is not None:
        overrides["name_sample_size"] = settings.name_sample_size
    try:
        config = dataclasses.replace(config, **overrides)
    except ValueError as exc:
        err.print(f"[bold red]Error:[/bold red] {exc}")
        sys.exit(2)

    try:
        session = boto3.Session(profile_name=settings.profile, region_name=settings.region)
        gateway = Boto3Gateway(
            session,
            instance_arn=settings.instance_arn,
            sso_region=settings.sso_region or settings.region,
        )
    except botocore.exceptions.ProfileNotFound as exc:
        err.print(f"[bold red]Error:[/bold red] {exc}")
        sys.exit(2)
    except botocore.exceptions.BotoCoreError as exc:
        err.print(f"[bold red]AWS error:[/bold red] {exc}")
        sys.exit(2)

    return AccessResolver(gateway, config=config)


def _require_targets(
    principal_ids: tuple[str, ...], all_users: bool, match: Optional[str]
) -> None:
    if not principal_ids and not all_users and match is None:
        raise click.UsageError("Give PRINCIPAL_IDS, --all-users or --match TERM.")


def _enumerate_users(
    resolver: AccessResolver, all_users: bool, match: Optional[str], err: Console
) -> list[IdentityUser]:
    """List (or search) identity store users when asked to; exit 2 on failure."""
    if not all_users and match is None:
        return []
    try:
        if match is not None:
            return resolver.search_users(match)
        return resolver.list_users()
    except GatewayError as exc:
        _handle_gateway_error(exc, err)
        sys.exit(2)


def _handle_gateway_error(exc: GatewayError, console: Console) -> None:
    where = f" during {exc.operation}" if exc.operation else ""
    if isinstance(exc, OperationCancelled):
        console.print(f"[bold red]Error:[/bold red] cancelled{where}")
    elif exc.error_code == "AccessDeniedException" or exc.error_code == "AccessDenied":
        console.print(f"[bold red]Access denied{where}:[/bold red] {exc}")
        console.print(
            "[dim]iamreach needs organizations:ListAccounts, sso:List*/Describe*, "
            "identitystore:DescribeUser/ListUsers and iam:GetPolicy/GetPolicyVersion.[/dim]"
        )
    elif exc.error_code in ("ResourceNotFoundException", "NoSuchEntity"):
        console.print(f"[bold red]Not found{where}:[/bold red] {exc}")
    else:
        console.print(f"[bold red]AWS error ({exc.error_code}){where}:[/bold red] {exc}")
