"""Render access maps and risk results to the terminal (Rich) or as JSON."""
from __future__ import annotations

import dataclasses
import json
from collections.abc import Mapping, Sequence
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .calculator import risk_description
from .errors import GatewayError, IamReachError
from .models import (
    BulkAccessResult,
    PermissionSetRisk,
    RiskLevel,
    RiskSummary,
    UserRiskProfile,
)

_LEVEL_STYLES = {
    RiskLevel.CRITICAL: "bold red",
    RiskLevel.HIGH: "red",
    RiskLevel.MEDIUM: "yellow",
    RiskLevel.LOW: "green",
    RiskLevel.INFO: "dim",
}


# ---------------------------------------------------------------------------
# Public interface
# ---------------------------------------------------------------------------

class TextFormatter:
    """Renders results using Rich for human-readable terminal output."""

    def __init__(self, console: Optional[Console] = None) -> None:
        self.console = console or Console(highlight=False)

    def render_access(self, bulk: BulkAccessResult) -> None:
        c = self.console
        for pid in sorted(bulk.results):
            result = bulk.results[pid]
            c.print(f"[bold]Principal:[/bold] {pid}")
            if result.error is not None:
                c.print(f"[bold red]Lookup failed:[/bold red] {_error_text(result.error)}")
                c.print()
                continue
            accessible = result.accessible_accounts
            if not accessible:
                c.print("[dim](no account access)[/dim]")
                c.print()
                continue

            table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
            table.add_column("Account", style="dim")
            table.add_column("Name")
            table.add_column("Permission sets")
            for access in accessible:
                names = ", ".join(
                    entry if isinstance(entry, str) else entry.name
                    for entry in access.permission_sets
                )
                table.add_row(access.account_id, access.account_name, names)
            c.print(table)
            c.print(
                f"[dim]{len(accessible)} of {len(result.accounts)} account(s) reachable[/dim]"
            )
            c.print()

    def render_profile(self, profile: UserRiskProfile) -> None:
        c = self.console
        c.print(f"[bold]Principal:[/bold] {profile.display_name} ({profile.principal_id})")
        c.print()

        verdict = Text()
        verdict.append("Risk: ", style="bold")
        verdict.append(
            f"{profile.risk_level.value} ({profile.overall_risk_score}/10)",
            style=_LEVEL_STYLES[profile.risk_level],
        )
        verdict.append(f"  {risk_description(profile.risk_level)}", style="dim")
        c.print(verdict)
        c.print(
            f"[bold]Permission sets:[/bold] {profile.total_permission_sets}  "
            f"[bold]Admin:[/bold] {_yes_no(profile.admin_access)}  "
            f"[bold]Cross-account:[/bold] {_yes_no(profile.cross_account_access)}"
        )

        if profile.account_access:
            c.print()
            table = Table(
                title="Accounts",
                show_header=True,
                header_style="bold",
                box=None,
                padding=(0, 2),
            )
            table.add_column("Account", style="dim")
            table.add_column("Name")
            table.add_column("Score", justify="right")
            table.add_column("Level")
            table.add_column("Permission sets")
            for summary in profile.account_access:
                table.add_row(
                    summary.account_id,
                    summary.account_name,
                    str(summary.risk_score),
                    _level_text(summary.risk_level),
                    ", ".join(
                        f"{ps.name} ({ps.risk_score})" for ps in summary.permission_sets
                    ),
                )
            c.print(table)

        c.print()
        if profile.findings:
            self._render_findings(profile)
        else:
            c.print("[bold]Findings:[/bold] [dim](none)[/dim]")

    def render_summary(
        self,
        summary: RiskSummary,
        risks: Sequence[PermissionSetRisk] = (),
        profiles: Sequence[UserRiskProfile] = (),
    ) -> None:
        c = self.console
        if profiles:
            table = Table(
                title="Users",
                show_header=True,
                header_style="bold",
                box=None,
                padding=(0, 1),
            )
            table.add_column("User")
            table.add_column("Id", style="dim")
            table.add_column("Score", justify="right")
            table.add_column("Level")
            table.add_column("Admin")
            table.add_column("Cross-account")
            table.add_column("Findings", justify="right")
            for p in sorted(profiles, key=lambda p: (-p.overall_risk_score, p.display_name)):
                table.add_row(
                    p.display_name,
                    p.principal_id,
                    str(p.overall_risk_score),
                    _level_text(p.risk_level),
                    _yes_no(p.admin_access),
                    _yes_no(p.cross_account_access),
                    str(len(p.findings)),
                )
            c.print(table)
            c.print()
        if risks:
            table = Table(
                title="Permission sets",
                show_header=True,
                header_style="bold",
                box=None,
                padding=(0, 2),
            )
            table.add_column("Name")
            table.add_column("Score", justify="right")
            table.add_column("Level")
            table.add_column("Admin")
            table.add_column("Sensitive services", style="dim")
            for risk in sorted(risks, key=lambda r: (-r.risk_score, r.name)):
                table.add_row(
                    risk.name,
                    str(risk.risk_score),
                    _level_text(risk.risk_level),
                    _yes_no(risk.admin_permissions),
                    ", ".join(risk.sensitive_services) or "-",
                )
            c.print(table)
            c.print()

        lines = [
            f"Analyzed:        {summary.total}",
            f"Critical:        {summary.critical}",
            f"High or worse:   {summary.high_risk}",
            f"Admin access:    {summary.admin}",
            f"Cross-account:   {summary.cross_account}",
            f"Average score:   {summary.average_risk_score:.1f}",
            f"Findings:        {summary.total_findings}",
        ]
        for level, count in sorted(summary.findings_by_level.items()):
            lines.append(f"  {level}: {count}")
        c.print(Panel("\n".join(lines), title="[bold]Risk summary[/bold]", expand=False))

    def render_coverage(self, action: str, covered: bool, source: str) -> None:
        label = Text()
        label.append(f"{action}: ", style="bold")
        if covered:
            label.append("COVERED", style="bold green")
        else:
            label.append("NOT COVERED", style="bold yellow")
        self.console.print(label)
        self.console.print(f"[dim]by {source}[/dim]")

    def _render_findings(self, profile: UserRiskProfile) -> None:
        table = Table(
            title="Findings",
            show_header=True,
            header_style="bold",
            box=None,
            padding=(0, 2),
        )
        table.add_column("Level")
        table.add_column("Sev", justify="right")
        table.add_column("Title")
        table.add_column("Resource", style="dim")
        for f in sorted(profile.findings, key=lambda f: -f.severity):
            table.add_row(
                _level_text(f.risk_level), str(f.severity), f.title, f.resource_name
            )
        self.console.print(table)


class JsonFormatter:
    """Renders results as JSON documents to stdout."""

    def __init__(self, indent: int = 2) -> None:
        self.indent = indent

    def render_access(self, bulk: BulkAccessResult) -> None:
        data = {
            pid: {
                "ok": r.ok,
                "error": _error_dict(r.error),
                "accounts": to_jsonable(r.accounts),
            }
            for pid, r in sorted(bulk.results.items())
        }
        self._emit(data)

    def render_profile(self, profile: UserRiskProfile) -> None:
        self._emit(to_jsonable(profile))

    def render_summary(
        self,
        summary: RiskSummary,
        risks: Sequence[PermissionSetRisk] = (),
        profiles: Sequence[UserRiskProfile] = (),
    ) -> None:
        self._emit(
            {
                "summary": to_jsonable(summary),
                "permission_sets": to_jsonable(risks),
                "users": to_jsonable(profiles),
            }
        )

    def render_coverage(self, action: str, covered: bool, source: str) -> None:
        self._emit({"action": action, "covered": covered, "source": source})

    def _emit(self, data: Any) -> None:
        print(json.dumps(data, indent=self.indent))


def get_formatter(
    output: str, console: Optional[Console] = None
) -> TextFormatter | JsonFormatter:
    """Factory: ``'text'`` → TextFormatter, ``'json'`` → JsonFormatter."""
    if output == "json":
        return JsonFormatter()
    return TextFormatter(console=console)


def to_jsonable(value: Any) -> Any:
    """Convert result dataclasses into plain JSON-compatible values."""
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {
            f.name: to_jsonable(getattr(value, f.name))
            for f in dataclasses.fields(value)
        }
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_jsonable(v) for v in value]
    if isinstance(value, IamReachError):
        return _error_dict(value)
    return value


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _level_text(level: RiskLevel) -> Text:
    return Text(level.value, style=_LEVEL_STYLES[level])


def _yes_no(flag: bool) -> str:
    return "yes" if flag else "no"


def _error_text(error: IamReachError) -> str:
    if isinstance(error, GatewayError):
        return f"({error.error_code}) {error}"
    return str(error)


def _error_dict(error: Optional[IamReachError]) -> Optional[dict]:
    if error is None:
        return None
    return {
        "type": error.__class__.__name__,
        "code": getattr(error, "error_code", None),
        "message": str(error),
    }
