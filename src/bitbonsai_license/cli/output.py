"""Output formatting for the ``bitbonsai-license`` CLI.

Every public function accepts a ``json_mode`` flag:
    - ``True``  -> JSON envelope ``{status, data, error}`` for scripts
    - ``False`` -> Rich-formatted text for humans
"""

from __future__ import annotations

import json
from io import StringIO
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text


def _render(renderable: Any) -> str:
    """Render a Rich object to a string."""
    buf = StringIO()
    console = Console(file=buf, force_terminal=False, width=110)
    console.print(renderable)
    return buf.getvalue().rstrip("\n")


def _dump(status: str, data: Any = None, error: Optional[Dict[str, Any]] = None) -> str:
    envelope: Dict[str, Any] = {"status": status}
    if data is not None:
        envelope["data"] = data
    if error is not None:
        envelope["error"] = error
    return json.dumps(envelope, indent=2, sort_keys=False)


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------


def format_response(
    status: str,
    data: Optional[Dict[str, Any]] = None,
    error: Optional[Dict[str, Any]] = None,
    *,
    json_mode: bool = False,
) -> str:
    """Build a standard ``{status, data, error}`` response."""
    if json_mode:
        return _dump(status, data, error)

    if status == "error" and error:
        t = Text()
        t.append("Error", style="bold red")
        t.append(f" [{error.get('code', 'UNKNOWN')}]: ", style="red")
        t.append(error.get("message", "An unknown error occurred."))
        return _render(Panel(t, title="Error", border_style="red"))

    if data:
        lines = [f"[bold]{k}:[/bold] {v}" for k, v in data.items()]
        return _render(Panel("\n".join(lines), border_style="green"))

    return f"Status: {status}"


def format_error(message: str, code: str = "ERROR", *, json_mode: bool = False) -> str:
    """Shortcut for a standard error response."""
    return format_response("error", error={"code": code, "message": message}, json_mode=json_mode)


# ---------------------------------------------------------------------------
# Licenses
# ---------------------------------------------------------------------------


def format_license(license_: Dict[str, Any], *, json_mode: bool = False) -> str:
    """Format one license record, key included."""
    if json_mode:
        return _dump("success", license_)

    style = "green" if license_.get("status") == "ACTIVE" else "red"
    lines = [
        f"[bold]ID:[/bold] {license_['id']}",
        f"[bold]Email:[/bold] {license_['email']}",
        f"[bold]Tier:[/bold] {license_['tier']}",
        f"[bold]Status:[/bold] [{style}]{license_['status']}[/{style}]",
        f"[bold]Limits:[/bold] {license_['maxNodes']} nodes / {license_['maxConcurrentJobs']} jobs",
        f"[bold]Expires:[/bold] {license_.get('expiresAt') or 'never'}",
        f"[bold]Provider:[/bold] {license_['provider']}",
    ]
    if license_.get("revokedReason"):
        lines.append(f"[bold]Revoked:[/bold] {license_.get('revokedAt')} ({license_['revokedReason']})")
    lines.append("")
    lines.append(license_["key"])
    return _render(Panel("\n".join(lines), title="License", border_style=style))


def format_licenses(licenses: List[Dict[str, Any]], total: int, *, json_mode: bool = False) -> str:
    if json_mode:
        return _dump("success", {"licenses": licenses, "count": len(licenses), "total": total})

    if not licenses:
        return _render(Panel("No licenses found.", border_style="yellow"))

    table = Table(title=f"Licenses ({len(licenses)} of {total})", border_style="blue")
    table.add_column("ID", style="bold")
    table.add_column("Email")
    table.add_column("Tier")
    table.add_column("Status")
    table.add_column("Provider")
    table.add_column("Created")
    for lic in licenses:
        status_style = "green" if lic["status"] == "ACTIVE" else "red"
        table.add_row(
            lic["id"],
            lic["email"],
            lic["tier"],
            f"[{status_style}]{lic['status']}[/{status_style}]",
            lic["provider"],
            (lic.get("createdAt") or "")[:19],
        )
    return _render(table)


def format_verification(result: Dict[str, Any], *, json_mode: bool = False) -> str:
    if json_mode:
        return _dump("success" if result["valid"] else "invalid", result)

    if not result["valid"]:
        return _render(Panel(f"[bold red]INVALID[/bold red]: {result.get('error')}", border_style="red"))
    lic = result["license"]
    lines = [
        "[bold green]VALID[/bold green]",
        f"[bold]Email:[/bold] {lic['email']}",
        f"[bold]Tier:[/bold] {lic['tier']}",
        f"[bold]Limits:[/bold] {lic['maxNodes']} nodes / {lic['maxConcurrentJobs']} jobs",
        f"[bold]Issued:[/bold] {lic['issuedAt']}",
        f"[bold]Expires:[/bold] {lic.get('expiresAt') or 'never'}",
    ]
    if result.get("offline"):
        lines.append("[dim]Checked offline: revocation not reflected.[/dim]")
    return _render(Panel("\n".join(lines), border_style="green"))


# ---------------------------------------------------------------------------
# Webhook ledger / pricing
# ---------------------------------------------------------------------------


def format_events(events: List[Dict[str, Any]], *, json_mode: bool = False) -> str:
    if json_mode:
        return _dump("success", {"events": events, "count": len(events)})

    if not events:
        return _render(Panel("No webhook events recorded.", border_style="yellow"))

    colours = {"PROCESSED": "green", "FAILED": "red", "PENDING": "yellow"}
    table = Table(title="Webhook Events", border_style="blue")
    table.add_column("Provider", style="bold")
    table.add_column("Event ID")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("License")
    table.add_column("Error")
    for ev in events:
        colour = colours.get(ev["status"], "white")
        table.add_row(
            ev["provider"],
            ev["providerEventId"],
            ev["eventType"],
            f"[{colour}]{ev['status']}[/{colour}]",
            ev.get("licenseId") or "",
            ev.get("error") or "",
        )
    return _render(table)


def format_pricing(tiers: List[Dict[str, Any]], *, json_mode: bool = False) -> str:
    if json_mode:
        return _dump("success", {"tiers": tiers, "count": len(tiers)})

    if not tiers:
        return _render(Panel("No pricing tiers.  Run 'bitbonsai-license pricing seed'.", border_style="yellow"))

    table = Table(title="Pricing Tiers", border_style="blue")
    table.add_column("Tier", style="bold")
    table.add_column("Name")
    table.add_column("Nodes", justify="right")
    table.add_column("Jobs", justify="right")
    table.add_column("Monthly", justify="right")
    table.add_column("Stripe price")
    table.add_column("Active")
    for t in tiers:
        table.add_row(
            t["name"],
            t["displayName"],
            str(t["maxNodes"]),
            str(t["maxConcurrentJobs"]),
            f"${t['priceMonthly'] / 100:.2f}",
            t.get("stripePriceIdMonthly") or "",
            "✓" if t["isActive"] else "",
        )
    return _render(table)
