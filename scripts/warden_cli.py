#!/usr/bin/env python3
"""
Warden CLI
==========

Read-only operator views built from the audit log and the budget ledger.
Approvals are resolved through the HTTP API so they are attributed to an
authenticated approver.

Commands:
    pending     List pending approval requests
    show        Show details of one request
    audit       Tail the audit log
    budget      Current month spend per tier
    replay      Escalation attempt history per task

Usage:
    python scripts/warden_cli.py pending
    python scripts/warden_cli.py show APR-0003
    python scripts/warden_cli.py audit --limit 50 --agent Warden
    python scripts/warden_cli.py budget
    python scripts/warden_cli.py replay task_1a2b3c
"""

import sys
import argparse
import asyncio
from pathlib import Path
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

sys.path.insert(0, str(Path(__file__).parent.parent))

from ghost_core.audit_trail import AuditLevel, AuditLog, format_timestamp
from ghost_core.budget_ledger import BudgetLedger
from ghost_core.config import load_config
from ghost_core.errors import ApprovalNotFound
from ghost_core.escalation_governor import EscalationGovernor
from ghost_core.warden import Warden

console = Console()

_LEVEL_STYLES = {
    "INFO": "white",
    "WARN": "yellow",
    "ERROR": "red",
    "BLOCK": "magenta",
    "ESCALATE": "cyan",
    "APPROVE": "green",
    "DENY": "red",
}


def _load(args):
    config = load_config(Path(args.config) if args.config else None)
    return config, AuditLog(config.audit_log_path)


def _warden(args) -> Warden:
    config, audit = _load(args)
    return Warden.rebuild(audit.entries(), audit, ttl_seconds=config.approval_ttl_seconds)


def list_pending(args):
    """List pending requests."""
    pending = _warden(args).pending()

    if not pending:
        console.print("[yellow]No pending requests found.[/yellow]")
        return

    table = Table(title="Pending Approvals")
    table.add_column("ID", style="cyan")
    table.add_column("Label", style="green")
    table.add_column("Requester", style="magenta")
    table.add_column("Reasons", style="red")
    table.add_column("Expires", style="dim")
    table.add_column("Text")

    for req in pending:
        table.add_row(
            req.id,
            req.intent.label,
            f"{req.event.actor_id} ({req.event.actor_role.value})",
            ", ".join(req.reasons),
            format_timestamp(req.expires_at)[:16],
            req.event.text[:60],
        )

    console.print(table)


def show_request(args):
    """Show request details."""
    try:
        req = _warden(args).get(args.request_id)
    except ApprovalNotFound:
        console.print(f"[red]Request {args.request_id} not found.[/red]")
        return

    details = f"""
    [bold]ID:[/bold] {req.id}
    [bold]State:[/bold] {req.state.value}
    [bold]Label:[/bold] {req.intent.label} ({req.intent.confidence:.2f})
    [bold]Handler:[/bold] {req.intent.target_handler}
    [bold]Reasons:[/bold] {', '.join(req.reasons)}
    [bold]Requester:[/bold] {req.event.actor_id} ({req.event.actor_role.value}) via {req.event.source}
    [bold]Requested:[/bold] {format_timestamp(req.requested_at)}
    [bold]Expires:[/bold] {format_timestamp(req.expires_at)}
    [bold]Resolved by:[/bold] {req.resolved_by or '-'}
    [bold]Resolution:[/bold] {req.resolution_reason or '-'}

    [bold]Text:[/bold] {req.event.text}
    """

    console.print(Panel(details, title=f"Approval Request: {req.id}"))


def tail_audit(args):
    """Tail the audit log."""
    _, audit = _load(args)
    entries = audit.query(agent=args.agent, level=AuditLevel(args.level) if args.level else None,
                          limit=args.limit)

    if not entries:
        console.print("[yellow]No audit entries found.[/yellow]")
        return

    table = Table(title=f"Audit Log ({audit.path})")
    table.add_column("#", style="dim", justify="right")
    table.add_column("Time", style="dim")
    table.add_column("Level")
    table.add_column("Agent", style="cyan")
    table.add_column("Action")
    table.add_column("Model")
    table.add_column("Outcome")
    table.add_column("Note")

    for e in entries:
        style = _LEVEL_STYLES.get(e.level.value, "white")
        table.add_row(
            str(e.sequence_no),
            format_timestamp(e.timestamp)[:19],
            f"[{style}]{e.level.value}[/{style}]",
            e.agent,
            e.action,
            e.model,
            e.outcome,
            e.note[:80],
        )

    console.print(table)


def show_budget(args):
    """Current month spend per tier."""
    config, _ = _load(args)
    ledger = BudgetLedger(config.budget_db_path, {t: tc.monthly_cap for t, tc in config.tiers.items()})
    rows = asyncio.run(ledger.status())

    table = Table(title=f"Budget {ledger.month_key()}")
    table.add_column("Tier", style="cyan")
    table.add_column("Cap", justify="right")
    table.add_column("Spent", justify="right", style="green")
    table.add_column("Reserved", justify="right", style="yellow")
    table.add_column("Remaining", justify="right")

    for row in rows:
        table.add_row(
            row.tier.value,
            "unlimited" if row.cap_amount is None else f"${row.cap_amount:.2f}",
            f"${row.spent_amount:.4f}",
            f"${row.reserved_amount:.4f}",
            "-" if row.remaining is None else f"${row.remaining:.4f}",
        )

    console.print(table)


def replay_attempts(args):
    """Escalation attempt history per task."""
    _, audit = _load(args)
    history = EscalationGovernor.replay(audit.entries())
    if args.task_id:
        history = {k: v for k, v in history.items() if k == args.task_id}

    if not history:
        console.print("[yellow]No escalation attempts found.[/yellow]")
        return

    for task_id, attempts in history.items():
        table = Table(title=f"Task {task_id}")
        table.add_column("Started", style="dim")
        table.add_column("Tier", style="cyan")
        table.add_column("Provider")
        table.add_column("Outcome")
        table.add_column("Reason")
        table.add_column("Cost", justify="right")
        for a in attempts:
            color = "green" if not a.failed else "red"
            table.add_row(
                format_timestamp(a.started_at)[:19],
                a.tier.value,
                a.provider,
                f"[{color}]{a.outcome}[/{color}]",
                a.trigger_reason,
                f"${a.cost:.4f}",
            )
        console.print(table)


def main(argv=None):
    parser = argparse.ArgumentParser(description="Warden CLI")
    parser.add_argument("--config", help="Path to ghost.yaml (default: GHOST_CONFIG_PATH or config/ghost.yaml)")
    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    subparsers.add_parser("pending", help="List pending requests")

    show_parser = subparsers.add_parser("show", help="Show request details")
    show_parser.add_argument("request_id", help="ID of the request (APR-0001)")

    audit_parser = subparsers.add_parser("audit", help="Tail the audit log")
    audit_parser.add_argument("--limit", type=int, default=25, help="Number of entries")
    audit_parser.add_argument("--agent", help="Only entries from this agent")
    audit_parser.add_argument("--level", choices=[lvl.value for lvl in AuditLevel], help="Only this level")

    subparsers.add_parser("budget", help="Current month spend per tier")

    replay_parser = subparsers.add_parser("replay", help="Escalation attempts per task")
    replay_parser.add_argument("task_id", nargs="?", help="Only this task")

    args = parser.parse_args(argv)

    if args.command == "pending":
        list_pending(args)
    elif args.command == "show":
        show_request(args)
    elif args.command == "audit":
        tail_audit(args)
    elif args.command == "budget":
        show_budget(args)
    elif args.command == "replay":
        replay_attempts(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
