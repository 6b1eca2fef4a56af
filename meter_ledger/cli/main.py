"""
CLI interface for Meter Ledger.

Provides command-line access to recording, editing and undoing meter events.
"""

import logging
import sqlite3
import sys
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from meter_ledger.config.loader import LedgerConfig, default_config, load_ledger_config
from meter_ledger.core.conflicts import Resolution
from meter_ledger.core.exceptions import MeterLedgerError
from meter_ledger.core.impact import ImpactAnalysis
from meter_ledger.core.ledger import EventDraft, MeterLedger, Submission, SubmissionStatus
from meter_ledger.demo.seed_demo_data import DEMO_USER, seed_demo_data
from meter_ledger.logging_config import configure_logging
from meter_ledger.storage.models import Event, EventType
from meter_ledger.storage.repository import get_repository, initialize_schema

app = typer.Typer()
console = Console()
logger = logging.getLogger(__name__)

# Exit codes
EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1     # Failure or blocked entry
EXIT_CODE_CONFIRM = 2  # Needs --yes, --replace or --edit-existing

DATE_FORMATS = ["%Y-%m-%d", "%Y-%m-%d %H:%M", "%Y-%m-%dT%H:%M", "%Y-%m-%dT%H:%M:%S"]


@dataclass
class CliState:
    config: LedgerConfig
    ledger: MeterLedger
    user_id: str

    @property
    def db_path(self) -> str:
        return self.ledger.repository.db_path


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    db: Optional[str] = typer.Option(None, "--db", help="SQLite database file"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="YAML configuration file"),
    user: str = typer.Option("default", "--user", "-u", help="User whose meter to work on"),
):
    """Meter Ledger CLI."""
    try:
        ledger_config = load_ledger_config(config) if config else default_config()
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid configuration:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    configure_logging(ledger_config.logging.numeric_level)
    db_path = db or ledger_config.database.path
    ctx.obj = CliState(
        config=ledger_config,
        ledger=MeterLedger(get_repository(db_path), ledger_config),
        user_id=user,
    )
    if ctx.invoked_subcommand is None:
        console.print("Meter Ledger - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the Meter Ledger database."""
    state: CliState = ctx.obj
    try:
        initialize_schema(state.db_path)
    except sqlite3.Error as e:
        console.print(f"[red]Error initializing database:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Database initialized at {state.db_path}")
    sys.exit(EXIT_CODE_PASS)


@app.command("add-reading")
def add_reading(
    ctx: typer.Context,
    balance: float = typer.Argument(..., help="Balance shown on the meter (kWh)"),
    date: Optional[datetime] = typer.Option(None, "--date", "-d", formats=DATE_FORMATS,
                                            help="When the reading was taken (default: now)"),
    notes: Optional[str] = typer.Option(None, "--notes", "-n"),
    replace: bool = typer.Option(False, "--replace", help="Replace an entry at the same date"),
    edit_existing: bool = typer.Option(False, "--edit-existing",
                                       help="Edit the entry at the same date instead"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Apply any recalculation without asking"),
    key: Optional[str] = typer.Option(None, "--key", help="Idempotency key for safe retries"),
):
    """Record a meter reading."""
    state: CliState = ctx.obj
    draft = EventDraft(
        event_type=EventType.READING,
        event_date=date or state.ledger.clock(),
        balance_kwh=balance,
        notes=notes,
    )
    _run(lambda: _submit(state, state.ledger.prepare_new(state.user_id, draft),
                         yes, replace, edit_existing, key))


@app.command("add-topup")
def add_topup(
    ctx: typer.Context,
    purchase: Optional[float] = typer.Option(None, "--purchase", "-p", help="kWh bought"),
    cost: Optional[float] = typer.Option(None, "--cost", help="Token price; converted with the tariff"),
    balance: Optional[float] = typer.Option(None, "--balance", "-b",
                                            help="Balance after the top-up; must be previous + purchase"),
    date: Optional[datetime] = typer.Option(None, "--date", "-d", formats=DATE_FORMATS,
                                            help="When the token was entered (default: now)"),
    notes: Optional[str] = typer.Option(None, "--notes", "-n"),
    replace: bool = typer.Option(False, "--replace", help="Replace an entry at the same date"),
    edit_existing: bool = typer.Option(False, "--edit-existing",
                                       help="Edit the entry at the same date instead"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Apply the recalculation without asking"),
    key: Optional[str] = typer.Option(None, "--key", help="Idempotency key for safe retries"),
):
    """
    Record a token top-up.

    A top-up dated before existing entries shifts every later balance by the
    purchased amount. The shift is previewed and needs --yes to apply.
    """
    state: CliState = ctx.obj
    draft = EventDraft(
        event_type=EventType.TOPUP,
        event_date=date or state.ledger.clock(),
        balance_kwh=balance,
        purchase_kwh=purchase,
        token_cost=cost,
        notes=notes,
    )
    _run(lambda: _submit(state, state.ledger.prepare_new(state.user_id, draft),
                         yes, replace, edit_existing, key))


@app.command()
def edit(
    ctx: typer.Context,
    event_id: int = typer.Argument(..., help="Event to edit"),
    event_type: Optional[EventType] = typer.Option(None, "--type", "-t", case_sensitive=False,
                                                   help="READING or TOPUP (default: unchanged)"),
    balance: Optional[float] = typer.Option(None, "--balance", "-b"),
    purchase: Optional[float] = typer.Option(None, "--purchase", "-p"),
    cost: Optional[float] = typer.Option(None, "--cost"),
    date: Optional[datetime] = typer.Option(None, "--date", "-d", formats=DATE_FORMATS),
    notes: Optional[str] = typer.Option(None, "--notes", "-n"),
    reason: str = typer.Option("Edited by user", "--reason", "-r"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Apply the recalculation without asking"),
    key: Optional[str] = typer.Option(None, "--key", help="Idempotency key for safe retries"),
):
    """Correct an entry. The old version is kept, voided, in the history."""
    state: CliState = ctx.obj

    def action():
        existing = state.ledger.repository.get_event(event_id, user_id=state.user_id)
        if existing is None:
            console.print(f"[red]Event {event_id} not found[/]")
            return EXIT_CODE_FAIL
        new_type = event_type or existing.event_type
        same_type = new_type == existing.event_type
        draft = EventDraft(
            event_type=new_type,
            event_date=date or existing.event_date,
            balance_kwh=balance if balance is not None else (
                existing.balance_kwh if new_type == EventType.READING else None
            ),
            purchase_kwh=purchase if purchase is not None else (
                existing.purchase_kwh if same_type and cost is None else None
            ),
            token_cost=cost if cost is not None else (existing.token_cost if same_type else None),
            notes=notes if notes is not None else existing.notes,
        )
        submission = state.ledger.prepare_edit(state.user_id, event_id, draft, reason=reason)
        return _submit(state, submission, yes, False, False, key)

    _run(action)


@app.command()
def delete(
    ctx: typer.Context,
    event_id: int = typer.Argument(..., help="Event to delete"),
    reason: str = typer.Option("Deleted by user", "--reason", "-r"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Apply the recalculation without asking"),
    key: Optional[str] = typer.Option(None, "--key", help="Idempotency key for safe retries"),
):
    """Void an entry. Deleting a top-up takes its kWh out of later balances."""
    state: CliState = ctx.obj
    _run(lambda: _submit(state, state.ledger.prepare_delete(state.user_id, event_id, reason=reason),
                         yes, False, False, key))


@app.command()
def history(
    ctx: typer.Context,
    include_voided: bool = typer.Option(False, "--all", "-a", help="Include voided entries"),
    limit: Optional[int] = typer.Option(None, "--limit", "-l", help="Only the most recent entries"),
):
    """List entries, oldest first."""
    state: CliState = ctx.obj

    def action():
        events = state.ledger.history(state.user_id, include_voided=include_voided, limit=limit)
        if not events:
            console.print("\n[bold yellow]No entries recorded yet[/]\n")
            return EXIT_CODE_PASS
        _display_events(events)
        return EXIT_CODE_PASS

    _run(action)


@app.command()
def balance(ctx: typer.Context):
    """Show the balance of the latest entry."""
    state: CliState = ctx.obj

    def action():
        current = state.ledger.current_balance(state.user_id)
        if current is None:
            console.print("\n[bold yellow]No entries recorded yet[/]\n")
        else:
            console.print(f"Current balance: [bold]{_format_kwh(current)}[/]")
        return EXIT_CODE_PASS

    _run(action)


@app.command()
def audits(ctx: typer.Context):
    """List recalculations that can still be undone."""
    state: CliState = ctx.obj

    def action():
        pending = state.ledger.pending_undos(state.user_id)
        if not pending:
            console.print("No recalculations can be undone")
            return EXIT_CODE_PASS
        table = Table(title="Pending undos")
        table.add_column("Audit", justify="right")
        table.add_column("Trigger")
        table.add_column("Event", justify="right")
        table.add_column("Offset", justify="right")
        table.add_column("Entries", justify="right")
        table.add_column("Undo until")
        for audit in pending:
            table.add_row(
                str(audit.id),
                audit.trigger_type.value,
                str(audit.triggering_event_id),
                f"{audit.offset_kwh:+,.2f}",
                str(len(audit.affected_event_ids)),
                f"{audit.undo_deadline:%Y-%m-%d %H:%M}",
            )
        console.print(table)
        return EXIT_CODE_PASS

    _run(action)


@app.command()
def undo(
    ctx: typer.Context,
    audit_id: int = typer.Argument(..., help="Recalculation to undo (see `audits`)"),
    reason: Optional[str] = typer.Option(None, "--reason", "-r"),
):
    """Reverse a recalculation and the change that caused it."""
    state: CliState = ctx.obj

    def action():
        audit = state.ledger.undo(state.user_id, audit_id, reason=reason)
        console.print(
            f"[green]✓[/] Recalculation {audit.id} undone; "
            f"{len(audit.affected_event_ids)} balance(s) restored"
        )
        return EXIT_CODE_PASS

    _run(action)


@app.command()
def summary(ctx: typer.Context):
    """Show consumption, days of credit left and a monthly cost estimate."""
    state: CliState = ctx.obj

    def action():
        usage = state.ledger.summary(state.user_id)
        console.print("\n[bold]Usage Summary[/bold]")
        console.print("-" * 40)
        console.print(f"Remaining: {_format_kwh(usage.remaining_kwh)}")
        console.print(f"Consumed: {_format_kwh(usage.total_consumption_kwh)}")
        console.print(f"Purchased: {_format_kwh(usage.total_purchased_kwh)}")
        if usage.avg_daily_kwh is None:
            console.print("\n[dim]Need entries spanning at least a day for averages.[/]")
            return EXIT_CODE_PASS
        console.print(f"Average per day: {_format_kwh(usage.avg_daily_kwh)}")
        if usage.days_remaining is not None:
            console.print(f"Days remaining: {usage.days_remaining:,.1f}")
        console.print(f"Estimated monthly cost: {usage.estimated_monthly_cost:,.2f}")
        return EXIT_CODE_PASS

    _run(action)


@app.command()
def demo(
    ctx: typer.Context,
    user: str = typer.Option(DEMO_USER, "--demo-user", help="User to seed the demo entries for"),
):
    """Seed a demo meter history, including a backdated top-up."""
    state: CliState = ctx.obj

    def action():
        initialize_schema(state.db_path)
        results = seed_demo_data(state.ledger, user_id=user)
        cascades = [r.audit for r in results if r.audit is not None]
        console.print(f"[green]✓[/] Demo entries recorded for '{user}'")
        for audit in cascades:
            console.print(
                f"Recalculation {audit.id}: {audit.offset_kwh:+,.2f} kWh applied to "
                f"{len(audit.affected_event_ids)} later entries"
            )
        _display_events(state.ledger.history(user))
        return EXIT_CODE_PASS

    _run(action)


def _run(action) -> None:
    """Run a command body and turn its outcome into an exit code."""
    try:
        code = action()
    except MeterLedgerError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    except sqlite3.OperationalError as e:
        if "no such table" in str(e).lower():
            console.print("\n[bold yellow]Database is not initialized[/]")
            console.print("Run `meter-ledger init` first\n")
            sys.exit(EXIT_CODE_FAIL)
        logger.exception("Store error")
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    sys.exit(code)


def _submit(state: CliState, submission: Submission, yes: bool,
            replace: bool, edit_existing: bool, key: Optional[str]) -> int:
    """Drive a prepared submission through the user's choices to a commit."""
    ledger = state.ledger

    if submission.status == SubmissionStatus.BLOCKED:
        validation = submission.validation
        console.print(f"[red]Blocked:[/] {validation.message}")
        if validation.suggestion:
            console.print(f"[dim]{validation.suggestion}[/]")
        return EXIT_CODE_FAIL

    if submission.status == SubmissionStatus.DUPLICATE:
        if replace:
            result = ledger.resolve_duplicate(submission, Resolution.REPLACE, idempotency_key=key)
            console.print(
                f"[green]✓[/] Entry {result.event.id} replaces entry {result.voided_event_ids[0]}"
            )
            return EXIT_CODE_PASS
        if edit_existing:
            edited = ledger.resolve_duplicate(submission, Resolution.EDIT_EXISTING)
            return _submit(state, edited, yes, False, False, key)
        console.print(f"[yellow]Duplicate:[/] {submission.duplicate.describe()}")
        console.print("Re-run with --edit-existing or --replace")
        return EXIT_CODE_CONFIRM

    if submission.status == SubmissionStatus.CASCADE_CONFLICT:
        console.print("[red]Recalculation blocked:[/]")
        for issue in submission.analysis.blocking_issues:
            console.print(f"  - {issue.message}")
        console.print("[dim]Fix the entries named above, then try again.[/]")
        return EXIT_CODE_FAIL

    if submission.status == SubmissionStatus.NEEDS_CONFIRMATION:
        _display_preview(submission.analysis)
        if not yes:
            console.print("Re-run with --yes to apply this recalculation")
            return EXIT_CODE_CONFIRM

    result = ledger.commit(submission, idempotency_key=key)
    if result.event is not None:
        console.print(f"[green]✓[/] Saved entry {result.event.id} ({_format_kwh(result.event.balance_kwh)})")
    for voided_id in result.voided_event_ids:
        console.print(f"[green]✓[/] Voided entry {voided_id}")
    if result.audit is not None:
        console.print(
            f"Recalculation {result.audit.id} updated {len(result.audit.affected_event_ids)} "
            f"entries; undo until {result.audit.undo_deadline:%Y-%m-%d %H:%M}"
        )
    return EXIT_CODE_PASS


def _format_kwh(amount: float) -> str:
    return f"{amount:,.2f} kWh"


def _display_preview(analysis: ImpactAnalysis) -> None:
    """Show the before/after balance of every entry the change shifts."""
    console.print(
        f"\n[bold]This change shifts {len(analysis.preview)} later entries by "
        f"{analysis.offset_kwh:+,.2f} kWh[/bold]"
    )
    table = Table()
    table.add_column("Entry", justify="right")
    table.add_column("Date")
    table.add_column("Type")
    table.add_column("Before", justify="right")
    table.add_column("After", justify="right")
    for row in analysis.preview:
        table.add_row(
            str(row.event_id),
            f"{row.event_date:%Y-%m-%d %H:%M}",
            row.event_type.value,
            f"{row.before:,.2f}",
            f"{row.after:,.2f}",
        )
    console.print(table)
    for issue in analysis.warnings:
        console.print(f"[yellow]Warning:[/] {issue.message}")


def _display_events(events: List[Event]) -> None:
    table = Table(title="Meter history")
    table.add_column("ID", justify="right")
    table.add_column("Date")
    table.add_column("Type")
    table.add_column("Balance", justify="right")
    table.add_column("Purchase", justify="right")
    table.add_column("Notes")
    for event in events:
        style = "dim strike" if event.voided else None
        table.add_row(
            str(event.id),
            f"{event.event_date:%Y-%m-%d %H:%M}",
            event.event_type.value,
            f"{event.balance_kwh:,.2f}",
            f"{event.purchase_kwh:,.2f}" if event.purchase_kwh is not None else "",
            event.notes or "",
            style=style,
        )
    console.print(table)


if __name__ == "__main__":
    app()
