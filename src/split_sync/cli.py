"""CLI for split-sync using Typer."""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from decimal import Decimal
from typing import cast

import typer
from rich.console import Console
from rich.table import Table

from .commands import SplitCommandExecutor
from .config import load_settings
from .db import Database
from .mcp_server import run_server
from .models import (
    BillStatus,
    CategoryStats,
    CreateSplitBillRequest,
    Group,
    GroupStats,
    SplitBill,
    User,
)
from .service import SettlementService, build_service
from .ui import run_chat_console

app = typer.Typer(
    name="split-sync",
    help="Split bills in group and direct chats and keep everyone in sync",
)
user_app = typer.Typer(help="Manage users")
group_app = typer.Typer(help="Manage groups and memberships")
app.add_typer(user_app, name="user")
app.add_typer(group_app, name="group")

console = Console()

STATUS_STYLES = {"active": "yellow", "settled": "green", "cancelled": "red"}


def setup_logging(verbose: bool = False):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


@contextmanager
def open_service(verbose: bool = False) -> Iterator[SettlementService]:
    """Load settings, open the database and yield a wired service.

    Errors are printed instead of raised unless verbose.
    """
    setup_logging(verbose)
    db = None
    service = None
    try:
        settings = load_settings()
        db = Database(settings.database_path)
        service = build_service(settings, db)
        yield service
    except typer.Exit:
        raise
    except Exception as e:
        console.print(f"\n[bold red]Error:[/bold red] {e}")
        if verbose:
            raise
        sys.exit(1)
    finally:
        if service is not None:
            service.close()
        if db is not None:
            db.close()


def format_money(amount: Decimal, currency: str) -> str:
    """Format an amount with its currency code."""
    return f"{currency} {amount:,.2f}"


def display_bill(bill: SplitBill, database: Database):
    """Display a split bill and its participants in a table."""
    style = STATUS_STYLES[bill.status]
    creator = database.get_user(bill.created_by)

    console.print(f"\n[bold]{bill.description}[/bold]  [dim]{bill.id}[/dim]")
    console.print(f"  Total: {format_money(bill.total_amount, bill.currency)}")
    console.print(f"  Category: {bill.category}")
    console.print(f"  Created by: {creator.name if creator else bill.created_by}")
    console.print(
        f"  Where: {'group ' + bill.group_id if bill.group_id else 'direct chat'}"
    )
    console.print(f"  Status: [{style}]{bill.status}[/{style}]")
    if bill.cancel_reason:
        console.print(f"  Reason: {bill.cancel_reason}")
    console.print()

    table = Table(title="Participants", show_header=True, header_style="bold magenta")
    table.add_column("User", style="cyan")
    table.add_column("Amount", justify="right")
    table.add_column("Status", justify="center")
    table.add_column("When", style="dim")

    for p in bill.participants:
        user = database.get_user(p.user_id)
        when = p.paid_at or p.rejected_at
        status_style = {"paid": "green", "rejected": "red"}.get(p.status, "yellow")
        table.add_row(
            user.name if user else p.user_id,
            format_money(p.amount, bill.currency),
            f"[{status_style}]{p.status}[/{status_style}]",
            when.strftime("%Y-%m-%d %H:%M") if when else "",
        )

    console.print(table)


def display_bill_list(bills: list[SplitBill]):
    """Display a list of split bills."""
    if not bills:
        console.print("[yellow]No split bills found.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("ID", style="dim")
    table.add_column("Description", style="cyan", max_width=40)
    table.add_column("Total", justify="right")
    table.add_column("Paid", justify="center")
    table.add_column("Status", justify="center")
    table.add_column("Created", style="dim")

    for bill in bills:
        paid = sum(1 for p in bill.participants if p.is_paid)
        style = STATUS_STYLES[bill.status]
        table.add_row(
            bill.id,
            bill.description,
            format_money(bill.total_amount, bill.currency),
            f"{paid}/{len(bill.participants)}",
            f"[{style}]{bill.status}[/{style}]",
            bill.created_at.strftime("%Y-%m-%d"),
        )

    console.print(table)


# ============================================================================
# Directory commands
# ============================================================================


@user_app.command("add")
def user_add(
    user_id: str = typer.Argument(..., help="User id"),
    username: str = typer.Argument(..., help="Username used in @mentions"),
    name: str = typer.Argument(..., help="Display name"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Add or update a user."""
    with open_service(verbose) as service:
        user = service.db.add_user(User(id=user_id, username=username, name=name))
        console.print(f"[green]✓ Saved user @{user.username} ({user.id})[/green]")


@group_app.command("add")
def group_add(
    group_id: str = typer.Argument(..., help="Group id"),
    name: str = typer.Argument(..., help="Group name"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Add or update a group."""
    with open_service(verbose) as service:
        group = service.db.add_group(Group(id=group_id, name=name))
        console.print(f"[green]✓ Saved group {group.name} ({group.id})[/green]")


@group_app.command("member")
def group_member(
    group_id: str = typer.Argument(..., help="Group id"),
    user_id: str = typer.Argument(..., help="User id"),
    inactive: bool = typer.Option(False, "--inactive", help="Add as inactive"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Add a user to a group."""
    with open_service(verbose) as service:
        service.db.add_group_member(group_id, user_id, is_active=not inactive)
        console.print(f"[green]✓ {user_id} is a member of {group_id}[/green]")


@group_app.command("deactivate")
def group_deactivate(
    group_id: str = typer.Argument(..., help="Group id"),
    user_id: str = typer.Argument(..., help="User id"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Mark a group membership as inactive."""
    with open_service(verbose) as service:
        if not service.db.set_member_active(group_id, user_id, False):
            console.print(f"[yellow]{user_id} is not a member of {group_id}.[/yellow]")
            return
        console.print(f"[green]✓ {user_id} is no longer active in {group_id}[/green]")


# ============================================================================
# Split bill commands
# ============================================================================


@app.command()
def create(
    actor: str = typer.Option(..., "--as", help="User creating the bill"),
    description: str = typer.Option(..., "--description", "-d", help="What it was for"),
    amount: str = typer.Option(..., "--amount", "-a", help="Total amount, e.g. 90.00"),
    group: str | None = typer.Option(None, "--group", "-g", help="Group id"),
    participants: list[str] | None = typer.Option(
        None, "--with", "-w", help="Participant id or @username (repeatable)"
    ),
    split_kind: str = typer.Option(
        "equal", "--split", help="equal, percentage or custom"
    ),
    shares: list[str] | None = typer.Option(
        None,
        "--share",
        help="Amount or percentage per participant, creator first (repeatable)",
    ),
    category: str | None = typer.Option(None, "--category", "-c", help="Category"),
    currency: str | None = typer.Option(None, "--currency", help="Currency code"),
    notes: str | None = typer.Option(None, "--notes", help="Free-form notes"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """
    Create a split bill.

    Without --with, a group bill is shared with every active group member.
    """
    with open_service(verbose) as service:
        share_values = [Decimal(s) for s in shares] if shares else None
        request = CreateSplitBillRequest(
            description=description,
            total_amount=Decimal(amount),
            group_id=group,
            participants=participants or None,
            split_kind=split_kind,
            amounts=share_values if split_kind == "custom" else None,
            percentages=share_values if split_kind == "percentage" else None,
            category=category,
            currency=currency,
            notes=notes,
        )
        bill = service.create_split_bill(actor, request)
        display_bill(bill, service.db)
        console.print("\n[bold green]✓ Split bill created![/bold green]")


@app.command()
def pay(
    split_bill_id: str = typer.Argument(..., help="Split bill id"),
    actor: str = typer.Option(..., "--as", help="User paying their share"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Mark your share of a split bill as paid."""
    with open_service(verbose) as service:
        bill = service.mark_payment_as_paid(split_bill_id, actor)
        display_bill(bill, service.db)


@app.command()
def reject(
    split_bill_id: str = typer.Argument(..., help="Split bill id"),
    actor: str = typer.Option(..., "--as", help="User declining their share"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Decline your share of a split bill."""
    with open_service(verbose) as service:
        bill = service.reject_split_bill(split_bill_id, actor)
        display_bill(bill, service.db)


@app.command()
def show(
    split_bill_id: str = typer.Argument(..., help="Split bill id"),
    actor: str = typer.Option(..., "--as", help="User viewing the bill"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Show a split bill."""
    with open_service(verbose) as service:
        bill = service.get_split_bill(split_bill_id, actor)
        display_bill(bill, service.db)


@app.command("list")
def list_bills(
    actor: str = typer.Option(..., "--as", help="User listing bills"),
    group: str | None = typer.Option(None, "--group", "-g", help="Only this group"),
    status: str | None = typer.Option(
        None, "--status", "-s", help="active, settled or cancelled"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """List split bills you created or take part in."""
    with open_service(verbose) as service:
        if status not in (None, "active", "settled", "cancelled"):
            console.print(f"[red]Unknown status '{status}'[/red]")
            raise typer.Exit(1)
        if group:
            bills = service.list_group_split_bills(
                group, actor, status=cast(BillStatus | None, status)
            )
        else:
            bills = service.list_user_split_bills(
                actor, status=cast(BillStatus | None, status)
            )
        display_bill_list(bills)


@app.command()
def stats(
    actor: str = typer.Option(..., "--as", help="User"),
    group: str | None = typer.Option(None, "--group", "-g", help="Show group totals"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Show totals of your split bills, or of a group's."""
    with open_service(verbose) as service:
        if group:
            _print_group_stats(service.get_group_stats(group, actor))
            return

        user_stats = service.get_user_stats(actor)
        console.print(f"\n[bold]Split bills for {user_stats.user_id}[/bold]")
        console.print(f"  Total:     {user_stats.total_bills}")
        console.print(f"  Active:    [yellow]{user_stats.active}[/yellow]")
        console.print(f"  Settled:   [green]{user_stats.settled}[/green]")
        console.print(f"  Cancelled: [red]{user_stats.cancelled}[/red]")
        console.print(f"  Owed to you: {user_stats.owed_to_you:,.2f}")
        console.print(f"  You owe:     {user_stats.you_owe:,.2f}")
        _print_categories(user_stats.by_category)


def _print_group_stats(group_stats: GroupStats):
    console.print(f"\n[bold]Split bills in {group_stats.group_id}[/bold]")
    console.print(f"  Total:   {group_stats.total_bills}")
    console.print(f"  Amount:  {group_stats.total_amount:,.2f}")
    console.print(f"  Settled: [green]{group_stats.settled_amount:,.2f}[/green]")

    table = Table(title="Members", show_header=True, header_style="bold magenta")
    table.add_column("Member", style="cyan")
    table.add_column("Owes", justify="right")
    table.add_column("Paid", justify="right")
    for member in group_stats.by_member:
        table.add_row(
            member.name,
            f"{member.owes:,.2f}",
            f"{member.paid_count}/{member.total_bills}",
        )
    console.print(table)
    _print_categories(group_stats.by_category)


def _print_categories(categories: list[CategoryStats]):
    if not categories:
        return
    table = Table(title="By category", show_header=True, header_style="bold magenta")
    table.add_column("Category", style="cyan")
    table.add_column("Bills", justify="right")
    table.add_column("Amount", justify="right")
    for entry in categories:
        table.add_row(entry.category, str(entry.count), f"{entry.amount:,.2f}")
    console.print(table)


@app.command()
def command(
    text: str = typer.Argument(..., help='Chat message, e.g. "@split pizza 30 #food"'),
    actor: str = typer.Option(..., "--as", help="User posting the message"),
    group: str | None = typer.Option(None, "--group", "-g", help="Group chat id"),
    counterpart: str | None = typer.Option(
        None, "--with", "-w", help="Other user of a direct chat"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Run a single @split chat command."""
    with open_service(verbose) as service:
        executor = SplitCommandExecutor(service, service.db)
        result = executor.execute(
            text, actor, group_id=group, counterpart_id=counterpart
        )
        if not result.success:
            console.print(f"[red]{result.message}[/red]")
            raise typer.Exit(1)
        console.print(result.message)
        if result.split_bill:
            console.print(f"[dim]id: {result.split_bill.id}[/dim]")


@app.command()
def chat(
    actor: str = typer.Option(..., "--as", help="User typing in the chat"),
    group: str | None = typer.Option(None, "--group", "-g", help="Group chat id"),
    counterpart: str | None = typer.Option(
        None, "--with", "-w", help="Other user of a direct chat"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Open an interactive chat console that understands @split."""
    if not group and not counterpart:
        console.print("[red]Use --group or --with to pick a chat.[/red]")
        raise typer.Exit(1)

    with open_service(verbose) as service:
        user = service.db.find_user(actor)
        if user is None:
            console.print(f"[red]Unknown user {actor}[/red]")
            raise typer.Exit(1)

        if group:
            users = service.db.list_users(service.db.active_member_ids(group))
        else:
            users = service.db.list_users()

        run_chat_console(
            service, user, users, group_id=group, counterpart_id=counterpart
        )


@app.command("retry-mirrors")
def retry_mirrors(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Re-post chat mirrors that failed to deliver."""
    with open_service(verbose) as service:
        count = service.retry_pending_mirrors()
        console.print(f"[green]✓ Mirrored {count} split bill(s)[/green]")


@app.command()
def mcp():
    """Start the MCP server for assistant integration."""
    run_server()


if __name__ == "__main__":
    app()
