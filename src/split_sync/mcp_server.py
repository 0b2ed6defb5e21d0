"""MCP server for split-sync: exposes split bill operations as tools."""

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import cast

from mcp.server.fastmcp import FastMCP

from .commands import SplitCommandExecutor
from .config import load_settings
from .db import Database
from .exceptions import SplitSyncError
from .models import BillStatus, CreateSplitBillRequest, SplitBill
from .service import SettlementService, build_service

logger = logging.getLogger(__name__)

mcp_app = FastMCP("split-sync")

WORKFLOW_INSTRUCTIONS = """\
You help a chat group split shared costs. Follow this workflow:

1. CREATE: When someone says they paid for something shared, call
   create_split_bill (or run_split_command with the user's @split message).
   Without explicit participants, group bills are split with every active member.

2. TRACK: Use list_bills and show_bill to see who still owes what.
   The creator's share is always marked paid.

3. SETTLE: When a participant confirms they paid, call mark_paid.
   If they decline, call reject_bill. The creator can never reject their own bill.

Amounts are exact to the cent: leftover cents go to the first participants,
creator first.\
"""


# ---------------------------------------------------------------------------
# Session state: one MCP server process shares one service
# ---------------------------------------------------------------------------


@dataclass
class SessionState:
    """Holds the service between MCP tool calls."""

    service: SettlementService | None = None
    db: Database | None = None


_state = SessionState()


def _ensure_service() -> SettlementService:
    """Lazily initialize the SettlementService (loads .env config)."""
    if _state.service is None:
        settings = load_settings()
        _state.db = Database(settings.database_path)
        _state.service = build_service(settings, _state.db)
    return _state.service


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _format_bill(bill: SplitBill, service: SettlementService) -> str:
    """Format a bill as plain text for the assistant."""
    lines = [
        f"Split bill {bill.id}: {bill.description}",
        f"  Total: {bill.currency} {bill.total_amount}",
        f"  Status: {bill.status}",
        "  Participants:",
    ]
    for p in bill.participants:
        user = service.db.get_user(p.user_id)
        name = user.name if user else p.user_id
        marker = " (creator)" if p.user_id == bill.created_by else ""
        lines.append(f"    - {name}{marker}: {bill.currency} {p.amount} [{p.status}]")
    if bill.cancel_reason:
        lines.append(f"  Cancelled: {bill.cancel_reason}")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# MCP Tools
# ---------------------------------------------------------------------------


@mcp_app.tool()
def create_split_bill(
    actor_id: str,
    description: str,
    total_amount: str,
    group_id: str | None = None,
    participants: list[str] | None = None,
    category: str | None = None,
) -> str:
    """Create an equal split bill.

    Args:
        actor_id: User who paid and is creating the bill.
        description: What the money was spent on.
        total_amount: Total as a decimal string, e.g. "90.00".
        group_id: Group chat id; omit for a direct bill.
        participants: User ids or @usernames; omit to split with the whole group.
        category: Food, Transport, Entertainment, Shopping, Bills, Health or Other.
    """
    try:
        service = _ensure_service()
        request = CreateSplitBillRequest(
            description=description,
            total_amount=Decimal(total_amount),
            group_id=group_id,
            participants=participants,
            category=category,
        )
        bill = service.create_split_bill(actor_id, request)
        return "Created.\n" + _format_bill(bill, service)
    except InvalidOperation:
        return f"Error: '{total_amount}' is not a valid amount"
    except SplitSyncError as e:
        return f"Error: {e}"
    except Exception as e:
        return f"Failed to create split bill: {e}"


@mcp_app.tool()
def mark_paid(split_bill_id: str, actor_id: str) -> str:
    """Mark a participant's share as paid.

    Args:
        split_bill_id: Split bill id.
        actor_id: Participant who paid.
    """
    try:
        service = _ensure_service()
        bill = service.mark_payment_as_paid(split_bill_id, actor_id)
        return _format_bill(bill, service)
    except SplitSyncError as e:
        return f"Error: {e}"
    except Exception as e:
        return f"Failed to mark payment: {e}"


@mcp_app.tool()
def reject_bill(split_bill_id: str, actor_id: str) -> str:
    """Decline a participant's share of a split bill.

    Args:
        split_bill_id: Split bill id.
        actor_id: Participant declining.
    """
    try:
        service = _ensure_service()
        bill = service.reject_split_bill(split_bill_id, actor_id)
        return _format_bill(bill, service)
    except SplitSyncError as e:
        return f"Error: {e}"
    except Exception as e:
        return f"Failed to reject split bill: {e}"


@mcp_app.tool()
def show_bill(split_bill_id: str, actor_id: str) -> str:
    """Show a split bill visible to the actor."""
    try:
        service = _ensure_service()
        return _format_bill(service.get_split_bill(split_bill_id, actor_id), service)
    except SplitSyncError as e:
        return f"Error: {e}"
    except Exception as e:
        return f"Failed to load split bill: {e}"


@mcp_app.tool()
def list_bills(actor_id: str, status: str | None = None) -> str:
    """List bills the actor created or takes part in.

    Args:
        actor_id: User id.
        status: Optional filter: active, settled or cancelled.
    """
    try:
        service = _ensure_service()
        if status not in (None, "active", "settled", "cancelled"):
            return f"Error: unknown status '{status}'"
        bills = service.list_user_split_bills(
            actor_id, status=cast(BillStatus | None, status)
        )
        if not bills:
            return "No split bills found."

        lines = [f"Split bills for {actor_id} ({len(bills)} total):"]
        for bill in bills:
            paid = sum(1 for p in bill.participants if p.is_paid)
            lines.append(
                f"  - {bill.id} | {bill.description} | {bill.currency} "
                f"{bill.total_amount} | {paid}/{len(bill.participants)} paid | "
                f"{bill.status}"
            )
        return "\n".join(lines)
    except SplitSyncError as e:
        return f"Error: {e}"
    except Exception as e:
        return f"Failed to list split bills: {e}"


@mcp_app.tool()
def run_split_command(
    text: str,
    actor_id: str,
    group_id: str | None = None,
    counterpart_id: str | None = None,
) -> str:
    """Run an @split chat message, e.g. "@split pizza 30 #food @bob".

    Args:
        text: The chat message.
        actor_id: User who posted it.
        group_id: Group chat it was posted in, if any.
        counterpart_id: Other user of a direct chat, if any.
    """
    try:
        service = _ensure_service()
    except SplitSyncError as e:
        return f"Error: {e}"
    executor = SplitCommandExecutor(service, service.db)
    result = executor.execute(
        text, actor_id, group_id=group_id, counterpart_id=counterpart_id
    )
    return result.message if result.success else f"Error: {result.message}"


# ---------------------------------------------------------------------------
# MCP Prompt
# ---------------------------------------------------------------------------


@mcp_app.prompt()
def split_workflow() -> str:
    """Instructions for managing split bills."""
    return WORKFLOW_INSTRUCTIONS


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def run_server():
    """Start the MCP server (stdio transport)."""
    mcp_app.run(transport="stdio")
