"""Mirroring split bills into the chat transcript."""

import logging
from typing import Any, Protocol

from .broadcaster import build_projection
from .db import Database
from .models import SplitBill
from .resolver import Directory

logger = logging.getLogger(__name__)


class ChatTranscript(Protocol):
    """Posts structured messages into chat conversations.

    Implementations must be idempotent per (conversation, split_bill_id).
    """

    def post_structured_message(
        self, conversation: str, split_bill_id: str, body: dict[str, Any]
    ) -> None: ...


class LocalChatTranscript:
    """Stores mirrored messages in the local database."""

    def __init__(self, database: Database):
        """Initialize the local transcript."""
        self.db = database

    def post_structured_message(
        self, conversation: str, split_bill_id: str, body: dict[str, Any]
    ) -> None:
        inserted = self.db.save_chat_message(
            conversation, split_bill_id, body.get("kind", "split_bill"), body
        )
        if not inserted:
            logger.debug(f"Mirror for {split_bill_id} already in {conversation}")


def direct_conversation(user_a: str, user_b: str) -> str:
    """Conversation key of a direct chat, independent of who started it."""
    first, second = sorted((user_a, user_b))
    return f"direct:{first}:{second}"


def mirror_conversations(bill: SplitBill) -> list[str]:
    """Conversations where a bill must appear."""
    if bill.group_id is not None:
        return [f"group:{bill.group_id}"]
    return [
        direct_conversation(bill.created_by, user_id)
        for user_id in bill.participant_ids
        if user_id != bill.created_by
    ]


def render_bill_text(bill: SplitBill, directory: Directory) -> str:
    """Plain-text summary shown in chat for a split bill."""
    creator = directory.get_user(bill.created_by)
    creator_name = creator.name if creator else bill.created_by

    lines = [
        f'{creator_name} split "{bill.description}": '
        f"{bill.currency} {bill.total_amount} between {len(bill.participants)} people"
    ]
    for p in bill.participants:
        user = directory.get_user(p.user_id)
        name = user.name if user else p.user_id
        lines.append(f"  {name}: {bill.currency} {p.amount} ({p.status})")
    return "\n".join(lines)


def build_mirror_message(bill: SplitBill, directory: Directory) -> dict[str, Any]:
    """Structured chat message body mirroring a split bill."""
    return {
        "kind": "split_bill",
        "splitBillId": bill.id,
        "text": render_bill_text(bill, directory),
        "category": bill.category,
        "projection": build_projection(bill, directory).to_wire(),
    }
