"""Chat command parsing for ``@split``.

Grammar::

    @split <description> <amount> [#category] [@mention ...] [@all]

Examples::

    @split Dinner at Luigi's ₹1200 #food
    @split taxi $42.50 @bob @carol
"""

import logging
import re
from decimal import Decimal

from pydantic import BaseModel, Field

from .exceptions import (
    InvalidAmountError,
    NotASplitCommandError,
    SplitSyncError,
    ValidationError,
)
from .models import CATEGORIES, DEFAULT_CATEGORY, CommandResult, CreateSplitBillRequest
from .resolver import Directory
from .service import SettlementService
from .transcript import render_bill_text

logger = logging.getLogger(__name__)

TRIGGER_PATTERN = re.compile(r"^\s*@split\b", re.IGNORECASE)
MENTION_PATTERN = re.compile(r"@([\w.-]+)")
HASHTAG_PATTERN = re.compile(r"#(\w+)")
AMOUNT_PATTERN = re.compile(r"(?:[$₹£€¥]\s*)?(\d+(?:\.\d{1,2})?)(?:\s*[$₹£€¥])?")

DEFAULT_DESCRIPTION = "Split Bill"
RESERVED_MENTIONS = {"split", "all"}


class SplitCommand(BaseModel):
    """A parsed ``@split`` message."""

    description: str
    amount: Decimal
    category: str = DEFAULT_CATEGORY
    mentions: list[str] = Field(default_factory=list)
    use_all: bool = False


def is_split_command(text: str) -> bool:
    """Check whether a chat message starts with the @split trigger."""
    return TRIGGER_PATTERN.match(text) is not None


def parse_category(text: str) -> str:
    """Map the first #hashtag to a known category, else the default."""
    match = HASHTAG_PATTERN.search(text)
    if not match:
        return DEFAULT_CATEGORY
    tag = match.group(1).lower()
    for category in CATEGORIES:
        if category.lower() == tag:
            return category
    return DEFAULT_CATEGORY


def parse_split_command(text: str) -> SplitCommand:
    """
    Parse an ``@split`` chat message.

    Mentions and hashtags are removed before looking for the amount, so
    digits inside usernames are never taken as the amount.

    Args:
        text: Raw chat message

    Returns:
        Parsed command

    Raises:
        NotASplitCommandError: If the message does not start with @split
        InvalidAmountError: If no positive amount is present
    """
    trigger = TRIGGER_PATTERN.match(text)
    if not trigger:
        raise NotASplitCommandError("Message is not a @split command")

    body = text[trigger.end() :]

    mentions = []
    use_all = False
    for raw_name in MENTION_PATTERN.findall(body):
        # "@bob." at the end of a sentence
        name = raw_name.rstrip(".-")
        lowered = name.lower()
        if lowered == "all":
            use_all = True
        elif name and lowered not in RESERVED_MENTIONS and name not in mentions:
            mentions.append(name)

    category = parse_category(body)

    remaining = HASHTAG_PATTERN.sub(" ", MENTION_PATTERN.sub(" ", body))

    amount_match = AMOUNT_PATTERN.search(remaining)
    if not amount_match:
        raise InvalidAmountError("Amount is required for split command")

    amount = Decimal(amount_match.group(1))
    if amount <= 0:
        raise InvalidAmountError("Amount must be positive")

    description = " ".join(
        (remaining[: amount_match.start()] + " " + remaining[amount_match.end() :]).split()
    )

    return SplitCommand(
        description=description or DEFAULT_DESCRIPTION,
        amount=amount,
        category=category,
        mentions=mentions,
        use_all=use_all,
    )


class SplitCommandExecutor:
    """Turns ``@split`` chat messages into split bills.

    Never raises to the chat transport: every failure becomes a
    CommandResult with a readable message.
    """

    def __init__(self, service: SettlementService, directory: Directory):
        """Initialize the executor."""
        self.service = service
        self.directory = directory

    def execute(
        self,
        text: str,
        actor_id: str,
        group_id: str | None = None,
        counterpart_id: str | None = None,
    ) -> CommandResult:
        """
        Parse and run a split command posted in a chat.

        Args:
            text: Raw chat message
            actor_id: User who posted the message
            group_id: Group chat the message was posted in, if any
            counterpart_id: Other user of a direct chat, if any

        Returns:
            Command result with a text reply for the chat
        """
        try:
            command = parse_split_command(text)

            participants: list[str] | None = None
            if command.mentions and not command.use_all:
                participants = [f"@{name}" for name in command.mentions]

            if group_id is None and participants is None:
                if counterpart_id is None:
                    raise ValidationError(
                        "Mention who to split with, or use @split in a group chat"
                    )
                participants = [counterpart_id]

            request = CreateSplitBillRequest(
                description=command.description,
                total_amount=command.amount,
                group_id=group_id,
                participants=participants,
                split_kind="equal",
                category=command.category,
            )
            bill = self.service.create_split_bill(actor_id, request)
        except SplitSyncError as e:
            logger.info(f"Split command from {actor_id} failed: {e}")
            return CommandResult(success=False, message=f"Could not split bill: {e}")
        except Exception as e:
            logger.exception(f"Unexpected error running split command from {actor_id}")
            return CommandResult(
                success=False, message=f"Failed to create split bill: {e}"
            )

        return CommandResult(
            success=True,
            message=render_bill_text(bill, self.directory),
            split_bill=bill,
        )
