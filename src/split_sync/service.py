"""Service layer for creating and settling split bills.

Each operation commits its state change first, then notifies collaborators
(realtime broadcast, lifecycle hooks, chat mirror). Collaborator failures are
logged and never undo or fail the committed operation.
"""

import logging
import re
import uuid
from collections.abc import Callable
from datetime import datetime
from decimal import Decimal

import pydantic

from .broadcaster import EventPublisher, InMemoryEventPublisher, SplitBillBroadcaster
from .clients.chat import ChatServiceClient
from .clients.notifications import NotificationServiceClient
from .clients.realtime import RealtimeGatewayClient
from .config import Settings
from .db import Database
from .distribution import (
    distribute,
    distribute_by_percentage,
    validate_amounts,
    validate_total,
)
from .exceptions import (
    AccessDeniedError,
    AmountMismatchError,
    GroupNotFoundError,
    InvalidAmountError,
    NotAGroupMemberError,
    SplitBillNotFoundError,
    ValidationError,
)
from .hooks import LifecycleHooks, LoggingLifecycleHooks
from .identifiers import normalize_id
from .models import (
    CATEGORIES,
    DEFAULT_CATEGORY,
    BillStatus,
    CategoryStats,
    CreateSplitBillRequest,
    DirectScope,
    GroupScope,
    GroupStats,
    MemberStats,
    Participant,
    SplitBill,
    UserStats,
    utcnow,
)
from .resolver import ParticipantResolver
from .transcript import (
    ChatTranscript,
    LocalChatTranscript,
    build_mirror_message,
    mirror_conversations,
)

logger = logging.getLogger(__name__)

CURRENCY_PATTERN = re.compile(r"^[A-Z]{3}$")
MAX_NOTES_LENGTH = 500
RECENT_ACTIVITY_LIMIT = 5


def normalize_category(category: str | None) -> str:
    """
    Match a category label case-insensitively.

    Raises:
        ValidationError: If the label is not a known category
    """
    if not category:
        return DEFAULT_CATEGORY
    for known in CATEGORIES:
        if known.lower() == category.strip().lower():
            return known
    raise ValidationError(
        f"Unknown category '{category}'. Expected one of: {', '.join(CATEGORIES)}"
    )


class SettlementService:
    """Creates split bills and applies payments and rejections."""

    def __init__(
        self,
        settings: Settings,
        database: Database,
        broadcaster: SplitBillBroadcaster,
        hooks: LifecycleHooks,
        transcript: ChatTranscript,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the settlement service."""
        self.settings = settings
        self.db = database
        self.broadcaster = broadcaster
        self.hooks = hooks
        self.transcript = transcript
        self.clock = clock
        self.resolver = ParticipantResolver(database)

    def close(self):
        """Close collaborator HTTP clients. The database is closed by its owner."""
        for collaborator in (self.broadcaster.publisher, self.hooks, self.transcript):
            close = getattr(collaborator, "close", None)
            if close is not None:
                close()

    # ========================================================================
    # Core operations
    # ========================================================================

    def create_split_bill(
        self, actor_id, request: CreateSplitBillRequest
    ) -> SplitBill:
        """
        Create a split bill and notify everyone involved.

        Args:
            actor_id: The creating user (any reference accepted by normalize_id)
            request: Creation request

        Returns:
            The persisted split bill

        Raises:
            ValidationError: Bad description, amount, currency, category or shape
                (incl. UnknownParticipantError, SelfOnlySplitError,
                AmountMismatchError, DuplicateParticipantError)
            NotAGroupMemberError: If a participant is not an active group member
            GroupNotFoundError: If the group does not exist
        """
        actor_id = normalize_id(actor_id)
        bill = self._build_split_bill(actor_id, request)

        self.db.insert_split_bill(bill)
        logger.info(
            f"Created split bill {bill.id} by {actor_id}: {bill.currency} "
            f"{bill.total_amount} across {len(bill.participants)} participant(s)"
        )

        self.broadcaster.broadcast("created", bill, actor_id)
        self._fire_hook("on_created", bill)
        self.post_mirror(bill)

        return self._reload(bill.id)

    def mark_payment_as_paid(self, split_bill_id: str, actor_id) -> SplitBill:
        """
        Mark the actor's share as paid.

        Repeated calls, and calls on settled or cancelled bills, return the
        current state unchanged.

        Raises:
            SplitBillNotFoundError: If the bill does not exist
            NotAParticipantError: If the actor is not a participant
        """
        actor_id = normalize_id(actor_id)
        outcome = self.db.apply_payment(split_bill_id, actor_id, self.clock())

        if not outcome.changed:
            logger.info(
                f"Payment by {actor_id} on {split_bill_id} is a no-op "
                f"(bill {outcome.bill.status})"
            )
            return outcome.bill

        self.broadcaster.broadcast("payment-made", outcome.bill, actor_id)
        if outcome.became_settled:
            self._fire_hook("on_settled", outcome.bill)

        return outcome.bill

    def reject_split_bill(self, split_bill_id: str, actor_id) -> SplitBill:
        """
        Decline the actor's share.

        Repeated calls, and calls on settled or cancelled bills, return the
        current state unchanged.

        Raises:
            SplitBillNotFoundError: If the bill does not exist
            NotAParticipantError: If the actor is not a participant
            CannotRejectOwnBillError: If the actor created the bill
        """
        actor_id = normalize_id(actor_id)
        outcome = self.db.apply_rejection(split_bill_id, actor_id, self.clock())

        if not outcome.changed:
            logger.info(
                f"Rejection by {actor_id} on {split_bill_id} is a no-op "
                f"(bill {outcome.bill.status})"
            )
            return outcome.bill

        self.broadcaster.broadcast("bill-rejected", outcome.bill, actor_id)
        if outcome.became_cancelled:
            self._fire_hook("on_cancelled", outcome.bill)

        return outcome.bill

    # ========================================================================
    # Queries
    # ========================================================================

    def get_split_bill(self, split_bill_id: str, actor_id) -> SplitBill:
        """
        Get a bill visible to the actor.

        Raises:
            SplitBillNotFoundError: If the bill does not exist
            AccessDeniedError: If the actor is neither creator nor participant
        """
        actor_id = normalize_id(actor_id)
        bill = self._reload(split_bill_id)
        if actor_id != bill.created_by and bill.get_participant(actor_id) is None:
            raise AccessDeniedError(f"Access denied to split bill {split_bill_id}")
        return bill

    def list_user_split_bills(
        self, actor_id, status: BillStatus | None = None
    ) -> list[SplitBill]:
        """Bills the actor created or takes part in, newest first."""
        actor_id = normalize_id(actor_id)
        bills = self.db.list_split_bills_for_user(actor_id)
        if status:
            bills = [bill for bill in bills if bill.status == status]
        return bills

    def list_group_split_bills(
        self, group_id, actor_id, status: BillStatus | None = None
    ) -> list[SplitBill]:
        """
        Bills of a group, newest first.

        Raises:
            GroupNotFoundError: If the group does not exist
            NotAGroupMemberError: If the actor is not an active member
        """
        group_id = self._require_group_member(group_id, actor_id)

        bills = self.db.list_split_bills_for_group(group_id)
        if status:
            bills = [bill for bill in bills if bill.status == status]
        return bills

    def get_user_stats(self, actor_id) -> UserStats:
        """
        Summarize a user's bills and outstanding amounts.

        Outstanding amounts only count pending shares on active bills.
        """
        actor_id = normalize_id(actor_id)
        stats = UserStats(user_id=actor_id)
        bills = self.db.list_split_bills_for_user(actor_id)

        for bill in bills:
            stats.total_bills += 1
            stats.total_amount += bill.total_amount
            if bill.status == "settled":
                stats.settled += 1
                continue
            if bill.status == "cancelled":
                stats.cancelled += 1
                continue
            stats.active += 1

            for p in bill.participants:
                if p.status != "pending":
                    continue
                if bill.created_by == actor_id:
                    stats.owed_to_you += p.amount
                elif p.user_id == actor_id:
                    stats.you_owe += p.amount

        stats.by_category = _category_breakdown(bills)
        stats.recent_activity = bills[:RECENT_ACTIVITY_LIMIT]
        return stats

    def get_group_stats(self, group_id, actor_id) -> GroupStats:
        """
        Summarize a group's bills per member and per category.

        Member totals count every bill, whatever its status.

        Raises:
            GroupNotFoundError: If the group does not exist
            NotAGroupMemberError: If the actor is not an active member
        """
        group_id = self._require_group_member(group_id, actor_id)
        stats = GroupStats(group_id=group_id)
        bills = self.db.list_split_bills_for_group(group_id)
        members: dict[str, MemberStats] = {}

        for bill in bills:
            stats.total_bills += 1
            stats.total_amount += bill.total_amount
            if bill.is_settled:
                stats.settled_amount += bill.total_amount

            for p in bill.participants:
                member = members.get(p.user_id)
                if member is None:
                    user = self.db.get_user(p.user_id)
                    member = MemberStats(
                        user_id=p.user_id, name=user.name if user else p.user_id
                    )
                    members[p.user_id] = member
                member.owes += p.amount
                member.total_bills += 1
                if p.is_paid:
                    member.paid_count += 1

        stats.by_member = sorted(
            members.values(), key=lambda m: (-m.owes, m.name)
        )
        stats.by_category = _category_breakdown(bills)
        return stats

    # ========================================================================
    # Chat mirror
    # ========================================================================

    def post_mirror(self, bill: SplitBill) -> bool:
        """
        Mirror a committed bill into its chat conversations.

        Safe to repeat: transcripts deduplicate on the split bill id.

        Returns:
            True if every conversation received the mirror
        """
        try:
            body = build_mirror_message(bill, self.db)
            for conversation in mirror_conversations(bill):
                self.transcript.post_structured_message(conversation, bill.id, body)
        except Exception as e:
            logger.error(f"Failed to mirror split bill {bill.id} into chat: {e}")
            return False

        self.db.mark_mirror_posted(bill.id)
        logger.debug(f"Mirrored split bill {bill.id} into chat")
        return True

    def retry_pending_mirrors(self) -> int:
        """
        Re-post chat mirrors that failed earlier.

        Returns:
            Number of bills mirrored successfully
        """
        pending = self.db.list_unmirrored_split_bills()
        if pending:
            logger.info(f"Retrying chat mirror for {len(pending)} split bill(s)")
        return sum(1 for bill in pending if self.post_mirror(bill))

    # ========================================================================
    # Helpers
    # ========================================================================

    def _build_split_bill(
        self, actor_id: str, request: CreateSplitBillRequest
    ) -> SplitBill:
        description = request.description.strip()
        if not description:
            raise ValidationError("Description is required")
        if len(description) > self.settings.max_description_length:
            raise ValidationError(
                f"Description cannot exceed "
                f"{self.settings.max_description_length} characters"
            )

        if request.notes and len(request.notes) > MAX_NOTES_LENGTH:
            raise ValidationError(
                f"Notes cannot exceed {MAX_NOTES_LENGTH} characters"
            )

        total = validate_total(request.total_amount)

        currency = (request.currency or self.settings.default_currency).strip().upper()
        if not CURRENCY_PATTERN.match(currency):
            raise ValidationError(f"Invalid currency code '{currency}'")

        category = normalize_category(request.category)

        scope: GroupScope | DirectScope = (
            GroupScope(group_id=request.group_id)
            if request.group_id
            else DirectScope()
        )
        participant_ids = self.resolver.resolve(actor_id, scope, request.participants)

        amounts, percentages = self._compute_shares(
            request, total, len(participant_ids)
        )
        if any(amount <= 0 for amount in amounts):
            raise InvalidAmountError(
                f"Total {total} is too small to split between "
                f"{len(participant_ids)} participants"
            )

        now = self.clock()
        try:
            return SplitBill(
                id=uuid.uuid4().hex,
                description=description,
                total_amount=total,
                currency=currency,
                scope=scope,
                created_by=actor_id,
                participants=[
                    Participant(
                        user_id=user_id,
                        amount=amount,
                        percentage=percentage,
                        # The creator fronted the money
                        is_paid=user_id == actor_id,
                        paid_at=now if user_id == actor_id else None,
                    )
                    for user_id, amount, percentage in zip(
                        participant_ids, amounts, percentages, strict=True
                    )
                ],
                split_kind=request.split_kind,
                category=category,
                notes=request.notes,
                created_at=now,
            )
        except pydantic.ValidationError as e:
            raise ValidationError(str(e)) from e

    def _compute_shares(
        self, request: CreateSplitBillRequest, total: Decimal, n: int
    ) -> tuple[list[Decimal], list[Decimal | None]]:
        if request.split_kind == "equal":
            return distribute(total, n), [None] * n

        if request.split_kind == "percentage":
            percentages = request.percentages or []
            if len(percentages) != n:
                raise AmountMismatchError(
                    f"Expected {n} percentages (one per participant, creator "
                    f"first), got {len(percentages)}"
                )
            return distribute_by_percentage(total, percentages), list(percentages)

        amounts = request.amounts or []
        if len(amounts) != n:
            raise AmountMismatchError(
                f"Expected {n} amounts (one per participant, creator first), "
                f"got {len(amounts)}"
            )
        return validate_amounts(total, amounts), [None] * n

    def _require_group_member(self, group_id, actor_id) -> str:
        group_id = normalize_id(group_id)
        actor_id = normalize_id(actor_id)

        if self.db.get_group(group_id) is None:
            raise GroupNotFoundError(group_id)
        if actor_id not in self.db.active_member_ids(group_id):
            raise NotAGroupMemberError(group_id, [actor_id])
        return group_id

    def _reload(self, split_bill_id: str) -> SplitBill:
        bill = self.db.get_split_bill(split_bill_id)
        if bill is None:
            raise SplitBillNotFoundError(split_bill_id)
        return bill

    def _fire_hook(self, name: str, bill: SplitBill):
        try:
            getattr(self.hooks, name)(bill)
        except Exception as e:
            logger.error(f"Lifecycle hook {name} failed for split bill {bill.id}: {e}")


def _category_breakdown(bills: list[SplitBill]) -> list[CategoryStats]:
    """Bill count and amount per category, largest amount first."""
    by_category: dict[str, CategoryStats] = {}
    for bill in bills:
        entry = by_category.setdefault(
            bill.category, CategoryStats(category=bill.category)
        )
        entry.count += 1
        entry.amount += bill.total_amount
    return sorted(by_category.values(), key=lambda c: (-c.amount, c.category))


def build_service(settings: Settings, database: Database) -> SettlementService:
    """
    Wire a SettlementService from settings.

    Collaborators with a configured URL talk HTTP; the rest fall back to
    in-process implementations (in-memory events, logged hooks, local
    transcript).
    """
    publisher: EventPublisher
    if settings.realtime_gateway_url:
        publisher = RealtimeGatewayClient(
            settings.realtime_gateway_url,
            token=settings.realtime_gateway_token,
            timeout=settings.http_timeout_seconds,
        )
    else:
        publisher = InMemoryEventPublisher()

    hooks: LifecycleHooks
    if settings.notification_service_url:
        hooks = NotificationServiceClient(
            settings.notification_service_url,
            token=settings.notification_service_token,
            timeout=settings.http_timeout_seconds,
        )
    else:
        hooks = LoggingLifecycleHooks()

    transcript: ChatTranscript
    if settings.chat_service_url:
        transcript = ChatServiceClient(
            settings.chat_service_url,
            token=settings.chat_service_token,
            timeout=settings.http_timeout_seconds,
        )
    else:
        transcript = LocalChatTranscript(database)

    broadcaster = SplitBillBroadcaster(
        publisher,
        database,
        timeout_seconds=settings.broadcast_timeout_seconds,
        max_workers=settings.broadcast_max_workers,
    )
    return SettlementService(settings, database, broadcaster, hooks, transcript)
