"""Pydantic domain models for split-sync."""

from datetime import UTC, datetime
from decimal import Decimal
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .identifiers import GroupId, UserId

SplitKind = Literal["equal", "percentage", "custom"]
Category = Literal[
    "Food", "Transport", "Entertainment", "Shopping", "Bills", "Health", "Other"
]
BillStatus = Literal["active", "settled", "cancelled"]
ParticipantStatus = Literal["pending", "paid", "rejected"]
EventType = Literal["created", "payment-made", "bill-rejected"]

CATEGORIES: tuple[str, ...] = (
    "Food",
    "Transport",
    "Entertainment",
    "Shopping",
    "Bills",
    "Health",
    "Other",
)
DEFAULT_CATEGORY = "Other"
CANCEL_REASON_ALL_REJECTED = "All participants rejected the bill"


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


# ============================================================================
# Directory Models
# ============================================================================


class User(BaseModel):
    """A chat user that can take part in split bills."""

    id: UserId
    username: str
    name: str


class Group(BaseModel):
    """A chat group."""

    id: GroupId
    name: str


class GroupMember(BaseModel):
    """A user's membership in a group."""

    group_id: GroupId
    user_id: UserId
    is_active: bool = True


# ============================================================================
# Settlement Models
# ============================================================================


class GroupScope(BaseModel):
    """Bill shared with a chat group."""

    kind: Literal["group"] = "group"
    group_id: GroupId


class DirectScope(BaseModel):
    """Bill between users in a direct chat (no group)."""

    kind: Literal["direct"] = "direct"


Scope = Annotated[GroupScope | DirectScope, Field(discriminator="kind")]


class Participant(BaseModel):
    """One user's row within a split bill."""

    user_id: UserId
    amount: Decimal
    percentage: Decimal | None = None
    is_paid: bool = False
    paid_at: datetime | None = None
    is_rejected: bool = False
    rejected_at: datetime | None = None

    @property
    def status(self) -> ParticipantStatus:
        if self.is_paid:
            return "paid"
        if self.is_rejected:
            return "rejected"
        return "pending"


class SplitBill(BaseModel):
    """The settlement aggregate.

    Mutated only through the Database transition methods; instances handed out
    by the store are snapshots.
    """

    id: str
    description: str
    total_amount: Decimal
    currency: str
    scope: Scope
    created_by: UserId
    participants: list[Participant]
    split_kind: SplitKind = "equal"
    category: Category = DEFAULT_CATEGORY
    notes: str | None = None
    is_settled: bool = False
    settled_at: datetime | None = None
    is_cancelled: bool = False
    cancelled_at: datetime | None = None
    cancel_reason: str | None = None
    mirror_posted: bool = False
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def status(self) -> BillStatus:
        if self.is_settled:
            return "settled"
        if self.is_cancelled:
            return "cancelled"
        return "active"

    @property
    def is_terminal(self) -> bool:
        return self.is_settled or self.is_cancelled

    @property
    def group_id(self) -> str | None:
        if isinstance(self.scope, GroupScope):
            return self.scope.group_id
        return None

    @property
    def participant_ids(self) -> list[str]:
        return [p.user_id for p in self.participants]

    def get_participant(self, user_id: str) -> Participant | None:
        """Get the participant row for a user, if present."""
        for participant in self.participants:
            if participant.user_id == user_id:
                return participant
        return None

    def shares_total(self) -> Decimal:
        """Sum of all participant amounts."""
        return sum((p.amount for p in self.participants), Decimal("0"))


class CreateSplitBillRequest(BaseModel):
    """Input for creating a split bill.

    ``participants`` holds raw references (ids, usernames or ``@mentions``);
    they are normalized and resolved by the ParticipantResolver. ``amounts`` and
    ``percentages`` follow the resolved participant order (creator first).
    """

    description: str
    total_amount: Decimal
    group_id: GroupId | None = None
    participants: list[Any] | None = None
    split_kind: SplitKind = "equal"
    amounts: list[Decimal] | None = None
    percentages: list[Decimal] | None = None
    category: str | None = None
    currency: str | None = None
    notes: str | None = None


class TransitionOutcome(BaseModel):
    """Result of a participant transition applied by the store."""

    bill: SplitBill
    changed: bool
    became_settled: bool = False
    became_cancelled: bool = False


class CategoryStats(BaseModel):
    """Bill count and total spent in one category."""

    category: str
    count: int = 0
    amount: Decimal = Decimal("0.00")


class UserStats(BaseModel):
    """Per-user split bill totals."""

    user_id: UserId
    total_bills: int = 0
    total_amount: Decimal = Decimal("0.00")
    active: int = 0
    settled: int = 0
    cancelled: int = 0
    owed_to_you: Decimal = Decimal("0.00")
    you_owe: Decimal = Decimal("0.00")
    by_category: list[CategoryStats] = Field(default_factory=list)
    recent_activity: list[SplitBill] = Field(default_factory=list)


class MemberStats(BaseModel):
    """One member's share of a group's bills."""

    user_id: UserId
    name: str
    owes: Decimal = Decimal("0.00")
    paid_count: int = 0
    total_bills: int = 0


class GroupStats(BaseModel):
    """Per-group split bill totals."""

    group_id: GroupId
    total_bills: int = 0
    total_amount: Decimal = Decimal("0.00")
    settled_amount: Decimal = Decimal("0.00")
    by_member: list[MemberStats] = Field(default_factory=list)
    by_category: list[CategoryStats] = Field(default_factory=list)


# ============================================================================
# Wire Models (camelCase JSON for realtime clients)
# ============================================================================


class WireModel(BaseModel):
    """Base for outbound payloads serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class ParticipantProjection(WireModel):
    user_id: str
    name: str
    amount: Decimal
    is_paid: bool
    is_rejected: bool


class SplitBillProjection(WireModel):
    """Flat, storage-independent view of a split bill sent to clients."""

    split_bill_id: str
    description: str
    total_amount: Decimal
    currency: str
    is_settled: bool
    is_cancelled: bool
    participants: list[ParticipantProjection]
    recipient_share: Decimal | None = None


class SplitBillEvent(WireModel):
    """Realtime event envelope. Consumers dedupe on (split_bill_id, timestamp)."""

    type: EventType
    split_bill_id: str
    split_bill: SplitBillProjection
    actor_id: str
    timestamp: datetime


class BroadcastReport(BaseModel):
    """Which channels received an event."""

    event_type: EventType
    split_bill_id: str
    delivered: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)


class CommandResult(BaseModel):
    """Outcome of a chat command, always renderable as plain text."""

    success: bool
    message: str
    split_bill: SplitBill | None = None
