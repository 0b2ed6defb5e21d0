"""Tests for SettlementService layer."""

from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from conftest import NOW
from split_sync.broadcaster import InMemoryEventPublisher, SplitBillBroadcaster
from split_sync.exceptions import (
    AccessDeniedError,
    AmountMismatchError,
    CannotRejectOwnBillError,
    ChatServiceError,
    GroupNotFoundError,
    InvalidAmountError,
    NotAGroupMemberError,
    NotAParticipantError,
    SelfOnlySplitError,
    SplitBillNotFoundError,
    ValidationError,
)
from split_sync.hooks import LoggingLifecycleHooks
from split_sync.models import CreateSplitBillRequest
from split_sync.service import SettlementService, build_service, normalize_category
from split_sync.transcript import LocalChatTranscript


def group_request(**overrides) -> CreateSplitBillRequest:
    fields = {
        "description": "Dinner",
        "total_amount": Decimal("90.00"),
        "group_id": "g-trip",
    }
    fields.update(overrides)
    return CreateSplitBillRequest(**fields)


class TestCreateSplitBill:
    """Creation validates, persists, then notifies."""

    def test_group_bill_shared_with_active_members(self, service, group, publisher, hooks):
        bill = service.create_split_bill("u-alice", group_request())

        assert bill.participant_ids == ["u-alice", "u-bob", "u-carol"]
        assert [p.amount for p in bill.participants] == [Decimal("30.00")] * 3
        assert bill.status == "active"
        assert bill.category == "Other"
        assert bill.currency == "USD"
        assert bill.created_at == NOW

        creator = bill.get_participant("u-alice")
        assert creator.is_paid is True
        assert creator.paid_at == NOW
        assert bill.get_participant("u-bob").status == "pending"

        events = publisher.events_for("group:g-trip")
        assert [e.type for e in events] == ["created"]
        hooks.on_created.assert_called_once()
        assert bill.mirror_posted is True

    def test_remainder_goes_to_creator(self, service, group):
        bill = service.create_split_bill(
            "u-alice", group_request(total_amount=Decimal("100.00"))
        )

        assert [p.amount for p in bill.participants] == [
            Decimal("33.34"),
            Decimal("33.33"),
            Decimal("33.33"),
        ]

    def test_percentage_split(self, service, group):
        bill = service.create_split_bill(
            "u-alice",
            group_request(
                total_amount=Decimal("10.00"),
                split_kind="percentage",
                percentages=[Decimal("50"), Decimal("25"), Decimal("25")],
            ),
        )

        assert [p.amount for p in bill.participants] == [
            Decimal("5.00"),
            Decimal("2.50"),
            Decimal("2.50"),
        ]
        assert bill.participants[0].percentage == Decimal("50")

    def test_custom_split(self, service, group):
        bill = service.create_split_bill(
            "u-alice",
            group_request(
                participants=["@bob"],
                split_kind="custom",
                amounts=[Decimal("60.00"), Decimal("30.00")],
            ),
        )

        assert [p.amount for p in bill.participants] == [
            Decimal("60.00"),
            Decimal("30.00"),
        ]

    def test_custom_split_wrong_count(self, service, group, publisher):
        with pytest.raises(AmountMismatchError, match="Expected 2 amounts"):
            service.create_split_bill(
                "u-alice",
                group_request(
                    participants=["@bob"],
                    split_kind="custom",
                    amounts=[Decimal("90.00")],
                ),
            )
        assert publisher.published == []

    def test_custom_split_mismatched_total(self, service, group, db):
        with pytest.raises(AmountMismatchError):
            service.create_split_bill(
                "u-alice",
                group_request(
                    participants=["@bob"],
                    split_kind="custom",
                    amounts=[Decimal("50.00"), Decimal("30.00")],
                ),
            )
        assert db.list_split_bills_for_user("u-alice") == []

    def test_direct_bill(self, service, users, publisher):
        bill = service.create_split_bill(
            "u-alice",
            CreateSplitBillRequest(
                description="Taxi",
                total_amount=Decimal("40.00"),
                participants=["@bob"],
                category="transport",
                currency="eur",
            ),
        )

        assert bill.group_id is None
        assert bill.participant_ids == ["u-alice", "u-bob"]
        assert bill.category == "Transport"
        assert bill.currency == "EUR"
        assert {ch for ch, _ in publisher.published} == {"user:u-alice", "user:u-bob"}

    def test_actor_reference_is_normalized(self, service, group):
        bill = service.create_split_bill({"_id": "u-alice"}, group_request())

        assert bill.created_by == "u-alice"

    @pytest.mark.parametrize(
        "overrides,error",
        [
            ({"description": "   "}, ValidationError),
            ({"description": "x" * 201}, ValidationError),
            ({"total_amount": Decimal("0")}, InvalidAmountError),
            ({"total_amount": Decimal("-3.00")}, InvalidAmountError),
            ({"total_amount": Decimal("10.001")}, InvalidAmountError),
            ({"total_amount": Decimal("0.02")}, InvalidAmountError),
            ({"total_amount": Decimal(10**27)}, InvalidAmountError),
            (
                {
                    "total_amount": Decimal("1.00"),
                    "split_kind": "percentage",
                    "percentages": [Decimal("99.5"), Decimal("0.25"), Decimal("0.25")],
                },
                InvalidAmountError,
            ),
            ({"currency": "dollars"}, ValidationError),
            ({"category": "Yachts"}, ValidationError),
            ({"notes": "n" * 501}, ValidationError),
            ({"group_id": "g-missing"}, GroupNotFoundError),
            ({"participants": ["@erin"]}, NotAGroupMemberError),
            ({"participants": ["@alice"]}, SelfOnlySplitError),
        ],
    )
    def test_invalid_requests_persist_nothing(
        self, service, group, db, publisher, hooks, overrides, error
    ):
        with pytest.raises(error):
            service.create_split_bill("u-alice", group_request(**overrides))

        assert db.list_split_bills_for_user("u-alice") == []
        assert publisher.published == []
        hooks.on_created.assert_not_called()

    def test_broadcast_failure_does_not_fail_creation(self, settings, db, group, hooks):
        publisher = MagicMock()
        publisher.publish.side_effect = RuntimeError("gateway down")
        service = SettlementService(
            settings,
            db,
            broadcaster=SplitBillBroadcaster(publisher, db, timeout_seconds=1.0),
            hooks=hooks,
            transcript=LocalChatTranscript(db),
        )

        bill = service.create_split_bill("u-alice", group_request())

        assert db.get_split_bill(bill.id) is not None
        hooks.on_created.assert_called_once()

    def test_hook_failure_does_not_fail_creation(self, service, group, hooks, db):
        hooks.on_created.side_effect = RuntimeError("reminders down")

        bill = service.create_split_bill("u-alice", group_request())

        assert db.get_split_bill(bill.id).status == "active"


class TestDirectRejectionScenario:
    """Alice splits 40.00 with Bob in a direct chat and Bob declines."""

    def test_bob_rejects_and_bill_is_cancelled(self, service, users, publisher, hooks):
        bill = service.create_split_bill(
            "u-alice",
            CreateSplitBillRequest(
                description="Concert tickets",
                total_amount=Decimal("40.00"),
                participants=["@bob"],
            ),
        )
        assert [p.amount for p in bill.participants] == [
            Decimal("20.00"),
            Decimal("20.00"),
        ]

        rejected = service.reject_split_bill(bill.id, "u-bob")

        assert rejected.is_cancelled is True
        assert rejected.cancel_reason == "All participants rejected the bill"
        hooks.on_cancelled.assert_called_once()
        hooks.on_settled.assert_not_called()

        for channel in ("user:u-alice", "user:u-bob"):
            types = [e.type for e in publisher.events_for(channel)]
            assert types == ["created", "bill-rejected"]

        with pytest.raises(CannotRejectOwnBillError):
            service.reject_split_bill(bill.id, "u-alice")


class TestSettlement:
    """Payments settle the bill once, hooks fire once."""

    def test_everyone_pays(self, service, group, publisher, hooks):
        bill = service.create_split_bill("u-alice", group_request())

        after_bob = service.mark_payment_as_paid(bill.id, "u-bob")
        assert after_bob.status == "active"
        hooks.on_settled.assert_not_called()

        after_carol = service.mark_payment_as_paid(bill.id, "u-carol")
        assert after_carol.is_settled is True
        assert after_carol.settled_at == NOW
        hooks.on_settled.assert_called_once()

        types = [e.type for e in publisher.events_for("group:g-trip")]
        assert types == ["created", "payment-made", "payment-made"]

        last = publisher.events_for("group:g-trip")[-1]
        paid = {p.user_id: p.is_paid for p in last.split_bill.participants}
        assert paid == {"u-alice": True, "u-bob": True, "u-carol": True}
        assert last.split_bill.is_settled is True

    def test_repeat_payment_is_silent(self, service, group, publisher, hooks):
        bill = service.create_split_bill("u-alice", group_request())
        service.mark_payment_as_paid(bill.id, "u-bob")
        published_before = len(publisher.published)

        again = service.mark_payment_as_paid(bill.id, "u-bob")

        assert again.get_participant("u-bob").is_paid is True
        assert len(publisher.published) == published_before

    def test_payment_after_settlement_is_noop(self, service, group, hooks):
        bill = service.create_split_bill("u-alice", group_request())
        service.mark_payment_as_paid(bill.id, "u-bob")
        service.mark_payment_as_paid(bill.id, "u-carol")

        again = service.mark_payment_as_paid(bill.id, "u-carol")

        assert again.is_settled is True
        hooks.on_settled.assert_called_once()

    def test_rejecter_can_still_pay_and_settle(self, service, group, publisher, hooks):
        """A paid share and a rejected share keep the bill active until the rejecter pays."""
        bill = service.create_split_bill("u-alice", group_request())
        service.mark_payment_as_paid(bill.id, "u-bob")

        mixed = service.reject_split_bill(bill.id, "u-carol")
        assert mixed.status == "active"
        hooks.on_settled.assert_not_called()
        hooks.on_cancelled.assert_not_called()

        final = service.mark_payment_as_paid(bill.id, "u-carol")

        assert final.status == "settled"
        carol = final.get_participant("u-carol")
        assert carol.is_paid is True
        assert carol.is_rejected is False
        hooks.on_settled.assert_called_once()
        hooks.on_cancelled.assert_not_called()
        assert publisher.events_for("group:g-trip")[-1].type == "payment-made"

    def test_event_projection_reflects_state_after_transition(self, service, group, publisher):
        bill = service.create_split_bill("u-alice", group_request())
        service.mark_payment_as_paid(bill.id, "u-bob")

        event = publisher.events_for("group:g-trip")[-1]
        bob = next(p for p in event.split_bill.participants if p.user_id == "u-bob")

        assert event.actor_id == "u-bob"
        assert bob.is_paid is True
        assert bob.name == "Bob"

    def test_non_participant_cannot_pay(self, service, group):
        bill = service.create_split_bill("u-alice", group_request())

        with pytest.raises(NotAParticipantError):
            service.mark_payment_as_paid(bill.id, "u-erin")

    def test_unknown_bill(self, service, users):
        with pytest.raises(SplitBillNotFoundError):
            service.mark_payment_as_paid("nope", "u-bob")


class TestQueries:
    def test_get_split_bill_requires_involvement(self, service, group):
        bill = service.create_split_bill("u-alice", group_request(participants=["@bob"]))

        assert service.get_split_bill(bill.id, "u-bob").id == bill.id
        with pytest.raises(AccessDeniedError):
            service.get_split_bill(bill.id, "u-carol")

    def test_list_user_split_bills_by_status(self, service, group):
        settled = service.create_split_bill(
            "u-alice", group_request(participants=["@bob"])
        )
        service.mark_payment_as_paid(settled.id, "u-bob")
        active = service.create_split_bill("u-bob", group_request())

        assert {b.id for b in service.list_user_split_bills("u-alice")} == {
            settled.id,
            active.id,
        }
        assert [b.id for b in service.list_user_split_bills("u-alice", "settled")] == [
            settled.id
        ]
        assert [b.id for b in service.list_user_split_bills("u-alice", "active")] == [
            active.id
        ]

    def test_list_group_split_bills_requires_active_member(self, service, group):
        service.create_split_bill("u-alice", group_request())

        assert len(service.list_group_split_bills("g-trip", "u-carol")) == 1
        with pytest.raises(NotAGroupMemberError):
            service.list_group_split_bills("g-trip", "u-dave")
        with pytest.raises(GroupNotFoundError):
            service.list_group_split_bills("g-none", "u-alice")

    def test_user_stats(self, service, group):
        dinner = service.create_split_bill("u-alice", group_request(category="Food"))
        bob_bill = service.create_split_bill(
            "u-bob",
            group_request(
                total_amount=Decimal("20.00"), participants=["@alice"], category="Transport"
            ),
        )
        cancelled = service.create_split_bill(
            "u-alice", group_request(participants=["@carol"])
        )
        service.reject_split_bill(cancelled.id, "u-carol")

        stats = service.get_user_stats("u-alice")

        assert stats.total_bills == 3
        assert stats.total_amount == Decimal("200.00")
        assert stats.active == 2
        assert stats.cancelled == 1
        assert stats.owed_to_you == Decimal("60.00")
        assert stats.you_owe == Decimal("10.00")
        assert [(c.category, c.count, c.amount) for c in stats.by_category] == [
            ("Food", 1, Decimal("90.00")),
            ("Other", 1, Decimal("90.00")),
            ("Transport", 1, Decimal("20.00")),
        ]
        assert {b.id for b in stats.recent_activity} == {dinner.id, bob_bill.id, cancelled.id}

        service.mark_payment_as_paid(bob_bill.id, "u-alice")
        assert service.get_user_stats("u-alice").settled == 1

    def test_recent_activity_is_capped(self, service, group):
        for n in range(7):
            service.create_split_bill("u-alice", group_request(description=f"Round {n}"))

        stats = service.get_user_stats("u-bob")

        assert stats.total_bills == 7
        assert len(stats.recent_activity) == 5

    def test_group_stats(self, service, group):
        dinner = service.create_split_bill("u-alice", group_request(category="Food"))
        service.mark_payment_as_paid(dinner.id, "u-bob")
        service.mark_payment_as_paid(dinner.id, "u-carol")
        service.create_split_bill(
            "u-bob",
            group_request(
                total_amount=Decimal("20.00"), participants=["@alice"], category="Transport"
            ),
        )
        # Direct bills stay out of group totals
        service.create_split_bill(
            "u-alice",
            CreateSplitBillRequest(
                description="Coffee", total_amount=Decimal("8.00"), participants=["@carol"]
            ),
        )

        stats = service.get_group_stats("g-trip", "u-carol")

        assert stats.group_id == "g-trip"
        assert stats.total_bills == 2
        assert stats.total_amount == Decimal("110.00")
        assert stats.settled_amount == Decimal("90.00")
        assert [
            (m.user_id, m.name, m.owes, m.paid_count, m.total_bills) for m in stats.by_member
        ] == [
            ("u-alice", "Alice", Decimal("40.00"), 1, 2),
            ("u-bob", "Bob", Decimal("40.00"), 2, 2),
            ("u-carol", "Carol", Decimal("30.00"), 1, 1),
        ]
        assert [(c.category, c.count, c.amount) for c in stats.by_category] == [
            ("Food", 1, Decimal("90.00")),
            ("Transport", 1, Decimal("20.00")),
        ]

    def test_group_stats_requires_active_member(self, service, group):
        with pytest.raises(NotAGroupMemberError):
            service.get_group_stats("g-trip", "u-dave")
        with pytest.raises(GroupNotFoundError):
            service.get_group_stats("g-missing", "u-alice")

    def test_group_stats_without_bills(self, service, group):
        stats = service.get_group_stats("g-trip", "u-alice")

        assert stats.total_bills == 0
        assert stats.total_amount == Decimal("0.00")
        assert stats.by_member == []
        assert stats.by_category == []


class TestChatMirror:
    """The chat mirror is posted after commit and retried until delivered."""

    def test_group_bill_mirrored_once(self, service, group, db):
        bill = service.create_split_bill("u-alice", group_request())

        messages = db.get_chat_messages("group:g-trip")
        assert len(messages) == 1
        assert messages[0]["body"]["splitBillId"] == bill.id
        assert 'Alice split "Dinner": USD 90.00 between 3 people' in messages[0]["body"]["text"]

        assert service.post_mirror(bill) is True
        assert len(db.get_chat_messages("group:g-trip")) == 1

    def test_direct_bill_mirrored_per_counterpart(self, service, users, db):
        service.create_split_bill(
            "u-bob",
            CreateSplitBillRequest(
                description="Lunch",
                total_amount=Decimal("30.00"),
                participants=["@alice", "@carol"],
            ),
        )

        assert len(db.get_chat_messages("direct:u-alice:u-bob")) == 1
        assert len(db.get_chat_messages("direct:u-bob:u-carol")) == 1

    def test_failed_mirror_is_retried(self, settings, db, group, hooks):
        transcript = MagicMock()
        transcript.post_structured_message.side_effect = ChatServiceError("offline")
        service = SettlementService(
            settings,
            db,
            broadcaster=SplitBillBroadcaster(InMemoryEventPublisher(), db),
            hooks=hooks,
            transcript=transcript,
        )

        bill = service.create_split_bill("u-alice", group_request())
        assert bill.mirror_posted is False
        assert [b.id for b in db.list_unmirrored_split_bills()] == [bill.id]

        transcript.post_structured_message.side_effect = None
        assert service.retry_pending_mirrors() == 1
        assert db.get_split_bill(bill.id).mirror_posted is True
        assert service.retry_pending_mirrors() == 0


class TestBuildService:
    def test_in_process_collaborators_without_urls(self, settings, db):
        service = build_service(settings, db)

        assert isinstance(service.broadcaster.publisher, InMemoryEventPublisher)
        assert isinstance(service.hooks, LoggingLifecycleHooks)
        assert isinstance(service.transcript, LocalChatTranscript)
        service.close()


def test_normalize_category():
    assert normalize_category(None) == "Other"
    assert normalize_category(" FOOD ") == "Food"
    with pytest.raises(ValidationError):
        normalize_category("boats")
