"""Real-time synchronization of split bill state to chat rooms and users."""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime
from typing import Protocol

from .identifiers import group_channel, user_channel
from .models import (
    BroadcastReport,
    EventType,
    ParticipantProjection,
    SplitBill,
    SplitBillEvent,
    SplitBillProjection,
    utcnow,
)
from .resolver import Directory

logger = logging.getLogger(__name__)


class EventPublisher(Protocol):
    """Delivers one event to one realtime channel."""

    def publish(self, channel: str, event: SplitBillEvent) -> None: ...


class InMemoryEventPublisher:
    """Keeps published events in memory.

    Used when no realtime gateway is configured, and by tests.
    """

    def __init__(self):
        """Initialize an empty event log."""
        self._lock = threading.Lock()
        self.published: list[tuple[str, SplitBillEvent]] = []

    def publish(self, channel: str, event: SplitBillEvent) -> None:
        with self._lock:
            self.published.append((channel, event))
        logger.info(f"[{channel}] {event.type} for split bill {event.split_bill_id}")

    def events_for(self, channel: str) -> list[SplitBillEvent]:
        """Get events published to a channel, in publish order."""
        with self._lock:
            return [event for ch, event in self.published if ch == channel]


def build_projection(
    bill: SplitBill, directory: Directory, recipient_id: str | None = None
) -> SplitBillProjection:
    """
    Flatten a split bill into its wire projection.

    Args:
        bill: The split bill
        directory: Used to look up display names
        recipient_id: Owner of the private channel, if any; sets recipient_share

    Returns:
        Projection ready to serialize
    """
    participants = []
    recipient_share = None
    for p in bill.participants:
        user = directory.get_user(p.user_id)
        participants.append(
            ParticipantProjection(
                user_id=p.user_id,
                name=user.name if user else p.user_id,
                amount=p.amount,
                is_paid=p.is_paid,
                is_rejected=p.is_rejected,
            )
        )
        if p.user_id == recipient_id:
            recipient_share = p.amount

    return SplitBillProjection(
        split_bill_id=bill.id,
        description=bill.description,
        total_amount=bill.total_amount,
        currency=bill.currency,
        is_settled=bill.is_settled,
        is_cancelled=bill.is_cancelled,
        participants=participants,
        recipient_share=recipient_share,
    )


def audience(bill: SplitBill) -> list[tuple[str, str | None]]:
    """
    Channels that must see a bill's updates.

    Returns:
        (channel, recipient user id) pairs; the recipient is None for the
        shared group channel
    """
    if bill.group_id is not None:
        return [(group_channel(bill.group_id), None)]

    recipients = [*bill.participant_ids, bill.created_by]
    channels = []
    seen = set()
    for user_id in recipients:
        if user_id not in seen:
            seen.add(user_id)
            channels.append((user_channel(user_id), user_id))
    return channels


class SplitBillBroadcaster:
    """Projects split bills into events and fans them out.

    Delivery is fire-and-forget: failures and timeouts are logged and reported,
    never raised.
    """

    def __init__(
        self,
        publisher: EventPublisher,
        directory: Directory,
        timeout_seconds: float = 5.0,
        max_workers: int = 8,
    ):
        """Initialize the broadcaster."""
        self.publisher = publisher
        self.directory = directory
        self.timeout_seconds = timeout_seconds
        self.max_workers = max_workers

    def build_events(
        self,
        event_type: EventType,
        bill: SplitBill,
        actor_id: str,
        timestamp: datetime | None = None,
    ) -> list[tuple[str, SplitBillEvent]]:
        """Build one event per audience channel."""
        timestamp = timestamp or utcnow()
        return [
            (
                channel,
                SplitBillEvent(
                    type=event_type,
                    split_bill_id=bill.id,
                    split_bill=build_projection(bill, self.directory, recipient_id),
                    actor_id=actor_id,
                    timestamp=timestamp,
                ),
            )
            for channel, recipient_id in audience(bill)
        ]

    def broadcast(
        self, event_type: EventType, bill: SplitBill, actor_id: str
    ) -> BroadcastReport:
        """
        Deliver an event about a bill to every channel in its audience.

        Args:
            event_type: "created", "payment-made" or "bill-rejected"
            bill: Bill state after the committed transition
            actor_id: User who caused the change

        Returns:
            Report of delivered and failed channels
        """
        report = BroadcastReport(event_type=event_type, split_bill_id=bill.id)

        try:
            deliveries = self.build_events(event_type, bill, actor_id)
        except Exception as e:
            logger.error(f"Failed to build {event_type} events for {bill.id}: {e}")
            return report

        executor = ThreadPoolExecutor(max_workers=self.max_workers)
        future_to_channel = {
            executor.submit(self.publisher.publish, channel, event): channel
            for channel, event in deliveries
        }

        try:
            for future in as_completed(future_to_channel, timeout=self.timeout_seconds):
                channel = future_to_channel[future]
                try:
                    future.result()
                    report.delivered.append(channel)
                except Exception as e:
                    logger.error(f"Broadcast of {event_type} to {channel} failed: {e}")
                    report.failed.append(channel)
        except TimeoutError:
            timed_out = [
                channel
                for channel in future_to_channel.values()
                if channel not in report.delivered and channel not in report.failed
            ]
            logger.warning(
                f"Broadcast of {event_type} for {bill.id} timed out after "
                f"{self.timeout_seconds}s on: {', '.join(timed_out)}"
            )
            report.failed.extend(timed_out)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        return report
