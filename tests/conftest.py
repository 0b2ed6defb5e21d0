"""Shared fixtures for split-sync tests."""

from datetime import UTC, datetime
from unittest.mock import MagicMock

import pytest

from split_sync.broadcaster import InMemoryEventPublisher, SplitBillBroadcaster
from split_sync.config import Settings
from split_sync.db import Database
from split_sync.models import Group, User
from split_sync.service import SettlementService
from split_sync.transcript import LocalChatTranscript

NOW = datetime(2024, 3, 1, 12, 0, 0, tzinfo=UTC)


@pytest.fixture
def settings(tmp_path):
    """Create test settings pointing at a temporary database."""
    return Settings(
        database_path=tmp_path / "test.db",
        default_currency="USD",
        broadcast_timeout_seconds=2.0,
    )


@pytest.fixture
def db(settings):
    """Create a temporary database."""
    database = Database(settings.database_path)
    yield database
    database.close()


@pytest.fixture
def users(db):
    """Alice, Bob and Carol are active in the trip group; Dave left it; Erin never joined."""
    people = {
        "alice": User(id="u-alice", username="alice", name="Alice"),
        "bob": User(id="u-bob", username="bob", name="Bob"),
        "carol": User(id="u-carol", username="carol", name="Carol"),
        "dave": User(id="u-dave", username="dave", name="Dave"),
        "erin": User(id="u-erin", username="erin", name="Erin"),
    }
    for user in people.values():
        db.add_user(user)
    return people


@pytest.fixture
def group(db, users):
    """A group with three active members and one inactive member."""
    trip = db.add_group(Group(id="g-trip", name="Lisbon trip"))
    for key in ("alice", "bob", "carol"):
        db.add_group_member(trip.id, users[key].id)
    db.add_group_member(trip.id, users["dave"].id, is_active=False)
    return trip


@pytest.fixture
def publisher():
    """In-memory realtime publisher."""
    return InMemoryEventPublisher()


@pytest.fixture
def hooks():
    """Mock lifecycle hooks."""
    return MagicMock()


@pytest.fixture
def service(settings, db, publisher, hooks):
    """Create a SettlementService with in-process collaborators and a fixed clock."""
    broadcaster = SplitBillBroadcaster(publisher, db, timeout_seconds=2.0)
    return SettlementService(
        settings,
        db,
        broadcaster=broadcaster,
        hooks=hooks,
        transcript=LocalChatTranscript(db),
        clock=lambda: NOW,
    )
