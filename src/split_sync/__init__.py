"""split-sync - Split bills in chats, settle them to the cent, keep everyone in sync."""

__version__ = "0.1.0"

from .broadcaster import InMemoryEventPublisher, SplitBillBroadcaster
from .commands import SplitCommandExecutor, parse_split_command
from .config import Settings, load_settings
from .db import Database
from .distribution import distribute, distribute_by_percentage, validate_amounts
from .models import (
    CreateSplitBillRequest,
    Participant,
    SplitBill,
    SplitBillEvent,
    SplitBillProjection,
)
from .resolver import ParticipantResolver
from .service import SettlementService, build_service

__all__ = [
    "InMemoryEventPublisher",
    "SplitBillBroadcaster",
    "SplitCommandExecutor",
    "parse_split_command",
    "Settings",
    "load_settings",
    "Database",
    "distribute",
    "distribute_by_percentage",
    "validate_amounts",
    "CreateSplitBillRequest",
    "Participant",
    "SplitBill",
    "SplitBillEvent",
    "SplitBillProjection",
    "ParticipantResolver",
    "SettlementService",
    "build_service",
]
