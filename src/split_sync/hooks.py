"""Lifecycle hooks consumed by the reminder/notification system."""

import logging
from typing import Protocol

from .models import SplitBill

logger = logging.getLogger(__name__)


class LifecycleHooks(Protocol):
    """Best-effort callbacks fired after a bill transition is committed."""

    def on_created(self, bill: SplitBill) -> None: ...

    def on_settled(self, bill: SplitBill) -> None: ...

    def on_cancelled(self, bill: SplitBill) -> None: ...


class LoggingLifecycleHooks:
    """Hooks used when no notification service is configured."""

    def on_created(self, bill: SplitBill) -> None:
        pending = sum(1 for p in bill.participants if p.status == "pending")
        logger.info(
            f"Split bill {bill.id} created; {pending} participant(s) to remind"
        )

    def on_settled(self, bill: SplitBill) -> None:
        logger.info(f"Split bill {bill.id} settled; reminders can stop")

    def on_cancelled(self, bill: SplitBill) -> None:
        logger.info(f"Split bill {bill.id} cancelled ({bill.cancel_reason})")
