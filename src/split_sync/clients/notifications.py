"""Notification/reminder service client."""

import logging

import httpx

from ..exceptions import NotificationServiceError
from ..models import SplitBill

logger = logging.getLogger(__name__)


class NotificationServiceClient:
    """Forwards split bill lifecycle callbacks to the reminder service.

    The reminder service owns scheduling and escalation; it only learns that a
    bill was created, settled or cancelled.
    """

    def __init__(self, base_url: str, token: str | None = None, timeout: float = 10.0):
        """Initialize the notification client."""
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self.client = httpx.Client(base_url=base_url, headers=headers, timeout=timeout)

    def close(self):
        """Close the HTTP client."""
        self.client.close()

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()

    def on_created(self, bill: SplitBill) -> None:
        self._send("created", bill)

    def on_settled(self, bill: SplitBill) -> None:
        self._send("settled", bill)

    def on_cancelled(self, bill: SplitBill) -> None:
        self._send("cancelled", bill)

    def _send(self, event: str, bill: SplitBill) -> None:
        payload = {
            "event": event,
            "splitBillId": bill.id,
            "createdBy": bill.created_by,
            "groupId": bill.group_id,
            "currency": bill.currency,
            "pending": [
                {"userId": p.user_id, "amount": str(p.amount)}
                for p in bill.participants
                if p.status == "pending"
            ],
        }

        try:
            response = self.client.post(f"/hooks/split-bills/{event}", json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(f"Notification service error: {e}")
            logger.error(f"Response body: {e.response.text}")
            raise NotificationServiceError(
                f"Notification service rejected '{event}' hook for {bill.id}"
            ) from e
        except httpx.HTTPError as e:
            raise NotificationServiceError(
                f"Notification service unreachable: {e}"
            ) from e

        logger.debug(f"Sent '{event}' hook for split bill {bill.id}")
