"""Realtime gateway client (channel fan-out to websocket subscribers)."""

import logging
from urllib.parse import quote

import httpx

from ..exceptions import RealtimeGatewayError
from ..models import SplitBillEvent

logger = logging.getLogger(__name__)


class RealtimeGatewayClient:
    """Publishes split bill events to channels on the realtime gateway.

    The gateway owns socket sessions; this client only pushes an event onto a
    named channel (``group:<id>`` or ``user:<id>``).
    """

    def __init__(self, base_url: str, token: str | None = None, timeout: float = 10.0):
        """Initialize the gateway client."""
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

    def publish(self, channel: str, event: SplitBillEvent) -> None:
        """
        Push one event onto a channel.

        Args:
            channel: Channel name
            event: Event to deliver

        Raises:
            RealtimeGatewayError: If the gateway is unreachable or rejects the event
        """
        payload = event.to_wire()
        logger.debug(f"Publishing {event.type} to {channel}: {payload}")

        try:
            response = self.client.post(
                f"/channels/{quote(channel, safe='')}/events",
                json={"event": "split-bill-updated", "data": payload},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(f"Realtime gateway error: {e}")
            logger.error(f"Response body: {e.response.text}")
            raise RealtimeGatewayError(
                f"Gateway rejected event for {channel}: {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise RealtimeGatewayError(f"Gateway unreachable for {channel}: {e}") from e
