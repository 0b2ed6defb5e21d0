"""Chat service client for posting structured messages."""

import logging
from typing import Any
from urllib.parse import quote

import httpx

from ..exceptions import ChatServiceError

logger = logging.getLogger(__name__)


class ChatServiceClient:
    """Posts structured system messages into chat conversations."""

    def __init__(self, base_url: str, token: str | None = None, timeout: float = 10.0):
        """Initialize the chat client."""
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

    def post_structured_message(
        self, conversation: str, split_bill_id: str, body: dict[str, Any]
    ) -> None:
        """
        Post a structured message, at most once per split bill and conversation.

        The chat service deduplicates on the Idempotency-Key header, so retries
        after a partial failure are safe.

        Raises:
            ChatServiceError: If the message could not be posted
        """
        try:
            response = self.client.post(
                f"/conversations/{quote(conversation, safe='')}/messages",
                json={"type": "split_bill", "content": body},
                headers={"Idempotency-Key": f"split-bill-{split_bill_id}"},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            # 409: already posted under this idempotency key
            if e.response.status_code == 409:
                logger.debug(f"Mirror for {split_bill_id} already in {conversation}")
                return
            logger.error(f"Chat service error: {e}")
            logger.error(f"Response body: {e.response.text}")
            raise ChatServiceError(
                f"Chat service rejected mirror for {split_bill_id}"
            ) from e
        except httpx.HTTPError as e:
            raise ChatServiceError(f"Chat service unreachable: {e}") from e
