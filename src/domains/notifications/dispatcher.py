"""Notification dispatch collaborator.

Allocation events are POSTed to the notification service, which owns
templates and delivery channels. When no service URL is configured the
message is only logged.
"""
import logging
from typing import Any
from uuid import UUID

import httpx

from src.config.settings import settings

logger = logging.getLogger(__name__)

# Per-event copy; the notification service renders the final message
ALLOCATION_MESSAGES: dict[str, tuple[str, str]] = {
    "allocation.approved": ("Trainer assigned", "Your tutoring schedule is confirmed."),
    "allocation.rejected": ("Allocation request declined", "An admin will follow up with options."),
    "allocation.cancelled": ("Allocation cancelled", "Upcoming sessions for this course were cancelled."),
    "allocation.extended": ("More sessions added", "Your schedule was extended with new sessions."),
}


class NotificationDispatcher:
    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = (base_url if base_url is not None else settings.NOTIFICATION_SERVICE_URL).rstrip("/")
        self.timeout = timeout or settings.NOTIFICATION_TIMEOUT_SECONDS
        self._client = client

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    async def notify(
        self,
        event: str,
        recipients: list[UUID],
        data: dict[str, Any] | None = None,
    ) -> int:
        """Send one event to each recipient. Returns the number accepted.

        Raises httpx.HTTPError when the service rejects or cannot be reached,
        so the caller can keep the effect for retry.
        """
        recipients = [r for r in recipients if r is not None]
        if not recipients:
            return 0

        title, body = ALLOCATION_MESSAGES.get(event, (event, ""))
        payload = {
            "event": event,
            "title": title,
            "body": body,
            "recipients": [str(r) for r in recipients],
            "data": {k: str(v) for k, v in (data or {}).items() if v is not None},
        }

        if not self.enabled:
            logger.info("Notification %s for %s (dispatch disabled)", event, payload["recipients"])
            return 0

        if self._client is not None:
            response = await self._client.post(f"{self.base_url}/notifications", json=payload)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(f"{self.base_url}/notifications", json=payload)
        response.raise_for_status()

        logger.info("Notification %s sent to %d recipient(s)", event, len(recipients))
        return len(recipients)
