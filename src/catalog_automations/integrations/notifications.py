"""Outbound notification transports."""

from typing import Any, Optional, Protocol, runtime_checkable

import httpx
import structlog

from ..core.errors import TransportError


logger = structlog.get_logger()


@runtime_checkable
class NotificationTransport(Protocol):
    """POSTs a JSON payload to a webhook URL and returns the HTTP status."""

    async def post_json(self, url: str, payload: dict[str, Any]) -> int:
        ...


@runtime_checkable
class EmailTransport(Protocol):
    """Delivers email; returns provider metadata (message id etc.)."""

    async def send(
        self,
        recipients: list[str],
        subject: Optional[str],
        body: str,
    ) -> dict[str, Any]:
        ...


class HttpNotificationTransport:
    """Webhook/Slack delivery over httpx."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout_seconds: float = 10.0,
    ):
        self._client = client
        self.timeout_seconds = timeout_seconds

    async def post_json(self, url: str, payload: dict[str, Any]) -> int:
        try:
            if self._client is not None:
                response = await self._client.post(url, json=payload, timeout=self.timeout_seconds)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(url, json=payload, timeout=self.timeout_seconds)
        except httpx.HTTPError as e:
            raise TransportError(f"Notification request failed: {e}", url=url)

        if response.is_error:
            raise TransportError(
                f"Notification failed: {response.status_code} {response.reason_phrase}",
                url=url,
                status_code=response.status_code,
            )

        logger.debug("notification_posted", url=url, status=response.status_code)
        return response.status_code
