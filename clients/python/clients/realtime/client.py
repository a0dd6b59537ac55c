"""Realtime Client — forwards push events to an external fan-out service.

The API keeps its own in-process subscribers; this client is only used when a
separate realtime service (holding browser WebSocket connections for several
API instances) is configured.
"""

import logging
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)


class RealtimeClientError(Exception):
    """Raised when the realtime service rejects or cannot receive an event."""
    pass


class RealtimeClient:
    """Thin async wrapper around the realtime service's HTTP ingest endpoints.

    Usage::

        client = RealtimeClient("http://realtime:5000")
        await client.publish("bidUpdate", auction_id, {"lotId": ...})
        await client.aclose()
    """

    def __init__(self, base_url: str, timeout: float = 5.0) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def publish(
        self,
        event_type: str,
        auction_id: str,
        payload: Dict[str, Any],
        user_id: Optional[str] = None,
    ) -> None:
        """POST one event. ``user_id`` targets a single user instead of the auction room."""
        body = {"type": event_type, "auctionId": auction_id, "data": payload}
        if user_id:
            body["userEmail"] = user_id
            path = "/api/websocket/notify"
        else:
            path = "/api/websocket/broadcast"

        try:
            resp = await self._client.post(path, json=body)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise RealtimeClientError(f"Failed to publish {event_type} for auction {auction_id}: {e}") from e

    async def aclose(self) -> None:
        await self._client.aclose()
