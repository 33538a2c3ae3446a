from __future__ import annotations

import logging
from typing import Any

from swapmarket.gateways.http_client import GatewayHttpClient


log = logging.getLogger(__name__)


class HttpNotificationGateway:
    def __init__(self, *, client: GatewayHttpClient, base_url: str):
        self._client = client
        self._base_url = base_url.rstrip("/")

    async def emit(self, event_type: str, user_id: str, payload: dict[str, Any]) -> None:
        res = await self._client.post_json(
            url=f"{self._base_url}/events",
            json_body={"event_type": event_type, "user_id": user_id, "payload": payload},
        )
        if not res.ok:
            # best-effort delivery
            log.warning("notification %s for %s not delivered: %s", event_type, user_id, res.error_code)


async def notify(gateway, event_type: str, user_id: str | None, payload: dict[str, Any]) -> None:
    """Fire-and-forget wrapper: delivery problems never reach the caller."""
    if not user_id:
        return
    try:
        await gateway.emit(event_type, user_id, payload)
    except Exception:
        log.warning("notification %s for %s failed", event_type, user_id, exc_info=True)
