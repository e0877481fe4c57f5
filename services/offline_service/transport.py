"""Transports that carry sync queue items to the remote."""

import asyncio
import logging
from typing import List

import httpx

from shared.exceptions import SyncTransportError

logger = logging.getLogger(__name__)


class LocalTransport:
    """Stand-in used when no remote sync endpoint is configured.

    Simulates one network round trip per sync run.
    """

    def __init__(self, delay: float = 0.5):
        self.delay = delay

    async def begin(self, items: List[dict]):
        logger.debug(f"Simulating sync round trip for {len(items)} items")
        if self.delay:
            await asyncio.sleep(self.delay)

    async def push(self, item: dict):
        logger.debug(f"Synced {item['action_type']} (item {item['id']})")


class HttpSyncTransport:
    """POSTs each queue item to {base_url}/sync/actions."""

    def __init__(self, client: httpx.AsyncClient):
        """
        Args:
            client: httpx client whose base_url is the sync API
        """
        self.client = client

    async def begin(self, items: List[dict]):
        logger.info(f"Pushing {len(items)} items to {self.client.base_url}")

    async def push(self, item: dict):
        """
        Push one item.

        Raises:
            SyncTransportError: On a network error or non-2xx response
        """
        payload = {
            "id": item["id"],
            "action_type": item["action_type"],
            "data": item["data"],
            "created_at": item["created_at"].isoformat() if item.get("created_at") else None,
        }

        try:
            response = await self.client.post("/sync/actions", json=payload)
        except httpx.TransportError as e:
            raise SyncTransportError(f"Failed to push sync item {item['id']}: {e}") from e

        if not response.is_success:
            raise SyncTransportError(
                f"Sync API returned {response.status_code} for item {item['id']}: {response.text}"
            )

    async def aclose(self):
        await self.client.aclose()
