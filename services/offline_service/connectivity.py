"""Online/offline state tracking with a debounced reconnect hook."""

import asyncio
import contextlib
import logging
from typing import Awaitable, Callable, Optional

import httpx

from shared.analytics import AnalyticsTracker

logger = logging.getLogger(__name__)


class ConnectivityMonitor:
    """
    Tracks whether the remote is reachable.

    State changes come from set_online (pushed by a client) or from probe,
    which polls an HTTP endpoint. Going online runs the reconnect handler
    after reconnect_delay; a newer transition replaces a run that has not
    started yet.
    """

    def __init__(
        self,
        analytics: Optional[AnalyticsTracker] = None,
        reconnect_delay: float = 1.0,
        probe_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        initially_online: bool = True
    ):
        self.analytics = analytics
        self.reconnect_delay = reconnect_delay
        self.probe_url = probe_url
        self._http_client = http_client
        self._owns_client = False
        self._online = initially_online
        self._reconnect_handler: Optional[Callable[[], Awaitable]] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._poll_task: Optional[asyncio.Task] = None

    @property
    def is_online(self) -> bool:
        return self._online

    @property
    def pending_reconnect(self) -> Optional[asyncio.Task]:
        """The scheduled reconnect run, if any."""
        return self._reconnect_task

    def set_reconnect_handler(self, handler: Callable[[], Awaitable]):
        self._reconnect_handler = handler

    def set_online(self, online: bool) -> bool:
        """
        Update connectivity state.

        Returns:
            True if the state changed
        """
        if online == self._online:
            return False

        self._online = online

        if online:
            logger.info("Connection restored")
            if self.analytics:
                self.analytics.track("connection_restored")
            self._schedule_reconnect()
        else:
            logger.info("Connection lost, working offline")
            if self.analytics:
                self.analytics.track("connection_lost")

        return True

    def _schedule_reconnect(self):
        if self._reconnect_handler is None:
            return

        if self._reconnect_task and not self._reconnect_task.done():
            self._reconnect_task.cancel()

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop, reconnect handler not scheduled")
            return

        self._reconnect_task = loop.create_task(self._run_reconnect())

    async def _run_reconnect(self):
        await asyncio.sleep(self.reconnect_delay)
        try:
            await self._reconnect_handler()
        except Exception as e:
            logger.error(f"Reconnect handler failed: {e}", exc_info=True)

    async def probe(self) -> bool:
        """
        Check connectivity against probe_url and update state.

        Any response below 500 counts as online; a network error as offline.
        Without a probe URL the current state is returned unchanged.
        """
        if not self.probe_url:
            return self._online

        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=5.0)
            self._owns_client = True

        try:
            response = await self._http_client.get(self.probe_url)
            online = response.status_code < 500
        except httpx.TransportError as e:
            logger.debug(f"Connectivity probe failed: {e}")
            online = False

        self.set_online(online)
        return online

    async def _poll(self, interval: float):
        while True:
            await self.probe()
            await asyncio.sleep(interval)

    def start(self, interval: float = 30.0):
        """Start polling probe_url every interval seconds."""
        if self._poll_task and not self._poll_task.done():
            return
        logger.info(f"Starting connectivity probe of {self.probe_url} every {interval}s")
        self._poll_task = asyncio.create_task(self._poll(interval))

    async def stop(self):
        """Stop polling, drop any scheduled reconnect and close the probe client."""
        for task in (self._poll_task, self._reconnect_task):
            if task and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._poll_task = None
        self._reconnect_task = None

        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
            self._owns_client = False
