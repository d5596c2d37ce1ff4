"""
Connectivity monitor.
Tracks whether the remote store is reachable and announces offline -> online
transitions so queued reports go out as soon as the signal returns.
"""
import asyncio
import logging
from typing import Callable, List, Optional

import httpx

logger = logging.getLogger(__name__)

OnlineListener = Callable[[], None]


class ConnectivityMonitor:
    """
    Last known online state, refreshed by an HTTP probe and by platform pushes.

    Any HTTP response from ``probe_url`` counts as online; only transport
    failures (DNS, refused, timeout) count as offline. Without a probe URL the
    monitor follows ``set_online`` alone and assumes it starts online.
    """

    def __init__(
        self,
        probe_url: Optional[str] = None,
        interval: float = 10.0,
        timeout: float = 3.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.probe_url = probe_url
        self.interval = interval
        self.timeout = timeout
        self._transport = transport
        self._online = probe_url is None
        self._listeners: List[OnlineListener] = []
        self._task: Optional[asyncio.Task] = None

    @property
    def is_online(self) -> bool:
        return self._online

    def on_online(self, listener: OnlineListener) -> Callable[[], None]:
        """Register a callback fired on every offline -> online transition."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def set_online(self, online: bool) -> None:
        was_online = self._online
        self._online = online
        if online and not was_online:
            logger.info("Network: online")
            for listener in list(self._listeners):
                try:
                    listener()
                except Exception as exc:
                    logger.warning("Connectivity listener failed: %s", exc)
        elif was_online and not online:
            logger.info("Network: offline")

    async def check(self) -> bool:
        """Probe once and update the state."""
        if not self.probe_url:
            return self._online
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                await client.head(self.probe_url)
            online = True
        except httpx.HTTPError as exc:
            logger.debug("Connectivity probe failed: %s", exc)
            online = False
        self.set_online(online)
        return online

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        await self.check()
        if self.probe_url and self._task is None:
            self._task = asyncio.create_task(self._poll())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _poll(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.check()
