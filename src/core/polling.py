"""Periodic re-fetch for views without push updates.

Kept separate from the chat subscription: a failed tick is logged and the
next tick simply tries again, there is no reconnect state.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Generic, Optional, TypeVar

from core.config import PollingConfig
from core.errors import UpstreamUnavailable

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class Poller(Generic[T]):
    """Call ``fetch`` every interval and hand each result to ``on_result``.

    ``fetch`` is blocking and runs in a worker thread; ``on_result`` runs on
    the event loop.
    """

    def __init__(
        self,
        fetch: Callable[[], T],
        on_result: Callable[[T], None],
        config: Optional[PollingConfig] = None,
    ) -> None:
        self._fetch = fetch
        self._on_result = on_result
        self._config = config or PollingConfig()
        self._stopped = asyncio.Event()
        self.ticks = 0
        self.failures = 0

    def stop(self) -> None:
        self._stopped.set()

    async def run(self, max_ticks: Optional[int] = None) -> None:
        """Poll until stopped, cancelled, or ``max_ticks`` fetches were made."""

        while not self._stopped.is_set():
            self.ticks += 1
            try:
                result = await asyncio.to_thread(self._fetch)
            except UpstreamUnavailable:
                self.failures += 1
                LOGGER.warning("Refresh failed (tick %s), will retry", self.ticks)
            else:
                self._on_result(result)

            if max_ticks is not None and self.ticks >= max_ticks:
                return
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self._config.interval_seconds)
            except asyncio.TimeoutError:
                pass
