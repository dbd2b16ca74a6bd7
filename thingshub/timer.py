"""Periodic restart timer owned by the scan lifecycle manager."""
from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

logger = logging.getLogger(__name__)

DEFAULT_RESTART_INTERVAL = 29 * 60.0


class RestartTimer:
    """One-shot timer that is armed per session and re-armed on every restart.

    Firing invokes ``callback`` with the token passed to :meth:`arm` so the
    owner can tell a tick for the current session from a late one.
    """

    def __init__(
        self,
        callback: Callable[[int], None],
        interval: float = DEFAULT_RESTART_INTERVAL,
    ) -> None:
        if interval <= 0:
            raise ValueError("restart interval must be positive")
        self.interval = float(interval)
        self._callback = callback
        self._handle: Optional[asyncio.TimerHandle] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def armed(self) -> bool:
        return self._handle is not None

    def remaining(self) -> Optional[float]:
        if self._handle is None or self._loop is None:
            return None
        return max(0.0, self._handle.when() - self._loop.time())

    def arm(self, token: int) -> None:
        self.cancel()
        self._loop = asyncio.get_running_loop()
        self._handle = self._loop.call_later(self.interval, self._fire, token)
        logger.debug("Restart timer armed for %.1fs (token %d)", self.interval, token)

    def cancel(self) -> None:
        if self._handle is None:
            return
        self._handle.cancel()
        self._handle = None

    def _fire(self, token: int) -> None:
        self._handle = None
        self._callback(token)


__all__ = ["RestartTimer", "DEFAULT_RESTART_INTERVAL"]
