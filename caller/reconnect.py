from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

RECONNECT_BASE_DELAY_SECONDS = 2.0
RECONNECT_MAX_DELAY_SECONDS = 30.0
RECONNECT_MULTIPLIER = 2.0

ReconnectCallback = Callable[[], Awaitable[None]]


class ReconnectionPolicy:
    """Schedules at most one pending retry of a dropped signaling connection.

    Delays grow as ``base_delay * multiplier ** attempt`` capped at
    ``max_delay``; ``multiplier=1.0`` gives a fixed delay. ``max_attempts``
    of ``None`` retries forever. The attempt counter only resets through
    :meth:`reset`, which the transport calls once a connection opens.
    """

    def __init__(
        self,
        *,
        base_delay: float = RECONNECT_BASE_DELAY_SECONDS,
        max_delay: float = RECONNECT_MAX_DELAY_SECONDS,
        multiplier: float = RECONNECT_MULTIPLIER,
        max_attempts: Optional[int] = None,
    ) -> None:
        if base_delay < 0 or max_delay < 0:
            raise ValueError("reconnect delays must be non-negative")
        if multiplier < 1.0:
            raise ValueError("multiplier must be at least 1.0")
        self._base_delay = base_delay
        self._max_delay = max(base_delay, max_delay)
        self._multiplier = multiplier
        self._max_attempts = max_attempts
        self._attempt = 0
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def attempts(self) -> int:
        return self._attempt

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def exhausted(self) -> bool:
        return self._max_attempts is not None and self._attempt >= self._max_attempts

    def next_delay(self) -> Optional[float]:
        """Delay before the next attempt, or ``None`` once attempts are used up."""
        if self.exhausted:
            return None
        return min(self._base_delay * (self._multiplier ** self._attempt), self._max_delay)

    def schedule(self, callback: ReconnectCallback) -> bool:
        """Run ``callback`` after the next delay.

        Returns ``False`` without scheduling anything when a retry is already
        pending or the attempt budget is spent.
        """
        if self.pending:
            logger.debug("Reconnect already pending; ignoring duplicate request")
            return False
        delay = self.next_delay()
        if delay is None:
            logger.warning("Reconnect attempts exhausted after %s tries", self._attempt)
            return False
        self._attempt += 1
        logger.info("Reconnect attempt %s scheduled in %.1fs", self._attempt, delay)

        async def _worker(delay_seconds: float) -> None:
            if delay_seconds > 0:
                await asyncio.sleep(delay_seconds)
            # Free the slot before running so a failed attempt can queue the next one.
            self._task = None
            try:
                await callback()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Reconnect attempt failed")

        self._task = asyncio.create_task(_worker(delay))
        return True

    def cancel(self) -> None:
        if self._task is None:
            return
        task = self._task
        self._task = None
        task.cancel()

    def reset(self) -> None:
        self._attempt = 0
