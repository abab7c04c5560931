"""Free-preview countdown that gates unapproved viewers."""
from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, List, Optional

from ..entitlements.models import PreviewState

logger = logging.getLogger(__name__)

ExpireListener = Callable[[], None]
ForceStop = Callable[[float], None]


class PreviewPhase(str, Enum):
    RUNNING = "running"
    EXPIRED = "expired"


class PreviewLockTimer:
    """``Running(seconds_left) -> Expired`` for one presented item.

    ``Expired`` is terminal: the timer never resets itself, and only a current
    entitlement (checked by the gate) lifts the lock afterwards.
    """

    def __init__(
        self,
        item_id: str,
        limit_seconds: int,
        *,
        on_expire: Optional[ExpireListener] = None,
    ) -> None:
        self.item_id = str(item_id)
        self.limit_seconds = max(0, int(limit_seconds))
        self._elapsed = 0
        self._phase = PreviewPhase.EXPIRED if self.limit_seconds == 0 else PreviewPhase.RUNNING
        self._listeners: List[ExpireListener] = []
        if on_expire is not None:
            self._listeners.append(on_expire)

    @property
    def phase(self) -> PreviewPhase:
        return self._phase

    @property
    def expired(self) -> bool:
        return self._phase is PreviewPhase.EXPIRED

    @property
    def seconds_left(self) -> int:
        if self.expired:
            return 0
        return max(self.limit_seconds - self._elapsed, 0)

    def add_expire_listener(self, listener: ExpireListener) -> None:
        self._listeners.append(listener)

    def tick(self) -> PreviewState:
        if not self.expired:
            self._elapsed += 1
            if self._elapsed >= self.limit_seconds:
                self.expire()
        return self.state()

    def expire(self) -> None:
        if self._phase is PreviewPhase.EXPIRED and self._elapsed >= self.limit_seconds:
            return
        self._phase = PreviewPhase.EXPIRED
        self._elapsed = self.limit_seconds
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                logger.exception("Preview expiry listener failed", extra={"item_id": self.item_id})

    def state(self) -> PreviewState:
        return PreviewState(
            item_id=self.item_id,
            seconds_elapsed=min(self._elapsed, self.limit_seconds),
            limit_seconds=self.limit_seconds,
            expired=self.expired,
        )


class PlaybackGuard:
    """Halts media consumption at the preview boundary.

    Progress reports can overshoot the limit between timer ticks, so the guard
    pauses and rewinds through ``force_stop(position)`` instead of only
    reporting the lock.
    """

    def __init__(
        self,
        timer: PreviewLockTimer,
        force_stop: ForceStop,
        *,
        is_entitled: Callable[[], bool],
        rewind_seconds: float = 0.5,
    ) -> None:
        self._timer = timer
        self._force_stop = force_stop
        self._is_entitled = is_entitled
        self._rewind_seconds = max(0.0, rewind_seconds)
        self._last_position = 0.0
        timer.add_expire_listener(self._on_timer_expired)

    def resume_position(self, position: float) -> float:
        bounded = min(max(position, 0.0), float(self._timer.limit_seconds))
        return max(0.0, bounded - self._rewind_seconds)

    def on_progress(self, position: float) -> bool:
        """Report playback position; returns ``True`` when playback was stopped."""

        self._last_position = max(position, 0.0)
        if self._is_entitled():
            return False
        if not self._timer.expired and position < self._timer.limit_seconds:
            return False
        if not self._timer.expired:
            self._timer.expire()
            # the expiry listener already stopped playback
            return True
        self._stop()
        return True

    on_play = on_progress
    on_seek = on_progress

    def _on_timer_expired(self) -> None:
        if self._is_entitled():
            return
        self._stop()

    def _stop(self) -> None:
        target = self.resume_position(self._last_position)
        logger.debug(
            "Preview limit reached; stopping playback",
            extra={"item_id": self._timer.item_id, "rewind_to": target},
        )
        self._force_stop(target)


class PreviewTicker:
    """Drives :meth:`PreviewLockTimer.tick` once per interval on the running loop."""

    def __init__(
        self,
        timer: PreviewLockTimer,
        *,
        interval_seconds: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._timer = timer
        self._interval = interval_seconds
        self._sleep = sleep
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running or self._timer.expired:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        while not self._timer.expired:
            await self._sleep(self._interval)
            self._timer.tick()

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None


class PreviewSession:
    """A mounted viewer's preview: timer plus ticker, torn down with :meth:`stop`."""

    def __init__(self, timer: PreviewLockTimer, ticker: PreviewTicker) -> None:
        self.timer = timer
        self._ticker = ticker

    @property
    def item_id(self) -> str:
        return self.timer.item_id

    @property
    def seconds_left(self) -> int:
        return self.timer.seconds_left

    @property
    def expired(self) -> bool:
        return self.timer.expired

    def state(self) -> PreviewState:
        return self.timer.state()

    def stop(self) -> None:
        self._ticker.stop()
