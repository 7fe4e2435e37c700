from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from calling.extension import DurationExtensionProtocol, WatchdogSignal
from config.settings import Settings, get_settings

LOGGER = logging.getLogger(__name__)


def format_duration(seconds: float) -> str:
    total = max(0, int(seconds))
    minutes, secs = divmod(total, 60)
    return f"{minutes:02d}:{secs:02d}"


class DurationWatchdog:
    """Ticks the visible call timer and enforces the duration limit."""

    def __init__(
        self,
        protocol: DurationExtensionProtocol,
        *,
        started_at: float,
        on_warning: Callable[[], None],
        on_expired: Callable[[], None],
        on_tick: Callable[[float], None] | None = None,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._settings = settings or get_settings()
        self._protocol = protocol
        self._started_at = started_at
        self._on_warning = on_warning
        self._on_expired = on_expired
        self._on_tick = on_tick
        self._clock = clock
        self._sleep = sleep
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def elapsed_seconds(self) -> float:
        return max(0.0, self._clock() - self._started_at)

    def start(self) -> None:
        self.stop()
        task = asyncio.get_running_loop().create_task(self._run())
        task.add_done_callback(self._forget_task)
        self._task = task

    def stop(self) -> None:
        task = self._task
        if task is None:
            return
        self._task = None
        if task is asyncio.current_task():
            return
        if not task.done():
            task.cancel()

    def check(self) -> WatchdogSignal | None:
        elapsed = self.elapsed_seconds()
        if self._on_tick is not None:
            self._on_tick(elapsed)
        signal = self._protocol.evaluate(elapsed)
        if signal is WatchdogSignal.WARNING:
            LOGGER.info("One minute left (%s of %ss)", format_duration(elapsed), self._protocol.current_max())
            self._on_warning()
        elif signal is WatchdogSignal.EXPIRED:
            LOGGER.info("Call reached its %ss limit", self._protocol.current_max())
            self._on_expired()
        return signal

    async def _run(self) -> None:
        while True:
            await self._sleep(self._settings.watchdog_tick_seconds)
            if self.check() is WatchdogSignal.EXPIRED:
                return

    def _forget_task(self, task: asyncio.Task[None]) -> None:
        if self._task is task:
            self._task = None
