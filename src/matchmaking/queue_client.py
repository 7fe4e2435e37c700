"""Client side of the server matchmaking queue.

Polling is a single self-rescheduling timer rather than a fixed-rate
interval, so the growing backoff applies to the very next poll and a cancel
only ever has one pending task to stop.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from backend.client import BackendClient
from backend.errors import BackendUnavailable, OrchestratorError, QueueUnavailable
from backend.schemas import QueueJoinResponse, QueueStatusResponse
from config.settings import Settings, get_settings

LOGGER = logging.getLogger(__name__)


class QueueState(str, Enum):
    IDLE = "idle"
    JOINING_QUEUE = "joining_queue"
    WAITING = "waiting"
    MATCHED = "matched"
    NOT_IN_QUEUE = "not_in_queue"
    TIMED_OUT = "timed_out"


class SearchStatus(str, Enum):
    MATCHED = "matched"
    NOT_IN_QUEUE = "not_in_queue"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True)
class Match:
    call_id: str
    peer_id: str | None


@dataclass(frozen=True)
class SearchOutcome:
    status: SearchStatus
    match: Match | None = None
    polls: int = 0
    detail: str | None = None


def backoff_delays(initial: float, factor: float, maximum: float, attempts: int) -> list[float]:
    """Delays before each poll: non-decreasing, capped at ``maximum``."""

    delays: list[float] = []
    delay = min(initial, maximum)
    for _ in range(attempts):
        delays.append(delay)
        delay = min(delay * factor, maximum)
    return delays


class QueueClient:
    def __init__(
        self,
        backend: BackendClient,
        settings: Settings | None = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._settings = settings or get_settings()
        self._backend = backend
        self._sleep = sleep
        self._state = QueueState.IDLE
        self._poll_task: asyncio.Task[None] | None = None
        self._outcome: asyncio.Future[SearchOutcome] | None = None
        self._poll_count = 0
        self._generation = 0

    @property
    def state(self) -> QueueState:
        return self._state

    @property
    def poll_count(self) -> int:
        return self._poll_count

    async def join(self) -> QueueJoinResponse:
        try:
            return await self._backend.join_queue()
        except QueueUnavailable:
            raise
        except BackendUnavailable as exc:
            raise QueueUnavailable(exc.detail) from exc

    async def poll(self) -> QueueStatusResponse:
        return await self._backend.queue_status()

    async def leave(self) -> None:
        try:
            await self._backend.leave_queue()
        except OrchestratorError as exc:
            LOGGER.debug("Ignoring leave-queue failure: %s", exc.detail)

    async def search(self) -> SearchOutcome:
        """Join the queue and wait for a match, a removal, a timeout or a cancel."""

        if self._state is not QueueState.IDLE:
            raise RuntimeError(f"Queue search already in progress ({self._state.value}).")

        self._generation += 1
        generation = self._generation
        self._state = QueueState.JOINING_QUEUE
        self._poll_count = 0
        outcome = asyncio.get_running_loop().create_future()
        self._outcome = outcome
        try:
            joined = await self.join()
            if generation != self._generation:
                # Cancelled, and a newer search already owns the queue entry.
                return SearchOutcome(status=SearchStatus.CANCELLED)
            if self._state is not QueueState.JOINING_QUEUE:
                # Cancelled while the join request was in flight.
                await self.leave()
                return SearchOutcome(status=SearchStatus.CANCELLED)

            if joined.status == "matched" and joined.call_id:
                LOGGER.info("Matched immediately with %s (call %s)", joined.matched_with, joined.call_id)
                self._state = QueueState.MATCHED
                return SearchOutcome(
                    status=SearchStatus.MATCHED,
                    match=Match(call_id=joined.call_id, peer_id=joined.matched_with),
                )

            LOGGER.info("Added to queue; polling for a partner")
            self._state = QueueState.WAITING
            self._arm(self._settings.queue_initial_poll_delay_seconds)
            return await outcome
        finally:
            if generation == self._generation:
                self._clear_timer()
                self._outcome = None
                self._state = QueueState.IDLE

    async def cancel(self) -> None:
        """User-initiated cancel: stop the pending timer, then leave the queue."""

        if self._state not in (QueueState.JOINING_QUEUE, QueueState.WAITING):
            return
        LOGGER.info("Cancelling queue search")
        self._clear_timer()
        self._state = QueueState.IDLE
        self._resolve(SearchOutcome(status=SearchStatus.CANCELLED, polls=self._poll_count))
        await self.leave()

    def _arm(self, delay: float) -> None:
        self._clear_timer()
        task = asyncio.get_running_loop().create_task(self._poll_after(delay))
        task.add_done_callback(self._on_poll_done)
        self._poll_task = task

    def _clear_timer(self) -> None:
        task = self._poll_task
        if task is None:
            return
        self._poll_task = None
        if task is asyncio.current_task():
            return
        if not task.done():
            task.cancel()

    async def _poll_after(self, delay: float) -> None:
        await self._sleep(delay)
        if self._state is not QueueState.WAITING:
            return

        self._poll_count += 1
        status: QueueStatusResponse | None = None
        try:
            status = await self.poll()
        except BackendUnavailable as exc:
            LOGGER.warning("Queue poll %s failed: %s", self._poll_count, exc.detail)
        except OrchestratorError as exc:
            if self._state is QueueState.WAITING:
                LOGGER.error("Queue poll rejected: %s", exc.detail)
                self._state = QueueState.NOT_IN_QUEUE
                await self.leave()
                self._resolve(SearchOutcome(SearchStatus.FAILED, polls=self._poll_count, detail=exc.detail))
            return

        if self._state is not QueueState.WAITING:
            return

        if status is not None and status.status == "matched" and status.call_id:
            LOGGER.info("Matched with %s after %s polls", status.matched_with, self._poll_count)
            self._state = QueueState.MATCHED
            self._resolve(
                SearchOutcome(
                    SearchStatus.MATCHED,
                    match=Match(call_id=status.call_id, peer_id=status.matched_with),
                    polls=self._poll_count,
                )
            )
            return

        if status is not None and status.status == "not_in_queue":
            LOGGER.info("Queue entry was removed by someone else")
            self._state = QueueState.NOT_IN_QUEUE
            await self.leave()
            self._resolve(SearchOutcome(SearchStatus.NOT_IN_QUEUE, polls=self._poll_count))
            return

        if self._poll_count >= self._settings.queue_max_poll_attempts:
            LOGGER.info("No match after %s polls", self._poll_count)
            self._state = QueueState.TIMED_OUT
            await self.leave()
            self._resolve(SearchOutcome(SearchStatus.TIMED_OUT, polls=self._poll_count))
            return

        next_delay = min(
            delay * self._settings.queue_poll_growth_factor,
            self._settings.queue_max_poll_delay_seconds,
        )
        self._arm(next_delay)

    def _on_poll_done(self, task: asyncio.Task[None]) -> None:
        if self._poll_task is task:
            self._poll_task = None
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error("Queue polling crashed", exc_info=exc)
            self._resolve(SearchOutcome(SearchStatus.FAILED, polls=self._poll_count, detail=str(exc)))

    def _resolve(self, outcome: SearchOutcome) -> None:
        if self._outcome is not None and not self._outcome.done():
            self._outcome.set_result(outcome)
