"""Main orchestration class: queue search, call supervision and teardown."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Coroutine
from enum import Enum
from typing import Any

from backend.client import BackendClient
from backend.errors import CallJoinFailed, ModerationBlocked, OrchestratorError, RateLimited
from calling.disconnect import DisconnectDetector
from calling.extension import DurationExtensionProtocol, ExtensionResult, RejectReason
from calling.lifecycle import CallLifecycleController, EndReason, JoinOutcome
from calling.platform import (
    CALLING_STATE_CHANGED,
    CUSTOM_EVENT,
    PARTICIPANTS_CHANGED,
    CallClient,
    CallHandle,
    CallingState,
    Unsubscribe,
    audio_only_settings,
)
from calling.watchdog import DurationWatchdog, format_duration
from config.settings import Settings, get_settings
from matchmaking.queue_client import Match, QueueClient, SearchOutcome, SearchStatus
from moderation.gate import ModerationAction, ModerationDecision, ModerationGate
from moderation.penalty import PenaltyCalculator, PenaltyRecord
from session.context import SessionContext
from session.notices import (
    LoggingNotifier,
    Notice,
    NoticeKind,
    Notifier,
    ban_notice,
    early_exit_notice,
    no_match_notice,
    queue_error_notice,
    report_warning_notice,
)

LOGGER = logging.getLogger(__name__)


class OrchestratorState(str, Enum):
    IDLE = "idle"
    SEARCHING = "searching"
    CONNECTING = "connecting"
    IN_CALL = "in_call"
    ENDING = "ending"
    BLOCKED = "blocked"


class CallOrchestrator:
    """Runs one user's flow from queue to call to the moderation check."""

    def __init__(
        self,
        context: SessionContext,
        backend: BackendClient,
        call_client: CallClient,
        notifier: Notifier | None = None,
        settings: Settings | None = None,
        *,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._settings = settings or get_settings()
        self._context = context
        self._backend = backend
        self._call_client = call_client
        self._notifier = notifier or LoggingNotifier()
        self._clock = clock
        self._sleep = sleep

        self.queue = QueueClient(backend, self._settings, sleep=sleep)
        self.controller = CallLifecycleController(
            call_client,
            self._notifier,
            self._after_end,
            self._settings,
            sleep=sleep,
        )
        self._penalty = PenaltyCalculator(self._settings.early_exit_threshold_seconds)
        self._gate = ModerationGate(backend, warning_limit=self._settings.report_warning_limit)

        self._state = OrchestratorState.IDLE
        self._extension: DurationExtensionProtocol | None = None
        self._detector: DisconnectDetector | None = None
        self._watchdog: DurationWatchdog | None = None
        self._unsubscribers: list[Unsubscribe] = []
        self._tasks: set[asyncio.Task[Any]] = set()
        self._joined_at: float | None = None
        self._peer_id: str | None = None
        self._elapsed_display = format_duration(0)
        self._search_generation = 0

        self.last_penalty: PenaltyRecord | None = None
        self.last_decision: ModerationDecision | None = None

    @property
    def state(self) -> OrchestratorState:
        return self._state

    @property
    def extension(self) -> DurationExtensionProtocol | None:
        return self._extension

    @property
    def elapsed_display(self) -> str:
        return self._elapsed_display

    @property
    def peer_id(self) -> str | None:
        return self._peer_id

    async def find_partner(self) -> SearchOutcome:
        if self._state is not OrchestratorState.IDLE:
            raise RuntimeError(f"Cannot search while {self._state.value}.")

        self._search_generation += 1
        generation = self._search_generation
        self._state = OrchestratorState.SEARCHING
        try:
            outcome = await self.queue.search()
        except ModerationBlocked as exc:
            LOGGER.warning("Queue join refused: banned")
            self._notifier.notify(ban_notice(exc.ban_expires_at, detail=exc.detail))
            if generation == self._search_generation:
                self._state = OrchestratorState.BLOCKED
            return SearchOutcome(status=SearchStatus.FAILED, detail=exc.detail)
        except OrchestratorError as exc:
            LOGGER.error("Queue join failed: %s", exc.detail)
            self._notifier.notify(queue_error_notice(exc.detail))
            return SearchOutcome(status=SearchStatus.FAILED, detail=exc.detail)
        finally:
            if generation == self._search_generation and self._state is OrchestratorState.SEARCHING:
                self._state = OrchestratorState.IDLE

        if generation != self._search_generation:
            # Cancelled; a newer search (or none) owns the state now.
            return outcome

        if outcome.status is SearchStatus.MATCHED and outcome.match is not None:
            await self.start_call(outcome.match)
            return outcome

        if outcome.status is SearchStatus.TIMED_OUT:
            self._notifier.notify(no_match_notice())
        elif outcome.status is SearchStatus.FAILED:
            self._notifier.notify(queue_error_notice(outcome.detail or "Queue search failed."))
        self._state = OrchestratorState.IDLE
        return outcome

    async def cancel_search(self) -> None:
        if self._state is not OrchestratorState.SEARCHING:
            return
        self._search_generation += 1
        self._state = OrchestratorState.IDLE
        await self.queue.cancel()

    async def start_call(self, match: Match) -> bool:
        if self._state in (OrchestratorState.CONNECTING, OrchestratorState.IN_CALL, OrchestratorState.ENDING):
            LOGGER.info("Ignoring match %s while %s", match.call_id, self._state.value)
            return False

        self._state = OrchestratorState.CONNECTING
        self._peer_id = match.peer_id
        call = self._call_client.call(match.call_id)
        try:
            await self._prepare_call(call, match)
            joined = await self.controller.join(match.call_id)
        except CallJoinFailed:
            await self.queue.leave()
            self._state = OrchestratorState.IDLE
            return False
        except Exception as exc:  # platform SDK errors are untyped
            LOGGER.error("Failed to connect to call %s: %s", match.call_id, exc)
            self._notifier.notify(
                Notice(kind=NoticeKind.CONNECTION_ERROR, title="Error", message="Failed to connect to call")
            )
            await self.queue.leave()
            self._state = OrchestratorState.IDLE
            return False

        if joined is JoinOutcome.DUPLICATE:
            # Only reachable for a call whose session already ended.
            LOGGER.info("Call %s was already handled; not rejoining", match.call_id)
            self._state = OrchestratorState.IDLE
            return False
        self._begin_session(call)
        return True

    async def end_call(self) -> bool:
        if self._state not in (OrchestratorState.IN_CALL, OrchestratorState.ENDING):
            return False
        return await self.controller.end_call(EndReason.USER_ENDED)

    async def request_extension(self) -> ExtensionResult:
        if self._extension is None or self._state is not OrchestratorState.IN_CALL:
            return ExtensionResult.rejected(RejectReason.NO_ACTIVE_CALL)
        return await self._extension.request_extension()

    async def toggle_microphone(self) -> None:
        await self.controller.toggle_microphone()

    async def report_partner(self, reason: str) -> bool:
        if not self._peer_id:
            LOGGER.warning("No partner to report")
            return False
        try:
            result = await self._backend.submit_report(self._peer_id, reason)
        except RateLimited as exc:
            self._notifier.notify(
                Notice(
                    kind=NoticeKind.REPORT_RATE_LIMITED,
                    title="Report limit reached",
                    message=exc.detail or "You can submit up to 3 reports per day.",
                    visible_seconds=4.0,
                )
            )
            return False
        except OrchestratorError as exc:
            LOGGER.error("Report submission failed: %s", exc.detail)
            result = None

        if result is None or not result.success:
            self._notifier.notify(
                Notice(kind=NoticeKind.REPORT_FAILED, title="Error", message="Could not submit report.")
            )
            return False
        self._notifier.notify(
            Notice(kind=NoticeKind.REPORT_SUBMITTED, title="Report submitted", message="Thanks for letting us know.")
        )
        return True

    def acknowledge_block(self) -> None:
        if self._state is OrchestratorState.BLOCKED:
            LOGGER.info("Ban notice acknowledged")
            self._state = OrchestratorState.IDLE

    async def _prepare_call(self, call: CallHandle, match: Match) -> None:
        members = [self._context.user_id]
        if match.peer_id:
            members.append(match.peer_id)
        await call.get_or_create(members=members, settings_override=audio_only_settings())

    def _begin_session(self, call: CallHandle) -> None:
        self._extension = DurationExtensionProtocol(
            call,
            self._backend,
            self._context,
            self._notifier,
            self._settings,
            sleep=self._sleep,
        )
        self._detector = DisconnectDetector()
        self._joined_at = self._clock()
        started_at = call.session_started_at.timestamp() if call.session_started_at else self._joined_at
        self._watchdog = DurationWatchdog(
            self._extension,
            started_at=started_at,
            on_warning=self._on_one_minute_left,
            on_expired=self._on_duration_expired,
            on_tick=self._on_tick,
            settings=self._settings,
            clock=self._clock,
            sleep=self._sleep,
        )
        self._unsubscribers = [
            call.on(CUSTOM_EVENT, self._on_custom_event),
            call.on(PARTICIPANTS_CHANGED, self._on_participants_changed),
            call.on(CALLING_STATE_CHANGED, self._on_calling_state_changed),
        ]
        self._state = OrchestratorState.IN_CALL
        self._watchdog.start()
        # The roster may already hold the partner before we subscribed.
        self._on_participants_changed({})

    def _on_custom_event(self, payload: dict[str, Any]) -> None:
        if self._extension is not None:
            self._extension.on_remote_extension(payload)

    def _on_participants_changed(self, payload: dict[str, Any]) -> None:
        call = self.controller.call
        if call is None or self._detector is None or call.calling_state is not CallingState.JOINED:
            return
        signal = self._detector.observe(call.participants, call.current_user_id)
        if signal is not None:
            self._spawn(self.controller.on_peer_left())

    def _on_calling_state_changed(self, payload: dict[str, Any]) -> None:
        call = self.controller.call
        if call is not None and call.calling_state is CallingState.LEFT:
            LOGGER.info("Platform reports the call was left")
            self._spawn(self.controller.on_call_left())

    def _on_tick(self, elapsed: float) -> None:
        self._elapsed_display = format_duration(elapsed)

    def _on_one_minute_left(self) -> None:
        self._notifier.notify(
            Notice(kind=NoticeKind.ONE_MINUTE_WARNING, title="1 minute left", message="Your call ends in one minute.")
        )

    def _on_duration_expired(self) -> None:
        self._spawn(self.controller.on_duration_expired())

    async def _after_end(self, reason: EndReason) -> None:
        """Everything after the platform call ended; each step is best effort."""

        self._state = OrchestratorState.ENDING
        self._stop_session()
        try:
            await self.queue.leave()
            await self._refresh_stats()
            self._check_penalty()
            decision = await self._gate.check_after_call(self._context.last_report_count)
            self._apply_decision(decision)
        finally:
            if self._state is not OrchestratorState.BLOCKED:
                self._state = OrchestratorState.IDLE
            LOGGER.info("Call teardown finished (%s)", reason.value)

    def _stop_session(self) -> None:
        if self._watchdog is not None:
            self._watchdog.stop()
        for unsubscribe in self._unsubscribers:
            try:
                unsubscribe()
            except Exception:  # platform SDK errors are untyped
                LOGGER.exception("Failed to unsubscribe from call events")
        self._unsubscribers = []
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current and not task.done():
                task.cancel()

    async def _refresh_stats(self) -> None:
        try:
            profile = await self._backend.current_user()
        except OrchestratorError as exc:
            LOGGER.warning("Stats refresh failed: %s", exc.detail)
            return
        self._context.apply_profile(profile)

    def _check_penalty(self) -> None:
        if self._joined_at is None:
            return
        record = self._penalty.evaluate(self._joined_at, self._clock())
        self.last_penalty = record
        LOGGER.info("Call lasted %ss (penalty=%s)", record.session_duration_seconds, record.penalty_applied)
        if record.penalty_applied:
            self._notifier.notify(early_exit_notice())

    def _apply_decision(self, decision: ModerationDecision) -> None:
        self.last_decision = decision
        if decision.observed_report_count is not None:
            self._context.last_report_count = decision.observed_report_count
        if decision.action is ModerationAction.BLOCK:
            self._notifier.notify(
                ban_notice(decision.ban_expires_at, weekly_ban_count=decision.weekly_ban_count)
            )
            self._state = OrchestratorState.BLOCKED
        elif decision.action is ModerationAction.WARN and decision.report_count is not None:
            self._notifier.notify(report_warning_notice(decision.report_count, self._settings.report_warning_limit))

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error("Call session task failed", exc_info=exc)
