"""Joins a platform call and serializes every way it can end."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

from backend.errors import CallJoinFailed
from calling.platform import CallClient, CallHandle, CallingState, JoinFailure, classify_join_error
from config.settings import Settings, get_settings
from session.notices import Notice, NoticeKind, Notifier

LOGGER = logging.getLogger(__name__)


class TeardownState(str, Enum):
    IDLE = "idle"
    IN_PROGRESS = "in_progress"


class EndReason(str, Enum):
    USER_ENDED = "user_ended"
    PEER_LEFT = "peer_left"
    DURATION_EXPIRED = "duration_expired"


class JoinOutcome(str, Enum):
    JOINED = "joined"
    ALREADY_JOINED = "already_joined"
    DUPLICATE = "duplicate"


AfterEnd = Callable[[EndReason], Awaitable[None]]


class CallLifecycleController:
    """Owns join/retry and the single teardown path of a call session.

    ``after_end`` runs the rest of the teardown (queue leave, stats refresh,
    penalty and moderation checks) once the platform call has been ended.
    """

    def __init__(
        self,
        client: CallClient,
        notifier: Notifier,
        after_end: AfterEnd,
        settings: Settings | None = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._settings = settings or get_settings()
        self._client = client
        self._notifier = notifier
        self._after_end = after_end
        self._sleep = sleep
        self._call: CallHandle | None = None
        self._joined_call_id: str | None = None
        self._teardown = TeardownState.IDLE
        self._session_over = False

    @property
    def call(self) -> CallHandle | None:
        return self._call

    @property
    def ending(self) -> bool:
        return self._teardown is TeardownState.IN_PROGRESS or self._session_over

    @property
    def teardown_state(self) -> TeardownState:
        return self._teardown

    async def join(self, call_id: str) -> JoinOutcome:
        """Join ``call_id``; repeated calls for the same id are no-ops.

        Raises CallJoinFailed when the join cannot be completed.
        """

        if self._joined_call_id == call_id:
            LOGGER.info("Already joined call %s; skipping", call_id)
            return JoinOutcome.DUPLICATE

        call = self._client.call(call_id)
        self._call = call
        self._joined_call_id = call_id
        self._teardown = TeardownState.IDLE
        self._session_over = False

        if call.calling_state is CallingState.JOINED:
            LOGGER.info("Call %s already joined on the platform", call_id)
            return JoinOutcome.ALREADY_JOINED

        retried = False
        while True:
            try:
                LOGGER.info("Joining call %s (state=%s)", call_id, call.calling_state.value)
                await call.join(create=False)
                break
            except Exception as exc:  # platform SDK errors are untyped
                failure = classify_join_error(exc)
                if failure is JoinFailure.ALREADY_JOINED:
                    LOGGER.info("Platform reports call %s already joined", call_id)
                    break
                if failure is JoinFailure.TRANSIENT and not retried:
                    retried = True
                    LOGGER.warning("Join failed (%s); retrying once", exc)
                    await self._sleep(self._settings.call_join_retry_delay_seconds)
                    continue
                LOGGER.error("Could not join call %s: %s", call_id, exc)
                self._joined_call_id = None
                self._notifier.notify(
                    Notice(
                        kind=NoticeKind.CONNECTION_ERROR,
                        title="Connection issue",
                        message="Could not join the call. Please try again.",
                        visible_seconds=4.0,
                    )
                )
                raise CallJoinFailed(str(exc) or None) from exc

        try:
            await call.disable_camera()
        except Exception as exc:  # platform SDK errors are untyped
            LOGGER.warning("Could not disable camera: %s", exc)
        LOGGER.info("Joined call %s", call_id)
        return JoinOutcome.JOINED

    async def end_call(self, reason: EndReason = EndReason.USER_ENDED) -> bool:
        """Run the teardown once per session; later triggers return False."""

        if self._teardown is TeardownState.IN_PROGRESS or self._session_over:
            LOGGER.debug("Teardown already running or done; dropping %s", reason.value)
            return False
        self._teardown = TeardownState.IN_PROGRESS

        try:
            LOGGER.info("Ending call (%s)", reason.value)
            if self._call is not None:
                try:
                    await self._call.end_call()
                except Exception as exc:  # platform SDK errors are untyped
                    LOGGER.warning("Platform end_call failed: %s", exc)
        finally:
            try:
                await self._after_end(reason)
            finally:
                self._session_over = True
                self._teardown = TeardownState.IDLE
        return True

    async def on_peer_left(self) -> bool:
        if self.ending:
            return False
        self._notifier.notify(
            Notice(
                kind=NoticeKind.PARTNER_LEFT,
                title="Call Ended",
                message="The other person has left the call",
                visible_seconds=self._settings.peer_left_debounce_seconds,
            )
        )
        await self._sleep(self._settings.peer_left_debounce_seconds)
        return await self.end_call(EndReason.PEER_LEFT)

    async def on_call_left(self) -> bool:
        if self.ending:
            return False
        await self._sleep(self._settings.call_left_debounce_seconds)
        return await self.end_call(EndReason.PEER_LEFT)

    async def on_duration_expired(self) -> bool:
        if self.ending:
            return False
        self._notifier.notify(
            Notice(
                kind=NoticeKind.TIME_UP,
                title="Time's up",
                message="This call has reached its time limit.",
                visible_seconds=self._settings.time_up_notice_seconds,
            )
        )
        await self._sleep(self._settings.time_up_notice_seconds)
        return await self.end_call(EndReason.DURATION_EXPIRED)

    async def toggle_microphone(self) -> None:
        call = self._call
        if call is None or call.calling_state is CallingState.LEFT:
            return
        try:
            await call.toggle_microphone()
        except Exception as exc:  # platform SDK errors are untyped
            LOGGER.warning("Microphone toggle failed: %s", exc)
