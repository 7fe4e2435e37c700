"""One-time paid extension of a call's maximum duration.

Both participants keep their own ``current_max_seconds``. The paying side
raises its limit locally and announces the new value through the platform's
custom-event channel; the other side applies an announcement only when it is
strictly larger than what it already has. That rule makes duplicate,
reordered or echoed announcements harmless. There is no acknowledgement: a
failed broadcast is retried once and otherwise the two limits may diverge
for the rest of the session.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from backend.client import BackendClient
from backend.errors import OrchestratorError
from calling.events import ExtensionEvent, parse_custom_event
from calling.platform import CallHandle
from config.settings import Settings, get_settings
from session.context import SessionContext
from session.notices import Notice, NoticeKind, Notifier

LOGGER = logging.getLogger(__name__)


@dataclass
class DurationState:
    base_duration_seconds: int
    extended_duration_seconds: int
    current_max_seconds: int
    has_extended: bool = False

    @classmethod
    def fresh(cls, base_duration_seconds: int, extended_duration_seconds: int) -> DurationState:
        return cls(
            base_duration_seconds=base_duration_seconds,
            extended_duration_seconds=extended_duration_seconds,
            current_max_seconds=base_duration_seconds,
        )


class RejectReason(str, Enum):
    ALREADY_EXTENDED = "already_extended"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    DEBIT_FAILED = "debit_failed"
    NO_ACTIVE_CALL = "no_active_call"


@dataclass(frozen=True)
class ExtensionResult:
    applied: bool
    reason: RejectReason | None = None
    detail: str | None = None

    @classmethod
    def rejected(cls, reason: RejectReason, detail: str | None = None) -> ExtensionResult:
        return cls(applied=False, reason=reason, detail=detail)


class WatchdogSignal(str, Enum):
    WARNING = "warning"
    EXPIRED = "expired"


class DurationExtensionProtocol:
    """Owns the duration limit of one call session."""

    def __init__(
        self,
        call: CallHandle,
        backend: BackendClient,
        context: SessionContext,
        notifier: Notifier,
        settings: Settings | None = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._settings = settings or get_settings()
        self._call = call
        self._backend = backend
        self._context = context
        self._notifier = notifier
        self._sleep = sleep
        self._state = DurationState.fresh(
            self._settings.base_call_duration_seconds,
            self._settings.extended_call_duration_seconds,
        )
        self._request_in_flight = False
        self._partner_notice_shown = False
        self._warned_for: int | None = None
        self._expired = False

    @property
    def state(self) -> DurationState:
        return self._state

    def current_max(self) -> int:
        return self._state.current_max_seconds

    async def request_extension(self) -> ExtensionResult:
        if self._state.has_extended or self._request_in_flight:
            return ExtensionResult.rejected(RejectReason.ALREADY_EXTENDED)

        cost = self._settings.extension_cost
        if self._context.star_balance < self._settings.extension_min_balance:
            return ExtensionResult.rejected(
                RejectReason.INSUFFICIENT_BALANCE,
                f"At least {self._settings.extension_min_balance} stars are required.",
            )

        self._request_in_flight = True
        try:
            try:
                debit = await self._backend.decrease_stars(cost)
            except OrchestratorError as exc:
                return self._debit_failed(exc.detail)
            LOGGER.info("Debited %s stars for extension: %s", cost, debit.message or "ok")

            self._context.star_balance = max(0, self._context.star_balance - cost)
            target = self._state.extended_duration_seconds
            # The initiator never sees the "partner extended" notice, even if
            # the peer's own announcement arrives later.
            self._partner_notice_shown = True
            if not self._raise_to(target):
                LOGGER.warning(
                    "Partner extended to %ss while our debit of %s stars was in flight; not broadcasting",
                    self._state.current_max_seconds,
                    cost,
                )
                return ExtensionResult(applied=True)
            self._notifier.notify(
                Notice(
                    kind=NoticeKind.CALL_EXTENDED,
                    title="Call extended",
                    message=f"Your call can now last {target // 60} minutes.",
                )
            )
            await self._broadcast(
                ExtensionEvent(extended_duration_seconds=target, extended_by=self._context.user_id)
            )
            return ExtensionResult(applied=True)
        finally:
            self._request_in_flight = False

    def on_remote_extension(self, payload: ExtensionEvent | dict[str, Any]) -> bool:
        """Apply a peer's announcement; returns True when the limit was raised."""

        event = payload if isinstance(payload, ExtensionEvent) else parse_custom_event(payload)
        if event is None:
            return False
        if event.extended_by == self._context.user_id:
            return False
        if not self._raise_to(event.extended_duration_seconds):
            LOGGER.debug(
                "Ignoring extension to %ss; current max is %ss",
                event.extended_duration_seconds,
                self._state.current_max_seconds,
            )
            return False

        LOGGER.info("Partner extended call to %ss", event.extended_duration_seconds)
        if not self._partner_notice_shown:
            self._partner_notice_shown = True
            self._notifier.notify(
                Notice(
                    kind=NoticeKind.PARTNER_EXTENDED,
                    title="Call extended",
                    message="Your partner extended the call.",
                )
            )
        return True

    def evaluate(self, elapsed_seconds: float) -> WatchdogSignal | None:
        """Compare elapsed time against the current limit.

        Expiry is reported once per session; the warning once per limit value.
        """

        limit = self._state.current_max_seconds
        if elapsed_seconds >= limit:
            if self._expired:
                return None
            self._expired = True
            return WatchdogSignal.EXPIRED
        lead = self._settings.duration_warning_lead_seconds
        if elapsed_seconds >= limit - lead and self._warned_for != limit:
            self._warned_for = limit
            return WatchdogSignal.WARNING
        return None

    def _raise_to(self, seconds: int) -> bool:
        if seconds <= self._state.current_max_seconds:
            return False
        self._state.current_max_seconds = seconds
        self._state.has_extended = True
        return True

    def _debit_failed(self, detail: str | None) -> ExtensionResult:
        LOGGER.warning("Extension debit failed: %s", detail)
        self._notifier.notify(
            Notice(
                kind=NoticeKind.EXTENSION_FAILED,
                title="Extension failed",
                message=detail or "Could not extend the call.",
            )
        )
        return ExtensionResult.rejected(RejectReason.DEBIT_FAILED, detail)

    async def _broadcast(self, event: ExtensionEvent) -> bool:
        payload = event.to_payload()
        for attempt in (1, 2):
            try:
                await self._call.send_custom_event(payload)
                return True
            except Exception as exc:  # platform SDK errors are untyped
                LOGGER.warning("Extension broadcast attempt %s failed: %s", attempt, exc)
                if attempt == 1:
                    await self._sleep(self._settings.extension_broadcast_retry_delay_seconds)
        LOGGER.warning("Peer may keep the shorter call limit for this session")
        return False
