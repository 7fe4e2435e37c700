"""Protocols describing the external calling-platform SDK."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

CUSTOM_EVENT = "custom"
PARTICIPANTS_CHANGED = "participants.changed"
CALLING_STATE_CHANGED = "calling_state.changed"

EventHandler = Callable[[dict[str, Any]], None]
Unsubscribe = Callable[[], None]


class CallingState(str, Enum):
    IDLE = "idle"
    RINGING = "ringing"
    JOINING = "joining"
    JOINED = "joined"
    LEFT = "left"


@dataclass(frozen=True, slots=True)
class Participant:
    user_id: str
    name: str | None = None


class CallHandle(Protocol):
    """A platform session. Its calling state is advanced by the platform only."""

    @property
    def id(self) -> str:  # pragma: no cover - protocol stub
        ...

    @property
    def current_user_id(self) -> str:  # pragma: no cover - protocol stub
        ...

    @property
    def calling_state(self) -> CallingState:  # pragma: no cover - protocol stub
        ...

    @property
    def participants(self) -> Sequence[Participant]:  # pragma: no cover - protocol stub
        ...

    @property
    def session_started_at(self) -> datetime | None:  # pragma: no cover - protocol stub
        ...

    async def get_or_create(
        self,
        *,
        members: Sequence[str],
        settings_override: dict[str, Any],
    ) -> None:  # pragma: no cover - protocol stub
        ...

    async def join(self, *, create: bool = False) -> None:  # pragma: no cover - protocol stub
        ...

    async def leave(self) -> None:  # pragma: no cover - protocol stub
        ...

    async def end_call(self) -> None:  # pragma: no cover - protocol stub
        ...

    async def toggle_microphone(self) -> None:  # pragma: no cover - protocol stub
        ...

    async def disable_camera(self) -> None:  # pragma: no cover - protocol stub
        ...

    async def send_custom_event(self, payload: dict[str, Any]) -> None:  # pragma: no cover - protocol stub
        ...

    def on(self, event: str, handler: EventHandler) -> Unsubscribe:  # pragma: no cover - protocol stub
        ...


class CallClient(Protocol):
    def call(self, call_id: str) -> CallHandle:  # pragma: no cover - protocol stub
        ...


class JoinFailure(str, Enum):
    ALREADY_JOINED = "already_joined"
    TRANSIENT = "transient"
    TERMINAL = "terminal"


def classify_join_error(exc: BaseException) -> JoinFailure:
    """Sort a platform join exception into the retry policy's buckets."""

    message = str(exc).lower()
    if "already joined" in message or "already been joined" in message:
        return JoinFailure.ALREADY_JOINED
    if getattr(exc, "is_ws_failure", False) or "ws connection" in message:
        return JoinFailure.TRANSIENT
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return JoinFailure.TRANSIENT
    return JoinFailure.TERMINAL


def audio_only_settings() -> dict[str, Any]:
    """Call settings override applied when a matched call is created."""

    return {
        "audio": {
            "mic_default_on": True,
            "default_device": "speaker",
        },
        "video": {
            "camera_default_on": False,
            "enabled": False,
            "target_resolution": {"width": 240, "height": 240},
        },
    }
