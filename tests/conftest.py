from __future__ import annotations

import asyncio
import sys
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx
import pytest
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = REPO_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from backend.client import BackendClient  # noqa: E402
from backend.schemas import QueueJoinResponse  # noqa: E402
from calling.platform import (  # noqa: E402
    CALLING_STATE_CHANGED,
    PARTICIPANTS_CHANGED,
    CallingState,
    Participant,
)
from config.settings import Settings  # noqa: E402
from session.context import SessionContext  # noqa: E402

BASE_URL = "http://backend.test"


@dataclass
class BackendState:
    """Scripted responses and a log of what the client asked for."""

    join_response: dict[str, Any] = field(default_factory=lambda: {"status": "waiting"})
    join_status_code: int = 200
    join_message: str | None = None
    # Consumed front to back; the last entry repeats.
    status_responses: list[dict[str, Any]] = field(default_factory=lambda: [{"status": "waiting"}])
    status_codes: list[int] = field(default_factory=list)
    debit_success: bool = True
    debit_status_code: int = 200
    ban_status: dict[str, Any] = field(
        default_factory=lambda: {"isBanned": False, "reportCount": 0, "weeklyBanCount": 0}
    )
    report_status_code: int = 200
    stars: int = 50
    me_response: dict[str, Any] | None = None
    calls: list[str] = field(default_factory=list)
    bodies: dict[str, list[Any]] = field(default_factory=lambda: defaultdict(list))
    auth_headers: list[str | None] = field(default_factory=list)

    def count(self, name: str) -> int:
        return self.calls.count(name)


def _fail(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "message": message})


def build_fake_backend(state: BackendState) -> FastAPI:
    app = FastAPI()

    @app.middleware("http")
    async def record_auth(request: Request, call_next):
        state.auth_headers.append(request.headers.get("authorization"))
        return await call_next(request)

    @app.post("/matchmaking/join")
    async def join_queue():
        state.calls.append("join")
        if state.join_status_code != 200:
            return _fail(state.join_status_code, state.join_message or "join failed")
        return {"success": True, "data": state.join_response}

    @app.get("/matchmaking/status")
    async def queue_status():
        state.calls.append("status")
        if state.status_codes:
            code = state.status_codes.pop(0)
            if code != 200:
                return _fail(code, "status unavailable")
        if len(state.status_responses) > 1:
            payload = state.status_responses.pop(0)
        else:
            payload = state.status_responses[0]
        return {"success": True, "data": payload}

    @app.post("/matchmaking/leave")
    async def leave_queue():
        state.calls.append("leave")
        return {"success": True}

    @app.post("/users/stars/decrease")
    async def decrease_stars(request: Request):
        state.calls.append("debit")
        state.bodies["debit"].append(await request.json())
        if state.debit_status_code != 200:
            return _fail(state.debit_status_code, "debit failed")
        if not state.debit_success:
            return {"success": False, "message": "Not enough stars"}
        return {"success": True}

    @app.get("/reports/ban-status")
    async def ban_status():
        state.calls.append("ban_status")
        return {"success": True, "data": state.ban_status}

    @app.post("/reports/submit")
    async def submit_report(request: Request):
        state.calls.append("report")
        state.bodies["report"].append(await request.json())
        if state.report_status_code == 429:
            return _fail(429, "You can only submit 3 reports per day")
        return {"success": True}

    @app.get("/users/me")
    async def current_user():
        state.calls.append("me")
        if state.me_response is not None:
            return {"success": True, "data": state.me_response}
        return {"success": True, "data": {"_id": "u1", "name": "Alice", "stars": state.stars}}

    return app


class GatedBackend:
    """Queue endpoints only; the first join blocks until ``release()``."""

    def __init__(self, call_id: str = "call-2", peer_id: str = "u3") -> None:
        self.calls: list[str] = []
        self._call_id = call_id
        self._peer_id = peer_id
        self._gate: asyncio.Event | None = None

    def release(self) -> None:
        if self._gate is not None:
            self._gate.set()

    async def join_queue(self) -> QueueJoinResponse:
        self.calls.append("join")
        if self.calls.count("join") == 1:
            self._gate = asyncio.Event()
            await self._gate.wait()
            return QueueJoinResponse(status="waiting")
        return QueueJoinResponse(status="matched", call_id=self._call_id, matched_with=self._peer_id)

    async def leave_queue(self) -> None:
        self.calls.append("leave")


class RecordingSleep:
    """Returns immediately, remembering every requested delay."""

    def __init__(self, clock: FakeClock | None = None) -> None:
        self.delays: list[float] = []
        self._clock = clock

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self._clock is not None:
            self._clock.now += delay
        await asyncio.sleep(0)


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class RecordingNotifier:
    def __init__(self, clock: FakeClock | None = None) -> None:
        self.notices = []
        self.times: list[float] = []
        self._clock = clock

    def notify(self, notice) -> None:
        self.notices.append(notice)
        self.times.append(self._clock() if self._clock else 0.0)

    def kinds(self) -> list:
        return [notice.kind for notice in self.notices]


class FakeCall:
    def __init__(
        self,
        call_id: str,
        user_id: str,
        *,
        state: CallingState = CallingState.IDLE,
        join_errors: list[BaseException] | None = None,
        send_errors: int = 0,
    ) -> None:
        self.id = call_id
        self.current_user_id = user_id
        self.calling_state = state
        self.participants: list[Participant] = [Participant(user_id)]
        self.session_started_at = None
        self.join_errors = list(join_errors or [])
        self.send_errors = send_errors
        self.join_calls = 0
        self.send_attempts = 0
        self.camera_disabled = False
        self.ended = False
        self.mic_toggles = 0
        self.sent_events: list[dict[str, Any]] = []
        self.get_or_create_calls: list[dict[str, Any]] = []
        self.handlers: dict[str, list] = defaultdict(list)

    async def get_or_create(self, *, members, settings_override) -> None:
        self.get_or_create_calls.append({"members": list(members), "settings_override": settings_override})

    async def join(self, *, create: bool = False) -> None:
        self.join_calls += 1
        if self.join_errors:
            raise self.join_errors.pop(0)
        self.calling_state = CallingState.JOINED

    async def leave(self) -> None:
        self.set_state(CallingState.LEFT)

    async def end_call(self) -> None:
        self.ended = True
        self.set_state(CallingState.LEFT)

    async def toggle_microphone(self) -> None:
        self.mic_toggles += 1

    async def disable_camera(self) -> None:
        self.camera_disabled = True

    async def send_custom_event(self, payload: dict[str, Any]) -> None:
        self.send_attempts += 1
        if self.send_errors:
            self.send_errors -= 1
            raise ConnectionError("custom event channel closed")
        self.sent_events.append(payload)

    def on(self, event: str, handler):
        self.handlers[event].append(handler)

        def unsubscribe() -> None:
            if handler in self.handlers[event]:
                self.handlers[event].remove(handler)

        return unsubscribe

    def emit(self, event: str, payload: dict[str, Any] | None = None) -> None:
        for handler in list(self.handlers[event]):
            handler(payload or {})

    def set_state(self, state: CallingState) -> None:
        self.calling_state = state
        self.emit(CALLING_STATE_CHANGED, {"state": state.value})

    def set_participants(self, *user_ids: str) -> None:
        self.participants = [Participant(uid) for uid in user_ids]
        self.emit(PARTICIPANTS_CHANGED)


class FakeCallClient:
    def __init__(self, user_id: str = "u1", **call_kwargs: Any) -> None:
        self._user_id = user_id
        self._call_kwargs = call_kwargs
        self.calls: dict[str, FakeCall] = {}

    def call(self, call_id: str) -> FakeCall:
        if call_id not in self.calls:
            self.calls[call_id] = FakeCall(call_id, self._user_id, **self._call_kwargs)
        return self.calls[call_id]


def run(coro):
    return asyncio.run(coro)


@pytest.fixture()
def settings() -> Settings:
    return Settings(_env_file=None, backend_base_url=BASE_URL)


@pytest.fixture()
def context() -> SessionContext:
    return SessionContext(user_id="u1", access_token="token-123", star_balance=50)


@pytest.fixture()
def backend_state() -> BackendState:
    return BackendState()


@pytest.fixture()
def backend(backend_state: BackendState, context: SessionContext, settings: Settings) -> BackendClient:
    transport = httpx.ASGITransport(app=build_fake_backend(backend_state))
    return BackendClient(context, settings, transport=transport)


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()
