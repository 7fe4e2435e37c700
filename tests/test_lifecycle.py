from __future__ import annotations

import asyncio

import pytest

from backend.errors import CallJoinFailed
from calling.lifecycle import CallLifecycleController, EndReason, JoinOutcome, TeardownState
from calling.platform import CallingState, JoinFailure, classify_join_error
from conftest import FakeCallClient, RecordingNotifier, RecordingSleep, run
from session.notices import NoticeKind


class WsFailure(Exception):
    is_ws_failure = True


class Teardowns:
    def __init__(self, delay: float = 0.0) -> None:
        self.reasons: list[EndReason] = []
        self._delay = delay

    async def __call__(self, reason: EndReason) -> None:
        self.reasons.append(reason)
        await asyncio.sleep(self._delay)


def _controller(client, settings, *, sleep=None, teardowns=None, notifier=None):
    return CallLifecycleController(
        client,
        notifier or RecordingNotifier(),
        teardowns or Teardowns(),
        settings,
        sleep=sleep or RecordingSleep(),
    )


def test_classify_join_error_buckets():
    assert classify_join_error(RuntimeError("Call has already joined")) is JoinFailure.ALREADY_JOINED
    assert classify_join_error(WsFailure("socket")) is JoinFailure.TRANSIENT
    assert classify_join_error(RuntimeError("WS connection failed")) is JoinFailure.TRANSIENT
    assert classify_join_error(ValueError("bad call id")) is JoinFailure.TERMINAL


def test_join_disables_camera(settings):
    client = FakeCallClient()
    controller = _controller(client, settings)

    assert run(controller.join("call-1")) is JoinOutcome.JOINED
    call = client.calls["call-1"]
    assert call.join_calls == 1
    assert call.camera_disabled


def test_join_same_call_twice_is_noop(settings):
    client = FakeCallClient()
    controller = _controller(client, settings)

    async def scenario():
        first = await controller.join("call-1")
        second = await controller.join("call-1")
        return first, second

    assert run(scenario()) == (JoinOutcome.JOINED, JoinOutcome.DUPLICATE)
    assert client.calls["call-1"].join_calls == 1


def test_join_skipped_when_platform_already_joined(settings):
    client = FakeCallClient(state=CallingState.JOINED)
    controller = _controller(client, settings)

    assert run(controller.join("call-1")) is JoinOutcome.ALREADY_JOINED
    assert client.calls["call-1"].join_calls == 0


def test_already_joined_error_counts_as_success(settings):
    client = FakeCallClient(join_errors=[RuntimeError("call already joined")])
    controller = _controller(client, settings)

    assert run(controller.join("call-1")) is JoinOutcome.JOINED
    assert client.calls["call-1"].join_calls == 1


def test_transient_failure_retries_once(settings):
    client = FakeCallClient(join_errors=[WsFailure("ws dropped")])
    sleep = RecordingSleep()
    controller = _controller(client, settings, sleep=sleep)

    assert run(controller.join("call-1")) is JoinOutcome.JOINED
    assert client.calls["call-1"].join_calls == 2
    assert sleep.delays == [settings.call_join_retry_delay_seconds]


def test_second_transient_failure_is_terminal_and_clears_latch(settings):
    client = FakeCallClient(join_errors=[WsFailure("a"), WsFailure("b")])
    notifier = RecordingNotifier()
    controller = _controller(client, settings, notifier=notifier)

    with pytest.raises(CallJoinFailed):
        run(controller.join("call-1"))
    assert client.calls["call-1"].join_calls == 2
    assert notifier.kinds() == [NoticeKind.CONNECTION_ERROR]

    # Latch was released, so the same call can be attempted again.
    assert run(controller.join("call-1")) is JoinOutcome.JOINED
    assert client.calls["call-1"].join_calls == 3


def test_terminal_failure_does_not_retry(settings):
    client = FakeCallClient(join_errors=[ValueError("call not found")])
    sleep = RecordingSleep()
    controller = _controller(client, settings, sleep=sleep)

    with pytest.raises(CallJoinFailed):
        run(controller.join("call-1"))
    assert client.calls["call-1"].join_calls == 1
    assert sleep.delays == []


def test_concurrent_end_triggers_run_one_teardown(settings):
    client = FakeCallClient()
    teardowns = Teardowns(delay=0.01)
    controller = _controller(client, settings, teardowns=teardowns)

    async def scenario():
        await controller.join("call-1")
        return await asyncio.gather(
            controller.end_call(EndReason.USER_ENDED),
            controller.on_peer_left(),
            controller.end_call(EndReason.USER_ENDED),
        )

    results = run(scenario())

    assert results.count(True) == 1
    assert teardowns.reasons == [EndReason.USER_ENDED]
    assert client.calls["call-1"].ended
    assert controller.teardown_state is TeardownState.IDLE


def test_teardown_runs_after_end_even_if_platform_end_fails(settings):
    client = FakeCallClient()
    teardowns = Teardowns()
    controller = _controller(client, settings, teardowns=teardowns)

    async def scenario():
        await controller.join("call-1")
        call = client.calls["call-1"]

        async def broken_end_call() -> None:
            raise RuntimeError("ICE session shut down")

        call.end_call = broken_end_call
        return await controller.end_call()

    assert run(scenario()) is True
    assert teardowns.reasons == [EndReason.USER_ENDED]


def test_peer_left_debounces_before_teardown(settings):
    client = FakeCallClient()
    sleep = RecordingSleep()
    notifier = RecordingNotifier()
    teardowns = Teardowns()
    controller = _controller(client, settings, sleep=sleep, teardowns=teardowns, notifier=notifier)

    async def scenario():
        await controller.join("call-1")
        return await controller.on_peer_left()

    assert run(scenario()) is True
    assert sleep.delays == [settings.peer_left_debounce_seconds]
    assert notifier.kinds() == [NoticeKind.PARTNER_LEFT]
    assert teardowns.reasons == [EndReason.PEER_LEFT]


def test_duration_expiry_shows_notice_then_tears_down(settings):
    client = FakeCallClient()
    sleep = RecordingSleep()
    notifier = RecordingNotifier()
    teardowns = Teardowns()
    controller = _controller(client, settings, sleep=sleep, teardowns=teardowns, notifier=notifier)

    async def scenario():
        await controller.join("call-1")
        await controller.on_duration_expired()
        # A late trigger after teardown is dropped.
        return await controller.on_call_left()

    assert run(scenario()) is False
    assert notifier.kinds() == [NoticeKind.TIME_UP]
    assert sleep.delays == [settings.time_up_notice_seconds]
    assert teardowns.reasons == [EndReason.DURATION_EXPIRED]


def test_microphone_toggle_skipped_after_leaving(settings):
    client = FakeCallClient()
    controller = _controller(client, settings)

    async def scenario():
        await controller.join("call-1")
        await controller.toggle_microphone()
        client.calls["call-1"].calling_state = CallingState.LEFT
        await controller.toggle_microphone()

    run(scenario())
    assert client.calls["call-1"].mic_toggles == 1
