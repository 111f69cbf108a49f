import asyncio
import errno
from types import SimpleNamespace

import httpx
import pytest

from dashcore.deadline import (
    CancelSignal,
    DeadlineError,
    OperationCancelled,
    combine_signals,
    deadline_signal,
    fetch_with_deadline,
    is_cancel_error,
    is_timeout_error,
    race_with_deadline,
)


async def _sleep_then(value, seconds):
    await asyncio.sleep(seconds)
    return value


async def _sleep_then_raise(exc, seconds):
    await asyncio.sleep(seconds)
    raise exc


def test_race_returns_result_when_work_finishes_first(recorded_timers):
    result = asyncio.run(race_with_deadline(_sleep_then("done", 0.01), 500, "quick"))

    assert result == "done"
    assert len(recorded_timers) == 1
    assert recorded_timers[0].cancelled()


def test_race_accepts_zero_argument_callable():
    async def main():
        return await race_with_deadline(lambda: _sleep_then(7, 0), 500)

    assert asyncio.run(main()) == 7


def test_race_times_out_and_releases_timer(recorded_timers):
    async def main():
        return await race_with_deadline(lambda: _sleep_then("late", 0.5), 20, "slow sheet")

    with pytest.raises(DeadlineError) as excinfo:
        asyncio.run(main())

    err = excinfo.value
    assert err.code == "TIMEOUT"
    assert err.timeout_ms == 20
    assert err.label == "slow sheet"
    assert "slow sheet" in str(err)
    assert is_timeout_error(err)
    assert recorded_timers and all(handle.cancelled() for handle in recorded_timers)


def test_race_propagates_early_failure_unchanged():
    boom = ValueError("sheet exploded")

    async def main():
        return await race_with_deadline(lambda: _sleep_then_raise(boom, 0.01), 500)

    with pytest.raises(ValueError) as excinfo:
        asyncio.run(main())

    assert excinfo.value is boom
    assert not isinstance(excinfo.value, DeadlineError)


def test_race_leaves_work_running_after_deadline():
    finished = []

    async def work():
        await asyncio.sleep(0.05)
        finished.append(True)

    async def main():
        with pytest.raises(DeadlineError):
            await race_with_deadline(work, 10)
        assert finished == []
        await asyncio.sleep(0.15)

    asyncio.run(main())
    assert finished == [True]


def test_race_rejects_non_awaitable_synchronously():
    with pytest.raises(TypeError):
        race_with_deadline(lambda: 42, 100)
    with pytest.raises(TypeError):
        race_with_deadline("not work", 100)


@pytest.mark.parametrize("budget", [0, -5, True, 1.5, "100", None])
def test_race_rejects_invalid_budget(budget):
    coro = _sleep_then("x", 0)
    with pytest.raises(ValueError):
        race_with_deadline(coro, budget)
    # The rejected coroutine is closed rather than left un-awaited.
    assert coro.cr_frame is None


def test_cancel_signal_defaults_reason_and_fires_once():
    signal = CancelSignal()
    heard = []
    signal.add_listener(heard.append)

    signal.abort()
    signal.abort("second")

    assert signal.aborted
    assert isinstance(signal.reason, OperationCancelled)
    assert heard == [signal.reason]
    with pytest.raises(OperationCancelled):
        signal.raise_if_aborted()


def test_combine_signals_fires_synchronously_when_input_already_fired():
    a, b = CancelSignal(), CancelSignal()
    a.abort("boom")

    combined = combine_signals([a, b])

    assert combined.aborted
    assert combined.reason == "boom"


def test_combine_signals_with_no_inputs_never_fires():
    combined = combine_signals([])
    assert not combined.aborted

    single = CancelSignal()
    combined_one = combine_signals([single])
    single.abort("only")
    assert combined_one.reason == "only"


def test_combine_signals_keeps_first_reason_and_detaches():
    a, b = CancelSignal(), CancelSignal()
    combined = combine_signals([a, b, None])
    heard = []
    combined.add_listener(heard.append)

    b.abort("b fired")
    a.abort("a fired")

    assert combined.reason == "b fired"
    assert heard == ["b fired"]


def test_combine_signals_release_stops_forwarding():
    a = CancelSignal()
    combined = combine_signals([a])

    combined.release()
    a.abort("too late")

    assert not combined.aborted


def test_deadline_signal_fires_with_deadline_error():
    async def main():
        signal, cancel = deadline_signal(10, "probe")
        reason = await signal.wait()
        cancel()
        return reason

    reason = asyncio.run(main())
    assert isinstance(reason, DeadlineError)
    assert reason.label == "probe"


def test_deadline_signal_cancel_disarms_timer():
    async def main():
        signal, cancel = deadline_signal(10)
        cancel()
        await asyncio.sleep(0.05)
        return signal.aborted

    assert asyncio.run(main()) is False


def _client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def test_fetch_with_deadline_returns_response_and_releases_timer(recorded_timers):
    async def handler(request):
        return httpx.Response(200, json={"ok": True})

    async def main():
        async with _client(handler) as client:
            return await fetch_with_deadline("https://sheets.test/data", client=client, budget_ms=500)

    response = asyncio.run(main())
    assert response.status_code == 200
    assert response.json() == {"ok": True}
    assert recorded_timers and all(handle.cancelled() for handle in recorded_timers)


def test_fetch_with_deadline_raises_deadline_error_on_timeout(recorded_timers):
    async def handler(request):
        await asyncio.sleep(1)
        return httpx.Response(200)

    async def main():
        async with _client(handler) as client:
            await fetch_with_deadline("https://sheets.test/slow", client=client, budget_ms=20)

    with pytest.raises(DeadlineError) as excinfo:
        asyncio.run(main())

    assert excinfo.value.timeout_ms == 20
    assert is_timeout_error(excinfo.value)
    assert not is_cancel_error(excinfo.value)
    assert all(handle.cancelled() for handle in recorded_timers)


def test_fetch_with_deadline_caller_signal_gives_cancellation():
    async def handler(request):
        await asyncio.sleep(1)
        return httpx.Response(200)

    async def main():
        signal = CancelSignal()
        asyncio.get_running_loop().call_later(0.02, signal.abort)
        async with _client(handler) as client:
            await fetch_with_deadline("https://sheets.test/slow", client=client, signal=signal, budget_ms=2000)

    with pytest.raises(OperationCancelled) as excinfo:
        asyncio.run(main())

    assert is_cancel_error(excinfo.value)
    assert not is_timeout_error(excinfo.value)


def test_fetch_with_deadline_skips_request_when_signal_already_fired():
    calls = []

    async def handler(request):
        calls.append(request)
        return httpx.Response(200)

    async def main():
        signal = CancelSignal()
        signal.abort(OperationCancelled("user left"))
        async with _client(handler) as client:
            await fetch_with_deadline("https://sheets.test/data", client=client, signal=signal)

    with pytest.raises(OperationCancelled, match="user left"):
        asyncio.run(main())
    assert calls == []


class _Hostile:
    def __getattr__(self, name):
        raise RuntimeError("no attribute access allowed")


@pytest.mark.parametrize(
    "err",
    [
        DeadlineError("late", 10),
        TimeoutError(),
        asyncio.TimeoutError(),
        httpx.ReadTimeout("read timed out"),
        type("TimeoutError", (Exception,), {})(),
        SimpleNamespace(code="etimedout"),
        OSError(errno.ETIMEDOUT, "Connection timed out"),
        SimpleNamespace(cause=SimpleNamespace(code="ETIMEDOUT")),
    ],
)
def test_is_timeout_error_recognises_timeouts(err):
    assert is_timeout_error(err)


def test_is_timeout_error_follows_exception_chain():
    try:
        try:
            raise TimeoutError("socket")
        except TimeoutError as inner:
            raise RuntimeError("upstream failed") from inner
    except RuntimeError as outer:
        assert is_timeout_error(outer)


@pytest.mark.parametrize(
    "err",
    [None, "timeout", 42, {}, ValueError("nope"), OperationCancelled()],
)
def test_is_timeout_error_is_false_for_other_values(err):
    assert is_timeout_error(err) is False


@pytest.mark.parametrize(
    "err",
    [
        OperationCancelled(),
        asyncio.CancelledError(),
        type("AbortError", (Exception,), {})(),
        SimpleNamespace(code="abort_err"),
    ],
)
def test_is_cancel_error_recognises_cancellations(err):
    assert is_cancel_error(err)


@pytest.mark.parametrize("err", [None, DeadlineError("late", 10), ValueError(), "abort"])
def test_is_cancel_error_is_false_for_other_values(err):
    assert is_cancel_error(err) is False


def test_classification_never_raises_on_objects_that_reject_attribute_access():
    hostile = _Hostile()

    assert is_timeout_error(hostile) is False
    assert is_cancel_error(hostile) is False


def test_fetch_with_deadline_timeout_carries_cancelled_request_as_cause():
    async def handler(request):
        await asyncio.sleep(1)
        return httpx.Response(200)

    async def main():
        async with _client(handler) as client:
            await fetch_with_deadline("https://sheets.test/slow", client=client, budget_ms=20)

    with pytest.raises(DeadlineError) as excinfo:
        asyncio.run(main())

    err = excinfo.value
    assert err.label == "fetch GET https://sheets.test/slow"
    assert isinstance(err.cause, asyncio.CancelledError)
    assert err.__cause__ is err.cause
    assert is_timeout_error(err)


def test_fetch_with_deadline_disables_httpx_timeouts_on_caller_client():
    seen = []

    async def handler(request):
        seen.append(request.extensions["timeout"])
        return httpx.Response(200)

    async def main():
        async with _client(handler) as client:
            await fetch_with_deadline("https://sheets.test/data", client=client, budget_ms=8000)

    asyncio.run(main())
    assert seen == [{"connect": None, "read": None, "write": None, "pool": None}]


def test_fetch_with_deadline_own_client_has_no_timeout(monkeypatch):
    created = []
    base_client = httpx.AsyncClient

    class RecordingClient(base_client):
        def __init__(self, **kwargs):
            super().__init__(transport=httpx.MockTransport(lambda request: httpx.Response(204)), **kwargs)
            created.append(self)

    monkeypatch.setattr(httpx, "AsyncClient", RecordingClient)

    response = asyncio.run(fetch_with_deadline("https://sheets.test/data", budget_ms=8000))

    assert response.status_code == 204
    assert len(created) == 1
    assert created[0].timeout == httpx.Timeout(None)
