"""Deadline and cancellation helpers shared by every data-fetching path.

These helpers provide a consistent way to:
- race any awaitable against a wall-clock budget (race_with_deadline)
- send HTTP requests that stop on a timeout or on a caller's signal (fetch_with_deadline)
- merge cancellation signals (combine_signals)
- recognise timeout and cancellation failures (is_timeout_error, is_cancel_error)

Note:
- race_with_deadline cannot stop the underlying work. When the budget runs out the
  caller gets a DeadlineError, but the work keeps running in its own task until it
  finishes on its own. Prefer fetch_with_deadline, or pass a CancelSignal into code
  that checks it, when the work must actually stop.
"""

from __future__ import annotations

import asyncio
import errno
import inspect
import logging
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Tuple, TypeVar, Union

import httpx

from dashcore.config import FETCH_TIMEOUT_MS


logger = logging.getLogger(__name__)

T = TypeVar("T")

Listener = Callable[[Any], None]

_TIMEOUT_CODES = {"ETIMEDOUT", "TIMEOUT"}
_ABORT_CODES = {"ABORT_ERR"}
_MAX_CAUSE_DEPTH = 8


class DeadlineError(TimeoutError):
    """Raised when an operation loses the race against its budget."""

    code = "TIMEOUT"

    def __init__(
        self,
        message: str,
        timeout_ms: int,
        label: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.timeout_ms = timeout_ms
        self.label = label
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause


class OperationCancelled(Exception):
    """Raised when a caller's signal, not a deadline, stopped the operation."""

    code = "ABORT_ERR"

    def __init__(self, message: str = "Operation was cancelled", reason: Any = None) -> None:
        super().__init__(message)
        self.reason = reason


class CancelSignal:
    """Cooperative cancellation flag that fires at most once."""

    def __init__(self) -> None:
        self._aborted = False
        self._reason: Any = None
        self._listeners: List[Listener] = []
        self._cleanups: List[Callable[[], None]] = []
        self._event: Optional[asyncio.Event] = None

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def reason(self) -> Any:
        return self._reason

    def abort(self, reason: Any = None) -> None:
        if self._aborted:
            return
        self._aborted = True
        self._reason = reason if reason is not None else OperationCancelled()
        listeners, self._listeners = self._listeners, []
        if self._event is not None:
            self._event.set()
        for listener in listeners:
            listener(self._reason)
        self.release()

    def add_listener(self, listener: Listener) -> None:
        # Late listeners still hear about an abort that already happened.
        if self._aborted:
            listener(self._reason)
            return
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def raise_if_aborted(self) -> None:
        if self._aborted:
            raise _abort_error(self._reason)

    async def wait(self) -> Any:
        if self._aborted:
            return self._reason
        if self._event is None:
            self._event = asyncio.Event()
        await self._event.wait()
        return self._reason

    def release(self) -> None:
        """Detach from any input signals this one was combined from."""
        cleanups, self._cleanups = self._cleanups, []
        for cleanup in cleanups:
            cleanup()


def _check_budget(budget_ms: object) -> int:
    if isinstance(budget_ms, bool) or not isinstance(budget_ms, int):
        raise ValueError(f"budget_ms must be a positive integer, got {budget_ms!r}")
    if budget_ms <= 0:
        raise ValueError(f"budget_ms must be a positive integer, got {budget_ms}")
    return budget_ms


def _schedule(loop: asyncio.AbstractEventLoop, delay_ms: int, callback: Callable[..., None], *args: Any) -> asyncio.TimerHandle:
    return loop.call_later(delay_ms / 1000.0, callback, *args)


def _expire(expired: asyncio.Future) -> None:
    if not expired.done():
        expired.set_result(None)


def _retrieve_result(task: asyncio.Future) -> None:
    # The race is already lost; read the outcome so asyncio does not report it as unhandled.
    if not task.cancelled():
        task.exception()


def _timeout_message(budget_ms: int, label: Optional[str]) -> str:
    if label:
        return f"Operation timed out [{label}] after {budget_ms}ms"
    return f"Operation timed out after {budget_ms}ms"


def race_with_deadline(
    work: Union[Awaitable[T], Callable[[], Awaitable[T]]],
    budget_ms: int,
    label: Optional[str] = None,
) -> Awaitable[T]:
    """Race `work` against a budget of `budget_ms` milliseconds.

    `work` is an awaitable or a zero-argument callable returning one. Bad budgets and
    non-awaitable work are rejected here, before anything is awaited. The returned
    awaitable yields the work's result, re-raises the work's own exception unchanged,
    or raises DeadlineError if the budget runs out first.

    The work is not cancelled when the deadline wins; it keeps running in the background.
    """
    try:
        _check_budget(budget_ms)
    except ValueError:
        if inspect.iscoroutine(work):
            work.close()
        raise

    awaitable = work() if callable(work) and not inspect.isawaitable(work) else work
    if not inspect.isawaitable(awaitable):
        raise TypeError(
            f"Expected an awaitable or a callable returning an awaitable, got {type(awaitable).__name__}"
        )
    return _race(awaitable, budget_ms, label)


async def _race(awaitable: Awaitable[T], budget_ms: int, label: Optional[str]) -> T:
    loop = asyncio.get_running_loop()
    task = asyncio.ensure_future(awaitable)
    expired = loop.create_future()
    handle = _schedule(loop, budget_ms, _expire, expired)
    try:
        await asyncio.wait({task, expired}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        handle.cancel()
        if not expired.done():
            expired.cancel()

    if task.done():
        return task.result()

    task.add_done_callback(_retrieve_result)
    logger.warning("Timeout in %s after %sms", label or "operation", budget_ms)
    raise DeadlineError(_timeout_message(budget_ms, label), budget_ms, label)


def deadline_signal(budget_ms: int, label: Optional[str] = None) -> Tuple[CancelSignal, Callable[[], None]]:
    """Return a signal that fires with a DeadlineError after `budget_ms`, and a function that disarms it."""
    _check_budget(budget_ms)
    loop = asyncio.get_running_loop()
    signal = CancelSignal()

    def _fire() -> None:
        logger.warning("Timeout in %s after %sms", label or "operation", budget_ms)
        signal.abort(DeadlineError(_timeout_message(budget_ms, label), budget_ms, label))

    handle = _schedule(loop, budget_ms, _fire)
    return signal, handle.cancel


def combine_signals(signals: Iterable[Optional[CancelSignal]]) -> CancelSignal:
    """Return a signal that fires as soon as any of `signals` fires, with that signal's reason.

    An input that has already fired makes the result fire before this function returns.
    """
    inputs = [s for s in signals if s is not None]
    combined = CancelSignal()

    for s in inputs:
        if s.aborted:
            combined.abort(s.reason)
            return combined

    def _forward(reason: Any) -> None:
        combined.abort(reason)

    def _detach() -> None:
        for s in inputs:
            s.remove_listener(_forward)

    combined._cleanups.append(_detach)
    for s in inputs:
        s.add_listener(_forward)
    return combined


def _abort_error(reason: Any) -> BaseException:
    if isinstance(reason, (DeadlineError, OperationCancelled)):
        return reason
    if isinstance(reason, BaseException):
        return OperationCancelled(str(reason) or "Operation was cancelled", reason=reason)
    return OperationCancelled(reason=reason)


async def fetch_with_deadline(
    url: str,
    *,
    budget_ms: int = FETCH_TIMEOUT_MS,
    signal: Optional[CancelSignal] = None,
    client: Optional[httpx.AsyncClient] = None,
    method: str = "GET",
    **request_kwargs: Any,
) -> httpx.Response:
    """Send an HTTP request that stops on whichever comes first: the budget or `signal`.

    Raises DeadlineError when the budget stopped it and OperationCancelled when the
    caller's signal did.
    """
    label = f"fetch {method} {url}"
    # The deadline signal is the only timeout.
    request_kwargs.setdefault("timeout", None)
    timeout_signal, cancel_timeout = deadline_signal(budget_ms, label)
    combined = combine_signals([signal, timeout_signal])
    try:
        if client is None:
            async with httpx.AsyncClient(timeout=None) as own_client:
                return await _send_until_aborted(own_client, method, url, combined, request_kwargs)
        return await _send_until_aborted(client, method, url, combined, request_kwargs)
    finally:
        cancel_timeout()
        combined.release()


async def _send_until_aborted(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    signal: CancelSignal,
    request_kwargs: dict,
) -> httpx.Response:
    signal.raise_if_aborted()
    request = asyncio.ensure_future(client.request(method, url, **request_kwargs))
    aborted = asyncio.ensure_future(signal.wait())
    try:
        await asyncio.wait({request, aborted}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        request.cancel()
        raise
    finally:
        if not aborted.done():
            aborted.cancel()

    if request.done():
        return request.result()

    request.cancel()
    (outcome,) = await asyncio.gather(request, return_exceptions=True)
    reason = signal.reason
    if isinstance(reason, DeadlineError) and reason.cause is None and isinstance(outcome, BaseException):
        raise DeadlineError(str(reason), reason.timeout_ms, reason.label, cause=outcome)
    raise _abort_error(reason)


def _code_of(err: Any) -> Optional[str]:
    code = getattr(err, "code", None)
    return code.upper() if isinstance(code, str) else None


def _looks_like_timeout(err: Any, depth: int) -> bool:
    if err is None or depth > _MAX_CAUSE_DEPTH:
        return False
    if isinstance(err, (TimeoutError, httpx.TimeoutException)):
        return True
    if type(err).__name__ == "TimeoutError":
        return True
    if _code_of(err) in _TIMEOUT_CODES:
        return True
    if getattr(err, "errno", None) == errno.ETIMEDOUT:
        return True
    for attr in ("cause", "__cause__"):
        nested = getattr(err, attr, None)
        if nested is not None and nested is not err and _looks_like_timeout(nested, depth + 1):
            return True
    return False


def is_timeout_error(err: Any) -> bool:
    try:
        return _looks_like_timeout(err, 0)
    except Exception:
        return False


def is_cancel_error(err: Any) -> bool:
    try:
        if err is None:
            return False
        if isinstance(err, (OperationCancelled, asyncio.CancelledError)):
            return True
        if type(err).__name__ == "AbortError":
            return True
        return _code_of(err) in _ABORT_CODES
    except Exception:
        return False
