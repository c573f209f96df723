"""Request hedging and cooperative cancellation.

A ``CancelScope`` plays the role of a cancellable request context: it can be
cancelled once, with a cause, and cancellation propagates to child scopes.
Network attempts consult the scope bound to the current thread through
``current_scope`` before each request is sent.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from concurrent.futures import Executor, Future
from contextlib import contextmanager
from contextvars import ContextVar
from functools import partial
from typing import Callable, Iterator, TypeVar

from ctlog.infra.storage.client import StorageError

T = TypeVar("T")

HEDGE_DELAY_SECONDS = 0.075
COMPETING_REQUEST_SUCCEEDED = "competing request succeeded"

_current_scope: ContextVar["CancelScope | None"] = ContextVar(
    "ctlog_cancel_scope", default=None
)


class Cancelled(StorageError):
    """Raised when work is attempted in a cancelled scope."""

    def __init__(self, cause: str) -> None:
        super().__init__(f"operation cancelled: {cause}")
        self.cause = cause


class CancelScope:
    """A one-shot cancellation signal, optionally derived from a parent scope."""

    def __init__(self, parent: "CancelScope | None" = None) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._cause: str | None = None
        self._children: set[CancelScope] = set()
        self._parent = parent
        if parent is not None:
            parent._attach(self)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def cause(self) -> str | None:
        return self._cause

    def cancel(self, cause: str = "cancelled") -> None:
        """Cancel this scope and its children. The first cause is kept."""
        with self._lock:
            if self._event.is_set():
                return
            self._cause = cause
            self._event.set()
            children = list(self._children)
        for child in children:
            child.cancel(cause)

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled or ``timeout`` elapses; True if cancelled."""
        return self._event.wait(timeout)

    def check(self) -> None:
        if self._event.is_set():
            raise Cancelled(self._cause or "cancelled")

    def close(self) -> None:
        if self._parent is not None:
            self._parent._detach(self)
            self._parent = None

    def __enter__(self) -> "CancelScope":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _attach(self, child: "CancelScope") -> None:
        with self._lock:
            if not self._event.is_set():
                self._children.add(child)
                return
            cause = self._cause
        child.cancel(cause or "cancelled")

    def _detach(self, child: "CancelScope") -> None:
        with self._lock:
            self._children.discard(child)


def current_scope() -> CancelScope | None:
    return _current_scope.get()


@contextmanager
def bind_scope(scope: CancelScope | None) -> Iterator[None]:
    """Make ``scope`` visible to request hooks running on this thread."""
    token = _current_scope.set(scope)
    try:
        yield
    finally:
        _current_scope.reset(token)


class _Outcome:
    __slots__ = ("value", "error")

    def __init__(self, value: object = None, error: BaseException | None = None) -> None:
        self.value = value
        self.error = error

    def unwrap(self):
        if self.error is not None:
            raise self.error
        return self.value


def _attempt(call: Callable[[], T], scope: CancelScope) -> _Outcome:
    with bind_scope(scope):
        try:
            return _Outcome(value=call())
        except Exception as exc:
            return _Outcome(error=exc)


def run_hedged(
    call: Callable[[], T],
    *,
    executor: Executor,
    parent: CancelScope | None = None,
    delay: float = HEDGE_DELAY_SECONDS,
    on_launch: Callable[[], None] | None = None,
    on_win: Callable[[], None] | None = None,
    log: logging.Logger | None = None,
    log_message: str = "hedge",
    log_fields: dict | None = None,
) -> T:
    """Run ``call`` on ``executor``, hedged by a second call after ``delay``.

    The hedge is launched only if the primary has not returned within
    ``delay`` seconds and the scope has not been cancelled. The caller
    returns as soon as either attempt returns and adopts that outcome, error
    or not. The scope is then cancelled so the other attempt stops before its
    next request.

    Cancellation does not abort a request already on the wire, so ``call``
    must tolerate being executed twice. The losing attempt keeps its worker
    until its request finishes.
    """
    log = log or logging.getLogger(__name__)
    scope = CancelScope(parent)
    returned: queue.Queue[tuple[str, _Outcome]] = queue.Queue()

    def deliver(attempt: str, future: Future[_Outcome]) -> None:
        returned.put((attempt, future.result()))

    def hedge() -> _Outcome:
        start = time.perf_counter()
        outcome = _attempt(call, scope)
        log.debug(
            log_message,
            extra={
                "extra": {
                    **(log_fields or {}),
                    "elapsed_ms": round((time.perf_counter() - start) * 1000, 3),
                    "err": repr(outcome.error) if outcome.error else None,
                }
            },
        )
        return outcome

    with scope:
        executor.submit(_attempt, call, scope).add_done_callback(
            partial(deliver, "primary")
        )
        try:
            attempt, outcome = returned.get(timeout=delay)
        except queue.Empty:
            if not scope.cancelled:
                if on_launch is not None:
                    on_launch()
                executor.submit(hedge).add_done_callback(partial(deliver, "hedge"))
            attempt, outcome = returned.get()
        scope.cancel(COMPETING_REQUEST_SUCCEEDED)
        if attempt == "hedge" and on_win is not None:
            on_win()
    return outcome.unwrap()
