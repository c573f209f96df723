"""Tests for hedged calls and cancellation scopes."""

import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from ctlog.infra.storage.hedge import (
    COMPETING_REQUEST_SUCCEEDED,
    CancelScope,
    Cancelled,
    bind_scope,
    current_scope,
    run_hedged,
)


class Counter:
    def __init__(self):
        self.value = 0
        self._lock = threading.Lock()

    def inc(self):
        with self._lock:
            self.value += 1


@pytest.fixture
def executor():
    pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix="test-hedge")
    yield pool
    pool.shutdown(wait=True)


def scripted(*steps):
    """Build a callable whose n-th invocation sleeps and returns steps[n]."""
    calls = []
    lock = threading.Lock()

    def call():
        with lock:
            index = len(calls)
            calls.append(current_scope())
        delay, result = steps[index]
        time.sleep(delay)
        if isinstance(result, Exception):
            raise result
        return result

    call.calls = calls
    return call


class TestCancelScope:
    def test_cancel_records_first_cause(self):
        scope = CancelScope()
        scope.cancel("first")
        scope.cancel("second")

        assert scope.cancelled
        assert scope.cause == "first"

    def test_check_raises_cancelled(self):
        scope = CancelScope()
        scope.check()
        scope.cancel("stop")

        with pytest.raises(Cancelled, match="stop") as info:
            scope.check()
        assert info.value.cause == "stop"

    def test_parent_cancels_children(self):
        parent = CancelScope()
        child = CancelScope(parent)
        grandchild = CancelScope(child)

        parent.cancel("shutdown")

        assert child.cause == "shutdown"
        assert grandchild.cause == "shutdown"

    def test_child_does_not_cancel_parent(self):
        parent = CancelScope()
        child = CancelScope(parent)

        child.cancel(COMPETING_REQUEST_SUCCEEDED)

        assert not parent.cancelled

    def test_child_of_cancelled_parent_starts_cancelled(self):
        parent = CancelScope()
        parent.cancel("gone")

        assert CancelScope(parent).cause == "gone"

    def test_closed_child_is_detached(self):
        parent = CancelScope()
        with CancelScope(parent) as child:
            pass

        parent.cancel("late")

        assert not child.cancelled

    def test_wait_times_out(self):
        assert CancelScope().wait(0.01) is False

    def test_bind_scope(self):
        scope = CancelScope()
        assert current_scope() is None
        with bind_scope(scope):
            assert current_scope() is scope
        assert current_scope() is None


class TestRunHedged:
    def test_fast_primary(self, executor):
        call = scripted((0.0, "primary"))
        launched, won = Counter(), Counter()

        result = run_hedged(
            call, executor=executor, on_launch=launched.inc, on_win=won.inc
        )
        time.sleep(0.12)

        assert result == "primary"
        assert len(call.calls) == 1
        assert launched.value == 0
        assert won.value == 0

    def test_hedge_wins(self, executor):
        call = scripted((0.3, "primary"), (0.0, "hedge"))
        launched, won = Counter(), Counter()

        start = time.perf_counter()
        result = run_hedged(
            call, executor=executor, on_launch=launched.inc, on_win=won.inc
        )
        elapsed = time.perf_counter() - start

        assert result == "hedge"
        assert elapsed < 0.2
        assert launched.value == 1
        assert won.value == 1

    def test_primary_wins_after_hedge_launched(self, executor):
        call = scripted((0.12, "primary"), (0.4, "hedge"))
        launched, won = Counter(), Counter()

        start = time.perf_counter()
        result = run_hedged(
            call, executor=executor, on_launch=launched.inc, on_win=won.inc
        )
        elapsed = time.perf_counter() - start

        assert result == "primary"
        assert elapsed < 0.3
        assert launched.value == 1
        assert won.value == 0

    def test_loser_sees_cancellation(self, executor):
        call = scripted((0.3, "primary"), (0.0, "hedge"))

        run_hedged(call, executor=executor)

        primary_scope, hedge_scope = call.calls
        assert primary_scope is hedge_scope
        assert primary_scope.cause == COMPETING_REQUEST_SUCCEEDED

    def test_adopted_error_is_raised(self, executor):
        call = scripted((0.0, ValueError("broken")))

        with pytest.raises(ValueError, match="broken"):
            run_hedged(call, executor=executor)

    def test_first_error_wins_over_later_success(self, executor):
        call = scripted((0.3, "primary"), (0.0, ValueError("hedge broken")))
        won = Counter()

        with pytest.raises(ValueError, match="hedge broken"):
            run_hedged(call, executor=executor, on_win=won.inc)
        assert won.value == 1

    def test_custom_delay(self, executor):
        call = scripted((0.1, "primary"), (0.0, "hedge"))
        launched = Counter()

        result = run_hedged(
            call, executor=executor, delay=0.01, on_launch=launched.inc
        )

        assert result == "hedge"
        assert launched.value == 1

    def test_parent_cancellation_reaches_attempts(self, executor):
        parent = CancelScope()

        def call():
            parent.cancel("caller gave up")
            current_scope().check()

        with pytest.raises(Cancelled, match="caller gave up"):
            run_hedged(call, executor=executor, parent=parent)

    def test_cancelled_parent_never_hedges(self, executor):
        parent = CancelScope()
        parent.cancel("caller gave up")
        call = scripted((0.15, "primary"))
        launched = Counter()

        result = run_hedged(
            call, executor=executor, parent=parent, on_launch=launched.inc
        )

        assert result == "primary"
        assert launched.value == 0

    def test_attempts_run_on_executor(self, executor):
        threads = []

        def call():
            threads.append(threading.current_thread().name)
            return "done"

        run_hedged(call, executor=executor)

        assert threads[0].startswith("test-hedge")

    def test_wins_never_exceed_launches(self, executor):
        launched, won = Counter(), Counter()
        for delays in ((0.0, 0.0), (0.15, 0.0), (0.1, 0.3), (0.0, 0.0)):
            call = scripted((delays[0], "p"), (delays[1], "h"))
            run_hedged(call, executor=executor, on_launch=launched.inc, on_win=won.inc)
            assert won.value <= launched.value
