"""Tests for the per-endpoint circuit breaker."""

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from paysentry.circuit_breaker import BreakerState, CircuitBreaker, CircuitBreakerConfig
from paysentry.errors import CircuitOpenError


def _boom():
    raise ConnectionError("facilitator down")


def _trip(breaker, key="fac", times=5):
    for _ in range(times):
        with pytest.raises(ConnectionError):
            breaker.execute(key, _boom)


@pytest.fixture
def breaker(clock):
    return CircuitBreaker(CircuitBreakerConfig(failure_threshold=5, recovery_timeout_ms=30_000), clock=clock)


class TestStateMachine:
    def test_opens_after_threshold_and_rejects_without_calling(self, breaker):
        _trip(breaker)
        assert breaker.get_state("fac") is BreakerState.OPEN

        calls = []
        with pytest.raises(CircuitOpenError) as exc:
            breaker.execute("fac", lambda: calls.append(1))
        assert calls == []
        assert exc.value.breaker_key == "fac"
        assert 0 < exc.value.remaining_ms <= 30_000

    def test_success_resets_failure_count_while_closed(self, breaker):
        _trip(breaker, times=4)
        assert breaker.execute("fac", lambda: "ok") == "ok"
        _trip(breaker, times=4)
        assert breaker.get_state("fac") is BreakerState.CLOSED

    def test_trial_success_closes(self, breaker, clock):
        _trip(breaker)
        clock.advance(30)
        assert breaker.get_state("fac") is BreakerState.HALF_OPEN
        assert breaker.execute("fac", lambda: "trial") == "trial"
        assert breaker.get_state("fac") is BreakerState.CLOSED
        assert breaker.snapshot()["fac"].failure_count == 0

    def test_trial_failure_reopens(self, breaker, clock):
        _trip(breaker)
        clock.advance(30)
        with pytest.raises(ConnectionError):
            breaker.execute("fac", _boom)
        assert breaker.get_state("fac") is BreakerState.OPEN
        with pytest.raises(CircuitOpenError):
            breaker.execute("fac", lambda: "never")

        # The trial slot is free again after the next cooldown.
        clock.advance(30)
        assert breaker.execute("fac", lambda: "ok") == "ok"

    def test_keys_are_independent(self, breaker):
        _trip(breaker, key="bad")
        assert breaker.execute("good", lambda: 1) == 1
        assert breaker.get_state("good") is BreakerState.CLOSED
        assert breaker.get_state("never-used") is BreakerState.CLOSED

    def test_arguments_are_forwarded(self, breaker):
        assert breaker.execute("fac", lambda a, b=0: a + b, 2, b=3) == 5


class TestHalfOpenConcurrency:
    def test_excess_trial_calls_are_rejected(self, breaker, clock):
        _trip(breaker)
        clock.advance(30)

        started = threading.Event()
        release = threading.Event()
        results = []

        def slow_trial():
            started.set()
            release.wait(5)
            return "trial"

        t = threading.Thread(target=lambda: results.append(breaker.execute("fac", slow_trial)))
        t.start()
        assert started.wait(5)
        with pytest.raises(CircuitOpenError) as exc:
            breaker.execute("fac", lambda: "second")
        assert exc.value.remaining_ms == 0
        release.set()
        t.join(5)
        assert results == ["trial"]
        assert breaker.get_state("fac") is BreakerState.CLOSED

    def test_interrupted_call_gives_slot_back(self, breaker, clock):
        _trip(breaker)
        clock.advance(30)

        def interrupted():
            raise KeyboardInterrupt

        with pytest.raises(KeyboardInterrupt):
            breaker.execute("fac", interrupted)
        # Not a failure: still half-open, failure count untouched.
        assert breaker.get_state("fac") is BreakerState.HALF_OPEN
        assert breaker.snapshot()["fac"].failure_count == 5
        assert breaker.execute("fac", lambda: "ok") == "ok"
        assert breaker.get_state("fac") is BreakerState.CLOSED


class TestClosedConcurrency:
    def test_concurrent_failures_each_count_once(self, breaker, caplog):
        workers = 8
        barrier = threading.Barrier(workers)

        def failing():
            barrier.wait(5)
            raise ConnectionError("facilitator down")

        def call():
            try:
                breaker.execute("fac", failing)
            except ConnectionError:
                return "failed"
            return "ok"

        with caplog.at_level(logging.INFO, logger="paysentry.circuit_breaker"):
            with ThreadPoolExecutor(max_workers=workers) as pool:
                results = list(pool.map(lambda _: call(), range(workers)))

        assert results == ["failed"] * workers
        assert breaker.snapshot()["fac"].failure_count == workers
        assert breaker.get_state("fac") is BreakerState.OPEN
        opened = [r for r in caplog.records if "closed -> open" in r.getMessage()]
        assert len(opened) == 1


class TestAdmin:
    def test_reset_and_reset_all(self, breaker):
        _trip(breaker, key="a")
        _trip(breaker, key="b")
        breaker.reset("a")
        assert breaker.get_state("a") is BreakerState.CLOSED
        assert breaker.get_state("b") is BreakerState.OPEN
        breaker.reset_all()
        assert breaker.get_state("b") is BreakerState.CLOSED

    def test_snapshot(self, breaker):
        _trip(breaker, times=2)
        snap = breaker.snapshot()["fac"]
        assert snap.state is BreakerState.CLOSED
        assert snap.to_dict() == {"state": "closed", "failure_count": 2, "success_count": 0}

    def test_invalid_config(self):
        with pytest.raises(ValueError):
            CircuitBreakerConfig(failure_threshold=0)


class TestAsync:
    def test_execute_async_shares_state(self, breaker):
        async def failing():
            raise TimeoutError("slow")

        async def run():
            for _ in range(5):
                with pytest.raises(TimeoutError):
                    await breaker.execute_async("fac", failing)
            with pytest.raises(CircuitOpenError):
                await breaker.execute_async("fac", failing)

        asyncio.run(run())
        assert breaker.get_state("fac") is BreakerState.OPEN

    def test_cancelled_call_gives_slot_back(self, breaker, clock):
        _trip(breaker)
        clock.advance(30)

        async def run():
            admitted = asyncio.Event()

            async def hangs():
                admitted.set()
                await asyncio.Event().wait()

            task = asyncio.create_task(breaker.execute_async("fac", hangs))
            await admitted.wait()
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

            assert breaker.get_state("fac") is BreakerState.HALF_OPEN
            assert breaker.snapshot()["fac"].failure_count == 5

            async def healthy():
                return "ok"

            assert await breaker.execute_async("fac", healthy) == "ok"

        asyncio.run(run())
        assert breaker.get_state("fac") is BreakerState.CLOSED
