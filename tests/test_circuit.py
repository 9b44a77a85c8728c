# Copyright (c) 2023-2025, HaiyangLi <quantocean.li at gmail dot com>
# SPDX-License-Identifier: Apache-2.0

"""Tests for CircuitBreaker (single-trial default and HALF_OPEN extension)."""

import asyncio

import anyio
import pytest

from steadfast import CircuitBreaker, CircuitOpenError, CircuitState, circuit_breaker


async def failing_func():
    raise ValueError("Fail")


async def success_func():
    return "success"


class TestCircuitBreaker:
    """Test default two-state behavior."""

    @pytest.mark.asyncio
    async def test_closed_state_allows_calls(self):
        """Circuit starts CLOSED and allows calls."""
        cb = CircuitBreaker(failure_threshold=3, name="test")

        result = await cb.execute(success_func)
        assert result == "success"
        assert cb.state == CircuitState.CLOSED
        assert cb.metrics["success_count"] == 1

    @pytest.mark.asyncio
    async def test_opens_after_threshold_failures(self):
        """Circuit opens after failure_threshold failures."""
        cb = CircuitBreaker(failure_threshold=3, name="test")

        for _ in range(3):
            with pytest.raises(ValueError):
                await cb.execute(failing_func)

        assert cb.state == CircuitState.OPEN
        assert cb.is_open
        assert cb.failure_count == 3

    @pytest.mark.asyncio
    async def test_open_circuit_does_not_invoke_func(self):
        """Two failures open the circuit; a third call is rejected without invoking."""
        cb = CircuitBreaker(failure_threshold=2, cooldown=1.0, name="test")
        calls = 0

        async def counted_failure():
            nonlocal calls
            calls += 1
            raise ValueError("Fail")

        for _ in range(2):
            with pytest.raises(ValueError):
                await cb.execute(counted_failure)

        with pytest.raises(CircuitOpenError) as exc_info:
            await cb.execute(counted_failure)

        assert calls == 2
        assert cb.failure_count == 2
        assert "is open" in str(exc_info.value).lower()
        assert 0 < exc_info.value.retry_after <= 1.0
        assert cb.metrics["rejected_count"] == 1

    @pytest.mark.asyncio
    async def test_circuit_open_error_is_connection_error(self):
        """CircuitOpenError can be caught as ConnectionError."""
        cb = CircuitBreaker(failure_threshold=1, cooldown=10.0)

        with pytest.raises(ValueError):
            await cb.execute(failing_func)

        with pytest.raises(ConnectionError):
            await cb.execute(success_func)

    @pytest.mark.asyncio
    async def test_trial_success_after_cooldown_resets_count(self):
        """After cooldown a successful trial closes; reopening needs threshold failures again."""
        cb = CircuitBreaker(failure_threshold=2, cooldown=0.05, name="test")

        for _ in range(2):
            with pytest.raises(ValueError):
                await cb.execute(failing_func)
        assert cb.is_open

        await asyncio.sleep(0.1)

        assert await cb.execute(success_func) == "success"
        assert cb.state == CircuitState.CLOSED
        assert cb.failure_count == 0

        # One failure is not enough to reopen
        with pytest.raises(ValueError):
            await cb.execute(failing_func)
        assert cb.state == CircuitState.CLOSED

        with pytest.raises(ValueError):
            await cb.execute(failing_func)
        assert cb.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_trial_failure_after_cooldown_reopens(self):
        """A failed trial increments the count and restarts the cooldown."""
        cb = CircuitBreaker(failure_threshold=2, cooldown=0.05, name="test")

        for _ in range(2):
            with pytest.raises(ValueError):
                await cb.execute(failing_func)

        await asyncio.sleep(0.1)

        with pytest.raises(ValueError):
            await cb.execute(failing_func)

        assert cb.failure_count == 3
        assert cb.state == CircuitState.OPEN
        with pytest.raises(CircuitOpenError):
            await cb.execute(success_func)

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self):
        """Any success clears the failure count."""
        cb = CircuitBreaker(failure_threshold=3)

        for _ in range(2):
            with pytest.raises(ValueError):
                await cb.execute(failing_func)
        assert cb.failure_count == 2

        await cb.execute(success_func)
        assert cb.failure_count == 0

    @pytest.mark.asyncio
    async def test_default_mode_never_half_open(self):
        """Without half_open_max_calls the breaker only uses CLOSED and OPEN."""
        cb = CircuitBreaker(failure_threshold=1, cooldown=0.05)

        with pytest.raises(ValueError):
            await cb.execute(failing_func)
        await asyncio.sleep(0.1)
        await cb.execute(success_func)

        states = {(c["from"], c["to"]) for c in cb.metrics["state_changes"]}
        assert states == {("closed", "open"), ("open", "closed")}

    @pytest.mark.asyncio
    async def test_open_and_close_callbacks(self):
        """on_open and on_close fire on the matching transitions."""
        events = []
        cb = CircuitBreaker(
            failure_threshold=1,
            cooldown=0.05,
            on_open=lambda: events.append("open"),
            on_close=lambda: events.append("close"),
        )

        with pytest.raises(ValueError):
            await cb.execute(failing_func)
        await asyncio.sleep(0.1)
        await cb.execute(success_func)

        assert events == ["open", "close"]

    @pytest.mark.asyncio
    async def test_failing_observer_does_not_change_outcome(self, caplog):
        """Observer errors are logged; the call's own result or error still wins."""

        def broken_observer():
            raise RuntimeError("observer failed")

        cb = CircuitBreaker(
            failure_threshold=1,
            cooldown=0.05,
            on_open=broken_observer,
            on_close=broken_observer,
            name="observed",
        )

        with pytest.raises(ValueError):
            await cb.execute(failing_func)
        assert cb.state == CircuitState.OPEN

        await asyncio.sleep(0.1)

        assert await cb.execute(success_func) == "success"
        assert cb.state == CircuitState.CLOSED
        assert caplog.text.count("state observer failed") == 2

    @pytest.mark.asyncio
    async def test_excluded_exceptions_dont_count(self):
        """Excluded exceptions don't increment failure count."""
        cb = CircuitBreaker(failure_threshold=2, excluded_exceptions={KeyError}, name="test")

        async def excluded_error_func():
            raise KeyError("Excluded")

        with pytest.raises(KeyError):
            await cb.execute(excluded_error_func)

        assert cb.failure_count == 0
        assert cb.state == CircuitState.CLOSED

        with pytest.raises(ValueError):
            await cb.execute(failing_func)

        assert cb.failure_count == 1

    @pytest.mark.asyncio
    async def test_reset(self):
        """reset() closes the circuit and clears failures."""
        cb = CircuitBreaker(failure_threshold=1, cooldown=10.0)

        with pytest.raises(ValueError):
            await cb.execute(failing_func)
        assert cb.is_open

        cb.reset()

        assert cb.state == CircuitState.CLOSED
        assert cb.failure_count == 0
        assert await cb.execute(success_func) == "success"

    @pytest.mark.asyncio
    async def test_metrics_tracking(self):
        """Circuit breaker tracks metrics correctly."""
        cb = CircuitBreaker(failure_threshold=3, name="test")

        await cb.execute(success_func)
        await cb.execute(success_func)

        with pytest.raises(ValueError):
            await cb.execute(failing_func)

        metrics = cb.metrics
        assert metrics["success_count"] == 2
        assert metrics["failure_count"] == 1
        assert len(metrics["state_changes"]) == 0  # Still CLOSED

    @pytest.mark.asyncio
    async def test_concurrent_failures_are_all_counted(self):
        """Concurrent failing callers do not lose counter updates."""
        cb = CircuitBreaker(failure_threshold=100, name="concurrent")

        async def slow_failure():
            await asyncio.sleep(0.01)
            raise ValueError("Fail")

        async def call():
            with pytest.raises(ValueError):
                await cb.execute(slow_failure)

        async with anyio.create_task_group() as tg:
            for _ in range(20):
                tg.start_soon(call)

        assert cb.failure_count == 20

    def test_to_dict(self):
        """Configuration serializes to dict."""
        cb = CircuitBreaker(
            failure_threshold=5, cooldown=30.0, half_open_max_calls=2, name="test_breaker"
        )

        config = cb.to_dict()

        assert config["failure_threshold"] == 5
        assert config["cooldown"] == 30.0
        assert config["half_open_max_calls"] == 2
        assert config["name"] == "test_breaker"

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"failure_threshold": 0},
            {"cooldown": -1.0},
            {"half_open_max_calls": 0},
        ],
    )
    def test_invalid_configuration(self, kwargs):
        """Invalid settings are rejected."""
        with pytest.raises(ValueError):
            CircuitBreaker(**kwargs)


class TestHalfOpenExtension:
    """Test the opt-in HALF_OPEN trial limit."""

    @pytest.mark.asyncio
    async def test_half_open_success_closes_circuit(self):
        """Successful trial in HALF_OPEN closes circuit."""
        cb = CircuitBreaker(failure_threshold=1, cooldown=0.05, half_open_max_calls=1)

        with pytest.raises(ValueError):
            await cb.execute(failing_func)
        assert cb.state == CircuitState.OPEN

        await asyncio.sleep(0.1)

        assert await cb.execute(success_func) == "success"
        assert cb.state == CircuitState.CLOSED
        transitions = [(c["from"], c["to"]) for c in cb.metrics["state_changes"]]
        assert ("open", "half_open") in transitions

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens_circuit(self):
        """Failure in HALF_OPEN reopens circuit immediately."""
        cb = CircuitBreaker(failure_threshold=3, cooldown=0.05, half_open_max_calls=1)

        for _ in range(3):
            with pytest.raises(ValueError):
                await cb.execute(failing_func)

        await asyncio.sleep(0.1)

        with pytest.raises(ValueError):
            await cb.execute(failing_func)

        assert cb.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_half_open_rejects_when_at_capacity(self):
        """Concurrent trials beyond half_open_max_calls are rejected."""
        cb = CircuitBreaker(failure_threshold=1, cooldown=0.05, half_open_max_calls=1)

        async def slow_success():
            await asyncio.sleep(0.1)
            return "success"

        with pytest.raises(ValueError):
            await cb.execute(failing_func)

        await asyncio.sleep(0.1)

        results = []
        errors = []

        async def call_with_tracking(call_id):
            try:
                results.append((call_id, await cb.execute(slow_success)))
            except CircuitOpenError as e:
                errors.append((call_id, e))

        async with anyio.create_task_group() as tg:
            tg.start_soon(call_with_tracking, 1)
            await asyncio.sleep(0.01)
            tg.start_soon(call_with_tracking, 2)

        assert [r[0] for r in results] == [1]
        assert [e[0] for e in errors] == [2]
        assert cb.metrics["rejected_count"] == 1
        assert cb.state == CircuitState.CLOSED


class TestCircuitBreakerWrapper:
    """Test the circuit_breaker() function wrapper."""

    @pytest.mark.asyncio
    async def test_wrapper_exposes_breaker(self):
        """Wrapped function shares one breaker across calls."""

        async def fetch_prices(symbol):
            raise ValueError(f"no price for {symbol}")

        wrapped = circuit_breaker(fetch_prices, failure_threshold=2, cooldown=10.0)

        assert wrapped.__name__ == "fetch_prices"
        assert wrapped.breaker.name == "fetch_prices"

        for _ in range(2):
            with pytest.raises(ValueError, match="no price for ETH"):
                await wrapped("ETH")

        with pytest.raises(CircuitOpenError):
            await wrapped("ETH")

    @pytest.mark.asyncio
    async def test_wrapper_passes_arguments(self):
        """Arguments reach the wrapped function."""

        async def add(a, b=0):
            return a + b

        wrapped = circuit_breaker(add)
        assert await wrapped(1, b=2) == 3
