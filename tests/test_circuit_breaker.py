import asyncio

import pytest

from shared.utils.circuit_breaker import CircuitBreaker, CircuitOpenError, CircuitState


class Boom(Exception):
    pass


async def failing():
    raise Boom()


async def test_opens_after_threshold():
    breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=60, expected_exception=Boom, name="t")
    for _ in range(2):
        with pytest.raises(Boom):
            await breaker.call(failing)
    assert breaker.state == CircuitState.OPEN
    with pytest.raises(CircuitOpenError):
        await breaker.call(failing)
    assert breaker.snapshot()["failure_count"] == 2


async def test_unexpected_exception_does_not_count():
    breaker = CircuitBreaker(failure_threshold=1, expected_exception=Boom, name="t")

    async def other():
        raise KeyError("x")

    with pytest.raises(KeyError):
        await breaker.call(other)
    assert breaker.state == CircuitState.CLOSED


async def test_half_open_allows_single_probe():
    breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=0, expected_exception=Boom, name="t")
    with pytest.raises(Boom):
        await breaker.call(failing)
    assert breaker.state == CircuitState.OPEN

    release = asyncio.Event()

    async def slow_ok():
        await release.wait()
        return "ok"

    probe = asyncio.create_task(breaker.call(slow_ok))
    await asyncio.sleep(0)
    assert breaker.state == CircuitState.HALF_OPEN
    with pytest.raises(CircuitOpenError):
        await breaker.call(slow_ok)

    release.set()
    assert await probe == "ok"
    assert breaker.state == CircuitState.CLOSED


async def test_failed_probe_reopens():
    breaker = CircuitBreaker(failure_threshold=3, recovery_timeout=0, expected_exception=Boom, name="t")
    breaker.state = CircuitState.OPEN
    with pytest.raises(Boom):
        await breaker.call(failing)
    assert breaker.state == CircuitState.OPEN
