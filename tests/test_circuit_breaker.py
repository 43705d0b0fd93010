import pytest

from film_mirror.utils.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerError,
    CircuitState,
)


class Boom(Exception):
    pass


async def fail(breaker: CircuitBreaker, error: type[Exception] = Boom) -> None:
    with pytest.raises(error):
        async with breaker:
            raise error("boom")


async def test_opens_after_threshold():
    breaker = CircuitBreaker("test", failure_threshold=3, recovery_timeout=60)

    for _ in range(3):
        await fail(breaker)

    assert breaker.state == CircuitState.OPEN
    with pytest.raises(CircuitBreakerError):
        async with breaker:
            pass


async def test_success_resets_failure_count():
    breaker = CircuitBreaker("test", failure_threshold=2)

    await fail(breaker)
    async with breaker:
        pass
    await fail(breaker)

    assert breaker.state == CircuitState.CLOSED


async def test_uncounted_errors_pass_through():
    breaker = CircuitBreaker("test", failure_threshold=1, counted=(Boom,))

    await fail(breaker, KeyError)

    assert breaker.state == CircuitState.CLOSED


async def test_half_open_recovers_after_successes():
    breaker = CircuitBreaker(
        "test", failure_threshold=1, recovery_timeout=0, success_threshold=2
    )
    await fail(breaker)
    assert breaker.state == CircuitState.OPEN

    async with breaker:
        pass
    assert breaker.state == CircuitState.HALF_OPEN
    async with breaker:
        pass

    assert breaker.state == CircuitState.CLOSED


async def test_half_open_failure_reopens():
    breaker = CircuitBreaker("test", failure_threshold=5, recovery_timeout=0)
    for _ in range(5):
        await fail(breaker)

    await fail(breaker)

    assert breaker.state == CircuitState.OPEN
