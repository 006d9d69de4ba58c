import pytest
from tenacity import AsyncRetrying

from appstle_mcp.config import RetryConfig
from appstle_mcp.errors import UpstreamError
from appstle_mcp.retry import Attempting, Failed, RetryLoop, RetryPolicy, RetryScheduled, Succeeded


@pytest.mark.parametrize("jitter", [0.0, 0.5, 0.999])
def test_backoff_within_jitter_band_and_clamped(jitter):
    policy = RetryPolicy(base_delay_ms=1000, max_delay_ms=10000, jitter=lambda: jitter)
    previous = 0.0
    for attempt in range(6):
        delay = policy.backoff_ms(attempt)
        floor = 1000 * 2**attempt
        assert min(floor, 10000) <= delay <= min(floor * 1.1, 10000)
        assert delay >= previous
        previous = delay
    assert policy.backoff_ms(10) == 10000


def test_advance_schedules_retries_until_budget_is_spent():
    policy = RetryPolicy(jitter=lambda: 0.0)
    error = UpstreamError.from_status(503)

    first = policy.advance(Attempting(0), error)
    assert first == RetryScheduled(attempt=1, delay_ms=1000)
    second = policy.advance(Attempting(first.attempt), error)
    assert second == RetryScheduled(attempt=2, delay_ms=2000)
    third = policy.advance(Attempting(second.attempt), error)
    assert isinstance(third, Failed)
    assert third.attempts == 3


def test_advance_fails_immediately_on_client_error():
    policy = RetryPolicy()
    outcome = policy.advance(Attempting(0), UpstreamError.from_status(409))
    assert isinstance(outcome, Failed)
    assert outcome.attempts == 1


def test_advance_success():
    assert RetryPolicy().advance(Attempting(1)) == Succeeded(attempts=2)


def test_is_retryable_only_for_transient_upstream_errors():
    policy = RetryPolicy()
    assert policy.is_retryable(UpstreamError.from_status(429))
    assert policy.is_retryable(UpstreamError.from_status(500))
    assert not policy.is_retryable(UpstreamError.from_status(400))
    assert not policy.is_retryable(ValueError("boom"))


def test_from_config():
    policy = RetryPolicy.from_config(RetryConfig(max_attempts=5, base_delay_ms=10, max_delay_ms=50))
    assert policy.max_attempts == 5
    assert policy.backoff_ms(0) >= 10
    assert policy.backoff_ms(8) == 50


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


async def run_loop(loop: RetryLoop, outcomes: list[Exception | None]) -> tuple[int, RecordingSleep]:
    sleep = RecordingSleep()
    calls = 0
    async for attempt in AsyncRetrying(
        sleep=sleep, wait=loop.wait, retry=loop.retry, reraise=True
    ):
        with attempt:
            error = outcomes[calls]
            calls += 1
            if error is not None:
                raise error
    return calls, sleep


@pytest.mark.anyio
async def test_tenacity_loop_follows_state_machine():
    loop = RetryPolicy(jitter=lambda: 0.0).loop()
    error = UpstreamError.from_status(503)

    with pytest.raises(UpstreamError):
        await run_loop(loop, [error, error, error])

    assert loop.state == Failed(error=error, attempts=3)


@pytest.mark.anyio
async def test_tenacity_loop_sleeps_for_scheduled_delay_then_succeeds():
    loop = RetryPolicy(jitter=lambda: 0.0).loop()

    calls, sleep = await run_loop(loop, [UpstreamError.from_status(429), None])

    assert calls == 2
    assert sleep.delays == [1.0]
    assert loop.state == Succeeded(attempts=2)


class NeverRetry(RetryPolicy):
    def advance(self, state, error=None):
        if error is None:
            return Succeeded(attempts=state.attempt + 1)
        return Failed(error=error, attempts=state.attempt + 1)


@pytest.mark.anyio
async def test_tenacity_loop_takes_decision_from_advance():
    error = UpstreamError.from_status(503)

    with pytest.raises(UpstreamError):
        await run_loop(NeverRetry().loop(), [error])


@pytest.mark.anyio
async def test_tenacity_loop_does_not_retry_foreign_exceptions():
    loop = RetryPolicy().loop()

    with pytest.raises(KeyError):
        await run_loop(loop, [KeyError("x")])

    assert loop.state == Attempting(0)
