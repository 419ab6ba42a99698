"""Backoff and retry helper tests."""

import pytest

from dealflow.config import RetryConfig
from dealflow.errors import PermanentActionError, TransientActionError
from dealflow.utils.retry import compute_backoff, run_with_retry


def test_compute_backoff_grows_exponentially():
    assert 2.0 <= compute_backoff(1) <= 2.5
    assert 4.0 <= compute_backoff(2) <= 4.5
    assert compute_backoff(3, base=2.0, jitter=0) == 8.0


@pytest.mark.asyncio
async def test_transient_errors_are_retried_until_success():
    calls = []
    delays = []

    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise TransientActionError("503")
        return "ok"

    async def sleep(delay):
        delays.append(delay)

    result, attempts = await run_with_retry(flaky, RetryConfig(jitter=0), sleep)
    assert (result, attempts) == ("ok", 3)
    assert delays == [2.0, 4.0]


@pytest.mark.asyncio
async def test_retries_are_bounded():
    async def down():
        raise TransientActionError("timeout")

    async def sleep(_):
        return None

    with pytest.raises(TransientActionError) as exc:
        await run_with_retry(down, RetryConfig(max_attempts=3), sleep)
    assert exc.value.attempts == 3


@pytest.mark.asyncio
async def test_permanent_errors_are_not_retried():
    calls = []

    async def bad_request():
        calls.append(1)
        raise PermanentActionError("400", status_code=400)

    with pytest.raises(PermanentActionError) as exc:
        await run_with_retry(bad_request, RetryConfig())
    assert len(calls) == 1
    assert exc.value.attempts == 1
