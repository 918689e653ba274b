import pytest
from pydantic import ValidationError

from procflow.retry import RetryPolicy, compute_backoff, schedule_retry


def test_exponential_backoff():
    assert compute_backoff(1, base=1.0, multiplier=2.0) == 1.0
    assert compute_backoff(2, base=1.0, multiplier=2.0) == 2.0
    assert compute_backoff(4, base=0.5, multiplier=3.0) == 13.5


def test_fixed_backoff():
    assert compute_backoff(5, base=2.0, strategy="fixed") == 2.0


def test_backoff_clamped_to_max_delay():
    assert compute_backoff(10, base=1.0, multiplier=2.0, max_delay=5.0) == 5.0


def test_jitter_stays_within_bounds():
    for _ in range(20):
        delay = compute_backoff(1, base=1.0, jitter=0.5)
        assert 1.0 <= delay <= 1.5


def test_policy_requires_at_least_one_attempt():
    with pytest.raises(ValidationError):
        RetryPolicy(max_attempts=0)


@pytest.mark.asyncio
async def test_schedule_retry_with_zero_delay_returns_immediately():
    await schedule_retry(RetryPolicy(max_attempts=3, delay=0), 1)
