import pytest

from storesync.common.retry import RetryPolicy, policy_from_config
from storesync.config import get_config
from storesync.errors import (
    PermanentRemoteError,
    RateLimitedError,
    RetryExhaustedError,
    TransientRemoteError,
)


def test_delay_grows_geometrically_and_is_capped() -> None:
    policy = RetryPolicy(base_delay_seconds=2.0, factor=2.0, max_delay_seconds=10.0)

    assert policy.delay_for(0) == 0.0
    assert policy.delay_for(1) == 2.0
    assert policy.delay_for(2) == 4.0
    assert policy.delay_for(3) == 8.0
    assert policy.delay_for(4) == 10.0


def test_retryable_classification() -> None:
    policy = RetryPolicy()

    assert policy.is_retryable(TransientRemoteError("boom", status_code=503))
    assert policy.is_retryable(TransientRemoteError("timeout"))
    assert policy.is_retryable(RateLimitedError("slow down"))
    assert not policy.is_retryable(PermanentRemoteError("nope", status_code=401))
    assert not policy.is_retryable(RuntimeError("bug"))
    assert not policy.is_retryable_status(404)


def test_policy_from_config_uses_configured_values() -> None:
    policy = policy_from_config(get_config())

    assert policy.max_attempts == 3
    assert policy.base_delay_seconds == 2.0
    assert policy.max_delay_seconds == 300.0


@pytest.mark.asyncio
async def test_call_retries_transient_failures_until_success(logger, log_stream) -> None:
    delays: list[float] = []
    calls = {"count": 0}

    async def record_sleep(seconds: float) -> None:
        delays.append(seconds)

    async def flaky() -> str:
        calls["count"] += 1
        if calls["count"] < 3:
            raise TransientRemoteError("bad gateway", status_code=502)
        return "ok"

    policy = RetryPolicy(max_attempts=3, base_delay_seconds=1.0)
    result = await policy.call(flaky, logger=logger, phase="pull", sleep=record_sleep)

    assert result == "ok"
    assert delays == [1.0, 2.0]
    assert "transient failure; retrying" in log_stream.getvalue()


@pytest.mark.asyncio
async def test_call_raises_exhausted_after_max_attempts() -> None:
    calls = {"count": 0}

    async def always_down() -> None:
        calls["count"] += 1
        raise TransientRemoteError("unavailable", status_code=503)

    async def no_sleep(_seconds: float) -> None:
        return None

    with pytest.raises(RetryExhaustedError) as excinfo:
        await RetryPolicy(max_attempts=2).call(always_down, sleep=no_sleep)

    assert calls["count"] == 2
    assert excinfo.value.attempts == 2
    assert isinstance(excinfo.value.last_error, TransientRemoteError)


@pytest.mark.asyncio
async def test_call_does_not_retry_permanent_failures() -> None:
    calls = {"count": 0}

    async def forbidden() -> None:
        calls["count"] += 1
        raise PermanentRemoteError("forbidden", status_code=403)

    with pytest.raises(PermanentRemoteError):
        await RetryPolicy(max_attempts=5).call(forbidden)

    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_rate_limit_honours_retry_after() -> None:
    delays: list[float] = []
    calls = {"count": 0}

    async def record_sleep(seconds: float) -> None:
        delays.append(seconds)

    async def limited() -> str:
        calls["count"] += 1
        if calls["count"] == 1:
            raise RateLimitedError("too many requests", retry_after=7)
        return "ok"

    await RetryPolicy(base_delay_seconds=1.0).call(limited, sleep=record_sleep)

    assert delays == [7]
