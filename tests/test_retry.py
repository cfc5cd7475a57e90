"""Tests for bounded exponential backoff."""

from __future__ import annotations

import pytest

from braid.errors import RemoteAPIError, RetryExhaustedError, TransientRemoteError
from braid.retry import RetryPolicy, with_retry


class _Flaky:
    def __init__(self, failures: list[Exception]) -> None:
        self.failures = failures
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return "ok"


@pytest.fixture
def sleeps() -> list[float]:
    return []


def _recorder(sleeps: list[float]):  # type: ignore[no-untyped-def]
    async def sleep(delay: float) -> None:
        sleeps.append(delay)

    return sleep


class TestPolicy:
    def test_delays_double_and_cap(self) -> None:
        policy = RetryPolicy(max_attempts=6, base_delay=0.5, max_delay=3.0)
        assert [policy.delay_for(n) for n in range(1, 6)] == [0.5, 1.0, 2.0, 3.0, 3.0]

    def test_rejects_zero_attempts(self) -> None:
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)

    def test_from_config(self) -> None:
        policy = RetryPolicy.from_config({"max_attempts": 5, "base_delay": 0.1})
        assert (policy.max_attempts, policy.base_delay, policy.max_delay) == (5, 0.1, 8.0)
        assert RetryPolicy.from_config(None) == RetryPolicy()


class TestWithRetry:
    async def test_success_after_transient(self, sleeps: list[float]) -> None:
        op = _Flaky([TransientRemoteError("503"), TransientRemoteError("503")])
        result = await with_retry(op, RetryPolicy(3, 0.5, 8.0), what="get", sleep=_recorder(sleeps))
        assert result == "ok"
        assert op.calls == 3
        assert sleeps == [0.5, 1.0]

    async def test_exhausted(self, sleeps: list[float]) -> None:
        op = _Flaky([TransientRemoteError("503", status_code=503) for _ in range(3)])
        with pytest.raises(RetryExhaustedError) as exc_info:
            await with_retry(op, RetryPolicy(3, 0.5, 8.0), what="list issues", sleep=_recorder(sleeps))
        assert exc_info.value.attempts == 3
        assert exc_info.value.status_code == 503
        assert str(exc_info.value).startswith("list issues: gave up after 3 attempts")
        assert len(sleeps) == 2

    async def test_permanent_error_not_retried(self, sleeps: list[float]) -> None:
        op = _Flaky([RemoteAPIError("404", status_code=404)])
        with pytest.raises(RemoteAPIError):
            await with_retry(op, RetryPolicy(3, 0.5, 8.0), what="get", sleep=_recorder(sleeps))
        assert op.calls == 1
        assert sleeps == []

    async def test_nested_exhaustion_not_multiplied(self, sleeps: list[float]) -> None:
        inner_policy = RetryPolicy(2, 0.0, 0.0)
        inner = _Flaky([TransientRemoteError("503") for _ in range(10)])

        async def outer() -> str:
            return await with_retry(inner, inner_policy, what="inner", sleep=_recorder(sleeps))

        with pytest.raises(RetryExhaustedError):
            await with_retry(outer, RetryPolicy(3, 0.0, 0.0), what="outer", sleep=_recorder(sleeps))
        assert inner.calls == 2
