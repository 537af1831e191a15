"""Tests for bounded retries and best-effort side effects."""

import asyncio

import pytest

from docvault.service.errors import UnavailableError
from docvault.service.resilience import call_with_retry, fire_and_forget
from docvault.storage.errors import StoreUnavailable


class Flaky:
    def __init__(self, failures, exc=StoreUnavailable):
        self.failures = failures
        self.exc = exc
        self.calls = 0

    def __call__(self, value):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc("transient")
        return value


class TestCallWithRetry:
    async def test_transient_failures_are_retried(self):
        func = Flaky(failures=2)

        result = await call_with_retry("store.get", func, 42, max_retries=2, backoff_ms=0)

        assert result == 42
        assert func.calls == 3

    async def test_budget_exhaustion_is_unavailable(self):
        func = Flaky(failures=10)

        with pytest.raises(UnavailableError) as exc_info:
            await call_with_retry("store.get", func, 1, max_retries=2, backoff_ms=0)

        assert func.calls == 3
        assert exc_info.value.detail == {"dependency": "store"}

    async def test_retries_are_hard_capped(self):
        func = Flaky(failures=100)

        with pytest.raises(UnavailableError):
            await call_with_retry("store.get", func, 1, max_retries=50, backoff_ms=0)

        assert func.calls == 4

    async def test_non_transient_errors_propagate_immediately(self):
        func = Flaky(failures=1, exc=KeyError)

        with pytest.raises(KeyError):
            await call_with_retry("store.get", func, 1, max_retries=2, backoff_ms=0)

        assert func.calls == 1

    async def test_timeouts_count_as_transient(self):
        calls = []

        async def slow():
            calls.append(1)
            await asyncio.sleep(1)

        with pytest.raises(UnavailableError):
            await call_with_retry(
                "storage.put", slow, timeout_seconds=0.01, max_retries=1, backoff_ms=0
            )

        assert len(calls) == 2


class TestFireAndForget:
    async def test_failures_are_swallowed(self):
        def broken():
            raise RuntimeError("history table missing")

        assert await fire_and_forget("store.record_login_attempt", broken) is False

    async def test_success_is_reported(self):
        seen = []

        assert await fire_and_forget("store.record", seen.append, "entry") is True
        assert seen == ["entry"]
