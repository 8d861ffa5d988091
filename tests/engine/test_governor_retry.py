from __future__ import annotations

import asyncio

import httpx
import pytest

from catalog_mirror.engine.governor import RateGovernor, RetryPolicy, retry
from catalog_mirror.errors import (
    RateLimitError,
    TransientNetworkError,
    UpstreamClientError,
    UpstreamServerError,
)


def test_governor_never_reports_negative_budget_and_throttles_below_floor(clock) -> None:
    governor = RateGovernor(max_budget=1200, max_rps=20, safety_floor=200, clock=clock, sleep=clock.sleep)

    async def _burst() -> list[float]:
        seen = []
        for _ in range(12):
            seen.append(await governor.acquire())
            governor.reconcile(None, "beatmapsets/1")
        return seen

    estimates = asyncio.run(_burst())
    assert all(estimate >= 0 for estimate in estimates)
    # 1200 -> 1000 -> ... -> 200 without waiting, then every request waits
    assert estimates[:6] == [1200, 1000, 800, 600, 400, 200]
    assert governor.throttle_count == 6
    assert clock.sleeps[0] == pytest.approx(10.0)
    assert all(estimate >= 200 for estimate in estimates)


def test_governor_refills_linearly_and_caps(clock) -> None:
    governor = RateGovernor(max_budget=100, max_rps=10, safety_floor=10, clock=clock, sleep=clock.sleep)
    governor.remaining = 0
    governor.stamp = clock()
    clock.advance(3)
    assert governor.remaining_now() == 30
    clock.advance(100)
    assert governor.remaining_now() == 100


def test_concurrent_callers_each_wait_for_their_own_refill(clock) -> None:
    clock.now = 0.0
    governor = RateGovernor(max_budget=1200, max_rps=100, safety_floor=200, clock=clock, sleep=clock.sleep)
    governor.remaining = 0
    governor.stamp = clock()

    async def _both() -> list[float]:
        return list(await asyncio.gather(governor.acquire(), governor.acquire()))

    estimates = asyncio.run(_both())
    assert estimates == [200, 200]
    assert clock.sleeps == [2.0, 2.0]
    assert governor.remaining == 0


def test_acquire_waits_again_when_budget_drops_during_sleep(clock) -> None:
    clock.now = 0.0
    governor = RateGovernor(max_budget=1200, max_rps=100, safety_floor=200, clock=clock)
    governor.remaining = 0
    governor.stamp = clock()

    async def _sleep(seconds: float) -> None:
        await clock.sleep(seconds)
        if len(clock.sleeps) == 1:
            governor.reconcile("50", "beatmapsets/1")

    governor._sleep = _sleep
    estimate = asyncio.run(governor.acquire())
    assert estimate == 200
    assert clock.sleeps == [2.0, 1.5]
    assert governor.throttle_count == 2


def test_reconcile_prefers_server_header(clock) -> None:
    governor = RateGovernor(clock=clock, sleep=clock.sleep)
    asyncio.run(governor.acquire())
    governor.reconcile("1150", "beatmaps/1")
    assert governor.remaining == 1150
    governor.reconcile("garbage", "beatmaps/1")
    assert governor.remaining == 1150


def test_retry_policy_delays_are_bounded() -> None:
    policy = RetryPolicy(max_attempts=6, base_delay=3, multiplier=2, jitter=0.2, cap=20, rng=lambda: 1.0)
    assert policy.delays() == [3, pytest.approx(6.6), pytest.approx(14.52), 20, 20]


def test_retry_recovers_from_transient_errors(clock) -> None:
    attempts = []

    async def _operation() -> str:
        attempts.append(1)
        if len(attempts) == 1:
            raise httpx.ConnectError("refused")
        if len(attempts) == 2:
            raise UpstreamServerError("bad gateway", status=502)
        return "ok"

    result = asyncio.run(retry(_operation, RetryPolicy.immediate(5), sleep=clock.sleep))
    assert result == "ok"
    assert len(attempts) == 3


def test_retry_raises_permanent_errors_immediately(clock) -> None:
    attempts = []

    async def _operation() -> None:
        attempts.append(1)
        raise UpstreamClientError("forbidden", status=403, body={"error": "no"})

    with pytest.raises(UpstreamClientError) as excinfo:
        asyncio.run(retry(_operation, RetryPolicy.immediate(5), sleep=clock.sleep))
    assert len(attempts) == 1
    assert excinfo.value.status == 403


def test_retry_gives_up_after_max_attempts(clock) -> None:
    attempts = []

    async def _operation() -> None:
        attempts.append(1)
        raise httpx.ReadTimeout("slow")

    with pytest.raises(TransientNetworkError):
        asyncio.run(retry(_operation, RetryPolicy.immediate(3), sleep=clock.sleep))
    assert len(attempts) == 3


def test_rate_limit_is_retryable(clock) -> None:
    attempts = []

    async def _operation() -> int:
        attempts.append(1)
        if len(attempts) < 3:
            raise RateLimitError("slow down", status=429)
        return len(attempts)

    assert asyncio.run(retry(_operation, RetryPolicy.immediate(3), sleep=clock.sleep)) == 3
