"""Client-side rate budget governor and bounded retry policy."""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

import httpx
import structlog

from ..config import RetryConfig, UpstreamConfig
from ..errors import RETRYABLE_ERRORS, TransientNetworkError

T = TypeVar("T")

Clock = Callable[[], float]
Sleeper = Callable[[float], Awaitable[None]]


class RateGovernor:
    """Linear-refill estimate of the upstream request budget.

    ``acquire`` is called before every request. It refills the estimate by
    ``elapsed * max_rps`` (capped at ``max_budget``), sleeps until the estimate
    reaches the safety floor when it is below it, and then pessimistically
    deducts the floor. ``reconcile`` replaces the estimate with the budget the
    server reported, when it reported one.
    """

    def __init__(
        self,
        max_budget: int = 1200,
        max_rps: float = 20.0,
        safety_floor: int = 200,
        clock: Clock | None = None,
        sleep: Sleeper | None = None,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.max_budget = max_budget
        self.max_rps = max_rps
        self.safety_floor = safety_floor
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep
        self.remaining: float = float(max_budget)
        self.stamp: float = self._clock()
        self.throttle_count = 0
        self._lock = asyncio.Lock()
        self.logger = logger or structlog.get_logger("catalog_mirror.governor")

    @classmethod
    def from_config(cls, config: UpstreamConfig, **kwargs) -> "RateGovernor":
        return cls(
            max_budget=config.max_budget,
            max_rps=config.max_requests_per_second,
            safety_floor=config.safety_floor,
            **kwargs,
        )

    def remaining_now(self) -> float:
        elapsed = max(0.0, self._clock() - self.stamp)
        refilled = self.remaining + elapsed * self.max_rps
        return min(float(self.max_budget), max(0.0, refilled))

    async def acquire(self) -> float:
        """Wait until a request may be sent; return the estimate seen before deduction.

        Callers are serialised so that two waiters cannot both spend one refill.
        """

        async with self._lock:
            estimate = self.remaining_now()
            while estimate < self.safety_floor:
                wait = (self.safety_floor - estimate) / self.max_rps
                self.throttle_count += 1
                self.logger.debug("rate_budget_throttle", estimate=round(estimate, 2), wait=round(wait, 3))
                await self._sleep(wait)
                # a response reconciled during the wait may have lowered the budget
                estimate = self.remaining_now()
            self.remaining = estimate - self.safety_floor
            self.stamp = self._clock()
            return estimate

    def reconcile(self, header_value: str | None, endpoint: str = "") -> None:
        self.stamp = self._clock()
        if header_value is None:
            self.logger.warning("rate_budget_header_missing", endpoint=endpoint)
            return
        try:
            self.remaining = float(int(header_value))
        except ValueError:
            self.logger.warning("rate_budget_header_invalid", endpoint=endpoint, value=header_value)


@dataclass(slots=True)
class RetryPolicy:
    """Bounded exponential backoff with proportional jitter."""

    max_attempts: int = 10
    base_delay: float = 3.0
    multiplier: float = 2.0
    jitter: float = 0.2
    cap: float = 60.0
    rng: Callable[[], float] = field(default=random.random, repr=False)

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            base_delay=config.base_delay,
            multiplier=config.multiplier,
            jitter=config.jitter,
            cap=config.cap,
        )

    @classmethod
    def immediate(cls, max_attempts: int = 3) -> "RetryPolicy":
        return cls(max_attempts=max_attempts, base_delay=0.0, jitter=0.0, cap=0.0)

    def next_delay(self, delay: float) -> float:
        return min(delay * self.multiplier + self.jitter * delay * self.rng(), self.cap)

    def delays(self) -> list[float]:
        """Return the waits applied between consecutive attempts."""

        waits: list[float] = []
        delay = self.base_delay
        for _ in range(self.max_attempts - 1):
            waits.append(delay)
            delay = self.next_delay(delay)
        return waits


def classify_exception(exc: BaseException) -> BaseException:
    """Translate httpx transport failures into the error taxonomy."""

    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return TransientNetworkError(f"{type(exc).__name__}: {exc}")
    return exc


async def retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    is_retryable: Callable[[BaseException], bool] | None = None,
    sleep: Sleeper | None = None,
    logger: structlog.BoundLogger | None = None,
    label: str = "",
) -> T:
    """Run ``operation`` until it succeeds, a non-retryable error occurs, or attempts run out."""

    check = is_retryable or (lambda error: isinstance(error, RETRYABLE_ERRORS))
    pause = sleep or asyncio.sleep
    log = logger or structlog.get_logger("catalog_mirror.retry")
    delay = policy.base_delay
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except Exception as exc:  # noqa: BLE001
            error = classify_exception(exc)
            if not check(error) or attempt >= policy.max_attempts:
                if error is exc:
                    raise
                raise error from exc
            log.warning(
                "retrying_request",
                target=label,
                attempt=attempt,
                max_attempts=policy.max_attempts,
                wait=round(delay, 3),
                error=str(error),
            )
            await pause(delay)
            delay = policy.next_delay(delay)


__all__ = ["RateGovernor", "RetryPolicy", "classify_exception", "retry"]
