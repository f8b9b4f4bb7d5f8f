"""ResilientFetcher — bounded retry with exponential backoff and jitter.

Every chain read, receipt wait and remote signing call goes through
``ResilientFetcher.run()``.  Errors are classified with
``core.errors.classify_error``:

- retryable (``NetworkError``): retried up to ``max_retries`` times;
- terminal ``ClaimError``: raised immediately;
- unclassified: the original exception propagates untouched, never retried.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

import structlog

from config.settings import Settings
from core.errors import ClaimError, NetworkError, classify_error

logger = structlog.get_logger("web3_infra.retry")

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[Any]]
Classifier = Callable[[BaseException], "ClaimError | None"]


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff schedule of the fetch wrapper."""

    # Retries after the first attempt (total attempts = max_retries + 1)
    max_retries: int = 3

    initial_delay_s: float = 1.0
    max_delay_s: float = 10.0
    backoff_multiplier: float = 2.0

    # Delay is scaled by a uniform factor in [1 - ratio, 1 + ratio]
    jitter_ratio: float = 0.1

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.initial_delay_s < 0 or self.max_delay_s < 0:
            raise ValueError("delays must be >= 0")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")
        if not 0 <= self.jitter_ratio <= 1:
            raise ValueError("jitter_ratio must be within [0, 1]")

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(
            max_retries=settings.RETRY_MAX_RETRIES,
            initial_delay_s=settings.RETRY_INITIAL_DELAY_SECONDS,
            max_delay_s=settings.RETRY_MAX_DELAY_SECONDS,
            backoff_multiplier=settings.RETRY_BACKOFF_MULTIPLIER,
            jitter_ratio=settings.RETRY_JITTER_RATIO,
        )

    def base_delay(self, retry: int) -> float:
        """Un-jittered delay before retry number *retry* (1-based)."""
        if retry < 1:
            raise ValueError("retry numbers are 1-based")
        return min(
            self.initial_delay_s * self.backoff_multiplier ** (retry - 1),
            self.max_delay_s,
        )

    def delay_for(self, retry: int, rng: random.Random | None = None) -> float:
        """Jittered delay before retry number *retry*."""
        base = self.base_delay(retry)
        if self.jitter_ratio == 0 or base == 0:
            return base
        spread = base * self.jitter_ratio
        return max(0.0, base + (rng or random).uniform(-spread, spread))


class ResilientFetcher:
    """Run async operations under a ``RetryPolicy``.

    Parameters
    ----------
    policy:
        Backoff schedule.  Defaults to ``RetryPolicy()``.
    sleep:
        Awaitable sleep, injectable so tests can record delays.
    rng:
        Random source for jitter.
    classify:
        Error classifier, ``core.errors.classify_error`` by default.
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        sleep: SleepFn = asyncio.sleep,
        rng: random.Random | None = None,
        classify: Classifier = classify_error,
    ) -> None:
        self._policy = policy or RetryPolicy()
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._classify = classify

        self._stats_calls: int = 0
        self._stats_retries: int = 0
        self._stats_exhausted: int = 0

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def run(self, fn: Callable[[], Awaitable[T]], op: str = "call") -> T:
        """Invoke *fn* until it succeeds, fails terminally or retries run out.

        Raises
        ------
        NetworkError
            When every attempt failed with a retryable error.
        ClaimError
            The classified error of a terminal failure.
        Exception
            Any unclassified exception, as raised by *fn*.
        """
        self._stats_calls += 1
        attempts = self._policy.max_retries + 1
        last_error: ClaimError | None = None

        for attempt in range(1, attempts + 1):
            try:
                return await fn()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                classified = self._classify(exc)
                if classified is None:
                    raise
                if not classified.retryable:
                    if classified is exc:
                        raise
                    raise classified from exc

                last_error = classified
                if attempt == attempts:
                    break

                delay = self._policy.delay_for(attempt, self._rng)
                self._stats_retries += 1
                logger.warning(
                    "retry.retrying",
                    op=op,
                    attempt=attempt,
                    max_retries=self._policy.max_retries,
                    delay_s=round(delay, 3),
                    error=str(exc)[:200],
                )
                await self._sleep(delay)

        self._stats_exhausted += 1
        logger.error(
            "retry.exhausted",
            op=op,
            attempts=attempts,
            error=str(last_error)[:200],
        )
        raise NetworkError(
            f"{op} failed after {attempts} attempts: {last_error}"
        ) from last_error

    @property
    def stats(self) -> dict[str, int]:
        return {
            "calls": self._stats_calls,
            "retries": self._stats_retries,
            "exhausted": self._stats_exhausted,
        }
