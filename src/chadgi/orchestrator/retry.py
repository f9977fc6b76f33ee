"""Retry delay policy between failed iterations."""

from __future__ import annotations

import random
from dataclasses import dataclass

from chadgi.config import BACKOFF_KINDS, IterationSettings

JITTER_FRACTION = 0.2
MIN_JITTERED_DELAY_SECONDS = 1


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    base_delay: int = 5
    backoff_kind: str = "exponential"
    max_delay: int = 60
    jitter_enabled: bool = False

    @classmethod
    def from_settings(cls, iteration: IterationSettings) -> RetryPolicy:
        return cls(
            base_delay=iteration.retry_delay,
            backoff_kind=iteration.retry_backoff,
            max_delay=iteration.retry_max_delay,
            jitter_enabled=iteration.retry_jitter,
        )


def calculate_retry_delay(  # noqa: PLR0913
    iteration: int,
    backoff_kind: str = "exponential",
    base_delay: float = 5,
    max_delay: float = 60,
    jitter_enabled: bool = False,
    *,
    rng: random.Random | None = None,
) -> float:
    """Seconds to wait after failed ``iteration`` (1-based) before the next one.

    ``fixed`` keeps ``base_delay``; ``linear`` grows as ``base_delay * iteration``;
    ``exponential`` doubles from ``base_delay``. The result is capped at
    ``max_delay``. Jitter moves it uniformly within +/-20% and never below 1s.
    """

    if backoff_kind not in BACKOFF_KINDS:
        raise ValueError(f"Unknown backoff kind: {backoff_kind!r}")
    step = max(1, iteration)
    if backoff_kind == "fixed":
        delay = float(base_delay)
    elif backoff_kind == "linear":
        delay = float(base_delay * step)
    else:
        delay = float(base_delay * 2 ** (step - 1))
    delay = min(delay, float(max_delay))

    if not jitter_enabled:
        return delay

    generator = rng or random.Random()  # noqa: S311
    adjustment = generator.uniform(-JITTER_FRACTION, JITTER_FRACTION) * delay
    return max(float(MIN_JITTERED_DELAY_SECONDS), delay + adjustment)


def delay_for(iteration: int, policy: RetryPolicy, *, rng: random.Random | None = None) -> float:
    return calculate_retry_delay(
        iteration,
        policy.backoff_kind,
        policy.base_delay,
        policy.max_delay,
        policy.jitter_enabled,
        rng=rng,
    )
