"""
Retry with exponential backoff.

Explicit retry combinator used by the optimistic quota engine to re-run a
whole read-check-write cycle after a version conflict:
- Exponential backoff (base delay, multiplier, cap)
- Randomised jitter so conflicting writers do not retry in lockstep
- Only the exception types named in ``retry_on`` are retried

Usage:
    policy = RetryPolicy(max_attempts=5, base_delay=0.05, multiplier=2.0)
    retry_with_backoff(engine_attempt, org_id, project_id, size,
                       policy=policy, retry_on=(ConcurrencyConflict,))
"""

import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Configuration for retry behavior."""

    # Total attempts including the first call
    max_attempts: int = 5

    # Delay before the first retry (seconds)
    base_delay: float = 0.05

    # Growth factor applied per attempt
    multiplier: float = 2.0

    # Upper bound for a single delay (seconds)
    max_delay: float = 2.0

    # Randomise each delay within [delay, delay * multiplier]
    jitter: bool = True

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")
        if self.multiplier < 1:
            raise ValueError("multiplier must be at least 1")

    @classmethod
    def from_settings(cls, values: Mapping[str, Any]) -> "RetryPolicy":
        """Build a policy from a ``QUOTA_ENGINE['RETRY']`` style mapping."""
        return cls(
            max_attempts=int(values['MAX_ATTEMPTS']),
            base_delay=float(values['BASE_DELAY']),
            multiplier=float(values['MULTIPLIER']),
            max_delay=float(values['MAX_DELAY']),
            jitter=bool(values['JITTER']),
        )

    def delay_for(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """
        Delay to wait after failed attempt number ``attempt`` (1-indexed).

        delay = base_delay * multiplier ** (attempt - 1), capped at max_delay,
        then spread uniformly up to one multiplier step when jitter is on.
        """
        delay = min(self.base_delay * (self.multiplier ** (attempt - 1)), self.max_delay)
        if self.jitter and delay > 0:
            upper = min(delay * self.multiplier, self.max_delay)
            delay = (rng or random).uniform(delay, max(delay, upper))
        return delay


def retry_with_backoff(
    func: Callable[..., T],
    *args: Any,
    policy: RetryPolicy,
    retry_on: Tuple[Type[BaseException], ...],
    sleep: Callable[[float], None] = time.sleep,
    **kwargs: Any,
) -> T:
    """
    Call ``func(*args, **kwargs)``, retrying on ``retry_on`` exceptions.

    Args:
        func: The operation; each call must be a complete, independent attempt
        policy: Attempt budget and backoff shape
        retry_on: Exception types that trigger another attempt
        sleep: Injected for tests

    Returns:
        Whatever ``func`` returns on its first successful attempt

    Raises:
        The last ``retry_on`` exception once ``policy.max_attempts`` is spent;
        any other exception immediately.
    """
    attempt = 1
    while True:
        try:
            return func(*args, **kwargs)
        except retry_on as exc:
            if attempt >= policy.max_attempts:
                logger.warning(
                    f"{getattr(func, '__name__', func)} failed after {attempt} attempt(s): {exc}"
                )
                raise
            delay = policy.delay_for(attempt)
            logger.debug(
                f"{getattr(func, '__name__', func)} attempt {attempt}/{policy.max_attempts} "
                f"failed ({type(exc).__name__}), retrying in {delay:.3f}s"
            )
            sleep(delay)
            attempt += 1
