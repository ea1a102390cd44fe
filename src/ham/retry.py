"""Bounded, fixed-backoff retry for remote and cloud operations."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int
    interval: float

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError(f"attempts must be >= 1 (got {self.attempts})")
        if self.interval < 0:
            raise ValueError(f"interval must be >= 0 (got {self.interval})")


# A fresh server's sshd needs a minute or two before it answers.
REMOTE_POLICY = RetryPolicy(attempts=20, interval=3.0)


def retry(
    action: Callable[[], T],
    policy: RetryPolicy = REMOTE_POLICY,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
    describe: str = "",
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
) -> T:
    """
    Call ``action`` until it succeeds or ``policy.attempts`` calls have failed.

    Sleeps ``policy.interval`` between attempts (never after the last one)
    and re-raises the last error once the bound is exhausted. Exceptions
    outside ``retry_on`` propagate immediately.
    """
    label = describe or getattr(action, "__name__", "operation")
    for attempt in range(1, policy.attempts + 1):
        try:
            return action()
        except retry_on as e:
            if attempt >= policy.attempts:
                logger.error(f"{label} failed after {attempt} attempts: {e}")
                raise
            logger.warning(
                f"{label} failed (attempt {attempt}/{policy.attempts}): {e}; "
                f"retrying in {policy.interval:g}s"
            )
            if on_retry is not None:
                on_retry(attempt, e)
            sleep(policy.interval)
    raise AssertionError("unreachable")
