"""
Async helpers for the batch phase of the training pipeline.

retry_with_backoff
  Re-runs one awaitable step up to max_attempts times, sleeping
  base_delay × 2^(retry-1) between attempts (1s, 2s, 4s … by default).
  The last error is re-raised once attempts are exhausted.

gather_isolated
  Runs a batch of coroutines concurrently and settles ALL of them before
  returning. Each task produces an Outcome (value or error) in input order;
  one task raising never cancels or hides its siblings. Callers tally the
  outcomes instead of sharing mutable counters between workers.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Iterable, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------

async def retry_with_backoff(
    operation:    Callable[[], Awaitable[T]],
    *,
    max_attempts: int   = 3,
    base_delay:   float = 1.0,
    max_delay:    float = 60.0,
    label:        str   = "operation",
    retry_on:     tuple[type[BaseException], ...] = (Exception,),
    give_up_on:   tuple[type[BaseException], ...] = (),
    sleep:        Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """
    Await operation() until it succeeds or max_attempts is reached.

    Args:
        operation:    zero-arg callable returning a fresh awaitable per attempt
        max_attempts: total attempts including the first one (>= 1)
        base_delay:   delay before the first retry; doubles per retry
        label:        included in log lines for correlation
        retry_on:     exception types considered transient
        give_up_on:   subset of retry_on that is re-raised immediately
        sleep:        injectable for tests

    Raises:
        The last exception raised by operation() once attempts are exhausted.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except retry_on as exc:
            if give_up_on and isinstance(exc, give_up_on):
                logger.warning("Not retryable | step=%s error=%s", label, exc)
                raise
            if attempt == max_attempts:
                logger.warning(
                    "Retries exhausted | step=%s attempts=%d error=%s",
                    label, attempt, exc,
                )
                raise

            delay = min(base_delay * (2 ** (attempt - 1)), max_delay)
            logger.warning(
                "Retrying | step=%s attempt=%d/%d delay=%.1fs error=%s: %s",
                label, attempt, max_attempts, delay, type(exc).__name__, exc,
            )
            await sleep(delay)

    raise AssertionError("unreachable")  # loop always returns or raises


# ---------------------------------------------------------------------------
# Gather with isolation
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Settled result of one task: exactly one of value / error is meaningful."""
    key:   Any
    value: T | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def gather_isolated(
    tasks: Iterable[tuple[Any, Awaitable[T]]],
) -> list[Outcome[T]]:
    """
    Run (key, awaitable) pairs concurrently; return one Outcome per pair.

    Order of the returned list matches the input order, so callers can zip
    outcomes back onto their inputs. Concurrency is bounded by the size of
    the iterable — callers pass one batch at a time.
    """
    pairs: Sequence[tuple[Any, Awaitable[T]]] = list(tasks)
    if not pairs:
        return []

    results = await asyncio.gather(
        *(awaitable for _, awaitable in pairs),
        return_exceptions=True,
    )

    outcomes: list[Outcome[T]] = []
    for (key, _), result in zip(pairs, results):
        if isinstance(result, BaseException):
            outcomes.append(Outcome(key=key, error=result))
        else:
            outcomes.append(Outcome(key=key, value=result))
    return outcomes
