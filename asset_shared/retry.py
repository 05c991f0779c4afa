"""
Bounded exponential-backoff retry for transient failures.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from .errors import ClassifiedError, classify

logger = logging.getLogger(__name__)

T = TypeVar("T")

RetryObserver = Callable[[int, ClassifiedError, float], None]


class RetryOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=1.0, ge=0)  # seconds
    max_delay: float = Field(default=10.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)


def backoff_delay(attempt: int, options: RetryOptions) -> float:
    """Delay before retrying after failed attempt number `attempt` (1-based)."""
    return min(options.base_delay * options.backoff_multiplier ** (attempt - 1), options.max_delay)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    options: Optional[RetryOptions] = None,
    on_retry: Optional[RetryObserver] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Await operation(); on failure classify it and retry while the error is retryable
    and attempts remain. The last ClassifiedError is raised when giving up.
    """
    opts = options or RetryOptions()
    attempt = 1
    while True:
        try:
            return await operation()
        except Exception as e:
            err = classify(e)
            if not err.is_retryable or attempt >= opts.max_attempts:
                if err is e:
                    raise
                raise err from e
            delay = backoff_delay(attempt, opts)
            logger.warning(
                "Retrying after %s (attempt %d/%d, delay %.2fs): %s",
                err.code, attempt, opts.max_attempts, delay, err.message,
            )
            if on_retry is not None:
                try:
                    on_retry(attempt, err, delay)
                except Exception:
                    logger.exception("Retry observer failed")
            await sleep(delay)
            attempt += 1
