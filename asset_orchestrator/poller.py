"""
Task Poller: bounded polling of one provider job until a terminal status or timeout.
"""
import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from asset_shared.errors import ClassifiedError, GenerationError
from asset_shared.retry import RetryOptions, with_retry
from asset_shared.schemas import JobHandle, JobStatus, JobStatusKind

logger = logging.getLogger(__name__)

StatusSource = Callable[[JobHandle], Awaitable[JobStatus]]
ProgressCallback = Callable[[int, Optional[int]], None]

# Status lookups are cheap; retry them quickly rather than failing the stage
STATUS_RETRY = RetryOptions(max_attempts=3, base_delay=1.0, max_delay=5.0)


async def poll_until_terminal(
    handle: JobHandle,
    status_source: StatusSource,
    *,
    interval: float = 5.0,
    timeout: float = 300.0,
    on_progress: Optional[ProgressCallback] = None,
    stage: Optional[str] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
    status_retry: Optional[RetryOptions] = None,
) -> JobStatus:
    """
    Query `status_source` every `interval` seconds until the job succeeds, fails or is canceled.

    Returns the succeeded status. Raises GenerationError on provider failure, cancellation
    (not retryable) or when `timeout` seconds elapse without a terminal status.
    """
    stage_name = stage or handle.kind.value
    started = clock()

    async def fetch() -> JobStatus:
        return await with_retry(lambda: status_source(handle), status_retry or STATUS_RETRY, sleep=sleep)

    while True:
        if handle.resolved is not None:
            status = handle.resolved
        else:
            try:
                status = await fetch()
            except ClassifiedError as e:
                e.context.setdefault("stage", stage_name)
                raise

        if status.status == JobStatusKind.SUCCEEDED:
            logger.info("Job %s (%s) succeeded after %.1fs", handle.job_id, stage_name, clock() - started)
            return status
        if status.status == JobStatusKind.FAILED:
            raise GenerationError(
                status.error_message or f"{stage_name} task failed",
                stage=stage_name, job_id=handle.job_id, code="GENERATION_FAILED",
            )
        if status.status == JobStatusKind.CANCELED:
            raise GenerationError(
                f"{stage_name} task was canceled",
                stage=stage_name, job_id=handle.job_id, code="GENERATION_CANCELED", is_retryable=False,
            )
        if handle.resolved is not None:
            # A resolved handle that is not terminal can never progress
            raise GenerationError(
                f"{stage_name} returned a non-terminal result",
                stage=stage_name, job_id=handle.job_id, is_retryable=False,
            )

        if status.progress is not None and on_progress is not None:
            try:
                on_progress(status.progress, status.queue_depth)
            except Exception:
                logger.exception("Progress callback failed for job %s", handle.job_id)

        elapsed = clock() - started
        if elapsed >= timeout:
            raise GenerationError(
                f"{stage_name} did not complete within {timeout:.0f}s",
                stage=stage_name, job_id=handle.job_id, code="GENERATION_TIMEOUT",
                context={"elapsed_seconds": round(elapsed, 3), "timeout_seconds": timeout},
            )
        await sleep(min(interval, timeout - elapsed))
