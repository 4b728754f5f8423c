"""Stale task sweeper.

Webhook deliveries can be lost and clients stop polling, so tasks may sit in
pending/processing indefinitely. The sweeper polls the provider for tasks that
have not been touched for one interval and fails tasks older than
TASK_EXPIRY_HOURS. Every state change still goes through the reconciler.
"""

import asyncio
from datetime import timedelta

import structlog

from nero.core.config import Settings
from nero.core.timezone import utcnow
from nero.models.task import GenerationTask
from nero.services.generation.outcomes import FailedTerminal
from nero.services.generation.service import GenerationService

logger = structlog.get_logger(__name__)


def expiry_reason(hours: int) -> str:
    return f"Task expired after {hours} hours without a result"


async def process_single_task(
    task: GenerationTask,
    service: GenerationService,
    settings: Settings,
) -> GenerationTask:
    """Expire or re-poll one stale task."""
    expiry_hours = settings.task_expiry_hours
    if expiry_hours > 0 and task.created_at < utcnow() - timedelta(hours=expiry_hours):
        logger.info("sweeper.task_expired", task_id=task.task_id, created_at=str(task.created_at))
        outcome = FailedTerminal(expiry_reason(expiry_hours))
        return await service.reconciler.apply(task.task_id, outcome)

    return await service.poll(task.task_id)


async def process_batch(service: GenerationService, settings: Settings) -> int:
    """Process one batch of stale tasks concurrently.

    Each task is reconciled independently; one failure never stops the batch.

    Returns:
        Number of tasks picked up
    """
    updated_before = utcnow() - timedelta(seconds=settings.sweeper_interval_seconds)

    async with await service.uow_factory() as uow:
        tasks = await uow.tasks.get_stale_active(updated_before, limit=settings.sweeper_batch_size)

    if not tasks:
        return 0

    results = await asyncio.gather(
        *(process_single_task(task, service, settings) for task in tasks),
        return_exceptions=True,
    )

    for task, result in zip(tasks, results):
        if isinstance(result, Exception):
            logger.error(
                "sweeper.task_failed",
                task_id=task.task_id,
                error=str(result),
                error_type=type(result).__name__,
            )
        else:
            logger.debug("sweeper.task_swept", task_id=task.task_id, status=result.status.value)

    return len(tasks)


async def run_sweeper_worker(service: GenerationService, settings: Settings) -> None:
    """Main sweeper loop.

    Runs a batch every SWEEPER_INTERVAL_SECONDS until cancelled.
    """
    logger.info(
        "worker.started",
        worker="sweeper",
        interval=settings.sweeper_interval_seconds,
        batch_size=settings.sweeper_batch_size,
        expiry_hours=settings.task_expiry_hours,
    )

    try:
        while True:
            try:
                await process_batch(service, settings)
                await asyncio.sleep(settings.sweeper_interval_seconds)

            except asyncio.CancelledError:
                raise

            except Exception as e:
                logger.error(
                    "worker.error",
                    worker="sweeper",
                    error_type=type(e).__name__,
                    error_message=str(e),
                    exc_info=True,
                )
                # Back off 5 seconds before retrying
                await asyncio.sleep(5)

    except asyncio.CancelledError:
        logger.info("worker.stopped", worker="sweeper")
        raise
