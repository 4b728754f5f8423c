"""Reconciliation of provider outcomes into local task state.

Both entry points (provider webhook and client poll) call TaskReconciler.apply().
The transition itself comes from the pure decide() function; this module only
executes the returned effects, and every write is a conditional update so that
concurrent deliveries of the same outcome converge:

1. Load the task (TaskNotFoundError / TaskAccessDeniedError, no mutation).
2. Terminal task: return it unchanged. No download, no debit.
3. StillRunning: pending -> processing.
4. Failed*: task and image record -> failed in one transaction.
5. Succeeded: take the materialization claim, download the result outside any
   transaction, then complete task + image record and debit the owner in one
   transaction. Callers that lose the claim wait for the winner and return the
   same stored result.

Materialization failure keeps the task non-terminal (claim released, attempt
counted, "Post-success storage error" recorded) so that the next poll or
webhook retries. After max_materialization_attempts the task is failed.
"""

import asyncio
from typing import Awaitable, Callable
from uuid import UUID, uuid4

import structlog

from nero.core.timezone import utcnow
from nero.models.style_usage import StyleUsage
from nero.models.task import GenerationTask, TaskStatus
from nero.services.billing import BillingLedger
from nero.services.exceptions import (
    MaterializationError,
    TaskAccessDeniedError,
    TaskNotFoundError,
)
from nero.services.generation.outcomes import ProviderOutcome, Succeeded
from nero.services.generation.state_machine import Effect, Transition, decide
from nero.services.storage.remote_image import RemoteImageFetcher
from nero.uow import UnitOfWork

logger = structlog.get_logger(__name__)

STORAGE_ERROR_PREFIX = "Post-success storage error"


class TaskReconciler:
    """Single authoritative state-transition path for generation tasks."""

    def __init__(
        self,
        uow_factory: Callable[[], Awaitable[UnitOfWork]],
        fetcher: RemoteImageFetcher,
        ledger: BillingLedger,
        folder: str = "nero/generated",
        claim_lease_seconds: int = 120,
        claim_wait_seconds: float = 15.0,
        claim_poll_interval_seconds: float = 0.2,
        max_materialization_attempts: int = 3,
    ):
        """Initialize reconciler.

        Args:
            uow_factory: Factory producing UnitOfWork instances
            fetcher: Remote image fetcher used for materialization
            ledger: Billing ledger charged on success
            folder: Uploads folder for materialized results
            claim_lease_seconds: Age after which an abandoned claim can be taken over
            claim_wait_seconds: How long a caller that lost the claim waits for the winner
            claim_poll_interval_seconds: Re-read interval while waiting
            max_materialization_attempts: Storage failures tolerated before failing the task
        """
        self.uow_factory = uow_factory
        self.fetcher = fetcher
        self.ledger = ledger
        self.folder = folder
        self.claim_lease_seconds = claim_lease_seconds
        self.claim_wait_seconds = claim_wait_seconds
        self.claim_poll_interval_seconds = claim_poll_interval_seconds
        self.max_materialization_attempts = max_materialization_attempts

    async def load(self, task_id: str, owner_id: UUID | None = None) -> GenerationTask:
        """Fetch a task, enforcing ownership when owner_id is given.

        Raises:
            TaskNotFoundError: Unknown task_id
            TaskAccessDeniedError: owner_id does not own the task
        """
        async with await self.uow_factory() as uow:
            task = await uow.tasks.get_by_task_id(task_id)

        if task is None:
            raise TaskNotFoundError(task_id)

        if owner_id is not None and task.owner_id != owner_id:
            logger.warning(
                "task.access_denied",
                task_id=task_id,
                owner_id=str(task.owner_id),
                requested_by=str(owner_id),
            )
            raise TaskAccessDeniedError(task_id, owner_id)

        return task

    async def apply(
        self, task_id: str, outcome: ProviderOutcome, owner_id: UUID | None = None
    ) -> GenerationTask:
        """Apply a normalized provider outcome to a task.

        Args:
            task_id: Provider task ID
            outcome: Normalized outcome from the webhook or a status poll
            owner_id: Requesting user (poll path); None for the authenticated webhook

        Returns:
            The task as stored after the outcome was applied

        Raises:
            TaskNotFoundError: Unknown task_id
            TaskAccessDeniedError: owner_id does not own the task
            MaterializationError: The result could not be stored and the task was
                left non-terminal for a retry
        """
        task = await self.load(task_id, owner_id)
        transition = decide(task.status, outcome, task.cost)

        if transition.is_noop:
            logger.debug(
                "task.reconcile.noop",
                task_id=task_id,
                status=task.status.value,
                outcome=type(outcome).__name__,
            )
            return task

        if transition.new_status == TaskStatus.PROCESSING:
            return await self._advance(task)

        if transition.new_status == TaskStatus.FAILED:
            return await self._fail(task, transition.error_detail or "Image generation failed")

        if not isinstance(outcome, Succeeded):
            raise TypeError(f"Completion requires a Succeeded outcome, got {outcome!r}")
        return await self._complete(task, outcome, transition)

    async def _advance(self, task: GenerationTask) -> GenerationTask:
        async with await self.uow_factory() as uow:
            advanced = await uow.tasks.mark_processing(task.task_id)

        if advanced:
            logger.info("task.reconcile.processing", task_id=task.task_id)
        return await self.load(task.task_id)

    async def _fail(self, task: GenerationTask, error_detail: str) -> GenerationTask:
        """Fail task and image record together.

        While another caller holds a live materialization claim the write is
        refused; the in-flight result wins and is returned once stored.
        """
        deadline = asyncio.get_running_loop().time() + self.claim_wait_seconds

        while True:
            async with await self.uow_factory() as uow:
                failed = await uow.tasks.mark_failed(
                    task.task_id, error_detail, lease_seconds=self.claim_lease_seconds
                )
                if failed:
                    await uow.images.mark_failed(task.task_id, error_detail)

            if failed:
                logger.info(
                    "task.reconcile.failed",
                    task_id=task.task_id,
                    owner_id=str(task.owner_id),
                    error_detail=error_detail,
                )
                return await self.load(task.task_id)

            current = await self.load(task.task_id)
            if current.is_terminal or asyncio.get_running_loop().time() >= deadline:
                return current
            await asyncio.sleep(self.claim_poll_interval_seconds)

    async def _complete(
        self, task: GenerationTask, outcome: Succeeded, transition: Transition
    ) -> GenerationTask:
        claim_id = uuid4().hex

        async with await self.uow_factory() as uow:
            claimed = await uow.tasks.claim(task.task_id, claim_id, self.claim_lease_seconds)

        if not claimed:
            logger.info("task.reconcile.claim_lost", task_id=task.task_id)
            return await self._wait_for_terminal(task.task_id)

        try:
            saved = await self.fetcher.materialize(outcome.result_url, self.folder)
        except MaterializationError as e:
            return await self._handle_storage_failure(task, claim_id, e)

        completed_at = utcnow()
        async with await self.uow_factory() as uow:
            completed = await uow.tasks.mark_completed(
                task.task_id, claim_id, [saved.url], completed_at=completed_at
            )
            if completed:
                await uow.images.mark_completed(task.task_id, saved.url, completed_at)
                if Effect.DEBIT in transition.effects:
                    await self.ledger.debit(uow, task.owner_id, task.cost, task.task_id)

        if not completed:
            # Our lease expired mid-download and another writer finished the task
            logger.warning(
                "task.reconcile.lease_expired", task_id=task.task_id, orphan=str(saved.file_path)
            )
            await asyncio.to_thread(saved.file_path.unlink, True)
            return await self._wait_for_terminal(task.task_id)

        logger.info(
            "task.reconcile.completed",
            task_id=task.task_id,
            owner_id=str(task.owner_id),
            image_url=saved.url,
            charged=task.cost if Effect.DEBIT in transition.effects else 0,
        )

        if task.template_id:
            await self._record_style_usage(task)

        return await self.load(task.task_id)

    async def _handle_storage_failure(
        self, task: GenerationTask, claim_id: str, error: MaterializationError
    ) -> GenerationTask:
        """Release the claim for a retry, or fail the task once attempts run out."""
        error_detail = f"{STORAGE_ERROR_PREFIX}: {error}"

        async with await self.uow_factory() as uow:
            current = await uow.tasks.get_by_task_id(task.task_id)
            attempts = (current.materialization_attempts if current else 0) + 1

            if attempts >= self.max_materialization_attempts:
                gave_up = await uow.tasks.mark_failed(
                    task.task_id, error_detail, claim_id=claim_id
                )
                if gave_up:
                    await uow.images.mark_failed(task.task_id, error_detail)
            else:
                gave_up = False
                await uow.tasks.release_claim(task.task_id, claim_id, error_detail)

        if gave_up:
            logger.error(
                "task.reconcile.storage_failed",
                task_id=task.task_id,
                attempts=attempts,
                error=str(error),
            )
            return await self.load(task.task_id)

        logger.warning(
            "task.reconcile.storage_retry",
            task_id=task.task_id,
            attempts=attempts,
            max_attempts=self.max_materialization_attempts,
            error=str(error),
        )
        raise error

    async def _wait_for_terminal(self, task_id: str) -> GenerationTask:
        """Re-read the task until it is terminal or claim_wait_seconds elapse."""
        deadline = asyncio.get_running_loop().time() + self.claim_wait_seconds
        while True:
            task = await self.load(task_id)
            if task.is_terminal or asyncio.get_running_loop().time() >= deadline:
                return task
            await asyncio.sleep(self.claim_poll_interval_seconds)

    async def _record_style_usage(self, task: GenerationTask) -> None:
        """Track template usage; failures are logged and never fail the task."""
        try:
            async with await self.uow_factory() as uow:
                image = await uow.images.get_by_task_id(task.task_id)
                if image is None:
                    return
                await uow.style_usages.add(
                    StyleUsage(
                        template_id=task.template_id,
                        owner_id=task.owner_id,
                        generated_image_id=image.id,
                    )
                )
        except Exception as e:
            logger.error(
                "task.style_usage_failed",
                task_id=task.task_id,
                template_id=task.template_id,
                error=str(e),
                error_type=type(e).__name__,
            )
