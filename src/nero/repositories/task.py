"""GenerationTask repository for Nero backend.

Every state change is a single conditional UPDATE guarded on the current status,
so concurrent writers (webhook and poll, possibly in different processes) are
linearized by the database rather than by in-process locks.
"""

from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from nero.core.timezone import utcnow
from nero.models.task import ACTIVE_STATUSES, GenerationTask, TaskStatus


class GenerationTaskRepository:
    """Repository for GenerationTask entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, task: GenerationTask) -> GenerationTask:
        """Persist new generation task to database.

        Args:
            task: GenerationTask entity to persist

        Returns:
            Persisted task with generated ID
        """
        self.session.add(task)
        await self.session.flush()
        return task

    async def get_by_task_id(self, task_id: str) -> GenerationTask | None:
        """Retrieve task by provider task ID.

        Always reloads the row so that changes made by conditional updates
        (possibly from another session) are visible.

        Args:
            task_id: Provider-assigned task identifier

        Returns:
            GenerationTask if found, None otherwise
        """
        result = await self.session.execute(
            select(GenerationTask)
            .where(GenerationTask.task_id == task_id)  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_stale_active(
        self, updated_before: datetime, limit: int = 20
    ) -> list[GenerationTask]:
        """Retrieve non-terminal tasks not touched since updated_before (oldest first).

        Args:
            updated_before: Only tasks with updated_at earlier than this are returned
            limit: Maximum number of tasks to return

        Returns:
            List of pending/processing tasks
        """
        result = await self.session.execute(
            select(GenerationTask)
            .where(GenerationTask.status.in_(ACTIVE_STATUSES))  # type: ignore[attr-defined]
            .where(GenerationTask.updated_at < updated_before)  # type: ignore[arg-type]
            .order_by(GenerationTask.updated_at.asc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return list(result.scalars().all())

    async def mark_processing(self, task_id: str) -> bool:
        """Advance pending -> processing.

        Returns:
            True if this call performed the transition, False if the task was
            no longer pending
        """
        result = await self.session.execute(
            update(GenerationTask)
            .where(GenerationTask.task_id == task_id)  # type: ignore[arg-type]
            .where(GenerationTask.status == TaskStatus.PENDING)  # type: ignore[arg-type]
            .values(status=TaskStatus.PROCESSING, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def claim(self, task_id: str, claim_id: str, lease_seconds: int) -> bool:
        """Take the materialization lease on a non-terminal task.

        The lease is granted when nobody holds it, or when the previous holder's
        lease is older than lease_seconds (crashed worker).

        Args:
            task_id: Provider task ID
            claim_id: Unique identifier of the caller
            lease_seconds: Age after which an existing claim may be taken over

        Returns:
            True if the claim was granted to claim_id
        """
        now = utcnow()
        expired_before = now - timedelta(seconds=lease_seconds)
        result = await self.session.execute(
            update(GenerationTask)
            .where(GenerationTask.task_id == task_id)  # type: ignore[arg-type]
            .where(GenerationTask.status.in_(ACTIVE_STATUSES))  # type: ignore[attr-defined]
            .where(
                or_(
                    GenerationTask.claim_id.is_(None),  # type: ignore[union-attr]
                    GenerationTask.claimed_at < expired_before,  # type: ignore[operator]
                )
            )
            .values(claim_id=claim_id, claimed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def release_claim(self, task_id: str, claim_id: str, storage_error: str) -> bool:
        """Give the lease back after a failed materialization and count the attempt.

        The task stays non-terminal so a later poll or webhook can retry. The
        cause goes to last_storage_error; error_detail stays unset until the
        task is failed.

        Returns:
            True if claim_id still held the lease
        """
        result = await self.session.execute(
            update(GenerationTask)
            .where(GenerationTask.task_id == task_id)  # type: ignore[arg-type]
            .where(GenerationTask.claim_id == claim_id)  # type: ignore[arg-type]
            .where(GenerationTask.status.in_(ACTIVE_STATUSES))  # type: ignore[attr-defined]
            .values(
                claim_id=None,
                claimed_at=None,
                materialization_attempts=GenerationTask.materialization_attempts + 1,
                last_storage_error=storage_error[:1000],
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def mark_completed(
        self,
        task_id: str,
        claim_id: str,
        result_references: list[str],
        completed_at: datetime | None = None,
    ) -> bool:
        """Terminal write for a successful task.

        Only the current claim holder can complete the task, and only while it
        is still non-terminal.

        Returns:
            True if this call completed the task
        """
        now = completed_at or utcnow()
        result = await self.session.execute(
            update(GenerationTask)
            .where(GenerationTask.task_id == task_id)  # type: ignore[arg-type]
            .where(GenerationTask.claim_id == claim_id)  # type: ignore[arg-type]
            .where(GenerationTask.status.in_(ACTIVE_STATUSES))  # type: ignore[attr-defined]
            .values(
                status=TaskStatus.COMPLETED,
                result_references=list(result_references),
                error_detail=None,
                claim_id=None,
                claimed_at=None,
                completed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def mark_failed(
        self,
        task_id: str,
        error_detail: str,
        claim_id: str | None = None,
        lease_seconds: int = 120,
    ) -> bool:
        """Terminal write for a failed task.

        Without claim_id the write is refused while another caller holds a live
        materialization lease, so a late failure report cannot overtake an
        in-flight success. Leases older than lease_seconds are ignored.

        Args:
            task_id: Provider task ID
            error_detail: Human-readable cause (truncated to 1000 characters)
            claim_id: Lease held by the caller, if any
            lease_seconds: Age after which another caller's lease is considered dead

        Returns:
            True if this call failed the task
        """
        now = utcnow()
        lease_expired_before = now - timedelta(seconds=lease_seconds)
        stmt = (
            update(GenerationTask)
            .where(GenerationTask.task_id == task_id)  # type: ignore[arg-type]
            .where(GenerationTask.status.in_(ACTIVE_STATUSES))  # type: ignore[attr-defined]
        )
        if claim_id is None:
            stmt = stmt.where(
                or_(
                    GenerationTask.claim_id.is_(None),  # type: ignore[union-attr]
                    GenerationTask.claimed_at < lease_expired_before,  # type: ignore[operator]
                )
            )
        else:
            stmt = stmt.where(GenerationTask.claim_id == claim_id)  # type: ignore[arg-type]

        result = await self.session.execute(
            stmt.values(
                status=TaskStatus.FAILED,
                error_detail=error_detail[:1000],
                claim_id=None,
                claimed_at=None,
                updated_at=now,
            ).execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]
