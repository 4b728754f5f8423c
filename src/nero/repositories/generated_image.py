"""GeneratedImage repository for Nero backend.

Provides data access methods for GeneratedImage entities.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from nero.models.generated_image import GeneratedImage, ImageStatus


class GeneratedImageRepository:
    """Repository for GeneratedImage entities.

    Status updates by task_id only move pending records, so a record that
    already mirrors a terminal task is never rewritten.
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, image: GeneratedImage) -> GeneratedImage:
        """Persist new generated image record to database."""
        self.session.add(image)
        await self.session.flush()
        return image

    async def get_by_task_id(self, task_id: str) -> GeneratedImage | None:
        """Retrieve the image record linked to a provider task.

        Args:
            task_id: Provider task ID

        Returns:
            GeneratedImage if found, None otherwise
        """
        result = await self.session.execute(
            select(GeneratedImage)
            .where(GeneratedImage.task_id == task_id)  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def mark_completed(
        self, task_id: str, image_reference: str, completed_at: datetime
    ) -> bool:
        """Mirror a completed task onto its image record.

        Returns:
            True if a pending record was updated
        """
        result = await self.session.execute(
            update(GeneratedImage)
            .where(GeneratedImage.task_id == task_id)  # type: ignore[arg-type]
            .where(GeneratedImage.status == ImageStatus.PENDING)  # type: ignore[arg-type]
            .values(
                status=ImageStatus.COMPLETED,
                image_reference=image_reference,
                error_detail=None,
                completed_at=completed_at,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def mark_failed(self, task_id: str, error_detail: str) -> bool:
        """Mirror a failed task onto its image record.

        Returns:
            True if a pending record was updated
        """
        result = await self.session.execute(
            update(GeneratedImage)
            .where(GeneratedImage.task_id == task_id)  # type: ignore[arg-type]
            .where(GeneratedImage.status == ImageStatus.PENDING)  # type: ignore[arg-type]
            .values(status=ImageStatus.FAILED, error_detail=error_detail[:1000])
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def list_by_owner_paginated(
        self, owner_id: UUID, offset: int = 0, limit: int = 50
    ) -> tuple[list[GeneratedImage], int]:
        """Retrieve a user's images with pagination and total count.

        Args:
            owner_id: User's unique identifier
            offset: Number of images to skip
            limit: Maximum number of images to return

        Returns:
            Tuple of (images for current page newest first, total count)
        """
        count_stmt = select(func.count(GeneratedImage.id)).where(  # type: ignore[arg-type]
            GeneratedImage.owner_id == owner_id  # type: ignore[arg-type]
        )
        total = (await self.session.execute(count_stmt)).scalar() or 0

        data_stmt = (
            select(GeneratedImage)
            .where(GeneratedImage.owner_id == owner_id)  # type: ignore[arg-type]
            .order_by(GeneratedImage.created_at.desc())  # type: ignore[attr-defined]
            .offset(offset)
            .limit(limit)
        )
        images = list((await self.session.execute(data_stmt)).scalars().all())

        return (images, total)
