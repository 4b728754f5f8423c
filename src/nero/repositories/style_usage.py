"""StyleUsage repository for Nero backend."""

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from nero.models.style_usage import StyleUsage


class StyleUsageRepository:
    """Repository for StyleUsage entities."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, usage: StyleUsage) -> StyleUsage:
        """Persist new style usage record."""
        self.session.add(usage)
        await self.session.flush()
        return usage

    async def count_by_template(self, template_id: str) -> int:
        """Number of images generated with a template."""
        result = await self.session.execute(
            select(func.count(StyleUsage.id)).where(  # type: ignore[arg-type]
                StyleUsage.template_id == template_id  # type: ignore[arg-type]
            )
        )
        return result.scalar() or 0
