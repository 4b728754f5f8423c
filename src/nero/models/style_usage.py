"""StyleUsage entity - records that a style template produced an image."""

from datetime import datetime
from uuid import UUID, uuid4

from sqlmodel import Field, SQLModel

from nero.core.timezone import utcnow


class StyleUsage(SQLModel, table=True):
    """StyleUsage tracks template popularity for the admin dashboard."""

    __tablename__ = "style_usages"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    template_id: str = Field(max_length=255, index=True)
    owner_id: UUID = Field(index=True)
    generated_image_id: UUID = Field(foreign_key="generated_images.id")
    created_at: datetime = Field(default_factory=utcnow)
