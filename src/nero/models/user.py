"""User entity - account owning tasks and a prepaid star balance."""

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlmodel import Field, SQLModel

from nero.core.timezone import utcnow

FREE_SUBSCRIPTION = "free"


class User(SQLModel, table=True):
    """User holds the star balance debited by completed generations."""

    __tablename__ = "users"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    email: Optional[str] = Field(default=None, max_length=255, unique=True)
    stars: int = Field(default=0, ge=0)
    subscription: str = Field(default=FREE_SUBSCRIPTION, max_length=50)
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_unlimited(self) -> bool:
        """Paid subscriptions generate without spending stars."""
        return bool(self.subscription) and self.subscription != FREE_SUBSCRIPTION
