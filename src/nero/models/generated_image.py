"""GeneratedImage entity - user-visible record of a generated artifact."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from nero.core.timezone import utcnow
from nero.models.task import TaskKind


class ImageStatus(str, Enum):
    """Generated image status (mirrors the terminal state of its task)."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class GeneratedImage(SQLModel, table=True):
    """GeneratedImage is the denormalized sibling of a GenerationTask shown in history.

    task_id is absent for images produced without a provider task.
    """

    __tablename__ = "generated_images"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    owner_id: UUID = Field(foreign_key="users.id", index=True)
    task_id: Optional[str] = Field(default=None, max_length=255, unique=True, index=True)
    prompt: str = Field(max_length=5000)
    kind: TaskKind = Field(default=TaskKind.TEXT_TO_IMAGE)
    status: ImageStatus = Field(default=ImageStatus.PENDING, index=True)
    image_reference: Optional[str] = Field(default=None)
    reference_inputs: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    template_id: Optional[str] = Field(default=None, max_length=255)
    error_detail: Optional[str] = Field(default=None, max_length=1000)
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = Field(default=None)
