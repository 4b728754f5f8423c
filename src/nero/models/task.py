"""GenerationTask entity - one request to the image generation provider."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from nero.core.timezone import utcnow


class TaskStatus(str, Enum):
    """Generation task lifecycle status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED})
ACTIVE_STATUSES = (TaskStatus.PENDING, TaskStatus.PROCESSING)


class TaskKind(str, Enum):
    """Generation mode requested from the provider."""

    TEXT_TO_IMAGE = "text-to-image"
    IMAGE_TO_IMAGE = "image-to-image"


class GenerationTask(SQLModel, table=True):
    """GenerationTask tracks a provider task from submission to a terminal state.

    Rows are created at submission time with status=pending and are mutated
    afterwards only through the conditional updates in GenerationTaskRepository.
    """

    __tablename__ = "generation_tasks"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    task_id: str = Field(max_length=255, unique=True, index=True)  # provider-assigned
    owner_id: UUID = Field(foreign_key="users.id", index=True)
    kind: TaskKind = Field(default=TaskKind.TEXT_TO_IMAGE)
    status: TaskStatus = Field(default=TaskStatus.PENDING, index=True)

    prompt: str = Field(max_length=5000)
    image_size: str = Field(default="1:1", max_length=10)
    num_images: int = Field(default=1, ge=1)
    input_image_urls: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    template_id: Optional[str] = Field(default=None, max_length=255)

    # Stars charged once the task completes (0 = not cost-bearing)
    cost: int = Field(default=0, ge=0)

    result_references: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    # Set only once the task is failed
    error_detail: Optional[str] = Field(default=None, max_length=1000)

    # Materialization lease (only the claim holder downloads the result)
    claim_id: Optional[str] = Field(default=None, max_length=64)
    claimed_at: Optional[datetime] = Field(default=None)
    materialization_attempts: int = Field(default=0, ge=0)
    last_storage_error: Optional[str] = Field(default=None, max_length=1000)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = Field(default=None)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
