"""SQLModel database entities.

All models are imported here to ensure they're registered with SQLModel metadata
for Alembic autogenerate support.
"""

from nero.models.generated_image import GeneratedImage, ImageStatus
from nero.models.style_usage import StyleUsage
from nero.models.task import GenerationTask, TaskKind, TaskStatus
from nero.models.user import User

__all__ = [
    "User",
    "GenerationTask",
    "TaskKind",
    "TaskStatus",
    "GeneratedImage",
    "ImageStatus",
    "StyleUsage",
]
