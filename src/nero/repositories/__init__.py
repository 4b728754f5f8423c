"""Repository layer for Nero backend.

Provides data access abstractions for all domain entities.
No base classes - each repository is self-contained.
"""

from nero.repositories.generated_image import GeneratedImageRepository
from nero.repositories.style_usage import StyleUsageRepository
from nero.repositories.task import GenerationTaskRepository
from nero.repositories.user import UserRepository

__all__ = [
    "UserRepository",
    "GenerationTaskRepository",
    "GeneratedImageRepository",
    "StyleUsageRepository",
]
