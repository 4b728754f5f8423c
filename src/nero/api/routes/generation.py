"""Image generation API endpoints.

This module implements REST endpoints for the generation lifecycle:
- POST /api/v1/generation/generate - Submit a text-to-image task
- POST /api/v1/generation/edit - Submit an image-to-image task
- POST /api/v1/generation/edit/upload - Submit an image-to-image task with uploaded images
- GET /api/v1/generation/tasks/{task_id} - Poll a task (reconciles non-terminal tasks)
- GET /api/v1/generation/images - Paginated history of the user's images

All endpoints require a Bearer access token. Error responses are produced by
the exception handlers registered in nero.app.
"""

from datetime import datetime
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, File, Form, Query, UploadFile, status
from pydantic import BaseModel, Field

from nero.api.dependencies import get_current_user_id, get_generation_service, get_uow_factory
from nero.models.generated_image import GeneratedImage, ImageStatus
from nero.models.task import GenerationTask, TaskKind, TaskStatus
from nero.services.generation.prompt_validator import MAX_PROMPT_LENGTH
from nero.services.generation.service import (
    GenerationService,
    ReferenceUpload,
    SubmittedTask,
)

logger = structlog.get_logger()
router = APIRouter(prefix="/api/v1/generation", tags=["generation"])


# Request/Response Models


class GenerateRequest(BaseModel):
    """Request model for text-to-image generation."""

    prompt: str = Field(
        ...,
        description="Text prompt",
        min_length=1,
        max_length=MAX_PROMPT_LENGTH,
    )
    image_size: str = Field(
        default="1:1",
        description="Aspect ratio (e.g. 1:1, 16:9, 9:16)",
        max_length=10,
    )
    num_images: int = Field(default=1, ge=1, le=4, description="Number of images to generate")
    template_id: str | None = Field(
        default=None,
        description="Style template the prompt was built from",
        max_length=255,
    )


class EditRequest(GenerateRequest):
    """Request model for image-to-image generation."""

    image_urls: list[str] = Field(
        ...,
        description="Reference image URLs (http/https)",
        min_length=1,
    )


class SubmitResponse(BaseModel):
    """Response model for accepted submissions."""

    task_id: str = Field(..., description="Provider task ID, used for polling")
    status: TaskStatus = Field(..., description="Task status (always pending on submission)")
    image_id: UUID = Field(..., description="ID of the history record for this task")
    cost: int = Field(..., description="Stars charged once the task completes")


class TaskResponse(BaseModel):
    """Response model for task polling."""

    task_id: str
    status: TaskStatus
    kind: TaskKind
    prompt: str
    image_size: str
    result_references: list[str] = Field(
        default_factory=list,
        description="Public paths of stored results (set when completed)",
    )
    error_detail: str | None = Field(default=None, description="Failure reason (failed tasks only)")
    last_storage_error: str | None = Field(
        default=None,
        description="Most recent result storage error while the task is retried",
    )
    cost: int
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None

    @classmethod
    def from_task(cls, task: GenerationTask) -> "TaskResponse":
        return cls(
            task_id=task.task_id,
            status=task.status,
            kind=task.kind,
            prompt=task.prompt,
            image_size=task.image_size,
            result_references=list(task.result_references or []),
            error_detail=task.error_detail,
            last_storage_error=task.last_storage_error,
            cost=task.cost,
            created_at=task.created_at,
            updated_at=task.updated_at,
            completed_at=task.completed_at,
        )


class ImageDTO(BaseModel):
    """Data Transfer Object for generated images in API responses."""

    id: UUID
    task_id: str | None = None
    prompt: str
    kind: TaskKind
    status: ImageStatus
    image_reference: str | None = Field(
        default=None,
        description="Public path of the stored image (null until completed)",
    )
    reference_inputs: list[str] = Field(default_factory=list)
    template_id: str | None = None
    error_detail: str | None = None
    created_at: datetime
    completed_at: datetime | None = None

    @classmethod
    def from_image(cls, image: GeneratedImage) -> "ImageDTO":
        return cls(
            id=image.id,
            task_id=image.task_id,
            prompt=image.prompt,
            kind=image.kind,
            status=image.status,
            image_reference=image.image_reference,
            reference_inputs=list(image.reference_inputs or []),
            template_id=image.template_id,
            error_detail=image.error_detail,
            created_at=image.created_at,
            completed_at=image.completed_at,
        )


class Pagination(BaseModel):
    total: int
    limit: int
    skip: int
    has_more: bool


class ImagesResponse(BaseModel):
    """Response model for paginated image history."""

    images: list[ImageDTO]
    pagination: Pagination


def _submit_response(submitted: SubmittedTask) -> SubmitResponse:
    return SubmitResponse(
        task_id=submitted.task.task_id,
        status=submitted.task.status,
        image_id=submitted.image.id,
        cost=submitted.task.cost,
    )


# Endpoints


@router.post("/generate", response_model=SubmitResponse, status_code=status.HTTP_202_ACCEPTED)
async def generate(
    request: GenerateRequest,
    user_id: UUID = Depends(get_current_user_id),
    service: GenerationService = Depends(get_generation_service),
) -> SubmitResponse:
    """Submit a text-to-image task.

    The balance is checked here but only charged once the task completes.

    HTTP Status Codes:
        202: Task accepted (poll /tasks/{task_id} or wait for the webhook)
        400: Invalid prompt
        402: Insufficient balance
        404: User not found
        502/503: Provider rejected the request or is unavailable
    """
    submitted = await service.submit(
        owner_id=user_id,
        prompt=request.prompt,
        kind=TaskKind.TEXT_TO_IMAGE,
        image_size=request.image_size,
        num_images=request.num_images,
        template_id=request.template_id,
    )
    return _submit_response(submitted)


@router.post("/edit", response_model=SubmitResponse, status_code=status.HTTP_202_ACCEPTED)
async def edit(
    request: EditRequest,
    user_id: UUID = Depends(get_current_user_id),
    service: GenerationService = Depends(get_generation_service),
) -> SubmitResponse:
    """Submit an image-to-image task (same status codes as /generate)."""
    submitted = await service.submit(
        owner_id=user_id,
        prompt=request.prompt,
        kind=TaskKind.IMAGE_TO_IMAGE,
        image_size=request.image_size,
        num_images=request.num_images,
        input_image_urls=request.image_urls,
        template_id=request.template_id,
    )
    return _submit_response(submitted)


@router.post(
    "/edit/upload", response_model=SubmitResponse, status_code=status.HTTP_202_ACCEPTED
)
async def edit_with_uploads(
    prompt: str = Form(..., min_length=1, max_length=MAX_PROMPT_LENGTH),
    images: list[UploadFile] = File(..., description="Reference images"),
    image_size: str = Form(default="1:1", max_length=10),
    num_images: int = Form(default=1, ge=1, le=4),
    template_id: str | None = Form(default=None, max_length=255),
    user_id: UUID = Depends(get_current_user_id),
    service: GenerationService = Depends(get_generation_service),
) -> SubmitResponse:
    """Submit an image-to-image task from uploaded reference images (multipart).

    The images are stored under the references folder and passed to the
    provider by URL. Status codes as for /generate.
    """
    uploads = [
        ReferenceUpload(
            data=await image.read(),
            content_type=image.content_type,
            filename=image.filename,
        )
        for image in images
    ]
    submitted = await service.submit_with_uploads(
        owner_id=user_id,
        prompt=prompt,
        uploads=uploads,
        image_size=image_size,
        num_images=num_images,
        template_id=template_id,
    )
    return _submit_response(submitted)


@router.get("/tasks/{task_id}", response_model=TaskResponse)
async def get_task(
    task_id: str,
    user_id: UUID = Depends(get_current_user_id),
    service: GenerationService = Depends(get_generation_service),
) -> TaskResponse:
    """Return a task, reconciling it with the provider first if it is not terminal.

    HTTP Status Codes:
        200: Task as stored after reconciliation
        403: Task belongs to another user
        404: Unknown task
    """
    task = await service.poll(task_id, owner_id=user_id)
    return TaskResponse.from_task(task)


@router.get("/images", response_model=ImagesResponse)
async def list_images(
    limit: int = Query(default=20, ge=1, le=100, description="Maximum images per page (1-100)"),
    skip: int = Query(default=0, ge=0, description="Number of images to skip"),
    user_id: UUID = Depends(get_current_user_id),
    uow_factory=Depends(get_uow_factory),
) -> ImagesResponse:
    """Return the user's generated images, newest first."""
    async with await uow_factory() as uow:
        images, total = await uow.images.list_by_owner_paginated(
            user_id, offset=skip, limit=limit
        )

    logger.debug("images.listed", user_id=str(user_id), total=total, returned=len(images))

    return ImagesResponse(
        images=[ImageDTO.from_image(image) for image in images],
        pagination=Pagination(
            total=total,
            limit=limit,
            skip=skip,
            has_more=skip + len(images) < total,
        ),
    )
