"""NanoBanana webhook endpoint.

The provider calls back once a task finishes. Deliveries may be duplicated,
reordered, or race with client polling; all of them go through the same
reconciler, so only the first effective delivery changes state.
"""

import json

import structlog
from fastapi import APIRouter, Depends, HTTPException, status

from nero.api.dependencies import get_generation_service, validate_callback
from nero.services.generation.provider_client import parse_callback
from nero.services.generation.service import GenerationService

logger = structlog.get_logger()
router = APIRouter(prefix="/api/v1/nanobanana", tags=["webhooks"])


@router.post("/callback")
async def receive_nanobanana_callback(
    raw_body: bytes = Depends(validate_callback),
    service: GenerationService = Depends(get_generation_service),
):
    """Receive and reconcile a NanoBanana task callback.

    This endpoint:
    1. Authenticates the delivery (via dependency)
    2. Parses {code, msg, data: {taskId, info: {resultImageUrl}}}
    3. Reconciles the outcome (terminal tasks are acknowledged unchanged)

    Args:
        raw_body: Authenticated raw request body
        service: Generation service

    Returns:
        JSON response with status and the task's resulting status

    HTTP Status Codes:
        200: Delivery processed (including duplicates of a finished task)
        400: Malformed payload
        401: Missing or invalid signature/token
        404: Unknown task
        502: Result could not be stored (provider may redeliver)
    """
    try:
        payload = json.loads(raw_body)
    except json.JSONDecodeError as e:
        logger.error("webhook.invalid_json", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid JSON payload: {str(e)}",
        )

    if not isinstance(payload, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid JSON payload: expected an object",
        )

    try:
        event = parse_callback(payload)
    except ValueError as e:
        logger.error("webhook.malformed", error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    logger.info("webhook.received", task_id=event.task_id, code=event.code)

    task = await service.handle_callback(event)

    return {
        "status": "success",
        "message": "Callback processed",
        "task_status": task.status.value,
    }
