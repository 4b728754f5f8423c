"""FastAPI dependencies for request validation and common operations.

This module provides reusable FastAPI dependencies for:
- Webhook authentication (signature header or callback token)
- Bearer token authentication
- Access to services created in the application lifespan
"""

from typing import Annotated, Callable
from uuid import UUID

from fastapi import Depends, Header, Query, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from nero.core.config import Settings
from nero.services.access_token import user_id_from_token
from nero.services.callback_signature import (
    validate_callback_signature,
    validate_callback_token,
)
from nero.services.exceptions import AuthenticationError, WebhookAuthenticationError
from nero.services.generation.service import GenerationService
from nero.uow import UnitOfWork

security = HTTPBearer(auto_error=False)


def get_settings(request: Request) -> Settings:
    """Get the settings the application was created with.

    Returns:
        Settings instance stored on app.state by create_app()
    """
    return request.app.state.settings


async def validate_callback(
    request: Request,
    x_nero_signature: Annotated[str | None, Header()] = None,
    token: Annotated[str | None, Query()] = None,
    settings: Settings = Depends(get_settings),
) -> bytes:
    """Authenticate a NanoBanana webhook delivery before it is processed.

    Accepts either an X-Nero-Signature header (HMAC-SHA256 of the raw body) or
    the token query parameter embedded in the callback URL.

    Args:
        request: FastAPI Request object (contains raw body)
        x_nero_signature: Signature from X-Nero-Signature header
        token: Shared secret from the callback URL
        settings: Application settings (injected via dependency)

    Returns:
        Raw request body bytes (for further processing by the endpoint)

    Raises:
        WebhookAuthenticationError: Neither credential is present or valid (401)
    """
    raw_body = await request.body()
    secret = settings.nanobanana_webhook_secret

    if x_nero_signature:
        if not validate_callback_signature(raw_body, x_nero_signature, secret):
            raise WebhookAuthenticationError("Invalid webhook signature")
        return raw_body

    if token:
        if not validate_callback_token(token, secret):
            raise WebhookAuthenticationError("Invalid webhook token")
        return raw_body

    raise WebhookAuthenticationError("Missing X-Nero-Signature header or token parameter")


async def get_current_user_id(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    settings: Settings = Depends(get_settings),
) -> UUID:
    """Resolve the requesting user from the Bearer access token.

    Raises:
        AuthenticationError: Missing, invalid or expired token (401)
    """
    if not credentials:
        raise AuthenticationError("Not authenticated")

    user_id = user_id_from_token(
        credentials.credentials, settings.jwt_secret_key, settings.jwt_algorithm
    )
    if user_id is None:
        raise AuthenticationError("Invalid token")

    return user_id


def get_uow_factory(request: Request) -> Callable[[], UnitOfWork]:
    """Get UnitOfWork factory from app state.

    Example:
        >>> @router.get("/endpoint")
        >>> async def endpoint(uow_factory=Depends(get_uow_factory)):
        ...     async with await uow_factory() as uow:
        ...         await uow.images.list_by_owner_paginated(owner_id)
    """
    return request.app.state.uow_factory


def get_generation_service(request: Request) -> GenerationService:
    """Get GenerationService created in the application lifespan."""
    return request.app.state.generation_service
