"""Service error hierarchy for generation, storage and billing operations.

This module defines the exception hierarchy for service-level errors:
- ServiceError: Base for all service errors
- TransientError: Retryable errors (network, timeouts, storage hiccups)
- PermanentError: Non-retryable errors (authentication, validation, ownership)
"""

from uuid import UUID


class ServiceError(Exception):
    """Base exception for all service errors."""

    pass


class TransientError(ServiceError):
    """Transient error that may succeed on retry.

    Examples:
    - Network timeouts
    - Provider unavailable (5xx)
    - Local storage write failures
    """

    pass


class PermanentError(ServiceError):
    """Permanent error that will not succeed on retry.

    Examples:
    - Authentication failures
    - Invalid request parameters
    - Missing configuration
    """

    pass


# Provider-specific errors
class ProviderTransientError(TransientError):
    """Provider could not be reached or answered with a retryable HTTP status."""

    pass


class ProviderRequestError(PermanentError):
    """Provider rejected the request (non-200 envelope code or 4xx)."""

    pass


class ProviderConfigurationError(PermanentError):
    """Provider API key is not configured."""

    pass


# Storage-specific errors
class MaterializationError(TransientError):
    """Remote result could not be downloaded or stored locally."""

    pass


# Task lifecycle errors
class TaskNotFoundError(PermanentError):
    """No task with the given provider task ID exists."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task {task_id} not found")


class TaskAccessDeniedError(PermanentError):
    """Requesting user does not own the task."""

    def __init__(self, task_id: str, owner_id: UUID | None):
        self.task_id = task_id
        self.owner_id = owner_id
        super().__init__(f"User {owner_id} is not allowed to access task {task_id}")


class InvalidGenerationRequest(PermanentError):
    """Submission parameters are invalid (empty prompt, missing input images)."""

    pass


# Billing errors
class UserNotFoundError(PermanentError):
    """No user with the given ID exists."""

    def __init__(self, user_id: UUID):
        self.user_id = user_id
        super().__init__(f"User {user_id} not found")


class InsufficientBalanceError(PermanentError):
    """User does not have enough stars for a cost-bearing operation."""

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient balance: {required} stars required, {available} available"
        )


# Request authentication errors
class AuthenticationError(PermanentError):
    """Bearer token is missing, invalid or expired."""

    pass


class WebhookAuthenticationError(AuthenticationError):
    """Webhook delivery carries no valid signature or token."""

    pass
