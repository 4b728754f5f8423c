"""NanoBanana API client for image generation with outcome normalization."""

from dataclasses import dataclass, field
from typing import Any

import httpx
import structlog

from nero.models.task import TaskKind
from nero.services.exceptions import (
    ProviderConfigurationError,
    ProviderRequestError,
    ProviderTransientError,
    ServiceError,
)
from nero.services.generation.outcomes import (
    FailedTerminal,
    FailedTransient,
    ProviderOutcome,
    StillRunning,
    Succeeded,
)

logger = structlog.get_logger(__name__)

# Provider wire values for TaskKind (spelling is the provider's)
PROVIDER_TASK_TYPES = {
    TaskKind.TEXT_TO_IMAGE: "TEXTTOIAMGE",
    TaskKind.IMAGE_TO_IMAGE: "IMAGETOIAMGE",
}

# record-info successFlag values
FLAG_GENERATING = 0
FLAG_SUCCESS = 1
FLAG_CREATE_FAILED = 2
FLAG_GENERATION_FAILED = 3

# Callback codes
CALLBACK_SUCCESS = 200
CALLBACK_POLICY_VIOLATION = 400
CALLBACK_INTERNAL_ERROR = 500
CALLBACK_GENERATION_FAILED = 501

DEFAULT_FAILURE_MESSAGE = "Image generation failed"
MISSING_RESULT_MESSAGE = "Provider reported success without a result image"


@dataclass
class GenerationRequest:
    """Parameters of a provider submission."""

    prompt: str
    kind: TaskKind
    callback_url: str
    image_size: str = "1:1"
    num_images: int = 1
    image_urls: list[str] = field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "prompt": self.prompt,
            "numImages": self.num_images,
            "type": PROVIDER_TASK_TYPES[self.kind],
            "image_size": self.image_size,
            "callBackUrl": self.callback_url,
        }
        if self.image_urls:
            payload["imageUrls"] = list(self.image_urls)
        return payload


@dataclass(frozen=True)
class CallbackEvent:
    """Webhook delivery reduced to the task it concerns and its outcome."""

    task_id: str
    code: int
    outcome: ProviderOutcome


def outcome_from_status(data: dict[str, Any]) -> ProviderOutcome:
    """Translate a record-info `data` object into a normalized outcome.

    successFlag: 0 = generating, 1 = success, 2 = create task failed,
    3 = generation failed.

    Raises:
        ProviderRequestError: If successFlag is missing or unknown
    """
    flag = data.get("successFlag")
    response = data.get("response") or {}
    error_message = data.get("errorMessage") or DEFAULT_FAILURE_MESSAGE

    if flag == FLAG_GENERATING:
        return StillRunning()

    if flag == FLAG_SUCCESS:
        result_url = response.get("resultImageUrl")
        if not result_url:
            return FailedTerminal(MISSING_RESULT_MESSAGE)
        origin_url = response.get("originImageUrl")
        secondary = (origin_url,) if origin_url else ()
        return Succeeded(result_url=result_url, secondary_urls=secondary)

    if flag in (FLAG_CREATE_FAILED, FLAG_GENERATION_FAILED):
        return FailedTerminal(error_message)

    raise ProviderRequestError(f"Unknown successFlag from provider: {flag!r}")


def parse_callback(payload: dict[str, Any]) -> CallbackEvent:
    """Translate a webhook payload into a CallbackEvent.

    Code mapping: 200 -> Succeeded, 400 -> FailedTerminal (content policy),
    500 -> FailedTransient, 501 -> FailedTerminal (generation failed).
    Any other code is treated as a terminal failure.

    Raises:
        ValueError: If the payload has no code or no taskId
    """
    try:
        code = int(payload["code"])
        data = payload.get("data") or {}
        task_id = data["taskId"]
    except (KeyError, TypeError, ValueError) as e:
        raise ValueError(f"Malformed callback payload: {e}") from e

    if not task_id:
        raise ValueError("Malformed callback payload: empty taskId")

    msg = payload.get("msg") or ""
    info = data.get("info") or {}

    outcome: ProviderOutcome
    if code == CALLBACK_SUCCESS:
        result_url = info.get("resultImageUrl")
        if result_url:
            outcome = Succeeded(result_url=result_url)
        else:
            outcome = FailedTerminal(MISSING_RESULT_MESSAGE)
    elif code == CALLBACK_POLICY_VIOLATION:
        outcome = FailedTerminal(f"Content policy violation: {msg}")
    elif code == CALLBACK_INTERNAL_ERROR:
        outcome = FailedTransient(f"Internal error: {msg}")
    elif code == CALLBACK_GENERATION_FAILED:
        outcome = FailedTerminal(f"Generation failed: {msg}")
    else:
        outcome = FailedTerminal(msg or f"Provider error code {code}")

    return CallbackEvent(task_id=str(task_id), code=code, outcome=outcome)


class NanoBananaClient:
    """Client for the NanoBanana generation API.

    Network and timeout failures surface as ProviderTransientError and never
    touch task state; callers decide what to do with them.
    """

    def __init__(
        self,
        api_key: str,
        http_client: httpx.AsyncClient,
        base_url: str = "https://api.nanobananaapi.ai",
        timeout: float = 30.0,
    ):
        """Initialize NanoBanana client.

        Args:
            api_key: Provider API key (from NANOBANANA_API_KEY env var)
            http_client: Shared async HTTP client
            base_url: Provider API root
            timeout: Per-request timeout in seconds
        """
        self.api_key = api_key
        self.http_client = http_client
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def submit(self, request: GenerationRequest) -> str:
        """Create a generation task on the provider.

        Returns:
            Provider-assigned task ID

        Raises:
            ProviderTransientError: Network timeout, rate limit (429), server error (5xx)
            ProviderRequestError: Rejected request or malformed response
            ProviderConfigurationError: API key not configured
        """
        body = await self._request(
            "POST", "/api/v1/nanobanana/generate", json=request.to_payload()
        )
        task_id = (body.get("data") or {}).get("taskId")
        if not task_id:
            raise ProviderRequestError("Provider response did not include a taskId")

        logger.info("provider.task_submitted", task_id=task_id, kind=request.kind.value)
        return str(task_id)

    async def get_status(self, task_id: str) -> ProviderOutcome:
        """Fetch and normalize the current status of a provider task.

        Raises:
            ProviderTransientError: Network timeout, rate limit (429), server error (5xx)
            ProviderRequestError: Rejected request or unknown status flag
            ProviderConfigurationError: API key not configured
        """
        body = await self._request(
            "GET", "/api/v1/nanobanana/record-info", params={"taskId": task_id}
        )
        outcome = outcome_from_status(body.get("data") or {})
        logger.debug("provider.status_fetched", task_id=task_id, outcome=type(outcome).__name__)
        return outcome

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        """Issue an authenticated request and unwrap the {code, msg, data} envelope."""
        if not self.api_key:
            raise ProviderConfigurationError("NANOBANANA_API_KEY not configured")

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        try:
            response = await self.http_client.request(
                method,
                f"{self.base_url}{path}",
                headers=headers,
                timeout=self.timeout,
                **kwargs,
            )
        except httpx.TimeoutException as e:
            raise ProviderTransientError(f"Network timeout: {e}") from e
        except httpx.TransportError as e:
            raise ProviderTransientError(f"Connection error: {e}") from e

        raise_for_provider_status(response)

        try:
            body = response.json()
        except ValueError as e:
            raise ProviderRequestError(f"Invalid JSON from provider: {e}") from e

        code = body.get("code")
        if code != 200:
            raise classify_envelope_error(code, body.get("msg"))

        return body


def raise_for_provider_status(response: httpx.Response) -> None:
    """Raise a classified error for non-2xx HTTP responses.

    Classification rules:
        - 429 (rate limit) -> ProviderTransientError
        - 5xx -> ProviderTransientError
        - 401/403 -> ProviderRequestError (authentication)
        - Other 4xx -> ProviderRequestError
    """
    if response.is_success:
        return

    status_code = response.status_code
    if status_code == 429:
        raise ProviderTransientError(f"Rate limit exceeded: {response.text[:200]}")
    if status_code >= 500:
        raise ProviderTransientError(f"Provider unavailable ({status_code}): {response.text[:200]}")
    if status_code in (401, 403):
        raise ProviderRequestError(f"Authentication failed ({status_code})")
    raise ProviderRequestError(f"Provider rejected request ({status_code}): {response.text[:200]}")


def classify_envelope_error(code: Any, msg: str | None) -> ServiceError:
    """Map a non-200 envelope code to an error (5xx and 429 are retryable)."""
    message = f"NanoBanana API error: {msg or 'unknown error'} (code {code})"
    if isinstance(code, int) and (code == 429 or code >= 500):
        return ProviderTransientError(message)
    return ProviderRequestError(message)
