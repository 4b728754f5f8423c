"""Prompt validation for image generation.

Validates text prompts before sending to the NanoBanana API.
"""

from nero.services.exceptions import InvalidGenerationRequest

MAX_PROMPT_LENGTH = 5000


def validate_prompt(prompt: str) -> str:
    """Validate prompt text for image generation.

    Args:
        prompt: Text prompt from the user

    Returns:
        Prompt with surrounding whitespace removed

    Raises:
        InvalidGenerationRequest: If prompt is empty, not a string, or exceeds
            5000 characters
    """
    if not isinstance(prompt, str):
        raise InvalidGenerationRequest(f"Prompt must be a string, got {type(prompt).__name__}")

    prompt = prompt.strip()
    if not prompt:
        raise InvalidGenerationRequest("Prompt cannot be empty")

    if len(prompt) > MAX_PROMPT_LENGTH:
        raise InvalidGenerationRequest(
            f"Prompt exceeds maximum length of {MAX_PROMPT_LENGTH} characters (got {len(prompt)})"
        )

    return prompt


def validate_image_urls(image_urls: list[str] | None) -> list[str]:
    """Validate reference image URLs for image-to-image generation.

    Raises:
        InvalidGenerationRequest: If no URL is given or a URL is not http(s)
    """
    urls = [url.strip() for url in image_urls or [] if url and url.strip()]
    if not urls:
        raise InvalidGenerationRequest("At least one input image is required for editing")

    for url in urls:
        if not url.startswith(("http://", "https://")):
            raise InvalidGenerationRequest(f"Input image must be an http(s) URL: {url}")

    return urls
