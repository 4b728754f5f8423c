"""Authentication of NanoBanana webhook deliveries.

Two forms are accepted, both keyed by NANOBANANA_WEBHOOK_SECRET:
- X-Nero-Signature header: hex HMAC-SHA256 of the raw request body
- token query parameter: the secret itself, embedded in the callback URL we
  hand to the provider on submission

Security Note:
    Validation MUST happen before the payload is parsed. Return 401
    Unauthorized immediately if validation fails.
"""

import hashlib
import hmac


def compute_callback_signature(raw_body: bytes, signing_key: str) -> str:
    """Hex-encoded HMAC-SHA256 of raw_body."""
    return hmac.new(
        key=signing_key.encode("utf-8"), msg=raw_body, digestmod=hashlib.sha256
    ).hexdigest()


def validate_callback_signature(raw_body: bytes, signature: str, signing_key: str) -> bool:
    """Validate the X-Nero-Signature header of a webhook delivery.

    Args:
        raw_body: Raw request body bytes (NOT parsed JSON). Must be the exact
            bytes received from the request.
        signature: Hex-encoded HMAC-SHA256 signature from the header
        signing_key: Shared webhook secret

    Returns:
        True if signature is valid, False otherwise (including an empty key).

    Security:
        - Uses hmac.compare_digest() for constant-time comparison.
        - Case-insensitive: uppercase hex is accepted.
    """
    if not signing_key:
        return False

    expected = compute_callback_signature(raw_body, signing_key)

    # Constant-time comparison; never use == for signatures
    return hmac.compare_digest(expected.lower(), signature.strip().lower())


def validate_callback_token(token: str, signing_key: str) -> bool:
    """Validate the token query parameter against the shared secret (constant time)."""
    if not signing_key or not token:
        return False
    return hmac.compare_digest(token.encode("utf-8"), signing_key.encode("utf-8"))
