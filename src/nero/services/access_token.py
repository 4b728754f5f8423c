"""Access token handling for API requests.

Tokens are issued by the account service and signed with the shared
JWT_SECRET_KEY. This module only verifies them; create_access_token exists for
operator tooling and tests.
"""

from datetime import timedelta
from typing import Any
from uuid import UUID

from jose import JWTError, jwt

from nero.core.timezone import utcnow

ACCESS_TOKEN_TYPE = "access"


def create_access_token(
    user_id: UUID, secret_key: str, algorithm: str = "HS256", expires_minutes: int = 60
) -> str:
    """Sign an access token for user_id."""
    payload = {
        "sub": str(user_id),
        "exp": utcnow() + timedelta(minutes=expires_minutes),
        "type": ACCESS_TOKEN_TYPE,
    }
    return jwt.encode(payload, secret_key, algorithm=algorithm)


def decode_token(token: str, secret_key: str, algorithm: str = "HS256") -> dict[str, Any] | None:
    """Verify signature and expiry; None if the token is invalid."""
    try:
        return jwt.decode(token, secret_key, algorithms=[algorithm])
    except JWTError:
        return None


def user_id_from_token(token: str, secret_key: str, algorithm: str = "HS256") -> UUID | None:
    """Extract the user ID from a valid access token.

    Args:
        token: Bearer token from the Authorization header
        secret_key: Shared signing key
        algorithm: Signing algorithm

    Returns:
        User ID from the `sub` claim, or None if the token is invalid, expired,
        not an access token, or carries a malformed subject
    """
    payload = decode_token(token, secret_key, algorithm)
    if not payload or payload.get("type") != ACCESS_TOKEN_TYPE:
        return None

    try:
        return UUID(str(payload.get("sub")))
    except ValueError:
        return None
