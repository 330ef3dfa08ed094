"""Shared-secret bearer token check."""

import hmac
import logging

from fastapi import Header, Request

from ..errors import AuthenticationError

logger = logging.getLogger(__name__)


def extract_bearer_token(authorization: str | None) -> str | None:
    """Return the token of a ``Bearer <token>`` header, or None."""
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def require_api_key(request: Request, authorization: str = Header(None)) -> None:
    """FastAPI dependency guarding every data route.

    Raises:
        AuthenticationError: If the token is missing or does not match.
    """
    token = extract_bearer_token(authorization)
    if token is None:
        logger.warning(f"Missing bearer token on {request.method} {request.url.path}")
        raise AuthenticationError("missing token")

    expected: str = request.app.state.api_key
    if not hmac.compare_digest(token.encode(), expected.encode()):
        logger.warning(f"Invalid bearer token on {request.method} {request.url.path}")
        raise AuthenticationError("invalid token")
