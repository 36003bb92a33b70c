"""FastAPI dependency resolving the caller of an HTTP request."""
from typing import Optional

from fastapi import Header

from .service import Identity, extract_bearer, get_token_verifier


async def get_current_identity(
    authorization: Optional[str] = Header(None),
) -> Identity:
    """Verify the request's bearer token.

    Raises AuthenticationFailure (rendered as 401) before any business logic
    runs when the header is missing or the token does not verify.
    """
    return get_token_verifier().verify(extract_bearer(authorization))
