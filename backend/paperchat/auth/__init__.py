"""Identity verification for the HTTP and WebSocket surfaces."""
from .dependencies import get_current_identity
from .service import Identity, Role, TokenVerifier, extract_bearer, get_token_verifier

__all__ = [
    "Identity",
    "Role",
    "TokenVerifier",
    "extract_bearer",
    "get_current_identity",
    "get_token_verifier",
]
