"""
API key authentication for the API service.
"""

from typing import Any, Dict, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from shared.errors import AuthenticationError, AuthorizationError
from shared.logging import get_logger, set_user_context

API_KEY_HEADER = "X-API-Key"
ADMIN_ROLE = "admin"


class ApiKeyAuthenticator:
    """Resolves configured API keys to user info."""

    def __init__(self, api_keys: Optional[Dict[str, Dict[str, Any]]] = None):
        self.api_keys = api_keys or {}
        self.logger = get_logger("api.auth")

    def authenticate(self, api_key: str) -> Dict[str, Any]:
        """Return user info for ``api_key`` or raise ``AuthenticationError``."""
        key_info = self.api_keys.get(api_key)
        if key_info is None:
            raise AuthenticationError("Invalid API key")

        user_info = {
            "user_id": key_info.get("user_id", f"api-key-{api_key[:8]}"),
            "roles": list(key_info.get("roles", [])),
            "auth_method": "api_key",
        }

        self.logger.debug(
            "Request authenticated with API key",
            api_key=api_key[:8] + "...",
            user_id=user_info["user_id"],
        )
        return user_info


class ApiKeyAuthMiddleware(BaseHTTPMiddleware):
    """Attach ``request.state.user_info`` when a valid API key is supplied.

    Requests without a key, or with an unknown one, continue anonymously;
    routes that need a user enforce it themselves.
    """

    def __init__(self, app, authenticator: ApiKeyAuthenticator):
        super().__init__(app)
        self.authenticator = authenticator

    async def dispatch(self, request: Request, call_next):
        api_key = request.headers.get(API_KEY_HEADER)
        if api_key:
            try:
                user_info = self.authenticator.authenticate(api_key)
            except AuthenticationError as e:
                self.authenticator.logger.warning("API key authentication failed", error=e.message)
            else:
                request.state.user_info = user_info
                set_user_context(user_info["user_id"])
        return await call_next(request)


def require_admin(request: Request) -> Dict[str, Any]:
    """FastAPI dependency allowing only authenticated admins."""
    user_info = getattr(request.state, "user_info", None)
    if not user_info:
        raise AuthenticationError(f"{API_KEY_HEADER} header required")
    if ADMIN_ROLE not in user_info.get("roles", []):
        raise AuthorizationError("Admin role required", {"user_id": user_info.get("user_id")})
    return user_info
