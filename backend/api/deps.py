import hmac
import os
from typing import Optional

from fastapi import Header, HTTPException, Request, status

from config import TRUTHY_ENV_VALUES
from engine.errors import (
    GraphMemoryError,
    NotFoundError,
    OperationFailedError,
    ValidationFailedError,
)

MCP_API_KEY_ENV = "MCP_API_KEY"
MCP_API_KEY_HEADER = "X-MCP-API-Key"
MCP_API_KEY_ALLOW_INSECURE_LOCAL_ENV = "MCP_API_KEY_ALLOW_INSECURE_LOCAL"
_LOOPBACK_CLIENT_HOSTS = {"127.0.0.1", "::1", "localhost"}


def get_configured_api_key() -> str:
    return str(os.getenv(MCP_API_KEY_ENV) or "").strip()


def allow_insecure_local() -> bool:
    value = str(os.getenv(MCP_API_KEY_ALLOW_INSECURE_LOCAL_ENV) or "").strip().lower()
    return value in TRUTHY_ENV_VALUES


def is_loopback_host(host: Optional[str]) -> bool:
    return str(host or "").strip().lower() in _LOOPBACK_CLIENT_HOSTS


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not isinstance(authorization, str):
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token if token else None


def check_api_key(
    client_host: Optional[str],
    header_key: Optional[str],
    authorization: Optional[str],
) -> Optional[str]:
    """Return a rejection reason, or None when the caller may proceed."""
    configured = get_configured_api_key()
    if not configured:
        if allow_insecure_local() and is_loopback_host(client_host):
            return None
        if allow_insecure_local():
            return "insecure_local_override_requires_loopback"
        return "api_key_not_configured"

    provided = str(header_key or "").strip() or extract_bearer_token(authorization)
    if not provided or not hmac.compare_digest(provided, configured):
        return "invalid_or_missing_api_key"
    return None


async def require_api_key(
    request: Request,
    x_mcp_api_key: Optional[str] = Header(default=None, alias=MCP_API_KEY_HEADER),
    authorization: Optional[str] = Header(default=None, alias="Authorization"),
) -> None:
    client = getattr(request, "client", None)
    reason = check_api_key(getattr(client, "host", None), x_mcp_api_key, authorization)
    if reason is not None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "auth_failed", "reason": reason},
            headers={"WWW-Authenticate": "Bearer"},
        )


def http_error(exc: GraphMemoryError) -> HTTPException:
    """Map an engine error onto the matching HTTP status."""
    if isinstance(exc, NotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, ValidationFailedError):
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
    elif isinstance(exc, OperationFailedError):
        code = status.HTTP_409_CONFLICT
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(status_code=code, detail=str(exc))
