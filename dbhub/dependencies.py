"""FastAPI dependencies for authentication and viewer identity.

Two kinds of credentials are accepted as `Authorization: Bearer <key>`:

1. ADMIN_API_KEY (from ENV) - can register users
2. User API key (hash stored in DB) - identifies the viewer

Read endpoints work anonymously; a supplied key must be valid though, so a
typo never silently downgrades a request to the public view.

Usage in routers:
    @router.post("/users", dependencies=[Depends(require_admin)])
    def create_user(...):
        ...

    @router.get("/x/table/{owner}/{database}")
    def table_view(viewer: Annotated[str | None, Depends(get_viewer)], ...):
        ...
"""

from typing import Annotated

import duckdb
import structlog
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from dbhub.auth import get_key_prefix, verify_key_hash
from dbhub.config import settings
from dbhub.errors import UpstreamUnavailable
from dbhub.services import Services, get_services

logger = structlog.get_logger(__name__)

# Security scheme for Swagger UI; auto_error=False keeps anonymous reads possible
security = HTTPBearer(
    scheme_name="Bearer Auth",
    description="Enter your API key (ADMIN_API_KEY or a user key)",
    auto_error=False,
)


class AuthenticationError(HTTPException):
    """Raised when authentication fails."""

    def __init__(self, detail: str = "Invalid or missing API key"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "unauthorized", "message": detail},
            headers={"WWW-Authenticate": "Bearer"},
        )


def verify_admin_key(api_key: str) -> bool:
    """Check an API key against the configured admin key."""
    if not settings.admin_api_key:
        logger.warning("auth_admin_key_not_configured")
        return False

    # Admin key is configured in plain text, not hashed
    return api_key == settings.admin_api_key


def lookup_user_key(services: Services, api_key: str) -> str | None:
    """Return the username owning an API key, or None."""
    key_prefix = get_key_prefix(api_key)
    try:
        candidates = services.metadata.get_users_by_key_prefix(key_prefix)
    except duckdb.Error as e:
        logger.error("auth_key_lookup_failed", key_prefix=key_prefix, error=str(e))
        raise UpstreamUnavailable() from e

    if not candidates:
        logger.debug("auth_key_not_found", key_prefix=key_prefix)
        return None

    # Prefixes are not unique, the hash decides
    for user in candidates:
        if verify_key_hash(api_key, user["key_hash"]):
            return user["username"]

    logger.warning("auth_key_hash_mismatch", key_prefix=key_prefix)
    return None


def get_viewer(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
    services: Annotated[Services, Depends(get_services)],
) -> str | None:
    """
    Identify the viewer of a request.

    Returns:
        The username, or None for anonymous requests

    Raises:
        AuthenticationError: If a key was supplied but does not match a user
    """
    if credentials is None or not credentials.credentials:
        return None

    username = lookup_user_key(services, credentials.credentials)
    if username is None:
        logger.warning("auth_invalid_user_key", key_prefix=get_key_prefix(credentials.credentials))
        raise AuthenticationError("Invalid API key")

    return username


def require_user(
    viewer: Annotated[str | None, Depends(get_viewer)],
) -> str:
    """Dependency for endpoints that need a logged in user."""
    if viewer is None:
        logger.warning("auth_missing_credentials")
        raise AuthenticationError("You need to be logged in")
    return viewer


def require_admin(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> str:
    """
    Dependency that requires the admin key.

    Raises:
        AuthenticationError: If the key is missing or not the admin key
    """
    if credentials is None or not credentials.credentials:
        logger.warning("auth_missing_credentials")
        raise AuthenticationError("Missing or invalid credentials")

    api_key = credentials.credentials
    if verify_admin_key(api_key):
        logger.info("auth_admin_access_granted")
        return api_key

    if not settings.admin_api_key:
        logger.error("auth_admin_key_not_configured")
        raise AuthenticationError("Admin API key not configured on server")

    logger.warning("auth_admin_access_denied", key_prefix=get_key_prefix(api_key))
    raise AuthenticationError("Invalid admin API key")


Viewer = Annotated[str | None, Depends(get_viewer)]
LoggedInUser = Annotated[str, Depends(require_user)]
ServicesDep = Annotated[Services, Depends(get_services)]
