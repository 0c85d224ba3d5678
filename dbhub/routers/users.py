"""User endpoints: registration, user pages, preferences and stars."""

from typing import Any

import duckdb
import structlog
from fastapi import APIRouter, Depends, HTTPException, status

from dbhub.auth import (
    generate_api_key,
    generate_bucket_name,
    get_key_prefix,
    hash_key,
    is_valid_username,
)
from dbhub.dependencies import LoggedInUser, ServicesDep, Viewer, require_admin
from dbhub.errors import NotFound, UpstreamUnavailable
from dbhub.models.responses import (
    DatabaseSummary,
    PreferencesResponse,
    PreferencesUpdate,
    StarEntry,
    StarredDatabase,
    StarsResponse,
    UserCreate,
    UserCreateResponse,
    UserPageResponse,
    error_responses,
)
from dbhub.resolver import resolve
from dbhub.services import Services

logger = structlog.get_logger()
router = APIRouter(tags=["users"])


@router.post(
    "/users",
    response_model=UserCreateResponse,
    status_code=status.HTTP_201_CREATED,
    responses=error_responses(400, 401, 409),
    summary="Register user",
    description="Register a new user. The API key is returned only in this response.",
    dependencies=[Depends(require_admin)],
)
def create_user(request: UserCreate, services: ServicesDep) -> UserCreateResponse:
    if not is_valid_username(request.username):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "invalid_username",
                "message": "Usernames are 2-63 lowercase letters, digits or ._- characters",
                "details": {"username": request.username},
            },
        )

    if services.metadata.get_user(request.username) is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "error": "user_exists",
                "message": f"User {request.username} already exists",
                "details": {"username": request.username},
            },
        )

    bucket = generate_bucket_name()
    services.object_store.ensure_bucket(bucket)

    api_key = generate_api_key()
    try:
        user = services.metadata.create_user(
            username=request.username,
            object_bucket=bucket,
            key_hash=hash_key(api_key),
            key_prefix=get_key_prefix(api_key),
            email=request.email,
        )
    except duckdb.ConstraintException as e:
        logger.warning("user_create_conflict", username=request.username, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "error": "user_exists",
                "message": f"User {request.username} already exists",
                "details": {"username": request.username},
            },
        ) from e

    return UserCreateResponse(
        username=user["username"],
        email=user["email"],
        max_rows=user["max_rows"],
        api_key=api_key,
    )


@router.get(
    "/users/{username}",
    response_model=UserPageResponse,
    response_model_exclude_none=True,
    responses=error_responses(401, 404),
    summary="User page",
    description=(
        "List a user's databases. Everyone sees the latest public version of "
        "each database; the user also sees private versions and their stars."
    ),
)
def user_page(username: str, viewer: Viewer, services: ServicesDep) -> UserPageResponse:
    metadata = services.metadata
    if metadata.get_user(username) is None:
        raise NotFound("Unknown user", details={"username": username})

    page = UserPageResponse(
        username=username,
        public_databases=[
            DatabaseSummary(**d) for d in metadata.list_user_databases(username, public=True)
        ],
    )
    if viewer == username:
        page.private_databases = [
            DatabaseSummary(**d) for d in metadata.list_user_databases(username, public=False)
        ]
        page.starred = [StarredDatabase(**s) for s in metadata.list_user_stars(username)]
    return page


@router.get(
    "/x/pref",
    response_model=PreferencesResponse,
    responses=error_responses(401),
    summary="Get preferences",
)
def get_preferences(username: LoggedInUser, services: ServicesDep) -> PreferencesResponse:
    return PreferencesResponse(
        username=username,
        max_rows=services.metadata.get_user_max_rows(username),
    )


@router.put(
    "/x/pref",
    response_model=PreferencesResponse,
    responses=error_responses(401),
    summary="Update preferences",
    description="Set the number of rows shown in table views (1-500).",
)
def update_preferences(
    update: PreferencesUpdate, username: LoggedInUser, services: ServicesDep
) -> PreferencesResponse:
    services.metadata.set_user_max_rows(username, update.max_rows)
    return PreferencesResponse(username=username, max_rows=update.max_rows)


def _visible_database(
    services: Services, owner: str, database: str, viewer: str | None
) -> dict[str, Any]:
    """
    The database row, provided the viewer can see at least one version.

    Raises:
        NotFound: If the database does not exist or has no visible version
        UpstreamUnavailable: If the metadata database cannot be queried
    """
    resolve(services.metadata, owner, database, None, viewer)
    try:
        record = services.metadata.get_database(owner, database)
    except duckdb.Error as e:
        logger.error("star_lookup_failed", owner=owner, database=database, error=str(e))
        raise UpstreamUnavailable() from e
    if record is None:
        raise NotFound()
    return record


@router.post(
    "/x/star/{owner}/{database}",
    response_model=int,
    responses=error_responses(503),
    summary="Toggle star",
    description=(
        "Star or unstar a database for the logged-in user. Returns the new "
        "star count, or -1 when not logged in or the database is not visible."
    ),
)
def toggle_star(owner: str, database: str, viewer: Viewer, services: ServicesDep) -> int:
    if viewer is None:
        return -1

    try:
        record = _visible_database(services, owner, database, viewer)
    except NotFound:
        logger.info("star_unknown_database", owner=owner, database=database, viewer=viewer)
        return -1

    try:
        services.metadata.toggle_star(record["id"], viewer)
        return services.metadata.count_stars(record["id"])
    except duckdb.Error as e:
        logger.error("star_toggle_failed", owner=owner, database=database, error=str(e))
        raise UpstreamUnavailable() from e


@router.get(
    "/stars/{owner}/{database}",
    response_model=StarsResponse,
    responses=error_responses(401, 404, 503),
    summary="List stars",
    description="Users who starred a database, most recent first.",
)
def list_stars(owner: str, database: str, viewer: Viewer, services: ServicesDep) -> StarsResponse:
    record = _visible_database(services, owner, database, viewer)

    try:
        stars = [StarEntry(**s) for s in services.metadata.list_stars(record["id"])]
    except duckdb.Error as e:
        logger.error("star_list_failed", owner=owner, database=database, error=str(e))
        raise UpstreamUnavailable() from e
    return StarsResponse(owner=owner, database=database, count=len(stars), stars=stars)
