"""Backend endpoints: health check."""

from pathlib import Path

import structlog
from fastapi import APIRouter, HTTPException, status

from dbhub.dependencies import ServicesDep
from dbhub.models.responses import ErrorResponse, HealthResponse

logger = structlog.get_logger()
router = APIRouter(tags=["backend"])


def _check_path_accessible(path: Path) -> bool:
    """Check if a path exists and is accessible."""
    try:
        return path.exists() and path.is_dir()
    except (OSError, PermissionError):
        return False


@router.get(
    "/health",
    response_model=HealthResponse,
    responses={503: {"model": ErrorResponse}},
    summary="Health check",
    description="Check if the service is healthy and storage is accessible.",
)
def health_check(services: ServicesDep) -> HealthResponse:
    """
    Perform health check.

    Validates:
    - Local storage paths are accessible
    - The object store answers
    """
    config = services.config
    component_status = {
        name: _check_path_accessible(path) for name, path in config.storage_paths.items()
    }
    component_status["object_store"] = services.object_store.is_available()
    all_healthy = all(component_status.values())

    logger.info(
        "health_check",
        status="healthy" if all_healthy else "unhealthy",
        component_status=component_status,
    )

    if not all_healthy:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "error": "storage_unavailable",
                "message": "One or more storage components are not accessible",
                "details": component_status,
            },
        )

    return HealthResponse(
        status="healthy",
        version=config.api_version,
        storage_available=True,
        details=component_status,
    )
