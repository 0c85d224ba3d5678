"""Prometheus metrics endpoint router.

Exposes /metrics endpoint for Prometheus scraping.
Also refreshes the gauges that describe stored data.
"""

import sqlite3
from pathlib import Path

import duckdb
import structlog
from fastapi import APIRouter
from fastapi.responses import PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from dbhub.dependencies import ServicesDep
from dbhub.metrics import (
    CACHE_ENTRIES,
    DATABASE_VERSIONS_TOTAL,
    DATABASES_TOTAL,
    STORAGE_SIZE_BYTES,
    USERS_TOTAL,
    set_service_info,
)
from dbhub.services import Services

logger = structlog.get_logger()

router = APIRouter(tags=["metrics"])


def get_directory_size(path: Path) -> int:
    """Calculate total size of all files in a directory recursively."""
    total = 0
    if path.exists():
        for item in path.rglob("*"):
            if item.is_file():
                try:
                    total += item.stat().st_size
                except OSError:
                    continue
    return total


def collect_storage_metrics(services: Services) -> None:
    """Collect current storage metrics from the metadata DB and filesystem."""
    config = services.config
    try:
        USERS_TOTAL.set(services.metadata.count_users())
        DATABASES_TOTAL.set(services.metadata.count_databases())
        DATABASE_VERSIONS_TOTAL.set(services.metadata.count_database_versions())
        CACHE_ENTRIES.set(services.metadata.count_cache_entries())

        metadata_path = config.metadata_db_path
        if metadata_path.exists():
            STORAGE_SIZE_BYTES.labels(type="metadata").set(metadata_path.stat().st_size)

        STORAGE_SIZE_BYTES.labels(type="temp").set(get_directory_size(config.temp_dir))

        # Objects in S3 are not walked here
        if config.object_store_backend == "filesystem":
            STORAGE_SIZE_BYTES.labels(type="objects").set(get_directory_size(config.objects_dir))

    except (duckdb.Error, OSError) as e:
        logger.error("metrics_collection_failed", error=str(e))


@router.get(
    "/metrics",
    response_class=PlainTextResponse,
    summary="Prometheus metrics endpoint",
    description="Returns metrics in Prometheus text format for scraping.",
)
def get_metrics(services: ServicesDep):
    """
    Expose Prometheus metrics.

    This endpoint is intentionally not authenticated to allow
    Prometheus scraping without credentials.
    """
    set_service_info(
        version=services.config.api_version,
        duckdb_version=duckdb.__version__,
        sqlite_version=sqlite3.sqlite_version,
    )

    collect_storage_metrics(services)

    return PlainTextResponse(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )
