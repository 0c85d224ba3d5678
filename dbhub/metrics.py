"""Prometheus metrics definitions for the DBHub API.

This module defines all Prometheus metrics used for observability:
- HTTP request metrics (count, duration, in-flight)
- Result cache metrics (hits, misses, errors per namespace)
- Object store and SQLite read metrics
- Upload/download counters
- Metadata DB query metrics

Process metrics (CPU, memory, file descriptors) come from the collectors
prometheus_client registers by default.
"""

import time

from prometheus_client import Counter, Gauge, Histogram, Info

# =============================================================================
# Service Health Metrics
# =============================================================================

SERVICE_UP = Gauge(
    "dbhub_api_up",
    "Whether the DBHub API service is up (1) or down (0)"
)

SERVICE_START_TIME = Gauge(
    "dbhub_api_start_time_seconds",
    "Unix timestamp when the service started"
)

SERVICE_START_TIME.set(time.time())
SERVICE_UP.set(1)

# =============================================================================
# HTTP Request Metrics
# =============================================================================

REQUEST_COUNT = Counter(
    "dbhub_api_requests_total",
    "Total number of HTTP requests",
    ["method", "endpoint", "status_code"]
)

REQUEST_DURATION = Histogram(
    "dbhub_api_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

REQUEST_IN_FLIGHT = Gauge(
    "dbhub_api_requests_in_flight",
    "Number of HTTP requests currently being processed",
    ["method"]
)

# =============================================================================
# Error Metrics
# =============================================================================

ERROR_COUNT = Counter(
    "dbhub_api_errors_total",
    "Total number of errors by type",
    ["type", "endpoint"]
)

# =============================================================================
# Result Cache Metrics
# =============================================================================

CACHE_HITS = Counter(
    "dbhub_cache_hits_total",
    "Total number of result cache hits",
    ["namespace"]
)

CACHE_MISSES = Counter(
    "dbhub_cache_misses_total",
    "Total number of result cache misses (including expired entries)",
    ["namespace"]
)

CACHE_ERRORS = Counter(
    "dbhub_cache_errors_total",
    "Result cache backend or decode failures",
    ["operation"]  # get, put, decode, purge
)

CACHE_ENTRIES = Gauge(
    "dbhub_cache_entries",
    "Entries physically present in the result cache"
)

# =============================================================================
# Object Store Metrics
# =============================================================================

OBJECT_STORE_OPERATIONS = Counter(
    "dbhub_object_store_operations_total",
    "Object store operations",
    ["operation", "status"]  # operation: get, put
)

OBJECT_FETCH_BYTES = Counter(
    "dbhub_object_fetch_bytes_total",
    "Bytes materialized from the object store to temporary files"
)

OBJECT_FETCH_DURATION = Histogram(
    "dbhub_object_fetch_duration_seconds",
    "Time to materialize a stored database to a temporary file",
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0]
)

# =============================================================================
# SQLite Read Metrics
# =============================================================================

SQLITE_READS_TOTAL = Counter(
    "dbhub_sqlite_reads_total",
    "Bounded table reads",
    ["endpoint", "status"]
)

SQLITE_ROWS_RETURNED = Counter(
    "dbhub_sqlite_rows_returned_total",
    "Rows returned by bounded table reads"
)

# =============================================================================
# Upload / Download Metrics
# =============================================================================

UPLOADS_TOTAL = Counter(
    "dbhub_uploads_total",
    "Total database uploads",
    ["status"]  # success, rejected, error
)

UPLOAD_BYTES_TOTAL = Counter(
    "dbhub_upload_bytes_total",
    "Total bytes of accepted uploads"
)

UPLOAD_DURATION = Histogram(
    "dbhub_upload_duration_seconds",
    "Database upload duration in seconds",
    buckets=[0.1, 0.5, 1.0, 5.0, 30.0, 60.0]
)

DOWNLOADS_TOTAL = Counter(
    "dbhub_downloads_total",
    "Total downloads",
    ["format"]  # sqlite, csv
)

# =============================================================================
# Storage Metrics (collected on-demand)
# =============================================================================

USERS_TOTAL = Gauge(
    "dbhub_users_total",
    "Total number of registered users"
)

DATABASES_TOTAL = Gauge(
    "dbhub_databases_total",
    "Total number of databases"
)

DATABASE_VERSIONS_TOTAL = Gauge(
    "dbhub_database_versions_total",
    "Total number of stored database versions"
)

STORAGE_SIZE_BYTES = Gauge(
    "dbhub_storage_size_bytes",
    "Total storage size in bytes",
    ["type"]  # metadata, objects
)

# =============================================================================
# Metadata DB Metrics
# =============================================================================

METADATA_QUERIES_TOTAL = Counter(
    "dbhub_metadata_queries_total",
    "Total metadata database queries",
    ["operation"]  # read, write
)

METADATA_QUERY_DURATION = Histogram(
    "dbhub_metadata_query_duration_seconds",
    "Metadata query duration in seconds",
    ["operation"],  # read, write
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5]
)

METADATA_CONNECTIONS_ACTIVE = Gauge(
    "dbhub_metadata_connections_active",
    "Active connections to metadata.duckdb"
)

# =============================================================================
# Service Info
# =============================================================================

SERVICE_INFO = Info(
    "dbhub_api_service",
    "DBHub API Service information"
)


def set_service_info(version: str, duckdb_version: str, sqlite_version: str) -> None:
    """Set service info labels."""
    SERVICE_INFO.info({
        "version": version,
        "duckdb_version": duckdb_version,
        "sqlite_version": sqlite_version,
    })
