"""Database upload endpoint.

An upload becomes a new version of (owner, name): the file is streamed to a
temporary file while its SHA256 is computed, opened read-only to make sure
it is a SQLite database with at least one table, stored in the owner's
bucket under a random object id, and only then registered in the metadata
DB. A failed upload leaves no version behind.
"""

import asyncio
import hashlib
import os
import re
import secrets
import string
import tempfile
import time
from pathlib import Path
from typing import Annotated, Any

import duckdb
import structlog
from fastapi import APIRouter, File, Form, HTTPException, UploadFile, status

from dbhub import cache_keys
from dbhub.dependencies import LoggedInUser, ServicesDep
from dbhub.errors import BadRequest, DBHubError, UpstreamUnavailable
from dbhub.metrics import UPLOAD_BYTES_TOTAL, UPLOAD_DURATION, UPLOADS_TOTAL
from dbhub.models.responses import ErrorResponse, UploadResponse, error_responses
from dbhub.reader import SQLiteReader
from dbhub.services import Services

logger = structlog.get_logger()
router = APIRouter(prefix="/x", tags=["uploads"])

UPLOAD_CHUNK_SIZE = 8192
OBJECT_ID_ALPHABET = string.ascii_lowercase + string.digits
OBJECT_ID_LENGTH = 8
SQLITE_MEDIA_TYPE = "application/x-sqlite3"

DATABASE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,255}$")

# Spellings accepted as booleans in the `public` form field
TRUE_VALUES = {"1", "t", "T", "TRUE", "true", "True"}
FALSE_VALUES = {"0", "f", "F", "FALSE", "false", "False"}


def parse_public_flag(value: str) -> bool:
    if value in TRUE_VALUES:
        return True
    if value in FALSE_VALUES:
        return False
    raise BadRequest("Public value incorrect", details={"public": value})


def is_valid_database_name(name: str) -> bool:
    return bool(DATABASE_NAME_PATTERN.fullmatch(name))


def generate_object_id() -> str:
    """Random object id, e.g. 'k3x9q2ab.db'."""
    return "".join(secrets.choice(OBJECT_ID_ALPHABET) for _ in range(OBJECT_ID_LENGTH)) + ".db"


def store_upload(
    services: Services,
    username: str,
    db_name: str,
    temp_path: Path,
    checksum: str,
    is_public: bool,
) -> tuple[dict[str, Any], list[str]]:
    """
    Validate a streamed upload, store it and register the new version.

    Runs in a worker thread: SQLite, the object store and DuckDB all block.

    Returns:
        The version record and the database's table names
    """
    try:
        with SQLiteReader(temp_path) as reader:
            tables = reader.list_tables()
    except DBHubError:
        UPLOADS_TOTAL.labels(status="rejected").inc()
        logger.warning("upload_not_sqlite", owner=username, database=db_name)
        raise

    try:
        bucket = services.metadata.get_user(username)["object_bucket"]
    except duckdb.Error as e:
        UPLOADS_TOTAL.labels(status="error").inc()
        logger.error("upload_user_lookup_failed", owner=username, error=str(e))
        raise UpstreamUnavailable() from e
    object_id = generate_object_id()

    try:
        services.object_store.ensure_bucket(bucket)
        with open(temp_path, "rb") as f:
            stored_size = services.object_store.put(bucket, object_id, f, SQLITE_MEDIA_TYPE)
    except DBHubError:
        UPLOADS_TOTAL.labels(status="error").inc()
        raise

    try:
        record = services.metadata.add_database_version(
            owner=username,
            name=db_name,
            object_bucket=bucket,
            object_id=object_id,
            size_bytes=stored_size,
            sha256=checksum,
            public=is_public,
        )
    except duckdb.Error as e:
        UPLOADS_TOTAL.labels(status="error").inc()
        logger.error(
            "upload_metadata_failed_object_orphaned",
            owner=username,
            database=db_name,
            bucket=bucket,
            object_id=object_id,
            error=str(e),
        )
        raise UpstreamUnavailable("Registering the upload failed") from e

    services.cache.invalidate(*cache_keys.latest_location_keys(username, db_name))
    return record, tables


@router.post(
    "/uploaddata",
    response_model=UploadResponse,
    status_code=status.HTTP_201_CREATED,
    responses={413: {"model": ErrorResponse}, **error_responses(400, 401, 422, 503)},
    summary="Upload a database",
    description=(
        "Upload a SQLite file as a new version of a database owned by the "
        "logged-in user. The database name defaults to the uploaded filename."
    ),
)
async def upload_database(
    username: LoggedInUser,
    services: ServicesDep,
    database: Annotated[UploadFile, File(description="SQLite database file")],
    public: Annotated[str, Form(description="Whether this version is public (true/false)")],
    name: Annotated[str | None, Form(description="Database name")] = None,
) -> UploadResponse:
    """
    Store an uploaded SQLite file as the next version of a database.

    Raises:
        BadRequest: Bad public flag, invalid name or empty file
        HTTPException 413: File larger than max_upload_bytes
        InvalidDatabase: Not a SQLite file, or no tables
        UpstreamUnavailable: Object store or metadata DB failed
    """
    start_time = time.time()
    config = services.config

    is_public = parse_public_flag(public)
    db_name = name or database.filename or ""
    if not is_valid_database_name(db_name):
        UPLOADS_TOTAL.labels(status="rejected").inc()
        raise BadRequest("Invalid database name", details={"name": db_name})

    logger.info("upload_start", owner=username, database=db_name, public=is_public)

    config.temp_dir.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(prefix="dbhub-upload-", suffix=".db", dir=config.temp_dir)
    temp_path = Path(temp_name)

    try:
        size_bytes = 0
        sha256_hash = hashlib.sha256()

        with os.fdopen(fd, "wb") as f:
            while chunk := await database.read(UPLOAD_CHUNK_SIZE):
                size_bytes += len(chunk)
                if size_bytes > config.max_upload_bytes:
                    UPLOADS_TOTAL.labels(status="rejected").inc()
                    raise HTTPException(
                        status_code=413,
                        detail={
                            "error": "file_too_large",
                            "message": f"File exceeds maximum size of {config.max_upload_bytes} bytes",
                            "details": {"max_size_bytes": config.max_upload_bytes},
                        },
                    )
                sha256_hash.update(chunk)
                f.write(chunk)

        if size_bytes == 0:
            UPLOADS_TOTAL.labels(status="rejected").inc()
            raise BadRequest("Database file is 0 length")

        checksum = sha256_hash.hexdigest()
        record, tables = await asyncio.to_thread(
            store_upload, services, username, db_name, temp_path, checksum, is_public
        )
    finally:
        temp_path.unlink(missing_ok=True)
        await database.close()

    duration = time.time() - start_time
    UPLOADS_TOTAL.labels(status="success").inc()
    UPLOAD_BYTES_TOTAL.inc(size_bytes)
    UPLOAD_DURATION.observe(duration)

    logger.info(
        "upload_complete",
        owner=username,
        database=db_name,
        version=record["version"],
        size_bytes=record["size_bytes"],
        sha256=checksum,
        tables=len(tables),
        duration_ms=int(duration * 1000),
    )

    return UploadResponse(
        owner=username,
        database=db_name,
        version=record["version"],
        public=record["public"],
        size_bytes=record["size_bytes"],
        sha256=record["sha256"],
        object_id=record["object_id"],
    )
