"""Database read endpoints: table view, CSV export, download, chart data, pages.

All endpoints address a database as /x/<action>/{owner}/{database} and accept
optional `table` and `version` query parameters. Anonymous requests see
public versions only.
"""

import csv
import io
import re
from typing import Annotated, Any, Iterator

import duckdb
import structlog
from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response, StreamingResponse
from starlette.background import BackgroundTask

from dbhub.dependencies import ServicesDep, Viewer
from dbhub.errors import BadRequest, UpstreamUnavailable
from dbhub.metrics import DOWNLOADS_TOTAL
from dbhub.models.responses import (
    DatabasePageResponse,
    RecordSetResponse,
    VisPageResponse,
    error_responses,
)
from dbhub.object_store import COPY_CHUNK_SIZE
from dbhub.pipeline import ReadPipeline
from dbhub.reader import RowFilter
from dbhub.services import Services

logger = structlog.get_logger()
router = APIRouter(prefix="/x", tags=["databases"])

SQLITE_MEDIA_TYPE = "application/x-sqlite3"
_FILENAME_UNSAFE = re.compile(r"[^A-Za-z0-9._-]")

READ_ERRORS = error_responses(400, 401, 403, 404, 422, 500, 503)

TableParam = Annotated[
    str | None,
    Query(description="Table to read. Defaults to the first table."),
]
VersionParam = Annotated[
    int | None,
    Query(ge=1, description="Database version. Defaults to the latest visible one."),
]


def get_pipeline(services: ServicesDep) -> ReadPipeline:
    return ReadPipeline(services)


Pipeline = Annotated[ReadPipeline, Depends(get_pipeline)]


def _attachment(filename: str) -> str:
    return f'attachment; filename="{_FILENAME_UNSAFE.sub("_", filename)}"'


@router.get(
    "/table/{owner}/{database}",
    responses={200: {"model": RecordSetResponse}, **READ_ERRORS},
    summary="Read table rows",
    description=(
        "Return the first rows of a table as a record set. The row count is "
        "10 for anonymous viewers and the user's preference otherwise. An "
        "empty table returns []."
    ),
)
def table_view(
    owner: str,
    database: str,
    viewer: Viewer,
    pipeline: Pipeline,
    table: TableParam = None,
    version: VersionParam = None,
) -> Any:
    logger.info("table_view", owner=owner, database=database, table=table, version=version)
    return pipeline.table_view(owner, database, viewer, table=table, version=version)


@router.get(
    "/downloadcsv/{owner}/{database}",
    response_class=Response,
    responses={200: {"content": {"text/csv": {}}}, **READ_ERRORS},
    summary="Export table as CSV",
    description="Download all rows of a table as CSV. NULL cells are written as NULL.",
)
def download_csv(
    owner: str,
    database: str,
    viewer: Viewer,
    pipeline: Pipeline,
    table: TableParam = None,
    version: VersionParam = None,
) -> Response:
    logger.info("csv_export", owner=owner, database=database, table=table, version=version)
    rows = pipeline.csv_export(owner, database, viewer, table=table, version=version)

    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerows(rows)

    DOWNLOADS_TOTAL.labels(format="csv").inc()
    return Response(
        content=buffer.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": _attachment(f"{table}.csv")},
    )


@router.get(
    "/download/{owner}/{database}",
    response_class=StreamingResponse,
    responses={200: {"content": {SQLITE_MEDIA_TYPE: {}}}, **READ_ERRORS},
    summary="Download database file",
    description="Download the stored SQLite file of a database version.",
)
def download_database(
    owner: str,
    database: str,
    viewer: Viewer,
    pipeline: Pipeline,
    services: ServicesDep,
    version: VersionParam = None,
) -> StreamingResponse:
    stored = pipeline.locate(owner, database, version, viewer)
    store = services.object_store
    handle = store.get(stored.bucket, stored.object_id)

    def stream() -> Iterator[bytes]:
        try:
            while chunk := handle.read(COPY_CHUNK_SIZE):
                yield chunk
        finally:
            store.close(handle)

    logger.info(
        "database_download",
        owner=owner,
        database=database,
        version=stored.version,
        size_bytes=stored.size_bytes,
    )
    DOWNLOADS_TOTAL.labels(format="sqlite").inc()

    # Also closes the handle when the body is never iterated
    return StreamingResponse(
        stream(),
        media_type=SQLITE_MEDIA_TYPE,
        headers={
            "Content-Disposition": _attachment(stored.database),
            "Content-Length": str(stored.size_bytes),
            "X-Checksum-SHA256": stored.sha256,
        },
        background=BackgroundTask(store.close, handle),
    )


@router.get(
    "/visdata/{owner}/{database}",
    responses={200: {"model": RecordSetResponse}, **READ_ERRORS},
    summary="Chart data",
    description=(
        "Return up to 2500 rows for charting. When both xcol and ycol are "
        "given, only those columns are returned and rows with NULL or binary "
        "values in them are skipped. wherecol, wheretype and whereval add an "
        "optional row filter."
    ),
)
def vis_data(
    owner: str,
    database: str,
    viewer: Viewer,
    pipeline: Pipeline,
    table: TableParam = None,
    version: VersionParam = None,
    xcol: Annotated[str | None, Query(description="X axis column")] = None,
    ycol: Annotated[str | None, Query(description="Y axis column")] = None,
    wherecol: Annotated[str | None, Query(description="Filter column")] = None,
    wheretype: Annotated[
        str | None, Query(description="Filter operator: LIKE, =, !=, <, <=, >, >=")
    ] = None,
    whereval: Annotated[str | None, Query(description="Filter value")] = None,
) -> Any:
    row_filter = None
    if wherecol:
        if not wheretype or whereval is None:
            raise BadRequest("Filter needs wherecol, wheretype and whereval")
        row_filter = RowFilter(column=wherecol, operator=wheretype, value=whereval)
    elif wheretype or whereval:
        raise BadRequest("Filter needs wherecol, wheretype and whereval")

    logger.info(
        "vis_data",
        owner=owner,
        database=database,
        table=table,
        xcol=xcol,
        ycol=ycol,
        filtered=row_filter is not None,
    )
    return pipeline.vis_data(
        owner,
        database,
        viewer,
        table=table,
        version=version,
        x_column=xcol,
        y_column=ycol,
        row_filter=row_filter,
    )


@router.get(
    "/vis/{owner}/{database}",
    response_model=VisPageResponse,
    responses=READ_ERRORS,
    summary="Visualisation page data",
    description="Tables, column names and up to 1000 rows of the selected table.",
)
def vis_page(
    owner: str,
    database: str,
    viewer: Viewer,
    pipeline: Pipeline,
    table: TableParam = None,
    version: VersionParam = None,
) -> Any:
    logger.info("vis_page", owner=owner, database=database, table=table, version=version)
    return pipeline.vis_page(owner, database, viewer, table=table, version=version)


def _star_count(services: Services, owner: str, database: str) -> int:
    try:
        record = services.metadata.get_database(owner, database)
        return services.metadata.count_stars(record["id"]) if record else 0
    except duckdb.Error as e:
        logger.error("star_count_failed", owner=owner, database=database, error=str(e))
        raise UpstreamUnavailable() from e


@router.get(
    "/page/{owner}/{database}",
    response_model=DatabasePageResponse,
    responses=READ_ERRORS,
    summary="Database page data",
    description="Version details, table list and the first rows of one table.",
)
def database_page(
    owner: str,
    database: str,
    viewer: Viewer,
    pipeline: Pipeline,
    services: ServicesDep,
    table: TableParam = None,
    version: VersionParam = None,
) -> Any:
    logger.info("database_page", owner=owner, database=database, table=table, version=version)
    payload = pipeline.database_page(owner, database, viewer, table=table, version=version)
    # Star counts change independently of the file and are not cached
    return {**payload, "Stars": _star_count(services, owner, database)}
