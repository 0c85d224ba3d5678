"""Per-request read pipeline shared by the database read endpoints.

    authorize -> resolve location (cached) -> rendered result cache lookup
    -> fetch object -> open file -> validate table -> read -> serialize
    -> cache store

Request validation happens before any storage I/O. Results are cached only
after they were fully produced; a failure from the fetch step onward writes
nothing. The rendered-result key contains the resolved version, so a new
upload shows up as soon as the cached location is dropped or expires.
"""

import time
from dataclasses import dataclass
from typing import Any, Callable

import duckdb
import structlog

from dbhub import cache_keys, metrics
from dbhub.errors import BadRequest, DBHubError, UpstreamUnavailable
from dbhub.identifiers import Identifier
from dbhub.object_store import materialize
from dbhub.reader import FILTER_OPERATORS, RowFilter, SQLiteReader
from dbhub.resolver import StoredObject, resolve
from dbhub.services import Services

logger = structlog.get_logger()

Render = Callable[[SQLiteReader, Identifier, StoredObject], Any]


@dataclass(frozen=True)
class ReadRequest:
    """Everything that determines the shape of one read."""

    namespace: str
    owner: str
    database: str
    viewer: str | None
    row_limit: int
    version: int | None = None
    table: str | None = None
    columns: tuple[str, ...] = ()
    row_filter: RowFilter | None = None
    skip_incomplete: bool = False

    def fingerprint(self) -> list[Any]:
        """Request parameters in a fixed order, excluding identity fields."""
        row_filter = self.row_filter
        return [
            self.table or "",
            self.row_limit,
            list(self.columns),
            [row_filter.column, row_filter.operator, row_filter.value] if row_filter else None,
            self.skip_incomplete,
        ]


class ReadPipeline:
    """Runs read requests against the injected services."""

    def __init__(self, services: Services):
        self.services = services
        self.config = services.config

    # ----------------------------------------
    # Building blocks
    # ----------------------------------------

    def row_limit_for(self, viewer: str | None) -> int:
        """Rows shown in table views: a fixed default for anonymous viewers,
        the user's preference otherwise."""
        if viewer is None:
            return self.config.anonymous_max_rows
        try:
            max_rows = self.services.metadata.get_user_max_rows(viewer)
        except duckdb.Error as e:
            logger.error("max_rows_lookup_failed", viewer=viewer, error=str(e))
            raise UpstreamUnavailable() from e
        return max(1, min(max_rows, self.config.user_max_rows_ceiling))

    def locate(
        self, owner: str, database: str, version: int | None, viewer: str | None
    ) -> StoredObject:
        """Resolve a database to its stored object, through the location cache."""
        cache = self.services.cache
        key = cache_keys.location_key(owner, database, version, viewer)

        cached, found = cache.get_json(key)
        if found:
            try:
                return StoredObject.from_dict(cached)
            except (TypeError, ValueError) as e:
                logger.warning("cached_location_invalid", error=str(e))

        stored = resolve(self.services.metadata, owner, database, version, viewer)
        cache.put_json(key, stored.to_dict(), self.config.cache_location_ttl_seconds)
        return stored

    def _validate(self, request: ReadRequest) -> None:
        if request.row_limit < 1:
            raise BadRequest("Row limit must be a positive integer")
        if request.row_filter is not None and request.row_filter.operator not in FILTER_OPERATORS:
            raise BadRequest(
                "Invalid filter operator",
                details={"allowed": list(FILTER_OPERATORS)},
            )

    def run(self, request: ReadRequest, render: Render) -> Any:
        """
        Execute one read request.

        Args:
            request: The request shape
            render: Produces the JSON-serializable payload from an open
                reader, the validated table and the resolved object

        Returns:
            The payload, from cache or freshly rendered
        """
        self._validate(request)

        stored = self.locate(request.owner, request.database, request.version, request.viewer)

        key = cache_keys.build_key(
            request.namespace,
            request.owner,
            request.database,
            request.viewer,
            stored.version,
            *request.fingerprint(),
        )
        cached, found = self.services.cache.get_json(key)
        if found:
            logger.debug("result_cache_hit", namespace=request.namespace)
            return cached

        start_time = time.time()
        try:
            with materialize(
                self.services.object_store,
                stored.bucket,
                stored.object_id,
                self.config.temp_dir,
            ) as path, SQLiteReader(path) as reader:
                table = reader.validate_table(request.table)
                payload = render(reader, table, stored)
        except DBHubError as e:
            metrics.SQLITE_READS_TOTAL.labels(endpoint=request.namespace, status=e.error).inc()
            raise

        metrics.SQLITE_READS_TOTAL.labels(endpoint=request.namespace, status="success").inc()
        logger.info(
            "database_read",
            namespace=request.namespace,
            owner=request.owner,
            database=request.database,
            version=stored.version,
            duration_ms=int((time.time() - start_time) * 1000),
        )

        self.services.cache.put_json(key, payload, self.config.cache_result_ttl_seconds)
        return payload

    # ----------------------------------------
    # Endpoint instantiations
    # ----------------------------------------

    def table_view(
        self,
        owner: str,
        database: str,
        viewer: str | None,
        table: str | None = None,
        version: int | None = None,
    ) -> Any:
        """Table rows as a record set, or [] when the table is empty."""
        request = ReadRequest(
            namespace=cache_keys.TABLE_VIEW,
            owner=owner,
            database=database,
            viewer=viewer,
            row_limit=self.row_limit_for(viewer),
            version=version,
            table=table,
        )

        def render(reader: SQLiteReader, table_id: Identifier, stored: StoredObject) -> Any:
            result = reader.read_rows(table_id, request.row_limit)
            result.total_rows = reader.count_rows(table_id)
            metrics.SQLITE_ROWS_RETURNED.inc(result.row_count)
            if result.row_count == 0:
                return []
            return result.to_dict()

        return self.run(request, render)

    def csv_export(
        self,
        owner: str,
        database: str,
        viewer: str | None,
        table: str,
        version: int | None = None,
    ) -> list[list[str]]:
        """Raw cell strings of a table, one list per row."""
        if not table:
            raise BadRequest("No table name given")

        request = ReadRequest(
            namespace=cache_keys.CSV_EXPORT,
            owner=owner,
            database=database,
            viewer=viewer,
            row_limit=self.config.csv_max_rows,
            version=version,
            table=table,
        )

        def render(reader: SQLiteReader, table_id: Identifier, stored: StoredObject) -> Any:
            result = reader.read_rows(table_id, request.row_limit)
            metrics.SQLITE_ROWS_RETURNED.inc(result.row_count)
            return result.csv_rows()

        return self.run(request, render)

    def vis_data(
        self,
        owner: str,
        database: str,
        viewer: str | None,
        table: str | None = None,
        version: int | None = None,
        x_column: str | None = None,
        y_column: str | None = None,
        row_filter: RowFilter | None = None,
    ) -> Any:
        """
        Chart data: the whole table, or only the X and Y series when both
        columns are given. Series reads leave out NULL and binary cells.
        """
        columns: tuple[str, ...] = ()
        if x_column and y_column:
            columns = (x_column, y_column)

        request = ReadRequest(
            namespace=cache_keys.VIS_DATA,
            owner=owner,
            database=database,
            viewer=viewer,
            row_limit=self.config.vis_data_max_rows,
            version=version,
            table=table,
            columns=columns,
            row_filter=row_filter,
            skip_incomplete=bool(columns),
        )

        def render(reader: SQLiteReader, table_id: Identifier, stored: StoredObject) -> Any:
            result = reader.read_rows(
                table_id,
                request.row_limit,
                columns=list(request.columns) or None,
                row_filter=request.row_filter,
                skip_incomplete=request.skip_incomplete,
            )
            result.total_rows = reader.count_rows(table_id)
            metrics.SQLITE_ROWS_RETURNED.inc(result.row_count)
            return result.to_dict()

        return self.run(request, render)

    def database_page(
        self,
        owner: str,
        database: str,
        viewer: str | None,
        table: str | None = None,
        version: int | None = None,
    ) -> dict[str, Any]:
        """Database metadata, table list and the first rows of one table."""
        request = ReadRequest(
            namespace=cache_keys.DATABASE_PAGE,
            owner=owner,
            database=database,
            viewer=viewer,
            row_limit=self.row_limit_for(viewer),
            version=version,
            table=table,
        )

        def render(reader: SQLiteReader, table_id: Identifier, stored: StoredObject) -> Any:
            result = reader.read_rows(table_id, request.row_limit)
            result.total_rows = reader.count_rows(table_id)
            metrics.SQLITE_ROWS_RETURNED.inc(result.row_count)
            return {
                "Owner": stored.owner,
                "Database": stored.database,
                "Version": stored.version,
                "Public": stored.public,
                "Size": stored.size_bytes,
                "SHA256": stored.sha256,
                "LastModified": stored.last_modified,
                "Tables": reader.list_tables(),
                "MaxRows": request.row_limit,
                "Data": result.to_dict(),
            }

        return self.run(request, render)

    def vis_page(
        self,
        owner: str,
        database: str,
        viewer: str | None,
        table: str | None = None,
        version: int | None = None,
    ) -> dict[str, Any]:
        """Visualisation page data: tables, column names and up to 1000 rows."""
        request = ReadRequest(
            namespace=cache_keys.VIS_PAGE,
            owner=owner,
            database=database,
            viewer=viewer,
            row_limit=self.config.vis_page_max_rows,
            version=version,
            table=table,
        )

        def render(reader: SQLiteReader, table_id: Identifier, stored: StoredObject) -> Any:
            result = reader.read_rows(table_id, request.row_limit)
            result.total_rows = reader.count_rows(table_id)
            metrics.SQLITE_ROWS_RETURNED.inc(result.row_count)
            return {
                "Owner": stored.owner,
                "Database": stored.database,
                "Version": stored.version,
                "Tables": reader.list_tables(),
                "ColNames": reader.columns(table_id),
                "Data": result.to_dict(),
            }

        return self.run(request, render)
