"""Read-only access to uploaded SQLite database files.

SQLiteReader opens one materialized file and offers:
- list_tables(): user tables in engine order
- validate_table(): whitelist a requested table (or pick the first one)
- columns(): describe a table through pragma_table_info
- read_rows(): bounded, typed scan with optional projection and filter
- count_rows(): unbounded row count

Only `Identifier.quoted` values are interpolated into SQL. Filter values and
the row limit are always bound parameters.
"""

import sqlite3
from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path
from typing import Any

import structlog

from dbhub.errors import BadRequest, InvalidDatabase, QueryFailed, TableNotFound
from dbhub.identifiers import Identifier, whitelist

logger = structlog.get_logger()

BINARY_PLACEHOLDER = "<binary>"
CSV_NULL = "NULL"

FILTER_OPERATORS = ("=", "!=", "<", "<=", ">", ">=", "LIKE")


class CellType(IntEnum):
    """Type tag of a decoded cell. IMAGE is reserved for image blobs."""

    BINARY = 0
    IMAGE = 1
    NULL = 2
    TEXT = 3
    INTEGER = 4
    FLOAT = 5


@dataclass(frozen=True)
class Cell:
    name: str
    type: CellType
    value: str | None

    def to_dict(self) -> dict[str, Any]:
        return {"Name": self.name, "Type": int(self.type), "Value": self.value}

    def to_csv(self) -> str:
        return CSV_NULL if self.type == CellType.NULL else self.value


@dataclass(frozen=True)
class RowFilter:
    """A single `column operator value` condition."""

    column: str
    operator: str
    value: str


@dataclass
class ResultSet:
    """Bounded rows read from one table, plus the table's true row count."""

    table: str
    columns: list[str]
    rows: list[list[Cell]] = field(default_factory=list)
    total_rows: int = 0

    @property
    def row_count(self) -> int:
        return len(self.rows)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ColNames": self.columns,
            "ColCount": len(self.columns),
            "RowCount": self.row_count,
            "TotalRows": self.total_rows,
            "Tablename": self.table,
            "Records": [[cell.to_dict() for cell in row] for row in self.rows],
        }

    def csv_rows(self) -> list[list[str]]:
        return [[cell.to_csv() for cell in row] for row in self.rows]


def decode_cell(name: str, value: Any) -> Cell:
    """Decode one stored value by its dynamic SQLite type."""
    if value is None:
        return Cell(name, CellType.NULL, None)
    if isinstance(value, int):
        return Cell(name, CellType.INTEGER, str(value))
    if isinstance(value, float):
        return Cell(name, CellType.FLOAT, f"{value:.4f}")
    if isinstance(value, (bytes, bytearray, memoryview)):
        return Cell(name, CellType.BINARY, BINARY_PLACEHOLDER)
    return Cell(name, CellType.TEXT, str(value))


def _decode_text(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace")


class SQLiteReader:
    """
    Reader over one SQLite file, opened read-only.

    Usage:
        with SQLiteReader(path) as reader:
            table = reader.validate_table(requested)
            result = reader.read_rows(table, row_limit=10)
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._tables: list[str] | None = None
        self._columns: dict[str, list[str]] = {}
        try:
            self._conn = sqlite3.connect(
                self.path.resolve().as_uri() + "?mode=ro",
                uri=True,
                check_same_thread=False,
            )
        except sqlite3.Error as e:
            logger.warning("sqlite_open_failed", path=str(self.path), error=str(e))
            raise InvalidDatabase() from e
        self._conn.text_factory = _decode_text

    def __enter__(self) -> "SQLiteReader":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        try:
            self._conn.close()
        except sqlite3.Error as e:
            logger.warning("sqlite_close_failed", path=str(self.path), error=str(e))

    def list_tables(self) -> list[str]:
        """
        List user tables in the order the engine returns them.

        Raises:
            InvalidDatabase: If the file is not SQLite or has no tables
        """
        if self._tables is not None:
            return self._tables

        try:
            rows = self._conn.execute(
                "SELECT name FROM sqlite_master "
                "WHERE type = 'table' AND name NOT LIKE 'sqlite\\_%' ESCAPE '\\'"
            ).fetchall()
        except sqlite3.DatabaseError as e:
            logger.warning("sqlite_list_tables_failed", path=str(self.path), error=str(e))
            raise InvalidDatabase(
                "Error reading database. Possibly encrypted or not a database?"
            ) from e

        tables = [row[0] for row in rows]
        if not tables:
            raise InvalidDatabase("Database has no tables")

        self._tables = tables
        return tables

    def validate_table(self, name: str | None = None) -> Identifier:
        """
        Whitelist a requested table. With no name, use the first table.

        Raises:
            TableNotFound: If the table does not exist in this file
        """
        tables = self.list_tables()
        if name is None or name == "":
            return Identifier(tables[0])
        return whitelist(name, tables, error=TableNotFound, kind="table")

    def columns(self, table: Identifier) -> list[str]:
        """Column names of a validated table, in declaration order."""
        if table.name not in self._columns:
            try:
                rows = self._conn.execute(
                    "SELECT name FROM pragma_table_info(?) ORDER BY cid", [table.name]
                ).fetchall()
            except sqlite3.Error as e:
                logger.error("sqlite_describe_failed", table=table.name, error=str(e))
                raise QueryFailed() from e
            self._columns[table.name] = [row[0] for row in rows]
        return self._columns[table.name]

    def read_rows(
        self,
        table: Identifier,
        row_limit: int,
        columns: list[str] | None = None,
        row_filter: RowFilter | None = None,
        skip_incomplete: bool = False,
    ) -> ResultSet:
        """
        Read at most row_limit rows from a validated table.

        Args:
            table: Table identifier from validate_table()
            row_limit: Hard maximum number of rows, at least 1
            columns: Restrict output to these columns, in this order
            row_filter: Optional single-column condition
            skip_incomplete: Leave out rows where a selected cell is NULL or
                binary (chart series need plottable values only)

        Raises:
            BadRequest: Invalid row limit or filter operator
            InvalidIdentifier: Unknown projected or filter column
            QueryFailed: SQLite failed after validation
        """
        if isinstance(row_limit, bool) or not isinstance(row_limit, int) or row_limit < 1:
            raise BadRequest("Row limit must be a positive integer")

        available = self.columns(table)
        projected = [whitelist(c, available, kind="column") for c in columns] if columns else []

        params: list[Any] = []
        conditions: list[str] = []

        if row_filter is not None:
            if row_filter.operator not in FILTER_OPERATORS:
                raise BadRequest(
                    "Invalid filter operator",
                    details={"allowed": list(FILTER_OPERATORS)},
                )
            filter_column = whitelist(row_filter.column, available, kind="column")
            conditions.append(f"{filter_column.quoted} {row_filter.operator} ?")
            params.append(row_filter.value)

        if skip_incomplete:
            targets = projected or [Identifier(c) for c in available]
            for column in targets:
                conditions.append(
                    f"{column.quoted} IS NOT NULL AND typeof({column.quoted}) != 'blob'"
                )

        select_list = ", ".join(c.quoted for c in projected) if projected else "*"
        query = f"SELECT {select_list} FROM {table.quoted}"
        if conditions:
            query += " WHERE " + " AND ".join(f"({c})" for c in conditions)
        query += " LIMIT ?"
        params.append(row_limit)

        try:
            cursor = self._conn.execute(query, params)
            names = [d[0] for d in cursor.description]
            rows = [
                [decode_cell(names[i], value) for i, value in enumerate(raw)]
                for raw in cursor.fetchmany(row_limit)
            ]
        except sqlite3.Error as e:
            logger.error("sqlite_read_failed", table=table.name, error=str(e))
            raise QueryFailed() from e

        return ResultSet(table=table.name, columns=names, rows=rows)

    def count_rows(self, table: Identifier) -> int:
        """Total number of rows in a validated table."""
        try:
            return self._conn.execute(f"SELECT count(*) FROM {table.quoted}").fetchone()[0]
        except sqlite3.Error as e:
            logger.error("sqlite_count_failed", table=table.name, error=str(e))
            raise QueryFailed() from e
