"""DuckDB metadata database: users, databases, versions, stars and cache.

The metadata store owns the mapping from (owner, name, version) to the
stored object (bucket, object id, size, sha256, public flag). Object bytes
live in the object store; see object_store.py.

Tables:
- users: account, object bucket, API key hash, max rows preference
- databases: one row per (owner, name)
- database_versions: one immutable row per uploaded version
- database_stars: (database, username) pairs
- cache_entries: backing table for the result cache (cache.py)
"""

import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Generator

import duckdb
import structlog

from dbhub.config import settings
from dbhub import metrics

logger = structlog.get_logger()

# Concurrent uploads of the same name race for the next version number
VERSION_INSERT_ATTEMPTS = 3


# ============================================
# Schema definitions
# ============================================

METADATA_SCHEMA = """
CREATE SEQUENCE IF NOT EXISTS databases_id_seq START 1;

-- Registered users
CREATE TABLE IF NOT EXISTS users (
    username VARCHAR PRIMARY KEY,
    email VARCHAR,
    object_bucket VARCHAR NOT NULL,
    pref_max_rows INTEGER NOT NULL DEFAULT 10,
    key_hash VARCHAR(64) NOT NULL,
    key_prefix VARCHAR(30) NOT NULL,
    created_at TIMESTAMP NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_users_key_prefix ON users(key_prefix);

-- Databases, one per (owner, name)
CREATE TABLE IF NOT EXISTS databases (
    id BIGINT PRIMARY KEY DEFAULT nextval('databases_id_seq'),
    owner VARCHAR NOT NULL,
    name VARCHAR NOT NULL,
    folder VARCHAR NOT NULL DEFAULT '/',
    object_bucket VARCHAR NOT NULL,
    description VARCHAR,
    created_at TIMESTAMP NOT NULL,
    last_modified TIMESTAMP,
    UNIQUE (owner, name)
);

-- Immutable versions of each database
CREATE TABLE IF NOT EXISTS database_versions (
    db_id BIGINT NOT NULL,
    version INTEGER NOT NULL,
    object_id VARCHAR NOT NULL,
    size_bytes BIGINT NOT NULL,
    sha256 VARCHAR(64) NOT NULL,
    public BOOLEAN NOT NULL DEFAULT false,
    created_at TIMESTAMP NOT NULL,
    PRIMARY KEY (db_id, version)
);

-- Stars
CREATE TABLE IF NOT EXISTS database_stars (
    db_id BIGINT NOT NULL,
    username VARCHAR NOT NULL,
    starred_at TIMESTAMP NOT NULL,
    PRIMARY KEY (db_id, username)
);

-- Result cache (created_at is epoch seconds from the cache clock)
CREATE TABLE IF NOT EXISTS cache_entries (
    key VARCHAR PRIMARY KEY,
    value BLOB NOT NULL,
    created_at DOUBLE NOT NULL,
    ttl_seconds INTEGER NOT NULL
);
"""

_VERSION_COLUMNS = """
    d.id, d.owner, d.name, d.object_bucket, v.version, v.object_id,
    v.size_bytes, v.sha256, v.public, v.created_at, d.last_modified
"""


def _utcnow() -> datetime:
    """Naive UTC timestamp, as stored in TIMESTAMP columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() + "Z" if value else None


class MetadataDB:
    """
    Singleton class for managing the central metadata database.

    Thread-safe connection management for the metadata.duckdb file.
    Note: db_path is read from settings on each access to support testing.
    """

    _instance: "MetadataDB | None" = None
    _lock = threading.Lock()

    def __new__(cls) -> "MetadataDB":
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self) -> None:
        if self._initialized:
            return

        self._conn_lock = threading.Lock()
        self._initialized = True

    @property
    def _db_path(self) -> Path:
        """Get db path from settings (allows runtime override in tests)."""
        return settings.metadata_db_path

    def initialize(self) -> None:
        """Initialize the metadata database and create schema."""
        db_path = self._db_path
        with self._conn_lock:
            db_path.parent.mkdir(parents=True, exist_ok=True)

            conn = duckdb.connect(str(db_path))
            try:
                conn.execute(METADATA_SCHEMA)
                conn.commit()
                logger.info("metadata_db_schema_created", path=str(db_path))
            finally:
                conn.close()

    @contextmanager
    def connection(self) -> Generator[duckdb.DuckDBPyConnection, None, None]:
        """
        Get a connection to the metadata database.

        Usage:
            with MetadataDB().connection() as conn:
                conn.execute("SELECT * FROM users")
        """
        metrics.METADATA_CONNECTIONS_ACTIVE.inc()
        conn = duckdb.connect(str(self._db_path))
        try:
            yield conn
        finally:
            conn.close()
            metrics.METADATA_CONNECTIONS_ACTIVE.dec()

    def execute(self, query: str, params: list | None = None) -> list[tuple]:
        """Execute a read query and return results."""
        start_time = time.time()
        try:
            with self.connection() as conn:
                if params:
                    result = conn.execute(query, params).fetchall()
                else:
                    result = conn.execute(query).fetchall()
                return result
        finally:
            duration = time.time() - start_time
            metrics.METADATA_QUERIES_TOTAL.labels(operation="read").inc()
            metrics.METADATA_QUERY_DURATION.labels(operation="read").observe(duration)

    def execute_one(self, query: str, params: list | None = None) -> tuple | None:
        """Execute a query and return single result."""
        results = self.execute(query, params)
        return results[0] if results else None

    def execute_write(self, query: str, params: list | None = None) -> None:
        """Execute a write query (INSERT, UPDATE, DELETE)."""
        start_time = time.time()
        try:
            with self.connection() as conn:
                if params:
                    conn.execute(query, params)
                else:
                    conn.execute(query)
                conn.commit()
        finally:
            duration = time.time() - start_time
            metrics.METADATA_QUERIES_TOTAL.labels(operation="write").inc()
            metrics.METADATA_QUERY_DURATION.labels(operation="write").observe(duration)

    # ========================================
    # User operations
    # ========================================

    def create_user(
        self,
        username: str,
        object_bucket: str,
        key_hash: str,
        key_prefix: str,
        email: str | None = None,
    ) -> dict[str, Any]:
        """Register a new user. Returns the created user record."""
        self.execute_write(
            """
            INSERT INTO users
            (username, email, object_bucket, pref_max_rows, key_hash, key_prefix, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            [
                username,
                email,
                object_bucket,
                settings.default_user_max_rows,
                key_hash,
                key_prefix,
                _utcnow(),
            ],
        )
        logger.info("user_registered", username=username, object_bucket=object_bucket)
        return self.get_user(username)

    def get_user(self, username: str) -> dict[str, Any] | None:
        """Get user by username."""
        result = self.execute_one(
            """
            SELECT username, email, object_bucket, pref_max_rows, key_hash, key_prefix, created_at
            FROM users WHERE username = ?
            """,
            [username],
        )
        return self._row_to_user_dict(result)

    def get_users_by_key_prefix(self, key_prefix: str) -> list[dict[str, Any]]:
        """Get every user whose API key starts with a prefix."""
        results = self.execute(
            """
            SELECT username, email, object_bucket, pref_max_rows, key_hash, key_prefix, created_at
            FROM users WHERE key_prefix = ?
            ORDER BY username
            """,
            [key_prefix],
        )
        return [self._row_to_user_dict(row) for row in results]

    def get_user_max_rows(self, username: str) -> int:
        """Max rows preference, falling back to the default for unknown users."""
        result = self.execute_one(
            "SELECT pref_max_rows FROM users WHERE username = ?", [username]
        )
        return result[0] if result else settings.default_user_max_rows

    def set_user_max_rows(self, username: str, max_rows: int) -> None:
        self.execute_write(
            "UPDATE users SET pref_max_rows = ? WHERE username = ?",
            [max_rows, username],
        )
        logger.info("user_pref_updated", username=username, max_rows=max_rows)

    def count_users(self) -> int:
        result = self.execute_one("SELECT COUNT(*) FROM users")
        return result[0] if result else 0

    def _row_to_user_dict(self, row: tuple | None) -> dict[str, Any] | None:
        """Convert database row to user dictionary."""
        if row is None:
            return None

        return {
            "username": row[0],
            "email": row[1],
            "object_bucket": row[2],
            "max_rows": row[3],
            "key_hash": row[4],
            "key_prefix": row[5],
            "created_at": _iso(row[6]),
        }

    # ========================================
    # Database and version operations
    # ========================================

    def get_database(self, owner: str, name: str) -> dict[str, Any] | None:
        """Get a database row by (owner, name)."""
        result = self.execute_one(
            """
            SELECT id, owner, name, folder, object_bucket, description, created_at, last_modified
            FROM databases WHERE owner = ? AND name = ?
            """,
            [owner, name],
        )
        if result is None:
            return None

        return {
            "id": result[0],
            "owner": result[1],
            "name": result[2],
            "folder": result[3],
            "object_bucket": result[4],
            "description": result[5],
            "created_at": _iso(result[6]),
            "last_modified": _iso(result[7]),
        }

    def get_latest_version(
        self, owner: str, name: str, public_only: bool
    ) -> dict[str, Any] | None:
        """
        Get the highest version of a database.

        Args:
            owner: Database owner
            name: Database name
            public_only: Only consider versions marked public

        Returns:
            Version record dict, or None if no version qualifies
        """
        public_filter = "AND v.public = true" if public_only else ""
        result = self.execute_one(
            f"""
            SELECT {_VERSION_COLUMNS}
            FROM databases d
            JOIN database_versions v ON v.db_id = d.id
            WHERE d.owner = ? AND d.name = ? {public_filter}
            ORDER BY v.version DESC
            LIMIT 1
            """,
            [owner, name],
        )
        return self._row_to_version_dict(result)

    def get_version(self, owner: str, name: str, version: int) -> dict[str, Any] | None:
        """Get one specific version of a database, regardless of visibility."""
        result = self.execute_one(
            f"""
            SELECT {_VERSION_COLUMNS}
            FROM databases d
            JOIN database_versions v ON v.db_id = d.id
            WHERE d.owner = ? AND d.name = ? AND v.version = ?
            """,
            [owner, name, version],
        )
        return self._row_to_version_dict(result)

    def add_database_version(
        self,
        owner: str,
        name: str,
        object_bucket: str,
        object_id: str,
        size_bytes: int,
        sha256: str,
        public: bool,
        folder: str = "/",
    ) -> dict[str, Any]:
        """
        Record a new version of a database.

        The database row (created on first upload), the version row and the
        last_modified update commit in one transaction. The object must
        already be stored.

        Returns:
            The new version record dict
        """
        for attempt in range(1, VERSION_INSERT_ATTEMPTS + 1):
            try:
                version = self._insert_version(
                    owner, name, object_bucket, object_id, size_bytes, sha256, public, folder
                )
                break
            except (duckdb.ConstraintException, duckdb.TransactionException) as e:
                if attempt == VERSION_INSERT_ATTEMPTS:
                    raise
                logger.warning(
                    "database_version_conflict",
                    owner=owner,
                    database=name,
                    attempt=attempt,
                    error=str(e),
                )

        logger.info(
            "database_version_registered",
            owner=owner,
            database=name,
            version=version,
            object_id=object_id,
            size_bytes=size_bytes,
            public=public,
        )
        return self.get_version(owner, name, version)

    def _insert_version(
        self,
        owner: str,
        name: str,
        object_bucket: str,
        object_id: str,
        size_bytes: int,
        sha256: str,
        public: bool,
        folder: str,
    ) -> int:
        now = _utcnow()
        start_time = time.time()

        with self.connection() as conn:
            conn.begin()
            try:
                conn.execute(
                    """
                    INSERT INTO databases (owner, name, folder, object_bucket, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT (owner, name) DO NOTHING
                    """,
                    [owner, name, folder, object_bucket, now],
                )
                db_id = conn.execute(
                    "SELECT id FROM databases WHERE owner = ? AND name = ?",
                    [owner, name],
                ).fetchone()[0]
                version = conn.execute(
                    "SELECT COALESCE(MAX(version), 0) + 1 FROM database_versions WHERE db_id = ?",
                    [db_id],
                ).fetchone()[0]
                conn.execute(
                    """
                    INSERT INTO database_versions
                    (db_id, version, object_id, size_bytes, sha256, public, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    [db_id, version, object_id, size_bytes, sha256, public, now],
                )
                conn.execute(
                    "UPDATE databases SET last_modified = ? WHERE id = ?",
                    [now, db_id],
                )
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                metrics.METADATA_QUERIES_TOTAL.labels(operation="write").inc()
                metrics.METADATA_QUERY_DURATION.labels(operation="write").observe(
                    time.time() - start_time
                )

        return version

    def list_user_databases(self, owner: str, public: bool) -> list[dict[str, Any]]:
        """
        List an owner's databases, newest modification first.

        Each database appears once, described by its highest version with the
        given visibility. Databases with no such version are left out.
        """
        results = self.execute(
            """
            SELECT d.name, d.description, d.last_modified, v.version, v.size_bytes,
                   (SELECT COUNT(*) FROM database_stars s WHERE s.db_id = d.id) AS stars
            FROM databases d
            JOIN database_versions v ON v.db_id = d.id
            WHERE d.owner = ? AND v.public = ?
            QUALIFY row_number() OVER (PARTITION BY d.id ORDER BY v.version DESC) = 1
            ORDER BY d.last_modified DESC, d.name
            """,
            [owner, public],
        )
        return [
            {
                "name": row[0],
                "description": row[1],
                "last_modified": _iso(row[2]),
                "version": row[3],
                "size_bytes": row[4],
                "stars": row[5],
                "public": public,
            }
            for row in results
        ]

    def count_databases(self) -> int:
        result = self.execute_one("SELECT COUNT(*) FROM databases")
        return result[0] if result else 0

    def count_database_versions(self) -> int:
        result = self.execute_one("SELECT COUNT(*) FROM database_versions")
        return result[0] if result else 0

    def _row_to_version_dict(self, row: tuple | None) -> dict[str, Any] | None:
        """Convert a databases JOIN database_versions row to a dictionary."""
        if row is None:
            return None

        return {
            "db_id": row[0],
            "owner": row[1],
            "name": row[2],
            "object_bucket": row[3],
            "version": row[4],
            "object_id": row[5],
            "size_bytes": row[6],
            "sha256": row[7],
            "public": row[8],
            "created_at": _iso(row[9]),
            "last_modified": _iso(row[10]),
        }

    # ========================================
    # Star operations
    # ========================================

    def toggle_star(self, db_id: int, username: str) -> bool:
        """
        Star or unstar a database for a user.

        Returns:
            True if the database is now starred, False if the star was removed
        """
        existing = self.execute_one(
            "SELECT 1 FROM database_stars WHERE db_id = ? AND username = ?",
            [db_id, username],
        )
        if existing:
            self.execute_write(
                "DELETE FROM database_stars WHERE db_id = ? AND username = ?",
                [db_id, username],
            )
            logger.info("database_unstarred", db_id=db_id, username=username)
            return False

        self.execute_write(
            "INSERT INTO database_stars (db_id, username, starred_at) VALUES (?, ?, ?)",
            [db_id, username, _utcnow()],
        )
        logger.info("database_starred", db_id=db_id, username=username)
        return True

    def count_stars(self, db_id: int) -> int:
        result = self.execute_one(
            "SELECT COUNT(*) FROM database_stars WHERE db_id = ?", [db_id]
        )
        return result[0] if result else 0

    def list_stars(self, db_id: int) -> list[dict[str, Any]]:
        """Users who starred a database, most recent first."""
        results = self.execute(
            """
            SELECT username, starred_at FROM database_stars
            WHERE db_id = ?
            ORDER BY starred_at DESC, username
            """,
            [db_id],
        )
        return [{"username": row[0], "starred_at": _iso(row[1])} for row in results]

    def list_user_stars(self, username: str) -> list[dict[str, Any]]:
        """Databases a user has starred, most recent first."""
        results = self.execute(
            """
            SELECT d.owner, d.name, s.starred_at
            FROM database_stars s
            JOIN databases d ON d.id = s.db_id
            WHERE s.username = ?
            ORDER BY s.starred_at DESC, d.owner, d.name
            """,
            [username],
        )
        return [
            {"owner": row[0], "name": row[1], "starred_at": _iso(row[2])}
            for row in results
        ]

    # ========================================
    # Cache entry operations
    # ========================================

    def get_cache_entry(self, key: str) -> tuple[bytes, float, int] | None:
        """Return (value, created_at, ttl_seconds) for a key, expired or not."""
        result = self.execute_one(
            "SELECT value, created_at, ttl_seconds FROM cache_entries WHERE key = ?",
            [key],
        )
        if result is None:
            return None
        return bytes(result[0]), result[1], result[2]

    def put_cache_entry(self, key: str, value: bytes, created_at: float, ttl_seconds: int) -> None:
        """Insert or replace a cache entry (last write wins)."""
        self.execute_write(
            """
            INSERT INTO cache_entries (key, value, created_at, ttl_seconds)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (key) DO UPDATE SET
                value = EXCLUDED.value,
                created_at = EXCLUDED.created_at,
                ttl_seconds = EXCLUDED.ttl_seconds
            """,
            [key, value, created_at, ttl_seconds],
        )

    def delete_cache_entries(self, keys: list[str]) -> None:
        if not keys:
            return
        placeholders = ", ".join("?" for _ in keys)
        self.execute_write(f"DELETE FROM cache_entries WHERE key IN ({placeholders})", list(keys))

    def delete_expired_cache_entries(self, now: float) -> int:
        """
        Delete cache entries whose TTL has elapsed.

        Returns:
            Number of deleted entries
        """
        count_result = self.execute_one(
            "SELECT COUNT(*) FROM cache_entries WHERE created_at + ttl_seconds <= ?",
            [now],
        )
        count = count_result[0] if count_result else 0

        if count > 0:
            self.execute_write(
                "DELETE FROM cache_entries WHERE created_at + ttl_seconds <= ?",
                [now],
            )
            logger.info("cache_entries_cleaned", count=count)

        return count

    def count_cache_entries(self) -> int:
        result = self.execute_one("SELECT COUNT(*) FROM cache_entries")
        return result[0] if result else 0


