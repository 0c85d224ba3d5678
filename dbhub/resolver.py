"""Resolve (owner, database, version, viewer) to a stored object.

Visibility rules:
- no version requested: the owner sees the highest version, everyone else
  the highest public version
- version requested: returned when it is public or the viewer is the owner;
  otherwise Forbidden (a non-owner cannot tell a private version from a
  missing one)
- NotFound when the database does not exist or no version is visible
"""

from dataclasses import asdict, dataclass
from typing import Any

import duckdb
import structlog

from dbhub.database import MetadataDB
from dbhub.errors import BadRequest, Forbidden, NotFound, UpstreamUnavailable

logger = structlog.get_logger()


@dataclass(frozen=True)
class StoredObject:
    """Location and attributes of one stored database version."""

    owner: str
    database: str
    version: int
    bucket: str
    object_id: str
    size_bytes: int
    sha256: str
    public: bool
    last_modified: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StoredObject":
        return cls(**data)

    @classmethod
    def from_version_record(cls, record: dict[str, Any]) -> "StoredObject":
        return cls(
            owner=record["owner"],
            database=record["name"],
            version=record["version"],
            bucket=record["object_bucket"],
            object_id=record["object_id"],
            size_bytes=record["size_bytes"],
            sha256=record["sha256"],
            public=record["public"],
            last_modified=record["last_modified"],
        )


def resolve(
    metadata: MetadataDB,
    owner: str,
    database: str,
    version: int | None,
    viewer: str | None,
) -> StoredObject:
    """
    Resolve a database request to the stored object the viewer may read.

    Args:
        metadata: Metadata database
        owner: Database owner
        database: Database name
        version: Requested version, or None for the latest visible one
        viewer: Logged in username, or None for anonymous

    Raises:
        BadRequest: If version is not a positive integer
        NotFound: If nothing visible matches
        Forbidden: If a requested version is not visible to the viewer
        UpstreamUnavailable: If the metadata database cannot be queried
    """
    try:
        return _resolve(metadata, owner, database, version, viewer)
    except duckdb.Error as e:
        logger.error("resolve_metadata_failed", owner=owner, database=database, error=str(e))
        raise UpstreamUnavailable() from e


def _resolve(
    metadata: MetadataDB,
    owner: str,
    database: str,
    version: int | None,
    viewer: str | None,
) -> StoredObject:
    is_owner = viewer is not None and viewer == owner

    if version is None:
        record = metadata.get_latest_version(owner, database, public_only=not is_owner)
        if record is None:
            logger.info("resolve_not_found", owner=owner, database=database, viewer=viewer)
            raise NotFound()
        return StoredObject.from_version_record(record)

    if isinstance(version, bool) or not isinstance(version, int) or version < 1:
        raise BadRequest("Invalid database version")

    if metadata.get_database(owner, database) is None:
        logger.info("resolve_not_found", owner=owner, database=database, viewer=viewer)
        raise NotFound()

    record = metadata.get_version(owner, database, version)
    if record is not None and (record["public"] or is_owner):
        return StoredObject.from_version_record(record)

    if is_owner:
        raise NotFound("Requested database version not found")

    logger.info(
        "resolve_forbidden",
        owner=owner,
        database=database,
        version=version,
        viewer=viewer,
    )
    raise Forbidden()
