"""Cache key construction.

Keys have the shape `{namespace}-{pub|priv}-{sha256 hex}`:

- namespace names what is cached: a resolved object location (`loc`) or a
  rendered result for one endpoint (`tbl`, `csv`, `visdat`, `dbpage`, `vispage`)
- `pub` entries hold what any non-owner may see and never include the viewer
  in the fingerprint; `priv` entries always include it
- the digest covers an ordered JSON list, so the same request shape always
  produces the same key
"""

import hashlib
import json
from typing import Any

LOCATION = "loc"
TABLE_VIEW = "tbl"
CSV_EXPORT = "csv"
VIS_DATA = "visdat"
DATABASE_PAGE = "dbpage"
VIS_PAGE = "vispage"

NAMESPACES = frozenset({LOCATION, TABLE_VIEW, CSV_EXPORT, VIS_DATA, DATABASE_PAGE, VIS_PAGE})

PUBLIC_VIEW = "pub"
PRIVATE_VIEW = "priv"


def viewer_class(owner: str, viewer: str | None) -> str:
    """Return the visibility class a viewer reads an owner's databases with."""
    return PRIVATE_VIEW if viewer is not None and viewer == owner else PUBLIC_VIEW


def build_key(
    namespace: str,
    owner: str,
    database: str,
    viewer: str | None,
    *params: Any,
) -> str:
    """
    Build a deterministic cache key for one request shape.

    Args:
        namespace: One of NAMESPACES
        owner: Database owner
        database: Database name
        viewer: Logged in username, or None for anonymous
        *params: Positional request parameters (version, table, row limit,
            projection, filter). Order is part of the key.

    Returns:
        The namespaced cache key

    Raises:
        ValueError: If namespace is unknown
    """
    if namespace not in NAMESPACES:
        raise ValueError(f"Unknown cache namespace: {namespace}")

    visibility = viewer_class(owner, viewer)
    identity = viewer if visibility == PRIVATE_VIEW else ""

    fingerprint = json.dumps(
        [identity, owner, database, *params],
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )
    digest = hashlib.sha256(fingerprint.encode("utf-8")).hexdigest()
    return f"{namespace}-{visibility}-{digest}"


def location_key(owner: str, database: str, version: int | None, viewer: str | None) -> str:
    """Key for a resolved (bucket, object id) lookup."""
    return build_key(LOCATION, owner, database, viewer, version)


def latest_location_keys(owner: str, database: str) -> list[str]:
    """
    Keys of the cached "latest version" lookups for a database, for both
    visibility classes. Lookups of an explicit version never go stale.
    """
    return [
        location_key(owner, database, None, None),
        location_key(owner, database, None, owner),
    ]
