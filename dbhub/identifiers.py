"""Identifier whitelisting for SQL query construction.

SQLite cannot bind table or column names as parameters, so any user supplied
name has to be checked against the names the file actually contains before
it goes anywhere near a query string. `whitelist()` is the only way to get an
`Identifier`, and the reader only interpolates `Identifier.quoted`.
"""

from dataclasses import dataclass
from typing import Iterable

from dbhub.errors import InvalidIdentifier


@dataclass(frozen=True)
class Identifier:
    """A table or column name known to exist in the open database."""

    name: str

    @property
    def quoted(self) -> str:
        """SQL-quoted form, safe to interpolate into a query string."""
        return '"' + self.name.replace('"', '""') + '"'

    def __str__(self) -> str:
        return self.name


def whitelist(
    candidate: str | None,
    enumeration: Iterable[str],
    error: type[InvalidIdentifier] = InvalidIdentifier,
    kind: str = "identifier",
) -> Identifier:
    """
    Validate a candidate name against a live enumeration.

    Matching is exact: no case folding, trimming or unquoting. A candidate
    that is not a member of the enumeration is rejected, whatever it contains.

    Args:
        candidate: The user supplied name
        enumeration: Names retrieved from the database itself
        error: Exception class raised on rejection
        kind: Label used in the error details ("table", "column")

    Returns:
        The validated Identifier

    Raises:
        InvalidIdentifier (or the given subclass): If candidate is not present
    """
    if isinstance(candidate, str) and candidate in set(enumeration):
        return Identifier(candidate)
    raise error(details={"kind": kind, "name": candidate})
