"""Domain errors raised by the read pipeline and its collaborators.

Every error carries an HTTP status, a stable machine-readable code and a
message that is safe to show to the client. Backend error text (SQLite,
DuckDB, S3) goes to the log, never into `message`.

The exception handler registered in main.py turns these into the same
`{"detail": {"error", "message", "details"}}` body that HTTPException
responses use elsewhere in the API.
"""

from typing import Any

from fastapi import status


class DBHubError(Exception):
    """Base class for all domain errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error: str = "internal_error"
    default_message: str = "An internal error occurred"

    def __init__(self, message: str | None = None, details: dict[str, Any] | None = None):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_detail(self) -> dict[str, Any]:
        detail: dict[str, Any] = {"error": self.error, "message": self.message}
        if self.details:
            detail["details"] = self.details
        return detail


class BadRequest(DBHubError):
    status_code = status.HTTP_400_BAD_REQUEST
    error = "bad_request"
    default_message = "Malformed request"


class Forbidden(DBHubError):
    status_code = status.HTTP_403_FORBIDDEN
    error = "forbidden"
    default_message = "Access denied to this database"


class NotFound(DBHubError):
    status_code = status.HTTP_404_NOT_FOUND
    error = "not_found"
    default_message = "Requested database not found"


class InvalidIdentifier(DBHubError):
    """A table or column name that is not in the live enumeration."""

    status_code = status.HTTP_400_BAD_REQUEST
    error = "invalid_identifier"
    default_message = "Unknown table or column name"


class TableNotFound(InvalidIdentifier, NotFound):
    """A requested table that the database does not contain."""

    status_code = status.HTTP_404_NOT_FOUND
    error = "table_not_found"
    default_message = "Requested table does not exist"


class InvalidDatabase(DBHubError):
    """The stored file could not be opened as SQLite, or has no tables."""

    status_code = 422
    error = "invalid_database"
    default_message = "Not a readable SQLite database"


class QueryFailed(DBHubError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error = "query_failed"
    default_message = "Database query failed"


class UpstreamUnavailable(DBHubError):
    """Object store or metadata store could not serve the request."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    error = "upstream_unavailable"
    default_message = "Storage backend unavailable"
