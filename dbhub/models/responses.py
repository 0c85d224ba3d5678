"""Request and response models for API endpoints."""

from typing import Any

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="Service status: 'healthy' or 'unhealthy'")
    version: str = Field(description="API version")
    storage_available: bool = Field(description="Whether storage is accessible")
    details: dict[str, bool] | None = Field(
        default=None, description="Detailed status of each storage component"
    )


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str = Field(description="Error type")
    message: str = Field(description="Error message")
    details: dict | None = Field(default=None, description="Additional error details")


# ============================================
# Record set models
# ============================================


class CellModel(BaseModel):
    """One decoded cell. Type: 0 binary, 2 null, 3 text, 4 integer, 5 float."""

    Name: str
    Type: int
    Value: str | None


class RecordSetResponse(BaseModel):
    """Rows read from one table."""

    ColNames: list[str] = Field(description="Column names, in output order")
    ColCount: int = Field(description="Number of columns")
    RowCount: int = Field(description="Number of rows returned")
    TotalRows: int = Field(description="Total number of rows in the table")
    Tablename: str = Field(description="Table the rows were read from")
    Records: list[list[CellModel]] = Field(description="Rows of decoded cells")


class DatabasePageResponse(BaseModel):
    """Data behind the database page."""

    Owner: str
    Database: str
    Version: int
    Public: bool
    Size: int
    SHA256: str
    LastModified: str | None = None
    Tables: list[str]
    MaxRows: int
    Stars: int = 0
    Data: RecordSetResponse


class VisPageResponse(BaseModel):
    """Data behind the visualisation page."""

    Owner: str
    Database: str
    Version: int
    Tables: list[str]
    ColNames: list[str]
    Data: RecordSetResponse


# ============================================
# Upload models
# ============================================


class UploadResponse(BaseModel):
    """Response for a database upload."""

    owner: str = Field(description="Database owner")
    database: str = Field(description="Database name")
    version: int = Field(description="Version assigned to this upload")
    public: bool = Field(description="Whether this version is public")
    size_bytes: int = Field(description="Stored size in bytes")
    sha256: str = Field(description="SHA256 of the uploaded file")
    object_id: str = Field(description="Object id in the owner's bucket")


# ============================================
# User models
# ============================================


class UserCreate(BaseModel):
    """Request to register a new user."""

    username: str = Field(description="Lowercase username (letters, digits, ._-)")
    email: str | None = Field(default=None, description="Contact email")


class UserCreateResponse(BaseModel):
    """Response for user registration - includes API key (shown only once)."""

    username: str
    email: str | None = None
    max_rows: int
    api_key: str = Field(description="API key for this user. Store it securely.")


class DatabaseSummary(BaseModel):
    """One database in a user's listing."""

    name: str
    description: str | None = None
    last_modified: str | None = None
    version: int
    size_bytes: int
    stars: int
    public: bool


class StarredDatabase(BaseModel):
    owner: str
    name: str
    starred_at: str | None = None


class UserPageResponse(BaseModel):
    """A user's databases. Private databases and stars only for the user."""

    username: str
    public_databases: list[DatabaseSummary]
    private_databases: list[DatabaseSummary] | None = None
    starred: list[StarredDatabase] | None = None


class PreferencesResponse(BaseModel):
    username: str
    max_rows: int = Field(description="Rows shown in table views (1-500)")


class PreferencesUpdate(BaseModel):
    max_rows: int = Field(ge=1, le=500, description="Rows shown in table views (1-500)")


# ============================================
# Star models
# ============================================


class StarEntry(BaseModel):
    username: str
    starred_at: str | None = None


class StarsResponse(BaseModel):
    owner: str
    database: str
    count: int
    stars: list[StarEntry]


def error_responses(*codes: int) -> dict[int | str, dict[str, Any]]:
    """OpenAPI `responses` entries for the given error status codes."""
    return {code: {"model": ErrorResponse} for code in codes}
