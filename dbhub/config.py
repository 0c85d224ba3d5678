"""Application configuration using pydantic-settings."""

from pathlib import Path
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings can be configured via:
    1. Environment variables (e.g., DATA_DIR=/my/path)
    2. .env file in the project root

    Storage paths are derived from DATA_DIR by default but can be overridden.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # API settings
    api_title: str = "DBHub API"
    api_version: str = "0.1.0"
    debug: bool = True  # Default to True for development

    # Authentication
    admin_api_key: str | None = None

    # Server settings
    host: str = "0.0.0.0"
    port: int = 8080

    # Storage paths - all derived from data_dir by default
    data_dir: Path = Path("./data")
    objects_dir: Path | None = None
    temp_dir: Path | None = None
    metadata_db_path: Path | None = None

    # Object store backend: "filesystem" keeps objects under objects_dir,
    # "s3" talks to any S3-compatible endpoint (Minio, AWS)
    object_store_backend: Literal["filesystem", "s3"] = "filesystem"
    s3_endpoint_url: str | None = None
    s3_access_key_id: str | None = None
    s3_secret_access_key: str | None = None
    s3_region: str = "us-east-1"
    s3_timeout_seconds: int = 30

    # Result cache
    cache_location_ttl_seconds: int = 120
    cache_result_ttl_seconds: int = 600
    cache_cleanup_interval_seconds: int = 300

    # Row limits
    anonymous_max_rows: int = 10
    default_user_max_rows: int = 10
    user_max_rows_ceiling: int = 500
    vis_page_max_rows: int = 1000
    vis_data_max_rows: int = 2500
    csv_max_rows: int = 1_000_000

    # Uploads
    max_upload_bytes: int = 512 * 1024 * 1024  # 512MB

    @model_validator(mode="after")
    def set_default_paths(self) -> "Settings":
        """Set default paths based on data_dir if not explicitly provided."""
        if self.objects_dir is None:
            self.objects_dir = self.data_dir / "objects"
        if self.temp_dir is None:
            self.temp_dir = self.data_dir / "tmp"
        if self.metadata_db_path is None:
            self.metadata_db_path = self.data_dir / "metadata.duckdb"
        return self

    @property
    def storage_paths(self) -> dict[str, Path]:
        """Return all storage paths for health check validation."""
        paths = {
            "data_dir": self.data_dir,
            "temp_dir": self.temp_dir,
        }
        if self.object_store_backend == "filesystem":
            paths["objects_dir"] = self.objects_dir
        return paths


# Global settings instance
settings = Settings()
