"""Pytest configuration and fixtures."""

import io
import sqlite3
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from dbhub.config import settings
from dbhub.database import MetadataDB
from dbhub.main import app

# Test admin API key for authentication
TEST_ADMIN_API_KEY = "test_admin_key_for_testing"


@pytest.fixture
def temp_data_dir(monkeypatch, tmp_path):
    """Point all storage settings at a temporary data directory."""
    data_dir = tmp_path / "data"
    objects_dir = data_dir / "objects"
    temp_dir = data_dir / "tmp"
    metadata_db_path = data_dir / "metadata.duckdb"

    for dir_path in [data_dir, objects_dir, temp_dir]:
        dir_path.mkdir(parents=True, exist_ok=True)

    monkeypatch.setattr(settings, "data_dir", data_dir)
    monkeypatch.setattr(settings, "objects_dir", objects_dir)
    monkeypatch.setattr(settings, "temp_dir", temp_dir)
    monkeypatch.setattr(settings, "metadata_db_path", metadata_db_path)
    monkeypatch.setattr(settings, "object_store_backend", "filesystem")
    monkeypatch.setattr(settings, "admin_api_key", TEST_ADMIN_API_KEY)

    yield {
        "data_dir": data_dir,
        "objects_dir": objects_dir,
        "temp_dir": temp_dir,
        "metadata_db_path": metadata_db_path,
    }


@pytest.fixture
def client(temp_data_dir):
    """Test client with the application lifespan running."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def services(client):
    """The Services instance built by the running application."""
    return client.app.state.services


@pytest.fixture
def metadata_db(temp_data_dir):
    """Create MetadataDB instance with temporary storage."""
    # Reset singleton for testing
    MetadataDB._instance = None

    db = MetadataDB()
    db.initialize()

    yield db

    MetadataDB._instance = None


@pytest.fixture
def admin_headers():
    """Return headers with admin API key for authentication."""
    return {"Authorization": f"Bearer {TEST_ADMIN_API_KEY}"}


def build_sqlite(path: Path, tables: dict[str, tuple[str, list[tuple]]]) -> Path:
    """
    Create a SQLite file.

    Args:
        path: Target file
        tables: table name -> (column definitions, rows)
    """
    conn = sqlite3.connect(path)
    try:
        for name, (columns, rows) in tables.items():
            quoted = '"' + name.replace('"', '""') + '"'
            conn.execute(f"CREATE TABLE {quoted} ({columns})")
            if rows:
                placeholders = ", ".join("?" for _ in rows[0])
                conn.executemany(f"INSERT INTO {quoted} VALUES ({placeholders})", rows)
        conn.commit()
    finally:
        conn.close()
    return path


@pytest.fixture
def make_sqlite(tmp_path):
    """Factory building SQLite files under tmp_path."""
    counter = iter(range(1_000_000))

    def _make(tables: dict[str, tuple[str, list[tuple]]], name: str | None = None) -> Path:
        filename = name or f"fixture_{next(counter)}.db"
        return build_sqlite(tmp_path / filename, tables)

    return _make


@pytest.fixture
def sales_db(make_sqlite):
    """Two-table database: 25 sales rows and an empty notes table."""
    rows = [(i, f"item {i}", i * 1.5, None if i % 5 == 0 else f"r{i}") for i in range(1, 26)]
    return make_sqlite(
        {
            "sales": ("id INTEGER, item TEXT, amount REAL, region TEXT", rows),
            "notes": ("body TEXT", []),
        }
    )


@pytest.fixture
def register_user(client, admin_headers):
    """Factory registering a user. Returns auth headers for that user."""

    def _register(username: str) -> dict[str, str]:
        response = client.post("/users", json={"username": username}, headers=admin_headers)
        assert response.status_code == 201, response.text
        return {"Authorization": f"Bearer {response.json()['api_key']}"}

    return _register


@pytest.fixture
def upload(client):
    """Factory uploading a SQLite file through the API."""

    def _upload(
        headers: dict[str, str],
        path: Path,
        public: str = "true",
        name: str | None = None,
    ):
        data = {"public": public}
        if name is not None:
            data["name"] = name
        return client.post(
            "/x/uploaddata",
            headers=headers,
            data=data,
            files={"database": (path.name, io.BytesIO(path.read_bytes()), "application/octet-stream")},
        )

    return _upload
