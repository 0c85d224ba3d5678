"""Tests for owner/database/version resolution."""

import uuid

import pytest

from dbhub.errors import BadRequest, Forbidden, NotFound
from dbhub.resolver import StoredObject, resolve


def add_version(metadata_db, owner, name, public, object_id=None):
    record = metadata_db.add_database_version(
        owner=owner,
        name=name,
        object_bucket=f"bucket-{owner}",
        object_id=object_id or f"obj-{uuid.uuid4().hex[:8]}.db",
        size_bytes=1024,
        sha256="0" * 64,
        public=public,
    )
    return record["version"]


@pytest.fixture
def mixed_db(metadata_db):
    """alice/test.db: v1 public, v2 private, v3 public, v4 private."""
    for public in (True, False, True, False):
        add_version(metadata_db, "alice", "test.db", public)
    return metadata_db


class TestResolveLatest:
    """Tests for requests without a version."""

    def test_owner_sees_highest_version(self, mixed_db):
        assert resolve(mixed_db, "alice", "test.db", None, "alice").version == 4

    def test_anonymous_sees_highest_public(self, mixed_db):
        assert resolve(mixed_db, "alice", "test.db", None, None).version == 3

    def test_other_user_sees_highest_public(self, mixed_db):
        assert resolve(mixed_db, "alice", "test.db", None, "bob").version == 3

    def test_private_only_database_is_not_found_for_others(self, metadata_db):
        add_version(metadata_db, "alice", "secret.db", public=False)

        with pytest.raises(NotFound):
            resolve(metadata_db, "alice", "secret.db", None, None)
        assert resolve(metadata_db, "alice", "secret.db", None, "alice").version == 1

    def test_unknown_database(self, metadata_db):
        with pytest.raises(NotFound):
            resolve(metadata_db, "alice", "nothing.db", None, "alice")


class TestResolveVersion:
    """Tests for requests naming a version."""

    def test_public_version_for_anyone(self, mixed_db):
        stored = resolve(mixed_db, "alice", "test.db", 1, None)
        assert stored.version == 1
        assert stored.public is True
        assert stored.bucket == "bucket-alice"

    def test_private_version_forbidden_for_others(self, mixed_db):
        with pytest.raises(Forbidden):
            resolve(mixed_db, "alice", "test.db", 2, None)
        with pytest.raises(Forbidden):
            resolve(mixed_db, "alice", "test.db", 2, "bob")

    def test_private_version_for_owner(self, mixed_db):
        assert resolve(mixed_db, "alice", "test.db", 2, "alice").version == 2

    def test_missing_version_looks_like_private_to_others(self, mixed_db):
        with pytest.raises(Forbidden):
            resolve(mixed_db, "alice", "test.db", 99, None)

    def test_missing_version_is_not_found_for_owner(self, mixed_db):
        with pytest.raises(NotFound):
            resolve(mixed_db, "alice", "test.db", 99, "alice")

    @pytest.mark.parametrize("version", [0, -1, True])
    def test_invalid_version(self, mixed_db, version):
        with pytest.raises(BadRequest):
            resolve(mixed_db, "alice", "test.db", version, "alice")


class TestStoredObject:
    """Tests for StoredObject serialization."""

    def test_dict_round_trip(self, mixed_db):
        stored = resolve(mixed_db, "alice", "test.db", None, "alice")
        assert StoredObject.from_dict(stored.to_dict()) == stored
