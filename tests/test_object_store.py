"""Tests for object store backends and materialization."""

import io

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from dbhub.errors import UpstreamUnavailable
from dbhub.object_store import FilesystemObjectStore, S3ObjectStore, materialize


class FakeS3Client:
    """In-memory stand-in for a boto3 S3 client."""

    def __init__(self):
        self.buckets: dict[str, dict[str, bytes]] = {}
        self.unreachable = False

    def _error(self, code: str, operation: str) -> ClientError:
        return ClientError({"Error": {"Code": code, "Message": code}}, operation)

    def _check(self):
        if self.unreachable:
            raise EndpointConnectionError(endpoint_url="http://minio:9000")

    def head_bucket(self, Bucket):
        self._check()
        if Bucket not in self.buckets:
            raise self._error("404", "HeadBucket")
        return {}

    def create_bucket(self, Bucket):
        self._check()
        self.buckets.setdefault(Bucket, {})
        return {}

    def upload_fileobj(self, Fileobj, Bucket, Key, ExtraArgs=None):
        self._check()
        if Bucket not in self.buckets:
            raise self._error("NoSuchBucket", "PutObject")
        self.buckets[Bucket][Key] = Fileobj.read()

    def head_object(self, Bucket, Key):
        self._check()
        try:
            return {"ContentLength": len(self.buckets[Bucket][Key])}
        except KeyError:
            raise self._error("404", "HeadObject") from None

    def get_object(self, Bucket, Key):
        self._check()
        try:
            return {"Body": io.BytesIO(self.buckets[Bucket][Key])}
        except KeyError:
            raise self._error("NoSuchKey", "GetObject") from None

    def list_buckets(self):
        self._check()
        return {"Buckets": [{"Name": name} for name in self.buckets]}


class TrackingHandle(io.BytesIO):
    """BytesIO that fails mid-read when asked to."""

    def __init__(self, data: bytes, fail: bool = False):
        super().__init__(data)
        self.fail = fail

    def read(self, size=-1):
        if self.fail:
            raise OSError("connection reset")
        return super().read(size)


class StubStore(FilesystemObjectStore):
    """Filesystem store returning a prepared handle."""

    def __init__(self, root, handle):
        super().__init__(root)
        self.handle = handle

    def get(self, bucket, object_id):
        return self.handle


@pytest.fixture
def fs_store(tmp_path):
    return FilesystemObjectStore(tmp_path / "objects")


class TestFilesystemObjectStore:
    """Tests for FilesystemObjectStore."""

    def test_put_get(self, fs_store):
        fs_store.ensure_bucket("bucket-a")
        size = fs_store.put("bucket-a", "abc.db", io.BytesIO(b"sqlite bytes"), "application/x-sqlite3")

        assert size == len(b"sqlite bytes")
        handle = fs_store.get("bucket-a", "abc.db")
        try:
            assert handle.read() == b"sqlite bytes"
        finally:
            fs_store.close(handle)

    def test_put_leaves_no_temp_files(self, fs_store):
        fs_store.ensure_bucket("bucket-a")
        fs_store.put("bucket-a", "abc.db", io.BytesIO(b"x"), "application/x-sqlite3")
        assert [p.name for p in (fs_store.root / "bucket-a").iterdir()] == ["abc.db"]

    def test_missing_object(self, fs_store):
        fs_store.ensure_bucket("bucket-a")
        with pytest.raises(UpstreamUnavailable):
            fs_store.get("bucket-a", "missing.db")

    @pytest.mark.parametrize("name", ["../escape.db", "a/b.db", "..", ".hidden", ""])
    def test_rejects_path_like_names(self, fs_store, name):
        with pytest.raises(ValueError):
            fs_store.get("bucket-a", name)

    def test_is_available(self, fs_store):
        assert fs_store.is_available() is False
        fs_store.ensure_bucket("bucket-a")
        assert fs_store.is_available() is True


class TestS3ObjectStore:
    """Tests for S3ObjectStore against an in-memory client."""

    @pytest.fixture
    def fake_client(self):
        return FakeS3Client()

    @pytest.fixture
    def s3_store(self, fake_client):
        return S3ObjectStore(None, None, None, "us-east-1", client=fake_client)

    def test_ensure_bucket_creates_once(self, s3_store, fake_client):
        s3_store.ensure_bucket("bucket-a")
        fake_client.buckets["bucket-a"]["keep.db"] = b"x"
        s3_store.ensure_bucket("bucket-a")
        assert fake_client.buckets["bucket-a"] == {"keep.db": b"x"}

    def test_put_get(self, s3_store):
        s3_store.ensure_bucket("bucket-a")
        size = s3_store.put("bucket-a", "abc.db", io.BytesIO(b"payload"), "application/x-sqlite3")

        assert size == 7
        assert s3_store.get("bucket-a", "abc.db").read() == b"payload"

    def test_missing_key(self, s3_store):
        s3_store.ensure_bucket("bucket-a")
        with pytest.raises(UpstreamUnavailable):
            s3_store.get("bucket-a", "missing.db")

    def test_unreachable(self, s3_store, fake_client):
        fake_client.unreachable = True
        assert s3_store.is_available() is False
        with pytest.raises(UpstreamUnavailable):
            s3_store.get("bucket-a", "abc.db")
        with pytest.raises(UpstreamUnavailable):
            s3_store.put("bucket-a", "abc.db", io.BytesIO(b"x"), "application/x-sqlite3")


class TestMaterialize:
    """Tests for materialize()."""

    def test_temp_file_removed_after_use(self, tmp_path):
        temp_dir = tmp_path / "tmp"
        store = StubStore(tmp_path, TrackingHandle(b"database bytes"))

        with materialize(store, "bucket-a", "abc.db", temp_dir) as path:
            assert path.parent == temp_dir
            assert path.read_bytes() == b"database bytes"
            # Handle is released before the file is used
            assert store.handle.closed

        assert not path.exists()
        assert list(temp_dir.iterdir()) == []

    def test_temp_file_removed_on_error_in_body(self, tmp_path):
        temp_dir = tmp_path / "tmp"
        store = StubStore(tmp_path, TrackingHandle(b"database bytes"))

        with pytest.raises(RuntimeError):
            with materialize(store, "bucket-a", "abc.db", temp_dir):
                raise RuntimeError("reader failed")

        assert list(temp_dir.iterdir()) == []

    def test_copy_failure(self, tmp_path):
        temp_dir = tmp_path / "tmp"
        handle = TrackingHandle(b"", fail=True)
        store = StubStore(tmp_path, handle)

        with pytest.raises(UpstreamUnavailable):
            with materialize(store, "bucket-a", "abc.db", temp_dir):
                pass

        assert handle.closed
        assert list(temp_dir.iterdir()) == []
