"""Object store for uploaded database files.

Two backends share one interface:
- FilesystemObjectStore: objects under settings.objects_dir/{bucket}/{object_id}
- S3ObjectStore: any S3-compatible endpoint (Minio, AWS) through boto3

`get()` returns an open binary stream; callers release it with `close()`.
A missing object behind a committed metadata row is a dangling reference:
it is logged loudly and surfaced as UpstreamUnavailable.
"""

import os
import re
import shutil
import tempfile
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import BinaryIO, Iterator

import boto3
import structlog
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from dbhub import metrics
from dbhub.config import Settings
from dbhub.errors import UpstreamUnavailable

logger = structlog.get_logger()

COPY_CHUNK_SIZE = 1024 * 1024

_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,254}$")


def _check_name(kind: str, value: str) -> None:
    if not _NAME_PATTERN.fullmatch(value) or ".." in value:
        raise ValueError(f"Invalid object store {kind}: {value!r}")


class ObjectStore(ABC):
    """Interface of an object store holding database files."""

    backend: str = ""

    @abstractmethod
    def ensure_bucket(self, bucket: str) -> None:
        """Create the bucket if it does not exist yet."""

    @abstractmethod
    def put(self, bucket: str, object_id: str, data: BinaryIO, content_type: str) -> int:
        """
        Durably store an object.

        Returns:
            Stored size in bytes

        Raises:
            UpstreamUnavailable: If the object could not be stored
        """

    @abstractmethod
    def get(self, bucket: str, object_id: str) -> BinaryIO:
        """
        Open a stored object for reading.

        Raises:
            UpstreamUnavailable: If the object is missing or the store unreachable
        """

    @abstractmethod
    def is_available(self) -> bool:
        """Whether the store can currently serve requests."""

    def close(self, handle: BinaryIO) -> None:
        """Release a stream returned by get(). Errors are logged, not raised."""
        try:
            handle.close()
        except Exception as e:
            logger.warning("object_handle_close_failed", backend=self.backend, error=str(e))


class FilesystemObjectStore(ObjectStore):
    """Objects stored as plain files, one directory per bucket."""

    backend = "filesystem"

    def __init__(self, root: Path):
        self.root = root

    def _object_path(self, bucket: str, object_id: str) -> Path:
        _check_name("bucket", bucket)
        _check_name("object id", object_id)
        return self.root / bucket / object_id

    def ensure_bucket(self, bucket: str) -> None:
        _check_name("bucket", bucket)
        (self.root / bucket).mkdir(parents=True, exist_ok=True)

    def put(self, bucket: str, object_id: str, data: BinaryIO, content_type: str) -> int:
        path = self._object_path(bucket, object_id)
        tmp_path = path.parent / f".{object_id}.{uuid.uuid4().hex}.tmp"

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "wb") as f:
                shutil.copyfileobj(data, f, COPY_CHUNK_SIZE)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            metrics.OBJECT_STORE_OPERATIONS.labels(operation="put", status="error").inc()
            logger.error("object_put_failed", bucket=bucket, object_id=object_id, error=str(e))
            raise UpstreamUnavailable("Storing in object store failed") from e

        size = path.stat().st_size
        metrics.OBJECT_STORE_OPERATIONS.labels(operation="put", status="success").inc()
        logger.info(
            "object_stored",
            backend=self.backend,
            bucket=bucket,
            object_id=object_id,
            size_bytes=size,
            content_type=content_type,
        )
        return size

    def get(self, bucket: str, object_id: str) -> BinaryIO:
        path = self._object_path(bucket, object_id)
        try:
            handle = open(path, "rb")
        except FileNotFoundError as e:
            metrics.OBJECT_STORE_OPERATIONS.labels(operation="get", status="missing").inc()
            logger.error("object_missing_dangling_reference", bucket=bucket, object_id=object_id)
            raise UpstreamUnavailable("Stored database file is unavailable") from e
        except OSError as e:
            metrics.OBJECT_STORE_OPERATIONS.labels(operation="get", status="error").inc()
            logger.error("object_get_failed", bucket=bucket, object_id=object_id, error=str(e))
            raise UpstreamUnavailable() from e

        metrics.OBJECT_STORE_OPERATIONS.labels(operation="get", status="success").inc()
        return handle

    def is_available(self) -> bool:
        try:
            return self.root.exists() and self.root.is_dir()
        except OSError:
            return False


class S3ObjectStore(ObjectStore):
    """Objects stored in an S3-compatible service."""

    backend = "s3"

    def __init__(
        self,
        endpoint_url: str | None,
        access_key_id: str | None,
        secret_access_key: str | None,
        region: str,
        timeout_seconds: int = 30,
        client=None,
    ):
        if client is None:
            session = boto3.Session(region_name=region)
            client = session.client(
                "s3",
                region_name=region,
                endpoint_url=endpoint_url,
                aws_access_key_id=access_key_id,
                aws_secret_access_key=secret_access_key,
                config=BotoConfig(
                    connect_timeout=timeout_seconds,
                    read_timeout=timeout_seconds,
                    retries={"max_attempts": 5, "mode": "standard"},
                ),
            )
        self._s3 = client

    @staticmethod
    def _is_not_found(err: Exception) -> bool:
        if isinstance(err, ClientError):
            code = err.response.get("Error", {}).get("Code", "")
            return code in {"NoSuchKey", "NoSuchBucket", "404", "NotFound"}
        return False

    def ensure_bucket(self, bucket: str) -> None:
        try:
            self._s3.head_bucket(Bucket=bucket)
            return
        except ClientError as e:
            if not self._is_not_found(e):
                logger.error("bucket_check_failed", bucket=bucket, error=str(e))
                raise UpstreamUnavailable() from e
        except BotoCoreError as e:
            logger.error("bucket_check_failed", bucket=bucket, error=str(e))
            raise UpstreamUnavailable() from e

        try:
            self._s3.create_bucket(Bucket=bucket)
        except (ClientError, BotoCoreError) as e:
            logger.error("bucket_create_failed", bucket=bucket, error=str(e))
            raise UpstreamUnavailable() from e
        logger.info("bucket_created", bucket=bucket)

    def put(self, bucket: str, object_id: str, data: BinaryIO, content_type: str) -> int:
        try:
            self._s3.upload_fileobj(
                data, bucket, object_id, ExtraArgs={"ContentType": content_type}
            )
            # The object counts as stored only once the service reports it
            head = self._s3.head_object(Bucket=bucket, Key=object_id)
        except (ClientError, BotoCoreError) as e:
            metrics.OBJECT_STORE_OPERATIONS.labels(operation="put", status="error").inc()
            logger.error("object_put_failed", bucket=bucket, object_id=object_id, error=str(e))
            raise UpstreamUnavailable("Storing in object store failed") from e

        size = int(head["ContentLength"])
        metrics.OBJECT_STORE_OPERATIONS.labels(operation="put", status="success").inc()
        logger.info(
            "object_stored",
            backend=self.backend,
            bucket=bucket,
            object_id=object_id,
            size_bytes=size,
            content_type=content_type,
        )
        return size

    def get(self, bucket: str, object_id: str) -> BinaryIO:
        try:
            resp = self._s3.get_object(Bucket=bucket, Key=object_id)
        except (ClientError, BotoCoreError) as e:
            if self._is_not_found(e):
                metrics.OBJECT_STORE_OPERATIONS.labels(operation="get", status="missing").inc()
                logger.error("object_missing_dangling_reference", bucket=bucket, object_id=object_id)
                raise UpstreamUnavailable("Stored database file is unavailable") from e
            metrics.OBJECT_STORE_OPERATIONS.labels(operation="get", status="error").inc()
            logger.error("object_get_failed", bucket=bucket, object_id=object_id, error=str(e))
            raise UpstreamUnavailable() from e

        metrics.OBJECT_STORE_OPERATIONS.labels(operation="get", status="success").inc()
        return resp["Body"]

    def is_available(self) -> bool:
        try:
            self._s3.list_buckets()
            return True
        except (ClientError, BotoCoreError) as e:
            logger.warning("object_store_unavailable", backend=self.backend, error=str(e))
            return False


def create_object_store(config: Settings) -> ObjectStore:
    """Build the object store selected by settings.object_store_backend."""
    if config.object_store_backend == "s3":
        return S3ObjectStore(
            endpoint_url=config.s3_endpoint_url,
            access_key_id=config.s3_access_key_id,
            secret_access_key=config.s3_secret_access_key,
            region=config.s3_region,
            timeout_seconds=config.s3_timeout_seconds,
        )
    return FilesystemObjectStore(config.objects_dir)


def copy_to_file(handle: BinaryIO, target: BinaryIO) -> int:
    """Stream an object into an open file. Returns bytes copied."""
    start_time = time.time()
    total = 0
    while chunk := handle.read(COPY_CHUNK_SIZE):
        target.write(chunk)
        total += len(chunk)
    metrics.OBJECT_FETCH_BYTES.inc(total)
    metrics.OBJECT_FETCH_DURATION.observe(time.time() - start_time)
    return total


@contextmanager
def materialize(store: ObjectStore, bucket: str, object_id: str, temp_dir: Path) -> Iterator[Path]:
    """
    Copy a stored object to a local temporary file.

    The store handle is closed once the copy ends, and the temporary file is
    removed when the context exits, on success and on every error path.

    Raises:
        UpstreamUnavailable: If the object cannot be fetched or written locally
    """
    handle = store.get(bucket, object_id)
    try:
        temp_dir.mkdir(parents=True, exist_ok=True)
        fd, name = tempfile.mkstemp(prefix="dbhub-", suffix=".db", dir=temp_dir)
        path = Path(name)
        try:
            with os.fdopen(fd, "wb") as f:
                written = copy_to_file(handle, f)
        except BaseException:
            path.unlink(missing_ok=True)
            raise
    except (OSError, BotoCoreError) as e:
        logger.error("object_materialize_failed", bucket=bucket, object_id=object_id, error=str(e))
        raise UpstreamUnavailable() from e
    finally:
        store.close(handle)

    try:
        logger.debug("object_materialized", object_id=object_id, size_bytes=written)
        yield path
    finally:
        path.unlink(missing_ok=True)
