from __future__ import annotations

import os
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TypeVar

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from expense_intake.core.config import Settings, settings
from expense_intake.core.logging import get_logger, log_event, log_exception, monotonic_ms

logger = get_logger(__name__)

T = TypeVar("T")

_RETRYABLE_S3_CODES = frozenset(
    {
        "RequestTimeout",
        "Throttling",
        "ThrottlingException",
        "SlowDown",
        "InternalError",
        "ServiceUnavailable",
    }
)


class StorageError(RuntimeError):
    pass


@dataclass(frozen=True)
class StoredObject:
    key: str
    byte_size: int


class ObjectStorage:
    """Where uploaded documents live; the recognition service reads them by signed reference."""

    backend = "abstract"

    def put(self, *, key: str, body: bytes, content_type: str | None = None) -> StoredObject:  # pragma: no cover
        raise NotImplementedError

    def get(self, *, key: str) -> bytes:  # pragma: no cover
        raise NotImplementedError

    def signed_reference(self, *, key: str, expires_in: int) -> str:  # pragma: no cover
        raise NotImplementedError


class LocalObjectStorage(ObjectStorage):
    backend = "local"

    def __init__(self, root: Path):
        self._root = root.resolve()
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, key: str) -> Path:
        path = (self._root / key).resolve()
        if not path.is_relative_to(self._root):
            raise StorageError(f"Key escapes storage root: {key}")
        return path

    def put(self, *, key: str, body: bytes, content_type: str | None = None) -> StoredObject:
        start = time.monotonic()
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(body)
        except OSError:
            log_exception(
                logger,
                "storage.put.failure",
                backend=self.backend,
                storage_key=key,
                byte_size=len(body),
            )
            raise
        log_event(
            logger,
            "storage.put.success",
            backend=self.backend,
            storage_key=key,
            byte_size=len(body),
            duration_ms=monotonic_ms(start),
        )
        return StoredObject(key=key, byte_size=len(body))

    def get(self, *, key: str) -> bytes:
        path = self._path(key)
        if not path.exists():
            raise StorageError(f"Object not found: {key}")
        return path.read_bytes()

    def signed_reference(self, *, key: str, expires_in: int) -> str:
        # Local files never leave the host; the file URI is the reference.
        path = self._path(key)
        if not path.exists():
            raise StorageError(f"Object not found: {key}")
        return path.as_uri()


class S3ObjectStorage(ObjectStorage):
    backend = "s3"
    max_attempts = 4

    def __init__(self, config: Settings = settings) -> None:
        region = config.s3_region
        if not region or region.lower() == "auto":
            region = "us-east-1"
        session = boto3.session.Session(
            aws_access_key_id=config.s3_access_key_id,
            aws_secret_access_key=config.s3_secret_access_key,
            region_name=region,
        )
        self._client = session.client(
            "s3",
            endpoint_url=config.s3_endpoint_url or None,
            config=Config(
                s3={"addressing_style": "virtual"},
                retries={"max_attempts": 3, "mode": "adaptive"},
                connect_timeout=30,
                read_timeout=60,
            ),
        )
        self._bucket = config.s3_bucket

    def put(self, *, key: str, body: bytes, content_type: str | None = None) -> StoredObject:
        start = time.monotonic()
        extra = {"ContentType": content_type} if content_type else {}
        self._with_retries(
            "put",
            key,
            lambda: self._client.put_object(Bucket=self._bucket, Key=key, Body=body, **extra),
        )
        log_event(
            logger,
            "storage.put.success",
            backend=self.backend,
            storage_key=key,
            byte_size=len(body),
            duration_ms=monotonic_ms(start),
        )
        return StoredObject(key=key, byte_size=len(body))

    def get(self, *, key: str) -> bytes:
        resp = self._with_retries(
            "get", key, lambda: self._client.get_object(Bucket=self._bucket, Key=key)
        )
        return resp["Body"].read()

    def signed_reference(self, *, key: str, expires_in: int) -> str:
        try:
            return self._client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self._bucket, "Key": key},
                ExpiresIn=expires_in,
            )
        except (BotoCoreError, ClientError) as e:
            log_exception(logger, "storage.sign.failure", backend=self.backend, storage_key=key)
            raise StorageError(f"Could not sign {key}") from e

    def _with_retries(self, op: str, key: str, call: Callable[[], T]) -> T:
        for attempt in range(1, self.max_attempts + 1):
            try:
                return call()
            except (BotoCoreError, ClientError) as e:
                if attempt < self.max_attempts and _is_retryable(e):
                    delay_s = min(3.0, 0.25 * (2 ** (attempt - 1)))
                    log_event(
                        logger,
                        f"storage.{op}.retry",
                        backend=self.backend,
                        storage_key=key,
                        attempt=attempt,
                        delay_s=delay_s,
                        error_type=type(e).__name__,
                    )
                    time.sleep(delay_s)
                    continue
                log_exception(
                    logger,
                    f"storage.{op}.failure",
                    backend=self.backend,
                    storage_key=key,
                    attempt=attempt,
                )
                raise StorageError(f"S3 {op} failed: {key}") from e
        raise StorageError(f"S3 {op} failed: {key}")


def _is_retryable(error: Exception) -> bool:
    if isinstance(error, ClientError):
        code = (error.response.get("Error") or {}).get("Code")
        return code in _RETRYABLE_S3_CODES
    return isinstance(error, BotoCoreError)


_storage: ObjectStorage | None = None


def get_storage() -> ObjectStorage:
    global _storage  # noqa: PLW0603
    if _storage is not None:
        return _storage

    if settings.storage_backend == "s3":
        _storage = S3ObjectStorage()
    else:
        root = settings.local_storage_path
        if not root.is_absolute():
            root = Path(os.getcwd()) / root
        _storage = LocalObjectStorage(root)
    return _storage
