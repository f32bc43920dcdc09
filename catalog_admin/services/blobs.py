"""Object storage backends for entity images."""

from __future__ import annotations

import abc
import contextlib
import logging
import os
import shutil
import time
from pathlib import Path, PurePosixPath
from typing import Any, Callable, Dict, Iterator, List, Optional, Set

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from ..config import AppConfig, S3Settings
from .errors import StoreFailure, ValidationError


LOGGER = logging.getLogger(__name__)

IMAGES_PREFIX = "images"
DELETED_PREFIX = "deleted"
IMAGE_EXTENSION = ".jpeg"


def image_key(entity_type: str, entity_id: int) -> str:
    """Return the bucket key of an entity's live image."""

    return f"{IMAGES_PREFIX}/{entity_type}/{entity_id}{IMAGE_EXTENSION}"


def deleted_image_key(entity_type: str, entity_id: int) -> str:
    """Return the key an image is staged under while its entity is soft-deleted."""

    return f"{DELETED_PREFIX}/{image_key(entity_type, entity_id)}"


class BlobStore(abc.ABC):
    """Common interface of the bucket backends.

    Subclasses implement the primitive operations; ``move`` is composed from
    ``copy`` and ``delete``. Every backend error is raised as ``StoreFailure``.
    """

    def __init__(self, *, event_emitter: Optional[Callable[..., None]] = None) -> None:
        self._event_emitter = event_emitter

    def configure_event_emitter(self, emitter: Optional[Callable[..., None]]) -> None:
        self._event_emitter = emitter

    @contextlib.contextmanager
    def _track(self, operation: str, **payload: Any) -> Iterator[Dict[str, Any]]:
        start = time.perf_counter()
        event_payload: Dict[str, Any] = dict(payload)
        try:
            yield event_payload
        except Exception as exc:
            event_payload["status"] = "error"
            event_payload["error"] = f"{exc.__class__.__name__}: {exc}"
            raise
        finally:
            if self._event_emitter is not None:
                event_payload.setdefault("status", "ok")
                self._event_emitter(
                    "FILE_OP",
                    operation,
                    payload=event_payload,
                    duration_ms=(time.perf_counter() - start) * 1000.0,
                )

    @abc.abstractmethod
    def exists(self, key: str) -> bool:
        raise NotImplementedError

    @abc.abstractmethod
    def get(self, key: str) -> bytes:
        raise NotImplementedError

    @abc.abstractmethod
    def put(self, key: str, data: bytes, *, content_type: Optional[str] = None) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def copy(self, source_key: str, destination_key: str) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def delete(self, key: str) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def list_keys(self, prefix: str) -> List[str]:
        raise NotImplementedError

    @abc.abstractmethod
    def list_prefixes(self, prefix: str, delimiter: str = "/") -> List[str]:
        raise NotImplementedError

    def move(self, source_key: str, destination_key: str) -> None:
        self.copy(source_key, destination_key)
        self.delete(source_key)


class LocalBlobStore(BlobStore):
    """Bucket emulation backed by a directory tree."""

    def __init__(
        self,
        root: Path,
        *,
        event_emitter: Optional[Callable[..., None]] = None,
    ) -> None:
        super().__init__(event_emitter=event_emitter)
        self._root = Path(root).resolve()

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, key: str) -> Path:
        relative = PurePosixPath(key)
        if relative.is_absolute() or ".." in relative.parts or not relative.parts:
            raise ValidationError(f"Invalid object key: {key!r}")
        return self._root.joinpath(*relative.parts)

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def get(self, key: str) -> bytes:
        with self._track("get", key=key):
            path = self._path(key)
            try:
                return path.read_bytes()
            except OSError as exc:
                raise StoreFailure(f"Could not read {key}: {exc}") from exc

    def put(self, key: str, data: bytes, *, content_type: Optional[str] = None) -> None:
        with self._track("put", key=key, size=len(data)):
            path = self._path(key)
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_bytes(data)
            except OSError as exc:
                raise StoreFailure(f"Could not write {key}: {exc}") from exc

    def copy(self, source_key: str, destination_key: str) -> None:
        with self._track("copy", source=source_key, destination=destination_key):
            source = self._path(source_key)
            destination = self._path(destination_key)
            try:
                destination.parent.mkdir(parents=True, exist_ok=True)
                shutil.copyfile(source, destination)
            except OSError as exc:
                raise StoreFailure(
                    f"Could not copy {source_key} to {destination_key}: {exc}"
                ) from exc

    def delete(self, key: str) -> None:
        with self._track("delete", key=key):
            path = self._path(key)
            try:
                path.unlink()
            except FileNotFoundError:
                return
            except OSError as exc:
                raise StoreFailure(f"Could not delete {key}: {exc}") from exc

    def list_keys(self, prefix: str) -> List[str]:
        keys: List[str] = []
        if not self._root.exists():
            return keys
        for dirpath, _dirnames, filenames in os.walk(self._root):
            for filename in filenames:
                relative = Path(dirpath, filename).relative_to(self._root)
                key = relative.as_posix()
                if key.startswith(prefix):
                    keys.append(key)
        return sorted(keys)

    def list_prefixes(self, prefix: str, delimiter: str = "/") -> List[str]:
        prefixes = set()
        for key in self.list_keys(prefix):
            remainder = key[len(prefix):]
            if delimiter in remainder:
                prefixes.add(prefix + remainder.split(delimiter, 1)[0] + delimiter)
        return sorted(prefixes)


class S3BlobStore(BlobStore):
    """Bucket access through any S3-compatible endpoint (AWS, R2, MinIO)."""

    def __init__(
        self,
        settings: S3Settings,
        *,
        client: Any = None,
        event_emitter: Optional[Callable[..., None]] = None,
    ) -> None:
        super().__init__(event_emitter=event_emitter)
        if not settings.bucket:
            raise ValidationError("S3 bucket name is required")
        self._bucket = settings.bucket
        if client is None:
            session_kwargs: Dict[str, Any] = {}
            if settings.access_key_id and settings.secret_access_key:
                session_kwargs.update(
                    aws_access_key_id=settings.access_key_id,
                    aws_secret_access_key=settings.secret_access_key,
                )
            client = boto3.client(
                "s3",
                endpoint_url=settings.endpoint_url,
                config=Config(
                    region_name=settings.region,
                    retries={"max_attempts": 3, "mode": "standard"},
                ),
                **session_kwargs,
            )
        self._client = client
        LOGGER.info("S3 blob store initialised for bucket %s", self._bucket)

    @staticmethod
    def _error_code(exc: ClientError) -> str:
        return str(exc.response.get("Error", {}).get("Code", ""))

    def exists(self, key: str) -> bool:
        try:
            self._client.head_object(Bucket=self._bucket, Key=key)
        except ClientError as exc:
            if self._error_code(exc) in {"404", "NoSuchKey", "NotFound"}:
                return False
            raise StoreFailure(f"Could not stat {key}: {exc}") from exc
        except BotoCoreError as exc:
            raise StoreFailure(f"Could not stat {key}: {exc}") from exc
        return True

    def get(self, key: str) -> bytes:
        with self._track("get", key=key, bucket=self._bucket):
            try:
                response = self._client.get_object(Bucket=self._bucket, Key=key)
                return response["Body"].read()
            except (ClientError, BotoCoreError) as exc:
                raise StoreFailure(f"Could not read {key}: {exc}") from exc

    def put(self, key: str, data: bytes, *, content_type: Optional[str] = None) -> None:
        with self._track("put", key=key, bucket=self._bucket, size=len(data)):
            extra: Dict[str, Any] = {}
            if content_type:
                extra["ContentType"] = content_type
            try:
                self._client.put_object(Bucket=self._bucket, Key=key, Body=data, **extra)
            except (ClientError, BotoCoreError) as exc:
                raise StoreFailure(f"Could not write {key}: {exc}") from exc

    def copy(self, source_key: str, destination_key: str) -> None:
        with self._track(
            "copy", source=source_key, destination=destination_key, bucket=self._bucket
        ):
            try:
                self._client.copy_object(
                    Bucket=self._bucket,
                    Key=destination_key,
                    CopySource={"Bucket": self._bucket, "Key": source_key},
                )
            except (ClientError, BotoCoreError) as exc:
                raise StoreFailure(
                    f"Could not copy {source_key} to {destination_key}: {exc}"
                ) from exc

    def delete(self, key: str) -> None:
        with self._track("delete", key=key, bucket=self._bucket):
            try:
                self._client.delete_object(Bucket=self._bucket, Key=key)
            except (ClientError, BotoCoreError) as exc:
                raise StoreFailure(f"Could not delete {key}: {exc}") from exc

    def _paginate(self, **kwargs: Any) -> Iterator[Dict[str, Any]]:
        paginator = self._client.get_paginator("list_objects_v2")
        try:
            yield from paginator.paginate(Bucket=self._bucket, **kwargs)
        except (ClientError, BotoCoreError) as exc:
            raise StoreFailure(f"Could not list bucket {self._bucket}: {exc}") from exc

    def list_keys(self, prefix: str) -> List[str]:
        keys: List[str] = []
        for page in self._paginate(Prefix=prefix):
            keys.extend(item["Key"] for item in page.get("Contents", []))
        return keys

    def list_prefixes(self, prefix: str, delimiter: str = "/") -> List[str]:
        prefixes: List[str] = []
        for page in self._paginate(Prefix=prefix, Delimiter=delimiter):
            prefixes.extend(item["Prefix"] for item in page.get("CommonPrefixes", []))
        return prefixes


def list_image_ids(blobs: BlobStore, entity_type: str) -> Set[int]:
    """Return the ids of the entities of *entity_type* that have an image."""

    prefix = f"{IMAGES_PREFIX}/{entity_type}/"
    identifiers: Set[int] = set()
    for key in blobs.list_keys(prefix):
        stem = key[len(prefix):]
        if "/" in stem or not stem.endswith(IMAGE_EXTENSION):
            continue
        try:
            identifiers.add(int(stem[: -len(IMAGE_EXTENSION)]))
        except ValueError:
            continue
    return identifiers


def create_blob_store(
    config: AppConfig, *, event_emitter: Optional[Callable[..., None]] = None
) -> BlobStore:
    """Instantiate the backend selected by ``config.blob_backend``."""

    if config.blob_backend == "s3":
        assert config.s3 is not None
        return S3BlobStore(config.s3, event_emitter=event_emitter)
    return LocalBlobStore(config.blob_root, event_emitter=event_emitter)


__all__ = [
    "BlobStore",
    "DELETED_PREFIX",
    "IMAGES_PREFIX",
    "LocalBlobStore",
    "S3BlobStore",
    "create_blob_store",
    "deleted_image_key",
    "image_key",
    "list_image_ids",
]
