"""
Object storage backends for staged batches.

Both backends expose the same small async contract:
    put(key, data)            atomic whole-object write (overwrite allowed)
    put_if_absent(key, data)  atomic create; returns False if the key exists
    get(key) / exists(key) / list(prefix) / delete(key)

Blocking I/O runs in a worker thread (asyncio.to_thread) so a slow store
never stalls the event loop that drives the other workers.
"""

import asyncio
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional
from urllib.parse import urlparse

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from core.config import settings
from core.exceptions import ConfigurationError, StagingError, StorageWriteError

logger = logging.getLogger(__name__)


class ObjectStore(ABC):
    """Key/value blob store with atomic writes, listable by prefix"""

    @abstractmethod
    async def put(self, key: str, data: bytes) -> None:
        pass

    @abstractmethod
    async def put_if_absent(self, key: str, data: bytes) -> bool:
        pass

    @abstractmethod
    async def get(self, key: str) -> bytes:
        pass

    @abstractmethod
    async def exists(self, key: str) -> bool:
        pass

    @abstractmethod
    async def list(self, prefix: str = "") -> List[str]:
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        pass

    def location(self, key: str) -> str:
        """Human-readable location of a key (for manifests and logs)"""
        return key


class LocalObjectStore(ObjectStore):
    """
    Filesystem object store.

    Every write goes to a temp file in the destination directory and is
    published with os.replace (overwrite) or os.link (create-only), both
    atomic on POSIX filesystems. The temp file is removed on every exit path.
    """

    def __init__(self, root: str):
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise StagingError(f"Object key escapes store root: {key}", context={"key": key})
        return path

    def _write_temp(self, path: Path, data: bytes) -> str:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
        except BaseException:
            os.unlink(tmp_path)
            raise
        return tmp_path

    def _put(self, key: str, data: bytes) -> None:
        path = self._path(key)
        tmp_path = self._write_temp(path, data)
        try:
            os.replace(tmp_path, path)
        except BaseException:
            os.unlink(tmp_path)
            raise

    def _put_if_absent(self, key: str, data: bytes) -> bool:
        path = self._path(key)
        tmp_path = self._write_temp(path, data)
        try:
            os.link(tmp_path, path)
            return True
        except FileExistsError:
            return False
        finally:
            os.unlink(tmp_path)

    async def put(self, key: str, data: bytes) -> None:
        try:
            await asyncio.to_thread(self._put, key, data)
        except OSError as e:
            raise StorageWriteError(
                f"Failed to write object {key}",
                context={"key": key, "root": str(self.root)},
                original_exception=e
            )

    async def put_if_absent(self, key: str, data: bytes) -> bool:
        try:
            return await asyncio.to_thread(self._put_if_absent, key, data)
        except OSError as e:
            raise StorageWriteError(
                f"Failed to create object {key}",
                context={"key": key, "root": str(self.root)},
                original_exception=e
            )

    async def get(self, key: str) -> bytes:
        path = self._path(key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as e:
            raise StagingError(f"Object not found: {key}", context={"key": key}, original_exception=e)

    async def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def _list(self, prefix: str) -> List[str]:
        if not self.root.exists():
            return []
        keys = []
        for path in self.root.rglob("*"):
            if path.is_file() and not path.name.startswith("."):
                key = path.relative_to(self.root).as_posix()
                if key.startswith(prefix):
                    keys.append(key)
        return sorted(keys)

    async def list(self, prefix: str = "") -> List[str]:
        return await asyncio.to_thread(self._list, prefix)

    async def delete(self, key: str) -> None:
        path = self._path(key)
        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StorageWriteError(
                f"Failed to delete object {key}",
                context={"key": key, "root": str(self.root)},
                original_exception=e
            )

    def location(self, key: str) -> str:
        return f"file://{self._path(key)}"


class S3ObjectStore(ObjectStore):
    """
    S3 (or S3-compatible, e.g. MinIO) object store.

    A single PUT is atomic in S3, so payload and manifest writes need no
    temp objects; create-only writes use a conditional PUT (If-None-Match).
    """

    def __init__(
        self,
        bucket: str,
        prefix: str = "",
        endpoint_url: Optional[str] = None,
        region: Optional[str] = None,
        client=None
    ):
        self.bucket = bucket
        self.prefix = prefix.strip("/")
        if client is None:
            client_kwargs = {"service_name": "s3"}
            if region:
                client_kwargs["region_name"] = region
            # Custom endpoint (for S3-compatible services like MinIO)
            if endpoint_url:
                client_kwargs["endpoint_url"] = endpoint_url
            client = boto3.client(**client_kwargs)
        self._client = client

    def _full_key(self, key: str) -> str:
        return f"{self.prefix}/{key}" if self.prefix else key

    async def put(self, key: str, data: bytes) -> None:
        try:
            await asyncio.to_thread(
                self._client.put_object, Bucket=self.bucket, Key=self._full_key(key), Body=data
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageWriteError(
                f"Failed to write object {key}",
                context={"bucket": self.bucket, "key": self._full_key(key)},
                original_exception=e
            )

    async def put_if_absent(self, key: str, data: bytes) -> bool:
        try:
            await asyncio.to_thread(
                self._client.put_object,
                Bucket=self.bucket,
                Key=self._full_key(key),
                Body=data,
                IfNoneMatch="*",
            )
            return True
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code in ("PreconditionFailed", "ConditionalRequestConflict"):
                return False
            raise StorageWriteError(
                f"Failed to create object {key}",
                context={"bucket": self.bucket, "key": self._full_key(key), "error_code": code},
                original_exception=e
            )
        except BotoCoreError as e:
            raise StorageWriteError(
                f"Failed to create object {key}",
                context={"bucket": self.bucket, "key": self._full_key(key)},
                original_exception=e
            )

    async def get(self, key: str) -> bytes:
        try:
            response = await asyncio.to_thread(
                self._client.get_object, Bucket=self.bucket, Key=self._full_key(key)
            )
            return await asyncio.to_thread(response["Body"].read)
        except (BotoCoreError, ClientError) as e:
            raise StagingError(
                f"Failed to read object {key}",
                context={"bucket": self.bucket, "key": self._full_key(key)},
                original_exception=e
            )

    async def exists(self, key: str) -> bool:
        try:
            await asyncio.to_thread(
                self._client.head_object, Bucket=self.bucket, Key=self._full_key(key)
            )
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise StagingError(
                f"Failed to check object {key}",
                context={"bucket": self.bucket, "key": self._full_key(key)},
                original_exception=e
            )

    def _list(self, prefix: str) -> List[str]:
        paginator = self._client.get_paginator("list_objects_v2")
        full_prefix = self._full_key(prefix)
        strip = len(self.prefix) + 1 if self.prefix else 0
        keys = []
        for page in paginator.paginate(Bucket=self.bucket, Prefix=full_prefix):
            for obj in page.get("Contents", []):
                keys.append(obj["Key"][strip:])
        return sorted(keys)

    async def list(self, prefix: str = "") -> List[str]:
        try:
            return await asyncio.to_thread(self._list, prefix)
        except (BotoCoreError, ClientError) as e:
            raise StagingError(
                f"Failed to list objects under {prefix}",
                context={"bucket": self.bucket, "prefix": prefix},
                original_exception=e
            )

    async def delete(self, key: str) -> None:
        try:
            await asyncio.to_thread(
                self._client.delete_object, Bucket=self.bucket, Key=self._full_key(key)
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageWriteError(
                f"Failed to delete object {key}",
                context={"bucket": self.bucket, "key": self._full_key(key)},
                original_exception=e
            )

    def location(self, key: str) -> str:
        return f"s3://{self.bucket}/{self._full_key(key)}"


def build_object_store(url: Optional[str] = None) -> ObjectStore:
    """Create a store from OBJECT_STORE_URL (file:///path or s3://bucket/prefix)"""
    url = url or settings.OBJECT_STORE_URL
    parsed = urlparse(url)

    if parsed.scheme in ("", "file"):
        root = parsed.path if parsed.scheme else url
        logger.info(f"Using local object store at {root}")
        return LocalObjectStore(root)

    if parsed.scheme == "s3":
        logger.info(f"Using S3 object store s3://{parsed.netloc}/{parsed.path.lstrip('/')}")
        return S3ObjectStore(
            bucket=parsed.netloc,
            prefix=parsed.path,
            endpoint_url=settings.S3_ENDPOINT_URL,
            region=settings.S3_REGION,
        )

    raise ConfigurationError(
        f"Unsupported object store URL scheme: {parsed.scheme}",
        context={"url": url}
    )
