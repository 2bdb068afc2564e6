"""
Durable storage for raw source payloads.

Objects are addressed by key (``<namespace>/raw/<source_version>.json``) and
every write computes the SHA-256 digest while streaming so the content hash is
known without re-reading the blob.
"""

from __future__ import annotations

import hashlib
import json
import os
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Any, Iterable, Iterator, Mapping

from .errors import BlobNotFoundError, PayloadTooLargeError
from .utils import resolve_blob_directory

DEFAULT_CHUNK_SIZE = 64 * 1024
METADATA_SUFFIX = ".meta.json"


@dataclass(frozen=True)
class BlobMetadata:
    key: str
    size: int
    etag: str
    last_modified: datetime
    content_type: str = "application/json"
    metadata: Mapping[str, str] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "size": self.size,
            "etag": self.etag,
            "lastModified": self.last_modified.isoformat(),
            "contentType": self.content_type,
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True)
class UploadResult:
    key: str
    size: int
    sha256: str


def build_blob_key(namespace: str, source_version: str) -> str:
    namespace = (namespace or "hts").strip("/")
    return f"{namespace}/raw/{source_version}.json"


class BlobStore(ABC):
    """Minimal object-store contract used by the download and staging stages."""

    store_id: str

    @abstractmethod
    def exists(self, key: str) -> bool: ...

    @abstractmethod
    def get_metadata(self, key: str) -> BlobMetadata: ...

    @abstractmethod
    def upload_stream(
        self,
        key: str,
        chunks: Iterable[bytes],
        *,
        content_type: str = "application/json",
        metadata: Mapping[str, str] | None = None,
        max_bytes: int | None = None,
    ) -> UploadResult: ...

    @abstractmethod
    def download_stream(self, key: str, *, chunk_size: int = DEFAULT_CHUNK_SIZE) -> Iterator[bytes]: ...

    @abstractmethod
    def open(self, key: str) -> IO[bytes]: ...

    @abstractmethod
    def delete(self, key: str) -> None: ...


class LocalBlobStore(BlobStore):
    """
    Filesystem-backed blob store.

    Writes land in a temporary file beside the target and are moved into place
    with ``os.replace`` so readers never observe a partial object. Metadata is
    kept in a ``<key>.meta.json`` sidecar.
    """

    def __init__(self, root: str | os.PathLike[str], *, store_id: str | None = None):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.store_id = store_id or f"local:{self.root.as_posix()}"

    def _path_for(self, key: str) -> Path:
        relative = Path(*[part for part in key.split("/") if part not in ("", ".", "..")])
        return self.root / relative

    def _meta_path_for(self, key: str) -> Path:
        path = self._path_for(key)
        return path.with_name(path.name + METADATA_SUFFIX)

    def exists(self, key: str) -> bool:
        return self._path_for(key).is_file()

    def get_metadata(self, key: str) -> BlobMetadata:
        path = self._path_for(key)
        if not path.is_file():
            raise BlobNotFoundError(key)
        stat = path.stat()
        sidecar: dict[str, Any] = {}
        meta_path = self._meta_path_for(key)
        if meta_path.is_file():
            sidecar = json.loads(meta_path.read_text(encoding="utf-8"))
        etag = sidecar.get("sha256") or self._hash_file(path)
        return BlobMetadata(
            key=key,
            size=stat.st_size,
            etag=etag,
            last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            content_type=sidecar.get("contentType", "application/json"),
            metadata=sidecar.get("metadata") or {},
        )

    def upload_stream(
        self,
        key: str,
        chunks: Iterable[bytes],
        *,
        content_type: str = "application/json",
        metadata: Mapping[str, str] | None = None,
        max_bytes: int | None = None,
    ) -> UploadResult:
        """
        Stream ``chunks`` into the object at ``key``.

        ``max_bytes`` is enforced while writing; the callable producing the
        chunks may raise to abort, in which case nothing is published.
        """
        target = self._path_for(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        digest = hashlib.sha256()
        size = 0
        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=".upload-", suffix=".part")
        try:
            with os.fdopen(fd, "wb") as handle:
                for chunk in chunks:
                    if not chunk:
                        continue
                    size += len(chunk)
                    if max_bytes is not None and size > max_bytes:
                        raise PayloadTooLargeError(size, max_bytes)
                    digest.update(chunk)
                    handle.write(chunk)
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

        sha256 = digest.hexdigest()
        self._meta_path_for(key).write_text(
            json.dumps(
                {
                    "sha256": sha256,
                    "size": size,
                    "contentType": content_type,
                    "metadata": dict(metadata or {}),
                },
                sort_keys=True,
            ),
            encoding="utf-8",
        )
        return UploadResult(key=key, size=size, sha256=sha256)

    def download_stream(self, key: str, *, chunk_size: int = DEFAULT_CHUNK_SIZE) -> Iterator[bytes]:
        path = self._path_for(key)
        if not path.is_file():
            raise BlobNotFoundError(key)
        with path.open("rb") as handle:
            while True:
                chunk = handle.read(chunk_size)
                if not chunk:
                    break
                yield chunk

    def open(self, key: str) -> IO[bytes]:
        path = self._path_for(key)
        if not path.is_file():
            raise BlobNotFoundError(key)
        return path.open("rb")

    def delete(self, key: str) -> None:
        self._path_for(key).unlink(missing_ok=True)
        self._meta_path_for(key).unlink(missing_ok=True)

    @staticmethod
    def _hash_file(path: Path) -> str:
        digest = hashlib.sha256()
        with path.open("rb") as handle:
            for chunk in iter(lambda: handle.read(DEFAULT_CHUNK_SIZE), b""):
                digest.update(chunk)
        return digest.hexdigest()


def get_blob_store(app) -> BlobStore:
    """Return the blob store cached on the importer extension state."""
    state = app.extensions.setdefault("importer", {})
    store: BlobStore | None = state.get("blob_store")
    if store is None:
        store = LocalBlobStore(
            resolve_blob_directory(app),
            store_id=app.config.get("IMPORTER_BLOB_STORE_ID"),
        )
        state["blob_store"] = store
    return store
