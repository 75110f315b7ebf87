from __future__ import annotations

import json
import logging
import os
import secrets
import string
import tempfile
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import BinaryIO, Iterator

from sqlmodel import Session, select

from cloudbox.config import ORPHAN_GRACE_MINUTES, STORAGE_DIR, STORAGE_KEY_LENGTH
from cloudbox.models import FileRecord, utcnow

logger = logging.getLogger("cloudbox.storage")

_KEY_ALPHABET = string.ascii_letters + string.digits
_ACL_SUFFIX = ".acl.json"
_MAX_KEY_ATTEMPTS = 5
CHUNK_SIZE = 64 * 1024


class ObjectStoreError(Exception):
    """The object store could not complete the operation."""


class ObjectNotFound(ObjectStoreError):
    """No object is stored under the key."""


class ObjectExists(ObjectStoreError):
    """Another object already occupies the key."""


@dataclass(frozen=True)
class ObjectCapability:
    owner_id: str
    read: bool = True
    write: bool = True


@dataclass
class BlobHandle:
    stream: BinaryIO
    size: int

    def iter_chunks(self, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
        while True:
            chunk = self.stream.read(chunk_size)
            if not chunk:
                break
            yield chunk


def generate_storage_key(length: int = STORAGE_KEY_LENGTH) -> str:
    return "".join(secrets.choice(_KEY_ALPHABET) for _ in range(length))


class LocalObjectStore:
    """Blob store over a directory: one file per key plus an owner capability sidecar."""

    def __init__(self, root: str | os.PathLike = STORAGE_DIR) -> None:
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        if not key or any(ch not in _KEY_ALPHABET for ch in key):
            raise ObjectNotFound(key)
        path = (self.root / key).resolve()
        try:
            path.relative_to(self.root)
        except ValueError:
            raise ObjectNotFound(key)
        return path

    def _acl_path(self, key: str) -> Path:
        return self._path(key).with_name(key + _ACL_SUFFIX)

    def reserve_key(self) -> str:
        for _ in range(_MAX_KEY_ATTEMPTS):
            key = generate_storage_key()
            if not self._path(key).exists():
                return key
        raise ObjectStoreError("Unable to allocate a unique storage key")

    def put(self, key: str, data: bytes, capability: ObjectCapability) -> None:
        """Store a new blob; an existing key is never overwritten."""
        path = self._path(key)
        if path.exists():
            raise ObjectExists(key)
        tmp_name = None
        try:
            with tempfile.NamedTemporaryFile(dir=self.root, prefix=".upload-", delete=False) as tmp:
                tmp_name = tmp.name
                tmp.write(data)
            with open(self._acl_path(key), "w", encoding="utf-8") as acl:
                json.dump(asdict(capability), acl)
            # link() fails instead of replacing when the key appeared meanwhile.
            os.link(tmp_name, path)
        except FileExistsError:
            raise ObjectExists(key)
        except OSError as exc:
            self._acl_path(key).unlink(missing_ok=True)
            raise ObjectStoreError(f"write failed for {key}: {exc}") from exc
        finally:
            if tmp_name is not None:
                Path(tmp_name).unlink(missing_ok=True)

    def get(self, key: str) -> bytes:
        with self.open(key) as handle:
            return handle.stream.read()

    @contextmanager
    def open(self, key: str) -> Iterator[BlobHandle]:
        path = self._path(key)
        try:
            stream = open(path, "rb")
        except FileNotFoundError:
            raise ObjectNotFound(key)
        except OSError as exc:
            raise ObjectStoreError(f"read failed for {key}: {exc}") from exc
        try:
            yield BlobHandle(stream=stream, size=os.fstat(stream.fileno()).st_size)
        finally:
            stream.close()

    def delete(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink(missing_ok=True)
            self._acl_path(key).unlink(missing_ok=True)
        except OSError as exc:
            raise ObjectStoreError(f"delete failed for {key}: {exc}") from exc

    def exists(self, key: str) -> bool:
        try:
            return self._path(key).is_file()
        except ObjectNotFound:
            return False

    def capability(self, key: str) -> ObjectCapability | None:
        try:
            with open(self._acl_path(key), encoding="utf-8") as acl:
                return ObjectCapability(**json.load(acl))
        except (FileNotFoundError, ObjectNotFound):
            return None

    def iter_objects(self) -> Iterator[tuple[str, datetime]]:
        """Yield (key, last modified UTC) for every stored blob."""
        for entry in self.root.iterdir():
            name = entry.name
            if name.startswith(".") or name.endswith(_ACL_SUFFIX) or not entry.is_file():
                continue
            yield name, datetime.fromtimestamp(entry.stat().st_mtime, timezone.utc).replace(tzinfo=None)


def delete_orphaned_blobs(engine, store: LocalObjectStore, grace_minutes: int = ORPHAN_GRACE_MINUTES) -> int:
    """Remove blobs no FileRecord references once they are older than the grace period.

    The grace period keeps in-flight ingests (blob written, record not yet
    committed) out of reach of the sweep.
    """
    cutoff = utcnow() - timedelta(minutes=grace_minutes)
    candidates = [key for key, modified in store.iter_objects() if modified < cutoff]
    if not candidates:
        return 0

    with Session(engine) as session:
        referenced = set(
            session.exec(select(FileRecord.storage_key).where(FileRecord.storage_key.in_(candidates))).all()
        )

    deleted = 0
    for key in candidates:
        if key in referenced:
            continue
        try:
            store.delete(key)
        except ObjectStoreError as exc:
            logger.error("event=orphan_sweep_failure storage_key=%s error=%s", key, exc)
            continue
        logger.warning("event=orphan_blob_deleted storage_key=%s", key)
        deleted += 1
    return deleted
