from __future__ import annotations

import logging
import re
from contextlib import ExitStack
from dataclasses import dataclass, field
from typing import Iterator, Optional
from urllib.parse import quote

from cloudbox.core.exceptions import NotFound, ServiceUnavailable
from cloudbox.core.metrics import MetricsStore, metrics as default_metrics
from cloudbox.metadata import FILES, MetadataStoreError, SqlMetadataStore
from cloudbox.storage import BlobHandle, LocalObjectStore, ObjectNotFound, ObjectStoreError

logger = logging.getLogger("cloudbox.retrieval")

DEFAULT_MIME_TYPE = "application/octet-stream"
DEFAULT_FILE_NAME = "downloaded-file"
_UNSAFE_NAME_CHARS = re.compile(r"[^a-zA-Z0-9._\-()\[\] ]")


def _with_extension(name: str, mime_type: str) -> str:
    if "." in name:
        return name
    subtype = mime_type.split(";", 1)[0].split("/", 1)[1:]
    ext = subtype[0].split("+", 1)[0].strip() if subtype else ""
    return f"{name}.{ext}" if ext else name


def served_file_name(name: Optional[str], mime_type: str) -> str:
    safe = _UNSAFE_NAME_CHARS.sub("_", name or DEFAULT_FILE_NAME)
    return _with_extension(safe, mime_type)


def content_disposition(name: Optional[str], mime_type: str, inline: bool) -> str:
    kind = "inline" if inline else "attachment"
    plain = served_file_name(name, mime_type)
    extended = quote(_with_extension(name or DEFAULT_FILE_NAME, mime_type), safe="")
    return f"{kind}; filename=\"{plain}\"; filename*=UTF-8''{extended}"


@dataclass
class RetrievedFile:
    """An opened blob plus its response framing. Iterate once; the handle is released afterwards."""

    file_id: str
    file_name: str
    mime_type: str
    disposition: str
    content_length: int
    _handle: BlobHandle = field(repr=False)
    _release: ExitStack = field(repr=False)
    _closed: bool = field(default=False, repr=False)

    @property
    def headers(self) -> dict[str, str]:
        return {
            "Content-Type": self.mime_type,
            "Content-Disposition": self.disposition,
            "Content-Length": str(self.content_length),
        }

    def iter_bytes(self) -> Iterator[bytes]:
        try:
            yield from self._handle.iter_chunks()
        finally:
            self.close()

    def read(self) -> bytes:
        return b"".join(self.iter_bytes())

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._release.close()


class RetrievalProxy:
    """Resolves a file id to its blob; pure read path."""

    def __init__(
        self,
        object_store: LocalObjectStore,
        metadata_store: SqlMetadataStore,
        metrics: MetricsStore = default_metrics,
    ) -> None:
        self.object_store = object_store
        self.metadata_store = metadata_store
        self.metrics = metrics

    def retrieve(self, file_id: str, inline: bool = False) -> RetrievedFile:
        try:
            record = self.metadata_store.get_document(FILES, file_id)
        except MetadataStoreError as exc:
            raise ServiceUnavailable("File lookup failed") from exc
        if record is None or record.is_deleted:
            raise NotFound()
        if not record.storage_key:
            logger.error("event=integrity_defect reason=no_storage_key file_id=%s", file_id)
            raise NotFound()

        mime_type = record.mime_type or DEFAULT_MIME_TYPE
        release = ExitStack()
        try:
            handle = release.enter_context(self.object_store.open(record.storage_key))
        except ObjectNotFound:
            logger.error(
                "event=integrity_defect reason=blob_missing file_id=%s storage_key=%s",
                file_id,
                record.storage_key,
            )
            raise NotFound()
        except ObjectStoreError as exc:
            logger.error("event=blob_read_failed file_id=%s error=%s", file_id, exc)
            raise ServiceUnavailable("File could not be read") from exc

        if handle.size != record.size:
            logger.warning(
                "event=size_mismatch file_id=%s recorded=%s stored=%s", file_id, record.size, handle.size
            )
        self.metrics.record_download()
        logger.info("event=file_served file_id=%s inline=%s size_bytes=%s", file_id, inline, handle.size)
        return RetrievedFile(
            file_id=file_id,
            file_name=served_file_name(record.name, mime_type),
            mime_type=mime_type,
            disposition=content_disposition(record.name, mime_type, inline),
            content_length=handle.size,
            _handle=handle,
            _release=release,
        )
