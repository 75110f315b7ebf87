from __future__ import annotations

import logging
import mimetypes
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Generic, Optional, TypeVar
from urllib.parse import quote

from cloudbox.core.exceptions import InvalidInput, MetadataWriteFailed, PayloadTooLarge, StorageWriteFailed
from cloudbox.core.metrics import MetricsStore, metrics as default_metrics
from cloudbox.metadata import FILES, SqlMetadataStore
from cloudbox.models import FileRecord, utcnow
from cloudbox.storage import LocalObjectStore, ObjectCapability, ObjectStoreError

logger = logging.getLogger("cloudbox.ingestion")

T = TypeVar("T")

DEFAULT_MIME_TYPE = "application/octet-stream"


class CommitState(str, Enum):
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_FAILED = "rollback_failed"


@dataclass(frozen=True)
class TwoStepOutcome(Generic[T]):
    state: CommitState
    value: Optional[T] = None
    error: Optional[BaseException] = None
    undo_error: Optional[BaseException] = None

    @property
    def committed(self) -> bool:
        return self.state is CommitState.COMMITTED


def two_step_commit(
    first: Callable[[], Any],
    second: Callable[[], T],
    undo_first: Callable[[], Any],
) -> TwoStepOutcome[T]:
    """Run ``first`` then ``second``; if ``second`` fails, undo ``first``.

    A failure of ``first`` propagates unchanged since nothing has been written.
    A failure of ``second`` never propagates: it is reported in the outcome
    together with the result of the undo attempt.
    """
    first()
    try:
        value = second()
    except Exception as exc:
        try:
            undo_first()
        except Exception as undo_exc:
            return TwoStepOutcome(CommitState.ROLLBACK_FAILED, error=exc, undo_error=undo_exc)
        return TwoStepOutcome(CommitState.ROLLED_BACK, error=exc)
    return TwoStepOutcome(CommitState.COMMITTED, value=value)


def retrieval_url(file_id: str, app_url: str = "") -> str:
    return f"{app_url}/api/proxy-download?fileId={quote(file_id)}"


def resolve_mime_type(declared: Optional[str], file_name: str) -> str:
    if declared:
        return declared
    guessed, _ = mimetypes.guess_type(file_name)
    return guessed or DEFAULT_MIME_TYPE


class IngestionPipeline:
    """Commits an uploaded file as a (blob, FileRecord) pair, or leaves nothing behind."""

    def __init__(
        self,
        object_store: LocalObjectStore,
        metadata_store: SqlMetadataStore,
        *,
        max_file_size: int,
        metrics: MetricsStore = default_metrics,
    ) -> None:
        self.object_store = object_store
        self.metadata_store = metadata_store
        self.max_file_size = max_file_size
        self.metrics = metrics

    def ingest(
        self,
        owner_id: str,
        file_bytes: bytes,
        file_name: str,
        declared_mime_type: Optional[str] = None,
        parent_id: Optional[str] = None,
    ) -> FileRecord:
        if not owner_id:
            raise InvalidInput("User ID required")
        if not file_name:
            raise InvalidInput("Missing filename")

        size = len(file_bytes)
        if size > self.max_file_size:
            logger.warning(
                "event=upload_rejected reason=max_size filename=%s size_bytes=%s limit_bytes=%s",
                file_name,
                size,
                self.max_file_size,
            )
            raise PayloadTooLarge(
                f"File size ({size / 1024 / 1024:.2f}MB) exceeds the "
                f"{self.max_file_size / 1024 / 1024:.0f}MB limit"
            )

        try:
            storage_key = self.object_store.reserve_key()
        except ObjectStoreError as exc:
            raise StorageWriteFailed(f"Storage upload failed: {exc}") from exc
        mime_type = resolve_mime_type(declared_mime_type, file_name)
        now = utcnow()
        fields = {
            "name": file_name,
            "owner_id": owner_id,
            "parent_id": parent_id or None,
            "size": size,
            "mime_type": mime_type,
            "storage_key": storage_key,
            "is_deleted": False,
            "is_favorite": False,
            "created_at": now,
            "updated_at": now,
        }

        try:
            outcome = two_step_commit(
                lambda: self.object_store.put(storage_key, file_bytes, ObjectCapability(owner_id=owner_id)),
                lambda: self.metadata_store.create_document(FILES, fields),
                lambda: self.object_store.delete(storage_key),
            )
        except ObjectStoreError as exc:
            logger.error("event=storage_write_failed storage_key=%s owner_id=%s error=%s", storage_key, owner_id, exc)
            raise StorageWriteFailed(f"Storage upload failed: {exc}") from exc

        if outcome.state is CommitState.ROLLED_BACK:
            self.metrics.increment("ingest_rollbacks")
            logger.error(
                "event=metadata_write_failed storage_key=%s owner_id=%s cleanup=ok error=%s",
                storage_key,
                owner_id,
                outcome.error,
            )
        elif outcome.state is CommitState.ROLLBACK_FAILED:
            self.metrics.increment("orphan_risks")
            logger.error(
                "event=metadata_write_failed storage_key=%s owner_id=%s cleanup=failed orphan_risk=true "
                "error=%s cleanup_error=%s",
                storage_key,
                owner_id,
                outcome.error,
                outcome.undo_error,
            )
        if not outcome.committed:
            raise MetadataWriteFailed(f"Database save failed: {outcome.error}") from outcome.error

        record = outcome.value
        self.metrics.record_upload(size)
        logger.info(
            "event=upload_success file_id=%s storage_key=%s size_bytes=%s content_type=%s owner_id=%s",
            record.id,
            storage_key,
            size,
            mime_type,
            owner_id,
        )
        return record
