from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from cloudbox.core.exceptions import InvalidInput, MetadataWriteFailed, NotFound, PayloadTooLarge, ServiceUnavailable, StorageWriteFailed
from cloudbox.core.metrics import MetricsStore, metrics as default_metrics
from cloudbox.metadata import FILES, DocumentNotFound, MetadataStoreError, MetadataStoreUnavailable, SqlMetadataStore
from cloudbox.models import FileRecord, utcnow
from cloudbox.services.ingestion import CommitState, resolve_mime_type, two_step_commit
from cloudbox.storage import LocalObjectStore, ObjectCapability, ObjectStoreError

logger = logging.getLogger("cloudbox.files")


@contextmanager
def _metadata_errors() -> Iterator[None]:
    try:
        yield
    except DocumentNotFound:
        raise NotFound()
    except MetadataStoreUnavailable as exc:
        raise ServiceUnavailable("Metadata store unavailable") from exc
    except MetadataStoreError as exc:
        raise MetadataWriteFailed(str(exc)) from exc


class FileManager:
    """Owner-scoped operations on existing FileRecords."""

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

    def get_owned(self, owner_id: str, file_id: str) -> FileRecord:
        with _metadata_errors():
            record = self.metadata_store.get_document(FILES, file_id)
        # Foreign records are reported exactly like missing ones.
        if record is None or record.owner_id != owner_id:
            raise NotFound()
        return record

    def _update(self, owner_id: str, file_id: str, **fields) -> FileRecord:
        self.get_owned(owner_id, file_id)
        with _metadata_errors():
            return self.metadata_store.update_document(FILES, file_id, fields)

    def list_files(
        self,
        owner_id: str,
        parent_id: Optional[str] = None,
        *,
        deleted: bool = False,
        favorites: bool = False,
        all_folders: bool = False,
    ) -> list[FileRecord]:
        filters = {"owner_id": owner_id, "is_deleted": deleted}
        if favorites:
            filters["is_favorite"] = True
        if not all_folders:
            filters["parent_id"] = parent_id
        with _metadata_errors():
            return self.metadata_store.query_documents(FILES, order_by="-created_at", **filters)

    def rename(self, owner_id: str, file_id: str, new_name: str) -> FileRecord:
        new_name = (new_name or "").strip()
        if not new_name:
            raise InvalidInput("Missing name")
        return self._update(owner_id, file_id, name=new_name)

    def toggle_favorite(self, owner_id: str, file_id: str) -> FileRecord:
        record = self.get_owned(owner_id, file_id)
        with _metadata_errors():
            return self.metadata_store.update_document(FILES, file_id, {"is_favorite": not record.is_favorite})

    def move_to_trash(self, owner_id: str, file_id: str) -> FileRecord:
        return self._update(owner_id, file_id, is_deleted=True)

    def restore(self, owner_id: str, file_id: str) -> FileRecord:
        return self._update(owner_id, file_id, is_deleted=False)

    def delete_permanently(self, owner_id: str, file_id: str) -> None:
        record = self.get_owned(owner_id, file_id)
        # The record goes first: a leftover blob is swept later, a record
        # pointing at a missing blob would be served as broken.
        with _metadata_errors():
            self.metadata_store.delete_document(FILES, file_id)
        self._discard_blob(record.storage_key, file_id)
        self.metrics.record_deletions(1)
        logger.info("event=file_deleted file_id=%s owner_id=%s", file_id, owner_id)

    def empty_trash(self, owner_id: str) -> int:
        deleted = 0
        for record in self.list_files(owner_id, deleted=True, all_folders=True):
            self.delete_permanently(owner_id, record.id)
            deleted += 1
        return deleted

    def replace(
        self,
        owner_id: str,
        file_id: str,
        file_bytes: bytes,
        file_name: Optional[str] = None,
        declared_mime_type: Optional[str] = None,
    ) -> FileRecord:
        """Point the record at a freshly written blob, then drop the previous blob."""
        record = self.get_owned(owner_id, file_id)
        if len(file_bytes) > self.max_file_size:
            raise PayloadTooLarge(f"File exceeds the {self.max_file_size / 1024 / 1024:.0f}MB limit")
        name = file_name or record.name
        try:
            new_key = self.object_store.reserve_key()
        except ObjectStoreError as exc:
            raise StorageWriteFailed(f"Storage upload failed: {exc}") from exc
        fields = {
            "name": name,
            "storage_key": new_key,
            "size": len(file_bytes),
            "mime_type": resolve_mime_type(declared_mime_type, name) if declared_mime_type or file_name else record.mime_type,
            "updated_at": utcnow(),
        }
        try:
            outcome = two_step_commit(
                lambda: self.object_store.put(new_key, file_bytes, ObjectCapability(owner_id=owner_id)),
                lambda: self.metadata_store.update_document(FILES, file_id, fields),
                lambda: self.object_store.delete(new_key),
            )
        except ObjectStoreError as exc:
            raise StorageWriteFailed(f"Storage upload failed: {exc}") from exc
        if outcome.state is CommitState.ROLLBACK_FAILED:
            self.metrics.increment("orphan_risks")
            logger.error(
                "event=replace_failed file_id=%s storage_key=%s orphan_risk=true cleanup_error=%s",
                file_id,
                new_key,
                outcome.undo_error,
            )
        if not outcome.committed:
            self.metrics.increment("ingest_rollbacks")
            if isinstance(outcome.error, DocumentNotFound):
                raise NotFound()
            raise MetadataWriteFailed(f"Database save failed: {outcome.error}") from outcome.error

        self._discard_blob(record.storage_key, file_id)
        logger.info("event=file_replaced file_id=%s old_key=%s new_key=%s", file_id, record.storage_key, new_key)
        return outcome.value

    def _discard_blob(self, storage_key: Optional[str], file_id: str) -> None:
        if not storage_key:
            return
        try:
            self.object_store.delete(storage_key)
        except ObjectStoreError as exc:
            logger.error(
                "event=blob_delete_failed file_id=%s storage_key=%s orphan_risk=true error=%s",
                file_id,
                storage_key,
                exc,
            )
