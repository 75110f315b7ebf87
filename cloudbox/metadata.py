from __future__ import annotations

import logging
import uuid
from typing import Any, Type

from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlmodel import Session, SQLModel, select

from cloudbox.models import FileRecord, SubscriptionRecord, utcnow

logger = logging.getLogger("cloudbox.metadata")

FILES = "files"
SUBSCRIPTIONS = "subscriptions"

COLLECTIONS: dict[str, Type[SQLModel]] = {
    FILES: FileRecord,
    SUBSCRIPTIONS: SubscriptionRecord,
}


class MetadataStoreError(Exception):
    """The metadata store rejected or failed the operation."""


class MetadataStoreUnavailable(MetadataStoreError):
    """The metadata store could not be reached in time; retrying later may succeed."""


class DocumentNotFound(MetadataStoreError):
    pass


def generate_document_id() -> str:
    return uuid.uuid4().hex


class SqlMetadataStore:
    """Document-style access (collection + id) to the SQLModel tables."""

    def __init__(self, engine) -> None:
        self.engine = engine

    def _model(self, collection: str) -> Type[SQLModel]:
        try:
            return COLLECTIONS[collection]
        except KeyError:
            raise MetadataStoreError(f"Unknown collection: {collection}")

    def _session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)

    def _translate(self, collection: str, action: str, exc: SQLAlchemyError) -> MetadataStoreError:
        logger.error("event=metadata_%s_failed collection=%s error=%s", action, collection, exc)
        if isinstance(exc, OperationalError):
            return MetadataStoreUnavailable(str(exc))
        return MetadataStoreError(str(exc))

    def create_document(self, collection: str, fields: dict[str, Any], doc_id: str | None = None):
        model = self._model(collection)
        primary_key = model.__table__.primary_key.columns.keys()[0]
        values = dict(fields)
        values.setdefault(primary_key, doc_id or generate_document_id())
        record = model(**values)
        try:
            with self._session() as session:
                session.add(record)
                session.commit()
                session.refresh(record)
        except SQLAlchemyError as exc:
            raise self._translate(collection, "create", exc) from exc
        return record

    def get_document(self, collection: str, doc_id: str):
        model = self._model(collection)
        try:
            with self._session() as session:
                return session.get(model, doc_id)
        except SQLAlchemyError as exc:
            raise self._translate(collection, "get", exc) from exc

    def update_document(self, collection: str, doc_id: str, fields: dict[str, Any]):
        model = self._model(collection)
        try:
            with self._session() as session:
                record = session.get(model, doc_id)
                if record is None:
                    raise DocumentNotFound(f"{collection}/{doc_id}")
                for key, value in fields.items():
                    setattr(record, key, value)
                if "updated_at" not in fields and hasattr(record, "updated_at"):
                    record.updated_at = utcnow()
                session.add(record)
                session.commit()
                session.refresh(record)
                return record
        except SQLAlchemyError as exc:
            raise self._translate(collection, "update", exc) from exc

    def upsert_document(self, collection: str, doc_id: str, fields: dict[str, Any]):
        """Update the document stored under ``doc_id``, creating it when absent.

        A concurrent insert of the same key surfaces as an IntegrityError on
        commit; the write is then applied once more as an update.
        """
        try:
            return self._upsert_once(collection, doc_id, fields)
        except IntegrityError:
            logger.info("event=metadata_upsert_conflict collection=%s id=%s", collection, doc_id)
        try:
            return self._upsert_once(collection, doc_id, fields)
        except SQLAlchemyError as exc:
            raise self._translate(collection, "upsert", exc) from exc

    def _upsert_once(self, collection: str, doc_id: str, fields: dict[str, Any]):
        model = self._model(collection)
        primary_key = model.__table__.primary_key.columns.keys()[0]
        try:
            with self._session() as session:
                record = session.get(model, doc_id)
                if record is None:
                    record = model(**{**fields, primary_key: doc_id})
                else:
                    for key, value in fields.items():
                        setattr(record, key, value)
                session.add(record)
                session.commit()
                session.refresh(record)
                return record
        except IntegrityError:
            raise
        except SQLAlchemyError as exc:
            raise self._translate(collection, "upsert", exc) from exc

    def delete_document(self, collection: str, doc_id: str) -> None:
        model = self._model(collection)
        try:
            with self._session() as session:
                record = session.get(model, doc_id)
                if record is None:
                    raise DocumentNotFound(f"{collection}/{doc_id}")
                session.delete(record)
                session.commit()
        except SQLAlchemyError as exc:
            raise self._translate(collection, "delete", exc) from exc

    def query_documents(self, collection: str, order_by: str | None = None, limit: int | None = None, **filters: Any) -> list:
        model = self._model(collection)
        stmt = select(model)
        for key, value in filters.items():
            stmt = stmt.where(getattr(model, key) == value)
        if order_by:
            column = getattr(model, order_by.lstrip("-"))
            stmt = stmt.order_by(column.desc() if order_by.startswith("-") else column)
        if limit:
            stmt = stmt.limit(limit)
        try:
            with self._session() as session:
                return list(session.exec(stmt).all())
        except SQLAlchemyError as exc:
            raise self._translate(collection, "query", exc) from exc
