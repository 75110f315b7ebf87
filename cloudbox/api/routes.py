from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel
from sqlmodel import Session
from starlette.background import BackgroundTask

from cloudbox.api.deps import (
    get_file_manager,
    get_ingestion_pipeline,
    get_metadata_store,
    get_principal,
    get_retrieval_proxy,
)
from cloudbox.config import APP_URL
from cloudbox.core.exceptions import InvalidInput, ServiceUnavailable, Unauthenticated
from cloudbox.core.metrics import metrics
from cloudbox.db import ensure_connection, get_session
from cloudbox.metadata import SUBSCRIPTIONS, MetadataStoreError, SqlMetadataStore
from cloudbox.models import FileRecord
from cloudbox.services.files import FileManager
from cloudbox.services.ingestion import IngestionPipeline, retrieval_url
from cloudbox.services.retrieval import RetrievalProxy
from cloudbox.services.sessions import AuthenticatedPrincipal
from cloudbox.services.stats import usage_summary

router = APIRouter()

logger = logging.getLogger("cloudbox")


class RenameRequest(BaseModel):
    name: str


def _file_payload(record: FileRecord) -> dict:
    payload = record.to_public()
    payload["url"] = retrieval_url(record.id, APP_URL)
    return payload


def _flag(value: Optional[str]) -> bool:
    return (value or "").lower() in {"1", "true", "yes"}


@router.post("/api/upload")
async def upload(
    file: Optional[UploadFile] = File(None),
    userId: Optional[str] = Form(None),
    parentId: Optional[str] = Form(None),
    principal: AuthenticatedPrincipal = Depends(get_principal),
    pipeline: IngestionPipeline = Depends(get_ingestion_pipeline),
):
    if file is None:
        raise InvalidInput("No file provided")
    if userId and userId != principal.user_id:
        logger.warning("event=upload_rejected reason=user_mismatch form_user=%s session_user=%s", userId, principal.user_id)
        raise Unauthenticated("Session does not match user")

    data = await file.read()
    record = await run_in_threadpool(
        pipeline.ingest,
        principal.user_id,
        data,
        file.filename or "",
        file.content_type,
        parentId,
    )
    return {
        "success": True,
        "fileId": record.id,
        "url": retrieval_url(record.id, APP_URL),
        "fileName": record.name,
        "fileSize": record.size,
        "mimeType": record.mime_type,
        "uploadedAt": record.created_at.isoformat(),
    }


@router.get("/api/proxy-download")
def proxy_download(
    fileId: Optional[str] = None,
    inline: Optional[str] = None,
    proxy: RetrievalProxy = Depends(get_retrieval_proxy),
):
    if not fileId:
        raise InvalidInput("Missing fileId")
    retrieved = proxy.retrieve(fileId, inline=inline == "1")
    # iter_bytes releases the handle when it finishes; the background task
    # covers responses that end before the body is consumed.
    return StreamingResponse(
        retrieved.iter_bytes(),
        media_type=retrieved.mime_type,
        headers=retrieved.headers,
        background=BackgroundTask(retrieved.close),
    )


@router.get("/api/files")
def list_files(
    parentId: Optional[str] = None,
    trash: Optional[str] = None,
    favorites: Optional[str] = None,
    principal: AuthenticatedPrincipal = Depends(get_principal),
    files: FileManager = Depends(get_file_manager),
):
    deleted = _flag(trash)
    records = files.list_files(
        principal.user_id,
        parentId,
        deleted=deleted,
        favorites=_flag(favorites),
        # Trash and favorites are flat views across folders.
        all_folders=deleted or _flag(favorites),
    )
    return {"success": True, "files": [_file_payload(record) for record in records]}


@router.get("/api/files/usage")
def storage_usage(
    principal: AuthenticatedPrincipal = Depends(get_principal),
    store: SqlMetadataStore = Depends(get_metadata_store),
    session: Session = Depends(get_session),
):
    try:
        subscription = store.get_document(SUBSCRIPTIONS, principal.user_id)
    except MetadataStoreError as exc:
        raise ServiceUnavailable("Subscription lookup failed") from exc
    return {"success": True, **usage_summary(session, principal.user_id, subscription)}


@router.post("/api/files/trash/empty")
def empty_trash(
    principal: AuthenticatedPrincipal = Depends(get_principal),
    files: FileManager = Depends(get_file_manager),
):
    deleted = files.empty_trash(principal.user_id)
    return {"success": True, "deleted": deleted}


@router.patch("/api/files/{file_id}")
def rename_file(
    file_id: str,
    body: RenameRequest,
    principal: AuthenticatedPrincipal = Depends(get_principal),
    files: FileManager = Depends(get_file_manager),
):
    record = files.rename(principal.user_id, file_id, body.name)
    return {"success": True, "file": _file_payload(record)}


@router.post("/api/files/{file_id}/favorite")
def toggle_favorite(
    file_id: str,
    principal: AuthenticatedPrincipal = Depends(get_principal),
    files: FileManager = Depends(get_file_manager),
):
    record = files.toggle_favorite(principal.user_id, file_id)
    return {"success": True, "file": _file_payload(record)}


@router.post("/api/files/{file_id}/trash")
def move_to_trash(
    file_id: str,
    principal: AuthenticatedPrincipal = Depends(get_principal),
    files: FileManager = Depends(get_file_manager),
):
    record = files.move_to_trash(principal.user_id, file_id)
    return {"success": True, "file": _file_payload(record)}


@router.post("/api/files/{file_id}/restore")
def restore_file(
    file_id: str,
    principal: AuthenticatedPrincipal = Depends(get_principal),
    files: FileManager = Depends(get_file_manager),
):
    record = files.restore(principal.user_id, file_id)
    return {"success": True, "file": _file_payload(record)}


@router.delete("/api/files/{file_id}")
def delete_file(
    file_id: str,
    principal: AuthenticatedPrincipal = Depends(get_principal),
    files: FileManager = Depends(get_file_manager),
):
    files.delete_permanently(principal.user_id, file_id)
    return {"success": True}


@router.post("/api/files/{file_id}/replace")
async def replace_file(
    file_id: str,
    file: Optional[UploadFile] = File(None),
    principal: AuthenticatedPrincipal = Depends(get_principal),
    files: FileManager = Depends(get_file_manager),
):
    if file is None:
        raise InvalidInput("No file provided")
    data = await file.read()
    record = await run_in_threadpool(
        files.replace,
        principal.user_id,
        file_id,
        data,
        file.filename,
        file.content_type,
    )
    return {"success": True, "file": _file_payload(record)}


@router.get("/metrics")
def metrics_snapshot():
    response = JSONResponse(metrics.snapshot())
    response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate"
    return response


@router.get("/health")
def health():
    if not ensure_connection():
        raise ServiceUnavailable("Database unreachable")
    return {"status": "ok"}
