"""FastAPI local gateway over the vault runtime."""

from __future__ import annotations

import logging
import os
from typing import List, Optional

from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from pydantic import BaseModel, Field

from ..config import CipherVaultConfig
from ..exceptions import (
    CipherVaultError,
    CycleRejected,
    DecryptionFailed,
    InvalidRecordState,
    InvalidSnapshot,
    KeyUnwrapFailed,
    RecordNotFound,
    SessionRequired,
    StorageDownloadFailed,
    StorageUploadFailed,
    TaskStateError,
)
from ..models import DEFAULT_CONTENT_TYPE, Classification, FileRecord, ShareGrant, SourceFile, to_millis
from ..runtime import CipherVaultRuntime
from ..services import views

runtime = CipherVaultRuntime.bootstrap(CipherVaultConfig.from_env())
logger = logging.getLogger(__name__)

app = FastAPI(title="CipherVault Local Gateway", version="0.1.0")

_cors_origins = [origin.strip() for origin in os.environ.get("CIPHER_VAULT_CORS_ORIGINS", "*").split(",") if origin.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins or ["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

_STATUS_BY_ERROR = (
    (RecordNotFound, 404),
    (SessionRequired, 401),
    (KeyUnwrapFailed, 403),
    (DecryptionFailed, 422),
    (CycleRejected, 409),
    (TaskStateError, 409),
    (InvalidRecordState, 409),
    (InvalidSnapshot, 400),
    (StorageUploadFailed, 502),
    (StorageDownloadFailed, 502),
)


@app.exception_handler(CipherVaultError)
async def _vault_error_handler(request: Request, exc: CipherVaultError) -> JSONResponse:
    status = next((code for kind, code in _STATUS_BY_ERROR if isinstance(exc, kind)), 500)
    if status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status, content={"error": exc.__class__.__name__, "detail": str(exc)})


class ConnectRequest(BaseModel):
    identity: str


class FolderCreateRequest(BaseModel):
    name: str
    parent_id: Optional[str] = None


class RenameRequest(BaseModel):
    name: str


class MoveRequest(BaseModel):
    parent_id: Optional[str] = None


class BatchRequest(BaseModel):
    ids: List[str] = Field(default_factory=list)


class ShareRequest(BaseModel):
    recipient: str
    permission: str = "read"


class ImportRequest(BaseModel):
    snapshot: str


def _owner() -> str:
    return runtime.session.require_identity()


def _owned(record_id: str) -> FileRecord:
    record = runtime.record_store.require(record_id)
    if record.owner_id != _owner():
        raise RecordNotFound(f"Record {record_id} not found")
    return record


def _serialize_share(grant: ShareGrant) -> dict:
    return {
        "shareId": grant.share_id,
        "recordId": grant.record_id,
        "ownerId": grant.owner_id,
        "recipientId": grant.recipient_id,
        "displayName": grant.display_name,
        "contentType": grant.content_type,
        "permission": grant.permission,
        "createdAt": to_millis(grant.created_at),
        "revokedAt": to_millis(grant.revoked_at),
    }


# Session ----------------------------------------------------------------------


@app.get("/session")
def get_session():
    return {"identity": runtime.session.identity, "connected": runtime.session.is_connected}


@app.post("/session:connect")
def connect(payload: ConnectRequest):
    try:
        purged = runtime.connect(payload.identity)
    except SessionRequired as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"identity": runtime.session.identity, "purged": purged}


@app.post("/session:disconnect")
def disconnect():
    runtime.disconnect()
    return {"identity": None, "connected": False}


# Uploads ----------------------------------------------------------------------


@app.post("/uploads")
def upload_files(
    files: List[UploadFile] = File(...),
    parent_id: Optional[str] = Form(default=None),
    classification: Classification = Form(default=Classification.PRIVATE),
):
    _owner()
    sources = []
    for upload in files:
        if not upload.filename:
            raise HTTPException(status_code=400, detail="File name is required")
        try:
            data = upload.file.read()
        finally:
            upload.file.close()
        sources.append(SourceFile(
            name=upload.filename,
            data=data,
            content_type=upload.content_type or DEFAULT_CONTENT_TYPE,
        ))
    tasks = runtime.upload_pipeline.enqueue(sources, parent_id=parent_id, classification=classification)
    runtime.upload_pipeline.process_queue(runtime.session)
    return [task.describe() for task in tasks]


@app.get("/uploads")
def list_uploads():
    return {
        "tasks": [task.describe() for task in runtime.upload_pipeline.snapshot()],
        "active": runtime.upload_pipeline.has_active_tasks,
    }


@app.post("/uploads:process")
def process_uploads():
    settled = runtime.upload_pipeline.process_queue(runtime.session)
    return [task.describe() for task in settled]


@app.post("/uploads/{task_id}:retry")
def retry_upload(task_id: str):
    task = runtime.upload_pipeline.retry(task_id)
    return task.describe()


@app.delete("/uploads/{task_id}")
def remove_upload(task_id: str):
    runtime.upload_pipeline.remove(task_id)
    return {"status": "removed", "id": task_id}


@app.post("/uploads:clear-completed")
def clear_completed_uploads():
    return {"removed": runtime.upload_pipeline.clear_completed()}


# Records ----------------------------------------------------------------------


@app.get("/files")
def list_files(
    view: str = "all",
    parent_id: Optional[str] = None,
    q: Optional[str] = None,
    classification: Optional[Classification] = None,
    limit: Optional[int] = None,
):
    owner = _owner()
    records = runtime.record_store.list_by_owner(owner, include_trashed=view == "trash")
    if view == "all":
        selected = [record for record in records if record.parent_id == parent_id]
    elif view == "trash":
        selected = views.trash_view(records)
    elif view == "starred":
        selected = views.starred_view(records)
    elif view == "recent":
        selected = views.recent_view(records, limit or runtime.config.lifecycle.recent_limit)
    elif view == "folders":
        selected = views.folders_view(records)
    elif view == "search":
        selected = views.search(records, q or "", classification=classification)
    else:
        raise HTTPException(status_code=400, detail=f"Unknown view: {view}")
    return [record.to_dict() for record in selected]


@app.get("/files/{record_id}")
def get_file(record_id: str):
    return _owned(record_id).to_dict()


@app.post("/folders")
def create_folder(payload: FolderCreateRequest):
    try:
        folder = runtime.record_store.create_folder(_owner(), payload.name, payload.parent_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return folder.to_dict()


@app.get("/folders/{record_id}/path")
def folder_path(record_id: str):
    _owned(record_id)
    return [{"id": record.id, "name": record.display_name} for record in runtime.record_store.folder_path(record_id)]


@app.post("/files/{record_id}:rename")
def rename_file(record_id: str, payload: RenameRequest):
    _owned(record_id)
    try:
        return runtime.record_store.rename(record_id, payload.name).to_dict()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.post("/files/{record_id}:move")
def move_file(record_id: str, payload: MoveRequest):
    _owned(record_id)
    return runtime.record_store.move_to_folder(record_id, payload.parent_id).to_dict()


@app.post("/files/{record_id}:star")
def star_file(record_id: str):
    _owned(record_id)
    return runtime.record_store.toggle_star(record_id).to_dict()


@app.post("/files/{record_id}:trash")
def trash_file(record_id: str):
    _owned(record_id)
    return runtime.record_store.move_to_trash(record_id).to_dict()


@app.post("/files/{record_id}:restore")
def restore_file(record_id: str):
    _owned(record_id)
    return runtime.record_store.restore(record_id).to_dict()


@app.post("/files:trash")
def trash_files(payload: BatchRequest):
    owner = _owner()
    owned = [record_id for record_id in payload.ids if _owned_or_none(record_id, owner)]
    return {"trashed": runtime.record_store.trash_many(owned)}


@app.post("/files:restore")
def restore_files(payload: BatchRequest):
    owner = _owner()
    owned = [record_id for record_id in payload.ids if _owned_or_none(record_id, owner)]
    return {"restored": runtime.record_store.restore_many(owned)}


@app.delete("/files/{record_id}")
def delete_file(record_id: str):
    _owned(record_id)
    runtime.record_store.delete_permanently(record_id)
    return {"status": "deleted", "id": record_id}


@app.post("/trash:purge")
def purge_trash(retention_days: Optional[int] = None):
    return {"purged": runtime.record_store.purge_expired_trash(_owner(), retention_days)}


@app.get("/files/{record_id}/download")
def download_file(record_id: str):
    record = _owned(record_id)
    plaintext = runtime.download_service.fetch(runtime.session, record_id)
    headers = {"Content-Disposition": f'attachment; filename="{record.display_name}"'}
    return Response(content=plaintext, media_type=record.content_type, headers=headers)


@app.get("/usage")
def usage():
    records = runtime.record_store.list_by_owner(_owner(), include_trashed=True)
    return views.usage_summary(records)


# Replicas ---------------------------------------------------------------------


@app.post("/files/{record_id}/replicas:verify")
def verify_replicas(record_id: str):
    _owned(record_id)
    return runtime.replica_monitor.refresh(record_id).to_dict()


@app.post("/files/{record_id}/replicas:heal")
def heal_replicas(record_id: str):
    _owned(record_id)
    return runtime.replica_monitor.heal(record_id).to_dict()


# Sharing ----------------------------------------------------------------------


@app.post("/files/{record_id}:share")
def share_file(record_id: str, payload: ShareRequest):
    try:
        grant = runtime.sharing_service.share(runtime.session, record_id, payload.recipient, payload.permission)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _serialize_share(grant)


@app.get("/shares/sent")
def shares_sent():
    return [_serialize_share(grant) for grant in runtime.sharing_service.list_sent(runtime.session)]


@app.get("/shares/received")
def shares_received():
    return [_serialize_share(grant) for grant in runtime.sharing_service.list_received(runtime.session)]


@app.delete("/shares/{share_id}")
def revoke_share(share_id: str):
    grant = runtime.sharing_service.revoke(runtime.session, share_id)
    return _serialize_share(grant)


@app.get("/shares/{share_id}/download")
def download_shared(share_id: str):
    plaintext = runtime.sharing_service.open_shared(runtime.session, share_id)
    return Response(content=plaintext, media_type="application/octet-stream")


# Snapshots --------------------------------------------------------------------


@app.get("/export")
def export_records():
    return PlainTextResponse(runtime.record_store.export_all(_owner()), media_type="application/json")


@app.post("/import")
def import_records(payload: ImportRequest):
    return {"imported": runtime.record_store.import_all(payload.snapshot, _owner())}


@app.post("/backups")
def create_backup():
    snapshot = runtime.backup_manager.seal(runtime.session)
    return {"file": snapshot.path.name, "items": snapshot.item_count, "takenAt": to_millis(snapshot.taken_at)}


@app.post("/backups:restore-latest")
def restore_latest_backup():
    latest = runtime.backup_manager.latest(_owner())
    if latest is None:
        raise HTTPException(status_code=404, detail="No backup available")
    return {"imported": runtime.backup_manager.restore(runtime.session, latest.path)}


def _owned_or_none(record_id: str, owner: str) -> bool:
    record = runtime.record_store.get(record_id)
    return record is not None and record.owner_id == owner
