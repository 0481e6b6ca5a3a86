"""Attachment endpoints: upload/download URLs, confirm, delete, webhook, cleanup."""

import asyncio
import hmac

from fastapi import APIRouter, Depends, Header, HTTPException, Query

from src.attachments.reconciliation import AttachmentReconciler, get_reconciler
from src.attachments.repository import AttachmentRepository, get_attachment_repository
from src.attachments.schemas import (
    AttachmentWebhookPayload,
    ConfirmAttachmentRequest,
    OwnerType,
    UploadUrlRequest,
    UploadUrlResponse,
)
from src.attachments.service import (
    confirm_upload,
    delete_attachment,
    delete_owner_attachments,
    download_url,
    handle_row_deleted,
    request_upload,
)
from src.auth.dependencies import CurrentUser, get_current_user, require_admin
from src.config.settings import get_settings
from src.errors import ReconciliationPartialFailure
from src.storage.client import AttachmentStorage, get_attachment_storage

router = APIRouter(prefix="/api/attachments", tags=["Attachments"])
hooks_router = APIRouter(prefix="/api/hooks", tags=["Webhooks"])
admin_router = APIRouter(prefix="/api/admin", tags=["Admin"])


@router.post("/upload-url", response_model=UploadUrlResponse, summary="Authorize an upload", description="Return a pre-signed PUT URL and the server-generated file key.")
async def upload_url(
    body: UploadUrlRequest,
    user: CurrentUser = Depends(get_current_user),
    storage: AttachmentStorage = Depends(get_attachment_storage),
):
    auth = request_upload(storage, body.file_name, body.content_type)
    return UploadUrlResponse(data={"upload_url": auth.url, "file_key": auth.file_key, "expires_in": auth.expires_in})


@router.post("", status_code=201, summary="Confirm an upload", description="Record the metadata row for an object that has been uploaded.")
async def confirm(
    body: ConfirmAttachmentRequest,
    user: CurrentUser = Depends(get_current_user),
    repo: AttachmentRepository = Depends(get_attachment_repository),
    storage: AttachmentStorage = Depends(get_attachment_storage),
):
    row = confirm_upload(repo, storage, body)
    return {"status": "success", "data": row}


@router.get("/download-url", summary="Authorize a download", description="Return a pre-signed GET URL for a confirmed attachment.")
async def get_download_url(
    file_key: str = Query(..., min_length=1),
    user: CurrentUser = Depends(get_current_user),
    repo: AttachmentRepository = Depends(get_attachment_repository),
    storage: AttachmentStorage = Depends(get_attachment_storage),
):
    url = download_url(repo, storage, file_key)
    return {"status": "success", "data": {"download_url": url, "expires_in": storage.url_ttl_seconds}}


@router.delete("/{owner_type}/owners/{owner_id}", summary="Delete an owner's attachments", description="Delete every attachment row of one invoice or animal event, then their objects.")
async def delete_for_owner(
    owner_type: OwnerType,
    owner_id: str,
    user: CurrentUser = Depends(get_current_user),
    repo: AttachmentRepository = Depends(get_attachment_repository),
    storage: AttachmentStorage = Depends(get_attachment_storage),
):
    result = delete_owner_attachments(repo, storage, owner_type, owner_id)
    return {"status": "success", "data": result}


@router.delete("/{owner_type}/{attachment_id}", status_code=204, summary="Delete an attachment", description="Delete the metadata row, then its object.")
async def delete(
    owner_type: OwnerType,
    attachment_id: str,
    user: CurrentUser = Depends(get_current_user),
    repo: AttachmentRepository = Depends(get_attachment_repository),
    storage: AttachmentStorage = Depends(get_attachment_storage),
):
    delete_attachment(repo, storage, owner_type, attachment_id)


@hooks_router.post("/attachments", summary="Attachment row deleted", description="Database webhook: delete the object of a deleted attachment row.")
async def attachment_webhook(
    payload: AttachmentWebhookPayload,
    x_webhook_secret: str | None = Header(default=None),
    storage: AttachmentStorage = Depends(get_attachment_storage),
):
    expected = get_settings().ATTACHMENT_WEBHOOK_SECRET
    if not expected or not x_webhook_secret or not hmac.compare_digest(x_webhook_secret, expected):
        raise HTTPException(status_code=401, detail="Invalid webhook secret")
    return handle_row_deleted(storage, payload)


@admin_router.post("/cleanup-attachments", summary="Remove orphaned objects", description="Run attachment reconciliation. Admin only.")
async def cleanup_attachments(
    admin: CurrentUser = Depends(require_admin),
    reconciler: AttachmentReconciler = Depends(get_reconciler),
):
    report = await asyncio.to_thread(reconciler.reconcile)
    if report.errors:
        raise ReconciliationPartialFailure(report)
    return {
        "status": "success",
        "message": f"Cleanup completed. Removed {report.removed_count} orphaned files.",
        "data": report.as_dict(),
    }
