"""Attachment business logic: the two-step upload, downloads and deletes.

Metadata rows are the source of truth. An object only becomes an attachment
once its row exists, and deleting the row is what deletes the attachment;
the object delete that follows is best-effort because reconciliation sweeps
any object left behind.
"""

import logging

from fastapi import HTTPException

from src.attachments.repository import AttachmentRepository
from src.attachments.schemas import AttachmentWebhookPayload, ConfirmAttachmentRequest
from src.db.models import ATTACHMENT_TABLES
from src.errors import ObjectNotFound
from src.storage.client import AttachmentStorage, UploadAuthorization

logger = logging.getLogger(__name__)

_ATTACHMENT_TABLE_NAMES = {table for table, _ in ATTACHMENT_TABLES.values()}


def request_upload(storage: AttachmentStorage, file_name: str, content_type: str) -> UploadAuthorization:
    auth = storage.issue_upload_authorization(file_name, content_type)
    logger.info("Issued upload authorization for %s", auth.file_key)
    return auth


def confirm_upload(
    repo: AttachmentRepository,
    storage: AttachmentStorage,
    body: ConfirmAttachmentRequest,
) -> dict:
    """Insert the metadata row for an upload that has reached the bucket."""
    if not storage.object_exists(body.file_key):
        raise ObjectNotFound(body.file_key)

    _, owner_column = ATTACHMENT_TABLES[body.owner_type]
    # One row per object key: a second row would delete the object out from under the first.
    existing = repo.find_by_file_key(body.file_key)
    if existing is not None:
        owner_type, existing_row = existing
        if owner_type == body.owner_type and str(existing_row.get(owner_column)) == body.owner_id:
            return existing_row
        logger.warning("Rejected confirm of %s: already attached to %s %s", body.file_key, owner_type, existing_row.get("id"))
        raise HTTPException(status_code=409, detail="File key is already attached to another record")

    row = {
        owner_column: body.owner_id,
        "file_key": body.file_key,
        "file_name": body.file_name,
        "file_size": body.file_size,
        "content_type": body.content_type,
    }
    return repo.insert(body.owner_type, row)


def download_url(repo: AttachmentRepository, storage: AttachmentStorage, file_key: str) -> str:
    storage.validate_key(file_key)
    # Unconfirmed uploads have no row and are not downloadable.
    if repo.find_by_file_key(file_key) is None:
        raise ObjectNotFound(file_key)
    return storage.issue_download_authorization(file_key)


def _delete_object_quietly(storage: AttachmentStorage, file_key: str) -> bool:
    try:
        storage.delete_object(file_key)
        return True
    except Exception:
        logger.exception("Failed to delete object %s after its row was removed; left for reconciliation", file_key)
        return False


def delete_attachment(
    repo: AttachmentRepository,
    storage: AttachmentStorage,
    owner_type: str,
    attachment_id: str,
) -> dict:
    row = repo.delete(owner_type, attachment_id)
    if not row:
        raise HTTPException(status_code=404, detail="Attachment not found")
    _delete_object_quietly(storage, row["file_key"])
    return row


def delete_owner_attachments(
    repo: AttachmentRepository,
    storage: AttachmentStorage,
    owner_type: str,
    owner_id: str,
) -> dict:
    """Remove every attachment of one invoice or animal event."""
    rows = repo.delete_for_owner(owner_type, owner_id)
    removed, failed = [], []
    for row in rows:
        key = row.get("file_key")
        if not key:
            continue
        (removed if _delete_object_quietly(storage, key) else failed).append(key)

    logger.info(
        "Deleted %d attachment(s) for %s %s (%d object delete(s) deferred)",
        len(rows), owner_type, owner_id, len(failed),
    )
    return {"removed_rows": len(rows), "removed_objects": removed, "deferred_objects": failed}


def handle_row_deleted(storage: AttachmentStorage, payload: AttachmentWebhookPayload) -> dict:
    """React to a database webhook; only attachment-row DELETEs do anything."""
    if (payload.type or "").upper() != "DELETE" or not payload.table:
        return {"status": "skipped", "message": "Not a valid delete event"}
    if payload.table not in _ATTACHMENT_TABLE_NAMES:
        return {"status": "skipped", "message": "Event not applicable for attachment handling"}

    row = payload.deleted_row or {}
    file_key = row.get("file_key")
    if not file_key:
        raise HTTPException(status_code=400, detail="No file key found in deleted record")

    storage.delete_object(file_key)
    return {"status": "success", "message": f"File {file_key} deleted"}
