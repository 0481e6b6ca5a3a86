"""Pydantic schemas for attachment requests and responses."""

from typing import Any, Literal

from pydantic import BaseModel, Field

OwnerType = Literal["invoice", "animal_event"]


# --- Requests ---

class UploadUrlRequest(BaseModel):
    file_name: str = Field(min_length=1, max_length=255)
    content_type: str = Field(min_length=1, max_length=255)


class ConfirmAttachmentRequest(BaseModel):
    owner_type: OwnerType
    owner_id: str = Field(min_length=1)
    file_key: str = Field(min_length=1)
    file_name: str = Field(min_length=1, max_length=255)
    file_size: int = Field(ge=0)
    content_type: str = Field(min_length=1, max_length=255)


class AttachmentWebhookPayload(BaseModel):
    """Supabase database webhook body. DELETE events carry ``old_record``."""

    type: str | None = None
    table: str | None = None
    schema_: str | None = Field(default=None, alias="schema")
    record: dict[str, Any] | None = None
    old_record: dict[str, Any] | None = None

    @property
    def deleted_row(self) -> dict[str, Any] | None:
        return self.old_record or self.record


# --- Responses ---

class UploadUrlResponse(BaseModel):
    status: str = "success"
    data: dict[str, Any]
