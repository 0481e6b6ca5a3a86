"""Data access layer for attachment metadata rows."""

import time
from typing import Any

from src.db.client import get_supabase
from src.db.models import ATTACHMENT_TABLES

# PostgREST caps a single response; enumerate in pages of this size.
PAGE_SIZE = 1000


class AttachmentRepository:
    """Attachment rows spread over one table per owner type."""

    def _table(self, owner_type: str):
        table, _ = ATTACHMENT_TABLES[owner_type]
        return get_supabase().table(table)

    def insert(self, owner_type: str, row: dict[str, Any]) -> dict:
        result = self._table(owner_type).insert(row).execute()
        return result.data[0]

    def get(self, owner_type: str, attachment_id: str) -> dict | None:
        result = self._table(owner_type).select("*").eq("id", attachment_id).execute()
        return result.data[0] if result.data else None

    def find_by_file_key(self, file_key: str) -> tuple[str, dict] | None:
        for owner_type in ATTACHMENT_TABLES:
            result = self._table(owner_type).select("*").eq("file_key", file_key).limit(1).execute()
            if result.data:
                return owner_type, result.data[0]
        return None

    def list_for_owner(self, owner_type: str, owner_id: str) -> list[dict]:
        _, owner_column = ATTACHMENT_TABLES[owner_type]
        result = self._table(owner_type).select("*").eq(owner_column, owner_id).order("created_at").execute()
        return result.data

    def delete(self, owner_type: str, attachment_id: str) -> dict | None:
        result = self._table(owner_type).delete().eq("id", attachment_id).execute()
        return result.data[0] if result.data else None

    def delete_for_owner(self, owner_type: str, owner_id: str) -> list[dict]:
        _, owner_column = ATTACHMENT_TABLES[owner_type]
        result = self._table(owner_type).delete().eq(owner_column, owner_id).execute()
        return result.data or []

    def referenced_file_keys(self, page_interval: float = 0.0) -> set[str]:
        """Every ``file_key`` referenced by any attachment table.

        ``page_interval`` seconds are slept between page reads so a sweep
        does not crowd out interactive queries.
        """
        keys: set[str] = set()
        first_page = True
        for owner_type in ATTACHMENT_TABLES:
            offset = 0
            while True:
                if not first_page and page_interval > 0:
                    time.sleep(page_interval)
                first_page = False
                result = (
                    self._table(owner_type)
                    .select("file_key")
                    .order("id")
                    .range(offset, offset + PAGE_SIZE - 1)
                    .execute()
                )
                keys.update(row["file_key"] for row in result.data if row.get("file_key"))
                if len(result.data) < PAGE_SIZE:
                    break
                offset += PAGE_SIZE
        return keys


_repository: AttachmentRepository | None = None


def get_attachment_repository() -> AttachmentRepository:
    global _repository
    if _repository is None:
        _repository = AttachmentRepository()
    return _repository
