"""Shared test fixtures.

External systems are replaced with in-memory fakes: a scripted Xero (token
endpoint, connections and accounting API) behind ``httpx.MockTransport``, an
object store, the attachment tables and the rotation ledger.
"""

import itertools
import os
import threading
import uuid
from collections.abc import Iterator
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs

os.environ.setdefault("SUPABASE_URL", "http://supabase.test")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "service-role-key")
os.environ.setdefault("SUPABASE_JWT_SECRET", "test-supabase-jwt-secret-0123456789")
os.environ.setdefault("BASE_URL", "http://testserver")
os.environ.setdefault("XERO_CLIENT_ID", "client-id")
os.environ.setdefault("XERO_CLIENT_SECRET", "client-secret")
os.environ.setdefault("SESSION_SECRET", "test-session-secret-0123456789abcdef")
os.environ.setdefault("R2_ACCOUNT_ID", "account")
os.environ.setdefault("R2_ACCESS_KEY_ID", "access-key")
os.environ.setdefault("R2_SECRET_ACCESS_KEY", "secret-key")
os.environ.setdefault("R2_BUCKET_NAME", "bucket")
os.environ.setdefault("ATTACHMENT_WEBHOOK_SECRET", "hook-secret")

import httpx
import pytest
from fastapi.testclient import TestClient

from src.attachments.reconciliation import AttachmentReconciler, get_reconciler
from src.attachments.repository import AttachmentRepository, get_attachment_repository
from src.auth.dependencies import CurrentUser, get_current_user, get_user_roles
from src.config.settings import get_settings
from src.db.models import ATTACHMENT_TABLES
from src.main import app
from src.storage.client import AttachmentStorage, ObjectStore, StoredObject, get_attachment_storage
from src.xero.client import XeroGateway, get_gateway, get_token_manager
from src.xero.ledger import RotationLedger, hash_token
from src.xero.models import CredentialRecord, now_ms
from src.xero.tokens import TokenManager

TENANT_ID = "tenant-1"


# --- Object store ---

class InMemoryObjectStore(ObjectStore):
    def __init__(self):
        self.objects: dict[str, StoredObject] = {}
        self.fail_deletes: set[str] = set()
        self.delete_calls: list[str] = []
        self._lock = threading.Lock()

    def put(self, key: str, age: timedelta = timedelta(0)) -> None:
        """Simulate a client PUT that happened ``age`` ago."""
        self.objects[key] = StoredObject(key=key, last_modified=datetime.now(timezone.utc) - age, size=3)

    def presign_put(self, key, content_type, expires_in):
        return f"https://r2.test/bucket/{key}?op=put&expires={expires_in}"

    def presign_get(self, key, expires_in):
        return f"https://r2.test/bucket/{key}?op=get&expires={expires_in}"

    def exists(self, key):
        return key in self.objects

    def delete(self, key):
        with self._lock:
            self.delete_calls.append(key)
        if key in self.fail_deletes:
            raise RuntimeError("simulated storage outage")
        self.objects.pop(key, None)

    def list(self, prefix) -> Iterator[StoredObject]:
        return iter([obj for key, obj in sorted(self.objects.items()) if key.startswith(prefix)])


# --- Attachment tables ---

class InMemoryAttachmentRepository(AttachmentRepository):
    def __init__(self):
        self.rows: dict[str, list[dict]] = {owner_type: [] for owner_type in ATTACHMENT_TABLES}
        self.fail_listing = False
        self.lookups: list[str] = []
        self.page_intervals: list[float] = []

    def insert(self, owner_type, row):
        stored = {"id": str(uuid.uuid4()), "created_at": datetime.now(timezone.utc).isoformat(), **row}
        self.rows[owner_type].append(stored)
        return stored

    def get(self, owner_type, attachment_id):
        return next((r for r in self.rows[owner_type] if r["id"] == attachment_id), None)

    def find_by_file_key(self, file_key):
        self.lookups.append(file_key)
        for owner_type, rows in self.rows.items():
            for row in rows:
                if row["file_key"] == file_key:
                    return owner_type, row
        return None

    def list_for_owner(self, owner_type, owner_id):
        _, column = ATTACHMENT_TABLES[owner_type]
        return [r for r in self.rows[owner_type] if r[column] == owner_id]

    def delete(self, owner_type, attachment_id):
        row = self.get(owner_type, attachment_id)
        if row is not None:
            self.rows[owner_type].remove(row)
        return row

    def delete_for_owner(self, owner_type, owner_id):
        removed = self.list_for_owner(owner_type, owner_id)
        for row in removed:
            self.rows[owner_type].remove(row)
        return removed

    def referenced_file_keys(self, page_interval=0.0):
        self.page_intervals.append(page_interval)
        if self.fail_listing:
            raise RuntimeError("metadata query failed")
        return {row["file_key"] for rows in self.rows.values() for row in rows}


# --- Supabase query builder ---

class _Result:
    def __init__(self, data):
        self.data = data


class FakeQuery:
    """The subset of the PostgREST builder chain the repositories use."""

    def __init__(self, db: "FakeSupabase", table: str):
        self._db = db
        self._table = table
        self._op = "select"
        self._payload = None
        self._filters = []
        self._order = None
        self._range = None
        self._limit = None

    def select(self, *columns):
        self._op = "select"
        return self

    def insert(self, row):
        self._op, self._payload = "insert", row
        return self

    def upsert(self, row):
        self._op, self._payload = "upsert", row
        return self

    def delete(self):
        self._op = "delete"
        return self

    def eq(self, column, value):
        self._filters.append(lambda row: row.get(column) == value)
        return self

    def gte(self, column, value):
        self._filters.append(lambda row: row.get(column) is not None and row[column] >= value)
        return self

    def lt(self, column, value):
        self._filters.append(lambda row: row.get(column) is not None and row[column] < value)
        return self

    def order(self, column):
        self._order = column
        return self

    def range(self, start, end):
        self._range = (start, end)
        return self

    def limit(self, count):
        self._limit = count
        return self

    def execute(self):
        self._db.calls.append((self._table, self._op))
        rows = self._db.tables.setdefault(self._table, [])
        if self._op == "insert":
            rows.append(dict(self._payload))
            return _Result([dict(self._payload)])
        if self._op == "upsert":
            key = next(iter(self._payload))
            rows[:] = [r for r in rows if r.get(key) != self._payload[key]]
            rows.append(dict(self._payload))
            return _Result([dict(self._payload)])

        matched = [r for r in rows if all(f(r) for f in self._filters)]
        if self._op == "delete":
            rows[:] = [r for r in rows if r not in matched]
            return _Result(matched)
        if self._order:
            matched.sort(key=lambda r: r[self._order])
        if self._range:
            matched = matched[self._range[0]:self._range[1] + 1]
        if self._limit is not None:
            matched = matched[:self._limit]
        return _Result(matched)


class FakeSupabase:
    def __init__(self):
        self.tables: dict[str, list[dict]] = {}
        self.calls: list[tuple[str, str]] = []

    def table(self, name):
        return FakeQuery(self, name)


# --- Rotation ledger ---

class InMemoryRotationLedger(RotationLedger):
    def __init__(self):
        self.rotations: dict[str, datetime] = {}

    def record(self, refresh_token):
        self.rotations[hash_token(refresh_token)] = datetime.now(timezone.utc)

    def rotated_within(self, refresh_token, window):
        rotated_at = self.rotations.get(hash_token(refresh_token))
        return rotated_at is not None and rotated_at >= datetime.now(timezone.utc) - window


# --- Xero ---

class FakeXero:
    """Scripted Xero: each refresh token is accepted exactly once."""

    def __init__(self, expires_in: int = 1800):
        self.settings = get_settings()
        self.expires_in = expires_in
        self.live_access_tokens: set[str] = set()
        self.live_refresh_tokens: set[str] = set()
        self.token_requests: list[dict] = []
        self.api_requests: list[httpx.Request] = []
        self.api_status: int | None = None
        self.api_failures = 0
        self.api_response: httpx.Response | None = None
        self.tenants = [{"tenantId": TENANT_ID, "tenantName": "Demo Practice"}]
        self.valid_codes = {"good-code"}
        self.items = [
            {"ItemID": "i-1", "Name": "Vaccine", "Code": "VAC", "Description": "Annual vaccine",
             "PurchaseDetails": {"AccountCode": "430"}},
            {"ItemID": "i-2", "Name": "Office chair", "Code": "CHR", "Description": None,
             "PurchaseDetails": {"AccountCode": "720"}},
            {"ItemID": "i-3", "Name": "Feed", "Code": "FED", "Description": "Bulk feed",
             "PurchaseDetails": {"AccountCode": "432"}},
            {"ItemID": "i-4", "Name": "Service only", "Code": "SRV", "Description": ""},
        ]
        self._counter = itertools.count(1)

    def _mint(self) -> tuple[str, str]:
        n = next(self._counter)
        access, refresh = f"access-{n}", f"refresh-{n}"
        self.live_access_tokens.add(access)
        self.live_refresh_tokens.add(refresh)
        return access, refresh

    def issue(self, expires_in_ms: int = 30 * 60 * 1000, tenant_id: str | None = TENANT_ID) -> CredentialRecord:
        access, refresh = self._mint()
        return CredentialRecord(access, refresh, now_ms() + expires_in_ms, tenant_id)

    def revoke_access(self, access_token: str) -> None:
        self.live_access_tokens.discard(access_token)

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if url == self.settings.XERO_TOKEN_URL:
            return self._token(request)
        if url == self.settings.XERO_CONNECTIONS_URL:
            return httpx.Response(200, json=self.tenants)
        return self._api(request)

    def _token(self, request: httpx.Request) -> httpx.Response:
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        self.token_requests.append(form)
        if not request.headers.get("Authorization", "").startswith("Basic "):
            return httpx.Response(401, json={"error": "invalid_client"})

        if form.get("grant_type") == "refresh_token":
            if form.get("refresh_token") not in self.live_refresh_tokens:
                return httpx.Response(400, json={"error": "invalid_grant"})
            self.live_refresh_tokens.discard(form["refresh_token"])
        elif form.get("grant_type") == "authorization_code":
            if form.get("code") not in self.valid_codes:
                return httpx.Response(400, json={"error": "invalid_grant"})
            self.valid_codes.discard(form["code"])
        else:
            return httpx.Response(400, json={"error": "unsupported_grant_type"})

        access, refresh = self._mint()
        return httpx.Response(200, json={
            "access_token": access,
            "refresh_token": refresh,
            "expires_in": self.expires_in,
            "token_type": "Bearer",
        })

    def _api(self, request: httpx.Request) -> httpx.Response:
        self.api_requests.append(request)
        if self.api_failures:
            self.api_failures -= 1
            raise httpx.ConnectTimeout("simulated timeout", request=request)
        if self.api_status is not None:
            return httpx.Response(self.api_status, json={"Message": "scripted failure"})
        if self.api_response is not None:
            return self.api_response

        token = request.headers.get("Authorization", "").removeprefix("Bearer ")
        if token not in self.live_access_tokens:
            return httpx.Response(401, json={"Title": "Unauthorized"})
        if request.headers.get("Xero-Tenant-Id") != TENANT_ID:
            return httpx.Response(403, json={"Title": "Forbidden"})

        endpoint = request.url.path.rsplit("/", 1)[-1]
        if endpoint == "Organisations":
            return httpx.Response(200, json={"Organisations": [{"Name": "Demo Practice"}]})
        if endpoint == "Items":
            return httpx.Response(200, json={"Items": self.items})
        if endpoint == "Contacts" and request.method == "POST":
            return httpx.Response(200, json={"Contacts": [{"ContactID": "c-1"}]})
        return httpx.Response(404, json={"Title": "Not Found"})


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def xero():
    return FakeXero()


@pytest.fixture
def http_client(xero):
    return httpx.AsyncClient(transport=httpx.MockTransport(xero.handler))


@pytest.fixture
def ledger():
    return InMemoryRotationLedger()


@pytest.fixture
def token_manager(http_client, ledger, settings):
    return TokenManager(http_client, ledger=ledger, settings=settings, settle_seconds=0.05)


@pytest.fixture
def gateway(token_manager, http_client, settings):
    return XeroGateway(token_manager, http_client, settings=settings, retry_backoff_seconds=0)


# --- Attachments ---

@pytest.fixture
def object_store():
    return InMemoryObjectStore()


@pytest.fixture
def storage(object_store, settings):
    return AttachmentStorage(object_store, prefix=settings.ATTACHMENT_PREFIX, url_ttl_seconds=900)


@pytest.fixture
def repo():
    return InMemoryAttachmentRepository()


@pytest.fixture
def reconciler(storage, repo):
    return AttachmentReconciler(storage, repo, grace=timedelta(minutes=10), max_workers=2, min_delete_interval=0)


# --- Application ---

@pytest.fixture
def user():
    return CurrentUser(id="user-1", email="vet@example.com")


@pytest.fixture
def roles():
    return set()


@pytest.fixture
def client(user, roles, storage, repo, reconciler, gateway, token_manager):
    app.dependency_overrides.update({
        get_current_user: lambda: user,
        get_user_roles: lambda: roles,
        get_attachment_storage: lambda: storage,
        get_attachment_repository: lambda: repo,
        get_reconciler: lambda: reconciler,
        get_gateway: lambda: gateway,
        get_token_manager: lambda: token_manager,
    })
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def supabase(monkeypatch):
    db = FakeSupabase()
    monkeypatch.setattr("src.xero.ledger.get_supabase", lambda: db)
    monkeypatch.setattr("src.attachments.repository.get_supabase", lambda: db)
    return db
