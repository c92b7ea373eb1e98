from datetime import datetime, timezone

import pytest

from taskforge.models.account import Account
from taskforge.services import account_store
from taskforge.services.account_store import (
    FirestoreAccountStore,
    InMemoryAccountStore,
    build_account_store,
)
from taskforge.services.errors import StoreUnavailableError


class _FakeSnapshot:
    def __init__(self, doc_id, data):
        self.id = doc_id
        self._data = data

    @property
    def exists(self):
        return self._data is not None

    def to_dict(self):
        return dict(self._data) if self._data is not None else None


class _FakeDocRef:
    def __init__(self, docs, doc_id):
        self._docs = docs
        self.id = doc_id

    def get(self):
        return _FakeSnapshot(self.id, self._docs.get(self.id))

    def set(self, data):
        self._docs[self.id] = dict(data)

    def update(self, fields):
        self._docs[self.id].update(fields)


class _FakeQuery:
    def __init__(self, docs, field, value):
        self._docs = docs
        self._field = field
        self._value = value
        self._limit = None

    def limit(self, count):
        self._limit = count
        return self

    def stream(self):
        matches = [
            _FakeSnapshot(doc_id, data)
            for doc_id, data in self._docs.items()
            if data.get(self._field) == self._value
        ]
        return iter(matches[: self._limit] if self._limit else matches)


class _FakeCollection:
    def __init__(self):
        self.docs = {}
        self._next_id = 0

    def document(self, doc_id=None):
        if doc_id is None:
            self._next_id += 1
            doc_id = f"doc{self._next_id}"
        return _FakeDocRef(self.docs, doc_id)

    def where(self, field, op, value):
        assert op == "=="
        return _FakeQuery(self.docs, field, value)

    def stream(self):
        return iter([_FakeSnapshot(doc_id, data) for doc_id, data in self.docs.items()])


class _FakeFirestore:
    def __init__(self):
        self.collections = {}

    def collection(self, name):
        return self.collections.setdefault(name, _FakeCollection())


class _BrokenFirestore:
    def collection(self, name):
        raise ConnectionError("firestore unreachable")


def _account(**fields):
    base = {"email": "a@x.com", "name": "Alice", "password_hash": "hash"}
    base.update(fields)
    return Account(**base)


@pytest.mark.asyncio
async def test_memory_store_assigns_ids_and_finds_accounts():
    store = InMemoryAccountStore()
    saved = await store.save(_account())

    assert saved.id
    assert len(store) == 1
    assert (await store.find_by_email("a@x.com")).id == saved.id
    assert (await store.find_by_id(saved.id)).email == "a@x.com"
    assert await store.find_by_email("b@x.com") is None
    assert await store.find_by_id("missing") is None


@pytest.mark.asyncio
async def test_memory_store_returns_copies():
    store = InMemoryAccountStore()
    saved = await store.save(_account())

    loaded = await store.find_by_id(saved.id)
    loaded.otp_failed_count = 4

    assert (await store.find_by_id(saved.id)).otp_failed_count == 0


@pytest.mark.asyncio
async def test_firestore_store_round_trips_documents():
    client = _FakeFirestore()
    store = FirestoreAccountStore(client=client, collection="users")
    blocked_until = datetime(2026, 3, 1, 12, 5, tzinfo=timezone.utc)

    saved = await store.save(
        _account(otp="482913", otp_failed_count=2, otp_blocked_until=blocked_until)
    )

    document = client.collections["users"].docs[saved.id]
    assert document["email"] == "a@x.com"
    assert document["password"] == "hash"
    assert document["otpFailedCount"] == 2
    assert document["isVerified"] is False

    by_email = await store.find_by_email("a@x.com")
    assert by_email.id == saved.id
    assert by_email.otp == "482913"
    assert by_email.otp_blocked_until == blocked_until

    by_id = await store.find_by_id(saved.id)
    assert by_id.password_hash == "hash"
    assert await store.find_by_id("missing") is None


@pytest.mark.asyncio
async def test_firestore_store_updates_existing_document():
    client = _FakeFirestore()
    store = FirestoreAccountStore(client=client, collection="users")
    saved = await store.save(_account())

    saved.is_verified = True
    await store.save(saved)

    assert len(client.collections["users"].docs) == 1
    assert (await store.find_by_id(saved.id)).is_verified is True


@pytest.mark.asyncio
async def test_firestore_store_writes_lowercase_lookup_field():
    client = _FakeFirestore()
    store = FirestoreAccountStore(client=client, collection="users")
    saved = await store.save(_account())

    assert client.collections["users"].docs[saved.id]["emailLower"] == "a@x.com"


@pytest.mark.asyncio
async def test_firestore_store_finds_legacy_mixed_case_email_after_backfill():
    client = _FakeFirestore()
    legacy = client.collection("users")
    legacy.docs["old1"] = {"email": "Alice@Example.com", "name": "Alice", "password": "hash"}
    legacy.docs["old2"] = {"email": "bob@example.com", "name": "Bob", "password": "hash"}
    store = FirestoreAccountStore(client=client, collection="users")

    assert await store.find_by_email("alice@example.com") is None
    # Lowercase legacy documents still match on the email field.
    assert (await store.find_by_email("bob@example.com")).id == "old2"

    assert await store.backfill_email_lower() == 2
    assert await store.backfill_email_lower() == 0

    found = await store.find_by_email("alice@example.com")
    assert found.id == "old1"
    assert found.email == "Alice@Example.com"


@pytest.mark.asyncio
async def test_memory_store_matches_email_case_insensitively():
    store = InMemoryAccountStore()
    saved = await store.save(_account(email="Alice@Example.com"))
    assert (await store.find_by_email("alice@example.com")).id == saved.id


@pytest.mark.asyncio
async def test_firestore_failures_surface_as_store_unavailable():
    store = FirestoreAccountStore(client=_BrokenFirestore(), collection="users")
    with pytest.raises(StoreUnavailableError) as exc_info:
        await store.find_by_email("a@x.com")
    assert exc_info.value.status_code == 500


def test_from_document_accepts_legacy_shapes():
    account = Account.from_document(
        "doc1",
        {
            "email": "a@x.com",
            "name": "Alice",
            "password": "hash",
            "profileImageUrl": {"url": "https://img/a.png", "public_id": "x"},
            "otpExpiresAt": "2026-03-01T12:05:00Z",
            "otpBlockedUntil": datetime(2026, 3, 1, 12, 10),
        },
    )
    assert account.profile_image_url == "https://img/a.png"
    assert account.otp_expires_at == datetime(2026, 3, 1, 12, 5, tzinfo=timezone.utc)
    assert account.otp_blocked_until.tzinfo is not None
    assert account.otp_resend_count == 0
    assert account.role == "user"


def test_build_account_store_selects_backend(monkeypatch):
    monkeypatch.setenv("ACCOUNT_STORE_BACKEND", "memory")
    assert isinstance(build_account_store(), InMemoryAccountStore)

    monkeypatch.setenv("ACCOUNT_STORE_BACKEND", "firestore")
    assert isinstance(build_account_store(), FirestoreAccountStore)

    monkeypatch.setenv("ACCOUNT_STORE_BACKEND", "auto")
    monkeypatch.setattr(account_store, "firebase_credentials_available", lambda: False)
    assert isinstance(build_account_store(), InMemoryAccountStore)
    monkeypatch.setattr(account_store, "firebase_credentials_available", lambda: True)
    assert isinstance(build_account_store(), FirestoreAccountStore)
