"""Account persistence backends.

Two backends share one async interface: Firestore for deployments, and an
in-process map for local development and tests. Backend failures surface as
``StoreUnavailableError`` so callers can tell them apart from domain errors.
"""
from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from typing import Any, Dict, Optional

from ..config import account_store_backend, accounts_collection
from ..models.account import Account, utc_now
from ..utils.firestore_client import firebase_credentials_available, get_firestore_client
from .errors import StoreUnavailableError
from .mail_delivery_service import sanitize_email


logger = logging.getLogger(__name__)


class AccountStore:
    async def find_by_email(self, email: str) -> Optional[Account]:
        raise NotImplementedError

    async def find_by_id(self, account_id: str) -> Optional[Account]:
        raise NotImplementedError

    async def save(self, account: Account) -> Account:
        raise NotImplementedError


class InMemoryAccountStore(AccountStore):
    def __init__(self) -> None:
        self._accounts: Dict[str, Account] = {}
        self._lock = asyncio.Lock()

    async def find_by_email(self, email: str) -> Optional[Account]:
        async with self._lock:
            for account in self._accounts.values():
                if account.email.lower() == email:
                    return copy.deepcopy(account)
        return None

    async def find_by_id(self, account_id: str) -> Optional[Account]:
        async with self._lock:
            account = self._accounts.get(account_id)
            return copy.deepcopy(account) if account is not None else None

    async def save(self, account: Account) -> Account:
        async with self._lock:
            if not account.id:
                account.id = uuid.uuid4().hex
            account.updated_at = utc_now()
            self._accounts[account.id] = copy.deepcopy(account)
        return account

    def __len__(self) -> int:
        return len(self._accounts)


class FirestoreAccountStore(AccountStore):
    """Stores accounts as documents keyed by id, queried by ``email``."""

    def __init__(self, client: Any = None, collection: Optional[str] = None) -> None:
        self._client = client
        self._collection_name = collection or accounts_collection()

    def _collection(self):
        if self._client is None:
            self._client = get_firestore_client()
        return self._client.collection(self._collection_name)

    async def find_by_email(self, email: str) -> Optional[Account]:
        def _query() -> Optional[Account]:
            collection = self._collection()
            # Documents written before emailLower existed only match on email.
            for field in ("emailLower", "email"):
                for doc in collection.where(field, "==", email).limit(1).stream():
                    return Account.from_document(doc.id, doc.to_dict() or {})
            return None

        return await self._run("find_by_email", _query)

    async def find_by_id(self, account_id: str) -> Optional[Account]:
        def _get() -> Optional[Account]:
            snapshot = self._collection().document(account_id).get()
            if not snapshot.exists:
                return None
            return Account.from_document(snapshot.id, snapshot.to_dict() or {})

        return await self._run("find_by_id", _get)

    async def save(self, account: Account) -> Account:
        def _set() -> Account:
            collection = self._collection()
            doc_ref = collection.document(account.id) if account.id else collection.document()
            account.id = doc_ref.id
            account.updated_at = utc_now()
            doc_ref.set(account.to_document())
            return account

        return await self._run("save", _set)

    async def backfill_email_lower(self) -> int:
        """Add a normalised ``emailLower`` to documents that lack an up-to-date one."""

        def _backfill() -> int:
            collection = self._collection()
            updated = 0
            for doc in collection.stream():
                data = doc.to_dict() or {}
                normalized = sanitize_email(data.get("email") or "")
                if normalized and data.get("emailLower") != normalized:
                    collection.document(doc.id).update({"emailLower": normalized})
                    updated += 1
            return updated

        updated = await self._run("backfill_email_lower", _backfill)
        logger.info("[Store] Backfilled emailLower on %s account(s)", updated)
        return updated

    async def _run(self, operation: str, fn):
        try:
            return await asyncio.to_thread(fn)
        except Exception as exc:
            logger.error("[Store] Firestore %s failed: %s", operation, exc)
            raise StoreUnavailableError() from exc


def build_account_store() -> AccountStore:
    backend = account_store_backend()
    if backend == "memory":
        return InMemoryAccountStore()
    if backend == "firestore":
        return FirestoreAccountStore()
    if firebase_credentials_available():
        return FirestoreAccountStore()
    logger.warning("[Store] Firebase credentials not configured; using in-memory account store.")
    return InMemoryAccountStore()
