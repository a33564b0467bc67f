from __future__ import annotations

from collections import defaultdict

import pytest
from pymongo.errors import OperationFailure

from token_ledger.app import build_container
from token_ledger.config import Settings
from token_ledger.db.mongo import MongoDBManager
from token_ledger.errors import AccountNotFound, CollaboratorUnavailable, InsufficientFunds
from token_ledger.models.account import Account
from token_ledger.models.ledger import EntryCategory, EntryDirection, LedgerEntry


class FakeCollection:
    def __init__(self) -> None:
        self.docs = {}
        self.fail_insert = None
        self.insert_sessions = []

    @staticmethod
    def _apply(doc, update):
        for key, delta in update.get("$inc", {}).items():
            doc[key] = doc.get(key, 0) + delta
        doc.update(update.get("$set", {}))

    async def find_one(self, query, session=None):
        doc = self.docs.get(query["_id"])
        return dict(doc) if doc else None

    async def find_one_and_update(self, query, update, return_document=None, session=None):
        doc = self.docs.get(query["_id"])
        if doc is None:
            return None
        guard = query.get("balance")
        if guard is not None and doc["balance"] < guard["$gte"]:
            return None
        self._apply(doc, update)
        return dict(doc)

    async def update_one(self, query, update, session=None):
        doc = self.docs.get(query["_id"])
        if doc is not None:
            self._apply(doc, update)

    async def insert_one(self, doc, session=None):
        if self.fail_insert is not None:
            exc, self.fail_insert = self.fail_insert, None
            raise exc
        self.docs[doc["_id"]] = dict(doc)
        self.insert_sessions.append(session)


class FakeSession:
    def __init__(self) -> None:
        self.transactions = 0

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    async def with_transaction(self, callback):
        self.transactions += 1
        return await callback(self)


class FakeClient:
    def __init__(self) -> None:
        self.session = FakeSession()

    async def start_session(self):
        return self.session


class FakeDatabase:
    def __init__(self) -> None:
        self.client = FakeClient()
        self._collections = defaultdict(FakeCollection)

    def __getitem__(self, name):
        return self._collections[name]


def _store(use_transactions=True, balance=100):
    db = FakeDatabase()
    db[Account.collection_name].docs["ana@example.com"] = {
        "_id": "ana@example.com",
        "id": "ana@example.com",
        "balance": balance,
    }
    return MongoDBManager(db, use_transactions=use_transactions), db


def _charge(amount):
    return LedgerEntry(
        account_id="ana@example.com",
        direction=EntryDirection.CHARGE,
        amount=amount,
        category=EntryCategory.CONSUMPTION,
    )


def _balance(db):
    return db[Account.collection_name].docs["ana@example.com"]["balance"]


@pytest.mark.asyncio
async def test_entry_is_applied_inside_a_retryable_transaction():
    store, db = _store()

    stored = await store.apply_entry(_charge(30), require_funds=True)

    assert stored.balance_after == 70
    assert _balance(db) == 70
    assert db.client.session.transactions == 1
    entries = db[LedgerEntry.collection_name]
    assert entries.insert_sessions == [db.client.session]
    assert entries.docs[stored.id]["amount"] == 30


@pytest.mark.asyncio
async def test_guarded_charge_raises_insufficient_funds():
    store, db = _store()

    with pytest.raises(InsufficientFunds) as excinfo:
        await store.apply_entry(_charge(500), require_funds=True)

    assert excinfo.value.balance == 100
    assert _balance(db) == 100
    assert db[LedgerEntry.collection_name].docs == {}


@pytest.mark.asyncio
async def test_missing_account_raises_account_not_found():
    store, _ = _store()

    with pytest.raises(AccountNotFound):
        await store.apply_entry(
            _charge(5).model_copy(update={"account_id": "ghost@example.com"}),
            require_funds=True,
        )


@pytest.mark.asyncio
async def test_driver_errors_surface_as_collaborator_unavailable():
    store, db = _store()
    db[LedgerEntry.collection_name].fail_insert = OperationFailure("WriteConflict", code=112)

    with pytest.raises(CollaboratorUnavailable, match="WriteConflict"):
        await store.apply_entry(_charge(10), require_funds=True)


@pytest.mark.asyncio
async def test_standalone_mode_reverses_increment_when_insert_fails():
    store, db = _store(use_transactions=False)
    db[LedgerEntry.collection_name].fail_insert = OperationFailure("disk full", code=14031)

    with pytest.raises(CollaboratorUnavailable):
        await store.apply_entry(_charge(40), require_funds=True)

    assert _balance(db) == 100
    assert db[LedgerEntry.collection_name].docs == {}
    assert db.client.session.transactions == 0

    stored = await store.apply_entry(_charge(40), require_funds=True)
    assert stored.balance_after == 60
    assert db[LedgerEntry.collection_name].insert_sessions == [None]


def test_transaction_mode_comes_from_settings(tmp_path):
    container = build_container(
        Settings(
            mongo_uri="mongodb://localhost:27017",
            mongo_use_transactions=False,
            audit_log_path=tmp_path / "audit.jsonl",
        )
    )

    assert isinstance(container.db, MongoDBManager)
    assert container.db._use_transactions is False
