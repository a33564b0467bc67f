from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterable, Mapping, Optional, Tuple, Type, TypeVar
from uuid import uuid4

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorClientSession, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from .base import BaseDBManager
from ..errors import AccountNotFound, CollaboratorUnavailable, InsufficientFunds
from ..models.account import Account
from ..models.audit import AuditEvent
from ..models.base import DBSerializableModel, utcnow
from ..models.intent import IntentStatus, PurchaseIntent
from ..models.ledger import EntryDirection, LedgerEntry
from ..models.notification import OperatorAlert


TModel = TypeVar("TModel", bound=DBSerializableModel)


class MongoDBManager(BaseDBManager):
    """
    MongoDB implementation of BaseDBManager using motor (async driver).

    IDs are stored as string-based `_id` fields and mirrored in the `id`
    attribute of each Pydantic model, which keeps the rest of the system
    agnostic of MongoDB specifics.

    The running total lives on the account document. A charge is a
    conditional `$inc` guarded by `{"balance": {"$gte": amount}}`, so the
    sufficiency check and the decrement are one atomic document update.
    With `use_transactions` (replica sets only) the entry insert joins the
    same multi-document transaction, retried on transient conflicts. Without
    it the entry is inserted right after the guarded update and the update is
    reversed if that insert fails.
    """

    def __init__(self, database: AsyncIOMotorDatabase, use_transactions: bool = True) -> None:
        self._db = database
        self._use_transactions = use_transactions

    @classmethod
    def from_client_uri(
        cls, uri: str, db_name: str, use_transactions: bool = True
    ) -> "MongoDBManager":
        client = AsyncIOMotorClient(uri, tz_aware=True)
        return cls(client[db_name], use_transactions=use_transactions)

    async def ensure_indexes(self) -> None:
        entries = self._db[LedgerEntry.collection_name]
        intents = self._db[PurchaseIntent.collection_name]
        async with self._guard():
            await entries.create_index([("account_id", ASCENDING), ("created_at", ASCENDING)])
            await entries.create_index("reference")
            await intents.create_index("payment_reference", unique=True, sparse=True)
            await intents.create_index([("status", ASCENDING), ("expires_at", ASCENDING)])

    @asynccontextmanager
    async def _guard(self) -> AsyncIterator[None]:
        try:
            yield
        except PyMongoError as exc:
            raise CollaboratorUnavailable("mongodb", str(exc)) from exc

    # Helper utilities
    @staticmethod
    def _prepare_insert(model: TModel) -> Dict[str, Any]:
        data = model.serialize_for_db()
        model_id = getattr(model, "id", None)
        if not model_id:
            model_id = uuid4().hex
            data["id"] = model_id
        data["_id"] = model_id
        return data

    @staticmethod
    def _decode(model_cls: Type[TModel], doc: Optional[Mapping[str, Any]]) -> Optional[TModel]:
        if doc is None:
            return None
        data = dict(doc)
        if "_id" in data and "id" not in data:
            data["id"] = str(data["_id"])
        data.pop("_id", None)
        return model_cls.model_validate(data)

    # Accounts
    async def add_account(self, account: Account) -> Account:
        col = self._db[Account.collection_name]
        async with self._guard():
            try:
                await col.insert_one(self._prepare_insert(account))
            except DuplicateKeyError as exc:
                raise ValueError(f"account already exists: {account.id}") from exc
        return account

    async def get_account(self, account_id: str) -> Optional[Account]:
        col = self._db[Account.collection_name]
        async with self._guard():
            doc = await col.find_one({"_id": account_id})
        return self._decode(Account, doc)

    async def set_display_reference(self, account_id: str, display_reference: str) -> Account:
        col = self._db[Account.collection_name]
        async with self._guard():
            doc = await col.find_one_and_update(
                {"_id": account_id},
                {"$set": {"display_reference": display_reference, "updated_at": utcnow()}},
                return_document=ReturnDocument.AFTER,
            )
        if doc is None:
            raise AccountNotFound(account_id)
        return self._decode(Account, doc)  # type: ignore[return-value]

    # Ledger
    async def apply_entry(self, entry: LedgerEntry, require_funds: bool) -> LedgerEntry:
        async with self._guard():
            if not self._use_transactions:
                return await self._apply_entry_compensated(entry, require_funds)
            async with await self._db.client.start_session() as session:
                # with_transaction retries TransientTransactionError and
                # UnknownTransactionCommitResult until its deadline.
                return await session.with_transaction(
                    lambda s: self._apply_entry_once(entry, require_funds, s)
                )

    async def _apply_entry_once(
        self,
        entry: LedgerEntry,
        require_funds: bool,
        session: Optional[AsyncIOMotorClientSession] = None,
    ) -> LedgerEntry:
        doc = await self._guarded_inc(entry, require_funds, session)
        stored = entry.model_copy(update={"id": uuid4().hex, "balance_after": int(doc["balance"])})
        await self._db[LedgerEntry.collection_name].insert_one(
            self._prepare_insert(stored), session=session
        )
        return stored

    async def _apply_entry_compensated(self, entry: LedgerEntry, require_funds: bool) -> LedgerEntry:
        """Standalone servers: undo the increment when the entry insert fails."""
        doc = await self._guarded_inc(entry, require_funds, None)
        stored = entry.model_copy(update={"id": uuid4().hex, "balance_after": int(doc["balance"])})
        try:
            await self._db[LedgerEntry.collection_name].insert_one(self._prepare_insert(stored))
        except PyMongoError:
            await self._db[Account.collection_name].update_one(
                {"_id": entry.account_id},
                {"$inc": {"balance": -entry.signed_amount}, "$set": {"updated_at": utcnow()}},
            )
            raise
        return stored

    async def _guarded_inc(
        self,
        entry: LedgerEntry,
        require_funds: bool,
        session: Optional[AsyncIOMotorClientSession],
    ) -> Mapping[str, Any]:
        accounts = self._db[Account.collection_name]
        query: Dict[str, Any] = {"_id": entry.account_id}
        if require_funds and entry.direction is EntryDirection.CHARGE:
            query["balance"] = {"$gte": entry.amount}

        doc = await accounts.find_one_and_update(
            query,
            {"$inc": {"balance": entry.signed_amount}, "$set": {"updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        if doc is None:
            existing = await accounts.find_one({"_id": entry.account_id}, session=session)
            if existing is None:
                raise AccountNotFound(entry.account_id)
            raise InsufficientFunds(entry.account_id, int(existing.get("balance", 0)), entry.amount)
        return doc

    async def get_entries(
        self, account_id: str, limit: Optional[int] = None, newest_first: bool = False
    ) -> Iterable[LedgerEntry]:
        col = self._db[LedgerEntry.collection_name]
        order = DESCENDING if newest_first else ASCENDING
        cursor = col.find({"account_id": account_id}).sort("created_at", order)
        if limit is not None:
            cursor = cursor.limit(limit)
        async with self._guard():
            docs = await cursor.to_list(length=limit)
        return [self._decode(LedgerEntry, d) for d in docs if d is not None]  # type: ignore[misc]

    async def sum_entries(self, account_id: str) -> Tuple[int, int]:
        col = self._db[LedgerEntry.collection_name]
        pipeline = [
            {"$match": {"account_id": account_id}},
            {
                "$group": {
                    "_id": None,
                    "total": {
                        "$sum": {
                            "$cond": [
                                {"$eq": ["$direction", EntryDirection.CREDIT.value]},
                                "$amount",
                                {"$multiply": ["$amount", -1]},
                            ]
                        }
                    },
                    "count": {"$sum": 1},
                }
            },
        ]
        async with self._guard():
            rows = await col.aggregate(pipeline).to_list(length=1)
        if not rows:
            return 0, 0
        return int(rows[0]["total"]), int(rows[0]["count"])

    # Purchase intents
    async def add_intent(self, intent: PurchaseIntent) -> PurchaseIntent:
        col = self._db[PurchaseIntent.collection_name]
        async with self._guard():
            await col.insert_one(self._prepare_insert(intent))
        return intent

    async def get_intent(self, intent_id: str) -> Optional[PurchaseIntent]:
        col = self._db[PurchaseIntent.collection_name]
        async with self._guard():
            doc = await col.find_one({"_id": intent_id})
        return self._decode(PurchaseIntent, doc)

    async def get_intent_by_payment_reference(self, reference: str) -> Optional[PurchaseIntent]:
        col = self._db[PurchaseIntent.collection_name]
        async with self._guard():
            doc = await col.find_one({"payment_reference": reference})
        return self._decode(PurchaseIntent, doc)

    async def set_intent_payment_reference(
        self, intent_id: str, reference: str
    ) -> Optional[PurchaseIntent]:
        col = self._db[PurchaseIntent.collection_name]
        async with self._guard():
            doc = await col.find_one_and_update(
                {"_id": intent_id},
                {"$set": {"payment_reference": reference, "updated_at": utcnow()}},
                return_document=ReturnDocument.AFTER,
            )
        return self._decode(PurchaseIntent, doc)

    async def compare_and_set_intent_status(
        self, intent_id: str, expected: IntentStatus, target: IntentStatus
    ) -> Optional[PurchaseIntent]:
        col = self._db[PurchaseIntent.collection_name]
        async with self._guard():
            doc = await col.find_one_and_update(
                {"_id": intent_id, "status": expected.value},
                {"$set": {"status": target.value, "updated_at": utcnow()}},
                return_document=ReturnDocument.AFTER,
            )
        return self._decode(PurchaseIntent, doc)

    async def list_intents(
        self,
        status: Optional[IntentStatus] = None,
        expires_before: Optional[datetime] = None,
    ) -> Iterable[PurchaseIntent]:
        col = self._db[PurchaseIntent.collection_name]
        query: Dict[str, Any] = {}
        if status is not None:
            query["status"] = status.value
        if expires_before is not None:
            query["expires_at"] = {"$lte": expires_before}
        async with self._guard():
            docs = await col.find(query).sort("expires_at", ASCENDING).to_list(length=None)
        return [self._decode(PurchaseIntent, d) for d in docs if d is not None]  # type: ignore[misc]

    # Audit & alerts
    async def add_audit_event(self, event: AuditEvent) -> AuditEvent:
        col = self._db[AuditEvent.collection_name]
        data = self._prepare_insert(event)
        event.id = data["id"]
        async with self._guard():
            await col.insert_one(data)
        return event

    async def add_alert(self, alert: OperatorAlert) -> OperatorAlert:
        col = self._db[OperatorAlert.collection_name]
        data = self._prepare_insert(alert)
        alert.id = data["id"]
        async with self._guard():
            await col.insert_one(data)
        return alert
