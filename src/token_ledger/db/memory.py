from __future__ import annotations

import asyncio
from collections import defaultdict
from datetime import datetime
from typing import DefaultDict, Dict, Iterable, List, Optional, Tuple

from .base import BaseDBManager
from ..errors import AccountNotFound, InsufficientFunds
from ..models.account import Account
from ..models.audit import AuditEvent
from ..models.base import utcnow
from ..models.intent import IntentStatus, PurchaseIntent
from ..models.ledger import EntryDirection, LedgerEntry
from ..models.notification import OperatorAlert


class InMemoryDBManager(BaseDBManager):
    """
    Simple in-memory implementation used for tests and local development.
    NOT suitable for production, but exercises the abstraction and services.

    Per-account `asyncio.Lock`s stand in for the row lock a relational
    backend would take. Every method yields to the event loop once, like a
    real round trip would, so concurrent callers really interleave.
    Models are copied in and out so callers never share state with the store.
    """

    def __init__(self) -> None:
        self._accounts: Dict[str, Account] = {}
        self._entries: DefaultDict[str, List[LedgerEntry]] = defaultdict(list)
        self._intents: Dict[str, PurchaseIntent] = {}
        self._audit: List[AuditEvent] = []
        self._alerts: List[OperatorAlert] = []
        self._account_locks: Dict[str, asyncio.Lock] = {}
        self._id_counter: int = 0

    def _next_id(self) -> str:
        self._id_counter += 1
        return str(self._id_counter)

    def _lock_for(self, account_id: str) -> asyncio.Lock:
        lock = self._account_locks.get(account_id)
        if lock is None:
            lock = self._account_locks[account_id] = asyncio.Lock()
        return lock

    # Accounts
    async def add_account(self, account: Account) -> Account:
        await asyncio.sleep(0)
        if account.id in self._accounts:
            raise ValueError(f"account already exists: {account.id}")
        self._accounts[account.id] = account.model_copy()
        return account.model_copy()

    async def get_account(self, account_id: str) -> Optional[Account]:
        await asyncio.sleep(0)
        account = self._accounts.get(account_id)
        return account.model_copy() if account else None

    async def set_display_reference(self, account_id: str, display_reference: str) -> Account:
        await asyncio.sleep(0)
        account = self._accounts.get(account_id)
        if account is None:
            raise AccountNotFound(account_id)
        account.display_reference = display_reference
        account.updated_at = utcnow()
        return account.model_copy()

    # Ledger
    async def apply_entry(self, entry: LedgerEntry, require_funds: bool) -> LedgerEntry:
        async with self._lock_for(entry.account_id):
            account = self._accounts.get(entry.account_id)
            if account is None:
                raise AccountNotFound(entry.account_id)
            current = account.balance
            # Round trip between the read and the write; the lock keeps other
            # mutations of this account out.
            await asyncio.sleep(0)
            if (
                require_funds
                and entry.direction is EntryDirection.CHARGE
                and current < entry.amount
            ):
                raise InsufficientFunds(entry.account_id, current, entry.amount)

            new_balance = current + entry.signed_amount
            stored = entry.model_copy(
                update={"id": self._next_id(), "balance_after": new_balance}
            )
            self._entries[entry.account_id].append(stored)
            account.balance = new_balance
            account.updated_at = utcnow()
            return stored

    async def get_entries(
        self, account_id: str, limit: Optional[int] = None, newest_first: bool = False
    ) -> Iterable[LedgerEntry]:
        await asyncio.sleep(0)
        entries = list(self._entries.get(account_id, []))
        if newest_first:
            entries.reverse()
        if limit is not None:
            entries = entries[:limit]
        return entries

    async def sum_entries(self, account_id: str) -> Tuple[int, int]:
        await asyncio.sleep(0)
        entries = self._entries.get(account_id, [])
        return sum(e.signed_amount for e in entries), len(entries)

    # Purchase intents
    async def add_intent(self, intent: PurchaseIntent) -> PurchaseIntent:
        await asyncio.sleep(0)
        if intent.id in self._intents:
            raise ValueError(f"intent already exists: {intent.id}")
        self._intents[intent.id] = intent.model_copy(deep=True)
        return intent.model_copy(deep=True)

    async def get_intent(self, intent_id: str) -> Optional[PurchaseIntent]:
        await asyncio.sleep(0)
        intent = self._intents.get(intent_id)
        return intent.model_copy(deep=True) if intent else None

    async def get_intent_by_payment_reference(self, reference: str) -> Optional[PurchaseIntent]:
        await asyncio.sleep(0)
        for intent in self._intents.values():
            if intent.payment_reference is not None and intent.payment_reference == reference:
                return intent.model_copy(deep=True)
        return None

    async def set_intent_payment_reference(
        self, intent_id: str, reference: str
    ) -> Optional[PurchaseIntent]:
        await asyncio.sleep(0)
        intent = self._intents.get(intent_id)
        if intent is None:
            return None
        intent.payment_reference = reference
        intent.updated_at = utcnow()
        return intent.model_copy(deep=True)

    async def compare_and_set_intent_status(
        self, intent_id: str, expected: IntentStatus, target: IntentStatus
    ) -> Optional[PurchaseIntent]:
        await asyncio.sleep(0)
        # No await between the check and the write.
        intent = self._intents.get(intent_id)
        if intent is None or intent.status is not expected:
            return None
        intent.status = target
        intent.updated_at = utcnow()
        return intent.model_copy(deep=True)

    async def list_intents(
        self,
        status: Optional[IntentStatus] = None,
        expires_before: Optional[datetime] = None,
    ) -> Iterable[PurchaseIntent]:
        await asyncio.sleep(0)
        return [
            i.model_copy(deep=True)
            for i in self._intents.values()
            if (status is None or i.status is status)
            and (expires_before is None or i.expires_at <= expires_before)
        ]

    # Audit & alerts
    async def add_audit_event(self, event: AuditEvent) -> AuditEvent:
        if event.id is None:
            event.id = self._next_id()
        self._audit.append(event)
        return event

    async def add_alert(self, alert: OperatorAlert) -> OperatorAlert:
        if alert.id is None:
            alert.id = self._next_id()
        self._alerts.append(alert)
        return alert

    @property
    def audit_events(self) -> List[AuditEvent]:
        return list(self._audit)

    @property
    def alerts(self) -> List[OperatorAlert]:
        return list(self._alerts)
