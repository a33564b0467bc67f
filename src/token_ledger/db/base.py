from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, Optional, Tuple

from ..models.account import Account
from ..models.audit import AuditEvent
from ..models.intent import IntentStatus, PurchaseIntent
from ..models.ledger import LedgerEntry
from ..models.notification import OperatorAlert


class BaseDBManager(ABC):
    """
    DB-agnostic async manager interface.

    Concrete implementations (MongoDB, in-memory, ...) implement these
    methods. Every call is a round trip to storage and a point where other
    coroutines interleave; the only multi-step atomic units are
    `apply_entry` (per account) and `compare_and_set_intent_status`
    (per intent).

    Backend connectivity failures surface as
    `token_ledger.errors.CollaboratorUnavailable`.
    """

    async def ensure_indexes(self) -> None:
        """Create backend indexes. Backends without indexes do nothing."""

    # Accounts
    @abstractmethod
    async def add_account(self, account: Account) -> Account:
        """Insert a new account. Raises ValueError if the id is taken."""

    @abstractmethod
    async def get_account(self, account_id: str) -> Optional[Account]: ...

    @abstractmethod
    async def set_display_reference(self, account_id: str, display_reference: str) -> Account:
        """Store the wallet pass id. Never touches the running total."""

    # Ledger
    @abstractmethod
    async def apply_entry(self, entry: LedgerEntry, require_funds: bool) -> LedgerEntry:
        """
        Atomically read the account's running total, append `entry` and
        update the total; return the stored entry with `id` and
        `balance_after` filled in.

        With `require_funds`, a charge is appended only if the current total
        covers it; otherwise `InsufficientFunds` is raised and nothing is
        written. Unknown accounts raise `AccountNotFound`.
        """

    @abstractmethod
    async def get_entries(
        self, account_id: str, limit: Optional[int] = None, newest_first: bool = False
    ) -> Iterable[LedgerEntry]: ...

    @abstractmethod
    async def sum_entries(self, account_id: str) -> Tuple[int, int]:
        """Signed sum of the account's history and the number of entries."""

    # Purchase intents
    @abstractmethod
    async def add_intent(self, intent: PurchaseIntent) -> PurchaseIntent: ...

    @abstractmethod
    async def get_intent(self, intent_id: str) -> Optional[PurchaseIntent]: ...

    @abstractmethod
    async def get_intent_by_payment_reference(self, reference: str) -> Optional[PurchaseIntent]:
        """Exact, case-sensitive match."""

    @abstractmethod
    async def set_intent_payment_reference(
        self, intent_id: str, reference: str
    ) -> Optional[PurchaseIntent]: ...

    @abstractmethod
    async def compare_and_set_intent_status(
        self, intent_id: str, expected: IntentStatus, target: IntentStatus
    ) -> Optional[PurchaseIntent]:
        """
        Move the intent to `target` only if it is currently `expected`.
        Returns the updated intent, or None when the intent is missing or
        its status differs.
        """

    @abstractmethod
    async def list_intents(
        self,
        status: Optional[IntentStatus] = None,
        expires_before: Optional[datetime] = None,
    ) -> Iterable[PurchaseIntent]: ...

    # Audit & alerts
    @abstractmethod
    async def add_audit_event(self, event: AuditEvent) -> AuditEvent: ...

    @abstractmethod
    async def add_alert(self, alert: OperatorAlert) -> OperatorAlert: ...
