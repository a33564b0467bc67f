from __future__ import annotations

import logging
from typing import List, Optional

from ..db.base import BaseDBManager
from ..errors import AccountNotFound, InsufficientFunds
from ..logging.audit_logger import AuditLogger
from ..models.account import Account, BalanceCheck, normalize_account_id
from ..models.ledger import EntryCategory, EntryDirection, EntryOrigin, LedgerEntry
from ..models.outcomes import LedgerResult
from .alert_service import OperatorAlertService


logger = logging.getLogger(__name__)


class TokenLedger:
    """
    Single source of truth for token balances.

    Every mutation is one call to the store's atomic `apply_entry`, so the
    sufficiency check of a charge and its append can't be split by a
    concurrent request. The ledger never retries; callers decide.
    It knows nothing about purchase intents: `reference` is an opaque
    correlation key copied onto the entry.
    """

    def __init__(
        self,
        db: BaseDBManager,
        audit: AuditLogger,
        alerts: Optional[OperatorAlertService] = None,
        exchange_rate: int = 1000,
    ) -> None:
        self._db = db
        self._audit = audit
        self._alerts = alerts
        self._exchange_rate = exchange_rate

    async def open_account(
        self,
        account_id: str,
        display_name: str | None = None,
        display_reference: str | None = None,
    ) -> Account:
        account = Account(
            id=normalize_account_id(account_id),
            display_name=display_name,
            display_reference=display_reference,
        )
        account = await self._db.add_account(account)
        await self._audit.log_transaction(
            account_id=account.id,
            message="Account opened",
            details={"display_reference": display_reference or ""},
        )
        return account

    async def get_account(self, account_id: str) -> Optional[Account]:
        return await self._db.get_account(normalize_account_id(account_id))

    async def get_balance(self, account_id: str) -> int:
        """
        Current running total, floored at zero. Unknown accounts read as zero.

        A negative stored total means the data is corrupt; it is reported,
        not repaired.
        """
        account_id = normalize_account_id(account_id)
        account = await self._db.get_account(account_id)
        if account is None:
            return 0
        if account.balance < 0:
            logger.error(
                "Negative stored balance %s for %s",
                account.balance,
                account_id,
                extra={"account_id": account_id},
            )
            if self._alerts:
                await self._alerts.notify_balance_integrity(account_id, account.balance)
            return 0
        return account.balance

    async def charge(
        self,
        account_id: str,
        amount: int,
        category: EntryCategory = EntryCategory.CONSUMPTION,
        description: str = "",
        origin: EntryOrigin = EntryOrigin.SYSTEM,
        reference: str | None = None,
        display_reference: str | None = None,
        correlation_id: str | None = None,
    ) -> LedgerResult:
        """
        Debit `amount` if, at the moment of the append, the balance covers it.

        Raises InsufficientFunds (nothing written) or AccountNotFound.
        """
        if amount <= 0:
            raise ValueError("amount must be positive")

        account_id = normalize_account_id(account_id)
        entry = LedgerEntry(
            account_id=account_id,
            direction=EntryDirection.CHARGE,
            amount=amount,
            category=category,
            origin=origin,
            description=description,
            reference=reference,
            display_reference=display_reference,
        )
        try:
            stored = await self._db.apply_entry(entry, require_funds=True)
        except InsufficientFunds as exc:
            await self._audit.log_error(
                message="Insufficient funds for charge",
                details={"requested": amount, "balance": exc.balance, "reference": reference or ""},
                account_id=account_id,
                correlation_id=correlation_id,
            )
            raise

        return await self._committed(stored, "Tokens charged", correlation_id)

    async def credit(
        self,
        account_id: str,
        amount: int,
        category: EntryCategory,
        description: str = "",
        origin: EntryOrigin = EntryOrigin.SYSTEM,
        reference: str | None = None,
        display_reference: str | None = None,
        correlation_id: str | None = None,
    ) -> LedgerResult:
        """
        Append a credit. `amount == 0` records a non-monetary event and
        leaves the balance as it was.
        """
        if amount < 0:
            raise ValueError("amount must not be negative")

        account_id = normalize_account_id(account_id)
        entry = LedgerEntry(
            account_id=account_id,
            direction=EntryDirection.CREDIT,
            amount=amount,
            category=category,
            origin=origin,
            description=description or f"Credit of {amount} tokens",
            reference=reference,
            display_reference=display_reference,
        )
        stored = await self._db.apply_entry(entry, require_funds=False)
        return await self._committed(stored, "Tokens credited", correlation_id)

    async def link_display(self, account_id: str, display_reference: str) -> LedgerResult:
        """Attach a wallet pass to the account and record it in the history."""
        account_id = normalize_account_id(account_id)
        await self._db.set_display_reference(account_id, display_reference)
        return await self.credit(
            account_id,
            0,
            EntryCategory.GIFT,
            description="Display pass linked",
            display_reference=display_reference,
        )

    async def get_history(self, account_id: str, limit: int = 50) -> List[LedgerEntry]:
        entries = await self._db.get_entries(
            normalize_account_id(account_id), limit=limit, newest_first=True
        )
        return list(entries)

    async def verify_balance(self, account_id: str) -> BalanceCheck:
        """
        Recompute the balance from the full history and compare it with the
        running total. A mismatch is reported to operators.
        """
        account_id = normalize_account_id(account_id)
        account = await self._db.get_account(account_id)
        if account is None:
            raise AccountNotFound(account_id)
        total, count = await self._db.sum_entries(account_id)
        check = BalanceCheck(
            account_id=account_id,
            stored_balance=account.balance,
            recomputed_balance=total,
            entry_count=count,
        )
        if (not check.consistent or total < 0) and self._alerts:
            await self._alerts.notify_balance_integrity(account_id, account.balance, check)
        return check

    def tokens_to_currency(self, tokens: int) -> int:
        return tokens * self._exchange_rate

    def currency_to_tokens(self, amount: int) -> int:
        return amount // self._exchange_rate

    async def _committed(
        self, stored: LedgerEntry, message: str, correlation_id: str | None
    ) -> LedgerResult:
        new_balance = stored.balance_after if stored.balance_after is not None else 0
        logger.info(
            "%s: %s %s -> %s",
            message,
            stored.account_id,
            stored.amount,
            new_balance,
            extra={"account_id": stored.account_id, "reference": stored.reference},
        )
        await self._audit.log_transaction(
            account_id=stored.account_id,
            message=message,
            details={
                "entry_id": stored.id,
                "direction": stored.direction.value,
                "amount": stored.amount,
                "category": stored.category.value,
                "origin": stored.origin.value,
                "description": stored.description,
                "reference": stored.reference or "",
                "new_balance": new_balance,
            },
            correlation_id=correlation_id or stored.reference,
        )
        return LedgerResult(account_id=stored.account_id, new_balance=new_balance, entry=stored)
