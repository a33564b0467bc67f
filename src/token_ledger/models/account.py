from __future__ import annotations

from datetime import datetime
from typing import ClassVar, Optional

from pydantic import BaseModel, Field

from .base import DBSerializableModel, utcnow


def normalize_account_id(account_id: str) -> str:
    """Accounts are keyed by email; lookups are case- and whitespace-insensitive."""
    return account_id.strip().lower()


class Account(DBSerializableModel):
    """
    Token account of one customer.

    `balance` is the stored running total. Only the store's atomic
    `apply_entry` primitive writes it.
    """

    collection_name: ClassVar[str] = "token_accounts"

    id: str
    display_name: Optional[str] = None
    display_reference: Optional[str] = Field(
        default=None,
        description="Wallet pass object id the balance is mirrored to.",
    )
    balance: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class BalanceCheck(BaseModel):
    account_id: str
    stored_balance: int
    recomputed_balance: int
    entry_count: int

    @property
    def consistent(self) -> bool:
        return self.stored_balance == self.recomputed_balance
