from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, Optional

from pydantic import ConfigDict, Field, model_validator

from .base import DBSerializableModel, utcnow


class EntryDirection(str, Enum):
    CREDIT = "credit"
    CHARGE = "charge"


class EntryCategory(str, Enum):
    PURCHASE = "purchase"
    SUBSCRIPTION = "subscription"
    CASHBACK = "cashback"
    GIFT = "gift"
    CONSUMPTION = "consumption"
    MOVIE = "movie"
    SUBTITLES = "subtitles"


class EntryOrigin(str, Enum):
    BAR = "bar"
    CINEMA = "cinema"
    SUBSCRIPTIONS = "subscriptions"
    WEB = "web"
    PAYMENT_GATEWAY = "payment_gateway"
    SYSTEM = "system"


class LedgerEntry(DBSerializableModel):
    """
    Immutable signed movement against one account.

    `amount` is never negative; the sign lives in `direction`. A zero amount
    is only valid on a credit and marks a non-monetary event.
    `balance_after` is filled in by the store when the entry is applied.
    """

    model_config = ConfigDict(frozen=True)

    collection_name: ClassVar[str] = "token_ledger_entries"

    id: Optional[str] = Field(default=None)
    account_id: str
    direction: EntryDirection
    amount: int = Field(ge=0, description="Always non-negative; sign is carried by direction.")
    category: EntryCategory
    origin: EntryOrigin = EntryOrigin.SYSTEM
    description: str = ""
    balance_after: Optional[int] = Field(
        default=None, description="Running total right after this entry was applied."
    )
    display_reference: Optional[str] = None
    reference: Optional[str] = Field(
        default=None,
        description="Correlation key of the operation that produced the entry (e.g. intent id).",
    )
    created_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _charges_move_value(self) -> "LedgerEntry":
        if self.direction is EntryDirection.CHARGE and self.amount == 0:
            raise ValueError("charge entries must have a positive amount")
        return self

    @property
    def signed_amount(self) -> int:
        return self.amount if self.direction is EntryDirection.CREDIT else -self.amount
