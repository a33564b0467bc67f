from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, FrozenSet, Mapping, Optional

from pydantic import Field, field_validator

from .base import DBSerializableModel, utcnow


class ProductType(str, Enum):
    CINEMA = "cinema"
    SUBSCRIPTION = "subscription"
    BAR = "bar"
    EVENT = "event"
    CREDITS = "credits"

    @classmethod
    def _missing_(cls, value: object) -> Optional["ProductType"]:
        # Ticketing clients still send the short name.
        if value == "cine":
            return cls.CINEMA
        return None


class IntentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    COMPLETED = "completed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


# Only these edges exist. A paid intent whose final charge failed stays paid.
ALLOWED_TRANSITIONS: Mapping[IntentStatus, FrozenSet[IntentStatus]] = {
    IntentStatus.PENDING: frozenset(
        {IntentStatus.PAID, IntentStatus.EXPIRED, IntentStatus.CANCELLED}
    ),
    IntentStatus.PAID: frozenset({IntentStatus.COMPLETED}),
    IntentStatus.COMPLETED: frozenset(),
    IntentStatus.EXPIRED: frozenset(),
    IntentStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES: FrozenSet[IntentStatus] = frozenset(
    {IntentStatus.COMPLETED, IntentStatus.EXPIRED, IntentStatus.CANCELLED}
)


def can_transition(current: IntentStatus, target: IntentStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


class PurchaseIntent(DBSerializableModel):
    """
    A purchase waiting for an external top-up payment before it can be charged.

    `product_data` is passed through untouched; product handlers outside the
    ledger interpret it.
    """

    collection_name: ClassVar[str] = "token_purchase_intents"

    id: str
    account_id: str
    product_type: ProductType
    product_data: Dict[str, Any] = Field(default_factory=dict)
    amount_required: int = Field(gt=0, description="Product price in tokens.")
    amount_to_top_up: int = Field(gt=0, description="Tokens bought through the gateway.")
    currency_amount: int = Field(ge=0, description="Checkout amount in the gateway currency.")
    display_reference: Optional[str] = None
    payment_reference: Optional[str] = Field(
        default=None, description="Checkout reference used to correlate payment notifications."
    )
    status: IntentStatus = IntentStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("expires_at", "created_at", "updated_at")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        # Documents read back from Mongo without tz_aware come back naive.
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        return self.status is IntentStatus.PENDING and (now or utcnow()) >= self.expires_at

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
