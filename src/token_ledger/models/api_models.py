from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .intent import IntentStatus, ProductType
from .ledger import EntryCategory, EntryDirection, EntryOrigin


class OpenAccountRequest(BaseModel):
    account_id: str
    display_name: Optional[str] = None
    display_reference: Optional[str] = None


class AccountResponse(BaseModel):
    account_id: str
    display_name: Optional[str] = None
    display_reference: Optional[str] = None
    balance: int


class CreditRequest(BaseModel):
    account_id: str
    amount: int = Field(ge=0)
    category: EntryCategory
    origin: EntryOrigin = EntryOrigin.SYSTEM
    description: Optional[str] = None
    reference: Optional[str] = None


class ChargeRequest(BaseModel):
    account_id: str
    amount: int = Field(gt=0)
    category: EntryCategory = EntryCategory.CONSUMPTION
    origin: EntryOrigin = EntryOrigin.SYSTEM
    description: Optional[str] = None
    reference: Optional[str] = None


class BalanceResponse(BaseModel):
    account_id: str
    balance: int


class EntryResponse(BaseModel):
    id: Optional[str] = None
    direction: EntryDirection
    amount: int
    category: EntryCategory
    origin: EntryOrigin
    description: str
    balance_after: Optional[int] = None
    reference: Optional[str] = None
    created_at: datetime


class HistoryResponse(BaseModel):
    account_id: str
    entries: List[EntryResponse]


class PurchaseRequest(BaseModel):
    account_id: str
    product_type: ProductType
    product_data: Dict[str, Any] = Field(default_factory=dict)
    price: int = Field(gt=0)
    extra_top_up: int = Field(default=0, ge=0)
    display_reference: Optional[str] = None


class PaymentNotification(BaseModel):
    """Body the payment gateway posts once a checkout is paid."""

    reference: str
    amount: Optional[int] = None


class IntentResponse(BaseModel):
    intent_id: str
    account_id: str
    product_type: ProductType
    status: IntentStatus
    amount_required: int
    amount_to_top_up: int
    currency_amount: int
    payment_reference: Optional[str] = None
    expires_at: datetime
