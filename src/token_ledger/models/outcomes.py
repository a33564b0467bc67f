from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel

from .intent import IntentStatus
from .ledger import LedgerEntry


class LedgerResult(BaseModel):
    """Outcome of a successful ledger mutation."""

    account_id: str
    new_balance: int
    entry: LedgerEntry


class PurchaseAction(str, Enum):
    CHARGED = "charged"
    TOPUP_REQUIRED = "topup_required"
    ACCOUNT_NOT_FOUND = "account_not_found"


class PurchaseOutcome(BaseModel):
    action: PurchaseAction
    account_id: str
    new_balance: Optional[int] = None
    current_balance: Optional[int] = None
    shortfall: Optional[int] = None
    intent_id: Optional[str] = None
    checkout_reference: Optional[str] = None
    checkout_url: Optional[str] = None
    amount_to_top_up: Optional[int] = None
    currency_amount: Optional[int] = None


class SettlementAction(str, Enum):
    COMPLETED = "completed"
    ALREADY_HANDLED = "already_handled"
    NOT_FOUND = "not_found"
    STUCK = "stuck"


class SettlementOutcome(BaseModel):
    action: SettlementAction
    payment_reference: str
    intent_id: Optional[str] = None
    intent_status: Optional[IntentStatus] = None
    new_balance: Optional[int] = None
