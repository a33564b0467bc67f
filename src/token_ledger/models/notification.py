from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, Optional

from pydantic import BaseModel, Field

from .base import DBSerializableModel, utcnow


class AlertType(str, Enum):
    STUCK_SETTLEMENT = "stuck_settlement"
    BALANCE_INTEGRITY = "balance_integrity"
    DISPLAY_SYNC_FAILED = "display_sync_failed"


class AlertStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class StuckSettlement(BaseModel):
    """
    A paid intent whose final charge failed after the top-up was credited.

    The customer holds the credited tokens; an operator has to finish or
    refund the purchase by hand.
    """

    intent_id: str
    account_id: str
    amount_credited: int
    amount_required: int
    balance_after_credit: Optional[int] = None
    reason: str


class OperatorAlert(DBSerializableModel):
    """
    Stored representation of operator alerts for auditing/monitoring.
    """

    collection_name: ClassVar[str] = "token_operator_alerts"

    id: Optional[str] = Field(default=None)
    alert_type: AlertType
    account_id: Optional[str] = None
    intent_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    status: AlertStatus = AlertStatus.PENDING
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    sent_at: Optional[datetime] = None
