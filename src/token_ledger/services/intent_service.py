from __future__ import annotations

import logging
import secrets
import string
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from ..db.base import BaseDBManager
from ..errors import IntentNotFound, InvalidStateTransition
from ..logging.audit_logger import AuditLogger
from ..models.account import normalize_account_id
from ..models.base import utcnow
from ..models.intent import IntentStatus, ProductType, PurchaseIntent, can_transition


logger = logging.getLogger(__name__)

_BASE36 = string.digits + string.ascii_uppercase


def _base36(value: int) -> str:
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits)) or "0"


def generate_intent_id() -> str:
    """Opaque, shareable id: millisecond timestamp plus random suffix, base36."""
    suffix = "".join(secrets.choice(_BASE36) for _ in range(6))
    return f"TKN-{_base36(time.time_ns() // 1_000_000)}-{suffix}"


class PurchaseIntentService:
    """
    Durable bookkeeping of purchases that wait for a top-up payment.

    Status only moves through `transition`, which checks the transition
    table and then applies a compare-and-set in the store; of two concurrent
    callers moving the same intent out of the same state, one gets
    `InvalidStateTransition`.

    Expiry is lazy: reading a pending intent past its `expires_at` expires
    it first.
    """

    def __init__(
        self,
        db: BaseDBManager,
        audit: AuditLogger,
        ttl: timedelta = timedelta(minutes=30),
        exchange_rate: int = 1000,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = db
        self._audit = audit
        self._ttl = ttl
        self._exchange_rate = exchange_rate
        self._clock = clock

    async def create(
        self,
        account_id: str,
        product_type: ProductType | str,
        product_data: Optional[Dict[str, Any]],
        amount_required: int,
        amount_to_top_up: int,
        display_reference: str | None = None,
    ) -> PurchaseIntent:
        now = self._clock()
        intent = PurchaseIntent(
            id=generate_intent_id(),
            account_id=normalize_account_id(account_id),
            product_type=ProductType(product_type),
            product_data=dict(product_data or {}),
            amount_required=amount_required,
            amount_to_top_up=amount_to_top_up,
            currency_amount=amount_to_top_up * self._exchange_rate,
            display_reference=display_reference,
            status=IntentStatus.PENDING,
            created_at=now,
            updated_at=now,
            expires_at=now + self._ttl,
        )
        intent = await self._db.add_intent(intent)
        logger.info(
            "Created purchase intent %s",
            intent.id,
            extra={"account_id": intent.account_id, "intent_id": intent.id},
        )
        await self._audit.log_intent(
            account_id=intent.account_id,
            message="Purchase intent created",
            details={
                "intent_id": intent.id,
                "product_type": intent.product_type.value,
                "amount_required": intent.amount_required,
                "amount_to_top_up": intent.amount_to_top_up,
                "expires_at": intent.expires_at.isoformat(),
            },
            correlation_id=intent.id,
        )
        return intent

    async def attach_payment_reference(self, intent_id: str, reference: str) -> PurchaseIntent:
        intent = await self._db.set_intent_payment_reference(intent_id, reference)
        if intent is None:
            raise IntentNotFound(intent_id)
        return intent

    async def get(self, intent_id: str) -> Optional[PurchaseIntent]:
        intent = await self._db.get_intent(intent_id)
        if intent is None:
            return None
        return await self._expire_if_overdue(intent)

    async def find_by_payment_reference(self, reference: str) -> Optional[PurchaseIntent]:
        intent = await self._db.get_intent_by_payment_reference(reference)
        if intent is None:
            return None
        return await self._expire_if_overdue(intent)

    async def transition(self, intent_id: str, target: IntentStatus) -> PurchaseIntent:
        current = await self._db.get_intent(intent_id)
        if current is None:
            raise IntentNotFound(intent_id)
        if not can_transition(current.status, target):
            logger.warning(
                "Rejected intent transition %s -> %s",
                current.status.value,
                target.value,
                extra={"intent_id": intent_id},
            )
            raise InvalidStateTransition(intent_id, current.status.value, target.value)

        updated = await self._db.compare_and_set_intent_status(intent_id, current.status, target)
        if updated is None:
            # Someone else moved it between our read and the write.
            latest = await self._db.get_intent(intent_id)
            latest_status = latest.status.value if latest else "missing"
            logger.warning(
                "Lost race moving intent to %s (now %s)",
                target.value,
                latest_status,
                extra={"intent_id": intent_id},
            )
            raise InvalidStateTransition(intent_id, latest_status, target.value)

        await self._audit.log_intent(
            account_id=updated.account_id,
            message=f"Purchase intent {target.value}",
            details={"intent_id": intent_id, "from": current.status.value, "to": target.value},
            correlation_id=intent_id,
        )
        return updated

    async def cancel(self, intent_id: str) -> PurchaseIntent:
        return await self.transition(intent_id, IntentStatus.CANCELLED)

    async def _expire_if_overdue(self, intent: PurchaseIntent) -> PurchaseIntent:
        if not intent.is_overdue(self._clock()):
            return intent
        try:
            return await self.transition(intent.id, IntentStatus.EXPIRED)
        except InvalidStateTransition:
            # Paid or cancelled concurrently; report what the store holds now.
            latest = await self._db.get_intent(intent.id)
            return latest or intent
