from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from ..db.base import BaseDBManager
from ..models.account import BalanceCheck
from ..models.base import utcnow
from ..models.notification import AlertStatus, AlertType, OperatorAlert, StuckSettlement
from ..notifications.queue import OPERATOR_ALERTS_TOPIC, AsyncNotificationQueue


logger = logging.getLogger(__name__)


class OperatorAlertService:
    """
    Records operator alerts and dispatches them via a message queue.

    Alerts describe states the ledger cannot fix on its own: a stuck
    settlement, a running total that disagrees with its history, a wallet
    pass that did not refresh. Raising an alert never fails the caller.
    """

    def __init__(self, db: BaseDBManager, queue: AsyncNotificationQueue) -> None:
        self._db = db
        self._queue = queue

    async def notify_stuck_settlement(self, stuck: StuckSettlement) -> OperatorAlert:
        logger.error(
            "Stuck settlement: intent %s paid but final charge failed (%s)",
            stuck.intent_id,
            stuck.reason,
            extra={"account_id": stuck.account_id, "intent_id": stuck.intent_id},
        )
        return await self._raise(
            AlertType.STUCK_SETTLEMENT,
            account_id=stuck.account_id,
            intent_id=stuck.intent_id,
            payload=stuck.model_dump(),
        )

    async def notify_balance_integrity(
        self, account_id: str, stored_balance: int, check: Optional[BalanceCheck] = None
    ) -> OperatorAlert:
        payload: Dict[str, Any] = {"stored_balance": stored_balance}
        if check is not None:
            payload.update(check.model_dump())
        logger.error(
            "Balance integrity error for %s: %s",
            account_id,
            payload,
            extra={"account_id": account_id},
        )
        return await self._raise(
            AlertType.BALANCE_INTEGRITY, account_id=account_id, payload=payload
        )

    async def notify_display_sync_failed(
        self, account_id: str, display_reference: str, balance: int
    ) -> OperatorAlert:
        return await self._raise(
            AlertType.DISPLAY_SYNC_FAILED,
            account_id=account_id,
            payload={"display_reference": display_reference, "balance": balance},
        )

    async def _raise(
        self,
        alert_type: AlertType,
        payload: Dict[str, Any],
        account_id: Optional[str] = None,
        intent_id: Optional[str] = None,
    ) -> OperatorAlert:
        alert = OperatorAlert(
            alert_type=alert_type,
            account_id=account_id,
            intent_id=intent_id,
            payload=payload,
            status=AlertStatus.PENDING,
        )
        try:
            alert = await self._db.add_alert(alert)
        except Exception:
            logger.exception("Operator alert could not be stored", extra={"alert_type": alert_type.value})

        try:
            await self._queue.enqueue(
                OPERATOR_ALERTS_TOPIC,
                {
                    "alert_id": alert.id,
                    "type": alert.alert_type.value,
                    "account_id": account_id,
                    "intent_id": intent_id,
                    "payload": alert.payload,
                },
            )
            alert.status = AlertStatus.SENT
            alert.sent_at = utcnow()
        except Exception as exc:
            alert.status = AlertStatus.FAILED
            alert.error_message = str(exc)
            logger.exception("Operator alert could not be dispatched", extra={"alert_type": alert_type.value})
        return alert
