from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Tuple

from ..display.base import DisplaySync
from ..errors import (
    AccountNotFound,
    CollaboratorUnavailable,
    InsufficientFunds,
    InvalidStateTransition,
)
from ..models.account import normalize_account_id
from ..models.intent import IntentStatus, ProductType, PurchaseIntent
from ..models.ledger import EntryCategory, EntryOrigin
from ..models.notification import StuckSettlement
from ..models.outcomes import (
    PurchaseAction,
    PurchaseOutcome,
    SettlementAction,
    SettlementOutcome,
)
from ..payments.base import PaymentGateway
from .alert_service import OperatorAlertService
from .intent_service import PurchaseIntentService
from .token_ledger import TokenLedger


logger = logging.getLogger(__name__)


_PRODUCT_ENTRY: Dict[ProductType, Tuple[EntryCategory, EntryOrigin]] = {
    ProductType.CINEMA: (EntryCategory.MOVIE, EntryOrigin.CINEMA),
    ProductType.SUBSCRIPTION: (EntryCategory.SUBSCRIPTION, EntryOrigin.SUBSCRIPTIONS),
    ProductType.BAR: (EntryCategory.CONSUMPTION, EntryOrigin.BAR),
    ProductType.EVENT: (EntryCategory.CONSUMPTION, EntryOrigin.WEB),
    ProductType.CREDITS: (EntryCategory.SUBTITLES, EntryOrigin.WEB),
}


class SettlementOrchestrator:
    """
    Unified purchase entry point and payment-notification handler.

    Purchase: charge straight away when the balance covers the price,
    otherwise open a purchase intent for the shortfall and hand back a
    checkout. Settlement: when the gateway confirms the top-up, credit it and
    charge the original price, exactly once per intent.

    The pending -> paid compare-and-set is the idempotency gate: duplicate or
    concurrent notifications for one payment find the intent no longer
    pending and return `already_handled` without touching the ledger.
    """

    def __init__(
        self,
        ledger: TokenLedger,
        intents: PurchaseIntentService,
        payments: PaymentGateway,
        alerts: OperatorAlertService,
        display: Optional[DisplaySync] = None,
    ) -> None:
        self._ledger = ledger
        self._intents = intents
        self._payments = payments
        self._alerts = alerts
        self._display = display

    async def request_purchase(
        self,
        account_id: str,
        product_type: ProductType | str,
        product_data: Optional[Dict[str, Any]],
        price: int,
        extra_top_up: int = 0,
        display_reference: str | None = None,
    ) -> PurchaseOutcome:
        if price <= 0:
            raise ValueError("price must be positive")
        if extra_top_up < 0:
            raise ValueError("extra_top_up must not be negative")

        account_id = normalize_account_id(account_id)
        product_type = ProductType(product_type)

        account = await self._ledger.get_account(account_id)
        if account is None:
            return PurchaseOutcome(action=PurchaseAction.ACCOUNT_NOT_FOUND, account_id=account_id)
        display_reference = display_reference or account.display_reference

        balance = await self._ledger.get_balance(account_id)
        if balance >= price:
            category, origin = _PRODUCT_ENTRY[product_type]
            try:
                result = await self._ledger.charge(
                    account_id,
                    price,
                    category=category,
                    description=f"Purchase: {product_type.value}",
                    origin=origin,
                    display_reference=display_reference,
                )
            except InsufficientFunds as exc:
                # Drained between our read and the guarded append.
                logger.info(
                    "Balance moved before charge; switching to top-up",
                    extra={"account_id": account_id, "balance": exc.balance},
                )
                balance = exc.balance
            else:
                await self._sync_display(account_id, display_reference, result.new_balance)
                return PurchaseOutcome(
                    action=PurchaseAction.CHARGED,
                    account_id=account_id,
                    new_balance=result.new_balance,
                )

        return await self._start_top_up(
            account_id,
            product_type,
            product_data,
            price,
            balance,
            extra_top_up,
            display_reference,
        )

    async def on_payment_confirmed(
        self, payment_reference: str, amount: int | None = None
    ) -> SettlementOutcome:
        """
        Settle the intent behind `payment_reference`. Safe to call any number
        of times for the same payment.
        """
        intent = await self._intents.find_by_payment_reference(payment_reference)
        if intent is None:
            logger.info("Payment %s matches no purchase intent", payment_reference)
            return SettlementOutcome(
                action=SettlementAction.NOT_FOUND, payment_reference=payment_reference
            )
        if intent.status is not IntentStatus.PENDING:
            logger.info(
                "Intent %s already %s; ignoring notification",
                intent.id,
                intent.status.value,
                extra={"intent_id": intent.id},
            )
            return self._already_handled(payment_reference, intent)

        if amount is not None and amount != intent.currency_amount:
            logger.warning(
                "Payment amount %s differs from intent checkout amount %s",
                amount,
                intent.currency_amount,
                extra={"intent_id": intent.id, "account_id": intent.account_id},
            )

        try:
            intent = await self._intents.transition(intent.id, IntentStatus.PAID)
        except InvalidStateTransition:
            latest = await self._intents.get(intent.id)
            return self._already_handled(payment_reference, latest or intent)

        try:
            credited = await self._ledger.credit(
                intent.account_id,
                intent.amount_to_top_up,
                EntryCategory.PURCHASE,
                description=f"Top-up of {intent.amount_to_top_up} tokens via payment gateway",
                origin=EntryOrigin.PAYMENT_GATEWAY,
                reference=intent.id,
                display_reference=intent.display_reference,
            )
        except AccountNotFound as exc:
            await self._report_stuck(intent, reason=str(exc), amount_credited=0)
            return self._stuck(payment_reference, intent, None)
        except Exception as exc:
            await self._report_stuck(intent, reason=str(exc), amount_credited=0)
            raise

        category, origin = _PRODUCT_ENTRY[intent.product_type]
        try:
            charged = await self._ledger.charge(
                intent.account_id,
                intent.amount_required,
                category=category,
                description=f"Automatic purchase: {intent.product_type.value}",
                origin=origin,
                reference=intent.id,
                display_reference=intent.display_reference,
            )
        except InsufficientFunds as exc:
            await self._report_stuck(
                intent,
                reason=str(exc),
                amount_credited=intent.amount_to_top_up,
                balance_after_credit=credited.new_balance,
            )
            await self._sync_display(intent.account_id, intent.display_reference, exc.balance)
            return self._stuck(payment_reference, intent, exc.balance)
        except Exception as exc:
            await self._report_stuck(
                intent,
                reason=str(exc),
                amount_credited=intent.amount_to_top_up,
                balance_after_credit=credited.new_balance,
            )
            raise

        completed = await self._intents.transition(intent.id, IntentStatus.COMPLETED)
        logger.info(
            "Settled intent %s; balance now %s",
            intent.id,
            charged.new_balance,
            extra={"intent_id": intent.id, "account_id": intent.account_id},
        )
        await self._sync_display(intent.account_id, intent.display_reference, charged.new_balance)
        return SettlementOutcome(
            action=SettlementAction.COMPLETED,
            payment_reference=payment_reference,
            intent_id=completed.id,
            intent_status=completed.status,
            new_balance=charged.new_balance,
        )

    async def _start_top_up(
        self,
        account_id: str,
        product_type: ProductType,
        product_data: Optional[Dict[str, Any]],
        price: int,
        balance: int,
        extra_top_up: int,
        display_reference: str | None,
    ) -> PurchaseOutcome:
        # Advisory only: settlement charges the full price under its own guard.
        shortfall = price - balance
        to_top_up = shortfall + extra_top_up

        intent = await self._intents.create(
            account_id,
            product_type,
            product_data,
            amount_required=price,
            amount_to_top_up=to_top_up,
            display_reference=display_reference,
        )
        try:
            checkout = await self._payments.create_checkout(
                amount_tokens=to_top_up,
                currency_amount=intent.currency_amount,
                external_reference=intent.id,
                description=f"{to_top_up} tokens for {product_type.value}",
                payer_email=account_id,
            )
        except CollaboratorUnavailable:
            await self._intents.cancel(intent.id)
            raise
        await self._intents.attach_payment_reference(intent.id, checkout.reference)

        return PurchaseOutcome(
            action=PurchaseAction.TOPUP_REQUIRED,
            account_id=account_id,
            current_balance=balance,
            shortfall=shortfall,
            intent_id=intent.id,
            checkout_reference=checkout.reference,
            checkout_url=checkout.url,
            amount_to_top_up=to_top_up,
            currency_amount=intent.currency_amount,
        )

    async def _report_stuck(
        self,
        intent: PurchaseIntent,
        reason: str,
        amount_credited: int,
        balance_after_credit: int | None = None,
    ) -> None:
        await self._alerts.notify_stuck_settlement(
            StuckSettlement(
                intent_id=intent.id,
                account_id=intent.account_id,
                amount_credited=amount_credited,
                amount_required=intent.amount_required,
                balance_after_credit=balance_after_credit,
                reason=reason,
            )
        )

    async def _sync_display(
        self, account_id: str, display_reference: str | None, balance: int
    ) -> None:
        if self._display is None or not display_reference:
            return
        try:
            synced = await self._display.update_displayed_balance(display_reference, balance)
        except Exception:
            logger.exception(
                "Display sync raised", extra={"account_id": account_id, "display_reference": display_reference}
            )
            synced = False
        if not synced:
            logger.warning(
                "Display sync failed for %s",
                display_reference,
                extra={"account_id": account_id},
            )
            await self._alerts.notify_display_sync_failed(account_id, display_reference, balance)

    @staticmethod
    def _already_handled(payment_reference: str, intent: PurchaseIntent) -> SettlementOutcome:
        return SettlementOutcome(
            action=SettlementAction.ALREADY_HANDLED,
            payment_reference=payment_reference,
            intent_id=intent.id,
            intent_status=intent.status,
        )

    @staticmethod
    def _stuck(
        payment_reference: str, intent: PurchaseIntent, balance: int | None
    ) -> SettlementOutcome:
        return SettlementOutcome(
            action=SettlementAction.STUCK,
            payment_reference=payment_reference,
            intent_id=intent.id,
            intent_status=IntentStatus.PAID,
            new_balance=balance,
        )
