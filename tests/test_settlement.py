from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from token_ledger.db.memory import InMemoryDBManager
from token_ledger.display.base import InMemoryDisplaySync
from token_ledger.errors import CollaboratorUnavailable
from token_ledger.logging.audit_logger import AuditLogger
from token_ledger.models.intent import IntentStatus, ProductType
from token_ledger.models.ledger import (
    EntryCategory,
    EntryDirection,
    EntryOrigin,
    LedgerEntry,
)
from token_ledger.models.notification import AlertType
from token_ledger.models.outcomes import PurchaseAction, SettlementAction
from token_ledger.notifications.queue import InMemoryNotificationQueue
from token_ledger.payments.base import InMemoryPaymentGateway, PaymentGateway
from token_ledger.services.alert_service import OperatorAlertService
from token_ledger.services.intent_service import PurchaseIntentService
from token_ledger.services.settlement import SettlementOrchestrator
from token_ledger.services.token_ledger import TokenLedger


ACCOUNT = "ana@example.com"


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


class Harness:
    def __init__(self, tmp_path, db=None, payments=None, display=None) -> None:
        self.db = db or InMemoryDBManager()
        self.queue = InMemoryNotificationQueue()
        self.clock = FakeClock()
        self.payments = payments or InMemoryPaymentGateway()
        self.display = display or InMemoryDisplaySync()
        audit = AuditLogger(db=self.db, file_path=tmp_path / "audit.jsonl")
        self.alerts = OperatorAlertService(db=self.db, queue=self.queue)
        self.ledger = TokenLedger(db=self.db, audit=audit, alerts=self.alerts)
        self.intents = PurchaseIntentService(db=self.db, audit=audit, clock=self.clock)
        self.orchestrator = SettlementOrchestrator(
            ledger=self.ledger,
            intents=self.intents,
            payments=self.payments,
            alerts=self.alerts,
            display=self.display,
        )

    async def account(self, balance: int, display_reference=None) -> None:
        await self.ledger.open_account(ACCOUNT, display_reference=display_reference)
        if balance:
            await self.ledger.credit(ACCOUNT, balance, EntryCategory.PURCHASE)

    def alerts_of(self, alert_type):
        return [a for a in self.db.alerts if a.alert_type is alert_type]


class DrainingDB(InMemoryDBManager):
    """Spends `drain` tokens elsewhere right after the gateway top-up lands."""

    def __init__(self, drain: int) -> None:
        super().__init__()
        self.drain = drain

    async def apply_entry(self, entry, require_funds):
        stored = await super().apply_entry(entry, require_funds)
        if self.drain and entry.origin is EntryOrigin.PAYMENT_GATEWAY:
            amount, self.drain = self.drain, 0
            await super().apply_entry(
                LedgerEntry(
                    account_id=entry.account_id,
                    direction=EntryDirection.CHARGE,
                    amount=amount,
                    category=EntryCategory.CONSUMPTION,
                    origin=EntryOrigin.BAR,
                ),
                require_funds=True,
            )
        return stored


class FailingChargeDB(InMemoryDBManager):
    """The store rejects the settlement charge after the top-up has landed."""

    async def apply_entry(self, entry, require_funds):
        if entry.direction is EntryDirection.CHARGE and entry.reference is not None:
            raise RuntimeError("WriteConflict")
        return await super().apply_entry(entry, require_funds)


class SpendBeforeChargeDB(InMemoryDBManager):
    """Another terminal spends `drain` tokens just before the cinema charge lands."""

    def __init__(self, drain: int) -> None:
        super().__init__()
        self.drain = drain

    async def apply_entry(self, entry, require_funds):
        if self.drain and entry.origin is EntryOrigin.CINEMA:
            amount, self.drain = self.drain, 0
            await super().apply_entry(
                LedgerEntry(
                    account_id=entry.account_id,
                    direction=EntryDirection.CHARGE,
                    amount=amount,
                    category=EntryCategory.CONSUMPTION,
                    origin=EntryOrigin.BAR,
                ),
                require_funds=True,
            )
        return await super().apply_entry(entry, require_funds)


class DownGateway(PaymentGateway):
    async def create_checkout(self, amount_tokens, currency_amount, external_reference, description, payer_email=None):
        raise CollaboratorUnavailable("payment_gateway", "timeout")


@pytest.mark.asyncio
async def test_sufficient_balance_is_charged_immediately(tmp_path):
    h = Harness(tmp_path)
    await h.account(10000, display_reference="pass-1")

    outcome = await h.orchestrator.request_purchase(ACCOUNT, "cinema", {"movie_id": "m-1"}, 6000)

    assert outcome.action is PurchaseAction.CHARGED
    assert outcome.new_balance == 4000
    assert await h.ledger.get_balance(ACCOUNT) == 4000
    assert h.display.displayed == {"pass-1": 4000}
    history = await h.ledger.get_history(ACCOUNT)
    assert history[0].category is EntryCategory.MOVIE
    assert history[0].origin is EntryOrigin.CINEMA
    assert h.payments.checkouts == {}


@pytest.mark.asyncio
async def test_insufficient_balance_opens_intent_and_checkout(tmp_path):
    h = Harness(tmp_path)
    await h.account(2000)

    outcome = await h.orchestrator.request_purchase(ACCOUNT, ProductType.CINEMA, {"movie_id": "m-1"}, 6000)

    assert outcome.action is PurchaseAction.TOPUP_REQUIRED
    assert outcome.current_balance == 2000
    assert outcome.shortfall == 4000
    assert outcome.amount_to_top_up == 4000
    assert outcome.currency_amount == 4_000_000
    assert await h.ledger.get_balance(ACCOUNT) == 2000

    intent = await h.intents.get(outcome.intent_id)
    assert intent.status is IntentStatus.PENDING
    assert intent.amount_required == 6000
    assert intent.payment_reference == outcome.checkout_reference

    checkout = h.payments.checkouts[outcome.checkout_reference]
    assert checkout.external_reference == intent.id
    assert checkout.amount_tokens == 4000
    assert outcome.checkout_url == checkout.url


@pytest.mark.asyncio
async def test_extra_top_up_is_added_to_the_checkout(tmp_path):
    h = Harness(tmp_path)
    await h.account(2000)

    outcome = await h.orchestrator.request_purchase(ACCOUNT, "bar", {}, 6000, extra_top_up=1000)

    assert outcome.shortfall == 4000
    assert outcome.amount_to_top_up == 5000


@pytest.mark.asyncio
async def test_unknown_account_is_reported(tmp_path):
    h = Harness(tmp_path)

    outcome = await h.orchestrator.request_purchase("nobody@example.com", "event", {}, 100)

    assert outcome.action is PurchaseAction.ACCOUNT_NOT_FOUND


@pytest.mark.asyncio
async def test_invalid_purchase_arguments(tmp_path):
    h = Harness(tmp_path)
    await h.account(100)

    with pytest.raises(ValueError):
        await h.orchestrator.request_purchase(ACCOUNT, "cinema", {}, 0)
    with pytest.raises(ValueError):
        await h.orchestrator.request_purchase(ACCOUNT, "cinema", {}, 10, extra_top_up=-1)
    with pytest.raises(ValueError):
        await h.orchestrator.request_purchase(ACCOUNT, "popcorn", {}, 10)


@pytest.mark.asyncio
async def test_gateway_outage_leaves_no_pending_intent(tmp_path):
    h = Harness(tmp_path, payments=DownGateway())
    await h.account(0)

    with pytest.raises(CollaboratorUnavailable):
        await h.orchestrator.request_purchase(ACCOUNT, "cinema", {}, 500)

    assert await h.db.list_intents(status=IntentStatus.PENDING) == []


@pytest.mark.asyncio
async def test_confirmed_payment_settles_the_purchase(tmp_path):
    h = Harness(tmp_path)
    await h.account(2000, display_reference="pass-1")
    pending = await h.orchestrator.request_purchase(ACCOUNT, "cinema", {}, 6000)

    outcome = await h.orchestrator.on_payment_confirmed(
        pending.checkout_reference, amount=pending.currency_amount
    )

    assert outcome.action is SettlementAction.COMPLETED
    assert outcome.intent_status is IntentStatus.COMPLETED
    assert outcome.new_balance == 0
    assert await h.ledger.get_balance(ACCOUNT) == 0
    assert h.display.displayed["pass-1"] == 0

    history = await h.ledger.get_history(ACCOUNT)
    credit, charge = history[1], history[0]
    assert credit.direction is EntryDirection.CREDIT
    assert credit.amount == 4000
    assert credit.origin is EntryOrigin.PAYMENT_GATEWAY
    assert credit.reference == pending.intent_id
    assert charge.amount == 6000
    assert charge.reference == pending.intent_id


@pytest.mark.asyncio
async def test_duplicate_notifications_settle_once(tmp_path):
    h = Harness(tmp_path)
    await h.account(2000)
    pending = await h.orchestrator.request_purchase(ACCOUNT, "cinema", {}, 6000)

    first = await h.orchestrator.on_payment_confirmed(pending.checkout_reference)
    second = await h.orchestrator.on_payment_confirmed(pending.checkout_reference)

    assert first.action is SettlementAction.COMPLETED
    assert second.action is SettlementAction.ALREADY_HANDLED
    assert second.intent_status is IntentStatus.COMPLETED
    assert len(await h.ledger.get_history(ACCOUNT)) == 3
    assert await h.ledger.get_balance(ACCOUNT) == 0


@pytest.mark.asyncio
async def test_concurrent_notifications_settle_once(tmp_path):
    h = Harness(tmp_path)
    await h.account(2000)
    pending = await h.orchestrator.request_purchase(ACCOUNT, "subscription", {"plan": "monthly"}, 6000)

    outcomes = await asyncio.gather(
        *(h.orchestrator.on_payment_confirmed(pending.checkout_reference) for _ in range(3))
    )

    actions = sorted(o.action.value for o in outcomes)
    assert actions == ["already_handled", "already_handled", "completed"]
    entries = await h.ledger.get_history(ACCOUNT)
    assert sum(1 for e in entries if e.reference == pending.intent_id) == 2
    assert await h.ledger.get_balance(ACCOUNT) == 0


@pytest.mark.asyncio
async def test_unknown_payment_reference_is_a_no_op(tmp_path):
    h = Harness(tmp_path)

    outcome = await h.orchestrator.on_payment_confirmed("pref-unknown")

    assert outcome.action is SettlementAction.NOT_FOUND


@pytest.mark.asyncio
async def test_funds_drained_before_final_charge_leave_intent_stuck(tmp_path):
    h = Harness(tmp_path, db=DrainingDB(drain=2000))
    await h.account(2000)
    pending = await h.orchestrator.request_purchase(ACCOUNT, "cinema", {}, 6000)

    outcome = await h.orchestrator.on_payment_confirmed(pending.checkout_reference)

    assert outcome.action is SettlementAction.STUCK
    assert outcome.intent_status is IntentStatus.PAID
    assert (await h.intents.get(pending.intent_id)).status is IntentStatus.PAID
    assert await h.ledger.get_balance(ACCOUNT) == 4000

    stuck = h.alerts_of(AlertType.STUCK_SETTLEMENT)
    assert len(stuck) == 1
    assert stuck[0].intent_id == pending.intent_id
    assert stuck[0].payload["amount_credited"] == 4000
    assert stuck[0].payload["balance_after_credit"] == 6000
    assert len(h.queue.pending()) == 1

    again = await h.orchestrator.on_payment_confirmed(pending.checkout_reference)
    assert again.action is SettlementAction.ALREADY_HANDLED
    assert len(h.alerts_of(AlertType.STUCK_SETTLEMENT)) == 1
    assert await h.ledger.get_balance(ACCOUNT) == 4000


@pytest.mark.asyncio
async def test_late_payment_for_expired_intent_does_not_settle(tmp_path):
    h = Harness(tmp_path)
    await h.account(2000)
    pending = await h.orchestrator.request_purchase(ACCOUNT, "cinema", {}, 6000)

    h.clock.now += timedelta(minutes=45)
    outcome = await h.orchestrator.on_payment_confirmed(pending.checkout_reference)

    assert outcome.action is SettlementAction.ALREADY_HANDLED
    assert outcome.intent_status is IntentStatus.EXPIRED
    assert await h.ledger.get_balance(ACCOUNT) == 2000
    assert len(await h.ledger.get_history(ACCOUNT)) == 1


@pytest.mark.asyncio
async def test_cancelled_intent_ignores_payment(tmp_path):
    h = Harness(tmp_path)
    await h.account(0)
    pending = await h.orchestrator.request_purchase(ACCOUNT, "event", {}, 300)
    await h.intents.cancel(pending.intent_id)

    outcome = await h.orchestrator.on_payment_confirmed(pending.checkout_reference)

    assert outcome.action is SettlementAction.ALREADY_HANDLED
    assert outcome.intent_status is IntentStatus.CANCELLED
    assert await h.ledger.get_balance(ACCOUNT) == 0


@pytest.mark.asyncio
async def test_display_failure_does_not_fail_the_purchase(tmp_path):
    h = Harness(tmp_path, display=InMemoryDisplaySync(fail=True))
    await h.account(500, display_reference="pass-9")

    outcome = await h.orchestrator.request_purchase(ACCOUNT, "bar", {}, 200)

    assert outcome.action is PurchaseAction.CHARGED
    assert await h.ledger.get_balance(ACCOUNT) == 300
    assert len(h.alerts_of(AlertType.DISPLAY_SYNC_FAILED)) == 1


@pytest.mark.asyncio
async def test_balance_spent_before_charge_falls_back_to_top_up(tmp_path):
    h = Harness(tmp_path, db=SpendBeforeChargeDB(drain=9000))
    await h.account(10000)

    outcome = await h.orchestrator.request_purchase(ACCOUNT, "cinema", {}, 6000)

    assert outcome.action is PurchaseAction.TOPUP_REQUIRED
    assert outcome.current_balance == 1000
    assert outcome.shortfall == 5000
    assert outcome.amount_to_top_up == 5000
    assert await h.ledger.get_balance(ACCOUNT) == 1000
    intent = await h.intents.get(outcome.intent_id)
    assert intent.status is IntentStatus.PENDING
    assert intent.amount_required == 6000


@pytest.mark.asyncio
async def test_store_error_on_final_charge_alerts_operators(tmp_path):
    h = Harness(tmp_path, db=FailingChargeDB())
    await h.account(2000)
    pending = await h.orchestrator.request_purchase(ACCOUNT, "cinema", {}, 6000)

    with pytest.raises(RuntimeError, match="WriteConflict"):
        await h.orchestrator.on_payment_confirmed(pending.checkout_reference)

    assert (await h.intents.get(pending.intent_id)).status is IntentStatus.PAID
    assert await h.ledger.get_balance(ACCOUNT) == 6000
    stuck = h.alerts_of(AlertType.STUCK_SETTLEMENT)
    assert len(stuck) == 1
    assert stuck[0].payload["amount_credited"] == 4000
    assert stuck[0].payload["balance_after_credit"] == 6000
    assert "WriteConflict" in stuck[0].payload["reason"]

    again = await h.orchestrator.on_payment_confirmed(pending.checkout_reference)
    assert again.action is SettlementAction.ALREADY_HANDLED
    assert len(h.alerts_of(AlertType.STUCK_SETTLEMENT)) == 1
