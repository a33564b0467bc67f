from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

from fastapi import FastAPI

from .api.router import router
from .config import Settings, load_settings
from .db.base import BaseDBManager
from .db.memory import InMemoryDBManager
from .db.mongo import MongoDBManager
from .display.base import DisplaySync, NullDisplaySync
from .logging.audit_logger import AuditLogger
from .notifications.queue import AsyncNotificationQueue, InMemoryNotificationQueue
from .payments.base import InMemoryPaymentGateway, PaymentGateway
from .services.alert_service import OperatorAlertService
from .services.expiration_service import IntentExpirationService
from .services.intent_service import PurchaseIntentService
from .services.settlement import SettlementOrchestrator
from .services.token_ledger import TokenLedger


logger = logging.getLogger(__name__)


@dataclass
class Container:
    settings: Settings
    db: BaseDBManager
    queue: AsyncNotificationQueue
    audit: AuditLogger
    alerts: OperatorAlertService
    ledger: TokenLedger
    intents: PurchaseIntentService
    expiration: IntentExpirationService
    payments: PaymentGateway
    display: DisplaySync
    orchestrator: SettlementOrchestrator


def _create_db_manager(settings: Settings) -> BaseDBManager:
    if settings.mongo_uri:
        return MongoDBManager.from_client_uri(
            settings.mongo_uri,
            settings.mongo_db,
            use_transactions=settings.mongo_use_transactions,
        )
    logger.warning("No mongo_uri configured; using the in-memory store")
    return InMemoryDBManager()


def build_container(
    settings: Settings,
    db: Optional[BaseDBManager] = None,
    payments: Optional[PaymentGateway] = None,
    display: Optional[DisplaySync] = None,
    queue: Optional[AsyncNotificationQueue] = None,
) -> Container:
    """Wire every service once; explicit collaborators override the defaults."""
    if db is None:
        db = _create_db_manager(settings)
    queue = queue or InMemoryNotificationQueue()
    payments = payments or InMemoryPaymentGateway(settings.checkout_base_url)
    display = display or NullDisplaySync()

    audit = AuditLogger(db=db, file_path=settings.audit_log_path)
    alerts = OperatorAlertService(db=db, queue=queue)
    ledger = TokenLedger(db=db, audit=audit, alerts=alerts, exchange_rate=settings.exchange_rate)
    intents = PurchaseIntentService(
        db=db, audit=audit, ttl=settings.intent_ttl, exchange_rate=settings.exchange_rate
    )
    return Container(
        settings=settings,
        db=db,
        queue=queue,
        audit=audit,
        alerts=alerts,
        ledger=ledger,
        intents=intents,
        expiration=IntentExpirationService(db=db, intents=intents),
        payments=payments,
        display=display,
        orchestrator=SettlementOrchestrator(
            ledger=ledger, intents=intents, payments=payments, alerts=alerts, display=display
        ),
    )


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    await app.state.container.db.ensure_indexes()
    yield


def create_app(
    settings: Optional[Settings] = None, container: Optional[Container] = None
) -> FastAPI:
    settings = settings or load_settings()
    logging.basicConfig(level=settings.log_level)

    app = FastAPI(title="Token ledger", lifespan=_lifespan)
    app.state.container = container or build_container(settings)
    app.include_router(router)
    return app
