from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

from ..db.base import BaseDBManager
from ..errors import InvalidStateTransition
from ..models.base import utcnow
from ..models.intent import IntentStatus, PurchaseIntent
from .intent_service import PurchaseIntentService


logger = logging.getLogger(__name__)


class IntentExpirationService:
    """
    Optional sweeper for purchase intents nobody paid for.

    Lookups already expire overdue intents lazily; this only keeps the store
    tidy. It is typically invoked by a scheduler every few minutes.
    """

    def __init__(self, db: BaseDBManager, intents: PurchaseIntentService) -> None:
        self._db = db
        self._intents = intents

    async def expire_overdue(self, as_of: Optional[datetime] = None) -> List[PurchaseIntent]:
        """
        Expire every pending intent whose `expires_at` is at or before `as_of`.
        Returns the intents this run expired.
        """
        as_of = as_of or utcnow()
        overdue = await self._db.list_intents(status=IntentStatus.PENDING, expires_before=as_of)

        expired: List[PurchaseIntent] = []
        for intent in overdue:
            try:
                expired.append(await self._intents.transition(intent.id, IntentStatus.EXPIRED))
            except InvalidStateTransition:
                # Paid or cancelled since the listing.
                continue

        if expired:
            logger.info("Expired %d purchase intents", len(expired))
        return expired
