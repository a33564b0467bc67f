from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional

from ..db.base import BaseDBManager
from ..models.audit import AuditEvent, AuditEventType


logger = logging.getLogger(__name__)


class AuditLogger:
    """
    Structured audit logger that writes to the database and a file mirror.

    File logging is append-only, line-delimited JSON for easier ingestion
    by log aggregators and spreadsheets. DB logging uses the `AuditEvent`
    model and the configured `BaseDBManager`.

    Callers invoke it only after the ledger mutation it describes has
    committed. Nothing raised here may change that mutation's outcome, so
    every failure is logged and dropped.
    """

    def __init__(self, db: BaseDBManager, file_path: Optional[Path] = None) -> None:
        self._db = db
        self._file_path = file_path
        if self._file_path is not None:
            self._file_path.parent.mkdir(parents=True, exist_ok=True)

    async def log_transaction(
        self,
        account_id: str,
        message: str,
        details: dict[str, Any],
        correlation_id: Optional[str] = None,
    ) -> None:
        await self._log(
            AuditEventType.TRANSACTION,
            account_id=account_id,
            message=message,
            details=details,
            correlation_id=correlation_id,
        )

    async def log_intent(
        self,
        account_id: str,
        message: str,
        details: dict[str, Any],
        correlation_id: Optional[str] = None,
    ) -> None:
        await self._log(
            AuditEventType.INTENT,
            account_id=account_id,
            message=message,
            details=details,
            correlation_id=correlation_id,
        )

    async def log_error(
        self,
        message: str,
        details: dict[str, Any],
        account_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> None:
        await self._log(
            AuditEventType.ERROR,
            account_id=account_id,
            message=message,
            details=details,
            correlation_id=correlation_id,
        )

    async def _log(
        self,
        event_type: AuditEventType,
        account_id: Optional[str],
        message: str,
        details: dict[str, Any],
        correlation_id: Optional[str],
    ) -> None:
        event = AuditEvent(
            event_type=event_type,
            account_id=account_id,
            message=message,
            details=details,
            correlation_id=correlation_id,
        )

        try:
            await self._db.add_audit_event(event)
        except Exception:
            logger.exception(
                "Audit event could not be stored",
                extra={"account_id": account_id, "audit_message": message},
            )

        if self._file_path is None:
            return
        try:
            line = json.dumps(event.serialize_for_db(), default=str)
            with self._file_path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError:
            logger.warning("Audit file mirror write failed: %s", self._file_path, exc_info=True)
