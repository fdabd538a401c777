from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Callable

from askeve_core.errors import ExternalServiceError
from askeve_core.models import ConsentRecord, ConsentStatus
from memory.consent_store import ConsentStore
from memory.time_utils import utc_now

logger = logging.getLogger(__name__)


class ConsentLedgerService:
    def __init__(
        self,
        store: ConsentStore,
        *,
        validity_days: int = 30,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.validity = timedelta(days=validity_days)
        self.clock = clock

    def get_consent_status(self, user_id: str, consent_type: str) -> ConsentStatus:
        try:
            row = self.store.latest(user_id, consent_type)
        except sqlite3.Error as exc:
            raise ExternalServiceError("gdpr", f"consent lookup failed: {exc}") from exc
        if row is None:
            return ConsentStatus(granted=False)
        recorded_at = row["recorded_at"]
        if not row["granted"]:
            return ConsentStatus(granted=False, recorded_at=recorded_at)
        expires_at = row["expires_at"] or (recorded_at + self.validity if recorded_at else None)
        if expires_at is not None and self.clock() >= expires_at:
            return ConsentStatus(granted=False, expired=True, recorded_at=recorded_at)
        return ConsentStatus(granted=True, recorded_at=recorded_at)

    def record_consent(self, user_id: str, record: ConsentRecord) -> None:
        try:
            self.store.record(
                user_id=user_id,
                consent_type=record.consent_type,
                purpose=record.purpose,
                data_categories=record.data_categories,
                legal_basis=record.legal_basis,
                granted=record.granted,
                capture_method=record.capture_method,
                recorded_at=record.timestamp,
                validity=self.validity,
            )
        except sqlite3.Error as exc:
            raise ExternalServiceError("gdpr", f"consent write failed: {exc}") from exc
        logger.info(
            "Consent recorded type=%s granted=%s legal_basis=%s",
            record.consent_type,
            record.granted,
            record.legal_basis,
        )

    def health_check(self) -> bool:
        return self.store.ping()
