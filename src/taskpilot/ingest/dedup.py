from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
import logging

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from taskpilot.ingest.types import MessageKey
from taskpilot.models import TERMINAL_INGESTION_STATUSES, IngestionRecord, IngestionStatus
from taskpilot.timeutil import dt_to_db, utc_now

logger = logging.getLogger(__name__)

_CLAIM_ATTEMPTS = 3


class IngestionLedgerError(RuntimeError):
    """Raised when the ledger cannot settle the state of a message key."""


@dataclass(frozen=True)
class Claimed:
    record: IngestionRecord
    took_over: bool = False


@dataclass(frozen=True)
class AlreadySeen:
    record: IngestionRecord


ClaimResult = Claimed | AlreadySeen


class IngestionDeduplicator:
    """Write-once ledger of processed chat messages.

    A message key moves ``processing -> task_created | no_task_detected |
    user_declined`` exactly once. The unique key on ``ingestion_records`` makes
    the INSERT in :meth:`claim` the single-writer guard; a failed insert means
    another delivery owns or has finished the key.
    """

    def __init__(
        self,
        engine,
        *,
        lease: timedelta = timedelta(seconds=600),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.engine = engine
        self.lease = lease
        self.clock = clock

    def _session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)

    def get(self, key: MessageKey) -> IngestionRecord | None:
        with self._session() as session:
            return session.exec(_by_key(key)).first()

    def claim(self, key: MessageKey) -> ClaimResult:
        for _ in range(_CLAIM_ATTEMPTS):
            now_db = dt_to_db(self.clock())
            with self._session() as session:
                record = IngestionRecord(
                    source_message_id=key.source_message_id,
                    source_channel_id=key.source_channel_id,
                    workspace_id=key.workspace_id,
                    status=IngestionStatus.PROCESSING,
                    claimed_at=now_db,
                )
                session.add(record)
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                else:
                    session.refresh(record)
                    logger.info("ingestion_claimed key=%s", key)
                    return Claimed(record=record)

                existing = session.exec(_by_key(key)).first()
                if existing is None:
                    # Released between our insert and read; try the insert again.
                    continue
                if existing.status == IngestionStatus.PROCESSING and self._lease_expired(existing):
                    previous_claimed_at = existing.claimed_at
                    taken = self._take_over(session, existing, now_db)
                    if taken is not None:
                        logger.warning(
                            "ingestion_claim_taken_over key=%s previous_claimed_at=%s",
                            key,
                            previous_claimed_at,
                        )
                        return Claimed(record=taken, took_over=True)
                    continue
                logger.info("ingestion_duplicate key=%s status=%s", key, existing.status)
                return AlreadySeen(record=existing)

        raise IngestionLedgerError(f"Could not claim or read ingestion record for {key}.")

    def complete(self, key: MessageKey, status: IngestionStatus, *, task_id: int | None = None) -> IngestionRecord:
        if status not in TERMINAL_INGESTION_STATUSES:
            raise ValueError(f"Ingestion status {status} is not terminal.")

        with self._session() as session:
            result = session.execute(
                sa.update(IngestionRecord)
                .where(IngestionRecord.source_message_id == key.source_message_id)
                .where(IngestionRecord.source_channel_id == key.source_channel_id)
                .where(IngestionRecord.workspace_id == key.workspace_id)
                .where(IngestionRecord.status == IngestionStatus.PROCESSING)
                .values(status=status, task_id=task_id, processed_at=dt_to_db(self.clock()))
                .execution_options(synchronize_session=False)
            )
            session.commit()
            if result.rowcount != 1:
                raise IngestionLedgerError(f"Ingestion record {key} is not claimed.")
            record = session.exec(_by_key(key)).one()

        logger.info("ingestion_completed key=%s status=%s task_id=%s", key, status, task_id)
        return record

    def release(self, key: MessageKey) -> None:
        """Drop an unfinished claim so a redelivery can process the message."""
        with self._session() as session:
            session.execute(
                sa.delete(IngestionRecord)
                .where(IngestionRecord.source_message_id == key.source_message_id)
                .where(IngestionRecord.source_channel_id == key.source_channel_id)
                .where(IngestionRecord.workspace_id == key.workspace_id)
                .where(IngestionRecord.status == IngestionStatus.PROCESSING)
            )
            session.commit()
        logger.info("ingestion_released key=%s", key)

    def record_decline(self, key: MessageKey) -> IngestionRecord:
        """Mark an unseen message as declined by the user.

        Keys that already reached a state are returned unchanged.
        """
        claim = self.claim(key)
        if isinstance(claim, AlreadySeen):
            return claim.record
        return self.complete(key, IngestionStatus.DECLINED)

    def purge_expired(self, *, now: datetime | None = None, retention_days: int = 30) -> int:
        if retention_days < 1:
            raise ValueError("retention_days must be >= 1.")
        cutoff = dt_to_db((now or self.clock()) - timedelta(days=retention_days))

        with self._session() as session:
            result = session.execute(
                sa.delete(IngestionRecord)
                .where(IngestionRecord.status.in_(list(TERMINAL_INGESTION_STATUSES)))
                .where(IngestionRecord.processed_at.is_not(None))
                .where(IngestionRecord.processed_at < cutoff)
            )
            session.commit()

        purged = result.rowcount or 0
        logger.info("ingestion_purged count=%s cutoff=%s", purged, cutoff)
        return purged

    def _lease_expired(self, record: IngestionRecord) -> bool:
        return record.claimed_at < dt_to_db(self.clock() - self.lease)

    def _take_over(self, session: Session, record: IngestionRecord, now_db: str) -> IngestionRecord | None:
        result = session.execute(
            sa.update(IngestionRecord)
            .where(IngestionRecord.id == record.id)
            .where(IngestionRecord.status == IngestionStatus.PROCESSING)
            .where(IngestionRecord.claimed_at == record.claimed_at)
            .values(claimed_at=now_db)
            .execution_options(synchronize_session=False)
        )
        session.commit()
        if result.rowcount != 1:
            return None
        session.refresh(record)
        return record


def _by_key(key: MessageKey):
    return (
        select(IngestionRecord)
        .where(IngestionRecord.source_message_id == key.source_message_id)
        .where(IngestionRecord.source_channel_id == key.source_channel_id)
        .where(IngestionRecord.workspace_id == key.workspace_id)
    )
