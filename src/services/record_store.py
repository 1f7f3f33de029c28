import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import DataError, IntegrityError, InterfaceError, OperationalError, ProgrammingError, StatementError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from services.reflection_engine.models import (
    RecordRejectedError,
    StoredRecord,
    TransientRecordStoreError,
)
from src.db.models import ReflectionEntry

logger = logging.getLogger(__name__)

# Errors worth another attempt: the database was unreachable or slow.
# Every other StatementError is a rejection.
RETRYABLE_ERRORS = (OperationalError, InterfaceError, asyncio.TimeoutError)


class SQLAlchemyRecordStore:
    """
    Writes completed reflections to the `reflection_entries` table.

    The row id is the session's record id, so re-sending a record that
    already landed (say, after a lost response) is answered from the
    existing row instead of creating a duplicate.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        timeout: float = 5.0,
        retry_attempts: int = 3,
        retry_wait_min: float = 0.5,
        retry_wait_max: float = 4.0,
    ):
        self.session_factory = session_factory
        self.timeout = timeout
        self.retry_attempts = retry_attempts
        self.retry_wait_min = retry_wait_min
        self.retry_wait_max = retry_wait_max

    async def insert(
        self,
        record_id: str,
        user_id: str,
        template_id: str,
        answers: Dict[str, Any],
        completed_at: datetime,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> StoredRecord:
        @retry(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=0.5, min=self.retry_wait_min, max=self.retry_wait_max),
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            reraise=True,
        )
        async def _insert_logic() -> StoredRecord:
            logger.debug(f"Inserting record {record_id}, attempt {_insert_logic.retry.statistics.get('attempt_number', 1)}")
            return await asyncio.wait_for(
                self._insert_once(record_id, user_id, template_id, answers, completed_at, metadata),
                timeout=self.timeout,
            )

        try:
            return await _insert_logic()
        except RETRYABLE_ERRORS as e:
            logger.error(f"Record store unavailable after {self.retry_attempts} attempts for {record_id}: {e}")
            raise TransientRecordStoreError("record store unavailable") from e
        except StatementError as e:
            # Bad data or a schema mismatch fails the same way on every attempt.
            logger.error(f"Record store refused {record_id}: {e}")
            raise RecordRejectedError(f"Record {record_id} was refused: {e}") from e

    async def _insert_once(
        self,
        record_id: str,
        user_id: str,
        template_id: str,
        answers: Dict[str, Any],
        completed_at: datetime,
        metadata: Optional[Dict[str, Any]],
    ) -> StoredRecord:
        async with self.session_factory() as session:
            entry = ReflectionEntry(
                id=record_id,
                user_id=user_id,
                entry_kind=template_id,
                data=answers,
                entry_metadata=metadata,
                completed_at=completed_at,
            )
            session.add(entry)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                existing = await self._find(session, record_id)
                if existing is not None and existing.user_id == user_id:
                    logger.info(f"Record {record_id} already stored; treating insert as success")
                    return self._to_stored(existing)
                raise RecordRejectedError(f"Record {record_id} violates a constraint: {e.orig}") from e
            except (DataError, ProgrammingError) as e:
                await session.rollback()
                raise RecordRejectedError(f"Record {record_id} could not be written: {e.orig}") from e

            logger.info(f"Stored reflection entry {record_id} ({template_id}) for user {user_id}")
            return StoredRecord(
                record_id=record_id,
                user_id=user_id,
                template_id=template_id,
                completed_at=completed_at,
            )

    async def get(self, record_id: str) -> Optional[StoredRecord]:
        async with self.session_factory() as session:
            existing = await self._find(session, record_id)
            return self._to_stored(existing) if existing is not None else None

    @staticmethod
    async def _find(session: AsyncSession, record_id: str) -> Optional[ReflectionEntry]:
        result = await session.execute(select(ReflectionEntry).where(ReflectionEntry.id == record_id))
        return result.scalar_one_or_none()

    @staticmethod
    def _to_stored(entry: ReflectionEntry) -> StoredRecord:
        return StoredRecord(
            record_id=entry.id,
            user_id=entry.user_id,
            template_id=entry.entry_kind,
            completed_at=entry.completed_at,
        )
