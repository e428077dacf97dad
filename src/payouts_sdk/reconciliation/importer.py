"""Historical payout import from the payment processor."""

import asyncio
import logging
import re
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .. import config
from ..cache import TTLCache
from ..database import PayoutRepository, PayoutStatus, ProcessorAccountRepository
from ..errors import (
    NotConnected,
    ProcessorTimeout,
    ProcessorUnavailable,
    RecordValidationError,
)
from ..processor.base import ProcessorClientBase, ProcessorPayout
from .models import ImportAvailability, ImportResult

logger = logging.getLogger(__name__)

PAYOUT_REFERENCE_PATTERN = re.compile(r"^po_[A-Za-z0-9_]+$")
KNOWN_PAYOUT_STATUSES = frozenset(s.value for s in PayoutStatus)


def validate_payout(payout: ProcessorPayout) -> None:
    """Reject processor payouts that cannot be stored.

    Raises:
        RecordValidationError: On a malformed reference, a negative amount
            or an unknown status.
    """
    if not PAYOUT_REFERENCE_PATTERN.match(payout.id or ""):
        raise RecordValidationError(payout.id or "<missing>", "malformed payout reference")
    if payout.amount < 0:
        raise RecordValidationError(payout.id, f"negative amount {payout.amount}")
    if payout.status not in KNOWN_PAYOUT_STATUSES:
        raise RecordValidationError(payout.id, f"unknown status {payout.status!r}")


class ImportService:
    """Pulls payout history of a church from its processor account."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        processor: ProcessorClientBase,
        page_size: int = config.MAX_PROCESSOR_PAGE_SIZE,
        timeout: Optional[float] = None,
        stats_cache: Optional[TTLCache] = None,
    ):
        self.session_factory = session_factory
        self.processor = processor
        self.page_size = max(1, min(page_size, config.MAX_PROCESSOR_PAGE_SIZE))
        self.timeout = timeout if timeout is not None else config.get_processor_timeout()
        self.stats_cache = stats_cache

    async def _account_id(self, church_id: str) -> Optional[str]:
        async with self.session_factory() as session:
            return await ProcessorAccountRepository(session).get_account_id(church_id)

    async def check_available(self, church_id: str) -> ImportAvailability:
        """Report what an import would find, without writing anything.

        A church without a processor account gets ``has_account=False``
        rather than an error.
        """
        account_id = await self._account_id(church_id)
        if not account_id:
            return ImportAvailability(has_account=False, message=str(NotConnected(church_id)))

        try:
            payouts = await asyncio.wait_for(
                asyncio.to_thread(
                    self.processor.list_payouts, account_id, config.MAX_PROCESSOR_PAGE_SIZE
                ),
                self.timeout,
            )
        except asyncio.TimeoutError:
            raise ProcessorTimeout(
                f"Listing payouts for church {church_id} timed out after {self.timeout}s"
            )

        async with self.session_factory() as session:
            existing = await PayoutRepository(session).existing_references(p.id for p in payouts)

        if not payouts:
            return ImportAvailability(
                has_account=True,
                message="No payouts found at the payment processor.",
            )

        dates = [p.created_at for p in payouts]
        new_count = len(payouts) - len(existing)
        return ImportAvailability(
            has_account=True,
            available_count=len(payouts),
            existing_count=len(existing),
            oldest=min(dates),
            newest=max(dates),
            message=f"{len(payouts)} payouts available, {new_count} not imported yet.",
        )

    async def _store(self, church_id: str, payout: ProcessorPayout, result: ImportResult) -> None:
        async with self.session_factory() as session:
            repo = PayoutRepository(session)
            existing = await repo.get_by_reference(payout.id)
            if existing is not None:
                await repo.refresh_status(existing, payout.status, payout.failure_message)
                await session.commit()
                result.skipped += 1
                return

            created = await repo.insert_if_absent(
                church_id=church_id,
                processor_payout_reference=payout.id,
                amount=payout.amount,
                payout_date=payout.created_at,
                arrival_date=payout.arrival_date,
                status=payout.status,
                currency=payout.currency,
                failure_reason=payout.failure_message,
                payout_schedule="automatic" if payout.automatic else "manual",
                metadata=payout.metadata,
            )
            await session.commit()
            if created is None:
                result.skipped += 1
            else:
                result.imported += 1

    async def _import(
        self,
        church_id: str,
        account_id: str,
        limit: int,
        start: Optional[datetime],
        end: Optional[datetime],
        result: ImportResult,
    ) -> None:
        remaining = limit
        cursor = None
        while remaining > 0:
            page_limit = min(remaining, self.page_size)
            page = await asyncio.to_thread(
                self.processor.list_payouts,
                account_id,
                page_limit,
                cursor,
                start,
                end,
            )
            for payout in page:
                result.total_processed += 1
                try:
                    validate_payout(payout)
                except RecordValidationError as e:
                    logger.warning(f"Skipping payout during import: {e}")
                    result.errors.append(str(e))
                    continue
                await self._store(church_id, payout, result)

            remaining -= len(page)
            if len(page) < page_limit:
                break
            cursor = page[-1].id

    async def import_historical(
        self,
        church_id: str,
        limit: int = 10,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        timeout: Optional[float] = None,
    ) -> ImportResult:
        """Import up to ``limit`` of the church's most recent payouts.

        Payouts already stored are counted as skipped and get their status
        refreshed, so repeated imports are safe. Each payout is committed on
        its own.

        Args:
            church_id: Church whose processor account is read.
            limit: Number of payouts to pull, clamped to 1..100.
            start: Only payouts created at or after this time.
            end: Only payouts created at or before this time.
            timeout: Deadline in seconds; defaults to the service timeout.

        Raises:
            NotConnected: If the church has no processor account.
            ProcessorUnavailable: If the processor fails mid-import; the
                exception's ``partial_result`` holds the counts so far.
            ProcessorTimeout: If the deadline expires, also with a partial result.
        """
        if start and end and start > end:
            raise ValueError("start must not be after end")

        account_id = await self._account_id(church_id)
        if not account_id:
            raise NotConnected(church_id)

        limit = max(1, min(limit, config.MAX_IMPORT_LIMIT))
        deadline = timeout if timeout is not None else self.timeout
        result = ImportResult()

        logger.info(f"Importing up to {limit} payouts for church {church_id}")
        try:
            await asyncio.wait_for(
                self._import(church_id, account_id, limit, start, end, result),
                deadline,
            )
        except asyncio.TimeoutError:
            logger.error(
                f"Import for church {church_id} timed out after {deadline}s "
                f"({result.imported} imported so far)"
            )
            raise ProcessorTimeout(
                f"Payout import timed out after {deadline}s", partial_result=result
            )
        except ProcessorUnavailable as e:
            logger.error(
                f"Import for church {church_id} interrupted: {e} "
                f"({result.imported} imported so far)"
            )
            e.partial_result = result
            raise
        finally:
            if self.stats_cache is not None and (result.imported or result.skipped):
                self.stats_cache.invalidate(church_id)

        logger.info(
            f"Import for church {church_id} completed: {result.imported} imported, "
            f"{result.skipped} skipped, {len(result.errors)} errors"
        )
        return result
