"""Service layer for payout reconciliation."""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .. import config
from ..cache import TTLCache
from ..database import (
    DonationTransactionRepository,
    Payout,
    PayoutRepository,
    PayoutStatus,
    ProcessorAccountRepository,
)
from ..errors import (
    NotConnected,
    PayoutNotFound,
    PayoutsError,
    ProcessorRejected,
    ProcessorTimeout,
    ProcessorUnavailable,
    RecordValidationError,
)
from ..processor.base import BalanceEntry, ProcessorClientBase
from .models import (
    BatchResult,
    DuplicateAttribution,
    PayoutAggregates,
    ReconciliationOutcome,
    ReconciliationResult,
)
from .reconciler import Reconciler

logger = logging.getLogger(__name__)


class PayoutLockRegistry:
    """In-process advisory locks keyed by internal payout id.

    Locks are dropped once nobody holds or waits for them.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, payout_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(payout_id, asyncio.Lock())
        self._users[payout_id] = self._users.get(payout_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[payout_id] -= 1
            if self._users[payout_id] == 0:
                del self._users[payout_id]
                self._locks.pop(payout_id, None)

    def __len__(self) -> int:
        return len(self._locks)


class ReconciliationService:
    """Reconciles payouts against the donation ledger."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        processor: ProcessorClientBase,
        reconciler: Optional[Reconciler] = None,
        concurrency: Optional[int] = None,
        timeout: Optional[float] = None,
        locks: Optional[PayoutLockRegistry] = None,
        stats_cache: Optional[TTLCache] = None,
    ):
        """Initialize the reconciliation service.

        Args:
            session_factory: Factory for database sessions; each payout is
                reconciled in its own session.
            processor: Processor client used to fetch payouts and balance entries.
            reconciler: Aggregation engine. Defaults to one using the configured
                amount tolerance.
            concurrency: Payouts reconciled in parallel by reconcile_all().
            timeout: Default per-payout deadline in seconds.
            locks: Shared lock registry when several services run in one process.
            stats_cache: Statistics cache invalidated after each write.
        """
        self.session_factory = session_factory
        self.processor = processor
        self.reconciler = reconciler or Reconciler(amount_tolerance=config.get_amount_tolerance())
        self.concurrency = concurrency or config.get_reconcile_concurrency()
        self.timeout = timeout if timeout is not None else config.get_processor_timeout()
        self.locks = locks or PayoutLockRegistry()
        self.stats_cache = stats_cache

    async def _account_id(self, session: AsyncSession, church_id: str) -> str:
        account_id = await ProcessorAccountRepository(session).get_account_id(church_id)
        if not account_id:
            raise NotConnected(church_id)
        return account_id

    async def _resolve_payout(
        self,
        payout_id: str,
        church_id: Optional[str] = None,
    ) -> Tuple[Payout, str]:
        """Find a payout by internal id or processor reference.

        A payout the processor knows but the store does not is inserted
        first, which requires ``church_id``.
        """
        async with self.session_factory() as session:
            repo = PayoutRepository(session)
            payout = await repo.get_by_id(payout_id) or await repo.get_by_reference(payout_id)
            if payout is not None:
                if church_id is not None and payout.church_id != church_id:
                    raise PayoutNotFound(payout_id)
                account_id = await self._account_id(session, payout.church_id)
                return payout, account_id

            if church_id is None:
                raise PayoutNotFound(payout_id)

            account_id = await self._account_id(session, church_id)
            remote = await asyncio.to_thread(self.processor.get_payout, account_id, payout_id)
            if remote is None:
                raise PayoutNotFound(payout_id)

            logger.info(f"Payout {payout_id} not imported yet, creating it before reconciliation")
            await repo.insert_if_absent(
                church_id=church_id,
                processor_payout_reference=remote.id,
                amount=remote.amount,
                payout_date=remote.created_at,
                arrival_date=remote.arrival_date,
                status=remote.status,
                currency=remote.currency,
                failure_reason=remote.failure_message,
                payout_schedule="automatic" if remote.automatic else "manual",
                metadata=remote.metadata,
            )
            await session.commit()
            payout = await repo.get_by_reference(remote.id)
            return payout, account_id

    @staticmethod
    def _stored_result(payout: Payout) -> ReconciliationResult:
        return ReconciliationResult(
            payout_id=payout.id,
            processor_payout_reference=payout.processor_payout_reference,
            outcome=ReconciliationOutcome.ALREADY_RECONCILED,
            aggregates=PayoutAggregates.from_payout(payout),
            payout_amount=payout.amount,
            reconciled_at=payout.reconciled_at,
        )

    async def _apply(
        self,
        session: AsyncSession,
        payout: Payout,
        entries: List[BalanceEntry],
    ) -> ReconciliationResult:
        """Attribute matched transactions and write aggregates in one transaction."""
        ledger = DonationTransactionRepository(session)
        transactions = await ledger.find_by_processor_references(
            (e.charge_reference for e in entries),
            church_id=payout.church_id,
        )
        classification = self.reconciler.classify(entries, transactions)

        attributed = []
        for entry, transaction in classification.matched:
            if await ledger.attribute_to_payout(transaction.id, payout.id):
                attributed.append((entry, transaction))
                continue
            # The loaded row may predate a concurrent attribution
            holder = await ledger.attributed_payout_id(transaction.id)
            logger.warning(
                f"Duplicate attribution: transaction {transaction.id} "
                f"({transaction.processor_payment_reference}) already belongs to payout "
                f"{holder}; excluded from payout {payout.processor_payout_reference}"
            )
            classification.duplicates.append(DuplicateAttribution(
                transaction_id=transaction.id,
                processor_payment_reference=transaction.processor_payment_reference,
                entry_id=entry.id,
                attributed_payout_id=holder,
            ))
        classification.matched = attributed

        aggregates = self.reconciler.summarize(payout.amount, classification)
        reconciled_at = datetime.utcnow()
        won = await PayoutRepository(session).mark_reconciled(
            payout.id,
            reconciled_at=reconciled_at,
            **aggregates.model_dump(),
        )
        if not won:
            await session.rollback()
            stored = await PayoutRepository(session).get_by_id(payout.id)
            await session.refresh(stored)
            logger.info(f"Payout {payout.processor_payout_reference} reconciled concurrently")
            return self._stored_result(stored)

        await session.commit()

        outcome = ReconciliationOutcome.RECONCILED
        if aggregates.needs_review:
            outcome = ReconciliationOutcome.FLAGGED
            logger.warning(
                f"Amount mismatch on payout {payout.processor_payout_reference}: "
                f"expected {payout.amount + aggregates.discrepancy_amount}, "
                f"reported {payout.amount} (discrepancy {aggregates.discrepancy_amount})"
            )

        logger.info(
            f"Reconciled payout {payout.processor_payout_reference}: "
            f"{aggregates.transaction_count} transactions, gross {aggregates.gross_volume}, "
            f"fees {aggregates.total_fees}, net {aggregates.net_amount}, "
            f"{aggregates.unmatched_count} unmatched, {aggregates.duplicate_count} duplicates"
        )
        return ReconciliationResult(
            payout_id=payout.id,
            processor_payout_reference=payout.processor_payout_reference,
            outcome=outcome,
            aggregates=aggregates,
            payout_amount=payout.amount,
            reconciled_at=reconciled_at,
            duplicates=classification.duplicates,
            unmatched=classification.unmatched,
        )

    async def _refresh_status(self, payout: Payout, account_id: str) -> Payout:
        """Bring the stored status of an unpaid payout up to date with the processor."""
        remote = await asyncio.to_thread(
            self.processor.get_payout, account_id, payout.processor_payout_reference
        )
        if remote is None or remote.status == payout.status:
            return payout

        async with self.session_factory() as session:
            repo = PayoutRepository(session)
            stored = await repo.get_by_id(payout.id)
            await repo.refresh_status(stored, remote.status, remote.failure_message)
            await session.commit()

        if self.stats_cache is not None:
            self.stats_cache.invalidate(payout.church_id)
        return stored

    async def _refresh_in_flight(
        self,
        payouts: List[Payout],
        account_id: str,
        deadline: float,
    ) -> None:
        semaphore = asyncio.Semaphore(self.concurrency)

        async def refresh(payout: Payout) -> None:
            async with semaphore:
                try:
                    await asyncio.wait_for(self._refresh_status(payout, account_id), deadline)
                except (asyncio.TimeoutError, PayoutsError) as e:
                    logger.warning(
                        f"Could not refresh status of payout {payout.processor_payout_reference}: "
                        f"{type(e).__name__}: {e}"
                    )

        await asyncio.gather(*(refresh(p) for p in payouts))

    async def _reconcile(
        self,
        payout_id: str,
        church_id: Optional[str],
        seen: Dict[str, Payout],
    ) -> ReconciliationResult:
        resolved, account_id = await self._resolve_payout(payout_id, church_id)
        seen["payout"] = resolved

        async with self.locks.hold(resolved.id):
            async with self.session_factory() as session:
                payout = await PayoutRepository(session).get_by_id(resolved.id)

            if payout.reconciled_at is not None:
                logger.info(f"Payout {payout.processor_payout_reference} already reconciled")
                return self._stored_result(payout)

            if payout.status != PayoutStatus.PAID.value:
                payout = await self._refresh_status(payout, account_id)

            if payout.status != PayoutStatus.PAID.value:
                logger.info(
                    f"Payout {payout.processor_payout_reference} is {payout.status}; "
                    "deferring reconciliation until it is paid"
                )
                return ReconciliationResult(
                    payout_id=payout.id,
                    processor_payout_reference=payout.processor_payout_reference,
                    outcome=ReconciliationOutcome.DEFERRED,
                    payout_amount=payout.amount,
                )

            entries = await asyncio.to_thread(
                self.processor.list_balance_entries,
                account_id,
                payout.processor_payout_reference,
            )

            if payout.amount != 0 and not any(not e.type.startswith("payout") for e in entries):
                logger.warning(
                    f"No balance transactions found for payout {payout.processor_payout_reference}; "
                    "leaving it unreconciled"
                )
                return ReconciliationResult(
                    payout_id=payout.id,
                    processor_payout_reference=payout.processor_payout_reference,
                    outcome=ReconciliationOutcome.FAILED,
                    payout_amount=payout.amount,
                    error=(
                        f"No balance transactions found for payout "
                        f"{payout.processor_payout_reference}"
                    ),
                )

            async with self.session_factory() as session:
                try:
                    result = await self._apply(session, payout, entries)
                except Exception:
                    await session.rollback()
                    raise

        if self.stats_cache is not None:
            self.stats_cache.invalidate(payout.church_id)
        return result

    async def reconcile(
        self,
        payout_id: str,
        church_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> ReconciliationResult:
        """Reconcile one payout.

        Reconciling an already reconciled payout returns the stored aggregates.
        Processor failures, timeouts and invalid ledger rows produce a FAILED
        result and leave the payout unreconciled, so the call can be retried.

        Args:
            payout_id: Internal payout id or processor payout reference.
            church_id: Owning church, needed only for payouts not imported yet.
            timeout: Deadline in seconds; defaults to the service timeout.

        Raises:
            PayoutNotFound: If neither the store nor the processor knows the payout.
            NotConnected: If the church has no processor account.
        """
        deadline = timeout if timeout is not None else self.timeout
        seen: Dict[str, Payout] = {}
        try:
            return await asyncio.wait_for(self._reconcile(payout_id, church_id, seen), deadline)
        except asyncio.TimeoutError:
            error = ProcessorTimeout(f"Reconciliation of payout {payout_id} timed out after {deadline}s")
        except (ProcessorUnavailable, ProcessorRejected, RecordValidationError) as e:
            error = e

        payout = seen.get("payout")
        logger.error(f"Reconciliation of payout {payout_id} failed: {error}")
        return ReconciliationResult(
            payout_id=payout.id if payout is not None else payout_id,
            processor_payout_reference=payout.processor_payout_reference if payout is not None else None,
            payout_amount=payout.amount if payout is not None else None,
            outcome=ReconciliationOutcome.FAILED,
            error=str(error),
        )

    async def reconcile_all(
        self,
        church_id: str,
        timeout: Optional[float] = None,
    ) -> BatchResult:
        """Reconcile every paid, unreconciled payout of a church.

        Pending and in-transit payouts get their status refreshed from the
        processor first, so those paid since the last import are included.
        Payouts are processed with bounded concurrency; a failing payout is
        recorded in the result and never stops the others.

        Raises:
            NotConnected: If the church has no processor account.
        """
        async with self.session_factory() as session:
            account_id = await self._account_id(session, church_id)
            in_flight = await PayoutRepository(session).list_unreconciled_in_flight(church_id)

        if in_flight:
            deadline = timeout if timeout is not None else self.timeout
            await self._refresh_in_flight(in_flight, account_id, deadline)

        async with self.session_factory() as session:
            payouts = await PayoutRepository(session).list_unreconciled_paid(church_id)

        logger.info(f"Found {len(payouts)} payouts to reconcile for church {church_id}")

        semaphore = asyncio.Semaphore(self.concurrency)

        async def run(payout: Payout) -> ReconciliationResult:
            async with semaphore:
                try:
                    return await self.reconcile(payout.id, timeout=timeout)
                except Exception as e:
                    logger.exception(
                        f"Unexpected error reconciling payout {payout.processor_payout_reference}"
                    )
                    return ReconciliationResult(
                        payout_id=payout.id,
                        processor_payout_reference=payout.processor_payout_reference,
                        outcome=ReconciliationOutcome.FAILED,
                        error=str(e) if isinstance(e, PayoutsError) else f"{type(e).__name__}: {e}",
                    )

        results = await asyncio.gather(*(run(p) for p in payouts))

        batch = BatchResult(church_id=church_id, results=list(results))
        for payout, result in zip(payouts, batch.results):
            # Failures carry the reference the operator knows the payout by
            if result.processor_payout_reference is None:
                result.processor_payout_reference = payout.processor_payout_reference
            if result.outcome == ReconciliationOutcome.FAILED:
                batch.failed += 1
            elif result.outcome == ReconciliationOutcome.DEFERRED:
                batch.deferred += 1
            else:
                batch.reconciled += 1
                if result.needs_review:
                    batch.flagged += 1

        logger.info(
            f"Reconciliation for church {church_id} completed: "
            f"{batch.reconciled} reconciled ({batch.flagged} flagged), {batch.failed} failed"
        )
        return batch

