"""Repository layer for ledger and payout persistence."""

import logging
from datetime import datetime
from typing import Optional, Dict, Any, List, Iterable, Set

from sqlalchemy import select, update, and_, case, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..fees import gross_contribution_expr
from .models import (
    DonationTransaction,
    DonationStatus,
    Payout,
    PayoutStatus,
    ProcessorAccount,
)

logger = logging.getLogger(__name__)


class ProcessorAccountRepository:
    """Read-only access to connected processor accounts."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_account_id(self, church_id: str) -> Optional[str]:
        """Return the processor account id of a church, or None if not connected."""
        result = await self.session.execute(
            select(ProcessorAccount.processor_account_id).where(
                ProcessorAccount.church_id == church_id
            )
        )
        return result.scalar_one_or_none()


class PayoutRepository:
    """Repository for Payout rows."""

    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.

        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session

    async def get_by_id(self, payout_id: str) -> Optional[Payout]:
        result = await self.session.execute(
            select(Payout).where(Payout.id == payout_id)
        )
        return result.scalar_one_or_none()

    async def get_by_reference(self, processor_payout_reference: str) -> Optional[Payout]:
        result = await self.session.execute(
            select(Payout).where(
                Payout.processor_payout_reference == processor_payout_reference
            )
        )
        return result.scalar_one_or_none()

    async def insert_if_absent(
        self,
        church_id: str,
        processor_payout_reference: str,
        amount: int,
        payout_date: datetime,
        status: str,
        arrival_date: Optional[datetime] = None,
        currency: str = "usd",
        failure_reason: Optional[str] = None,
        payout_schedule: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[Payout]:
        """Insert a payout unless its processor reference is already known.

        A unique constraint violation means a concurrent import won the race;
        it is treated like an existing row. The session is rolled back in
        that case, so callers should commit after every insert.

        Returns:
            The new Payout, or None if the reference already existed.
        """
        if await self.get_by_reference(processor_payout_reference) is not None:
            return None

        payout = Payout(
            church_id=church_id,
            processor_payout_reference=processor_payout_reference,
            amount=amount,
            currency=currency.lower(),
            payout_date=payout_date,
            arrival_date=arrival_date,
            status=status,
            failure_reason=failure_reason,
            payout_schedule=payout_schedule,
        )
        payout.metadata_dict = metadata
        self.session.add(payout)
        try:
            await self.session.flush()
        except IntegrityError:
            await self.session.rollback()
            logger.info(
                f"Payout {processor_payout_reference} inserted concurrently, skipping"
            )
            return None

        logger.debug(f"Inserted payout {processor_payout_reference} with status {status}")
        return payout

    async def existing_references(self, references: Iterable[str]) -> Set[str]:
        """Subset of the given processor references already stored."""
        refs = sorted(set(references))
        if not refs:
            return set()
        result = await self.session.execute(
            select(Payout.processor_payout_reference).where(
                Payout.processor_payout_reference.in_(refs)
            )
        )
        return set(result.scalars().all())

    async def refresh_status(
        self,
        payout: Payout,
        status: str,
        failure_reason: Optional[str] = None,
    ) -> Payout:
        """Update the native processor status of a known payout."""
        if payout.status != status or payout.failure_reason != failure_reason:
            logger.info(
                f"Payout {payout.processor_payout_reference} status "
                f"{payout.status} -> {status}"
            )
            payout.status = status
            payout.failure_reason = failure_reason
            payout.updated_at = datetime.utcnow()
            await self.session.flush()
        return payout

    async def list_unreconciled_paid(self, church_id: str) -> List[Payout]:
        """Payouts eligible for bulk reconciliation, oldest first."""
        result = await self.session.execute(
            select(Payout)
            .where(
                and_(
                    Payout.church_id == church_id,
                    Payout.status == PayoutStatus.PAID.value,
                    Payout.reconciled_at.is_(None),
                )
            )
            .order_by(Payout.payout_date)
        )
        return list(result.scalars().all())

    async def list_unreconciled_in_flight(self, church_id: str) -> List[Payout]:
        """Unreconciled payouts whose stored status may since have become paid."""
        result = await self.session.execute(
            select(Payout)
            .where(
                and_(
                    Payout.church_id == church_id,
                    Payout.status.in_([
                        PayoutStatus.PENDING.value,
                        PayoutStatus.IN_TRANSIT.value,
                    ]),
                    Payout.reconciled_at.is_(None),
                )
            )
            .order_by(Payout.payout_date)
        )
        return list(result.scalars().all())

    async def list_for_church(
        self,
        church_id: str,
        status: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Payout]:
        """List a church's payouts, newest first, filtered by status and payout date."""
        conditions = [Payout.church_id == church_id]
        if status:
            conditions.append(Payout.status == status)
        if start:
            conditions.append(Payout.payout_date >= start)
        if end:
            conditions.append(Payout.payout_date <= end)

        result = await self.session.execute(
            select(Payout)
            .where(and_(*conditions))
            .order_by(Payout.payout_date.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def count_for_church(self, church_id: str) -> int:
        result = await self.session.execute(
            select(func.count(Payout.id)).where(Payout.church_id == church_id)
        )
        return result.scalar_one()

    async def mark_reconciled(
        self,
        payout_id: str,
        transaction_count: int,
        gross_volume: int,
        total_fees: int,
        net_amount: int,
        total_refunds: int = 0,
        total_disputes: int = 0,
        needs_review: bool = False,
        discrepancy_amount: int = 0,
        unmatched_count: int = 0,
        unmatched_amount: int = 0,
        duplicate_count: int = 0,
        reconciled_at: Optional[datetime] = None,
    ) -> bool:
        """Write aggregates and reconciled_at in one conditional UPDATE.

        Returns:
            True if this call reconciled the payout, False if it was already
            reconciled (nothing is written in that case).
        """
        now = reconciled_at or datetime.utcnow()
        result = await self.session.execute(
            update(Payout)
            .where(and_(Payout.id == payout_id, Payout.reconciled_at.is_(None)))
            .values(
                transaction_count=transaction_count,
                gross_volume=gross_volume,
                total_fees=total_fees,
                net_amount=net_amount,
                total_refunds=total_refunds,
                total_disputes=total_disputes,
                needs_review=needs_review,
                discrepancy_amount=discrepancy_amount,
                unmatched_count=unmatched_count,
                unmatched_amount=unmatched_amount,
                duplicate_count=duplicate_count,
                reconciled_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def count_by_state(self, church_id: str) -> Dict[str, int]:
        """Count a church's payouts by reconciliation state in one query."""
        def count_where(condition):
            return func.coalesce(func.sum(case((condition, 1), else_=0)), 0)

        result = await self.session.execute(
            select(
                func.count(Payout.id).label("total"),
                count_where(Payout.reconciled_at.is_not(None)).label("reconciled"),
                count_where(
                    and_(
                        Payout.status == PayoutStatus.PAID.value,
                        Payout.reconciled_at.is_(None),
                    )
                ).label("pending"),
                count_where(Payout.status == PayoutStatus.FAILED.value).label("failed"),
                count_where(Payout.needs_review.is_(True)).label("needs_review"),
            ).where(Payout.church_id == church_id)
        )
        row = result.one()
        return {
            "total": int(row.total),
            "reconciled": int(row.reconciled),
            "pending": int(row.pending),
            "failed": int(row.failed),
            "needs_review": int(row.needs_review),
        }


class DonationTransactionRepository:
    """Ledger access needed by reconciliation.

    Only the payout attribution is ever written; the core donation fields
    belong to donation intake.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def find_by_processor_reference(self, reference: str) -> Optional[DonationTransaction]:
        result = await self.session.execute(
            select(DonationTransaction).where(
                DonationTransaction.processor_payment_reference == reference
            )
        )
        return result.scalar_one_or_none()

    async def find_by_processor_references(
        self,
        references: Iterable[Optional[str]],
        church_id: Optional[str] = None,
    ) -> Dict[str, DonationTransaction]:
        """Batch lookup keyed by processor payment reference.

        Args:
            references: Processor payment references; None values are ignored.
            church_id: Restrict the lookup to one church's ledger.
        """
        refs = sorted(set(r for r in references if r))
        if not refs:
            return {}
        conditions = [DonationTransaction.processor_payment_reference.in_(refs)]
        if church_id:
            conditions.append(DonationTransaction.church_id == church_id)
        result = await self.session.execute(
            select(DonationTransaction).where(and_(*conditions))
        )
        return {t.processor_payment_reference: t for t in result.scalars().all()}

    async def attribute_to_payout(self, transaction_id: str, payout_id: str) -> bool:
        """Attribute a transaction to a payout unless another payout holds it.

        The check happens inside the UPDATE itself, so two reconciliations
        racing for the same transaction cannot both win.

        Returns:
            True if the transaction is now attributed to ``payout_id`` (newly
            or already), False if it belongs to a different payout.
        """
        result = await self.session.execute(
            update(DonationTransaction)
            .where(
                and_(
                    DonationTransaction.id == transaction_id,
                    DonationTransaction.payout_id.is_(None),
                )
            )
            .values(payout_id=payout_id, attributed_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return True
        return await self.attributed_payout_id(transaction_id) == payout_id

    async def attributed_payout_id(self, transaction_id: str) -> Optional[str]:
        """Payout currently holding the transaction, read from the database."""
        result = await self.session.execute(
            select(DonationTransaction.payout_id).where(
                DonationTransaction.id == transaction_id
            )
        )
        return result.scalar_one_or_none()

    async def list_for_payout(self, payout_id: str) -> List[DonationTransaction]:
        result = await self.session.execute(
            select(DonationTransaction)
            .where(DonationTransaction.payout_id == payout_id)
            .order_by(DonationTransaction.transaction_date)
        )
        return list(result.scalars().all())

    async def revenue_totals(
        self,
        church_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Dict[str, int]:
        """Sum succeeded donations of a church under the fee-coverage rule."""
        conditions = [
            DonationTransaction.church_id == church_id,
            DonationTransaction.status == DonationStatus.SUCCEEDED.value,
        ]
        if start:
            conditions.append(DonationTransaction.transaction_date >= start)
        if end:
            conditions.append(DonationTransaction.transaction_date <= end)

        gross = gross_contribution_expr(
            DonationTransaction.amount,
            DonationTransaction.processing_fee_covered_by_donor,
            DonationTransaction.platform_fee_amount,
        )
        result = await self.session.execute(
            select(
                func.count(DonationTransaction.id).label("donation_count"),
                func.coalesce(func.sum(DonationTransaction.amount), 0).label("donation_amount"),
                func.coalesce(
                    func.sum(DonationTransaction.processing_fee_covered_by_donor), 0
                ).label("fees_covered"),
                func.coalesce(func.sum(DonationTransaction.platform_fee_amount), 0).label("platform_fees"),
                func.coalesce(func.sum(gross), 0).label("gross_revenue"),
            ).where(and_(*conditions))
        )
        row = result.one()
        return {
            "donation_count": int(row.donation_count),
            "donation_amount": int(row.donation_amount),
            "fees_covered": int(row.fees_covered),
            "platform_fees": int(row.platform_fees),
            "gross_revenue": int(row.gross_revenue),
        }
