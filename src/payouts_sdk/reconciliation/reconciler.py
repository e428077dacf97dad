"""Matching of processor balance entries against the donation ledger."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

from ..config import DEFAULT_AMOUNT_TOLERANCE
from ..database.models import SETTLED_DONATION_STATUSES
from ..errors import RecordValidationError
from ..fees import transaction_gross
from ..processor.base import BalanceEntry
from .models import (
    DuplicateAttribution,
    PayoutAggregates,
    UnmatchedEntry,
    UnmatchedReason,
)

logger = logging.getLogger(__name__)


@dataclass
class EntryClassification:
    """Balance entries of one payout sorted by how they reconcile."""
    matched: List[Tuple[BalanceEntry, Any]] = field(default_factory=list)
    unmatched: List[UnmatchedEntry] = field(default_factory=list)
    duplicates: List[DuplicateAttribution] = field(default_factory=list)
    refund_entries: List[BalanceEntry] = field(default_factory=list)
    dispute_entries: List[BalanceEntry] = field(default_factory=list)
    # Fees of unmatched entries still reduce what the processor paid out
    unmatched_fees: int = 0


class Reconciler:
    """Computes payout aggregates from balance entries and ledger rows.

    Pure computation; persistence and attribution writes live in
    ReconciliationService.
    """

    REFUND_TYPES = frozenset(["refund", "payment_refund", "payment_failure_refund"])
    DISPUTE_CATEGORIES = frozenset(["dispute", "dispute_reversal"])
    CHARGE_TYPES = frozenset(["charge", "payment"])

    def __init__(self, amount_tolerance: int = DEFAULT_AMOUNT_TOLERANCE):
        """Initialize the reconciler.

        Args:
            amount_tolerance: Largest absolute difference, in minor units,
                between the computed net and the payout amount that is not
                flagged for review.
        """
        if amount_tolerance < 0:
            raise ValueError("amount_tolerance must not be negative")
        self.amount_tolerance = amount_tolerance

    @staticmethod
    def _validate_transaction(transaction: Any) -> None:
        ref = transaction.processor_payment_reference or transaction.id
        if transaction.amount is None or transaction.amount < 0:
            raise RecordValidationError(ref, f"negative amount {transaction.amount}")
        if (transaction.processing_fee_covered_by_donor or 0) < 0:
            raise RecordValidationError(ref, "negative donor-covered fee")
        if (transaction.platform_fee_amount or 0) < 0:
            raise RecordValidationError(ref, "negative platform fee")

    def _is_dispute(self, entry: BalanceEntry) -> bool:
        return entry.type == "dispute" or (
            entry.type == "adjustment" and entry.reporting_category in self.DISPUTE_CATEGORIES
        )

    def classify(
        self,
        entries: List[BalanceEntry],
        transactions_by_reference: Dict[str, Any],
    ) -> EntryClassification:
        """Sort balance entries into matched, unmatched, refunds and disputes.

        A ledger transaction referenced by more than one entry of the same
        payout is matched once; later entries become duplicates.

        Raises:
            RecordValidationError: If a matched ledger row has invalid amounts.
        """
        result = EntryClassification()
        seen_transactions: Set[str] = set()

        for entry in entries:
            # The payout's own transfer shows up in its balance history
            if entry.type.startswith("payout"):
                continue

            if entry.type in self.REFUND_TYPES:
                result.refund_entries.append(entry)
                continue

            if self._is_dispute(entry):
                result.dispute_entries.append(entry)
                continue

            reason: Optional[UnmatchedReason] = None
            transaction = None
            if not entry.charge_reference or entry.type not in self.CHARGE_TYPES:
                reason = UnmatchedReason.NO_CHARGE_REFERENCE
            else:
                transaction = transactions_by_reference.get(entry.charge_reference)
                if transaction is None:
                    reason = UnmatchedReason.MISSING_IN_LEDGER
                elif transaction.status not in SETTLED_DONATION_STATUSES:
                    reason = UnmatchedReason.LEDGER_NOT_SETTLED

            if reason is not None:
                logger.info(
                    f"Balance entry {entry.id} ({entry.type}, "
                    f"{entry.charge_reference}) unmatched: {reason.value}"
                )
                result.unmatched.append(UnmatchedEntry(
                    entry_id=entry.id,
                    type=entry.type,
                    charge_reference=entry.charge_reference,
                    gross_amount=entry.gross_amount,
                    reason=reason,
                ))
                result.unmatched_fees += entry.fee_amount
                continue

            if transaction.id in seen_transactions:
                logger.warning(
                    f"Charge {entry.charge_reference} appears twice in one payout "
                    f"(entry {entry.id}); counting it once"
                )
                result.duplicates.append(DuplicateAttribution(
                    transaction_id=transaction.id,
                    processor_payment_reference=transaction.processor_payment_reference,
                    entry_id=entry.id,
                ))
                continue

            self._validate_transaction(transaction)
            seen_transactions.add(transaction.id)
            result.matched.append((entry, transaction))

        return result

    def summarize(
        self,
        payout_amount: int,
        classification: EntryClassification,
    ) -> PayoutAggregates:
        """Aggregate a classification and compare it to the payout amount.

        ``classification.matched`` must already exclude transactions that
        another payout holds.
        """
        transaction_count = len(classification.matched)
        gross_volume = sum(transaction_gross(txn) for _, txn in classification.matched)

        total_fees = sum(entry.fee_amount for entry, _ in classification.matched)
        total_fees += classification.unmatched_fees
        total_fees += sum(e.fee_amount for e in classification.refund_entries)
        total_fees += sum(e.fee_amount for e in classification.dispute_entries)

        total_refunds = sum(abs(e.gross_amount) for e in classification.refund_entries)
        # Dispute reversals are positive and cancel the dispute they reverse
        total_disputes = -sum(e.gross_amount for e in classification.dispute_entries)

        net_amount = gross_volume - total_fees
        expected_payout = net_amount - total_refunds - total_disputes
        discrepancy = expected_payout - payout_amount
        needs_review = abs(discrepancy) > self.amount_tolerance

        return PayoutAggregates(
            transaction_count=transaction_count,
            gross_volume=gross_volume,
            total_fees=total_fees,
            net_amount=net_amount,
            total_refunds=total_refunds,
            total_disputes=total_disputes,
            needs_review=needs_review,
            discrepancy_amount=discrepancy,
            unmatched_count=len(classification.unmatched),
            unmatched_amount=sum(u.gross_amount for u in classification.unmatched),
            duplicate_count=len(classification.duplicates),
        )
