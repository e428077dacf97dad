"""Models for payout reconciliation results."""

import enum
from datetime import datetime
from typing import Optional, Dict, Any, List

from pydantic import BaseModel, ConfigDict, Field


class ReconciliationOutcome(str, enum.Enum):
    """Result of reconciling one payout."""
    RECONCILED = "reconciled"
    # Reconciled, but the computed net differs from the payout beyond tolerance
    FLAGGED = "flagged"
    ALREADY_RECONCILED = "already_reconciled"
    # Payout not settled yet; accepted, retry later
    DEFERRED = "deferred"
    FAILED = "failed"


class UnmatchedReason(str, enum.Enum):
    """Why a balance entry could not be tied to a ledger transaction."""
    NO_CHARGE_REFERENCE = "no_charge_reference"
    MISSING_IN_LEDGER = "missing_in_ledger"
    LEDGER_NOT_SETTLED = "ledger_not_settled"


class PayoutAggregates(BaseModel):
    """Aggregates written onto a payout when it is reconciled."""
    model_config = ConfigDict(from_attributes=True)

    transaction_count: int = Field(..., description="Matched ledger transactions")
    gross_volume: int = Field(..., description="Sum of matched gross contributions")
    total_fees: int = Field(..., description="Sum of processor fees")
    net_amount: int = Field(..., description="gross_volume - total_fees")
    total_refunds: int = Field(default=0)
    total_disputes: int = Field(default=0)
    needs_review: bool = Field(default=False)
    discrepancy_amount: int = Field(default=0, description="Expected net minus payout amount")
    unmatched_count: int = Field(default=0)
    unmatched_amount: int = Field(default=0)
    duplicate_count: int = Field(default=0)

    @classmethod
    def from_payout(cls, payout: Any) -> Optional["PayoutAggregates"]:
        """Stored aggregates of a reconciled payout, None if not reconciled."""
        if payout.reconciled_at is None:
            return None
        return cls(
            transaction_count=payout.transaction_count or 0,
            gross_volume=payout.gross_volume or 0,
            total_fees=payout.total_fees or 0,
            net_amount=payout.net_amount or 0,
            total_refunds=payout.total_refunds or 0,
            total_disputes=payout.total_disputes or 0,
            needs_review=bool(payout.needs_review),
            discrepancy_amount=payout.discrepancy_amount or 0,
            unmatched_count=payout.unmatched_count or 0,
            unmatched_amount=payout.unmatched_amount or 0,
            duplicate_count=payout.duplicate_count or 0,
        )


class UnmatchedEntry(BaseModel):
    """A balance entry with no ledger counterpart."""
    entry_id: str
    type: str
    charge_reference: Optional[str] = None
    gross_amount: int
    reason: UnmatchedReason


class DuplicateAttribution(BaseModel):
    """A ledger transaction that another payout (or entry) already claimed."""
    transaction_id: str
    processor_payment_reference: Optional[str] = None
    entry_id: str
    attributed_payout_id: Optional[str] = None


class ReconciliationResult(BaseModel):
    """Typed outcome of reconcile() for one payout."""
    payout_id: Optional[str] = None
    processor_payout_reference: Optional[str] = None
    outcome: ReconciliationOutcome
    aggregates: Optional[PayoutAggregates] = None
    payout_amount: Optional[int] = None
    reconciled_at: Optional[datetime] = None
    duplicates: List[DuplicateAttribution] = Field(default_factory=list)
    unmatched: List[UnmatchedEntry] = Field(default_factory=list)
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome in (
            ReconciliationOutcome.RECONCILED,
            ReconciliationOutcome.FLAGGED,
            ReconciliationOutcome.ALREADY_RECONCILED,
        )

    @property
    def needs_review(self) -> bool:
        return bool(self.aggregates and self.aggregates.needs_review)

    def describe(self) -> str:
        """Operator-facing one-line description."""
        ref = self.processor_payout_reference or self.payout_id
        if self.outcome == ReconciliationOutcome.FAILED:
            return f"Payout {ref} could not be reconciled: {self.error}"
        if self.outcome == ReconciliationOutcome.DEFERRED:
            return f"Payout {ref} is not paid yet; retry once it settles"
        if self.needs_review:
            return (
                f"Payout {ref} reconciled with a discrepancy of "
                f"{self.aggregates.discrepancy_amount} minor units; review required"
            )
        return f"Payout {ref} reconciled"


class BatchResult(BaseModel):
    """Outcome of reconcile_all() for one church."""
    church_id: str
    reconciled: int = 0
    flagged: int = 0
    failed: int = 0
    deferred: int = 0
    results: List[ReconciliationResult] = Field(default_factory=list)

    def to_summary_dict(self) -> Dict[str, Any]:
        return {
            "church_id": self.church_id,
            "reconciled": self.reconciled,
            "flagged": self.flagged,
            "failed": self.failed,
            "deferred": self.deferred,
            "failures": [
                {
                    "payout_id": r.payout_id,
                    "processor_payout_reference": r.processor_payout_reference,
                    "error": r.error,
                }
                for r in self.results
                if r.outcome == ReconciliationOutcome.FAILED
            ],
        }


class ImportResult(BaseModel):
    """Counts of an import_historical() run."""
    imported: int = 0
    skipped: int = 0
    total_processed: int = 0
    errors: List[str] = Field(default_factory=list)


class ImportAvailability(BaseModel):
    """What import_historical() would find, without writing anything."""
    has_account: bool
    available_count: int = 0
    existing_count: int = 0
    oldest: Optional[datetime] = None
    newest: Optional[datetime] = None
    message: str = ""


class PayoutStats(BaseModel):
    """Payout counts for the operator dashboard."""
    total: int = 0
    reconciled: int = 0
    pending: int = 0
    failed: int = 0
    needs_review: int = 0


class RevenueSummary(BaseModel):
    """Gross revenue of succeeded donations over a period."""
    church_id: str
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    donation_count: int = 0
    donation_amount: int = 0
    fees_covered: int = 0
    platform_fees: int = 0
    gross_revenue: int = 0
