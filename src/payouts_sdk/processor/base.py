"""Processor-facing models and the client interface used by reconciliation."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, Dict, Any, List

from pydantic import BaseModel, Field


class ProcessorPayout(BaseModel):
    """A payout as reported by the processor."""
    id: str = Field(..., description="Processor payout reference")
    amount: int = Field(..., description="Net amount transferred, minor units")
    currency: str = Field(default="usd")
    status: str = Field(..., description="pending, in_transit, paid, failed or canceled")
    created_at: datetime
    arrival_date: Optional[datetime] = None
    automatic: bool = True
    failure_message: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class BalanceEntry(BaseModel):
    """One balance-affecting entry settled by a payout.

    ``charge_reference`` is the processor payment reference of the
    originating donor charge, or None for adjustments, fees and other
    entries without one.
    """
    id: str
    type: str = Field(default="charge", description="charge, payment, refund, adjustment, ...")
    charge_reference: Optional[str] = None
    gross_amount: int
    fee_amount: int = 0
    net_amount: int
    reporting_category: Optional[str] = None


class ProcessorClientBase(ABC):
    """
    Read-only view of a connected account at the payment processor.

    Implementations block on network I/O; async callers dispatch them to a
    worker thread.
    """

    @abstractmethod
    def list_payouts(
        self,
        account_id: str,
        limit: int = 100,
        starting_after: Optional[str] = None,
        created_gte: Optional[datetime] = None,
        created_lte: Optional[datetime] = None,
    ) -> List[ProcessorPayout]:
        """List one page of payouts, most recent first.

        Args:
            account_id: Connected account id.
            limit: Page size (at most 100).
            starting_after: Reference of the last payout of the previous page.
            created_gte: Only payouts created at or after this time.
            created_lte: Only payouts created at or before this time.
        """
        raise NotImplementedError

    @abstractmethod
    def get_payout(self, account_id: str, payout_reference: str) -> Optional[ProcessorPayout]:
        """Fetch one payout, or None if the processor does not know it."""
        raise NotImplementedError

    @abstractmethod
    def list_balance_entries(self, account_id: str, payout_reference: str) -> List[BalanceEntry]:
        """Fetch every balance entry settled by a payout (all pages)."""
        raise NotImplementedError

    def health_check(self) -> Dict[str, Any]:
        return {"ok": True}
