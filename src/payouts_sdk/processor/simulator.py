"""In-memory processor for local development and tests."""

import time
import uuid
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set

from ..config import MAX_PROCESSOR_PAGE_SIZE
from ..errors import ProcessorUnavailable
from .base import BalanceEntry, ProcessorClientBase, ProcessorPayout

logger = logging.getLogger(__name__)


@dataclass
class SimulatorConfig:
    """Configuration for simulator behavior."""
    delay_ms: int = 0  # Simulated response delay in ms
    # Fail list_payouts once this many pages have been served
    fail_list_after_pages: Optional[int] = None


@dataclass
class SimulatedAccount:
    """Payout history of one connected account."""
    account_id: str
    payouts: List[ProcessorPayout] = field(default_factory=list)
    entries: Dict[str, List[BalanceEntry]] = field(default_factory=dict)


class SimulatorProcessorClient(ProcessorClientBase):
    """
    Processor client backed by in-memory accounts.

    Features:
    - Payouts listed most recent first with cursor pagination
    - Balance entries per payout
    - Injectable outages per account or per payout
    - Delayed response simulation
    """

    def __init__(self, config: Optional[SimulatorConfig] = None):
        self.config = config or SimulatorConfig()
        self._accounts: Dict[str, SimulatedAccount] = {}
        self._unavailable_accounts: Set[str] = set()
        self._unavailable_payouts: Set[str] = set()
        self._pages_served = 0
        self.balance_entry_calls: List[str] = []

    def _apply_delay(self) -> None:
        if self.config.delay_ms > 0:
            time.sleep(self.config.delay_ms / 1000.0)

    def _account(self, account_id: str) -> SimulatedAccount:
        if account_id in self._unavailable_accounts:
            raise ProcessorUnavailable(f"Simulated outage for account {account_id}")
        return self._accounts.setdefault(account_id, SimulatedAccount(account_id))

    def add_payout(
        self,
        account_id: str,
        amount: int,
        entries: Optional[List[BalanceEntry]] = None,
        status: str = "paid",
        payout_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
        currency: str = "usd",
    ) -> ProcessorPayout:
        """Register a payout (and its balance entries) on an account."""
        account = self._accounts.setdefault(account_id, SimulatedAccount(account_id))
        created = created_at or datetime.utcnow()
        payout = ProcessorPayout(
            id=payout_id or f"po_sim_{uuid.uuid4().hex[:20]}",
            amount=amount,
            currency=currency,
            status=status,
            created_at=created,
            arrival_date=created + timedelta(days=2),
        )
        account.payouts.append(payout)
        account.payouts.sort(key=lambda p: p.created_at, reverse=True)
        account.entries[payout.id] = list(entries or [])
        return payout

    def set_payout_status(self, account_id: str, payout_id: str, status: str) -> None:
        for payout in self._accounts[account_id].payouts:
            if payout.id == payout_id:
                payout.status = status

    def set_account_unavailable(self, account_id: str, unavailable: bool = True) -> None:
        if unavailable:
            self._unavailable_accounts.add(account_id)
        else:
            self._unavailable_accounts.discard(account_id)

    def set_payout_unavailable(self, payout_id: str, unavailable: bool = True) -> None:
        if unavailable:
            self._unavailable_payouts.add(payout_id)
        else:
            self._unavailable_payouts.discard(payout_id)

    def list_payouts(
        self,
        account_id: str,
        limit: int = 100,
        starting_after: Optional[str] = None,
        created_gte: Optional[datetime] = None,
        created_lte: Optional[datetime] = None,
    ) -> List[ProcessorPayout]:
        self._apply_delay()
        account = self._account(account_id)

        failing_at = self.config.fail_list_after_pages
        if failing_at is not None and self._pages_served >= failing_at:
            raise ProcessorUnavailable("Simulated outage while listing payouts")

        payouts = [
            p for p in account.payouts
            if (created_gte is None or p.created_at >= created_gte)
            and (created_lte is None or p.created_at <= created_lte)
        ]
        if starting_after:
            ids = [p.id for p in payouts]
            if starting_after in ids:
                payouts = payouts[ids.index(starting_after) + 1:]

        self._pages_served += 1
        return [p.model_copy() for p in payouts[:min(limit, MAX_PROCESSOR_PAGE_SIZE)]]

    def get_payout(self, account_id: str, payout_reference: str) -> Optional[ProcessorPayout]:
        self._apply_delay()
        for payout in self._account(account_id).payouts:
            if payout.id == payout_reference:
                return payout.model_copy()
        return None

    def list_balance_entries(self, account_id: str, payout_reference: str) -> List[BalanceEntry]:
        self._apply_delay()
        account = self._account(account_id)
        self.balance_entry_calls.append(payout_reference)
        if payout_reference in self._unavailable_payouts:
            raise ProcessorUnavailable(
                f"Simulated outage fetching balance entries of {payout_reference}"
            )
        return [e.model_copy() for e in account.entries.get(payout_reference, [])]

    def health_check(self):
        return {
            "ok": True,
            "provider": "simulator",
            "accounts": len(self._accounts),
            "payouts": sum(len(a.payouts) for a in self._accounts.values()),
        }
