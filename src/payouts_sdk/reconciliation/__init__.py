"""Payout reconciliation.

Imports payout history from the payment processor, ties each payout to
the donation transactions it settled and keeps per-church statistics.

Features:
- Idempotent historical import with partial-progress reporting
- Per-payout reconciliation with fee-coverage aware gross volume
- Exclusive attribution of a donation to a single payout
- Bulk reconciliation with bounded concurrency
- Cached payout statistics and revenue rollups
"""

from .models import (
    BatchResult,
    DuplicateAttribution,
    ImportAvailability,
    ImportResult,
    PayoutAggregates,
    PayoutStats,
    ReconciliationOutcome,
    ReconciliationResult,
    RevenueSummary,
    UnmatchedEntry,
    UnmatchedReason,
)
from .reconciler import EntryClassification, Reconciler
from .importer import ImportService
from .service import PayoutLockRegistry, ReconciliationService
from .stats import StatisticsAggregator

__all__ = [
    # Models
    "BatchResult",
    "DuplicateAttribution",
    "ImportAvailability",
    "ImportResult",
    "PayoutAggregates",
    "PayoutStats",
    "ReconciliationOutcome",
    "ReconciliationResult",
    "RevenueSummary",
    "UnmatchedEntry",
    "UnmatchedReason",
    # Core Components
    "EntryClassification",
    "Reconciler",
    "ImportService",
    "PayoutLockRegistry",
    "ReconciliationService",
    "StatisticsAggregator",
]
