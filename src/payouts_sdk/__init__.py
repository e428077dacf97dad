# payouts_sdk package
__version__ = "0.1.0"

from .database import (
    DonationTransaction,
    Payout,
    ProcessorAccount,
    DonationStatus,
    PayoutStatus,
    init_db,
    close_db,
)
from .errors import (
    PayoutsError,
    NotConnected,
    ProcessorUnavailable,
    ProcessorTimeout,
    ProcessorRejected,
    PayoutNotFound,
    RecordValidationError,
)
from .fees import gross_contribution

# Reconciliation exports
from .reconciliation import (
    ImportService,
    ReconciliationService,
    StatisticsAggregator,
    Reconciler,
    ReconciliationOutcome,
    ReconciliationResult,
    BatchResult,
)
