"""Database module for ledger and payout persistence."""

from .models import (
    Base,
    DonationTransaction,
    DonationStatus,
    Payout,
    PayoutStatus,
    ProcessorAccount,
    SETTLED_DONATION_STATUSES,
)
from .session import (
    get_database_url,
    init_db,
    close_db,
    create_async_engine,
    get_async_session_factory,
    DatabaseManager,
)
from .repository import (
    DonationTransactionRepository,
    PayoutRepository,
    ProcessorAccountRepository,
)

__all__ = [
    # Models
    "Base",
    "DonationTransaction",
    "DonationStatus",
    "Payout",
    "PayoutStatus",
    "ProcessorAccount",
    "SETTLED_DONATION_STATUSES",
    # Session management
    "get_database_url",
    "init_db",
    "close_db",
    "create_async_engine",
    "get_async_session_factory",
    "DatabaseManager",
    # Repositories
    "DonationTransactionRepository",
    "PayoutRepository",
    "ProcessorAccountRepository",
]
