"""Runtime configuration read from environment variables."""

import os

# Largest |expected net - reported payout amount| treated as rounding noise
DEFAULT_AMOUNT_TOLERANCE = 2

DEFAULT_RECONCILE_CONCURRENCY = 3
DEFAULT_PROCESSOR_TIMEOUT_SECONDS = 30.0
DEFAULT_STATS_CACHE_TTL_SECONDS = 5.0
DEFAULT_STATS_CACHE_CAPACITY = 1024

# Stripe caps list pages at 100 objects
MAX_PROCESSOR_PAGE_SIZE = 100


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}")


def _float_env(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {value!r}")


def get_amount_tolerance() -> int:
    """Tolerance in minor units before a payout is flagged for review."""
    tolerance = _int_env("PAYOUT_AMOUNT_TOLERANCE", DEFAULT_AMOUNT_TOLERANCE)
    if tolerance < 0:
        raise ValueError("PAYOUT_AMOUNT_TOLERANCE must not be negative")
    return tolerance


def get_reconcile_concurrency() -> int:
    """Number of payouts reconciled in parallel by a bulk run."""
    return max(1, _int_env("RECONCILE_CONCURRENCY", DEFAULT_RECONCILE_CONCURRENCY))


def get_processor_timeout() -> float:
    """Default deadline in seconds for one import or reconciliation call."""
    return _float_env("PROCESSOR_TIMEOUT_SECONDS", DEFAULT_PROCESSOR_TIMEOUT_SECONDS)


def get_stats_cache_ttl() -> float:
    return _float_env("STATS_CACHE_TTL_SECONDS", DEFAULT_STATS_CACHE_TTL_SECONDS)


# Upper bound on payouts pulled by one historical import
MAX_IMPORT_LIMIT = 100
