"""Exception types raised by the payout reconciliation services."""

from typing import Any, Optional


class PayoutsError(Exception):
    """Base class for all payout reconciliation errors."""


class NotConnected(PayoutsError):
    """The church has no connected payment processor account.

    Not retryable until onboarding completes; the message is meant to be
    shown to the operator as-is.
    """

    def __init__(self, church_id: str):
        self.church_id = church_id
        super().__init__(
            f"Church {church_id} has no connected payment processor account. "
            "Complete onboarding first."
        )


class ProcessorUnavailable(PayoutsError):
    """Transient failure talking to the payment processor.

    ``partial_result`` carries whatever progress was persisted before the
    failure (for example an ``ImportResult`` with counts so far).
    """

    def __init__(self, message: str, partial_result: Optional[Any] = None):
        super().__init__(message)
        self.partial_result = partial_result


class ProcessorTimeout(ProcessorUnavailable):
    """The caller-supplied deadline expired while waiting on the processor."""


class PayoutNotFound(PayoutsError):
    """No local payout row (and no processor payout) for the given reference."""

    def __init__(self, payout_id: str):
        self.payout_id = payout_id
        super().__init__(f"Payout {payout_id} not found")


class RecordValidationError(PayoutsError):
    """A single processor or ledger record failed validation."""

    def __init__(self, reference: str, reason: str):
        self.reference = reference
        self.reason = reason
        super().__init__(f"Invalid record {reference}: {reason}")


class ProcessorRejected(PayoutsError):
    """The processor refused the request (bad credentials, revoked access).

    Retrying without operator action will not help.
    """
