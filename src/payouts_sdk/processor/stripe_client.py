"""Stripe Connect implementation of the processor client."""

import os
import logging
from datetime import datetime, timezone
from typing import Any, List, Optional

import stripe

from ..config import MAX_PROCESSOR_PAGE_SIZE
from ..errors import ProcessorRejected, ProcessorUnavailable
from .base import BalanceEntry, ProcessorClientBase, ProcessorPayout

logger = logging.getLogger(__name__)


def _from_timestamp(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)


def _field(obj: Any, name: str) -> Any:
    """Read a field from a StripeObject or a plain dict."""
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


class StripeProcessorClient(ProcessorClientBase):
    """Reads payouts and balance transactions of connected Stripe accounts."""

    def __init__(self, api_key: Optional[str] = None, max_network_retries: int = 2):
        """Initialize the Stripe client.

        Args:
            api_key: Platform secret key. Falls back to STRIPE_API_KEY env var.
            max_network_retries: Retries stripe-python performs on network errors.

        Raises:
            ValueError: If no API key is provided or found.
        """
        self._api_key = api_key or os.getenv("STRIPE_API_KEY")
        if not self._api_key:
            raise ValueError(
                "STRIPE_API_KEY must be provided either as argument or environment variable"
            )
        self._max_network_retries = max_network_retries

    def _configure_stripe(self) -> None:
        stripe.api_key = self._api_key
        stripe.max_network_retries = self._max_network_retries

    def _translate_error(self, e: Exception, action: str) -> Exception:
        if isinstance(e, (stripe.AuthenticationError, stripe.PermissionError)):
            logger.error(f"Stripe rejected credentials while trying to {action}")
            return ProcessorRejected(f"Stripe rejected the request to {action}: {e}")
        if isinstance(e, (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)):
            logger.warning(f"Stripe unavailable while trying to {action}: {type(e).__name__}")
            return ProcessorUnavailable(f"Stripe unavailable while trying to {action}: {e}")
        logger.error(f"Stripe API error while trying to {action}: {type(e).__name__}")
        return ProcessorUnavailable(f"Stripe API error while trying to {action}: {e}")

    @staticmethod
    def _is_missing(e: Exception) -> bool:
        return isinstance(e, stripe.InvalidRequestError) and (
            getattr(e, "code", None) == "resource_missing"
            or getattr(e, "http_status", None) == 404
        )

    def _convert_payout(self, payout: Any) -> ProcessorPayout:
        return ProcessorPayout(
            id=payout.id,
            amount=payout.amount,
            currency=(payout.currency or "usd").lower(),
            status=payout.status,
            created_at=_from_timestamp(payout.created),
            arrival_date=_from_timestamp(_field(payout, "arrival_date")),
            automatic=bool(_field(payout, "automatic")),
            failure_message=_field(payout, "failure_message"),
            metadata=dict(_field(payout, "metadata") or {}),
        )

    def _convert_balance_transaction(self, txn: Any) -> BalanceEntry:
        source = _field(txn, "source")
        charge_reference = None
        if txn.type in ("charge", "payment"):
            if isinstance(source, str):
                charge_reference = source
            elif source is not None:
                # Donations are recorded by PaymentIntent id when one exists
                charge_reference = _field(source, "payment_intent") or _field(source, "id")
        return BalanceEntry(
            id=txn.id,
            type=txn.type,
            charge_reference=charge_reference,
            gross_amount=txn.amount,
            fee_amount=txn.fee,
            net_amount=txn.net,
            reporting_category=_field(txn, "reporting_category"),
        )

    def list_payouts(
        self,
        account_id: str,
        limit: int = 100,
        starting_after: Optional[str] = None,
        created_gte: Optional[datetime] = None,
        created_lte: Optional[datetime] = None,
    ) -> List[ProcessorPayout]:
        self._configure_stripe()

        params = {"limit": max(1, min(limit, MAX_PROCESSOR_PAGE_SIZE))}
        if starting_after:
            params["starting_after"] = starting_after
        created = {}
        if created_gte:
            created["gte"] = int(created_gte.replace(tzinfo=timezone.utc).timestamp())
        if created_lte:
            created["lte"] = int(created_lte.replace(tzinfo=timezone.utc).timestamp())
        if created:
            params["created"] = created

        try:
            page = stripe.Payout.list(stripe_account=account_id, **params)
        except stripe.StripeError as e:
            if self._is_missing(e):
                logger.info(f"No payouts available for account {account_id} yet")
                return []
            raise self._translate_error(e, f"list payouts for {account_id}") from e

        payouts = [self._convert_payout(p) for p in page.data]
        logger.info(f"Fetched {len(payouts)} payouts from Stripe for {account_id}")
        return payouts

    def get_payout(self, account_id: str, payout_reference: str) -> Optional[ProcessorPayout]:
        self._configure_stripe()
        try:
            payout = stripe.Payout.retrieve(payout_reference, stripe_account=account_id)
        except stripe.StripeError as e:
            if self._is_missing(e):
                logger.warning(f"Payout {payout_reference} not found at Stripe")
                return None
            raise self._translate_error(e, f"retrieve payout {payout_reference}") from e
        return self._convert_payout(payout)

    def list_balance_entries(self, account_id: str, payout_reference: str) -> List[BalanceEntry]:
        """Fetch all balance transactions of a payout using auto-pagination."""
        self._configure_stripe()

        entries: List[BalanceEntry] = []
        try:
            page = stripe.BalanceTransaction.list(
                payout=payout_reference,
                limit=MAX_PROCESSOR_PAGE_SIZE,
                expand=["data.source"],
                stripe_account=account_id,
            )
            for txn in page.auto_paging_iter():
                entries.append(self._convert_balance_transaction(txn))
        except stripe.StripeError as e:
            raise self._translate_error(
                e, f"list balance transactions of payout {payout_reference}"
            ) from e

        logger.info(
            f"Fetched {len(entries)} balance transactions for payout {payout_reference}"
        )
        return entries
