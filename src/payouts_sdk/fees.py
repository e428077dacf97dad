"""Gross revenue of a donation under the donor fee-coverage rule.

A donor who opts to cover fees pays the processing fee and the platform fee
on top of the donation, so the gross amount charged is the sum of all three.
Otherwise the gross amount is the donation itself. Both the reconciliation
aggregates and the dashboard revenue rollup go through this module.
"""

from typing import Any

from sqlalchemy import case


def gross_contribution(
    amount: int,
    processing_fee_covered_by_donor: int = 0,
    platform_fee_amount: int = 0,
) -> int:
    """Return the donor-facing gross of one donation, in minor units."""
    covered = processing_fee_covered_by_donor or 0
    if covered > 0:
        return amount + covered + (platform_fee_amount or 0)
    return amount


def transaction_gross(transaction: Any) -> int:
    """gross_contribution() for an object with ledger attributes."""
    return gross_contribution(
        transaction.amount,
        transaction.processing_fee_covered_by_donor,
        transaction.platform_fee_amount,
    )


def gross_contribution_expr(amount_col, covered_col, platform_col):
    """SQL counterpart of gross_contribution() for aggregate queries.

    Example:
        select(func.sum(gross_contribution_expr(
            DonationTransaction.amount,
            DonationTransaction.processing_fee_covered_by_donor,
            DonationTransaction.platform_fee_amount,
        )))
    """
    return case(
        (covered_col > 0, amount_col + covered_col + platform_col),
        else_=amount_col,
    )
