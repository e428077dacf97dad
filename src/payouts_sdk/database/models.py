"""SQLAlchemy models for the donation ledger and payout persistence."""

import uuid
import json
from datetime import datetime
from typing import Optional, Dict, Any

from sqlalchemy import (
    Boolean,
    String,
    Integer,
    DateTime,
    ForeignKey,
    Text,
    Index,
)
from sqlalchemy.orm import DeclarativeBase, relationship, Mapped, mapped_column
import enum


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class DonationStatus(str, enum.Enum):
    """Lifecycle states of a donation ledger entry."""
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"
    DISPUTED = "disputed"


class PayoutStatus(str, enum.Enum):
    """Native processor payout statuses."""
    PENDING = "pending"
    IN_TRANSIT = "in_transit"
    PAID = "paid"
    FAILED = "failed"
    CANCELED = "canceled"


# Donations whose charge actually settled at the processor
SETTLED_DONATION_STATUSES = frozenset([
    DonationStatus.SUCCEEDED.value,
    DonationStatus.REFUNDED.value,
    DonationStatus.DISPUTED.value,
])


class ProcessorAccount(Base):
    """Connected processor account of a church (written by onboarding)."""
    __tablename__ = "processor_accounts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    church_id: Mapped[str] = mapped_column(String(36), nullable=False, unique=True, index=True)
    processor_account_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    provider: Mapped[str] = mapped_column(String(50), nullable=False, default="stripe")
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)


class DonationTransaction(Base):
    """One donor charge as recorded by donation intake."""
    __tablename__ = "donation_transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    church_id: Mapped[str] = mapped_column(String(36), nullable=False)
    # Null for manual/cash entries
    processor_payment_reference: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, unique=True
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    processing_fee_covered_by_donor: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    platform_fee_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    status: Mapped[str] = mapped_column(String(50), nullable=False, default=DonationStatus.PENDING.value)
    transaction_date: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    # Reconciliation annotation
    payout_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("payouts.id"), nullable=True)
    attributed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    payout: Mapped[Optional["Payout"]] = relationship("Payout", back_populates="transactions")

    __table_args__ = (
        Index("ix_donation_transactions_church_id_date", "church_id", "transaction_date"),
        Index("ix_donation_transactions_status", "status"),
        Index("ix_donation_transactions_payout_id", "payout_id"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "church_id": self.church_id,
            "processor_payment_reference": self.processor_payment_reference,
            "amount": self.amount,
            "processing_fee_covered_by_donor": self.processing_fee_covered_by_donor,
            "platform_fee_amount": self.platform_fee_amount,
            "currency": self.currency,
            "status": self.status,
            "transaction_date": self.transaction_date.isoformat() if self.transaction_date else None,
            "payout_id": self.payout_id,
            "attributed_at": self.attributed_at.isoformat() if self.attributed_at else None,
        }


class Payout(Base):
    """A transfer from the processor to the church's bank account."""
    __tablename__ = "payouts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    church_id: Mapped[str] = mapped_column(String(36), nullable=False)
    processor_payout_reference: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)

    payout_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    arrival_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    # Net amount actually transferred, minor units
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    status: Mapped[str] = mapped_column(String(50), nullable=False, default=PayoutStatus.PENDING.value)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    payout_schedule: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    # Set exactly once, by reconciliation
    reconciled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Aggregates, populated only on reconciliation
    transaction_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    gross_volume: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    total_fees: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    net_amount: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    total_refunds: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    total_disputes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Operator review
    needs_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    discrepancy_amount: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    unmatched_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    unmatched_amount: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    duplicate_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    metadata_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    transactions = relationship("DonationTransaction", back_populates="payout")

    __table_args__ = (
        Index("ix_payouts_church_id_payout_date", "church_id", "payout_date"),
        Index("ix_payouts_status", "status"),
        Index("ix_payouts_reconciled_at", "reconciled_at"),
    )

    @property
    def metadata_dict(self) -> Optional[Dict[str, Any]]:
        """Processor metadata as dictionary."""
        if self.metadata_json:
            return json.loads(self.metadata_json)
        return None

    @metadata_dict.setter
    def metadata_dict(self, value: Optional[Dict[str, Any]]) -> None:
        if value:
            self.metadata_json = json.dumps(value)
        else:
            self.metadata_json = None

    @property
    def is_reconciled(self) -> bool:
        return self.reconciled_at is not None

    def to_dict(self) -> Dict[str, Any]:
        """Convert payout to dictionary representation."""
        return {
            "id": self.id,
            "church_id": self.church_id,
            "processor_payout_reference": self.processor_payout_reference,
            "payout_date": self.payout_date.isoformat() if self.payout_date else None,
            "arrival_date": self.arrival_date.isoformat() if self.arrival_date else None,
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status,
            "failure_reason": self.failure_reason,
            "payout_schedule": self.payout_schedule,
            "reconciled_at": self.reconciled_at.isoformat() if self.reconciled_at else None,
            "transaction_count": self.transaction_count,
            "gross_volume": self.gross_volume,
            "total_fees": self.total_fees,
            "net_amount": self.net_amount,
            "total_refunds": self.total_refunds,
            "total_disputes": self.total_disputes,
            "needs_review": self.needs_review,
            "discrepancy_amount": self.discrepancy_amount,
            "unmatched_count": self.unmatched_count,
            "unmatched_amount": self.unmatched_amount,
            "duplicate_count": self.duplicate_count,
        }
