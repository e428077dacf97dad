"""Initial migration - create processor_accounts, payouts and donation_transactions tables

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'processor_accounts',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('church_id', sa.String(36), nullable=False),
        sa.Column('processor_account_id', sa.String(255), nullable=False, unique=True),
        sa.Column('provider', sa.String(50), nullable=False, server_default='stripe'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_processor_accounts_church_id', 'processor_accounts', ['church_id'], unique=True)

    op.create_table(
        'payouts',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('church_id', sa.String(36), nullable=False),
        sa.Column('processor_payout_reference', sa.String(255), nullable=False, unique=True),
        sa.Column('payout_date', sa.DateTime(), nullable=False),
        sa.Column('arrival_date', sa.DateTime(), nullable=True),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='usd'),
        sa.Column('status', sa.String(50), nullable=False),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('payout_schedule', sa.String(20), nullable=True),
        sa.Column('reconciled_at', sa.DateTime(), nullable=True),
        sa.Column('transaction_count', sa.Integer(), nullable=True),
        sa.Column('gross_volume', sa.Integer(), nullable=True),
        sa.Column('total_fees', sa.Integer(), nullable=True),
        sa.Column('net_amount', sa.Integer(), nullable=True),
        sa.Column('total_refunds', sa.Integer(), nullable=True),
        sa.Column('total_disputes', sa.Integer(), nullable=True),
        sa.Column('needs_review', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('discrepancy_amount', sa.Integer(), nullable=True),
        sa.Column('unmatched_count', sa.Integer(), nullable=True),
        sa.Column('unmatched_amount', sa.Integer(), nullable=True),
        sa.Column('duplicate_count', sa.Integer(), nullable=True),
        sa.Column('metadata_json', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_payouts_church_id_payout_date', 'payouts', ['church_id', 'payout_date'])
    op.create_index('ix_payouts_status', 'payouts', ['status'])
    op.create_index('ix_payouts_reconciled_at', 'payouts', ['reconciled_at'])

    op.create_table(
        'donation_transactions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('church_id', sa.String(36), nullable=False),
        sa.Column('processor_payment_reference', sa.String(255), nullable=True, unique=True),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('processing_fee_covered_by_donor', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('platform_fee_amount', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(3), nullable=False, server_default='usd'),
        sa.Column('status', sa.String(50), nullable=False),
        sa.Column('transaction_date', sa.DateTime(), nullable=False),
        sa.Column('payout_id', sa.String(36), sa.ForeignKey('payouts.id'), nullable=True),
        sa.Column('attributed_at', sa.DateTime(), nullable=True),
    )
    op.create_index(
        'ix_donation_transactions_church_id_date',
        'donation_transactions',
        ['church_id', 'transaction_date'],
    )
    op.create_index('ix_donation_transactions_status', 'donation_transactions', ['status'])
    op.create_index('ix_donation_transactions_payout_id', 'donation_transactions', ['payout_id'])


def downgrade() -> None:
    op.drop_index('ix_donation_transactions_payout_id', table_name='donation_transactions')
    op.drop_index('ix_donation_transactions_status', table_name='donation_transactions')
    op.drop_index('ix_donation_transactions_church_id_date', table_name='donation_transactions')

    op.drop_index('ix_payouts_reconciled_at', table_name='payouts')
    op.drop_index('ix_payouts_status', table_name='payouts')
    op.drop_index('ix_payouts_church_id_payout_date', table_name='payouts')

    op.drop_index('ix_processor_accounts_church_id', table_name='processor_accounts')

    op.drop_table('donation_transactions')
    op.drop_table('payouts')
    op.drop_table('processor_accounts')
