"""Tests for the Alembic schema migration."""

import importlib.util
import pytest
from pathlib import Path

import sqlalchemy as sa
from alembic.migration import MigrationContext
from alembic.operations import Operations

import payouts_sdk

MIGRATION = (
    Path(payouts_sdk.__file__).parent
    / "database" / "migrations" / "versions" / "001_initial.py"
)


@pytest.fixture
def migration():
    spec = importlib.util.spec_from_file_location("migration_001_initial", MIGRATION)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture
def sync_engine(tmp_path):
    engine = sa.create_engine(f"sqlite:///{tmp_path / 'migrate.db'}")
    yield engine
    engine.dispose()


def run(engine, step):
    with engine.begin() as conn:
        ctx = MigrationContext.configure(conn)
        with Operations.context(ctx):
            step()


def test_revision_is_root(migration):
    assert migration.revision == "001_initial"
    assert migration.down_revision is None


def test_upgrade_creates_tables_and_indexes(migration, sync_engine):
    run(sync_engine, migration.upgrade)

    inspector = sa.inspect(sync_engine)
    assert set(inspector.get_table_names()) == {
        "processor_accounts",
        "payouts",
        "donation_transactions",
    }

    payout_columns = {c["name"] for c in inspector.get_columns("payouts")}
    assert {"processor_payout_reference", "reconciled_at", "gross_volume", "needs_review"} <= payout_columns

    payout_indexes = {i["name"] for i in inspector.get_indexes("payouts")}
    assert "ix_payouts_church_id_payout_date" in payout_indexes
    donation_indexes = {i["name"] for i in inspector.get_indexes("donation_transactions")}
    assert "ix_donation_transactions_payout_id" in donation_indexes


def test_downgrade_drops_everything(migration, sync_engine):
    run(sync_engine, migration.upgrade)
    run(sync_engine, migration.downgrade)

    assert sa.inspect(sync_engine).get_table_names() == []
