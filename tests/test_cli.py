"""Tests for the payouts command-line interface."""

import asyncio
import json
import pytest
from datetime import datetime

from payouts_sdk.database import DatabaseManager, PayoutRepository
from payouts_sdk.processor import SimulatorProcessorClient
from payouts_sdk.reconciliation import cli
from payouts_sdk.reconciliation.cli import create_parser, main, parse_datetime

from conftest import ACCOUNT_ID, CHURCH_ID, LedgerSeeder, charge


@pytest.fixture
def database_url(tmp_path, monkeypatch):
    url = f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}"
    monkeypatch.setenv("DATABASE_URL", url)
    return url


def run_seeded(database_url, seed):
    """Run ``seed(seeder)`` against the CLI database, then return what it returns."""
    async def _run():
        manager = DatabaseManager(database_url=database_url)
        await manager.initialize()
        try:
            return await seed(LedgerSeeder(manager.session_factory))
        finally:
            await manager.shutdown()

    return asyncio.run(_run())


@pytest.fixture
def simulator(monkeypatch):
    processor = SimulatorProcessorClient()
    monkeypatch.setattr(cli, "get_processor_client", lambda provider: processor)
    return processor


class TestParseDatetime:

    def test_formats(self):
        assert parse_datetime("2026-01-15") == datetime(2026, 1, 15)
        assert parse_datetime("2026-01-15T10:30:00") == datetime(2026, 1, 15, 10, 30)
        assert parse_datetime("2026-01-15 10:30:00") == datetime(2026, 1, 15, 10, 30)

    def test_invalid(self):
        with pytest.raises(ValueError, match="Unable to parse datetime"):
            parse_datetime("15/01/2026")


class TestParser:

    def test_global_options_before_command(self):
        args = create_parser().parse_args(
            ["--provider", "simulator", "--timeout", "5", "reconcile", "--payout-id", "po_1"]
        )

        assert args.provider == "simulator"
        assert args.timeout == 5.0
        assert args.command == "reconcile"
        assert args.church_id is None

    def test_import_defaults(self):
        args = create_parser().parse_args(["import", "--church-id", CHURCH_ID])

        assert args.limit == 10
        assert args.start is None


class TestMain:
    """Tests for main() exit codes and output."""

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 1
        assert "usage" in capsys.readouterr().out

    def test_bad_date_rejected(self, database_url):
        assert main(["import", "--church-id", CHURCH_ID, "--start", "yesterday"]) == 1

    def test_backwards_window_rejected(self, database_url):
        code = main([
            "import", "--church-id", CHURCH_ID,
            "--start", "2026-02-01", "--end", "2026-01-01",
        ])
        assert code == 1

    def test_stats_on_empty_database(self, database_url, capsys):
        assert main(["stats", "--church-id", CHURCH_ID]) == 0

        output = json.loads(capsys.readouterr().out)
        assert output == {"total": 0, "reconciled": 0, "pending": 0, "failed": 0, "needs_review": 0}

    def test_unknown_provider(self, database_url):
        assert main(["--provider", "paypal", "reconcile-all", "--church-id", CHURCH_ID]) == 2

    def test_reconcile_all_without_account(self, database_url, simulator):
        assert main(["reconcile-all", "--church-id", CHURCH_ID]) == 2

    def test_import_writes_output_file(self, database_url, simulator, tmp_path):
        run_seeded(database_url, lambda seeder: seeder.connect())
        for i in range(3):
            simulator.add_payout(ACCOUNT_ID, 100 + i, payout_id=f"po_cli_{i}")
        output_file = tmp_path / "import.json"

        code = main([
            "--output", str(output_file),
            "import", "--church-id", CHURCH_ID, "--limit", "5",
        ])

        assert code == 0
        result = json.loads(output_file.read_text())
        assert result["imported"] == 3
        assert result["errors"] == []

        async def count(seeder):
            async with seeder.session_factory() as session:
                return await PayoutRepository(session).count_for_church(CHURCH_ID)

        assert run_seeded(database_url, count) == 3

    def test_reconcile_flagged_payout_exits_one(self, database_url, simulator, capsys):
        """Test that a payout needing review is reported with exit code 1."""
        simulator.add_payout(
            ACCOUNT_ID,
            9700,
            [charge("txn_c1", "pi_c1", 5000, 150), charge("txn_c2", "pi_c2", 5200, 150)],
            payout_id="po_cli_flagged",
        )

        async def seed(seeder):
            await seeder.connect()
            await seeder.donation("pi_c1", 5000)
            await seeder.donation("pi_c2", 5000, covered=150, platform_fee=50)
            await seeder.payout("po_cli_flagged", 9700)

        run_seeded(database_url, seed)

        code = main(["reconcile", "--payout-id", "po_cli_flagged"])

        assert code == 1
        output = json.loads(capsys.readouterr().out)
        assert output["outcome"] == "flagged"
        assert output["aggregates"]["gross_volume"] == 10200

    def test_reconcile_unknown_payout(self, database_url, simulator):
        assert main(["reconcile", "--payout-id", "po_nowhere"]) == 2

    def test_reconcile_processor_outage_exits_two(self, database_url, simulator, capsys):
        simulator.add_payout(ACCOUNT_ID, 100, payout_id="po_cli_down")
        simulator.set_payout_unavailable("po_cli_down")

        async def seed(seeder):
            await seeder.connect()
            await seeder.payout("po_cli_down", 100)

        run_seeded(database_url, seed)

        assert main(["reconcile", "--payout-id", "po_cli_down"]) == 2
        output = json.loads(capsys.readouterr().out)
        assert output["outcome"] == "failed"
        assert output["processor_payout_reference"] == "po_cli_down"
