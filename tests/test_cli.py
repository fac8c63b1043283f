"""Tests for the command-line interface."""

import json
from datetime import timedelta
from unittest.mock import patch

import pytest
from click.testing import CliRunner
from faker import Faker

from lot_telemetry_sim.cli import generate_lot_number, main
from lot_telemetry_sim.config import DatabaseConfig
from lot_telemetry_sim.metadata_store import MetadataStore
from lot_telemetry_sim.models import LotSummary, SensorSnapshot
from lot_telemetry_sim.timeseries import InMemoryTimeSeriesStore


@pytest.fixture
def runner(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'lots.db'}")
    return CliRunner()


class TestLotCommands:
    """Tests for lot management commands."""

    def test_create_and_list(self, runner):
        result = runner.invoke(main, ["create-lot", "LOT-1", "--machine", "Furnace-01"])
        assert result.exit_code == 0
        assert "Created lot LOT-1 on Furnace-01" in result.output

        result = runner.invoke(main, ["lots", "--json"])
        assert result.exit_code == 0
        lots = json.loads(result.output)
        assert lots[0]["lotNumber"] == "LOT-1"
        assert lots[0]["status"] == "processing"

    def test_create_generates_lot_number(self, runner):
        result = runner.invoke(main, ["create-lot"])

        assert result.exit_code == 0
        assert "Created lot LOT-" in result.output

    def test_duplicate_lot_fails(self, runner):
        runner.invoke(main, ["create-lot", "LOT-1"])
        result = runner.invoke(main, ["create-lot", "LOT-1"])

        assert result.exit_code == 1
        assert "already exists" in result.output

    def test_set_outcome(self, runner):
        runner.invoke(main, ["create-lot", "LOT-1"])
        result = runner.invoke(
            main, ["set-outcome", "LOT-1", "--good", "90", "--defect", "2", "--conclusion", "ok"]
        )

        assert result.exit_code == 0
        assert "Good:       90" in result.output

    def test_delete_lot(self, runner):
        runner.invoke(main, ["create-lot", "LOT-1"])
        result = runner.invoke(main, ["delete-lot", "LOT-1"])
        assert result.exit_code == 0

        result = runner.invoke(main, ["lots"])
        assert "No lots" in result.output

    def test_delete_missing_lot(self, runner):
        result = runner.invoke(main, ["delete-lot", "LOT-404"])
        assert result.exit_code == 1

    def test_status(self, runner):
        runner.invoke(main, ["create-lot", "LOT-1", "-m", "CT-01"])
        result = runner.invoke(main, ["status"])

        assert result.exit_code == 0
        assert "Processing: 1" in result.output
        assert "LOT-1 (CT-01)" in result.output


class TestAnalyticsCommands:
    """Tests for backfill and the analytics shown by lots."""

    @pytest.fixture
    def completed_lot(self, runner, tmp_path):
        store = MetadataStore.from_config(DatabaseConfig(url=f"sqlite:///{tmp_path / 'lots.db'}"))
        store.ensure_schema()
        lot = store.create_lot("LOT-1", "Furnace-01")
        completed_at = lot.started_at + timedelta(hours=2)
        summary = LotSummary(
            completed_at,
            "Furnace-01",
            sensors=[SensorSnapshot("Temperature", "down", 1.5, 1.0, 3)],
        )
        store.mark_lot_completed(lot.id, summary)
        lot = store.get_lot(lot.id)
        store.close()
        return lot

    def test_backfill_and_list(self, runner, completed_lot):
        timeseries = InMemoryTimeSeriesStore()
        for minutes, value in ((10, 100.0), (20, 200.0)):
            timeseries.write(
                "sensor_data",
                {"machine_name": "Furnace-01", "sensor_name": "Temperature", "status": "running"},
                {"value": value},
                completed_lot.started_at + timedelta(minutes=minutes),
            )

        with patch("lot_telemetry_sim.cli.build_timeseries", return_value=timeseries):
            result = runner.invoke(main, ["backfill"])

        assert result.exit_code == 0
        assert "Backfilled 1 lot(s)" in result.output
        assert "LOT-1" in result.output

        result = runner.invoke(main, ["lots"])
        assert "2.0h" in result.output
        assert "Temperature" in result.output
        assert "avg 150.00" in result.output

        lots = json.loads(runner.invoke(main, ["lots", "--json"]).output)
        assert lots[0]["operationHour"] == 2.0
        assert lots[0]["averages"] == {"Temperature": 150.0}

    def test_backfill_without_timeseries(self, runner, monkeypatch):
        monkeypatch.delenv("INFLUX_TOKEN", raising=False)
        result = runner.invoke(main, ["backfill"])

        assert result.exit_code == 1
        assert "time-series store unavailable" in result.output

    def test_products_fall_back_to_summary(self, runner, completed_lot):
        result = runner.invoke(main, ["lots", "--products"])

        assert result.exit_code == 0
        [product] = json.loads(result.output)
        assert product["lot"] == "LOT-1"
        assert product["averages"] == {"temperature": 1.5}
        assert product["operationHour"] == 2.0


class TestInitAndRun:
    def test_init_writes_config(self, runner, tmp_path):
        result = runner.invoke(main, ["init", "--output", str(tmp_path / "cfg")])

        assert result.exit_code == 0
        assert (tmp_path / "cfg" / "config.yaml").exists()

    def test_run_delegates_to_service(self, runner):
        with patch("lot_telemetry_sim.cli.run_service") as run_service:
            result = runner.invoke(main, ["run", "--dry-run"])

        assert result.exit_code == 0
        config = run_service.call_args.args[0]
        assert run_service.call_args.kwargs["dry_run"] is True
        assert config.completion.strategy == "both"
        assert "Strategy:  both" in result.output


class TestGenerateLotNumber:
    def test_format(self):
        Faker.seed(0)
        number = generate_lot_number(Faker())

        assert number.startswith("LOT-")
        assert len(number) == len("LOT-####-????")
        assert number == number.upper()
