import pytest
import sys
import json
from pathlib import Path
from datetime import date

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from shift_bidding.claim_state_machine import ClaimStateMachine
from shift_bidding.data_manager import DataManager
from shift_bidding.main import ShiftBiddingApp, build_parser, main
from shift_bidding.config import Settings


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    """Database with one period, one claimed line and one scheduled line; logs go to tmp_path"""
    monkeypatch.chdir(tmp_path)
    database_url = f"sqlite:///{tmp_path / 'bids.db'}"

    dm = DataManager(database_url)
    dm.add_shift_code("DAY", "07:00", "15:00", "Days", 8.0)
    period = dm.add_bid_period("Winter 2025", date(2025, 1, 6), 1)
    operation = dm.add_operation("Patrol")
    user = dm.add_user("jdoe", "Jane", "Doe")
    schedule = dm.add_schedule(period.id, "1", ["DAY"] * 5 + ["OFF"] * 51, operation.id)
    scheduled = dm.import_bid_line("1", operation.id, bid_period_id=period.id, schedule_id=schedule.id)
    claimed = dm.import_bid_line("2", operation.id, bid_period_id=period.id)
    ClaimStateMachine(dm).claim(claimed.id, user.id)
    dm.dispose()

    return {
        "tmp_path": tmp_path,
        "database_url": database_url,
        "period_id": period.id,
        "scheduled_id": scheduled.id,
        "claimed_id": claimed.id,
    }


def test_parser_requires_a_command():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_recalculate_without_active_period(workspace, capsys):
    assert main(["--database", workspace["database_url"], "recalculate-metrics"]) == 1
    assert "No active bid period" in capsys.readouterr().out


def test_activate_then_recalculate(workspace, capsys):
    url = workspace["database_url"]

    assert main(["--database", url, "activate-period", str(workspace["period_id"])]) == 0
    assert main(["--database", url, "recalculate-metrics"]) == 0

    out = capsys.readouterr().out
    assert "1 metrics updated, 1 skipped" in out
    assert "Skipped lines: 2" in out


def test_export_assignments_csv(workspace, capsys):
    output = workspace["tmp_path"] / "assignments.csv"

    code = main(["--database", workspace["database_url"], "export-assignments",
                 str(workspace["period_id"]), str(output), "--format", "csv"])

    assert code == 0
    assert output.exists()
    assert "Jane Doe" in output.read_text()


def test_export_calendar(workspace):
    url = workspace["database_url"]
    tmp_path = workspace["tmp_path"]

    assert main(["--database", url, "export-calendar", str(workspace["scheduled_id"]), str(tmp_path)]) == 0
    assert (tmp_path / "Patrol_Line1_Schedule_20250106.ics").exists()

    # A line without a schedule is reported, not exported
    assert main(["--database", url, "export-calendar", str(workspace["claimed_id"]), str(tmp_path)]) == 1


def test_activity_and_repair(workspace, capsys):
    url = workspace["database_url"]

    assert main(["--database", url, "activity"]) == 0
    assert "line 2 -> TAKEN (Jane Doe)" in capsys.readouterr().out

    assert main(["--database", url, "repair-ranks"]) == 0
    assert "already dense" in capsys.readouterr().out


def test_unknown_period_is_reported(workspace):
    assert main(["--database", workspace["database_url"], "activate-period", "999"]) == 1


def test_invalid_settings_file(workspace):
    config = workspace["tmp_path"] / "settings.json"
    config.write_text(json.dumps({"holiday_filter": "EVERYTHING"}))
    assert main(["--config", str(config), "repair-ranks"]) == 2


def test_app_wires_settings(workspace):
    settings = Settings(database_url=workspace["database_url"], can_claim_lines=False, rank_retry_attempts=4)
    app = ShiftBiddingApp(settings)
    app.initialize()
    try:
        assert app.claims.can_claim_lines is False
        assert app.rank_ledger.retry_attempts == 4
        assert app.metrics_manager.weights.days == 3.0
    finally:
        app.cleanup()
