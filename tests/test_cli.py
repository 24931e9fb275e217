import pytest
import sys
from pathlib import Path
from datetime import datetime, timedelta
import json

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from duty_scheduler.data_manager import (
    DataManager, Member, MemberLimits, WorkInstance, CompletionRecord, TurnOrderHistoryRecord,
)
from duty_scheduler.main import main, build_parser


@pytest.fixture
def data_file(tmp_path):
    dm = DataManager(str(tmp_path / "duty.json"))
    dm.add_member(Member(id="a", display_name="Anna", historical_points=0))
    dm.add_member(Member(id="b", display_name="Bengt", historical_points=10))
    dm.add_member(Member(id="c", display_name="Clara", historical_points=5))
    for offset in range(3):
        dm.add_instance(WorkInstance(id=f"i{offset}", scheduled_at=datetime(2025, 3, 3, 8) + timedelta(days=offset),
                                     point_value=2, group_id="g1"))
    dm.set_points_system({"resetPeriod": "never"})
    dm.save_history_record(TurnOrderHistoryRecord(
        occasion_id="prev", group_id="g1", algorithm="quota_based", final_order=["a", "b", "c"],
        selections_per_member={}, points_picked_per_member={}, completed_at=datetime(2025, 2, 1)
    ))
    dm.save_data()
    return tmp_path / "duty.json"


def run(data_file, *args):
    return main(["--data-file", str(data_file), "--log-dir", str(data_file.parent / "logs"), *args])


def test_distribute_dry_run(data_file, capsys):
    assert run(data_file, "distribute", "--group", "g1") == 0
    assert "Anna: 3 shifts" in capsys.readouterr().out
    assert DataManager(str(data_file)).get_instance("i0").assigned_member_id is None


def test_distribute_apply_and_export(data_file, tmp_path):
    export_path = tmp_path / "distribution.csv"
    assert run(data_file, "distribute", "--group", "g1", "--apply", "--export", str(export_path), "--format", "csv") == 0
    assert export_path.exists()
    assert DataManager(str(data_file)).get_instance("i2").assigned_member_id == "a"


def test_preview_order(data_file, capsys):
    assert run(data_file, "preview-order", "--group", "g1", "--algorithm", "quota_based") == 0
    out = capsys.readouterr().out
    assert out.index("Clara") < out.index("Bengt") < out.index("Anna")
    assert "quota 2.0 pts" in out
    assert "Based on occasion prev" in out


def test_fairness_json(data_file, capsys):
    assert run(data_file, "fairness", "--group", "g1", "--json") == 0
    out = capsys.readouterr().out
    snapshot = json.loads(out[out.index("{"):])
    assert snapshot["total_points"] == 15.0
    assert snapshot["member_count"] == 3
    assert [m["member_id"] for m in snapshot["members"]] == ["b", "c", "a"]


def test_export_requires_occasion(data_file, tmp_path):
    assert run(data_file, "export", "--report", "turn_order", "--output", str(tmp_path / "x.csv")) == 2
    assert run(data_file, "export", "--report", "turn_order", "--occasion", "missing",
               "--output", str(tmp_path / "x.csv")) == 1


def test_validation_errors_reported(data_file, capsys):
    assert run(data_file, "distribute", "--group", "g1", "--start", "2025-03-05", "--end", "2025-03-05") == 1
    assert "ERROR" in capsys.readouterr().err


def test_parser_rejects_unknown_algorithm():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["preview-order", "--group", "g1", "--algorithm", "lottery"])


def test_distribute_skips_completed_work_in_range(data_file):
    dm = DataManager(str(data_file))
    dm.claim_instance("i0", "c")
    dm.complete_instance("i0", completed_at=datetime(2025, 3, 3, 10))
    dm.add_completion(CompletionRecord("a", 3, datetime(2025, 2, 20), group_id="g1"))
    dm.add_completion(CompletionRecord("b", 5, datetime(2025, 2, 21), group_id="g1"))
    dm.save_data()

    # Clara's two points from i0 are counted once: a=3, b=5, c=2
    assert run(data_file, "distribute", "--group", "g1", "--start", "2025-03-03", "--apply") == 0
    reloaded = DataManager(str(data_file))
    assert reloaded.get_instance("i1").assigned_member_id == "c"
    assert reloaded.get_instance("i2").assigned_member_id == "a"
    assert reloaded.get_instance("i0").assigned_member_id == "c"


def test_distribute_respects_assignments_before_range(data_file):
    dm = DataManager(str(data_file))
    anna = dm.get_member("a")
    anna.limits = MemberLimits(max_per_week=1)
    dm.update_member(anna)
    dm.claim_instance("i0", "a")
    dm.save_data()

    assert run(data_file, "distribute", "--group", "g1", "--start", "2025-03-04", "--apply") == 0
    reloaded = DataManager(str(data_file))
    # Anna already has her one shift this week
    assert reloaded.get_instance("i1").assigned_member_id == "c"
    assert reloaded.get_instance("i2").assigned_member_id == "c"
