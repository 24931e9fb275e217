import pytest
import sys
from pathlib import Path
from datetime import datetime, timedelta
import tempfile
import os
import json

import pandas as pd

# Add src directory to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from duty_scheduler.config import FairnessConfig
from duty_scheduler.data_manager import DataManager, Member, WorkInstance, CompletionRecord
from duty_scheduler.fairness import FairnessScorer
from duty_scheduler.reporting import ExportManager, REPORT_DISTRIBUTION, REPORT_FAIRNESS, REPORT_TURN_ORDER
from duty_scheduler.scheduler_logic import AutoDistributor
from duty_scheduler.selection_process import SelectionProcessService

MONDAY = datetime(2025, 3, 3, 8, 0)


@pytest.fixture
def data_manager():
    """Fixture for a DataManager instance with actual temp file (safe for tests)."""
    with tempfile.NamedTemporaryFile(
        mode="w", suffix=".json", delete=False
    ) as tempfile_obj:
        temp_path = tempfile_obj.name
        # Begin with a minimal valid object
        tempfile_obj.write("{}")
    dm = DataManager(temp_path)
    dm.add_member(Member(id="a", display_name="Anna"))
    dm.add_member(Member(id="b", display_name="Bengt"))
    for offset in range(3):
        dm.add_instance(WorkInstance(id=f"i{offset}", scheduled_at=MONDAY + timedelta(days=offset),
                                     point_value=2, group_id="g1", name="Mucking out"))
    dm.add_completion(CompletionRecord("a", 4, datetime(2025, 2, 20), group_id="g1"))
    yield dm
    for path in (Path(temp_path), Path(temp_path).with_suffix(".bak")):
        if path.exists():
            os.unlink(path)


@pytest.fixture
def export_manager(data_manager):
    """Fixture for an ExportManager instance."""
    return ExportManager(data_manager)


@pytest.fixture
def distribution(data_manager):
    scorer = FairnessScorer(FairnessConfig(as_of=datetime(2025, 3, 1)), data_manager.get_completions("g1"))
    instances = data_manager.get_instances("g1")
    return AutoDistributor(scorer).distribute(instances, data_manager.get_members())


@pytest.fixture
def fairness_snapshot(data_manager):
    scorer = FairnessScorer(FairnessConfig(as_of=datetime(2025, 3, 1)), data_manager.get_completions("g1"))
    return scorer.distribution_summary(data_manager.get_members())


@pytest.fixture
def occasion(data_manager):
    service = SelectionProcessService(data_manager)
    created = service.create_occasion("g1", ["a", "b"], "quota_based", ["i0", "i1", "i2"], name="March")
    started = service.commit(created.id, confirm=True, activate=True)
    service.claim_instance(started.id, "a", "i0")
    return data_manager.get_occasion(started.id)


@pytest.mark.parametrize("format_type, suffix", [("pdf", ".pdf"), ("excel", ".xlsx"), ("csv", ".csv")])
@pytest.mark.parametrize("report_type, subject_fixture", [
    (REPORT_DISTRIBUTION, "distribution"),
    (REPORT_FAIRNESS, "fairness_snapshot"),
    (REPORT_TURN_ORDER, "occasion"),
])
def test_export_formats(export_manager, request, format_type, suffix, report_type, subject_fixture):
    """Every report exports in every format and produces a non-empty file."""
    subject = request.getfixturevalue(subject_fixture)
    with tempfile.NamedTemporaryFile(suffix=suffix, delete=False) as tmpfile:
        output_path = tmpfile.name

    success = export_manager.export_report(report_type, format_type, output_path, subject)

    assert success
    assert os.path.exists(output_path)
    assert os.path.getsize(output_path) > 0
    os.unlink(output_path)


def test_distribution_csv_content(export_manager, distribution):
    with tempfile.NamedTemporaryFile(suffix=".csv", delete=False) as tmpfile:
        output_path = tmpfile.name
    assert export_manager.export_report(REPORT_DISTRIBUTION, "csv", output_path, distribution)

    df = pd.read_csv(output_path)
    assert list(df["Instance"]) == ["i0", "i1", "i2"]
    # Anna starts with 4 points, so Bengt takes the first two
    assert list(df["Assigned To"]) == ["Bengt", "Bengt", "Anna"]
    os.unlink(output_path)


def test_distribution_excel_sheets(export_manager, distribution):
    with tempfile.NamedTemporaryFile(suffix=".xlsx", delete=False) as tmpfile:
        output_path = tmpfile.name
    assert export_manager.export_report(REPORT_DISTRIBUTION, "excel", output_path, distribution)

    sheets = pd.read_excel(output_path, sheet_name=None)
    assert {"Assignments", "Members", "Escalations"} <= set(sheets)
    assert len(sheets["Members"]) == 2
    os.unlink(output_path)


def test_pdf_export_bad_path(export_manager, distribution):
    """Export failure on an unwritable path returns False instead of raising."""
    result = export_manager.export_report(
        REPORT_DISTRIBUTION, "pdf", "/not_a_dir/this_file_should_fail.pdf", distribution
    )
    assert result is False


def test_unsupported_format_or_report(export_manager, distribution):
    with pytest.raises(ValueError):
        export_manager.export_report(REPORT_DISTRIBUTION, "docx", "out.docx", distribution)
    with pytest.raises(ValueError):
        export_manager.export_report("payroll", "csv", "out.csv", distribution)


def test_batch_export(export_manager, fairness_snapshot, tmp_path):
    results = export_manager.batch_export(REPORT_FAIRNESS, fairness_snapshot, str(tmp_path))
    assert results == {"pdf": True, "excel": True, "csv": True}
    assert len(list(tmp_path.iterdir())) == 3


def test_distribution_summary_text(export_manager, distribution):
    summary = export_manager.report_generator.create_distribution_summary(distribution)
    assert "DISTRIBUTION SUMMARY" in summary
    assert "Anna: 1 shifts" in summary
    assert "Bengt: 2 shifts" in summary
