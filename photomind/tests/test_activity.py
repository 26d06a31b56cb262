import json
import os

import pytest

from photomind.activity import MAX_RECENT, ActivityReporter
from photomind.progress import ScanProgress


def _read(path):
    return json.loads(path.read_text())


def test_creates_activity_file(tmp_path):
    reporter = ActivityReporter("photomind-test", activity_dir=tmp_path)
    assert reporter.path == tmp_path / "photomind-test.json"
    data = _read(reporter.path)
    assert data["server"] == "photomind-test"
    assert data["state"] == "idle"
    assert data["pid"] == os.getpid()


def test_report_sets_busy_then_idle(tmp_path):
    reporter = ActivityReporter("photomind-test", activity_dir=tmp_path)

    with reporter.report("Starting face scan"):
        data = _read(reporter.path)
        assert data["state"] == "busy"
        assert data["operation"] == "Starting face scan"
        assert data["started_at"] is not None

    data = _read(reporter.path)
    assert data["state"] == "idle"
    assert data["operation"] is None
    assert data["recent"][0]["error"] is None


def test_recent_entries_newest_first_and_capped(tmp_path):
    reporter = ActivityReporter("photomind-test", activity_dir=tmp_path)
    for i in range(MAX_RECENT + 5):
        with reporter.report(f"Op {i}"):
            pass
    recent = _read(reporter.path)["recent"]
    assert len(recent) == MAX_RECENT
    assert recent[0]["operation"] == f"Op {MAX_RECENT + 4}"
    assert recent[0]["duration_s"] >= 0


def test_scan_progress_is_written(tmp_path):
    reporter = ActivityReporter("photomind-test", activity_dir=tmp_path)
    reporter.set_progress(ScanProgress("detecting", 5, 100, 3, "/p/a.jpg", job_id="j1").as_update())
    progress = _read(reporter.path)["progress"]
    assert progress["current"] == 5
    assert progress["total"] == 100
    assert progress["currentFile"] == "/p/a.jpg"
    assert progress["status"] == "detecting"


def test_exception_is_recorded_and_reraised(tmp_path):
    reporter = ActivityReporter("photomind-test", activity_dir=tmp_path)
    with pytest.raises(ValueError):
        with reporter.report("Failing op"):
            raise ValueError("boom")

    data = _read(reporter.path)
    assert data["state"] == "idle"
    assert data["recent"][0]["operation"] == "Failing op"
    assert data["recent"][0]["error"] == "boom"


def test_cleanup(tmp_path):
    reporter = ActivityReporter("photomind-test", activity_dir=tmp_path)
    assert reporter.path.exists()
    reporter.cleanup()
    assert not reporter.path.exists()
    reporter.cleanup()
