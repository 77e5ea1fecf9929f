"""Tests for bootstrap reports and agent metrics."""

import json
import threading
from pathlib import Path

from taskwing.models import Coverage, new_finding
from taskwing.report import REPORT_FILE_NAME, AgentReport, BootstrapReport, CoverageStats, get_metrics


def coverage(*reads, skipped=()):
    cov = Coverage()
    for path, content in reads:
        cov.record_read(path, content)
    for path in skipped:
        cov.record_skip(path, "too large")
    return cov


class TestBootstrapReport:
    """Tests for BootstrapReport."""

    def test_finalize_counts_files_once(self):
        """A file read by two agents is counted once."""
        report = BootstrapReport(project_path="/repo")
        report.add_agent_report("doc", AgentReport(
            name="doc", coverage=CoverageStats.from_coverage(coverage(("README.md", "abcd")))))
        report.add_agent_report("code", AgentReport(
            name="code", coverage=CoverageStats.from_coverage(
                coverage(("README.md", "abcd"), ("main.py", "xy"), skipped=["big.bin"]))))

        report.finalize([new_finding("decision", "A"), new_finding("decision", "B"),
                         new_finding("feature", "C")], duration=2.0)

        assert report.total_findings == 3
        assert report.finding_counts == {"decision": 2, "feature": 1}
        assert report.coverage.files_analyzed == 2
        assert report.coverage.files_skipped == 1
        assert report.coverage.characters_read == 6
        assert round(report.coverage.coverage_percent, 1) == 66.7
        assert report.summary() == (
            "3 findings (2 decision, 1 feature) from 2 agents; "
            "2 files analyzed, 1 skipped (66.7% coverage) in 2.0s"
        )

    def test_save(self, temp_dir: Path):
        """Reports are written as indented JSON."""
        report = BootstrapReport(project_path="/repo")
        report.add_agent_report("git", AgentReport(name="git", error="no git history available"))
        report.finalize([], duration=0.5)

        path = report.save(temp_dir / ".taskwing")
        assert path.name == REPORT_FILE_NAME
        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["project_path"] == "/repo"
        assert data["agent_reports"]["git"]["error"] == "no git history available"
        assert data["coverage"]["coverage_percent"] == 0.0

    def test_empty_summary(self):
        """No findings reads as none."""
        report = BootstrapReport(project_path="/repo")
        report.finalize([], duration=0.0)
        assert report.summary().startswith("0 findings (none) from 0 agents")


class TestMetrics:
    """Tests for AgentMetrics."""

    def test_record_and_snapshot(self):
        """Runs, errors and tool calls accumulate per process."""
        metrics = get_metrics()
        metrics.record_run("code", 3, 1.0)
        metrics.record_run("code", 0, 3.0, error="boom")
        metrics.record_run("doc", 2, 2.0)
        metrics.record_tool_call()

        snap = metrics.snapshot()
        assert snap.total_runs == 3
        assert snap.total_findings == 5
        assert snap.total_errors == 1
        assert snap.total_tool_calls == 1
        assert snap.avg_run_duration == 2.0
        assert snap.agent_stats["code"].runs == 2
        assert snap.agent_stats["code"].errors == 1

        text = str(snap)
        assert text.startswith("=== Agent Metrics ===\n")
        assert "code: 2 runs, 1 errors" in text
        assert "--- Watch Mode ---" not in text

    def test_watch_counters(self):
        """Watch statistics are shown once changes were seen."""
        metrics = get_metrics()
        metrics.files_watched = 12
        metrics.record_file_change()
        metrics.record_batch()

        text = str(metrics.snapshot())
        assert "Files Watched: 12" in text
        assert "Changes Detected: 1" in text
        assert "Batches Processed: 1" in text

    def test_thread_safety(self):
        """Concurrent recording loses no updates."""
        metrics = get_metrics()

        def work():
            for _ in range(200):
                metrics.record_tool_call()

        threads = [threading.Thread(target=work) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert metrics.snapshot().total_tool_calls == 1600

    def test_reset(self):
        """reset clears every counter."""
        metrics = get_metrics()
        metrics.record_run("doc", 1, 1.0)
        metrics.reset()
        assert metrics.snapshot().total_runs == 0
