"""Bootstrap coverage reports and process-wide agent metrics."""

from __future__ import annotations

import json
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from .models import Coverage, FileRead, Finding, SkippedFile

REPORT_FILE_NAME = "bootstrap-report.json"


@dataclass
class CoverageStats:
    files_analyzed: int = 0
    files_skipped: int = 0
    total_files: int = 0
    coverage_percent: float = 0.0
    characters_read: int = 0
    files_read: List[FileRead] = field(default_factory=list)
    files_skipped_log: List[SkippedFile] = field(default_factory=list)

    @classmethod
    def from_coverage(cls, coverage: Coverage) -> "CoverageStats":
        stats = cls(
            files_read=list(coverage.files_read),
            files_skipped_log=list(coverage.files_skipped),
            characters_read=coverage.characters_read,
        )
        stats.files_analyzed = len(stats.files_read)
        stats.files_skipped = len(stats.files_skipped_log)
        stats.total_files = stats.files_analyzed + stats.files_skipped
        return stats


@dataclass
class AgentReport:
    name: str
    duration: float = 0.0
    tokens_used: int = 0
    finding_count: int = 0
    coverage: CoverageStats = field(default_factory=CoverageStats)
    error: Optional[str] = None


@dataclass
class BootstrapReport:
    project_path: str
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    duration: float = 0.0
    coverage: CoverageStats = field(default_factory=CoverageStats)
    agent_reports: Dict[str, AgentReport] = field(default_factory=dict)
    finding_counts: Dict[str, int] = field(default_factory=dict)
    total_findings: int = 0

    def add_agent_report(self, name: str, report: AgentReport) -> None:
        self.agent_reports[name] = report

    def finalize(self, findings: List[Finding], duration: float) -> None:
        """Aggregate counts and coverage; files read by several agents count once."""
        self.duration = duration
        self.total_findings = len(findings)
        self.finding_counts = {}
        for f in findings:
            self.finding_counts[f.kind] = self.finding_counts.get(f.kind, 0) + 1

        coverage = CoverageStats()
        seen = set()
        for report in self.agent_reports.values():
            for fr in report.coverage.files_read:
                if fr.path in seen:
                    continue
                seen.add(fr.path)
                coverage.files_read.append(fr)
                coverage.characters_read += fr.characters
            coverage.files_skipped_log.extend(report.coverage.files_skipped_log)
        coverage.files_analyzed = len(coverage.files_read)
        coverage.files_skipped = len(coverage.files_skipped_log)
        coverage.total_files = coverage.files_analyzed + coverage.files_skipped
        if coverage.total_files > 0:
            coverage.coverage_percent = coverage.files_analyzed / coverage.total_files * 100
        self.coverage = coverage

    def to_dict(self) -> dict:
        return asdict(self)

    def save(self, directory: Path) -> Path:
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / REPORT_FILE_NAME
        path.write_text(json.dumps(self.to_dict(), indent=2), encoding="utf-8")
        return path

    def summary(self) -> str:
        counts = ", ".join(f"{n} {kind}" for kind, n in sorted(self.finding_counts.items())) or "none"
        return (
            f"{self.total_findings} findings ({counts}) from {len(self.agent_reports)} agents; "
            f"{self.coverage.files_analyzed} files analyzed, {self.coverage.files_skipped} skipped "
            f"({self.coverage.coverage_percent:.1f}% coverage) in {self.duration:.1f}s"
        )


# ===================================================================
# Metrics
# ===================================================================

@dataclass
class AgentStats:
    runs: int = 0
    errors: int = 0


@dataclass
class MetricsSnapshot:
    total_runs: int = 0
    total_findings: int = 0
    total_tool_calls: int = 0
    total_errors: int = 0
    total_duration: float = 0.0
    avg_run_duration: float = 0.0
    agent_stats: Dict[str, AgentStats] = field(default_factory=dict)
    files_watched: int = 0
    changes_detected: int = 0
    changes_batched: int = 0

    def __str__(self) -> str:
        lines = [
            "=== Agent Metrics ===",
            f"Total Runs: {self.total_runs}",
            f"Total Findings: {self.total_findings}",
            f"Total Tool Calls: {self.total_tool_calls}",
            f"Total Errors: {self.total_errors}",
            f"Total Duration: {self.total_duration:.3f}s",
            f"Avg Run Duration: {self.avg_run_duration:.3f}s",
        ]
        if self.agent_stats:
            lines.append("\n--- Per-Agent ---")
            for name, stats in sorted(self.agent_stats.items()):
                lines.append(f"{name}: {stats.runs} runs, {stats.errors} errors")
        if self.files_watched or self.changes_detected:
            lines.append("\n--- Watch Mode ---")
            lines.append(f"Files Watched: {self.files_watched}")
            lines.append(f"Changes Detected: {self.changes_detected}")
            lines.append(f"Batches Processed: {self.changes_batched}")
        return "\n".join(lines) + "\n"


class AgentMetrics:
    """Lock-protected counters shared by every agent in the process."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.reset()

    def reset(self) -> None:
        with self._lock:
            self._runs = 0
            self._findings = 0
            self._tool_calls = 0
            self._errors = 0
            self._duration = 0.0
            self._agents: Dict[str, AgentStats] = {}
            self.files_watched = 0
            self._changes = 0
            self._batches = 0

    def record_run(self, agent: str, findings: int, duration: float, error: Optional[str] = None) -> None:
        with self._lock:
            self._runs += 1
            self._findings += findings
            self._duration += duration
            stats = self._agents.setdefault(agent, AgentStats())
            stats.runs += 1
            if error:
                self._errors += 1
                stats.errors += 1

    def record_tool_call(self) -> None:
        with self._lock:
            self._tool_calls += 1

    def record_file_change(self) -> None:
        with self._lock:
            self._changes += 1

    def record_batch(self) -> None:
        with self._lock:
            self._batches += 1

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(
                total_runs=self._runs,
                total_findings=self._findings,
                total_tool_calls=self._tool_calls,
                total_errors=self._errors,
                total_duration=self._duration,
                avg_run_duration=self._duration / self._runs if self._runs else 0.0,
                agent_stats={k: AgentStats(v.runs, v.errors) for k, v in self._agents.items()},
                files_watched=self.files_watched,
                changes_detected=self._changes,
                changes_batched=self._batches,
            )


_metrics = AgentMetrics()


def get_metrics() -> AgentMetrics:
    return _metrics
