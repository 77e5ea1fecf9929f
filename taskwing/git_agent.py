"""Git agent: milestones and decisions from commit history.

History is read newest first, split into chunks of 50 commits and analysed
with a recency-weighted finding budget (``8 * 0.6**i``, at least 2).
"""

from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path
from typing import Callable, Dict, List, Tuple

from .agents import AgentInput, AgentOutput, BaseAgent, register_agent
from .cancellation import CancelToken
from .errors import OperationCancelled
from .models import Coverage, FileRead, Finding, new_finding
from .prompts import GIT_AGENT_TEMPLATE
from .schemas import GitAnalysis

logger = logging.getLogger(__name__)

GIT_MAX_COMMITS = 300
GIT_CHUNK_SIZE = 50
GIT_MAX_CHUNKS = 6
GIT_RECENT_MAX_ITEMS = 8
GIT_DECAY_FACTOR = 0.6
GIT_MIN_ITEMS = 2
GIT_TIMEOUT = 30.0
CHARS_PER_COMMIT = 80
GIT_LOG_PATH = ".git/logs/HEAD"

COMMIT_TYPES = ("feat", "fix", "refactor", "chore", "docs", "test", "perf")
MIN_SCOPE_COMMITS = 3

GitRunner = Callable[[List[str], Path], str]


def run_git(args: List[str], cwd: Path) -> str:
    """stdout of ``git <args>`` in *cwd*, or ``""`` when git fails."""
    try:
        proc = subprocess.run(
            ["git", *args], cwd=str(cwd), capture_output=True, text=True,
            errors="replace", stdin=subprocess.DEVNULL, timeout=GIT_TIMEOUT,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        logger.debug("git %s failed: %s", " ".join(args), exc)
        return ""
    if proc.returncode != 0:
        logger.debug("git %s exited %d: %s", " ".join(args), proc.returncode, proc.stderr.strip())
        return ""
    return proc.stdout


def max_findings_for_chunk(index: int) -> int:
    return max(GIT_MIN_ITEMS, int(GIT_RECENT_MAX_ITEMS * GIT_DECAY_FACTOR ** index))


def split_chunks(lines: List[str], size: int = GIT_CHUNK_SIZE) -> List[str]:
    return ["\n".join(lines[i:i + size]) for i in range(0, len(lines), size)]


def commit_statistics(commits: List[str]) -> Tuple[Dict[str, int], Dict[str, int]]:
    """Conventional-commit type counts and scope counts for ``hash date subject`` lines."""
    types: Dict[str, int] = {}
    scopes: Dict[str, int] = {}
    for line in commits:
        parts = line.split(" ", 2)
        if len(parts) < 3:
            continue
        message = parts[2]
        for kind in COMMIT_TYPES:
            if message.startswith(kind):
                types[kind] = types.get(kind, 0) + 1
                break
        start = message.find("(")
        if start != -1:
            end = message.find(")", start)
            if end != -1:
                scope = message[start + 1:end]
                scopes[scope] = scopes.get(scope, 0) + 1
    return types, scopes


class GitHistory:
    """Reads commit history, scoped to a monorepo subdirectory when needed."""

    def __init__(self, base_path: Path, runner: GitRunner = run_git) -> None:
        self.base_path = Path(base_path).resolve()
        self.runner = runner
        self.git_root = self._find_git_root()
        self.scope_path = self._scope_path()

    def _find_git_root(self) -> Path:
        top = self.runner(["rev-parse", "--show-toplevel"], self.base_path).strip()
        return Path(top).resolve() if top else self.base_path

    def _scope_path(self) -> str:
        if self.git_root == self.base_path:
            return ""
        rel = Path(os.path.relpath(self.base_path, self.git_root)).as_posix()
        if rel.startswith(".."):
            logger.warning(
                "Invalid git scope %r (git root %s, project %s); analysing the full repository",
                rel, self.git_root, self.base_path,
            )
            return ""
        return "" if rel == "." else rel

    def _git(self, args: List[str]) -> str:
        if self.scope_path:
            args = [*args, "--", self.scope_path]
        return self.runner(args, self.git_root)

    def commits(self, limit: int = GIT_MAX_COMMITS) -> List[str]:
        out = self._git(["log", "--format=%h %ad %s", "--date=short", f"-{limit}"]).strip()
        return out.split("\n") if out else []

    def project_meta(self, commits: List[str]) -> str:
        types, scopes = commit_statistics(commits)
        parts: List[str] = []
        if self.scope_path:
            parts.append(f"Scoped to: {self.scope_path} (monorepo subdirectory)\n\n")
        parts.append(f"Total commits analyzed: {len(commits)}\n\n")
        if types:
            parts.append("Commit Type Distribution:\n")
            parts.extend(f"- {kind}: {types[kind]}\n" for kind in COMMIT_TYPES if kind in types)
            parts.append("\n")
        active = [(s, n) for s, n in sorted(scopes.items(), key=lambda kv: -kv[1]) if n >= MIN_SCOPE_COMMITS]
        if active:
            parts.append("Active Scopes:\n")
            parts.extend(f"- {scope}: {n} commits\n" for scope, n in active)
            parts.append("\n")
        contributors = self._git(["shortlog", "-sn", "--all", "-5"]).strip()
        if contributors:
            parts.append(f"Top Contributors:\n{contributors}\n\n")
        first = self.first_commit_date()
        if first:
            parts.append(f"Project Started: {first}\n")
        return "".join(parts)

    def first_commit_date(self) -> str:
        # -1 would be applied before --reverse and pick the newest commit.
        dates = self._git(["log", "--reverse", "--format=%ai"]).strip()
        return dates.split("\n", 1)[0] if dates else ""


class GitAgent(BaseAgent):
    name = "git"
    description = "Extracts decisions and patterns from git commit history"

    def __init__(self, *args, runner: GitRunner = run_git, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.runner = runner

    def execute(self, agent_input: AgentInput, cancel: CancelToken) -> AgentOutput:
        history = GitHistory(agent_input.base_path, self.runner)
        commits = history.commits()
        if not commits:
            return AgentOutput(agent_name=self.name, error="no git history available")

        chunks = split_chunks(commits)
        to_process = min(len(chunks), GIT_MAX_CHUNKS)
        meta = history.project_meta(commits)
        chain = self.new_chain(self.name, GIT_AGENT_TEMPLATE, GitAnalysis)

        findings: List[Finding] = []
        seen_titles = set()
        processed = total_commits = 0
        failures: List[str] = []
        for i, chunk in enumerate(chunks[:to_process]):
            total_commits += chunk.count("\n") + 1
            try:
                result = chain.invoke({
                    "project_name": agent_input.project_name,
                    "chunk_number": i + 1,
                    "total_chunks": to_process,
                    "max_findings": max_findings_for_chunk(i),
                    "is_recent": i == 0,
                    "project_meta": meta,
                    "commit_chunk": chunk,
                }, cancel=cancel)
            except OperationCancelled:
                raise
            except Exception as exc:  # a failed chunk does not abort the run
                logger.warning("[git] chunk %d/%d failed: %s", i + 1, to_process, exc)
                failures.append(f"chunk {i + 1}: {exc}")
                continue
            processed += 1
            for finding in self.parse_findings(result.parsed):
                key = finding.title.lower()
                if key not in seen_titles:
                    seen_titles.add(key)
                    findings.append(finding)

        if processed == 0 and failures:
            return AgentOutput(agent_name=self.name,
                               error=f"all {len(failures)} chunks failed: {'; '.join(failures)}")
        logger.info("[git] processed %d/%d chunks (%d failed), %d milestones from %d commits",
                    processed, to_process, len(failures), len(findings), total_commits)
        if not findings:
            return AgentOutput(
                agent_name=self.name,
                error=(f"analyzed {total_commits} commits across {processed} chunks but found no "
                       "significant milestones (commit messages may lack conventional format or "
                       "architectural decisions)"),
            )

        coverage = Coverage(files_read=[FileRead(
            path=f"{GIT_LOG_PATH} ({processed}/{to_process} chunks, {total_commits} commits)",
            characters=total_commits * CHARS_PER_COMMIT,
            lines=total_commits,
            truncated=len(chunks) > GIT_MAX_CHUNKS,
        )])
        return AgentOutput(agent_name=self.name, findings=findings, coverage=coverage,
                           raw_output="Chunked analysis with recency weighting")

    def parse_findings(self, parsed: GitAnalysis) -> List[Finding]:
        findings = []
        for milestone in parsed.milestones:
            if not milestone.title:
                continue
            findings.append(new_finding(
                "decision", milestone.title, milestone.description,
                confidence=milestone.confidence,
                source_agent=self.name,
                evidence=[ev.model_dump() for ev in milestone.evidence],
                metadata={"component": milestone.scope or "Project Evolution"},
            ))
        return findings


register_agent("git", GitAgent, "Git History", GitAgent.description)
