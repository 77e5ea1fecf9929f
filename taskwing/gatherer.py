"""Repository context gathering for analysis agents.

Walks a repository, prioritises files and emits line-numbered, size-bounded
excerpts for LLM prompts.  Every file read or skipped is recorded in a
:class:`~taskwing.models.Coverage` so bootstrap reports can show what the
agents actually saw.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from . import patterns
from .budget import ContextBudget, estimate_tokens
from .errors import BudgetMissingError
from .models import Coverage

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n...[truncated]"

# Source gathering limits
MAX_SOURCE_FILES = 50
MAX_CHARS_PER_FILE = 4000
MAX_TOTAL_CHARS = 150_000
PHASE1_BUDGET = 5
PHASE1_MAX_LINES = 200
PHASE3_MAX_LINES = 150

ENTRY_POINTS = (
    "main.go", "main.ts", "main.py", "main.rs",
    "index.ts", "index.js", "app.ts", "app.py",
    "server.go", "server.ts", "server.py",
)

PACKAGE_DOC_DIRS = ("internal", "pkg", "lib", "src", "app", "server", "api")
IMPORTANT_MD_FILES = frozenset({
    "readme.md", "agents.md", "claude.md", "gemini.md", "design.md",
    "arch.md", "api.md", "schema.md", "security.md",
})

KEY_FILES = ("README.md", "go.mod", "package.json", "Makefile", "makefile", "Justfile")

# Lower score = higher priority. Directory tiers match by substring of the
# lowercased directory, file tiers by lowercased base name.
PRIORITY_DIRS: Dict[str, int] = {
    "middleware": 1, "middlewares": 1, "auth": 1, "authentication": 1,
    "authorization": 1, "security": 1, "guards": 1, "interceptors": 1,
    "handler": 2, "handlers": 2, "controller": 2, "controllers": 2,
    "router": 2, "routers": 2, "routes": 2, "views": 2, "endpoints": 2,
    "error": 3, "errors": 3, "exceptions": 3, "resilience": 3,
    "circuit": 3, "retry": 3,
    "config": 4, "configuration": 4, "settings": 4, "model": 4, "models": 4,
    "entity": 4, "entities": 4, "types": 4, "schema": 4, "schemas": 4, "dto": 4,
    "service": 5, "services": 5, "usecase": 5, "usecases": 5,
    "repository": 5, "repositories": 5, "api": 5, "server": 5,
    "internal": 6, "pkg": 6, "src": 6, "lib": 6, "cmd": 6, "app": 6,
    "core": 6, "domain": 6,
}

PRIORITY_FILES: Dict[str, int] = {
    "main": 1, "index": 1, "app": 1, "server": 1,
    "middleware": 1, "auth": 1, "cors": 1,
    "handler": 2, "controller": 2, "router": 2, "routes": 2,
    "error": 3, "errors": 3, "config": 4, "settings": 4,
    "model": 4, "models": 4, "types": 4, "schema": 4,
    "service": 5, "repository": 5,
}

BOOST_KEYWORDS = ("middleware", "auth", "cors", "rate", "circuit", "error")


# ===================================================================
# Text helpers
# ===================================================================

def truncate_utf8(data: bytes, max_bytes: int) -> Tuple[str, bool]:
    """Cut *data* to at most *max_bytes* without splitting a UTF-8 sequence.

    Trailing bytes are dropped until the remainder decodes.  Returns the
    decoded text and whether anything was cut.
    """
    if len(data) <= max_bytes:
        return data.decode("utf-8", errors="replace"), False
    cut = data[:max_bytes]
    # A UTF-8 sequence is at most 4 bytes long.
    for _ in range(4):
        try:
            return cut.decode("utf-8"), True
        except UnicodeDecodeError as exc:
            if exc.start < len(cut) - 3:
                break
            cut = cut[:-1]
    return cut.decode("utf-8", errors="replace"), True


def add_line_numbers(content: str) -> str:
    """Prefix each line with its 1-indexed number as ``"   1: text"``."""
    return "".join(f"{i:4d}: {line}\n" for i, line in enumerate(content.split("\n"), start=1))


def score_source_file(rel_path: str) -> int:
    """Priority score for a code file (lower is more important)."""
    p = Path(rel_path)
    directory = p.parent.as_posix().lower()
    name_lower = p.name.lower()
    score = 100
    for dir_name, priority in PRIORITY_DIRS.items():
        if dir_name in directory and priority < score:
            score = priority
    base = p.stem.lower()
    if base in PRIORITY_FILES and PRIORITY_FILES[base] < score:
        score = PRIORITY_FILES[base]
    for keyword in BOOST_KEYWORDS:
        if keyword in name_lower:
            score = min(score, 2)
    return score


def score_config_file(name: str) -> int:
    lower = name.lower()
    if "vite.config" in lower or "tsconfig" in lower:
        return 110
    return 120


def score_ci_file(name: str) -> int:
    lower = name.lower()
    if "ci.yml" in lower or "deploy" in lower:
        return 140
    return 150


@dataclass
class ScoredFile:
    path: str
    score: int


# ===================================================================
# Gatherer
# ===================================================================

class ContextGatherer:
    """Collects file excerpts from a repository root.

    When a :class:`ContextBudget` is attached, each emitted section reserves
    its estimated tokens; sections that do not fit are skipped and recorded.
    """

    def __init__(self, base_path: Path | str, budget: Optional[ContextBudget] = None):
        self.base_path = Path(base_path).resolve()
        self.budget = budget
        self.coverage = Coverage()

    # ---------------------------------------------------------------
    # Internals
    # ---------------------------------------------------------------

    def _rel(self, path: Path) -> str:
        return path.relative_to(self.base_path).as_posix()

    def _fits_budget(self, rel_path: str, section: str) -> bool:
        if self.budget is None:
            return True
        if self.budget.try_reserve(estimate_tokens(section)):
            return True
        self.coverage.record_skip(rel_path, "token budget exhausted")
        return False

    def _read_capped(self, path: Path, max_bytes: int, marker: str = "") -> Optional[Tuple[str, bool]]:
        try:
            data = path.read_bytes()
        except OSError:
            return None
        text, truncated = truncate_utf8(data, max_bytes)
        if truncated and marker:
            text += marker
        return text, truncated

    def _monorepo_roots(self) -> List[str]:
        roots = [""]
        try:
            entries = sorted(self.base_path.iterdir())
        except OSError:
            return roots
        for entry in entries:
            if not entry.is_dir():
                continue
            if patterns.should_ignore_dir(entry.name) or patterns.should_skip_dot_entry(entry.name, True):
                continue
            if any((entry / marker).exists() for marker in patterns.MONOREPO_MARKERS):
                roots.append(entry.name)
        return roots

    def _walk(self, start: Path) -> Iterable[Tuple[Path, List[str], List[str]]]:
        """``os.walk`` in lexical order with ignored and dot directories pruned."""
        for dirpath, dirnames, filenames in os.walk(start):
            dirnames[:] = sorted(
                d for d in dirnames
                if not patterns.should_ignore_dir(d) and not patterns.should_skip_dot_entry(d, True)
            )
            yield Path(dirpath), dirnames, sorted(filenames)

    # ---------------------------------------------------------------
    # Documentation
    # ---------------------------------------------------------------

    def gather_markdown_docs(self) -> str:
        """Markdown from the root, ``docs/`` and package-level docs, line-numbered."""
        parts: List[str] = []
        seen: set = set()

        def from_dir(directory: Path, prefix: str, max_len: int) -> None:
            try:
                entries = sorted(directory.iterdir())
            except OSError:
                return
            for entry in entries:
                if entry.is_dir() or not entry.name.lower().endswith(".md"):
                    continue
                rel = f"{prefix}/{entry.name}" if prefix else entry.name
                key = rel.lower()
                if key in seen:
                    continue
                read = self._read_capped(entry, max_len)
                if read is None:
                    continue
                content, truncated = read
                section = f"## FILE: {rel}\n```\n{add_line_numbers(content)}\n```\n\n"
                if not self._fits_budget(rel, section):
                    continue
                self.coverage.record_read(rel, content, truncated)
                parts.append(section)
                seen.add(key)

        from_dir(self.base_path, "", 4000)
        from_dir(self.base_path / "docs", "docs", 3000)

        package_dirs = list(PACKAGE_DOC_DIRS)
        try:
            top_entries = sorted(self.base_path.iterdir())
        except OSError:
            top_entries = []
        for entry in top_entries:
            if entry.is_dir() and not patterns.should_ignore_dir(entry.name):
                for sub in ("internal", "pkg", "src"):
                    if (entry / sub).is_dir():
                        package_dirs.append(f"{entry.name}/{sub}")

        for pkg_dir in package_dirs:
            search_dir = self.base_path / pkg_dir
            if not search_dir.is_dir():
                continue
            for dirpath, dirnames, filenames in os.walk(search_dir):
                dirnames[:] = sorted(d for d in dirnames if not patterns.should_ignore_dir(d))
                for name in sorted(filenames):
                    if name.lower() not in IMPORTANT_MD_FILES:
                        continue
                    path = Path(dirpath) / name
                    rel = self._rel(path)
                    key = rel.lower()
                    if key in seen:
                        continue
                    seen.add(key)
                    read = self._read_capped(path, 3000, TRUNCATION_MARKER)
                    if read is None:
                        continue
                    content, truncated = read
                    section = f"## PACKAGE DOC: {rel}\n```\n{add_line_numbers(content)}\n```\n\n"
                    if not self._fits_budget(rel, section):
                        continue
                    self.coverage.record_read(rel, content, truncated)
                    parts.append(section)
        return "".join(parts)

    def gather_key_files(self) -> str:
        """Manifests, rule files and important dotfiles from the root."""
        names = list(KEY_FILES) + list(patterns.RULE_FILES) + sorted(patterns.IMPORTANT_DOT_FILES)
        parts: List[str] = []
        seen: set = set()
        for rel in names:
            if rel in seen:
                continue
            seen.add(rel)
            path = self.base_path / rel
            if not path.is_file():
                continue
            read = self._read_capped(path, 3000, TRUNCATION_MARKER)
            if read is None:
                continue
            content, truncated = read
            section = f"## {rel}\n```\n{content}\n```\n\n"
            if not self._fits_budget(rel, section):
                continue
            self.coverage.record_read(rel, content, truncated)
            parts.append(section)
        return "".join(parts)

    def gather_ci_configs(self) -> str:
        """GitHub Actions, GitLab CI and CircleCI configuration."""
        candidates: List[str] = []
        workflows = self.base_path / ".github" / "workflows"
        if workflows.is_dir():
            for entry in sorted(workflows.iterdir()):
                if entry.is_file() and entry.name.endswith((".yml", ".yaml")):
                    candidates.append(f".github/workflows/{entry.name}")
        candidates += [".gitlab-ci.yml", ".circleci/config.yml"]

        parts: List[str] = []
        for rel in candidates:
            path = self.base_path / rel
            if not path.is_file():
                continue
            read = self._read_capped(path, 3000, TRUNCATION_MARKER)
            if read is None:
                continue
            content, truncated = read
            section = f"## {rel}\n```yaml\n{content}\n```\n\n"
            if not self._fits_budget(rel, section):
                continue
            self.coverage.record_read(rel, content, truncated)
            parts.append(section)
        return "".join(parts)

    def gather_specific_files(self, files: Iterable[str], line_numbers: bool = False) -> str:
        """Read an explicit list of repo-relative files (watch mode).

        Requires a budget: unbounded reads of caller-supplied lists are refused.
        """
        if self.budget is None:
            raise BudgetMissingError("gather_specific_files requires a context budget")
        parts: List[str] = []
        for rel in files:
            path = self.base_path / rel
            if not path.is_file():
                continue
            read = self._read_capped(path, 8000)
            if read is None:
                self.coverage.record_skip(rel, "read error")
                continue
            content, truncated = read
            body = add_line_numbers(content) if line_numbers else content
            section = f"## {rel}\n```\n{body}\n```\n\n"
            if not self._fits_budget(rel, section):
                continue
            self.coverage.record_read(rel, content, truncated)
            parts.append(section)
        return "".join(parts)

    # ---------------------------------------------------------------
    # Source code
    # ---------------------------------------------------------------

    def gather_source_code(
        self,
        max_files: int = MAX_SOURCE_FILES,
        max_per_file: int = MAX_CHARS_PER_FILE,
        max_total_chars: int = MAX_TOTAL_CHARS,
    ) -> str:
        """Entry points first, then the highest-priority code, config and CI files."""
        parts: List[str] = []
        seen: set = set()
        state = {"gathered": 0, "total": 0}

        def add_file(rel: str, max_lines: int) -> bool:
            if state["gathered"] >= max_files:
                self.coverage.record_skip(rel, "max files limit reached")
                return False
            if rel in seen:
                return False
            if state["total"] >= max_total_chars:
                self.coverage.record_skip(rel, "character budget exhausted")
                return False
            path = self.base_path / rel
            if not path.is_file():
                return False
            if not (patterns.is_code_file(rel) or patterns.is_config_file(rel)):
                self.coverage.record_skip(rel, "not a recognized code/config file")
                return False
            try:
                content = path.read_text(encoding="utf-8", errors="replace")
            except OSError as exc:
                self.coverage.record_skip(rel, f"read error: {exc}")
                return False
            seen.add(rel)

            lines = content.split("\n")
            truncated = False
            if len(lines) > max_lines:
                lines = lines[:max_lines]
                truncated = True
            output = "".join(f"{i:4d}\t{line}\n" for i, line in enumerate(lines, start=1))
            if len(output) > max_per_file:
                output = output[:max_per_file] + TRUNCATION_MARKER
                truncated = True
            if state["total"] + len(output) > max_total_chars:
                self.coverage.record_skip(rel, "would exceed character budget")
                return False
            section = f"## {rel}\n```\n{output}\n```\n\n"
            if not self._fits_budget(rel, section):
                return False
            parts.append(section)
            state["gathered"] += 1
            state["total"] += len(output)
            self.coverage.record_read(rel, content, truncated)
            return True

        roots = self._monorepo_roots()

        # Phase 1: canonical entry points
        phase1_added = 0
        for root in roots:
            for sub in ("", "cmd", "src"):
                for entry in ENTRY_POINTS:
                    if phase1_added >= PHASE1_BUDGET:
                        break
                    rel = "/".join(p for p in (root, sub, entry) if p)
                    if (self.base_path / rel).is_file() and add_file(rel, PHASE1_MAX_LINES):
                        phase1_added += 1

        # Phase 2: score every candidate
        candidates = self.collect_candidates(roots, seen)

        # Phase 3: consume in score order
        for c in candidates:
            if state["gathered"] >= max_files or state["total"] >= max_total_chars:
                break
            add_file(c.path, PHASE3_MAX_LINES)

        logger.debug(
            "Gathered %d source files (%d chars, %d candidates) from %s",
            state["gathered"], state["total"], len(candidates), self.base_path,
        )
        if state["gathered"] == 0:
            return "No source code files found."
        return "".join(parts)

    def collect_candidates(self, roots: Optional[List[str]] = None, exclude: Optional[set] = None) -> List[ScoredFile]:
        """Walk all project roots and return scored candidates, best first."""
        roots = roots if roots is not None else self._monorepo_roots()
        exclude = exclude or set()
        candidates: List[ScoredFile] = []
        candidate_seen: set = set()
        for root in roots:
            start = self.base_path / root if root else self.base_path
            for dirpath, dirnames, filenames in self._walk(start):
                for d in list(dirnames):
                    if (dirpath / d).is_symlink():
                        self.coverage.record_skip(self._rel(dirpath / d), "symlink")
                        dirnames.remove(d)
                for name in filenames:
                    path = dirpath / name
                    rel = self._rel(path)
                    if path.is_symlink():
                        self.coverage.record_skip(rel, "symlink")
                        continue
                    if rel in exclude or rel in candidate_seen:
                        continue
                    is_code = patterns.is_code_file(rel)
                    is_config = patterns.is_config_file(rel)
                    is_ci = patterns.is_ci_file(rel)
                    if not (is_code or is_config or is_ci):
                        continue
                    candidate_seen.add(rel)
                    if is_code and patterns.is_test_file(rel):
                        self.coverage.record_skip(rel, "test file")
                        continue
                    if is_code:
                        score = score_source_file(rel)
                    elif is_config:
                        score = score_config_file(name)
                    else:
                        score = score_ci_file(name)
                    candidates.append(ScoredFile(rel, score))
        candidates.sort(key=lambda c: c.score)
        return candidates

    # ---------------------------------------------------------------
    # Tree
    # ---------------------------------------------------------------

    def list_directory_tree(self, max_depth: int = 2) -> str:
        """Indented tree of the project, directories suffixed with ``/``."""
        if max_depth <= 0:
            max_depth = 2
        lines: List[str] = []

        def visit(directory: Path, depth: int) -> None:
            try:
                entries = sorted(directory.iterdir())
            except OSError:
                return
            for entry in entries:
                is_dir = entry.is_dir() and not entry.is_symlink()
                if patterns.should_ignore_dir(entry.name) or patterns.should_skip_dot_entry(entry.name, is_dir):
                    continue
                lines.append(f"{'  ' * (depth - 1)}{entry.name}{'/' if is_dir else ''}")
                if is_dir and depth < max_depth:
                    visit(entry, depth + 1)

        visit(self.base_path, 1)
        return "\n".join(lines) + ("\n" if lines else "")
