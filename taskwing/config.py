"""Configuration paths and constants for TaskWing."""

from __future__ import annotations

import os
from pathlib import Path

BASE_DIR = Path(os.environ.get("TASKWING_HOME", str(Path.home() / ".taskwing"))).expanduser()
CONFIG_FILE = BASE_DIR / "config.toml"

# Per-project state directory (lives at the repository root)
PROJECT_DIR_NAME = ".taskwing"
MEMORY_DIR_NAME = "memory"
MEMORY_DB_NAME = "memory.db"
CRASH_LOG_DIR_NAME = "crash_logs"
POLICIES_DIR_NAME = "policies"
MAX_CRASH_LOGS = 10
ARCHITECTURE_DOC_NAME = "ARCHITECTURE.md"

DEFAULT_EMBEDDING_DIM = 256

# Hard cap on any context budget, regardless of the model's advertised window.
MAX_SAFE_CONTEXT_BUDGET = 80_000


def project_dir(repo_root: Path) -> Path:
    """Return the ``.taskwing`` directory for *repo_root*."""
    return Path(repo_root) / PROJECT_DIR_NAME


def memory_db_path(repo_root: Path) -> Path:
    """Return the knowledge-store database path for *repo_root*."""
    return project_dir(repo_root) / MEMORY_DIR_NAME / MEMORY_DB_NAME


def crash_log_dir(repo_root: Path) -> Path:
    return project_dir(repo_root) / CRASH_LOG_DIR_NAME


def policies_dir(repo_root: Path) -> Path:
    return project_dir(repo_root) / POLICIES_DIR_NAME


def ensure_project_dirs(repo_root: Path) -> Path:
    """Create the per-project memory directory if needed and return it."""
    memory_dir = project_dir(repo_root) / MEMORY_DIR_NAME
    memory_dir.mkdir(parents=True, exist_ok=True)
    return memory_dir


def architecture_doc_path(repo_root: Path) -> Path:
    """Generated architecture overview read by the context assembler."""
    return project_dir(repo_root) / MEMORY_DIR_NAME / ARCHITECTURE_DOC_NAME
