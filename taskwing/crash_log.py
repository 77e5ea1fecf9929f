"""Crash logs for unhandled CLI failures.

The chain records the most recent prompt and the CLI the most recent user
input; both are written into ``.taskwing/crash_logs/crash_<timestamp>.log``
when a command dies, and only the newest logs are kept.
"""

from __future__ import annotations

import logging
import platform
import sys
import threading
import traceback
from datetime import datetime
from pathlib import Path
from typing import Optional

from . import __version__
from .config import MAX_CRASH_LOGS, crash_log_dir

logger = logging.getLogger(__name__)

MAX_PROMPT_CHARS = 2000
MAX_INPUT_CHARS = 500

_lock = threading.Lock()
_last_prompt = ""
_last_input = ""


def remember_prompt(prompt: str) -> None:
    global _last_prompt
    with _lock:
        _last_prompt = prompt[-MAX_PROMPT_CHARS:]


def remember_input(text: str) -> None:
    global _last_input
    with _lock:
        _last_input = text[:MAX_INPUT_CHARS]


def write_crash_log(repo_root: Path, exc: BaseException, command: str = "") -> Optional[Path]:
    """Write a crash report for *exc* and prune old ones. Returns the log path."""
    log_dir = crash_log_dir(repo_root)
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
    except OSError as err:
        logger.warning("Could not create crash log directory %s: %s", log_dir, err)
        return None

    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    path = log_dir / f"crash_{stamp}.log"
    with _lock:
        prompt, last_input = _last_prompt, _last_input
    body = "\n".join([
        f"TaskWing crash report ({stamp})",
        f"Version: {__version__}",
        f"Platform: {platform.platform()} / Python {sys.version.split()[0]}",
        f"Command: {command}",
        "",
        f"Error: {type(exc).__name__}: {exc}",
        "",
        "Traceback:",
        "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
        "Last prompt:",
        prompt[:MAX_PROMPT_CHARS] or "(none)",
        "",
        "Last input:",
        last_input[:MAX_INPUT_CHARS] or "(none)",
        "",
    ])
    try:
        path.write_text(body, encoding="utf-8")
    except OSError as err:
        logger.warning("Could not write crash log %s: %s", path, err)
        return None
    prune_crash_logs(log_dir)
    return path


def prune_crash_logs(log_dir: Path, keep: int = MAX_CRASH_LOGS) -> int:
    """Delete all but the newest *keep* crash logs; returns how many were removed."""
    logs = sorted(log_dir.glob("crash_*.log"), key=lambda p: p.name, reverse=True)
    removed = 0
    for stale in logs[keep:]:
        try:
            stale.unlink()
            removed += 1
        except OSError as err:
            logger.warning("Could not remove %s: %s", stale, err)
    return removed
