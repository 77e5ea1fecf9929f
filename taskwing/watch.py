"""Watch mode: batch file-system changes and feed them to incremental analysis."""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path, PurePosixPath
from typing import Callable, List, Optional, Set

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from . import patterns
from .cancellation import CancelToken
from .config import PROJECT_DIR_NAME
from .report import get_metrics

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE = 2.0
POLL_INTERVAL = 0.5


def is_watched_path(rel_path: str) -> bool:
    """Source, docs and config files outside ignored and hidden directories."""
    parts = PurePosixPath(rel_path).parts
    if not parts or parts[0] == PROJECT_DIR_NAME:
        return False
    for part in parts[:-1]:
        if patterns.should_ignore_dir(part) or patterns.should_skip_dot_entry(part, True):
            return False
    return (
        patterns.is_code_file(rel_path)
        or rel_path.lower().endswith(".md")
        or patterns.is_config_file(rel_path)
    )


class ChangeBatcher:
    """Collects changed paths until no event has arrived for ``debounce`` seconds."""

    def __init__(self, debounce: float = DEFAULT_DEBOUNCE, clock: Callable[[], float] = time.monotonic):
        self.debounce = debounce
        self._clock = clock
        self._lock = threading.Lock()
        self._pending: Set[str] = set()
        self._last_event = 0.0

    def add(self, rel_path: str) -> bool:
        if not is_watched_path(rel_path):
            return False
        with self._lock:
            self._pending.add(rel_path)
            self._last_event = self._clock()
        get_metrics().record_file_change()
        return True

    def pending(self) -> int:
        with self._lock:
            return len(self._pending)

    def flush(self, force: bool = False) -> List[str]:
        """Sorted batch once the debounce window has passed, else ``[]``."""
        with self._lock:
            if not self._pending:
                return []
            if not force and self._clock() - self._last_event < self.debounce:
                return []
            batch = sorted(self._pending)
            self._pending.clear()
        return batch


class _EventHandler(FileSystemEventHandler):
    def __init__(self, root: Path, batcher: ChangeBatcher) -> None:
        super().__init__()
        self.root = root
        self.batcher = batcher

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type not in ("created", "modified", "deleted", "moved"):
            return
        for raw in (event.src_path, getattr(event, "dest_path", "")):
            if not raw:
                continue
            try:
                rel = Path(str(raw)).resolve().relative_to(self.root).as_posix()
            except ValueError:
                continue
            self.batcher.add(rel)


def count_watched_files(root: Path) -> int:
    count = 0
    for path in root.rglob("*"):
        if path.is_file() and is_watched_path(path.relative_to(root).as_posix()):
            count += 1
    return count


def watch_repository(
    root: Path,
    on_batch: Callable[[List[str]], None],
    debounce: float = DEFAULT_DEBOUNCE,
    cancel: Optional[CancelToken] = None,
) -> None:
    """Block until *cancel* fires (or Ctrl+C), calling *on_batch* per settled batch."""
    root = Path(root).resolve()
    cancel = cancel or CancelToken()
    batcher = ChangeBatcher(debounce)
    get_metrics().files_watched = count_watched_files(root)

    observer = Observer()
    observer.schedule(_EventHandler(root, batcher), str(root), recursive=True)
    observer.start()
    logger.info("Watching %s (%d files, debounce %.1fs)", root, get_metrics().files_watched, debounce)
    try:
        while not cancel.cancelled:
            batch = batcher.flush()
            if batch:
                on_batch(batch)
            time.sleep(POLL_INTERVAL)
    finally:
        observer.stop()
        observer.join()
