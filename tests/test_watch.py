"""Tests for watch-mode change batching."""

import pytest

from taskwing.report import get_metrics
from taskwing.watch import ChangeBatcher, count_watched_files, is_watched_path


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


class TestWatchedPaths:
    """Tests for is_watched_path."""

    @pytest.mark.parametrize("path", ["main.py", "pkg/service.go", "docs/intro.md", "config.yaml",
                                      ".github/workflows/ci.yml", "Dockerfile"])
    def test_watched(self, path):
        """Code, markdown and config files are watched."""
        assert is_watched_path(path)

    @pytest.mark.parametrize("path", [".taskwing/memory/memory.db", "node_modules/x/index.js",
                                      ".cache/a.py", "image.png", "build/out.js", ""])
    def test_ignored(self, path):
        """Tool state, ignored and hidden directories and binaries are not."""
        assert not is_watched_path(path)


class TestChangeBatcher:
    """Tests for ChangeBatcher."""

    def test_debounce(self):
        """A batch is released only after the quiet period."""
        clock = FakeClock()
        batcher = ChangeBatcher(debounce=2.0, clock=clock)
        assert batcher.add("b.py")
        assert batcher.add("a.py")
        assert batcher.add("a.py")
        assert batcher.pending() == 2

        clock.now += 1.0
        assert batcher.flush() == []
        clock.now += 1.5
        assert batcher.flush() == ["a.py", "b.py"]
        assert batcher.pending() == 0
        assert batcher.flush(force=True) == []

    def test_new_event_extends_window(self):
        """Every event restarts the debounce timer."""
        clock = FakeClock()
        batcher = ChangeBatcher(debounce=2.0, clock=clock)
        batcher.add("a.py")
        clock.now += 1.9
        batcher.add("b.py")
        clock.now += 1.9
        assert batcher.flush() == []
        assert batcher.flush(force=True) == ["a.py", "b.py"]

    def test_unwatched_ignored(self):
        """Ignored paths never enter a batch or the metrics."""
        batcher = ChangeBatcher(clock=FakeClock())
        assert not batcher.add(".taskwing/memory/memory.db")
        assert batcher.pending() == 0
        assert get_metrics().snapshot().changes_detected == 0
        batcher.add("main.py")
        assert get_metrics().snapshot().changes_detected == 1


def test_count_watched_files(sample_repo):
    """The sample repository has its sources, docs and CI config watched."""
    assert count_watched_files(sample_repo) == 6
