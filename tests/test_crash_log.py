"""Tests for crash logs."""

from pathlib import Path

from taskwing import crash_log
from taskwing.config import crash_log_dir


def raise_and_catch():
    try:
        raise RuntimeError("index exploded")
    except RuntimeError as exc:
        return exc


class TestCrashLog:
    """Tests for write_crash_log and prune_crash_logs."""

    def test_write(self, temp_dir: Path):
        """The log carries the error, traceback, last prompt and input."""
        crash_log.remember_prompt("[user]: analyse this")
        crash_log.remember_input("taskwing bootstrap")
        path = crash_log.write_crash_log(temp_dir, raise_and_catch(), command="bootstrap")

        assert path is not None
        assert path.parent == crash_log_dir(temp_dir)
        assert path.name.startswith("crash_") and path.suffix == ".log"
        text = path.read_text(encoding="utf-8")
        assert "Command: bootstrap" in text
        assert "Error: RuntimeError: index exploded" in text
        assert "Traceback:" in text
        assert "Last prompt:\n[user]: analyse this" in text
        assert "Last input:\ntaskwing bootstrap" in text

    def test_prompt_is_capped(self):
        """Only the tail of very long prompts is kept."""
        crash_log.remember_prompt("a" * 10 + "b" * crash_log.MAX_PROMPT_CHARS)
        crash_log.remember_input("x" * 1000)
        assert crash_log._last_prompt == "b" * crash_log.MAX_PROMPT_CHARS
        assert len(crash_log._last_input) == crash_log.MAX_INPUT_CHARS

    def test_prune_keeps_newest(self, temp_dir: Path):
        """Only the newest logs by name survive."""
        for i in range(13):
            (temp_dir / f"crash_20240101_0000{i:02d}.log").write_text("x", encoding="utf-8")
        (temp_dir / "notes.txt").write_text("keep", encoding="utf-8")

        removed = crash_log.prune_crash_logs(temp_dir, keep=10)
        assert removed == 3
        names = sorted(p.name for p in temp_dir.glob("crash_*.log"))
        assert names[0] == "crash_20240101_000003.log"
        assert len(names) == 10
        assert (temp_dir / "notes.txt").exists()
