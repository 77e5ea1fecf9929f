"""Tests for the ReAct repository tools."""

import shutil
from pathlib import Path

import pytest

from taskwing.errors import CommandNotAllowedError, PathTraversalError, ToolInputError
from taskwing.react_tools import (
    ExecTool,
    GrepTool,
    ListDirTool,
    ReadFileTool,
    create_tools,
    format_size,
    validate_relative_path,
)


class TestPathValidation:
    """Tests for validate_relative_path."""

    def test_rejects_traversal(self):
        """Parent segments and absolute paths are refused."""
        for bad in ("../etc/passwd", "a/../../b", "/etc/passwd"):
            with pytest.raises(PathTraversalError):
                validate_relative_path(bad)

    def test_normalises(self):
        """Empty paths mean the root; backslashes become slashes."""
        assert validate_relative_path("") == "."
        assert validate_relative_path("pkg\\service.py") == "pkg/service.py"
        assert validate_relative_path("./pkg/") == "pkg"


class TestReadFile:
    """Tests for read_file."""

    def test_traversal(self, sample_repo: Path):
        """Reading outside the repository fails."""
        with pytest.raises(PathTraversalError):
            ReadFileTool(sample_repo).invoke({"path": "../etc/passwd"})

    def test_numbered_lines(self, sample_repo: Path):
        """Content is returned with tab-separated line numbers."""
        out = ReadFileTool(sample_repo).invoke({"path": "main.py"})
        assert out.splitlines()[0] == '   1\t"""Entry point."""'

    def test_truncation(self, temp_dir: Path):
        """Long files are cut at max_lines with a marker."""
        (temp_dir / "long.txt").write_text("\n".join(str(i) for i in range(20)), encoding="utf-8")
        out = ReadFileTool(temp_dir).invoke({"path": "long.txt", "max_lines": 5})
        assert "[truncated: showing 5 of 20 lines]" in out
        assert "   6\t" not in out

    def test_missing_file(self, sample_repo: Path):
        """Missing files are reported in the result text."""
        assert ReadFileTool(sample_repo).invoke({"path": "nope.py"}) == "File not found: nope.py"

    def test_missing_argument(self, sample_repo: Path):
        """Schema violations become tool input errors."""
        with pytest.raises(ToolInputError):
            ReadFileTool(sample_repo).invoke({})


class TestListDir:
    """Tests for list_dir."""

    def test_listing(self, sample_repo: Path):
        """Directories and files are listed; hidden entries other than .github are skipped."""
        (sample_repo / ".env").write_text("SECRET=1", encoding="utf-8")
        out = ListDirTool(sample_repo).invoke({"max_depth": 1})
        assert "📁 pkg/" in out
        assert "📁 .github/" in out
        assert "  📄 service.py" in out
        assert ".env" not in out

    def test_traversal(self, sample_repo: Path):
        """Listing outside the repository fails."""
        with pytest.raises(PathTraversalError):
            ListDirTool(sample_repo).invoke({"path": ".."})

    def test_format_size(self):
        """Sizes use B, KB and MB."""
        assert format_size(10) == "(10B)"
        assert format_size(2048) == "(2.0KB)"
        assert format_size(3 * 1024 * 1024) == "(3.0MB)"


class TestExec:
    """Tests for exec_command."""

    def test_disallowed_command(self, sample_repo: Path):
        """Only whitelisted binaries run."""
        with pytest.raises(CommandNotAllowedError):
            ExecTool(sample_repo).invoke({"command": "bash", "args": ["-c", "ls"]})

    def test_shell_syntax_rejected(self, sample_repo: Path):
        """A command string with arguments is not a binary name."""
        with pytest.raises(CommandNotAllowedError):
            ExecTool(sample_repo).invoke({"command": "git log | head"})

    @pytest.mark.parametrize("args", [
        [".", "-name", "x.py", "-exec", "sh", "-c", "touch HACKED", ";"],
        [".", "-execdir", "rm", "{}", "+"],
        [".", "-name", "*.py", "-delete"],
        [".", "-fprintf", "out.txt", "%p"],
    ])
    def test_find_actions_rejected(self, sample_repo: Path, args):
        """find may only search, never run, delete or write."""
        with pytest.raises(ToolInputError, match="not allowed for find"):
            ExecTool(sample_repo).invoke({"command": "find", "args": args})
        assert not (sample_repo / "HACKED").exists()
        assert (sample_repo / "main.py").exists()

    @pytest.mark.parametrize("args", [
        ["-c", "core.pager=touch HACKED", "log"],
        ["--exec-path=/tmp", "log"],
        ["push", "origin"],
        [],
    ])
    def test_git_subcommand_required(self, sample_repo: Path, args):
        """git must start with a read-only subcommand."""
        with pytest.raises(ToolInputError, match="git subcommand"):
            ExecTool(sample_repo).invoke({"command": "git", "args": args})

    @pytest.mark.parametrize("args", [
        ["log", "--output=stolen.txt"],
        ["diff", "--no-index", "a", "b"],
        ["log", "--ext-diff"],
    ])
    def test_git_dangerous_options(self, sample_repo: Path, args):
        """Options that write files or spawn drivers are refused."""
        with pytest.raises(ToolInputError, match="not allowed for git"):
            ExecTool(sample_repo).invoke({"command": "git", "args": args})

    @pytest.mark.parametrize("command,args", [
        ("head", ["/etc/passwd"]),
        ("wc", ["-l", "../outside.txt"]),
        ("find", ["/", "-name", "id_rsa"]),
    ])
    def test_paths_stay_inside_repo(self, sample_repo: Path, command, args):
        """Path arguments are validated like read_file paths."""
        with pytest.raises(PathTraversalError):
            ExecTool(sample_repo).invoke({"command": command, "args": args})

    def test_tail_follow_rejected(self, sample_repo: Path):
        """Following a file would never return."""
        with pytest.raises(ToolInputError, match="not allowed for tail"):
            ExecTool(sample_repo).invoke({"command": "tail", "args": ["-f", "main.py"]})

    @pytest.mark.skipif(shutil.which("find") is None, reason="find not installed")
    def test_find_search_allowed(self, sample_repo: Path):
        """Plain find expressions still run."""
        out = ExecTool(sample_repo).invoke({"command": "find", "args": [".", "-name", "service.py"]})
        assert "pkg/service.py" in out

    @pytest.mark.skipif(shutil.which("wc") is None, reason="wc not installed")
    def test_allowed_command(self, sample_repo: Path):
        """Allowed commands run in the repository root."""
        out = ExecTool(sample_repo).invoke({"command": "wc", "args": ["-l", "main.py"]})
        assert "main.py" in out


class TestGrep:
    """Tests for grep_search."""

    @pytest.mark.skipif(shutil.which("grep") is None, reason="grep not installed")
    def test_matches_are_relative(self, sample_repo: Path):
        """Matches are reported relative to the repository root."""
        out = GrepTool(sample_repo).invoke({"pattern": "UserService"})
        assert "pkg/service.py:4:class UserService:" in out
        assert str(sample_repo) not in out

    @pytest.mark.skipif(shutil.which("grep") is None, reason="grep not installed")
    def test_no_matches(self, sample_repo: Path):
        """No matches is a plain message."""
        assert GrepTool(sample_repo).invoke({"pattern": "zzz_not_here"}) == "No matches found."


def test_create_tools(sample_repo: Path):
    """The agent gets all four tools with JSON schemas."""
    tools = create_tools(sample_repo)
    assert [t.name for t in tools] == ["read_file", "grep_search", "list_dir", "exec_command"]
    spec = tools[0].spec()
    assert spec.parameters["required"] == ["path"]
    assert "title" not in spec.parameters
