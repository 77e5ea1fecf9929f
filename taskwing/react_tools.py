"""Whitelisted repository tools for the ReAct code agent.

Every tool takes a JSON object validated by a pydantic model, works relative
to a fixed base directory and returns plain text.  Invalid input raises
:class:`~taskwing.errors.ToolInputError`; the agent loop turns those into
tool messages so the model can correct itself.
"""

from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path, PurePosixPath
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, Field, ValidationError

from .cancellation import CancelToken, ensure_token
from .errors import CommandNotAllowedError, PathTraversalError, ToolInputError
from .llm import ToolSpec
from .patterns import should_ignore_dir

logger = logging.getLogger(__name__)

DEFAULT_MAX_LINES = 500
MAX_GREP_LINES = 50
DEFAULT_LIST_DEPTH = 2
MAX_LIST_ITEMS = 150
MAX_EXEC_OUTPUT = 10_000
SUBPROCESS_TIMEOUT = 30.0

ALLOWED_COMMANDS = frozenset({"git", "head", "tail", "wc", "find"})

# Read-only git subcommands; global options such as -c or --exec-path cannot precede them.
GIT_SUBCOMMANDS = frozenset({
    "log", "show", "diff", "blame", "shortlog", "rev-parse", "rev-list", "ls-files", "status", "describe",
})

# Options that run programs, write files or read outside the repository.
DENIED_ARGS = {
    "git": ("--config-env", "--exec-path", "--upload-pack", "--receive-pack", "--output",
            "--ext-diff", "--textconv", "--no-index"),
    "find": ("-exec", "-execdir", "-ok", "-okdir", "-delete", "-fprint", "-fprint0", "-fprintf", "-fls"),
    "head": (),
    "tail": ("-f", "-F", "--follow"),
    "wc": ("--files0-from",),
}

GREP_INCLUDES = ("*.go", "*.ts", "*.tsx", "*.js", "*.jsx", "*.json",
                 "*.yaml", "*.yml", "*.md", "*.py", "*.rs", "*.toml")
GREP_EXCLUDE_DIRS = ("node_modules", "vendor", ".git", "dist", "build")

# Dot entries list_dir still shows.
LIST_DOT_ALLOWED = (".github", ".env.example")


def validate_relative_path(path: str) -> str:
    """Normalised relative path; ``..`` segments and absolute paths are rejected."""
    raw = path.replace("\\", "/").strip()
    pure = PurePosixPath(raw)
    if pure.is_absolute() or ".." in pure.parts:
        raise PathTraversalError(path)
    return str(pure) if raw else "."


def validate_exec_args(command: str, args: List[str]) -> None:
    """Reject arguments that would let a whitelisted binary escape its read-only role."""
    if command == "git" and (not args or args[0] not in GIT_SUBCOMMANDS):
        sub = args[0] if args else ""
        raise ToolInputError(f"git subcommand '{sub}' not allowed. Allowed: {sorted(GIT_SUBCOMMANDS)}")
    denied = DENIED_ARGS[command]
    for arg in args:
        if any(arg == option or arg.startswith(option + "=") for option in denied):
            raise ToolInputError(f"argument '{arg}' not allowed for {command}")
        if command != "git" and not arg.startswith("-"):
            validate_relative_path(arg)


def format_size(size: int) -> str:
    if size < 1024:
        return f"({size}B)"
    if size < 1024 * 1024:
        return f"({size / 1024:.1f}KB)"
    return f"({size / (1024 * 1024):.1f}MB)"


# ===================================================================
# Input schemas
# ===================================================================

class ReadFileInput(BaseModel):
    path: str = Field(..., description="Relative path to file")
    max_lines: int = Field(default=DEFAULT_MAX_LINES, description="Max lines (default: 500)")


class GrepInput(BaseModel):
    pattern: str = Field(..., description="Pattern to search")
    path: str = Field(default="", description="Subdirectory to search")
    include: str = Field(default="", description="File glob pattern")


class ListDirInput(BaseModel):
    path: str = Field(default="", description="Subdirectory to list")
    max_depth: int = Field(default=DEFAULT_LIST_DEPTH, description="Max depth (default: 2)")


class ExecInput(BaseModel):
    command: str = Field(..., description="Binary name only (git, head, tail, wc, find). NOT a shell command.")
    args: List[str] = Field(default_factory=list, description="Command arguments as separate strings")


# ===================================================================
# Tools
# ===================================================================

class RepoTool:
    """Base class: a named tool bound to a repository directory."""

    name: str = ""
    description: str = ""
    args_schema: Type[BaseModel] = BaseModel

    def __init__(self, base_path: Path | str) -> None:
        self.base_path = Path(base_path).resolve()

    def spec(self) -> ToolSpec:
        schema = self.args_schema.model_json_schema()
        schema.pop("title", None)
        return ToolSpec(name=self.name, description=self.description, parameters=schema)

    def invoke(self, arguments: Optional[Dict[str, Any]], cancel: Optional[CancelToken] = None) -> str:
        try:
            args = self.args_schema.model_validate(arguments or {})
        except ValidationError as exc:
            raise ToolInputError(f"invalid arguments for {self.name}: {exc}") from exc
        return self._run(args, ensure_token(cancel))

    def _run(self, args: Any, cancel: CancelToken) -> str:
        raise NotImplementedError

    def _resolve(self, path: str) -> Path:
        clean = validate_relative_path(path)
        return self.base_path if clean == "." else self.base_path / clean


class ReadFileTool(RepoTool):
    name = "read_file"
    description = ("Read file contents with line numbers. Use this for gathering evidence "
                   "(snippets with line numbers). Path is relative to project root.")
    args_schema = ReadFileInput

    def _run(self, args: ReadFileInput, cancel: CancelToken) -> str:
        if not args.path:
            raise ToolInputError("path argument is required")
        clean = validate_relative_path(args.path)
        target = self.base_path / clean
        if not target.is_file():
            return f"File not found: {clean}"
        cancel.check()
        try:
            content = target.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            raise ToolInputError(f"read file {clean}: {exc}") from exc

        max_lines = args.max_lines if args.max_lines > 0 else DEFAULT_MAX_LINES
        lines = content.split("\n")
        total = len(lines)
        numbered = [f"{i:4d}\t{line}" for i, line in enumerate(lines[:max_lines], 1)]
        if total > max_lines:
            numbered.append(f"\n... [truncated: showing {max_lines} of {total} lines]")
        return "\n".join(numbered)


class GrepTool(RepoTool):
    name = "grep_search"
    description = "Search for text pattern across files. Returns matching lines with file:line."
    args_schema = GrepInput

    def _run(self, args: GrepInput, cancel: CancelToken) -> str:
        if not args.pattern:
            raise ToolInputError("pattern argument is required")
        search_path = self._resolve(args.path) if args.path else self.base_path

        cmd = ["grep", "-r", "-n", "-I", "--color=never"]
        includes = [args.include] if args.include else list(GREP_INCLUDES)
        cmd.extend(f"--include={inc}" for inc in includes)
        cmd.extend(f"--exclude-dir={d}" for d in GREP_EXCLUDE_DIRS)
        cmd.extend(["-e", args.pattern, str(search_path)])

        cancel.check()
        try:
            proc = subprocess.run(
                cmd, capture_output=True, text=True, errors="replace",
                timeout=cancel.timeout_for(SUBPROCESS_TIMEOUT),
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise ToolInputError(f"grep failed: {exc}") from exc

        output = proc.stdout
        if not output:
            return "No matches found."
        lines = output.split("\n")
        truncated = len(lines) > MAX_GREP_LINES
        lines = lines[:MAX_GREP_LINES]
        prefix = str(self.base_path) + os.sep
        result = [line[len(prefix):] if line.startswith(prefix) else line for line in lines if line]
        if truncated:
            result.append("\n... [truncated: 50+ matches]")
        return "\n".join(result)


class ListDirTool(RepoTool):
    name = "list_dir"
    description = "List directory contents to understand project structure."
    args_schema = ListDirInput

    def _run(self, args: ListDirInput, cancel: CancelToken) -> str:
        target = self._resolve(args.path) if args.path else self.base_path
        max_depth = args.max_depth if args.max_depth > 0 else DEFAULT_LIST_DEPTH
        if not target.is_dir():
            return "Directory is empty or does not exist."

        result: List[str] = []
        truncated = False

        def visit(directory: Path, depth: int) -> bool:
            nonlocal truncated
            try:
                entries = sorted(directory.iterdir(), key=lambda p: p.name)
            except OSError:
                return True
            for entry in entries:
                if len(result) >= MAX_LIST_ITEMS:
                    truncated = True
                    return False
                name = entry.name
                is_dir = entry.is_dir()
                if name.startswith(".") and name not in LIST_DOT_ALLOWED:
                    continue
                if is_dir and should_ignore_dir(name):
                    continue
                indent = "  " * depth
                if is_dir:
                    result.append(f"{indent}📁 {name}/")
                    if depth < max_depth and not visit(entry, depth + 1):
                        return False
                else:
                    try:
                        size = format_size(entry.stat().st_size)
                    except OSError:
                        size = ""
                    result.append(f"{indent}📄 {name} {size}".rstrip())
            return True

        cancel.check()
        visit(target, 0)
        if not result:
            return "Directory is empty or does not exist."
        if truncated:
            result.append(f"\n... [truncated: showing {MAX_LIST_ITEMS} items]")
        return "\n".join(result)


class ExecTool(RepoTool):
    name = "exec_command"
    description = (
        "Execute a whitelisted command. ONLY for git history queries. Use read_file for file contents.\n"
        "IMPORTANT: command must be the binary name ONLY (e.g. \"git\"), args must be a separate array.\n"
        "Shell pipes (|) and shell syntax are NOT supported.\n"
        "Example: {\"command\": \"git\", \"args\": [\"log\", \"--oneline\", \"-20\"]}\n"
        "Allowed commands: git, head, tail, wc, find"
    )
    args_schema = ExecInput

    def _run(self, args: ExecInput, cancel: CancelToken) -> str:
        if not args.command:
            raise ToolInputError("command argument is required")
        if args.command not in ALLOWED_COMMANDS:
            raise CommandNotAllowedError(args.command, ALLOWED_COMMANDS)
        validate_exec_args(args.command, args.args)

        cancel.check()
        try:
            proc = subprocess.run(
                [args.command, *args.args], cwd=str(self.base_path),
                capture_output=True, text=True, errors="replace",
                timeout=cancel.timeout_for(SUBPROCESS_TIMEOUT),
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise ToolInputError(f"{args.command} failed: {exc}") from exc
        if proc.returncode != 0:
            detail = proc.stderr.strip() or f"exit status {proc.returncode}"
            raise ToolInputError(f"{args.command} failed: {detail}")

        output = proc.stdout
        if len(output) > MAX_EXEC_OUTPUT:
            output = output[:MAX_EXEC_OUTPUT] + "\n... [truncated: output too large]"
        return output


def create_tools(base_path: Path | str) -> List[RepoTool]:
    return [ReadFileTool(base_path), GrepTool(base_path), ListDirTool(base_path), ExecTool(base_path)]
