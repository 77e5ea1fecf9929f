"""Shared file-selection vocabulary for gatherers, chunkers and tools.

Single source of truth for ignore lists, extensions and well-known names.
"""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import FrozenSet

IGNORED_DIRS: FrozenSet[str] = frozenset({
    "node_modules", "vendor", ".git", "dist", "build",
    "__pycache__", ".next", ".nuxt", "coverage",
})

# Dot-directories that are analyzed despite the dot-skip rule.
ALLOWED_DOT_DIRS: FrozenSet[str] = frozenset({
    ".github", ".gitlab", ".circleci", ".vscode", ".devcontainer",
})

IMPORTANT_DOT_FILES: FrozenSet[str] = frozenset({
    ".eslintrc", ".eslintrc.js", ".eslintrc.json", ".eslintrc.yaml",
    ".prettierrc", ".prettierrc.js", ".prettierrc.json",
    ".dockerignore", ".gitignore", ".env.example", ".editorconfig",
    ".nvmrc", ".node-version", ".python-version", ".ruby-version",
    ".tool-versions",
})

CODE_EXTENSIONS: FrozenSet[str] = frozenset({
    ".go", ".ts", ".tsx", ".js", ".jsx", ".py", ".rs", ".java", ".kt",
    ".swift", ".c", ".cpp", ".h", ".hpp", ".cs", ".rb", ".php", ".vue", ".svelte",
})

CONFIG_EXTENSIONS: FrozenSet[str] = frozenset({".yaml", ".yml", ".toml", ".json", ".ini"})

# Assistant instruction files, relative to the repo root.
RULE_FILES = (
    "CLAUDE.md", "GEMINI.md", "AGENTS.md", ".cursorrules", ".windsurfrules",
    "CONVENTIONS.md", ".github/copilot-instructions.md",
)

KNOWN_CONFIG_FILES: FrozenSet[str] = frozenset({
    "vite.config.ts", "vite.config.js", "vite.config.mjs",
    "next.config.js", "next.config.mjs", "next.config.ts",
    "nuxt.config.ts", "nuxt.config.js",
    "tailwind.config.js", "tailwind.config.ts",
    "webpack.config.js", "webpack.config.ts",
    "rollup.config.js", "rollup.config.ts",
    "tsconfig.json", "jsconfig.json",
    "package.json", "package-lock.json",
    "pyproject.toml", "setup.py", "setup.cfg",
    "Cargo.toml", "Cargo.lock",
    "go.mod", "go.sum",
    "Makefile", "makefile", "Justfile",
    "Dockerfile", "docker-compose.yml", "docker-compose.yaml",
    ".env.example", ".env.sample",
})

MONOREPO_MARKERS = ("package.json", "go.mod", "Cargo.toml", "pyproject.toml", "pom.xml")

TEST_NAME_PATTERNS = ("_test.", ".test.", ".spec.", "_spec.", "_tests.", ".tests.")
TEST_NAME_PREFIXES = ("test_",)
TEST_DIR_PATTERNS = ("__tests__", "__test__")

CI_MARKERS = (".github", ".gitlab", ".circleci")


def should_ignore_dir(name: str) -> bool:
    return name in IGNORED_DIRS


def should_skip_dot_entry(name: str, is_dir: bool) -> bool:
    """True for dot entries that are not explicitly allow-listed."""
    if not name.startswith("."):
        return False
    if is_dir:
        return name not in ALLOWED_DOT_DIRS
    return name not in IMPORTANT_DOT_FILES


def is_code_file(path: str) -> bool:
    return PurePosixPath(path).suffix in CODE_EXTENSIONS


def is_config_file(path: str) -> bool:
    p = PurePosixPath(path)
    return p.suffix in CONFIG_EXTENSIONS or p.name in KNOWN_CONFIG_FILES


def is_ci_file(rel_path: str) -> bool:
    return any(marker in rel_path for marker in CI_MARKERS)


def is_test_file(rel_path: str) -> bool:
    """Name-pattern test detection across ecosystems."""
    norm = rel_path.replace("\\", "/").lower()
    name = norm.rsplit("/", 1)[-1]
    if name.startswith(TEST_NAME_PREFIXES) or any(pattern in name for pattern in TEST_NAME_PATTERNS):
        return True
    return any(pattern in norm for pattern in TEST_DIR_PATTERNS)
