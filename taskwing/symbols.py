"""Code symbol index and the compact architectural view built from it.

The index lives in the project's ``memory.db`` next to the knowledge graph:

- ``symbols``      one row per function / class / method
- ``symbols_fts``  FTS5 table over name, signature and doc comment

Python sources are parsed with the built-in ``ast`` module.  When the SQLite
build lacks FTS5, search falls back to ``LIKE`` matching.
"""

from __future__ import annotations

import ast
import logging
import os
import re
import sqlite3
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Dict, List, Optional

from . import patterns
from .budget import estimate_tokens
from .config import memory_db_path

logger = logging.getLogger(__name__)


@dataclass
class Symbol:
    name: str
    kind: str
    file_path: str
    start_line: int
    end_line: int
    signature: str = ""
    doc_comment: str = ""
    visibility: str = "public"
    language: str = "python"
    id: Optional[int] = None


@dataclass
class SymbolSearchResult:
    symbol: Symbol
    score: float


# ===================================================================
# Python extraction
# ===================================================================

class _SymbolVisitor(ast.NodeVisitor):
    """Collects classes, functions and methods with their signatures."""

    def __init__(self, rel_path: str) -> None:
        self.rel_path = rel_path
        self.class_stack: List[str] = []
        self.symbols: List[Symbol] = []

    def visit_ClassDef(self, node: ast.ClassDef) -> None:
        bases = ", ".join(ast.unparse(b) for b in node.bases)
        signature = f"class {node.name}({bases})" if bases else f"class {node.name}"
        self._add(node, node.name, "class", signature)
        self.class_stack.append(node.name)
        self.generic_visit(node)
        self.class_stack.pop()

    def visit_FunctionDef(self, node: ast.FunctionDef) -> None:
        self._visit_function(node, "def")

    def visit_AsyncFunctionDef(self, node: ast.AsyncFunctionDef) -> None:
        self._visit_function(node, "async def")

    def _visit_function(self, node: ast.AST, keyword: str) -> None:
        assert isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef))
        signature = f"{keyword} {node.name}({ast.unparse(node.args)})"
        if node.returns is not None:
            signature += f" -> {ast.unparse(node.returns)}"
        kind = "method" if self.class_stack else "function"
        name = ".".join(self.class_stack + [node.name])
        self._add(node, name, kind, signature)
        # Nested defs are implementation details; do not descend.

    def _add(self, node: ast.AST, name: str, kind: str, signature: str) -> None:
        short = name.rsplit(".", 1)[-1]
        self.symbols.append(Symbol(
            name=name,
            kind=kind,
            file_path=self.rel_path,
            start_line=node.lineno,
            end_line=getattr(node, "end_lineno", node.lineno),
            signature=signature,
            doc_comment=ast.get_docstring(node) or "",
            visibility="private" if short.startswith("_") and not short.startswith("__") else "public",
        ))


def extract_python_symbols(source: str, rel_path: str) -> List[Symbol]:
    try:
        tree = ast.parse(source)
    except SyntaxError as exc:
        logger.warning("SyntaxError in %s: %s", rel_path, exc)
        return []
    visitor = _SymbolVisitor(rel_path)
    visitor.visit(tree)
    return visitor.symbols


# ===================================================================
# Index
# ===================================================================

class SymbolIndex:
    """SQLite-backed symbol table with full-text search."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.fts_enabled = True
        self._init_schema()

    @classmethod
    def for_project(cls, repo_root: Path) -> "SymbolIndex":
        return cls(memory_db_path(repo_root))

    def close(self) -> None:
        self.conn.close()

    def __enter__(self) -> "SymbolIndex":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _init_schema(self) -> None:
        cur = self.conn.cursor()
        cur.execute("""
            CREATE TABLE IF NOT EXISTS symbols (
                id          INTEGER PRIMARY KEY AUTOINCREMENT,
                name        TEXT NOT NULL,
                kind        TEXT NOT NULL,
                file_path   TEXT NOT NULL,
                start_line  INTEGER NOT NULL,
                end_line    INTEGER NOT NULL,
                signature   TEXT,
                doc_comment TEXT,
                visibility  TEXT NOT NULL DEFAULT 'public',
                language    TEXT NOT NULL DEFAULT 'python'
            )
        """)
        cur.execute("CREATE INDEX IF NOT EXISTS idx_symbols_file ON symbols(file_path)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_symbols_name ON symbols(name)")
        try:
            cur.execute(
                "CREATE VIRTUAL TABLE IF NOT EXISTS symbols_fts "
                "USING fts5(name, signature, doc_comment)"
            )
        except sqlite3.OperationalError as exc:
            logger.warning("FTS5 unavailable, symbol search uses LIKE: %s", exc)
            self.fts_enabled = False
        self.conn.commit()

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def replace_file(self, rel_path: str, symbols: List[Symbol]) -> None:
        """Replace every symbol of *rel_path* with *symbols*."""
        cur = self.conn.cursor()
        if self.fts_enabled:
            cur.execute(
                "DELETE FROM symbols_fts WHERE rowid IN (SELECT id FROM symbols WHERE file_path = ?)",
                (rel_path,),
            )
        cur.execute("DELETE FROM symbols WHERE file_path = ?", (rel_path,))
        for sym in symbols:
            cur.execute(
                """INSERT INTO symbols
                   (name, kind, file_path, start_line, end_line, signature, doc_comment, visibility, language)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (sym.name, sym.kind, sym.file_path, sym.start_line, sym.end_line,
                 sym.signature, sym.doc_comment, sym.visibility, sym.language),
            )
            sym.id = cur.lastrowid
            if self.fts_enabled:
                cur.execute(
                    "INSERT INTO symbols_fts(rowid, name, signature, doc_comment) VALUES (?, ?, ?, ?)",
                    (sym.id, _split_identifier(sym.name), sym.signature, sym.doc_comment),
                )
        self.conn.commit()

    def index_project(self, root: Path) -> Dict[str, int]:
        """Parse every Python source under *root* (tests excluded)."""
        root = Path(root).resolve()
        files = 0
        count = 0
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = sorted(
                d for d in dirnames
                if not patterns.should_ignore_dir(d) and not d.startswith(".")
                and d not in ("venv", ".venv", "site-packages")
            )
            for name in sorted(filenames):
                if not name.endswith(".py"):
                    continue
                path = Path(dirpath) / name
                rel = path.relative_to(root).as_posix()
                if patterns.is_test_file(rel) or path.is_symlink():
                    continue
                try:
                    source = path.read_text(encoding="utf-8", errors="ignore")
                except OSError as exc:
                    logger.warning("Could not read %s: %s", rel, exc)
                    continue
                symbols = extract_python_symbols(source, rel)
                self.replace_file(rel, symbols)
                files += 1
                count += len(symbols)
        logger.info("Indexed %d symbols from %d files", count, files)
        return {"files": files, "symbols": count}

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def hybrid_search(self, query: str, limit: int = 20) -> List[SymbolSearchResult]:
        """Rank symbols for *query*; any term may match."""
        terms = [t for t in re.findall(r"\w+", query.lower()) if len(t) > 1]
        if not terms:
            return []
        if self.fts_enabled:
            match = " OR ".join(f'"{t}"*' for t in terms)
            try:
                rows = self.conn.execute(
                    """SELECT s.*, bm25(symbols_fts) AS rank
                       FROM symbols_fts JOIN symbols s ON s.id = symbols_fts.rowid
                       WHERE symbols_fts MATCH ?
                       ORDER BY rank LIMIT ?""",
                    (match, limit),
                ).fetchall()
                return [SymbolSearchResult(_row_to_symbol(r), -float(r["rank"])) for r in rows]
            except sqlite3.OperationalError as exc:
                logger.warning("Symbol FTS query failed, using LIKE: %s", exc)
        return self._like_search(terms, limit)

    def _like_search(self, terms: List[str], limit: int) -> List[SymbolSearchResult]:
        clauses = " + ".join(
            "(CASE WHEN lower(name || ' ' || coalesce(signature,'') || ' ' || coalesce(doc_comment,'')) "
            "LIKE ? THEN 1 ELSE 0 END)"
            for _ in terms
        )
        params = [f"%{t}%" for t in terms]
        rows = self.conn.execute(
            f"SELECT *, ({clauses}) AS hits FROM symbols WHERE ({clauses}) > 0 "
            "ORDER BY hits DESC, file_path, start_line LIMIT ?",
            params + params + [limit],
        ).fetchall()
        return [SymbolSearchResult(_row_to_symbol(r), float(r["hits"])) for r in rows]

    def stats(self) -> Dict[str, int]:
        row = self.conn.execute(
            "SELECT COUNT(*) AS symbols, COUNT(DISTINCT file_path) AS files FROM symbols"
        ).fetchone()
        return {"symbols": int(row["symbols"]), "files": int(row["files"])}


def _split_identifier(name: str) -> str:
    """``UserService.get_user`` -> ``UserService.get_user User Service get user``."""
    words = re.findall(r"[A-Z]?[a-z0-9]+|[A-Z]+(?![a-z])", name)
    return f"{name} {' '.join(words)}"


def _row_to_symbol(row: sqlite3.Row) -> Symbol:
    return Symbol(
        id=row["id"],
        name=row["name"],
        kind=row["kind"],
        file_path=row["file_path"],
        start_line=row["start_line"],
        end_line=row["end_line"],
        signature=row["signature"] or "",
        doc_comment=row["doc_comment"] or "",
        visibility=row["visibility"],
        language=row["language"],
    )


# ===================================================================
# Architectural context
# ===================================================================

@dataclass
class SymbolContextConfig:
    max_tokens: int = 50_000
    prefer_public: bool = True


# (label, query, limit) in the order sections are emitted.
ARCHITECTURE_QUERIES = (
    ("Entry Points", "main init server app handler", 30),
    ("Middleware & Auth", "middleware auth authentication authorization cors", 20),
    ("Handlers & Controllers", "handler controller route endpoint api", 30),
    ("Services & Business Logic", "service usecase repository store", 30),
    ("Models & Types", "model struct type config schema", 20),
    ("Error Handling", "error exception panic recover", 10),
)


class SymbolContext:
    """Compact, token-capped view of a project's key symbols."""

    def __init__(self, index: SymbolIndex, config: Optional[SymbolContextConfig] = None):
        self.index = index
        self.config = config or SymbolContextConfig()

    @classmethod
    def open(cls, base_path: Path, config: Optional[SymbolContextConfig] = None) -> Optional["SymbolContext"]:
        """Context for *base_path*, or ``None`` when no index has been built."""
        db_path = memory_db_path(Path(base_path))
        if not db_path.exists():
            return None
        try:
            index = SymbolIndex(db_path)
        except sqlite3.Error as exc:
            logger.warning("Could not open symbol index %s: %s", db_path, exc)
            return None
        if index.stats()["symbols"] == 0:
            index.close()
            return None
        return cls(index, config)

    def close(self) -> None:
        self.index.close()

    def stats(self) -> Dict[str, int]:
        return self.index.stats()

    def gather_architectural_context(self) -> str:
        """Sections in fixed order until the token cap; empty when nothing matched."""
        parts: List[str] = []
        used = 0
        max_tokens = self.config.max_tokens
        for label, query, limit in ARCHITECTURE_QUERIES:
            if used >= max_tokens:
                break
            results = self.index.hybrid_search(query, limit)
            if not results:
                continue
            section = self._format_section(label, results, max_tokens - used)
            if used + estimate_tokens(section) > max_tokens:
                remaining = max_tokens - used
                if remaining <= 100:
                    break
                section = self._format_section(label, results[:5], remaining)
            parts.append(section)
            used += estimate_tokens(section)
        return "".join(parts)

    def _format_section(self, label: str, results: List[SymbolSearchResult], max_tokens: int) -> str:
        out = [f"## {label}\n\n"]
        used = estimate_tokens(out[0])
        for r in results:
            if self.config.prefer_public and r.symbol.visibility == "private":
                continue
            entry = format_symbol(r.symbol)
            tokens = estimate_tokens(entry)
            if used + tokens > max_tokens:
                break
            out.append(entry)
            used += tokens
        out.append("\n")
        return "".join(out)


def format_symbol(sym: Symbol) -> str:
    """``### name (file.py:12)`` plus signature block and a short doc quote."""
    lines = [f"### {sym.name} ({PurePosixPath(sym.file_path).name}:{sym.start_line})\n"]
    if sym.signature:
        lines.append(f"```\n{sym.signature}\n```\n")
    if sym.doc_comment:
        doc = sym.doc_comment
        if len(doc) > 200:
            doc = doc[:200] + "..."
        lines.append("> " + doc.replace("\n", "\n> ") + "\n")
    lines.append("\n")
    return "".join(lines)
