"""Tests for the symbol index and architectural context."""

from pathlib import Path

from taskwing.config import memory_db_path
from taskwing.symbols import (
    SymbolContext,
    SymbolContextConfig,
    SymbolIndex,
    extract_python_symbols,
    format_symbol,
)


class TestExtraction:
    """Tests for Python symbol extraction."""

    def test_classes_methods_functions(self):
        """Classes, methods and functions are extracted with signatures."""
        source = (
            "class Repo(Base):\n"
            '    """Stores things."""\n'
            "    def get(self, key: str) -> int:\n"
            "        return 1\n"
            "    def _cache(self):\n"
            "        pass\n"
            "\n"
            "async def handler(request):\n"
            "    def inner():\n"
            "        pass\n"
        )
        symbols = {s.name: s for s in extract_python_symbols(source, "app/repo.py")}

        assert set(symbols) == {"Repo", "Repo.get", "Repo._cache", "handler"}
        assert symbols["Repo"].signature == "class Repo(Base)"
        assert symbols["Repo"].doc_comment == "Stores things."
        assert symbols["Repo.get"].kind == "method"
        assert symbols["Repo.get"].signature == "def get(self, key: str) -> int"
        assert symbols["Repo._cache"].visibility == "private"
        assert symbols["handler"].signature == "async def handler(request)"
        assert symbols["handler"].start_line == 8

    def test_syntax_error(self):
        """Unparseable files yield no symbols."""
        assert extract_python_symbols("def broken(:\n", "bad.py") == []


class TestSymbolIndex:
    """Tests for SymbolIndex."""

    def test_index_and_search(self, sample_repo: Path):
        """Indexing a project makes its symbols searchable."""
        with SymbolIndex.for_project(sample_repo) as index:
            stats = index.index_project(sample_repo)
            assert stats == {"files": 3, "symbols": 5}
            assert index.stats() == {"symbols": 5, "files": 2}

            names = [r.symbol.name for r in index.hybrid_search("user service")]
            assert "UserService" in names

    def test_reindex_replaces(self, sample_repo: Path):
        """Re-indexing a file replaces its symbols."""
        with SymbolIndex.for_project(sample_repo) as index:
            index.index_project(sample_repo)
            (sample_repo / "main.py").write_text("def other():\n    pass\n", encoding="utf-8")
            index.index_project(sample_repo)
            names = {r.symbol.name for r in index.hybrid_search("other main")}
            assert "other" in names
            assert "main" not in names


class TestSymbolContext:
    """Tests for SymbolContext."""

    def test_open_without_index(self, temp_dir: Path):
        """No database means no context."""
        assert SymbolContext.open(temp_dir) is None

    def test_open_empty_index(self, temp_dir: Path):
        """An empty index is treated as absent."""
        SymbolIndex.for_project(temp_dir).close()
        assert memory_db_path(temp_dir).exists()
        assert SymbolContext.open(temp_dir) is None

    def test_architectural_context(self, sample_repo: Path):
        """Sections are emitted for matching symbols; private symbols are hidden."""
        with SymbolIndex.for_project(sample_repo) as index:
            index.index_project(sample_repo)

        ctx = SymbolContext.open(sample_repo, SymbolContextConfig(max_tokens=50_000))
        assert ctx is not None
        try:
            text = ctx.gather_architectural_context()
            assert ctx.stats()["symbols"] == 5
        finally:
            ctx.close()

        assert "## Entry Points" in text
        assert "### main (main.py:6)" in text
        assert "## Services & Business Logic" in text
        assert "_hash" not in text

    def test_format_symbol(self):
        """Long doc comments are cut to 200 characters."""
        index_symbol = extract_python_symbols('def f():\n    """' + "d" * 300 + '"""\n', "x.py")[0]
        text = format_symbol(index_symbol)
        assert text.startswith("### f (x.py:1)\n```\ndef f()\n```\n")
        assert "d" * 200 + "..." in text
