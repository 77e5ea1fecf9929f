"""Split a codebase into token-bounded chunks for LLM analysis."""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import List, Optional

from . import patterns
from .budget import estimate_tokens
from .errors import ChunkingError
from .gatherer import ContextGatherer, add_line_numbers, truncate_utf8
from .models import Coverage

logger = logging.getLogger(__name__)

MAX_CHARS_PER_CHUNK_FILE = 8000


@dataclass
class ChunkConfig:
    max_tokens_per_chunk: int = 30_000
    max_files_per_chunk: int = 50
    include_line_numbers: bool = True

    def validated(self) -> "ChunkConfig":
        """Copy with non-positive limits replaced by the defaults."""
        defaults = ChunkConfig()
        return ChunkConfig(
            max_tokens_per_chunk=self.max_tokens_per_chunk if self.max_tokens_per_chunk > 0 else defaults.max_tokens_per_chunk,
            max_files_per_chunk=self.max_files_per_chunk if self.max_files_per_chunk > 0 else defaults.max_files_per_chunk,
            include_line_numbers=self.include_line_numbers,
        )


@dataclass
class ChunkFile:
    rel_path: str
    content: str
    token_count: int
    truncated: bool = False


@dataclass
class FileChunk:
    index: int
    files: List[ChunkFile] = field(default_factory=list)
    content: str = ""
    token_count: int = 0
    description: str = ""


class CodeChunker:
    """Groups prioritised source files into chunks.

    Files are consumed in priority order; a chunk is closed when the next
    file would push it over the token or file cap.  A single file larger than
    the token cap on its own is skipped so every chunk stays within bounds.
    """

    def __init__(self, base_path: Path | str, config: Optional[ChunkConfig] = None):
        self.base_path = Path(base_path).resolve()
        self.config = (config or ChunkConfig()).validated()
        self.coverage = Coverage()

    def set_config(self, config: ChunkConfig) -> None:
        self.config = config.validated()

    def chunk_source_code(self) -> List[FileChunk]:
        files = self._collect_files()
        if not files:
            raise ChunkingError("no source files found")
        chunks = self._group(files)
        logger.debug("Chunked %d files into %d chunks", len(files), len(chunks))
        return chunks

    # ---------------------------------------------------------------

    def _collect_files(self) -> List[str]:
        gatherer = ContextGatherer(self.base_path)
        candidates = gatherer.collect_candidates(roots=[""])
        self.coverage.extend(gatherer.coverage)
        return [c.path for c in candidates if patterns.is_code_file(c.path)]

    def _group(self, files: List[str]) -> List[FileChunk]:
        chunks: List[FileChunk] = []
        current = FileChunk(index=0)

        def close_current() -> None:
            current.content = format_chunk_content(current.files)
            current.token_count = sum(f.token_count for f in current.files)
            current.description = describe_chunk(current.files)
            chunks.append(current)

        for rel in files:
            try:
                data = (self.base_path / rel).read_bytes()
            except OSError as exc:
                self.coverage.record_skip(rel, f"read error: {exc}")
                continue
            content, truncated = truncate_utf8(data, MAX_CHARS_PER_CHUNK_FILE)
            body = add_line_numbers(content) if self.config.include_line_numbers else content
            tokens = estimate_tokens(body)
            if tokens > self.config.max_tokens_per_chunk:
                self.coverage.record_skip(rel, "exceeds chunk token budget")
                continue

            current_tokens = sum(f.token_count for f in current.files)
            over_tokens = current_tokens + tokens > self.config.max_tokens_per_chunk
            over_files = len(current.files) >= self.config.max_files_per_chunk
            if (over_tokens or over_files) and current.files:
                close_current()
                current = FileChunk(index=len(chunks))

            current.files.append(ChunkFile(rel_path=rel, content=body, token_count=tokens, truncated=truncated))
            self.coverage.record_read(rel, content, truncated)

        if current.files:
            close_current()
        return chunks


def format_chunk_content(files: List[ChunkFile]) -> str:
    return "".join(f"## FILE: {f.rel_path}\n```\n{f.content}\n```\n\n" for f in files)


def describe_chunk(files: List[ChunkFile]) -> str:
    """Top directories by file count, e.g. ``"api (3 files), root (1 files)"``."""
    if not files:
        return "empty chunk"
    counts = Counter()
    for f in files:
        parent = PurePosixPath(f.rel_path).parent.as_posix()
        counts["root" if parent == "." else parent] += 1
    ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    parts = [f"{d} ({n} files)" for d, n in ranked[:3]]
    if len(ranked) > 3:
        parts.append(f"and {len(ranked) - 3} more directories")
    return ", ".join(parts)
