"""Code agent: architectural decisions and patterns from source code.

Three paths, tried in order:

* watch mode with changed files analyses just those files;
* a populated symbol index gives a compact architectural summary;
* otherwise the source is chunked and each chunk analysed separately, the
  results merged by :class:`~taskwing.dedup.FindingDeduplicator`.
"""

from __future__ import annotations

import logging
from typing import List, Tuple

from .agents import AgentInput, AgentOutput, BaseAgent, format_existing_nodes, register_agent
from .budget import ContextBudget
from .cancellation import CancelToken
from .chain import DeterministicChain
from .chunker import ChunkConfig, CodeChunker
from .config import MAX_SAFE_CONTEXT_BUDGET
from .dedup import FindingDeduplicator
from .errors import ChunkingError, OperationCancelled
from .gatherer import ContextGatherer
from .llm import get_max_input_tokens
from .models import Coverage, Finding, Relationship, new_finding, parse_debt
from .patterns import is_code_file
from .prompts import CODE_AGENT_TEMPLATE
from .schemas import CodeAnalysis
from .symbols import SymbolContext, SymbolContextConfig

logger = logging.getLogger(__name__)

BUDGET_RATIO = 0.7
DIR_TREE_DEPTH = 5
MAX_DIR_TREE_CHARS = 20_000
MAX_EXISTING_KNOWLEDGE_CHARS = 8000
SYMBOL_CONTEXT_TOKENS = 50_000
CHUNK_TOKENS = 30_000
CHUNK_FILES = 40
CHUNK_OVERHEAD_TOKENS = 10_000
SYMBOL_COVERAGE_PATH = "(symbol index)"


def max_chunks_for(model_limit: int) -> int:
    """How many 30k-token chunks fit in the model window after prompt overhead."""
    effective = min(model_limit, MAX_SAFE_CONTEXT_BUDGET)
    return max(1, (effective - CHUNK_OVERHEAD_TOKENS) // CHUNK_TOKENS)


def truncate_text(text: str, max_chars: int) -> str:
    if len(text) > max_chars:
        return text[:max_chars] + "\n... (truncated)"
    return text


def parse_code_findings(parsed: CodeAnalysis, agent_name: str) -> Tuple[List[Finding], List[Relationship]]:
    """Decisions and patterns (with debt metadata) plus complete relationships."""
    findings: List[Finding] = []
    for d in parsed.decisions:
        if not d.title:
            continue
        metadata = {"component": d.component}
        metadata.update(parse_debt(d.debt_score, d.debt_reason, d.refactor_hint))
        findings.append(new_finding(
            "decision", d.title, d.what,
            why=d.why, tradeoffs=d.tradeoffs,
            confidence=d.confidence, source_agent=agent_name,
            evidence=[ev.model_dump() for ev in d.evidence],
            metadata=metadata,
        ))
    for p in parsed.patterns:
        if not p.name:
            continue
        metadata = {"context": p.context, "solution": p.solution, "consequences": p.consequences}
        metadata.update(parse_debt(p.debt_score, p.debt_reason, p.refactor_hint))
        findings.append(new_finding(
            "pattern", p.name, p.context,
            tradeoffs=p.consequences,
            confidence=p.confidence, source_agent=agent_name,
            evidence=[ev.model_dump() for ev in p.evidence],
            metadata=metadata,
        ))
    relationships = [
        Relationship(r.source, r.target, r.relation, r.reason)
        for r in parsed.relationships
        if r.source and r.target and r.relation
    ]
    return findings, relationships


class CodeAgent(BaseAgent):
    name = "code"
    description = "Analyzes source code structure, patterns, and architecture"

    def execute(self, agent_input: AgentInput, cancel: CancelToken) -> AgentOutput:
        chain = self.new_chain(self.name, CODE_AGENT_TEMPLATE, CodeAnalysis)
        gatherer = ContextGatherer(agent_input.base_path)
        dir_tree = truncate_text(gatherer.list_directory_tree(DIR_TREE_DEPTH), MAX_DIR_TREE_CHARS)
        existing = format_existing_nodes(agent_input.existing_context, MAX_EXISTING_KNOWLEDGE_CHARS)

        if agent_input.is_watch and agent_input.changed_files:
            return self._run_incremental(chain, agent_input, dir_tree, existing, cancel)

        symbol_ctx = SymbolContext.open(agent_input.base_path, SymbolContextConfig(max_tokens=SYMBOL_CONTEXT_TOKENS))
        if symbol_ctx is not None:
            try:
                source = symbol_ctx.gather_architectural_context()
                stats = symbol_ctx.stats()
            finally:
                symbol_ctx.close()
            if source:
                coverage = Coverage()
                coverage.record_skip(
                    SYMBOL_COVERAGE_PATH,
                    f"analyzed {stats['symbols']} symbols from {stats['files']} indexed files",
                )
                return self._run_single(chain, agent_input, dir_tree, source, existing, coverage, cancel)
            logger.debug("[code] symbol index matched nothing, falling back to chunking")

        return self._run_chunked(chain, agent_input, dir_tree, existing, cancel)

    # ---------------------------------------------------------------

    def _run_incremental(self, chain: DeterministicChain, agent_input: AgentInput, dir_tree: str,
                         existing: str, cancel: CancelToken) -> AgentOutput:
        limit = get_max_input_tokens(self.llm_config.model)
        gatherer = ContextGatherer(agent_input.base_path, ContextBudget(int(limit * BUDGET_RATIO)))
        code_files = [f for f in agent_input.changed_files if is_code_file(f)]
        source = gatherer.gather_specific_files(code_files, line_numbers=True)
        if not source:
            return AgentOutput(agent_name=self.name, error="no source code found in changed files")
        return self._run_single(chain, agent_input, dir_tree, source, existing, gatherer.coverage, cancel)

    def _run_single(self, chain: DeterministicChain, agent_input: AgentInput, dir_tree: str, source: str,
                    existing: str, coverage: Coverage, cancel: CancelToken) -> AgentOutput:
        result = chain.invoke({
            "project_name": agent_input.project_name,
            "dir_tree": dir_tree,
            "source_code": source,
            "is_incremental": agent_input.is_watch,
            "existing_knowledge": existing,
            "chunk_label": "",
        }, cancel=cancel)
        findings, relationships = parse_code_findings(result.parsed, self.name)
        return AgentOutput(agent_name=self.name, findings=findings, relationships=relationships,
                           coverage=coverage, raw_output=result.raw)

    def _run_chunked(self, chain: DeterministicChain, agent_input: AgentInput, dir_tree: str,
                     existing: str, cancel: CancelToken) -> AgentOutput:
        chunker = CodeChunker(agent_input.base_path, ChunkConfig(
            max_tokens_per_chunk=CHUNK_TOKENS, max_files_per_chunk=CHUNK_FILES, include_line_numbers=True,
        ))
        try:
            chunks = chunker.chunk_source_code()
        except ChunkingError as exc:
            return AgentOutput(agent_name=self.name, error=f"chunking failed: {exc}")
        if not chunks:
            return AgentOutput(agent_name=self.name, error="no source code found to analyze")

        limit = max_chunks_for(get_max_input_tokens(self.llm_config.model))
        if len(chunks) > limit:
            logger.info("[code] analysing %d of %d chunks (model window)", limit, len(chunks))
            chunks = chunks[:limit]

        all_findings: List[Finding] = []
        all_relationships: List[Relationship] = []
        failures: List[str] = []
        succeeded = 0
        for i, chunk in enumerate(chunks, 1):
            cancel.check()
            label = f"(Chunk {i}/{len(chunks)}: {chunk.description})"
            try:
                result = chain.invoke({
                    "project_name": f"{agent_input.project_name} {label}",
                    "dir_tree": dir_tree,
                    "source_code": chunk.content,
                    "is_incremental": False,
                    "existing_knowledge": existing,
                    "chunk_label": label,
                }, cancel=cancel)
            except OperationCancelled:
                raise
            except Exception as exc:  # one bad chunk does not sink the others
                logger.warning("[code] chunk %d/%d failed: %s", i, len(chunks), exc)
                failures.append(f"chunk {i} ({chunk.description}): {exc}")
                continue
            succeeded += 1
            findings, relationships = parse_code_findings(result.parsed, self.name)
            all_findings.extend(findings)
            all_relationships.extend(relationships)

        if succeeded == 0:
            return AgentOutput(agent_name=self.name,
                               error=f"all {len(chunks)} chunks failed: {'; '.join(failures)}")

        deduplicator = FindingDeduplicator()
        findings = deduplicator.deduplicate(all_findings)
        relationships = deduplicator.deduplicate_relationships(all_relationships)
        raw = (f"Chunked analysis: {succeeded}/{len(chunks)} chunks succeeded, "
               f"{len(all_findings)} findings deduplicated to {len(findings)}")
        if failures:
            raw += f" (failures: {'; '.join(failures)})"
        return AgentOutput(agent_name=self.name, findings=findings, relationships=relationships,
                           coverage=chunker.coverage, raw_output=raw)


register_agent("code", CodeAgent, "Code Analysis", "Analyzes source code structure, patterns, and architecture")
