"""Hybrid retrieval over the knowledge store.

Pipeline for one request (all stages sequential):

1. optional query rewrite (one small LLM call, never fatal)
2. exact-ID shortcut for ``task-`` / ``n-`` / ``plan-`` queries
3. recall: FTS candidates (BM25 rank mapped into ``[0.1, 1]``) plus a single
   pass over every embedded node (cosine above ``vector_score_threshold``),
   weighted and summed per node
4. type filter and ``min_result_score_threshold`` cut
5. optional cross-encoder rerank
6. optional graph expansion from the top five results
7. final limit with slots reserved for graph-expanded nodes

A workspace filter is applied after ranking; the candidate limit is tripled
so filtering still leaves enough results.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .cancellation import CancelToken, ensure_token
from .config_manager import RetrievalConfig
from .embeddings import Embedder, cosine_similarity
from .errors import LLMError, OperationCancelled, TaskWingError
from .llm import ChatMessage, ChatModel
from .models import WORKSPACE_ROOT, Evidence, Node, ScoredNode
from .prompts import ASK_SYSTEM_PROMPT, ASK_USER_PROMPT, QUERY_REWRITE_PROMPT, SUGGEST_QUERIES_PROMPT
from .reranker import Reranker, create_reranker, rerank_results
from .storage import KnowledgeStore

logger = logging.getLogger(__name__)

EXACT_ID_PREFIXES = ("task-", "n-", "plan-")
GRAPH_EXPANSION_TOP_N = 5
DEFAULT_RECALL_LIMIT = 25
MIN_FILTERED_CANDIDATES = 15
DEFAULT_DEBUG_LIMIT = 10

REWRITE_PREAMBLES = (
    "improved query:",
    "here's the improved query:",
    "here is the improved query:",
    "the improved query is:",
    "rewritten query:",
)

NO_CONTEXT_ANSWER = "I found no relevant information to answer your question."
FALLBACK_CONTEXT_QUERY = "Technology Stack and Architecture"


def fts_rank_to_score(rank: float) -> float:
    """Map a (negative) BM25 rank onto ``[0.1, 1.0]``."""
    return min(1.0, max(0.1, -rank / 10.0))


def matches_type(node: Node, node_type: Optional[str]) -> bool:
    if not node_type or node.type == node_type:
        return True
    return node_type == "workflow" and node.is_workflow()


def matches_workspace(node_workspace: str, workspace: str, include_root: bool = False) -> bool:
    """Workspace filter; an empty *workspace* accepts everything."""
    if not workspace:
        return True
    tag = node_workspace or WORKSPACE_ROOT
    if tag == workspace:
        return True
    return include_root and tag == WORKSPACE_ROOT


# ===================================================================
# Debug / health reports
# ===================================================================

@dataclass
class DebugResult:
    id: str
    node_type: str
    source_agent: str
    summary: str
    content: str
    fts_score: float
    vector_score: float
    combined_score: float
    rerank_score: Optional[float]
    is_exact: bool
    is_expanded: bool
    expanded_from: Optional[str]
    evidence: List[Evidence]
    source_file_path: str = ""
    embedding_dimension: int = 0


@dataclass
class DebugResponse:
    query: str
    pipeline: List[str] = field(default_factory=list)
    timings: Dict[str, float] = field(default_factory=dict)
    total_candidates: int = 0
    results: List[DebugResult] = field(default_factory=list)


@dataclass
class EmbeddingConsistencyReport:
    total_nodes: int
    nodes_with_embeddings: int
    nodes_without_embeddings: int
    embedding_dimension: int
    mixed_dimensions: bool
    message: str


@dataclass
class _Trace:
    pipeline: List[str] = field(default_factory=list)
    timings: Dict[str, float] = field(default_factory=dict)
    total_candidates: int = 0

    def time(self, stage: str, started: float) -> None:
        self.timings[stage] = round((time.perf_counter() - started) * 1000, 3)


# ===================================================================
# Engine
# ===================================================================

class RetrievalEngine:
    """Hybrid FTS + vector search with rerank and graph expansion."""

    def __init__(
        self,
        store: KnowledgeStore,
        config: Optional[RetrievalConfig] = None,
        embedder: Optional[Embedder] = None,
        model: Optional[ChatModel] = None,
        reranker: Optional[Reranker] = None,
    ) -> None:
        self.store = store
        self.config = config or RetrievalConfig()
        self.embedder = embedder
        self.model = model
        self.reranker = reranker if reranker is not None else create_reranker(self.config)

    # ------------------------------------------------------------------
    # Public search API
    # ------------------------------------------------------------------

    def search(
        self,
        query: str,
        limit: int = 5,
        node_type: Optional[str] = None,
        workspace: str = "",
        include_root: bool = False,
        cancel: Optional[CancelToken] = None,
    ) -> List[ScoredNode]:
        cancel = ensure_token(cancel)
        if limit <= 0:
            limit = 5
        query = self.rewrite_query(query, cancel)
        if not workspace:
            return self._run(query, node_type, limit, cancel)

        candidates = self._run(query, node_type, max(limit * 3, MIN_FILTERED_CANDIDATES), cancel)
        filtered = [sn for sn in candidates if matches_workspace(sn.node.workspace, workspace, include_root)]
        return filtered[:limit]

    def search_debug(self, query: str, limit: int = DEFAULT_DEBUG_LIMIT,
                     cancel: Optional[CancelToken] = None) -> DebugResponse:
        """Run the pipeline and report per-stage timings and per-node sub-scores."""
        if limit <= 0:
            limit = DEFAULT_DEBUG_LIMIT
        trace = _Trace()
        scored = self._run(query, None, limit, ensure_token(cancel), trace)
        response = DebugResponse(
            query=query, pipeline=trace.pipeline, timings=trace.timings,
            total_candidates=trace.total_candidates,
        )
        for sn in scored:
            evidence = list(sn.node.evidence)
            response.results.append(DebugResult(
                id=sn.node.id,
                node_type=sn.node.type,
                source_agent=sn.node.source_agent,
                summary=sn.node.summary,
                content=sn.node.content,
                fts_score=sn.fts_score,
                vector_score=sn.vector_score,
                combined_score=sn.score,
                rerank_score=sn.rerank_score,
                is_exact=sn.is_exact,
                is_expanded=sn.is_expanded,
                expanded_from=sn.expanded_from,
                evidence=evidence,
                source_file_path=evidence[0].file_path if evidence else "",
                embedding_dimension=len(sn.node.embedding or []),
            ))
        return response

    def list_nodes_by_type(self, node_type: str) -> List[Node]:
        return self.store.list_by_type(node_type)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _run(
        self,
        query: str,
        node_type: Optional[str],
        limit: int,
        cancel: CancelToken,
        trace: Optional[_Trace] = None,
    ) -> List[ScoredNode]:
        cfg = self.config
        trace = trace or _Trace()
        recall_limit = cfg.rerank_top_k if cfg.rerank_top_k > 0 else DEFAULT_RECALL_LIMIT
        by_id: Dict[str, ScoredNode] = {}

        started = time.perf_counter()
        exact = self._exact_match(query)
        if exact is not None and matches_type(exact, node_type):
            by_id[exact.id] = ScoredNode(node=exact, score=1.0, is_exact=True)
            trace.pipeline.append("ExactMatch")
        trace.time("exact_match", started)

        cancel.check()
        started = time.perf_counter()
        fts_hits = self.store.search_fts(query, recall_limit)
        if fts_hits:
            trace.pipeline.append("FTS")
        for node, rank in fts_hits:
            if not matches_type(node, node_type):
                continue
            fts_score = fts_rank_to_score(rank)
            sn = by_id.setdefault(node.id, ScoredNode(node=node, score=0.0))
            sn.fts_score = fts_score
            if not sn.is_exact:
                sn.score += fts_score * cfg.fts_weight
        trace.time("fts", started)

        cancel.check()
        started = time.perf_counter()
        if cfg.vector_weight > 0 and self.embedder is not None:
            query_vec = self._embed_query(query)
            if query_vec:
                trace.pipeline.append("Vector")
                for node in self.store.list_with_embeddings():
                    if not matches_type(node, node_type):
                        continue
                    similarity = cosine_similarity(query_vec, node.embedding or [])
                    if similarity < cfg.vector_score_threshold:
                        continue
                    sn = by_id.setdefault(node.id, ScoredNode(node=node, score=0.0))
                    sn.vector_score = similarity
                    if not sn.is_exact:
                        sn.score += similarity * cfg.vector_weight
        trace.time("vector", started)

        scored = [sn for sn in by_id.values() if sn.is_exact or sn.score >= cfg.min_result_score_threshold]
        scored.sort(key=lambda sn: (-sn.score, sn.node.id))
        scored = scored[:recall_limit]
        trace.total_candidates = len(scored)

        cancel.check()
        started = time.perf_counter()
        if cfg.reranking_enabled and self.reranker is not None and scored:
            trace.pipeline.append("Rerank")
            scored = rerank_results(self.reranker, query, scored)
        trace.time("rerank", started)

        cancel.check()
        started = time.perf_counter()
        if cfg.graph_expansion_enabled and scored:
            before = len(scored)
            scored = self.expand_via_graph(scored)
            if len(scored) > before:
                trace.pipeline.append("Graph")
        trace.time("graph", started)

        return self._apply_limit(scored, limit)

    def _exact_match(self, query: str) -> Optional[Node]:
        candidate = query.strip()
        if not candidate.startswith(EXACT_ID_PREFIXES):
            return None
        return self.store.get_node(candidate)

    def _embed_query(self, query: str) -> List[float]:
        try:
            return self.embedder.embed(query) if self.embedder else []
        except (TaskWingError, OSError, ValueError, KeyError) as exc:
            logger.warning("Query embedding failed, using FTS only: %s", exc)
            return []

    def expand_via_graph(self, initial: List[ScoredNode]) -> List[ScoredNode]:
        """Add direct neighbours of the top results with a discounted score.

        A neighbour scores ``parent * edge_confidence * discount``; edges
        below ``graph_expansion_min_edge_confidence`` and neighbours already
        present or under the result threshold are skipped.
        """
        cfg = self.config
        included = {sn.node.id for sn in initial}
        expanded = list(initial)
        frontier = initial[:GRAPH_EXPANSION_TOP_N]

        for _ in range(max(1, cfg.graph_expansion_max_depth)):
            added: List[ScoredNode] = []
            for parent in frontier:
                try:
                    edges = self.store.edges_of(parent.node.id)
                except TaskWingError as exc:
                    logger.warning("Graph expansion skipped for %s: %s", parent.node.id, exc)
                    continue
                for edge in edges:
                    if edge.confidence < cfg.graph_expansion_min_edge_confidence:
                        continue
                    if edge.to_node in included:
                        continue
                    score = parent.score * edge.confidence * cfg.graph_expansion_discount
                    if score < cfg.min_result_score_threshold:
                        continue
                    neighbour = self.store.get_node(edge.to_node)
                    if neighbour is None:
                        continue
                    included.add(neighbour.id)
                    added.append(ScoredNode(node=neighbour, score=score, expanded_from=parent.node.id))
            if not added:
                break
            expanded.extend(added)
            added.sort(key=lambda sn: -sn.score)
            frontier = added[:GRAPH_EXPANSION_TOP_N]

        expanded.sort(key=lambda sn: -sn.score)
        return expanded

    def _apply_limit(self, scored: List[ScoredNode], limit: int) -> List[ScoredNode]:
        cfg = self.config
        if not (cfg.graph_expansion_enabled and cfg.graph_expansion_reserved_slots > 0):
            return scored[:limit]
        primary = [sn for sn in scored if not sn.is_expanded]
        expanded = [sn for sn in scored if sn.is_expanded]
        reserved = min(len(expanded), cfg.graph_expansion_reserved_slots, limit)
        result = primary[:max(0, limit - reserved)] + expanded[:reserved]
        result.sort(key=lambda sn: -sn.score)
        return result

    # ------------------------------------------------------------------
    # LLM-assisted helpers
    # ------------------------------------------------------------------

    def rewrite_query(self, query: str, cancel: Optional[CancelToken] = None) -> str:
        """Typo-fixed query, or *query* itself when rewriting is off or fails."""
        if not self.config.query_rewrite_enabled or self.model is None or not query.strip():
            return query
        try:
            reply = self.model.generate(
                [ChatMessage.user(QUERY_REWRITE_PROMPT.format(query=query))], cancel=cancel
            )
        except OperationCancelled:
            raise
        except (LLMError, TaskWingError) as exc:
            logger.warning("Query rewrite failed, using original query: %s", exc)
            return query

        rewritten = reply.content.strip()
        lowered = rewritten.lower()
        for preamble in REWRITE_PREAMBLES:
            if lowered.startswith(preamble):
                rewritten = rewritten[len(preamble):].strip()
                break
        rewritten = rewritten.strip("\"'").strip()
        if not rewritten or len(rewritten) > len(query) * 3:
            return query
        logger.debug("Query rewrite: %r -> %r", query, rewritten)
        return rewritten

    def answer(self, question: str, nodes: List[ScoredNode], cancel: Optional[CancelToken] = None) -> str:
        """Answer *question* grounded only in *nodes*."""
        if not nodes:
            return NO_CONTEXT_ANSWER
        if self.model is None:
            raise LLMError("no chat model configured for answering")
        context = "\n\n---\n\n".join(
            f"[{sn.node.type}] {sn.node.summary}\n{sn.node.content}" for sn in nodes
        )
        reply = self.model.generate(
            [ChatMessage.system(ASK_SYSTEM_PROMPT),
             ChatMessage.user(ASK_USER_PROMPT.format(context=context, question=question))],
            cancel=cancel,
        )
        return reply.content.strip()

    def suggest_context_queries(self, goal: str, cancel: Optional[CancelToken] = None) -> List[str]:
        """Three to five search phrases for *goal*; never raises for model failures."""
        if self.model is None:
            return [goal, FALLBACK_CONTEXT_QUERY]
        try:
            reply = self.model.generate(
                [ChatMessage.user(SUGGEST_QUERIES_PROMPT.format(goal=goal))], cancel=cancel
            )
        except OperationCancelled:
            raise
        except (LLMError, TaskWingError) as exc:
            logger.warning("Context query suggestion failed: %s", exc)
            return [goal, FALLBACK_CONTEXT_QUERY]

        queries = _parse_query_list(reply.content)
        return queries or [goal, FALLBACK_CONTEXT_QUERY]

    def check_embedding_consistency(self) -> Optional[EmbeddingConsistencyReport]:
        """``None`` when every node is embedded with one dimension."""
        stats = self.store.embedding_stats()
        if stats["total"] == 0:
            return None
        issues = []
        if stats["mixed_dim"]:
            issues.append(
                "mixed embedding dimensions detected (found %d-dim, but others exist)" % stats["dim"]
            )
        if stats["without"] > 0:
            issues.append("%d nodes missing embeddings" % stats["without"])
        if not issues:
            return None

        if stats["mixed_dim"] and stats["without"] > 0:
            hint = "Run 'taskwing doctor --fix' to fix mixed dimensions and regenerate missing embeddings."
        elif stats["mixed_dim"]:
            hint = "Run 'taskwing doctor --fix' to fix."
        else:
            hint = "Run 'taskwing doctor --fix' to backfill."
        logger.warning(
            "Embedding consistency check failed: total=%d with=%d without=%d mixed=%s",
            stats["total"], stats["with_embeddings"], stats["without"], stats["mixed_dim"],
        )
        return EmbeddingConsistencyReport(
            total_nodes=stats["total"],
            nodes_with_embeddings=stats["with_embeddings"],
            nodes_without_embeddings=stats["without"],
            embedding_dimension=stats["dim"],
            mixed_dimensions=stats["mixed_dim"],
            message=f"Embedding issues: {'; '.join(issues)}. {hint}",
        )

    def rebuild_embeddings(self) -> int:
        """Re-embed every node with the current embedder and rebuild the FTS index."""
        if self.embedder is None:
            return 0
        count = 0
        for node in self.store.list_nodes():
            self.store.set_embedding(node.id, self.embedder.embed(node.text))
            count += 1
        self.store.rebuild_fts()
        return count


def _parse_query_list(content: str) -> List[str]:
    text = content.strip()
    for fence in ("```json", "```"):
        if text.startswith(fence):
            text = text[len(fence):]
            break
    if text.endswith("```"):
        text = text[:-3]
    try:
        data: Any = json.loads(text.strip())
    except json.JSONDecodeError:
        return []
    if isinstance(data, dict):
        data = data.get("queries", [])
    if not isinstance(data, list):
        return []
    return [str(q).strip() for q in data if isinstance(q, str) and q.strip()][:5]
