"""Promote agent findings into the knowledge graph.

Ingestion runs in four steps: purge stale nodes per source agent, upsert one
node per finding, link nodes into a graph, and report what happened.  Edges
come from three sources:

- shared evidence files (``shares_evidence``)
- embedding similarity (``semantically_similar``)
- relationships the LLM named explicitly, resolved by title
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set

from .embeddings import Embedder, cosine_similarity
from .errors import StoreError, TaskWingError
from .models import WORKSPACE_ROOT, Finding, Node, Relationship
from .storage import KnowledgeStore

logger = logging.getLogger(__name__)

SHARED_EVIDENCE_STRONG = 0.9
SHARED_EVIDENCE_WEAK = 0.7
DEFAULT_SEMANTIC_THRESHOLD = 0.55
PARTIAL_TITLE_THRESHOLD = 0.4

RELATION_SHARES_EVIDENCE = "shares_evidence"
RELATION_SEMANTIC = "semantically_similar"
RELATION_RELATES_TO = "relates_to"

# Relations the LLM may name; anything else is stored as relates_to.
STRONG_RELATIONS = ("depends_on", "affects", "extends")

_TITLE_STOP_WORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of",
    "with", "by", "is", "are", "was", "were", "use", "using", "based", "via",
})
_TITLE_SEPARATORS = re.compile(r"[-_/]")


@dataclass
class IngestStats:
    nodes_created: int = 0
    nodes_merged: int = 0
    nodes_purged: int = 0
    evidence_edges: int = 0
    semantic_edges: int = 0
    llm_edges: int = 0
    embedding_failures: int = 0

    @property
    def total_edges(self) -> int:
        return self.evidence_edges + self.semantic_edges + self.llm_edges

    def summary(self) -> str:
        return (
            f"{self.nodes_created} nodes created, {self.nodes_merged} merged, "
            f"{self.nodes_purged} purged, {self.total_edges} edges "
            f"({self.evidence_edges} evidence, {self.semantic_edges} semantic, {self.llm_edges} llm)"
        )


def node_content(finding: Finding) -> str:
    content = f"{finding.title}\n{finding.description}"
    if finding.why:
        content += f"\n\nWhy: {finding.why}"
    if finding.tradeoffs:
        content += f"\nTradeoffs: {finding.tradeoffs}"
    return content


def title_tokens(text: str) -> Set[str]:
    words = _TITLE_SEPARATORS.sub(" ", text.lower()).split()
    return {w for w in words if len(w) > 2 and w not in _TITLE_STOP_WORDS}


def find_by_partial_title(nodes_by_title: Dict[str, str], search: str) -> Optional[str]:
    """Resolve *search* to a node id by substring, then by word overlap."""
    needle = search.lower().strip()
    if not needle:
        return None
    for title, node_id in nodes_by_title.items():
        if needle in title or title in needle:
            return node_id

    search_words = title_tokens(needle)
    if not search_words:
        return None
    best_id, best_score = None, 0.0
    for title, node_id in nodes_by_title.items():
        words = title_tokens(title)
        if not words:
            continue
        similarity = len(search_words & words) / len(search_words | words)
        if similarity >= PARTIAL_TITLE_THRESHOLD and similarity > best_score:
            best_id, best_score = node_id, similarity
    return best_id


class KnowledgeIngestor:
    """Writes findings and relationships into a :class:`KnowledgeStore`."""

    def __init__(
        self,
        store: KnowledgeStore,
        embedder: Optional[Embedder] = None,
        semantic_threshold: float = DEFAULT_SEMANTIC_THRESHOLD,
    ) -> None:
        self.store = store
        self.embedder = embedder
        self.semantic_threshold = semantic_threshold

    def ingest(
        self,
        findings: List[Finding],
        relationships: Optional[List[Relationship]] = None,
        file_paths: Optional[Iterable[str]] = None,
        workspace: str = WORKSPACE_ROOT,
    ) -> IngestStats:
        stats = IngestStats()
        if not findings:
            return stats

        paths = [p for p in (file_paths or []) if p]
        stats.nodes_purged = self._purge(findings, paths)
        nodes_by_title = self._upsert_nodes(findings, workspace, stats)

        all_nodes = self.store.list_nodes()
        stats.evidence_edges = self.link_by_evidence(all_nodes)
        stats.semantic_edges = self.link_semantic()
        stats.llm_edges = self.link_relationships(relationships or [], nodes_by_title)

        logger.info("Ingested %d findings: %s", len(findings), stats.summary())
        return stats

    # ------------------------------------------------------------------

    def _purge(self, findings: List[Finding], paths: List[str]) -> int:
        purged = 0
        seen: Set[str] = set()
        for finding in findings:
            agent = finding.source_agent
            if not agent or agent in seen:
                continue
            seen.add(agent)
            if paths:
                purged += self.store.delete_by_files(agent, paths)
            else:
                purged += self.store.delete_by_agent(agent)
        return purged

    def _upsert_nodes(self, findings: List[Finding], workspace: str, stats: IngestStats) -> Dict[str, str]:
        nodes_by_title = {n.summary.lower(): n.id for n in self.store.list_nodes()}
        for finding in findings:
            if not finding.title.strip():
                continue
            content = node_content(finding)
            node = Node(
                id="",
                type=finding.kind,
                summary=finding.title,
                content=content,
                source_agent=finding.source_agent,
                evidence=list(finding.evidence),
                confidence=finding.confidence_score or 0.5,
                workspace=workspace or WORKSPACE_ROOT,
                embedding=self._embed(content, stats),
                debt_score=finding.debt_score,
            )
            try:
                stored, created = self.store.upsert_by_summary(node)
            except StoreError as exc:
                logger.warning("Skipping finding %r: %s", finding.title, exc)
                continue
            if created:
                stats.nodes_created += 1
            else:
                stats.nodes_merged += 1
            nodes_by_title[finding.title.lower()] = stored.id
        return nodes_by_title

    def _embed(self, text: str, stats: IngestStats) -> Optional[List[float]]:
        if self.embedder is None:
            return None
        try:
            return self.embedder.embed(text)
        except (TaskWingError, OSError, ValueError, KeyError) as exc:
            stats.embedding_failures += 1
            logger.warning("Embedding failed, node stored without vector: %s", exc)
            return None

    # ------------------------------------------------------------------
    # Linking
    # ------------------------------------------------------------------

    def link_by_evidence(self, nodes: List[Node]) -> int:
        """Link every pair of nodes citing a common file.

        Weight is 0.9 when the pair shares two or more files, else 0.7.
        """
        files_by_node: Dict[str, List[str]] = {}
        nodes_by_file: Dict[str, List[str]] = {}
        for node in nodes:
            paths = node.file_paths()
            if not paths:
                continue
            files_by_node[node.id] = paths
            for path in paths:
                nodes_by_file.setdefault(path, []).append(node.id)

        count = 0
        linked: Set[tuple] = set()
        for path, node_ids in nodes_by_file.items():
            for i in range(len(node_ids)):
                for j in range(i + 1, len(node_ids)):
                    a, b = node_ids[i], node_ids[j]
                    pair = (a, b) if a < b else (b, a)
                    if pair in linked:
                        continue
                    linked.add(pair)
                    shared = len(set(files_by_node[a]) & set(files_by_node[b]))
                    weight = SHARED_EVIDENCE_STRONG if shared >= 2 else SHARED_EVIDENCE_WEAK
                    props = {"shared_file": path, "shared_count": shared}
                    if self._link_both(a, b, RELATION_SHARES_EVIDENCE, weight, props):
                        count += 1
        return count

    def link_semantic(self) -> int:
        """Link node pairs whose embeddings are at least ``semantic_threshold`` similar."""
        embedded = list(self.store.list_with_embeddings())
        count = 0
        for i in range(len(embedded)):
            for j in range(i + 1, len(embedded)):
                a, b = embedded[i], embedded[j]
                similarity = cosine_similarity(a.embedding or [], b.embedding or [])
                if similarity < self.semantic_threshold:
                    continue
                if self._link_both(a.id, b.id, RELATION_SEMANTIC, similarity,
                                   {"similarity": round(similarity, 4)}):
                    count += 1
        return count

    def link_relationships(self, relationships: List[Relationship], nodes_by_title: Dict[str, str]) -> int:
        count = 0
        for rel in relationships:
            from_id = nodes_by_title.get(rel.source.lower())
            to_id = nodes_by_title.get(rel.target.lower())
            if not from_id or not to_id:
                from_id = find_by_partial_title(nodes_by_title, rel.source)
                to_id = find_by_partial_title(nodes_by_title, rel.target)
            if not from_id or not to_id or from_id == to_id:
                continue

            relation = rel.relation.lower()
            if relation in STRONG_RELATIONS:
                weight = SHARED_EVIDENCE_STRONG
            else:
                relation, weight = RELATION_RELATES_TO, SHARED_EVIDENCE_WEAK
            try:
                self.store.link(from_id, to_id, relation, weight,
                                {"llm_extracted": True, "reason": rel.reason})
            except StoreError as exc:
                logger.debug("Relationship %s -> %s skipped: %s", rel.source, rel.target, exc)
                continue
            count += 1
        return count

    def _link_both(self, a: str, b: str, relation: str, weight: float, props: dict) -> bool:
        # Symmetric relations are stored in both directions so outgoing-edge
        # expansion reaches either side.
        try:
            self.store.link(a, b, relation, weight, props)
            self.store.link(b, a, relation, weight, props)
        except StoreError as exc:
            logger.debug("Link %s <-> %s skipped: %s", a, b, exc)
            return False
        return True
