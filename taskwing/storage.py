"""Persistent knowledge graph for a repository.

Architecture:
- **nodes**      findings promoted to the graph, upserted by ``(type, summary)``
- **edges**      typed, weighted relations; removed with their nodes
  (``ON DELETE CASCADE``)
- **nodes_fts**  FTS5 index over summary and content, rebuildable from the
  ``nodes`` table at any time

Embeddings are stored as JSON text on the node row together with their
dimension, so vector recall is a single table scan and mixed dimensions are
detectable with one aggregate query.
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
import threading
import uuid
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from .config import memory_db_path
from .errors import StoreError
from .models import WORKSPACE_ROOT, Evidence, Node, NodeEdge, merge_evidence

logger = logging.getLogger(__name__)

# Rank reported for LIKE matches, per matching term, when FTS5 is missing.
LIKE_RANK_PER_HIT = -5.0


def summary_key(summary: str) -> str:
    return " ".join(summary.lower().split())


def new_node_id() -> str:
    return f"n-{uuid.uuid4().hex[:8]}"


class KnowledgeStore:
    """SQLite store for nodes, edges, embeddings and full-text search.

    Writes are serialised by an internal lock so agents running on worker
    threads can share one store.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self._lock = threading.RLock()
        self.fts_enabled = True
        self._init_schema()

    @classmethod
    def for_project(cls, repo_root: Path) -> "KnowledgeStore":
        return cls(memory_db_path(repo_root))

    def close(self) -> None:
        self.conn.close()

    def __enter__(self) -> "KnowledgeStore":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def _init_schema(self) -> None:
        cur = self.conn.cursor()
        cur.execute("""
            CREATE TABLE IF NOT EXISTS nodes (
                id            TEXT PRIMARY KEY,
                type          TEXT NOT NULL,
                summary       TEXT NOT NULL,
                summary_key   TEXT NOT NULL,
                content       TEXT NOT NULL DEFAULT '',
                source_agent  TEXT NOT NULL DEFAULT '',
                evidence      TEXT NOT NULL DEFAULT '[]',
                confidence    REAL NOT NULL DEFAULT 0.5,
                workspace     TEXT NOT NULL DEFAULT 'root',
                embedding     TEXT,
                embedding_dim INTEGER,
                debt_score    REAL,
                created_at    TEXT NOT NULL
            )
        """)
        cur.execute("""
            CREATE TABLE IF NOT EXISTS edges (
                id         INTEGER PRIMARY KEY AUTOINCREMENT,
                from_node  TEXT NOT NULL REFERENCES nodes(id) ON DELETE CASCADE,
                to_node    TEXT NOT NULL REFERENCES nodes(id) ON DELETE CASCADE,
                relation   TEXT NOT NULL,
                confidence REAL NOT NULL DEFAULT 1.0,
                properties TEXT,
                UNIQUE (from_node, to_node, relation),
                CHECK (from_node <> to_node)
            )
        """)
        cur.execute("CREATE UNIQUE INDEX IF NOT EXISTS idx_nodes_summary ON nodes(type, summary_key)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_nodes_agent ON nodes(source_agent)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_nodes_type ON nodes(type)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_edges_from ON edges(from_node)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_edges_to ON edges(to_node)")
        try:
            cur.execute(
                "CREATE VIRTUAL TABLE IF NOT EXISTS nodes_fts "
                "USING fts5(node_id UNINDEXED, summary, content)"
            )
        except sqlite3.OperationalError as exc:
            logger.warning("FTS5 unavailable, node search uses LIKE: %s", exc)
            self.fts_enabled = False
        self.conn.commit()

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def upsert_by_summary(self, node: Node) -> Tuple[Node, bool]:
        """Insert *node*, or merge it into the node with the same type and summary.

        On merge the stored id and creation time are kept, evidence is
        unioned, confidence becomes the maximum of both and the embedding is
        replaced only when the incoming node carries one.  Returns the stored
        node and whether it was newly created.
        """
        key = summary_key(node.summary)
        if not key:
            raise StoreError("node summary must not be empty")
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM nodes WHERE type = ? AND summary_key = ?", (node.type, key)
            ).fetchone()
            if row is None:
                stored = Node(
                    id=node.id or new_node_id(),
                    type=node.type,
                    summary=node.summary.strip(),
                    content=node.content,
                    source_agent=node.source_agent,
                    evidence=list(node.evidence),
                    confidence=node.confidence,
                    workspace=node.workspace or WORKSPACE_ROOT,
                    embedding=node.embedding,
                    debt_score=node.debt_score,
                    created_at=node.created_at,
                )
                self._insert(stored)
                self.conn.commit()
                return stored, True

            existing = _row_to_node(row)
            existing.evidence = merge_evidence(existing.evidence, node.evidence)
            existing.confidence = max(existing.confidence, node.confidence)
            if node.content:
                existing.content = node.content
            if node.source_agent:
                existing.source_agent = node.source_agent
            if node.embedding:
                existing.embedding = node.embedding
            if node.debt_score is not None:
                existing.debt_score = node.debt_score
            self.conn.execute(
                """UPDATE nodes SET content = ?, source_agent = ?, evidence = ?, confidence = ?,
                   embedding = ?, embedding_dim = ?, debt_score = ? WHERE id = ?""",
                (existing.content, existing.source_agent, existing.evidence_json(), existing.confidence,
                 _dump_embedding(existing.embedding), _dim(existing.embedding), existing.debt_score,
                 existing.id),
            )
            self._index_fts(existing)
            self.conn.commit()
            return existing, False

    def _insert(self, node: Node) -> None:
        self.conn.execute(
            """INSERT INTO nodes (id, type, summary, summary_key, content, source_agent, evidence,
               confidence, workspace, embedding, embedding_dim, debt_score, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (node.id, node.type, node.summary, summary_key(node.summary), node.content,
             node.source_agent, node.evidence_json(), node.confidence, node.workspace,
             _dump_embedding(node.embedding), _dim(node.embedding), node.debt_score, node.created_at),
        )
        self._index_fts(node)

    def _index_fts(self, node: Node) -> None:
        if not self.fts_enabled:
            return
        self.conn.execute("DELETE FROM nodes_fts WHERE node_id = ?", (node.id,))
        self.conn.execute(
            "INSERT INTO nodes_fts (node_id, summary, content) VALUES (?, ?, ?)",
            (node.id, node.summary, node.content),
        )

    def get_node(self, node_id: str) -> Optional[Node]:
        row = self.conn.execute("SELECT * FROM nodes WHERE id = ?", (node_id,)).fetchone()
        return _row_to_node(row) if row else None

    def find_by_summary(self, summary: str, node_type: Optional[str] = None) -> Optional[Node]:
        key = summary_key(summary)
        if node_type:
            row = self.conn.execute(
                "SELECT * FROM nodes WHERE type = ? AND summary_key = ?", (node_type, key)
            ).fetchone()
        else:
            row = self.conn.execute(
                "SELECT * FROM nodes WHERE summary_key = ? ORDER BY created_at LIMIT 1", (key,)
            ).fetchone()
        return _row_to_node(row) if row else None

    def list_nodes(self) -> List[Node]:
        rows = self.conn.execute("SELECT * FROM nodes ORDER BY created_at, id").fetchall()
        return [_row_to_node(r) for r in rows]

    def list_by_type(self, node_type: str) -> List[Node]:
        """Every node of *node_type*, unfiltered and in creation order."""
        rows = self.conn.execute(
            "SELECT * FROM nodes WHERE type = ? ORDER BY created_at, id", (node_type,)
        ).fetchall()
        return [_row_to_node(r) for r in rows]

    def list_by_agent(self, agent: str) -> List[Node]:
        rows = self.conn.execute(
            "SELECT * FROM nodes WHERE source_agent = ? ORDER BY created_at, id", (agent,)
        ).fetchall()
        return [_row_to_node(r) for r in rows]

    def count_nodes(self) -> int:
        return int(self.conn.execute("SELECT COUNT(*) FROM nodes").fetchone()[0])

    # ------------------------------------------------------------------
    # Incremental refresh
    # ------------------------------------------------------------------

    def delete_by_agent(self, agent: str) -> int:
        ids = [r["id"] for r in self.conn.execute(
            "SELECT id FROM nodes WHERE source_agent = ?", (agent,)
        ).fetchall()]
        return self._delete_ids(ids)

    def delete_by_files(self, agent: str, paths: Iterable[str]) -> int:
        """Delete *agent*'s nodes whose evidence cites any of *paths*."""
        wanted = {p.strip("/") for p in paths if p}
        if not wanted:
            return 0
        ids = []
        for row in self.conn.execute(
            "SELECT id, evidence FROM nodes WHERE source_agent = ?", (agent,)
        ).fetchall():
            if wanted.intersection(_evidence_paths(row["evidence"])):
                ids.append(row["id"])
        return self._delete_ids(ids)

    def _delete_ids(self, ids: List[str]) -> int:
        if not ids:
            return 0
        with self._lock:
            placeholders = ",".join("?" * len(ids))
            if self.fts_enabled:
                self.conn.execute(f"DELETE FROM nodes_fts WHERE node_id IN ({placeholders})", ids)
            self.conn.execute(f"DELETE FROM nodes WHERE id IN ({placeholders})", ids)
            self.conn.commit()
        logger.debug("Deleted %d nodes", len(ids))
        return len(ids)

    def clear(self) -> None:
        with self._lock:
            self.conn.execute("DELETE FROM edges")
            self.conn.execute("DELETE FROM nodes")
            if self.fts_enabled:
                self.conn.execute("DELETE FROM nodes_fts")
            self.conn.commit()

    # ------------------------------------------------------------------
    # Edges
    # ------------------------------------------------------------------

    def link(
        self,
        from_node: str,
        to_node: str,
        relation: str,
        confidence: float = 1.0,
        properties: Optional[Dict[str, Any]] = None,
    ) -> NodeEdge:
        """Create or strengthen an edge; an existing edge keeps the higher confidence."""
        if from_node == to_node:
            raise StoreError(f"self-edge not allowed: {from_node}")
        with self._lock:
            found = self.conn.execute(
                "SELECT COUNT(*) FROM nodes WHERE id IN (?, ?)", (from_node, to_node)
            ).fetchone()[0]
            if found != 2:
                raise StoreError(f"cannot link unknown nodes: {from_node} -> {to_node}")
            self.conn.execute(
                """INSERT INTO edges (from_node, to_node, relation, confidence, properties)
                   VALUES (?, ?, ?, ?, ?)
                   ON CONFLICT (from_node, to_node, relation)
                   DO UPDATE SET confidence = MAX(confidence, excluded.confidence),
                                 properties = excluded.properties""",
                (from_node, to_node, relation, confidence, json.dumps(properties or {})),
            )
            self.conn.commit()
        return NodeEdge(from_node, to_node, relation, confidence, dict(properties or {}))

    def edges_of(self, node_id: str) -> List[NodeEdge]:
        """Outgoing edges of *node_id*, strongest first."""
        rows = self.conn.execute(
            "SELECT * FROM edges WHERE from_node = ? ORDER BY confidence DESC, to_node", (node_id,)
        ).fetchall()
        return [_row_to_edge(r) for r in rows]

    def edges_to(self, node_id: str) -> List[NodeEdge]:
        rows = self.conn.execute(
            "SELECT * FROM edges WHERE to_node = ? ORDER BY confidence DESC, from_node", (node_id,)
        ).fetchall()
        return [_row_to_edge(r) for r in rows]

    def list_edges(self) -> List[NodeEdge]:
        return [_row_to_edge(r) for r in self.conn.execute("SELECT * FROM edges ORDER BY id").fetchall()]

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search_fts(self, query: str, limit: int = 25) -> List[Tuple[Node, float]]:
        """Lexical candidates with BM25 ranks (negative; lower is better)."""
        terms = [t for t in re.findall(r"\w+", query.lower()) if len(t) > 1]
        if not terms:
            return []
        if self.fts_enabled:
            match = " OR ".join(f'"{t}"' for t in terms)
            try:
                rows = self.conn.execute(
                    """SELECT n.*, bm25(nodes_fts) AS rank
                       FROM nodes_fts JOIN nodes n ON n.id = nodes_fts.node_id
                       WHERE nodes_fts MATCH ?
                       ORDER BY rank LIMIT ?""",
                    (match, limit),
                ).fetchall()
                return [(_row_to_node(r), float(r["rank"])) for r in rows]
            except sqlite3.OperationalError as exc:
                logger.warning("FTS query failed, using LIKE: %s", exc)
        return self._like_search(terms, limit)

    def _like_search(self, terms: List[str], limit: int) -> List[Tuple[Node, float]]:
        clauses = " + ".join(
            "(CASE WHEN lower(summary || ' ' || content) LIKE ? THEN 1 ELSE 0 END)" for _ in terms
        )
        params = [f"%{t}%" for t in terms]
        rows = self.conn.execute(
            f"SELECT *, ({clauses}) AS hits FROM nodes WHERE ({clauses}) > 0 "
            "ORDER BY hits DESC, created_at LIMIT ?",
            params + params + [limit],
        ).fetchall()
        return [(_row_to_node(r), LIKE_RANK_PER_HIT * int(r["hits"])) for r in rows]

    def list_with_embeddings(self) -> Iterator[Node]:
        """Every node carrying an embedding, streamed from one query."""
        cur = self.conn.execute("SELECT * FROM nodes WHERE embedding IS NOT NULL")
        for row in cur:
            yield _row_to_node(row)

    def set_embedding(self, node_id: str, embedding: Optional[List[float]]) -> None:
        with self._lock:
            self.conn.execute(
                "UPDATE nodes SET embedding = ?, embedding_dim = ? WHERE id = ?",
                (_dump_embedding(embedding), _dim(embedding), node_id),
            )
            self.conn.commit()

    def embedding_stats(self) -> Dict[str, Any]:
        row = self.conn.execute(
            """SELECT COUNT(*) AS total,
                      SUM(CASE WHEN embedding IS NOT NULL THEN 1 ELSE 0 END) AS with_embeddings,
                      COUNT(DISTINCT embedding_dim) AS dims,
                      MAX(embedding_dim) AS dim
               FROM nodes"""
        ).fetchone()
        total = int(row["total"] or 0)
        with_embeddings = int(row["with_embeddings"] or 0)
        return {
            "total": total,
            "with_embeddings": with_embeddings,
            "without": total - with_embeddings,
            "dim": int(row["dim"] or 0),
            "mixed_dim": int(row["dims"] or 0) > 1,
        }

    def rebuild_fts(self) -> int:
        """Re-create the full-text index from stored node text."""
        if not self.fts_enabled:
            return 0
        with self._lock:
            self.conn.execute("DELETE FROM nodes_fts")
            count = 0
            for row in self.conn.execute("SELECT id, summary, content FROM nodes").fetchall():
                self.conn.execute(
                    "INSERT INTO nodes_fts (node_id, summary, content) VALUES (?, ?, ?)",
                    (row["id"], row["summary"], row["content"]),
                )
                count += 1
            self.conn.commit()
        return count


# ===================================================================
# Row helpers
# ===================================================================

def _dump_embedding(embedding: Optional[List[float]]) -> Optional[str]:
    return json.dumps(embedding) if embedding else None


def _dim(embedding: Optional[List[float]]) -> Optional[int]:
    return len(embedding) if embedding else None


def _evidence_paths(raw: str) -> List[str]:
    try:
        items = json.loads(raw or "[]")
    except json.JSONDecodeError:
        return []
    return [str(item.get("file_path", "")) for item in items if isinstance(item, dict)]


def _row_to_node(row: sqlite3.Row) -> Node:
    try:
        evidence = [Evidence.from_dict(e) for e in json.loads(row["evidence"] or "[]")]
    except json.JSONDecodeError:
        evidence = []
    embedding = json.loads(row["embedding"]) if row["embedding"] else None
    return Node(
        id=row["id"],
        type=row["type"],
        summary=row["summary"],
        content=row["content"] or "",
        source_agent=row["source_agent"] or "",
        evidence=evidence,
        confidence=float(row["confidence"]),
        workspace=row["workspace"] or "",
        embedding=embedding,
        debt_score=row["debt_score"],
        created_at=row["created_at"],
    )


def _row_to_edge(row: sqlite3.Row) -> NodeEdge:
    props = json.loads(row["properties"]) if row["properties"] else {}
    return NodeEdge(
        from_node=row["from_node"],
        to_node=row["to_node"],
        relation=row["relation"],
        confidence=float(row["confidence"]),
        properties=props,
    )
