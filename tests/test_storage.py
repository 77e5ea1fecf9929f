"""Tests for the knowledge store."""

import pytest

from taskwing.errors import StoreError
from taskwing.models import Evidence, Node
from taskwing.storage import KnowledgeStore


def node(summary, node_type="decision", agent="code", files=(), content="", workspace="root", embedding=None):
    return Node(
        id="", type=node_type, summary=summary, content=content, source_agent=agent,
        evidence=[Evidence(file_path=f, start_line=i + 1) for i, f in enumerate(files)],
        workspace=workspace, embedding=embedding,
    )


class TestUpsert:
    """Tests for upsert_by_summary."""

    def test_insert(self, store: KnowledgeStore):
        """New summaries create nodes with generated ids."""
        stored, created = store.upsert_by_summary(node("Use SQLite", files=["db.py"]))
        assert created
        assert stored.id.startswith("n-")
        assert store.get_node(stored.id).summary == "Use SQLite"
        assert store.count_nodes() == 1

    def test_same_finding_twice(self, store: KnowledgeStore):
        """Upserting the same summary twice keeps one node and unions evidence."""
        first, _ = store.upsert_by_summary(node("Use SQLite", files=["db.py"]))
        incoming = node("  use   sqlite ", files=["db.py", "repo.py"])
        incoming.confidence = 0.9
        second, created = store.upsert_by_summary(incoming)

        assert not created
        assert second.id == first.id
        assert store.count_nodes() == 1
        stored = store.get_node(first.id)
        assert sorted(stored.file_paths()) == ["db.py", "repo.py"]
        assert stored.confidence == 0.9

    def test_type_is_part_of_key(self, store: KnowledgeStore):
        """The same summary under another type is a different node."""
        store.upsert_by_summary(node("Caching", node_type="pattern"))
        store.upsert_by_summary(node("Caching", node_type="decision"))
        assert store.count_nodes() == 2
        assert store.find_by_summary("caching", "pattern").type == "pattern"

    def test_empty_summary(self, store: KnowledgeStore):
        """Blank summaries are rejected."""
        with pytest.raises(StoreError):
            store.upsert_by_summary(node("   "))

    def test_embedding_kept_when_absent(self, store: KnowledgeStore):
        """A merge without an embedding keeps the stored vector."""
        store.upsert_by_summary(node("Vectors", embedding=[1.0, 0.0]))
        merged, _ = store.upsert_by_summary(node("Vectors"))
        assert store.get_node(merged.id).embedding == [1.0, 0.0]


class TestDeletion:
    """Tests for per-agent and per-file deletion."""

    def test_delete_by_agent(self, store: KnowledgeStore):
        """Only the named agent's nodes are removed."""
        store.upsert_by_summary(node("A", agent="code"))
        store.upsert_by_summary(node("B", agent="doc"))
        assert store.delete_by_agent("code") == 1
        assert [n.summary for n in store.list_nodes()] == ["B"]

    def test_delete_by_files_cascades_edges(self, store: KnowledgeStore):
        """Nodes citing a changed file go away together with their edges."""
        a, _ = store.upsert_by_summary(node("A", files=["x.py"]))
        b, _ = store.upsert_by_summary(node("B", files=["y.py"]))
        c, _ = store.upsert_by_summary(node("C", agent="doc", files=["x.py"]))
        store.link(a.id, b.id, "depends_on", 0.9)
        store.link(b.id, a.id, "affects", 0.7)

        assert store.delete_by_files("code", ["x.py"]) == 1
        assert store.get_node(a.id) is None
        assert store.get_node(c.id) is not None
        assert store.list_edges() == []

    def test_clear(self, store: KnowledgeStore):
        """clear() removes everything."""
        store.upsert_by_summary(node("A"))
        store.clear()
        assert store.count_nodes() == 0
        assert store.search_fts("A") == []


class TestEdges:
    """Tests for edges."""

    def test_link_keeps_max_confidence(self, store: KnowledgeStore):
        """Relinking an edge keeps the higher confidence."""
        a, _ = store.upsert_by_summary(node("A"))
        b, _ = store.upsert_by_summary(node("B"))
        store.link(a.id, b.id, "relates_to", 0.7)
        store.link(a.id, b.id, "relates_to", 0.5)
        store.link(a.id, b.id, "relates_to", 0.9)

        edges = store.edges_of(a.id)
        assert len(edges) == 1
        assert edges[0].confidence == 0.9
        assert store.edges_to(b.id)[0].from_node == a.id
        assert store.edges_of(b.id) == []

    def test_self_edge(self, store: KnowledgeStore):
        """Self-edges are rejected."""
        a, _ = store.upsert_by_summary(node("A"))
        with pytest.raises(StoreError):
            store.link(a.id, a.id, "relates_to")

    def test_unknown_node(self, store: KnowledgeStore):
        """Edges to missing nodes are rejected."""
        a, _ = store.upsert_by_summary(node("A"))
        with pytest.raises(StoreError):
            store.link(a.id, "n-missing", "relates_to")

    def test_properties_round_trip(self, store: KnowledgeStore):
        """Edge properties are stored as JSON."""
        a, _ = store.upsert_by_summary(node("A"))
        b, _ = store.upsert_by_summary(node("B"))
        store.link(a.id, b.id, "shares_evidence", 0.9, {"shared_file": "x.py"})
        assert store.edges_of(a.id)[0].properties == {"shared_file": "x.py"}


class TestSearch:
    """Tests for full-text search and embeddings."""

    def test_fts(self, store: KnowledgeStore):
        """Matching nodes come back with a negative rank."""
        store.upsert_by_summary(node("Token authentication", content="JWT tokens in headers"))
        store.upsert_by_summary(node("Database migrations", content="Alembic scripts"))
        hits = store.search_fts("authentication tokens")

        assert [n.summary for n, _ in hits] == ["Token authentication"]
        assert hits[0][1] < 0

    def test_fts_blank_query(self, store: KnowledgeStore):
        """Blank queries match nothing."""
        store.upsert_by_summary(node("A"))
        assert store.search_fts("  ") == []

    def test_embedding_stats(self, store: KnowledgeStore):
        """Stats report missing and mixed dimensions."""
        a, _ = store.upsert_by_summary(node("A", embedding=[1.0, 0.0]))
        store.upsert_by_summary(node("B", embedding=[1.0, 0.0, 0.0]))
        store.upsert_by_summary(node("C"))
        stats = store.embedding_stats()

        assert stats["total"] == 3
        assert stats["with_embeddings"] == 2
        assert stats["without"] == 1
        assert stats["mixed_dim"]

        store.set_embedding(a.id, [0.5, 0.5, 0.0])
        assert {n.summary for n in store.list_with_embeddings()} == {"A", "B"}

    def test_rebuild_fts(self, store: KnowledgeStore):
        """The FTS index can be rebuilt from the node table."""
        store.upsert_by_summary(node("Rate limiting"))
        assert store.rebuild_fts() == 1
        assert store.search_fts("rate")[0][0].summary == "Rate limiting"

    def test_persistence(self, temp_dir):
        """Nodes survive reopening the database."""
        path = temp_dir / "db" / "memory.db"
        with KnowledgeStore(path) as kb:
            kb.upsert_by_summary(node("Persistent", files=["a.py"]))
        with KnowledgeStore(path) as kb:
            stored = kb.find_by_summary("persistent")
            assert stored.file_paths() == ["a.py"]
