"""Tests for knowledge ingestion."""

from taskwing.embeddings import HashEmbeddingModel
from taskwing.errors import LLMNetworkError
from taskwing.ingest import (
    IngestStats,
    KnowledgeIngestor,
    find_by_partial_title,
    node_content,
    title_tokens,
)
from taskwing.models import Relationship, new_finding
from taskwing.storage import KnowledgeStore


def finding(kind, title, files=(), agent="code", **kwargs):
    return new_finding(kind, title, kwargs.pop("description", f"About {title}"),
                       source_agent=agent, evidence=[{"file_path": f} for f in files], **kwargs)


class BrokenEmbedder:
    def embed(self, text):
        raise LLMNetworkError("embedding service unavailable")


class TestIngest:
    """Tests for KnowledgeIngestor.ingest."""

    def test_creates_and_merges(self, store: KnowledgeStore):
        """A second run with the same title merges instead of duplicating."""
        ingestor = KnowledgeIngestor(store)
        stats = ingestor.ingest([finding("decision", "Use SQLite", ["db.py"])])
        assert stats.nodes_created == 1

        stats = ingestor.ingest([finding("decision", "Use SQLite", ["db.py"], agent="git")])
        assert stats.nodes_created == 0
        assert stats.nodes_merged == 1
        assert store.count_nodes() == 1

    def test_empty_findings(self, store: KnowledgeStore):
        """Nothing to ingest leaves the store untouched."""
        store_stats = KnowledgeIngestor(store).ingest([])
        assert store_stats == IngestStats()

    def test_bootstrap_purges_agent_nodes(self, store: KnowledgeStore):
        """A full run replaces only the producing agent's nodes."""
        ingestor = KnowledgeIngestor(store)
        ingestor.ingest([finding("decision", "Old decision", ["a.py"]),
                         finding("feature", "Doc feature", ["README.md"], agent="doc")])

        stats = ingestor.ingest([finding("decision", "New decision", ["b.py"])])
        assert stats.nodes_purged == 1
        summaries = {n.summary for n in store.list_nodes()}
        assert summaries == {"Doc feature", "New decision"}

    def test_watch_purges_by_file(self, store: KnowledgeStore):
        """Incremental runs purge only nodes citing the changed files."""
        ingestor = KnowledgeIngestor(store)
        ingestor.ingest([finding("decision", "About a", ["a.py"]),
                         finding("decision", "About b", ["b.py"])])

        stats = ingestor.ingest([finding("decision", "About a again", ["a.py"])], file_paths=["a.py"])
        assert stats.nodes_purged == 1
        assert {n.summary for n in store.list_nodes()} == {"About b", "About a again"}

    def test_node_fields(self, store: KnowledgeStore):
        """Nodes carry content, confidence, debt and workspace."""
        f = finding("decision", "Use SQLite", ["db.py"], why="Simple", tradeoffs="One writer",
                    confidence=0.9, metadata={"debt_score": 0.6})
        KnowledgeIngestor(store).ingest([f], workspace="api")

        node = store.list_nodes()[0]
        assert node.type == "decision"
        assert node.content == "Use SQLite\nAbout Use SQLite\n\nWhy: Simple\nTradeoffs: One writer"
        assert node.confidence == 0.9
        assert node.debt_score == 0.6
        assert node.workspace == "api"
        assert node.source_agent == "code"
        assert node.file_paths() == ["db.py"]

    def test_embeddings_stored(self, store: KnowledgeStore):
        """With an embedder every node gets a vector."""
        KnowledgeIngestor(store, HashEmbeddingModel()).ingest([finding("feature", "Login", ["auth.py"])])
        assert store.list_nodes()[0].embedding

    def test_embedding_failure_keeps_node(self, store: KnowledgeStore):
        """A failing embedder is counted and the node is stored without a vector."""
        stats = KnowledgeIngestor(store, BrokenEmbedder()).ingest([finding("feature", "Login")])
        assert stats.embedding_failures == 1
        assert stats.nodes_created == 1
        assert store.list_nodes()[0].embedding is None


class TestLinking:
    """Tests for graph edge creation."""

    def test_shared_evidence_weights(self, store: KnowledgeStore):
        """Two shared files weigh 0.9, one weighs 0.7, both directions stored."""
        KnowledgeIngestor(store).ingest([
            finding("decision", "Alpha", ["x.py", "y.py"]),
            finding("pattern", "Beta", ["x.py", "y.py"]),
            finding("feature", "Gamma", ["y.py"]),
        ])
        ids = {n.summary: n.id for n in store.list_nodes()}
        edges = {(e.from_node, e.to_node): e for e in store.list_edges() if e.relation == "shares_evidence"}

        assert edges[(ids["Alpha"], ids["Beta"])].confidence == 0.9
        assert edges[(ids["Beta"], ids["Alpha"])].confidence == 0.9
        assert edges[(ids["Alpha"], ids["Gamma"])].confidence == 0.7
        assert edges[(ids["Gamma"], ids["Beta"])].confidence == 0.7
        assert len(edges) == 6

    def test_semantic_links(self, store: KnowledgeStore):
        """Near-identical texts are linked as semantically similar."""
        stats = KnowledgeIngestor(store, HashEmbeddingModel()).ingest([
            finding("decision", "Token authentication middleware", description="JWT token auth middleware"),
            finding("pattern", "Token authentication middleware layer", description="JWT token auth middleware"),
            finding("feature", "Billing export", description="CSV invoices for accountants"),
        ])
        assert stats.semantic_edges == 1
        relations = [e.relation for e in store.list_edges()]
        assert relations.count("semantically_similar") == 2

    def test_llm_relationships(self, store: KnowledgeStore):
        """Named relations resolve titles exactly or partially."""
        stats = KnowledgeIngestor(store).ingest(
            [finding("feature", "User registration"), finding("pattern", "CI pipeline"),
             finding("decision", "Postgres storage")],
            relationships=[
                Relationship("User registration", "CI pipeline", "depends_on", "tested"),
                Relationship("registration", "Postgres", "stores_in", "writes users"),
                Relationship("User registration", "Unknown thing", "affects"),
            ],
        )
        assert stats.llm_edges == 2
        ids = {n.summary: n.id for n in store.list_nodes()}

        strong = store.edges_of(ids["User registration"])
        by_target = {e.to_node: e for e in strong}
        assert by_target[ids["CI pipeline"]].relation == "depends_on"
        assert by_target[ids["CI pipeline"]].confidence == 0.9
        assert by_target[ids["CI pipeline"]].properties["llm_extracted"] is True
        assert by_target[ids["Postgres storage"]].relation == "relates_to"
        assert by_target[ids["Postgres storage"]].confidence == 0.7

    def test_stats_summary(self):
        """The summary line totals all edge sources."""
        stats = IngestStats(nodes_created=2, evidence_edges=1, semantic_edges=2, llm_edges=3)
        assert stats.total_edges == 6
        assert stats.summary() == "2 nodes created, 0 merged, 0 purged, 6 edges (1 evidence, 2 semantic, 3 llm)"


class TestTitleMatching:
    """Tests for partial title resolution."""

    def test_substring(self):
        """Substrings in either direction match."""
        titles = {"jwt token authentication": "n1"}
        assert find_by_partial_title(titles, "token authentication") == "n1"
        assert find_by_partial_title(titles, "JWT token authentication flow") == "n1"

    def test_word_overlap(self):
        """Word overlap at 0.4 or above matches the best candidate."""
        titles = {"sqlite storage layer": "n1", "http client": "n2"}
        assert find_by_partial_title(titles, "storage with sqlite") == "n1"
        assert find_by_partial_title(titles, "kafka consumer") is None
        assert find_by_partial_title(titles, "  ") is None

    def test_title_tokens(self):
        """Separators split words; stop words and short words drop."""
        assert title_tokens("Use the CLI-based go_mod/loader") == {"cli", "mod", "loader"}

    def test_node_content_plain(self):
        """Content without why or tradeoffs is title and description."""
        assert node_content(new_finding("feature", "Login", "Sign in")) == "Login\nSign in"
