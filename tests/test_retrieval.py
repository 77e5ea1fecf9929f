"""Tests for hybrid retrieval."""

import pytest

from taskwing.config_manager import RetrievalConfig
from taskwing.embeddings import HashEmbeddingModel
from taskwing.errors import LLMError, LLMNetworkError
from taskwing.models import Evidence, Node, ScoredNode
from taskwing.retrieval import (
    NO_CONTEXT_ANSWER,
    RetrievalEngine,
    fts_rank_to_score,
    matches_workspace,
)
from taskwing.storage import KnowledgeStore


def add(store: KnowledgeStore, summary, node_type="decision", content="", workspace="root", embedding=None):
    stored, _ = store.upsert_by_summary(Node(
        id="", type=node_type, summary=summary, content=content, source_agent="code",
        evidence=[Evidence(file_path="app.py", start_line=3)], workspace=workspace, embedding=embedding,
    ))
    return stored


def plain_config(**overrides) -> RetrievalConfig:
    values = dict(query_rewrite_enabled=False, reranking_enabled=False, graph_expansion_enabled=False,
                  min_result_score_threshold=0.0)
    values.update(overrides)
    return RetrievalConfig(**values)


class TestWorkspaceFilter:
    """Tests for matches_workspace."""

    def test_empty_filter_accepts_all(self):
        """No workspace means no filtering."""
        assert matches_workspace("api", "")
        assert matches_workspace("root", "")

    def test_exact_workspace(self):
        """Only the requested workspace matches by default."""
        assert matches_workspace("api", "api")
        assert not matches_workspace("web", "api")
        assert not matches_workspace("root", "api")

    def test_include_root(self):
        """include_root additionally admits root nodes."""
        assert matches_workspace("root", "api", include_root=True)
        assert matches_workspace("", "api", include_root=True)
        assert not matches_workspace("web", "api", include_root=True)


class TestSearch:
    """Tests for RetrievalEngine.search."""

    def test_fts_ranking(self, store: KnowledgeStore):
        """Lexical matches are returned best first."""
        add(store, "JWT authentication middleware", content="Validates bearer tokens")
        add(store, "SQLite storage", content="Stores users")
        engine = RetrievalEngine(store, plain_config())
        results = engine.search("authentication middleware")

        assert [sn.node.summary for sn in results] == ["JWT authentication middleware"]
        assert results[0].fts_score > 0
        assert results[0].score == pytest.approx(results[0].fts_score * 0.40)

    def test_exact_id(self, store: KnowledgeStore):
        """A node id query returns that node with score 1."""
        target = add(store, "Event bus")
        results = RetrievalEngine(store, plain_config()).search(target.id)
        assert results[0].node.id == target.id
        assert results[0].is_exact
        assert results[0].score == 1.0

    def test_vector_recall(self, store: KnowledgeStore):
        """Embedding similarity finds nodes without lexical overlap."""
        embedder = HashEmbeddingModel()
        add(store, "Payments", content="stripe checkout", embedding=embedder.embed("stripe checkout flow"))
        engine = RetrievalEngine(store, plain_config(vector_score_threshold=0.1), embedder=embedder)
        results = engine.search("stripe checkout flow")

        assert results[0].node.summary == "Payments"
        assert results[0].vector_score > 0.5

    def test_type_filter(self, store: KnowledgeStore):
        """Type filtering treats Steps: patterns as workflows."""
        add(store, "Release process", node_type="pattern", content="Trigger: tag\nSteps:\n1. build")
        add(store, "Release notes convention", node_type="constraint", content="release notes required")
        engine = RetrievalEngine(store, plain_config())

        workflows = engine.search("release", node_type="workflow")
        assert [sn.node.summary for sn in workflows] == ["Release process"]

    def test_workspace_search(self, store: KnowledgeStore):
        """Workspace filtering optionally includes root nodes."""
        add(store, "API rate limiting", workspace="api")
        add(store, "Web rate limiting", workspace="web")
        add(store, "Global rate limiting", workspace="root")
        engine = RetrievalEngine(store, plain_config())

        only_api = {sn.node.summary for sn in engine.search("rate limiting", workspace="api")}
        with_root = {sn.node.summary for sn in engine.search("rate limiting", workspace="api", include_root=True)}
        everything = {sn.node.summary for sn in engine.search("rate limiting")}

        assert only_api == {"API rate limiting"}
        assert with_root == {"API rate limiting", "Global rate limiting"}
        assert len(everything) == 3

    def test_limit(self, store: KnowledgeStore):
        """Results are capped at the limit."""
        for i in range(8):
            add(store, f"Cache layer {i}", content="cache")
        assert len(RetrievalEngine(store, plain_config()).search("cache", limit=3)) == 3

    def test_search_debug(self, store: KnowledgeStore):
        """Debug search reports the stages that ran."""
        add(store, "Cache layer", content="cache")
        response = RetrievalEngine(store, plain_config()).search_debug("cache")
        assert response.pipeline == ["FTS"]
        assert set(response.timings) == {"exact_match", "fts", "vector", "rerank", "graph"}
        assert response.results[0].source_file_path == "app.py"


class TestGraphExpansion:
    """Tests for graph expansion."""

    def test_discounted_neighbours(self, store: KnowledgeStore):
        """Neighbours score parent * edge * discount; weak edges are ignored."""
        a = add(store, "A seed")
        b = add(store, "B neighbour")
        c = add(store, "C weak neighbour")
        store.link(a.id, b.id, "depends_on", 0.9)
        store.link(a.id, c.id, "relates_to", 0.4)
        engine = RetrievalEngine(store, plain_config(
            graph_expansion_enabled=True, graph_expansion_discount=0.8,
            graph_expansion_min_edge_confidence=0.5, min_result_score_threshold=0.01,
        ))

        expanded = engine.expand_via_graph([ScoredNode(node=a, score=0.5)])
        by_id = {sn.node.id: sn for sn in expanded}

        assert b.id in by_id
        assert by_id[b.id].score == pytest.approx(0.36)
        assert by_id[b.id].expanded_from == a.id
        assert c.id not in by_id

    def test_depth(self, store: KnowledgeStore):
        """Deeper expansion follows the chain with compounding discounts."""
        a = add(store, "A")
        b = add(store, "B")
        c = add(store, "C")
        store.link(a.id, b.id, "depends_on", 1.0)
        store.link(b.id, c.id, "depends_on", 1.0)
        cfg = dict(graph_expansion_enabled=True, graph_expansion_discount=0.5, min_result_score_threshold=0.01)

        shallow = RetrievalEngine(store, plain_config(**cfg)).expand_via_graph([ScoredNode(a, 1.0)])
        deep = RetrievalEngine(store, plain_config(graph_expansion_max_depth=2, **cfg)).expand_via_graph(
            [ScoredNode(a, 1.0)])

        assert {sn.node.id for sn in shallow} == {a.id, b.id}
        assert {sn.node.id: sn.score for sn in deep}[c.id] == pytest.approx(0.25)

    def test_reserved_slots(self, store: KnowledgeStore):
        """Expanded results keep reserved slots within the limit."""
        primary = [ScoredNode(add(store, f"P{i}"), 0.9 - i * 0.01) for i in range(5)]
        extra = [ScoredNode(add(store, f"E{i}"), 0.2, expanded_from=primary[0].node.id) for i in range(3)]
        engine = RetrievalEngine(store, plain_config(graph_expansion_enabled=True, graph_expansion_reserved_slots=2))
        limited = engine._apply_limit(primary + extra, 4)

        assert len(limited) == 4
        assert sum(1 for sn in limited if sn.is_expanded) == 2


class TestLLMHelpers:
    """Tests for query rewriting, answering and query suggestions."""

    def test_rewrite_strips_preamble(self, store, fake_model):
        """Preambles and quotes are removed from rewritten queries."""
        engine = RetrievalEngine(store, RetrievalConfig(), model=fake_model(['Improved query: "authentication"']))
        assert engine.rewrite_query("authentcation") == "authentication"

    def test_rewrite_failure_keeps_query(self, store, fake_model):
        """Model errors fall back to the original query."""
        engine = RetrievalEngine(store, RetrievalConfig(), model=fake_model([LLMError("down")]))
        assert engine.rewrite_query("auth") == "auth"

    def test_rewrite_too_long_rejected(self, store, fake_model):
        """Rewrites much longer than the query are discarded."""
        engine = RetrievalEngine(store, RetrievalConfig(), model=fake_model(["x" * 100]))
        assert engine.rewrite_query("auth") == "auth"

    def test_answer_without_context(self, store):
        """No nodes means a fixed answer and no model call."""
        assert RetrievalEngine(store).answer("why?", []) == NO_CONTEXT_ANSWER

    def test_answer_grounded(self, store, fake_model):
        """Node content is passed to the model."""
        model = fake_model(["Because of SQLite."])
        node = add(store, "Use SQLite", content="single file database")
        answer = RetrievalEngine(store, model=model).answer("why sqlite?", [ScoredNode(node, 0.5)])

        assert answer == "Because of SQLite."
        assert "single file database" in model.calls[0][-1].content

    def test_suggest_queries(self, store, fake_model):
        """Suggested queries are parsed from a JSON array or object."""
        engine = RetrievalEngine(store, model=fake_model(['```json\n["auth flow", "user model"]\n```']))
        assert engine.suggest_context_queries("add login") == ["auth flow", "user model"]

    def test_suggest_queries_fallback(self, store, fake_model):
        """Unparseable suggestions fall back to the goal."""
        engine = RetrievalEngine(store, model=fake_model(["no idea"]))
        assert engine.suggest_context_queries("add login")[0] == "add login"

    def test_suggest_queries_model_failure(self, store, fake_model):
        """A failing model yields the same fallback as an unparseable reply."""
        engine = RetrievalEngine(store, model=fake_model([LLMNetworkError("connection refused")]))
        assert engine.suggest_context_queries("add login") == ["add login", "Technology Stack and Architecture"]


class TestEmbeddingHealth:
    """Tests for embedding consistency checks."""

    def test_consistent(self, store):
        """Uniform embeddings report no issues."""
        add(store, "A", embedding=[1.0, 0.0])
        assert RetrievalEngine(store).check_embedding_consistency() is None

    def test_missing_and_rebuild(self, store):
        """Missing embeddings are reported and fixed by a rebuild."""
        add(store, "A", embedding=[1.0, 0.0])
        add(store, "B")
        engine = RetrievalEngine(store, embedder=HashEmbeddingModel(dim=16))
        report = engine.check_embedding_consistency()

        assert report.nodes_without_embeddings == 1
        assert "doctor --fix" in report.message
        assert engine.rebuild_embeddings() == 2
        assert engine.check_embedding_consistency() is None

    def test_rank_to_score(self):
        """BM25 ranks map into [0.1, 1.0]."""
        assert fts_rank_to_score(-5.0) == 0.5
        assert fts_rank_to_score(-50.0) == 1.0
        assert fts_rank_to_score(0.0) == 0.1
