"""Tests for grounded-context assembly."""

from pathlib import Path

from taskwing.assembler import (
    ContextAssembler,
    extract_policy_constraint,
    format_citations,
    load_policy_section,
)
from taskwing.config import architecture_doc_path, policies_dir
from taskwing.config_manager import RetrievalConfig
from taskwing.models import Evidence, Node
from taskwing.retrieval import RetrievalEngine
from taskwing.storage import KnowledgeStore

POLICY = """# Security policy
# Blocks secrets in source files.
package taskwing.security

import rego.v1

deny contains msg if {
    input.secret
    msg := "no secrets"
}
"""


def engine_for(store: KnowledgeStore, model=None) -> RetrievalEngine:
    config = RetrievalConfig(query_rewrite_enabled=False, reranking_enabled=False,
                             graph_expansion_enabled=False, min_result_score_threshold=0.0)
    return RetrievalEngine(store, config, model=model)


def seed(store: KnowledgeStore) -> None:
    store.upsert_by_summary(Node(id="", type="constraint", summary="No global state",
                                 content="Use dependency injection", source_agent="doc"))
    store.upsert_by_summary(Node(
        id="", type="decision", summary="JWT authentication middleware", content="Validates bearer tokens",
        source_agent="code", evidence=[Evidence(file_path="app.py", start_line=3), Evidence(file_path="auth.py")],
    ))


class TestPolicies:
    """Tests for policy extraction."""

    def test_extract(self):
        """Leading comments become the description; rule kinds are detected."""
        constraint = extract_policy_constraint("security", POLICY)
        assert constraint.description == "Security policy Blocks secrets in source files."
        assert constraint.rules == ["deny"]
        assert constraint.format() == (
            "### Policy: security\nSecurity policy Blocks secrets in source files.\nRules: deny\n\n"
        )

    def test_warn_rules(self):
        """warn contains rules are listed after deny."""
        constraint = extract_policy_constraint("style", "warn contains msg if { true }\ndeny contains x if { false }")
        assert constraint.rules == ["deny", "warn"]
        assert constraint.description == ""

    def test_long_description(self):
        """Descriptions are cut to 200 characters."""
        constraint = extract_policy_constraint("long", "# " + "x" * 300 + "\ndeny contains m if { true }")
        assert len(constraint.description) == 200
        assert constraint.description.endswith("...")

    def test_section(self, temp_dir: Path):
        """Policies without description or rules are skipped."""
        directory = policies_dir(temp_dir)
        directory.mkdir(parents=True)
        (directory / "security.rego").write_text(POLICY, encoding="utf-8")
        (directory / "empty.rego").write_text("package empty\n", encoding="utf-8")

        constraints, section = load_policy_section(temp_dir)
        assert [c.name for c in constraints] == ["security"]
        assert section.startswith("## POLICY CONSTRAINTS\n")

    def test_no_policies(self, temp_dir: Path):
        """A missing directory yields nothing."""
        assert load_policy_section(temp_dir) == ([], "")


class TestAssembler:
    """Tests for ContextAssembler.assemble."""

    def test_sections_in_order(self, store: KnowledgeStore, temp_dir: Path):
        """Architecture, policies, constraints, then ranked context."""
        repo = temp_dir / "repo"
        arch = architecture_doc_path(repo)
        arch.parent.mkdir(parents=True)
        arch.write_text("# Architecture\nLayered service.\n", encoding="utf-8")
        policies_dir(repo).mkdir(parents=True)
        (policies_dir(repo) / "security.rego").write_text(POLICY, encoding="utf-8")
        seed(store)

        result = ContextAssembler(engine_for(store), repo).assemble("authentication middleware")
        text = result.context

        headings = ["## PROJECT ARCHITECTURE OVERVIEW", "## POLICY CONSTRAINTS",
                    "## MANDATORY ARCHITECTURAL CONSTRAINTS", "## RELEVANT ARCHITECTURAL CONTEXT"]
        positions = [text.index(h) for h in headings]
        assert positions == sorted(positions)
        assert "Layered service." in text
        assert "- **No global state**: Use dependency injection" in text
        assert "### [decision] JWT authentication middleware\nValidates bearer tokens" in text
        assert "Referenced files: app.py:L3, auth.py" in text

        assert result.strategy.startswith("Research Strategy:\n  Loaded mandatory constraints.\n")
        assert "Loaded ARCHITECTURE.md" in result.strategy
        assert "Loaded 1 policy constraints" in result.strategy
        assert "Checking memory for: 'authentication middleware'" in result.strategy
        assert result.queries == ["authentication middleware", "Technology Stack and Architecture"]

    def test_minimal(self, store: KnowledgeStore, temp_dir: Path):
        """An empty store still yields the context heading."""
        result = ContextAssembler(engine_for(store), temp_dir).assemble("anything")
        assert result.context == "## RELEVANT ARCHITECTURAL CONTEXT\n"
        assert result.results == []

    def test_model_suggested_queries(self, store: KnowledgeStore, temp_dir: Path, fake_model):
        """A chat model proposes the search phrases; results are deduplicated."""
        seed(store)
        model = fake_model(responses=['["JWT middleware", "authentication"]'])
        result = ContextAssembler(engine_for(store, model), temp_dir).assemble("add login")

        assert result.queries == ["JWT middleware", "authentication"]
        assert [sn.node.summary for sn in result.results] == ["JWT authentication middleware"]

    def test_format_citations(self):
        """Line numbers are shown only when known."""
        node = Node(id="n", type="decision", summary="s",
                    evidence=[Evidence(file_path="a.py", start_line=10), Evidence(file_path="b.py")])
        assert format_citations(node) == "a.py:L10, b.py"
