"""Tests for finding deduplication."""

from taskwing.dedup import FindingDeduplicator, jaccard_similarity, tokenize
from taskwing.models import Evidence, Finding, Relationship


def finding(kind, title, description="", score=0.5, files=()):
    return Finding(
        kind=kind, title=title, description=description, confidence_score=score,
        evidence=[Evidence(file_path=f, start_line=1) for f in files],
    )


class TestSimilarity:
    """Tests for token similarity."""

    def test_tokenize_drops_stop_words(self):
        """Stop words, separators and one-letter tokens are dropped."""
        assert tokenize("Use the Repository-pattern for a DB") == ["use", "repository", "pattern", "db"]

    def test_jaccard(self):
        """Jaccard similarity over word sets."""
        assert jaccard_similarity("repository pattern", "repository pattern") == 1.0
        assert jaccard_similarity("repository pattern", "event bus") == 0.0
        assert jaccard_similarity("", "") == 1.0
        assert jaccard_similarity("repository", "") == 0.0


class TestFindingDeduplicator:
    """Tests for FindingDeduplicator."""

    def test_merges_similar_titles(self):
        """Similar findings collapse into the more confident one with merged evidence."""
        findings = [
            finding("pattern", "Repository pattern for data access", score=0.6, files=["a.py"]),
            finding("pattern", "Repository pattern data access layer", score=0.9, files=["b.py"]),
        ]
        result = FindingDeduplicator().deduplicate(findings)

        assert len(result) == 1
        assert result[0].title == "Repository pattern data access layer"
        assert sorted(e.file_path for e in result[0].evidence) == ["a.py", "b.py"]

    def test_kinds_never_merge(self):
        """Identical titles of different kinds stay separate."""
        findings = [finding("pattern", "Event sourcing"), finding("decision", "Event sourcing")]
        assert len(FindingDeduplicator().deduplicate(findings)) == 2

    def test_idempotent(self):
        """Deduplicating the output again changes nothing."""
        findings = [
            finding("pattern", "Repository pattern for data access", score=0.6),
            finding("pattern", "Repository pattern data access layer", score=0.9),
            finding("pattern", "Data access layer repository", score=0.7),
            finding("pattern", "Circuit breaker around payment API", score=0.8),
            finding("decision", "Use SQLite for storage", score=0.8),
            finding("decision", "SQLite storage backend", score=0.5),
        ]
        dedup = FindingDeduplicator()
        once = dedup.deduplicate(findings)
        twice = dedup.deduplicate(once)
        assert [f.title for f in twice] == [f.title for f in once]

    def test_inputs_not_mutated(self):
        """Evidence merging works on copies."""
        a = finding("pattern", "Repository pattern", score=0.9, files=["a.py"])
        b = finding("pattern", "Repository pattern", score=0.5, files=["b.py"])
        FindingDeduplicator().deduplicate([a, b])
        assert [e.file_path for e in a.evidence] == ["a.py"]

    def test_label_confidence(self):
        """Label confidence is used when no score is set."""
        f = Finding(kind="risk", title="x", confidence_score=0, confidence="high")
        assert FindingDeduplicator.confidence_of(f) == 0.9

    def test_invalid_threshold_ignored(self):
        """Thresholds outside (0, 1] keep the default."""
        assert FindingDeduplicator(threshold=1.5).threshold == 0.6
        assert FindingDeduplicator(threshold=0.8).threshold == 0.8

    def test_relationships(self):
        """Relationships deduplicate case-insensitively, first wins."""
        rels = [
            Relationship("Auth", "Users", "depends_on", "first"),
            Relationship("auth", "users", "DEPENDS_ON", "second"),
            Relationship("auth", "users", "affects"),
        ]
        result = FindingDeduplicator.deduplicate_relationships(rels)
        assert [r.reason for r in result] == ["first", ""]
