"""Merge near-duplicate findings produced by separate chunks or agents."""

from __future__ import annotations

import re
from dataclasses import replace
from typing import Dict, List, Set

from .models import Finding, Relationship, merge_evidence

DEFAULT_SIMILARITY_THRESHOLD = 0.6

STOP_WORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to",
    "for", "of", "with", "by", "from", "is", "are", "was", "were", "be",
    "been", "being", "have", "has", "had", "do", "does", "did", "will", "would",
    "could", "should", "may", "might", "must", "this", "that", "these", "those",
    "it", "its", "as", "if", "then",
})

_SEPARATORS = re.compile(r"[-_/.,:;()\[\]{}]")

_LABEL_CONFIDENCE = {"high": 0.9, "medium": 0.6, "low": 0.3}


def tokenize(text: str) -> List[str]:
    words = _SEPARATORS.sub(" ", text.lower()).split()
    return [w for w in words if len(w) >= 2 and w not in STOP_WORDS]


def jaccard_similarity(a: str, b: str) -> float:
    """Word-set Jaccard similarity; two empty strings count as identical."""
    set_a, set_b = set(tokenize(a)), set(tokenize(b))
    if not set_a and not set_b:
        return 1.0
    if not set_a or not set_b:
        return 0.0
    return len(set_a & set_b) / len(set_a | set_b)


class FindingDeduplicator:
    """Greedy pairwise deduplication within each finding kind.

    The survivor of a duplicate pair is the more confident finding; the
    loser's evidence is folded into it.  Survivors are pairwise dissimilar, so
    running the deduplicator on its own output changes nothing.
    """

    def __init__(self, threshold: float = DEFAULT_SIMILARITY_THRESHOLD):
        self.threshold = DEFAULT_SIMILARITY_THRESHOLD
        self.set_threshold(threshold)

    def set_threshold(self, threshold: float) -> None:
        if 0 < threshold <= 1.0:
            self.threshold = threshold

    # ------------------------------------------------------------------

    def are_similar(self, a: Finding, b: Finding) -> bool:
        if a.kind != b.kind:
            return False
        if jaccard_similarity(a.title, b.title) >= self.threshold:
            return True
        if jaccard_similarity(a.description, b.description) >= self.threshold:
            return True
        combined_a = f"{a.title} {a.description}"
        combined_b = f"{b.title} {b.description}"
        return jaccard_similarity(combined_a, combined_b) >= self.threshold

    @staticmethod
    def confidence_of(finding: Finding) -> float:
        if finding.confidence_score > 0:
            return finding.confidence_score
        return _LABEL_CONFIDENCE.get((finding.confidence or "").lower(), 0.5)

    def deduplicate(self, findings: List[Finding]) -> List[Finding]:
        """Return one representative per duplicate cluster, kinds in first-seen order."""
        by_kind: Dict[str, List[Finding]] = {}
        for f in findings:
            by_kind.setdefault(f.kind, []).append(f)

        result: List[Finding] = []
        for group in by_kind.values():
            result.extend(self._deduplicate_group(group))
        return result

    def _deduplicate_group(self, findings: List[Finding]) -> List[Finding]:
        items = [replace(f, evidence=list(f.evidence)) for f in findings]
        n = len(items)
        duplicate = [False] * n
        target = list(range(n))

        for i in range(n):
            if duplicate[i]:
                continue
            for j in range(i + 1, n):
                if duplicate[j] or not self.are_similar(items[i], items[j]):
                    continue
                if self.confidence_of(items[j]) > self.confidence_of(items[i]):
                    duplicate[i] = True
                    target[i] = j
                    break
                duplicate[j] = True
                target[j] = i

        for i in range(n):
            if not duplicate[i]:
                continue
            root = target[i]
            visited: Set[int] = {i}
            while duplicate[root] and root not in visited:
                visited.add(root)
                root = target[root]
            items[root].evidence = merge_evidence(items[root].evidence, items[i].evidence)

        return [f for i, f in enumerate(items) if not duplicate[i]]

    @staticmethod
    def deduplicate_relationships(relationships: List[Relationship]) -> List[Relationship]:
        seen = set()
        result: List[Relationship] = []
        for rel in relationships:
            key = (rel.source.lower(), rel.target.lower(), rel.relation.lower())
            if key in seen:
                continue
            seen.add(key)
            result.append(rel)
        return result
