"""Cross-encoder reranking through a Text Embeddings Inference (TEI) server."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from typing import List, Optional, Protocol

import requests

from .config_manager import RetrievalConfig
from .errors import TaskWingError
from .models import ScoredNode

logger = logging.getLogger(__name__)

RERANK_TIMEOUT = 5.0
MIN_DISPLAY_SCORE = 0.15
MIN_SCORE_CEILING = 0.3


class RerankerDisabled(TaskWingError):
    """The circuit breaker tripped; reranking is off for this process."""


@dataclass
class RerankResult:
    index: int
    score: float


class Reranker(Protocol):
    def rerank(self, query: str, documents: List[str]) -> List[RerankResult]:
        ...

    def close(self) -> None:
        ...


class TEIReranker:
    """Client for TEI's ``POST /rerank`` endpoint."""

    def __init__(self, base_url: str, model: str = "", timeout: float = RERANK_TIMEOUT):
        if not base_url:
            raise ValueError("TEI base URL is required")
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.session = requests.Session()

    def rerank(self, query: str, documents: List[str]) -> List[RerankResult]:
        if not documents:
            return []
        resp = self.session.post(
            f"{self.base_url}/rerank",
            json={"query": query, "texts": documents, "raw_scores": False, "truncate": True},
            timeout=self.timeout,
        )
        if resp.status_code != 200:
            raise TaskWingError(f"TEI rerank returned status {resp.status_code}: {resp.text[:200]}")
        results = [RerankResult(int(item["index"]), float(item["score"])) for item in resp.json()]
        results.sort(key=lambda r: r.score, reverse=True)
        return results

    def close(self) -> None:
        self.session.close()


class CircuitBreakerReranker:
    """Wraps a reranker and disables it for good after the first failure."""

    def __init__(self, inner: Reranker, threshold: int = 1):
        self.inner = inner
        self.threshold = threshold
        self.failures = 0
        self.disabled = False
        self._lock = threading.Lock()

    def rerank(self, query: str, documents: List[str]) -> List[RerankResult]:
        with self._lock:
            if self.disabled:
                raise RerankerDisabled("reranker disabled")
        try:
            results = self.inner.rerank(query, documents)
        except Exception as exc:
            with self._lock:
                self.failures += 1
                if self.failures >= self.threshold:
                    self.disabled = True
            if self.disabled:
                logger.warning("Reranker disabled after failure: %s", exc)
                raise RerankerDisabled(str(exc)) from exc
            raise
        with self._lock:
            self.failures = 0
        return results

    def close(self) -> None:
        self.inner.close()


def create_reranker(cfg: RetrievalConfig) -> Optional[Reranker]:
    """Reranker for *cfg*, or ``None`` when reranking is off."""
    if not cfg.reranking_enabled:
        return None
    try:
        client = TEIReranker(cfg.rerank_base_url, cfg.rerank_model, timeout=RERANK_TIMEOUT)
    except ValueError as exc:
        logger.warning("Reranking disabled: %s", exc)
        return None
    return CircuitBreakerReranker(client)


def rerank_results(reranker: Optional[Reranker], query: str, scored: List[ScoredNode]) -> List[ScoredNode]:
    """Reorder *scored* by reranker relevance; any failure returns *scored* unchanged.

    Reranker scores are min-max normalised into
    ``[0.15, max(best original score, 0.3)]`` so they stay comparable with
    hybrid scores for thresholds and display.
    """
    if reranker is None or not scored:
        return scored

    documents = [sn.node.text for sn in scored]
    try:
        results = reranker.rerank(query, documents)
    except RerankerDisabled:
        return scored
    except Exception as exc:
        logger.warning("Reranking failed, using original scores: %s (candidates=%d)", exc, len(scored))
        return scored
    if not results:
        return scored

    low = min(r.score for r in results)
    high = max(r.score for r in results)
    spread = high - low
    ceiling = max(max(sn.score for sn in scored), MIN_SCORE_CEILING)

    reranked: List[ScoredNode] = []
    for r in results:
        if r.index < 0 or r.index >= len(scored):
            continue
        norm = (r.score - low) / spread if spread > 0.0001 else 1.0
        display = MIN_DISPLAY_SCORE + norm * (ceiling - MIN_DISPLAY_SCORE)
        reranked.append(replace(scored[r.index], score=display, rerank_score=r.score))
    logger.debug("Reranked %d candidates into %d results", len(scored), len(reranked))
    return reranked
