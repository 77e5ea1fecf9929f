"""Text embedders for knowledge nodes.

Configured through ``[llm].embedding_model``:

=========================== =============================================
Value                       Backend
=========================== =============================================
``hash`` (default)          offline feature hashing, 256 dims, no semantics
``openai:<model>``          OpenAI ``/v1/embeddings``
``ollama:<model>``          local Ollama ``/api/embed``
=========================== =============================================

All embedders expose ``embed(text) -> List[float]`` and a ``dim`` hint.
"""

from __future__ import annotations

import logging
import math
import re
from hashlib import blake2b
from typing import Iterable, List, Optional, Protocol

import requests

from .config import DEFAULT_EMBEDDING_DIM
from .config_manager import LLMConfig
from .errors import LLMError, LLMNetworkError, LLMTimeoutError

logger = logging.getLogger(__name__)

_WORD_RE = re.compile(r"[A-Za-z][a-z0-9]*|[0-9]+")


class Embedder(Protocol):
    dim: int

    def embed(self, text: str) -> List[float]:
        ...


# ===================================================================
# Hash embeddings
# ===================================================================

class HashEmbeddingModel:
    """Deterministic feature-hashing embedder.

    Words (identifiers split on case and underscores) are hashed into
    ``dim`` signed buckets and the vector is L2-normalised, giving
    keyword-level similarity with no model download.
    """

    name = "hash"

    def __init__(self, dim: int = DEFAULT_EMBEDDING_DIM) -> None:
        self.dim = dim

    def embed(self, text: str) -> List[float]:
        vec = [0.0] * self.dim
        words = [w.lower() for w in _WORD_RE.findall(text)]
        if not words:
            return vec
        for word in words:
            digest = blake2b(word.encode("utf-8"), digest_size=8).digest()
            idx = int.from_bytes(digest[:4], "big") % self.dim
            vec[idx] += 1.0 if (digest[4] & 1) == 0 else -1.0
        return l2_normalize(vec)

    def embed_many(self, texts: Iterable[str]) -> List[List[float]]:
        return [self.embed(t) for t in texts]


# ===================================================================
# HTTP embedders
# ===================================================================

class _HTTPEmbedder:
    timeout = 30.0

    def __init__(self, model: str, endpoint: str) -> None:
        self.model = model
        self.endpoint = endpoint
        self.dim = 0
        self.session = requests.Session()

    def _post(self, url: str, payload: dict, headers: dict) -> dict:
        try:
            resp = self.session.post(url, json=payload, headers=headers, timeout=self.timeout)
        except requests.Timeout as exc:
            raise LLMTimeoutError(f"embedding request timed out: {exc}") from exc
        except requests.ConnectionError as exc:
            raise LLMNetworkError(f"embedding connection error: {exc}") from exc
        if resp.status_code >= 400:
            raise LLMError(f"embedding: {resp.status_code} {resp.reason}: {resp.text[:200]}", resp.status_code)
        return resp.json()

    def close(self) -> None:
        self.session.close()


class OpenAIEmbedder(_HTTPEmbedder):
    name = "openai"

    def __init__(self, model: str = "text-embedding-3-small", api_key: str = "",
                 endpoint: str = "https://api.openai.com/v1/embeddings") -> None:
        super().__init__(model, endpoint)
        self.api_key = api_key

    def embed(self, text: str) -> List[float]:
        data = self._post(
            self.endpoint,
            {"model": self.model, "input": text},
            {"Content-Type": "application/json", "Authorization": f"Bearer {self.api_key}"},
        )
        vec = [float(v) for v in data["data"][0]["embedding"]]
        self.dim = len(vec)
        return vec


class OllamaEmbedder(_HTTPEmbedder):
    name = "ollama"

    def __init__(self, model: str = "nomic-embed-text", endpoint: str = "http://127.0.0.1:11434") -> None:
        super().__init__(model, endpoint.rstrip("/"))

    def embed(self, text: str) -> List[float]:
        data = self._post(
            f"{self.endpoint}/api/embed",
            {"model": self.model, "input": text},
            {"Content-Type": "application/json"},
        )
        vec = [float(v) for v in data["embeddings"][0]]
        self.dim = len(vec)
        return vec


# ===================================================================
# Factory / math
# ===================================================================

def get_embedder(cfg: Optional[LLMConfig] = None) -> Embedder:
    """Embedder for ``cfg.embedding_model``; ``hash`` when unset or unknown."""
    spec = (cfg.embedding_model if cfg else "") or "hash"
    backend, _, model = spec.partition(":")
    backend = backend.lower()
    if backend == "openai":
        return OpenAIEmbedder(model or "text-embedding-3-small", api_key=cfg.api_key if cfg else "")
    if backend == "ollama":
        endpoint = (cfg.endpoint if cfg and cfg.provider == "ollama" and cfg.endpoint else "http://127.0.0.1:11434")
        return OllamaEmbedder(model or "nomic-embed-text", endpoint)
    if backend != "hash":
        logger.warning("Unknown embedding model '%s', using hash embeddings", spec)
    return HashEmbeddingModel()


def cosine_similarity(vec_a: List[float], vec_b: List[float]) -> float:
    """Cosine similarity; empty or mismatched vectors score ``0.0``."""
    if not vec_a or not vec_b or len(vec_a) != len(vec_b):
        return 0.0
    dot = sum(a * b for a, b in zip(vec_a, vec_b))
    norm_a = math.sqrt(sum(a * a for a in vec_a))
    norm_b = math.sqrt(sum(b * b for b in vec_b))
    if norm_a < 1e-12 or norm_b < 1e-12:
        return 0.0
    return dot / (norm_a * norm_b)


def l2_normalize(vec: List[float]) -> List[float]:
    norm = math.sqrt(sum(v * v for v in vec))
    if norm < 1e-12:
        return vec
    return [v / norm for v in vec]
