"""Configuration manager for TaskWing using TOML files.

The global file lives at ``$TASKWING_HOME/config.toml`` and carries three
sections:

- ``[llm]``        provider, model, api_key, endpoint, embedding_model
- ``[retrieval]``  hybrid search weights, thresholds, rerank and graph options
- ``[chain]``      retry policy for the deterministic LLM chain

Values missing from the file fall back to the defaults declared here.
Environment variables ``TASKWING_LLM_PROVIDER``, ``TASKWING_LLM_MODEL`` and
``TASKWING_API_KEY`` override the ``[llm]`` section.
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, Optional

import requests
import toml

from . import config

logger = logging.getLogger(__name__)


# Default configurations for each provider
DEFAULT_CONFIGS: Dict[str, Dict[str, str]] = {
    "ollama": {
        "provider": "ollama",
        "model": "llama3.2",
        "endpoint": "http://127.0.0.1:11434",
    },
    "groq": {
        "provider": "groq",
        "model": "llama-3.3-70b-versatile",
        "api_key": "",
    },
    "openai": {
        "provider": "openai",
        "model": "gpt-5-mini",
        "api_key": "",
    },
    "anthropic": {
        "provider": "anthropic",
        "model": "claude-sonnet-4-5",
        "api_key": "",
    },
    "gemini": {
        "provider": "gemini",
        "model": "gemini-2.5-flash",
        "api_key": "",
    },
    "openrouter": {
        "provider": "openrouter",
        "model": "google/gemini-2.5-flash",
        "api_key": "",
        "endpoint": "https://openrouter.ai/api/v1/chat/completions",
    },
}


# ===================================================================
# Typed config sections
# ===================================================================

@dataclass
class LLMConfig:
    provider: str = "ollama"
    model: str = "llama3.2"
    api_key: str = ""
    endpoint: str = ""
    embedding_model: str = "hash"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LLMConfig":
        return cls(**_known_keys(cls, data))


@dataclass
class RetrievalConfig:
    """Tunables for the hybrid retrieval engine."""

    fts_weight: float = 0.40
    vector_weight: float = 0.60
    vector_score_threshold: float = 0.35
    min_result_score_threshold: float = 0.12
    semantic_similarity_threshold: float = 0.55
    query_rewrite_enabled: bool = True
    reranking_enabled: bool = False
    rerank_top_k: int = 25
    rerank_base_url: str = "http://localhost:8081"
    rerank_model: str = ""
    graph_expansion_enabled: bool = True
    graph_expansion_discount: float = 0.8
    graph_expansion_max_depth: int = 1
    graph_expansion_min_edge_confidence: float = 0.5
    graph_expansion_reserved_slots: int = 2

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RetrievalConfig":
        return cls(**_known_keys(cls, data))


@dataclass
class ChainConfig:
    """Retry policy for the deterministic chain (delays in seconds)."""

    max_retries: int = 4
    retry_base_delay: float = 0.5
    retry_max_delay: float = 30.0
    jitter_factor: float = 0.5

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChainConfig":
        return cls(**_known_keys(cls, data))


def _known_keys(cls: type, data: Dict[str, Any]) -> Dict[str, Any]:
    """Keep only keys that are dataclass fields, coerced to the field type."""
    out: Dict[str, Any] = {}
    for f in fields(cls):
        if f.name not in data:
            continue
        default = f.default
        value = data[f.name]
        try:
            if isinstance(default, bool):
                value = _to_bool(value)
            elif isinstance(default, int):
                value = int(value)
            elif isinstance(default, float):
                value = float(value)
            else:
                value = str(value)
        except (TypeError, ValueError):
            logger.warning("Ignoring invalid config value %s=%r", f.name, value)
            continue
        out[f.name] = value
    return out


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


# ===================================================================
# TOML file access
# ===================================================================

def load_full_config() -> Dict[str, Any]:
    """Load the entire TOML config (all sections)."""
    if not config.CONFIG_FILE.exists():
        return {}
    try:
        with open(config.CONFIG_FILE, "r", encoding="utf-8") as f:
            return toml.load(f)
    except (OSError, toml.TomlDecodeError) as exc:
        logger.warning("Could not read %s: %s", config.CONFIG_FILE, exc)
        return {}


def _save_full_config(data: Dict[str, Any]) -> bool:
    """Write entire config dict to TOML file, preserving all sections."""
    config.CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
    try:
        with open(config.CONFIG_FILE, "w", encoding="utf-8") as f:
            toml.dump(data, f)
        return True
    except OSError as exc:
        logger.warning("Could not write %s: %s", config.CONFIG_FILE, exc)
        return False


def load_config() -> Dict[str, Any]:
    """Load the ``[llm]`` section, falling back to Ollama defaults."""
    full = load_full_config()
    return full.get("llm", DEFAULT_CONFIGS["ollama"].copy())


def save_config(provider: str, model: str, api_key: str = "", endpoint: str = "") -> bool:
    """Save LLM configuration to TOML file.

    Preserves other sections (``[retrieval]``, ``[chain]``) in the file.
    """
    data = load_full_config()
    llm = dict(data.get("llm", {}))
    llm.update({"provider": provider, "model": model})
    if api_key:
        llm["api_key"] = api_key
    if endpoint:
        llm["endpoint"] = endpoint
    data["llm"] = llm
    return _save_full_config(data)


def set_config_value(dotted_key: str, value: str) -> bool:
    """Set ``section.key`` to *value* and persist.

    Values are stored as strings and coerced by the typed loaders.
    """
    if "." not in dotted_key:
        raise ValueError("key must look like 'section.name', e.g. 'retrieval.fts_weight'")
    section, key = dotted_key.split(".", 1)
    data = load_full_config()
    data.setdefault(section, {})[key] = value
    return _save_full_config(data)


def get_provider_config(provider: str) -> Dict[str, str]:
    """Get default configuration for a specific provider."""
    return DEFAULT_CONFIGS.get(provider, DEFAULT_CONFIGS["ollama"]).copy()


# ===================================================================
# Typed loaders
# ===================================================================

def load_llm_config() -> LLMConfig:
    """Resolve the LLM settings: provider defaults < TOML file < environment."""
    section = load_config()
    provider = os.environ.get("TASKWING_LLM_PROVIDER") or section.get("provider", "ollama")
    merged: Dict[str, Any] = get_provider_config(provider)
    if section.get("provider", provider) == provider:
        merged.update(section)
    merged["provider"] = provider
    if os.environ.get("TASKWING_LLM_MODEL"):
        merged["model"] = os.environ["TASKWING_LLM_MODEL"]
    if os.environ.get("TASKWING_API_KEY"):
        merged["api_key"] = os.environ["TASKWING_API_KEY"]
    return LLMConfig.from_dict(merged)


def load_retrieval_config() -> RetrievalConfig:
    return RetrievalConfig.from_dict(load_full_config().get("retrieval", {}))


def load_chain_config() -> ChainConfig:
    return ChainConfig.from_dict(load_full_config().get("chain", {}))


def describe_config() -> Dict[str, Dict[str, Any]]:
    """Effective configuration, API key masked, for ``taskwing config show``."""
    llm = asdict(load_llm_config())
    if llm.get("api_key"):
        llm["api_key"] = llm["api_key"][:4] + "…"
    return {
        "llm": llm,
        "retrieval": asdict(load_retrieval_config()),
        "chain": asdict(load_chain_config()),
    }


def validate_ollama_connection(endpoint: str = "http://127.0.0.1:11434") -> bool:
    """Check if Ollama is running and accessible."""
    try:
        resp = requests.get(f"{endpoint.rstrip('/')}/api/tags", timeout=3)
        return resp.status_code == 200
    except requests.RequestException:
        return False


def default_endpoint(llm: LLMConfig) -> Optional[str]:
    """Endpoint to use for *llm*, or ``None`` for the provider's public API."""
    return llm.endpoint or DEFAULT_CONFIGS.get(llm.provider, {}).get("endpoint") or None
