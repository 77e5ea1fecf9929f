"""Agent contract, shared base class and the process-wide agent registry."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Type

from .cancellation import CancelToken, ensure_token
from .chain import DeterministicChain
from .config_manager import ChainConfig, LLMConfig
from .errors import AgentError
from .llm import ChatModel, create_chat_model
from .models import WORKSPACE_ROOT, Coverage, Finding, Relationship
from .report import get_metrics

logger = logging.getLogger(__name__)

MODE_BOOTSTRAP = "bootstrap"
MODE_WATCH = "watch"


@dataclass
class AgentInput:
    base_path: Path
    project_name: str = ""
    mode: str = MODE_BOOTSTRAP
    changed_files: List[str] = field(default_factory=list)
    existing_context: Dict[str, Any] = field(default_factory=dict)
    workspace: str = WORKSPACE_ROOT

    def __post_init__(self) -> None:
        self.base_path = Path(self.base_path)
        if not self.project_name:
            self.project_name = self.base_path.resolve().name

    @property
    def is_watch(self) -> bool:
        return self.mode == MODE_WATCH


@dataclass
class AgentOutput:
    agent_name: str
    findings: List[Finding] = field(default_factory=list)
    relationships: List[Relationship] = field(default_factory=list)
    coverage: Coverage = field(default_factory=Coverage)
    duration: float = 0.0
    error: Optional[str] = None
    raw_output: str = ""

    @property
    def ok(self) -> bool:
        return self.error is None


class BaseAgent:
    """Shared lifecycle for analysis agents.

    The chat model is created on first use and released by :meth:`close`.
    Subclasses implement :meth:`execute`; :meth:`run` times it, records
    metrics and turns every failure into ``AgentOutput.error``.
    """

    name = "base"
    description = ""

    def __init__(
        self,
        llm_config: Optional[LLMConfig] = None,
        chain_config: Optional[ChainConfig] = None,
        model: Optional[ChatModel] = None,
    ) -> None:
        self.llm_config = llm_config or LLMConfig()
        self.chain_config = chain_config or ChainConfig()
        self._model = model
        self._owns_model = model is None
        self._lock = threading.Lock()

    @property
    def model(self) -> ChatModel:
        with self._lock:
            if self._model is None:
                self._model = create_chat_model(self.llm_config)
            return self._model

    def close(self) -> None:
        with self._lock:
            if self._model is not None and self._owns_model:
                self._model.close()
                self._model = None

    def __enter__(self) -> "BaseAgent":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def new_chain(self, name: str, template: str, response_model: Type[Any]) -> DeterministicChain:
        return DeterministicChain(name, self.model, template, response_model, config=self.chain_config)

    def run(self, agent_input: AgentInput, cancel: Optional[CancelToken] = None) -> AgentOutput:
        start = time.monotonic()
        try:
            output = self.execute(agent_input, ensure_token(cancel))
        except Exception as exc:  # agent boundary: failures travel in the output
            logger.warning("Agent %s failed: %s", self.name, exc)
            logger.debug("Agent %s traceback", self.name, exc_info=True)
            output = AgentOutput(agent_name=self.name, error=str(exc))
        output.agent_name = self.name
        output.duration = time.monotonic() - start
        for finding in output.findings:
            finding.source_agent = finding.source_agent or self.name
        get_metrics().record_run(self.name, len(output.findings), output.duration, output.error)
        return output

    def execute(self, agent_input: AgentInput, cancel: CancelToken) -> AgentOutput:
        raise NotImplementedError


def format_existing_nodes(existing_context: Dict[str, Any], max_chars: int = 8000) -> str:
    """Render ``existing_context["existing_nodes"]`` as ``- [type] id: summary`` lines."""
    lines = []
    for node in existing_context.get("existing_nodes") or []:
        if isinstance(node, dict):
            lines.append(f"- [{node.get('type', '')}] {node.get('id', '')}: {node.get('summary', '')}")
        else:
            lines.append(f"- [{node.type}] {node.id}: {node.summary}")
    text = "\n".join(lines)
    if len(text) > max_chars:
        text = text[:max_chars] + "\n... (truncated)"
    return text


# ===================================================================
# Registry
# ===================================================================

AgentFactory = Callable[..., BaseAgent]


@dataclass
class AgentInfo:
    id: str
    name: str
    description: str


_registry_lock = threading.Lock()
_factories: Dict[str, AgentFactory] = {}
_infos: Dict[str, AgentInfo] = {}


def register_agent(agent_id: str, factory: AgentFactory, name: str, description: str) -> None:
    with _registry_lock:
        _factories[agent_id] = factory
        _infos[agent_id] = AgentInfo(agent_id, name, description)


def registry() -> List[AgentInfo]:
    """Registered agents in registration order; no instantiation needed."""
    with _registry_lock:
        return list(_infos.values())


def get_agent_by_id(agent_id: str) -> Optional[AgentInfo]:
    with _registry_lock:
        return _infos.get(agent_id)


def create_agent(agent_id: str, **kwargs: Any) -> BaseAgent:
    with _registry_lock:
        factory = _factories.get(agent_id)
    if factory is None:
        raise AgentError(f"unknown agent: {agent_id}")
    return factory(**kwargs)


def create_all_agents(**kwargs: Any) -> List[BaseAgent]:
    with _registry_lock:
        factories = list(_factories.values())
    return [factory(**kwargs) for factory in factories]
