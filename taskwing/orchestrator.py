"""Runs the analysis agents and writes their findings into the knowledge store."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

# Imported for their registration side effect.
from . import code_agent, doc_agent, git_agent, react_agent  # noqa: F401
from .agents import MODE_BOOTSTRAP, MODE_WATCH, AgentInput, AgentOutput, BaseAgent, create_agent, registry
from .cancellation import CancelToken, ensure_token
from .config import project_dir
from .config_manager import ChainConfig, LLMConfig
from .dedup import FindingDeduplicator
from .embeddings import Embedder
from .errors import AgentError
from .ingest import IngestStats, KnowledgeIngestor
from .llm import ChatModel
from .models import WORKSPACE_ROOT, Finding, Node, Relationship
from .report import AgentReport, BootstrapReport, CoverageStats, get_metrics
from .storage import KnowledgeStore

logger = logging.getLogger(__name__)

# ReAct is opt-in: it overlaps with the code agent and costs many more calls.
DEFAULT_AGENTS = ("doc", "git", "code")

ProgressCallback = Callable[[str], None]


@dataclass
class RunResult:
    report: BootstrapReport
    outputs: List[AgentOutput] = field(default_factory=list)
    findings: List[Finding] = field(default_factory=list)
    relationships: List[Relationship] = field(default_factory=list)
    ingest: IngestStats = field(default_factory=IngestStats)

    @property
    def errors(self) -> Dict[str, str]:
        return {o.agent_name: o.error for o in self.outputs if o.error}


class BootstrapRunner:
    """Coordinates agents for one repository."""

    def __init__(
        self,
        repo_root: Path | str,
        store: KnowledgeStore,
        llm_config: Optional[LLMConfig] = None,
        chain_config: Optional[ChainConfig] = None,
        model: Optional[ChatModel] = None,
        embedder: Optional[Embedder] = None,
        agent_ids: Optional[Sequence[str]] = None,
        workspace: str = WORKSPACE_ROOT,
    ) -> None:
        self.repo_root = Path(repo_root).resolve()
        self.store = store
        self.llm_config = llm_config or LLMConfig()
        self.chain_config = chain_config or ChainConfig()
        self.model = model
        self.ingestor = KnowledgeIngestor(store, embedder)
        self.agent_ids = list(agent_ids or DEFAULT_AGENTS)
        self.workspace = workspace or WORKSPACE_ROOT

        known = {info.id for info in registry()}
        unknown = [a for a in self.agent_ids if a not in known]
        if unknown:
            raise AgentError(f"unknown agents: {', '.join(unknown)} (available: {', '.join(sorted(known))})")

    def _create_agents(self) -> List[BaseAgent]:
        return [
            create_agent(agent_id, llm_config=self.llm_config, chain_config=self.chain_config, model=self.model)
            for agent_id in self.agent_ids
        ]

    # ------------------------------------------------------------------

    def bootstrap(self, cancel: Optional[CancelToken] = None,
                  progress: Optional[ProgressCallback] = None) -> RunResult:
        """Full analysis: every agent's previous nodes are replaced."""
        agent_input = AgentInput(base_path=self.repo_root, mode=MODE_BOOTSTRAP, workspace=self.workspace)
        return self._run(agent_input, ensure_token(cancel), file_paths=None, progress=progress)

    def watch_update(self, changed_files: Sequence[str], cancel: Optional[CancelToken] = None,
                     progress: Optional[ProgressCallback] = None) -> RunResult:
        """Incremental analysis of *changed_files* (repo-relative paths)."""
        changed = sorted({f for f in changed_files if f})
        agent_input = AgentInput(
            base_path=self.repo_root,
            mode=MODE_WATCH,
            changed_files=changed,
            existing_context={"existing_nodes": self.nodes_for_files(changed)},
            workspace=self.workspace,
        )
        get_metrics().record_batch()
        return self._run(agent_input, ensure_token(cancel), file_paths=changed, progress=progress)

    def nodes_for_files(self, paths: Sequence[str]) -> List[Node]:
        wanted = set(paths)
        return [n for n in self.store.list_nodes() if wanted.intersection(n.file_paths())]

    # ------------------------------------------------------------------

    def _run(self, agent_input: AgentInput, cancel: CancelToken,
             file_paths: Optional[List[str]], progress: Optional[ProgressCallback]) -> RunResult:
        start = time.monotonic()
        report = BootstrapReport(project_path=str(self.repo_root))
        outputs: List[AgentOutput] = []
        findings: List[Finding] = []
        relationships: List[Relationship] = []

        for agent in self._create_agents():
            cancel.check()
            if progress is not None:
                progress(agent.name)
            try:
                output = agent.run(agent_input, cancel)
            finally:
                agent.close()
            outputs.append(output)
            report.add_agent_report(output.agent_name, AgentReport(
                name=output.agent_name,
                duration=output.duration,
                finding_count=len(output.findings),
                coverage=CoverageStats.from_coverage(output.coverage),
                error=output.error,
            ))
            if output.error:
                logger.warning("[%s] %s", output.agent_name, output.error)
            findings.extend(output.findings)
            relationships.extend(output.relationships)

        cancel.check()
        deduplicator = FindingDeduplicator()
        merged = deduplicator.deduplicate(findings)
        merged_relationships = deduplicator.deduplicate_relationships(relationships)
        logger.info("Deduplicated %d findings to %d across %d agents", len(findings), len(merged), len(outputs))

        stats = self.ingestor.ingest(merged, merged_relationships, file_paths=file_paths,
                                     workspace=agent_input.workspace)
        report.finalize(merged, time.monotonic() - start)
        return RunResult(report=report, outputs=outputs, findings=merged,
                         relationships=merged_relationships, ingest=stats)

    def save_report(self, report: BootstrapReport) -> Path:
        return report.save(project_dir(self.repo_root))


def describe_agents() -> List[Dict[str, Any]]:
    return [{"id": info.id, "name": info.name, "description": info.description} for info in registry()]
