"""Assemble a grounded-context block for downstream planners.

Sections appear in a fixed order:

1. the generated architecture overview, when present on disk
2. policy constraints from ``.taskwing/policies/*.rego``
3. every constraint node (type listing, never semantic search)
4. ranked hybrid search results with ``path:Lstart`` citations
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from .budget import estimate_tokens
from .cancellation import CancelToken
from .config import architecture_doc_path, policies_dir
from .models import Node, ScoredNode
from .retrieval import RetrievalEngine

logger = logging.getLogger(__name__)

POLICY_TOKEN_BUDGET = 2000
MAX_POLICY_DESCRIPTION = 200
RESULTS_PER_QUERY = 3

_DENY_RULE = re.compile(r"deny\s+contains")
_WARN_RULE = re.compile(r"warn\s+contains")


@dataclass
class PolicyConstraint:
    name: str
    description: str = ""
    rules: List[str] = field(default_factory=list)

    def format(self) -> str:
        text = f"### Policy: {self.name}\n"
        if self.description:
            text += f"{self.description}\n"
        if self.rules:
            text += f"Rules: {', '.join(self.rules)}\n"
        return text + "\n"


@dataclass
class AssembledContext:
    context: str
    strategy: str
    queries: List[str] = field(default_factory=list)
    results: List[ScoredNode] = field(default_factory=list)


def extract_policy_constraint(name: str, content: str) -> PolicyConstraint:
    """Description from the leading comment block plus the rule kinds present."""
    constraint = PolicyConstraint(name=name)
    desc_lines: List[str] = []
    for line in content.splitlines():
        stripped = line.strip()
        if stripped.startswith("#"):
            comment = stripped.lstrip("#").strip()
            if not comment or comment.startswith("!") or comment.lower().startswith("package"):
                continue
            desc_lines.append(comment)
        elif stripped and not stripped.startswith(("package", "import")):
            break

    if desc_lines:
        description = " ".join(desc_lines)
        if len(description) > MAX_POLICY_DESCRIPTION:
            description = description[:MAX_POLICY_DESCRIPTION - 3] + "..."
        constraint.description = description

    if _DENY_RULE.search(content):
        constraint.rules.append("deny")
    if _WARN_RULE.search(content):
        constraint.rules.append("warn")
    return constraint


def load_policy_section(repo_root: Path, token_budget: int = POLICY_TOKEN_BUDGET) -> tuple:
    """Return ``(constraints, section_text)``; empty when there are no policies."""
    directory = policies_dir(repo_root)
    if not directory.is_dir():
        return [], ""

    constraints: List[PolicyConstraint] = []
    total = 0
    for path in sorted(directory.glob("*.rego")):
        try:
            content = path.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            logger.warning("Skipping unreadable policy %s: %s", path, exc)
            continue
        constraint = extract_policy_constraint(path.stem, content)
        if not constraint.description and not constraint.rules:
            continue
        tokens = estimate_tokens(constraint.format())
        if total + tokens > token_budget:
            break
        constraints.append(constraint)
        total += tokens

    if not constraints:
        return [], ""
    section = "## POLICY CONSTRAINTS\n"
    section += "The following policies are enforced. Plans MUST comply with these rules.\n\n"
    section += "".join(c.format() for c in constraints)
    return constraints, section


def format_citations(node: Node) -> str:
    refs = []
    for ev in node.evidence:
        if not ev.file_path:
            continue
        refs.append(f"{ev.file_path}:L{ev.start_line}" if ev.start_line > 0 else ev.file_path)
    return ", ".join(refs)


def load_architecture_doc(repo_root: Path) -> str:
    path = architecture_doc_path(repo_root)
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return ""


class ContextAssembler:
    """Builds the grounded-context document for a goal."""

    def __init__(self, engine: RetrievalEngine, repo_root: Path | str) -> None:
        self.engine = engine
        self.repo_root = Path(repo_root)

    def assemble(
        self,
        goal: str,
        workspace: str = "",
        include_root: bool = True,
        cancel: Optional[CancelToken] = None,
    ) -> AssembledContext:
        search_log: List[str] = []

        architecture = load_architecture_doc(self.repo_root)
        if architecture:
            search_log.append("Loaded ARCHITECTURE.md")

        policies, policy_section = load_policy_section(self.repo_root)
        if policies:
            search_log.append(f"Loaded {len(policies)} policy constraints")

        constraints = self.engine.list_nodes_by_type("constraint")

        queries = self.engine.suggest_context_queries(goal, cancel=cancel)
        unique: Dict[str, ScoredNode] = {}
        for query in queries:
            for sn in self.engine.search(query, limit=RESULTS_PER_QUERY, workspace=workspace,
                                         include_root=include_root, cancel=cancel):
                current = unique.get(sn.node.id)
                if current is None or sn.score > current.score:
                    unique[sn.node.id] = sn
            search_log.append(f"Checking memory for: '{query}'")
        ranked = sorted(unique.values(), key=lambda sn: -sn.score)

        parts: List[str] = []
        if architecture:
            parts.append("## PROJECT ARCHITECTURE OVERVIEW\n")
            parts.append("Consolidated architecture document for this codebase:\n\n")
            parts.append(architecture)
            parts.append("\n---\n\n")
        if policy_section:
            parts.append(policy_section)
            parts.append("\n---\n\n")
        if constraints:
            parts.append("## MANDATORY ARCHITECTURAL CONSTRAINTS\n")
            parts.append("These rules MUST be obeyed by all generated tasks.\n\n")
            for node in constraints:
                parts.append(f"- **{node.summary}**: {node.content}\n")
            parts.append("\n")
            search_log.insert(0, "Loaded mandatory constraints.")

        parts.append("## RELEVANT ARCHITECTURAL CONTEXT\n")
        for sn in ranked:
            parts.append(f"### [{sn.node.type}] {sn.node.summary}\n{sn.node.content}\n")
            citations = format_citations(sn.node)
            if citations:
                parts.append(f"Referenced files: {citations}\n")
            parts.append("\n")

        strategy = "Research Strategy:\n" + "".join(f"  {line}\n" for line in search_log)
        return AssembledContext(context="".join(parts), strategy=strategy, queries=queries, results=ranked)
