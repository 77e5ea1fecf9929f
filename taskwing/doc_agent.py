"""Documentation agent: features, constraints and workflows from docs and CI."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import List, Optional, Tuple

from .agents import AgentInput, AgentOutput, BaseAgent, register_agent
from .budget import ContextBudget
from .cancellation import CancelToken
from .gatherer import ContextGatherer
from .llm import get_max_input_tokens
from .models import Finding, Relationship, new_finding, normalize_confidence
from .prompts import DOC_AGENT_TEMPLATE, DOC_FOCUS_FEATURES, DOC_FOCUS_WORKFLOWS
from .schemas import DocAnalysis

logger = logging.getLogger(__name__)

BUDGET_RATIO = 0.7
SEVERITY_CONFIDENCE = {"critical": 0.95, "high": 0.85, "medium": 0.7}


def filter_markdown(files: List[str]) -> List[str]:
    return [f for f in files if f.lower().endswith(".md")]


def _evidence_or_source(evidence, source_file: str) -> list:
    items = [ev.model_dump() for ev in evidence]
    if not any(item.get("file_path") for item in items) and source_file:
        items = [{"file_path": source_file}]
    return items


def parse_doc_findings(parsed: DocAnalysis, agent_name: str) -> Tuple[List[Finding], List[Relationship]]:
    findings: List[Finding] = []

    for feature in parsed.features:
        if not feature.name:
            continue
        findings.append(new_finding(
            "feature", feature.name, feature.description,
            confidence=feature.confidence,
            source_agent=agent_name,
            evidence=_evidence_or_source(feature.evidence, feature.source_file),
        ))

    for wf in parsed.workflows:
        if not wf.name:
            continue
        findings.append(new_finding(
            "pattern", wf.name, f"Trigger: {wf.trigger}\nSteps:\n{wf.steps}",
            confidence=wf.confidence,
            source_agent=agent_name,
            evidence=_evidence_or_source(wf.evidence, wf.source_file),
            metadata={"type": "workflow", "trigger": wf.trigger, "steps": wf.steps},
        ))

    for constraint in parsed.constraints:
        if not constraint.rule:
            continue
        score, _ = normalize_confidence(constraint.confidence)
        severity = constraint.severity.lower()
        if score == 0.5 and severity in SEVERITY_CONFIDENCE:
            score = SEVERITY_CONFIDENCE[severity]
        findings.append(new_finding(
            "constraint", constraint.rule, constraint.reason,
            confidence=score,
            source_agent=agent_name,
            evidence=_evidence_or_source(constraint.evidence, constraint.source_file),
            metadata={"severity": constraint.severity},
        ))

    relationships = [
        Relationship(r.source, r.target, r.relation, r.reason)
        for r in parsed.relationships
        if r.source and r.target and r.relation
    ]
    return findings, relationships


class DocAgent(BaseAgent):
    name = "doc"
    description = "Extracts knowledge from README and documentation files"

    def execute(self, agent_input: AgentInput, cancel: CancelToken) -> AgentOutput:
        limit = get_max_input_tokens(self.llm_config.model)
        gatherer = ContextGatherer(agent_input.base_path, ContextBudget(int(limit * BUDGET_RATIO)))
        chain = self.new_chain(self.name, DOC_AGENT_TEMPLATE, DocAnalysis)

        def analyze(focus: str, content: str) -> DocAnalysis:
            result = chain.invoke(
                {"project_name": agent_input.project_name, "focus": focus, "doc_content": content},
                cancel=cancel,
            )
            return result.parsed

        if agent_input.is_watch and agent_input.changed_files:
            content = gatherer.gather_specific_files(filter_markdown(agent_input.changed_files))
            if not content:
                return AgentOutput(agent_name=self.name, coverage=gatherer.coverage)
            findings, relationships = parse_doc_findings(analyze("", content), self.name)
            return AgentOutput(
                agent_name=self.name, findings=findings, relationships=relationships,
                coverage=gatherer.coverage, raw_output="JSON output (watch)",
            )

        def features_track() -> Optional[DocAnalysis]:
            content = gatherer.gather_markdown_docs()
            return analyze(DOC_FOCUS_FEATURES, content) if content else None

        def workflows_track() -> Optional[DocAnalysis]:
            content = gatherer.gather_key_files()
            ci = gatherer.gather_ci_configs()
            if ci:
                content += "\n## CI/CD Configuration\n" + ci
            return analyze(DOC_FOCUS_WORKFLOWS, content) if content else None

        combined = DocAnalysis()
        errors: List[str] = []
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="doc-track") as pool:
            futures = [pool.submit(features_track), pool.submit(workflows_track)]
            for future in as_completed(futures):
                try:
                    parsed = future.result()
                except Exception as exc:  # each track fails independently
                    errors.append(str(exc))
                    continue
                if parsed is None:
                    continue
                combined.features.extend(parsed.features)
                combined.constraints.extend(parsed.constraints)
                combined.workflows.extend(parsed.workflows)
                combined.relationships.extend(parsed.relationships)

        logger.debug(
            "doc tracks merged: features=%d constraints=%d workflows=%d errors=%d",
            len(combined.features), len(combined.constraints), len(combined.workflows), len(errors),
        )
        if errors:
            return AgentOutput(agent_name=self.name, coverage=gatherer.coverage,
                               error=f"partial failures: {'; '.join(errors)}")

        findings, relationships = parse_doc_findings(combined, self.name)
        if not findings:
            return AgentOutput(
                agent_name=self.name, coverage=gatherer.coverage,
                error="no findings extracted from documentation - check if markdown files exist and are readable",
            )
        return AgentOutput(
            agent_name=self.name, findings=findings, relationships=relationships,
            coverage=gatherer.coverage, raw_output="Joint analysis (Docs+Rules)",
        )


register_agent("doc", DocAgent, "Documentation", DocAgent.description)
