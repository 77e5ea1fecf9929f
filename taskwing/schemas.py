"""Response shapes the analysis agents ask the model to produce."""

from __future__ import annotations

from typing import Any, List

from pydantic import BaseModel, ConfigDict, Field, field_validator


class _Response(BaseModel):
    model_config = ConfigDict(extra="ignore")

    @field_validator("*", mode="before")
    @classmethod
    def _none_to_default(cls, value: Any, info) -> Any:
        # Models emit null for empty lists and strings
        if value is None:
            field = cls.model_fields[info.field_name]
            if field.default_factory is not None:
                return field.default_factory()
            return field.default
        return value


class EvidenceItem(_Response):
    file_path: str = ""
    start_line: int = 0
    end_line: int = 0
    snippet: str = ""
    grep_pattern: str = ""

    @field_validator("start_line", "end_line", mode="before")
    @classmethod
    def _coerce_line(cls, value: Any) -> int:
        try:
            return int(value)
        except (TypeError, ValueError):
            return 0


class RelationshipItem(_Response):
    source: str = Field(default="", alias="from")
    target: str = Field(default="", alias="to")
    relation: str = ""
    reason: str = ""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


# ===================================================================
# Doc agent
# ===================================================================

class FeatureItem(_Response):
    name: str = ""
    description: str = ""
    confidence: Any = None
    evidence: List[EvidenceItem] = Field(default_factory=list)
    source_file: str = ""


class ConstraintItem(_Response):
    rule: str = ""
    reason: str = ""
    severity: str = ""
    confidence: Any = None
    evidence: List[EvidenceItem] = Field(default_factory=list)
    source_file: str = ""


class WorkflowItem(_Response):
    name: str = ""
    steps: str = ""
    trigger: str = ""
    confidence: Any = None
    evidence: List[EvidenceItem] = Field(default_factory=list)
    source_file: str = ""


class DocAnalysis(_Response):
    features: List[FeatureItem] = Field(default_factory=list)
    constraints: List[ConstraintItem] = Field(default_factory=list)
    workflows: List[WorkflowItem] = Field(default_factory=list)
    relationships: List[RelationshipItem] = Field(default_factory=list)


# ===================================================================
# Git agent
# ===================================================================

class MilestoneItem(_Response):
    title: str = ""
    scope: str = ""
    description: str = ""
    confidence: Any = None
    evidence: List[EvidenceItem] = Field(default_factory=list)


class GitAnalysis(_Response):
    milestones: List[MilestoneItem] = Field(default_factory=list)


# ===================================================================
# Code agent (also the ReAct agent's final answer)
# ===================================================================

class DecisionItem(_Response):
    title: str = ""
    component: str = ""
    what: str = ""
    why: str = ""
    tradeoffs: str = ""
    confidence: Any = None
    debt_score: Any = None
    debt_reason: str = ""
    refactor_hint: str = ""
    evidence: List[EvidenceItem] = Field(default_factory=list)


class PatternItem(_Response):
    name: str = ""
    context: str = ""
    solution: str = ""
    consequences: str = ""
    confidence: Any = None
    debt_score: Any = None
    debt_reason: str = ""
    refactor_hint: str = ""
    evidence: List[EvidenceItem] = Field(default_factory=list)


class CodeAnalysis(_Response):
    decisions: List[DecisionItem] = Field(default_factory=list)
    patterns: List[PatternItem] = Field(default_factory=list)
    relationships: List[RelationshipItem] = Field(default_factory=list)


# ===================================================================
# Retrieval helpers
# ===================================================================

class QuerySuggestions(_Response):
    queries: List[str] = Field(default_factory=list)
