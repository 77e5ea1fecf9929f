"""Core data models shared by agents, the knowledge store and retrieval."""

from __future__ import annotations

import json
import posixpath
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

FINDING_KINDS = ("feature", "decision", "pattern", "constraint", "workflow", "risk")

STATUS_PENDING = "pending"
STATUS_VERIFIED = "verified"
STATUS_PARTIAL = "partial"
STATUS_REJECTED = "rejected"
STATUS_SKIPPED = "skipped"

WORKSPACE_ROOT = "root"

# Marker the doc agent writes into workflow descriptions stored as patterns.
WORKFLOW_MARKER = "Steps:"

_LABEL_SCORES = {"high": 0.9, "medium": 0.7, "low": 0.4}


# ===================================================================
# Confidence
# ===================================================================

def confidence_label(score: float) -> str:
    if score >= 0.8:
        return "high"
    if score >= 0.5:
        return "medium"
    return "low"


def normalize_confidence(value: Any) -> Tuple[float, str]:
    """Map a numeric or label confidence onto ``(score, label)``.

    Numbers are clamped to ``[0, 1]``; numeric strings are parsed; known
    labels use a fixed table; anything else becomes ``(0.5, "medium")``.
    """
    if isinstance(value, bool) or value is None:
        return 0.5, "medium"
    if isinstance(value, (int, float)):
        score = min(1.0, max(0.0, float(value)))
        return score, confidence_label(score)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _LABEL_SCORES:
            return _LABEL_SCORES[text], text
        try:
            score = min(1.0, max(0.0, float(text)))
        except ValueError:
            return 0.5, "medium"
        return score, confidence_label(score)
    return 0.5, "medium"


def clean_repo_path(path: str) -> str:
    """Repo-relative POSIX path with ``..`` and leading slashes removed."""
    norm = posixpath.normpath(path.replace("\\", "/").strip())
    parts = [p for p in norm.split("/") if p not in ("", ".", "..")]
    return "/".join(parts)


# ===================================================================
# Findings
# ===================================================================

@dataclass
class Evidence:
    file_path: str
    start_line: int = 0
    end_line: int = 0
    snippet: str = ""
    grep_pattern: str = ""
    evidence_type: str = "file"

    def __post_init__(self) -> None:
        if self.evidence_type == "file":
            self.file_path = clean_repo_path(self.file_path)
        self.start_line = max(0, int(self.start_line or 0))
        self.end_line = max(self.start_line, int(self.end_line or 0))

    @property
    def key(self) -> Tuple[str, int]:
        return (self.file_path, self.start_line)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Evidence":
        return cls(
            file_path=str(data.get("file_path") or data.get("file") or ""),
            start_line=_as_int(data.get("start_line")),
            end_line=_as_int(data.get("end_line")),
            snippet=str(data.get("snippet") or ""),
            grep_pattern=str(data.get("grep_pattern") or ""),
            evidence_type=str(data.get("evidence_type") or data.get("type") or "file"),
        )


@dataclass
class Finding:
    kind: str
    title: str
    description: str = ""
    why: str = ""
    tradeoffs: str = ""
    confidence_score: float = 0.5
    confidence: str = "medium"
    source_agent: str = ""
    evidence: List[Evidence] = field(default_factory=list)
    verification_status: str = STATUS_PENDING
    debt_score: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def source_files(self) -> List[str]:
        seen: List[str] = []
        for ev in self.evidence:
            if ev.evidence_type == "file" and ev.file_path and ev.file_path not in seen:
                seen.append(ev.file_path)
        return seen


@dataclass
class Relationship:
    source: str
    target: str
    relation: str
    reason: str = ""
    confidence: float = 0.7


def merge_evidence(first: Iterable[Evidence], second: Iterable[Evidence]) -> List[Evidence]:
    """Union of two evidence lists keyed by ``(file_path, start_line)``."""
    merged: List[Evidence] = []
    seen = set()
    for ev in list(first) + list(second):
        if ev.key in seen:
            continue
        seen.add(ev.key)
        merged.append(ev)
    return merged


def evidence_from_raw(items: Optional[Iterable[Any]]) -> List[Evidence]:
    out: List[Evidence] = []
    for item in items or []:
        if isinstance(item, Evidence):
            ev = item
        elif isinstance(item, dict):
            ev = Evidence.from_dict(item)
        else:
            continue
        if ev.file_path:
            out.append(ev)
    return out


def parse_debt(score: Any, reason: str = "", hint: str = "") -> Dict[str, Any]:
    """Debt classification as finding metadata (empty when no score given)."""
    if score is None or score == "":
        return {}
    try:
        value = min(1.0, max(0.0, float(score)))
    except (TypeError, ValueError):
        return {}
    meta: Dict[str, Any] = {"debt_score": value}
    if reason:
        meta["debt_reason"] = reason
    if hint:
        meta["refactor_hint"] = hint
    return meta


def new_finding(
    kind: str,
    title: str,
    description: str = "",
    *,
    why: str = "",
    tradeoffs: str = "",
    confidence: Any = None,
    source_agent: str = "",
    evidence: Optional[Iterable[Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Finding:
    """Build a :class:`Finding` from loosely-typed LLM fields."""
    score, label = normalize_confidence(confidence)
    ev = evidence_from_raw(evidence)
    meta = dict(metadata or {})
    debt = meta.get("debt_score")
    return Finding(
        kind=kind,
        title=title.strip(),
        description=description.strip(),
        why=why.strip(),
        tradeoffs=tradeoffs.strip(),
        confidence_score=score,
        confidence=label,
        source_agent=source_agent,
        evidence=ev,
        verification_status=STATUS_PENDING if ev else STATUS_SKIPPED,
        debt_score=float(debt) if isinstance(debt, (int, float)) else None,
        metadata=meta,
    )


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


# ===================================================================
# Coverage
# ===================================================================

@dataclass
class FileRead:
    path: str
    characters: int
    lines: int
    truncated: bool = False


@dataclass
class SkippedFile:
    path: str
    reason: str


@dataclass
class Coverage:
    files_read: List[FileRead] = field(default_factory=list)
    files_skipped: List[SkippedFile] = field(default_factory=list)

    def record_read(self, path: str, content: str, truncated: bool = False) -> None:
        self.files_read.append(
            FileRead(path=path, characters=len(content), lines=content.count("\n") + 1, truncated=truncated)
        )

    def record_skip(self, path: str, reason: str) -> None:
        self.files_skipped.append(SkippedFile(path=path, reason=reason))

    def extend(self, other: "Coverage") -> None:
        self.files_read.extend(other.files_read)
        self.files_skipped.extend(other.files_skipped)

    @property
    def characters_read(self) -> int:
        return sum(f.characters for f in self.files_read)


# ===================================================================
# Persisted graph
# ===================================================================

@dataclass
class Node:
    id: str
    type: str
    summary: str
    content: str = ""
    source_agent: str = ""
    evidence: List[Evidence] = field(default_factory=list)
    confidence: float = 0.5
    workspace: str = WORKSPACE_ROOT
    embedding: Optional[List[float]] = None
    debt_score: Optional[float] = None
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def text(self) -> str:
        return f"{self.summary}\n{self.content}" if self.content else self.summary

    def evidence_json(self) -> str:
        return json.dumps([ev.to_dict() for ev in self.evidence])

    def file_paths(self) -> List[str]:
        paths: List[str] = []
        for ev in self.evidence:
            if ev.evidence_type == "file" and ev.file_path and ev.file_path not in paths:
                paths.append(ev.file_path)
        return paths

    def is_workflow(self) -> bool:
        return self.type == "workflow" or (self.type == "pattern" and WORKFLOW_MARKER in self.content)


@dataclass
class NodeEdge:
    from_node: str
    to_node: str
    relation: str
    confidence: float = 1.0
    properties: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ScoredNode:
    node: Node
    score: float
    expanded_from: Optional[str] = None
    is_exact: bool = False
    fts_score: float = 0.0
    vector_score: float = 0.0
    rerank_score: Optional[float] = None

    @property
    def is_expanded(self) -> bool:
        return self.expanded_from is not None
