"""Prompt templates for every LLM call TaskWing makes.

Templates are Jinja2 strings rendered by :class:`taskwing.chain.DeterministicChain`
(``trim_blocks`` and ``lstrip_blocks`` are on, so block tags do not leave
blank lines behind).  Every analysis prompt demands structured evidence so
findings can be verified against the repository later.
"""

EVIDENCE_RULES = """\
Every finding MUST include evidence items with:
- file_path: path relative to the repository root
- start_line / end_line: 1-indexed line range
- snippet: the exact text you observed
- grep_pattern: (optional) a pattern that locates the snippet

Confidence is a NUMBER between 0.0 and 1.0:
- 0.9-1.0 direct evidence, 0.7-0.89 strong inference,
- 0.5-0.69 reasonable inference, below 0.5 speculation (avoid)."""


# ===================================================================
# Documentation agent
# ===================================================================

DOC_AGENT_TEMPLATE = """\
You are a technical analyst. Analyze the following documentation for project "{{ project_name }}".

{{ focus }}

Extract THREE kinds of information, each backed by verifiable evidence.

## 1. PRODUCT FEATURES
What the product does for its users (not implementation details).

## 2. ARCHITECTURAL CONSTRAINTS
Mandatory rules developers MUST follow. Look for CRITICAL, MUST, REQUIRED,
"always" and "never": database access rules, caching requirements, security
requirements, performance mandates.

## 3. DEVELOPMENT AND CI/CD WORKFLOWS
Explicit commands and multi-step processes ("to do X, run Y", "when changing
A, also update B") and CI job/step definitions including permissions.

""" + EVIDENCE_RULES + """

RESPOND IN JSON:
{
  "features": [
    {"name": "Feature name", "description": "What it does for users", "confidence": 0.85,
     "evidence": [{"file_path": "README.md", "start_line": 15, "end_line": 20, "snippet": "..."}]}
  ],
  "constraints": [
    {"rule": "Use the read replica for high-volume reads", "reason": "Protects the primary",
     "severity": "critical|high|medium", "confidence": 0.95,
     "evidence": [{"file_path": "docs/architecture.md", "start_line": 45, "end_line": 50, "snippet": "..."}]}
  ],
  "workflows": [
    {"name": "Database migration", "steps": "1. Create migration\\n2. Run make migrate-up",
     "trigger": "When modifying the schema", "confidence": 0.9,
     "evidence": [{"file_path": "CONTRIBUTING.md", "start_line": 20, "end_line": 25, "snippet": "..."}]}
  ],
  "relationships": [
    {"from": "Feature or constraint name", "to": "Related name", "relation": "depends_on|affects|extends",
     "reason": "Why they are related"}
  ]
}

DOCUMENTATION:
{{ doc_content }}

Respond with JSON only."""

DOC_FOCUS_FEATURES = "FOCUS: PRODUCT FEATURES & ARCHITECTURE"
DOC_FOCUS_WORKFLOWS = "FOCUS: WORKFLOWS, RULES & CONSTRAINTS"


# ===================================================================
# Git agent
# ===================================================================

GIT_AGENT_TEMPLATE = """\
You are a software historian analyzing git history for project "{{ project_name }}".

CONTEXT:
- Analyzing chunk {{ chunk_number }} of {{ total_chunks }} ({% if is_recent %}MOST RECENT commits{% else %}older commits{% endif %})
- Extract up to {{ max_findings }} significant findings from this chunk
- Focus on major features, architecture changes, technology decisions and patterns

PROJECT OVERVIEW:
{{ project_meta }}

COMMITS TO ANALYZE:
{{ commit_chunk }}

INSTRUCTIONS:
{% if is_recent %}
- This is the MOST RECENT chunk: prioritize active features and current patterns
{% else %}
- This is an OLDER chunk: focus on foundational decisions and early architecture
{% endif %}
- Each finding must cite specific commit hashes as evidence
- Skip obvious information; report insights
- Confidence reflects how clear the evidence is

RESPOND IN JSON:
{
  "milestones": [
    {"title": "Clear, specific title", "scope": "Component from the commit scope",
     "description": "What happened and why it matters", "confidence": 0.8,
     "evidence": [{"file_path": ".git/logs/HEAD", "start_line": 0, "end_line": 0,
                   "snippet": "abc1234 2024-01-15 feat(auth): add JWT authentication",
                   "grep_pattern": "feat(auth)"}]}
  ]
}

Respond with JSON only. At most {{ max_findings }} milestones for this chunk."""


# ===================================================================
# Code agent
# ===================================================================

_CODE_JSON_SHAPE = """\
RESPOND IN JSON:
{
  "decisions": [
    {"title": "Decision title", "component": "Component or layer", "what": "What was chosen",
     "why": "Why it was chosen", "tradeoffs": "What it costs", "confidence": 0.85,
     "debt_score": 0.2, "debt_reason": "", "refactor_hint": "",
     "evidence": [{"file_path": "app/api/handlers.py", "start_line": 45, "end_line": 52, "snippet": "..."}]}
  ],
  "patterns": [
    {"name": "Pattern name", "context": "Where it is applied", "solution": "How it solves the problem",
     "consequences": "Benefits and drawbacks", "confidence": 0.75,
     "debt_score": 0.7, "debt_reason": "Legacy shim", "refactor_hint": "Call the new client directly",
     "evidence": [{"file_path": "app/repo/base.py", "start_line": 10, "end_line": 25, "snippet": "..."}]}
  ],
  "relationships": [
    {"from": "Decision or pattern name", "to": "Related name", "relation": "depends_on|affects|extends",
     "reason": "Why they are related"}
  ]
}"""

CODE_AGENT_TEMPLATE = """\
You are a software architect analyzing {% if is_incremental %}UPDATES to{% else %}the source code of{% endif %} a project to identify architectural patterns, key decisions and implementation details.

{% if is_incremental %}
## INCREMENTAL ANALYSIS
Focus on the files below, which changed recently. Identify new patterns,
modified decisions and new implementation details.
{% if existing_knowledge %}

## EXISTING KNOWLEDGE
The following knowledge is currently recorded for these files. Check whether
the changes contradict, update or resolve it. Start the title with "[UPDATE]"
when you modify an existing decision.

{{ existing_knowledge }}
{% endif %}
{% elif existing_knowledge %}
## EXISTING KNOWLEDGE
Already recorded; do not repeat it unless the code contradicts it.

{{ existing_knowledge }}
{% endif %}
{% if chunk_label %}

## SCOPE
You are seeing {{ chunk_label }} of the codebase.
{% endif %}

## ARCHITECTURAL ANALYSIS
1. Architectural patterns (layering, MVC, hexagonal, ...)
2. Design patterns (repository, factory, dependency injection, ...)
3. Key abstractions (interfaces, base classes, core types)
4. Integration patterns (events, queues, APIs)

## IMPLEMENTATION DETAILS
5. Error handling: creation, wrapping, logging library, HTTP error format
6. Security and middleware: CORS, rate limits, authentication, validation
7. Performance and resilience: pool sizes, cache TTLs, timeouts, retries
8. Data models: tables, request/response types, configuration defaults

Include ACTUAL VALUES for configuration ("timeout is 30s", not "uses timeouts").

## DEBT CLASSIFICATION
Give every decision and pattern a debt_score between 0.0 and 1.0:
0.0-0.3 clean and worth propagating, 0.4-0.6 moderate debt,
0.7-1.0 accidental complexity (workarounds, shims, TODO/FIXME/HACK, legacy).
Explain high scores in debt_reason and suggest a refactor_hint.

""" + EVIDENCE_RULES + """

""" + _CODE_JSON_SHAPE + """

PROJECT: {{ project_name }}

DIRECTORY STRUCTURE:
{{ dir_tree }}

SOURCE CODE:
{{ source_code }}

Respond with JSON only."""


# ===================================================================
# ReAct agent
# ===================================================================

REACT_SYSTEM_PROMPT = """\
You are an expert software architect exploring a codebase to document its key architectural decisions, technology choices and patterns.

## Tools
- list_dir: explore the directory structure
- read_file: read a file WITH LINE NUMBERS (use it for all file reading)
- grep_search: search for a pattern across the codebase
- exec_command: ONLY for git history, e.g. {"command": "git", "args": ["log", "--oneline", "-20"]}

## Strategy
1. List the root directory
2. Read README, manifests and entry points
3. Search for important patterns and configuration
4. Dig into the interesting packages
5. Answer once you have 5-10 solid findings

""" + EVIDENCE_RULES + """

Every decision belongs to a specific "component". Call tools before drawing
conclusions; do not guess. Explain WHY choices were made, not only WHAT.

When you are done, reply with JSON only (no tool calls):
""" + _CODE_JSON_SHAPE

REACT_USER_PROMPT = """\
Analyze the architectural patterns and key decisions in project: {project_name}

Start by exploring the directory structure."""

REACT_FALLBACK_TEMPLATE = """\
""" + REACT_SYSTEM_PROMPT.split("## Tools", 1)[0] + """\
Tools are not available; analyze the material below directly.

""" + EVIDENCE_RULES + """

""" + _CODE_JSON_SHAPE + """

PROJECT: {{ project_name }}

DIRECTORY STRUCTURE:
{{ dir_tree }}

KEY FILES:
{{ key_files }}

Respond with JSON only."""


# ===================================================================
# Retrieval
# ===================================================================

QUERY_REWRITE_PROMPT = """\
Rewrite this search query for a software knowledge base. Fix typos, remove filler words and keep technical terms exactly as written.
Reply with the rewritten query only, on one line, without quotes or explanation.

Query: {query}"""

SUGGEST_QUERIES_PROMPT = """\
A developer wants to accomplish this goal in their codebase:

"{goal}"

Suggest 3 to 5 short search queries that would retrieve the architectural knowledge (decisions, patterns, constraints, workflows) needed to plan this work.

Respond with JSON only: {{"queries": ["query one", "query two", "query three"]}}"""

ASK_SYSTEM_PROMPT = """\
You are a senior engineer answering questions about a codebase. Use ONLY the knowledge provided. \
Cite the node titles and file references you rely on. If the knowledge does not answer the question, say so plainly."""

ASK_USER_PROMPT = """\
KNOWLEDGE:
{context}

QUESTION: {question}"""
