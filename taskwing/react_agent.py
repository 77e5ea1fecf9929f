"""ReAct code agent: explores the repository with tools before answering.

The model is given ``list_dir``, ``read_file``, ``grep_search`` and
``exec_command`` and loops until it answers without tool calls or the step
limit is reached.  Models without tool calling get a single-shot prompt with
the directory tree and key files instead.
"""

from __future__ import annotations

import json
import logging
from typing import List

from .agents import AgentInput, AgentOutput, BaseAgent, register_agent
from .budget import ContextBudget
from .cancellation import CancelToken
from .chain import parse_response
from .code_agent import parse_code_findings, truncate_text
from .errors import AgentError, ToolCallingNotSupportedError, ToolInputError
from .gatherer import ContextGatherer
from .llm import ChatMessage, ToolCallingChatModel, get_max_input_tokens, require_tool_calling
from .prompts import REACT_FALLBACK_TEMPLATE, REACT_SYSTEM_PROMPT, REACT_USER_PROMPT
from .react_tools import RepoTool, create_tools
from .report import get_metrics
from .schemas import CodeAnalysis

logger = logging.getLogger(__name__)

DEFAULT_MAX_STEPS = 20
MAX_STEPS_LIMIT = 80
FALLBACK_TREE_DEPTH = 3
FALLBACK_BUDGET_RATIO = 0.5
MAX_TREE_CHARS = 20_000


class ReactAgent(BaseAgent):
    name = "react"
    description = "Dynamically explores codebase using tools to identify architectural patterns"

    def __init__(self, *args, max_steps: int = DEFAULT_MAX_STEPS, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.max_steps = DEFAULT_MAX_STEPS
        self.set_max_iterations(max_steps)

    def set_max_iterations(self, n: int) -> None:
        """Accepts 1..80; anything else leaves the current limit."""
        if 0 < n <= MAX_STEPS_LIMIT:
            self.max_steps = n

    def execute(self, agent_input: AgentInput, cancel: CancelToken) -> AgentOutput:
        try:
            model = require_tool_calling(self.model)
        except ToolCallingNotSupportedError as exc:
            logger.info("[react] %s; using single-shot fallback", exc)
            return self._run_fallback(agent_input, cancel)
        tools = create_tools(agent_input.base_path)
        return self._run_loop(model, tools, agent_input, cancel)

    # ---------------------------------------------------------------
    # Tool loop
    # ---------------------------------------------------------------

    def _run_loop(self, model: ToolCallingChatModel, tools: List[RepoTool],
                  agent_input: AgentInput, cancel: CancelToken) -> AgentOutput:
        by_name = {t.name: t for t in tools}
        specs = [t.spec() for t in tools]
        messages = [
            ChatMessage.system(REACT_SYSTEM_PROMPT),
            ChatMessage.user(REACT_USER_PROMPT.format(project_name=agent_input.project_name)),
        ]
        metrics = get_metrics()

        for step in range(1, self.max_steps + 1):
            cancel.check()
            reply = model.generate_with_tools(messages, specs, cancel)
            messages.append(reply)
            if not reply.tool_calls:
                logger.info("[react] finished after %d steps", step)
                return self._final_output(reply.content)

            for call in reply.tool_calls:
                metrics.record_tool_call()
                tool = by_name.get(call.name)
                if tool is None:
                    result = f"Error: unknown tool {call.name!r}"
                else:
                    try:
                        result = tool.invoke(call.arguments, cancel)
                    except ToolInputError as exc:
                        result = f"Error: {exc}"
                logger.debug("[react] step %d %s(%s) -> %d chars", step, call.name,
                             json.dumps(call.arguments)[:200], len(result))
                messages.append(ChatMessage.tool(result, call.id, call.name))

        raise AgentError(f"react agent reached the step limit ({self.max_steps}) without a final answer")

    def _final_output(self, content: str) -> AgentOutput:
        parsed = parse_response(content, CodeAnalysis)
        findings, relationships = parse_code_findings(parsed, self.name)
        return AgentOutput(agent_name=self.name, findings=findings, relationships=relationships,
                           raw_output=content)

    # ---------------------------------------------------------------
    # Fallback
    # ---------------------------------------------------------------

    def _run_fallback(self, agent_input: AgentInput, cancel: CancelToken) -> AgentOutput:
        limit = get_max_input_tokens(self.llm_config.model)
        gatherer = ContextGatherer(agent_input.base_path, ContextBudget(int(limit * FALLBACK_BUDGET_RATIO)))
        dir_tree = truncate_text(gatherer.list_directory_tree(FALLBACK_TREE_DEPTH), MAX_TREE_CHARS)
        key_files = gatherer.gather_key_files()
        chain = self.new_chain(self.name, REACT_FALLBACK_TEMPLATE, CodeAnalysis)
        result = chain.invoke({
            "project_name": agent_input.project_name,
            "dir_tree": dir_tree,
            "key_files": key_files,
        }, cancel=cancel)
        findings, relationships = parse_code_findings(result.parsed, self.name)
        return AgentOutput(agent_name=self.name, findings=findings, relationships=relationships,
                           coverage=gatherer.coverage, raw_output=result.raw)


register_agent("react", ReactAgent, "ReAct Explorer", ReactAgent.description)
