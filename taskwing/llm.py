"""Multi-provider chat model adapter supporting Ollama, OpenAI-compatible APIs,
Anthropic and Gemini.

Every provider speaks in :class:`ChatMessage` objects and raises typed
:class:`~taskwing.errors.LLMError` subclasses, so the chain's retry
classifier can tell rate limits from authentication failures.  Models hold a
``requests.Session``; use them as context managers or call :meth:`close`.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests

from .budget import estimate_tokens
from .cancellation import CancelToken
from .config_manager import LLMConfig, default_endpoint
from .errors import (
    AuthenticationError,
    LLMError,
    LLMNetworkError,
    LLMTimeoutError,
    ModelNotFoundError,
    RateLimitError,
    ToolCallingNotSupportedError,
)

logger = logging.getLogger(__name__)

__all__ = [
    "ChatMessage", "ToolCall", "ToolSpec", "ChatModel", "ToolCallingChatModel",
    "create_chat_model", "get_max_input_tokens", "estimate_tokens",
]

DEFAULT_MAX_INPUT_TOKENS = 8192
REQUEST_TIMEOUT = 120.0

MODEL_INPUT_TOKENS: Dict[str, int] = {
    "o3": 200_000,
    "o4-mini": 200_000,
    "gpt-5": 128_000,
    "gpt-5-mini": 128_000,
    "gpt-5-nano": 128_000,
    "gpt-4.1": 1_000_000,
    "gpt-4.1-mini": 1_000_000,
    "gpt-4.1-nano": 1_000_000,
    "claude-sonnet-4-5": 200_000,
    "claude-opus-4-5": 200_000,
    "claude-haiku-4-5": 200_000,
    "claude-sonnet-4": 200_000,
    "claude-opus-4-1": 200_000,
    "gemini-2.5-pro": 1_000_000,
    "gemini-2.5-flash": 1_000_000,
    "gemini-2.5-flash-lite": 1_000_000,
    "gemini-2.0-flash": 1_000_000,
    "llama3.2": 128_000,
    "llama-3.3-70b-versatile": 128_000,
    "qwen2.5-coder": 32_768,
}


def get_max_input_tokens(model: str) -> int:
    """Context window for *model*; unknown models get 8192."""
    if model in MODEL_INPUT_TOKENS:
        return MODEL_INPUT_TOKENS[model]
    # Tagged local models ("llama3.2:3b") and vendor prefixes ("openai/gpt-5")
    base = model.split(":", 1)[0].rsplit("/", 1)[-1]
    return MODEL_INPUT_TOKENS.get(base, DEFAULT_MAX_INPUT_TOKENS)


# ===================================================================
# Messages
# ===================================================================

@dataclass
class ToolCall:
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: f"call_{uuid.uuid4().hex[:12]}")


@dataclass
class ChatMessage:
    role: str
    content: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    tool_call_id: str = ""
    name: str = ""

    @classmethod
    def system(cls, content: str) -> "ChatMessage":
        return cls("system", content)

    @classmethod
    def user(cls, content: str) -> "ChatMessage":
        return cls("user", content)

    @classmethod
    def assistant(cls, content: str, tool_calls: Optional[List[ToolCall]] = None) -> "ChatMessage":
        return cls("assistant", content, list(tool_calls or []))

    @classmethod
    def tool(cls, content: str, tool_call_id: str, name: str = "") -> "ChatMessage":
        return cls("tool", content, tool_call_id=tool_call_id, name=name)


@dataclass
class ToolSpec:
    """JSON-schema description of a callable tool."""

    name: str
    description: str
    parameters: Dict[str, Any]


def format_messages_for_log(messages: List[ChatMessage]) -> str:
    return "\n---\n".join(f"[{m.role}]: {m.content}" for m in messages)


# ===================================================================
# Base classes
# ===================================================================

class ChatModel:
    """Plain text generation over a chat transcript."""

    provider_name = "base"

    def __init__(self, model: str, api_key: str = "", endpoint: str = "", timeout: float = REQUEST_TIMEOUT):
        self.model = model
        self.api_key = api_key
        self.endpoint = endpoint
        self.timeout = timeout
        self.session = requests.Session()
        self.closed = False

    def generate(self, messages: List[ChatMessage], cancel: Optional[CancelToken] = None) -> ChatMessage:
        raise NotImplementedError

    def supports_tools(self) -> bool:
        return False

    def close(self) -> None:
        if not self.closed:
            self.session.close()
            self.closed = True

    def __enter__(self) -> "ChatModel":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ------------------------------------------------------------------

    def _post(self, url: str, payload: Dict[str, Any], headers: Dict[str, str],
              cancel: Optional[CancelToken] = None) -> Dict[str, Any]:
        if cancel is not None:
            cancel.check()
        timeout = cancel.timeout_for(self.timeout) if cancel is not None else self.timeout
        try:
            resp = self.session.post(url, json=payload, headers=headers, timeout=timeout)
        except requests.Timeout as exc:
            raise LLMTimeoutError(f"{self.provider_name} request timed out: {exc}") from exc
        except requests.ConnectionError as exc:
            raise LLMNetworkError(f"{self.provider_name} connection error: {exc}") from exc
        if resp.status_code >= 400:
            raise _http_error(self.provider_name, resp)
        try:
            return resp.json()
        except ValueError as exc:
            raise LLMError(f"{self.provider_name} returned invalid JSON: {exc}") from exc


class ToolCallingChatModel(ChatModel):
    """Chat model that can also return tool calls."""

    def supports_tools(self) -> bool:
        return True

    def generate_with_tools(self, messages: List[ChatMessage], tools: List[ToolSpec],
                            cancel: Optional[CancelToken] = None) -> ChatMessage:
        raise NotImplementedError


def _http_error(provider: str, resp: requests.Response) -> LLMError:
    status = resp.status_code
    reason = resp.reason or ""
    body = (resp.text or "")[:300]
    message = f"{provider}: {status} {reason}: {body}".strip()
    if status == 429:
        return RateLimitError(message, status)
    if status in (401, 403):
        return AuthenticationError(message, status)
    if status == 404:
        return ModelNotFoundError(message, status)
    if status in (408, 504):
        return LLMTimeoutError(message, status)
    return LLMError(message, status)


# ===================================================================
# OpenAI-compatible (OpenAI, Groq, OpenRouter)
# ===================================================================

class OpenAICompatibleChatModel(ToolCallingChatModel):
    provider_name = "openai"

    def __init__(self, model: str, api_key: str, endpoint: str = "https://api.openai.com/v1/chat/completions",
                 provider_name: str = "openai", timeout: float = REQUEST_TIMEOUT):
        super().__init__(model, api_key, endpoint, timeout)
        self.provider_name = provider_name

    def _headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json", "Authorization": f"Bearer {self.api_key}"}

    def _payload(self, messages: List[ChatMessage]) -> Dict[str, Any]:
        out = []
        for m in messages:
            item: Dict[str, Any] = {"role": m.role, "content": m.content}
            if m.tool_calls:
                item["tool_calls"] = [
                    {"id": tc.id, "type": "function",
                     "function": {"name": tc.name, "arguments": json.dumps(tc.arguments)}}
                    for tc in m.tool_calls
                ]
            if m.role == "tool":
                item["tool_call_id"] = m.tool_call_id
            out.append(item)
        return {"model": self.model, "messages": out}

    def generate(self, messages: List[ChatMessage], cancel: Optional[CancelToken] = None) -> ChatMessage:
        if not self.api_key:
            raise AuthenticationError(f"{self.provider_name}: API key is not configured")
        data = self._post(self.endpoint, self._payload(messages), self._headers(), cancel)
        return self._parse(data)

    def generate_with_tools(self, messages: List[ChatMessage], tools: List[ToolSpec],
                            cancel: Optional[CancelToken] = None) -> ChatMessage:
        if not self.api_key:
            raise AuthenticationError(f"{self.provider_name}: API key is not configured")
        payload = self._payload(messages)
        payload["tools"] = [
            {"type": "function",
             "function": {"name": t.name, "description": t.description, "parameters": t.parameters}}
            for t in tools
        ]
        data = self._post(self.endpoint, payload, self._headers(), cancel)
        return self._parse(data)

    def _parse(self, data: Dict[str, Any]) -> ChatMessage:
        try:
            msg = data["choices"][0]["message"]
        except (KeyError, IndexError, TypeError) as exc:
            raise LLMError(f"{self.provider_name}: unexpected response shape") from exc
        calls = []
        for tc in msg.get("tool_calls") or []:
            fn = tc.get("function", {})
            calls.append(ToolCall(
                id=tc.get("id") or ToolCall(name="").id,
                name=fn.get("name", ""),
                arguments=_decode_arguments(fn.get("arguments")),
            ))
        return ChatMessage.assistant(msg.get("content") or "", calls)


# ===================================================================
# Ollama
# ===================================================================

class OllamaChatModel(ToolCallingChatModel):
    provider_name = "ollama"

    def __init__(self, model: str, endpoint: str = "http://127.0.0.1:11434", timeout: float = REQUEST_TIMEOUT):
        super().__init__(model, "", endpoint.rstrip("/"), timeout)

    def _payload(self, messages: List[ChatMessage]) -> Dict[str, Any]:
        out = []
        for m in messages:
            item: Dict[str, Any] = {"role": m.role, "content": m.content}
            if m.tool_calls:
                item["tool_calls"] = [{"function": {"name": tc.name, "arguments": tc.arguments}} for tc in m.tool_calls]
            out.append(item)
        return {"model": self.model, "messages": out, "stream": False, "options": {"temperature": 0.1}}

    def generate(self, messages: List[ChatMessage], cancel: Optional[CancelToken] = None) -> ChatMessage:
        data = self._post(f"{self.endpoint}/api/chat", self._payload(messages),
                          {"Content-Type": "application/json"}, cancel)
        return self._parse(data)

    def generate_with_tools(self, messages: List[ChatMessage], tools: List[ToolSpec],
                            cancel: Optional[CancelToken] = None) -> ChatMessage:
        payload = self._payload(messages)
        payload["tools"] = [
            {"type": "function",
             "function": {"name": t.name, "description": t.description, "parameters": t.parameters}}
            for t in tools
        ]
        data = self._post(f"{self.endpoint}/api/chat", payload, {"Content-Type": "application/json"}, cancel)
        return self._parse(data)

    def _parse(self, data: Dict[str, Any]) -> ChatMessage:
        msg = data.get("message") or {}
        calls = [
            ToolCall(name=tc.get("function", {}).get("name", ""),
                     arguments=_decode_arguments(tc.get("function", {}).get("arguments")))
            for tc in msg.get("tool_calls") or []
        ]
        return ChatMessage.assistant(msg.get("content") or "", calls)


# ===================================================================
# Anthropic
# ===================================================================

class AnthropicChatModel(ToolCallingChatModel):
    provider_name = "anthropic"

    def __init__(self, model: str, api_key: str, endpoint: str = "https://api.anthropic.com/v1/messages",
                 timeout: float = REQUEST_TIMEOUT, max_tokens: int = 8192):
        super().__init__(model, api_key, endpoint, timeout)
        self.max_tokens = max_tokens

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-key": self.api_key,
            "anthropic-version": "2023-06-01",
        }

    def _payload(self, messages: List[ChatMessage]) -> Dict[str, Any]:
        system = "\n\n".join(m.content for m in messages if m.role == "system")
        out: List[Dict[str, Any]] = []
        for m in messages:
            if m.role == "system":
                continue
            if m.role == "tool":
                out.append({"role": "user", "content": [
                    {"type": "tool_result", "tool_use_id": m.tool_call_id, "content": m.content}
                ]})
            elif m.tool_calls:
                blocks: List[Dict[str, Any]] = []
                if m.content:
                    blocks.append({"type": "text", "text": m.content})
                blocks += [{"type": "tool_use", "id": tc.id, "name": tc.name, "input": tc.arguments}
                           for tc in m.tool_calls]
                out.append({"role": "assistant", "content": blocks})
            else:
                out.append({"role": m.role, "content": m.content})
        payload: Dict[str, Any] = {"model": self.model, "max_tokens": self.max_tokens, "messages": out}
        if system:
            payload["system"] = system
        return payload

    def generate(self, messages: List[ChatMessage], cancel: Optional[CancelToken] = None) -> ChatMessage:
        if not self.api_key:
            raise AuthenticationError("anthropic: API key is not configured")
        return self._parse(self._post(self.endpoint, self._payload(messages), self._headers(), cancel))

    def generate_with_tools(self, messages: List[ChatMessage], tools: List[ToolSpec],
                            cancel: Optional[CancelToken] = None) -> ChatMessage:
        if not self.api_key:
            raise AuthenticationError("anthropic: API key is not configured")
        payload = self._payload(messages)
        payload["tools"] = [
            {"name": t.name, "description": t.description, "input_schema": t.parameters} for t in tools
        ]
        return self._parse(self._post(self.endpoint, payload, self._headers(), cancel))

    def _parse(self, data: Dict[str, Any]) -> ChatMessage:
        text: List[str] = []
        calls: List[ToolCall] = []
        for block in data.get("content") or []:
            if block.get("type") == "text":
                text.append(block.get("text", ""))
            elif block.get("type") == "tool_use":
                calls.append(ToolCall(id=block.get("id", ""), name=block.get("name", ""),
                                      arguments=block.get("input") or {}))
        return ChatMessage.assistant("".join(text), calls)


# ===================================================================
# Gemini (plain generation only)
# ===================================================================

class GeminiChatModel(ChatModel):
    provider_name = "gemini"
    base_url = "https://generativelanguage.googleapis.com/v1beta/models"

    def generate(self, messages: List[ChatMessage], cancel: Optional[CancelToken] = None) -> ChatMessage:
        if not self.api_key:
            raise AuthenticationError("gemini: API key is not configured")
        system = "\n\n".join(m.content for m in messages if m.role == "system")
        contents = [
            {"role": "model" if m.role == "assistant" else "user", "parts": [{"text": m.content}]}
            for m in messages if m.role != "system"
        ]
        payload: Dict[str, Any] = {"contents": contents}
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}
        url = f"{self.endpoint or self.base_url}/{self.model}:generateContent"
        data = self._post(url, payload, {"Content-Type": "application/json", "x-goog-api-key": self.api_key}, cancel)
        try:
            parts = data["candidates"][0]["content"]["parts"]
        except (KeyError, IndexError, TypeError) as exc:
            raise LLMError("gemini: unexpected response shape") from exc
        return ChatMessage.assistant("".join(p.get("text", "") for p in parts))


# ===================================================================
# Factory
# ===================================================================

_OPENAI_COMPATIBLE_ENDPOINTS = {
    "openai": "https://api.openai.com/v1/chat/completions",
    "groq": "https://api.groq.com/openai/v1/chat/completions",
    "openrouter": "https://openrouter.ai/api/v1/chat/completions",
}


def create_chat_model(cfg: LLMConfig) -> ChatModel:
    """Instantiate the chat model for *cfg*."""
    provider = cfg.provider.lower()
    endpoint = default_endpoint(cfg)
    if provider == "ollama":
        return OllamaChatModel(cfg.model, endpoint or "http://127.0.0.1:11434")
    if provider in _OPENAI_COMPATIBLE_ENDPOINTS:
        return OpenAICompatibleChatModel(
            cfg.model, cfg.api_key, endpoint or _OPENAI_COMPATIBLE_ENDPOINTS[provider], provider_name=provider,
        )
    if provider == "anthropic":
        return AnthropicChatModel(cfg.model, cfg.api_key, endpoint or "https://api.anthropic.com/v1/messages")
    if provider == "gemini":
        return GeminiChatModel(cfg.model, cfg.api_key, endpoint or "")
    raise ValueError(f"Unsupported LLM provider: {cfg.provider}")


def require_tool_calling(model: ChatModel) -> ToolCallingChatModel:
    if not isinstance(model, ToolCallingChatModel) or not model.supports_tools():
        raise ToolCallingNotSupportedError(f"{model.provider_name}/{model.model} does not support tool calling")
    return model


def _decode_arguments(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str) and raw.strip():
        try:
            value = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Tool call arguments are not valid JSON: %.200s", raw)
            return {}
        return value if isinstance(value, dict) else {}
    return {}
