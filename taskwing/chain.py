"""Deterministic LLM chain: map -> prompt -> model -> parser, with classified retries.

A chain owns a Jinja template, a chat model and a pydantic response model.
``invoke`` renders the template, calls the model and validates the JSON reply.
Transient failures (timeouts, rate limits, network errors and unparseable
JSON) are retried with exponential, jittered back-off; anything else fails
immediately with :class:`~taskwing.errors.ChainError`.
"""

from __future__ import annotations

import json
import logging
import random
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, List, Optional, Type, TypeVar

import requests
from jinja2 import Environment, TemplateError
from pydantic import BaseModel, ValidationError

from . import crash_log
from .cancellation import CancelToken, ensure_token
from .config_manager import ChainConfig
from .errors import (
    ChainError,
    ChainParseError,
    LLMNetworkError,
    LLMTimeoutError,
    OperationCancelled,
    RateLimitError,
)
from .llm import ChatMessage, ChatModel, format_messages_for_log

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

MIN_RETRY_DELAY = 0.1
RETRYABLE_CLASSES = frozenset({"timeout", "rate_limit", "json_parse", "network"})

_TIMEOUT_PATTERNS = (
    "context deadline exceeded", "client.timeout exceeded",
    "timeout exceeded while awaiting headers", "i/o timeout", "request timeout",
    "operation timed out", "deadline exceeded", "timed out",
)
_JSON_PATTERNS = (
    "parse json", "unmarshal", "invalid character", "no json found",
    "no json start", "unexpected end of json", "expecting value",
)
_RATE_LIMIT_PATTERNS = (
    "rate limit", "429", "too many requests", "quota exceeded", "resource exhausted",
)
_NETWORK_PATTERNS = (
    "connection reset", "connection refused", "no such host", "temporary failure",
    "network is unreachable", "broken pipe",
)

_env = Environment(trim_blocks=True, lstrip_blocks=True, keep_trailing_newline=True)


# ===================================================================
# Error classification and back-off
# ===================================================================

def classify_error(exc: Optional[BaseException]) -> str:
    """One of ``timeout | rate_limit | json_parse | network | cancelled | unknown``.

    Known exception types are matched first, then the lowercased message is
    matched against vendor error signatures.
    """
    if exc is None:
        return "none"
    if isinstance(exc, OperationCancelled):
        return "cancelled"
    if isinstance(exc, (LLMTimeoutError, requests.Timeout, TimeoutError)):
        return "timeout"
    if isinstance(exc, RateLimitError):
        return "rate_limit"
    if isinstance(exc, (ChainParseError, json.JSONDecodeError, ValidationError)):
        return "json_parse"
    if isinstance(exc, (LLMNetworkError, requests.ConnectionError, ConnectionError)):
        return "network"

    text = str(exc).lower()
    for label, needles in (
        ("timeout", _TIMEOUT_PATTERNS),
        ("rate_limit", _RATE_LIMIT_PATTERNS),
        ("json_parse", _JSON_PATTERNS),
        ("network", _NETWORK_PATTERNS),
    ):
        if any(n in text for n in needles):
            return label
    return "unknown"


def is_retryable(exc: Optional[BaseException]) -> bool:
    return classify_error(exc) in RETRYABLE_CLASSES


def backoff_delay(attempt: int, config: ChainConfig, rand: Callable[[], float] = random.random) -> float:
    """Seconds to wait before retry number *attempt* (1-based).

    ``base * 2**(attempt-1)`` capped at ``retry_max_delay``, jittered by
    ``+/- jitter_factor``, then kept within ``[0.1, retry_max_delay]``.
    """
    base = config.retry_base_delay * (2 ** max(0, attempt - 1))
    base = min(base, config.retry_max_delay)
    delay = base + base * config.jitter_factor * (2 * rand() - 1)
    return min(config.retry_max_delay, max(MIN_RETRY_DELAY, delay))


# ===================================================================
# JSON extraction
# ===================================================================

_FENCE_OPEN = re.compile(r"^```[A-Za-z0-9_+-]*[ \t]*\n?")
_FENCE_CLOSE = re.compile(r"\n?```$")


def extract_json(text: str) -> str:
    """Strip whitespace and surrounding Markdown code fences."""
    body = text.strip()
    body = _FENCE_OPEN.sub("", body, count=1)
    body = _FENCE_CLOSE.sub("", body, count=1)
    return body.strip()


def parse_response(text: str, response_model: Type[T]) -> T:
    body = extract_json(text)
    if not body:
        raise ChainParseError("no JSON found in response", raw=text)
    try:
        return response_model.model_validate_json(body)
    except ValidationError as exc:
        # Models sometimes wrap the object in prose; retry on the outermost braces.
        start, end = body.find("{"), body.rfind("}")
        if start > 0 and end > start:
            try:
                return response_model.model_validate_json(body[start:end + 1])
            except ValidationError:
                pass
        raise ChainParseError(f"parse JSON: {exc}", raw=text) from exc


# ===================================================================
# Chain
# ===================================================================

@dataclass
class ChainResult(Generic[T]):
    parsed: T
    raw: str
    duration: float
    attempts: int


class DeterministicChain(Generic[T]):
    """Reusable template -> model -> JSON pipeline."""

    def __init__(
        self,
        name: str,
        model: ChatModel,
        template: str,
        response_model: Type[T],
        config: Optional[ChainConfig] = None,
        system_prompt: str = "",
        sleep: Optional[Callable[[float], None]] = None,
        rand: Callable[[], float] = random.random,
    ) -> None:
        self.name = name
        self.model = model
        self.response_model = response_model
        self.config = config or ChainConfig()
        self.system_prompt = system_prompt
        self._sleep = sleep
        self._rand = rand
        try:
            self._template = _env.from_string(template)
        except TemplateError as exc:
            raise ChainError(f"{name}: parse template: {exc}", error_class="template") from exc

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def map_inputs(self, inputs: Dict[str, Any]) -> Dict[str, Any]:
        return {k: ("" if v is None else v) for k, v in inputs.items()}

    def render_prompt(self, variables: Dict[str, Any]) -> List[ChatMessage]:
        try:
            prompt = self._template.render(**variables)
        except TemplateError as exc:
            raise ChainError(f"{self.name}: execute template: {exc}", error_class="template") from exc
        messages = []
        if self.system_prompt:
            messages.append(ChatMessage.system(self.system_prompt))
        messages.append(ChatMessage.user(prompt))
        return messages

    def call_model(self, messages: List[ChatMessage], cancel: CancelToken) -> ChatMessage:
        crash_log.remember_prompt(format_messages_for_log(messages))
        return self.model.generate(messages, cancel=cancel)

    def parse(self, message: ChatMessage) -> T:
        return parse_response(message.content, self.response_model)

    # ------------------------------------------------------------------
    # Invoke
    # ------------------------------------------------------------------

    def invoke(self, inputs: Dict[str, Any], cancel: Optional[CancelToken] = None) -> ChainResult[T]:
        """Run the pipeline, retrying transient failures.

        Raises :class:`ChainError` on a permanent failure or when all
        ``max_retries`` attempts fail; :class:`OperationCancelled` propagates
        untouched.
        """
        cancel = ensure_token(cancel)
        start = time.monotonic()
        max_attempts = max(1, self.config.max_retries)
        messages = self.render_prompt(self.map_inputs(inputs))
        last_exc: Optional[BaseException] = None
        raw = ""

        for attempt in range(1, max_attempts + 1):
            if attempt > 1:
                delay = backoff_delay(attempt - 1, self.config, self._rand)
                logger.info(
                    "chain=%s attempt=%d/%d error_type=%s delay=%.2fs last_error=%s",
                    self.name, attempt, max_attempts, classify_error(last_exc), delay, last_exc,
                )
                self._wait(delay, cancel)
            cancel.check()

            try:
                reply = self.call_model(messages, cancel)
                raw = reply.content
                parsed = self.parse(reply)
            except OperationCancelled:
                raise
            except Exception as exc:  # classified below; unknown errors are not retried
                last_exc = exc
                if is_retryable(exc):
                    continue
                raise ChainError(
                    f"{self.name}: {exc}",
                    raw=raw,
                    duration=time.monotonic() - start,
                    attempts=attempt,
                    error_class=classify_error(exc),
                ) from exc

            duration = time.monotonic() - start
            if attempt > 1:
                logger.info("chain=%s recovered after %d retries in %.2fs", self.name, attempt - 1, duration)
            return ChainResult(parsed=parsed, raw=raw, duration=duration, attempts=attempt)

        duration = time.monotonic() - start
        logger.warning("chain=%s exhausted %d attempts: %s", self.name, max_attempts, last_exc)
        raise ChainError(
            f"{self.name}: failed after {max_attempts} attempts: {last_exc}",
            raw=raw,
            duration=duration,
            attempts=max_attempts,
            error_class=classify_error(last_exc),
        ) from last_exc

    def _wait(self, delay: float, cancel: CancelToken) -> None:
        if self._sleep is not None:
            cancel.check()
            self._sleep(delay)
            return
        cancel.wait(delay)
