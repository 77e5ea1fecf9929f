"""Exception hierarchy shared by every TaskWing component."""

from __future__ import annotations

from typing import Optional


class TaskWingError(Exception):
    """Base class for all TaskWing errors."""


# ---------------------------------------------------------------
# Budget
# ---------------------------------------------------------------

class BudgetExceededError(TaskWingError):
    """A reservation would push the budget past its total."""

    def __init__(self, requested: int, used: int, total: int):
        self.requested = requested
        self.used = used
        self.total = total
        super().__init__(
            f"context budget exceeded: requested {requested} tokens, "
            f"used {used} of {total}"
        )


class BudgetMissingError(TaskWingError):
    """A budget-gated gatherer was invoked without a budget."""


# ---------------------------------------------------------------
# Tools
# ---------------------------------------------------------------

class ToolInputError(TaskWingError):
    """Invalid arguments passed to a ReAct tool."""


class PathTraversalError(ToolInputError):
    def __init__(self, path: str):
        self.path = path
        super().__init__(f"path traversal not allowed: {path}")


class CommandNotAllowedError(ToolInputError):
    def __init__(self, command: str, allowed):
        self.command = command
        super().__init__(f"command '{command}' not allowed. Allowed: {sorted(allowed)}")


# ---------------------------------------------------------------
# LLM
# ---------------------------------------------------------------

class LLMError(TaskWingError):
    """Failure talking to a model provider."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class RateLimitError(LLMError):
    pass


class AuthenticationError(LLMError):
    pass


class ModelNotFoundError(LLMError):
    pass


class LLMTimeoutError(LLMError):
    pass


class LLMNetworkError(LLMError):
    pass


class ToolCallingNotSupportedError(LLMError):
    pass


# ---------------------------------------------------------------
# Chain
# ---------------------------------------------------------------

class ChainParseError(TaskWingError):
    """Model output could not be parsed into the expected JSON shape."""

    def __init__(self, message: str, raw: str = ""):
        self.raw = raw
        super().__init__(message)


class ChainError(TaskWingError):
    """A chain invocation failed permanently or ran out of attempts."""

    def __init__(
        self,
        message: str,
        raw: str = "",
        duration: float = 0.0,
        attempts: int = 0,
        error_class: str = "unknown",
    ):
        self.raw = raw
        self.duration = duration
        self.attempts = attempts
        self.error_class = error_class
        super().__init__(message)


# ---------------------------------------------------------------
# Runtime
# ---------------------------------------------------------------

class OperationCancelled(TaskWingError):
    """Cooperative cancellation or deadline observed."""


class StoreError(TaskWingError):
    """Knowledge store integrity violation."""


class ChunkingError(TaskWingError):
    """No chunkable source files were found."""


class AgentError(TaskWingError):
    """Aggregate or diagnostic failure reported by an agent."""
