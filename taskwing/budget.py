"""Thread-safe token accounting for LLM context windows."""

from __future__ import annotations

import math
import threading

from .config import MAX_SAFE_CONTEXT_BUDGET
from .errors import BudgetExceededError


def estimate_tokens(text: str) -> int:
    """Rough token estimate: four characters per token, rounded up."""
    if not text:
        return 0
    return math.ceil(len(text) / 4)


class ContextBudget:
    """Fixed-capacity token budget.

    ``reserve`` either takes the whole request or nothing, so ``used()`` is
    always the sum of successful reservations.
    """

    def __init__(self, total_tokens: int):
        self._lock = threading.Lock()
        self._total = max(0, int(total_tokens))
        self._used = 0

    @classmethod
    def safe(cls, requested_tokens: int) -> "ContextBudget":
        """Budget clamped to :data:`MAX_SAFE_CONTEXT_BUDGET`."""
        return cls(min(int(requested_tokens), MAX_SAFE_CONTEXT_BUDGET))

    def reserve(self, tokens: int) -> None:
        with self._lock:
            if self._used + tokens > self._total:
                raise BudgetExceededError(tokens, self._used, self._total)
            self._used += tokens

    def try_reserve(self, tokens: int) -> bool:
        try:
            self.reserve(tokens)
        except BudgetExceededError:
            return False
        return True

    def remaining(self) -> int:
        with self._lock:
            return self._total - self._used

    def used(self) -> int:
        with self._lock:
            return self._used

    def total(self) -> int:
        return self._total

    def is_exhausted(self) -> bool:
        return self.remaining() <= 0

    def __repr__(self) -> str:
        return f"ContextBudget(used={self.used()}, total={self._total})"
