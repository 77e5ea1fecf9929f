"""Tests for token budgets and cancellation."""

import threading

import pytest

from taskwing.budget import ContextBudget, estimate_tokens
from taskwing.cancellation import CancelToken
from taskwing.config import MAX_SAFE_CONTEXT_BUDGET
from taskwing.errors import BudgetExceededError, OperationCancelled


class TestEstimateTokens:
    """Tests for the four-characters-per-token estimate."""

    def test_empty(self):
        """Empty text costs nothing."""
        assert estimate_tokens("") == 0

    def test_rounds_up(self):
        """Partial tokens round up."""
        assert estimate_tokens("abc") == 1
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2


class TestContextBudget:
    """Tests for ContextBudget."""

    def test_reservations_up_to_total(self):
        """A reservation past the total fails and leaves usage unchanged."""
        budget = ContextBudget(100)
        budget.reserve(50)
        budget.reserve(50)
        with pytest.raises(BudgetExceededError) as exc_info:
            budget.reserve(1)

        assert exc_info.value.requested == 1
        assert budget.used() == 100
        assert budget.remaining() == 0
        assert budget.is_exhausted()

    def test_try_reserve(self):
        """try_reserve reports failure instead of raising."""
        budget = ContextBudget(10)
        assert budget.try_reserve(8)
        assert not budget.try_reserve(3)
        assert budget.used() == 8

    def test_safe_clamps(self):
        """safe() never exceeds the hard context cap."""
        assert ContextBudget.safe(1_000_000).total() == MAX_SAFE_CONTEXT_BUDGET
        assert ContextBudget.safe(5000).total() == 5000

    def test_concurrent_reservations(self):
        """Concurrent reservations never overshoot the total."""
        budget = ContextBudget(1000)
        successes = []

        def worker():
            for _ in range(100):
                if budget.try_reserve(3):
                    successes.append(1)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert budget.used() == len(successes) * 3
        assert budget.used() <= 1000


class TestCancelToken:
    """Tests for cooperative cancellation."""

    def test_check_after_cancel(self):
        """check() raises once cancelled."""
        token = CancelToken()
        token.check()
        token.cancel("stop")
        with pytest.raises(OperationCancelled, match="stop"):
            token.check()

    def test_deadline(self):
        """An expired deadline counts as cancelled."""
        token = CancelToken(timeout=0)
        assert token.cancelled
        with pytest.raises(OperationCancelled):
            token.check()

    def test_wait_wakes_on_cancel(self):
        """wait() returns early by raising when cancelled."""
        token = CancelToken()
        threading.Timer(0.05, token.cancel).start()
        with pytest.raises(OperationCancelled):
            token.wait(5)

    def test_timeout_for(self):
        """Timeouts are bounded by the remaining deadline."""
        assert CancelToken().timeout_for(30) == 30
        assert CancelToken(timeout=1).timeout_for(30) <= 1
