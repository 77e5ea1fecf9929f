"""Pytest configuration and fixtures for TaskWing tests."""

import json
import shutil
import tempfile
import threading
from pathlib import Path
from typing import Callable, Generator, List, Optional

import pytest

from taskwing.llm import ChatMessage, ToolCallingChatModel
from taskwing.report import get_metrics
from taskwing.storage import KnowledgeStore


class FakeChatModel(ToolCallingChatModel):
    """Scripted chat model.

    Replies come from ``handler(messages)`` when given, otherwise from the
    ``responses`` queue.  A reply may be a string, a ``ChatMessage`` or an
    exception instance, which is raised.
    """

    provider_name = "fake"

    def __init__(self, responses=None, handler: Optional[Callable] = None, tools: bool = True):
        super().__init__("fake-model")
        self.responses = list(responses or [])
        self.handler = handler
        self.tools = tools
        self.calls: List[List[ChatMessage]] = []
        self._lock = threading.Lock()

    def supports_tools(self) -> bool:
        return self.tools

    def generate(self, messages, cancel=None):
        return self._reply(messages)

    def generate_with_tools(self, messages, tools, cancel=None):
        return self._reply(messages)

    def _reply(self, messages):
        with self._lock:
            self.calls.append(list(messages))
            if self.handler is not None:
                reply = self.handler(messages)
            elif self.responses:
                reply = self.responses.pop(0)
            else:
                reply = "{}"
        if isinstance(reply, BaseException):
            raise reply
        if isinstance(reply, ChatMessage):
            return reply
        return ChatMessage.assistant(reply)


def prompt_text(messages) -> str:
    return "\n".join(m.content for m in messages)


# Scripted agent answers shared by agent and CLI tests.
FEATURES_JSON = json.dumps({
    "features": [{
        "name": "User registration",
        "description": "Users sign up with a name.",
        "confidence": 0.9,
        "evidence": [{"file_path": "README.md", "start_line": 7, "end_line": 7, "snippet": "- User registration"}],
    }],
    "relationships": [{"from": "User registration", "to": "CI pipeline", "relation": "depends_on", "reason": "tested"}],
})

WORKFLOWS_JSON = json.dumps({
    "workflows": [{"name": "CI pipeline", "trigger": "push", "steps": "1. run pytest", "source_file": "ci.yml"}],
    "constraints": [{"rule": "Tests must pass", "reason": "CI gate", "severity": "critical"}],
})

CODE_JSON = json.dumps({
    "decisions": [{
        "title": "SQLite user storage",
        "component": "pkg/service.py",
        "what": "Users live in SQLite",
        "why": "Zero setup",
        "tradeoffs": "Single writer",
        "confidence": "high",
        "debt_score": 0.8,
        "debt_reason": "Hard-coded path",
        "evidence": [{"file_path": "pkg/service.py", "start_line": 4, "end_line": 12}],
    }],
    "patterns": [{
        "name": "Service object",
        "context": "Business logic lives in service classes",
        "consequences": "Easy to test",
        "evidence": [{"file_path": "pkg/service.py", "start_line": 4}],
    }],
})


@pytest.fixture(autouse=True)
def _isolate_config(tmp_path_factory, monkeypatch):
    """Point the global config at a throwaway file and clear env overrides."""
    home = tmp_path_factory.mktemp("taskwing_home")
    monkeypatch.setattr("taskwing.config.CONFIG_FILE", home / "config.toml")
    for name in ("TASKWING_LLM_PROVIDER", "TASKWING_LLM_MODEL", "TASKWING_API_KEY"):
        monkeypatch.delenv(name, raising=False)
    get_metrics().reset()
    yield
    get_metrics().reset()


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    tmp = Path(tempfile.mkdtemp())
    yield tmp
    shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def sample_repo(temp_dir: Path) -> Path:
    """Small repository with docs, Python sources and a CI workflow."""
    repo = temp_dir / "sample"
    (repo / "pkg").mkdir(parents=True)
    (repo / "docs").mkdir()
    (repo / ".github" / "workflows").mkdir(parents=True)

    (repo / "README.md").write_text(
        "# Sample\n\nA sample service that stores users in SQLite.\n\n"
        "## Features\n\n- User registration\n- Token authentication\n",
        encoding="utf-8",
    )
    (repo / "docs" / "architecture.md").write_text(
        "# Architecture\n\nRequests flow through the auth middleware into the user service.\n",
        encoding="utf-8",
    )
    (repo / "main.py").write_text(
        '"""Entry point."""\n\n'
        "from pkg.service import UserService\n\n\n"
        "def main():\n"
        '    """Start the service."""\n'
        "    UserService().run()\n",
        encoding="utf-8",
    )
    (repo / "pkg" / "__init__.py").write_text("", encoding="utf-8")
    (repo / "pkg" / "service.py").write_text(
        '"""User service."""\n\n\n'
        "class UserService:\n"
        '    """Registers and authenticates users."""\n\n'
        "    def run(self):\n"
        "        return True\n\n"
        "    def register(self, name: str) -> dict:\n"
        '        """Create a user record."""\n'
        '        return {"name": name}\n\n'
        "    def _hash(self, value):\n"
        "        return value\n",
        encoding="utf-8",
    )
    (repo / ".github" / "workflows" / "ci.yml").write_text(
        "name: ci\non: [push]\njobs:\n  test:\n    runs-on: ubuntu-latest\n    steps:\n      - run: pytest\n",
        encoding="utf-8",
    )
    return repo


@pytest.fixture
def store(temp_dir: Path) -> Generator[KnowledgeStore, None, None]:
    """Knowledge store backed by a temporary database."""
    kb = KnowledgeStore(temp_dir / "kb" / "memory.db")
    yield kb
    kb.close()


@pytest.fixture
def fake_model() -> Callable[..., FakeChatModel]:
    """Factory for scripted chat models."""
    return FakeChatModel
