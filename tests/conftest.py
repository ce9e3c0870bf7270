"""
Core pytest configuration and fixtures for CodeMate testing.

This module provides shared test fixtures, configuration, and utilities
that support the pillar-based testing architecture. Nothing here touches
the network: sessions run against scripted or echoing inference servers.
"""

import asyncio
from typing import Any, Dict, List, Optional

import pytest
from codemate.errors import TransportError
from codemate.events import Recorder
from codemate.llm import LLM
from codemate.models import (
    ASSISTANT_ROLE,
    USER_ROLE,
    ChatMessage,
    Conversation,
    StreamChunk,
)
from codemate.rules import RuleStore
from codemate.settings import InMemory as InMemorySettings

# ===== FAKE PILLARS =====


class ScriptedLLM(LLM):
    """Inference server that replays a fixed list of chunks.

    ``hang_after`` makes the stream block forever before yielding that chunk
    index (``waiting`` is set once it blocks); ``fail_after`` raises ``error``
    (a ``TransportError`` by default) at that index instead. ``closed`` records whether the
    stream was shut down.
    """

    def __init__(
        self,
        chunks: Optional[List[StreamChunk]] = None,
        hang_after: Optional[int] = None,
        fail_after: Optional[int] = None,
        error: Optional[Exception] = None,
    ):
        self.chunks = chunks if chunks is not None else default_chunks()
        self.hang_after = hang_after
        self.fail_after = fail_after
        self.error = error
        self.calls: List[Dict[str, Any]] = []
        self.closed = False
        self.waiting = asyncio.Event()
        self._model = "scripted"

    @property
    def model(self) -> str:
        return self._model

    def update_config(self, **changes):
        if changes.get("model"):
            self._model = changes["model"]

    async def stream(self, prompt, *, system=None, context=None):
        self.calls.append(
            {"prompt": prompt, "system": system, "context": list(context) if context else None}
        )
        self.closed = False
        try:
            for i, chunk in enumerate(self.chunks):
                if self.hang_after == i:
                    self.waiting.set()
                    await asyncio.Event().wait()
                if self.fail_after == i:
                    raise self.error or TransportError("connection refused")
                await asyncio.sleep(0)
                yield chunk
        finally:
            self.closed = True

    async def generate(self, prompt, *, system=None, context=None):
        text = ""
        last_context = None
        async for chunk in self.stream(prompt, system=system, context=context):
            text += chunk.text or ""
            last_context = chunk.context or last_context
        return StreamChunk(text=text, context=last_context, done=True)

    async def list_models(self):
        return [self._model]

    async def model_info(self, name=None):
        return {"name": name or self._model}


def default_chunks() -> List[StreamChunk]:
    return [
        StreamChunk(text="Hello"),
        StreamChunk(text=" world"),
        StreamChunk(context=[1, 2, 3], done=True),
    ]


# ===== TEST DATA FIXTURES =====


@pytest.fixture
def sample_messages() -> List[ChatMessage]:
    """Sample chat messages for testing."""
    return [
        ChatMessage(role=USER_ROLE, content="How do I reverse a list in Python?"),
        ChatMessage(
            role=ASSISTANT_ROLE,
            content="Use `items.reverse()` in place, or `items[::-1]` for a copy.",
        ),
        ChatMessage(role=USER_ROLE, content="And a string?"),
        ChatMessage(role=ASSISTANT_ROLE, content="Slicing works the same: `text[::-1]`."),
    ]


@pytest.fixture
def sample_conversation(sample_messages) -> Conversation:
    """Sample conversation with a context blob."""
    return Conversation(
        id="conv-1700000000000-abc123",
        name="Reversing things",
        messages=sample_messages,
        context=[101, 202, 303, 404],
        model="mistral",
        last_context_size=4,
    )


# ===== PILLAR FIXTURES =====


@pytest.fixture
def scripted_llm() -> ScriptedLLM:
    return ScriptedLLM()


@pytest.fixture
def make_llm():
    """Factory for scripted inference servers with custom behaviour."""
    return ScriptedLLM


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def memory_settings() -> InMemorySettings:
    return InMemorySettings()


@pytest.fixture
def rule_store(memory_settings) -> RuleStore:
    return RuleStore(memory_settings)


@pytest.fixture
def chats_dir(tmp_path):
    """Directory for file-based conversation storage."""
    return tmp_path / "chats"


# ===== APP FIXTURES =====


@pytest.fixture
def test_app():
    """
    Provides a CodeMate app instance with simple, predictable pillars.

    Ideal for tests that need the whole orchestrator but must avoid the
    filesystem and a real inference server.
    """
    from codemate import CodeMate
    from codemate.llm import Echo
    from codemate.settings import InMemory
    from codemate.store import InMemory as InMemoryStore

    return CodeMate(llm=Echo(), store=InMemoryStore(), settings=InMemory(), events=Recorder())


# ===== CONFIGURATION =====


def pytest_configure(config):
    """Pytest configuration."""
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
    config.addinivalue_line("markers", "slow: marks tests as slow-running")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on location."""
    for item in items:
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
