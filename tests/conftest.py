"""
Pytest configuration and shared fixtures for nanoserve tests.

This module provides:
- FakeGenerator, a scripted Generator backend that records every call
- Session config and master factories built on top of it
"""

import asyncio
import os
from typing import Callable, List, Optional, Sequence

import pytest

from nanoserve.config import SessionConfig
from nanoserve.engine.master import Master
from nanoserve.model.base import Generator, Message, Token

# Force CPU-only testing by disabling CUDA
os.environ["CUDA_VISIBLE_DEVICES"] = ""


class FakeGenerator(Generator):
    """Generator that replays a fixed script of token texts.

    Script items:
    - str: a token with that text
    - None: an end-of-stream token
    - Exception instance: raised from next_token

    Indices past the end of the script produce "t<index>". The script is
    replayed from the start after every reset, so the backend is deterministic.
    """

    def __init__(self, config: SessionConfig, script: Sequence = ("A", "B")):
        self.config = config
        self.script = list(script)
        self.events: List[tuple] = []
        self.messages: List[Message] = []
        self.rejected_contents = set()
        self.reset_failure: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None
        self._generated = 0

    @classmethod
    async def load(cls, config: SessionConfig) -> "FakeGenerator":
        return cls(config)

    def add_message(self, message: Message) -> None:
        if message.content in self.rejected_contents:
            raise ValueError(f"rejected message: {message.content}")
        self.events.append(("add_message", message.role.value, message.content))
        self.messages.append(message)

    def reset(self) -> None:
        if self.reset_failure is not None:
            raise self.reset_failure
        self.events.append(("reset",))
        self.messages.clear()
        self._generated = 0

    async def next_token(self, index: int) -> Token:
        self.events.append(("next_token", index))
        if self.gate is not None:
            await self.gate.wait()
        await asyncio.sleep(0)

        item = self.script[index] if index < len(self.script) else f"t{index}"
        if isinstance(item, Exception):
            raise item
        self._generated += 1
        if item is None:
            return Token.end_of_stream(index)
        return Token(index, item)

    def generated_tokens(self) -> int:
        return self._generated

    def token_requests(self) -> List[int]:
        return [event[1] for event in self.events if event[0] == "next_token"]


@pytest.fixture
def fake_generator_cls():
    """The FakeGenerator class, for tests that need to subclass or register it."""
    return FakeGenerator


@pytest.fixture
def session_config() -> SessionConfig:
    """A small local-mode configuration."""
    return SessionConfig(
        system_prompt="You are terse.",
        prompt="Hello",
        sample_len=3,
    )


@pytest.fixture
def make_master(session_config) -> Callable[..., Master]:
    """
    Build a master around a FakeGenerator.

    Example:
        def test_something(make_master):
            master = make_master(["A", None], sample_len=5)
    """
    def _make(script: Sequence = ("A", "B"), **overrides) -> Master:
        config = SessionConfig.from_dict({**session_config.to_dict(), **overrides})
        return Master(config, FakeGenerator(config, script))

    return _make


@pytest.fixture
def recording_sink() -> List[str]:
    """A list usable as a sink through its append method."""
    return []
