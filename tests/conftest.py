"""Shared fixtures for roundtable tests.

Provides a scripted fake completion backend and a fresh SQLite store per
test (seeded with the built-in tools).
"""

from __future__ import annotations

import inspect
import json
from typing import Any, Callable, Iterable, Optional, Union

import pytest

from roundtable.core.tool_schemas import BUILTIN_CAPABILITIES
from roundtable.core.types import Agent, LLMResponse, LLMToolCall, Message, Role
from roundtable.infra.database import Store
from roundtable.infra.event_bus import Event, EventBus


# =============================================================================
# Fake completion backend
# =============================================================================

Scripted = Union[LLMResponse, Exception, str]


class FakeCompletion:
    """In-memory stand-in for :class:`CompletionBackend`.

    Replies come either from a list (consumed in order, the last entry
    repeats) or from a ``responder(kwargs)`` callable which may be async.
    Exceptions in the script are raised instead of returned.
    """

    def __init__(self, script: Optional[Iterable[Scripted]] = None,
                 responder: Optional[Callable[[dict], Any]] = None) -> None:
        self._script = list(script or [])
        self._responder = responder
        self.calls: list[dict[str, Any]] = []

    async def complete(self, **kwargs: Any) -> LLMResponse:
        self.calls.append(kwargs)
        if self._responder is not None:
            item = self._responder(kwargs)
            if inspect.isawaitable(item):
                item = await item
        elif self._script:
            item = self._script.pop(0) if len(self._script) > 1 else self._script[0]
        else:
            item = "ok"
        if isinstance(item, Exception):
            raise item
        if isinstance(item, str):
            return LLMResponse(content=item)
        return item


def tool_response(name: str, args: Any = None, *, text: Optional[str] = None,
                  call_id: str = "call_1") -> LLMResponse:
    """An LLMResponse requesting a single tool call."""
    raw = args if isinstance(args, str) else json.dumps(args or {})
    return LLMResponse(
        content=text,
        tool_calls=[LLMToolCall(id=call_id, name=name, arguments=raw)],
        finish_reason="tool_calls",
    )


def make_message(idx: int, role: Role, content: str,
                 agent_id: Optional[str] = None) -> Message:
    return Message(id=idx, session_id="s1", role=role, content=content,
                   agent_id=agent_id, created_at=1000.0 + idx)


def make_agents(*names: str) -> list[Agent]:
    return [
        Agent(id=f"a{i}", session_id="s1", name=name, model="test/model",
              system_prompt=f"You are {name}.", order_index=i)
        for i, name in enumerate(names)
    ]


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def store(tmp_path) -> Store:
    s = Store(tmp_path / "roundtable.db")
    s.init_db()
    for cap in BUILTIN_CAPABILITIES:
        s.seed_builtin(cap)
    return s


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def events(bus: EventBus) -> list[Event]:
    """Every event emitted on ``bus``.  Call ``await bus.drain()`` before reading."""
    collected: list[Event] = []
    bus.subscribe("*", collected.append)
    return collected
