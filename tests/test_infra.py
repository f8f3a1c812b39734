"""Tests for the event bus, per-session resource pool and prompt loader."""

from __future__ import annotations

import asyncio

import pytest

from roundtable.infra import prompt_loader
from roundtable.infra.event_bus import EventBus
from roundtable.infra.resources import SessionResourcePool


# =============================================================================
# EventBus
# =============================================================================

class TestEventBus:

    @pytest.mark.asyncio
    async def test_failing_subscriber_does_not_affect_others(self) -> None:
        bus = EventBus()
        received = []

        def broken(_event) -> None:
            raise RuntimeError("subscriber bug")

        bus.subscribe("turn_end", broken)
        bus.subscribe("turn_end", received.append)
        bus.emit("turn_end", session_id="s1", content="hello")
        await bus.drain()

        assert [e.data["content"] for e in received] == ["hello"]

    @pytest.mark.asyncio
    async def test_wildcard_and_async_subscribers(self) -> None:
        bus = EventBus()
        seen = []

        async def record(event) -> None:
            seen.append(event.event_type)

        sub = bus.subscribe("*", record)
        bus.emit("turn_start", session_id="s1")
        bus.emit("conversation_paused", session_id="s1")
        await bus.drain()
        bus.unsubscribe(sub)
        bus.emit("turn_end", session_id="s1")
        await bus.drain()

        assert seen == ["turn_start", "conversation_paused"]

    def test_payload_and_history(self) -> None:
        bus = EventBus()
        bus.emit("turn_end", session_id="s1", content="a")
        bus.emit("turn_end", session_id="s2", content="b")
        bus.emit("error", session_id="s1", message="x")

        latest = bus.history(session_id="s1")
        assert [e.event_type for e in latest] == ["error", "turn_end"]
        assert latest[1].to_payload() == {"type": "turn_end",
                                          "data": {"session_id": "s1", "content": "a"}}
        assert len(bus.history(event_type="turn_end")) == 2


# =============================================================================
# SessionResourcePool
# =============================================================================

class TestSessionResourcePool:

    @pytest.mark.asyncio
    async def test_lazy_creation_and_reuse(self) -> None:
        created = []

        def factory() -> object:
            created.append(object())
            return created[-1]

        pool = SessionResourcePool(factory=factory, closer=None, idle_timeout=60)
        first = await pool.acquire("s1")
        second = await pool.acquire("s1")
        other = await pool.acquire("s2")

        assert first is second
        assert other is not first
        assert len(created) == 2
        await pool.close_all()
        assert len(pool) == 0

    @pytest.mark.asyncio
    async def test_idle_resource_is_closed(self) -> None:
        closed = []

        async def closer(resource) -> None:
            closed.append(resource)

        pool = SessionResourcePool(factory=lambda: "client", closer=closer,
                                   idle_timeout=0.05)
        await pool.acquire("s1")
        assert "s1" in pool

        await asyncio.sleep(0.2)

        assert "s1" not in pool
        assert closed == ["client"]

    @pytest.mark.asyncio
    async def test_use_restarts_idle_timer(self) -> None:
        pool = SessionResourcePool(factory=lambda: "client", closer=None, idle_timeout=0.15)
        await pool.acquire("s1")
        for _ in range(3):
            await asyncio.sleep(0.08)
            await pool.acquire("s1")
        assert "s1" in pool
        await pool.close_all()

    @pytest.mark.asyncio
    async def test_closer_failure_is_contained(self) -> None:
        def closer(_resource) -> None:
            raise OSError("already closed")

        pool = SessionResourcePool(factory=lambda: "client", closer=closer, idle_timeout=60)
        await pool.acquire("s1")
        await pool.close("s1")
        assert "s1" not in pool


# =============================================================================
# Prompt loader
# =============================================================================

class TestPromptLoader:

    def test_required_prompts_ship_with_package(self) -> None:
        prompt_loader.validate_all()

    def test_summarizer_prompt_is_formatted(self) -> None:
        text = prompt_loader.load("SUMMARIZER_SYSTEM.txt", max_words=500)
        assert "500 words" in text
        assert "{" not in text
