"""Tests for context compaction (window and summary checkpoints)."""

from __future__ import annotations

import pytest

from roundtable.core.memory import (
    SUMMARY_KEEP_RECENT,
    MemoryCompactor,
    apply_window,
    summary_message,
)
from roundtable.core.types import MemoryStrategy, Role, SummaryCheckpoint, clamp_window_size
from roundtable.infra.database import Store

from conftest import FakeCompletion


def _fill(store: Store, session_id: str, count: int, start: int = 0) -> None:
    for i in range(start, start + count):
        role = Role.HUMAN if i % 5 == 0 else Role.AGENT
        store.add_message(session_id, role, f"message {i}",
                          agent_id=None if role == Role.HUMAN else "a0",
                          created_at=1000.0 + i)


# =============================================================================
# WINDOW
# =============================================================================

class TestWindow:

    @pytest.mark.asyncio
    async def test_window_keeps_last_n(self, store: Store) -> None:
        session = store.create_session("w", window_size=50)
        _fill(store, session.id, 60)
        history = store.load_messages(session.id)
        compactor = MemoryCompactor(store, FakeCompletion())

        context = await compactor.build_context(session, history)

        assert len(context) == 50
        assert context[0].content == "message 10"
        assert context[-1].content == "message 59"

    def test_window_is_idempotent(self, store: Store) -> None:
        session = store.create_session("w", window_size=20)
        _fill(store, session.id, 35)
        once = apply_window(store.load_messages(session.id), session.window_size)
        assert apply_window(once, session.window_size) == once

    def test_short_history_is_untouched(self, store: Store) -> None:
        session = store.create_session("w")
        _fill(store, session.id, 5)
        history = store.load_messages(session.id)
        assert apply_window(history, 50) == history

    def test_window_size_is_clamped(self, store: Store) -> None:
        assert clamp_window_size(3) == 10
        assert clamp_window_size(500) == 200
        assert store.create_session("w", window_size=1).window_size == 10


# =============================================================================
# SUMMARIZE
# =============================================================================

class TestSummarize:

    @pytest.mark.asyncio
    async def test_below_threshold_returns_history_without_calling_model(
            self, store: Store) -> None:
        session = store.create_session("s", memory_strategy=MemoryStrategy.SUMMARIZE)
        _fill(store, session.id, 40)
        completion = FakeCompletion()
        compactor = MemoryCompactor(store, completion)

        context = await compactor.build_context(session, store.load_messages(session.id))

        assert len(context) == 40
        assert completion.calls == []
        assert store.load_summaries(session.id) == []

    @pytest.mark.asyncio
    async def test_over_threshold_creates_checkpoint(self, store: Store) -> None:
        session = store.create_session("s", memory_strategy=MemoryStrategy.SUMMARIZE)
        _fill(store, session.id, 45)
        completion = FakeCompletion(["They agreed on a plan."])
        compactor = MemoryCompactor(store, completion, summary_model="test/summary")

        context = await compactor.build_context(session, store.load_messages(session.id),
                                                {"a0": "Alice"})

        assert len(context) == SUMMARY_KEEP_RECENT + 1
        assert context[0].role == Role.SYSTEM
        assert "They agreed on a plan." in context[0].content
        assert [m.content for m in context[1:]] == [f"message {i}" for i in range(30, 45)]

        checkpoints = store.load_summaries(session.id)
        assert len(checkpoints) == 1
        assert checkpoints[0].message_count == 30
        assert checkpoints[0].messages_from == 1000.0
        assert checkpoints[0].messages_to == 1029.0

        call = completion.calls[0]
        assert call["model"] == "test/summary"
        assert "Alice: message 1" in call["messages"][1]["content"]
        assert "message 30" not in call["messages"][1]["content"]

    @pytest.mark.asyncio
    async def test_checkpoints_do_not_overlap_and_render_oldest_first(
            self, store: Store) -> None:
        session = store.create_session("s", memory_strategy=MemoryStrategy.SUMMARIZE)
        completion = FakeCompletion(["FIRST SUMMARY", "SECOND SUMMARY"])
        compactor = MemoryCompactor(store, completion)

        _fill(store, session.id, 45)
        await compactor.build_context(session, store.load_messages(session.id))

        # 15 kept + 30 new = 45 unsummarised messages, over the threshold again.
        _fill(store, session.id, 30, start=45)
        context = await compactor.build_context(session, store.load_messages(session.id))

        checkpoints = store.load_summaries(session.id)
        assert len(checkpoints) == 2
        assert checkpoints[1].messages_from > checkpoints[0].messages_to
        assert checkpoints[1].messages_from == 1030.0
        # Only messages newer than the first checkpoint were summarised again.
        assert "message 29" not in completion.calls[1]["messages"][1]["content"]

        summary = context[0].content
        assert summary.index("FIRST SUMMARY") < summary.index("SECOND SUMMARY")
        assert len(context) == SUMMARY_KEEP_RECENT + 1

    @pytest.mark.asyncio
    async def test_existing_checkpoint_is_prepended_below_threshold(
            self, store: Store) -> None:
        session = store.create_session("s", memory_strategy=MemoryStrategy.SUMMARIZE)
        compactor = MemoryCompactor(store, FakeCompletion(["EARLIER"]))
        _fill(store, session.id, 45)
        await compactor.build_context(session, store.load_messages(session.id))
        _fill(store, session.id, 2, start=45)

        context = await compactor.build_context(session, store.load_messages(session.id))

        assert context[0].role == Role.SYSTEM
        assert "EARLIER" in context[0].content
        assert len(context) == 1 + 17

    @pytest.mark.asyncio
    async def test_message_sharing_timestamp_with_checkpoint_end_is_kept(
            self, store: Store) -> None:
        session = store.create_session("s", memory_strategy=MemoryStrategy.SUMMARIZE)
        for i in range(45):
            # Message 30 lands on the same timestamp as message 29.
            ts = 1029.0 if i == 30 else 1000.0 + i
            store.add_message(session.id, Role.AGENT, f"message {i}", agent_id="a0",
                              created_at=ts)
        compactor = MemoryCompactor(store, FakeCompletion(["S"]))

        first = await compactor.build_context(session, store.load_messages(session.id))
        second = await compactor.build_context(session, store.load_messages(session.id))

        checkpoint = store.load_summaries(session.id)[0]
        assert checkpoint.messages_to == 1029.0
        assert checkpoint.message_count == 30
        expected = [f"message {i}" for i in range(30, 45)]
        assert [m.content for m in first[1:]] == expected
        assert [m.content for m in second[1:]] == expected

    @pytest.mark.asyncio
    async def test_summarization_failure_degrades_to_recent_messages(
            self, store: Store) -> None:
        session = store.create_session("s", memory_strategy=MemoryStrategy.SUMMARIZE)
        _fill(store, session.id, 45)
        compactor = MemoryCompactor(store, FakeCompletion([RuntimeError("model down")]))

        context = await compactor.build_context(session, store.load_messages(session.id))

        assert len(context) == SUMMARY_KEEP_RECENT
        assert all(m.role != Role.SYSTEM for m in context)
        assert store.load_summaries(session.id) == []

    def test_summary_message_orders_checkpoints_by_covered_range(self) -> None:
        late = SummaryCheckpoint(id=1, session_id="s1", content="LATE",
                                 messages_from=2000.0, messages_to=2029.0, message_count=30)
        early = SummaryCheckpoint(id=2, session_id="s1", content="EARLY",
                                  messages_from=1000.0, messages_to=1029.0, message_count=30)

        msg = summary_message("s1", [late, early])

        assert msg.role == Role.SYSTEM
        assert msg.content.index("EARLY") < msg.content.index("LATE")
