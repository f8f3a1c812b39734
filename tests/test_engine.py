"""Tests for the conversation engine run loop."""

from __future__ import annotations

import asyncio

import pytest

from roundtable.core.engine import (
    NO_SPEAKER_MESSAGE,
    ConversationEngine,
    EngineRegistry,
    format_context,
)
from roundtable.core.executor import ToolExecutor
from roundtable.core.registration import ApprovalBroker
from roundtable.core.types import (
    EngineConfig,
    Role,
    SessionBusyError,
    SessionStatus,
)
from roundtable.infra.database import Store
from roundtable.infra.event_bus import TERMINAL_EVENTS, EventBus

from conftest import FakeCompletion, make_agents, make_message, tool_response

FAST = EngineConfig(turn_pause=0, infinite_pause=0, slow_delay=0)


def _engine(store: Store, session_id: str, completion: FakeCompletion,
            bus: EventBus) -> ConversationEngine:
    return ConversationEngine(
        session_id,
        store=store,
        completion=completion,
        executor=ToolExecutor(store, timeout=5.0),
        bus=bus,
        config=FAST,
    )


def _terminal(events: list) -> list[str]:
    return [e.event_type for e in events if e.event_type in TERMINAL_EVENTS]


@pytest.fixture
def duo(store: Store) -> str:
    session = store.create_session("duo")
    store.add_agent(session.id, "Alice", "test/alice", "You are Alice.")
    store.add_agent(session.id, "Bob", "test/bob", "You are Bob.")
    return session.id


# =============================================================================
# Bounded runs
# =============================================================================

class TestRunTurns:

    @pytest.mark.asyncio
    async def test_rotation_persists_turns_and_pauses(
            self, store: Store, duo: str, bus: EventBus, events: list) -> None:
        completion = FakeCompletion(["Hi, Alice here.", "Bob here.", "Alice again."])
        engine = _engine(store, duo, completion, bus)

        await engine.run_turns(3)
        await bus.drain()

        spoken = [m for m in store.load_messages(duo) if m.role == Role.AGENT]
        names = {a.id: a.name for a in store.list_agents(duo)}
        assert [names[m.agent_id] for m in spoken] == ["Alice", "Bob", "Alice"]
        assert [c["model"] for c in completion.calls] == ["test/alice", "test/bob", "test/alice"]

        session = store.get_session(duo)
        assert session.current_turn_index == 3
        assert session.status == SessionStatus.PAUSED
        assert _terminal(events) == ["conversation_paused"]
        assert events[-1].event_type == "conversation_paused"
        assert [e.event_type for e in events].count("turn_start") == 3

    @pytest.mark.asyncio
    async def test_model_failure_emits_error_and_still_terminates(
            self, store: Store, duo: str, bus: EventBus, events: list) -> None:
        completion = FakeCompletion([RuntimeError("provider exploded")])
        engine = _engine(store, duo, completion, bus)

        await engine.run_turns(2)
        await bus.drain()

        errors = [e for e in events if e.event_type == "error"]
        assert len(errors) == 1
        assert errors[0].data["agent_id"] == store.list_agents(duo)[0].id
        assert "provider exploded" in errors[0].data["message"]
        assert _terminal(events) == ["conversation_paused"]
        assert store.get_session(duo).current_turn_index == 0
        assert not [m for m in store.load_messages(duo) if m.role == Role.AGENT]

    @pytest.mark.asyncio
    async def test_session_is_active_while_first_turn_runs(
            self, store: Store, duo: str, bus: EventBus) -> None:
        seen = []

        def responder(_kwargs: dict):
            seen.append(store.get_session(duo).status)
            return RuntimeError("provider exploded")

        engine = _engine(store, duo, FakeCompletion(responder=responder), bus)
        assert store.get_session(duo).status == SessionStatus.SETUP

        await engine.run_turns(1)

        assert seen == [SessionStatus.ACTIVE]
        assert store.get_session(duo).status == SessionStatus.PAUSED

    @pytest.mark.asyncio
    async def test_explicit_target_applies_to_first_turn(
            self, store: Store, bus: EventBus) -> None:
        session = store.create_session("directed", turn_order="DIRECTED")
        store.add_agent(session.id, "Alice", "m")
        bob = store.add_agent(session.id, "Bob", "m")
        engine = _engine(store, session.id, FakeCompletion(["reply"]), bus)

        await engine.run_turns(1, explicit_target="Bob")

        spoken = [m for m in store.load_messages(session.id) if m.role == Role.AGENT]
        assert [m.agent_id for m in spoken] == [bob.id]

    @pytest.mark.asyncio
    async def test_human_message_emits_turn_end_without_agent(
            self, store: Store, duo: str, bus: EventBus, events: list) -> None:
        engine = _engine(store, duo, FakeCompletion(), bus)
        msg = await engine.add_human_message("What should we build?")
        await bus.drain()

        assert msg.role == Role.HUMAN
        assert events[0].event_type == "turn_end"
        assert events[0].data["agent_id"] is None
        assert events[0].data["content"] == "What should we build?"


# =============================================================================
# Unbounded runs
# =============================================================================

class TestRunUntilCancelled:

    @pytest.mark.asyncio
    async def test_rest_request_ends_run_with_resting(
            self, store: Store, bus: EventBus, events: list) -> None:
        session = store.create_session("restful")
        store.add_agent(session.id, "Sleepy", "m", capabilities=["take_a_rest"])
        completion = FakeCompletion([
            tool_response("take_a_rest", {"reason": "done for now"}),
            "Good night.",
        ])
        engine = _engine(store, session.id, completion, bus)

        await engine.run_until_cancelled()
        await bus.drain()

        assert _terminal(events) == ["conversation_resting"]
        assert store.get_session(session.id).status == SessionStatus.PAUSED
        spoken = [m for m in store.load_messages(session.id) if m.role == Role.AGENT]
        assert [m.content for m in spoken] == ["Good night."]

    @pytest.mark.asyncio
    async def test_no_agents_reports_error_and_completes(
            self, store: Store, bus: EventBus, events: list) -> None:
        session = store.create_session("empty")
        engine = _engine(store, session.id, FakeCompletion(), bus)

        await engine.run_until_cancelled()
        await bus.drain()

        errors = [e for e in events if e.event_type == "error"]
        assert errors[0].data == {"session_id": session.id, "message": NO_SPEAKER_MESSAGE,
                                  "agent_id": None}
        assert _terminal(events) == ["conversation_complete"]
        assert store.get_session(session.id).status == SessionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_cancel_mid_turn_discards_turn(
            self, store: Store, duo: str, bus: EventBus, events: list) -> None:
        entered = asyncio.Event()

        async def responder(_kwargs: dict) -> str:
            entered.set()
            await asyncio.Event().wait()
            return "never"

        engine = _engine(store, duo, FakeCompletion(responder=responder), bus)
        run = asyncio.create_task(engine.run_until_cancelled())
        await asyncio.wait_for(entered.wait(), timeout=5)

        assert store.get_session(duo).status == SessionStatus.ACTIVE
        # A running session refuses agent edits and a second run.
        with pytest.raises(SessionBusyError):
            store.add_agent(duo, "Carol", "m")
        alice = store.list_agents(duo)[0]
        with pytest.raises(SessionBusyError):
            store.update_agent(alice.id, capabilities=["calculator"])
        with pytest.raises(SessionBusyError):
            store.delete_agent(alice.id)
        with pytest.raises(SessionBusyError):
            await engine.run_turns(1)

        engine.cancel()
        await asyncio.wait_for(run, timeout=5)
        await bus.drain()

        assert not engine.running
        assert store.get_session(duo).current_turn_index == 0
        assert not [m for m in store.load_messages(duo) if m.role == Role.AGENT]
        assert _terminal(events) == ["conversation_complete"]
        # Edits are accepted again once the run has ended.
        store.add_agent(duo, "Carol", "m")


# =============================================================================
# Capability approval during a turn
# =============================================================================

class TestApprovedCapability:

    @pytest.mark.asyncio
    async def test_approved_tool_is_callable_by_its_proposer(
            self, store: Store, bus: EventBus) -> None:
        session = store.create_session("builder")
        alice = store.add_agent(session.id, "Alice", "m")
        broker = ApprovalBroker(store, bus)
        completion = FakeCompletion([
            tool_response("add_tool", {
                "name": "greet",
                "description": "Greet someone",
                "parameters": {"type": "object",
                               "properties": {"name": {"type": "string"}}},
                "implementation": "return 'Hello, ' + params['name']",
            }, call_id="c1"),
            tool_response("greet", {"name": "Bob"}, call_id="c2"),
            "Greeted Bob.",
        ])
        engine = ConversationEngine(
            session.id, store=store, completion=completion,
            executor=ToolExecutor(store, timeout=5.0), bus=bus,
            approvals=broker, config=FAST,
        )

        run = asyncio.create_task(engine.run_turns(1))
        for _ in range(200):
            if broker.waiting:
                break
            await asyncio.sleep(0.01)
        await broker.resolve(broker.waiting[0], True)
        await asyncio.wait_for(run, timeout=5)

        # Offered from the very next request of the same turn.
        offered = [t["function"]["name"] for t in completion.calls[1]["tools"]]
        assert "greet" in offered
        results = [m for m in store.load_messages(session.id)
                   if m.role == Role.TOOL_RESULT and m.tool_name == "greet"]
        assert [m.content for m in results] == ["Hello, Bob"]
        # And kept for later turns.
        assert store.list_agents(session.id)[0].capabilities == ["greet"]
        assert store.get_agent(alice.id).capabilities == ["greet"]


# =============================================================================
# Registry
# =============================================================================

class TestEngineRegistry:

    @pytest.mark.asyncio
    async def test_busy_session_is_refused_and_cancel_stops_it(
            self, store: Store, duo: str, bus: EventBus) -> None:
        entered = asyncio.Event()

        async def responder(_kwargs: dict) -> str:
            entered.set()
            await asyncio.Event().wait()
            return "never"

        registry = EngineRegistry(
            store=store, completion=FakeCompletion(responder=responder),
            executor=ToolExecutor(store), bus=bus, config=FAST,
        )
        engine = registry.get(duo)
        run = asyncio.create_task(engine.run_turns(5))
        await asyncio.wait_for(entered.wait(), timeout=5)

        with pytest.raises(SessionBusyError):
            registry.get(duo)
        assert registry.active(duo) is engine

        assert registry.cancel(duo) is True
        await asyncio.wait_for(run, timeout=5)
        assert registry.active(duo) is None
        assert registry.get(duo) is not engine


# =============================================================================
# Context formatting
# =============================================================================

class TestFormatContext:

    def test_perspective_of_one_agent(self) -> None:
        alice, bob = make_agents("Alice", "Bob")
        history = [
            make_message(1, Role.HUMAN, "Topic: tabs or spaces?"),
            make_message(2, Role.AGENT, "Spaces.", alice.id),
            make_message(3, Role.AGENT, "Tabs.", bob.id),
            make_message(4, Role.SYSTEM, "Tool approved."),
        ]
        history.append(make_message(5, Role.TOOL_CALL, '{"q": 1}', bob.id))
        history[-1].tool_name = "search"

        out = format_context(alice, [alice, bob], history)

        assert out == [
            {"role": "system", "content": "You are Alice."},
            {"role": "user", "content": "[Human]: Topic: tabs or spaces?"},
            {"role": "assistant", "content": "Spaces."},
            {"role": "user", "content": "[Bob]: Tabs."},
            {"role": "system", "content": "Tool approved."},
            {"role": "system", "content": '[Tool Call - search]: {"q": 1}'},
        ]

    def test_single_agent_replays_own_messages_as_user(self) -> None:
        (solo,) = make_agents("Solo")
        history = [
            make_message(1, Role.AGENT, "First thought.", solo.id),
            make_message(2, Role.AGENT, "Second thought.", solo.id),
        ]
        out = format_context(solo, [solo], history)
        assert out[1:] == [
            {"role": "user", "content": "[previous_message_1]: First thought."},
            {"role": "user", "content": "[previous_message_2]: Second thought."},
        ]
