"""
Conversation Engine

Owns one session's run loop: picks a speaker, builds that speaker's bounded
context, runs the tool-call loop, persists the result and emits progress
events.  One engine processes its session strictly sequentially; separate
sessions run as separate engines sharing only the store, the capability
registry and the event bus.

Public API
----------
  ConversationEngine.run_turns(n, explicit_target)  -> None
  ConversationEngine.run_until_cancelled()          -> None
  ConversationEngine.next_turn(explicit_target)     -> Message | None
  ConversationEngine.add_human_message(content)     -> Message
  ConversationEngine.cancel()

Every run ends with exactly one terminal event: ``conversation_resting``
when an agent asked for a rest, otherwise ``conversation_paused``
(``run_turns``) or ``conversation_complete`` (``run_until_cancelled``).
"""

import asyncio
import logging
from dataclasses import replace
from pathlib import Path
from typing import Any, Awaitable, Optional

from roundtable import tools as tool_module
from roundtable.core.executor import ToolContext, ToolExecutor
from roundtable.core.memory import MemoryCompactor
from roundtable.core.registration import ApprovalBroker
from roundtable.core.tool_loop import ToolLoopContext, run_tool_loop
from roundtable.core.tool_schemas import ADD_TOOL
from roundtable.core.turn_selector import select_speaker
from roundtable.core.types import (
    Agent,
    Capability,
    EngineConfig,
    Message,
    Role,
    RunCancelled,
    SessionBusyError,
    SessionStatus,
)
from roundtable.infra.database import Store, async_call
from roundtable.infra.event_bus import EventBus

logger = logging.getLogger(__name__)

NO_SPEAKER_MESSAGE = "No agent available to speak"
ROUTING_LOOKBACK = 40


# ---------------------------------------------------------------------------
# Per-agent context formatting
# ---------------------------------------------------------------------------

def format_context(agent: Agent, agents: list[Agent],
                   history: list[Message]) -> list[dict]:
    """Render stored messages as the chat a specific agent sees.

    The agent's own messages become ``assistant`` turns; everybody else
    speaks as ``user`` with a ``[Name]:`` prefix.  Tool traffic and system
    notes are ``system`` messages.  In a single-agent session without
    human input, the agent's earlier messages are replayed as numbered
    ``user`` messages so the exchange keeps alternating.
    """
    names = {a.id: a.name for a in agents}
    solo = len(agents) == 1 and not any(m.role == Role.HUMAN for m in history)

    out: list[dict] = []
    if agent.system_prompt:
        out.append({"role": "system", "content": agent.system_prompt})

    own_count = 0
    for m in history:
        if m.role == Role.SYSTEM:
            out.append({"role": "system", "content": m.content})
        elif m.role == Role.TOOL_CALL:
            out.append({"role": "system", "content": f"[Tool Call - {m.tool_name}]: {m.content}"})
        elif m.role == Role.TOOL_RESULT:
            out.append({"role": "system", "content": f"[Tool Result - {m.tool_name}]: {m.content}"})
        elif m.role == Role.HUMAN:
            out.append({"role": "user", "content": f"[Human]: {m.content}"})
        elif m.agent_id == agent.id:
            if solo:
                own_count += 1
                out.append({"role": "user",
                            "content": f"[previous_message_{own_count}]: {m.content}"})
            else:
                out.append({"role": "assistant", "content": m.content})
        else:
            out.append({"role": "user",
                        "content": f"[{names.get(m.agent_id, 'Unknown')}]: {m.content}"})
    return out


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class ConversationEngine:
    """Run loop for a single session."""

    def __init__(self, session_id: str, *, store: Store, completion: Any,
                 executor: ToolExecutor,
                 bus: Optional[EventBus] = None,
                 approvals: Optional[ApprovalBroker] = None,
                 compactor: Optional[MemoryCompactor] = None,
                 router: Any = None,
                 config: Optional[EngineConfig] = None,
                 scratchpad_path: Path = tool_module.DEFAULT_SCRATCHPAD) -> None:
        self._session_id = session_id
        self._store = store
        self._completion = completion
        self._executor = executor
        self._bus = bus
        self._approvals = approvals
        self._compactor = compactor or MemoryCompactor(store, completion)
        self._router = router if router is not None else completion
        self._cfg = config or EngineConfig()
        self._scratchpad_path = scratchpad_path
        self._cancel = asyncio.Event()
        self._rest_requested = False
        self._running = False

    # ------------------------------------------------------------------
    # Public
    # ------------------------------------------------------------------

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def running(self) -> bool:
        return self._running

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    @property
    def rest_requested(self) -> bool:
        return self._rest_requested

    def cancel(self) -> None:
        """Raise the cooperative cancellation signal."""
        if not self._cancel.is_set():
            logger.info("[%s] Cancellation requested", self._session_id)
        self._cancel.set()

    def request_rest(self) -> None:
        self._rest_requested = True

    async def add_human_message(self, content: str) -> Message:
        msg = await async_call(self._store.add_message, self._session_id, Role.HUMAN, content)
        self._emit("turn_end", agent_id=None, message_id=msg.id, content=content)
        return msg

    async def run_turns(self, n: int, explicit_target: Optional[str] = None) -> None:
        """Run up to *n* turns; the target applies to the first turn only."""
        terminal = "conversation_paused"
        self._begin_run()
        try:
            await async_call(self._store.set_session_status, self._session_id,
                             SessionStatus.ACTIVE)
            for i in range(n):
                if self.cancelled:
                    break
                msg = await self.next_turn(explicit_target if i == 0 else None)
                if msg is None:
                    break
                if self._rest_requested:
                    terminal = "conversation_resting"
                    break
                if i < n - 1:
                    await self._pause(self._cfg.turn_pause)
        except RunCancelled:
            logger.info("[%s] Run cancelled", self._session_id)
        finally:
            await self._end_run(terminal, SessionStatus.PAUSED)

    async def run_until_cancelled(self) -> None:
        """Run turns until cancelled, a turn fails, or an agent asks for a rest."""
        terminal = "conversation_complete"
        status = SessionStatus.COMPLETED
        self._begin_run()
        try:
            await async_call(self._store.set_session_status, self._session_id,
                             SessionStatus.ACTIVE)
            while not self.cancelled:
                msg = await self.next_turn()
                if msg is None:
                    break
                if self._rest_requested:
                    terminal, status = "conversation_resting", SessionStatus.PAUSED
                    break
                await self._pause(self._cfg.infinite_pause)
        except RunCancelled:
            logger.info("[%s] Run cancelled", self._session_id)
        finally:
            await self._end_run(terminal, status)

    async def next_turn(self, explicit_target: Optional[str] = None) -> Optional[Message]:
        """Execute one turn.

        Returns the persisted AGENT message, or None when no speaker was
        available or the model call failed (an ``error`` event has been
        emitted).  Raises :class:`RunCancelled` when cancelled; a cancelled
        turn persists no final message and leaves the counter untouched.
        """
        session = await async_call(self._store.get_session, self._session_id)
        if session.is_slow:
            await self._pause(self._cfg.slow_delay)
        self._check_cancelled()

        agents = await async_call(self._store.list_agents, self._session_id)
        recent = await async_call(self._store.load_messages, self._session_id,
                                  limit=ROUTING_LOOKBACK)
        speaker = await self.guard(
            select_speaker(session, agents, recent, explicit_target, router=self._router),
        )
        if speaker is None:
            logger.warning("[%s] %s", self._session_id, NO_SPEAKER_MESSAGE)
            self._emit("error", message=NO_SPEAKER_MESSAGE, agent_id=None)
            return None

        self._emit("turn_start", agent_id=speaker.id, agent_name=speaker.name,
                   turn_index=session.current_turn_index)
        logger.info("[%s] Turn %d: %s", self._session_id, session.current_turn_index, speaker.name)

        try:
            history = await async_call(self._store.load_messages, self._session_id)
            context = await self.guard(self._compactor.build_context(
                session, history, {a.id: a.name for a in agents},
            ))
            self._check_cancelled()

            messages = format_context(speaker, agents, context)
            toolset = await self._toolset(speaker)
            loop_ctx = ToolLoopContext(
                session_id=self._session_id,
                store=self._store,
                completion=self._completion,
                executor=self._executor,
                tool_context=ToolContext(
                    session_id=self._session_id,
                    agent_id=speaker.id,
                    agent_name=speaker.name,
                    resources=self._executor.resources,
                    approvals=self._approvals,
                    scratchpad_path=self._scratchpad_path,
                    request_rest=self.request_rest,
                ),
                bus=self._bus,
                max_rounds=self._cfg.max_tool_rounds,
                max_tokens=self._cfg.max_tokens,
                guard=self.guard,
            )
            final = await run_tool_loop(speaker, messages, toolset, loop_ctx)
            self._check_cancelled()

            msg = await async_call(self._store.complete_turn, self._session_id, speaker.id, final)
        except RunCancelled:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.exception("[%s] Turn failed for agent %s", self._session_id, speaker.name)
            self._emit("error", message=str(exc) or type(exc).__name__, agent_id=speaker.id)
            return None

        self._emit("turn_end", agent_id=speaker.id, message_id=msg.id, content=final)
        return msg

    async def guard(self, aw: Awaitable[Any]) -> Any:
        """Await *aw*, aborting with :class:`RunCancelled` if the run is cancelled."""
        if self.cancelled:
            if asyncio.iscoroutine(aw):
                aw.close()
            raise RunCancelled()
        task = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(self._cancel.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()
        if task.done():
            return task.result()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise RunCancelled()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _emit(self, event_type: str, **data: Any) -> None:
        if self._bus:
            self._bus.emit(event_type, session_id=self._session_id, **data)

    def _check_cancelled(self) -> None:
        if self.cancelled:
            raise RunCancelled()

    async def _pause(self, seconds: float) -> None:
        """Sleep for *seconds*, returning early if the run is cancelled."""
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._cancel.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _toolset(self, agent: Agent) -> list[Capability]:
        names = sorted(set(agent.capabilities) | {ADD_TOOL})
        found = await async_call(self._store.list_capabilities, names)
        missing = set(names) - {c.name for c in found}
        if missing:
            logger.warning("[%s] %s references unknown tools: %s",
                           self._session_id, agent.name, ", ".join(sorted(missing)))
        return found

    def _begin_run(self) -> None:
        if self._running:
            raise SessionBusyError(f"Session {self._session_id} is already running")
        self._running = True
        self._rest_requested = False
        self._store.hold_session(self._session_id)

    async def _end_run(self, terminal: str, status: SessionStatus) -> None:
        self._running = False
        self._store.release_session(self._session_id)
        try:
            await async_call(self._store.set_session_status, self._session_id, status)
        except Exception:  # noqa: BLE001
            logger.exception("[%s] Could not update session status", self._session_id)
        self._emit(terminal)
        logger.info("[%s] Run ended: %s", self._session_id, terminal)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class EngineRegistry:
    """One engine per session, with the shared collaborators injected once."""

    def __init__(self, *, store: Store, completion: Any, executor: ToolExecutor,
                 bus: Optional[EventBus] = None,
                 approvals: Optional[ApprovalBroker] = None,
                 compactor: Optional[MemoryCompactor] = None,
                 router: Any = None,
                 config: Optional[EngineConfig] = None,
                 scratchpad_path: Path = tool_module.DEFAULT_SCRATCHPAD) -> None:
        self._shared = dict(store=store, completion=completion, executor=executor,
                            bus=bus, approvals=approvals, compactor=compactor,
                            router=router, scratchpad_path=scratchpad_path)
        self._config = config or EngineConfig()
        self._engines: dict[str, ConversationEngine] = {}

    def get(self, session_id: str) -> ConversationEngine:
        """Return the idle engine for *session_id*, creating a fresh one if needed.

        A finished engine is replaced so every run starts with a clear
        cancellation signal.  Raises :class:`SessionBusyError` while a run
        is in progress.
        """
        engine = self._engines.get(session_id)
        if engine is not None and engine.running:
            raise SessionBusyError(f"Session {session_id} is already running")
        engine = ConversationEngine(session_id, config=replace(self._config), **self._shared)
        self._engines[session_id] = engine
        return engine

    def active(self, session_id: str) -> Optional[ConversationEngine]:
        engine = self._engines.get(session_id)
        return engine if engine is not None and engine.running else None

    def cancel(self, session_id: str) -> bool:
        engine = self.active(session_id)
        if engine is None:
            return False
        engine.cancel()
        return True

    def cancel_all(self) -> None:
        for engine in self._engines.values():
            if engine.running:
                engine.cancel()
