"""Multi-round tool-call loop for one speaking agent.

Each round sends the accumulated message list plus the agent's tool schemas
to the completion endpoint.  A plain-text reply ends the loop.  Requested
tool calls are processed one at a time, in the order the model listed them:

Pipeline per tool call
----------------------
1. Parse JSON arguments (malformed → ``{}``, logged, never fatal)
2. Emit ``tool_call`` and persist a TOOL_CALL message
3. Execute via the :class:`ToolExecutor` (failures → ``{"error": ...}``)
4. Emit ``tool_result`` and persist a TOOL_RESULT message
5. Append a ``tool`` message keyed by the originating call id

If a follow-up reply carries text *and* more tool calls, the text is saved
as an intermediate AGENT message right away.  After ``max_rounds`` tool
rounds one last request is made with tools disabled, so a turn makes at
most ``max_rounds + 1`` completion calls.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from roundtable import tools as tool_module
from roundtable.core.executor import ToolContext, ToolExecutor
from roundtable.core.tool_schemas import ADD_TOOL, capability_schema
from roundtable.core.types import (
    Agent,
    Capability,
    LLMResponse,
    LLMToolCall,
    Role,
    RunCancelled,
)
from roundtable.infra.database import Store, async_call
from roundtable.infra.event_bus import EventBus

logger = logging.getLogger(__name__)

MAX_TOOL_ROUNDS = 10

# Awaits a coroutine on behalf of the loop; the engine passes one that
# aborts when the run is cancelled.
Guard = Callable[[Awaitable[Any]], Awaitable[Any]]


async def _passthrough(aw: Awaitable[Any]) -> Any:
    return await aw


# ---------------------------------------------------------------------------
# Context & result dataclasses
# ---------------------------------------------------------------------------

@dataclass
class ToolLoopContext:
    """Collaborators and limits for one agent's tool loop."""

    session_id: str
    store: Store
    completion: Any                      # CompletionBackend-like: .complete(...)
    executor: ToolExecutor
    tool_context: ToolContext
    bus: Optional[EventBus] = None
    max_rounds: int = MAX_TOOL_ROUNDS
    max_tokens: int = 4096
    guard: Guard = _passthrough


@dataclass
class ToolCallOutcome:
    """Result of processing a single tool call."""

    tool_name: str
    args: dict
    result: Any
    content: str                                   # serialised result for messages
    failed: bool = False


def parse_arguments(raw: str, tool_name: str, session_id: str) -> dict:
    """Parse a tool-call argument payload; anything unusable becomes ``{}``."""
    if not raw or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        logger.warning("[%s] Malformed tool args for %s: %s (raw: %s)",
                       session_id, tool_name, exc, raw[:500])
        return {}
    if not isinstance(parsed, dict):
        logger.warning("[%s] Tool args for %s are not an object: %s",
                       session_id, tool_name, raw[:500])
        return {}
    return parsed


# ---------------------------------------------------------------------------
# Per-call pipeline
# ---------------------------------------------------------------------------

async def process_tool_call(tc: LLMToolCall, agent: Agent,
                            toolset: dict[str, Capability],
                            ctx: ToolLoopContext) -> ToolCallOutcome:
    name = tc.name
    args = parse_arguments(tc.arguments, name, ctx.session_id)

    # -- Step 1: announce and persist the call ----------------------
    if ctx.bus:
        ctx.bus.emit("tool_call", session_id=ctx.session_id, agent_id=agent.id,
                     agent_name=agent.name, tool_name=name, args=args)
    await async_call(
        ctx.store.add_message, ctx.session_id, Role.TOOL_CALL, json.dumps(args),
        agent_id=agent.id, tool_name=name, tool_args=args,
    )

    # -- Step 2: execute --------------------------------------------
    failed = False
    capability = toolset.get(name)
    if capability is None:
        result: Any = {"error": f'Tool "{name}" not found'}
        failed = True
        logger.warning("[%s] %s requested unknown tool %s", ctx.session_id, agent.name, name)
    else:
        try:
            result = await ctx.guard(
                ctx.executor.execute(name, args, ctx.tool_context, capability),
            )
        except RunCancelled:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.warning("[%s] Tool %s failed: %s", ctx.session_id, name, exc)
            result = {"error": str(exc) or type(exc).__name__}
            failed = True
    content = tool_module.result_to_text(result)

    # -- Step 3: announce and persist the result --------------------
    if ctx.bus:
        ctx.bus.emit("tool_result", session_id=ctx.session_id, agent_id=agent.id,
                     agent_name=agent.name, tool_name=name, result=result)
    await async_call(
        ctx.store.add_message, ctx.session_id, Role.TOOL_RESULT, content,
        agent_id=agent.id, tool_name=name,
    )
    logger.debug("[%s] Tool %s -> %s", ctx.session_id, name, content[:200])

    return ToolCallOutcome(
        tool_name=name,
        args=args,
        result=result,
        content=content,
        failed=failed,
    )


# ---------------------------------------------------------------------------
# Loop
# ---------------------------------------------------------------------------

def _installed(outcome: ToolCallOutcome) -> bool:
    return (outcome.tool_name == ADD_TOOL and not outcome.failed
            and isinstance(outcome.result, dict) and outcome.result.get("success") is True)


async def run_tool_loop(agent: Agent, messages: list[dict],
                        toolset: list[Capability],
                        ctx: ToolLoopContext) -> str:
    """Drive the request/tool-execution rounds and return the final text.

    *messages* is extended in place with assistant and tool messages.
    """
    by_name = {c.name: c for c in toolset}
    schemas = [capability_schema(c) for c in toolset] or None

    async def _call(with_tools: bool) -> LLMResponse:
        return await ctx.guard(ctx.completion.complete(
            model=agent.model,
            messages=messages,
            tools=schemas if with_tools else None,
            max_tokens=ctx.max_tokens,
        ))

    for round_no in range(1, ctx.max_rounds + 1):
        response = await _call(with_tools=True)
        if not response.tool_calls:
            return (response.content or "").strip()

        text = (response.content or "").strip()
        if round_no > 1 and text:
            intermediate = await async_call(
                ctx.store.add_message, ctx.session_id, Role.AGENT, text, agent_id=agent.id,
            )
            if ctx.bus:
                ctx.bus.emit("turn_end", session_id=ctx.session_id, agent_id=agent.id,
                             message_id=intermediate.id, content=text)

        logger.debug("[%s] %s requested tools (round %d): %s", ctx.session_id, agent.name,
                     round_no, [tc.name for tc in response.tool_calls])
        messages.append(response.assistant_message())
        for tc in response.tool_calls:
            outcome = await process_tool_call(tc, agent, by_name, ctx)
            messages.append({
                "role":         "tool",
                "tool_call_id": tc.id,
                "content":      outcome.content,
            })
            if _installed(outcome):
                # An approved proposal is callable for the rest of this turn.
                name = str(outcome.args.get("name") or "").strip()
                created = await async_call(ctx.store.get_capability, name)
                if created is not None and created.name not in by_name:
                    by_name[created.name] = created
                    schemas = [*(schemas or []), capability_schema(created)]

    logger.info("[%s] %s reached %d tool rounds, forcing a text response",
                ctx.session_id, agent.name, ctx.max_rounds)
    response = await _call(with_tools=False)
    return (response.content or "").strip()
