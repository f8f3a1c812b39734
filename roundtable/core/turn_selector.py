"""
Turn Selector — decides who speaks next.

Strategies
----------
FIXED_ROTATION  agents ordered by ``order_index``; the speaker is
                ``agents[current_turn_index % N]``.
DIRECTED        an explicit target (agent id or name) when it resolves,
                otherwise FIXED_ROTATION.
MODEL_ROUTED    direct address in the latest message wins; otherwise the
                last speaker is excluded and a routing model picks among the
                remaining candidates, falling back to the candidate with the
                fewest turns.

A single-agent session always gets that agent without consulting any
strategy (and never calls the routing model).
"""

import logging
import re
from typing import Optional

from roundtable.core.types import Agent, Message, Role, Session, TurnOrder
from roundtable.infra import prompt_loader

logger = logging.getLogger(__name__)

ROUTER_TRANSCRIPT_MESSAGES = 20
ROUTER_MESSAGE_CHARS = 400
ROUTER_PERSONA_CHARS = 500
ROUTER_MAX_TOKENS = 30
ROUTER_TEMPERATURE = 0.1


# ---------------------------------------------------------------------------
# Fixed rotation / directed
# ---------------------------------------------------------------------------

def rotation_order(agents: list[Agent]) -> list[Agent]:
    return sorted(agents, key=lambda a: a.order_index)


def select_rotation(agents: list[Agent], turn_index: int) -> Agent:
    ordered = rotation_order(agents)
    return ordered[turn_index % len(ordered)]


def resolve_target(agents: list[Agent], target: Optional[str]) -> Optional[Agent]:
    if not target:
        return None
    for agent in agents:
        if agent.id == target:
            return agent
    lowered = target.strip().lower()
    for agent in agents:
        if agent.name.lower() == lowered:
            return agent
    return None


# ---------------------------------------------------------------------------
# Model routing helpers
# ---------------------------------------------------------------------------

def _addresses(content: str, name: str) -> bool:
    """Heuristic direct-address check on lower-cased *content*."""
    n = re.escape(name.lower())
    return bool(
        re.search(rf"@{n}(?!\w)", content)
        or re.search(rf"(?<!\w)hey,?\s+{n}(?!\w)", content)
        or re.search(rf"(?<!\w){n},(\s|$)", content)
    )


def find_direct_address(agents: list[Agent], messages: list[Message]) -> Optional[Agent]:
    """Return the agent named in the latest AGENT/HUMAN message, if any.

    The author of that message is never considered addressed by it.
    """
    last = next(
        (m for m in reversed(messages) if m.role in (Role.AGENT, Role.HUMAN)),
        None,
    )
    if last is None:
        return None
    content = last.content.lower()
    for agent in agents:
        if agent.id != last.agent_id and _addresses(content, agent.name):
            return agent
    return None


def last_speaker_id(messages: list[Message]) -> Optional[str]:
    last = next((m for m in reversed(messages) if m.role == Role.AGENT), None)
    return last.agent_id if last else None


def turn_counts(agents: list[Agent], messages: list[Message]) -> dict[str, int]:
    """Spoken AGENT messages per agent id."""
    counts = {a.id: 0 for a in agents}
    for m in messages:
        if m.role == Role.AGENT and m.agent_id in counts:
            counts[m.agent_id] += 1
    return counts


def least_turns(candidates: list[Agent], counts: dict[str, int]) -> Agent:
    # min() keeps the first of equal elements, so ties resolve by list order.
    return min(candidates, key=lambda a: counts.get(a.id, 0))


def match_candidate(reply: str, candidates: list[Agent]) -> Optional[Agent]:
    cleaned = reply.strip().strip("\"'").strip()
    for agent in candidates:
        if agent.name == cleaned:
            return agent
    lowered = cleaned.lower()
    for agent in candidates:
        if agent.name.lower() == lowered:
            return agent
    for agent in candidates:
        if agent.name.lower() in lowered:
            return agent
    return None


def build_router_messages(candidates: list[Agent], agents: list[Agent],
                          messages: list[Message], counts: dict[str, int]) -> list[dict]:
    names = {a.id: a.name for a in agents}
    profiles = []
    for a in candidates:
        line = f'- "{a.name}" — {a.system_prompt[:ROUTER_PERSONA_CHARS]}'
        if a.capabilities:
            line += f"\n  Tools: {', '.join(a.capabilities)}"
        profiles.append(line)

    conversable = [m for m in messages if m.role in (Role.HUMAN, Role.AGENT)]
    transcript = "\n".join(
        f"[{'Human' if m.role == Role.HUMAN else names.get(m.agent_id, 'Unknown')}]: "
        f"{m.content[:ROUTER_MESSAGE_CHARS]}"
        for m in conversable[-ROUTER_TRANSCRIPT_MESSAGES:]
    )
    spoken = ", ".join(f"{names[aid]}: {n}" for aid, n in counts.items() if n) or "none yet"

    system = prompt_loader.load(
        "ROUTER_SYSTEM.txt",
        profiles="\n".join(profiles),
        turn_counts=spoken,
        names=", ".join(f'"{a.name}"' for a in candidates),
    )
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": transcript or "The conversation is just starting."},
    ]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

async def select_routed(session: Session, agents: list[Agent],
                        messages: list[Message], router) -> Agent:
    addressed = find_direct_address(agents, messages)
    if addressed is not None:
        logger.debug("[%s] %s was addressed directly", session.id, addressed.name)
        return addressed

    previous = last_speaker_id(messages)
    candidates = [a for a in agents if a.id != previous] or list(agents)
    if len(candidates) == 1:
        return candidates[0]

    counts = turn_counts(agents, messages)
    if router is None:
        return least_turns(candidates, counts)

    try:
        response = await router.complete(
            model=session.router_model,
            messages=build_router_messages(candidates, agents, messages, counts),
            max_tokens=ROUTER_MAX_TOKENS,
            temperature=ROUTER_TEMPERATURE,
        )
        reply = (response.content or "").strip()
    except Exception as exc:  # noqa: BLE001
        logger.warning("[%s] Routing call failed (%s), using fewest-turns fallback",
                       session.id, exc)
        return least_turns(candidates, counts)

    selected = match_candidate(reply, candidates)
    if selected is None:
        logger.info("[%s] Router reply %r matched no candidate, using fewest-turns fallback",
                    session.id, reply[:80])
        return least_turns(candidates, counts)
    return selected


async def select_speaker(session: Session, agents: list[Agent],
                         recent_messages: list[Message],
                         explicit_target: Optional[str] = None,
                         *, router=None) -> Optional[Agent]:
    """Pick the next speaker, or None when the session has no agents."""
    if not agents:
        return None
    if len(agents) == 1:
        return agents[0]

    if session.turn_order == TurnOrder.DIRECTED:
        target = resolve_target(agents, explicit_target)
        if target is not None:
            return target
        if explicit_target:
            logger.warning("[%s] Target %r is not an agent of this session, rotating",
                           session.id, explicit_target)
        return select_rotation(agents, session.current_turn_index)

    if session.turn_order == TurnOrder.MODEL_ROUTED:
        return await select_routed(session, agents, recent_messages, router)

    return select_rotation(agents, session.current_turn_index)
