"""
Memory Compactor — bounds the history an agent sees.

Two strategies:

WINDOW     the last ``session.window_size`` messages, verbatim.
SUMMARIZE  once the unsummarised history exceeds ``SUMMARY_THRESHOLD``
           messages, everything but the newest ``SUMMARY_KEEP_RECENT`` is
           summarised into a persisted checkpoint.  The context is then one
           synthetic SYSTEM message holding every checkpoint (oldest first)
           followed by the preserved tail.

Checkpoints cover contiguous, non-overlapping ranges of the conversation: only
messages after the latest checkpoint are ever candidates for the next one.
Summarisation failures are logged and degrade to the preserved tail; they
never propagate to the engine.
"""

import logging
import math
from typing import Optional

from roundtable.core.types import (
    MemoryStrategy,
    Message,
    Role,
    Session,
    SummaryCheckpoint,
)
from roundtable.infra import prompt_loader
from roundtable.infra.database import Store, async_call

logger = logging.getLogger(__name__)

SUMMARY_THRESHOLD = 40
SUMMARY_KEEP_RECENT = 15
SUMMARY_MAX_WORDS = 500
SUMMARY_MAX_TOKENS = 1000
SUMMARY_SEPARATOR = "\n\n---\n\n"
DEFAULT_SUMMARY_MODEL = "anthropic/claude-haiku-4.5"


def apply_window(history: list[Message], window_size: int) -> list[Message]:
    if len(history) <= window_size:
        return history
    return history[-window_size:]


def estimate_tokens(messages: list[Message]) -> int:
    """Rough token count: 4 characters per token plus per-message overhead."""
    return sum(math.ceil(len(m.content) / 4) + 4 for m in messages)


def sender_label(message: Message, agent_names: dict[str, str]) -> str:
    if message.role == Role.HUMAN:
        return "Human"
    if message.role == Role.SYSTEM:
        return "System"
    if message.agent_id and message.agent_id in agent_names:
        return agent_names[message.agent_id]
    return message.role.value


def render_transcript(messages: list[Message], agent_names: dict[str, str]) -> str:
    return "\n".join(f"{sender_label(m, agent_names)}: {m.content}" for m in messages)


def summary_message(session_id: str, checkpoints: list[SummaryCheckpoint],
                    header: str = "[Conversation Summary]") -> Message:
    """Build the synthetic SYSTEM message that precedes all real messages."""
    ordered = sorted(checkpoints, key=lambda c: (c.messages_to, c.last_message_id, c.id))
    body = SUMMARY_SEPARATOR.join(c.content for c in ordered)
    return Message(
        id=0,
        session_id=session_id,
        role=Role.SYSTEM,
        content=f"{header}\n{body}",
        created_at=0.0,
    )


class MemoryCompactor:
    """Builds bounded per-turn context from a session's full history."""

    def __init__(self, store: Store, completion, *,
                 summary_model: Optional[str] = None) -> None:
        self._store = store
        self._completion = completion
        self._summary_model = summary_model or DEFAULT_SUMMARY_MODEL

    async def build_context(self, session: Session, history: list[Message],
                            agent_names: Optional[dict[str, str]] = None) -> list[Message]:
        if session.memory_strategy == MemoryStrategy.SUMMARIZE:
            return await self._summarize(session, history, agent_names or {})
        return apply_window(history, session.window_size)

    async def _summarize(self, session: Session, history: list[Message],
                         agent_names: dict[str, str]) -> list[Message]:
        checkpoints = await async_call(self._store.load_summaries, session.id)
        if checkpoints:
            # Messages are ordered by (created_at, id); ties on the timestamp
            # are resolved by insertion sequence.
            covered = max((c.messages_to, c.last_message_id) for c in checkpoints)
            history = [m for m in history if (m.created_at, m.id) > covered]

        if len(history) <= SUMMARY_THRESHOLD:
            if not checkpoints:
                return history
            return [summary_message(session.id, checkpoints), *history]

        to_summarise = history[:-SUMMARY_KEEP_RECENT]
        recent = history[-SUMMARY_KEEP_RECENT:]

        try:
            response = await self._completion.complete(
                model=self._summary_model,
                messages=[
                    {"role": "system",
                     "content": prompt_loader.load("SUMMARIZER_SYSTEM.txt",
                                                   max_words=SUMMARY_MAX_WORDS)},
                    {"role": "user",
                     "content": "Summarize this conversation:\n\n"
                                + render_transcript(to_summarise, agent_names)},
                ],
                max_tokens=SUMMARY_MAX_TOKENS,
            )
            summary = (response.content or "").strip() or "Unable to generate summary."
            checkpoint = await async_call(
                self._store.save_summary,
                session.id, summary,
                to_summarise[0].created_at, to_summarise[-1].created_at,
                len(to_summarise), to_summarise[-1].id,
            )
        except Exception:  # noqa: BLE001
            logger.exception("Summarization failed for session %s, keeping the last %d messages",
                             session.id, SUMMARY_KEEP_RECENT)
            return recent

        tokens = estimate_tokens(to_summarise)
        logger.info("Summarized %d messages (~%d tokens) into checkpoint %d for session %s",
                    len(to_summarise), tokens, checkpoint.id, session.id)
        header = f"[Conversation Summary ({tokens} tokens summarized)]"
        return [summary_message(session.id, [*checkpoints, checkpoint], header), *recent]
