"""
Shared type definitions for the roundtable.core package.

Houses the conversation data model (sessions, agents, messages, capabilities,
summary checkpoints), the engine configuration data class and the exception
types that are raised or classified across multiple modules.
"""

import enum
import time
from dataclasses import dataclass, field
from typing import Any, Optional


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class RoundtableError(Exception):
    """Base class for errors raised by the orchestration core."""


class NotFoundError(RoundtableError):
    """A session, agent, capability or approval does not exist."""


class SessionBusyError(RoundtableError):
    """The session is held by a running engine and cannot be edited."""


class ConflictError(RoundtableError):
    """A record with the same unique name already exists."""


class CapabilityError(RoundtableError):
    """A capability could not be executed, registered or removed."""


class CapabilityConflictError(CapabilityError):
    """A capability with the proposed name already exists."""


class CapabilityTimeoutError(CapabilityError):
    """A capability exceeded its execution deadline."""


class RunCancelled(RoundtableError):
    """The running conversation was cancelled at a suspension point."""


class ContextTooLargeError(Exception):
    """The request payload or token count exceeds backend limits."""


class RateLimitError(Exception):
    """The provider returned a rate-limit (HTTP 429) error."""


_CONTEXT_TOO_LARGE_PHRASES = (
    "context length", "too many tokens", "maximum context",
    "token limit", "content too large", "payload too large",
)


def classify_api_error(exc: Exception) -> type | None:
    """Classify a provider exception as a normalized error type.

    Returns :class:`RateLimitError` or :class:`ContextTooLargeError` if
    the exception matches the corresponding pattern, or ``None`` for
    unrecognised errors.
    """
    status = getattr(exc, "status_code", None)

    if (
        status == 429
        or "429" in type(exc).__name__
        or (hasattr(exc, "code") and str(getattr(exc, "code", "")) == "429")
    ):
        return RateLimitError

    if status == 413:
        return ContextTooLargeError
    if status == 400:
        msg = str(exc).lower()
        if any(phrase in msg for phrase in _CONTEXT_TOO_LARGE_PHRASES):
            return ContextTooLargeError

    return None


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class TurnOrder(str, enum.Enum):
    FIXED_ROTATION = "FIXED_ROTATION"
    DIRECTED = "DIRECTED"
    MODEL_ROUTED = "MODEL_ROUTED"


class MemoryStrategy(str, enum.Enum):
    WINDOW = "WINDOW"
    SUMMARIZE = "SUMMARIZE"


class SessionStatus(str, enum.Enum):
    SETUP = "SETUP"
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"


class Role(str, enum.Enum):
    HUMAN = "HUMAN"
    AGENT = "AGENT"
    SYSTEM = "SYSTEM"
    TOOL_CALL = "TOOL_CALL"
    TOOL_RESULT = "TOOL_RESULT"


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

DEFAULT_ROUTER_MODEL = "anthropic/claude-haiku-4.5"
DEFAULT_AGENT_MODEL = "anthropic/claude-haiku-4.5"
MIN_WINDOW_SIZE = 10
MAX_WINDOW_SIZE = 200


def clamp_window_size(value: int) -> int:
    return max(MIN_WINDOW_SIZE, min(MAX_WINDOW_SIZE, int(value)))


@dataclass
class Session:
    id: str
    name: str = ""
    turn_order: TurnOrder = TurnOrder.FIXED_ROTATION
    memory_strategy: MemoryStrategy = MemoryStrategy.WINDOW
    window_size: int = 50
    status: SessionStatus = SessionStatus.SETUP
    current_turn_index: int = 0
    is_infinite: bool = False
    is_slow: bool = False
    router_model: str = DEFAULT_ROUTER_MODEL
    created_at: float = field(default_factory=time.time)


@dataclass
class Agent:
    id: str
    session_id: str
    name: str
    model: str
    system_prompt: str = ""
    order_index: int = 0
    capabilities: list[str] = field(default_factory=list)


@dataclass
class AgentTemplate:
    """A reusable agent definition; adding an agent from it copies the fields."""
    id: str
    name: str
    model: str = DEFAULT_AGENT_MODEL
    system_prompt: str = ""
    capabilities: list[str] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)


@dataclass
class Message:
    id: int
    session_id: str
    role: Role
    content: str
    agent_id: Optional[str] = None
    tool_name: Optional[str] = None
    tool_args: Optional[dict] = None
    created_at: float = field(default_factory=time.time)


@dataclass
class Capability:
    """A callable unit an agent may invoke mid-turn.

    ``code`` holds the function body of a user-registered capability.
    Built-ins leave it empty; their handlers live in the built-in
    dispatch table.
    """
    name: str
    description: str
    parameters: dict
    code: str = ""
    is_builtin: bool = False


@dataclass
class SummaryCheckpoint:
    id: int
    session_id: str
    content: str
    messages_from: float      # created_at of the first summarised message
    messages_to: float        # created_at of the last summarised message
    message_count: int
    last_message_id: int = 0  # id of the last summarised message
    created_at: float = field(default_factory=time.time)


@dataclass
class PendingApproval:
    id: str
    session_id: str
    agent_id: Optional[str]
    name: str
    description: str
    parameters: dict
    code: str
    status: str = "pending"   # "pending", "approved" or "rejected"
    created_at: float = field(default_factory=time.time)
    decided_at: Optional[float] = None


# ---------------------------------------------------------------------------
# Completion payloads
# ---------------------------------------------------------------------------

@dataclass
class LLMToolCall:
    id: str
    name: str
    arguments: str            # raw JSON payload as produced by the model


@dataclass
class LLMResponse:
    content: Optional[str]
    tool_calls: Optional[list[LLMToolCall]] = None
    finish_reason: str = "stop"

    def assistant_message(self) -> dict[str, Any]:
        """Render this response as an OpenAI ``assistant`` message."""
        msg: dict[str, Any] = {"role": "assistant", "content": self.content or ""}
        if self.tool_calls:
            msg["tool_calls"] = [
                {
                    "id": tc.id,
                    "type": "function",
                    "function": {"name": tc.name, "arguments": tc.arguments},
                }
                for tc in self.tool_calls
            ]
        return msg


# ---------------------------------------------------------------------------
# Engine configuration
# ---------------------------------------------------------------------------

@dataclass
class EngineConfig:
    turn_pause: float = 0.5          # seconds between turns in run_turns
    infinite_pause: float = 1.0      # seconds between turns in run_until_cancelled
    slow_delay: float = 5.0          # pre-turn delay when session.is_slow
    max_tokens: int = 4096
    completion_timeout: float = 120.0
    tool_timeout: float = 30.0
    max_tool_rounds: int = 10
