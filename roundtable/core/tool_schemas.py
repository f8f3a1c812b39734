"""
Tool schema definitions (OpenAI function-calling format).

Separated from tools.py so that the engine and the turn selector can access
schema data without importing the tool implementations.  Built-in schemas
are seeded into the capability store at bootstrap; user-registered
capabilities carry their own parameter schema in the store.
"""

from roundtable.core.types import Capability

ADD_TOOL = "add_tool"


def _fn(name: str, description: str, parameters: dict) -> dict:
    """Wrap a function schema in the OpenAI tool envelope."""
    return {
        "type": "function",
        "function": {
            "name":        name,
            "description": description,
            "parameters":  parameters,
        },
    }


def _empty() -> dict:
    return {"type": "object", "properties": {}}


BUILTIN_SCHEMAS = [
    _fn(
        ADD_TOOL,
        (
            "Propose a brand-new tool. A human must approve it before it is "
            "installed; this call waits for the decision and reports the outcome. "
            "The implementation is the body of an async Python function that "
            "receives `params` (the arguments), `context` (session info), "
            "`http` (an httpx.AsyncClient) and `env` (environment variables) "
            "and returns a JSON-serializable value."
        ),
        {
            "type": "object",
            "properties": {
                "name": {
                    "type": "string",
                    "description": "Unique snake_case tool name.",
                },
                "description": {
                    "type": "string",
                    "description": "What the tool does, written for other agents.",
                },
                "parameters": {
                    "type": "object",
                    "description": "JSON schema of the tool's arguments.",
                },
                "implementation": {
                    "type": "string",
                    "description": "Python function body; use `return` for the result.",
                },
            },
            "required": ["name", "description", "parameters", "implementation"],
        },
    ),
    _fn(
        "get_current_datetime",
        "Return the current date and time, optionally in a given IANA timezone.",
        {
            "type": "object",
            "properties": {
                "timezone": {
                    "type": "string",
                    "description": "IANA timezone name, e.g. 'Europe/Berlin' (default: UTC).",
                },
            },
        },
    ),
    _fn(
        "calculator",
        "Evaluate an arithmetic expression (+ - * / // % **, parentheses, math functions).",
        {
            "type": "object",
            "properties": {
                "expression": {
                    "type": "string",
                    "description": "Expression to evaluate, e.g. 'sqrt(2) * (3 + 4)'.",
                },
            },
            "required": ["expression"],
        },
    ),
    _fn(
        "http_request",
        "Perform an HTTP request and return status, headers and body.",
        {
            "type": "object",
            "properties": {
                "url":     {"type": "string"},
                "method":  {"type": "string", "enum": ["GET", "POST", "PUT", "PATCH", "DELETE"]},
                "headers": {"type": "object", "description": "Request headers."},
                "body":    {"type": "string", "description": "Raw request body."},
                "max_chars": {
                    "type": "integer",
                    "description": "Truncate the response body (default: 10000).",
                },
            },
            "required": ["url"],
        },
    ),
    _fn(
        "fetch_webpage",
        "Fetch a web page and return its readable text content.",
        {
            "type": "object",
            "properties": {
                "url": {"type": "string"},
                "max_chars": {
                    "type": "integer",
                    "description": "Truncate the returned text (default: 20000).",
                },
            },
            "required": ["url"],
        },
    ),
    _fn(
        "read_scratchpad",
        "Read the shared scratchpad that persists across turns and sessions.",
        _empty(),
    ),
    _fn(
        "write_scratchpad",
        "Replace (or append to) the shared scratchpad.",
        {
            "type": "object",
            "properties": {
                "content": {"type": "string"},
                "append":  {"type": "boolean", "description": "Append instead of replacing."},
            },
            "required": ["content"],
        },
    ),
    _fn(
        "sleep",
        "Pause for a number of seconds (max 300) before continuing.",
        {
            "type": "object",
            "properties": {
                "seconds": {"type": "number", "description": "Seconds to wait (max 300)."},
            },
            "required": ["seconds"],
        },
    ),
    _fn(
        "take_a_rest",
        (
            "End the current run after this turn without finishing the conversation. "
            "Use when the discussion has reached a natural pause."
        ),
        {
            "type": "object",
            "properties": {
                "reason": {"type": "string"},
            },
        },
    ),
]

BUILTIN_CAPABILITIES = [
    Capability(
        name=s["function"]["name"],
        description=s["function"]["description"],
        parameters=s["function"]["parameters"],
        is_builtin=True,
    )
    for s in BUILTIN_SCHEMAS
]


def capability_schema(capability: Capability) -> dict:
    """Return the OpenAI tool envelope for a stored capability."""
    parameters = capability.parameters or _empty()
    if "type" not in parameters:
        parameters = {"type": "object", "properties": parameters}
    return _fn(capability.name, capability.description, parameters)
