"""
Built-in capability implementations.

Every built-in is a handler ``(params, ctx) -> result`` where *ctx* is the
:class:`roundtable.core.executor.ToolContext` of the calling turn and the
result is any JSON-serializable value.  Handlers may be plain functions
(run in a worker thread by the executor) or coroutines (awaited on the
event loop).  Errors are raised; the executor and tool loop turn them into
``{"error": ...}`` tool results.

The reserved ``add_tool`` handler lives in :mod:`roundtable.core.registration`
because it needs the approval broker.
"""

import ast
import asyncio
import json
import logging
import math
import operator
import re
from datetime import datetime, timezone
from html.parser import HTMLParser
from pathlib import Path
from typing import Any, Callable
from urllib.error import URLError
from urllib.request import Request, urlopen
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

SLEEP_MAX_SECONDS = 300
DEFAULT_SCRATCHPAD = Path("data/scratchpad.md")


# ---------------------------------------------------------------------------
# HTML-to-text helper (stdlib only)
# ---------------------------------------------------------------------------

class _HTMLTextExtractor(HTMLParser):
    """Minimal HTML-to-text converter that strips tags and scripts."""

    _IGNORE_TAGS = frozenset({"script", "style", "noscript", "svg", "head"})
    _BLOCK_TAGS = frozenset({"br", "p", "div", "li", "tr", "h1", "h2", "h3", "h4", "h5", "h6"})

    def __init__(self) -> None:
        super().__init__()
        self._pieces: list[str] = []
        self._ignore_depth = 0

    def handle_starttag(self, tag: str, _attrs: list) -> None:
        if tag in self._IGNORE_TAGS:
            self._ignore_depth += 1
        elif tag in self._BLOCK_TAGS:
            self._pieces.append("\n")

    def handle_endtag(self, tag: str) -> None:
        if tag in self._IGNORE_TAGS:
            self._ignore_depth = max(0, self._ignore_depth - 1)

    def handle_data(self, data: str) -> None:
        if self._ignore_depth == 0:
            self._pieces.append(data)

    def get_text(self) -> str:
        text = "".join(self._pieces)
        text = re.sub(r"[ \t]+", " ", text)
        text = re.sub(r"\n{3,}", "\n\n", text)
        return text.strip()


def html_to_text(html: str) -> str:
    """Convert HTML to readable plain text."""
    parser = _HTMLTextExtractor()
    parser.feed(html)
    return parser.get_text()


def _truncate(text: str, max_chars: int) -> str:
    if len(text) > max_chars:
        return text[:max_chars] + f"\n\n[... truncated at {max_chars} chars]"
    return text


# ---------------------------------------------------------------------------
# Calculator (AST walker, no eval)
# ---------------------------------------------------------------------------

_BIN_OPS: dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}
_UNARY_OPS: dict[type, Callable[[Any], Any]] = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}
_NAMES = {"pi": math.pi, "e": math.e, "tau": math.tau}
_FUNCS = {
    name: getattr(math, name)
    for name in ("sqrt", "sin", "cos", "tan", "asin", "acos", "atan", "log",
                 "log10", "log2", "exp", "floor", "ceil", "factorial")
}
_FUNCS.update({"abs": abs, "round": round, "min": min, "max": max})


def _eval_node(node: ast.AST) -> Any:
    if isinstance(node, ast.Expression):
        return _eval_node(node.body)
    if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)):
        return node.value
    if isinstance(node, ast.BinOp) and type(node.op) in _BIN_OPS:
        left, right = _eval_node(node.left), _eval_node(node.right)
        if isinstance(node.op, ast.Pow) and abs(right) > 1000:
            raise ValueError("Exponent too large")
        return _BIN_OPS[type(node.op)](left, right)
    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
        return _UNARY_OPS[type(node.op)](_eval_node(node.operand))
    if isinstance(node, ast.Name) and node.id in _NAMES:
        return _NAMES[node.id]
    if (isinstance(node, ast.Call) and isinstance(node.func, ast.Name)
            and node.func.id in _FUNCS and not node.keywords):
        return _FUNCS[node.func.id](*[_eval_node(a) for a in node.args])
    raise ValueError(f"Unsupported expression element: {ast.dump(node)[:80]}")


def evaluate_expression(expression: str) -> float | int:
    tree = ast.parse(expression.strip().replace("^", "**"), mode="eval")
    return _eval_node(tree)


# ---------------------------------------------------------------------------
# Tool implementations
# ---------------------------------------------------------------------------

def _tool_get_current_datetime(params: dict, _ctx: Any) -> dict:
    tz_name = params.get("timezone") or "UTC"
    try:
        tz = ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValueError(f"Unknown timezone: {tz_name}")
    now = datetime.now(timezone.utc).astimezone(tz)
    return {
        "iso": now.isoformat(),
        "date": now.strftime("%Y-%m-%d"),
        "time": now.strftime("%H:%M:%S"),
        "weekday": now.strftime("%A"),
        "timezone": tz_name,
        "unix": int(now.timestamp()),
    }


def _tool_calculator(params: dict, _ctx: Any) -> dict:
    expression = params["expression"]
    try:
        result = evaluate_expression(expression)
    except (SyntaxError, ValueError, TypeError, ZeroDivisionError, OverflowError) as exc:
        return {"expression": expression, "error": f"Could not evaluate: {exc}"}
    return {"expression": expression, "result": result}


async def _tool_http_request(params: dict, ctx: Any) -> dict:
    url = params["url"]
    method = (params.get("method") or "GET").upper()
    max_chars = int(params.get("max_chars", 10000))
    logger.info("http_request: %s %s", method, url)
    client = await ctx.http()
    resp = await client.request(
        method, url,
        headers=params.get("headers") or None,
        content=params.get("body"),
    )
    return {
        "url": str(resp.url),
        "status": resp.status_code,
        "headers": dict(resp.headers),
        "body": _truncate(resp.text, max_chars),
    }


def _tool_fetch_webpage(params: dict, _ctx: Any) -> dict:
    url = params["url"]
    max_chars = int(params.get("max_chars", 20000))
    logger.info("fetch_webpage: %s", url)

    try:
        req = Request(url, headers={
            "User-Agent": "Mozilla/5.0 (compatible; roundtable/0.1)",
            "Accept": "text/html,application/xhtml+xml,text/plain,*/*",
        })
        with urlopen(req, timeout=20) as resp:
            content_type = resp.headers.get("Content-Type", "")
            raw = resp.read()
    except URLError as exc:
        reason = str(exc.reason) if hasattr(exc, "reason") else str(exc)
        raise RuntimeError(f"Failed to fetch URL: {reason}") from exc

    charset = "utf-8"
    if "charset=" in content_type:
        charset = content_type.split("charset=")[-1].split(";")[0].strip()
    body = raw.decode(charset, errors="replace")

    if "html" in content_type or body.lstrip()[:15].lower().startswith(("<!doctype", "<html")):
        body = html_to_text(body)

    body = _truncate(body, max_chars)
    return {"url": url, "content_type": content_type, "length": len(body), "content": body}


def _tool_read_scratchpad(_params: dict, ctx: Any) -> dict:
    path = Path(ctx.scratchpad_path)
    if not path.exists():
        return {"content": "", "message": "Scratchpad is empty."}
    return {"content": path.read_text(encoding="utf-8")}


def _tool_write_scratchpad(params: dict, ctx: Any) -> dict:
    path = Path(ctx.scratchpad_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    content = params["content"]
    if params.get("append") and path.exists():
        existing = path.read_text(encoding="utf-8")
        content = existing + ("\n" if existing and not existing.endswith("\n") else "") + content
    path.write_text(content, encoding="utf-8")
    return {"success": True, "length": len(content)}


async def _tool_sleep(params: dict, _ctx: Any) -> dict:
    seconds = max(0.0, min(float(params.get("seconds", 0)), SLEEP_MAX_SECONDS))
    await asyncio.sleep(seconds)
    return {"slept_seconds": seconds}


def _tool_take_a_rest(params: dict, ctx: Any) -> dict:
    ctx.request_rest()
    reason = params.get("reason") or ""
    logger.info("[%s] %s requested a rest%s", ctx.session_id, ctx.agent_name,
                f": {reason}" if reason else "")
    return {"success": True, "message": "The conversation will rest after this turn."}


# ---------------------------------------------------------------------------
# Dispatch table
# ---------------------------------------------------------------------------

BUILTIN_DISPATCH: dict[str, Callable[..., Any]] = {
    "get_current_datetime": _tool_get_current_datetime,
    "calculator":           _tool_calculator,
    "http_request":         _tool_http_request,
    "fetch_webpage":        _tool_fetch_webpage,
    "read_scratchpad":      _tool_read_scratchpad,
    "write_scratchpad":     _tool_write_scratchpad,
    "sleep":                _tool_sleep,
    "take_a_rest":          _tool_take_a_rest,
}


def tool_deadline(name: str, params: dict, default: float) -> float:
    """Return the execution deadline (seconds) for one built-in call."""
    if name == "sleep":
        try:
            requested = float(params.get("seconds", 0))
        except (TypeError, ValueError):
            requested = 0.0
        return max(default, min(requested, SLEEP_MAX_SECONDS) + 5.0)
    return default


def result_to_text(result: Any) -> str:
    """Serialise a tool result for message content."""
    if isinstance(result, str):
        return result
    return json.dumps(result, default=str)
