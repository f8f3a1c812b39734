"""
Tool Executor — runs one capability invocation.

Every capability is a polymorphic unit ``{name, schema, execute(params,
context) -> result}``.  Built-ins resolve to handlers in
:data:`roundtable.tools.BUILTIN_DISPATCH` (plus the reserved ``add_tool``);
user-registered capabilities carry Python source that is compiled into an
``async def`` and run in a restricted namespace.

Sandbox contract for user-registered code
-----------------------------------------
The stored code is the *body* of::

    async def __capability__(params, context, http, env): ...

``params``   the parsed arguments (dict)
``context``  the :class:`ToolContext` (``session_id``, ``agent_id``, ...)
``http``     the session's ``httpx.AsyncClient`` (idle-evicted, shared per session)
``env``      a snapshot of the process environment

The namespace exposes ``json``, ``math``, ``re``, ``datetime`` and
``asyncio`` and a builtins table without ``open``, ``exec``, ``eval``,
``compile``, ``__import__`` or ``input``.  This limits accidental reach,
it is not a security boundary against hostile code; installation is gated
by human approval.

Every invocation carries a deadline.  Exceeding it raises
:class:`CapabilityTimeoutError`; callers treat that like any other
execution failure.
"""

import asyncio
import builtins
import datetime
import hashlib
import inspect
import json
import logging
import math
import os
import re
import textwrap
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Optional

from roundtable import tools as tool_module
from roundtable.core.tool_schemas import ADD_TOOL
from roundtable.core.types import (
    Capability,
    CapabilityError,
    CapabilityTimeoutError,
    NotFoundError,
)
from roundtable.infra.database import Store, async_call
from roundtable.infra.resources import SessionResourcePool

if TYPE_CHECKING:
    from roundtable.core.registration import ApprovalBroker

logger = logging.getLogger(__name__)

_BLOCKED_BUILTINS = frozenset({
    "open", "exec", "eval", "compile", "__import__", "input",
    "breakpoint", "exit", "quit", "globals", "locals", "vars",
})
SAFE_BUILTINS = {
    name: getattr(builtins, name)
    for name in dir(builtins)
    if not name.startswith("_") and name not in _BLOCKED_BUILTINS
}
SANDBOX_MODULES = {
    "json": json,
    "math": math,
    "re": re,
    "datetime": datetime,
    "asyncio": asyncio,
}


@dataclass
class ToolContext:
    """Per-invocation context injected into every capability."""

    session_id: str
    agent_id: Optional[str] = None
    agent_name: str = ""
    resources: Optional[SessionResourcePool] = None
    approvals: Optional["ApprovalBroker"] = None
    scratchpad_path: Path = tool_module.DEFAULT_SCRATCHPAD
    request_rest: Callable[[], None] = field(default=lambda: None)

    async def http(self) -> Any:
        """Return the session's shared HTTP client."""
        if self.resources is None:
            raise CapabilityError("No HTTP client available in this context")
        return await self.resources.acquire(self.session_id)


def compile_capability(name: str, code: str) -> Callable[..., Any]:
    """Compile user capability code into an async function.

    Raises :class:`CapabilityError` on syntax errors.
    """
    body = textwrap.indent(textwrap.dedent(code).strip() or "return None", "    ")
    source = f"async def __capability__(params, context, http, env):\n{body}\n"
    namespace: dict[str, Any] = {"__builtins__": SAFE_BUILTINS, **SANDBOX_MODULES}
    try:
        exec(compile(source, f"<capability {name}>", "exec"), namespace)  # noqa: S102
    except SyntaxError as exc:
        raise CapabilityError(
            f'Tool "{name}" has invalid code: {exc.msg} (line {exc.lineno})'
        ) from exc
    return namespace["__capability__"]


class ToolExecutor:
    """Executes built-in and user-registered capabilities with deadlines."""

    def __init__(self, store: Store,
                 resources: Optional[SessionResourcePool] = None,
                 *, timeout: float = 30.0,
                 builtins_table: Optional[dict[str, Callable[..., Any]]] = None) -> None:
        self._store = store
        self._resources = resources
        self._timeout = timeout
        self._builtins = dict(builtins_table if builtins_table is not None
                              else tool_module.BUILTIN_DISPATCH)
        # name -> (code digest, compiled function); one entry per capability
        self._compiled: dict[str, tuple[str, Callable[..., Any]]] = {}

    @property
    def timeout(self) -> float:
        return self._timeout

    @property
    def resources(self) -> Optional[SessionResourcePool]:
        return self._resources

    def _resolve_builtin(self, name: str) -> Optional[Callable[..., Any]]:
        if name == ADD_TOOL:
            from roundtable.core.registration import propose_capability
            return propose_capability
        return self._builtins.get(name)

    def _compiled_for(self, capability: Capability) -> Callable[..., Any]:
        digest = hashlib.sha256(capability.code.encode("utf-8")).hexdigest()
        cached = self._compiled.get(capability.name)
        if cached is not None and cached[0] == digest:
            return cached[1]
        fn = compile_capability(capability.name, capability.code)
        self._compiled[capability.name] = (digest, fn)
        return fn

    async def execute(self, name: str, params: dict, ctx: ToolContext,
                      capability: Optional[Capability] = None) -> Any:
        """Run capability *name* and return its JSON-serializable result.

        Raises :class:`NotFoundError` for unknown capabilities,
        :class:`CapabilityTimeoutError` on deadline, and re-raises whatever
        the capability itself raised.
        """
        if capability is None:
            capability = await async_call(self._store.get_capability, name)
        if capability is None:
            raise NotFoundError(f'Tool "{name}" not found')

        if ctx.resources is None:
            ctx.resources = self._resources

        t0 = time.monotonic()
        if capability.is_builtin:
            handler = self._resolve_builtin(name)
            if handler is None:
                raise NotFoundError(f'Built-in tool "{name}" has no implementation')
            if inspect.iscoroutinefunction(handler):
                call = handler(params, ctx)
            else:
                call = asyncio.get_running_loop().run_in_executor(
                    None, lambda _h=handler: _h(params, ctx),
                )
            # The approval gate waits on a human; it is not deadline-bound.
            deadline = None if name == ADD_TOOL else tool_module.tool_deadline(
                name, params, self._timeout,
            )
        else:
            fn = self._compiled_for(capability)
            http = await ctx.http() if ctx.resources is not None else None
            call = fn(params, ctx, http, dict(os.environ))
            deadline = self._timeout

        try:
            if deadline is None:
                result = await call
            else:
                result = await asyncio.wait_for(call, timeout=deadline)
        except asyncio.TimeoutError as exc:
            logger.warning("[%s] Tool %s timed out after %.1fs", ctx.session_id, name, deadline)
            raise CapabilityTimeoutError(
                f'Tool "{name}" timed out after {deadline:.0f}s'
            ) from exc

        logger.debug("[%s] Tool %s finished in %.1f ms", ctx.session_id, name,
                     (time.monotonic() - t0) * 1000)
        return result
