"""
Capability Registration Gate.

The reserved ``add_tool`` capability is the only path by which new
capabilities enter the store.  Calling it creates nothing by itself: the
proposal is persisted as a pending approval, an ``approval_required`` event
is emitted, and the calling turn suspends on a future until
:meth:`ApprovalBroker.resolve` delivers a decision.

Decisions are a separate entry point that does not depend on the suspended
turn still existing.  If the process restarted in between (the in-memory
future is gone), the decision is still applied to the store and recorded as
a SYSTEM message in the session, so the agents learn the outcome on their
next turn.
"""

import asyncio
import logging
from typing import Any, Optional

from roundtable.core.types import (
    CapabilityError,
    PendingApproval,
    Role,
)
from roundtable.infra.database import Store, async_call
from roundtable.infra.event_bus import EventBus

logger = logging.getLogger(__name__)


class ApprovalBroker:
    """Persists capability proposals and hands decisions back to waiting turns."""

    def __init__(self, store: Store, bus: Optional[EventBus] = None) -> None:
        self._store = store
        self._bus = bus
        self._waiters: dict[str, asyncio.Future] = {}

    @property
    def store(self) -> Store:
        return self._store

    @property
    def waiting(self) -> list[str]:
        """Approval ids with a live suspended turn."""
        return [aid for aid, fut in self._waiters.items() if not fut.done()]

    async def submit(self, session_id: str, agent_id: Optional[str], name: str,
                     description: str, parameters: dict, code: str) -> PendingApproval:
        """Persist a proposal and announce it.  Does not wait."""
        approval = await async_call(
            self._store.create_approval,
            session_id, agent_id, name, description, parameters, code,
        )
        self._waiters[approval.id] = asyncio.get_running_loop().create_future()
        logger.info("[%s] Capability '%s' proposed (approval %s)", session_id, name, approval.id)
        if self._bus:
            self._bus.emit(
                "approval_required",
                session_id=session_id,
                agent_id=agent_id,
                approval_id=approval.id,
                tool_name=name,
                tool_description=description,
                tool_parameters=parameters,
                tool_code=code,
            )
        return approval

    async def wait(self, approval_id: str) -> bool:
        """Suspend until *approval_id* is decided.  Returns True if approved."""
        fut = self._waiters.get(approval_id)
        if fut is None:
            approval = await async_call(self._store.get_approval, approval_id)
            if approval.status != "pending":
                return approval.status == "approved"
            fut = asyncio.get_running_loop().create_future()
            self._waiters[approval_id] = fut
        try:
            return await fut
        finally:
            self._waiters.pop(approval_id, None)

    async def request(self, session_id: str, agent_id: Optional[str], name: str,
                      description: str, parameters: dict, code: str) -> bool:
        """Submit a proposal and wait for its decision."""
        approval = await self.submit(session_id, agent_id, name, description, parameters, code)
        return await self.wait(approval.id)

    async def resolve(self, approval_id: str, approved: bool) -> PendingApproval:
        """Apply a decision.

        Approval installs the capability (non-built-in); rejection changes
        nothing but the approval record.  Raises
        :class:`CapabilityConflictError` if the name is already taken, in
        which case the approval stays pending.
        """
        approval = await async_call(self._store.decide_approval, approval_id, approved)
        logger.info("[%s] Capability '%s' %s", approval.session_id, approval.name, approval.status)

        fut = self._waiters.get(approval_id)
        if fut is not None and not fut.done():
            fut.set_result(approved)
        else:
            # No suspended turn to resume; record the outcome in the session.
            verb = "approved and installed" if approved else "rejected"
            await async_call(
                self._store.add_message, approval.session_id, Role.SYSTEM,
                f'Tool "{approval.name}" proposed earlier was {verb} by the user.',
            )
        return approval

    async def pending(self, session_id: Optional[str] = None) -> list[PendingApproval]:
        return await async_call(self._store.list_approvals, session_id)


async def propose_capability(params: dict, ctx: Any) -> dict:
    """Handler for the reserved ``add_tool`` capability."""
    from roundtable.core.executor import compile_capability

    name = str(params.get("name") or "").strip()
    description = str(params.get("description") or "").strip()
    parameters = params.get("parameters") or {"type": "object", "properties": {}}
    code = str(params.get("implementation") or "")

    if not name or not code:
        return {"success": False, "message": "Both a tool name and an implementation are required."}
    if not isinstance(parameters, dict):
        return {"success": False, "message": "parameters must be a JSON schema object."}
    if ctx.approvals is None:
        raise CapabilityError("No approval channel is configured")

    store: Store = ctx.approvals.store
    if await async_call(store.get_capability, name) is not None:
        return {"success": False, "message": f'A tool named "{name}" already exists.'}
    try:
        compile_capability(name, code)
    except CapabilityError as exc:
        return {"success": False, "message": str(exc)}

    approved = await ctx.approvals.request(
        ctx.session_id, ctx.agent_id, name, description, parameters, code,
    )

    if approved:
        return {"success": True, "message": f'Tool "{name}" has been created and is now available.'}
    return {"success": False, "message": f'Tool "{name}" was rejected by the user.'}

