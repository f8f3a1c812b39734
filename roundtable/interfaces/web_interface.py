"""
Web Interface

REST + SSE API for driving conversations.  A conversation request streams
every event of its session as ``data: {"type": ..., "data": ...}`` frames
and finishes with ``data: [DONE]`` once the run reaches a terminal event.
Dropping the connection cancels the run.
"""

import asyncio
import json
import logging
from dataclasses import asdict
from typing import Any, Optional

from aiohttp import web

from roundtable.core.engine import EngineRegistry
from roundtable.core.registration import ApprovalBroker
from roundtable.core.types import (
    DEFAULT_AGENT_MODEL,
    Agent,
    CapabilityError,
    ConflictError,
    MemoryStrategy,
    Message,
    NotFoundError,
    Session,
    SessionBusyError,
    TurnOrder,
)
from roundtable.infra.database import Store, async_call
from roundtable.infra.event_bus import TERMINAL_EVENTS, WILDCARD, Event, EventBus

logger = logging.getLogger(__name__)

DEFAULT_TURNS = 1
MAX_TURNS = 100


# ---------------------------------------------------------------------------
# Serialisation helpers
# ---------------------------------------------------------------------------

def _session_dict(s: Session) -> dict:
    d = asdict(s)
    d["turn_order"] = s.turn_order.value
    d["memory_strategy"] = s.memory_strategy.value
    d["status"] = s.status.value
    return d


def _agent_dict(a: Agent) -> dict:
    return asdict(a)


def _message_dict(m: Message) -> dict:
    d = asdict(m)
    d["role"] = m.role.value
    return d


def _sse(payload: Any) -> bytes:
    return ("data: " + json.dumps(payload) + "\n\n").encode()


# ---------------------------------------------------------------------------
# Request parsing
# ---------------------------------------------------------------------------

def _session_options(body: dict) -> dict[str, Any]:
    """Session fields present in *body*, converted.  Raises ValueError/TypeError."""
    out: dict[str, Any] = {}
    if "name" in body:
        out["name"] = str(body["name"])
    if "turn_order" in body:
        out["turn_order"] = TurnOrder(body["turn_order"])
    if "memory_strategy" in body:
        out["memory_strategy"] = MemoryStrategy(body["memory_strategy"])
    if "window_size" in body:
        out["window_size"] = int(body["window_size"])
    for flag in ("is_infinite", "is_slow"):
        if flag in body:
            out[flag] = bool(body[flag])
    if body.get("router_model"):
        out["router_model"] = str(body["router_model"])
    return out


def _string_list(value: Any, field_name: str) -> list[str]:
    if not isinstance(value, list):
        raise ValueError(f"{field_name} must be a list of tool names")
    return [str(v) for v in value]


def _agent_options(body: dict) -> dict[str, Any]:
    """Agent (or template) fields present in *body*, converted."""
    out: dict[str, Any] = {}
    for key in ("name", "model", "system_prompt"):
        if key in body:
            out[key] = str(body[key] or "").strip()
    if "order_index" in body:
        out["order_index"] = int(body["order_index"])
    if "capabilities" in body:
        out["capabilities"] = _string_list(body["capabilities"] or [], "capabilities")
    return out


# ---------------------------------------------------------------------------
# WebInterface class
# ---------------------------------------------------------------------------

class WebInterface:
    """Runs an aiohttp web server exposing sessions, approvals and tools."""

    def __init__(self, host: str, port: int, *, store: Store,
                 registry: EngineRegistry, bus: EventBus,
                 approvals: ApprovalBroker) -> None:
        self._host = host
        self._port = port
        self._store = store
        self._registry = registry
        self._bus = bus
        self._approvals = approvals

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/api/sessions",                            self._api_sessions)
        app.router.add_post("/api/sessions",                           self._api_session_create)
        app.router.add_get("/api/sessions/{session_id}",               self._api_session_get)
        app.router.add_patch("/api/sessions/{session_id}",             self._api_session_update)
        app.router.add_delete("/api/sessions/{session_id}",            self._api_session_delete)
        app.router.add_post("/api/sessions/{session_id}/agents",       self._api_agent_create)
        app.router.add_put("/api/sessions/{session_id}/agents/{agent_id}",    self._api_agent_update)
        app.router.add_delete("/api/sessions/{session_id}/agents/{agent_id}", self._api_agent_delete)
        app.router.add_get("/api/sessions/{session_id}/messages",      self._api_session_messages)
        app.router.add_post("/api/sessions/{session_id}/conversation", self._api_conversation)
        app.router.add_post("/api/sessions/{session_id}/stop",         self._api_session_stop)
        app.router.add_get("/api/approvals",                           self._api_approvals)
        app.router.add_post("/api/approvals/{approval_id}",            self._api_approval_decide)
        app.router.add_get("/api/tools",                               self._api_tools)
        app.router.add_delete("/api/tools/{name}",                     self._api_tool_delete)
        app.router.add_get("/api/agent-templates",                     self._api_templates)
        app.router.add_post("/api/agent-templates",                    self._api_template_save)
        app.router.add_get("/api/agent-templates/{template_id}",       self._api_template_get)
        app.router.add_put("/api/agent-templates/{template_id}",       self._api_template_update)
        app.router.add_delete("/api/agent-templates/{template_id}",    self._api_template_delete)
        return app

    async def run(self) -> None:
        runner = web.AppRunner(self.build_app(), access_log=None)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()
        logger.info("Web interface listening on http://%s:%d", self._host, self._port)

        try:
            while True:
                await asyncio.sleep(3600)
        finally:
            await runner.cleanup()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _json(data, status: int = 200) -> web.Response:
        return web.Response(text=json.dumps(data), content_type="application/json",
                            status=status)

    @classmethod
    def _error(cls, message: str, status: int) -> web.Response:
        return cls._json({"error": message}, status=status)

    @staticmethod
    async def _body(request: web.Request) -> dict:
        if not request.can_read_body:
            return {}
        try:
            data = await request.json()
        except (json.JSONDecodeError, ValueError):
            raise web.HTTPBadRequest(text=json.dumps({"error": "invalid JSON body"}),
                                     content_type="application/json")
        if not isinstance(data, dict):
            raise web.HTTPBadRequest(text=json.dumps({"error": "body must be an object"}),
                                     content_type="application/json")
        return data

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def _api_sessions(self, _request: web.Request) -> web.Response:
        sessions = await async_call(self._store.list_sessions)
        return self._json({"sessions": [_session_dict(s) for s in sessions]})

    async def _api_session_create(self, request: web.Request) -> web.Response:
        body = await self._body(request)
        try:
            kwargs = _session_options(body)
        except (TypeError, ValueError) as exc:
            return self._error(str(exc), 400)
        kwargs.pop("name", None)
        session = await async_call(self._store.create_session, str(body.get("name", "")), **kwargs)
        return self._json(_session_dict(session), status=201)

    async def _api_session_get(self, request: web.Request) -> web.Response:
        session_id = request.match_info["session_id"]
        try:
            session = await async_call(self._store.get_session, session_id)
        except NotFoundError as exc:
            return self._error(str(exc), 404)
        agents = await async_call(self._store.list_agents, session_id)
        data = _session_dict(session)
        data["agents"] = [_agent_dict(a) for a in agents]
        data["running"] = self._registry.active(session_id) is not None
        return self._json(data)

    async def _api_session_update(self, request: web.Request) -> web.Response:
        session_id = request.match_info["session_id"]
        body = await self._body(request)
        try:
            kwargs = _session_options(body)
        except (TypeError, ValueError) as exc:
            return self._error(str(exc), 400)
        try:
            session = await async_call(self._store.update_session, session_id, **kwargs)
        except NotFoundError as exc:
            return self._error(str(exc), 404)
        return self._json(_session_dict(session))

    async def _api_session_delete(self, request: web.Request) -> web.Response:
        session_id = request.match_info["session_id"]
        try:
            await async_call(self._store.delete_session, session_id)
        except NotFoundError as exc:
            return self._error(str(exc), 404)
        except SessionBusyError as exc:
            return self._error(str(exc), 409)
        return self._json({"deleted": session_id})

    # ------------------------------------------------------------------
    # Agents
    # ------------------------------------------------------------------

    async def _api_agent_create(self, request: web.Request) -> web.Response:
        session_id = request.match_info["session_id"]
        body = await self._body(request)
        try:
            fields = _agent_options(body)
        except (TypeError, ValueError) as exc:
            return self._error(str(exc), 400)
        try:
            await async_call(self._store.get_session, session_id)
            if body.get("template_id"):
                # Explicit fields win over the template's.
                template = await async_call(self._store.get_template, str(body["template_id"]))
                fields = {
                    "name": template.name,
                    "model": template.model,
                    "system_prompt": template.system_prompt,
                    "capabilities": template.capabilities,
                    **fields,
                }
            if not fields.get("name") or not fields.get("model"):
                return self._error("name and model are required", 400)
            agent = await async_call(
                self._store.add_agent, session_id, fields["name"], fields["model"],
                fields.get("system_prompt", ""),
                order_index=fields.get("order_index"),
                capabilities=fields.get("capabilities"),
            )
        except NotFoundError as exc:
            return self._error(str(exc), 404)
        except SessionBusyError as exc:
            return self._error(str(exc), 409)
        return self._json(_agent_dict(agent), status=201)

    async def _agent_in_session(self, request: web.Request) -> Agent:
        agent = await async_call(self._store.get_agent, request.match_info["agent_id"])
        if agent.session_id != request.match_info["session_id"]:
            raise NotFoundError(f"Agent {agent.id} not found in this session")
        return agent

    async def _api_agent_update(self, request: web.Request) -> web.Response:
        body = await self._body(request)
        try:
            fields = _agent_options(body)
        except (TypeError, ValueError) as exc:
            return self._error(str(exc), 400)
        if "name" in fields and not fields["name"]:
            return self._error("name must not be empty", 400)
        try:
            agent = await self._agent_in_session(request)
            agent = await async_call(self._store.update_agent, agent.id, **fields)
        except NotFoundError as exc:
            return self._error(str(exc), 404)
        except SessionBusyError as exc:
            return self._error(str(exc), 409)
        return self._json(_agent_dict(agent))

    async def _api_agent_delete(self, request: web.Request) -> web.Response:
        try:
            agent = await self._agent_in_session(request)
            await async_call(self._store.delete_agent, agent.id)
        except NotFoundError as exc:
            return self._error(str(exc), 404)
        except SessionBusyError as exc:
            return self._error(str(exc), 409)
        return self._json({"deleted": agent.id})

    async def _api_session_messages(self, request: web.Request) -> web.Response:
        session_id = request.match_info["session_id"]
        try:
            await async_call(self._store.get_session, session_id)
        except NotFoundError as exc:
            return self._error(str(exc), 404)
        messages = await async_call(self._store.load_messages, session_id)
        return self._json({"session_id": session_id,
                           "messages": [_message_dict(m) for m in messages]})

    async def _api_session_stop(self, request: web.Request) -> web.Response:
        session_id = request.match_info["session_id"]
        stopped = self._registry.cancel(session_id)
        return self._json({"session_id": session_id, "stopped": stopped})

    # ------------------------------------------------------------------
    # Conversation stream
    # ------------------------------------------------------------------

    async def _api_conversation(self, request: web.Request) -> web.StreamResponse:
        session_id = request.match_info["session_id"]
        body = await self._body(request)
        try:
            await async_call(self._store.get_session, session_id)
        except NotFoundError as exc:
            return self._error(str(exc), 404)

        content = str(body.get("content") or "").strip()
        target: Optional[str] = body.get("target_agent_id") or None
        infinite = bool(body.get("infinite", False))
        try:
            turns = max(0, min(MAX_TURNS, int(body.get("turns", DEFAULT_TURNS))))
        except (TypeError, ValueError):
            return self._error("turns must be an integer", 400)

        try:
            engine = self._registry.get(session_id)
        except SessionBusyError as exc:
            return self._error(str(exc), 409)

        queue: asyncio.Queue[Optional[Event]] = asyncio.Queue()

        def _on_event(event: Event) -> None:
            if event.data.get("session_id") == session_id:
                queue.put_nowait(event)

        sub_id = self._bus.subscribe(WILDCARD, _on_event)
        response = web.StreamResponse()
        response.headers.update({
            "Content-Type": "text/event-stream",
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        })
        run_task: Optional[asyncio.Task] = None
        try:
            await response.prepare(request)
            if content:
                await engine.add_human_message(content)
            if infinite:
                run_task = asyncio.create_task(engine.run_until_cancelled())
            else:
                run_task = asyncio.create_task(engine.run_turns(turns, target))
            # Wakes the stream if the run ends without a terminal event.
            run_task.add_done_callback(lambda _t: queue.put_nowait(None))

            while True:
                event = await queue.get()
                if event is None:
                    break
                await response.write(_sse(event.to_payload()))
                if event.event_type in TERMINAL_EVENTS:
                    break
            await response.write(b"data: [DONE]\n\n")
        except ConnectionResetError:
            logger.info("[%s] Client disconnected, cancelling run", session_id)
            engine.cancel()
        except asyncio.CancelledError:
            logger.info("[%s] Request cancelled, cancelling run", session_id)
            engine.cancel()
            raise
        finally:
            self._bus.unsubscribe(sub_id)

        if run_task is not None and run_task.done() and not run_task.cancelled():
            exc = run_task.exception()
            if exc is not None:
                logger.error("[%s] Conversation run failed: %s", session_id, exc)
        return response

    # ------------------------------------------------------------------
    # Approvals
    # ------------------------------------------------------------------

    async def _api_approvals(self, request: web.Request) -> web.Response:
        session_id = request.query.get("session_id") or None
        items = await self._approvals.pending(session_id)
        return self._json({"approvals": [asdict(a) for a in items]})

    async def _api_approval_decide(self, request: web.Request) -> web.Response:
        approval_id = request.match_info["approval_id"]
        body = await self._body(request)
        if not isinstance(body.get("approved"), bool):
            return self._error("approved must be true or false", 400)
        try:
            approval = await self._approvals.resolve(approval_id, body["approved"])
        except NotFoundError as exc:
            return self._error(str(exc), 404)
        except CapabilityError as exc:
            # Name conflicts and already-decided approvals.
            return self._error(str(exc), 409)
        return self._json(asdict(approval))

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    async def _api_tools(self, _request: web.Request) -> web.Response:
        caps = await async_call(self._store.list_capabilities)
        return self._json({"tools": [
            {
                "name": c.name,
                "description": c.description,
                "parameters": c.parameters,
                "is_builtin": c.is_builtin,
            }
            for c in caps
        ]})

    async def _api_tool_delete(self, request: web.Request) -> web.Response:
        name = request.match_info["name"]
        try:
            await async_call(self._store.delete_capability, name)
        except NotFoundError as exc:
            return self._error(str(exc), 404)
        except CapabilityError as exc:
            return self._error(str(exc), 403)
        return self._json({"deleted": name})

    # ------------------------------------------------------------------
    # Agent templates
    # ------------------------------------------------------------------

    async def _api_templates(self, _request: web.Request) -> web.Response:
        templates = await async_call(self._store.list_templates)
        return self._json({"templates": [asdict(t) for t in templates]})

    async def _api_template_save(self, request: web.Request) -> web.Response:
        body = await self._body(request)
        try:
            fields = _agent_options(body)
        except (TypeError, ValueError) as exc:
            return self._error(str(exc), 400)
        fields.pop("order_index", None)
        if not fields.get("name") or not fields.get("system_prompt"):
            return self._error("name and system_prompt are required", 400)
        template = await async_call(
            self._store.save_template, fields["name"],
            fields.get("model") or DEFAULT_AGENT_MODEL,
            fields["system_prompt"], fields.get("capabilities"),
        )
        return self._json(asdict(template))

    async def _api_template_get(self, request: web.Request) -> web.Response:
        try:
            template = await async_call(self._store.get_template,
                                        request.match_info["template_id"])
        except NotFoundError as exc:
            return self._error(str(exc), 404)
        return self._json(asdict(template))

    async def _api_template_update(self, request: web.Request) -> web.Response:
        body = await self._body(request)
        try:
            fields = _agent_options(body)
        except (TypeError, ValueError) as exc:
            return self._error(str(exc), 400)
        fields.pop("order_index", None)
        if any(k in fields and not fields[k] for k in ("name", "model", "system_prompt")):
            return self._error("name, model and system_prompt must not be empty", 400)
        try:
            template = await async_call(self._store.update_template,
                                        request.match_info["template_id"], **fields)
        except NotFoundError as exc:
            return self._error(str(exc), 404)
        except ConflictError as exc:
            return self._error(str(exc), 409)
        return self._json(asdict(template))

    async def _api_template_delete(self, request: web.Request) -> web.Response:
        template_id = request.match_info["template_id"]
        try:
            await async_call(self._store.delete_template, template_id)
        except NotFoundError as exc:
            return self._error(str(exc), 404)
        return self._json({"deleted": template_id})
