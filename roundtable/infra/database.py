"""
SQLite repository for sessions, agents, agent templates, messages, summary
checkpoints, capabilities and pending capability approvals.

Architecture note
-----------------
Every engine receives a :class:`Store` instance explicitly; there is no
module-level database path or client.  Connections are cached per-thread
via ``threading.local`` (one cache per Store) so the same Store can be used
from several worker threads concurrently.  Each session's rows are keyed by
``session_id`` and engines never share mutable session state.

All Store methods are synchronous (they use sqlite3 directly).
Async callers MUST use ``await async_call(store.method, *args)`` to avoid
blocking the event loop (SQLite's busy_timeout can stall for up to
5 seconds under write contention).
"""

import asyncio
import json
import logging
import sqlite3
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Callable, Optional

from roundtable.core.types import (
    Agent,
    AgentTemplate,
    Capability,
    CapabilityConflictError,
    CapabilityError,
    ConflictError,
    MemoryStrategy,
    Message,
    NotFoundError,
    PendingApproval,
    Role,
    Session,
    SessionBusyError,
    SessionStatus,
    SummaryCheckpoint,
    TurnOrder,
    clamp_window_size,
)

logger = logging.getLogger(__name__)

DEFAULT_DB = Path("data/roundtable.db")


async def async_call(fn: Callable, *args: Any, **kwargs: Any) -> Any:
    """Run a synchronous database function in a thread.

    Usage::

        rows = await async_call(store.load_messages, session_id)
    """
    return await asyncio.to_thread(fn, *args, **kwargs)


def run_migrations(conn: sqlite3.Connection) -> None:
    """Ensure all tables and indexes exist."""
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS sessions (
            id                  TEXT PRIMARY KEY,
            name                TEXT NOT NULL DEFAULT '',
            turn_order          TEXT NOT NULL DEFAULT 'FIXED_ROTATION',
            memory_strategy     TEXT NOT NULL DEFAULT 'WINDOW',
            window_size         INTEGER NOT NULL DEFAULT 50,
            status              TEXT NOT NULL DEFAULT 'SETUP',
            current_turn_index  INTEGER NOT NULL DEFAULT 0,
            is_infinite         INTEGER NOT NULL DEFAULT 0,
            is_slow             INTEGER NOT NULL DEFAULT 0,
            router_model        TEXT NOT NULL,
            created_at          REAL NOT NULL
        );
        CREATE TABLE IF NOT EXISTS agents (
            id            TEXT PRIMARY KEY,
            session_id    TEXT NOT NULL,
            name          TEXT NOT NULL,
            model         TEXT NOT NULL,
            system_prompt TEXT NOT NULL DEFAULT '',
            order_index   INTEGER NOT NULL DEFAULT 0,
            capabilities  TEXT NOT NULL DEFAULT '[]'
        );
        CREATE TABLE IF NOT EXISTS messages (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            session_id  TEXT NOT NULL,
            role        TEXT NOT NULL,
            agent_id    TEXT,
            content     TEXT NOT NULL,
            tool_name   TEXT,
            tool_args   TEXT,
            created_at  REAL NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_messages_session
            ON messages (session_id, created_at, id);
        CREATE TABLE IF NOT EXISTS summaries (
            id               INTEGER PRIMARY KEY AUTOINCREMENT,
            session_id       TEXT NOT NULL,
            content          TEXT NOT NULL,
            messages_from    REAL NOT NULL,
            messages_to      REAL NOT NULL,
            message_count    INTEGER NOT NULL,
            last_message_id  INTEGER NOT NULL DEFAULT 0,
            created_at       REAL NOT NULL
        );
        CREATE TABLE IF NOT EXISTS capabilities (
            name         TEXT PRIMARY KEY,
            description  TEXT NOT NULL,
            parameters   TEXT NOT NULL,
            code         TEXT NOT NULL DEFAULT '',
            is_builtin   INTEGER NOT NULL DEFAULT 0,
            created_at   REAL NOT NULL
        );
        CREATE TABLE IF NOT EXISTS agent_templates (
            id            TEXT PRIMARY KEY,
            name          TEXT NOT NULL UNIQUE,
            model         TEXT NOT NULL,
            system_prompt TEXT NOT NULL DEFAULT '',
            capabilities  TEXT NOT NULL DEFAULT '[]',
            created_at    REAL NOT NULL
        );
        CREATE TABLE IF NOT EXISTS pending_approvals (
            id           TEXT PRIMARY KEY,
            session_id   TEXT NOT NULL,
            agent_id     TEXT,
            name         TEXT NOT NULL,
            description  TEXT NOT NULL,
            parameters   TEXT NOT NULL,
            code         TEXT NOT NULL,
            status       TEXT NOT NULL DEFAULT 'pending',
            created_at   REAL NOT NULL,
            decided_at   REAL
        );
    """)
    conn.commit()


# ---------------------------------------------------------------------------
# Row converters
# ---------------------------------------------------------------------------

def _row_to_session(r: sqlite3.Row) -> Session:
    return Session(
        id=r["id"],
        name=r["name"],
        turn_order=TurnOrder(r["turn_order"]),
        memory_strategy=MemoryStrategy(r["memory_strategy"]),
        window_size=r["window_size"],
        status=SessionStatus(r["status"]),
        current_turn_index=r["current_turn_index"],
        is_infinite=bool(r["is_infinite"]),
        is_slow=bool(r["is_slow"]),
        router_model=r["router_model"],
        created_at=r["created_at"],
    )


def _row_to_agent(r: sqlite3.Row) -> Agent:
    return Agent(
        id=r["id"],
        session_id=r["session_id"],
        name=r["name"],
        model=r["model"],
        system_prompt=r["system_prompt"],
        order_index=r["order_index"],
        capabilities=json.loads(r["capabilities"]),
    )


def _row_to_template(r: sqlite3.Row) -> AgentTemplate:
    return AgentTemplate(
        id=r["id"],
        name=r["name"],
        model=r["model"],
        system_prompt=r["system_prompt"],
        capabilities=json.loads(r["capabilities"]),
        created_at=r["created_at"],
    )


def _row_to_message(r: sqlite3.Row) -> Message:
    return Message(
        id=r["id"],
        session_id=r["session_id"],
        role=Role(r["role"]),
        content=r["content"],
        agent_id=r["agent_id"],
        tool_name=r["tool_name"],
        tool_args=json.loads(r["tool_args"]) if r["tool_args"] is not None else None,
        created_at=r["created_at"],
    )


def _row_to_summary(r: sqlite3.Row) -> SummaryCheckpoint:
    return SummaryCheckpoint(
        id=r["id"],
        session_id=r["session_id"],
        content=r["content"],
        messages_from=r["messages_from"],
        messages_to=r["messages_to"],
        message_count=r["message_count"],
        last_message_id=r["last_message_id"],
        created_at=r["created_at"],
    )


def _row_to_capability(r: sqlite3.Row) -> Capability:
    return Capability(
        name=r["name"],
        description=r["description"],
        parameters=json.loads(r["parameters"]),
        code=r["code"],
        is_builtin=bool(r["is_builtin"]),
    )


def _row_to_approval(r: sqlite3.Row) -> PendingApproval:
    return PendingApproval(
        id=r["id"],
        session_id=r["session_id"],
        agent_id=r["agent_id"],
        name=r["name"],
        description=r["description"],
        parameters=json.loads(r["parameters"]),
        code=r["code"],
        status=r["status"],
        created_at=r["created_at"],
        decided_at=r["decided_at"],
    )


_SESSION_FIELDS = {"name", "turn_order", "memory_strategy", "window_size",
                   "is_infinite", "is_slow", "router_model"}
_AGENT_FIELDS = {"name", "model", "system_prompt", "order_index", "capabilities"}
_TEMPLATE_FIELDS = {"name", "model", "system_prompt", "capabilities"}


def _to_column(key: str, value: Any) -> Any:
    if key == "capabilities":
        return json.dumps(list(value))
    if key == "window_size":
        return clamp_window_size(value)
    if key in ("is_infinite", "is_slow"):
        return 1 if value else 0
    if isinstance(value, (TurnOrder, MemoryStrategy, SessionStatus, Role)):
        return value.value
    return value


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class Store:
    """Repository over a single SQLite database file."""

    def __init__(self, path: Path | str = DEFAULT_DB) -> None:
        self._path = Path(path)
        self._local = threading.local()
        # Sessions currently held by a running engine (agent edits refused).
        self._held: set[str] = set()
        self._held_lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _connect(self) -> sqlite3.Connection:
        """Return a WAL-mode connection, cached per-thread.

        If the cached connection is broken the cache entry is discarded and
        a fresh one is returned.
        """
        conn: sqlite3.Connection | None = getattr(self._local, "conn", None)
        if conn is not None:
            try:
                conn.execute("SELECT 1")
                return conn
            except sqlite3.Error:
                try:
                    conn.close()
                except sqlite3.Error:
                    pass
                self._local.conn = None

        conn = sqlite3.connect(self._path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        self._local.conn = conn
        return conn

    def init_db(self) -> None:
        """Create tables if they don't exist."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        run_migrations(self._connect())
        logger.debug("Database initialised at %s", self._path)

    # ------------------------------------------------------------------
    # Session hold (engine ownership)
    # ------------------------------------------------------------------

    def hold_session(self, session_id: str) -> None:
        with self._held_lock:
            self._held.add(session_id)

    def release_session(self, session_id: str) -> None:
        with self._held_lock:
            self._held.discard(session_id)

    def is_held(self, session_id: str) -> bool:
        with self._held_lock:
            return session_id in self._held

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, name: str = "", *,
                       turn_order: TurnOrder = TurnOrder.FIXED_ROTATION,
                       memory_strategy: MemoryStrategy = MemoryStrategy.WINDOW,
                       window_size: int = 50,
                       is_infinite: bool = False,
                       is_slow: bool = False,
                       router_model: Optional[str] = None,
                       session_id: Optional[str] = None) -> Session:
        session = Session(
            id=session_id or f"ses_{uuid.uuid4().hex[:12]}",
            name=name,
            turn_order=TurnOrder(turn_order),
            memory_strategy=MemoryStrategy(memory_strategy),
            window_size=clamp_window_size(window_size),
            is_infinite=is_infinite,
            is_slow=is_slow,
        )
        if router_model:
            session.router_model = router_model
        conn = self._connect()
        with conn:
            conn.execute(
                "INSERT INTO sessions (id, name, turn_order, memory_strategy, window_size, "
                "status, current_turn_index, is_infinite, is_slow, router_model, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?)",
                (session.id, session.name, session.turn_order.value,
                 session.memory_strategy.value, session.window_size,
                 session.status.value, int(is_infinite), int(is_slow),
                 session.router_model, session.created_at),
            )
        return session

    def get_session(self, session_id: str) -> Session:
        row = self._connect().execute(
            "SELECT * FROM sessions WHERE id=?", (session_id,),
        ).fetchone()
        if row is None:
            raise NotFoundError(f"Session {session_id} not found")
        return _row_to_session(row)

    def list_sessions(self) -> list[Session]:
        rows = self._connect().execute(
            "SELECT * FROM sessions ORDER BY created_at ASC",
        ).fetchall()
        return [_row_to_session(r) for r in rows]

    def update_session(self, session_id: str, **kwargs: Any) -> Session:
        """Update configuration fields of a session.

        Counters and status are not accepted here; see :meth:`complete_turn`
        and :meth:`set_session_status`.
        """
        updates = {k: _to_column(k, v) for k, v in kwargs.items() if k in _SESSION_FIELDS}
        if updates:
            set_clause = ", ".join(f"{k}=?" for k in updates)
            conn = self._connect()
            with conn:
                n = conn.execute(
                    f"UPDATE sessions SET {set_clause} WHERE id=?",
                    [*updates.values(), session_id],
                ).rowcount
            if n == 0:
                raise NotFoundError(f"Session {session_id} not found")
        return self.get_session(session_id)

    def set_session_status(self, session_id: str, status: SessionStatus) -> None:
        conn = self._connect()
        with conn:
            conn.execute(
                "UPDATE sessions SET status=? WHERE id=?",
                (SessionStatus(status).value, session_id),
            )

    def delete_session(self, session_id: str) -> None:
        """Delete a session with its agents, messages, summaries and approvals."""
        self.get_session(session_id)
        if self.is_held(session_id):
            raise SessionBusyError(f"Session {session_id} is running and cannot be deleted")
        conn = self._connect()
        with conn:
            for table in ("agents", "messages", "summaries", "pending_approvals"):
                conn.execute(f"DELETE FROM {table} WHERE session_id=?", (session_id,))
            conn.execute("DELETE FROM sessions WHERE id=?", (session_id,))

    # ------------------------------------------------------------------
    # Agents
    # ------------------------------------------------------------------

    def add_agent(self, session_id: str, name: str, model: str,
                  system_prompt: str = "", order_index: Optional[int] = None,
                  capabilities: Optional[list[str]] = None,
                  agent_id: Optional[str] = None) -> Agent:
        if self.is_held(session_id):
            raise SessionBusyError(f"Session {session_id} is running; agents cannot change")
        conn = self._connect()
        if order_index is None:
            row = conn.execute(
                "SELECT COALESCE(MAX(order_index) + 1, 0) FROM agents WHERE session_id=?",
                (session_id,),
            ).fetchone()
            order_index = row[0]
        agent = Agent(
            id=agent_id or f"agt_{uuid.uuid4().hex[:12]}",
            session_id=session_id,
            name=name,
            model=model,
            system_prompt=system_prompt,
            order_index=order_index,
            capabilities=list(capabilities or []),
        )
        with conn:
            conn.execute(
                "INSERT INTO agents (id, session_id, name, model, system_prompt, "
                "order_index, capabilities) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (agent.id, session_id, name, model, system_prompt, order_index,
                 json.dumps(agent.capabilities)),
            )
        return agent

    def list_agents(self, session_id: str) -> list[Agent]:
        rows = self._connect().execute(
            "SELECT * FROM agents WHERE session_id=? ORDER BY order_index ASC, rowid ASC",
            (session_id,),
        ).fetchall()
        return [_row_to_agent(r) for r in rows]

    def update_agent(self, agent_id: str, **kwargs: Any) -> Agent:
        conn = self._connect()
        row = conn.execute("SELECT * FROM agents WHERE id=?", (agent_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Agent {agent_id} not found")
        if self.is_held(row["session_id"]):
            raise SessionBusyError(f"Session {row['session_id']} is running; agents cannot change")
        updates = {k: _to_column(k, v) for k, v in kwargs.items() if k in _AGENT_FIELDS}
        if updates:
            set_clause = ", ".join(f"{k}=?" for k in updates)
            with conn:
                conn.execute(f"UPDATE agents SET {set_clause} WHERE id=?",
                             [*updates.values(), agent_id])
            row = conn.execute("SELECT * FROM agents WHERE id=?", (agent_id,)).fetchone()
        return _row_to_agent(row)

    def get_agent(self, agent_id: str) -> Agent:
        row = self._connect().execute("SELECT * FROM agents WHERE id=?", (agent_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Agent {agent_id} not found")
        return _row_to_agent(row)

    def delete_agent(self, agent_id: str) -> None:
        """Remove an agent.  Its past messages stay in the history."""
        agent = self.get_agent(agent_id)
        if self.is_held(agent.session_id):
            raise SessionBusyError(f"Session {agent.session_id} is running; agents cannot change")
        conn = self._connect()
        with conn:
            conn.execute("DELETE FROM agents WHERE id=?", (agent_id,))

    # ------------------------------------------------------------------
    # Agent templates
    # ------------------------------------------------------------------

    def save_template(self, name: str, model: str, system_prompt: str = "",
                      capabilities: Optional[list[str]] = None) -> AgentTemplate:
        """Create a template, or overwrite the fields of the one named *name*."""
        caps = json.dumps(list(capabilities or []))
        conn = self._connect()
        with conn:
            conn.execute(
                "INSERT INTO agent_templates (id, name, model, system_prompt, capabilities, "
                "created_at) VALUES (?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(name) DO UPDATE SET model=excluded.model, "
                "system_prompt=excluded.system_prompt, capabilities=excluded.capabilities",
                (f"tpl_{uuid.uuid4().hex[:12]}", name, model, system_prompt, caps, time.time()),
            )
        row = conn.execute("SELECT * FROM agent_templates WHERE name=?", (name,)).fetchone()
        return _row_to_template(row)

    def get_template(self, template_id: str) -> AgentTemplate:
        row = self._connect().execute(
            "SELECT * FROM agent_templates WHERE id=?", (template_id,),
        ).fetchone()
        if row is None:
            raise NotFoundError(f"Template {template_id} not found")
        return _row_to_template(row)

    def list_templates(self) -> list[AgentTemplate]:
        rows = self._connect().execute(
            "SELECT * FROM agent_templates ORDER BY name ASC",
        ).fetchall()
        return [_row_to_template(r) for r in rows]

    def update_template(self, template_id: str, **kwargs: Any) -> AgentTemplate:
        self.get_template(template_id)
        updates = {k: _to_column(k, v) for k, v in kwargs.items() if k in _TEMPLATE_FIELDS}
        if updates:
            set_clause = ", ".join(f"{k}=?" for k in updates)
            conn = self._connect()
            try:
                with conn:
                    conn.execute(f"UPDATE agent_templates SET {set_clause} WHERE id=?",
                                 [*updates.values(), template_id])
            except sqlite3.IntegrityError as exc:
                raise ConflictError(
                    f'A template named "{kwargs.get("name")}" already exists'
                ) from exc
        return self.get_template(template_id)

    def delete_template(self, template_id: str) -> None:
        self.get_template(template_id)
        conn = self._connect()
        with conn:
            conn.execute("DELETE FROM agent_templates WHERE id=?", (template_id,))

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def _insert_message(self, conn: sqlite3.Connection, session_id: str, role: Role,
                        content: str, agent_id: Optional[str],
                        tool_name: Optional[str], tool_args: Optional[dict],
                        created_at: Optional[float]) -> Message:
        ts = time.time() if created_at is None else created_at
        cur = conn.execute(
            "INSERT INTO messages (session_id, role, agent_id, content, tool_name, "
            "tool_args, created_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (session_id, Role(role).value, agent_id, content, tool_name,
             json.dumps(tool_args) if tool_args is not None else None, ts),
        )
        return Message(
            id=cur.lastrowid,
            session_id=session_id,
            role=Role(role),
            content=content,
            agent_id=agent_id,
            tool_name=tool_name,
            tool_args=tool_args,
            created_at=ts,
        )

    def add_message(self, session_id: str, role: Role, content: str, *,
                    agent_id: Optional[str] = None,
                    tool_name: Optional[str] = None,
                    tool_args: Optional[dict] = None,
                    created_at: Optional[float] = None) -> Message:
        """Append a message and return it.  Messages are never updated."""
        conn = self._connect()
        with conn:
            return self._insert_message(conn, session_id, role, content, agent_id,
                                        tool_name, tool_args, created_at)

    def load_messages(self, session_id: str, *, since: Optional[float] = None,
                      limit: Optional[int] = None) -> list[Message]:
        """Return messages in conversation order.

        *since* keeps only messages created strictly after that timestamp;
        *limit* keeps only the most recent ``limit`` messages.
        """
        query = "SELECT * FROM messages WHERE session_id=?"
        params: list[Any] = [session_id]
        if since is not None:
            query += " AND created_at > ?"
            params.append(since)
        if limit is not None:
            query = (f"SELECT * FROM ({query} ORDER BY created_at DESC, id DESC LIMIT ?) "
                     "ORDER BY created_at ASC, id ASC")
            params.append(limit)
        else:
            query += " ORDER BY created_at ASC, id ASC"
        rows = self._connect().execute(query, params).fetchall()
        return [_row_to_message(r) for r in rows]

    def complete_turn(self, session_id: str, agent_id: str, content: str) -> Message:
        """Persist a turn's final AGENT message and advance the turn counter.

        Both writes share one transaction, so a turn is either fully
        recorded or not at all.
        """
        conn = self._connect()
        with conn:
            msg = self._insert_message(conn, session_id, Role.AGENT, content,
                                       agent_id, None, None, None)
            n = conn.execute(
                "UPDATE sessions SET current_turn_index = current_turn_index + 1, "
                "status=? WHERE id=?",
                (SessionStatus.ACTIVE.value, session_id),
            ).rowcount
            if n == 0:
                raise NotFoundError(f"Session {session_id} not found")
        return msg

    # ------------------------------------------------------------------
    # Summary checkpoints
    # ------------------------------------------------------------------

    def save_summary(self, session_id: str, content: str, messages_from: float,
                     messages_to: float, message_count: int,
                     last_message_id: int) -> SummaryCheckpoint:
        ts = time.time()
        conn = self._connect()
        with conn:
            cur = conn.execute(
                "INSERT INTO summaries (session_id, content, messages_from, messages_to, "
                "message_count, last_message_id, created_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (session_id, content, messages_from, messages_to, message_count,
                 last_message_id, ts),
            )
        return SummaryCheckpoint(
            id=cur.lastrowid, session_id=session_id, content=content,
            messages_from=messages_from, messages_to=messages_to,
            message_count=message_count, last_message_id=last_message_id,
            created_at=ts,
        )

    def load_summaries(self, session_id: str) -> list[SummaryCheckpoint]:
        """Return checkpoints in chronological order of the range they cover."""
        rows = self._connect().execute(
            "SELECT * FROM summaries WHERE session_id=? "
            "ORDER BY messages_to ASC, last_message_id ASC, id ASC",
            (session_id,),
        ).fetchall()
        return [_row_to_summary(r) for r in rows]

    # ------------------------------------------------------------------
    # Capabilities
    # ------------------------------------------------------------------

    def get_capability(self, name: str) -> Optional[Capability]:
        row = self._connect().execute(
            "SELECT * FROM capabilities WHERE name=?", (name,),
        ).fetchone()
        return _row_to_capability(row) if row else None

    def list_capabilities(self, names: Optional[list[str]] = None) -> list[Capability]:
        conn = self._connect()
        if names is None:
            rows = conn.execute("SELECT * FROM capabilities ORDER BY name ASC").fetchall()
        elif not names:
            return []
        else:
            marks = ", ".join("?" for _ in names)
            rows = conn.execute(
                f"SELECT * FROM capabilities WHERE name IN ({marks}) ORDER BY name ASC",
                list(names),
            ).fetchall()
        return [_row_to_capability(r) for r in rows]

    def create_capability(self, capability: Capability) -> Capability:
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    "INSERT INTO capabilities (name, description, parameters, code, "
                    "is_builtin, created_at) VALUES (?, ?, ?, ?, ?, ?)",
                    (capability.name, capability.description,
                     json.dumps(capability.parameters), capability.code,
                     1 if capability.is_builtin else 0, time.time()),
                )
        except sqlite3.IntegrityError as exc:
            raise CapabilityConflictError(
                f'A tool named "{capability.name}" already exists'
            ) from exc
        return capability

    def seed_builtin(self, capability: Capability) -> bool:
        """Insert or refresh a built-in capability.  Returns True if newly created."""
        conn = self._connect()
        with conn:
            existing = conn.execute(
                "SELECT is_builtin FROM capabilities WHERE name=?", (capability.name,),
            ).fetchone()
            if existing is None:
                conn.execute(
                    "INSERT INTO capabilities (name, description, parameters, code, "
                    "is_builtin, created_at) VALUES (?, ?, ?, '', 1, ?)",
                    (capability.name, capability.description,
                     json.dumps(capability.parameters), time.time()),
                )
                return True
            conn.execute(
                "UPDATE capabilities SET description=?, parameters=?, code='', is_builtin=1 "
                "WHERE name=?",
                (capability.description, json.dumps(capability.parameters), capability.name),
            )
        return False

    def delete_capability(self, name: str) -> None:
        cap = self.get_capability(name)
        if cap is None:
            raise NotFoundError(f'Tool "{name}" not found')
        if cap.is_builtin:
            raise CapabilityError(f'Built-in tool "{name}" cannot be deleted')
        conn = self._connect()
        with conn:
            conn.execute("DELETE FROM capabilities WHERE name=?", (name,))

    # ------------------------------------------------------------------
    # Pending approvals
    # ------------------------------------------------------------------

    def create_approval(self, session_id: str, agent_id: Optional[str], name: str,
                        description: str, parameters: dict, code: str) -> PendingApproval:
        approval = PendingApproval(
            id=f"apr_{uuid.uuid4().hex[:12]}",
            session_id=session_id,
            agent_id=agent_id,
            name=name,
            description=description,
            parameters=parameters,
            code=code,
        )
        conn = self._connect()
        with conn:
            conn.execute(
                "INSERT INTO pending_approvals (id, session_id, agent_id, name, description, "
                "parameters, code, status, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, 'pending', ?)",
                (approval.id, session_id, agent_id, name, description,
                 json.dumps(parameters), code, approval.created_at),
            )
        return approval

    def get_approval(self, approval_id: str) -> PendingApproval:
        row = self._connect().execute(
            "SELECT * FROM pending_approvals WHERE id=?", (approval_id,),
        ).fetchone()
        if row is None:
            raise NotFoundError(f"Approval {approval_id} not found")
        return _row_to_approval(row)

    def list_approvals(self, session_id: Optional[str] = None,
                       status: str = "pending") -> list[PendingApproval]:
        query = "SELECT * FROM pending_approvals WHERE status=?"
        params: list[Any] = [status]
        if session_id is not None:
            query += " AND session_id=?"
            params.append(session_id)
        rows = self._connect().execute(query + " ORDER BY created_at ASC", params).fetchall()
        return [_row_to_approval(r) for r in rows]

    @staticmethod
    def _grant(conn: sqlite3.Connection, agent_id: str, name: str) -> None:
        row = conn.execute("SELECT capabilities FROM agents WHERE id=?", (agent_id,)).fetchone()
        if row is None:
            return
        caps = json.loads(row["capabilities"])
        if name not in caps:
            caps.append(name)
            conn.execute("UPDATE agents SET capabilities=? WHERE id=?",
                         (json.dumps(caps), agent_id))

    def decide_approval(self, approval_id: str, approved: bool) -> PendingApproval:
        """Record a decision; approval also installs the capability.

        An approved capability is granted to the proposing agent as well.
        That grant is part of the gate itself, so it is applied even while a
        run holds the session.  Everything happens in one transaction.
        Raises :class:`CapabilityConflictError` (leaving the approval
        pending) when the name was taken in the meantime.
        """
        approval = self.get_approval(approval_id)
        if approval.status != "pending":
            raise CapabilityError(f"Approval {approval_id} was already {approval.status}")
        now = time.time()
        status = "approved" if approved else "rejected"
        conn = self._connect()
        try:
            with conn:
                if approved:
                    conn.execute(
                        "INSERT INTO capabilities (name, description, parameters, code, "
                        "is_builtin, created_at) VALUES (?, ?, ?, ?, 0, ?)",
                        (approval.name, approval.description,
                         json.dumps(approval.parameters), approval.code, now),
                    )
                    if approval.agent_id:
                        self._grant(conn, approval.agent_id, approval.name)
                conn.execute(
                    "UPDATE pending_approvals SET status=?, decided_at=? WHERE id=?",
                    (status, now, approval_id),
                )
        except sqlite3.IntegrityError as exc:
            raise CapabilityConflictError(
                f'A tool named "{approval.name}" already exists'
            ) from exc
        approval.status = status
        approval.decided_at = now
        return approval
