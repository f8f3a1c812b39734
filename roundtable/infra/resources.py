"""
Per-session shared resources with idle eviction.

Some capabilities need a long-lived handle (an HTTP client with its
connection pool and cookies, a browser page, ...) that should survive across
tool calls of the same session but must not leak when the session goes
quiet.  :class:`SessionResourcePool` owns one such handle per session and
closes it after ``idle_timeout`` seconds without use.  The timer runs
independently of any engine; a failure to create or close a resource is
reported to the calling capability only.
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional

import httpx

logger = logging.getLogger(__name__)

DEFAULT_IDLE_TIMEOUT = 300.0  # 5 minutes


def default_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=20.0,
        follow_redirects=True,
        headers={"User-Agent": "roundtable/0.1"},
    )


async def _close_http_client(client: httpx.AsyncClient) -> None:
    await client.aclose()


class SessionResourcePool:
    """Lazily created, idle-evicted resources keyed by session id."""

    def __init__(self,
                 factory: Callable[[], Any] = default_http_client,
                 closer: Optional[Callable[[Any], Awaitable[None] | None]] = _close_http_client,
                 idle_timeout: float = DEFAULT_IDLE_TIMEOUT) -> None:
        self._factory = factory
        self._closer = closer
        self._idle_timeout = idle_timeout
        self._resources: dict[str, Any] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._closing: set[asyncio.Task] = set()

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._resources

    def __len__(self) -> int:
        return len(self._resources)

    async def acquire(self, session_id: str) -> Any:
        """Return the session's resource, creating it on first use.

        Every acquisition restarts the idle timer.
        """
        resource = self._resources.get(session_id)
        if resource is None:
            resource = self._factory()
            if inspect.isawaitable(resource):
                resource = await resource
            self._resources[session_id] = resource
            logger.debug("Created session resource for %s", session_id)
        self._touch(session_id)
        return resource

    def _touch(self, session_id: str) -> None:
        existing = self._timers.pop(session_id, None)
        if existing:
            existing.cancel()
        loop = asyncio.get_running_loop()
        self._timers[session_id] = loop.call_later(
            self._idle_timeout, self._evict, session_id,
        )

    def _evict(self, session_id: str) -> None:
        self._timers.pop(session_id, None)
        logger.info("Session resource for %s idle for %.0fs, closing",
                    session_id, self._idle_timeout)
        task = asyncio.get_running_loop().create_task(self.close(session_id))
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    async def close(self, session_id: str) -> None:
        timer = self._timers.pop(session_id, None)
        if timer:
            timer.cancel()
        resource = self._resources.pop(session_id, None)
        if resource is None or self._closer is None:
            return
        try:
            result = self._closer(resource)
            if inspect.isawaitable(result):
                await result
        except Exception:  # noqa: BLE001
            logger.exception("Failed to close session resource for %s", session_id)

    async def close_all(self) -> None:
        for session_id in list(self._resources):
            await self.close(session_id)
        if self._closing:
            await asyncio.gather(*list(self._closing), return_exceptions=True)
