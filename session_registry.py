"""
Session registry for the HTTP transport.

Owns every live protocol session. A session is bound to one streamable HTTP
transport and to its own FastMCP server instance. The registry decides when a
session becomes addressable, tracks activity, expires idle sessions and tears
everything down on shutdown.

Table mutations go through a single lock and never span an await; releasing a
transport always happens after the entry has left the table.
"""

import logging
import threading
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import anyio
from anyio.abc import TaskGroup
from fastmcp import FastMCP
from mcp.server.streamable_http import StreamableHTTPServerTransport
from starlette.types import Message, Send

from mcp_server import ErrorCategory, audit_log, metrics


logger = logging.getLogger("mcp_server.sessions")


class SessionState(Enum):
    PENDING = "pending"  # transport created, initialization not answered yet
    ACTIVE = "active"
    CLOSED = "closed"


class SessionEvent(Enum):
    """Lifecycle events delivered into the registry"""
    INITIALIZED = "initialized"
    CLOSED = "closed"


@dataclass
class SessionHandle:
    """A protocol session bound to its transport"""
    session_id: str
    transport: Any
    created_at: float
    last_activity: float
    state: SessionState = SessionState.PENDING
    cancel_scope: Optional[anyio.CancelScope] = field(default=None, repr=False)


class SessionRegistry:
    """
    Table of protocol sessions keyed by session id.

    Sessions are created PENDING and only become visible to lookup() once the
    transport has answered the initialization request. They leave the table
    on an explicit close, on terminate() and on the idle sweep; all three
    paths are idempotent so they may race freely.
    """

    def __init__(
        self,
        server_factory: Optional[Callable[[], FastMCP]] = None,
        transport_factory: Optional[Callable[[str], Any]] = None,
        idle_threshold: float = 30 * 60,
        sweep_interval: float = 5 * 60,
        clock: Callable[[], float] = time.monotonic,
        json_response: bool = False,
    ):
        self._server_factory = server_factory
        self._transport_factory = transport_factory or self._create_transport
        self.idle_threshold = idle_threshold
        self.sweep_interval = sweep_interval
        self.json_response = json_response
        self._clock = clock

        self._lock = threading.Lock()
        self._sessions: Dict[str, SessionHandle] = {}
        self._pending: Dict[str, SessionHandle] = {}
        self._task_group: Optional[TaskGroup] = None

    def _create_transport(self, session_id: str) -> StreamableHTTPServerTransport:
        return StreamableHTTPServerTransport(
            mcp_session_id=session_id,
            is_json_response_enabled=self.json_response,
        )

    @property
    def session_count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def session_ids(self) -> List[str]:
        with self._lock:
            return list(self._sessions)

    def create_session(self) -> SessionHandle:
        """
        Allocate a fresh session id and its transport.

        The handle is returned before initialization completes so it can be
        wired to the protocol runtime; it is not addressable until the
        INITIALIZED event arrives.
        """
        session_id = uuid.uuid4().hex
        now = self._clock()
        handle = SessionHandle(
            session_id=session_id,
            transport=self._transport_factory(session_id),
            created_at=now,
            last_activity=now,
        )

        with self._lock:
            self._pending[session_id] = handle

        metrics.record_session_event("created")
        logger.debug(f"Created pending session: {session_id}")
        return handle

    async def connect(self, handle: SessionHandle) -> None:
        """Start the protocol runtime for a new session inside the registry's task group"""
        if self._task_group is None:
            raise RuntimeError("Session registry is not running; enter SessionRegistry.run() first")
        if self._server_factory is None:
            raise RuntimeError("Session registry has no server factory")

        await self._task_group.start(self._run_session, handle)

    async def _run_session(self, handle: SessionHandle, *, task_status=anyio.TASK_STATUS_IGNORED) -> None:
        server = self._server_factory()
        lowlevel = server._mcp_server
        started = False

        try:
            with anyio.CancelScope() as scope:
                handle.cancel_scope = scope
                try:
                    async with handle.transport.connect() as (read_stream, write_stream):
                        task_status.started()
                        started = True
                        await lowlevel.run(
                            read_stream,
                            write_stream,
                            lowlevel.create_initialization_options(),
                        )
                except Exception as e:
                    if not started:
                        raise
                    logger.error(f"Protocol runtime for session {handle.session_id} crashed: {e}", exc_info=True)
        finally:
            self.notify(SessionEvent.CLOSED, handle.session_id)
            if not handle.transport.is_terminated:
                with anyio.CancelScope(shield=True):
                    await self._release(handle)

    def watch_initialization(self, handle: SessionHandle, send: Send) -> Send:
        """
        Wrap an ASGI send so the session is registered as soon as the
        transport accepts the initialization request, before the client
        can learn the session id from the response.
        """
        async def send_wrapper(message: Message) -> None:
            if message["type"] == "http.response.start" and message["status"] == 200:
                self.notify(SessionEvent.INITIALIZED, handle.session_id)
            await send(message)

        return send_wrapper

    def notify(self, event: SessionEvent, session_id: str) -> None:
        """
        Apply a lifecycle event to the table.

        A CLOSED event for a transport that already terminated itself while
        still registered means the client ended the session with DELETE; it
        is recorded as a termination.
        """
        outcome = event.value
        with self._lock:
            if event is SessionEvent.INITIALIZED:
                handle = self._pending.pop(session_id, None)
                if handle is None:
                    return
                handle.state = SessionState.ACTIVE
                handle.last_activity = self._clock()
                self._sessions[session_id] = handle
            else:
                handle = self._sessions.pop(session_id, None)
                if handle is None:
                    handle = self._pending.pop(session_id, None)
                if handle is None:
                    return
                handle.state = SessionState.CLOSED
                if handle.transport.is_terminated:
                    outcome = "terminated"

        metrics.record_session_event(outcome)
        audit_log(f"session_{outcome}", {"session_id": session_id})
        logger.info(f"Session {outcome}: {session_id}")

    def lookup(self, session_id: str) -> Optional[SessionHandle]:
        with self._lock:
            return self._sessions.get(session_id)

    def touch(self, session_id: str) -> None:
        """Record activity; unknown ids are ignored since touch may race with expiry"""
        with self._lock:
            handle = self._sessions.get(session_id)
            if handle is not None:
                handle.last_activity = self._clock()

    async def terminate(self, session_id: str) -> None:
        """Remove a session and release its transport. Absent ids are a no-op."""
        with self._lock:
            handle = self._sessions.pop(session_id, None)
            if handle is None:
                handle = self._pending.pop(session_id, None)
            if handle is not None:
                handle.state = SessionState.CLOSED

        if handle is None:
            return

        metrics.record_session_event("terminated")
        audit_log("session_terminated", {"session_id": session_id})
        logger.info(f"Terminating session: {session_id}")
        await self._release(handle)

    async def discard(self, handle: SessionHandle) -> None:
        """Drop a session whose initialization never completed"""
        with self._lock:
            if self._pending.get(handle.session_id) is handle:
                del self._pending[handle.session_id]
            handle.state = SessionState.CLOSED

        await self._release(handle)

    async def sweep(self, now: Optional[float] = None, idle_threshold: Optional[float] = None) -> List[str]:
        """
        Terminate every session idle for longer than the threshold.

        A session whose last activity is exactly now - idle_threshold is
        kept. Returns the ids that were removed.
        """
        if now is None:
            now = self._clock()
        if idle_threshold is None:
            idle_threshold = self.idle_threshold
        cutoff = now - idle_threshold

        with self._lock:
            expired = [h for h in self._sessions.values() if h.last_activity < cutoff]
            for handle in expired:
                del self._sessions[handle.session_id]
                handle.state = SessionState.CLOSED

        for handle in expired:
            logger.info(f"Cleaning up stale session: {handle.session_id}")
            metrics.record_session_event("expired")
            audit_log("session_expired", {"session_id": handle.session_id})
            await self._release(handle)

        return [h.session_id for h in expired]

    async def close_all(self) -> None:
        """Best-effort termination of every session, live or pending"""
        with self._lock:
            handles = list(self._sessions.values()) + list(self._pending.values())
            self._sessions.clear()
            self._pending.clear()
            for handle in handles:
                handle.state = SessionState.CLOSED

        for handle in handles:
            logger.info(f"Closing transport for session: {handle.session_id}")
            await self._release(handle)

    async def _release(self, handle: SessionHandle) -> None:
        """Close a transport that has already left the table. Never raises."""
        try:
            if not handle.transport.is_terminated:
                await handle.transport.terminate()
        except Exception as e:
            metrics.record_error(ErrorCategory.TRANSPORT_ERROR)
            logger.error(f"Error closing transport for session {handle.session_id}: {e}", exc_info=True)
        finally:
            if handle.cancel_scope is not None:
                handle.cancel_scope.cancel()

    async def _sweep_periodically(self) -> None:
        while True:
            await anyio.sleep(self.sweep_interval)
            removed = await self.sweep()
            if removed:
                logger.info(f"Idle sweep removed {len(removed)} session(s)")

    @asynccontextmanager
    async def run(self) -> AsyncIterator["SessionRegistry"]:
        """
        Run the registry: hosts the per-session runtimes and the idle sweep.
        Every session is closed before the context exits.
        """
        if self._task_group is not None:
            raise RuntimeError("SessionRegistry.run() is already active")

        async with anyio.create_task_group() as tg:
            self._task_group = tg
            tg.start_soon(self._sweep_periodically)
            logger.info(
                f"Session registry started (idle threshold {self.idle_threshold}s, "
                f"sweep every {self.sweep_interval}s)"
            )
            try:
                yield self
            finally:
                with anyio.CancelScope(shield=True):
                    await self.close_all()
                tg.cancel_scope.cancel()
                self._task_group = None
                logger.info("Session registry stopped")
