#!/usr/bin/env python3
"""
Test suite for SessionRegistry
Exercises session creation, activity tracking, termination, the idle sweep
and shutdown with fake transports and a controllable clock.
"""

import anyio
import pytest

from mcp_server import metrics
from session_registry import SessionEvent, SessionRegistry, SessionState

pytestmark = pytest.mark.anyio("asyncio")


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class FakeTransport:
    """Stands in for StreamableHTTPServerTransport"""

    def __init__(self, session_id, fail_on_terminate=False):
        self.mcp_session_id = session_id
        self.fail_on_terminate = fail_on_terminate
        self.is_terminated = False
        self.terminate_calls = 0

    async def terminate(self):
        self.terminate_calls += 1
        if self.fail_on_terminate:
            raise RuntimeError("transport exploded")
        self.is_terminated = True


class TestSessionRegistry:
    """Test cases for the session table"""

    def setup_method(self):
        self.clock = FakeClock()
        self.registry = SessionRegistry(transport_factory=FakeTransport, clock=self.clock)
        metrics.reset()

    def _register(self):
        """Create a session and deliver its initialization event"""
        handle = self.registry.create_session()
        self.registry.notify(SessionEvent.INITIALIZED, handle.session_id)
        return handle

    def test_created_session_is_not_addressable_until_initialized(self):
        handle = self.registry.create_session()

        assert handle.state is SessionState.PENDING
        assert self.registry.lookup(handle.session_id) is None
        assert self.registry.session_count == 0

        self.registry.notify(SessionEvent.INITIALIZED, handle.session_id)

        assert handle.state is SessionState.ACTIVE
        assert self.registry.lookup(handle.session_id) is handle
        assert self.registry.session_count == 1

    def test_session_ids_are_unique(self):
        """1000 creations never collide"""
        ids = {self.registry.create_session().session_id for _ in range(1000)}

        assert len(ids) == 1000

    def test_handle_is_bound_to_its_transport(self):
        handle = self._register()

        assert isinstance(handle.transport, FakeTransport)
        assert handle.transport.mcp_session_id == handle.session_id

    def test_touch_keeps_handle_and_updates_activity(self):
        handle = self._register()
        transport = handle.transport

        self.clock.now = 1500.0
        self.registry.touch(handle.session_id)

        found = self.registry.lookup(handle.session_id)
        assert found is handle
        assert found.transport is transport
        assert found.last_activity == 1500.0

    def test_touch_unknown_id_is_ignored(self):
        self.registry.touch("does-not-exist")

        assert self.registry.session_count == 0

    async def test_terminate_then_lookup_is_absent(self):
        handle = self._register()

        await self.registry.terminate(handle.session_id)

        assert self.registry.lookup(handle.session_id) is None
        assert handle.state is SessionState.CLOSED
        assert handle.transport.terminate_calls == 1

    async def test_terminate_is_idempotent(self):
        handle = self._register()

        await self.registry.terminate(handle.session_id)
        await self.registry.terminate(handle.session_id)
        await self.registry.terminate("never-issued")

        assert self.registry.lookup(handle.session_id) is None
        assert self.registry.lookup("never-issued") is None
        assert handle.transport.terminate_calls == 1

    async def test_terminate_releases_pending_session(self):
        handle = self.registry.create_session()

        await self.registry.terminate(handle.session_id)
        self.registry.notify(SessionEvent.INITIALIZED, handle.session_id)

        assert handle.transport.is_terminated
        assert self.registry.lookup(handle.session_id) is None

    def test_closed_event_removes_session(self):
        handle = self._register()

        self.registry.notify(SessionEvent.CLOSED, handle.session_id)
        self.registry.notify(SessionEvent.CLOSED, handle.session_id)

        assert self.registry.lookup(handle.session_id) is None
        assert handle.state is SessionState.CLOSED

    def test_closed_event_after_client_termination_counts_as_terminated(self):
        """The transport ended itself (DELETE) before its runtime reported the close"""
        ended_by_client = self._register()
        crashed = self._register()
        ended_by_client.transport.is_terminated = True

        self.registry.notify(SessionEvent.CLOSED, ended_by_client.session_id)
        self.registry.notify(SessionEvent.CLOSED, crashed.session_id)

        events = metrics.get_stats()["session_events"]
        assert events["terminated"] == 1
        assert events["closed"] == 1

    async def test_client_termination_is_recorded_once_in_either_order(self):
        close_first = self._register()
        terminate_first = self._register()
        close_first.transport.is_terminated = True
        terminate_first.transport.is_terminated = True

        self.registry.notify(SessionEvent.CLOSED, close_first.session_id)
        await self.registry.terminate(close_first.session_id)

        await self.registry.terminate(terminate_first.session_id)
        self.registry.notify(SessionEvent.CLOSED, terminate_first.session_id)

        events = metrics.get_stats()["session_events"]
        assert events["terminated"] == 2
        assert "closed" not in events
        assert self.registry.session_count == 0

    async def test_discard_prevents_late_initialization(self):
        handle = self.registry.create_session()

        await self.registry.discard(handle)
        self.registry.notify(SessionEvent.INITIALIZED, handle.session_id)

        assert self.registry.lookup(handle.session_id) is None
        assert handle.transport.is_terminated

    async def test_sweep_boundary(self):
        """Only sessions idle strictly longer than the threshold are removed"""
        self.clock.now = 999.0
        stale = self._register()
        self.clock.now = 1000.0
        on_boundary = self._register()
        self.clock.now = 1500.0
        fresh = self._register()

        removed = await self.registry.sweep(now=2800.0, idle_threshold=1800.0)

        assert removed == [stale.session_id]
        assert self.registry.lookup(stale.session_id) is None
        assert stale.transport.is_terminated
        assert self.registry.lookup(on_boundary.session_id) is on_boundary
        assert self.registry.lookup(fresh.session_id) is fresh
        assert not on_boundary.transport.is_terminated

    async def test_sweep_defaults_to_clock_and_configured_threshold(self):
        handle = self._register()

        self.clock.now = 1000.0 + self.registry.idle_threshold
        assert await self.registry.sweep() == []

        self.clock.now += 1
        assert await self.registry.sweep() == [handle.session_id]

    async def test_touch_postpones_expiry(self):
        handle = self._register()

        self.clock.now = 2000.0
        self.registry.touch(handle.session_id)

        removed = await self.registry.sweep(now=2900.0, idle_threshold=1800.0)

        assert removed == []
        assert self.registry.lookup(handle.session_id) is handle

    async def test_concurrent_touch_and_terminate(self):
        """Racing touch/terminate on one id ends absent and leaves other ids alone"""
        target = self._register()
        bystander = self._register()

        async def keep_touching():
            for _ in range(50):
                self.registry.touch(target.session_id)
                await anyio.sleep(0)

        async def terminate_later():
            await anyio.sleep(0)
            await self.registry.terminate(target.session_id)

        async with anyio.create_task_group() as tg:
            tg.start_soon(keep_touching)
            tg.start_soon(terminate_later)
            tg.start_soon(keep_touching)

        assert self.registry.lookup(target.session_id) is None
        assert self.registry.lookup(bystander.session_id) is bystander
        assert not bystander.transport.is_terminated

    async def test_close_all_survives_teardown_failures(self):
        created = []

        def transport_factory(session_id):
            # Only the first transport fails to close
            transport = FakeTransport(session_id, fail_on_terminate=not created)
            created.append(transport)
            return transport

        registry = SessionRegistry(transport_factory=transport_factory, clock=self.clock)
        failing = registry.create_session()
        registry.notify(SessionEvent.INITIALIZED, failing.session_id)

        healthy = []
        for _ in range(3):
            handle = registry.create_session()
            registry.notify(SessionEvent.INITIALIZED, handle.session_id)
            healthy.append(handle)
        pending = registry.create_session()

        await registry.close_all()

        assert registry.session_count == 0
        assert failing.transport.terminate_calls == 1
        assert all(h.transport.is_terminated for h in healthy)
        assert pending.transport.is_terminated
        assert metrics.get_stats()["error_categories"]["transport_error"] == 1

    async def test_terminate_swallows_teardown_failure(self):
        registry = SessionRegistry(
            transport_factory=lambda sid: FakeTransport(sid, fail_on_terminate=True),
            clock=self.clock,
        )
        handle = registry.create_session()
        registry.notify(SessionEvent.INITIALIZED, handle.session_id)

        await registry.terminate(handle.session_id)

        assert registry.lookup(handle.session_id) is None

    async def test_watch_initialization_registers_on_success(self):
        handle = self.registry.create_session()
        sent = []

        async def send(message):
            sent.append(message)

        wrapped = self.registry.watch_initialization(handle, send)
        await wrapped({"type": "http.response.start", "status": 200, "headers": []})

        assert self.registry.lookup(handle.session_id) is handle
        assert sent[0]["status"] == 200

    async def test_watch_initialization_ignores_rejected_handshake(self):
        handle = self.registry.create_session()

        async def send(message):
            pass

        wrapped = self.registry.watch_initialization(handle, send)
        await wrapped({"type": "http.response.start", "status": 406, "headers": []})

        assert self.registry.lookup(handle.session_id) is None
        assert handle.state is SessionState.PENDING

    async def test_connect_requires_running_registry(self):
        handle = self.registry.create_session()

        with pytest.raises(RuntimeError, match="not running"):
            await self.registry.connect(handle)

    async def test_run_closes_sessions_on_exit(self):
        async with self.registry.run():
            handle = self._register()
            assert self.registry.session_count == 1

        assert self.registry.session_count == 0
        assert handle.transport.is_terminated

    async def test_periodic_sweep_expires_idle_sessions(self):
        registry = SessionRegistry(
            transport_factory=FakeTransport,
            clock=self.clock,
            idle_threshold=60.0,
            sweep_interval=0.01,
        )

        async with registry.run():
            handle = registry.create_session()
            registry.notify(SessionEvent.INITIALIZED, handle.session_id)

            self.clock.now += 61.0
            with anyio.fail_after(5):
                while registry.lookup(handle.session_id) is not None:
                    await anyio.sleep(0.01)

        assert handle.transport.is_terminated
        assert metrics.get_stats()["session_events"]["expired"] == 1
