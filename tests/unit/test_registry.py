"""Unit tests for SessionRegistry and Subscriber."""

import asyncio

import pytest

from installer.models.events import SessionStateChanged
from installer.models.session import StatusSnapshot
from installer.models.status import SessionState
from installer.services.auth_guard import Verdict
from installer.services.orchestrator import InstallOrchestrator
from installer.services.registry import SessionRegistry

from stage_doubles import make_stage, no_parameters, wait_for_state

ALLOWED = Verdict(True, "ok")


def _event(seq: int) -> SessionStateChanged:
    return SessionStateChanged(seq=seq, session_id="s1", state=SessionState.RUNNING, summary="")


def _idle_snapshot() -> StatusSnapshot:
    return StatusSnapshot(state=SessionState.IDLE, session=None, last_seq=0)


async def _drain(subscriber) -> list:
    events = []
    while True:
        event = await subscriber.next_event(timeout=1)
        if event is None:
            return events
        events.append(event)


@pytest.mark.unit
class TestSessionRegistry:
    """Test attach/detach and fan-out."""

    def test_attach_returns_current_snapshot(self):
        """Attach hands back a Snapshot event at the current sequence."""
        registry = SessionRegistry(lambda: StatusSnapshot(state=SessionState.IDLE, last_seq=7))

        subscriber, snapshot = registry.attach(ALLOWED)

        assert snapshot.name == "Snapshot"
        assert snapshot.seq == 7
        assert snapshot.snapshot.state == SessionState.IDLE
        assert snapshot.session_id is None
        assert subscriber.connection.authorized is True
        assert registry.connections == [subscriber.connection]

    def test_attach_records_unauthorized_verdict(self):
        registry = SessionRegistry(_idle_snapshot)

        subscriber, _ = registry.attach(Verdict(False, "Missing or invalid access token"))

        assert subscriber.connection.authorized is False
        assert subscriber.connection.reason == "Missing or invalid access token"

    def test_attach_uses_given_connection_id(self):
        registry = SessionRegistry(_idle_snapshot)

        subscriber, _ = registry.attach(ALLOWED, "conn-1")
        other, _ = registry.attach(ALLOWED)

        assert subscriber.connection.connection_id == "conn-1"
        assert other.connection.connection_id not in ("", "conn-1")

    def test_detach_is_idempotent(self):
        """Detaching twice, or detaching an unknown id, is harmless."""
        registry = SessionRegistry(_idle_snapshot)
        subscriber, _ = registry.attach(ALLOWED)
        connection_id = subscriber.connection.connection_id

        registry.detach(connection_id)
        registry.detach(connection_id)
        registry.detach("unknown")

        assert registry.connections == []
        assert subscriber.closed

    @pytest.mark.asyncio
    async def test_broadcast_preserves_order(self):
        """Every subscriber sees events in generation order."""
        registry = SessionRegistry(_idle_snapshot)
        first, _ = registry.attach(ALLOWED)
        second, _ = registry.attach(ALLOWED)

        for seq in range(1, 6):
            registry.broadcast(_event(seq))
        registry.close_all()

        assert [e.seq for e in await _drain(first)] == [1, 2, 3, 4, 5]
        assert [e.seq for e in await _drain(second)] == [1, 2, 3, 4, 5]

    @pytest.mark.asyncio
    async def test_slow_subscriber_is_dropped(self):
        """An overflowing subscriber is dropped without affecting the others."""
        registry = SessionRegistry(_idle_snapshot, queue_size=3)
        slow, _ = registry.attach(ALLOWED)
        fast, _ = registry.attach(ALLOWED)

        received = []
        for seq in range(1, 5):
            registry.broadcast(_event(seq))
            received.append(await fast.next_event(timeout=1))

        assert [c.connection_id for c in registry.connections] == [fast.connection.connection_id]
        assert [e.seq for e in received] == [1, 2, 3, 4]
        # The dropped stream delivers what it already had, then ends
        assert [e.seq for e in await _drain(slow)] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_next_event_times_out(self):
        registry = SessionRegistry(_idle_snapshot)
        subscriber, _ = registry.attach(ALLOWED)

        with pytest.raises(asyncio.TimeoutError):
            await subscriber.next_event(timeout=0.01)

    @pytest.mark.asyncio
    async def test_pipeline_events_reach_all_subscribers(self, install_config):
        """Two front-ends attached to a live orchestrator see the same stream."""
        orchestrator = InstallOrchestrator(
            catalog=[make_stage("partition", 0), make_stage("format", 1)],
            parameters=no_parameters,
        )
        registry = SessionRegistry(orchestrator.snapshot)
        orchestrator.subscribe(registry.broadcast)
        first, _ = registry.attach(ALLOWED)
        second, _ = registry.attach(ALLOWED)

        await orchestrator.start_install(install_config)
        await wait_for_state(orchestrator, SessionState.SUCCEEDED)
        registry.close_all()

        first_events = [(e.seq, e.name) for e in await _drain(first)]
        second_events = [(e.seq, e.name) for e in await _drain(second)]
        assert first_events == second_events
        assert first_events[-1][1] == "InstallFinished"

    @pytest.mark.asyncio
    async def test_reattach_snapshot_matches_status(self, install_config):
        """A reconnecting front-end gets the same state as a status query."""
        orchestrator = InstallOrchestrator(
            catalog=[make_stage("partition", 0)],
            parameters=no_parameters,
        )
        registry = SessionRegistry(orchestrator.snapshot)
        orchestrator.subscribe(registry.broadcast)
        await orchestrator.start_install(install_config)
        await wait_for_state(orchestrator, SessionState.SUCCEEDED)

        subscriber, first = registry.attach(ALLOWED)
        registry.detach(subscriber.connection.connection_id)
        _, second = registry.attach(ALLOWED)

        assert first.snapshot == second.snapshot
        assert second.snapshot == orchestrator.snapshot()
