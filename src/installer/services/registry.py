"""Session registry: attached front-end connections and event fan-out."""

import asyncio
import logging
import uuid
from typing import Callable, Optional

from installer.models.events import Event, SnapshotEvent
from installer.models.session import ClientConnection, StatusSnapshot
from installer.services.auth_guard import Verdict


class Subscriber:
    """Handle for one attached connection: a bounded, ordered event queue."""

    def __init__(self, connection: ClientConnection, maxsize: int):
        self.connection = connection
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def offer(self, event: Event) -> bool:
        """Queue an event without blocking. Returns False if the backlog is full."""
        if self.closed:
            return False
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            return False
        return True

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            # Wake a reader waiting on an empty queue
            self.queue.put_nowait(None)
        except asyncio.QueueFull:
            pass

    async def next_event(self, timeout: Optional[float] = None) -> Optional[Event]:
        """Next queued event, or None once the subscriber is closed and drained.

        Raises:
            asyncio.TimeoutError: If nothing arrives within ``timeout``
        """
        if self.closed and self.queue.empty():
            return None
        event = await asyncio.wait_for(self.queue.get(), timeout=timeout)
        return event


class SessionRegistry:
    """Tracks attached connections and broadcasts events to all of them.

    Delivery never blocks: a connection whose backlog overflows is dropped
    and its stream ends after the events already queued, so it can reattach
    and resync from a fresh snapshot.
    """

    def __init__(self, snapshot: Callable[[], StatusSnapshot], queue_size: int = 256):
        self.logger = logging.getLogger("installer.registry")
        self._snapshot = snapshot
        self._queue_size = queue_size
        self._subscribers: dict[str, Subscriber] = {}

    @property
    def connections(self) -> list[ClientConnection]:
        return [s.connection for s in self._subscribers.values()]

    def attach(
        self, verdict: Verdict, connection_id: Optional[str] = None
    ) -> tuple[Subscriber, SnapshotEvent]:
        """Register a connection and return it with the current snapshot.

        The snapshot is taken and the subscriber registered without yielding
        to the event loop, so no event can fall between the two.
        """
        connection = ClientConnection(
            connection_id=connection_id or uuid.uuid4().hex,
            authorized=verdict.allowed,
            reason=verdict.reason,
        )
        subscriber = Subscriber(connection, self._queue_size)
        snapshot = self._snapshot()
        self._subscribers[connection.connection_id] = subscriber
        self.logger.info(
            f"Connection {connection.connection_id} attached "
            f"(authorized={connection.authorized}, total={len(self._subscribers)})"
        )
        session_id = snapshot.session.session_id if snapshot.session else None
        return subscriber, SnapshotEvent(seq=snapshot.last_seq, session_id=session_id, snapshot=snapshot)

    def detach(self, connection_id: str) -> None:
        """Remove a connection. Safe to call repeatedly and on abrupt disconnect."""
        subscriber = self._subscribers.pop(connection_id, None)
        if subscriber is None:
            return
        subscriber.close()
        self.logger.info(
            f"Connection {connection_id} detached (total={len(self._subscribers)})"
        )

    def broadcast(self, event: Event) -> None:
        """Deliver an event to every attached connection, best-effort."""
        for connection_id, subscriber in list(self._subscribers.items()):
            if not subscriber.offer(event):
                self.logger.warning(
                    f"Connection {connection_id} fell behind at seq {event.seq}, dropping it"
                )
                self.detach(connection_id)

    def close_all(self) -> None:
        for connection_id in list(self._subscribers):
            self.detach(connection_id)
