"""In-memory WebRTC signaling relay.

Tracks live connections and room membership, and forwards offer / answer /
ice-candidate frames to exactly the addressed connection.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict
from uuid import uuid4

from ..core.errors import RouteTargetNotFound
from ..schemas.signaling import (
    EVENT_ICE_CANDIDATE,
    EVENT_USER_CONNECTED,
    EVENT_USER_DISCONNECTED,
    IceCandidateMessage,
    RoutableMessage,
    server_event,
)
from .credentials import Identity

logger = logging.getLogger(__name__)

SendCallable = Callable[[dict], Awaitable[None]]


@dataclass(slots=True, eq=False)
class SignalingConnection:
    """A live, authenticated signaling participant.

    Everything addressed to the connection goes through ``outbox`` and is
    written by a single writer task, which keeps delivery in routing order.
    """

    connection_id: str
    identity: Identity
    send: SendCallable
    outbox: asyncio.Queue[dict[str, Any]]
    rooms: set[str] = field(default_factory=set)
    writer: asyncio.Task[None] | None = None

    def deliver(self, message: dict[str, Any]) -> None:
        try:
            self.outbox.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning("Outbound queue full for %s; dropping %s", self.connection_id, message.get("event"))


class SignalingRelay:
    """Own the live-connection table and the room table.

    Created at application startup and closed at shutdown. All mutations are
    serialized by one lock; routing only reads the connection table and never
    awaits, so a slow peer cannot stall other connections.
    """

    def __init__(self, *, queue_size: int = 0, notify_on_leave: bool = False) -> None:
        self._connections: Dict[str, SignalingConnection] = {}
        self._rooms: Dict[str, set[str]] = {}
        self._lock = asyncio.Lock()
        self._queue_size = queue_size
        self._notify_on_leave = notify_on_leave

    async def connect(
        self,
        identity: Identity,
        send: SendCallable,
        *,
        connection_id: str | None = None,
    ) -> SignalingConnection:
        """Register an authenticated connection and start its writer."""

        connection = SignalingConnection(
            connection_id=connection_id or uuid4().hex,
            identity=identity,
            send=send,
            outbox=asyncio.Queue(maxsize=self._queue_size),
        )
        async with self._lock:
            if connection.connection_id in self._connections:
                raise ValueError(f"Connection id {connection.connection_id!r} already in use")
            self._connections[connection.connection_id] = connection
            connection.writer = asyncio.create_task(self._pump(connection))

        logger.info("Connection %s opened for %s", connection.connection_id, identity.identifier)
        return connection

    async def join(self, connection_id: str, room_id: str) -> list[str]:
        """Add a connection to a room and notify the members already in it.

        Returns the ids that were notified. Joining a room twice is a no-op.
        """

        async with self._lock:
            connection = self._connections.get(connection_id)
            if connection is None:
                raise RouteTargetNotFound(connection_id)

            members = self._rooms.setdefault(room_id, set())
            if connection_id in members:
                return []

            existing = sorted(members)
            members.add(connection_id)
            connection.rooms.add(room_id)

            notice = server_event(EVENT_USER_CONNECTED, connection_id)
            for member_id in existing:
                self._connections[member_id].deliver(notice)

        logger.info("Connection %s joined room %s (%d existing)", connection_id, room_id, len(existing))
        return existing

    def route(self, message: RoutableMessage) -> None:
        """Forward a point-to-point frame to its target connection.

        Any live connection may be addressed; room membership is only used for
        discovery. Candidates are delivered unwrapped.
        """

        target_id = message.data.target
        target = self._connections.get(target_id)
        if target is None:
            raise RouteTargetNotFound(target_id)

        if isinstance(message, IceCandidateMessage):
            frame = server_event(EVENT_ICE_CANDIDATE, message.data.candidate)
        else:
            frame = server_event(message.event, message.data.model_dump(mode="json"))
        target.deliver(frame)

    async def disconnect(self, connection_id: str) -> None:
        """Drop a connection from the live table and from every room it joined."""

        async with self._lock:
            connection = self._connections.pop(connection_id, None)
            if connection is None:
                return

            for room_id in connection.rooms:
                members = self._rooms.get(room_id)
                if members is None:
                    continue
                members.discard(connection_id)
                if not members:
                    self._rooms.pop(room_id, None)
                elif self._notify_on_leave:
                    notice = server_event(EVENT_USER_DISCONNECTED, connection_id)
                    for member_id in sorted(members):
                        self._connections[member_id].deliver(notice)
            connection.rooms.clear()

        await self._stop_writer(connection)
        logger.info("Connection %s closed", connection_id)

    def members(self, room_id: str) -> set[str]:
        return set(self._rooms.get(room_id, ()))

    def rooms(self) -> list[str]:
        return sorted(self._rooms)

    def is_live(self, connection_id: str) -> bool:
        return connection_id in self._connections

    async def flush(self) -> None:
        """Wait until every queued frame has been handed to its transport."""

        connections = list(self._connections.values())
        await asyncio.gather(*(connection.outbox.join() for connection in connections))

    async def close(self, *, drain_timeout: float = 1.0) -> None:
        """Stop all writers and forget every connection and room."""

        with suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self.flush(), timeout=drain_timeout)

        async with self._lock:
            connections = list(self._connections.values())
            self._connections.clear()
            self._rooms.clear()

        for connection in connections:
            await self._stop_writer(connection)

    async def _pump(self, connection: SignalingConnection) -> None:
        while True:
            message = await connection.outbox.get()
            try:
                await connection.send(message)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001 - transport already gone
                logger.debug("Send to %s failed: %s", connection.connection_id, exc)
            finally:
                connection.outbox.task_done()

    @staticmethod
    async def _stop_writer(connection: SignalingConnection) -> None:
        if connection.writer is None:
            return
        connection.writer.cancel()
        with suppress(asyncio.CancelledError):
            await connection.writer
        connection.writer = None
