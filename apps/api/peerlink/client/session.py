"""Signaling client: logs in, joins a room and feeds a ``Negotiator``."""
from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager, suppress
from typing import Any, AsyncIterator, Iterable

import httpx
import websockets
from websockets.asyncio.client import ClientConnection
from websockets.exceptions import ConnectionClosed, InvalidStatus

from ..core.errors import AuthError, AuthErrorReason, InvalidRequest, PeerlinkError
from ..schemas.signaling import (
    EVENT_ANSWER,
    EVENT_CONNECTED,
    EVENT_ERROR,
    EVENT_ICE_CANDIDATE,
    EVENT_JOIN_ROOM,
    EVENT_JOINED,
    EVENT_OFFER,
    EVENT_USER_CONNECTED,
    EVENT_USER_DISCONNECTED,
    server_event,
)
from .negotiation import ChannelFactory, Negotiator

logger = logging.getLogger(__name__)


async def login(base_url: str, username: str, *, client: httpx.AsyncClient | None = None) -> str:
    """Exchange a username for a signaling token."""

    if client is None:
        async with httpx.AsyncClient(base_url=base_url) as http:
            response = await http.post("/login", json={"username": username})
    else:
        response = await client.post("/login", json={"username": username})

    if response.status_code == 400:
        raise InvalidRequest(response.json().get("message", "Invalid login request"))
    response.raise_for_status()
    return response.json()["token"]


def signaling_url(base_url: str, token: str) -> str:
    url = httpx.URL(base_url)
    scheme = "wss" if url.scheme == "https" else "ws"
    return str(url.copy_with(scheme=scheme, path="/signaling", params={"token": token}))


class SignalingSession:
    """Handle lifespan of one authenticated signaling connection."""

    def __init__(
        self,
        ws: ClientConnection,
        channel_factory: ChannelFactory,
        *,
        local_tracks: Iterable[Any] = (),
    ) -> None:
        self._ws = ws
        self._channel_factory = channel_factory
        self._local_tracks = list(local_tracks)
        self.connection_id: str | None = None
        self.negotiator: Negotiator | None = None
        self._receive_task: asyncio.Task[None] | None = None

    async def __aenter__(self) -> "SignalingSession":
        greeting = json.loads(await self._ws.recv())
        if greeting.get("event") != EVENT_CONNECTED:
            raise PeerlinkError(f"Unexpected greeting: {greeting!r}")
        self.connection_id = greeting["data"]["connectionId"]
        self.negotiator = Negotiator(
            self.connection_id,
            self.send,
            self._channel_factory,
            local_tracks=self._local_tracks,
        )
        self._receive_task = asyncio.create_task(self._receive_loop())
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._receive_task:
            self._receive_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._receive_task
        if self.negotiator:
            await self.negotiator.close()
        await self._ws.close()

    async def send(self, message: dict) -> None:
        await self._ws.send(json.dumps(message))

    async def join_room(self, room_id: str) -> None:
        await self.send(server_event(EVENT_JOIN_ROOM, room_id))

    async def handle(self, message: dict) -> None:
        """Dispatch one server frame to the negotiator."""

        if self.negotiator is None:
            raise PeerlinkError("Session not entered")
        event = message.get("event")
        data = message.get("data")

        if event == EVENT_USER_CONNECTED:
            await self.negotiator.on_user_connected(data)
        elif event == EVENT_OFFER:
            await self.negotiator.on_offer(data)
        elif event == EVENT_ANSWER:
            await self.negotiator.on_answer(data)
        elif event == EVENT_ICE_CANDIDATE:
            await self.negotiator.on_ice_candidate(data)
        elif event == EVENT_USER_DISCONNECTED:
            await self.negotiator.on_user_disconnected(data)
        elif event == EVENT_JOINED:
            logger.info("Joined room %s", data.get("roomId") if isinstance(data, dict) else data)
        elif event == EVENT_ERROR:
            logger.warning("Relay reported an error: %s", data)
        else:
            logger.debug("Ignoring unknown event %r", event)

    async def _receive_loop(self) -> None:
        try:
            async for raw in self._ws:
                if isinstance(raw, bytes):
                    continue
                try:
                    message = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning("Dropping non-JSON frame from relay")
                    continue
                if not isinstance(message, dict):
                    logger.warning("Dropping unframed message from relay")
                    continue
                try:
                    await self.handle(message)
                except Exception:  # noqa: BLE001 - one bad frame must not stop negotiation
                    logger.exception("Failed to handle %r from relay", message.get("event"))
        except ConnectionClosed as exc:
            logger.warning("Signaling connection closed: %s", exc)


@asynccontextmanager
async def connect_session(
    base_url: str,
    username: str,
    channel_factory: ChannelFactory,
    *,
    room_id: str | None = None,
    local_tracks: Iterable[Any] = (),
) -> AsyncIterator[SignalingSession]:
    """Log in, open the signaling socket and optionally join ``room_id``."""

    token = await login(base_url, username)
    try:
        connection = websockets.connect(signaling_url(base_url, token))
        async with connection as ws:
            session = SignalingSession(ws, channel_factory, local_tracks=local_tracks)
            async with session:
                if room_id:
                    await session.join_room(room_id)
                yield session
    except InvalidStatus as exc:
        raise AuthError(AuthErrorReason.INVALID, "Relay refused the connection") from exc
