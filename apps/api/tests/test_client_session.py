"""Tests for the signaling client."""
from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace

import pytest
from httpx import ASGITransport, AsyncClient
from websockets.exceptions import ConnectionClosedError
from websockets.frames import Close

from peerlink.client import session as client_session
from peerlink.client.negotiation import NegotiationState
from peerlink.core.errors import InvalidRequest, PeerlinkError
from peerlink.main import app
from peerlink.services.authenticator import authenticate


class DummyWebSocket:
    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.closed = False
        self._messages: asyncio.Queue[str | bytes] = asyncio.Queue()

    async def send(self, data: str) -> None:
        self.sent.append(json.loads(data))

    async def recv(self) -> str | bytes:
        return await self._messages.get()

    async def close(self) -> None:
        self.closed = True

    def __aiter__(self) -> "DummyWebSocket":
        return self

    async def __anext__(self) -> str | bytes:
        return await self._messages.get()

    async def queue_message(self, payload: dict) -> None:
        await self._messages.put(json.dumps(payload))


class DummyConnect:
    def __init__(self, ws: DummyWebSocket) -> None:
        self.ws = ws
        self.url: str | None = None

    async def __aenter__(self) -> DummyWebSocket:
        return self.ws

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        return False


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


def test_signaling_url_carries_token():
    assert client_session.signaling_url("http://localhost:4000", "abc") == "ws://localhost:4000/signaling?token=abc"
    assert client_session.signaling_url("https://relay.example", "abc").startswith("wss://relay.example/signaling")


@pytest.mark.asyncio
async def test_login_returns_a_valid_token():
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as http:
        token = await client_session.login("http://testserver", "alice", client=http)

    assert authenticate(token).identifier == "alice"


@pytest.mark.asyncio
async def test_login_surfaces_invalid_request():
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as http:
        with pytest.raises(InvalidRequest) as exc:
            await client_session.login("http://testserver", "", client=http)

    assert exc.value.message == "Username required"


@pytest.mark.asyncio
async def test_connect_session_joins_and_negotiates(monkeypatch, channels):
    ws = DummyWebSocket()
    connect = DummyConnect(ws)

    def fake_connect(url: str, *args, **kwargs) -> DummyConnect:
        connect.url = url
        return connect

    async def fake_login(base_url: str, username: str, **kwargs) -> str:
        return "token-for-" + username

    monkeypatch.setattr(client_session, "websockets", SimpleNamespace(connect=fake_connect))
    monkeypatch.setattr(client_session, "login", fake_login)

    await ws.queue_message({"event": "connected", "data": {"connectionId": "a", "username": "alice"}})

    async with client_session.connect_session(
        "http://relay.test", "alice", channels, room_id="room-1"
    ) as signaling:
        assert signaling.connection_id == "a"
        assert ws.sent[0] == {"event": "join-room", "data": "room-1"}

        await ws.queue_message({"event": "joined", "data": {"roomId": "room-1", "notified": []}})
        await ws.queue_message({"event": "user-connected", "data": "b"})
        await _settle()

        assert ws.sent[1]["event"] == "offer"
        assert ws.sent[1]["data"]["target"] == "b"
        assert ws.sent[1]["data"]["caller"] == "a"

        await ws.queue_message(
            {"event": "answer", "data": {"target": "a", "caller": "b", "sdp": {"type": "answer", "sdp": "Y"}}}
        )
        await ws.queue_message({"event": "ice-candidate", "data": "candidate:remote"})
        await _settle()

        assert signaling.negotiator.state_of("b") is NegotiationState.CONNECTED
        assert channels.channels["b"].candidates == ["candidate:remote"]

    assert connect.url == "ws://relay.test/signaling?token=token-for-alice"
    assert ws.closed
    assert channels.channels["b"].closed


@pytest.mark.asyncio
async def test_session_rejects_unexpected_greeting(channels):
    ws = DummyWebSocket()
    await ws.queue_message({"event": "user-connected", "data": "b"})

    with pytest.raises(PeerlinkError):
        async with client_session.SignalingSession(ws, channels):
            pass


@pytest.mark.asyncio
async def test_session_ignores_errors_and_unknown_events(channels):
    ws = DummyWebSocket()
    await ws.queue_message({"event": "connected", "data": {"connectionId": "a", "username": "alice"}})

    async with client_session.SignalingSession(ws, channels) as signaling:
        await signaling.handle({"event": "error", "data": {"detail": "Malformed signaling message"}})
        await signaling.handle({"event": "mystery", "data": None})

        assert signaling.negotiator.sessions == {}
        assert ws.sent == []


@pytest.mark.asyncio
async def test_handle_requires_an_entered_session(channels):
    signaling = client_session.SignalingSession(DummyWebSocket(), channels)

    with pytest.raises(PeerlinkError):
        await signaling.handle({"event": "user-connected", "data": "b"})


@pytest.mark.asyncio
async def test_failing_frame_does_not_stop_the_receive_loop(channels, caplog):
    ws = DummyWebSocket()
    await ws.queue_message({"event": "connected", "data": {"connectionId": "a", "username": "alice"}})

    async with client_session.SignalingSession(ws, channels) as signaling:

        async def exploding_offer(payload: dict) -> None:
            raise RuntimeError("offer handler exploded")

        signaling.negotiator.on_offer = exploding_offer
        await ws.queue_message({"event": "offer", "data": {"target": "a", "caller": "c", "sdp": "X"}})
        await ws.queue_message(["not", "a", "frame"])
        await ws.queue_message({"event": "user-connected", "data": "b"})
        await _settle()

        assert ws.sent[0]["event"] == "offer"
        assert ws.sent[0]["data"]["target"] == "b"
        assert "Failed to handle 'offer' from relay" in caplog.text


class ClosingWebSocket(DummyWebSocket):
    async def __anext__(self) -> str | bytes:
        message = await self._messages.get()
        if message == "close":
            raise ConnectionClosedError(Close(1011, "internal error"), None)
        return message


@pytest.mark.asyncio
async def test_abnormal_close_ends_the_receive_loop_with_a_log(channels, caplog):
    ws = ClosingWebSocket()
    await ws.queue_message({"event": "connected", "data": {"connectionId": "a", "username": "alice"}})

    async with client_session.SignalingSession(ws, channels) as signaling:
        await ws._messages.put("close")
        await _settle()

        assert signaling._receive_task.done()
        assert signaling._receive_task.exception() is None

    assert "Signaling connection closed" in caplog.text
    assert ws.closed
