"""Authenticated signaling websocket."""
from __future__ import annotations

import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError

from ..core.errors import AuthError, RouteTargetNotFound
from ..schemas.signaling import (
    EVENT_CONNECTED,
    EVENT_ERROR,
    EVENT_JOINED,
    JoinRoomMessage,
    parse_client_message,
    server_event,
)
from ..services import authenticator
from ..services.signaling import SignalingConnection, SignalingRelay

logger = logging.getLogger(__name__)

router = APIRouter()


def _presented_token(websocket: WebSocket) -> str | None:
    token = websocket.query_params.get("token")
    if not token:
        auth_header = websocket.headers.get("Authorization")
        if auth_header and auth_header.startswith("Bearer "):
            token = auth_header.removeprefix("Bearer ").strip()
    return token or None


@router.websocket("/signaling")
async def signaling_endpoint(websocket: WebSocket) -> None:
    """Relay join-room, offer, answer and ice-candidate frames between peers."""

    relay: SignalingRelay = websocket.app.state.relay

    try:
        identity = authenticator.authenticate(_presented_token(websocket))
    except AuthError as exc:
        logger.info("Refused signaling connection (%s): %s", exc.reason.value, exc.detail)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=exc.detail)
        return

    await websocket.accept()
    connection = await relay.connect(identity, websocket.send_json)
    connection.deliver(
        server_event(
            EVENT_CONNECTED,
            {"connectionId": connection.connection_id, "username": identity.identifier},
        )
    )

    try:
        while True:
            frame = await websocket.receive()
            if frame["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(frame.get("code", status.WS_1000_NORMAL_CLOSURE), frame.get("reason"))
            raw = frame.get("text")
            if raw is None:
                logger.warning("Binary frame from %s", connection.connection_id)
                connection.deliver(server_event(EVENT_ERROR, {"detail": "Signaling frames must be text"}))
                continue
            await _dispatch(relay, connection, raw)
    except WebSocketDisconnect:
        pass
    finally:
        await relay.disconnect(connection.connection_id)


async def _dispatch(relay: SignalingRelay, connection: SignalingConnection, raw: str) -> None:
    try:
        message = parse_client_message(raw)
    except ValidationError as exc:
        logger.warning("Malformed frame from %s: %s", connection.connection_id, exc.errors(include_url=False))
        connection.deliver(server_event(EVENT_ERROR, {"detail": "Malformed signaling message"}))
        return

    if isinstance(message, JoinRoomMessage):
        notified = await relay.join(connection.connection_id, message.data)
        connection.deliver(server_event(EVENT_JOINED, {"roomId": message.data, "notified": notified}))
        return

    try:
        relay.route(message)
    except RouteTargetNotFound as exc:
        logger.warning("Dropping %s from %s: %s", message.event, connection.connection_id, exc)
