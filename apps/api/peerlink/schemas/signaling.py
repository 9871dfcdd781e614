"""Wire contracts for the signaling websocket.

Every frame is a JSON object ``{"event": <name>, "data": <payload>}``. Inbound
frames are validated into a discriminated union before they reach the relay.
"""
from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

EVENT_CONNECTED = "connected"
EVENT_JOIN_ROOM = "join-room"
EVENT_JOINED = "joined"
EVENT_USER_CONNECTED = "user-connected"
EVENT_USER_DISCONNECTED = "user-disconnected"
EVENT_OFFER = "offer"
EVENT_ANSWER = "answer"
EVENT_ICE_CANDIDATE = "ice-candidate"
EVENT_ERROR = "error"


class SessionDescriptionPayload(BaseModel):
    """Offer or answer addressed to ``target`` on behalf of ``caller``."""

    model_config = ConfigDict(extra="allow")

    target: str = Field(..., min_length=1)
    caller: str = Field(..., min_length=1)
    sdp: Any = Field(..., description="Opaque session description")


class IceCandidatePayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    target: str = Field(..., min_length=1)
    candidate: Any = Field(..., description="Opaque ICE candidate")


class JoinRoomMessage(BaseModel):
    event: Literal["join-room"]
    data: str = Field(..., min_length=1, description="Room id")


class OfferMessage(BaseModel):
    event: Literal["offer"]
    data: SessionDescriptionPayload


class AnswerMessage(BaseModel):
    event: Literal["answer"]
    data: SessionDescriptionPayload


class IceCandidateMessage(BaseModel):
    event: Literal["ice-candidate"]
    data: IceCandidatePayload


RoutableMessage = Union[OfferMessage, AnswerMessage, IceCandidateMessage]
ClientMessage = Annotated[
    Union[JoinRoomMessage, OfferMessage, AnswerMessage, IceCandidateMessage],
    Field(discriminator="event"),
]

_client_message_adapter: TypeAdapter[ClientMessage] = TypeAdapter(ClientMessage)


def parse_client_message(raw: str | bytes) -> JoinRoomMessage | RoutableMessage:
    """Validate a raw websocket frame. Raises ``pydantic.ValidationError``."""

    return _client_message_adapter.validate_json(raw)


def server_event(event: str, data: Any) -> dict[str, Any]:
    """Build an outbound frame."""

    return {"event": event, "data": data}
