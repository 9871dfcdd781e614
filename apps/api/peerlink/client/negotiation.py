"""Per-peer offer/answer negotiation.

A ``Negotiator`` owns one ``NegotiationSession`` per remote connection id. Each
session drives a channel context (``PeerChannel``) through the offer/answer
exchange and buffers remote ICE candidates until the context can accept them.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Protocol

from ..core.errors import NegotiationError
from ..schemas.signaling import EVENT_ANSWER, EVENT_ICE_CANDIDATE, EVENT_OFFER, server_event

logger = logging.getLogger(__name__)

SendCallable = Callable[[dict], Awaitable[None]]
CandidateHandler = Callable[[Any], Awaitable[None]]


class NegotiationState(str, enum.Enum):
    IDLE = "idle"
    OFFER_CREATED = "offer-created"
    OFFER_SENT = "offer-sent"
    OFFER_RECEIVED = "offer-received"
    ANSWER_CREATED = "answer-created"
    ANSWER_SENT = "answer-sent"
    REMOTE_DESCRIPTION_SET = "remote-description-set"
    CONNECTED = "connected"
    FAILED = "failed"


_TRANSITIONS: dict[NegotiationState, frozenset[NegotiationState]] = {
    NegotiationState.IDLE: frozenset({NegotiationState.OFFER_CREATED, NegotiationState.OFFER_RECEIVED}),
    NegotiationState.OFFER_CREATED: frozenset({NegotiationState.OFFER_SENT}),
    NegotiationState.OFFER_SENT: frozenset({NegotiationState.REMOTE_DESCRIPTION_SET}),
    NegotiationState.OFFER_RECEIVED: frozenset({NegotiationState.ANSWER_CREATED}),
    NegotiationState.ANSWER_CREATED: frozenset({NegotiationState.ANSWER_SENT}),
    NegotiationState.ANSWER_SENT: frozenset({NegotiationState.REMOTE_DESCRIPTION_SET}),
    NegotiationState.REMOTE_DESCRIPTION_SET: frozenset({NegotiationState.CONNECTED}),
    NegotiationState.CONNECTED: frozenset(),
    NegotiationState.FAILED: frozenset(),
}


class PeerChannel(Protocol):
    """Channel context created by the platform's media-negotiation API."""

    async def create_offer(self) -> dict[str, Any]: ...

    async def create_answer(self) -> dict[str, Any]: ...

    async def set_local_description(self, description: dict[str, Any]) -> dict[str, Any]:
        """Apply a local description and return the one to send to the peer."""
        ...

    async def set_remote_description(self, description: dict[str, Any]) -> None: ...

    async def add_ice_candidate(self, candidate: Any) -> None: ...

    def add_track(self, track: Any) -> None: ...

    async def close(self) -> None: ...


# Called with the remote id and a handler for locally gathered candidates.
# Channels that embed every candidate in the local description never call it.
ChannelFactory = Callable[[str, CandidateHandler], PeerChannel]


def ice_ufrags(description: Any) -> frozenset[str]:
    """Return the ``a=ice-ufrag`` values of a session description."""

    sdp = description.get("sdp") if isinstance(description, dict) else description
    if not isinstance(sdp, str):
        return frozenset()
    return frozenset(
        line.strip()[len("a=ice-ufrag:"):]
        for line in sdp.splitlines()
        if line.strip().startswith("a=ice-ufrag:")
    )


def candidate_ufrag(candidate: Any) -> str | None:
    """Return the username fragment a remote candidate was gathered for, if known."""

    text = candidate
    if isinstance(candidate, dict):
        fragment = candidate.get("usernameFragment")
        if isinstance(fragment, str) and fragment:
            return fragment
        text = candidate.get("candidate")
    if not isinstance(text, str):
        return None
    tokens = text.split()
    for name, value in zip(tokens, tokens[1:]):
        if name == "ufrag":
            return value
    return None


@dataclass(slots=True)
class NegotiationSession:
    """Negotiation with a single remote connection."""

    local_id: str
    remote_id: str
    tracks: list[Any] = field(default_factory=list)
    state: NegotiationState = NegotiationState.IDLE
    channel: PeerChannel | None = None
    pending_candidates: list[Any] = field(default_factory=list)
    remote_description_applied: bool = False
    remote_ufrags: frozenset[str] = frozenset()
    history: list[NegotiationState] = field(default_factory=lambda: [NegotiationState.IDLE])

    def transition(self, state: NegotiationState) -> None:
        if state is NegotiationState.FAILED:
            allowed = self.state is not NegotiationState.FAILED
        else:
            allowed = state in _TRANSITIONS[self.state]
        if not allowed:
            raise NegotiationError(f"{self.remote_id}: cannot move from {self.state.value} to {state.value}")
        self.state = state
        self.history.append(state)

    async def add_remote_candidate(self, candidate: Any) -> None:
        """Apply a candidate, or hold it until the remote description is in place."""

        if self.channel is None or not self.remote_description_applied:
            self.pending_candidates.append(candidate)
            return
        await self.channel.add_ice_candidate(candidate)

    async def apply_remote_description(self, description: dict[str, Any]) -> None:
        if self.channel is None:
            raise NegotiationError(f"{self.remote_id}: no channel context")
        await self.channel.set_remote_description(description)
        self.remote_description_applied = True

        pending, self.pending_candidates = self.pending_candidates, []
        for candidate in pending:
            await self.channel.add_ice_candidate(candidate)


class Negotiator:
    """Drive one negotiation session per remote peer over a signaling link.

    Candidates arrive from the relay without a sender id. A candidate carrying a
    username fragment goes to the session whose remote description announced
    that fragment, and is held until such a description arrives. A candidate
    without one belongs to the most recently opened live session, or to the
    next session when none is open yet.
    """

    def __init__(
        self,
        local_id: str,
        send: SendCallable,
        channel_factory: ChannelFactory,
        *,
        local_tracks: Iterable[Any] = (),
    ) -> None:
        self.local_id = local_id
        self._send = send
        self._channel_factory = channel_factory
        self._local_tracks = list(local_tracks)
        self.sessions: dict[str, NegotiationSession] = {}
        self._latest: str | None = None
        self._unassigned_candidates: list[Any] = []

    def state_of(self, remote_id: str) -> NegotiationState | None:
        session = self.sessions.get(remote_id)
        return session.state if session else None

    async def on_user_connected(self, remote_id: str) -> None:
        """Start the caller path towards a newly joined peer."""

        existing = self.sessions.get(remote_id)
        if existing is not None and existing.state is not NegotiationState.FAILED:
            logger.debug("Already negotiating with %s", remote_id)
            return

        session = self._open_session(remote_id)
        try:
            offer = await session.channel.create_offer()
            local = await session.channel.set_local_description(offer)
            session.transition(NegotiationState.OFFER_CREATED)
            await self._send(
                server_event(EVENT_OFFER, {"target": remote_id, "caller": self.local_id, "sdp": local})
            )
            session.transition(NegotiationState.OFFER_SENT)
        except Exception as exc:  # noqa: BLE001 - any failure ends this negotiation
            await self._fail(session, exc)

    async def on_offer(self, payload: dict[str, Any]) -> None:
        """Answer an offer from ``payload['caller']``."""

        caller = payload.get("caller") if isinstance(payload, dict) else None
        if not caller:
            logger.warning("Ignoring offer without a caller id")
            return

        existing = self.sessions.get(caller)
        if existing is not None and existing.state is not NegotiationState.FAILED:
            await self._fail(existing, NegotiationError(f"{caller}: unexpected offer in {existing.state.value}"))
            return

        session = self._open_session(caller)
        try:
            sdp = payload.get("sdp")
            if not sdp:
                raise NegotiationError(f"{caller}: offer without a session description")
            self._claim_candidates(session, sdp)
            await session.apply_remote_description(sdp)
            session.transition(NegotiationState.OFFER_RECEIVED)
            answer = await session.channel.create_answer()
            local = await session.channel.set_local_description(answer)
            session.transition(NegotiationState.ANSWER_CREATED)
            await self._send(
                server_event(EVENT_ANSWER, {"target": caller, "caller": self.local_id, "sdp": local})
            )
            session.transition(NegotiationState.ANSWER_SENT)
            session.transition(NegotiationState.REMOTE_DESCRIPTION_SET)
            session.transition(NegotiationState.CONNECTED)
        except Exception as exc:  # noqa: BLE001 - any failure ends this negotiation
            await self._fail(session, exc)

    async def on_answer(self, payload: dict[str, Any]) -> None:
        """Complete the caller path with the answer from ``payload['caller']``."""

        caller = payload.get("caller") if isinstance(payload, dict) else None
        session = self.sessions.get(caller) if caller else None
        if session is None:
            logger.warning("Ignoring answer from unknown peer %s", caller)
            return

        try:
            if session.state is not NegotiationState.OFFER_SENT:
                raise NegotiationError(f"{caller}: unexpected answer in {session.state.value}")
            sdp = payload.get("sdp")
            if not sdp:
                raise NegotiationError(f"{caller}: answer without a session description")
            self._claim_candidates(session, sdp)
            await session.apply_remote_description(sdp)
            session.transition(NegotiationState.REMOTE_DESCRIPTION_SET)
            session.transition(NegotiationState.CONNECTED)
        except Exception as exc:  # noqa: BLE001 - any failure ends this negotiation
            await self._fail(session, exc)

    async def on_ice_candidate(self, candidate: Any) -> None:
        """Apply a received candidate, queueing it if no context can take it yet."""

        ufrag = candidate_ufrag(candidate)
        if ufrag is not None:
            session = next(
                (
                    live
                    for live in self.sessions.values()
                    if ufrag in live.remote_ufrags and live.state is not NegotiationState.FAILED
                ),
                None,
            )
        else:
            session = self.sessions.get(self._latest) if self._latest else None
        if session is None or session.state is NegotiationState.FAILED:
            self._unassigned_candidates.append(candidate)
            return
        try:
            await session.add_remote_candidate(candidate)
        except Exception as exc:  # noqa: BLE001 - any failure ends this negotiation
            await self._fail(session, exc)

    async def on_user_disconnected(self, remote_id: str) -> None:
        session = self.sessions.pop(remote_id, None)
        if session is None:
            return
        if self._latest == remote_id:
            self._latest = None
        await self._close_channel(session)

    async def close(self) -> None:
        sessions = list(self.sessions.values())
        self.sessions.clear()
        self._latest = None
        for session in sessions:
            await self._close_channel(session)

    def _open_session(self, remote_id: str) -> NegotiationSession:
        session = NegotiationSession(local_id=self.local_id, remote_id=remote_id, tracks=list(self._local_tracks))

        async def send_local_candidate(candidate: Any) -> None:
            if not candidate:
                return
            await self._send(server_event(EVENT_ICE_CANDIDATE, {"target": remote_id, "candidate": candidate}))

        session.channel = self._channel_factory(remote_id, send_local_candidate)
        for track in session.tracks:
            session.channel.add_track(track)

        held = []
        for candidate in self._unassigned_candidates:
            if candidate_ufrag(candidate) is None:
                session.pending_candidates.append(candidate)
            else:
                held.append(candidate)
        self._unassigned_candidates = held

        self.sessions[remote_id] = session
        self._latest = remote_id
        return session

    def _claim_candidates(self, session: NegotiationSession, description: Any) -> None:
        """Move held candidates matching ``description``'s ufrags into ``session``."""

        session.remote_ufrags = ice_ufrags(description)
        if not session.remote_ufrags:
            return
        held = []
        for candidate in self._unassigned_candidates:
            if candidate_ufrag(candidate) in session.remote_ufrags:
                session.pending_candidates.append(candidate)
            else:
                held.append(candidate)
        self._unassigned_candidates = held

    async def _fail(self, session: NegotiationSession, exc: Exception) -> None:
        if isinstance(exc, NegotiationError):
            logger.warning("Negotiation with %s failed: %s", session.remote_id, exc)
        else:
            logger.exception("Negotiation with %s failed", session.remote_id, exc_info=exc)
        if session.state is not NegotiationState.FAILED:
            session.transition(NegotiationState.FAILED)
        await self._close_channel(session)

    @staticmethod
    async def _close_channel(session: NegotiationSession) -> None:
        if session.channel is None:
            return
        channel, session.channel = session.channel, None
        try:
            await channel.close()
        except Exception:  # noqa: BLE001 - closing is best effort
            logger.exception("Closing channel for %s failed", session.remote_id)
