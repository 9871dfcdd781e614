"""aiortc-backed channel context for the negotiation state machine."""
from __future__ import annotations

import logging
from typing import Any, Callable, Sequence

from aiortc import (
    RTCConfiguration,
    RTCIceCandidate,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp

from ..core.config import settings
from .negotiation import CandidateHandler, ChannelFactory

logger = logging.getLogger(__name__)

TrackHandler = Callable[[str, Any], None]


def description_to_dict(description: RTCSessionDescription) -> dict[str, str]:
    return {"type": description.type, "sdp": description.sdp}


def candidate_from_payload(payload: Any) -> RTCIceCandidate | None:
    """Parse a browser-style ``RTCIceCandidateInit`` into an aiortc candidate.

    Returns ``None`` for the empty end-of-candidates marker.
    """

    if isinstance(payload, str):
        payload = {"candidate": payload}
    if not isinstance(payload, dict):
        raise ValueError(f"Unsupported ICE candidate payload: {payload!r}")

    text = payload.get("candidate") or ""
    if not text:
        return None
    candidate = candidate_from_sdp(text.removeprefix("candidate:"))
    candidate.sdpMid = payload.get("sdpMid")
    candidate.sdpMLineIndex = payload.get("sdpMLineIndex")
    return candidate


class AiortcChannel:
    """Wrap an ``RTCPeerConnection`` for one remote peer.

    aiortc gathers all of its candidates during ``setLocalDescription`` and
    embeds them in the description, so it takes no local candidate handler;
    remote trickled candidates are still applied.
    """

    def __init__(
        self,
        remote_id: str,
        *,
        ice_servers: Sequence[str] = (),
        on_track: TrackHandler | None = None,
    ) -> None:
        self.remote_id = remote_id
        self.pc = RTCPeerConnection(RTCConfiguration([RTCIceServer(url) for url in ice_servers]))

        if on_track is not None:

            @self.pc.on("track")
            def _on_track(track: Any) -> None:
                on_track(remote_id, track)

        @self.pc.on("connectionstatechange")
        async def _on_state_change() -> None:
            logger.info("Peer connection with %s is %s", remote_id, self.pc.connectionState)

    async def create_offer(self) -> dict[str, str]:
        return description_to_dict(await self.pc.createOffer())

    async def create_answer(self) -> dict[str, str]:
        return description_to_dict(await self.pc.createAnswer())

    async def set_local_description(self, description: dict[str, Any]) -> dict[str, str]:
        await self.pc.setLocalDescription(
            RTCSessionDescription(sdp=description["sdp"], type=description["type"])
        )
        return description_to_dict(self.pc.localDescription)

    async def set_remote_description(self, description: dict[str, Any]) -> None:
        await self.pc.setRemoteDescription(
            RTCSessionDescription(sdp=description["sdp"], type=description["type"])
        )

    async def add_ice_candidate(self, candidate: Any) -> None:
        parsed = candidate_from_payload(candidate)
        if parsed is None:
            return
        await self.pc.addIceCandidate(parsed)

    def add_track(self, track: Any) -> None:
        self.pc.addTrack(track)

    async def close(self) -> None:
        await self.pc.close()


def aiortc_channel_factory(
    *,
    ice_servers: Sequence[str] | None = None,
    on_track: TrackHandler | None = None,
) -> ChannelFactory:
    """Return a factory building ``AiortcChannel`` instances for a ``Negotiator``."""

    servers = list(settings.ice_servers if ice_servers is None else ice_servers)

    def factory(remote_id: str, on_local_candidate: CandidateHandler) -> AiortcChannel:
        # aiortc never trickles, so on_local_candidate is not wired.
        return AiortcChannel(remote_id, ice_servers=servers, on_track=on_track)

    return factory
