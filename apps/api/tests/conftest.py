from __future__ import annotations

from typing import Any

import pytest


class FakeChannel:
    """In-memory stand-in for a browser RTCPeerConnection."""

    def __init__(self, remote_id: str, on_local_candidate) -> None:
        self.remote_id = remote_id
        self.on_local_candidate = on_local_candidate
        self.local: dict | None = None
        self.remote: dict | None = None
        self.candidates: list[Any] = []
        self.tracks: list[Any] = []
        self.closed = False
        self.fail_on: str | None = None

    def _maybe_fail(self, name: str) -> None:
        if self.fail_on == name:
            raise RuntimeError(f"{name} exploded")

    async def create_offer(self) -> dict:
        self._maybe_fail("create_offer")
        return {"type": "offer", "sdp": f"offer-to-{self.remote_id}"}

    async def create_answer(self) -> dict:
        self._maybe_fail("create_answer")
        return {"type": "answer", "sdp": f"answer-to-{self.remote_id}"}

    async def set_local_description(self, description: dict) -> dict:
        self.local = description
        return description

    async def set_remote_description(self, description: dict) -> None:
        self._maybe_fail("set_remote_description")
        self.remote = description

    async def add_ice_candidate(self, candidate: Any) -> None:
        if self.remote is None:
            raise RuntimeError("remote description not set")
        self.candidates.append(candidate)

    def add_track(self, track: Any) -> None:
        self.tracks.append(track)

    async def close(self) -> None:
        self.closed = True


class ChannelRecorder:
    def __init__(self) -> None:
        self.channels: dict[str, FakeChannel] = {}
        self.fail_on: str | None = None

    def __call__(self, remote_id: str, on_local_candidate) -> FakeChannel:
        channel = FakeChannel(remote_id, on_local_candidate)
        channel.fail_on = self.fail_on
        self.channels[remote_id] = channel
        return channel


class Outbox:
    def __init__(self) -> None:
        self.sent: list[dict] = []

    async def send(self, message: dict) -> None:
        self.sent.append(message)


@pytest.fixture
def channels() -> ChannelRecorder:
    return ChannelRecorder()


@pytest.fixture
def outbox() -> Outbox:
    return Outbox()
