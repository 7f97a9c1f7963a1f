"""Pytest fixtures for dlbridge tests."""

import asyncio
import itertools
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from dlbridge.channel import ChannelAdapter
from dlbridge.config import Settings
from dlbridge.controller import DownloadController
from dlbridge.exceptions import ChannelFailureError
from dlbridge.lifecycle import ControlEffect


class FakeChannel(ChannelAdapter):
    """In-memory channel: records commands and answers them as configured."""

    def __init__(self):
        super().__init__()
        self.sent: List[Dict[str, Any]] = []
        self.response: Dict[str, Any] = {'success': True}
        self.failure: Optional[Exception] = None
        self.hold = False
        self._held: List[asyncio.Future] = []

    async def send_command(self, message: Dict[str, Any]) -> Dict[str, Any]:
        self.sent.append(message)
        if self.hold:
            future = asyncio.get_running_loop().create_future()
            self._held.append(future)
            return await future
        if self.failure is not None:
            raise self.failure
        return dict(self.response)

    def fail_held(self, reason: str = "timed out"):
        for future in self._held:
            if not future.done():
                future.set_exception(ChannelFailureError(reason))
        self._held.clear()

    def broadcast(self, payload: Dict[str, Any]):
        """Delivers an unsolicited status payload to the subscribers."""
        self._dispatch_status(payload)

    def sent_types(self) -> List[str]:
        return [message['type'] for message in self.sent]


class FakeControl:
    """Records every effect rendered onto it."""

    def __init__(self, name: str = 'control'):
        self.name = name
        self.effects: List[ControlEffect] = []

    def render(self, effect: ControlEffect):
        self.effects.append(effect)

    @property
    def last(self) -> ControlEffect:
        return self.effects[-1]

    def __repr__(self):
        return f"FakeControl({self.name})"


async def drain(controller: DownloadController):
    """Waits until every background send the dispatcher started has finished."""
    while controller.dispatcher.pending_sends:
        await asyncio.gather(*list(controller.dispatcher.pending_sends), return_exceptions=True)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(download_dir=tmp_path)


@pytest.fixture
def channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture
def clock():
    """A controllable clock; set `clock.now` to move time."""
    class Clock:
        now = 1_000.0

        def __call__(self) -> float:
            return self.now
    return Clock()


@pytest.fixture
def controller(channel: FakeChannel, settings: Settings, clock) -> DownloadController:
    ids = (f"job-{n}" for n in itertools.count(1))
    return DownloadController(channel, settings, clock=clock, id_factory=lambda: next(ids))
