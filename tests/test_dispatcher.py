"""Tests for dlbridge.dispatcher module."""

import asyncio

import pytest

from dlbridge.dispatcher import CommandDispatcher
from dlbridge.exceptions import ChannelFailureError, DuplicateJobError, MissingIdentifierError
from dlbridge.jobs import DownloadRequest, JobRegistry, JobState
from dlbridge.messages import CommandMessage, CommandType

from conftest import FakeChannel


@pytest.fixture
def events():
    return []


def make_dispatcher(channel, events, ids=("a", "b", "c")):
    ids = iter(ids)
    return CommandDispatcher(JobRegistry(), channel, events.append, id_factory=lambda: next(ids))


async def settle(dispatcher):
    while dispatcher.pending_sends:
        await asyncio.gather(*list(dispatcher.pending_sends), return_exceptions=True)


class TestStart:
    """Tests for starting jobs."""

    @pytest.mark.asyncio
    async def test_creates_job_and_sends_start(self, events):
        channel = FakeChannel()
        dispatcher = make_dispatcher(channel, events)
        job_id = dispatcher.start(DownloadRequest("https://example.com/x.mp3"), control=object())
        assert job_id == "a"
        assert dispatcher.registry.get("a").state == JobState.PREPARING
        assert events[0][0] == 'transition'
        assert events[0][1][1].state == JobState.PREPARING

        await settle(dispatcher)
        assert channel.sent[0]['type'] == 'START'
        assert channel.sent[0]['id'] == 'a'
        assert channel.sent[0]['url'] == 'https://example.com/x.mp3'
        assert isinstance(channel.sent[0]['timestamp'], int)
        assert events[-1][0] == 'ack'

    @pytest.mark.asyncio
    async def test_set_range_command(self, events):
        channel = FakeChannel()
        dispatcher = make_dispatcher(channel, events)
        dispatcher.start(DownloadRequest("https://example.com/list.m3u", range_start=3, range_end=7, force=True), object())
        await settle(dispatcher)
        sent = channel.sent[0]
        assert sent['type'] == 'START_SET_RANGE'
        assert (sent['rangeStart'], sent['rangeEnd'], sent['force']) == (3, 7, True)

    @pytest.mark.asyncio
    async def test_placeholder_id_refused(self, events):
        channel = FakeChannel()
        dispatcher = make_dispatcher(channel, events, ids=("undefined",))
        with pytest.raises(MissingIdentifierError):
            dispatcher.start(DownloadRequest("u"), object())
        assert len(dispatcher.registry) == 0
        assert channel.sent == []

    @pytest.mark.asyncio
    async def test_duplicate_id_refused(self, events):
        channel = FakeChannel()
        dispatcher = make_dispatcher(channel, events, ids=("a", "a"))
        dispatcher.start(DownloadRequest("u"), object())
        with pytest.raises(DuplicateJobError):
            dispatcher.start(DownloadRequest("u"), object())
        await settle(dispatcher)

    @pytest.mark.asyncio
    async def test_channel_failure_becomes_error_transition(self, events):
        channel = FakeChannel()
        channel.failure = ChannelFailureError("no response")
        dispatcher = make_dispatcher(channel, events)
        dispatcher.start(DownloadRequest("u"), object())
        await settle(dispatcher)
        kind, (job, result) = events[-1]
        assert kind == 'transition'
        assert result.state == JobState.ERROR
        assert "no response" in result.effect.tooltip


class TestSend:
    """Tests for the identifier guard on every command."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("bad_id", [None, "", "null", "undefined_completion"])
    async def test_refuses_missing_id(self, events, bad_id):
        channel = FakeChannel()
        dispatcher = make_dispatcher(channel, events)
        with pytest.raises(MissingIdentifierError):
            await dispatcher.send(CommandMessage(type=CommandType.PAUSE, id=bad_id))
        assert channel.sent == []

    @pytest.mark.asyncio
    async def test_keeps_given_timestamp(self, events):
        channel = FakeChannel()
        dispatcher = make_dispatcher(channel, events)
        await dispatcher.send(CommandMessage(type=CommandType.RESUME, id="a", timestamp=5))
        assert channel.sent[0]['timestamp'] == 5


class TestPauseOrResume:
    """Tests for the pause/resume toggle."""

    @pytest.mark.asyncio
    async def test_pause_from_downloading(self, events):
        channel = FakeChannel()
        dispatcher = make_dispatcher(channel, events)
        job = dispatcher.registry.create("a", DownloadRequest("u"), object())
        job.state = JobState.DOWNLOADING
        assert dispatcher.pause_or_resume("a") == CommandType.PAUSE
        assert events[-1][1][1].state == JobState.PAUSING
        await settle(dispatcher)
        assert channel.sent_types() == ['PAUSE']
        assert all(kind != 'ack' for kind, _ in events)

    @pytest.mark.asyncio
    async def test_resume_from_paused(self, events):
        channel = FakeChannel()
        dispatcher = make_dispatcher(channel, events)
        job = dispatcher.registry.create("a", DownloadRequest("u"), object())
        job.state = JobState.PAUSED
        assert dispatcher.pause_or_resume("a") == CommandType.RESUME
        await settle(dispatcher)
        assert channel.sent_types() == ['RESUME']

    @pytest.mark.asyncio
    @pytest.mark.parametrize("state", [JobState.PREPARING, JobState.PAUSING, JobState.FINISHING, JobState.DOWNLOADED])
    async def test_other_states_do_nothing(self, events, state):
        channel = FakeChannel()
        dispatcher = make_dispatcher(channel, events)
        job = dispatcher.registry.create("a", DownloadRequest("u"), object())
        job.state = state
        assert dispatcher.pause_or_resume("a") is None
        assert events == []
        assert dispatcher.pending_sends == set()

    def test_unknown_job(self, events):
        dispatcher = make_dispatcher(FakeChannel(), events)
        assert dispatcher.pause_or_resume("nope") is None
