"""Tests for dlbridge.controller module: end-to-end lifecycle scenarios."""

import asyncio

import pytest

from dlbridge.config import Settings
from dlbridge.controller import DownloadController
from dlbridge.correlator import Reason
from dlbridge.exceptions import ChannelFailureError
from dlbridge.jobs import DownloadRequest, JobState
from dlbridge.lifecycle import ControlAction, Tone
from dlbridge.watchdog import COOLDOWN_TIMER, PREPARATION_TIMER

from conftest import FakeControl, drain

URL = "https://example.com/track.mp3"


async def start_downloading(controller, control, url=URL):
    """Starts a job and lets the acknowledgement move it to Downloading."""
    job_id = controller.start(DownloadRequest(url), control)
    await drain(controller)
    assert controller.registry.get(job_id).state == JobState.DOWNLOADING
    return job_id


class TestStart:
    """Tests for starting downloads."""

    @pytest.mark.asyncio
    async def test_start_renders_preparing_then_downloading(self, controller, channel):
        control = FakeControl()
        job_id = controller.start(DownloadRequest(URL), control)
        job = controller.registry.get(job_id)
        assert job.state == JobState.PREPARING
        assert control.last.label == 'Preparing...'
        assert PREPARATION_TIMER in job.timers

        await drain(controller)
        assert channel.sent_types() == ['START']
        assert job.state == JobState.DOWNLOADING
        assert control.last.action == ControlAction.PAUSE
        assert PREPARATION_TIMER not in job.timers
        await controller.close()

    @pytest.mark.asyncio
    async def test_busy_control_keeps_its_job(self, controller, channel):
        control = FakeControl()
        first = controller.start(DownloadRequest(URL), control)
        assert controller.start(DownloadRequest(URL), control) == first
        await drain(controller)
        assert channel.sent_types() == ['START']
        await controller.close()

    @pytest.mark.asyncio
    async def test_finished_control_is_recycled(self, controller, channel):
        control = FakeControl()
        first = await start_downloading(controller, control)
        channel.broadcast({'originalId': first, 'error': 'boom'})
        assert controller.registry.get(first).state == JobState.ERROR

        second = controller.on_control_clicked(control, DownloadRequest(URL))
        assert second != first
        assert first not in controller.registry
        assert controller.registry.get(second).state == JobState.PREPARING
        await controller.close()

    @pytest.mark.asyncio
    async def test_start_failure_shows_retry(self, controller, channel):
        control = FakeControl()
        channel.failure = ChannelFailureError('rejected')
        job_id = controller.start(DownloadRequest(URL), control)
        await drain(controller)
        assert controller.registry.get(job_id).state == JobState.ERROR
        assert control.last.action == ControlAction.RETRY
        assert control.last.tone == Tone.ERROR
        await controller.close()


class TestCompletion:
    """A completion with the job's id finishes it exactly once."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("state", [
        JobState.PREPARING, JobState.DOWNLOADING, JobState.PAUSING,
        JobState.PAUSED, JobState.RESUMING, JobState.FINISHING,
    ])
    async def test_explicit_completion_from_any_live_state(self, controller, channel, state):
        control = FakeControl()
        job_id = await start_downloading(controller, control)
        job = controller.registry.get(job_id)
        job.state = state

        channel.broadcast({'originalId': job_id, 'progress': 101})
        assert job.state == JobState.DOWNLOADED
        assert control.last.tone == Tone.SUCCESS
        assert COOLDOWN_TIMER in job.timers
        await controller.close()

    @pytest.mark.asyncio
    async def test_duplicate_completion_arms_cooldown_once(self, controller, channel):
        control = FakeControl()
        job_id = await start_downloading(controller, control)
        job = controller.registry.get(job_id)

        channel.broadcast({'originalId': job_id, 'progress': 101})
        token = job.timers[COOLDOWN_TIMER]
        renders = len(control.effects)
        channel.broadcast({'originalId': job_id, 'progress': 101})
        channel.broadcast({'completed': True})

        assert job.state == JobState.DOWNLOADED
        assert job.timers[COOLDOWN_TIMER] is token
        assert not token.cancelled
        assert len(control.effects) == renders
        await controller.close()

    @pytest.mark.asyncio
    async def test_cooldown_returns_control_to_idle(self, channel, tmp_path, clock):
        controller = DownloadController(channel, Settings(download_dir=tmp_path, success_cooldown=0.01), clock=clock)
        control = FakeControl()
        job_id = await start_downloading(controller, control)
        channel.broadcast({'originalId': job_id, 'progress': 101})
        await asyncio.sleep(0.05)
        assert job_id not in controller.registry
        assert control.last.label == 'Download'
        assert control.last.action == ControlAction.START
        await controller.close()

    @pytest.mark.asyncio
    async def test_partial_completion(self, controller, channel):
        control = FakeControl()
        job_id = await start_downloading(controller, control)
        channel.broadcast({'originalId': job_id, 'progress': 102})
        assert controller.registry.get(job_id).state == JobState.DOWNLOADED
        assert control.last.tone == Tone.PARTIAL
        await controller.close()

    @pytest.mark.asyncio
    async def test_late_completion_for_reset_job_is_dropped(self, controller, channel):
        control = FakeControl()
        job_id = await start_downloading(controller, control)
        controller.forget_control(control)
        resolution = controller.handle_status({'originalId': job_id, 'progress': 101})
        assert resolution.reason == Reason.UNKNOWN_JOB
        assert len(controller.registry) == 0
        await controller.close()


class TestCorrelation:
    """Messages that lack a usable id."""

    @pytest.mark.asyncio
    async def test_nothing_active_means_discard(self, controller):
        resolution = controller.handle_status({'progress': 101})
        assert not resolution.resolved
        assert len(controller.registry) == 0

    @pytest.mark.asyncio
    async def test_secondary_id_picks_the_right_job(self, controller, channel):
        a, b = FakeControl('a'), FakeControl('b')
        job_a = await start_downloading(controller, a, URL)
        job_b = await start_downloading(controller, b, URL + "?2")
        channel.broadcast({'originalId': job_a, 'secondaryId': 11, 'progress': 5})
        channel.broadcast({'originalId': job_b, 'secondaryId': 12, 'progress': 5})

        channel.broadcast({'secondaryId': '12', 'progress': 101})
        assert controller.registry.get(job_b).state == JobState.DOWNLOADED
        assert controller.registry.get(job_a).state == JobState.DOWNLOADING
        await controller.close()

    @pytest.mark.asyncio
    async def test_two_active_and_no_timestamp_mutates_nothing(self, controller, channel, clock):
        a, b = FakeControl('a'), FakeControl('b')
        job_a = await start_downloading(controller, a, URL)
        clock.now += 5
        job_b = await start_downloading(controller, b, URL + "?2")
        renders = (len(a.effects), len(b.effects))

        resolution = controller.handle_status({'progress': 101})
        assert resolution.reason == Reason.AMBIGUOUS_ACTIVE
        assert controller.registry.get(job_a).state == JobState.DOWNLOADING
        assert controller.registry.get(job_b).state == JobState.DOWNLOADING
        assert (len(a.effects), len(b.effects)) == renders
        await controller.close()

    @pytest.mark.asyncio
    async def test_timestamp_breaks_tie_by_recent_progress(self, controller, channel, clock):
        a, b = FakeControl('a'), FakeControl('b')
        job_a = await start_downloading(controller, a, URL)
        clock.now += 5
        job_b = await start_downloading(controller, b, URL + "?2")

        channel.broadcast({'progress': 101, 'timestamp': 1_700_000_000_000})
        assert controller.registry.get(job_b).state == JobState.DOWNLOADED
        assert controller.registry.get(job_a).state == JobState.DOWNLOADING
        await controller.close()

    @pytest.mark.asyncio
    async def test_sole_active_job_takes_identifier_less_progress(self, controller, channel):
        control = FakeControl()
        job_id = await start_downloading(controller, control)
        channel.broadcast({'secondaryId': '3', 'progress': 40})
        job = controller.registry.get(job_id)
        assert control.last.progress == 40
        assert job.secondary_id == '3'
        await controller.close()

    @pytest.mark.asyncio
    async def test_secondary_id_never_rebinds(self, controller, channel):
        control = FakeControl()
        job_id = await start_downloading(controller, control)
        channel.broadcast({'originalId': job_id, 'secondaryId': '3', 'progress': 1})
        channel.broadcast({'originalId': job_id, 'secondaryId': '4', 'progress': 2})
        assert controller.registry.get(job_id).secondary_id == '3'
        await controller.close()

    @pytest.mark.asyncio
    async def test_backup_completion_of_removed_job_leaves_others_alone(self, controller, channel):
        a, b = FakeControl('a'), FakeControl('b')
        job_a = await start_downloading(controller, a, URL)
        job_b = await start_downloading(controller, b, URL + "?2")
        channel.broadcast({'originalId': job_a, 'secondaryId': '1', 'progress': 5})
        channel.broadcast({'originalId': job_b, 'secondaryId': '2', 'progress': 5})
        controller.forget_control(a)
        renders = len(b.effects)

        resolution = controller.handle_status({'secondaryId': '1', 'completed': True, 'timestamp': 1})
        assert not resolution.resolved
        assert resolution.reason == Reason.RETIRED_SECONDARY
        assert controller.registry.get(job_b).state == JobState.DOWNLOADING
        assert len(b.effects) == renders
        await controller.close()

    @pytest.mark.asyncio
    async def test_foreign_secondary_id_never_lands_on_a_bound_job(self, controller, channel):
        control = FakeControl()
        job_id = await start_downloading(controller, control)
        channel.broadcast({'originalId': job_id, 'secondaryId': '2', 'progress': 5})

        resolution = controller.handle_status({'secondaryId': '7', 'completed': True, 'timestamp': 1})
        assert resolution.reason == Reason.NO_CANDIDATES
        assert controller.registry.get(job_id).state == JobState.DOWNLOADING
        await controller.close()

    @pytest.mark.asyncio
    async def test_error_without_identifier_is_discarded(self, controller, channel):
        control = FakeControl()
        job_id = await start_downloading(controller, control)

        resolution = controller.handle_status({'error': 'some other transfer failed'})
        assert resolution.reason == Reason.UNSCOPED_FAILURE
        assert controller.registry.get(job_id).state == JobState.DOWNLOADING
        assert control.last.tone == Tone.PROGRESS
        await controller.close()


class TestQueued:
    """Tests for starts the worker accepted but has not begun."""

    @pytest.mark.asyncio
    async def test_queue_acknowledgement_shows_queued(self, controller, channel):
        channel.response = {'success': True, 'message': 'Download added to queue'}
        control = FakeControl()
        job_id = controller.start(DownloadRequest(URL), control)
        await drain(controller)

        job = controller.registry.get(job_id)
        assert job.state == JobState.QUEUED
        assert job.last_progress_at is None
        assert PREPARATION_TIMER not in job.timers
        assert control.last.label == 'Queued...'
        assert not control.last.enabled
        await controller.close()

    @pytest.mark.asyncio
    async def test_queued_job_survives_sweep(self, controller, channel, clock):
        channel.response = {'success': True, 'message': 'Download added to queue'}
        control = FakeControl()
        job_id = controller.start(DownloadRequest(URL), control)
        await drain(controller)

        assert controller.watchdog.sweep(now=clock.now + 601) == []
        assert controller.registry.get(job_id).state == JobState.QUEUED
        await controller.close()

    @pytest.mark.asyncio
    async def test_first_progress_moves_queued_to_downloading(self, controller, channel, clock):
        channel.response = {'success': True, 'message': 'Download added to queue'}
        control = FakeControl()
        job_id = controller.start(DownloadRequest(URL), control)
        await drain(controller)
        clock.now += 900

        channel.broadcast({'originalId': job_id, 'secondaryId': '1', 'progress': 0})
        job = controller.registry.get(job_id)
        assert job.state == JobState.DOWNLOADING
        assert job.last_progress_at == clock.now
        assert controller.watchdog.sweep(now=clock.now + 1) == []
        await controller.close()

    @pytest.mark.asyncio
    async def test_click_while_queued_is_ignored(self, controller, channel):
        channel.response = {'success': True, 'message': 'Download added to queue'}
        control = FakeControl()
        job_id = controller.start(DownloadRequest(URL), control)
        await drain(controller)

        assert controller.on_control_clicked(control, DownloadRequest(URL)) == job_id
        await drain(controller)
        assert channel.sent_types() == ['START']
        await controller.close()


class TestPauseResume:
    """Tests for the pause/resume round trip."""

    @pytest.mark.asyncio
    async def test_round_trip(self, controller, channel):
        control = FakeControl()
        job_id = await start_downloading(controller, control)
        job = controller.registry.get(job_id)

        controller.on_control_clicked(control, DownloadRequest(URL))
        assert job.state == JobState.PAUSING
        await drain(controller)
        channel.broadcast({'originalId': job_id, 'status': 'Paused'})
        assert job.state == JobState.PAUSED
        assert control.last.action == ControlAction.RESUME

        channel.broadcast({'originalId': job_id, 'progress': 55})
        assert job.state == JobState.PAUSED

        assert controller.pause_or_resume(job_id).value == 'RESUME'
        assert job.state == JobState.RESUMING
        await drain(controller)
        renders = len(control.effects)
        channel.broadcast({'originalId': job_id, 'status': 'Resuming'})
        assert job.state == JobState.RESUMING
        assert len(control.effects) == renders
        assert channel.sent_types() == ['START', 'PAUSE', 'RESUME']

        channel.broadcast({'originalId': job_id, 'progress': 60})
        assert job.state == JobState.DOWNLOADING
        await controller.close()

    @pytest.mark.asyncio
    async def test_click_while_preparing_is_ignored(self, controller, channel):
        control = FakeControl()
        channel.hold = True
        job_id = controller.start(DownloadRequest(URL), control)
        assert controller.on_control_clicked(control, DownloadRequest(URL)) == job_id
        assert channel.sent_types() == []
        await asyncio.sleep(0)
        channel.fail_held()
        await drain(controller)
        await controller.close()


class TestTimeouts:
    """Tests for the preparation timeout and the staleness sweep."""

    @pytest.mark.asyncio
    async def test_preparation_timeout_reverts_to_idle(self, channel, tmp_path, clock):
        controller = DownloadController(channel, Settings(download_dir=tmp_path, preparation_timeout=0.01), clock=clock,
                                        id_factory=lambda: "A")
        control = FakeControl()
        channel.hold = True
        job_id = controller.start(DownloadRequest("x"), control)
        assert job_id == "A"

        await asyncio.sleep(0.05)
        assert "A" not in controller.registry
        assert control.last.action == ControlAction.START
        assert 'timed out' in control.last.tooltip

        channel.fail_held()
        await drain(controller)
        assert "A" not in controller.registry
        await controller.close()

    @pytest.mark.asyncio
    async def test_stale_download_is_flagged_then_completed(self, controller, channel, clock):
        control = FakeControl()
        job_id = await start_downloading(controller, control)
        job = controller.registry.get(job_id)
        started = clock.now

        assert controller.watchdog.sweep(now=started + 301) == [(job_id, 'stuck')]
        assert job.stuck
        assert control.last.tone == Tone.WARNING
        assert job.state == JobState.DOWNLOADING

        assert controller.watchdog.sweep(now=started + 601) == [(job_id, 'completed')]
        assert job.state == JobState.DOWNLOADED
        assert 'auto-detected' in control.last.tooltip
        await controller.close()

    @pytest.mark.asyncio
    async def test_progress_clears_stuck_flag(self, controller, channel, clock):
        control = FakeControl()
        job_id = await start_downloading(controller, control)
        job = controller.registry.get(job_id)
        controller.watchdog.sweep(now=clock.now + 400)
        assert job.stuck
        channel.broadcast({'originalId': job_id, 'progress': 10})
        assert not job.stuck
        assert control.last.tone == Tone.PROGRESS
        await controller.close()

    @pytest.mark.asyncio
    async def test_repeated_percent_keeps_download_alive(self, controller, channel, clock):
        control = FakeControl()
        job_id = await start_downloading(controller, control)
        job = controller.registry.get(job_id)
        channel.broadcast({'originalId': job_id, 'progress': 40})

        clock.now += 500
        channel.broadcast({'originalId': job_id, 'progress': 40})
        assert job.last_progress_at == clock.now
        assert controller.watchdog.sweep(now=clock.now + 200) == []
        assert job.state == JobState.DOWNLOADING
        await controller.close()


class TestBookkeeping:
    """Tests for registry housekeeping."""

    @pytest.mark.asyncio
    async def test_state_counts(self, controller, channel):
        await start_downloading(controller, FakeControl('a'))
        await start_downloading(controller, FakeControl('b'), URL + "?2")
        assert controller.state_counts()[JobState.DOWNLOADING] == 2
        await controller.close()

    @pytest.mark.asyncio
    async def test_close_forgets_everything(self, controller, channel):
        control = FakeControl()
        job_id = await start_downloading(controller, control)
        job = controller.registry.get(job_id)
        await controller.close()
        assert len(controller.registry) == 0
        assert job.timers == {}

    @pytest.mark.asyncio
    async def test_render_failure_is_contained(self, controller, channel):
        class BrokenControl:
            def render(self, effect):
                raise RuntimeError("widget destroyed")

        job_id = controller.start(DownloadRequest(URL), BrokenControl())
        await drain(controller)
        assert controller.registry.get(job_id).state == JobState.DOWNLOADING
        await controller.close()
