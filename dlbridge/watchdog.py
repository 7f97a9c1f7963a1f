"""Timers that keep controls from hanging when the worker goes quiet."""
import asyncio
import logging
import time
from typing import Any, Callable, List, Optional, Tuple

from . import lifecycle
from .config import Settings
from .jobs import Job, JobRegistry, JobState, TimerToken
from .lifecycle import Outcome

PREPARATION_TIMER = 'preparation'
COOLDOWN_TIMER = 'cooldown'


class Watchdog:
    """
    Detects stalled or silently-completed jobs and resets finished ones.

    Three mechanisms, all reporting back through `event_callback`:

    * a one-shot preparation timeout per job, reverting an unacknowledged
      start to Idle;
    * a periodic staleness sweep over every Downloading job, first flagging
      the control as possibly stuck and later assuming silent completion;
    * a one-shot cool-down after a terminal state, after which the job is
      dropped and its control reverts.
    """

    def __init__(self, registry: JobRegistry, settings: Settings,
                 event_callback: Callable[[Tuple[str, Any]], None],
                 clock: Callable[[], float] = time.time):
        """
        Initializes the Watchdog.

        Args:
            registry: The job registry shared with the controller.
            settings: Timing thresholds.
            event_callback: Receives ('transition' | 'stuck' | 'reset', payload) events.
            clock: Returns the current time in epoch seconds.
        """
        self.registry = registry
        self.settings = settings
        self.event_callback = event_callback
        self.clock = clock
        self.logger = logging.getLogger(__name__)
        self.sweep_task: Optional[asyncio.Task] = None

    def arm_preparation(self, job: Job):
        self._schedule(job, PREPARATION_TIMER, JobState.PREPARING,
                       self.settings.preparation_timeout, self._on_preparation_timeout)

    def arm_cooldown(self, job: Job, outcome: Optional[Outcome]):
        """Schedules the reset that follows a terminal state. Errors only reset when configured to."""
        if outcome == Outcome.PARTIAL:
            delay = self.settings.partial_cooldown
        elif outcome == Outcome.FAILED:
            delay = self.settings.error_cooldown
        else:
            delay = self.settings.success_cooldown
        if delay is None:
            self.logger.debug(f"Job {job.id} stays in {job.state.value} until the user retries.")
            return
        self._schedule(job, COOLDOWN_TIMER, job.state, delay, self._on_cooldown)

    def _schedule(self, job: Job, name: str, guards: JobState, delay: float, callback: Callable[[Job], None]):
        loop = asyncio.get_running_loop()
        handle = loop.call_later(delay, callback, job)
        job.arm(TimerToken(name, guards, handle))

    def _is_current(self, job: Job, expected: JobState) -> bool:
        """True only if the registry still holds this exact job object in the expected state."""
        return self.registry.get(job.id) is job and job.state == expected

    def _on_preparation_timeout(self, job: Job):
        job.timers.pop(PREPARATION_TIMER, None)
        if not self._is_current(job, JobState.PREPARING):
            return
        self.logger.warning(f"Safety timeout for job {job.id}: still preparing after "
                            f"{self.settings.preparation_timeout:.0f}s. Reverting to idle.")
        self.event_callback(('reset', (job, lifecycle.timeout_effect())))

    def _on_cooldown(self, job: Job):
        job.timers.pop(COOLDOWN_TIMER, None)
        if self.registry.get(job.id) is not job or not job.state.is_terminal:
            return
        self.event_callback(('reset', (job, lifecycle.idle_effect())))

    def start(self):
        """Starts the periodic staleness sweep on the running loop."""
        if self.sweep_task and not self.sweep_task.done():
            return
        self.sweep_task = asyncio.create_task(self._run_sweeps(), name="Stale-Download-Checker")
        self.sweep_task.add_done_callback(self._handle_task_exception)
        self.logger.info("Started automatic stuck download checker.")

    async def stop(self):
        if self.sweep_task:
            self.sweep_task.cancel()
            await asyncio.gather(self.sweep_task, return_exceptions=True)
            self.sweep_task = None

    def _handle_task_exception(self, task: asyncio.Task) -> None:
        """Callback to log exceptions from the sweep task."""
        try:
            task.result()
        except asyncio.CancelledError:
            pass  # Expected
        except Exception:
            self.logger.exception(f"Exception in background task {task.get_name()}:")

    async def _run_sweeps(self):
        while True:
            await asyncio.sleep(self.settings.stale_check_interval)
            self.sweep()

    def sweep(self, now: Optional[float] = None) -> List[Tuple[str, str]]:
        """
        Checks every Downloading job for staleness.

        Returns:
            (job id, 'stuck' | 'completed') for every job acted upon.
        """
        now = self.clock() if now is None else now
        downloading = self.registry.all_matching(lambda job: job.state == JobState.DOWNLOADING)
        if not downloading:
            return []
        self.logger.debug(f"Running stuck download check for {len(downloading)} active download(s).")

        actions: List[Tuple[str, str]] = []
        for job in downloading:
            if job.last_progress_at is None:
                continue
            idle = now - job.last_progress_at
            if idle > self.settings.stale_complete_after:
                self.logger.info(f"Auto-completing download {job.id} due to long inactivity ({int(idle)}s).")
                self.event_callback(('transition', (job, lifecycle.assume_completed())))
                actions.append((job.id, 'completed'))
            elif idle > self.settings.stale_warning_after:
                self.logger.warning(f"Download {job.id} has been idle for {int(idle)}s.")
                self.event_callback(('stuck', (job, idle)))
                actions.append((job.id, 'stuck'))
        return actions
