"""
Defines the DownloadController class, which orchestrates the download engine.
"""
import logging
import time
from collections import Counter
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

from . import lifecycle
from .channel import ChannelAdapter
from .config import Settings
from .correlator import Resolution, resolve
from .dispatcher import CommandDispatcher
from .jobs import DownloadRequest, Job, JobRegistry, JobState
from .lifecycle import ControlEffect, Transition
from .messages import Status, parse_status
from .watchdog import PREPARATION_TIMER, Watchdog


class Control(Protocol):
    """Anything that can display a job's progress."""

    def render(self, effect: ControlEffect) -> None:
        ...


class DownloadController:
    """
    The central controller for the download lifecycle.

    Owns the job registry and hands it to the dispatcher and the watchdog.
    Inbound status payloads flow through the correlator and the state machine
    here; the dispatcher and watchdog report back through `_on_engine_event`.
    """

    def __init__(self, channel: ChannelAdapter, config: Settings,
                 clock: Callable[[], float] = time.time,
                 id_factory: Optional[Callable[[], str]] = None):
        """
        Initializes the DownloadController.

        Args:
            channel: The transport to the background worker.
            config: The loaded application settings.
            clock: Returns the current time in epoch seconds.
            id_factory: Produces job identifiers; uuid4 when omitted.
        """
        self.channel = channel
        self.config = config
        self.clock = clock
        self.logger = logging.getLogger(__name__)

        self.registry = JobRegistry()
        self.watchdog = Watchdog(self.registry, config, self._on_engine_event, clock)
        dispatcher_kwargs: Dict[str, Any] = {'id_factory': id_factory} if id_factory else {}
        self.dispatcher = CommandDispatcher(self.registry, channel, self._on_engine_event, **dispatcher_kwargs)
        self.channel.on_status(self.handle_status)

    async def run_startup(self):
        """Opens the channel and starts the staleness sweep. Must run inside the event loop."""
        await self.channel.open()
        self.watchdog.start()

    async def close(self):
        """Stops timers and background sends, forgets all jobs and closes the channel."""
        self.logger.info("Shutting down download controller.")
        await self.watchdog.stop()
        await self.dispatcher.close()
        for job in self.registry:
            self.registry.remove(job.id)
        await self.channel.close()

    # --- User intent ---

    def start(self, request: DownloadRequest, control: Control) -> str:
        """
        Starts a download for a control, recycling the control's finished job first.

        Returns:
            The id of the job now attached to the control.
        """
        existing = self.registry.for_control(control)
        if existing is not None:
            if not existing.state.is_terminal:
                self.logger.warning(f"Control already busy with job {existing.id} ({existing.state.value}).")
                return existing.id
            self.reset(existing, lifecycle.idle_effect())
        return self.dispatcher.start(request, control)

    def pause_or_resume(self, job_id: str):
        return self.dispatcher.pause_or_resume(job_id)

    def on_control_clicked(self, control: Control, request: DownloadRequest) -> Optional[str]:
        """Does whatever a click on the control means in its job's current state."""
        job = self.registry.for_control(control)
        if job is None or job.state.is_terminal:
            return self.start(request, control)
        if job.state in (JobState.DOWNLOADING, JobState.RESUMING, JobState.PAUSED):
            self.pause_or_resume(job.id)
        else:
            self.logger.debug(f"Ignoring click on {job.id} while {job.state.value}.")
        return job.id

    def forget_control(self, control: Control):
        """Drops the job attached to a control that is going away."""
        job = self.registry.for_control(control)
        if job is not None:
            self.logger.info(f"Forgetting job {job.id} ({job.state.value}); its control was removed.")
            self.registry.remove(job.id)

    def state_counts(self) -> Counter:
        return Counter(job.state for job in self.registry)

    # --- Inbound messages ---

    def handle_status(self, payload: Dict[str, Any]) -> Resolution:
        """
        Reconciles one inbound status payload with the job it is about.

        Never raises for bad input: unresolvable, ambiguous and late messages
        are logged and dropped.
        """
        message = parse_status(payload)
        resolution = resolve(self.registry, message)
        job = self.registry.get(resolution.job_id)
        if job is None:
            return resolution

        self._bind_secondary_id(job, message)
        next_step = lifecycle.transition(job.state, message)
        if next_step is None:
            self.logger.debug(f"{type(message).__name__} for {job.id} leaves it in {job.state.value}.")
            return resolution
        self.apply(job, next_step)
        return resolution

    def _bind_secondary_id(self, job: Job, message: Status):
        secondary_id = message.secondary_id
        if secondary_id is None or job.secondary_id == secondary_id:
            return
        if job.secondary_id is not None:
            self.logger.warning(f"Job {job.id} already bound to secondary id {job.secondary_id}; ignoring {secondary_id}.")
            return
        holders = [other for other in self.registry.find_by_secondary_id(secondary_id)
                   if other is not job and not other.state.is_terminal]
        if holders:
            self.logger.warning(f"Secondary id {secondary_id} is held by live job {holders[0].id}; not rebinding to {job.id}.")
            return
        job.secondary_id = secondary_id
        self.logger.debug(f"Bound secondary id {secondary_id} to job {job.id}.")

    # --- Applying transitions ---

    def _on_engine_event(self, event: Tuple[str, Any]):
        """Handles events from the dispatcher and the watchdog."""
        msg_type, value = event
        handler_map = {
            'transition': self._handle_transition,
            'ack': self._handle_ack,
            'stuck': self._handle_stuck,
            'reset': self._handle_reset,
        }
        handler = handler_map.get(msg_type)
        if handler:
            handler(value)
        else:
            self.logger.warning(f"Unhandled engine event type: {msg_type}")

    def _handle_transition(self, value: Tuple[Job, Transition]):
        job, transition = value
        self.apply(job, transition)

    def _handle_ack(self, value: Tuple[Job, Dict[str, Any]]):
        job, response = value
        self.handle_status({**response, 'originalId': job.id})

    def _handle_stuck(self, value: Tuple[Job, float]):
        job, idle = value
        if self.registry.get(job.id) is job and job.state == JobState.DOWNLOADING:
            job.stuck = True
            self._render(job, lifecycle.stuck_effect(idle))

    def _handle_reset(self, value: Tuple[Job, ControlEffect]):
        job, effect = value
        self.reset(job, effect)

    def apply(self, job: Job, transition: Transition) -> bool:
        """
        Moves a tracked job to the transition's state and updates its control.

        Returns:
            False if the job is no longer tracked or already finished.
        """
        if self.registry.get(job.id) is not job:
            self.logger.debug(f"Dropping {transition.state.value} transition for untracked job {job.id}.")
            return False
        if job.state in (JobState.DOWNLOADED, JobState.ERROR):
            self.logger.debug(f"Job {job.id} already {job.state.value}; ignoring {transition.state.value}.")
            return False

        previous = job.state
        job.state = transition.state
        job.supersede(transition.state)
        if transition.progressed:
            job.last_progress_at = self.clock()
            job.stuck = False
        self._render(job, transition.effect)

        if transition.state == JobState.PREPARING and PREPARATION_TIMER not in job.timers:
            self.watchdog.arm_preparation(job)
        elif transition.state in (JobState.DOWNLOADED, JobState.ERROR):
            self.watchdog.arm_cooldown(job, transition.outcome)

        if previous != transition.state:
            self.logger.info(f"Job {job.id}: {previous.value} -> {transition.state.value}")
        return True

    def reset(self, job: Job, effect: Optional[ControlEffect] = None):
        """Removes a job from the registry and returns its control to the initial appearance."""
        if self.registry.get(job.id) is not job:
            return
        self.registry.remove(job.id)
        job.state = JobState.IDLE
        self._render(job, effect or lifecycle.idle_effect())
        self.logger.info(f"Job {job.id} reset to Idle.")

    def _render(self, job: Job, effect: ControlEffect):
        if job.control is None:
            return
        try:
            job.control.render(effect)
        except Exception:
            self.logger.exception(f"Could not update control for job {job.id}")
