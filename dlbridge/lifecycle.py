"""
The download lifecycle state machine.

`transition(state, message)` is a pure function: it returns the next state and
the appearance the job's control should take, or None when the message must
not change anything. The controller applies the result; timers and registry
bookkeeping live there and in the watchdog, not here.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .constants import STATUS_PAUSED, STATUS_RESUMING
from .jobs import JobState
from .messages import Ack, Completion, Failure, Finishing, Progress, Queued, Status, StatusChange


class Tone(str, Enum):
    IDLE = 'idle'
    BUSY = 'busy'
    PROGRESS = 'progress'
    SUCCESS = 'success'
    PARTIAL = 'partial'
    WARNING = 'warning'
    ERROR = 'error'


class ControlAction(str, Enum):
    """What clicking the control does next."""
    START = 'start'
    PAUSE = 'pause'
    RESUME = 'resume'
    RETRY = 'retry'


class Outcome(str, Enum):
    SUCCESS = 'success'
    PARTIAL = 'partial'
    FAILED = 'failed'


@dataclass(frozen=True)
class ControlEffect:
    """How a control should look after a transition."""
    label: str
    tone: Tone = Tone.IDLE
    tooltip: Optional[str] = None
    progress: Optional[float] = None
    action: Optional[ControlAction] = None

    @property
    def enabled(self) -> bool:
        return self.action is not None


@dataclass(frozen=True)
class Transition:
    state: JobState
    effect: ControlEffect
    progressed: bool = False
    outcome: Optional[Outcome] = None


def idle_effect(tooltip: Optional[str] = None) -> ControlEffect:
    return ControlEffect('Download', Tone.IDLE, tooltip or 'Download', action=ControlAction.START)


def timeout_effect() -> ControlEffect:
    return idle_effect('Download request timed out. Click to try again.')


def stuck_effect(idle_seconds: float) -> ControlEffect:
    minutes = int(idle_seconds // 60)
    return ControlEffect(
        'Downloading... (may be stuck)', Tone.WARNING,
        f"No progress for {minutes} minutes. Click to pause/resume.",
        action=ControlAction.PAUSE,
    )


def _downloading(percent: float) -> ControlEffect:
    return ControlEffect(
        'Downloading... (Click to Pause)', Tone.PROGRESS,
        f"Downloading ({percent:.0f}%)", progress=percent, action=ControlAction.PAUSE,
    )


def begin() -> Transition:
    return Transition(JobState.PREPARING, ControlEffect('Preparing...', Tone.BUSY))


def request_pause() -> Transition:
    return Transition(JobState.PAUSING, ControlEffect('Pausing...', Tone.BUSY), progressed=True)


def request_resume() -> Transition:
    return Transition(JobState.RESUMING, ControlEffect('Resuming...', Tone.BUSY), progressed=True)


def completed(partial: bool = False, tooltip: Optional[str] = None) -> Transition:
    if partial:
        effect = ControlEffect(
            'Downloaded!', Tone.PARTIAL, tooltip or 'Download finished, but some items failed', progress=100,
        )
        return Transition(JobState.DOWNLOADED, effect, outcome=Outcome.PARTIAL)
    effect = ControlEffect('Downloaded!', Tone.SUCCESS, tooltip or 'Downloaded successfully', progress=100)
    return Transition(JobState.DOWNLOADED, effect, outcome=Outcome.SUCCESS)


def assume_completed() -> Transition:
    return completed(tooltip='Download likely completed (auto-detected)')


def failed(reason: str) -> Transition:
    effect = ControlEffect('ERROR', Tone.ERROR, reason or 'Download failed', action=ControlAction.RETRY)
    return Transition(JobState.ERROR, effect, outcome=Outcome.FAILED)


def channel_failure(reason: str) -> Transition:
    return failed(f"Could not reach the downloader: {reason}")


def transition(state: JobState, message: Status) -> Optional[Transition]:
    """
    Computes the next state for a job given a classified status message.

    Returns None for every message that must leave the job untouched: anything
    arriving after a terminal state, progress while (un)pausing, redundant
    status confirmations, late acks and noise. A queued job has not
    progressed yet, so entering Queued leaves its progress clock unset.
    """
    if state in (JobState.IDLE, JobState.DOWNLOADED, JobState.ERROR):
        return None

    if isinstance(message, Completion):
        return completed(partial=message.partial)

    if isinstance(message, StatusChange):
        if message.status == STATUS_PAUSED:
            if state in (JobState.DOWNLOADING, JobState.RESUMING, JobState.PAUSING):
                effect = ControlEffect('Paused (Click to Resume)', Tone.IDLE, 'Paused', action=ControlAction.RESUME)
                return Transition(JobState.PAUSED, effect)
            return None
        if message.status == STATUS_RESUMING and state == JobState.PAUSED:
            return request_resume()
        return None

    if isinstance(message, Finishing):
        if state in (JobState.PAUSED, JobState.PAUSING, JobState.RESUMING):
            return None
        return Transition(JobState.FINISHING, ControlEffect('Finishing...', Tone.PROGRESS, progress=100), progressed=True)

    if isinstance(message, Progress):
        if state in (JobState.PAUSING, JobState.PAUSED):
            return None
        return Transition(JobState.DOWNLOADING, _downloading(message.percent), progressed=True)

    if isinstance(message, Failure):
        return failed(message.error)

    if isinstance(message, Queued):
        if state == JobState.PREPARING:
            return Transition(JobState.QUEUED, ControlEffect('Queued...', Tone.BUSY, 'Waiting for a free download slot'))
        return None

    if isinstance(message, Ack):
        if state == JobState.PREPARING:
            return Transition(JobState.DOWNLOADING, _downloading(0), progressed=True)
        return None

    return None
