"""
Defines the data classes for a download job and the registry that tracks them.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional

from .constants import SET_URL_MARKERS, MANIFEST_SUFFIXES


class JobState(str, Enum):
    """Lifecycle states of a download job."""
    IDLE = 'Idle'
    PREPARING = 'Preparing'
    QUEUED = 'Queued'
    DOWNLOADING = 'Downloading'
    PAUSING = 'Pausing'
    PAUSED = 'Paused'
    RESUMING = 'Resuming'
    FINISHING = 'Finishing'
    DOWNLOADED = 'Downloaded'
    ERROR = 'Error'

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATES


TERMINAL_STATES = frozenset({JobState.IDLE, JobState.DOWNLOADED, JobState.ERROR})
ACTIVE_STATES = frozenset({
    JobState.PREPARING, JobState.QUEUED, JobState.DOWNLOADING, JobState.FINISHING,
    JobState.PAUSING, JobState.RESUMING,
})


class JobKind(str, Enum):
    SINGLE = 'single'
    SET = 'set'
    SET_RANGE = 'set-range'


@dataclass(frozen=True)
class DownloadRequest:
    """
    The parameters needed to issue, reissue or resume a download.

    Attributes:
        url: The media (or set manifest) URL.
        range_start: 1-based first item of a set range, if any.
        range_end: 1-based last item (inclusive) of a set range; None means "to the end".
        force: Download again even if the worker already has the file.
    """
    url: str
    range_start: Optional[int] = None
    range_end: Optional[int] = None
    force: bool = False

    @property
    def kind(self) -> JobKind:
        if self.range_start is not None:
            return JobKind.SET_RANGE
        if looks_like_set(self.url):
            return JobKind.SET
        return JobKind.SINGLE


def looks_like_set(url: str) -> bool:
    """Guesses whether a URL points at a set (playlist/album) rather than a single item."""
    lowered = url.lower().split('?', 1)[0]
    return any(marker in lowered for marker in SET_URL_MARKERS) or lowered.endswith(MANIFEST_SUFFIXES)


@dataclass
class TimerToken:
    """
    A scheduled callback owned by a job.

    The token guards a single state: it is cancelled as soon as the job
    leaves that state, so a late callback can never act on a recycled control.
    """
    name: str
    guards: JobState
    handle: asyncio.TimerHandle

    def cancel(self):
        self.handle.cancel()

    @property
    def cancelled(self) -> bool:
        return self.handle.cancelled()


@dataclass(eq=False)
class Job:
    """
    Represents a single tracked download.

    Attributes:
        id: Unique identifier assigned when the job was started.
        request: The parameters the job was started with.
        control: The UI control this job renders onto.
        state: The current lifecycle state.
        secondary_id: Identifier assigned later by the worker, if any.
        last_progress_at: Epoch seconds of the last progress-advancing message.
        timers: Pending timers keyed by name.
        stuck: Whether the "may be stuck" hint is currently shown.
    """
    id: str
    request: DownloadRequest
    control: Any
    state: JobState = JobState.PREPARING
    secondary_id: Optional[str] = None
    last_progress_at: Optional[float] = None
    timers: Dict[str, TimerToken] = field(default_factory=dict)
    stuck: bool = False

    @property
    def kind(self) -> JobKind:
        return self.request.kind

    def arm(self, token: TimerToken):
        """Takes ownership of a timer, replacing any pending timer of the same name."""
        previous = self.timers.pop(token.name, None)
        if previous:
            previous.cancel()
        self.timers[token.name] = token

    def disarm(self, name: str):
        token = self.timers.pop(name, None)
        if token:
            token.cancel()

    def supersede(self, new_state: JobState) -> List[str]:
        """Cancels every timer that guards a state other than `new_state`. Returns their names."""
        stale = [name for name, token in self.timers.items() if token.guards != new_state]
        for name in stale:
            self.timers.pop(name).cancel()
        return stale

    def cancel_timers(self):
        for token in self.timers.values():
            token.cancel()
        self.timers.clear()


class JobRegistry:
    """Mapping from job id to job record; the single source of truth for lifecycle state."""

    RETIRED_SECONDARY_LIMIT = 256

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._jobs: Dict[str, Job] = {}
        self._retired_secondary_ids: deque = deque(maxlen=self.RETIRED_SECONDARY_LIMIT)

    def create(self, job_id: str, request: DownloadRequest, control: Any) -> Optional[Job]:
        """
        Creates and stores a job in the Preparing state.

        Returns:
            The new job, or None if the id is already tracked.
        """
        if job_id in self._jobs:
            self.logger.error(f"Refusing to create job {job_id}: id already tracked.")
            return None
        job = Job(id=job_id, request=request, control=control)
        self._jobs[job_id] = job
        return job

    def get(self, job_id: Optional[str]) -> Optional[Job]:
        if job_id is None:
            return None
        return self._jobs.get(job_id)

    def all_matching(self, predicate: Callable[[Job], bool]) -> List[Job]:
        return [job for job in self._jobs.values() if predicate(job)]

    def remove(self, job_id: str) -> Optional[Job]:
        job = self._jobs.pop(job_id, None)
        if job:
            job.cancel_timers()
            if job.secondary_id is not None:
                self._retired_secondary_ids.append(job.secondary_id)
        return job

    def is_retired_secondary_id(self, secondary_id: Optional[str]) -> bool:
        """True if the secondary id belonged to a job that has since been removed."""
        return secondary_id is not None and secondary_id in self._retired_secondary_ids

    def for_control(self, control: Any) -> Optional[Job]:
        """Returns the job currently attached to a control, if any."""
        for job in self._jobs.values():
            if job.control is control:
                return job
        return None

    def find_by_secondary_id(self, secondary_id: str) -> List[Job]:
        return self.all_matching(lambda job: job.secondary_id == secondary_id)

    def active(self) -> List[Job]:
        return self.all_matching(lambda job: job.state.is_active)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._jobs

    def __len__(self) -> int:
        return len(self._jobs)

    def __iter__(self) -> Iterator[Job]:
        return iter(list(self._jobs.values()))
