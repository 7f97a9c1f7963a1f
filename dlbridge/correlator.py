"""
Resolves inbound status messages to the job they are about.

The worker does not reliably echo the job id, so resolution runs through
tiers, stopping at the first one that gives an answer:

1. explicit id (`id`/`originalId`),
2. the worker-assigned secondary id,
3. the set of currently active jobs,
4. discard.

Each tier is a pure function of (candidate jobs, message) returning a
`Resolution` or None to fall through. Nothing here mutates a job.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

from .jobs import Job, JobRegistry
from .messages import Ack, Failure, Noise, Queued, Status

logger = logging.getLogger(__name__)


class Tier(str, Enum):
    EXPLICIT = 'explicit'
    SECONDARY = 'secondary'
    ACTIVE = 'active'
    NONE = 'none'


class Reason(str, Enum):
    EXPLICIT_ID = 'explicit id'
    UNKNOWN_JOB = 'id not tracked'
    SECONDARY_MATCH = 'secondary id match'
    AMBIGUOUS_SECONDARY = 'secondary id matches several jobs'
    RETIRED_SECONDARY = 'secondary id of a job that is no longer tracked'
    SOLE_ACTIVE = 'only active job'
    MOST_RECENT_ACTIVE = 'most recently active job'
    AMBIGUOUS_ACTIVE = 'several active jobs, no usable tie-break'
    NO_CANDIDATES = 'no active jobs'
    NOISE = 'minimal message with nothing to apply'
    UNSCOPED_FAILURE = 'error without an identifier'
    UNRESOLVABLE = 'no tier matched'


@dataclass(frozen=True)
class Resolution:
    job_id: Optional[str]
    tier: Tier
    reason: Reason

    @property
    def resolved(self) -> bool:
        return self.job_id is not None

    @property
    def ambiguous(self) -> bool:
        return self.reason in (Reason.AMBIGUOUS_SECONDARY, Reason.AMBIGUOUS_ACTIVE)


def match_explicit(known_ids: Sequence[str], message: Status) -> Optional[Resolution]:
    """Tier 1: trust the id the message carries, as long as we still track it."""
    if message.job_id is None or message.without_id:
        return None
    if message.job_id in known_ids:
        return Resolution(message.job_id, Tier.EXPLICIT, Reason.EXPLICIT_ID)
    return Resolution(None, Tier.EXPLICIT, Reason.UNKNOWN_JOB)


def match_secondary(jobs: Sequence[Job], message: Status) -> Optional[Resolution]:
    """Tier 2: find the single job bound to the message's secondary id."""
    if message.secondary_id is None:
        return None
    matches = [job for job in jobs if job.secondary_id == message.secondary_id]
    if len(matches) == 1:
        return Resolution(matches[0].id, Tier.SECONDARY, Reason.SECONDARY_MATCH)
    if len(matches) > 1:
        return Resolution(None, Tier.SECONDARY, Reason.AMBIGUOUS_SECONDARY)
    return None


def match_active(active_jobs: Sequence[Job], message: Status) -> Optional[Resolution]:
    """
    Tier 3: bind an identifier-less update to the job it can only be about.

    Only completion, status and progress updates qualify; an error that names
    no job could belong to any transfer and is discarded. A job already bound
    to a different secondary id is never a candidate. With several candidates
    the message must carry a timestamp, and the candidate with the single most
    recent progress wins; anything less certain is discarded.
    """
    if isinstance(message, (Ack, Queued, Noise)):
        if not active_jobs:
            return Resolution(None, Tier.ACTIVE, Reason.NOISE)
        return None
    if isinstance(message, Failure):
        return Resolution(None, Tier.ACTIVE, Reason.UNSCOPED_FAILURE)
    if message.secondary_id is not None:
        active_jobs = [job for job in active_jobs if job.secondary_id in (None, message.secondary_id)]
    if not active_jobs:
        return Resolution(None, Tier.ACTIVE, Reason.NO_CANDIDATES)
    if len(active_jobs) == 1:
        return Resolution(active_jobs[0].id, Tier.ACTIVE, Reason.SOLE_ACTIVE)
    if message.timestamp is None:
        return Resolution(None, Tier.ACTIVE, Reason.AMBIGUOUS_ACTIVE)

    stamped = [job for job in active_jobs if job.last_progress_at is not None]
    if not stamped:
        return Resolution(None, Tier.ACTIVE, Reason.AMBIGUOUS_ACTIVE)
    latest = max(job.last_progress_at for job in stamped)
    newest = [job for job in stamped if job.last_progress_at == latest]
    if len(newest) != 1:
        return Resolution(None, Tier.ACTIVE, Reason.AMBIGUOUS_ACTIVE)
    return Resolution(newest[0].id, Tier.ACTIVE, Reason.MOST_RECENT_ACTIVE)


def resolve(registry: JobRegistry, message: Status) -> Resolution:
    """Runs the tiers in order against the registry and returns the first answer."""
    jobs = list(registry)
    resolution = match_explicit([job.id for job in jobs], message)
    if resolution is None:
        resolution = match_secondary(jobs, message)
    if resolution is None and registry.is_retired_secondary_id(message.secondary_id):
        resolution = Resolution(None, Tier.SECONDARY, Reason.RETIRED_SECONDARY)
    if resolution is None:
        resolution = match_active([job for job in jobs if job.state.is_active], message)
    if resolution is None:
        resolution = Resolution(None, Tier.NONE, Reason.UNRESOLVABLE)
    _log_resolution(resolution, message)
    return resolution


def _log_resolution(resolution: Resolution, message: Status):
    kind = type(message).__name__
    if resolution.ambiguous:
        logger.warning(f"Discarding {kind} message: {resolution.reason.value} (secondary={message.secondary_id}).")
    elif resolution.reason == Reason.UNKNOWN_JOB:
        logger.info(f"{kind} message for untracked job {message.job_id}; likely a late delivery after reset.")
    elif resolution.reason == Reason.RETIRED_SECONDARY:
        logger.info(f"{kind} message for secondary id {message.secondary_id} of a job that was already removed.")
    elif resolution.reason == Reason.UNSCOPED_FAILURE:
        logger.warning(f"Discarding error that names no job: {getattr(message, 'error', '')}")
    elif not resolution.resolved:
        logger.debug(f"Discarding {kind} message: {resolution.reason.value}.")
    elif resolution.tier != Tier.EXPLICIT:
        logger.info(f"Matched {kind} message to {resolution.job_id} via {resolution.reason.value}.")
