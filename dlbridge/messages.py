"""
Defines the wire messages exchanged with the background worker.

Outbound commands are pydantic models. Inbound status payloads are validated
leniently with pydantic and then classified into exactly one tagged variant
(`Completion`, `StatusChange`, `Finishing`, `Progress`, `Failure`, `Queued`,
`Ack` or `Noise`), so the rest of the engine never has to poke at loosely-keyed dicts.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .constants import (
    PROGRESS_FINISHING, PROGRESS_SUCCESS, PROGRESS_PARTIAL, STATUS_PAUSED, STATUS_RESUMING,
    UNSET_IDENTIFIERS, RECOGNIZED_STATUS_KEYS, QUEUED_MARKER,
)

logger = logging.getLogger(__name__)


class CommandType(str, Enum):
    START = 'START'
    START_SET = 'START_SET'
    START_SET_RANGE = 'START_SET_RANGE'
    PAUSE = 'PAUSE'
    RESUME = 'RESUME'


class CommandMessage(BaseModel):
    """A command sent to the worker. `id` is optional here so the dispatcher can refuse it explicitly."""
    model_config = ConfigDict(populate_by_name=True)

    type: CommandType
    id: Optional[str] = None
    url: Optional[str] = None
    range_start: Optional[int] = Field(default=None, alias='rangeStart')
    range_end: Optional[int] = Field(default=None, alias='rangeEnd')
    force: bool = False
    timestamp: Optional[int] = None

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode='json', by_alias=True, exclude_none=True)


def is_valid_identifier(value: Any) -> bool:
    """True for a non-empty string id that is not one of the known placeholders."""
    return isinstance(value, str) and value.strip() not in UNSET_IDENTIFIERS


class StatusPayload(BaseModel):
    """Lenient schema for a raw status broadcast or command response."""
    model_config = ConfigDict(populate_by_name=True, extra='allow')

    id: Optional[str] = None
    original_id: Optional[str] = Field(default=None, alias='originalId')
    secondary_id: Optional[str] = Field(default=None, alias='secondaryId')
    progress: Optional[float] = None
    status: Optional[str] = None
    error: Optional[str] = None
    completed: Optional[bool] = None
    completion_without_id: Optional[bool] = Field(default=None, alias='completionWithoutId')
    success: Optional[bool] = None
    message: Optional[str] = None
    timestamp: Optional[float] = None
    original_message: Optional[Dict[str, Any]] = Field(default=None, alias='originalMessage')

    @field_validator('id', 'original_id', 'secondary_id', mode='before')
    @classmethod
    def coerce_identifier(cls, value: Any) -> Optional[str]:
        if value is None or isinstance(value, bool):
            return None
        if isinstance(value, (int, float)):
            return str(value)
        return value

    @field_validator('error', 'message', mode='before')
    @classmethod
    def coerce_text(cls, value: Any) -> Optional[str]:
        if value is None or isinstance(value, str):
            return value
        if isinstance(value, dict):
            return str(value.get('message') or value)
        return str(value)


@dataclass(frozen=True)
class StatusMessage:
    """Fields shared by every classified status message."""
    job_id: Optional[str] = None
    secondary_id: Optional[str] = None
    timestamp: Optional[float] = None
    field_count: int = 0
    without_id: bool = False

    @property
    def has_identifier(self) -> bool:
        return self.job_id is not None

    @property
    def is_minimal(self) -> bool:
        """A message with nothing to say about progress, status or errors."""
        return False


@dataclass(frozen=True)
class Completion(StatusMessage):
    partial: bool = False


@dataclass(frozen=True)
class StatusChange(StatusMessage):
    status: str = STATUS_PAUSED


@dataclass(frozen=True)
class Finishing(StatusMessage):
    pass


@dataclass(frozen=True)
class Progress(StatusMessage):
    percent: float = 0.0


@dataclass(frozen=True)
class Failure(StatusMessage):
    error: str = ''


@dataclass(frozen=True)
class Queued(StatusMessage):
    """The worker accepted the start but is waiting for a free transfer slot."""


@dataclass(frozen=True)
class Ack(StatusMessage):
    @property
    def is_minimal(self) -> bool:
        return True


@dataclass(frozen=True)
class Noise(StatusMessage):
    @property
    def is_minimal(self) -> bool:
        return True


Status = Union[Completion, StatusChange, Finishing, Progress, Failure, Queued, Ack, Noise]


def _explicit_id(payload: StatusPayload) -> Optional[str]:
    for candidate in (payload.original_id, payload.id):
        if is_valid_identifier(candidate):
            return candidate.strip()
    # A rejected command may come back with only the command echoed.
    if payload.error and payload.original_message:
        echoed = payload.original_message.get('id')
        if is_valid_identifier(echoed):
            return echoed.strip()
    return None


def parse_status(raw: Any) -> Status:
    """
    Classifies a raw inbound payload into a single tagged variant.

    Priority inside one message: completion, Paused, Resuming, finishing,
    percent progress, error, queued, ack. A completion outranks any status field
    carried in the same message.
    """
    if not isinstance(raw, dict):
        logger.debug(f"Ignoring non-object status payload: {raw!r}")
        return Noise()
    try:
        payload = StatusPayload.model_validate(raw)
    except ValidationError as e:
        logger.debug(f"Ignoring malformed status payload {raw!r}: {e.errors()[0]['msg']}")
        return Noise(field_count=len(raw))

    secondary = payload.secondary_id if is_valid_identifier(payload.secondary_id) else None
    common = dict(
        job_id=_explicit_id(payload),
        secondary_id=secondary,
        timestamp=payload.timestamp,
        field_count=sum(1 for key in raw if key in RECOGNIZED_STATUS_KEYS),
        without_id=bool(payload.completion_without_id),
    )

    progress = payload.progress
    if progress == PROGRESS_PARTIAL:
        return Completion(partial=True, **common)
    if progress == PROGRESS_SUCCESS or payload.completed is True or payload.completion_without_id is True:
        return Completion(**common)
    if payload.status == STATUS_PAUSED:
        return StatusChange(status=STATUS_PAUSED, **common)
    if payload.status == STATUS_RESUMING:
        return StatusChange(status=STATUS_RESUMING, **common)
    if progress is not None and PROGRESS_FINISHING <= progress < PROGRESS_SUCCESS:
        return Finishing(**common)
    if progress is not None and 0 <= progress < PROGRESS_FINISHING:
        return Progress(percent=progress, **common)
    if payload.error:
        return Failure(error=payload.error, **common)
    if payload.success is False:
        return Failure(error='Worker reported failure', **common)
    if payload.success and payload.message and QUEUED_MARKER in payload.message.lower():
        return Queued(**common)
    if common['field_count'] == 0:
        return Noise(**common)
    return Ack(**common)
