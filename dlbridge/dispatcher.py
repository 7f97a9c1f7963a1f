"""Translates user intent into commands for the background worker."""
import asyncio
import logging
import time
import uuid
from typing import Any, Callable, Dict, Optional, Tuple

from . import lifecycle
from .channel import ChannelAdapter
from .exceptions import ChannelFailureError, DuplicateJobError, MissingIdentifierError
from .jobs import DownloadRequest, Job, JobKind, JobRegistry, JobState
from .messages import CommandMessage, CommandType, is_valid_identifier

START_COMMANDS = {
    JobKind.SINGLE: CommandType.START,
    JobKind.SET: CommandType.START_SET,
    JobKind.SET_RANGE: CommandType.START_SET_RANGE,
}


class CommandDispatcher:
    """
    Creates jobs and sends their commands over the channel.

    Every outbound command goes through `send`, which refuses to transmit a
    command whose id is missing, empty or a placeholder: such a command could
    never be correlated back to its control.
    """

    def __init__(self, registry: JobRegistry, channel: ChannelAdapter,
                 event_callback: Callable[[Tuple[str, Any]], None],
                 id_factory: Callable[[], str] = lambda: str(uuid.uuid4())):
        """
        Initializes the CommandDispatcher.

        Args:
            registry: The job registry shared with the controller.
            channel: The transport to the worker.
            event_callback: Receives ('transition' | 'ack', payload) events.
            id_factory: Produces fresh job identifiers.
        """
        self.registry = registry
        self.channel = channel
        self.event_callback = event_callback
        self.id_factory = id_factory
        self.logger = logging.getLogger(__name__)
        self.pending_sends: set[asyncio.Task] = set()

    def start(self, request: DownloadRequest, control: Any) -> str:
        """
        Creates a job in Preparing for `control` and sends its start command.

        Must be called from the running event loop. The command is delivered in
        the background; its acknowledgement (or failure) comes back as an event.

        Returns:
            The new job's id.

        Raises:
            MissingIdentifierError: If the id factory produced an unusable id.
            DuplicateJobError: If the id is already tracked.
        """
        command_type = START_COMMANDS[request.kind]
        job_id = self.id_factory()
        if not is_valid_identifier(job_id):
            raise MissingIdentifierError(command_type.value, job_id)

        job = self.registry.create(job_id, request, control)
        if job is None:
            raise DuplicateJobError(f"Job id {job_id} is already tracked.")

        self.logger.info(f"Starting {request.kind.value} download {job_id} for {request.url}")
        self.event_callback(('transition', (job, lifecycle.begin())))

        command = CommandMessage(
            type=command_type, id=job_id, url=request.url,
            range_start=request.range_start, range_end=request.range_end, force=request.force,
        )
        self._deliver_in_background(job, command, acknowledge=True)
        return job_id

    def pause_or_resume(self, job_id: str) -> Optional[CommandType]:
        """
        Toggles a running job between paused and running.

        Returns:
            The command sent, or None if the job's state does not allow either.
        """
        job = self.registry.get(job_id)
        if job is None:
            self.logger.warning(f"Pause/Resume: no tracked job {job_id}.")
            return None

        if job.state in (JobState.DOWNLOADING, JobState.RESUMING):
            self.logger.info(f"User paused {job_id} (was {job.state.value}).")
            self.event_callback(('transition', (job, lifecycle.request_pause())))
            command_type = CommandType.PAUSE
        elif job.state == JobState.PAUSED:
            self.logger.info(f"User resumed {job_id}.")
            self.event_callback(('transition', (job, lifecycle.request_resume())))
            command_type = CommandType.RESUME
        else:
            self.logger.warning(f"Pause/Resume clicked for {job_id} in state {job.state.value}. No action taken.")
            return None

        self._deliver_in_background(job, CommandMessage(type=command_type, id=job_id), acknowledge=False)
        return command_type

    async def send(self, command: CommandMessage) -> Dict[str, Any]:
        """
        Sends a single command, filling in its timestamp.

        Raises:
            MissingIdentifierError: If the command carries no usable id.
            ChannelFailureError: If the channel could not deliver it or the worker rejected it.
        """
        if not is_valid_identifier(command.id):
            self.logger.error(f"Prevented sending {command.type.value} with missing id.")
            raise MissingIdentifierError(command.type.value, command.id)
        if command.timestamp is None:
            command = command.model_copy(update={'timestamp': int(time.time() * 1000)})
        self.logger.debug(f"Sending command: {command.to_wire()}")
        return await self.channel.send_command(command.to_wire())

    def _deliver_in_background(self, job: Job, command: CommandMessage, acknowledge: bool):
        task = asyncio.create_task(self._deliver(job, command, acknowledge), name=f"Send-{command.type.value}-{job.id[:8]}")
        self.pending_sends.add(task)
        task.add_done_callback(self._task_done_callback)

    async def _deliver(self, job: Job, command: CommandMessage, acknowledge: bool):
        try:
            response = await self.send(command)
        except ChannelFailureError as e:
            self.logger.error(f"{command.type.value} for {job.id} failed: {e}")
            if self.registry.get(job.id) is job:
                self.event_callback(('transition', (job, lifecycle.channel_failure(str(e)))))
            return
        self.logger.info(f"{command.type.value} response for {job.id}: {response}")
        if acknowledge:
            self.event_callback(('ack', (job, response)))

    def _task_done_callback(self, task: asyncio.Task):
        """Removes a finished send from the pending set and logs unexpected exceptions."""
        self.pending_sends.discard(task)
        try:
            task.result()
        except asyncio.CancelledError:
            pass  # Normal cancellation
        except Exception:
            self.logger.exception(f"Exception in background task {task.get_name()}:")

    async def close(self):
        for task in list(self.pending_sends):
            task.cancel()
        if self.pending_sends:
            await asyncio.gather(*self.pending_sends, return_exceptions=True)
