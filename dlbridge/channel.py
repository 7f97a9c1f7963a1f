"""
The transport between the controller and the background worker.

A channel offers exactly two things: `send_command`, which resolves with the
worker's response (or raises `ChannelFailureError`), and `on_status`, which
subscribes to unsolicited broadcasts. Neither is ordered or reliable.
"""
import abc
import asyncio
import itertools
import json
import logging
import os
import sys
import subprocess
from typing import Any, Callable, Dict, List, Optional

from .exceptions import ChannelFailureError

StatusHandler = Callable[[Dict[str, Any]], Any]


class ChannelAdapter(abc.ABC):
    """Wraps the raw send/receive primitives of a transport."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self.status_handlers: List[StatusHandler] = []

    def on_status(self, handler: StatusHandler):
        """Registers a handler for inbound status payloads."""
        self.status_handlers.append(handler)

    def _dispatch_status(self, payload: Dict[str, Any]):
        for handler in list(self.status_handlers):
            try:
                handler(payload)
            except Exception:
                self.logger.exception(f"Status handler failed for payload {payload!r}")

    async def open(self):
        """Prepares the transport. The default implementation has nothing to do."""

    async def close(self):
        """Releases the transport. The default implementation has nothing to do."""

    @abc.abstractmethod
    async def send_command(self, message: Dict[str, Any]) -> Dict[str, Any]:
        """Sends a command and returns the worker's response."""


class SubprocessChannel(ChannelAdapter):
    """
    Talks to a worker process over newline-delimited JSON on stdin/stdout.

    Each command is tagged with a `seq` number; a line carrying `replyTo`
    resolves the matching pending send. Every other line is a broadcast.
    """

    def __init__(self, command: List[str], response_timeout: float = 15.0):
        """
        Initializes the SubprocessChannel.

        Args:
            command: The worker command line.
            response_timeout: Seconds to wait for a command response.
        """
        super().__init__()
        self.command = command
        self.response_timeout = response_timeout
        self.process: Optional[asyncio.subprocess.Process] = None
        self.reader_tasks: set[asyncio.Task] = set()
        self.pending: Dict[int, asyncio.Future] = {}
        self._seq = itertools.count(1)
        self.write_lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self.process is not None and self.process.returncode is None

    async def open(self):
        """Spawns the worker process and starts reading its output."""
        if self.is_running:
            return
        kwargs: Dict[str, Any] = {}
        if sys.platform == 'win32':
            kwargs['creationflags'] = subprocess.CREATE_NO_WINDOW
        self.logger.info(f"Starting worker: {' '.join(self.command)}")
        try:
            self.process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ, 'PYTHONUNBUFFERED': '1'},
                **kwargs
            )
        except (FileNotFoundError, OSError) as e:
            raise ChannelFailureError(f"Could not start worker: {e}") from e

        for coro, name in ((self._read_stdout(), "Worker-Stdout"), (self._read_stderr(), "Worker-Stderr")):
            task = asyncio.create_task(coro, name=name)
            self.reader_tasks.add(task)
            task.add_done_callback(self._task_done_callback)

    async def send_command(self, message: Dict[str, Any]) -> Dict[str, Any]:
        if not self.is_running:
            raise ChannelFailureError("Worker is not running.")
        assert self.process is not None and self.process.stdin is not None

        seq = next(self._seq)
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self.pending[seq] = future
        line = json.dumps({**message, 'seq': seq}) + '\n'
        try:
            async with self.write_lock:
                self.process.stdin.write(line.encode('utf-8'))
                await self.process.stdin.drain()
            response = await asyncio.wait_for(future, timeout=self.response_timeout)
        except asyncio.TimeoutError as e:
            raise ChannelFailureError(f"No response to {message.get('type')} within {self.response_timeout:.0f}s") from e
        except ConnectionError as e:
            raise ChannelFailureError(f"Worker pipe closed: {e}") from e
        finally:
            self.pending.pop(seq, None)

        if response.get('error'):
            raise ChannelFailureError(str(response['error']))
        return response

    async def _read_stdout(self):
        assert self.process is not None and self.process.stdout is not None
        while True:
            line_bytes = await self.process.stdout.readline()
            if not line_bytes:
                break
            self.handle_line(line_bytes.decode('utf-8', 'replace').strip())
        returncode = await self.process.wait()
        self.logger.warning(f"Worker exited with code {returncode}.")
        self._fail_pending(ChannelFailureError(f"Worker exited with code {returncode}"))

    async def _read_stderr(self):
        assert self.process is not None and self.process.stderr is not None
        while True:
            line_bytes = await self.process.stderr.readline()
            if not line_bytes:
                break
            self.logger.debug(f"[worker] {line_bytes.decode('utf-8', 'replace').rstrip()}")

    def handle_line(self, line: str):
        """Routes one line of worker output to a pending send or to the status handlers."""
        if not line:
            return
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            self.logger.debug(f"Ignoring non-JSON worker output: {line}")
            return
        if not isinstance(payload, dict):
            self.logger.debug(f"Ignoring non-object worker output: {line}")
            return

        reply_to = payload.pop('replyTo', None)
        future = self.pending.get(reply_to) if reply_to is not None else None
        if future is not None and not future.done():
            future.set_result(payload)
            return
        # Late responses fall through to the status handlers.
        self._dispatch_status(payload)

    def _fail_pending(self, error: Exception):
        for future in self.pending.values():
            if not future.done():
                future.set_exception(error)
        self.pending.clear()

    def _task_done_callback(self, task: asyncio.Task):
        self.reader_tasks.discard(task)
        try:
            task.result()
        except asyncio.CancelledError:
            pass # Normal cancellation
        except Exception:
            self.logger.exception(f"Exception in background task {task.get_name()}:")

    async def close(self):
        """Asks the worker to exit by closing its stdin, killing it if it lingers."""
        if self.process is None:
            return
        if self.process.returncode is None:
            try:
                if self.process.stdin:
                    self.process.stdin.close()
                await asyncio.wait_for(self.process.wait(), timeout=5)
            except (asyncio.TimeoutError, ProcessLookupError, OSError) as e:
                self.logger.warning(f"Graceful worker shutdown failed: {e}. Forcing termination...")
                try: self.process.kill()
                except (ProcessLookupError, OSError): pass # Already gone
        for task in list(self.reader_tasks):
            task.cancel()
        if self.reader_tasks:
            await asyncio.gather(*self.reader_tasks, return_exceptions=True)
        self._fail_pending(ChannelFailureError("Channel closed"))
        self.process = None
