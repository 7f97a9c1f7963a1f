"""
The background worker: fetches files on behalf of the desktop app.

Runs as a separate process (`python -m dlbridge.worker`) and speaks
newline-delimited JSON: commands arrive on stdin, responses (tagged with
`replyTo`) and status broadcasts leave on stdout, logs go to stderr.
"""
import argparse
import asyncio
import itertools
import json
import logging
import re
import sys
import time
import urllib.parse
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiofiles
import aiohttp

from ._version import __version__
from .constants import (
    REQUEST_HEADERS, SOCK_READ_TIMEOUT, PROGRESS_FINISHING, PROGRESS_SUCCESS, PROGRESS_PARTIAL,
    STATUS_PAUSED, STATUS_RESUMING,
)

START_TYPES = {'START', 'START_SET', 'START_SET_RANGE'}
INVALID_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')


def parse_manifest(text: str) -> List[str]:
    """Returns the entry URLs of a set manifest: one per line, blank lines and '#' comments skipped."""
    return [line.strip() for line in text.splitlines() if line.strip() and not line.strip().startswith('#')]


def select_range(entries: List[str], start: Optional[int], end: Optional[int]) -> List[str]:
    """Slices a 1-based inclusive range out of a set; a missing end means 'to the last entry'."""
    first = max(start or 1, 1)
    last = len(entries) if end is None else min(end, len(entries))
    if last < first:
        return []
    return entries[first - 1:last]


def filename_for(url: str, fallback: str) -> str:
    """Derives a safe local file name from the last path segment of a URL."""
    name = Path(urllib.parse.unquote(urllib.parse.urlparse(url).path)).name
    name = INVALID_FILENAME_CHARS.sub('_', name).strip(' .')
    return name or fallback


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class Transfer:
    """A download the worker is currently responsible for."""
    job_id: str
    command: Dict[str, Any]
    secondary_id: str
    running: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task] = None
    last_percent: int = -1
    last_emit_at: float = 0.0


class Worker:
    """Executes download commands and reports progress as JSON lines."""
    DOWNLOAD_RETRY_ATTEMPTS = 3
    CHUNK_SIZE = 64 * 1024
    HEARTBEAT_INTERVAL = 30.0  # seconds between repeated progress reports while bytes keep arriving

    def __init__(self, output_dir: Path, max_concurrent: int, emit: Callable[[Dict[str, Any]], None]):
        """
        Initializes the Worker.

        Args:
            output_dir: Where finished files are written.
            max_concurrent: How many transfers may run at once.
            emit: Writes one outbound payload.
        """
        self.output_dir = output_dir
        self.emit = emit
        self.logger = logging.getLogger(__name__)
        self.semaphore = asyncio.Semaphore(max_concurrent)
        self.transfers: Dict[str, Transfer] = {}
        self.session: Optional[aiohttp.ClientSession] = None
        self._secondary_ids = itertools.count(1)

    async def run(self):
        """Reads commands until stdin closes, then cancels outstanding transfers."""
        self.logger.info(f"Worker {__version__} ready. Writing to {self.output_dir}")
        async with aiohttp.ClientSession(headers=REQUEST_HEADERS) as session:
            self.session = session
            try:
                while True:
                    line = await asyncio.to_thread(sys.stdin.readline)
                    if not line:
                        break
                    await self.handle_line(line)
            finally:
                await self.shutdown()

    async def handle_line(self, line: str):
        line = line.strip()
        if not line:
            return
        try:
            command = json.loads(line)
        except json.JSONDecodeError:
            self.logger.warning(f"Ignoring malformed command line: {line[:200]}")
            return
        if not isinstance(command, dict):
            self.logger.warning(f"Ignoring non-object command: {line[:200]}")
            return
        response = await self.handle_command(command)
        if command.get('seq') is not None:
            self.emit({**response, 'replyTo': command['seq']})

    async def handle_command(self, command: Dict[str, Any]) -> Dict[str, Any]:
        """Executes one command and returns the response payload."""
        command_type, job_id = command.get('type'), command.get('id')
        if not job_id:
            return {'error': f"Command {command_type} is missing its id", 'originalMessage': command}

        if command_type in START_TYPES:
            if job_id in self.transfers:
                return {'originalId': job_id, 'error': 'Download already in progress'}
            if not command.get('url'):
                return {'originalId': job_id, 'error': 'No URL given'}
            transfer = Transfer(job_id, command, str(next(self._secondary_ids)))
            transfer.running.set()
            transfer.task = asyncio.create_task(self._run_transfer(transfer), name=f"Transfer-{job_id[:8]}")
            transfer.task.add_done_callback(self._task_done_callback)
            self.transfers[job_id] = transfer
            self.logger.info(f"Queued {command_type} {job_id}: {command['url']}")
            return {'originalId': job_id, 'success': True, 'message': 'Download added to queue'}

        transfer = self.transfers.get(job_id)
        if transfer is None:
            return {'originalId': job_id, 'error': 'Unknown download'}
        if command_type == 'PAUSE':
            transfer.running.clear()
            self.emit({'originalId': job_id, 'status': STATUS_PAUSED, 'timestamp': now_ms()})
            return {'originalId': job_id, 'success': True}
        if command_type == 'RESUME':
            self.emit({'originalId': job_id, 'status': STATUS_RESUMING, 'timestamp': now_ms()})
            transfer.running.set()
            return {'originalId': job_id, 'success': True}
        return {'originalId': job_id, 'error': f"Unsupported command type {command_type!r}"}

    async def _run_transfer(self, transfer: Transfer):
        command = transfer.command
        try:
            async with self.semaphore:
                self._report(transfer, 0, force=True)
                if command['type'] == 'START':
                    await self._download_single(transfer)
                    final = PROGRESS_SUCCESS
                else:
                    final = await self._download_set(transfer)
            self.emit({'originalId': transfer.job_id, 'progress': PROGRESS_FINISHING, 'timestamp': now_ms()})
            self.emit({'originalId': transfer.job_id, 'progress': final, 'timestamp': now_ms()})
            # Trailing copy without the primary id, for listeners that lost the one above.
            self.emit({'secondaryId': transfer.secondary_id, 'completed': True, 'timestamp': now_ms()})
        except (aiohttp.ClientError, OSError, ValueError) as e:
            self.logger.error(f"Transfer {transfer.job_id} failed: {e}")
            self.emit({'originalId': transfer.job_id, 'error': str(e) or type(e).__name__, 'timestamp': now_ms()})
        finally:
            self.transfers.pop(transfer.job_id, None)

    def _report(self, transfer: Transfer, percent: float, force: bool = False):
        """Emits progress when the whole-number percentage changes."""
        whole = min(int(percent), PROGRESS_FINISHING - 1)
        if whole == transfer.last_percent and not force:
            return
        transfer.last_percent = whole
        transfer.last_emit_at = time.monotonic()
        self.emit({
            'originalId': transfer.job_id, 'secondaryId': transfer.secondary_id,
            'progress': whole, 'timestamp': now_ms(),
        })

    def _heartbeat(self, transfer: Transfer):
        """Repeats the current percentage when nothing was reported for a while, so a slow transfer never looks stalled."""
        if time.monotonic() - transfer.last_emit_at >= self.HEARTBEAT_INTERVAL:
            self._report(transfer, max(transfer.last_percent, 0), force=True)

    async def _download_single(self, transfer: Transfer):
        url = transfer.command['url']
        destination = self.output_dir / filename_for(url, f"download-{transfer.secondary_id}")

        async def report(fraction: float):
            self._report(transfer, fraction * 100)

        await self._download_file(transfer, url, destination, report)

    async def _download_set(self, transfer: Transfer) -> int:
        """Downloads every entry of a set manifest. Returns the final progress sentinel."""
        command = transfer.command
        manifest_url = command['url']
        assert self.session is not None
        async with self.session.get(manifest_url, timeout=aiohttp.ClientTimeout(total=60)) as r:
            r.raise_for_status()
            entries = parse_manifest(await r.text())
        first_number = 1
        if command['type'] == 'START_SET_RANGE':
            entries = select_range(entries, command.get('rangeStart'), command.get('rangeEnd'))
            first_number = max(command.get('rangeStart') or 1, 1)
        if not entries:
            raise ValueError("The set has no entries in the requested range")

        set_name = Path(filename_for(manifest_url, f"set-{transfer.secondary_id}")).stem
        set_dir = self.output_dir / set_name
        await asyncio.to_thread(set_dir.mkdir, parents=True, exist_ok=True)

        failures = 0
        for index, entry in enumerate(entries):
            async def report(fraction: float, index=index):
                self._report(transfer, (index + fraction) / len(entries) * 100)

            number = first_number + index
            destination = set_dir / f"{number:03d} {filename_for(entry, 'track')}"
            try:
                await self._download_file(transfer, entry, destination, report)
            except (aiohttp.ClientError, OSError) as e:
                failures += 1
                self.logger.warning(f"Set {transfer.job_id}: entry {number} ({entry}) failed: {e}")

        if failures == len(entries):
            raise ValueError(f"All {failures} items of the set failed")
        return PROGRESS_PARTIAL if failures else PROGRESS_SUCCESS

    async def _download_file(self, transfer: Transfer, url: str, destination: Path,
                             report: Callable[[float], Awaitable[None]]):
        """Streams one file to disk, honouring pause requests between chunks and resuming with Range on retry."""
        if not transfer.command.get('force') and await asyncio.to_thread(destination.exists):
            self.logger.info(f"{destination.name} already exists; skipping.")
            await report(1.0)
            return

        assert self.session is not None
        part_path = destination.with_name(destination.name + '.part')
        written = 0
        for attempt in range(self.DOWNLOAD_RETRY_ATTEMPTS):
            try:
                headers = {'Range': f'bytes={written}-'} if written else {}
                async with self.session.get(url, headers=headers, timeout=aiohttp.ClientTimeout(total=None, sock_read=SOCK_READ_TIMEOUT)) as r:
                    r.raise_for_status()
                    if written and r.status != 206:
                        written = 0  # Server ignored the range; start over.
                    total = int(r.headers.get('Content-Length', 0)) + written
                    async with aiofiles.open(part_path, 'ab' if written else 'wb') as f_out:
                        async for chunk in r.content.iter_chunked(self.CHUNK_SIZE):
                            await transfer.running.wait()
                            await f_out.write(chunk)
                            written += len(chunk)
                            if total > 0:
                                await report(written / total)
                            self._heartbeat(transfer)
                await asyncio.to_thread(part_path.replace, destination)
                await report(1.0)
                return
            except aiohttp.ClientError as e:
                self.logger.error(f"Stream error for {url} on attempt {attempt + 1}: {e}")
                if attempt < self.DOWNLOAD_RETRY_ATTEMPTS - 1:
                    await transfer.running.wait()
                    await asyncio.sleep(2 ** attempt)
                else:
                    raise

    def _task_done_callback(self, task: asyncio.Task):
        try:
            task.result()
        except asyncio.CancelledError:
            pass # Normal cancellation
        except Exception:
            self.logger.exception(f"Exception in background task {task.get_name()}:")

    async def shutdown(self):
        tasks = [t.task for t in self.transfers.values() if t.task]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self.transfers.clear()


def _emit_line(payload: Dict[str, Any]):
    sys.stdout.write(json.dumps(payload) + '\n')
    sys.stdout.flush()


def main(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(prog='dlbridge.worker', description="Background download worker for dlbridge.")
    parser.add_argument('--output-dir', type=Path, default=Path.home(), help="Directory for finished downloads.")
    parser.add_argument('--max-concurrent', type=int, default=4, help="Maximum simultaneous transfers.")
    parser.add_argument('--log-level', default='INFO', help="Logging level for stderr output.")
    args = parser.parse_args(argv)

    logging.basicConfig(
        stream=sys.stderr,
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format='%(asctime)s - %(levelname)-8s - %(name)-25s - %(message)s',
    )
    args.output_dir.mkdir(parents=True, exist_ok=True)
    worker = Worker(args.output_dir, max(1, args.max_concurrent), _emit_line)
    try:
        asyncio.run(worker.run())
    except KeyboardInterrupt:
        logging.info("Worker interrupted.")


if __name__ == '__main__':
    main()
