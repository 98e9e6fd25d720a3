"""
Classifier Worker Supervisor

Owns the single long-lived classifier subprocess, which loads the model
once and answers one newline-delimited JSON request at a time:

    stdin:  {"image": "/abs/path.jpg", "topk": 5}
    stdout: {"species_name": "...", "confidence": 0.42, "topk": [{"name": "...", "confidence": 0.42}, ...]}

Lifecycle:
```
NOT_STARTED ──► STARTING ──► RUNNING ──► STOPPED
                   ▲            │
                   └─ CRASHED ◄─┘   (respawned lazily on the next call)
```

The protocol carries no request ids, so exactly one request may be in
flight per process. Callers are serialized with an asyncio.Lock; stdout
bytes are buffered until a full line has arrived.
"""

import asyncio
import json
import logging
import os
from typing import Any, Optional, Sequence

from smartplant.core.exceptions import WorkerUnavailable
from smartplant.models.enums import WorkerState

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024
STOP_GRACE_SECONDS = 5.0
KILL_WAIT_SECONDS = 5.0
MAX_STDERR_LINE = 8 * 1024


class WorkerSupervisor:
    """
    Supervises one classifier subprocess and exposes a request/response call.

    Usage:
        supervisor = WorkerSupervisor([sys.executable, "-m", "smartplant.ml.worker"])
        await supervisor.start()
        response = await supervisor.call({"image": "/tmp/leaf.jpg", "topk": 5})
        await supervisor.stop()
    """

    def __init__(
        self,
        command: Sequence[str],
        timeout: Optional[float] = 30.0,
        env: Optional[dict[str, str]] = None,
    ):
        """
        Args:
            command: argv used to spawn the worker
            timeout: seconds to wait for one response; None waits forever
            env: extra environment variables for the worker process
        """
        self.command = list(command)
        self.timeout = timeout
        self.env = {**os.environ, **env} if env else None

        self._process: Optional[asyncio.subprocess.Process] = None
        self._state = WorkerState.NOT_STARTED
        self._lock = asyncio.Lock()
        self._buffer = bytearray()
        self._background: set[asyncio.Task] = set()
        self.spawn_count = 0

    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self.is_running else None

    async def start(self) -> None:
        """Spawn the worker ahead of the first request (model warm-up)."""
        async with self._lock:
            if self._state is WorkerState.STOPPED:
                self._state = WorkerState.NOT_STARTED
            await self._ensure_process()

    async def call(self, request: dict[str, Any]) -> dict[str, Any]:
        """
        Send one request and wait for its response line.

        Raises:
            WorkerUnavailable: spawn failed, the process died or timed out,
                or the response was not a JSON object
        """
        async with self._lock:
            process = await self._ensure_process()
            try:
                if self.timeout is None:
                    return await self._exchange(process, request)
                return await asyncio.wait_for(self._exchange(process, request), self.timeout)
            except asyncio.TimeoutError:
                logger.error(f"[pyworker] no response within {self.timeout}s, killing pid {process.pid}")
                await self._discard(process)
                raise WorkerUnavailable(
                    f"Classifier worker did not respond within {self.timeout} seconds"
                )
            except WorkerUnavailable:
                await self._discard(process)
                raise

    async def stop(self) -> None:
        """Terminate the worker. Further calls fail until start() is called again."""
        self._state = WorkerState.STOPPED
        process, self._process = self._process, None
        if process is not None and process.returncode is None:
            if process.stdin is not None:
                process.stdin.close()
            process.terminate()
            try:
                await asyncio.wait_for(process.wait(), STOP_GRACE_SECONDS)
            except asyncio.TimeoutError:
                process.kill()
                await self._reap(process)
            logger.info(f"[pyworker] stopped (pid {process.pid})")
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    # ------------------------------------------------------------------
    # Process management
    # ------------------------------------------------------------------

    async def _ensure_process(self) -> asyncio.subprocess.Process:
        if self._state is WorkerState.STOPPED:
            raise WorkerUnavailable("Classifier worker has been stopped")
        if self.is_running:
            return self._process

        self._state = WorkerState.STARTING
        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.env,
            )
        except OSError as e:
            self._state = WorkerState.CRASHED
            logger.error(f"[pyworker] failed to start {self.command!r}: {e}")
            raise WorkerUnavailable(f"Classifier worker failed to start: {e}") from e

        self._process = process
        self._buffer.clear()
        self.spawn_count += 1
        self._spawn_background(self._relay_stderr(process))
        self._spawn_background(self._watch(process))
        self._state = WorkerState.RUNNING
        logger.info(f"[pyworker] started (pid {process.pid})")
        return process

    def _spawn_background(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _watch(self, process: asyncio.subprocess.Process) -> None:
        code = await process.wait()
        if self._process is process:
            self._process = None
            if self._state is not WorkerState.STOPPED:
                self._state = WorkerState.CRASHED
                logger.error(f"[pyworker] exited with code {code}")

    async def _relay_stderr(self, process: asyncio.subprocess.Process) -> None:
        """
        Log worker stderr line by line until EOF.

        Reads fixed-size chunks so an arbitrarily long line never stops the
        pipe from being drained; lines over MAX_STDERR_LINE are logged in pieces.
        """
        pending = bytearray()
        while True:
            chunk = await process.stderr.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            pending.extend(chunk)
            *lines, rest = pending.split(b"\n")
            for raw in lines:
                self._log_stderr(raw)
            pending = bytearray(rest)
            while len(pending) > MAX_STDERR_LINE:
                self._log_stderr(bytes(pending[:MAX_STDERR_LINE]))
                del pending[:MAX_STDERR_LINE]
        if pending:
            self._log_stderr(bytes(pending))

    def _log_stderr(self, raw: bytes) -> None:
        line = raw.decode("utf-8", errors="replace").rstrip()
        if line:
            logger.warning(f"[pyworker] {line}")

    async def _reap(self, process: asyncio.subprocess.Process) -> None:
        """Wait a bounded time for a killed process; its pipes may never report EOF."""
        try:
            await asyncio.wait_for(process.wait(), KILL_WAIT_SECONDS)
        except asyncio.TimeoutError:
            logger.error(f"[pyworker] pid {process.pid} did not exit within {KILL_WAIT_SECONDS}s of kill")

    async def _discard(self, process: asyncio.subprocess.Process) -> None:
        """Kill a process whose channel can no longer be trusted."""
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass  # already exited
            await self._reap(process)
        if self._process is process:
            self._process = None
        if self._state is not WorkerState.STOPPED:
            self._state = WorkerState.CRASHED
        self._buffer.clear()

    # ------------------------------------------------------------------
    # Wire protocol
    # ------------------------------------------------------------------

    async def _exchange(self, process: asyncio.subprocess.Process, request: dict[str, Any]) -> dict[str, Any]:
        payload = (json.dumps(request) + "\n").encode("utf-8")
        try:
            process.stdin.write(payload)
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise WorkerUnavailable(f"Classifier worker is not accepting requests: {e}") from e

        line = await self._read_line(process)
        try:
            response = json.loads(line)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise WorkerUnavailable(
                f"Classifier worker sent malformed JSON: {e}",
                details={"line": line[:200].decode("utf-8", errors="replace")},
            ) from e
        if not isinstance(response, dict):
            raise WorkerUnavailable("Classifier worker response is not a JSON object")
        return response

    async def _read_line(self, process: asyncio.subprocess.Process) -> bytes:
        """Accumulate stdout until a complete, non-blank line is buffered."""
        while True:
            newline = self._buffer.find(b"\n")
            if newline != -1:
                line = bytes(self._buffer[:newline])
                del self._buffer[:newline + 1]
                if line.strip():
                    return line
                continue

            chunk = await process.stdout.read(READ_CHUNK_SIZE)
            if not chunk:
                raise WorkerUnavailable("Classifier worker exited before responding")
            self._buffer.extend(chunk)
