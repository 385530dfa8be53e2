"""Node process supervision.

The node runs as a child process whose output is captured. Readiness is
detected by scanning a bounded buffer of recent output for a marker the
daemon prints once it has executed its first block.

State machine::

    PENDING -> STARTING -> RUNNING -> STOPPED
                   |          |
                   +----------+--> FAILED

The readiness outcome lives in a single-slot future. The stream readers, the
periodic check, the startup timer and the exit watcher all race to resolve
it; the first resolution wins and later ones are no-ops.
"""

from __future__ import annotations

import asyncio
import codecs
import subprocess
from collections.abc import Sequence
from enum import Enum

import bittensor as bt

from .config import ValidatorConfig
from .daemon import DaemonCLI, sync_info
from .errors import ProcessExitError, ProcessTimeoutError
from .logging import (
    ANSI_DIM,
    ANSI_GREEN,
    ANSI_RED,
    ANSI_RESET,
    ANSI_YELLOW,
    EMOJI_ROCKET,
    EMOJI_STOPWATCH,
    EMOJI_WARNING,
    tag,
)
from .state_sync import StateSyncConfigurer

VALIDATOR_ADDRESS_MISMATCH = "invalid validator address"
STATE_SYNC_FAILURE = "state sync"


class NodeState(str, Enum):
    PENDING = "pending"
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"
    FAILED = "failed"


class OutputBuffer:
    """Most recent node output, capped at ``limit`` bytes of UTF-8."""

    def __init__(self, limit: int = 1024 * 1024):
        self.limit = limit
        self._data = ""
        self._size = 0

    def append(self, text: str) -> None:
        self._data += text
        self._size += len(text.encode("utf-8"))
        if self._size > self.limit:
            # Drop the oldest output; a character cut in half at the front is discarded
            encoded = self._data.encode("utf-8")[-self.limit:]
            self._data = encoded.decode("utf-8", errors="ignore")
            self._size = len(self._data.encode("utf-8"))

    def __contains__(self, marker: str) -> bool:
        return marker in self._data

    def __len__(self) -> int:
        return self._size

    def tail(self, chars: int) -> str:
        return self._data[-chars:] if chars > 0 else ""

    def getvalue(self) -> str:
        return self._data


class NodeProcessHandle:
    """Owns the running daemon process and its captured output."""

    def __init__(self, process: asyncio.subprocess.Process, buffer: OutputBuffer):
        self.process = process
        self.buffer = buffer

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    @property
    def alive(self) -> bool:
        return self.process.returncode is None


def check_node_sync(daemon: DaemonCLI, config: ValidatorConfig) -> bool:
    """True when the node reports it is no longer catching up.

    Any failure to query or parse the status counts as not synced.
    """
    try:
        info = sync_info(daemon.status(config.rpc_url))
        return info.get("catching_up") is False
    except (subprocess.CalledProcessError, ValueError, OSError) as exc:
        bt.logging.error(f"{tag('NODE')} Error checking node sync status: {exc}")
        return False


class NodeSupervisor:
    """Launches the node daemon and tracks it through its lifecycle."""

    def __init__(
        self,
        config: ValidatorConfig,
        daemon: DaemonCLI | None = None,
        state_sync: StateSyncConfigurer | None = None,
        command: Sequence[str] | None = None,
    ):
        """
        Args:
            config: Validator configuration
            daemon: Daemon CLI used for status queries
            state_sync: Configurer re-run when the node reports state sync errors
            command: Full command line override (defaults to ``<binary> start --home <home>``)
        """
        settings = config.daemon
        self.config = config
        self.daemon = daemon or DaemonCLI(settings.binary)
        self.state_sync = state_sync
        self.command = list(command) if command else [settings.binary, "start", *config.home_args()]
        self.marker = settings.readiness_marker
        self.startup_timeout = settings.startup_timeout
        self.check_interval = settings.ready_check_interval
        self.stop_grace_period = settings.stop_grace_period

        self.state = NodeState.PENDING
        self.handle: NodeProcessHandle | None = None
        self._ready: asyncio.Future[NodeProcessHandle] | None = None
        self._readers: list[asyncio.Task] = []
        self._timers: list[asyncio.Task] = []
        self._watcher: asyncio.Task | None = None
        self._exited: asyncio.Event | None = None
        self._resync_task: asyncio.Future | None = None
        self._stderr_tail = ""
        self._stopping = False

    def _set_state(self, state: NodeState) -> None:
        if state is not self.state:
            bt.logging.debug(f"{tag('NODE')} {self.state.value} -> {state.value}")
            self.state = state

    async def start(self) -> NodeProcessHandle:
        """Launch the node and wait until it is ready.

        Raises:
            ProcessExitError: if the node cannot launch or exits before readiness
            ProcessTimeoutError: if readiness is not reached within the startup window
        """
        if self.state in (NodeState.STARTING, NodeState.RUNNING):
            raise RuntimeError("Node is already started")

        loop = asyncio.get_running_loop()
        self._ready = loop.create_future()
        self._exited = asyncio.Event()
        self._stopping = False
        self._stderr_tail = ""
        self._set_state(NodeState.STARTING)
        bt.logging.info(f"{tag('NODE')} {EMOJI_ROCKET} Connecting to network...")

        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            self._set_state(NodeState.FAILED)
            bt.logging.error(f"{tag('NODE', ANSI_RED)} Failed to start node process: {exc}")
            raise ProcessExitError(f"Failed to start node process: {exc}") from exc

        self.handle = NodeProcessHandle(process, OutputBuffer(self.config.daemon.output_buffer_size))
        self._readers = [
            asyncio.create_task(self._read_stream(process.stdout, "stdout")),
            asyncio.create_task(self._read_stream(process.stderr, "stderr")),
        ]
        self._timers = [
            asyncio.create_task(self._poll_ready()),
            asyncio.create_task(self._startup_timer()),
        ]
        self._watcher = asyncio.create_task(self._watch_exit())
        return await self.wait_ready()

    async def wait_ready(self) -> NodeProcessHandle:
        if self._ready is None:
            raise RuntimeError("Node has not been started")
        try:
            return await asyncio.shield(self._ready)
        except (ProcessExitError, ProcessTimeoutError):
            await self._kill()
            await self._cancel_tasks()
            if self._watcher is not None:
                await asyncio.gather(self._watcher, return_exceptions=True)
            raise

    def _resolve(
        self,
        handle: NodeProcessHandle | None = None,
        error: BaseException | None = None,
    ) -> bool:
        """Resolve the readiness future once; returns False if already resolved."""
        if self._ready is None or self._ready.done():
            return False
        if error is not None:
            self._ready.set_exception(error)
        else:
            self._ready.set_result(handle)
        for task in self._timers:
            if task is not asyncio.current_task():
                task.cancel()
        return True

    def _abandon_ready(self) -> None:
        if self._resolve(error=ProcessExitError("Node stopped before becoming ready")):
            # Nobody may be awaiting start() any more; mark the exception retrieved
            self._ready.exception()

    def _mark_running(self) -> None:
        if self.state is not NodeState.STARTING:
            return
        if self._resolve(handle=self.handle):
            self._set_state(NodeState.RUNNING)
            bt.logging.info(f"{tag('NODE', ANSI_GREEN)} Node started successfully")

    def _fail(self, error: BaseException) -> bool:
        if self._resolve(error=error):
            self._set_state(NodeState.FAILED)
            bt.logging.error(f"{tag('NODE', ANSI_RED)} {error}")
            return True
        return False

    async def _read_stream(self, stream: asyncio.StreamReader | None, source: str) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(65536)
            if not chunk:
                break
            self._on_output(decoder.decode(chunk), source)
        tail = decoder.decode(b"", final=True)
        if tail:
            self._on_output(tail, source)

    def _on_output(self, text: str, source: str) -> None:
        if self.handle is None or not text:
            return
        self.handle.buffer.append(text)
        bt.logging.debug(f"{tag('NODE')} {ANSI_DIM}{source}: {text.rstrip()}{ANSI_RESET}")

        if self.state is NodeState.STARTING and self.marker in self.handle.buffer:
            self._mark_running()

        if source == "stderr":
            lines = (self._stderr_tail + text).split("\n")
            # A partial line is bounded like the output buffer
            self._stderr_tail = lines.pop()[-self.handle.buffer.limit:]
            for line in lines:
                self._classify_stderr(line)

    def _classify_stderr(self, line: str) -> None:
        if self.state is not NodeState.RUNNING:
            return
        if VALIDATOR_ADDRESS_MISMATCH in line:
            bt.logging.warning(
                f"{tag('NODE', ANSI_YELLOW)} {EMOJI_WARNING} Validator address mismatch detected. "
                "This may be due to an outdated genesis file or incorrect configuration."
            )
        elif STATE_SYNC_FAILURE in line:
            bt.logging.warning(
                f"{tag('NODE', ANSI_YELLOW)} State sync error detected. Attempting to reinitialize state sync..."
            )
            self._schedule_resync()

    def _schedule_resync(self) -> None:
        if self.state_sync is None:
            return
        if self._resync_task is not None and not self._resync_task.done():
            return
        self._resync_task = asyncio.ensure_future(
            asyncio.to_thread(self.state_sync.reconfigure, self.config)
        )
        self._resync_task.add_done_callback(_log_resync_result)

    async def _poll_ready(self) -> None:
        while self.state is NodeState.STARTING:
            await asyncio.sleep(self.check_interval)
            if self.handle is not None and self.marker in self.handle.buffer:
                self._mark_running()

    async def _startup_timer(self) -> None:
        await asyncio.sleep(self.startup_timeout)
        if self._fail(
            ProcessTimeoutError(
                f"Node startup timed out after {self.startup_timeout:g} seconds"
            )
        ):
            bt.logging.warning(f"{tag('NODE')} {EMOJI_STOPWATCH} Terminating unresponsive node process")
            await self._kill()

    async def _watch_exit(self) -> None:
        assert self.handle is not None
        # Drain output first so a marker printed right before exit still counts
        await asyncio.gather(*self._readers, return_exceptions=True)
        returncode = await self.handle.process.wait()
        try:
            if self._stopping:
                self._abandon_ready()
                self._set_state(NodeState.STOPPED)
            elif self.state is NodeState.STARTING:
                self._fail(
                    ProcessExitError(
                        f"Node process exited with code {returncode} before becoming ready",
                        returncode,
                    )
                )
            elif self.state is NodeState.RUNNING:
                if returncode != 0:
                    bt.logging.error(
                        f"{tag('NODE', ANSI_RED)} Node process exited with code {returncode}"
                    )
                    self._set_state(NodeState.FAILED)
                else:
                    bt.logging.warning(f"{tag('NODE', ANSI_YELLOW)} Node process exited")
                    self._set_state(NodeState.STOPPED)
        finally:
            if self._exited is not None:
                self._exited.set()

    async def wait(self) -> int:
        """Block until the node process exits.

        Raises:
            ProcessExitError: if the node ended in the FAILED state
        """
        if self._exited is None or self.handle is None:
            raise RuntimeError("Node has not been started")
        await self._exited.wait()
        returncode = self.handle.returncode
        if self.state is NodeState.FAILED:
            raise ProcessExitError(f"Node process exited with code {returncode}", returncode)
        return returncode if returncode is not None else 0

    async def stop(self) -> None:
        """Terminate the node; always ends in STOPPED."""
        self._stopping = True
        if self.handle is not None and self.handle.alive:
            bt.logging.info(f"{tag('NODE')} Stopping the node...")
            process = self.handle.process
            try:
                process.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(process.wait(), timeout=self.stop_grace_period)
            except asyncio.TimeoutError:
                bt.logging.warning(f"{tag('NODE')} Node ignored SIGTERM; killing it")
                await self._kill()
        if self._watcher is not None:
            await asyncio.gather(self._watcher, return_exceptions=True)
        self._abandon_ready()
        await self._cancel_tasks()
        if self.state is not NodeState.FAILED:
            self._set_state(NodeState.STOPPED)

    async def is_synced(self) -> bool:
        """Query the daemon status; failures count as not synced."""
        return await asyncio.to_thread(check_node_sync, self.daemon, self.config)

    async def _kill(self) -> None:
        if self.handle is None:
            return
        process = self.handle.process
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
        await process.wait()

    async def _cancel_tasks(self) -> None:
        current = asyncio.current_task()
        pending = [t for t in (*self._timers, *self._readers) if t is not current and not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


def _log_resync_result(task: asyncio.Future) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        bt.logging.error(f"{tag('STATE SYNC', ANSI_RED)} Failed to reinitialize state sync: {exc}")
    else:
        bt.logging.info(f"{tag('STATE SYNC')} State sync reinitialized")
