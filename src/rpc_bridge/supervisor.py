"""Process supervisor for the child processes behind each slot."""

import asyncio
import os
from asyncio import subprocess
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

import psutil
from structlog import get_logger

from .correlation import CorrelationController
from .errors import (
    LaunchFailedError,
    NotRunningError,
    ProcessLostError,
    UnknownSlotError,
)
from .framing import StreamReassembler, encode_frame
from .models import BridgeConfig, ProcessStats, SlotSpec, SlotState

logger = get_logger(__name__)

Spawner = Callable[..., Awaitable[subprocess.Process]]

READ_CHUNK_SIZE = 64 * 1024
# How long the exit observer waits for a dead child's pipes to reach EOF
PIPE_DRAIN_TIMEOUT = 1.0


class SlotProcess:
    """Owns the (at most one) live child process of a single slot."""

    def __init__(
        self,
        key: str,
        spec: SlotSpec,
        config: BridgeConfig,
        spawner: Optional[Spawner] = None,
    ):
        self.key = key
        self.spec = spec
        self.config = config
        self._spawn = spawner or asyncio.create_subprocess_exec
        self.process: Optional[subprocess.Process] = None
        self.state = SlotState.STOPPED
        self.last_exit_code: Optional[int] = None
        self.correlation = CorrelationController(key)
        self.reassembler: Optional[StreamReassembler] = None
        self.started_at: Optional[datetime] = None
        self.last_activity: Optional[datetime] = None
        self.launches: int = 0
        self.num_requests: int = 0
        self.num_errors: int = 0
        self._exit_task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()

    @property
    def label(self) -> str:
        return self.spec.display_name or self.key

    @property
    def is_running(self) -> bool:
        return (
            self.state == SlotState.RUNNING
            and self.process is not None
            and self.process.returncode is None
        )

    async def ensure_running(self) -> None:
        """Start the child process unless one is already live. Idempotent."""
        async with self._lock:
            if self.is_running:
                return

            # The child died but its exit has not been processed yet
            if self._exit_task and not self._exit_task.done():
                await self._exit_task

            await self._launch()

    async def _launch(self) -> None:
        self.state = SlotState.STARTING

        process_env = os.environ.copy()
        process_env.update(self.spec.env)
        cwd = self.spec.cwd or os.getcwd()

        logger.info(
            "Starting backend process",
            slot=self.key,
            cmd=" ".join([self.spec.command, *self.spec.args]),
            cwd=cwd,
        )

        try:
            process = await self._spawn(
                self.spec.command,
                *self.spec.args,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=cwd,
                env=process_env,
            )
        except (OSError, ValueError) as e:
            self.state = SlotState.STOPPED
            logger.error("Failed to start backend process", slot=self.key, error=str(e))
            raise LaunchFailedError(
                f"Failed to start {self.label}: {e}",
                slot=self.key,
                context={"command": self.spec.command, "cwd": cwd},
            ) from e

        self.process = process
        self.state = SlotState.RUNNING
        self.launches += 1
        self.started_at = datetime.now()
        self.last_activity = datetime.now()
        self.reassembler = StreamReassembler(
            slot=self.key,
            max_buffer_bytes=self.config.max_buffer_bytes,
        )

        stdout_task = asyncio.create_task(
            self._read_stdout(process, self.reassembler),
            name=f"{self.key}-stdout",
        )
        stderr_task = asyncio.create_task(
            self._read_stderr(process),
            name=f"{self.key}-stderr",
        )
        self._exit_task = asyncio.create_task(
            self._watch_exit(process, stdout_task, stderr_task),
            name=f"{self.key}-exit",
        )

        logger.info("Backend process started", slot=self.key, pid=process.pid)

    async def write(self, message: Any) -> None:
        """Write one framed message to the child's stdin."""
        process = self.process
        if not self.is_running or process is None or process.stdin is None:
            raise NotRunningError(self.key)

        data = encode_frame(message)
        try:
            process.stdin.write(data)
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise ProcessLostError(self.key, process.returncode) from e

        self.num_requests += 1
        self.last_activity = datetime.now()

        if self.config.log_requests:
            logger.debug("Sent message to backend", slot=self.key, message=message)

    async def stop(self) -> None:
        """Terminate the child process, escalating to kill on timeout."""
        async with self._lock:
            process = self.process
            if process is None:
                return

            if process.returncode is None:
                self.state = SlotState.STOPPING
                try:
                    process.terminate()
                except ProcessLookupError:
                    pass

                try:
                    await asyncio.wait_for(process.wait(), timeout=self.config.shutdown_timeout)
                except asyncio.TimeoutError:
                    logger.warning("Backend did not exit, killing", slot=self.key, pid=process.pid)
                    try:
                        process.kill()
                    except ProcessLookupError:
                        pass
                    await process.wait()

            if self._exit_task:
                await self._exit_task

            logger.info("Backend process stopped", slot=self.key, pid=process.pid)

    async def _read_stdout(
        self,
        process: subprocess.Process,
        reassembler: StreamReassembler,
    ) -> None:
        """Feed stdout chunks to the reassembler and route what comes out."""
        if process.stdout is None:
            return

        try:
            while True:
                chunk = await process.stdout.read(READ_CHUNK_SIZE)
                if not chunk:
                    break

                try:
                    values = reassembler.feed(chunk)
                except Exception as e:
                    logger.error("Error reassembling backend output", slot=self.key, error=str(e))
                    reassembler.reset()
                    continue

                for value in values:
                    if self.config.log_responses:
                        logger.debug("Received message from backend", slot=self.key, message=value)
                    try:
                        self.correlation.dispatch(value)
                    except Exception as e:
                        logger.error("Error routing backend message", slot=self.key, error=str(e))

        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error("Error reading backend output", slot=self.key, error=str(e))

    async def _read_stderr(self, process: subprocess.Process) -> None:
        """Forward the child's diagnostic output to the log, line by line."""
        if process.stderr is None:
            return

        try:
            while True:
                try:
                    raw = await process.stderr.readline()
                except ValueError:
                    # Line longer than the stream limit; the reader drops it
                    logger.warning("Skipping oversized diagnostic line", slot=self.key)
                    continue
                if not raw:
                    break

                line = raw.decode("utf-8", errors="replace").rstrip()
                if line.strip():
                    logger.info(f"[{self.label}] {line}", slot=self.key)

        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error("Error reading backend diagnostics", slot=self.key, error=str(e))

    async def _watch_exit(
        self,
        process: subprocess.Process,
        stdout_task: asyncio.Task,
        stderr_task: asyncio.Task,
    ) -> None:
        """Clear the handle and fail outstanding requests once the child exits."""
        code = await process.wait()

        # Answers written right before exit are still delivered
        for task in (stdout_task, stderr_task):
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=PIPE_DRAIN_TIMEOUT)
            except asyncio.TimeoutError:
                task.cancel()

        if self.process is process:
            self.process = None
            self.reassembler = None
            self.state = SlotState.STOPPED
        self.last_exit_code = code

        failed = self.correlation.fail_all(code)
        self.num_errors += failed

        logger.info(
            f"{self.label} process exited with code {code}",
            slot=self.key,
            pid=process.pid,
            exit_code=code,
            failed_requests=failed,
        )

    def get_stats(self) -> ProcessStats:
        """Get process statistics."""
        stats = ProcessStats(
            slot=self.key,
            state=self.state.value,
            process_id=self.process.pid if self.process else None,
            last_exit_code=self.last_exit_code,
            launches=self.launches,
            num_requests=self.num_requests,
            num_errors=self.num_errors,
            pending_requests=len(self.correlation),
            last_request=self.last_activity,
        )

        if self.is_running and self.started_at:
            stats.uptime_seconds = (datetime.now() - self.started_at).total_seconds()

        if self.is_running and self.process:
            try:
                proc = psutil.Process(self.process.pid)
                stats.cpu_percent = proc.cpu_percent()
                stats.memory_mb = proc.memory_info().rss / 1024 / 1024
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                pass

        return stats


class ProcessSupervisor:
    """Owns every configured slot and their process handles."""

    def __init__(self, config: BridgeConfig, spawner: Optional[Spawner] = None):
        self.config = config
        self.slots: Dict[str, SlotProcess] = {
            key: SlotProcess(key, spec, config, spawner)
            for key, spec in config.slots.items()
        }

    @property
    def keys(self) -> List[str]:
        return list(self.slots)

    def get(self, key: str) -> SlotProcess:
        """Get a slot by key; raises UnknownSlotError if unconfigured."""
        slot = self.slots.get(key)
        if slot is None:
            raise UnknownSlotError(key)
        return slot

    async def ensure_running(self, key: str) -> None:
        await self.get(key).ensure_running()

    def is_running(self, key: str) -> bool:
        slot = self.slots.get(key)
        return slot is not None and slot.is_running

    async def start_all(self) -> None:
        """Start every slot; failures are logged, not raised."""
        for key, slot in self.slots.items():
            try:
                await slot.ensure_running()
            except LaunchFailedError as e:
                logger.error("Failed to autostart slot", slot=key, error=e.message)

    async def stop(self, key: str) -> None:
        await self.get(key).stop()

    async def shutdown_all(self) -> None:
        """Stop every live slot. Safe when nothing is running."""
        running = [slot for slot in self.slots.values() if slot.process is not None]
        if not running:
            return

        results = await asyncio.gather(
            *(slot.stop() for slot in running),
            return_exceptions=True,
        )
        for slot, result in zip(running, results):
            if isinstance(result, Exception):
                logger.error("Error stopping backend process", slot=slot.key, error=str(result))

        logger.info("All backend processes stopped", count=len(running))

    def get_stats(self) -> List[ProcessStats]:
        """Get statistics for all slots."""
        return [slot.get_stats() for slot in self.slots.values()]
