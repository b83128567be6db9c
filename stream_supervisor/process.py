"""
Encoder process layer.

Spawns encoder processes and turns their output and exit into typed
messages posted on the owning stream's queue. Nothing here touches stream
state; the supervisor loop consumes the messages.
"""

import asyncio
import logging
import re
import signal
import sys
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Protocol

logger = logging.getLogger(__name__)

_LINE_SPLIT = re.compile(r"[\r\n]+")


@dataclass(frozen=True)
class OutputReceived:
    """One line of encoder stderr."""

    line: str


@dataclass(frozen=True)
class ProcessExited:
    """Encoder process exit. ``signal`` is set when a signal ended it."""

    exit_code: Optional[int]
    signal: Optional[str] = None


class ProcessHandle(Protocol):
    """What the supervisor needs from a running encoder."""

    @property
    def pid(self) -> Optional[int]:
        ...

    @property
    def returncode(self) -> Optional[int]:
        ...

    def terminate(self) -> None:
        ...

    def kill(self) -> None:
        ...


Spawner = Callable[[List[str], "asyncio.Queue"], Awaitable[ProcessHandle]]


def describe_returncode(returncode: Optional[int]) -> ProcessExited:
    """
    Split an asyncio returncode into exit code and signal name.

    Args:
        returncode: Process returncode (negative means killed by signal on POSIX)

    Returns:
        ProcessExited message
    """
    if returncode is not None and returncode < 0 and sys.platform != "win32":
        try:
            name = signal.Signals(-returncode).name
        except ValueError:
            name = f"SIG{-returncode}"
        return ProcessExited(exit_code=None, signal=name)
    return ProcessExited(exit_code=returncode)


class EncoderProcess:
    """
    Running encoder process.

    A pump task reads stderr, posts each line as ``OutputReceived`` and
    posts exactly one ``ProcessExited`` once the process is gone.
    """

    def __init__(self, process: asyncio.subprocess.Process, events: asyncio.Queue):
        self._process = process
        self._events = events
        self._pump_task = asyncio.create_task(self._pump(), name=f"encoder-pump-{process.pid}")

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode

    def terminate(self) -> None:
        """Send the graceful termination signal."""
        try:
            self._process.terminate()
        except ProcessLookupError:
            logger.debug(f"Process {self.pid} already exited")

    def kill(self) -> None:
        """Send the forceful termination signal."""
        try:
            self._process.kill()
        except ProcessLookupError:
            logger.debug(f"Process {self.pid} already exited")

    async def _pump(self) -> None:
        stderr = self._process.stderr
        buffer = ""
        try:
            if stderr is not None:
                while True:
                    chunk = await stderr.read(4096)
                    if not chunk:
                        break
                    buffer += chunk.decode("utf-8", errors="replace")
                    # FFmpeg ends progress lines with \r
                    *lines, buffer = _LINE_SPLIT.split(buffer)
                    for line in lines:
                        if line.strip():
                            self._events.put_nowait(OutputReceived(line))
                if buffer.strip():
                    self._events.put_nowait(OutputReceived(buffer))
        finally:
            returncode = await self._process.wait()
            self._events.put_nowait(describe_returncode(returncode))


async def spawn_encoder(cmd: List[str], events: asyncio.Queue) -> EncoderProcess:
    """
    Spawn an encoder process.

    Args:
        cmd: Command and arguments
        events: Queue receiving OutputReceived and ProcessExited messages

    Returns:
        EncoderProcess handle

    Raises:
        OSError: If the binary cannot be executed
    """
    process = await asyncio.create_subprocess_exec(
        *cmd,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.PIPE,
    )
    logger.debug(f"Spawned encoder (PID: {process.pid})")
    return EncoderProcess(process, events)
