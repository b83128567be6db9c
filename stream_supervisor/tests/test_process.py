"""
Tests for the encoder process layer.

These spawn the running Python interpreter as a stand-in encoder.
"""

import asyncio
import sys
from typing import List

import pytest

from stream_supervisor.process import (
    OutputReceived,
    ProcessExited,
    describe_returncode,
    spawn_encoder,
)


async def collect_until_exit(queue: asyncio.Queue, timeout: float = 10.0) -> List[object]:
    messages = []
    while True:
        message = await asyncio.wait_for(queue.get(), timeout=timeout)
        messages.append(message)
        if isinstance(message, ProcessExited):
            return messages


class TestDescribeReturncode:
    """Test returncode interpretation."""

    def test_exit_code(self):
        assert describe_returncode(3) == ProcessExited(exit_code=3)
        assert describe_returncode(0) == ProcessExited(exit_code=0)

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")
    def test_signal(self):
        assert describe_returncode(-15) == ProcessExited(exit_code=None, signal="SIGTERM")
        assert describe_returncode(-9) == ProcessExited(exit_code=None, signal="SIGKILL")


class TestSpawnEncoder:
    """Test spawning real processes."""

    @pytest.mark.asyncio
    async def test_output_and_exit(self):
        queue: asyncio.Queue = asyncio.Queue()
        script = "import sys; sys.stderr.write('first line\\nprogress\\rsecond line\\n'); sys.exit(3)"

        handle = await spawn_encoder([sys.executable, "-c", script], queue)
        messages = await collect_until_exit(queue)

        lines = [m.line for m in messages if isinstance(m, OutputReceived)]
        assert lines == ["first line", "progress", "second line"]
        assert messages[-1] == ProcessExited(exit_code=3)
        assert handle.returncode == 3
        assert handle.pid is not None

    @pytest.mark.asyncio
    async def test_exactly_one_exit_message(self):
        queue: asyncio.Queue = asyncio.Queue()

        await spawn_encoder([sys.executable, "-c", "pass"], queue)
        messages = await collect_until_exit(queue)
        await asyncio.sleep(0.05)

        assert messages == [ProcessExited(exit_code=0)]
        assert queue.empty()

    @pytest.mark.asyncio
    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")
    async def test_terminate(self):
        queue: asyncio.Queue = asyncio.Queue()

        handle = await spawn_encoder([sys.executable, "-c", "import time; time.sleep(30)"], queue)
        handle.terminate()
        messages = await collect_until_exit(queue)

        assert messages[-1] == ProcessExited(exit_code=None, signal="SIGTERM")

        # Signalling an exited process is a no-op
        handle.terminate()
        handle.kill()

    @pytest.mark.asyncio
    async def test_missing_binary(self):
        queue: asyncio.Queue = asyncio.Queue()

        with pytest.raises(OSError):
            await spawn_encoder(["/nonexistent/ffmpeg-binary", "-version"], queue)
