"""
Pytest configuration and fixtures for stream supervisor tests.

Encoder processes are faked through the supervisor's injectable spawner;
no FFmpeg binary is needed.
"""

import asyncio
from pathlib import Path
from typing import Callable, List, Optional

import pytest
import pytest_asyncio

from monitoring.metrics import SupervisorMetrics
from stream_supervisor.config import BroadcastServerConfig, SupervisorConfig
from stream_supervisor.coordinator import ServerCoordinator
from stream_supervisor.process import OutputReceived, ProcessExited
from stream_supervisor.supervisor import StreamSupervisor

ICECAST_XML = """<icecast>
    <limits>
        <sources>{sources}</sources>
    </limits>
    <authentication>
        <source-password>{password}</source-password>
        <admin-password>admin</admin-password>
    </authentication>
    <listen-socket>
        <port>{port}</port>
        <bind-address>{bind}</bind-address>
    </listen-socket>
</icecast>
"""


class FakeEncoderProcess:
    """Stand-in for a running encoder; the test decides when it exits."""

    _next_pid = 41000

    def __init__(self, cmd: List[str], events: asyncio.Queue):
        FakeEncoderProcess._next_pid += 1
        self.pid = FakeEncoderProcess._next_pid
        self.cmd = cmd
        self.events = events
        self.returncode: Optional[int] = None
        self.terminate_calls = 0
        self.kill_calls = 0
        self.terminate_error: Optional[Exception] = None
        self.exit_on_terminate = True

    def emit_output(self, *lines: str) -> None:
        for line in lines:
            self.events.put_nowait(OutputReceived(line))

    def exit(self, exit_code: Optional[int] = 0, signal: Optional[str] = None) -> None:
        if self.returncode is not None:
            return
        self.returncode = exit_code if exit_code is not None else -1
        self.events.put_nowait(ProcessExited(exit_code=exit_code, signal=signal))

    def fail(self, output: str, exit_code: int = 1) -> None:
        self.emit_output(*output.splitlines())
        self.exit(exit_code)

    def terminate(self) -> None:
        self.terminate_calls += 1
        if self.terminate_error is not None:
            raise self.terminate_error
        if self.exit_on_terminate:
            self.exit(None, "SIGTERM")

    def kill(self) -> None:
        self.kill_calls += 1
        self.exit(None, "SIGKILL")


class FakeSpawner:
    """Injectable spawner recording every launch."""

    def __init__(self):
        self.processes: List[FakeEncoderProcess] = []
        self.launch_error: Optional[Exception] = None
        self.on_spawn: Optional[Callable[[FakeEncoderProcess], None]] = None

    async def __call__(self, cmd: List[str], events: asyncio.Queue) -> FakeEncoderProcess:
        if self.launch_error is not None:
            raise self.launch_error
        process = FakeEncoderProcess(cmd, events)
        self.processes.append(process)
        if self.on_spawn is not None:
            self.on_spawn(process)
        return process

    @property
    def last(self) -> FakeEncoderProcess:
        return self.processes[-1]


@pytest.fixture
def write_icecast_xml(tmp_path: Path) -> Callable[..., Path]:
    """Write an icecast.xml file and return its path."""

    def _write(port: int = 8000, password: str = "s3cret", bind: str = "0.0.0.0", sources: int = 5) -> Path:
        path = tmp_path / "icecast.xml"
        path.write_text(ICECAST_XML.format(port=port, password=password, bind=bind, sources=sources))
        return path

    return _write


@pytest.fixture
def icecast_xml(write_icecast_xml) -> Path:
    """Server config with port 8000, password s3cret and five sources."""
    return write_icecast_xml()


@pytest.fixture
def server_config(icecast_xml: Path) -> BroadcastServerConfig:
    """Broadcast server settings pointing at the test icecast.xml."""
    return BroadcastServerConfig(config_path=str(icecast_xml))


@pytest.fixture
def coordinator(server_config: BroadcastServerConfig) -> ServerCoordinator:
    """Coordinator reading the test icecast.xml."""
    return ServerCoordinator(server_config)


@pytest.fixture
def supervisor_config() -> SupervisorConfig:
    """Supervisor settings with short stop timers."""
    return SupervisorConfig(
        ffmpeg_binary="ffmpeg",
        ffmpeg_log_level="info",
        device_input_format="dshow",
        format_order=["mp3", "aac", "ogg"],
        stop_grace_period=0.2,
        kill_timeout=0.5,
        max_network_retries=1,
    )


@pytest.fixture
def fake_spawner() -> FakeSpawner:
    """Spawner handing out fake encoder processes."""
    return FakeSpawner()


@pytest.fixture
def metrics() -> SupervisorMetrics:
    """Metrics on a private registry."""
    return SupervisorMetrics()


@pytest_asyncio.fixture
async def supervisor(supervisor_config, coordinator, fake_spawner, metrics):
    """Supervisor wired to fakes; stops leftover streams on teardown."""
    instance = StreamSupervisor(
        config=supervisor_config,
        coordinator=coordinator,
        spawner=fake_spawner,
        metrics=metrics,
    )
    yield instance
    for process in fake_spawner.processes:
        process.terminate_error = None
    await instance.stop_all()
