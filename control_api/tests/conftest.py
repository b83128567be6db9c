"""
Pytest configuration and fixtures for control API tests.
"""

import asyncio
from typing import List, Optional

import httpx
import pytest
from fastapi.testclient import TestClient

from control_api.main import create_app
from monitoring.metrics import SupervisorMetrics
from stream_supervisor.config import BroadcastServerConfig, SupervisorConfig
from stream_supervisor.coordinator import ServerCoordinator
from stream_supervisor.process import ProcessExited
from stream_supervisor.supervisor import StreamSupervisor

ICECAST_XML = """<icecast>
    <limits><sources>4</sources></limits>
    <authentication><source-password>s3cret</source-password></authentication>
    <listen-socket><port>8000</port><bind-address>0.0.0.0</bind-address></listen-socket>
</icecast>
"""


class StubEncoder:
    """Encoder stand-in that exits when signalled."""

    def __init__(self, events: asyncio.Queue):
        self.pid = 52000
        self.events = events
        self.returncode: Optional[int] = None

    def terminate(self) -> None:
        self._exit("SIGTERM")

    def kill(self) -> None:
        self._exit("SIGKILL")

    def _exit(self, signal: str) -> None:
        if self.returncode is None:
            self.returncode = -1
            self.events.put_nowait(ProcessExited(exit_code=None, signal=signal))


class StubSpawner:
    def __init__(self):
        self.commands: List[List[str]] = []
        self.launch_error: Optional[Exception] = None

    async def __call__(self, cmd: List[str], events: asyncio.Queue) -> StubEncoder:
        if self.launch_error is not None:
            raise self.launch_error
        self.commands.append(cmd)
        return StubEncoder(events)


def status_handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"icestats": {"source": []}})


@pytest.fixture
def spawner() -> StubSpawner:
    return StubSpawner()


@pytest.fixture
def supervisor(tmp_path, spawner) -> StreamSupervisor:
    """Supervisor with stub encoders and a mocked status endpoint."""
    path = tmp_path / "icecast.xml"
    path.write_text(ICECAST_XML)
    coordinator = ServerCoordinator(
        BroadcastServerConfig(config_path=str(path)),
        transport=httpx.MockTransport(status_handler),
    )
    config = SupervisorConfig(device_input_format="alsa", stop_grace_period=0.2, kill_timeout=0.5)
    return StreamSupervisor(
        config=config,
        coordinator=coordinator,
        spawner=spawner,
        metrics=SupervisorMetrics(),
    )


@pytest.fixture
def client(supervisor):
    """Test client; leaving the context stops every stream."""
    with TestClient(create_app(supervisor)) as test_client:
        yield test_client
