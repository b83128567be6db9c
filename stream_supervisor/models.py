"""
Stream data model.

``Stream`` is the mutable record owned by a single supervisor loop;
``StreamSnapshot`` is the immutable view handed to callers.
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Deque, Dict, Optional

from stream_supervisor.diagnostics import Diagnosis
from stream_supervisor.errors import ConfigurationError
from stream_supervisor.formats import FormatProfile


class StreamStatus(str, Enum):
    """Stream lifecycle states."""

    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (StreamStatus.STOPPED, StreamStatus.ERROR)


@dataclass(frozen=True)
class StreamConfig:
    """
    Caller-supplied stream definition.

    Exactly one of ``device_id`` and ``input_file`` must be set. Encoding
    values left as None take the supervisor defaults.
    """

    name: str
    device_id: Optional[str] = None
    input_file: Optional[str] = None
    bitrate_kbps: Optional[int] = None
    sample_rate: Optional[int] = None
    channels: Optional[int] = None

    @property
    def input_descriptor(self) -> str:
        return self.device_id if self.device_id is not None else (self.input_file or "")

    @property
    def name_key(self) -> str:
        """Key used for case-insensitive name uniqueness."""
        return self.name.strip().casefold()

    def validate(self) -> None:
        """
        Check the definition is usable.

        Raises:
            ConfigurationError: If the name or input descriptor is missing,
                both inputs are set, or an encoding value is out of range
        """
        if not self.name or not self.name.strip():
            raise ConfigurationError("Stream name is required")

        has_device = bool(self.device_id and self.device_id.strip())
        has_file = bool(self.input_file and self.input_file.strip())
        if has_device == has_file:
            raise ConfigurationError(
                "Exactly one of device_id or input_file is required",
                details={"device_id": self.device_id, "input_file": self.input_file},
            )

        if self.bitrate_kbps is not None and not 32 <= self.bitrate_kbps <= 320:
            raise ConfigurationError(f"Bitrate must be between 32 and 320 kbps: {self.bitrate_kbps}")
        if self.sample_rate is not None and not 8000 <= self.sample_rate <= 192000:
            raise ConfigurationError(f"Sample rate must be between 8000 and 192000 Hz: {self.sample_rate}")
        if self.channels is not None and not 1 <= self.channels <= 8:
            raise ConfigurationError(f"Channel count must be between 1 and 8: {self.channels}")


@dataclass(frozen=True)
class StreamSnapshot:
    """Immutable view of a stream at one point in time."""

    id: str
    name: str
    status: StreamStatus
    device_id: Optional[str]
    input_file: Optional[str]
    bitrate_kbps: int
    sample_rate: int
    channels: int
    format_index: int
    format_name: Optional[str]
    mount: str
    pid: Optional[int]
    attempts: int
    network_retries: int
    started_at: Optional[datetime]
    exited_at: Optional[datetime]
    exit_code: Optional[int]
    exit_signal: Optional[str]
    last_diagnosis: Optional[Diagnosis]

    def to_dict(self) -> Dict[str, Any]:
        """Serialize snapshot for API responses."""
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
            "device_id": self.device_id,
            "input_file": self.input_file,
            "bitrate_kbps": self.bitrate_kbps,
            "sample_rate": self.sample_rate,
            "channels": self.channels,
            "format_index": self.format_index,
            "format_name": self.format_name,
            "mount": self.mount,
            "pid": self.pid,
            "attempts": self.attempts,
            "network_retries": self.network_retries,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "exited_at": self.exited_at.isoformat() if self.exited_at else None,
            "exit_code": self.exit_code,
            "exit_signal": self.exit_signal,
            "last_diagnosis": self.last_diagnosis.to_dict() if self.last_diagnosis else None,
        }


@dataclass
class Stream:
    """
    Active stream record.

    Mutated only by the stream's own supervisor loop. ``handle`` is set
    while the encoder process is alive and cleared when its exit is
    observed.
    """

    id: str
    config: StreamConfig
    bitrate_kbps: int
    sample_rate: int
    channels: int
    mount: str
    status: StreamStatus = StreamStatus.STARTING
    format_index: int = 0
    profile: Optional[FormatProfile] = None
    handle: Optional[Any] = None
    attempts: int = 0
    network_retries: int = 0
    started_at: Optional[datetime] = None
    exited_at: Optional[datetime] = None
    exit_code: Optional[int] = None
    exit_signal: Optional[str] = None
    last_diagnosis: Optional[Diagnosis] = None
    ingest_target: Optional[Any] = None
    output_tail: Deque[str] = field(default_factory=lambda: deque(maxlen=50))

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def pid(self) -> Optional[int]:
        return getattr(self.handle, "pid", None) if self.handle is not None else None

    def recent_output(self) -> str:
        return "\n".join(self.output_tail)

    def snapshot(self) -> StreamSnapshot:
        return StreamSnapshot(
            id=self.id,
            name=self.config.name,
            status=self.status,
            device_id=self.config.device_id,
            input_file=self.config.input_file,
            bitrate_kbps=self.bitrate_kbps,
            sample_rate=self.sample_rate,
            channels=self.channels,
            format_index=self.format_index,
            format_name=self.profile.name if self.profile else None,
            mount=self.mount,
            pid=self.pid,
            attempts=self.attempts,
            network_retries=self.network_retries,
            started_at=self.started_at,
            exited_at=self.exited_at,
            exit_code=self.exit_code,
            exit_signal=self.exit_signal,
            last_diagnosis=self.last_diagnosis,
        )
