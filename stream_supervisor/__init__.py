"""
Stream Process Supervisor

Launches, monitors and recovers per-stream FFmpeg encoder processes that
publish live audio to an Icecast-compatible broadcast server, and turns
encoder failures into actionable diagnoses.

Version: 1.0.0
"""

__version__ = "1.0.0"

from stream_supervisor.config import BroadcastServerConfig, SupervisorConfig
from stream_supervisor.coordinator import IngestTarget, ServerCoordinator
from stream_supervisor.diagnostics import Diagnosis, DiagnosisCategory, DiagnosticsClassifier
from stream_supervisor.errors import (
    CapacityError,
    ConfigurationError,
    DuplicateStreamError,
    LaunchError,
    ServerUnavailableError,
    StopTimeoutError,
    SupervisorError,
)
from stream_supervisor.events import StreamEvent, StreamEventBus
from stream_supervisor.formats import FormatFallbackPolicy, FormatProfile
from stream_supervisor.models import StreamConfig, StreamSnapshot, StreamStatus
from stream_supervisor.supervisor import StreamSupervisor

__all__ = [
    "BroadcastServerConfig",
    "SupervisorConfig",
    "IngestTarget",
    "ServerCoordinator",
    "Diagnosis",
    "DiagnosisCategory",
    "DiagnosticsClassifier",
    "SupervisorError",
    "ConfigurationError",
    "DuplicateStreamError",
    "CapacityError",
    "LaunchError",
    "ServerUnavailableError",
    "StopTimeoutError",
    "StreamEvent",
    "StreamEventBus",
    "FormatFallbackPolicy",
    "FormatProfile",
    "StreamConfig",
    "StreamSnapshot",
    "StreamStatus",
    "StreamSupervisor",
]
