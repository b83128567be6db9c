"""
Supervisor exceptions.

Only failures that happen synchronously inside ``start``/``stop`` are raised.
Failures of an encoder that is already running are recorded on the stream as
a diagnosis instead.
"""

from datetime import datetime
from typing import Any, Dict, Optional


class SupervisorError(Exception):
    """Base class for all supervisor errors."""

    code = "SUPERVISOR_ERROR"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.timestamp = datetime.now()

    def to_dict(self) -> Dict[str, Any]:
        """Serialize error for API responses."""
        return {
            "error": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


class ConfigurationError(SupervisorError):
    """Stream configuration is invalid. Never retried."""

    code = "CONFIGURATION_ERROR"
    status_code = 400


class DuplicateStreamError(ConfigurationError):
    """Stream id, display name or input device is already in use."""

    code = "DUPLICATE_STREAM"
    status_code = 409


class CapacityError(ConfigurationError):
    """Broadcast server has no free source slot."""

    code = "CAPACITY_REACHED"
    status_code = 409


class LaunchError(SupervisorError):
    """Encoder process could not be spawned."""

    code = "LAUNCH_ERROR"
    status_code = 500


class ServerUnavailableError(LaunchError):
    """Broadcast server did not answer its status endpoint."""

    code = "SERVER_UNAVAILABLE"
    status_code = 503


class StopTimeoutError(SupervisorError):
    """Encoder did not exit within the grace and kill windows."""

    code = "STOP_TIMEOUT"
    status_code = 500
