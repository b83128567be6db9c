"""
Supervisor and broadcast-server configuration.

Settings are loaded from environment variables (and an optional .env file).
The supervisor settings control how encoder processes are built and
supervised; the broadcast-server settings describe where the Icecast-style
server lives and how to discover its live connection parameters.
"""

import sys
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def default_device_input_format() -> str:
    """Capture backend FFmpeg uses for hardware inputs on this platform."""
    if sys.platform.startswith("win"):
        return "dshow"
    if sys.platform == "darwin":
        return "avfoundation"
    return "alsa"


class SupervisorConfig(BaseSettings):
    """Stream supervisor configuration from environment variables."""

    # Encoder binary
    ffmpeg_binary: str = Field(
        default="ffmpeg",
        description="Path to FFmpeg binary",
    )

    ffmpeg_log_level: str = Field(
        default="info",
        description="FFmpeg log level (quiet, panic, fatal, error, warning, info, verbose, debug)",
    )

    device_input_format: str = Field(
        default_factory=default_device_input_format,
        description="FFmpeg input format used for hardware devices (dshow, avfoundation, alsa, pulse)",
    )

    # Encoding defaults
    default_bitrate_kbps: int = Field(
        default=192,
        description="Audio bitrate in kbit/s when a stream does not specify one",
        ge=32,
        le=320,
    )

    default_sample_rate: int = Field(
        default=44100,
        description="Sample rate in Hz when a stream does not specify one",
        ge=8000,
        le=192000,
    )

    default_channels: int = Field(
        default=2,
        description="Channel count when a stream does not specify one",
        ge=1,
        le=8,
    )

    # Format fallback
    format_order: List[str] = Field(
        default_factory=lambda: ["mp3", "aac", "ogg"],
        description="Encoding formats tried in order when a stream fails",
    )

    # Process management
    stop_grace_period: float = Field(
        default=5.0,
        description="Seconds to wait after SIGTERM before sending SIGKILL",
        ge=0.01,
        le=60.0,
    )

    kill_timeout: float = Field(
        default=5.0,
        description="Seconds to wait for exit after SIGKILL before giving up",
        ge=0.01,
        le=60.0,
    )

    max_network_retries: int = Field(
        default=1,
        description="Retries after a network failure (each preceded by re-discovery)",
        ge=0,
        le=10,
    )

    output_tail_lines: int = Field(
        default=50,
        description="Encoder output lines kept per stream for diagnostics",
        ge=5,
        le=1000,
    )

    history_size: int = Field(
        default=100,
        description="Stopped or failed streams remembered for status and restart",
        ge=1,
        le=10000,
    )

    event_queue_size: int = Field(
        default=100,
        description="Pending change notifications kept per subscriber",
        ge=1,
        le=10000,
    )

    require_server_liveness: bool = Field(
        default=False,
        description="Reject stream starts when the broadcast server status endpoint is down",
    )

    model_config = SettingsConfigDict(
        env_prefix="SUPERVISOR_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("format_order")
    @classmethod
    def _normalize_format_order(cls, value: List[str]) -> List[str]:
        names = [name.strip().lower() for name in value if name.strip()]
        if not names:
            raise ValueError("format_order must name at least one format")
        return names


class BroadcastServerConfig(BaseSettings):
    """Broadcast (Icecast) server settings from environment variables."""

    host: str = Field(
        default="localhost",
        description="Host the encoders connect to",
    )

    port: int = Field(
        default=8000,
        description="Server port used when no server config file is found",
        ge=1,
        le=65535,
    )

    source_user: str = Field(
        default="source",
        description="Username for source (ingest) connections",
    )

    source_password: str = Field(
        default="hackme",
        description="Source password used when no server config file is found",
    )

    config_path: Optional[str] = Field(
        default=None,
        description="Path to icecast.xml (standard locations are searched when unset)",
    )

    discovery_timeout: float = Field(
        default=3.0,
        description="Upper bound in seconds for reading the server config",
        gt=0.0,
        le=30.0,
    )

    status_path: str = Field(
        default="/status-json.xsl",
        description="Server status endpoint used for liveness checks",
    )

    liveness_timeout: float = Field(
        default=2.0,
        description="Timeout in seconds for the liveness request",
        gt=0.0,
        le=30.0,
    )

    model_config = SettingsConfigDict(
        env_prefix="ICECAST_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


def get_config() -> SupervisorConfig:
    """
    Get supervisor configuration from environment variables.

    Returns:
        SupervisorConfig: Configuration instance
    """
    return SupervisorConfig()


def get_server_config() -> BroadcastServerConfig:
    """
    Get broadcast server configuration from environment variables.

    Returns:
        BroadcastServerConfig: Configuration instance
    """
    return BroadcastServerConfig()
