"""
Encoder command builder.

Constructs FFmpeg argument lists that capture one audio input, encode it
with a format profile and publish it to the broadcast server.
"""

import logging
from typing import List
from urllib.parse import quote

from stream_supervisor.config import SupervisorConfig
from stream_supervisor.coordinator import IngestTarget, url_host
from stream_supervisor.formats import FormatProfile
from stream_supervisor.models import Stream

logger = logging.getLogger(__name__)


def mount_for(stream_id: str) -> str:
    """Mount point name for a stream id (URL-quoted, no leading slash)."""
    return quote(stream_id, safe="-_.")


def connection_url(target: IngestTarget, mount: str) -> str:
    """
    Build the ingest connection string.

    Args:
        target: Resolved ingest target
        mount: Quoted mount name

    Returns:
        icecast:// URL embedding credential, host, port and mount
    """
    user = quote(target.source_user, safe="")
    password = quote(target.source_password, safe="")
    return f"icecast://{user}:{password}@{url_host(target.host)}:{target.port}/{mount}"


class EncoderCommandBuilder:
    """Builds FFmpeg commands for pushing one audio input to the broadcast server."""

    def __init__(self, config: SupervisorConfig):
        """
        Initialize command builder.

        Args:
            config: Supervisor configuration
        """
        self.config = config

    def build_command(self, stream: Stream, profile: FormatProfile, target: IngestTarget) -> List[str]:
        """
        Build the complete encoder command for one attempt.

        Args:
            stream: Stream being launched
            profile: Format profile for this attempt
            target: Ingest target for this attempt

        Returns:
            List of command arguments for the process spawner
        """
        cmd = [self.config.ffmpeg_binary]

        # Global options
        # Banner stays on: output that ends after the banner is diagnosed
        # as a failed server connection
        cmd.extend(["-nostats", "-loglevel", self.config.ffmpeg_log_level])

        # Input
        cmd.extend(self._build_input(stream))

        # Audio encoding
        cmd.extend(self._build_audio_encoding(stream, profile))

        # Output
        cmd.extend(self._build_output(profile, connection_url(target, stream.mount)))

        logger.debug(f"Built encoder command for {stream.id}: {self._redact(cmd, target)}")
        return cmd

    def _build_input(self, stream: Stream) -> List[str]:
        """Build input options for a device or a file."""
        config = stream.config
        if config.input_file:
            # Read files at native rate so the stream plays in real time
            return ["-re", "-i", config.input_file]

        backend = self.config.device_input_format
        device = config.device_id or ""
        if backend == "dshow":
            spec = f"audio={device}"
        elif backend == "avfoundation":
            spec = f":{device}"
        else:
            spec = device
        return ["-f", backend, "-i", spec]

    def _build_audio_encoding(self, stream: Stream, profile: FormatProfile) -> List[str]:
        """Build audio encoding options."""
        return [
            "-acodec", profile.codec,
            "-b:a", f"{stream.bitrate_kbps}k",
            "-ar", str(stream.sample_rate),
            "-ac", str(stream.channels),
        ]

    def _build_output(self, profile: FormatProfile, url: str) -> List[str]:
        """Build output options."""
        options = []
        if profile.send_content_type:
            options.extend(["-content_type", profile.content_type])
        options.extend(["-f", profile.container, url])
        return options

    @staticmethod
    def _redact(cmd: List[str], target: IngestTarget) -> str:
        secret = quote(target.source_password, safe="")
        return " ".join(cmd).replace(f":{secret}@", ":***@")
