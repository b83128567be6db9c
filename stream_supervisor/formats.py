"""
Audio format fallback policy.

The order of the profiles is a preference: the first entry has the widest
listener compatibility, later entries trade compatibility for encoder
availability. A stream moves to the next profile only after a failure the
diagnostics classifier marks as retryable.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from stream_supervisor.errors import ConfigurationError


class AudioFormat(str, Enum):
    """Available output formats."""

    MP3 = "mp3"
    AAC = "aac"
    OGG = "ogg"


@dataclass(frozen=True)
class FormatProfile:
    """Encoder settings for one output format."""

    name: str  # e.g. "MP3"
    codec: str  # FFmpeg encoder, e.g. "libmp3lame"
    container: str  # FFmpeg muxer passed to -f, e.g. "mp3"
    content_type: str  # MIME type announced to the server
    description: str
    send_content_type: bool = False  # only some muxers accept -content_type


FORMAT_PROFILES: Dict[AudioFormat, FormatProfile] = {
    AudioFormat.MP3: FormatProfile(
        name="MP3",
        codec="libmp3lame",
        container="mp3",
        content_type="audio/mpeg",
        description="MP3 - universal browser support",
        send_content_type=True,
    ),
    AudioFormat.AAC: FormatProfile(
        name="AAC",
        codec="aac",
        container="adts",
        content_type="audio/aac",
        description="AAC ADTS - live streaming compatible",
    ),
    AudioFormat.OGG: FormatProfile(
        name="OGG",
        codec="libvorbis",
        container="ogg",
        content_type="audio/ogg",
        description="OGG Vorbis - open source, Firefox/Chrome",
    ),
}

DEFAULT_FORMAT_ORDER: Tuple[AudioFormat, ...] = (
    AudioFormat.MP3,
    AudioFormat.AAC,
    AudioFormat.OGG,
)


class FormatFallbackPolicy:
    """
    Ordered, immutable list of format profiles.

    ``format_at`` is a pure lookup: the same index always yields the same
    profile, and indexes past the end yield ``None``.
    """

    def __init__(self, order: Optional[Sequence[str]] = None):
        """
        Initialize the policy.

        Args:
            order: Format names in preference order (defaults to MP3, AAC, OGG)

        Raises:
            ConfigurationError: If a name is unknown or the order is empty
        """
        if order is None:
            formats = list(DEFAULT_FORMAT_ORDER)
        else:
            formats = [self._parse(name) for name in order]

        if not formats:
            raise ConfigurationError("Format fallback list cannot be empty")
        if len(set(formats)) != len(formats):
            raise ConfigurationError(f"Format fallback list has duplicates: {list(order or [])}")

        self._profiles: Tuple[FormatProfile, ...] = tuple(FORMAT_PROFILES[f] for f in formats)

    @staticmethod
    def _parse(name: str) -> AudioFormat:
        try:
            return AudioFormat(name.strip().lower())
        except ValueError:
            known = ", ".join(f.value for f in AudioFormat)
            raise ConfigurationError(
                f"Unknown audio format '{name}' (known: {known})",
                details={"format": name},
            ) from None

    def format_at(self, index: int) -> Optional[FormatProfile]:
        """
        Get the profile at a position in the fallback order.

        Args:
            index: Zero-based position

        Returns:
            FormatProfile, or None if the index is out of range
        """
        if 0 <= index < len(self._profiles):
            return self._profiles[index]
        return None

    def count(self) -> int:
        """Number of profiles in the fallback order."""
        return len(self._profiles)

    def names(self) -> List[str]:
        """Profile names in order."""
        return [profile.name for profile in self._profiles]

    def __len__(self) -> int:
        return len(self._profiles)

    def __iter__(self) -> Iterator[FormatProfile]:
        return iter(self._profiles)
