"""
Encoder failure diagnostics.

Turns raw encoder output and exit codes into a ``Diagnosis``: a category,
an operator-facing message with suggested fixes, and a flag telling the
supervisor whether trying again can help.

Signature matching is first-match-wins over ``SIGNATURES``. Specific
signatures must stay ahead of generic ones (virtual audio before codec,
connection refused before timeout); every entry has a regression test
pinning its position.

Startup banner lines (version, build flags, library versions) never take
part in signature matching: the build configuration names codecs such as
libmp3lame that would otherwise read as a codec failure.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Pattern, Sequence, Tuple

logger = logging.getLogger(__name__)


class DiagnosisCategory(str, Enum):
    """Failure categories."""

    CONNECTION = "connection"
    PORT_CONFLICT = "port_conflict"
    AUTHENTICATION = "authentication"
    MOUNT_POINT = "mount_point"
    DEVICE_NOT_FOUND = "device_not_found"
    DEVICE_BUSY = "device_busy"
    CODEC = "codec"
    FORMAT = "format"
    RESOURCE = "resource"
    VIRTUAL_AUDIO = "virtual_audio"
    DIRECTSHOW = "directshow"
    TIMEOUT = "timeout"
    IO_ERROR = "io_error"
    PROCESS_CRASH = "process_crash"
    LAUNCH = "launch"
    EXHAUSTED = "exhausted"
    UNKNOWN = "unknown"


class Severity(str, Enum):
    """How urgently an operator needs to act."""

    CRITICAL = "critical"
    WARNING = "warning"


# Failures of the path to the server rather than of the encoder itself
NETWORK_CATEGORIES: FrozenSet[DiagnosisCategory] = frozenset(
    {DiagnosisCategory.CONNECTION, DiagnosisCategory.TIMEOUT}
)


@dataclass(frozen=True)
class Diagnosis:
    """Classified explanation of an encoder failure."""

    category: DiagnosisCategory
    title: str
    message: str
    retryable: bool
    severity: Severity = Severity.CRITICAL
    causes: Tuple[str, ...] = ()
    solutions: Tuple[str, ...] = ()
    technical_details: str = ""
    exit_code: Optional[int] = None

    @property
    def is_network(self) -> bool:
        """True if the failure concerns reaching the broadcast server."""
        return self.category in NETWORK_CATEGORIES

    def to_dict(self) -> Dict[str, Any]:
        """Serialize diagnosis for status payloads."""
        return {
            "category": self.category.value,
            "title": self.title,
            "message": self.message,
            "retryable": self.retryable,
            "severity": self.severity.value,
            "causes": list(self.causes),
            "solutions": list(self.solutions),
            "technical_details": self.technical_details,
            "exit_code": self.exit_code,
        }


@dataclass(frozen=True)
class DiagnosisTemplate:
    """Message template for one category. Placeholders use str.format syntax."""

    title: str
    description: str
    retryable: bool
    severity: Severity = Severity.CRITICAL
    causes: Tuple[str, ...] = field(default_factory=tuple)
    solutions: Tuple[str, ...] = field(default_factory=tuple)


TEMPLATES: Dict[DiagnosisCategory, DiagnosisTemplate] = {
    DiagnosisCategory.CONNECTION: DiagnosisTemplate(
        title="Cannot connect to the broadcast server",
        description="The encoder could not open a connection to the broadcast server on port {port}.",
        retryable=True,
        causes=(
            "The broadcast server is not running",
            "Port {port} is blocked or used by another application",
            "A firewall is blocking the connection",
            "The broadcast server crashed or failed to start",
            "Wrong server host or port configured",
        ),
        solutions=(
            "Check that the broadcast server is running",
            "Check that no other application is using port {port}",
            "Check firewall rules for port {port}",
            "Restart the broadcast server and start the stream again",
        ),
    ),
    DiagnosisCategory.PORT_CONFLICT: DiagnosisTemplate(
        title="Port already in use",
        description="Port {port} is already used by another application.",
        retryable=False,
        causes=(
            "Another broadcast server instance is already running",
            "A different service is bound to port {port}",
            "A previous server process did not shut down",
        ),
        solutions=(
            "Find the process holding port {port} and stop it",
            "Or move the broadcast server to a free port and restart it",
        ),
    ),
    DiagnosisCategory.AUTHENTICATION: DiagnosisTemplate(
        title="Authentication failed",
        description="The broadcast server rejected the source credentials.",
        retryable=False,
        causes=(
            "The source password does not match the server config",
            "The server config was edited but the server was not restarted",
            "Wrong source username",
        ),
        solutions=(
            "Compare the source password in the server config with ICECAST_SOURCE_PASSWORD",
            "Restart the broadcast server after changing passwords",
        ),
    ),
    DiagnosisCategory.MOUNT_POINT: DiagnosisTemplate(
        title="Stream limit reached",
        description="The broadcast server refused mount /{stream_id}: it is busy or no source slot is free.",
        retryable=False,
        severity=Severity.WARNING,
        causes=(
            "The server only allows a few concurrent sources (2 by default)",
            "Previous streams did not disconnect cleanly",
            "Repeated start attempts left a duplicate mount",
        ),
        solutions=(
            "Stop another stream before starting this one",
            "Raise <limits><sources> in the server config and restart the server",
        ),
    ),
    DiagnosisCategory.DEVICE_NOT_FOUND: DiagnosisTemplate(
        title="Audio device not found",
        description='The audio device "{device}" cannot be found by the encoder.',
        retryable=False,
        causes=(
            "The device was disconnected",
            "The device driver crashed or was updated",
            "The device name changed after a system update",
            "The device is disabled in the sound settings",
        ),
        solutions=(
            "Check that the device is connected and enabled",
            "Refresh the device list and select the device again",
            "Try a different audio device",
        ),
    ),
    DiagnosisCategory.DEVICE_BUSY: DiagnosisTemplate(
        title="Audio device in use",
        description='The audio device "{device}" is being used by another application.',
        retryable=False,
        severity=Severity.WARNING,
        causes=(
            "Another application has exclusive access to the device",
            "Recording software is using the device",
            "A previous encoder process is still running",
        ),
        solutions=(
            "Close conferencing or recording applications using the device",
            "Stop other encoder processes using the device",
            "Try a different audio device",
        ),
    ),
    DiagnosisCategory.VIRTUAL_AUDIO: DiagnosisTemplate(
        title="Virtual audio device issue",
        description='The virtual audio device "{device}" is not working properly.',
        retryable=False,
        severity=Severity.WARNING,
        causes=(
            "The virtual audio driver crashed or needs a restart",
            "The virtual audio software is not running",
            "The virtual device was just installed and needs a reboot",
        ),
        solutions=(
            "Restart the virtual audio software (VB-Audio, VoiceMeeter)",
            "Reboot to restart the audio drivers",
            "Try a physical input instead",
        ),
    ),
    DiagnosisCategory.DIRECTSHOW: DiagnosisTemplate(
        title="Windows audio system error",
        description="The encoder cannot access the DirectShow audio subsystem.",
        retryable=False,
        causes=(
            "The Windows Audio service crashed",
            "DirectShow filters are corrupted",
            "Audio driver incompatibility",
        ),
        solutions=(
            "Restart the Windows Audio service",
            "Update the audio drivers",
            "Reboot the computer",
        ),
    ),
    DiagnosisCategory.CODEC: DiagnosisTemplate(
        title="Audio codec not available",
        description="The encoder cannot use the required audio codec: {codec}.",
        retryable=True,
        causes=(
            "FFmpeg was built without this codec",
            "Codec libraries are missing or corrupted",
        ),
        solutions=(
            "Install an FFmpeg build with full codec support",
            "Check available encoders with: ffmpeg -encoders",
        ),
    ),
    DiagnosisCategory.FORMAT: DiagnosisTemplate(
        title="Unsupported format",
        description="The requested output format is not supported by this encoder build.",
        retryable=True,
        severity=Severity.WARNING,
        causes=(
            "This FFmpeg build does not include the output muxer",
            "The mount expects a different format",
        ),
        solutions=(
            "Supported formats are MP3, AAC and OGG",
            "Check available muxers with: ffmpeg -formats",
        ),
    ),
    DiagnosisCategory.RESOURCE: DiagnosisTemplate(
        title="System resource error",
        description="Not enough system resources to run the encoder.",
        retryable=False,
        causes=(
            "The system is low on memory",
            "Too many streams are running at once",
            "Other applications are consuming resources",
        ),
        solutions=(
            "Close unnecessary applications to free memory",
            "Reduce the number of concurrent streams or their bitrate",
        ),
    ),
    DiagnosisCategory.TIMEOUT: DiagnosisTemplate(
        title="Connection timeout",
        description="The connection to the broadcast server on port {port} timed out.",
        retryable=True,
        severity=Severity.WARNING,
        causes=(
            "The broadcast server is overloaded or starting up",
            "Network latency is too high",
            "A firewall is dropping packets instead of rejecting them",
        ),
        solutions=(
            "Wait a few seconds and try again",
            "Check that the broadcast server is responding",
            "Check firewall settings",
        ),
    ),
    DiagnosisCategory.IO_ERROR: DiagnosisTemplate(
        title="Input/output error",
        description="The encoder hit an I/O error while reading its input or writing the stream.",
        retryable=True,
        severity=Severity.WARNING,
        causes=(
            "The input file or device went away",
            "The broadcast server dropped the source connection",
        ),
        solutions=(
            "Check that the input is still available",
            "Check the broadcast server logs for dropped sources",
        ),
    ),
    DiagnosisCategory.PROCESS_CRASH: DiagnosisTemplate(
        title="Encoder process crashed",
        description="The encoder crashed right after starting (exit code {exit_code}).",
        retryable=False,
        causes=(
            "Audio driver incompatibility with FFmpeg",
            "Corrupted FFmpeg installation",
            "Missing Visual C++ runtime",
            "Antivirus software blocking FFmpeg",
        ),
        solutions=(
            "Try a different audio device to isolate the issue",
            "Reinstall FFmpeg",
            "Install or repair the Visual C++ runtime",
        ),
    ),
    DiagnosisCategory.LAUNCH: DiagnosisTemplate(
        title="Encoder could not be started",
        description="The encoder process could not be spawned: {error}.",
        retryable=False,
        causes=(
            "FFmpeg is not installed or not on the configured path",
            "The FFmpeg binary is not executable",
        ),
        solutions=(
            "Check that FFmpeg is installed and SUPERVISOR_FFMPEG_BINARY points to it",
            "Check file permissions on the FFmpeg binary",
        ),
    ),
    DiagnosisCategory.EXHAUSTED: DiagnosisTemplate(
        title="All audio formats failed",
        description="The stream failed with every audio format ({formats}). Last error: {last_error}",
        retryable=False,
        causes=("Every format hit a codec, format or I/O failure",),
        solutions=(
            "Check the last error above for the underlying cause",
            "Install an FFmpeg build with MP3, AAC and Vorbis support",
        ),
    ),
    DiagnosisCategory.UNKNOWN: DiagnosisTemplate(
        title="Stream failed",
        description="The encoder stopped with exit code {exit_code} for an unrecognised reason.",
        retryable=False,
        severity=Severity.WARNING,
        causes=(
            "The broadcast server may not be running or reachable",
            "The audio input may be unavailable",
            "Network or configuration issue",
        ),
        solutions=(
            "Check that the broadcast server is running",
            "Refresh devices and try a different input",
            "Check the supervisor logs for the encoder output",
        ),
    ),
}


# Ordered signature table: first match wins.
SIGNATURES: Tuple[Tuple[DiagnosisCategory, Tuple[str, ...]], ...] = (
    (
        DiagnosisCategory.CONNECTION,
        (
            r"connection refused",
            r"error number -138",
            r"could not connect",
            r"connection failed",
            r"ECONNREFUSED",
            r"network is unreachable",
            r"connection reset",
        ),
    ),
    (
        DiagnosisCategory.PORT_CONFLICT,
        (
            r"address already in use",
            r"EADDRINUSE",
            r"bind failed",
            r"port.*in use",
        ),
    ),
    (
        DiagnosisCategory.AUTHENTICATION,
        (
            r"401 unauthorized",
            r"authentication failed",
            r"invalid password",
            r"access denied",
            r"permission denied",
            r"wrong password",
            r"source client not accepted",
        ),
    ),
    (
        DiagnosisCategory.MOUNT_POINT,
        (
            r"mount ?point.*already in use",
            r"mount ?point.*busy",
            r"stream already exists",
            r"source limit reached",
            r"too many sources",
        ),
    ),
    (
        DiagnosisCategory.DEVICE_NOT_FOUND,
        (
            r"could not find audio (?:only )?device",
            r"no such device",
            r"device not found",
            r"cannot find.*device",
            r"immediate exit requested",
        ),
    ),
    (
        DiagnosisCategory.DEVICE_BUSY,
        (
            r"device or resource busy",
            r"device is being used",
            r"exclusive access",
            r"cannot open.*device",
            r"access to.*denied",
        ),
    ),
    (
        DiagnosisCategory.VIRTUAL_AUDIO,
        (
            r"vb-audio",
            r"virtual cable",
            r"voicemeeter",
            r"cable output",
        ),
    ),
    (
        DiagnosisCategory.DIRECTSHOW,
        (
            r"dshow",
            r"directshow",
            r"could not set video options",
            r"could not enumerate.*devices",
        ),
    ),
    (
        DiagnosisCategory.CODEC,
        (
            r"unknown encoder",
            r"encoder.*not found",
            r"codec not found",
            r"no codec could be found",
            r"error while opening encoder",
            r"libmp3lame",
            r"libvorbis",
            r"aac encoder",
        ),
    ),
    (
        DiagnosisCategory.FORMAT,
        (
            r"unknown format",
            r"invalid format",
            r"unsupported format",
            r"format not supported",
            r"not a suitable output format",
        ),
    ),
    (
        DiagnosisCategory.RESOURCE,
        (
            r"out of memory",
            r"cannot allocate",
            r"memory allocation failed",
            r"insufficient.*memory",
        ),
    ),
    (
        DiagnosisCategory.TIMEOUT,
        (
            r"timed out",
            r"timeout",
            r"operation.*timeout",
        ),
    ),
    (
        DiagnosisCategory.IO_ERROR,
        (
            r"i/o error",
            r"input/output error",
            r"broken pipe",
        ),
    ),
)

# Lines of the encoder's startup banner. They describe the build, never the
# failure, so they are left out of signature matching.
BANNER_LINE = re.compile(
    r"^\s*(?:ffmpeg version |built with |configuration:|lib(?:av|sw|post)\w*\s+\d)",
    re.IGNORECASE,
)

# Exit codes recognised before any output matching (signed 32-bit form)
EXIT_CODE_SIGNATURES: Dict[int, DiagnosisCategory] = {
    -5: DiagnosisCategory.CONNECTION,  # 4294967291 on Windows
    -1482175992: DiagnosisCategory.PROCESS_CRASH,  # 2812791304: Windows process-level crash
}

_ERROR_WORDS = ("error", "failed", "cannot", "denied", "invalid", "unable")


def normalize_exit_code(exit_code: Optional[int]) -> Optional[int]:
    """
    Interpret an exit code as a signed 32-bit value.

    Windows reports some failures as unsigned DWORDs (4294967291) where
    other platforms report the signed value (-5); both mean the same thing.

    Args:
        exit_code: Raw exit code, or None

    Returns:
        Signed exit code, or None
    """
    if exit_code is None:
        return None
    code = int(exit_code)
    if 0x80000000 <= code <= 0xFFFFFFFF:
        return code - 0x100000000
    return code


def strip_banner(output: str) -> str:
    """Drop startup banner lines from encoder output."""
    return "\n".join(line for line in output.splitlines() if not BANNER_LINE.match(line))


class _Context(dict):
    def __missing__(self, key: str) -> str:
        return "unknown"


def _detect_codec(text: str) -> str:
    lowered = text.lower()
    if "libmp3lame" in lowered or "mp3" in lowered:
        return "MP3 (libmp3lame)"
    if "vorbis" in lowered:
        return "Vorbis/OGG (libvorbis)"
    if "aac" in lowered:
        return "AAC"
    return "unknown codec"


class DiagnosticsClassifier:
    """
    Classifies encoder failures using an ordered signature table.

    The classifier holds no state besides its compiled patterns; the same
    input always yields an equal diagnosis.
    """

    def __init__(
        self,
        signatures: Sequence[Tuple[DiagnosisCategory, Sequence[str]]] = SIGNATURES,
        templates: Optional[Mapping[DiagnosisCategory, DiagnosisTemplate]] = None,
    ):
        self.templates: Mapping[DiagnosisCategory, DiagnosisTemplate] = templates or TEMPLATES
        self._compiled: List[Tuple[DiagnosisCategory, List[Pattern]]] = [
            (category, [re.compile(pattern, re.IGNORECASE) for pattern in patterns])
            for category, patterns in signatures
        ]

    @property
    def categories(self) -> List[DiagnosisCategory]:
        """Signature categories in evaluation order."""
        return [category for category, _ in self._compiled]

    def classify(
        self,
        raw_output: str,
        exit_code: Optional[int] = None,
        context: Optional[Mapping[str, Any]] = None,
    ) -> Diagnosis:
        """
        Diagnose an encoder failure.

        Args:
            raw_output: Encoder stderr output (any length)
            exit_code: Process exit code, signed or unsigned
            context: Values for message placeholders (port, device, stream_id)

        Returns:
            Diagnosis for the first matching signature, or an ``unknown``
            diagnosis that is not retryable
        """
        output = raw_output or ""
        code = normalize_exit_code(exit_code)

        category = EXIT_CODE_SIGNATURES.get(code) if code is not None else None
        if category is None:
            category = self._match_output(output)
        if category is None and self._is_banner_only(output):
            # Encoder printed its banner and died without an error line:
            # the server connection never came up.
            category = DiagnosisCategory.CONNECTION
        if category is None:
            category = DiagnosisCategory.UNKNOWN

        logger.debug(f"Classified exit code {code} as {category.value}")
        return self.build(category, output=output, exit_code=code, context=context)

    def _match_output(self, output: str) -> Optional[DiagnosisCategory]:
        text = strip_banner(output)
        for category, patterns in self._compiled:
            for pattern in patterns:
                if pattern.search(text):
                    return category
        return None

    @staticmethod
    def _is_banner_only(output: str) -> bool:
        lowered = output.lower()
        return "ffmpeg version" in lowered and not any(word in lowered for word in _ERROR_WORDS)

    def build(
        self,
        category: DiagnosisCategory,
        output: str = "",
        exit_code: Optional[int] = None,
        context: Optional[Mapping[str, Any]] = None,
    ) -> Diagnosis:
        """
        Render the template for a category.

        Args:
            category: Diagnosis category
            output: Encoder output, quoted in the technical details
            exit_code: Normalized exit code
            context: Values for message placeholders

        Returns:
            Diagnosis
        """
        template = self.templates[category]
        values = _Context(context or {})
        values.setdefault("exit_code", exit_code)
        values.setdefault("codec", _detect_codec(strip_banner(output)))

        details = f"Exit code: {exit_code}"
        if output.strip():
            details += f"\nOutput: {output.strip()[-500:]}"

        return Diagnosis(
            category=category,
            title=template.title,
            message=template.description.format_map(values),
            retryable=template.retryable,
            severity=template.severity,
            causes=tuple(cause.format_map(values) for cause in template.causes),
            solutions=tuple(solution.format_map(values) for solution in template.solutions),
            technical_details=details,
            exit_code=exit_code,
        )

    def launch_failure(self, error: BaseException, context: Optional[Mapping[str, Any]] = None) -> Diagnosis:
        """Diagnosis for an encoder that could not be spawned."""
        values = dict(context or {})
        values["error"] = str(error) or type(error).__name__
        return self.build(DiagnosisCategory.LAUNCH, context=values)

    def exhausted(self, last: Diagnosis, formats: Sequence[str]) -> Diagnosis:
        """Diagnosis for a stream that failed with every format."""
        return self.build(
            DiagnosisCategory.EXHAUSTED,
            exit_code=last.exit_code,
            context={
                "formats": ", ".join(formats),
                "last_error": f"{last.title}: {last.message}",
            },
        )


def format_message(diagnosis: Diagnosis) -> str:
    """
    Format a diagnosis as multi-line operator text.

    Args:
        diagnosis: Diagnosis to format

    Returns:
        Title, description, possible causes and numbered solutions
    """
    lines = [diagnosis.title, "", diagnosis.message]
    if diagnosis.causes:
        lines.extend(["", "Possible causes:"])
        lines.extend(f"  - {cause}" for cause in diagnosis.causes)
    if diagnosis.solutions:
        lines.extend(["", "Solutions:"])
        lines.extend(f"  {index}. {solution}" for index, solution in enumerate(diagnosis.solutions, 1))
    return "\n".join(lines)
