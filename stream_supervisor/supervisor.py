"""
Stream process supervisor.

Owns the active streams and runs one state-machine loop per stream. The
loop is the only writer of its ``Stream``: process output and exit, stop
requests and grace-timer expiry all arrive as messages on the stream's
queue and are handled one at a time.

Lifecycle per stream::

    starting -> running -> stopping -> stopped
                   |
                   +-> error -> starting (next format or network retry)
                   +-> error (terminal)
"""

import asyncio
import itertools
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from monitoring.metrics import SupervisorMetrics
from monitoring.process_stats import sample_process
from stream_supervisor.command_builder import EncoderCommandBuilder, mount_for
from stream_supervisor.config import SupervisorConfig
from stream_supervisor.coordinator import IngestTarget, ServerCoordinator
from stream_supervisor.diagnostics import Diagnosis, DiagnosisCategory, DiagnosticsClassifier, normalize_exit_code
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
from stream_supervisor.formats import FormatFallbackPolicy
from stream_supervisor.models import Stream, StreamConfig, StreamSnapshot, StreamStatus
from stream_supervisor.process import OutputReceived, ProcessExited, Spawner, spawn_encoder

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StopRequested:
    """Caller asked the stream to stop. ``reply`` resolves once signalled."""

    reply: asyncio.Future


@dataclass(frozen=True)
class GraceExpired:
    """Grace period armed for ``handle`` elapsed."""

    handle: Any


@dataclass(eq=False)
class _ActiveStream:
    stream: Stream
    seq: int
    queue: asyncio.Queue
    launched: asyncio.Future
    finished: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task] = None
    grace_task: Optional[asyncio.Task] = None
    kill_sent: bool = False


class StreamSupervisor:
    """
    Launches, monitors and recovers per-stream encoder processes.

    Distinct streams share no locks. The active map is only written by
    ``start`` (insert, in the same step as its uniqueness checks) and by the
    stream's own loop (removal once the encoder exit has been observed).
    """

    def __init__(
        self,
        config: Optional[SupervisorConfig] = None,
        coordinator: Optional[ServerCoordinator] = None,
        formats: Optional[FormatFallbackPolicy] = None,
        classifier: Optional[DiagnosticsClassifier] = None,
        spawner: Optional[Spawner] = None,
        events: Optional[StreamEventBus] = None,
        metrics: Optional[SupervisorMetrics] = None,
    ):
        """
        Initialize supervisor.

        Args:
            config: Supervisor configuration (loaded from env if not provided)
            coordinator: Broadcast server coordinator
            formats: Format fallback policy (built from ``config.format_order`` if not provided)
            classifier: Failure classifier
            spawner: Process spawner (real FFmpeg processes if not provided)
            events: Change notification bus
            metrics: Prometheus metrics
        """
        if config is None:
            from stream_supervisor.config import get_config

            config = get_config()

        self.config = config
        self.coordinator = coordinator or ServerCoordinator()
        self.formats = formats or FormatFallbackPolicy(config.format_order)
        self.classifier = classifier or DiagnosticsClassifier()
        self.command_builder = EncoderCommandBuilder(config)
        self.events = events or StreamEventBus(config.event_queue_size)
        self.metrics = metrics or SupervisorMetrics()
        self._spawner: Spawner = spawner or spawn_encoder

        self._active: Dict[str, _ActiveStream] = {}
        self._history: Dict[str, StreamSnapshot] = {}
        self._configs: Dict[str, StreamConfig] = {}
        self._seq = itertools.count()

        logger.info(f"Stream supervisor initialized (formats: {', '.join(self.formats.names())})")

    # Public API

    async def start(self, stream_id: str, config: StreamConfig) -> StreamSnapshot:
        """
        Start a stream.

        Returns once the first encoder process has been spawned.

        Args:
            stream_id: Caller-supplied stream id
            config: Stream definition

        Returns:
            Snapshot of the accepted stream

        Raises:
            ConfigurationError: If the definition is invalid
            DuplicateStreamError: If the id, name or device is already in use
            CapacityError: If the broadcast server has no free source slot
            ServerUnavailableError: If liveness checks are required and failing
            LaunchError: If the encoder process could not be spawned
        """
        if not stream_id or not stream_id.strip():
            raise ConfigurationError("Stream id is required")
        config.validate()
        self._check_unique(stream_id, config)

        stream = Stream(
            id=stream_id,
            config=config,
            bitrate_kbps=config.bitrate_kbps or self.config.default_bitrate_kbps,
            sample_rate=config.sample_rate or self.config.default_sample_rate,
            channels=config.channels or self.config.default_channels,
            mount=mount_for(stream_id),
            started_at=datetime.now(),
            output_tail=deque(maxlen=self.config.output_tail_lines),
        )
        active = _ActiveStream(
            stream=stream,
            seq=next(self._seq),
            queue=asyncio.Queue(),
            launched=asyncio.get_running_loop().create_future(),
        )
        self._active[stream_id] = active
        self._configs[stream_id] = config
        self.metrics.record_start()
        logger.info(f"Starting stream {stream_id} ({config.name}) from {config.input_descriptor}")

        active.task = asyncio.create_task(self._run(active), name=f"stream-{stream_id}")
        return await asyncio.shield(active.launched)

    async def stop(self, stream_id: str) -> bool:
        """
        Stop a stream.

        Sends the graceful termination signal and escalates to a forced kill
        when the grace period elapses. Safe to call repeatedly.

        Args:
            stream_id: Stream id

        Returns:
            True once the encoder exit was observed, False if no such stream is active

        Raises:
            StopTimeoutError: If no exit was observed within grace + kill timeout
            Exception: Whatever signalling the process raised
        """
        active = self._active.get(stream_id)
        if active is None:
            logger.debug(f"Stop requested for inactive stream {stream_id}")
            return False

        reply = asyncio.get_running_loop().create_future()
        active.queue.put_nowait(StopRequested(reply))
        await reply

        timeout = self.config.stop_grace_period + self.config.kill_timeout
        try:
            await asyncio.wait_for(active.finished.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            raise StopTimeoutError(
                f"Stream {stream_id} did not exit within {timeout:.1f}s",
                details={"stream_id": stream_id, "pid": active.stream.pid},
            ) from None
        return True

    async def stop_all(self) -> int:
        """
        Stop every active stream concurrently.

        Returns:
            Number of streams stopped; failures are logged, not raised
        """
        stream_ids = list(self._active)
        if not stream_ids:
            return 0

        logger.info(f"Stopping {len(stream_ids)} streams")
        results = await asyncio.gather(
            *(self.stop(stream_id) for stream_id in stream_ids),
            return_exceptions=True,
        )

        stopped = 0
        for stream_id, result in zip(stream_ids, results):
            if isinstance(result, BaseException):
                logger.error(f"Failed to stop stream {stream_id}: {result}")
            elif result:
                stopped += 1
        return stopped

    async def restart(self, stream_id: str, config: Optional[StreamConfig] = None) -> StreamSnapshot:
        """
        Stop a stream (if active) and start it again.

        Args:
            stream_id: Stream id
            config: New definition (the previous one if not provided)

        Returns:
            Snapshot of the restarted stream

        Raises:
            ConfigurationError: If no definition is known for the id
        """
        config = config or self._configs.get(stream_id)
        if config is None:
            raise ConfigurationError(
                f"No configuration known for stream {stream_id}",
                details={"stream_id": stream_id},
            )

        logger.info(f"Restarting stream {stream_id}")
        await self.stop(stream_id)
        return await self.start(stream_id, config)

    def status(self, stream_id: str) -> Optional[StreamSnapshot]:
        """
        Get a stream snapshot.

        Args:
            stream_id: Stream id

        Returns:
            Active snapshot, else the last terminal snapshot, else None
        """
        active = self._active.get(stream_id)
        if active is not None:
            return active.stream.snapshot()
        return self._history.get(stream_id)

    def list_active(self) -> List[StreamSnapshot]:
        """Snapshots of active streams, ordered by start time."""
        ordered = sorted(self._active.values(), key=lambda a: (a.stream.started_at, a.seq))
        return [active.stream.snapshot() for active in ordered]

    async def wait_for_exit(self, stream_id: str, timeout: Optional[float] = None) -> Optional[StreamSnapshot]:
        """
        Wait until a stream has left the active set.

        Args:
            stream_id: Stream id
            timeout: Seconds to wait (forever if None)

        Returns:
            Final snapshot, or None if the id was never seen

        Raises:
            asyncio.TimeoutError: If the stream is still active after ``timeout``
        """
        active = self._active.get(stream_id)
        if active is not None:
            await asyncio.wait_for(active.finished.wait(), timeout=timeout)
        return self._history.get(stream_id)

    def get_stats(self) -> Dict[str, Any]:
        """
        Get supervisor statistics.

        Returns:
            Counts per status and resource usage per live encoder
        """
        counts = self._status_counts()
        processes = []
        for active in self._active.values():
            pid = active.stream.pid
            if pid is not None:
                stats = sample_process(pid)
                processes.append({"stream_id": active.stream.id, **stats.to_dict()})

        return {
            "active": len(self._active),
            "by_status": counts,
            "processes": processes,
            "formats": self.formats.names(),
            "dropped_events": self.events.dropped,
        }

    # Admission

    def _check_unique(self, stream_id: str, config: StreamConfig) -> None:
        if stream_id in self._active:
            raise DuplicateStreamError(
                f"Stream {stream_id} is already active",
                details={"stream_id": stream_id},
            )

        for active in self._active.values():
            other = active.stream.config
            if other.name_key == config.name_key:
                raise DuplicateStreamError(
                    f"Stream name '{config.name.strip()}' is already used by stream {active.stream.id}",
                    details={"stream_id": active.stream.id, "name": config.name},
                )
            if config.device_id and other.device_id and other.device_id.strip() == config.device_id.strip():
                raise DuplicateStreamError(
                    f"Device '{config.device_id}' is already used by stream {active.stream.id}",
                    details={"stream_id": active.stream.id, "device_id": config.device_id},
                )

    async def _admit(self, active: _ActiveStream, target: IngestTarget) -> Optional[SupervisorError]:
        stream = active.stream
        context = self._context(stream, target)

        if target.source_limit is not None:
            ahead = sum(1 for other in self._active.values() if other.seq < active.seq)
            if ahead >= target.source_limit:
                self._fail(active, self.classifier.build(DiagnosisCategory.MOUNT_POINT, context=context))
                return CapacityError(
                    f"Broadcast server source limit reached ({target.source_limit})",
                    details={"source_limit": target.source_limit, "active": ahead},
                )

        if self.config.require_server_liveness and not await self.coordinator.check_liveness(target):
            self._fail(active, self.classifier.build(DiagnosisCategory.CONNECTION, context=context))
            return ServerUnavailableError(
                f"Broadcast server at {target.host}:{target.port} is not responding",
                details={"host": target.host, "port": target.port},
            )
        return None

    # Stream loop

    async def _run(self, active: _ActiveStream) -> None:
        stream = active.stream
        try:
            error = await self._launch(active, initial=True)
            if error is not None:
                if not active.launched.done():
                    active.launched.set_exception(error)
                return
            active.launched.set_result(stream.snapshot())

            while not stream.status.is_terminal:
                message = await active.queue.get()
                await self._handle(active, message)
        except Exception as e:
            logger.exception(f"Supervisor loop for stream {stream.id} failed: {e}")
            self._fail(active, self.classifier.build(DiagnosisCategory.UNKNOWN, output=str(e)))
            if not active.launched.done():
                active.launched.set_exception(LaunchError(str(e), details={"stream_id": stream.id}))
        finally:
            self._finish(active)

    async def _launch(self, active: _ActiveStream, initial: bool = False) -> Optional[SupervisorError]:
        """Run one launch attempt. Returns the error if the stream ended in ``error``."""
        stream = active.stream
        profile = self.formats.format_at(stream.format_index)
        stream.profile = profile
        self._transition(active, StreamStatus.STARTING)

        target = await self.coordinator.resolve_ingest_target()
        stream.ingest_target = target

        if initial:
            rejection = await self._admit(active, target)
            if rejection is not None:
                logger.warning(f"Stream {stream.id} rejected: {rejection.message}")
                return rejection

        cmd = self.command_builder.build_command(stream, profile, target)
        try:
            handle = await self._spawner(cmd, active.queue)
        except (OSError, LaunchError) as e:
            diagnosis = self.classifier.launch_failure(e, context=self._context(stream, target))
            logger.error(f"Failed to launch encoder for stream {stream.id}: {e}")
            self.metrics.record_failure(diagnosis.category.value)
            self._fail(active, diagnosis)
            return LaunchError(
                f"Failed to launch encoder for stream {stream.id}: {e}",
                details={"stream_id": stream.id, "command": cmd[0]},
            )

        stream.handle = handle
        stream.attempts += 1
        stream.exit_code = None
        stream.exit_signal = None
        stream.exited_at = None
        self.metrics.record_launch()
        logger.info(
            f"Stream {stream.id} running with {profile.name} "
            f"(PID: {handle.pid}, attempt {stream.attempts}, {target.host}:{target.port}/{stream.mount})"
        )
        self._transition(active, StreamStatus.RUNNING)
        return None

    async def _handle(self, active: _ActiveStream, message: Any) -> None:
        stream = active.stream
        if isinstance(message, OutputReceived):
            stream.output_tail.append(message.line)
            logger.debug(f"[{stream.id}] {message.line}")
        elif isinstance(message, ProcessExited):
            await self._on_exit(active, message)
        elif isinstance(message, StopRequested):
            self._on_stop_requested(active, message)
        elif isinstance(message, GraceExpired):
            self._on_grace_expired(active, message)
        else:
            logger.warning(f"Stream {stream.id} ignored unknown message: {message!r}")

    def _on_stop_requested(self, active: _ActiveStream, message: StopRequested) -> None:
        stream = active.stream
        if stream.status == StreamStatus.STOPPING:
            # Already signalled; the caller waits for the same exit
            if active.kill_sent:
                logger.warning(f"Stream {stream.id} still running after kill, killing PID {stream.pid} again")
                try:
                    stream.handle.kill()
                except Exception as e:
                    logger.error(f"Failed to kill stream {stream.id}: {e}")
                    message.reply.set_exception(e)
                    return
            message.reply.set_result(None)
            return

        self._transition(active, StreamStatus.STOPPING)
        active.grace_task = asyncio.create_task(self._grace_timer(active, stream.handle))
        logger.info(f"Stopping stream {stream.id} (PID: {stream.pid})")
        try:
            stream.handle.terminate()
        except Exception as e:
            logger.error(f"Failed to terminate stream {stream.id}: {e}")
            if not message.reply.done():
                message.reply.set_exception(e)
            return
        if not message.reply.done():
            message.reply.set_result(None)

    def _on_grace_expired(self, active: _ActiveStream, message: GraceExpired) -> None:
        stream = active.stream
        if stream.status != StreamStatus.STOPPING or stream.handle is not message.handle:
            return
        logger.warning(
            f"Stream {stream.id} did not exit within {self.config.stop_grace_period}s, killing PID {stream.pid}"
        )
        active.kill_sent = True
        stream.handle.kill()

    async def _grace_timer(self, active: _ActiveStream, handle: Any) -> None:
        await asyncio.sleep(self.config.stop_grace_period)
        active.queue.put_nowait(GraceExpired(handle))

    async def _on_exit(self, active: _ActiveStream, message: ProcessExited) -> None:
        stream = active.stream
        code = normalize_exit_code(message.exit_code)
        stream.handle = None
        stream.exit_code = code
        stream.exit_signal = message.signal
        stream.exited_at = datetime.now()
        self._cancel_grace(active)

        if stream.status == StreamStatus.STOPPING:
            logger.info(f"Stream {stream.id} stopped (exit code {code}, signal {message.signal})")
            self._transition(active, StreamStatus.STOPPED)
            return

        if code == 0 and message.signal is None:
            logger.info(f"Stream {stream.id} input ended, encoder exited cleanly")
            self._transition(active, StreamStatus.STOPPED)
            return

        diagnosis = self.classifier.classify(
            stream.recent_output(),
            exit_code=code,
            context=self._context(stream, stream.ingest_target),
        )
        self.metrics.record_failure(diagnosis.category.value)
        logger.warning(
            f"Stream {stream.id} encoder exited (code {code}, signal {message.signal}) "
            f"with {stream.profile.name if stream.profile else 'no format'}: {diagnosis.title}"
        )

        if diagnosis.is_network:
            if stream.network_retries >= self.config.max_network_retries:
                logger.error(f"Stream {stream.id} failed: network failure persisted after re-discovery")
                self._fail(active, diagnosis)
                return
            stream.network_retries += 1
            self.coordinator.invalidate()
            self.metrics.record_network_retry()
            logger.info(
                f"Retrying stream {stream.id} after network failure "
                f"({stream.network_retries}/{self.config.max_network_retries})"
            )
        elif not diagnosis.retryable:
            logger.error(f"Stream {stream.id} failed: {diagnosis.message}")
            self._fail(active, diagnosis)
            return
        elif self.formats.format_at(stream.format_index + 1) is None:
            exhausted = self.classifier.exhausted(diagnosis, self.formats.names())
            logger.error(f"Stream {stream.id} failed: {exhausted.message}")
            self._fail(active, exhausted)
            return
        else:
            stream.format_index += 1
            self.metrics.record_format_fallback()
            logger.info(
                f"Stream {stream.id} falling back to {self.formats.format_at(stream.format_index).name}"
            )

        # Transient error carrying this attempt's diagnosis, then relaunch
        stream.last_diagnosis = diagnosis
        self._transition(active, StreamStatus.ERROR)
        stream.output_tail.clear()
        await self._launch(active)

    def _fail(self, active: _ActiveStream, diagnosis: Diagnosis) -> None:
        active.stream.last_diagnosis = diagnosis
        self._transition(active, StreamStatus.ERROR)

    def _transition(self, active: _ActiveStream, status: StreamStatus) -> None:
        stream = active.stream
        stream.status = status
        snapshot = stream.snapshot()
        self.events.publish(StreamEvent(stream_id=stream.id, status=status, snapshot=snapshot))
        self.metrics.update_stream_counts(self._status_counts())

    def _remember(self, snapshot: StreamSnapshot) -> None:
        """Record a terminal snapshot, evicting the oldest beyond ``history_size``."""
        self._history.pop(snapshot.id, None)
        self._history[snapshot.id] = snapshot
        while len(self._history) > self.config.history_size:
            oldest = next(iter(self._history))
            del self._history[oldest]
            if oldest not in self._active:
                self._configs.pop(oldest, None)

    def _finish(self, active: _ActiveStream) -> None:
        stream = active.stream
        self._cancel_grace(active)

        if stream.handle is not None:
            # Loop torn down while the encoder was alive
            logger.warning(f"Killing orphaned encoder for stream {stream.id} (PID: {stream.pid})")
            stream.handle.kill()
            stream.handle = None
            if not stream.status.is_terminal:
                stream.status = StreamStatus.STOPPED

        if self._active.get(stream.id) is active:
            del self._active[stream.id]
        self._remember(stream.snapshot())

        # Stop requests that arrived after the last transition
        while not active.queue.empty():
            message = active.queue.get_nowait()
            if isinstance(message, StopRequested) and not message.reply.done():
                message.reply.set_result(None)

        if not active.launched.done():
            active.launched.set_exception(
                LaunchError(f"Stream {stream.id} ended before launch", details={"stream_id": stream.id})
            )
        active.finished.set()
        self.metrics.update_stream_counts(self._status_counts())
        logger.info(f"Stream {stream.id} removed ({stream.status.value})")

    def _cancel_grace(self, active: _ActiveStream) -> None:
        if active.grace_task is not None and not active.grace_task.done():
            active.grace_task.cancel()
        active.grace_task = None

    def _status_counts(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in StreamStatus}
        for active in self._active.values():
            counts[active.stream.status.value] += 1
        return counts

    @staticmethod
    def _context(stream: Stream, target: Optional[IngestTarget]) -> Dict[str, Any]:
        return {
            "port": target.port if target else None,
            "device": stream.config.input_descriptor,
            "stream_id": stream.id,
        }
