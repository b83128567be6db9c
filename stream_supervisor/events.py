"""Change notifications for control-plane observers."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List

from stream_supervisor.models import StreamSnapshot, StreamStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StreamEvent:
    """A stream status transition."""

    stream_id: str
    status: StreamStatus
    snapshot: StreamSnapshot
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "stream_status",
            "stream_id": self.stream_id,
            "status": self.status.value,
            "stream": self.snapshot.to_dict(),
            "timestamp": self.timestamp.isoformat(),
        }


class StreamEventBus:
    """
    Fan-out of stream events to subscriber queues.

    Publishing never blocks: a subscriber that falls behind loses its
    oldest pending events.
    """

    def __init__(self, max_queue_size: int = 100):
        self.max_queue_size = max_queue_size
        self._subscribers: List[asyncio.Queue] = []
        self.dropped = 0

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> asyncio.Queue:
        """
        Register a new subscriber.

        Returns:
            Queue receiving every event published from now on
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue_size)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        """Remove a subscriber. Unknown queues are ignored."""
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def publish(self, event: StreamEvent) -> None:
        """Deliver an event to every subscriber."""
        for queue in list(self._subscribers):
            if queue.full():
                queue.get_nowait()
                self.dropped += 1
                logger.debug(f"Subscriber queue full, dropped oldest event for {event.stream_id}")
            queue.put_nowait(event)
