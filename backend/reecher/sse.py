"""
SSE (Server-Sent Events) fan-out for sync progress.

The sync tracker publishes a snapshot after every progress write; each
connected EventSource client owns a bounded queue keyed by user id.

Architecture:
  SyncEngine -> SyncProgressTracker.update -> ProgressBroadcaster.publish -> queue -> EventSource (browser)
"""
import asyncio
import logging

logger = logging.getLogger(__name__)


class ProgressBroadcaster:
    """In-process fan-out of progress snapshots to SSE client queues."""

    def __init__(self, queue_size: int = 50) -> None:
        # user_id -> set of per-client asyncio.Queues
        self._subscribers: dict[str, set[asyncio.Queue]] = {}
        self._queue_size = queue_size

    def publish(self, user_id: str, event: str, payload: dict) -> None:
        subscribers = self._subscribers.get(user_id)
        if not subscribers:
            return
        data = {"event": event, "payload": payload}
        for queue in subscribers:
            try:
                queue.put_nowait(data)
            except asyncio.QueueFull:
                pass  # Drop event, client is too slow (backpressure)

    def subscribe(self, user_id: str) -> asyncio.Queue:
        """Register a new SSE client. Returns a queue to read events from."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.setdefault(user_id, set()).add(queue)
        return queue

    def unsubscribe(self, user_id: str, queue: asyncio.Queue) -> None:
        """Unregister an SSE client and clean up empty subscriber sets."""
        s = self._subscribers.get(user_id)
        if s:
            s.discard(queue)
            if not s:
                del self._subscribers[user_id]

    def clear(self) -> None:
        self._subscribers.clear()

    @property
    def active_connections(self) -> int:
        """Total number of active SSE client queues (for monitoring)."""
        return sum(len(s) for s in self._subscribers.values())


# Global singleton
progress_broadcaster = ProgressBroadcaster()
