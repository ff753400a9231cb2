"""
Import progress publish/subscribe channel

A client picks an opaque channel id, opens the progress WebSocket with it,
then passes the same id with its import upload. The import runs on a worker
thread and publishes into the broker; each subscriber receives events on
its own event loop.

Publishing never blocks and never raises for a missing or slow subscriber.
"""

import asyncio
import logging
import threading
from typing import Any, Dict, List, Optional, Tuple

from text_utils import sanitize_for_logging

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 256

_Subscriber = Tuple[asyncio.AbstractEventLoop, asyncio.Queue]


class ProgressBroker:
    """In-process fan-out of progress events keyed by channel id"""

    def __init__(self, max_queue_size: int = DEFAULT_QUEUE_SIZE):
        self.max_queue_size = max_queue_size
        self._lock = threading.Lock()
        self._channels: Dict[str, List[_Subscriber]] = {}

    def subscribe(self, channel_id: str) -> asyncio.Queue:
        """
        Register a subscriber on the running event loop.

        Args:
            channel_id: Client-chosen channel id

        Returns:
            Queue that receives every event published to the channel
        """
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue_size)
        with self._lock:
            self._channels.setdefault(channel_id, []).append((loop, queue))
        logger.debug(f"Subscribed to progress channel {sanitize_for_logging(channel_id)}")
        return queue

    def unsubscribe(self, channel_id: str, queue: asyncio.Queue) -> None:
        with self._lock:
            subscribers = self._channels.get(channel_id, [])
            remaining = [(lp, q) for lp, q in subscribers if q is not queue]
            if remaining:
                self._channels[channel_id] = remaining
            else:
                self._channels.pop(channel_id, None)

    def subscriber_count(self, channel_id: str) -> int:
        with self._lock:
            return len(self._channels.get(channel_id, []))

    @staticmethod
    def _offer(queue: asyncio.Queue, event: Dict[str, Any]) -> None:
        # Runs on the subscriber's loop; a full queue drops its oldest event
        if queue.full():
            try:
                queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
        queue.put_nowait(event)

    def publish(self, channel_id: Optional[str], event: Dict[str, Any]) -> int:
        """
        Deliver an event to every subscriber of a channel.

        Safe to call from any thread.

        Args:
            channel_id: Channel to publish to
            event: JSON-serializable payload

        Returns:
            Number of subscribers the event was scheduled for
        """
        if not channel_id:
            return 0
        with self._lock:
            subscribers = list(self._channels.get(channel_id, []))

        delivered = 0
        dead: List[_Subscriber] = []
        for loop, queue in subscribers:
            if loop.is_closed():
                dead.append((loop, queue))
                continue
            try:
                loop.call_soon_threadsafe(self._offer, queue, event)
                delivered += 1
            except RuntimeError:
                dead.append((loop, queue))

        for _, queue in dead:
            self.unsubscribe(channel_id, queue)
        return delivered
