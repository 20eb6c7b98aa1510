"""Per-deployment broadcast of log appends.

The writer publishes the new size of the log file after every append; each
subscriber keeps its own read offset and wakes up when the size moves past it.
When nothing in this process is writing (e.g. the log of a deployment whose
worker died with a previous server process), waits simply time out and the
subscriber re-checks the file.
"""
import threading
import logging
from typing import Dict

logger = logging.getLogger(__name__)


class LogChannel:
    def __init__(self):
        self._condition = threading.Condition()
        self._size = 0
        self._closed = False
        self.subscribers = 0
        # Serialises writers of the same log file
        self.write_lock = threading.Lock()

    def publish(self, size: int) -> None:
        with self._condition:
            self._size = size
            self._condition.notify_all()

    def close(self) -> None:
        with self._condition:
            self._closed = True
            self._condition.notify_all()

    @property
    def closed(self) -> bool:
        with self._condition:
            return self._closed

    def wait_for_data(self, offset: int, timeout: float) -> bool:
        """Block until more than `offset` bytes were published, the channel closes, or timeout."""
        with self._condition:
            return self._condition.wait_for(
                lambda: self._size > offset or self._closed, timeout=timeout
            )


_lock = threading.Lock()
_channels: Dict[int, LogChannel] = {}


def get_channel(deployment_id: int) -> LogChannel:
    with _lock:
        channel = _channels.get(deployment_id)
        if channel is None:
            channel = _channels[deployment_id] = LogChannel()
        return channel


def subscribe(deployment_id: int) -> LogChannel:
    with _lock:
        channel = _channels.get(deployment_id)
        if channel is None:
            channel = _channels[deployment_id] = LogChannel()
        channel.subscribers += 1
    logger.debug(f"Log subscriber attached to deployment {deployment_id}")
    return channel


def unsubscribe(deployment_id: int, channel: LogChannel) -> None:
    with _lock:
        channel.subscribers -= 1
        # Writers recreate the channel on their next append if they still need it
        if channel.subscribers <= 0 and _channels.get(deployment_id) is channel:
            del _channels[deployment_id]
    logger.debug(f"Log subscriber detached from deployment {deployment_id}")


def close_channel(deployment_id: int) -> None:
    """Wake every subscriber for the last time and forget the channel once nobody listens."""
    with _lock:
        channel = _channels.get(deployment_id)
        if channel is None:
            return
        channel.close()
        if channel.subscribers <= 0:
            del _channels[deployment_id]


def subscriber_count(deployment_id: int) -> int:
    with _lock:
        channel = _channels.get(deployment_id)
        return channel.subscribers if channel else 0
