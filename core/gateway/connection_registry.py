import threading
import logging
from typing import List, Protocol, Set

logger = logging.getLogger(__name__)


class Connection(Protocol):
    """Handle for one live client channel"""

    def send(self, message: str) -> None:
        ...


class ConnectionRegistry:
    """
    Thread-safe set of live client connections.

    Membership changes only through register/unregister (the channel
    lifecycle callbacks). Broadcast sends outside the lock, so a slow or
    failing connection never blocks registration or other broadcasts.
    """

    def __init__(self):
        self._connections: Set[Connection] = set()
        self._lock = threading.Lock()

    def register(self, connection: Connection) -> bool:
        """Add a connection. Returns False if it was already registered."""
        with self._lock:
            if connection in self._connections:
                return False
            self._connections.add(connection)
            count = len(self._connections)
        logger.info(f"Client connected ({count} active)")
        return True

    def unregister(self, connection: Connection) -> bool:
        """Remove a connection. Returns False if it was not registered."""
        with self._lock:
            if connection not in self._connections:
                return False
            self._connections.discard(connection)
            count = len(self._connections)
        logger.info(f"Client disconnected ({count} active)")
        return True

    def snapshot(self) -> List[Connection]:
        with self._lock:
            return list(self._connections)

    def __len__(self) -> int:
        with self._lock:
            return len(self._connections)

    def __contains__(self, connection) -> bool:
        with self._lock:
            return connection in self._connections

    @property
    def is_empty(self) -> bool:
        return len(self) == 0

    def broadcast(self, message: str) -> int:
        """
        Send message to every connection registered at snapshot time.

        Returns:
            Number of connections the message was handed to
        """
        delivered = 0
        for connection in self.snapshot():
            try:
                connection.send(message)
                delivered += 1
            except Exception as e:
                logger.warning(f"Broadcast to {connection!r} failed: {e}")
        return delivered
