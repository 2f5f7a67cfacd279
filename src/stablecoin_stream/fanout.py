"""
Connection fanout for live WebSocket clients.

Every client owns a bounded outbound channel. Broadcasting only enqueues
(it never awaits a socket), so one slow client cannot hold up the others;
a client whose channel is closed or full is evicted after the scan.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any

from .errors import ClientSendError
from .metrics import PipelineCounters
from .models import BroadcastResult

logger = logging.getLogger(__name__)


class ControlFrame:
    """Marker placed on a channel for frames that are not text messages."""

    def __init__(self, kind: str) -> None:
        self.kind = kind

    def __repr__(self) -> str:
        return f"ControlFrame({self.kind!r})"


PING_FRAME = ControlFrame("ping")
_CLOSE_FRAME = ControlFrame("close")


class ClientChannel:
    """Bounded outbound queue for one client.

    Overflow policy is disconnect-on-full: an enqueue that finds the queue
    full closes the channel, and the fanout then evicts the client.
    """

    def __init__(self, capacity: int = 100) -> None:
        if capacity <= 0:
            raise ValueError(f"Channel capacity must be positive, got {capacity}")
        self.capacity = capacity
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=capacity)
        self.closed = False
        self.close_reason: str | None = None

    def offer(self, message: Any) -> bool:
        """Enqueue without waiting.

        Returns:
            False if the channel is closed or was full (and is now closed)
        """
        if self.closed:
            return False
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            self.close("send queue full")
            return False
        return True

    async def get(self) -> Any | None:
        """Wait for the next frame; None once the channel is closed."""
        if self.closed:
            return None
        message = await self._queue.get()
        if self.closed or message is _CLOSE_FRAME:
            return None
        return message

    def close(self, reason: str = "closed") -> None:
        if self.closed:
            return
        self.closed = True
        self.close_reason = reason
        try:
            # Wake a writer blocked on an empty queue
            self._queue.put_nowait(_CLOSE_FRAME)
        except asyncio.QueueFull:
            pass

    def qsize(self) -> int:
        return self._queue.qsize()


class ClientConnection:
    """A registered client: its channel plus liveness bookkeeping."""

    def __init__(
        self,
        client_id: str,
        channel: ClientChannel,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.id = client_id
        self.channel = channel
        self._clock = clock
        self.connected_at = clock()
        self.last_activity = self.connected_at

    def touch(self) -> None:
        self.last_activity = self._clock()

    def idle_seconds(self) -> float:
        return self._clock() - self.last_activity

    def is_active(self, timeout_secs: float) -> bool:
        return self.idle_seconds() < timeout_secs

    def send(self, message: Any) -> None:
        """Queue a frame for this client.

        Raises:
            ClientSendError: If the channel is closed or full
        """
        if not self.channel.offer(message):
            raise ClientSendError(self.id, self.channel.close_reason or "channel closed")


class ConnectionFanout:
    """
    Registry of live client connections.

    Structural changes (add/remove) are serialised by a lock. Broadcasts
    and pings iterate over a snapshot and only take the lock to prune the
    clients that failed, after the whole scan.
    """

    def __init__(
        self,
        counters: PipelineCounters | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.counters = counters
        self._clock = clock
        self._clients: dict[str, ClientConnection] = {}
        self._lock = asyncio.Lock()

    @property
    def client_count(self) -> int:
        return len(self._clients)

    def client_ids(self) -> list[str]:
        return list(self._clients.keys())

    def get_client(self, client_id: str) -> ClientConnection | None:
        return self._clients.get(client_id)

    async def add_client(self, client_id: str, channel: ClientChannel) -> int:
        """
        Register a client.

        Returns:
            Number of connected clients after the registration
        """
        async with self._lock:
            previous = self._clients.get(client_id)
            if previous is not None:
                logger.warning(f"Client {client_id} already exists, replacing")
                previous.channel.close("replaced")
            self._clients[client_id] = ClientConnection(client_id, channel, self._clock)
            count = len(self._clients)
        logger.info(f"Client {client_id} connected. Total clients: {count}")
        return count

    async def remove_client(self, client_id: str, reason: str = "disconnected") -> bool:
        """
        Unregister a client. Removing an unknown id is a no-op.

        Returns:
            True if the client was registered
        """
        async with self._lock:
            return self._remove_locked(client_id, reason)

    def _remove_locked(self, client_id: str, reason: str) -> bool:
        client = self._clients.pop(client_id, None)
        if client is None:
            logger.debug(f"Client {client_id} was not in the list")
            return False
        client.channel.close(reason)
        logger.info(f"Client {client_id} {reason}. Total clients: {len(self._clients)}")
        return True

    async def _prune(self, client_ids: list[str], reason: str) -> None:
        if not client_ids:
            return
        async with self._lock:
            for client_id in client_ids:
                self._remove_locked(client_id, reason)

    def touch(self, client_id: str) -> None:
        """Record activity for a client."""
        client = self.get_client(client_id)
        if client is not None:
            client.touch()

    async def broadcast(self, message: str) -> BroadcastResult:
        """
        Queue a message for every registered client.

        Clients whose channel is closed or full are removed once the scan
        is complete. Never raises because of individual client failures.
        """
        result = self._offer_all(message)

        logger.debug(f"Broadcast to {result.successful}/{result.successful + len(result.failed)} clients")
        if self.counters is not None:
            self.counters.record_broadcast()

        await self._prune(result.failed, "removed after failed send")
        return result

    async def ping_all(self) -> BroadcastResult:
        """Queue a transport-level ping for every client."""
        result = self._offer_all(PING_FRAME)
        await self._prune(result.failed, "removed after failed ping")
        return result

    def _offer_all(self, frame: Any) -> BroadcastResult:
        result = BroadcastResult()
        for client_id, client in list(self._clients.items()):
            try:
                client.send(frame)
            except ClientSendError as e:
                logger.warning(f"Failed to send to client {client_id}: {e.reason}")
                result.failed.append(client_id)
            else:
                result.successful += 1
        return result

    async def cleanup_inactive(self, timeout_secs: float) -> list[str]:
        """
        Remove clients whose last activity is older than ``timeout_secs``.

        Returns:
            Ids of the removed clients
        """
        inactive_ids = [
            client_id
            for client_id, client in list(self._clients.items())
            if not client.is_active(timeout_secs)
        ]
        for client_id in inactive_ids:
            logger.info(f"Removing inactive client: {client_id}")
        await self._prune(inactive_ids, "timed out")
        return inactive_ids

    async def send_to_client(self, client_id: str, message: Any) -> None:
        """
        Queue a frame for one client.

        Raises:
            ClientSendError: If the client is unknown or its channel failed
        """
        client = self.get_client(client_id)
        if client is None:
            raise ClientSendError(client_id, "not connected")
        try:
            client.send(message)
        except ClientSendError:
            await self.remove_client(client_id, "removed after failed send")
            raise

    async def close_all(self, reason: str = "server shutting down") -> None:
        async with self._lock:
            for client_id in list(self._clients):
                self._remove_locked(client_id, reason)
