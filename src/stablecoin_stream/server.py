"""
WebSocket listener in front of the connection fanout.

Each accepted socket is registered with the fanout under a fresh id. A
writer task drains the client's channel onto the socket while the handler
itself reads incoming frames. A maintenance loop pings every client and
evicts the ones that stayed silent longer than the client timeout.
"""

import asyncio
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosed

from .config import FanoutConfig
from .errors import ClientSendError
from .fanout import PING_FRAME, ClientChannel, ConnectionFanout


def welcome_message(client_id: str) -> str:
    return json.dumps({
        "type": "connected",
        "client_id": client_id,
        "message": "Connected to stablecoin transfer stream",
    })


def stats_message(connected_clients: int, now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    return json.dumps({
        "type": "stats",
        "connected_clients": connected_clients,
        "timestamp": now.isoformat(),
    })


class FanoutServer:
    """
    Serves the connection fanout over WebSocket.
    """

    def __init__(self, fanout: ConnectionFanout, config: FanoutConfig) -> None:
        """
        Initialize the server.

        Args:
            fanout: Registry that broadcasts reach clients through
            config: Listener address, queue bound and liveness timings
        """
        self.fanout = fanout
        self.config = config

        self.is_running = False
        self._server: Server | None = None
        self._stop_event = asyncio.Event()

        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    async def start(self) -> None:
        """Open the listener."""
        # Liveness is driven by the maintenance loop, not websockets' keepalive
        self._server = await serve(
            self.handle_connection,
            self.config.host,
            self.config.port,
            ping_interval=None,
        )
        self.is_running = True
        self._stop_event.clear()
        self.logger.info(f"WebSocket server listening on ws://{self.config.host}:{self.config.port}")

    async def run(self) -> None:
        """Serve until ``stop()`` is called, then close everything."""
        await self.start()
        try:
            await self._maintenance_loop()
        finally:
            await self._shutdown()

    async def handle_connection(self, websocket: ServerConnection) -> None:
        client_id = f"client-{uuid.uuid4()}"
        self.logger.info(f"New WebSocket connection from {websocket.remote_address} as {client_id}")

        channel = ClientChannel(self.config.send_queue_capacity)
        await self.fanout.add_client(client_id, channel)
        writer = asyncio.create_task(self._write_loop(client_id, websocket, channel))

        try:
            await self.fanout.send_to_client(client_id, welcome_message(client_id))
            await self._read_loop(client_id, websocket)
        except ClientSendError as e:
            self.logger.warning(f"Dropping client {client_id}: {e.reason}")
        finally:
            await self.fanout.remove_client(client_id)
            await writer

    async def _read_loop(self, client_id: str, websocket: ServerConnection) -> None:
        try:
            async for raw in websocket:
                self.fanout.touch(client_id)
                await self._handle_client_message(client_id, raw)
        except ConnectionClosed as e:
            self.logger.debug(f"Connection {client_id} closed: {e}")

    async def _handle_client_message(self, client_id: str, raw: str | bytes) -> None:
        if isinstance(raw, bytes):
            self.logger.debug(f"Ignoring binary frame from {client_id}")
            return

        text = raw.strip()
        if text == "ping":
            await self.fanout.send_to_client(client_id, "pong")
        elif text == "stats":
            await self.fanout.send_to_client(client_id, stats_message(self.fanout.client_count))
        else:
            self.logger.debug(f"Received text from {client_id}: {text[:100]}")

    async def _write_loop(
        self,
        client_id: str,
        websocket: ServerConnection,
        channel: ClientChannel,
    ) -> None:
        try:
            while True:
                frame = await channel.get()
                if frame is None:
                    break
                if frame is PING_FRAME:
                    pong_waiter = await websocket.ping()
                    pong_waiter.add_done_callback(
                        lambda waiter: self._on_pong(client_id, waiter)
                    )
                else:
                    await websocket.send(frame)
        except ConnectionClosed:
            self.logger.debug(f"Writer for {client_id} stopped: connection closed")
        finally:
            if channel.close_reason and channel.close_reason != "disconnected":
                self.logger.info(f"Closing connection {client_id}: {channel.close_reason}")
            await websocket.close()

    def _on_pong(self, client_id: str, waiter: "asyncio.Future[Any]") -> None:
        if waiter.cancelled() or waiter.exception() is not None:
            return
        self.fanout.touch(client_id)

    async def _maintenance_loop(self) -> None:
        while self.is_running:
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.config.ping_interval)
            except asyncio.TimeoutError:
                pass
            if not self.is_running:
                break

            result = await self.fanout.ping_all()
            if result.failed:
                self.logger.warning(f"Ping failed for {len(result.failed)} clients")

            removed = await self.fanout.cleanup_inactive(self.config.client_timeout)
            if removed:
                self.logger.info(f"Cleaned up {len(removed)} inactive clients")

            self.logger.debug(f"Active clients: {self.fanout.client_count}")

    async def stop(self) -> None:
        """Stop the maintenance loop; ``run()`` then closes the listener."""
        self.logger.info("Stopping WebSocket server")
        self.is_running = False
        self._stop_event.set()

    async def _shutdown(self) -> None:
        self.is_running = False
        await self.fanout.close_all()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        self.logger.info("WebSocket server closed")

    def get_status(self) -> dict[str, Any]:
        return {
            "is_running": self.is_running,
            "listen": f"ws://{self.config.host}:{self.config.port}",
            "connected_clients": self.fanout.client_count,
        }
