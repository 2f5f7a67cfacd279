#!/usr/bin/env python3
"""Unit tests for the connection fanout."""

import pytest

from stablecoin_stream.errors import ClientSendError
from stablecoin_stream.fanout import PING_FRAME, ClientChannel, ConnectionFanout


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fanout(counters, clock):
    return ConnectionFanout(counters, clock=clock)


class TestClientChannel:
    """Tests for the bounded per-client channel."""

    @pytest.mark.asyncio
    async def test_frames_in_order(self):
        channel = ClientChannel(capacity=3)
        assert channel.offer("a")
        assert channel.offer("b")

        assert await channel.get() == "a"
        assert await channel.get() == "b"

    @pytest.mark.asyncio
    async def test_full_channel_closes(self):
        """Test the disconnect-on-full overflow policy."""
        channel = ClientChannel(capacity=2)
        assert channel.offer("a")
        assert channel.offer("b")

        assert not channel.offer("c")
        assert channel.closed
        assert channel.close_reason == "send queue full"
        assert await channel.get() is None

    @pytest.mark.asyncio
    async def test_closed_channel_rejects(self):
        channel = ClientChannel()
        channel.close()

        assert not channel.offer("a")
        assert await channel.get() is None

    def test_invalid_capacity(self):
        with pytest.raises(ValueError, match="capacity must be positive"):
            ClientChannel(capacity=0)


class TestRegistry:
    """Tests for adding and removing clients."""

    @pytest.mark.asyncio
    async def test_add_returns_count(self, fanout):
        assert await fanout.add_client("client-1", ClientChannel()) == 1
        assert await fanout.add_client("client-2", ClientChannel()) == 2
        assert sorted(fanout.client_ids()) == ["client-1", "client-2"]

    @pytest.mark.asyncio
    async def test_replacing_id_closes_old_channel(self, fanout):
        old = ClientChannel()
        await fanout.add_client("client-1", old)

        new = ClientChannel()
        assert await fanout.add_client("client-1", new) == 1
        assert old.closed
        assert fanout.get_client("client-1").channel is new
        assert fanout.get_client("client-404") is None

    @pytest.mark.asyncio
    async def test_remove_is_idempotent(self, fanout):
        channel = ClientChannel()
        await fanout.add_client("client-1", channel)

        assert await fanout.remove_client("client-1")
        assert not await fanout.remove_client("client-1")
        assert fanout.client_count == 0
        assert channel.closed


class TestBroadcast:
    """Tests for broadcasting."""

    @pytest.mark.asyncio
    async def test_closed_clients_pruned(self, fanout, counters):
        """Test 5 clients with 2 closed channels: 3 delivered, 2 evicted."""
        channels = {f"client-{i}": ClientChannel() for i in range(5)}
        for client_id, channel in channels.items():
            await fanout.add_client(client_id, channel)
        channels["client-1"].close()
        channels["client-3"].close()

        result = await fanout.broadcast('{"stablecoin": "USDC"}')

        assert result.successful == 3
        assert sorted(result.failed) == ["client-1", "client-3"]
        assert fanout.client_count == 3
        assert "client-1" not in fanout.client_ids()
        assert counters.broadcasts_sent == 1
        for client_id in ("client-0", "client-2", "client-4"):
            assert await channels[client_id].get() == '{"stablecoin": "USDC"}'

    @pytest.mark.asyncio
    async def test_slow_client_evicted_on_overflow(self, fanout):
        """Test that a client that stops draining is disconnected."""
        slow = ClientChannel(capacity=2)
        fast = ClientChannel(capacity=10)
        await fanout.add_client("slow", slow)
        await fanout.add_client("fast", fast)

        results = [await fanout.broadcast(f"message-{i}") for i in range(3)]

        assert results[2].failed == ["slow"]
        assert fanout.client_ids() == ["fast"]
        assert fast.qsize() == 3

    @pytest.mark.asyncio
    async def test_broadcast_without_clients(self, fanout):
        result = await fanout.broadcast("message")

        assert result.successful == 0
        assert result.all_successful

    @pytest.mark.asyncio
    async def test_ping_all(self, fanout):
        channel = ClientChannel()
        await fanout.add_client("client-1", channel)

        result = await fanout.ping_all()

        assert result.successful == 1
        assert await channel.get() is PING_FRAME


class TestDirectSend:
    """Tests for send_to_client."""

    @pytest.mark.asyncio
    async def test_send_to_client(self, fanout):
        channel = ClientChannel()
        await fanout.add_client("client-1", channel)

        await fanout.send_to_client("client-1", "pong")

        assert await channel.get() == "pong"

    @pytest.mark.asyncio
    async def test_send_to_unknown_client(self, fanout):
        with pytest.raises(ClientSendError, match="not connected"):
            await fanout.send_to_client("client-404", "pong")

    @pytest.mark.asyncio
    async def test_failed_send_evicts(self, fanout):
        channel = ClientChannel(capacity=1)
        await fanout.add_client("client-1", channel)
        await fanout.send_to_client("client-1", "first")

        with pytest.raises(ClientSendError, match="send queue full"):
            await fanout.send_to_client("client-1", "second")
        assert fanout.client_count == 0


class TestInactivity:
    """Tests for inactive client cleanup."""

    @pytest.mark.asyncio
    async def test_cleanup_inactive(self, fanout, clock):
        await fanout.add_client("idle", ClientChannel())
        await fanout.add_client("busy", ClientChannel())

        clock.advance(200)
        fanout.touch("busy")
        clock.advance(150)

        removed = await fanout.cleanup_inactive(timeout_secs=300)

        assert removed == ["idle"]
        assert fanout.client_ids() == ["busy"]

    @pytest.mark.asyncio
    async def test_touch_unknown_client_is_ignored(self, fanout):
        fanout.touch("client-404")
        assert await fanout.cleanup_inactive(timeout_secs=1) == []
