"""Tests for the WebSocket connection manager."""

from unittest.mock import AsyncMock

import pytest

from control_api.websocket import ConnectionManager


def make_socket():
    websocket = AsyncMock()
    websocket.send_json = AsyncMock()
    return websocket


class TestConnectionManager:
    """Test cases for ConnectionManager."""

    @pytest.mark.asyncio
    async def test_connect_and_disconnect(self):
        """Test clients are registered and removed."""
        manager = ConnectionManager()
        websocket = make_socket()

        await manager.connect(websocket, "client-1")
        assert manager.connection_count == 1
        websocket.accept.assert_awaited_once()

        manager.disconnect(websocket)
        manager.disconnect(websocket)
        assert manager.connection_count == 0

    @pytest.mark.asyncio
    async def test_broadcast_respects_follow(self):
        """Test unfiltered clients get everything, filtered ones only their streams."""
        manager = ConnectionManager()
        everything = make_socket()
        studio_a = make_socket()
        await manager.connect(everything, "all")
        await manager.connect(studio_a, "a")
        manager.follow(studio_a, "studio-a")

        await manager.broadcast({"type": "stream_status", "stream_id": "studio-b"})
        await manager.broadcast({"type": "stream_status", "stream_id": "studio-a"})

        assert everything.send_json.await_count == 2
        studio_a.send_json.assert_awaited_once_with({"type": "stream_status", "stream_id": "studio-a"})

    @pytest.mark.asyncio
    async def test_unfollow_restores_all_events(self):
        """Test removing the last filter receives every event again."""
        manager = ConnectionManager()
        websocket = make_socket()
        await manager.connect(websocket, "client-1")
        manager.follow(websocket, "studio-a")
        manager.unfollow(websocket, "studio-a")

        await manager.broadcast({"type": "stream_status", "stream_id": "studio-b"})

        websocket.send_json.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failed_send_disconnects(self):
        """Test a client whose send fails is dropped."""
        manager = ConnectionManager()
        broken = make_socket()
        broken.send_json.side_effect = RuntimeError("socket closed")
        healthy = make_socket()
        await manager.connect(broken, "broken")
        await manager.connect(healthy, "healthy")

        await manager.broadcast({"type": "stream_status", "stream_id": "studio-a"})

        assert manager.connection_count == 1
        healthy.send_json.assert_awaited_once()
