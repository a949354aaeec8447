"""
Tests for the broadcast channel.

Tests:
- Fan-out to every subscriber of a board
- Board and account isolation
- Bounded queues and the lagged flag
- Closing subscriptions
- Delivery from worker threads
"""

import asyncio
import threading

import pytest

from ..broadcast import AccountChannel, InMemoryBroadcastChannel, channel_key


EVENT = {"event": "card_moved", "card_id": "1", "stage_key": "new", "position": 1.0}


class TestPublish:
    """Tests for InMemoryBroadcastChannel.publish."""

    def test_every_subscriber_receives(self, channel):
        first = channel.subscribe("sales")
        second = channel.subscribe("sales")

        delivered = channel.publish("sales", EVENT)

        assert delivered == 2
        assert first.get_nowait() == EVENT
        assert second.get_nowait() == EVENT

    def test_other_boards_do_not_receive(self, channel):
        other = channel.subscribe("support")
        assert channel.publish("sales", EVENT) == 0
        assert other.get_nowait() is None

    def test_publish_without_subscribers(self, channel):
        assert channel.publish("sales", EVENT) == 0

    def test_events_keep_publish_order(self, channel):
        sub = channel.subscribe("sales")
        for i in range(5):
            channel.publish("sales", {"event": "card_moved", "card_id": str(i)})
        assert [sub.get_nowait()["card_id"] for _ in range(5)] == ["0", "1", "2", "3", "4"]

    def test_failing_subscriber_is_dropped(self, channel, monkeypatch):
        good = channel.subscribe("sales")
        bad = channel.subscribe("sales")

        def broken(event):
            raise RuntimeError("socket closed")

        monkeypatch.setattr(bad, "_deliver", broken)

        assert channel.publish("sales", EVENT) == 1
        assert good.get_nowait() == EVENT
        assert bad.closed
        assert channel.subscriber_count("sales") == 1


class TestSubscription:
    """Tests for Subscription buffering and lifecycle."""

    def test_full_queue_drops_oldest_and_flags_lag(self):
        channel = InMemoryBroadcastChannel(queue_size=2)
        sub = channel.subscribe("sales")
        for i in range(3):
            channel.publish("sales", {"event": "card_moved", "card_id": str(i)})

        assert sub.lagged
        assert sub.get_nowait()["card_id"] == "1"
        assert sub.get_nowait()["card_id"] == "2"

    def test_close_unsubscribes(self, channel):
        sub = channel.subscribe("sales")
        sub.close()
        assert channel.subscriber_count("sales") == 0
        assert channel.publish("sales", EVENT) == 0

    def test_context_manager_closes(self, channel):
        with channel.subscribe("sales") as sub:
            assert channel.subscriber_count("sales") == 1
        assert sub.closed
        assert channel.subscriber_count("sales") == 0

    @pytest.mark.asyncio
    async def test_async_iteration_ends_on_close(self, channel):
        sub = channel.subscribe("sales")
        channel.publish("sales", EVENT)
        channel.publish("sales", EVENT)
        sub.close()

        received = [event async for event in sub]

        assert received == [EVENT, EVENT]

    @pytest.mark.asyncio
    async def test_close_wakes_waiting_reader(self, channel):
        sub = channel.subscribe("sales")
        reader = asyncio.create_task(sub.get())
        await asyncio.sleep(0)
        sub.close()
        assert await asyncio.wait_for(reader, 1.0) is None

    @pytest.mark.asyncio
    async def test_get_timeout(self, channel):
        sub = channel.subscribe("sales")
        with pytest.raises(asyncio.TimeoutError):
            await sub.get(timeout=0.01)

    @pytest.mark.asyncio
    async def test_delivery_from_worker_thread(self, channel):
        sub = channel.subscribe("sales")
        worker = threading.Thread(target=channel.publish, args=("sales", EVENT))
        worker.start()
        worker.join()

        assert await sub.get(timeout=1.0) == EVENT


class TestAccountChannel:
    """Tests for account-scoped channel views."""

    def test_same_board_name_different_accounts(self, channel):
        acme = AccountChannel(channel, "acme").subscribe("sales")
        globex = AccountChannel(channel, "globex").subscribe("sales")

        AccountChannel(channel, "acme").publish("sales", EVENT)

        assert acme.get_nowait() == EVENT
        assert globex.get_nowait() is None

    def test_channel_key(self):
        assert channel_key("acme", "sales") == "acme:sales"
        assert channel_key("acme", "sales") != channel_key("acme", "support")
