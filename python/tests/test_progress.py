"""
Tests for the import progress publish/subscribe channel.
"""

import asyncio
import threading
import pytest

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from progress import ProgressBroker


class TestProgressBroker:

    def test_publish_without_subscribers_is_noop(self):
        broker = ProgressBroker()
        assert broker.publish("nobody", {"progress": 50}) == 0
        assert broker.publish(None, {"progress": 50}) == 0

    def test_subscribe_requires_running_loop(self):
        with pytest.raises(RuntimeError):
            ProgressBroker().subscribe("chan")

    @pytest.mark.asyncio
    async def test_events_reach_subscriber_in_order(self):
        broker = ProgressBroker()
        queue = broker.subscribe("chan")

        for value in (10.0, 50.0, 100.0):
            assert broker.publish("chan", {"progress": value}) == 1

        received = [await asyncio.wait_for(queue.get(), 1) for _ in range(3)]
        assert [e["progress"] for e in received] == [10.0, 50.0, 100.0]

    @pytest.mark.asyncio
    async def test_channels_are_isolated(self):
        broker = ProgressBroker()
        a = broker.subscribe("a")
        b = broker.subscribe("b")

        broker.publish("a", {"progress": 1})
        await asyncio.sleep(0)

        assert a.qsize() == 1
        assert b.qsize() == 0

    @pytest.mark.asyncio
    async def test_publish_from_worker_thread(self):
        broker = ProgressBroker()
        queue = broker.subscribe("chan")

        worker = threading.Thread(target=broker.publish, args=("chan", {"progress": 42}))
        worker.start()
        worker.join()

        event = await asyncio.wait_for(queue.get(), 1)
        assert event == {"progress": 42}

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        broker = ProgressBroker()
        queue = broker.subscribe("chan")
        broker.unsubscribe("chan", queue)

        assert broker.subscriber_count("chan") == 0
        assert broker.publish("chan", {"progress": 1}) == 0

    @pytest.mark.asyncio
    async def test_full_queue_drops_oldest(self):
        broker = ProgressBroker(max_queue_size=2)
        queue = broker.subscribe("chan")

        for value in (1, 2, 3):
            broker.publish("chan", {"progress": value})
        await asyncio.sleep(0)

        assert [queue.get_nowait()["progress"] for _ in range(2)] == [2, 3]

    def test_closed_loop_subscribers_are_pruned(self):
        broker = ProgressBroker()
        loop = asyncio.new_event_loop()

        async def _subscribe():
            return broker.subscribe("chan")

        loop.run_until_complete(_subscribe())
        loop.close()

        assert broker.publish("chan", {"progress": 1}) == 0
        assert broker.subscriber_count("chan") == 0
