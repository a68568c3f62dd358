"""
Unit tests for events.py - EventBus delivery
"""
import asyncio

from events import DeviceRegistered, EventBus


class TestEventBus:
    """Tests for subscriber fan-out"""

    def test_sync_subscriber_runs_inline(self):
        bus = EventBus()
        seen = []
        bus.subscribe(seen.append)
        bus.publish(DeviceRegistered(device_id="d1", name="A"))
        assert [e.device_id for e in seen] == ["d1"]

    def test_unsubscribe(self):
        bus = EventBus()
        seen = []
        unsubscribe = bus.subscribe(seen.append)
        unsubscribe()
        unsubscribe()
        bus.publish(DeviceRegistered(device_id="d1", name="A"))
        assert seen == []

    def test_failing_subscriber_does_not_stop_others(self):
        bus = EventBus()
        seen = []

        def broken(event):
            raise RuntimeError("boom")

        bus.subscribe(broken)
        bus.subscribe(seen.append)
        bus.publish(DeviceRegistered(device_id="d1", name="A"))
        assert len(seen) == 1

    def test_async_subscriber_task_is_held_until_done(self):
        async def scenario():
            bus = EventBus()
            release = asyncio.Event()
            seen = []

            async def slow(event):
                await release.wait()
                seen.append(event.device_id)

            bus.subscribe(slow)
            bus.publish(DeviceRegistered(device_id="d1", name="A"))
            pending = len(bus._tasks)
            release.set()
            await asyncio.sleep(0.01)
            return pending, seen, len(bus._tasks)

        pending, seen, remaining = asyncio.run(scenario())
        assert pending == 1
        assert seen == ["d1"]
        assert remaining == 0

    def test_async_subscriber_failure_is_contained(self):
        async def scenario():
            bus = EventBus()
            seen = []

            async def broken(event):
                raise RuntimeError("boom")

            async def fine(event):
                seen.append(event.device_id)

            bus.subscribe(broken)
            bus.subscribe(fine)
            bus.publish(DeviceRegistered(device_id="d1", name="A"))
            await asyncio.sleep(0.01)
            return seen, len(bus._tasks)

        seen, remaining = asyncio.run(scenario())
        assert seen == ["d1"]
        assert remaining == 0
