from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from threading import Thread
from unittest import IsolatedAsyncioTestCase

from app.services.notifier import GLOBAL_CHANNEL, RealtimeNotifier, building_channel


def _fixed_clock() -> datetime:
    return datetime(2026, 3, 1, 8, 30, tzinfo=timezone.utc)


class RealtimeNotifierTests(IsolatedAsyncioTestCase):
    async def test_publish_reaches_channel_subscribers_only(self) -> None:
        notifier = RealtimeNotifier(queue_size=5, clock=_fixed_clock)
        building = notifier.subscribe(building_channel(4))
        other = notifier.subscribe(building_channel(5))

        delivered = notifier.publish(building_channel(4), "newAlert", {"alert_id": 1})
        message = await asyncio.wait_for(building.queue.get(), timeout=1)

        self.assertEqual(delivered, 1)
        self.assertEqual(
            message,
            {
                "event": "newAlert",
                "channel": "building:4",
                "payload": {"alert_id": 1},
                "ts": "2026-03-01T08:30:00+00:00",
            },
        )
        self.assertTrue(other.queue.empty())

    async def test_publish_from_worker_thread(self) -> None:
        notifier = RealtimeNotifier(clock=_fixed_clock)
        subscription = notifier.subscribe(GLOBAL_CHANNEL)

        thread = Thread(target=notifier.publish, args=(GLOBAL_CHANNEL, "systemMonitoringUpdate", {}))
        thread.start()
        thread.join()
        message = await asyncio.wait_for(subscription.queue.get(), timeout=1)

        self.assertEqual(message["event"], "systemMonitoringUpdate")

    async def test_full_queue_drops_messages(self) -> None:
        notifier = RealtimeNotifier(queue_size=2, clock=_fixed_clock)
        subscription = notifier.subscribe(GLOBAL_CHANNEL)

        with self.assertLogs("app.notifier", level="WARNING"):
            for index in range(4):
                notifier.publish(GLOBAL_CHANNEL, "jobCompleted", {"job_id": index})
            await asyncio.sleep(0)

        self.assertEqual(subscription.queue.qsize(), 2)
        self.assertEqual(subscription.dropped, 2)
        self.assertEqual(notifier.get_status_snapshot()["events_dropped"], 2)

    async def test_unsubscribe_stops_delivery(self) -> None:
        notifier = RealtimeNotifier(clock=_fixed_clock)
        subscription = notifier.subscribe(GLOBAL_CHANNEL)
        notifier.unsubscribe(subscription)

        self.assertEqual(notifier.publish(GLOBAL_CHANNEL, "jobFailed", {}), 0)
        self.assertEqual(notifier.get_status_snapshot()["subscribers"], 0)
        self.assertEqual(notifier.get_status_snapshot()["events_published"], 1)
