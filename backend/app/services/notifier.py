from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from threading import Lock
from typing import Any

from app.core.clock import Clock, to_iso, utcnow

GLOBAL_CHANNEL = "global"


def building_channel(building_id: int) -> str:
    return f"building:{building_id}"


@dataclass(eq=False)
class Subscription:
    channel: str
    loop: asyncio.AbstractEventLoop
    queue: asyncio.Queue = field(repr=False)
    dropped: int = 0


class RealtimeNotifier:
    """Best-effort fan-out of events to websocket subscribers.

    ``publish`` may be called from any thread; delivery is handed to each
    subscriber's event loop. Slow subscribers lose messages once their queue
    is full; publishing never blocks and never raises.
    """

    def __init__(self, *, queue_size: int = 100, clock: Clock = utcnow):
        self._queue_size = queue_size
        self._clock = clock
        self._lock = Lock()
        self._subscriptions: dict[str, set[Subscription]] = {}
        self._published = 0
        self._dropped = 0
        self._logger = logging.getLogger("app.notifier")

    def subscribe(self, channel: str) -> Subscription:
        subscription = Subscription(
            channel=channel,
            loop=asyncio.get_running_loop(),
            queue=asyncio.Queue(maxsize=self._queue_size),
        )
        with self._lock:
            self._subscriptions.setdefault(channel, set()).add(subscription)
        self._logger.debug("subscriber added channel=%s", channel)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscriptions.get(subscription.channel)
            if subscribers is None:
                return
            subscribers.discard(subscription)
            if not subscribers:
                del self._subscriptions[subscription.channel]
        self._logger.debug("subscriber removed channel=%s", subscription.channel)

    def publish(self, channel: str, event: str, payload: dict[str, Any] | None = None) -> int:
        message = {
            "event": event,
            "channel": channel,
            "payload": payload or {},
            "ts": to_iso(self._clock()),
        }
        with self._lock:
            subscribers = list(self._subscriptions.get(channel, ()))
            self._published += 1

        delivered = 0
        for subscription in subscribers:
            try:
                subscription.loop.call_soon_threadsafe(self._offer, subscription, message)
                delivered += 1
            except RuntimeError:
                # subscriber's loop is closed
                self.unsubscribe(subscription)
        return delivered

    def get_status_snapshot(self) -> dict[str, object]:
        with self._lock:
            return {
                "channels": len(self._subscriptions),
                "subscribers": sum(len(items) for items in self._subscriptions.values()),
                "events_published": self._published,
                "events_dropped": self._dropped,
            }

    def _offer(self, subscription: Subscription, message: dict[str, Any]) -> None:
        try:
            subscription.queue.put_nowait(message)
        except asyncio.QueueFull:
            subscription.dropped += 1
            with self._lock:
                self._dropped += 1
            if subscription.dropped == 1 or subscription.dropped % 100 == 0:
                self._logger.warning(
                    "realtime queue full channel=%s dropped=%s",
                    subscription.channel,
                    subscription.dropped,
                )
