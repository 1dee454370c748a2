"""
In-process realtime hub: named topics with best-effort fan-out.

Topics carry two kinds of traffic for a room: ephemeral broadcast events
(sync) and change notifications written by the store (messages,
participants, the room row). Delivery is at-most-once and unordered across
publishers; nothing is persisted.
"""
import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Union

logger = logging.getLogger(__name__)

Callback = Callable[[str, Dict[str, Any]], Union[None, Awaitable[None]]]


def messages_topic(room_id: str) -> str:
    return f"watch-room-messages-{room_id}"


def participants_topic(room_id: str) -> str:
    return f"watch-room-participants-{room_id}"


def sync_topic(room_id: str) -> str:
    return f"watch-room-sync-{room_id}"


def playback_topic(room_id: str) -> str:
    return f"watch-room-playback-{room_id}"


class Subscription:
    """Handle returned by :meth:`RealtimeHub.subscribe`."""

    def __init__(self, hub: "RealtimeHub", topic: str, callback: Callback,
                 event: Optional[str] = None):
        self.hub = hub
        self.topic = topic
        self.callback = callback
        self.event = event
        self.active = True

    def matches(self, event: str) -> bool:
        return self.event is None or self.event == event

    def unsubscribe(self):
        """Stop delivery. Safe to call more than once."""
        if not self.active:
            return
        self.active = False
        self.hub._remove(self)


class RealtimeHub:
    """Per-topic publish/subscribe relay."""

    def __init__(self):
        self._topics: Dict[str, Set[Subscription]] = {}

    def subscribe(self, topic: str, callback: Callback,
                  event: Optional[str] = None) -> Subscription:
        """Register ``callback(event, payload)`` for messages on ``topic``.

        When ``event`` is given only messages with that event name are
        delivered.
        """
        sub = Subscription(self, topic, callback, event)
        self._topics.setdefault(topic, set()).add(sub)
        return sub

    def _remove(self, sub: Subscription):
        subs = self._topics.get(sub.topic)
        if not subs:
            return
        subs.discard(sub)
        if not subs:
            del self._topics[sub.topic]

    def subscriber_count(self, topic: str) -> int:
        return len(self._topics.get(topic, ()))

    async def publish(self, topic: str, event: str, payload: Dict[str, Any],
                      exclude: Optional[Subscription] = None) -> int:
        """
        Deliver to every current subscriber of ``topic`` in parallel.

        Returns the number of subscribers the message was handed to.
        Subscriber failures are logged and never reach the publisher.
        """
        targets = [
            sub for sub in list(self._topics.get(topic, ()))
            if sub is not exclude and sub.matches(event)
        ]
        if not targets:
            return 0

        await asyncio.gather(
            *(self._safe_deliver(sub, event, payload) for sub in targets),
            return_exceptions=True,
        )
        return len(targets)

    async def _safe_deliver(self, sub: Subscription, event: str, payload: Dict[str, Any]):
        # Subscriptions torn down while a publish is in flight get nothing
        if not sub.active:
            return
        try:
            result = sub.callback(event, payload)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Subscriber on %s failed handling %s", sub.topic, event)
