"""
In-process publish/subscribe hub for chat events.

Topics:
    conversation:{id}:messages   message.created, message.read, message.delivered, message.seen
    conversation:{id}:typing     typing
    presence                     presence.join, presence.leave, presence.changed

Subscribers are `asyncio.Queue` instances (tests, background consumers) or
WebSocket-like objects exposing `async send_json(data)`. A subscriber that
fails to receive is dropped from every topic.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Set

logger = logging.getLogger(__name__)

PRESENCE_TOPIC = "presence"


def messages_topic(conversation_id: str) -> str:
    return f"conversation:{conversation_id}:messages"


def typing_topic(conversation_id: str) -> str:
    return f"conversation:{conversation_id}:typing"


class RealtimeHub:
    """Fan-out of events to the subscribers of a topic."""

    def __init__(self):
        # topic -> subscribers
        self._topics: Dict[str, Set[Any]] = {}

    def subscribe(self, topic: str, subscriber: Any) -> None:
        self._topics.setdefault(topic, set()).add(subscriber)

    def unsubscribe(self, topic: str, subscriber: Any) -> None:
        subscribers = self._topics.get(topic)
        if not subscribers:
            return
        subscribers.discard(subscriber)
        if not subscribers:
            del self._topics[topic]

    def unsubscribe_all(self, subscriber: Any) -> None:
        for topic in list(self._topics):
            self.unsubscribe(topic, subscriber)

    def subscriber_count(self, topic: str) -> int:
        return len(self._topics.get(topic, ()))

    def open_queue(self, topic: str, maxsize: int = 100) -> asyncio.Queue:
        """Subscribe a fresh queue to `topic` and return it."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.subscribe(topic, queue)
        return queue

    async def publish(self, topic: str, event_type: str, data: Dict[str, Any]) -> int:
        """
        Deliver an event to every subscriber of `topic`.

        Returns:
            Number of subscribers that received the event
        """
        event = {
            "type": event_type,
            "topic": topic,
            "data": data,
            "at": datetime.now(timezone.utc).isoformat(),
        }

        delivered = 0
        failed = []
        for subscriber in list(self._topics.get(topic, ())):
            try:
                if isinstance(subscriber, asyncio.Queue):
                    subscriber.put_nowait(event)
                else:
                    await subscriber.send_json(event)
                delivered += 1
            except Exception as e:
                logger.warning(f"Dropping subscriber on {topic}: {e}")
                failed.append(subscriber)

        for subscriber in failed:
            self.unsubscribe_all(subscriber)

        return delivered


# Global hub instance
hub = RealtimeHub()


def get_realtime_hub() -> RealtimeHub:
    """FastAPI dependency returning the process-wide hub."""
    return hub
