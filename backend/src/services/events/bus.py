"""
In-process asynchronous event bus.

Publishers push immutable ``Event`` records onto named topics; every
subscription owns a bounded queue and receives events from the topics it
currently follows. A subscriber that falls behind loses events once its
queue is full; nothing is replayed. Per topic, events reach each subscriber
in publish order.
"""

import asyncio
import uuid
from collections import defaultdict
from typing import Any, AsyncIterator, Iterable, Optional

from src.core.logging import get_logger
from src.schemas.events import Event

logger = get_logger(__name__)


def user_topic(user_id: Any) -> str:
    return f"user:{user_id}"


def role_topic(role: Any) -> str:
    return f"role:{getattr(role, 'value', role)}"


def order_topic(order_id: Any) -> str:
    return f"order:{order_id}"


class SubscriptionClosed(Exception):
    """Raised when reading from a closed subscription."""


class Subscription:
    """
    A subscriber's view of the bus.

    Iterate with ``async for`` to receive events; iteration stops once the
    subscription is closed and its queue is drained.

    Attributes:
        id: Subscription identifier used in logs
        topics: Topics currently followed
        dropped: Number of events lost to a full queue
    """

    def __init__(self, bus: "EventBus", topics: Iterable[str], queue_size: int):
        self.id = uuid.uuid4().hex[:12]
        self.topics: set[str] = set()
        self.dropped = 0
        self._bus = bus
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=queue_size)
        self._closed = asyncio.Event()
        for topic in topics:
            self.add_topic(topic)

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def add_topic(self, topic: str) -> None:
        if self.closed or topic in self.topics:
            return
        self.topics.add(topic)
        self._bus._attach(topic, self)

    def remove_topic(self, topic: str) -> None:
        if topic not in self.topics:
            return
        self.topics.discard(topic)
        self._bus._detach(topic, self)

    def offer(self, event: Event) -> bool:
        """Queue an event without waiting; False if it was dropped."""
        if self.closed:
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "Subscriber queue full, event dropped",
                subscription_id=self.id,
                topic=event.topic,
                event_type=event.type,
                dropped=self.dropped,
            )
            return False
        return True

    async def get(self) -> Event:
        """
        Wait for the next event.

        Raises:
            SubscriptionClosed: If the subscription is closed and drained
        """
        if not self._queue.empty():
            return self._queue.get_nowait()
        if self.closed:
            raise SubscriptionClosed(self.id)

        getter = asyncio.ensure_future(self._queue.get())
        closer = asyncio.ensure_future(self._closed.wait())
        try:
            done, _ = await asyncio.wait(
                {getter, closer}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in (getter, closer):
                if not task.done():
                    task.cancel()

        if getter in done:
            return getter.result()
        raise SubscriptionClosed(self.id)

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        if self.closed:
            return
        for topic in list(self.topics):
            self.remove_topic(topic)
        self._bus._forget(self)
        self._closed.set()
        logger.debug("Subscription closed", subscription_id=self.id)

    def __aiter__(self) -> AsyncIterator[Event]:
        return self

    async def __anext__(self) -> Event:
        try:
            return await self.get()
        except SubscriptionClosed:
            raise StopAsyncIteration

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self._bus.unsubscribe(self)


class EventBus:
    """
    Topic based fan-out of events to subscriptions.

    Publishing only enqueues, so it never blocks on a slow subscriber. The
    bus must be started before events are delivered; publishing to a stopped
    bus is a logged no-op.
    """

    def __init__(self, queue_size: int = 100):
        if queue_size < 1:
            raise ValueError("queue_size must be positive")
        self.queue_size = queue_size
        self._topics: dict[str, set[Subscription]] = defaultdict(set)
        self._subscriptions: set[Subscription] = set()
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        self._running = True
        logger.info("Event bus started", queue_size=self.queue_size)

    async def stop(self) -> None:
        self._running = False
        for subscription in list(self._subscriptions):
            subscription.close()
        self._subscriptions.clear()
        self._topics.clear()
        logger.info("Event bus stopped")

    def subscribe(self, *topics: str, queue_size: Optional[int] = None) -> Subscription:
        subscription = Subscription(self, topics, queue_size or self.queue_size)
        self._subscriptions.add(subscription)
        logger.debug(
            "Subscription opened",
            subscription_id=subscription.id,
            topics=sorted(subscription.topics),
        )
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.close()
        self._subscriptions.discard(subscription)

    async def publish(self, topic: str, event: Event) -> int:
        """
        Deliver an event to every subscriber of a topic.

        Returns:
            Number of subscribers that received the event
        """
        if not self._running:
            logger.debug("Event bus not running, event discarded", topic=topic)
            return 0

        delivered = 0
        for subscription in list(self._topics.get(topic, ())):
            if subscription.offer(event):
                delivered += 1
        return delivered

    @property
    def open_subscriptions(self) -> int:
        return len(self._subscriptions)

    def subscriber_count(self, topic: str) -> int:
        return len(self._topics.get(topic, ()))

    def _attach(self, topic: str, subscription: Subscription) -> None:
        self._topics[topic].add(subscription)

    def _forget(self, subscription: Subscription) -> None:
        self._subscriptions.discard(subscription)

    def _detach(self, topic: str, subscription: Subscription) -> None:
        subscribers = self._topics.get(topic)
        if subscribers is None:
            return
        subscribers.discard(subscription)
        if not subscribers:
            del self._topics[topic]
