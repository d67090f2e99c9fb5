"""In-process publish/subscribe relay.

Each subscription owns a bounded ``asyncio.Queue`` drained by a single consumer
task, so events for one asset reach a subscriber in the order they were
published. Nothing is promised across assets.

When a subscriber falls behind and its queue is full, the subscription's
``OverflowPolicy`` decides:

* ``DROP_OLDEST`` - evict the oldest queued event, enqueue the new one and count
  the drop. Publishers never wait.
* ``BLOCK`` - the publisher awaits until the subscriber frees a slot. A handler
  must not publish to a topic it is itself subscribed to under this policy.
"""
import asyncio
import fnmatch
import inspect
import itertools
import logging
from collections import deque
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Union

from api.metrics import metrics
from .events import Event


logger = logging.getLogger(__name__)

Handler = Callable[[Event], Union[Awaitable[None], None]]


class OverflowPolicy(Enum):
    DROP_OLDEST = 'drop_oldest'
    BLOCK = 'block'

    @classmethod
    def parse(cls, value: Union[str, 'OverflowPolicy']) -> 'OverflowPolicy':
        if isinstance(value, cls):
            return value
        return cls(str(value).strip().lower())


class Subscription:
    def __init__(self, name: str, pattern: str, handler: Handler, maxsize: int, policy: OverflowPolicy):
        self.name = name
        self.pattern = pattern
        self.handler = handler
        self.policy = policy
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self.delivered = 0
        self.failures = 0
        self._task: Optional[asyncio.Task] = None

    def matches(self, topic: str) -> bool:
        return fnmatch.fnmatchcase(topic, self.pattern)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if not self.running:
            self._task = asyncio.create_task(self._consume(), name=f"subscriber:{self.name}")

    async def offer(self, event: Event) -> None:
        if self.policy is OverflowPolicy.BLOCK:
            await self.queue.put(event)
        else:
            while True:
                try:
                    self.queue.put_nowait(event)
                    break
                except asyncio.QueueFull:
                    evicted = self.queue.get_nowait()
                    self.queue.task_done()
                    self.dropped += 1
                    metrics.record_drop(self.name)
                    logger.warning(
                        "Subscriber %s queue full; dropped oldest %s event",
                        self.name,
                        evicted.topic,
                    )
        metrics.update_queue_depth(self.name, self.queue.qsize())

    async def _consume(self) -> None:
        while True:
            event = await self.queue.get()
            try:
                result = self.handler(event)
                if inspect.isawaitable(result):
                    await result
                self.delivered += 1
            except asyncio.CancelledError:
                raise
            except Exception:
                self.failures += 1
                logger.exception("Subscriber %s failed handling %s", self.name, event.topic)
            finally:
                self.queue.task_done()

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

    def stats(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'pattern': self.pattern,
            'policy': self.policy.value,
            'queued': self.queue.qsize(),
            'delivered': self.delivered,
            'dropped': self.dropped,
            'failures': self.failures,
        }


class EventDispatcher:
    def __init__(self, queue_size: int = 1000, overflow_policy: Union[str, OverflowPolicy] = OverflowPolicy.DROP_OLDEST,
                 history_size: int = 100):
        self.queue_size = queue_size
        self.overflow_policy = OverflowPolicy.parse(overflow_policy)
        self.history_size = history_size
        self._subscriptions: List[Subscription] = []
        self._history: Dict[str, Deque[Event]] = {}
        self._ids = itertools.count(1)
        self._started = False

    @classmethod
    def from_settings(cls, settings) -> 'EventDispatcher':
        return cls(
            queue_size=settings.queue_size,
            overflow_policy=settings.overflow_policy,
            history_size=settings.history_size,
        )

    def subscribe(self, pattern: str, handler: Handler, *, name: Optional[str] = None,
                  maxsize: Optional[int] = None,
                  policy: Optional[Union[str, OverflowPolicy]] = None) -> Subscription:
        sub = Subscription(
            name=name or f"sub-{next(self._ids)}",
            pattern=pattern,
            handler=handler,
            maxsize=maxsize or self.queue_size,
            policy=OverflowPolicy.parse(policy) if policy is not None else self.overflow_policy,
        )
        self._subscriptions.append(sub)
        if self._started or _loop_running():
            sub.start()
        return sub

    async def unsubscribe(self, subscription: Subscription) -> bool:
        if subscription not in self._subscriptions:
            return False
        self._subscriptions.remove(subscription)
        await subscription.stop()
        return True

    async def start(self) -> None:
        self._started = True
        for sub in self._subscriptions:
            sub.start()

    async def publish(self, topic: str, payload: Optional[Dict[str, Any]] = None,
                      asset_id: Optional[str] = None) -> Event:
        event = Event(topic=topic, payload=payload or {}, asset_id=asset_id)
        if self.history_size:
            history = self._history.setdefault(topic, deque(maxlen=self.history_size))
            history.append(event)
        for sub in list(self._subscriptions):
            if sub.matches(topic):
                await sub.offer(event)
        return event

    def history(self, topic: str, limit: int = 50) -> List[Event]:
        events = list(self._history.get(topic, ()))
        return events[-limit:] if limit else events

    async def join(self) -> None:
        """Wait until every queued event has been handled."""
        await asyncio.gather(*(sub.queue.join() for sub in self._subscriptions if sub.running))

    async def close(self, grace_s: float = 0.0) -> None:
        if grace_s > 0:
            try:
                await asyncio.wait_for(self.join(), timeout=grace_s)
            except asyncio.TimeoutError:
                logger.warning("Event queues not drained within %.1fs; abandoning remaining events", grace_s)
        for sub in self._subscriptions:
            await sub.stop()
        self._started = False

    def stats(self) -> List[Dict[str, Any]]:
        return [sub.stats() for sub in self._subscriptions]


def _loop_running() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True
