"""Event bus contract and the in-process implementation.

Delivery is at-least-once. A handler that raises does not acknowledge the
envelope: it is redelivered after an exponential backoff, and parked on the
dead-letter list once the retry budget is spent. Envelopes sharing a
partition key are never handled concurrently within one consumer group.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
import zlib
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Callable

from evently.domain.events import EventEnvelope
from evently.domain.exceptions import BusUnavailableError

logger = logging.getLogger(__name__)

Handler = Callable[[EventEnvelope], None]


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    base_delay: float = 0.5
    max_delay: float = 30.0

    def delay_for(self, attempt: int) -> float:
        """Backoff before redelivery number ``attempt`` (1-based)."""
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))


@dataclass(frozen=True)
class Subscription:
    topic: str
    group: str
    handler: Handler


@dataclass(frozen=True)
class DeadLetter:
    topic: str
    group: str
    envelope: EventEnvelope
    error: str
    attempts: int


def partition_for(key: str, partitions: int) -> int:
    return zlib.crc32(key.encode("utf-8")) % partitions


class EventBus(ABC):

    def __init__(
        self,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep
        self._subscriptions: list[Subscription] = []

    @abstractmethod
    def connect(self) -> None:
        ...

    @abstractmethod
    def publish(self, topic: str, key: str, envelope: EventEnvelope) -> None:
        """Returns once the transport acknowledged the envelope, else raises BusUnavailableError."""

    @abstractmethod
    def start(self) -> None:
        ...

    @abstractmethod
    def close(self) -> None:
        ...

    @abstractmethod
    def _dead_letter(self, subscription: Subscription, envelope: EventEnvelope, error: str, attempts: int) -> None:
        ...

    def subscribe(self, topic: str, group: str, handler: Handler) -> None:
        for existing in self._subscriptions:
            if existing.topic == topic and existing.group == group:
                raise ValueError(f"Group {group} already subscribed to {topic}")
        self._subscriptions.append(Subscription(topic=topic, group=group, handler=handler))
        logger.info("Subscribed group=%s topic=%s", group, topic)

    @property
    def subscriptions(self) -> list[Subscription]:
        return list(self._subscriptions)

    def _dispatch(self, subscription: Subscription, envelope: EventEnvelope) -> bool:
        """
        Runs the handler until it succeeds or the retry budget is spent.
        Returns True on success, False when the envelope was dead-lettered.
        """
        attempts = 0
        while True:
            attempts += 1
            try:
                subscription.handler(envelope)
                return True
            except Exception as exc:
                if attempts >= self.retry_policy.max_attempts:
                    logger.error(
                        "Dead-lettering envelope after %s attempts. group=%s topic=%s key=%s error=%s",
                        attempts,
                        subscription.group,
                        subscription.topic,
                        envelope.dedupe_key,
                        exc,
                    )
                    self._dead_letter(subscription, envelope, repr(exc), attempts)
                    return False
                delay = self.retry_policy.delay_for(attempts)
                logger.warning(
                    "Handler failed (attempt %s/%s). Redelivering in %.2fs. group=%s key=%s error=%s",
                    attempts,
                    self.retry_policy.max_attempts,
                    delay,
                    subscription.group,
                    envelope.dedupe_key,
                    exc,
                )
                self._sleep(delay)


class _PartitionWorker(threading.Thread):
    """Serial consumer for one partition of one (topic, group) pair."""

    _STOP = object()

    def __init__(self, bus: "InMemoryEventBus", subscription: Subscription, index: int):
        super().__init__(
            name=f"bus-{subscription.group}-{subscription.topic}-{index}",
            daemon=True,
        )
        self.bus = bus
        self.subscription = subscription
        self.inbox: queue.Queue = queue.Queue()

    def run(self) -> None:
        while True:
            envelope = self.inbox.get()
            try:
                if envelope is self._STOP:
                    return
                self.bus._dispatch(self.subscription, envelope)
            finally:
                self.inbox.task_done()

    def stop(self) -> None:
        self.inbox.put(self._STOP)


class InMemoryEventBus(EventBus):
    """
    Process-local bus.

    Before ``start()`` published envelopes queue up and ``drain()`` delivers
    them on the calling thread, which keeps tests deterministic. After
    ``start()`` every (topic, group) pair gets ``workers_per_topic`` partition
    workers and envelopes are routed to them by partition key.
    """

    def __init__(
        self,
        retry_policy: RetryPolicy | None = None,
        workers_per_topic: int = 3,
        sleep: Callable[[float], None] = time.sleep,
    ):
        super().__init__(retry_policy=retry_policy, sleep=sleep)
        self.workers_per_topic = max(1, workers_per_topic)
        self.published: list[tuple[str, str, EventEnvelope]] = []
        self.dead_letters: list[DeadLetter] = []
        self._pending: deque[tuple[str, str, EventEnvelope]] = deque()
        self._workers: dict[tuple[str, str], list[_PartitionWorker]] = {}
        self._lock = threading.RLock()
        self._connected = False
        self._running = False
        self._closed = False

    def connect(self) -> None:
        with self._lock:
            self._connected = True
            self._closed = False

    def publish(self, topic: str, key: str, envelope: EventEnvelope) -> None:
        with self._lock:
            if self._closed:
                raise BusUnavailableError("Event bus is closed")
            self.published.append((topic, key, envelope))
            if self._running:
                self._route(topic, key, envelope)
            else:
                self._pending.append((topic, key, envelope))

    def subscribe(self, topic: str, group: str, handler: Handler) -> None:
        with self._lock:
            if self._running:
                raise RuntimeError("Cannot subscribe after the bus has started")
            super().subscribe(topic, group, handler)

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._connected = True
            for subscription in self._subscriptions:
                workers = [
                    _PartitionWorker(self, subscription, index)
                    for index in range(self.workers_per_topic)
                ]
                self._workers[(subscription.topic, subscription.group)] = workers
                for worker in workers:
                    worker.start()
            self._running = True
            while self._pending:
                self._route(*self._pending.popleft())
        logger.info("In-memory event bus started with %s subscriptions", len(self._subscriptions))

    def drain(self) -> int:
        """Delivers queued envelopes synchronously, including ones published meanwhile."""
        if self._running:
            raise RuntimeError("drain() is only available before start()")
        delivered = 0
        while True:
            with self._lock:
                if not self._pending:
                    return delivered
                topic, key, envelope = self._pending.popleft()
            for subscription in self._subscriptions:
                if subscription.topic == topic:
                    self._dispatch(subscription, envelope)
            delivered += 1

    def redeliver(self, topic: str, key: str, envelope: EventEnvelope) -> None:
        """Queues an envelope again without recording it as a new publish."""
        with self._lock:
            if self._running:
                self._route(topic, key, envelope)
            else:
                self._pending.append((topic, key, envelope))

    def close(self) -> None:
        with self._lock:
            workers = [w for group in self._workers.values() for w in group]
            self._running = False
            self._closed = True
            self._workers = {}
        # Drain in-flight envelopes before letting go.
        for worker in workers:
            worker.inbox.join()
            worker.stop()
        for worker in workers:
            worker.join()
        logger.info("In-memory event bus closed")

    def _route(self, topic: str, key: str, envelope: EventEnvelope) -> None:
        for subscription in self._subscriptions:
            if subscription.topic != topic:
                continue
            workers = self._workers[(topic, subscription.group)]
            workers[partition_for(key, len(workers))].inbox.put(envelope)

    def _dead_letter(self, subscription: Subscription, envelope: EventEnvelope, error: str, attempts: int) -> None:
        with self._lock:
            self.dead_letters.append(
                DeadLetter(
                    topic=subscription.topic,
                    group=subscription.group,
                    envelope=envelope,
                    error=error,
                    attempts=attempts,
                )
            )
