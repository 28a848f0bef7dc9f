"""Kafka transport for the event bus.

Consumers run with ``enable.auto.commit=False`` and commit an offset only
after the handler succeeded or the envelope was parked on ``<topic>.dlq``.
Each (topic, group) pair gets ``workers_per_topic`` consumers in the same
group; Kafka assigns partitions among them, so one partition (and therefore
one aggregate) is only ever handled by one thread.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable

from confluent_kafka import Consumer, KafkaError, KafkaException, Producer, TopicPartition
from pydantic import ValidationError

from evently.domain.events import EventEnvelope
from evently.domain.exceptions import BusUnavailableError
from evently.infrastructure.messaging.bus import EventBus, RetryPolicy, Subscription

logger = logging.getLogger(__name__)

DEAD_LETTER_SUFFIX = ".dlq"


class KafkaEventBus(EventBus):

    def __init__(
        self,
        bootstrap_servers: str,
        client_id: str = "evently",
        retry_policy: RetryPolicy | None = None,
        workers_per_topic: int = 3,
        poll_timeout: float = 1.0,
        flush_timeout: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        super().__init__(retry_policy=retry_policy, sleep=sleep)
        self.bootstrap_servers = bootstrap_servers
        self.client_id = client_id
        self.workers_per_topic = max(1, workers_per_topic)
        self.poll_timeout = poll_timeout
        self.flush_timeout = flush_timeout
        self._producer: Producer | None = None
        self._producer_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []

    def connect(self) -> None:
        if self._producer is not None:
            return
        conf: dict[str, Any] = {
            "bootstrap.servers": self.bootstrap_servers,
            "client.id": self.client_id,
            # Broker-side dedup of producer retries.
            "enable.idempotence": True,
            "acks": "all",
        }
        self._producer = Producer(conf)
        logger.info("Kafka producer connected. bootstrap=%s", self.bootstrap_servers)

    def publish(self, topic: str, key: str, envelope: EventEnvelope) -> None:
        self._produce(
            topic,
            key,
            envelope.to_json().encode("utf-8"),
            headers={
                "event_type": envelope.event_type.value,
                "dedupe_key": envelope.dedupe_key,
            },
        )

    def _produce(self, topic: str, key: str, value: bytes, headers: dict[str, str]) -> None:
        if self._producer is None:
            raise BusUnavailableError("Kafka producer is not connected")

        errors: list[KafkaError] = []

        def _delivery_report(err, msg) -> None:
            if err is not None:
                errors.append(err)
            else:
                logger.debug(
                    "Delivered to %s [%s] @ offset %s",
                    msg.topic(),
                    msg.partition(),
                    msg.offset(),
                )

        with self._producer_lock:
            try:
                self._producer.produce(
                    topic=topic,
                    key=key.encode("utf-8"),
                    value=value,
                    headers=headers,
                    on_delivery=_delivery_report,
                )
                remaining = self._producer.flush(self.flush_timeout)
            except (BufferError, KafkaException) as exc:
                raise BusUnavailableError(f"Publish to {topic} failed: {exc}") from exc

        if remaining:
            raise BusUnavailableError(f"Publish to {topic} not acknowledged within {self.flush_timeout}s")
        if errors:
            raise BusUnavailableError(f"Publish to {topic} failed: {errors[0]}")

    def start(self) -> None:
        if self._threads:
            return
        self.connect()
        self._stop_event.clear()
        for subscription in self._subscriptions:
            for index in range(self.workers_per_topic):
                thread = threading.Thread(
                    target=self._consume_loop,
                    args=(subscription,),
                    name=f"kafka-{subscription.group}-{subscription.topic}-{index}",
                    daemon=True,
                )
                thread.start()
                self._threads.append(thread)
        logger.info("Kafka consumers started: %s threads", len(self._threads))

    def close(self) -> None:
        self._stop_event.set()
        # Consumers finish the envelope in hand before closing.
        for thread in self._threads:
            thread.join()
        self._threads = []
        if self._producer is not None:
            self._producer.flush(self.flush_timeout)
            self._producer = None
        logger.info("Kafka event bus closed")

    def _create_consumer(self, subscription: Subscription) -> Consumer:
        conf: dict[str, Any] = {
            "bootstrap.servers": self.bootstrap_servers,
            "group.id": subscription.group,
            "client.id": self.client_id,
            "auto.offset.reset": "earliest",
            "enable.auto.commit": False,
        }
        return Consumer(conf)

    def _consume_loop(self, subscription: Subscription) -> None:
        consumer = self._create_consumer(subscription)
        consumer.subscribe([subscription.topic])
        try:
            while not self._stop_event.is_set():
                msg = consumer.poll(self.poll_timeout)
                if msg is None:
                    continue

                if msg.error():
                    if msg.error().code() != KafkaError._PARTITION_EOF:
                        logger.warning("Kafka error on %s: %s", subscription.topic, msg.error())
                    continue

                try:
                    envelope = EventEnvelope.from_json(msg.value())
                except ValidationError as exc:
                    # Undecodable envelopes can never succeed; park them right away.
                    logger.error(
                        "Bad envelope on %s p=%s o=%s: %s",
                        subscription.topic,
                        msg.partition(),
                        msg.offset(),
                        exc,
                    )
                    try:
                        self._produce(
                            subscription.topic + DEAD_LETTER_SUFFIX,
                            (msg.key() or b"").decode("utf-8", errors="replace"),
                            msg.value(),
                            headers={"group": subscription.group, "error": "undecodable envelope"},
                        )
                    except BusUnavailableError:
                        logger.exception(
                            "Dead-lettering failed; rewinding %s p=%s o=%s",
                            subscription.topic,
                            msg.partition(),
                            msg.offset(),
                        )
                        self._rewind(consumer, msg)
                        continue
                    consumer.commit(message=msg, asynchronous=False)
                    continue

                try:
                    self._dispatch(subscription, envelope)
                except BusUnavailableError:
                    # Dead-letter topic unreachable: rewind so the envelope comes back.
                    logger.exception("Dead-lettering failed; rewinding %s", envelope.dedupe_key)
                    self._rewind(consumer, msg)
                    continue
                consumer.commit(message=msg, asynchronous=False)
        finally:
            consumer.close()
            logger.info("Consumer closed. group=%s topic=%s", subscription.group, subscription.topic)

    def _rewind(self, consumer: Consumer, msg) -> None:
        consumer.seek(TopicPartition(msg.topic(), msg.partition(), msg.offset()))
        self._sleep(self.retry_policy.max_delay)

    def _dead_letter(self, subscription: Subscription, envelope: EventEnvelope, error: str, attempts: int) -> None:
        self._produce(
            subscription.topic + DEAD_LETTER_SUFFIX,
            envelope.aggregate_id,
            envelope.to_json().encode("utf-8"),
            headers={
                "group": subscription.group,
                "error": error[:512],
                "attempts": str(attempts),
            },
        )
