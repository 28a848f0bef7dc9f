import json

import pytest

from evently.domain.events import BookingCreatedPayload, EventEnvelope, EventType
from evently.domain.exceptions import BusUnavailableError
from evently.infrastructure.messaging import kafka_bus
from evently.infrastructure.messaging.bus import RetryPolicy, Subscription
from evently.infrastructure.messaging.kafka_bus import KafkaEventBus


class FakeMessage:
    def __init__(self, topic):
        self._topic = topic

    def topic(self):
        return self._topic

    def partition(self):
        return 0

    def offset(self):
        return 0


class FakeProducer:
    """Acknowledges on flush; ``delivery_error`` or ``unflushed`` simulate broker trouble."""

    instances = []

    def __init__(self, conf):
        self.conf = conf
        self.produced = []
        self.delivery_error = None
        self.unflushed = 0
        self._pending = []
        FakeProducer.instances.append(self)

    def produce(self, topic, key, value, headers, on_delivery):
        self.produced.append({"topic": topic, "key": key, "value": value, "headers": headers})
        self._pending.append((topic, on_delivery))

    def flush(self, timeout):
        for topic, callback in self._pending:
            callback(self.delivery_error, FakeMessage(topic))
        self._pending = []
        return self.unflushed


@pytest.fixture
def kafka(monkeypatch):
    FakeProducer.instances = []
    monkeypatch.setattr(kafka_bus, "Producer", FakeProducer)
    bus = KafkaEventBus(
        "broker:9092",
        client_id="booking-service",
        retry_policy=RetryPolicy(max_attempts=2, base_delay=0, max_delay=0),
        sleep=lambda _: None,
    )
    return bus


def _envelope():
    return EventEnvelope.build(
        event_type=EventType.BOOKING_CREATED,
        source="booking-service",
        aggregate_id="b1",
        sequence=1,
        payload=BookingCreatedPayload(booking_id="b1", user_id="user-1", event_id="event-1", seats=2),
    )


def test_publish_requires_connection(kafka):
    with pytest.raises(BusUnavailableError):
        kafka.publish("booking.created", "b1", _envelope())


def test_producer_is_idempotent_with_full_acks(kafka):
    kafka.connect()
    kafka.connect()

    assert len(FakeProducer.instances) == 1
    conf = FakeProducer.instances[0].conf
    assert conf["enable.idempotence"] is True
    assert conf["acks"] == "all"
    assert conf["bootstrap.servers"] == "broker:9092"


def test_publish_keys_by_aggregate(kafka):
    kafka.connect()
    envelope = _envelope()

    kafka.publish("booking.created", "b1", envelope)

    record = FakeProducer.instances[0].produced[0]
    assert record["topic"] == "booking.created"
    assert record["key"] == b"b1"
    assert record["headers"] == {"event_type": "booking.created", "dedupe_key": envelope.dedupe_key}
    assert json.loads(record["value"])["aggregate_id"] == "b1"


def test_delivery_failure_raises(kafka):
    kafka.connect()
    FakeProducer.instances[0].delivery_error = "Broker: Not enough in-sync replicas"

    with pytest.raises(BusUnavailableError):
        kafka.publish("booking.created", "b1", _envelope())


def test_unacknowledged_publish_raises(kafka):
    kafka.connect()
    FakeProducer.instances[0].unflushed = 1

    with pytest.raises(BusUnavailableError):
        kafka.publish("booking.created", "b1", _envelope())


def test_local_queue_full_raises(kafka, monkeypatch):
    kafka.connect()

    def full(*args, **kwargs):
        raise BufferError("Local: Queue full")

    monkeypatch.setattr(FakeProducer.instances[0], "produce", full)

    with pytest.raises(BusUnavailableError):
        kafka.publish("booking.created", "b1", _envelope())


def test_poison_envelope_goes_to_dead_letter_topic(kafka):
    kafka.connect()
    calls = []

    def handler(envelope):
        calls.append(envelope.dedupe_key)
        raise RuntimeError("projection failed")

    subscription = Subscription(topic="booking.created", group="notification-service", handler=handler)

    assert kafka._dispatch(subscription, _envelope()) is False

    assert len(calls) == 2
    record = FakeProducer.instances[0].produced[-1]
    assert record["topic"] == "booking.created.dlq"
    assert record["key"] == b"b1"
    assert record["headers"]["group"] == "notification-service"
    assert record["headers"]["attempts"] == "2"


class FakeRecord:
    def __init__(self, value, topic="booking.created", partition=0, offset=7):
        self._value = value
        self._topic = topic
        self._partition = partition
        self._offset = offset

    def error(self):
        return None

    def value(self):
        return self._value

    def key(self):
        return b"b1"

    def topic(self):
        return self._topic

    def partition(self):
        return self._partition

    def offset(self):
        return self._offset


class FakeConsumer:
    """Hands out the queued records, then stops the bus on the next empty poll."""

    def __init__(self, bus, records):
        self._bus = bus
        self._records = list(records)
        self.seeks = []
        self.commits = []
        self.closed = False

    def subscribe(self, topics):
        self.topics = topics

    def poll(self, timeout):
        if self._records:
            return self._records.pop(0)
        self._bus._stop_event.set()
        return None

    def seek(self, partition):
        self.seeks.append((partition.topic, partition.partition, partition.offset))

    def commit(self, message, asynchronous):
        self.commits.append(message.offset())

    def close(self):
        self.closed = True


def _run_consumer(kafka, monkeypatch, records):
    consumer = FakeConsumer(kafka, records)
    monkeypatch.setattr(kafka, "_create_consumer", lambda subscription: consumer)
    subscription = Subscription(topic="booking.created", group="payment-service", handler=lambda envelope: None)
    kafka._consume_loop(subscription)
    return consumer


def test_undecodable_record_is_parked_and_committed(kafka, monkeypatch):
    kafka.connect()

    consumer = _run_consumer(kafka, monkeypatch, [FakeRecord(b"not an envelope")])

    record = FakeProducer.instances[0].produced[-1]
    assert record["topic"] == "booking.created.dlq"
    assert record["headers"]["error"] == "undecodable envelope"
    assert consumer.commits == [7]
    assert consumer.closed


def test_undecodable_record_is_rewound_when_dead_letter_topic_is_down(kafka, monkeypatch):
    kafka.connect()
    FakeProducer.instances[0].delivery_error = "Broker: Leader not available"

    consumer = _run_consumer(
        kafka,
        monkeypatch,
        [FakeRecord(b"not an envelope"), FakeRecord(_envelope().to_json().encode("utf-8"), offset=8)],
    )

    assert consumer.seeks == [("booking.created", 0, 7)]
    assert consumer.commits == [8]
    assert consumer.closed
