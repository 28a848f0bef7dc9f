import threading

import pytest

from evently.domain.events import BookingCreatedPayload, EventEnvelope, EventType
from evently.domain.exceptions import BusUnavailableError
from evently.infrastructure.messaging.bus import InMemoryEventBus, RetryPolicy, partition_for


def _envelope(booking_id: str = "b1", sequence: int = 1) -> EventEnvelope:
    return EventEnvelope.build(
        event_type=EventType.BOOKING_CREATED,
        source="booking-service",
        aggregate_id=booking_id,
        sequence=sequence,
        payload=BookingCreatedPayload(booking_id=booking_id, user_id="u1", event_id="e1", seats=1),
    )


def _bus(max_attempts: int = 3, sleeps: list | None = None, workers: int = 3) -> InMemoryEventBus:
    return InMemoryEventBus(
        retry_policy=RetryPolicy(max_attempts=max_attempts, base_delay=0.5, max_delay=2.0),
        workers_per_topic=workers,
        sleep=(sleeps.append if sleeps is not None else (lambda _: None)),
    )


def test_retry_policy_backoff_is_capped():
    policy = RetryPolicy(max_attempts=5, base_delay=0.5, max_delay=3.0)

    assert [policy.delay_for(n) for n in range(1, 6)] == [0.5, 1.0, 2.0, 3.0, 3.0]


def test_drain_delivers_to_every_group():
    bus = _bus()
    seen = {"payments": [], "notifications": []}
    bus.subscribe("booking.created", "payments", seen["payments"].append)
    bus.subscribe("booking.created", "notifications", seen["notifications"].append)

    envelope = _envelope()
    bus.publish(envelope.topic, envelope.aggregate_id, envelope)

    assert bus.drain() == 1
    assert seen["payments"] == [envelope]
    assert seen["notifications"] == [envelope]


def test_failing_handler_is_retried_with_backoff():
    sleeps: list[float] = []
    bus = _bus(max_attempts=4, sleeps=sleeps)
    calls = []

    def flaky(envelope):
        calls.append(envelope)
        if len(calls) < 3:
            raise RuntimeError("database is locked")

    bus.subscribe("booking.created", "payments", flaky)
    envelope = _envelope()
    bus.publish(envelope.topic, envelope.aggregate_id, envelope)
    bus.drain()

    assert len(calls) == 3
    assert sleeps == [0.5, 1.0]
    assert bus.dead_letters == []


def test_poison_envelope_is_dead_lettered():
    bus = _bus(max_attempts=3)

    def poison(envelope):
        raise ValueError("cannot parse payload")

    bus.subscribe("booking.created", "payments", poison)
    envelope = _envelope()
    bus.publish(envelope.topic, envelope.aggregate_id, envelope)
    bus.drain()

    assert len(bus.dead_letters) == 1
    letter = bus.dead_letters[0]
    assert letter.attempts == 3
    assert letter.group == "payments"
    assert letter.envelope == envelope
    assert "cannot parse payload" in letter.error


def test_duplicate_subscription_rejected():
    bus = _bus()
    bus.subscribe("booking.created", "payments", lambda e: None)

    with pytest.raises(ValueError):
        bus.subscribe("booking.created", "payments", lambda e: None)


def test_publish_after_close_raises():
    bus = _bus()
    bus.close()

    with pytest.raises(BusUnavailableError):
        envelope = _envelope()
        bus.publish(envelope.topic, envelope.aggregate_id, envelope)


def test_partition_for_is_stable():
    assert partition_for("booking-1", 3) == partition_for("booking-1", 3)
    assert 0 <= partition_for("booking-1", 3) < 3


def test_workers_keep_per_key_order():
    bus = _bus(workers=3)
    received: dict[str, list[int]] = {}
    lock = threading.Lock()

    def record(envelope):
        with lock:
            received.setdefault(envelope.aggregate_id, []).append(envelope.sequence)

    bus.subscribe("booking.created", "payments", record)
    bus.start()
    for sequence in range(1, 21):
        for booking_id in ("b1", "b2", "b3", "b4"):
            envelope = _envelope(booking_id, sequence)
            bus.publish(envelope.topic, booking_id, envelope)
    bus.close()

    assert set(received) == {"b1", "b2", "b3", "b4"}
    for sequences in received.values():
        assert sequences == list(range(1, 21))


def test_envelope_json_round_trip_keeps_identity():
    envelope = _envelope("b9", 4)

    restored = EventEnvelope.from_json(envelope.to_json())

    assert restored.identity == ("booking.created", "b9", 4)
    assert restored.dedupe_key == "booking.created:b9:4"
    assert restored.payload_as(BookingCreatedPayload).seats == 1
