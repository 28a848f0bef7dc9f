import pytest

from evently.domain.events import BOOKING_SERVICE, EventType
from evently.domain.exceptions import BusUnavailableError
from evently.infrastructure.repositories.outbox_repository import PENDING, PUBLISHED


class BrokerOutage:
    """Makes bus.publish fail until ``restore()`` is called."""

    def __init__(self, bus, monkeypatch):
        self._bus = bus
        self._publish = bus.publish
        self.down = True
        monkeypatch.setattr(bus, "publish", self.publish)

    def publish(self, topic, key, envelope):
        if self.down:
            raise BusUnavailableError("broker unreachable")
        self._publish(topic, key, envelope)

    def restore(self):
        self.down = False


@pytest.fixture
def outage(container, monkeypatch):
    return BrokerOutage(container.bus, monkeypatch)


def test_mutation_survives_bus_outage(container, outage):
    booking = container.bookings.create("user-1", "event-1", 1)

    assert container.bookings.get(booking.id).version == 1
    assert container.bus.published == []

    publisher = container.publisher_for(BOOKING_SERVICE)
    pending = publisher.list_events(PENDING)
    assert len(pending) == 1
    assert pending[0].attempts == 1
    assert "broker unreachable" in pending[0].last_error


def test_sweep_republishes_after_recovery(container, outage):
    booking = container.bookings.create("user-1", "event-1", 1)
    publisher = container.publisher_for(BOOKING_SERVICE)

    assert publisher.sweep() == 0
    outage.restore()
    assert publisher.sweep() == 1

    assert [e.dedupe_key for _, _, e in container.bus.published] == [f"booking.created:{booking.id}:1"]
    assert publisher.list_events(PENDING) == []
    published = publisher.list_events(PUBLISHED)
    assert published[0].attempts == 3
    assert published[0].published_at is not None


def test_later_envelopes_never_overtake_earlier_ones(container, outage):
    booking = container.bookings.create("user-1", "event-1", 1)
    outage.restore()

    container.bookings.cancel(booking.id)

    types = [(e.event_type, e.sequence) for _, _, e in container.bus.published]
    assert types == [(EventType.BOOKING_CREATED, 1), (EventType.BOOKING_CHANGED, 2)]


def test_sweep_does_not_publish_other_services_rows(container, outage):
    container.bookings.create("user-1", "event-1", 1)
    outage.restore()

    assert container.publisher_for("payment-service").sweep() == 0
    assert container.bus.published == []


def test_unknown_outbox_source(container):
    with pytest.raises(ValueError):
        container.publisher_for("notification-service")
