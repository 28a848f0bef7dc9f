"""Wires settings into services, buses and consumers.

Each service gets its own engine and session factory, its own outbox
publisher and its own consumer group. The API process and the standalone
worker both build their collaborators here.
"""

import logging
from dataclasses import dataclass, field

from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from evently.application.booking_service import BookingService
from evently.application.notification_service import SUBSCRIBED_EVENTS, NotificationProjector
from evently.application.outbox import OutboxPublisher, OutboxRelay
from evently.application.payment_service import PaymentService
from evently.application.token_service import TokenCodec
from evently.domain.clock import Clock, utc_now
from evently.domain.events import (
    BOOKING_SERVICE,
    NOTIFICATION_SERVICE,
    PAYMENT_SERVICE,
    EventType,
)
from evently.infrastructure.config import Settings
from evently.infrastructure.db.models import (
    BOOKING_SERVICE_TABLES,
    NOTIFICATION_SERVICE_TABLES,
    PAYMENT_SERVICE_TABLES,
)
from evently.infrastructure.db.session import (
    Base,
    create_db_engine,
    create_session_factory,
    wait_for_db,
)
from evently.infrastructure.gateway.razorpay_gateway import (
    MockRazorpayGateway,
    PaymentGateway,
    RazorpayGateway,
)
from evently.infrastructure.messaging.bus import EventBus, InMemoryEventBus, RetryPolicy
from evently.infrastructure.messaging.kafka_bus import KafkaEventBus
from evently.infrastructure.notifications.sender import LoggingNotificationSender, NotificationSender

logger = logging.getLogger(__name__)

ALL_SERVICES = (BOOKING_SERVICE, PAYMENT_SERVICE, NOTIFICATION_SERVICE)

_SERVICE_TABLES = {
    BOOKING_SERVICE: BOOKING_SERVICE_TABLES,
    PAYMENT_SERVICE: PAYMENT_SERVICE_TABLES,
    NOTIFICATION_SERVICE: NOTIFICATION_SERVICE_TABLES,
}


@dataclass
class ServiceContainer:
    settings: Settings
    bus: EventBus
    codec: TokenCodec
    gateway: PaymentGateway
    sender: NotificationSender
    engines: dict[str, Engine]
    session_factories: dict[str, sessionmaker]
    publishers: dict[str, OutboxPublisher]
    bookings: BookingService
    payments: PaymentService
    notifications: NotificationProjector
    relays: list[OutboxRelay] = field(default_factory=list)

    def publisher_for(self, source: str) -> OutboxPublisher:
        try:
            return self.publishers[source]
        except KeyError:
            raise ValueError(f"No outbox for {source}") from None


def build_retry_policy(settings: Settings) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=settings.bus_max_retries,
        base_delay=settings.bus_retry_base_delay,
        max_delay=settings.bus_retry_max_delay,
    )


def build_event_bus(settings: Settings, client_id: str = "evently") -> EventBus:
    policy = build_retry_policy(settings)
    if settings.event_bus_backend == "kafka":
        return KafkaEventBus(
            bootstrap_servers=settings.kafka_bootstrap_servers,
            client_id=client_id,
            retry_policy=policy,
            workers_per_topic=settings.consumer_workers_per_topic,
        )
    if settings.event_bus_backend == "memory":
        return InMemoryEventBus(
            retry_policy=policy,
            workers_per_topic=settings.consumer_workers_per_topic,
        )
    raise ValueError(f"Unknown EVENT_BUS_BACKEND: {settings.event_bus_backend}")


def build_gateway(settings: Settings) -> PaymentGateway:
    if settings.payment_gateway_mode == "mock":
        gateway_class = MockRazorpayGateway
    elif settings.payment_gateway_mode == "live":
        gateway_class = RazorpayGateway
    else:
        raise ValueError(f"Unknown PAYMENT_GATEWAY_MODE: {settings.payment_gateway_mode}")

    logger.info("Payment gateway mode: %s", settings.payment_gateway_mode)
    return gateway_class(
        key_id=settings.razorpay_key_id,
        key_secret=settings.razorpay_key_secret,
        timeout=settings.gateway_timeout_seconds,
        webhook_secret=settings.razorpay_webhook_secret,
    )


def build_container(
    settings: Settings,
    bus: EventBus | None = None,
    gateway: PaymentGateway | None = None,
    sender: NotificationSender | None = None,
    clock: Clock = utc_now,
) -> ServiceContainer:
    bus = bus or build_event_bus(settings)
    gateway = gateway or build_gateway(settings)
    sender = sender or LoggingNotificationSender()

    database_urls = {
        BOOKING_SERVICE: settings.booking_database_url,
        PAYMENT_SERVICE: settings.payment_database_url,
        NOTIFICATION_SERVICE: settings.notification_database_url,
    }
    engines = {service: create_db_engine(url) for service, url in database_urls.items()}
    session_factories = {service: create_session_factory(engine) for service, engine in engines.items()}

    publishers = {
        service: OutboxPublisher(service, session_factories[service], bus, clock=clock)
        for service in (BOOKING_SERVICE, PAYMENT_SERVICE)
    }

    return ServiceContainer(
        settings=settings,
        bus=bus,
        codec=TokenCodec(settings.jwt_secret, default_ttl_seconds=settings.jwt_ttl_seconds),
        gateway=gateway,
        sender=sender,
        engines=engines,
        session_factories=session_factories,
        publishers=publishers,
        bookings=BookingService(
            session_factories[BOOKING_SERVICE],
            publishers[BOOKING_SERVICE],
            clock=clock,
        ),
        payments=PaymentService(
            session_factories[PAYMENT_SERVICE],
            publishers[PAYMENT_SERVICE],
            gateway,
            clock=clock,
            replay_window_seconds=settings.callback_replay_window_seconds,
        ),
        notifications=NotificationProjector(
            session_factories[NOTIFICATION_SERVICE],
            sender,
            max_retries=settings.notification_max_retries,
            clock=clock,
            pending_grace_seconds=settings.notification_pending_grace_seconds,
        ),
    )


def create_schema(container: ServiceContainer, services=ALL_SERVICES, wait: bool = False) -> None:
    for service in services:
        engine = container.engines[service]
        if wait:
            wait_for_db(
                engine,
                max_retries=container.settings.db_connect_max_retries,
                retry_delay_seconds=container.settings.db_connect_retry_delay,
            )
        Base.metadata.create_all(bind=engine, tables=_SERVICE_TABLES[service])


def register_consumers(container: ServiceContainer, services=ALL_SERVICES) -> None:
    bus = container.bus
    if BOOKING_SERVICE in services:
        for event_type in (EventType.PAYMENT_SUCCESS, EventType.PAYMENT_FAILED):
            bus.subscribe(event_type.topic, BOOKING_SERVICE, container.bookings.on_payment_outcome)
    if PAYMENT_SERVICE in services:
        for event_type in (EventType.BOOKING_CREATED, EventType.BOOKING_CHANGED):
            bus.subscribe(event_type.topic, PAYMENT_SERVICE, container.payments.on_booking_event)
    if NOTIFICATION_SERVICE in services:
        for event_type in SUBSCRIBED_EVENTS:
            bus.subscribe(event_type.topic, NOTIFICATION_SERVICE, container.notifications.handle)


def start_relays(container: ServiceContainer, services=ALL_SERVICES) -> None:
    for source, publisher in container.publishers.items():
        if source not in services:
            continue
        relay = OutboxRelay(
            publisher,
            interval_seconds=container.settings.outbox_sweep_interval_seconds,
            batch_size=container.settings.outbox_batch_size,
        )
        relay.start()
        container.relays.append(relay)


def shutdown(container: ServiceContainer) -> None:
    for relay in container.relays:
        relay.stop()
    container.relays.clear()
    container.bus.close()
    for engine in container.engines.values():
        engine.dispose()
