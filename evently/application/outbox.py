"""Publishing side of the transactional outbox.

Services write each envelope to ``outbox_events`` in the transaction that
mutates the aggregate, then call ``publish_aggregate`` after commit. If the
bus is down the row stays PENDING and the relay's periodic sweep re-publishes
it, so the "record written, event lost" window closes on its own.
"""

import logging
import threading

from sqlalchemy.orm import sessionmaker

from evently.domain.clock import Clock, utc_now
from evently.domain.events import EventEnvelope
from evently.domain.exceptions import TransientInfraError
from evently.infrastructure.db.models import OutboxEvent
from evently.infrastructure.db.session import session_scope
from evently.infrastructure.messaging.bus import EventBus
from evently.infrastructure.repositories.outbox_repository import PENDING, OutboxRepository

logger = logging.getLogger(__name__)


class OutboxPublisher:

    def __init__(
        self,
        source: str,
        session_factory: sessionmaker,
        bus: EventBus,
        clock: Clock = utc_now,
    ):
        self.source = source
        self._session_factory = session_factory
        self._bus = bus
        self._clock = clock

    def publish_aggregate(self, aggregate_type: str, aggregate_id: str) -> int:
        """
        Publishes every pending envelope of one aggregate in sequence order.
        Stops at the first failure so later envelopes never overtake it.
        Never raises for bus failures; the sweep retries them.
        """
        published = 0
        with session_scope(self._session_factory) as db:
            repo = OutboxRepository(db, self.source)
            for item in repo.list_pending_for_aggregate(aggregate_type, aggregate_id):
                if not self._publish_item(repo, item):
                    break
                published += 1
        return published

    def sweep(self, batch_size: int = 100) -> int:
        published = 0
        blocked: set[tuple[str, str]] = set()
        with session_scope(self._session_factory) as db:
            repo = OutboxRepository(db, self.source)
            for item in repo.list_pending(limit=batch_size):
                aggregate = (item.aggregate_type, item.aggregate_id)
                if aggregate in blocked:
                    continue
                if self._publish_item(repo, item):
                    published += 1
                else:
                    blocked.add(aggregate)
        if published:
            logger.info("Outbox sweep re-published %s envelopes. source=%s", published, self.source)
        return published

    def list_events(self, status: str = PENDING, limit: int = 50) -> list[OutboxEvent]:
        with session_scope(self._session_factory) as db:
            return OutboxRepository(db, self.source).list_by_status(status, limit=limit)

    def _publish_item(self, repo: OutboxRepository, item: OutboxEvent) -> bool:
        envelope = EventEnvelope.from_json(item.payload)
        try:
            self._bus.publish(item.topic, item.partition_key, envelope)
        except TransientInfraError as exc:
            repo.mark_attempt_failed(item, str(exc))
            logger.warning(
                "Publish failed; left for outbox sweep. key=%s attempts=%s error=%s",
                item.dedupe_key,
                item.attempts,
                exc,
            )
            return False
        repo.mark_published(item, self._clock())
        return True


class OutboxRelay:
    """Background sweep over one service's outbox."""

    def __init__(self, publisher: OutboxPublisher, interval_seconds: float = 5.0, batch_size: int = 100):
        self.publisher = publisher
        self.interval_seconds = interval_seconds
        self.batch_size = batch_size
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            name=f"outbox-relay-{self.publisher.source}",
            daemon=True,
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            try:
                self.publisher.sweep(self.batch_size)
            except Exception:
                logger.exception("Outbox sweep failed. source=%s", self.publisher.source)
