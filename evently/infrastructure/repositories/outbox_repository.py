# evently/infrastructure/repositories/outbox_repository.py

from datetime import datetime

from sqlalchemy.orm import Session
from sqlalchemy import select

from evently.infrastructure.db.models import OutboxEvent
from evently.domain.events import EventEnvelope

PENDING = "PENDING"
PUBLISHED = "PUBLISHED"


class OutboxRepository:

    def __init__(self, db: Session, source: str):
        self.db = db
        self.source = source

    def add(self, aggregate_type: str, envelope: EventEnvelope) -> OutboxEvent | None:
        existing = self.db.execute(
            select(OutboxEvent).where(OutboxEvent.dedupe_key == envelope.dedupe_key)
        ).scalar_one_or_none()
        if existing:
            return None

        item = OutboxEvent(
            source=self.source,
            aggregate_type=aggregate_type,
            aggregate_id=envelope.aggregate_id,
            event_type=envelope.event_type.value,
            sequence=envelope.sequence,
            topic=envelope.topic,
            partition_key=envelope.aggregate_id,
            payload=envelope.to_json(),
            dedupe_key=envelope.dedupe_key,
            status=PENDING,
            attempts=0,
        )
        self.db.add(item)
        return item

    def get_by_id(self, item_id: str) -> OutboxEvent | None:
        stmt = (
            select(OutboxEvent)
            .where(OutboxEvent.id == item_id)
            .where(OutboxEvent.source == self.source)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def list_by_status(self, status: str, limit: int = 50) -> list[OutboxEvent]:
        stmt = (
            select(OutboxEvent)
            .where(OutboxEvent.source == self.source)
            .where(OutboxEvent.status == status)
            .order_by(OutboxEvent.created_at, OutboxEvent.sequence)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_pending(self, limit: int = 100) -> list[OutboxEvent]:
        return self.list_by_status(PENDING, limit=limit)

    def list_pending_for_aggregate(self, aggregate_type: str, aggregate_id: str) -> list[OutboxEvent]:
        stmt = (
            select(OutboxEvent)
            .where(OutboxEvent.source == self.source)
            .where(OutboxEvent.aggregate_type == aggregate_type)
            .where(OutboxEvent.aggregate_id == aggregate_id)
            .where(OutboxEvent.status == PENDING)
            .order_by(OutboxEvent.sequence)
        )
        return list(self.db.execute(stmt).scalars().all())

    def mark_published(self, item: OutboxEvent, now: datetime) -> None:
        item.status = PUBLISHED
        item.published_at = now
        item.attempts += 1
        item.last_error = None

    def mark_attempt_failed(self, item: OutboxEvent, error: str) -> None:
        item.attempts += 1
        item.last_error = error
