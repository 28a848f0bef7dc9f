# evently/infrastructure/repositories/ledger_repository.py

from sqlalchemy.orm import Session
from sqlalchemy import select

from evently.infrastructure.db.models import ProcessedEvent
from evently.domain.events import EventEnvelope


class ProcessedEventRepository:
    """Per-consumer record of envelope identities already applied."""

    def __init__(self, db: Session):
        self.db = db

    def has_processed(self, consumer: str, envelope: EventEnvelope) -> bool:
        event_type, aggregate_id, sequence = envelope.identity
        stmt = (
            select(ProcessedEvent.id)
            .where(ProcessedEvent.consumer == consumer)
            .where(ProcessedEvent.event_type == event_type)
            .where(ProcessedEvent.aggregate_id == aggregate_id)
            .where(ProcessedEvent.sequence == sequence)
        )
        return self.db.execute(stmt).first() is not None

    def record(self, consumer: str, envelope: EventEnvelope) -> None:
        event_type, aggregate_id, sequence = envelope.identity
        self.db.add(
            ProcessedEvent(
                consumer=consumer,
                event_type=event_type,
                aggregate_id=aggregate_id,
                sequence=sequence,
            )
        )
        self.db.flush()
