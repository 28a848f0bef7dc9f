import logging
from typing import Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from evently.domain.events import EventEnvelope
from evently.infrastructure.db.session import session_scope
from evently.infrastructure.repositories.ledger_repository import ProcessedEventRepository

logger = logging.getLogger(__name__)


class IdempotentConsumer:
    """
    Applies an envelope's mutation at most once per consumer.

    The ledger check, the mutation and the ledger insert share one local
    transaction; if the mutation raises, nothing is recorded and the bus
    redelivers.
    """

    def __init__(self, consumer: str, session_factory: sessionmaker):
        self.consumer = consumer
        self._session_factory = session_factory

    def process(self, envelope: EventEnvelope, mutation: Callable[[Session], None]) -> bool:
        """Returns False when the envelope had already been applied."""
        try:
            with session_scope(self._session_factory) as db:
                ledger = ProcessedEventRepository(db)
                if ledger.has_processed(self.consumer, envelope):
                    logger.info(
                        "Duplicate delivery ignored. consumer=%s key=%s",
                        self.consumer,
                        envelope.dedupe_key,
                    )
                    return False
                mutation(db)
                ledger.record(self.consumer, envelope)
        except IntegrityError:
            # A concurrent delivery may have won the ledger insert.
            if self.already_processed(envelope):
                logger.info(
                    "Concurrent duplicate delivery ignored. consumer=%s key=%s",
                    self.consumer,
                    envelope.dedupe_key,
                )
                return False
            raise
        return True

    def already_processed(self, envelope: EventEnvelope) -> bool:
        with session_scope(self._session_factory) as db:
            return ProcessedEventRepository(db).has_processed(self.consumer, envelope)
