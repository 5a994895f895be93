"""
Provider event ledger.

Records each gateway delivery (provider, event id, type, payload hash) and
whether it was processed. A processed event id short-circuits redelivery;
failed deliveries keep their error and are retried on the next delivery.
State-manager idempotency still holds without it.
"""
import hashlib
import logging
from typing import Optional

from sqlalchemy import and_, insert, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import sessionmaker

from commerce.core.database import provider_events
from commerce.core.errors import TransientStoreError
from commerce.models.subscription import utc_now


logger = logging.getLogger("commerce.webhooks.ledger")


def payload_hash(raw: bytes) -> str:
    return hashlib.sha256(raw).hexdigest()


class ProviderEventLedger:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def is_processed(self, provider: str, event_id: str) -> bool:
        try:
            with self._session_factory() as session:
                row = session.execute(
                    select(provider_events.c.processed).where(
                        and_(
                            provider_events.c.provider == provider,
                            provider_events.c.event_id == event_id,
                        )
                    )
                ).first()
        except DBAPIError as e:
            raise TransientStoreError("Provider event ledger unavailable") from e
        return bool(row and row[0])

    def record_received(self, provider: str, event_id: str, event_type: str, raw_hash: str) -> bool:
        """Insert the delivery. Returns False when the event id was already recorded."""
        with self._session_factory() as session:
            try:
                session.execute(
                    insert(provider_events).values(
                        provider=provider,
                        event_id=event_id,
                        event_type=event_type,
                        payload_hash=raw_hash,
                        processed=False,
                        received_at=utc_now(),
                    )
                )
                session.commit()
                return True
            except IntegrityError:
                session.rollback()
                return False
            except DBAPIError as e:
                session.rollback()
                raise TransientStoreError("Provider event ledger unavailable") from e

    def mark_processed(self, provider: str, event_id: str, error: Optional[str] = None) -> None:
        values = {"error": error}
        if error is None:
            values.update(processed=True, processed_at=utc_now())
        try:
            with self._session_factory() as session:
                session.execute(
                    update(provider_events)
                    .where(
                        and_(
                            provider_events.c.provider == provider,
                            provider_events.c.event_id == event_id,
                        )
                    )
                    .values(**values)
                )
                session.commit()
        except DBAPIError:
            # Ledger is advisory
            logger.warning(
                "[webhooks] could not update provider event ledger",
                exc_info=True,
                extra={"provider": provider, "event_id": event_id},
            )
