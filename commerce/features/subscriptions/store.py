"""
commerce/features/subscriptions/store.py

Subscription store adapter.

Narrow persistence interface for subscription records and the append-only
history log. All transitions go through `SubscriptionStore.locked(user_id)`,
which serializes writers per user (an in-process lock, plus an advisory
lock and row locks on Postgres) and commits or rolls back as one unit. A
partial unique index keeps at most one active row per user even when
writers in different processes race.
"""

import json
import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional

from sqlalchemy import and_, insert, select, text, update
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, sessionmaker

from commerce.core.database import ONE_ACTIVE_PER_USER_INDEX, subscription_history, user_subscriptions
from commerce.core.errors import TransientStoreError
from commerce.models.subscription import (
    HistoryAction,
    Provider,
    Subscription,
    SubscriptionHistoryEntry,
    SubscriptionStatus,
)


logger = logging.getLogger("commerce.subscriptions.store")


class DuplicateProviderSubscription(Exception):
    """Insert collided with an existing (provider, provider_subscription_id)."""


class ActiveSubscriptionConflict(TransientStoreError):
    """Another writer committed an active subscription for the same user first."""

    code = "subscription_conflict"


def _is_active_conflict(error: IntegrityError) -> bool:
    message = str(error.orig)
    # Postgres names the index; SQLite names the indexed column
    return ONE_ACTIVE_PER_USER_INDEX in message or "user_subscriptions.user_id" in message


class _KeyedLocks:
    """Reference-counted per-key locks."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, List[Any]] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)


class SubscriptionRepository:
    """Queries and writes bound to one session (one unit of work)."""

    def __init__(self, session: Session):
        self.session = session

    # Reads

    def get(self, subscription_id: str) -> Optional[Subscription]:
        row = self.session.execute(
            select(user_subscriptions).where(user_subscriptions.c.id == subscription_id)
        ).first()
        return Subscription.from_row(row) if row else None

    def get_active_for_user(self, user_id: str) -> Optional[Subscription]:
        """Most recent active subscription for the user."""
        row = self.session.execute(
            select(user_subscriptions)
            .where(
                and_(
                    user_subscriptions.c.user_id == user_id,
                    user_subscriptions.c.status == SubscriptionStatus.ACTIVE.value,
                )
            )
            .order_by(user_subscriptions.c.created_at.desc())
            .limit(1)
        ).first()
        return Subscription.from_row(row) if row else None

    def list_for_user(self, user_id: str) -> List[Subscription]:
        rows = self.session.execute(
            select(user_subscriptions)
            .where(user_subscriptions.c.user_id == user_id)
            .order_by(user_subscriptions.c.created_at.asc())
        ).fetchall()
        return [Subscription.from_row(r) for r in rows]

    def get_by_provider_id(self, provider: Provider, provider_subscription_id: str) -> Optional[Subscription]:
        row = self.session.execute(
            select(user_subscriptions).where(
                and_(
                    user_subscriptions.c.provider == provider.value,
                    user_subscriptions.c.provider_subscription_id == provider_subscription_id,
                )
            )
        ).first()
        return Subscription.from_row(row) if row else None

    def find_active_ending_before(
        self,
        ts: datetime,
        limit: int,
        exclude_ids: Optional[Iterable[str]] = None,
    ) -> List[Subscription]:
        conditions = [
            user_subscriptions.c.status == SubscriptionStatus.ACTIVE.value,
            user_subscriptions.c.current_period_end < ts,
        ]
        if exclude_ids:
            conditions.append(user_subscriptions.c.id.notin_(list(exclude_ids)))
        rows = self.session.execute(
            select(user_subscriptions)
            .where(and_(*conditions))
            .order_by(user_subscriptions.c.current_period_end.asc())
            .limit(limit)
        ).fetchall()
        return [Subscription.from_row(r) for r in rows]

    def list_history(
        self,
        *,
        subscription_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> List[SubscriptionHistoryEntry]:
        stmt = select(subscription_history).order_by(subscription_history.c.id.asc())
        if subscription_id is not None:
            stmt = stmt.where(subscription_history.c.subscription_id == subscription_id)
        if user_id is not None:
            stmt = stmt.where(subscription_history.c.user_id == user_id)
        return [SubscriptionHistoryEntry.from_row(r) for r in self.session.execute(stmt).fetchall()]

    # Writes

    def lock_user_rows(self, user_id: str) -> None:
        """
        Serialize writers for one user across processes.

        Postgres takes a transaction-scoped advisory lock on the user id, which
        also covers users with no rows yet, then row-locks existing rows.
        SQLite relies on its database write lock and the one-active index.
        """
        if self.session.get_bind().dialect.name == "postgresql":
            self.session.execute(
                text("SELECT pg_advisory_xact_lock(hashtext(:user_id))"), {"user_id": user_id}
            )
        self.session.execute(
            select(user_subscriptions.c.id)
            .where(user_subscriptions.c.user_id == user_id)
            .with_for_update()
        ).fetchall()

    def insert_subscription(
        self,
        *,
        user_id: str,
        tier_id: int,
        provider: Provider,
        period_start: datetime,
        period_end: datetime,
        now: datetime,
        provider_subscription_id: Optional[str] = None,
        provider_customer_id: Optional[str] = None,
    ) -> Subscription:
        subscription_id = str(uuid.uuid4())
        self.session.execute(
            insert(user_subscriptions).values(
                id=subscription_id,
                user_id=user_id,
                tier_id=tier_id,
                status=SubscriptionStatus.ACTIVE.value,
                current_period_start=period_start,
                current_period_end=period_end,
                cancel_at_period_end=False,
                provider=provider.value,
                provider_subscription_id=provider_subscription_id,
                provider_customer_id=provider_customer_id,
                created_at=now,
                updated_at=now,
            )
        )
        return self.get(subscription_id)

    def compare_and_set_status(
        self,
        subscription_id: str,
        *,
        expected: SubscriptionStatus,
        new: SubscriptionStatus,
        now: datetime,
        period_end_before: Optional[datetime] = None,
    ) -> bool:
        """
        Move `subscription_id` from `expected` to `new`.

        Returns False when the row no longer matches (another writer won).
        `canceled_at` is only ever written once.
        """
        conditions = [
            user_subscriptions.c.id == subscription_id,
            user_subscriptions.c.status == expected.value,
        ]
        if period_end_before is not None:
            conditions.append(user_subscriptions.c.current_period_end < period_end_before)

        values: Dict[str, Any] = {"status": new.value, "updated_at": now}
        result = self.session.execute(
            update(user_subscriptions).where(and_(*conditions)).values(**values)
        )
        if result.rowcount != 1:
            return False
        if new == SubscriptionStatus.CANCELED:
            self.session.execute(
                update(user_subscriptions)
                .where(
                    and_(
                        user_subscriptions.c.id == subscription_id,
                        user_subscriptions.c.canceled_at.is_(None),
                    )
                )
                .values(canceled_at=now)
            )
        return True

    def supersede_active(self, user_id: str, now: datetime) -> List[Subscription]:
        """Cancel every active subscription of the user. Returns the superseded records."""
        superseded = []
        for previous in self.list_for_user(user_id):
            if previous.status != SubscriptionStatus.ACTIVE:
                continue
            if self.compare_and_set_status(
                previous.id, expected=SubscriptionStatus.ACTIVE, new=SubscriptionStatus.CANCELED, now=now
            ):
                self.append_history(
                    subscription=previous,
                    action=HistoryAction.CANCELED,
                    now=now,
                    from_tier_id=previous.tier_id,
                    metadata={"source": "superseded"},
                )
                superseded.append(previous)
        return superseded

    def update_fields(self, subscription_id: str, *, now: datetime, **values: Any) -> Subscription:
        """Update mutable fields of an active or paused subscription."""
        self.session.execute(
            update(user_subscriptions)
            .where(user_subscriptions.c.id == subscription_id)
            .values(updated_at=now, **values)
        )
        return self.get(subscription_id)

    def extend_period_end(self, subscription_id: str, new_period_end: datetime, now: datetime) -> bool:
        """Move current_period_end forward only; never backwards."""
        result = self.session.execute(
            update(user_subscriptions)
            .where(
                and_(
                    user_subscriptions.c.id == subscription_id,
                    user_subscriptions.c.status.in_(
                        [SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PAUSED.value]
                    ),
                    user_subscriptions.c.current_period_end < new_period_end,
                )
            )
            .values(current_period_end=new_period_end, updated_at=now)
        )
        return result.rowcount == 1

    def append_history(
        self,
        *,
        subscription: Subscription,
        action: HistoryAction,
        now: datetime,
        from_tier_id: Optional[int] = None,
        to_tier_id: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.session.execute(
            insert(subscription_history).values(
                subscription_id=subscription.id,
                user_id=subscription.user_id,
                action=action.value,
                from_tier_id=from_tier_id,
                to_tier_id=to_tier_id,
                metadata_json=json.dumps(metadata, default=str) if metadata else None,
                created_at=now,
            )
        )


class SubscriptionStore:
    """
    Unit-of-work factory over the subscription tables.

    Usage:
        with store.locked(user_id) as repo:
            current = repo.get_active_for_user(user_id)
            ...
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory
        self._user_locks = _KeyedLocks()

    @contextmanager
    def reading(self) -> Iterator[SubscriptionRepository]:
        session = self._session_factory()
        try:
            yield SubscriptionRepository(session)
            session.rollback()
        except (OperationalError, PoolTimeoutError, DBAPIError) as e:
            session.rollback()
            raise TransientStoreError(f"Subscription store unavailable: {e.__class__.__name__}") from e
        finally:
            session.close()

    @contextmanager
    def locked(self, user_id: str) -> Iterator[SubscriptionRepository]:
        with self._user_locks.hold(user_id):
            session = self._session_factory()
            try:
                repo = SubscriptionRepository(session)
                repo.lock_user_rows(user_id)
                yield repo
                session.commit()
            except IntegrityError as e:
                session.rollback()
                if _is_active_conflict(e):
                    logger.warning(
                        "[subscriptions] concurrent activation rejected",
                        extra={"user_id": user_id, "error_code": "subscription_conflict"},
                    )
                    raise ActiveSubscriptionConflict("Concurrent subscription change, retry the request") from e
                raise DuplicateProviderSubscription(str(e.orig)) from e
            except (OperationalError, PoolTimeoutError, DBAPIError) as e:
                session.rollback()
                logger.error(
                    "[subscriptions] store write failed",
                    extra={"user_id": user_id, "error_code": "store_unavailable"},
                )
                raise TransientStoreError(f"Subscription store unavailable: {e.__class__.__name__}") from e
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()
