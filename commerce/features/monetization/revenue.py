"""
Creator revenue ledger.

Affiliate conversions are recorded once per subscription and deactivated
when that subscription ends. Monthly creator revenue is recomputed from the
active conversions at the subscription's current tier:

    affiliate_earnings = sum(tier.monthly_price * share_percent // 100)

All amounts are integer minor units.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import and_, insert, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from commerce.core.database import affiliate_conversions, affiliate_links, creator_revenue, user_subscriptions
from commerce.core.errors import NotFoundError
from commerce.features.tiers.catalog import TierCatalog
from commerce.models.subscription import SubscriptionStatus, utc_now


logger = logging.getLogger("commerce.monetization.revenue")

DEFAULT_REFERRAL_SHARE_PERCENT = 30
ENDED_STATUSES = [SubscriptionStatus.CANCELED.value, SubscriptionStatus.EXPIRED.value]


@dataclass(frozen=True)
class CreatorRevenue:
    creator_id: str
    month: int
    year: int
    affiliate_earnings: int
    total_earnings: int
    active_referrals: int


class SqlCreatorRevenueLedger:
    def __init__(
        self,
        session_factory: sessionmaker,
        catalog: TierCatalog,
        *,
        share_percent: int = DEFAULT_REFERRAL_SHARE_PERCENT,
    ):
        self._session_factory = session_factory
        self.catalog = catalog
        self.share_percent = share_percent

    def record_conversion(self, link_code: str, subscriber_id: str, subscription_id: str, tier_id: int) -> str:
        """Record a conversion for the link's creator. Returns the creator id."""
        with self._session_factory() as session:
            link = session.execute(
                select(affiliate_links.c.creator_id).where(
                    and_(
                        affiliate_links.c.link_code == link_code,
                        affiliate_links.c.is_active.is_(True),
                    )
                )
            ).first()
            if link is None:
                raise NotFoundError(f"Affiliate link not found: {link_code}")
            creator_id = link.creator_id

            try:
                session.execute(
                    insert(affiliate_conversions).values(
                        link_code=link_code,
                        creator_id=creator_id,
                        subscriber_id=subscriber_id,
                        subscription_id=subscription_id,
                        tier_id=tier_id,
                        is_active=True,
                        created_at=utc_now(),
                    )
                )
                session.commit()
            except IntegrityError:
                session.rollback()
                logger.info(
                    "[monetization] conversion already recorded",
                    extra={"subscription_id": subscription_id, "creator_id": creator_id},
                )
        return creator_id

    def deactivate_conversions(self, subscription_id: str) -> List[str]:
        """Mark the subscription's conversions inactive. Returns the affected creator ids."""
        active_for_subscription = and_(
            affiliate_conversions.c.subscription_id == subscription_id,
            affiliate_conversions.c.is_active.is_(True),
        )
        with self._session_factory() as session:
            rows = session.execute(
                select(affiliate_conversions.c.creator_id).where(active_for_subscription)
            ).fetchall()
            if not rows:
                return []
            session.execute(update(affiliate_conversions).where(active_for_subscription).values(is_active=False))
            session.commit()
        return sorted({row.creator_id for row in rows})

    def recalculate_monthly_revenue(
        self,
        creator_id: str,
        month: Optional[int] = None,
        year: Optional[int] = None,
    ) -> CreatorRevenue:
        now = utc_now()
        month = month or now.month
        year = year or now.year

        # Conversions whose subscription already ended never count, even if
        # their deactivation has not run yet.
        source = affiliate_conversions.outerjoin(
            user_subscriptions,
            affiliate_conversions.c.subscription_id == user_subscriptions.c.id,
        )
        with self._session_factory() as session:
            rows = session.execute(
                select(
                    affiliate_conversions.c.tier_id,
                    user_subscriptions.c.tier_id.label("current_tier_id"),
                )
                .select_from(source)
                .where(
                    and_(
                        affiliate_conversions.c.creator_id == creator_id,
                        affiliate_conversions.c.is_active.is_(True),
                        or_(
                            user_subscriptions.c.status.is_(None),
                            user_subscriptions.c.status.notin_(ENDED_STATUSES),
                        ),
                    )
                )
            ).fetchall()

            earnings = 0
            for row in rows:
                tier_id = row.current_tier_id or row.tier_id
                if not self.catalog.has_tier(tier_id):
                    continue
                price = self.catalog.get_tier(tier_id).monthly_price
                earnings += price * self.share_percent // 100

            revenue = CreatorRevenue(
                creator_id=creator_id,
                month=month,
                year=year,
                affiliate_earnings=earnings,
                total_earnings=earnings,
                active_referrals=len(rows),
            )
            self._upsert(session, revenue, now)
            session.commit()

        logger.info(
            "[monetization] creator revenue recalculated",
            extra={"creator_id": creator_id, "month": month, "year": year, "affiliate_earnings": earnings},
        )
        return revenue

    def _upsert(self, session, revenue: CreatorRevenue, now: datetime) -> None:
        values = {
            "affiliate_earnings": revenue.affiliate_earnings,
            "total_earnings": revenue.total_earnings,
            "active_referrals": revenue.active_referrals,
            "updated_at": now,
        }
        key = and_(
            creator_revenue.c.creator_id == revenue.creator_id,
            creator_revenue.c.month == revenue.month,
            creator_revenue.c.year == revenue.year,
        )
        result = session.execute(update(creator_revenue).where(key).values(**values))
        if result.rowcount == 0:
            session.execute(
                insert(creator_revenue).values(
                    creator_id=revenue.creator_id,
                    month=revenue.month,
                    year=revenue.year,
                    **values,
                )
            )

    def get_creator_revenue(self, creator_id: str, month: int, year: int) -> Optional[CreatorRevenue]:
        with self._session_factory() as session:
            row = session.execute(
                select(creator_revenue).where(
                    and_(
                        creator_revenue.c.creator_id == creator_id,
                        creator_revenue.c.month == month,
                        creator_revenue.c.year == year,
                    )
                )
            ).first()
        if row is None:
            return None
        return CreatorRevenue(
            creator_id=row.creator_id,
            month=row.month,
            year=row.year,
            affiliate_earnings=row.affiliate_earnings,
            total_earnings=row.total_earnings,
            active_referrals=row.active_referrals,
        )
