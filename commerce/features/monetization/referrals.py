"""
Referral attribution lookups.

Attributions are written by the acquisition tracker when a visitor arrives
through a creator link; this side only reads them.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from commerce.core.database import referral_attributions
from commerce.models.subscription import ensure_utc


@dataclass(frozen=True)
class ReferralAttribution:
    user_id: str
    link_code: str
    created_at: Optional[datetime]


class ReferralAttributionStore(Protocol):
    def get_most_recent_attribution(self, user_id: str) -> Optional[ReferralAttribution]:
        ...


class SqlReferralAttributionStore:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def get_most_recent_attribution(self, user_id: str) -> Optional[ReferralAttribution]:
        with self._session_factory() as session:
            row = session.execute(
                select(referral_attributions)
                .where(referral_attributions.c.user_id == user_id)
                .order_by(referral_attributions.c.created_at.desc(), referral_attributions.c.id.desc())
                .limit(1)
            ).first()
        if row is None:
            return None
        return ReferralAttribution(
            user_id=row.user_id,
            link_code=row.link_code,
            created_at=ensure_utc(row.created_at),
        )
