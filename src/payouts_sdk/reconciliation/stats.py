"""Dashboard statistics over the payout store."""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .. import config
from ..cache import TTLCache
from ..database import DonationTransactionRepository, PayoutRepository
from .models import PayoutStats, RevenueSummary

logger = logging.getLogger(__name__)


class StatisticsAggregator:
    """Payout counts and revenue rollups per church.

    Counts are cached per church for a few seconds; services that write
    payouts invalidate the entry through the shared cache.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache: Optional[TTLCache] = None,
    ):
        self.session_factory = session_factory
        self.cache = cache if cache is not None else TTLCache(
            capacity=config.DEFAULT_STATS_CACHE_CAPACITY,
            ttl=config.get_stats_cache_ttl(),
        )

    async def stats(self, church_id: str) -> PayoutStats:
        cached = self.cache.get(church_id)
        if cached is not None:
            return cached

        async with self.session_factory() as session:
            counts = await PayoutRepository(session).count_by_state(church_id)

        stats = PayoutStats(**counts)
        self.cache.set(church_id, stats)
        logger.debug(f"Computed payout stats for church {church_id}: {counts}")
        return stats

    async def revenue(
        self,
        church_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> RevenueSummary:
        """Gross revenue of succeeded donations, donor-covered fees included."""
        async with self.session_factory() as session:
            totals = await DonationTransactionRepository(session).revenue_totals(
                church_id, start, end
            )
        return RevenueSummary(church_id=church_id, start=start, end=end, **totals)
