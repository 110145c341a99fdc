"""Monthly model spend tracking.

Spend is a monotonically increasing counter stored under `budget:<YYYY-MM>`
where the month is taken in the configured timezone. A new month simply
starts a new key. Costs are estimates derived from input size.
"""

import logging
from zoneinfo import ZoneInfo

from xauto.core.clock import Clock, SystemClock, day_key, month_key, utc_iso
from xauto.store.state_store import KeyValueStore

logger = logging.getLogger(__name__)

BUDGET_KEY_PREFIX = "budget:"

MINI_COST_PER_CHAR = 0.00002
MARKDOWN_COST_PER_CHAR = 0.00001
DIGEST_COST_PER_ITEM = 0.0002
VOCABULARY_COST_PER_CALL = 0.0005


def estimate_mini_cost(text: str) -> float:
    return max(1, len(text)) * MINI_COST_PER_CHAR


def estimate_markdown_cost(context: str) -> float:
    return max(1, len(context)) * MARKDOWN_COST_PER_CHAR


def estimate_digest_cost(item_count: int) -> float:
    return max(1, item_count) * DIGEST_COST_PER_ITEM


class BudgetTracker:
    """Reads and increments this month's model spend."""

    def __init__(
        self,
        kv: KeyValueStore,
        *,
        monthly_ceiling: float,
        tz: ZoneInfo,
        clock: Clock | None = None,
    ):
        self.kv = kv
        self.monthly_ceiling = monthly_ceiling
        self.tz = tz
        self.clock = clock or SystemClock()

    def _key(self) -> str:
        return f"{BUDGET_KEY_PREFIX}{month_key(self.clock.now(), self.tz)}"

    async def get_usage(self) -> float:
        data = await self.kv.get(self._key())
        if not data:
            return 0.0
        try:
            return float(data.get("usage", 0.0))
        except (TypeError, ValueError):
            return 0.0

    async def usage_ratio(self) -> float:
        """Fraction of the monthly ceiling already spent (1.0 if no ceiling)."""
        if self.monthly_ceiling <= 0:
            return 1.0
        return await self.get_usage() / self.monthly_ceiling

    async def record(self, cost: float) -> float:
        """Add `cost` to this month's spend and return the new total."""
        if cost <= 0:
            return await self.get_usage()
        now = self.clock.now()
        total = round(await self.get_usage() + cost, 6)
        await self.kv.upsert_set(
            self._key(),
            {"usage": total, "updated_at": utc_iso(now), "date": day_key(now, self.tz)},
        )
        logger.debug("Recorded model cost %.6f (month total %.6f)", cost, total)
        return total
