"""Daily and weekly digest generation over stored summaries."""

import logging
from dataclasses import asdict, dataclass
from typing import Any
from zoneinfo import ZoneInfo

from xauto.ai.service import AiService
from xauto.core.clock import Clock, SystemClock, day_key, day_range, parse_iso, week_key, week_range
from xauto.core.models import SUMMARY_VERSION, DigestInput, DigestPeriod, DigestReport
from xauto.store.document_store import DESCENDING, DocumentStore

logger = logging.getLogger(__name__)

DAILY_LIMIT = 500
WEEKLY_LIMIT = 2000
SNIPPET_ZH_LENGTH = 80
SNIPPET_EN_LENGTH = 120


@dataclass
class DigestRunResult:
    period: str
    period_key: str
    summary_count: int
    provider: str
    model: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class DigestService:
    """Builds digest inputs for a calendar period and stores the report."""

    def __init__(
        self,
        store: DocumentStore,
        ai: AiService,
        *,
        tz: ZoneInfo,
        clock: Clock | None = None,
    ):
        self.store = store
        self.ai = ai
        self.tz = tz
        self.clock = clock or SystemClock()

    async def generate_daily_digest(self) -> DigestRunResult:
        now = self.clock.now()
        start, end = day_range(now, self.tz)
        return await self._generate(
            DigestPeriod.DAILY, day_key(now, self.tz), start, end, DAILY_LIMIT
        )

    async def generate_weekly_digest(self) -> DigestRunResult:
        now = self.clock.now()
        start, end = week_range(now, self.tz)
        return await self._generate(
            DigestPeriod.WEEKLY, week_key(now, self.tz), start, end, WEEKLY_LIMIT
        )

    async def _generate(self, period, period_key, start, end, limit) -> DigestRunResult:
        def in_range(doc: dict[str, Any]) -> bool:
            synced_at = parse_iso(doc.get("synced_at"))
            return synced_at is not None and start <= synced_at < end

        items = await self.store.bookmarks.range_query(
            where=in_range, sort=[("synced_at", DESCENDING)], limit=limit
        )
        inputs = await self._build_inputs(items)

        logger.info(
            "Generating %s digest %s from %d items", period.value, period_key, len(inputs)
        )
        digest = await self.ai.generate_digest(period.value, inputs)

        report = DigestReport(
            **digest.model_dump(),
            period=period,
            period_key=period_key,
            generated_at=self.clock.now(),
        )
        await self.store.digests.upsert_by_key(report.model_dump(mode="json"))

        return DigestRunResult(
            period=period.value,
            period_key=period_key,
            summary_count=len(inputs),
            provider=report.provider,
            model=report.model,
        )

    async def _build_inputs(self, items: list[dict[str, Any]]) -> list[DigestInput]:
        summaries = await self.store.summaries.find_by_keys_in(
            "tweet_id",
            [item["tweet_id"] for item in items],
            where=lambda doc: doc.get("version") == SUMMARY_VERSION,
        )
        by_id = {doc["tweet_id"]: doc for doc in summaries}

        inputs = []
        for item in items:
            summary = by_id.get(item["tweet_id"])
            if summary is not None:
                inputs.append(
                    DigestInput(
                        tweet_id=item["tweet_id"],
                        one_liner_zh=summary.get("one_liner_zh", ""),
                        one_liner_en=summary.get("one_liner_en", ""),
                        tags_zh=summary.get("tags_zh", []),
                        actions=summary.get("actions", []),
                    )
                )
                continue
            text = " ".join((item.get("text") or "").split())
            inputs.append(
                DigestInput(
                    tweet_id=item["tweet_id"],
                    one_liner_zh=text[:SNIPPET_ZH_LENGTH],
                    one_liner_en=text[:SNIPPET_EN_LENGTH],
                )
            )
        return inputs
