"""Re-run summaries over already stored bookmarks."""

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from xauto.ai.service import AiService
from xauto.core.clock import Clock, SystemClock, parse_iso
from xauto.core.exceptions import ValidationError
from xauto.core.models import SUMMARY_VERSION, BookmarkItem
from xauto.pipeline.summaries import summarize_and_store
from xauto.store.document_store import DESCENDING, DocumentStore

logger = logging.getLogger(__name__)

MAX_IDS = 500
MAX_LIMIT = 500
MAX_ERRORS = 20


@dataclass
class ResummarizeFilter:
    """Which bookmarks to resummarize.

    Attributes:
        tweet_ids: Optional allow-list of tweet ids.
        synced_since: Only items synced at or after this time.
        limit: Maximum number of items selected (1..500).
        overwrite: Resummarize items that already have a summary.
    """

    tweet_ids: list[str] | None = None
    synced_since: datetime | None = None
    limit: int = MAX_LIMIT
    overwrite: bool = False

    def validate(self) -> None:
        """Raise ValidationError when the filter cannot be applied."""
        if isinstance(self.limit, bool) or not isinstance(self.limit, int):
            raise ValidationError("limit must be an integer")
        if not 1 <= self.limit <= MAX_LIMIT:
            raise ValidationError(f"limit must be between 1 and {MAX_LIMIT}")
        if self.tweet_ids is not None:
            if len(self.tweet_ids) > MAX_IDS:
                raise ValidationError(f"at most {MAX_IDS} tweet ids are allowed")
            for tweet_id in self.tweet_ids:
                if not isinstance(tweet_id, str) or not tweet_id.isdigit():
                    raise ValidationError(f"invalid tweet id: {tweet_id!r}")
        if self.synced_since is not None and self.synced_since.tzinfo is None:
            raise ValidationError("synced_since must be timezone-aware")


@dataclass
class ResummarizeResult:
    selected: int = 0
    processed: int = 0
    updated: int = 0
    skipped_existing: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ResummarizeOrchestrator:
    """Selects stored bookmarks and summarizes them one at a time."""

    def __init__(
        self,
        store: DocumentStore,
        ai: AiService,
        *,
        clock: Clock | None = None,
    ):
        self.store = store
        self.ai = ai
        self.clock = clock or SystemClock()

    async def run(self, filter: ResummarizeFilter) -> ResummarizeResult:
        """Resummarize the selected items.

        A failing item is recorded in the result and the batch continues.

        Raises:
            ValidationError: The filter is invalid (checked before any work).
        """
        filter.validate()

        items = await self._select(filter)
        result = ResummarizeResult(selected=len(items))

        if not filter.overwrite and items:
            existing = await self.store.summaries.find_by_keys_in(
                "tweet_id",
                [item.tweet_id for item in items],
                where=lambda doc: doc.get("version") == SUMMARY_VERSION,
            )
            existing_ids = {doc["tweet_id"] for doc in existing}
            result.skipped_existing = sum(1 for item in items if item.tweet_id in existing_ids)
            items = [item for item in items if item.tweet_id not in existing_ids]

        for item in items:
            result.processed += 1
            try:
                await summarize_and_store(item, self.ai, self.store, self.clock)
            except Exception as e:
                result.failed += 1
                if len(result.errors) < MAX_ERRORS:
                    result.errors.append(f"{item.tweet_id}: {e}")
                logger.warning("Resummarize failed for %s: %s", item.tweet_id, e)
                continue
            result.updated += 1

        logger.info(
            "Resummarize finished: selected=%d processed=%d updated=%d skipped=%d failed=%d",
            result.selected,
            result.processed,
            result.updated,
            result.skipped_existing,
            result.failed,
        )
        return result

    async def _select(self, filter: ResummarizeFilter) -> list[BookmarkItem]:
        allowed = set(filter.tweet_ids) if filter.tweet_ids is not None else None
        since = filter.synced_since

        def matches(doc: dict[str, Any]) -> bool:
            if not (doc.get("text") or "").strip():
                return False
            if allowed is not None and doc.get("tweet_id") not in allowed:
                return False
            if since is not None:
                synced_at = parse_iso(doc.get("synced_at"))
                if synced_at is None or synced_at < since:
                    return False
            return True

        docs = await self.store.bookmarks.range_query(
            where=matches,
            sort=[("synced_at", DESCENDING)],
            limit=filter.limit,
        )
        return [BookmarkItem.model_validate(doc) for doc in docs]
