"""Incremental bookmark sync.

Pages arrive most recent first, so the first page that contains an already
stored tweet marks the point where this run has caught up: that page is
processed and pagination stops. A run fetches at most MAX_PAGES pages.

    START -> PAGE_FETCH -> DEDUPE -> HYDRATE -> SUMMARIZE -> CONTINUE | STOP

Items are persisted as soon as their page is hydrated, so a failure on a
later page keeps everything stored before it.
"""

import logging
from dataclasses import asdict, dataclass
from typing import Any

from xauto.ai.service import AiService
from xauto.core.clock import Clock, SystemClock, parse_iso
from xauto.core.models import BookmarkItem
from xauto.pipeline.summaries import summarize_and_store
from xauto.sources.x_api_auth import XApiAuth
from xauto.sources.x_api_client import (
    BookmarkPageEntry,
    TweetDetail,
    XApiClient,
    canonical_url,
)
from xauto.store.document_store import DocumentStore

logger = logging.getLogger(__name__)

MAX_PAGES = 5

STOP_EMPTY_PAGE = "empty_page"
STOP_EXISTING_ITEM = "existing_item_found"
STOP_NO_NEXT_TOKEN = "no_next_token"
STOP_PAGE_LIMIT = "page_limit"


@dataclass
class SyncResult:
    """Counters for one sync run."""

    user_id: str = ""
    total_fetched: int = 0
    total_inserted: int = 0
    pages: int = 0
    detail_requested: int = 0
    detail_fetched: int = 0
    summarized: int = 0
    skipped_no_text: int = 0
    stopped_on_first_existing_page: bool = False
    stop_reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class SyncOrchestrator:
    """Runs one incremental sync: fetch, dedupe, hydrate, summarize."""

    def __init__(
        self,
        auth: XApiAuth,
        x_client: XApiClient,
        store: DocumentStore,
        ai: AiService,
        *,
        page_size: int = 100,
        clock: Clock | None = None,
    ):
        self.auth = auth
        self.x_client = x_client
        self.store = store
        self.ai = ai
        self.page_size = page_size
        self.clock = clock or SystemClock()

    async def run(self) -> SyncResult:
        """Run the sync.

        Raises:
            Unauthorized: The X account is not connected or refresh failed.
            ServiceUnavailable: An X API call failed after retries.
        """
        bundle = await self.auth.ensure_valid_token()
        user_id = await self.auth.ensure_user_id(bundle, self.x_client)
        token = bundle.access_token

        result = SyncResult(user_id=user_id)
        seen_this_run: set[str] = set()
        pagination_token: str | None = None

        while result.pages < MAX_PAGES:
            page = await self.x_client.fetch_bookmark_page(
                token, user_id, pagination_token, self.page_size
            )
            result.pages += 1

            if not page.entries:
                result.stop_reason = STOP_EMPTY_PAGE
                break

            result.total_fetched += len(page.entries)

            # Dedupe: stored items and ids already handled earlier in this run
            page_ids = list(dict.fromkeys(page.tweet_ids))
            stored = await self.store.bookmarks.find_by_keys_in("tweet_id", page_ids)
            known = {doc["tweet_id"] for doc in stored} | (seen_this_run & set(page_ids))
            new_entries: dict[str, BookmarkPageEntry] = {}
            for entry in page.entries:
                if entry.tweet_id not in known and entry.tweet_id not in new_entries:
                    new_entries[entry.tweet_id] = entry
            seen_this_run.update(page_ids)

            has_existing = bool(known)

            if new_entries:
                inserted = await self._hydrate_and_insert(token, new_entries, result)
                await self._summarize(inserted, result)

            logger.info(
                "Sync page %d: %d ids, %d new, existing=%s",
                result.pages,
                len(page_ids),
                len(new_entries),
                has_existing,
            )

            if has_existing:
                result.stopped_on_first_existing_page = True
                result.stop_reason = STOP_EXISTING_ITEM
                break
            if not page.next_token:
                result.stop_reason = STOP_NO_NEXT_TOKEN
                break
            pagination_token = page.next_token
        else:
            result.stop_reason = STOP_PAGE_LIMIT

        logger.info(
            "Sync finished: fetched=%d inserted=%d pages=%d stop=%s",
            result.total_fetched,
            result.total_inserted,
            result.pages,
            result.stop_reason,
        )
        return result

    async def _hydrate_and_insert(
        self,
        token: str,
        new_entries: dict[str, BookmarkPageEntry],
        result: SyncResult,
    ) -> list[BookmarkItem]:
        ids = list(new_entries)
        result.detail_requested += len(ids)
        details = await self.x_client.fetch_tweet_details(token, ids)
        result.detail_fetched += len(details)

        now = self.clock.now()
        inserted: list[BookmarkItem] = []
        for tweet_id, entry in new_entries.items():
            item = self._build_item(entry, details.get(tweet_id), now)
            await self.store.bookmarks.upsert_by_key(item.model_dump(mode="json"))
            inserted.append(item)
            result.total_inserted += 1
        return inserted

    async def _summarize(self, items: list[BookmarkItem], result: SyncResult) -> None:
        for item in items:
            if not item.text.strip():
                result.skipped_no_text += 1
                continue
            await summarize_and_store(item, self.ai, self.store, self.clock)
            result.summarized += 1

    @staticmethod
    def _build_item(
        entry: BookmarkPageEntry, detail: TweetDetail | None, now
    ) -> BookmarkItem:
        if detail is None:
            # Detail lookup did not return this post (deleted or protected)
            return BookmarkItem(
                tweet_id=entry.tweet_id,
                created_at_external=parse_iso(entry.raw.get("created_at")),
                text=entry.raw.get("text", "") or "",
                url=canonical_url(entry.tweet_id, None),
                raw_payload=entry.raw,
                synced_at=now,
            )
        return BookmarkItem(
            tweet_id=detail.tweet_id,
            created_at_external=parse_iso(detail.created_at),
            author_name=detail.author_name,
            author_username=detail.author_username,
            text=detail.text,
            url=detail.url,
            raw_payload=detail.raw,
            synced_at=now,
        )
