"""Summarize-and-store step shared by sync and resummarize."""

from xauto.ai.service import AiService
from xauto.core.clock import Clock
from xauto.core.logger import get_item_logger
from xauto.core.models import SUMMARY_VERSION, BookmarkItem, ItemSummary
from xauto.store.document_store import DocumentStore


async def summarize_and_store(
    item: BookmarkItem,
    ai: AiService,
    store: DocumentStore,
    clock: Clock,
) -> ItemSummary:
    """Generate the summary for one bookmark and upsert it as version 1."""
    logger = get_item_logger(__name__, item.tweet_id)

    result = await ai.generate_mini_summary(
        item.text,
        author=item.author_username or item.author_name,
        url=item.url,
    )
    summary = ItemSummary(
        **result.model_dump(),
        tweet_id=item.tweet_id,
        version=SUMMARY_VERSION,
        summarized_at=clock.now(),
    )
    await store.summaries.upsert_by_key(summary.model_dump(mode="json"))

    logger.info(
        "Stored summary (provider=%s model=%s quality=%.2f)",
        summary.provider,
        summary.model,
        summary.quality_score,
    )
    return summary
