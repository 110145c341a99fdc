"""System prompts and the admin-editable prompt cache.

The mini-summary and digest system prompts can be overridden through the
key/value store. PromptConfig caches the current pair for 30 seconds so
per-item summarization does not hit the store on every call; updates
invalidate the cache immediately.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta

from xauto.core.clock import Clock, SystemClock, utc_iso
from xauto.core.exceptions import ValidationError
from xauto.store.state_store import KeyValueStore

MINI_PROMPT_KEY = "prompt:mini_summary_system"
DIGEST_PROMPT_KEY = "prompt:digest_system"

CACHE_TTL = timedelta(seconds=30)

DEFAULT_MINI_PROMPT = """你是技术分析师。

请对下面这条 X post 做"拆解式理解"，并输出为严格 JSON（不要输出 markdown）：

1. 核心观点（一句话）
2. 背后的底层问题是什么？
3. 涉及哪些关键技术或概念？分别在解决什么？
4. 这是事实、观点还是推测？标注清楚。
5. 如果我想深入研究，给 3 个英文关键词。

JSON 必须包含以下字段：
- core_viewpoint
- underlying_problem
- key_technologies: [{ concept, solves }]
- claim_types: [{ statement, label }]，label 只能是 fact / opinion / speculation
- research_keywords_en: [string, string, string]

可选字段：
- reusable_insights, logic_structure, hidden_assumptions, counter_views
- referenced_libraries

兼容字段（必须同时提供）：
- one_liner_zh
- one_liner_en
- bullets_zh
- bullets_en
- tags_zh
- tags_en
- actions
- quality_score

要求：
- 中英双语信息尽量完整。
- quality_score 为 0 到 1 的数字。
- 严格返回 JSON object。"""

DEFAULT_DIGEST_PROMPT = (
    "You are a strict digest assistant. Output JSON keys: top_themes, "
    "top_items[{tweet_id,reason,next_step}], risks, tomorrow_actions."
)

MARKDOWN_PROMPT = (
    "把下面的结构化分析整理成一篇简洁的中文 Markdown 笔记。"
    "包含标题、核心观点、底层问题、关键技术、要点和行动建议。"
    "只根据给定内容写作，不要编造信息，直接输出 Markdown。"
)

VOCABULARY_PROMPT = (
    "You are a bilingual vocabulary assistant for a Chinese-speaking engineer. "
    "Explain the given term in context. Output one JSON object with keys: "
    "term, normalized_term, source_language, target_language, translation, "
    "short_definition_zh, short_definition_en, phonetic{ipa,us,uk}, "
    "part_of_speech[], domain_tags[], collocations[{text,translation}], "
    "example{source,target}, confusable[{word,diff}], confidence (0-1)."
)

REPAIR_PROMPT = (
    "The following text was supposed to be a single JSON object but could not "
    "be parsed. Reformat it into valid JSON with the same keys and values. "
    "Do not invent facts or add information that is not present. "
    "Output only the JSON object."
)


@dataclass
class PromptSnapshot:
    mini_summary_system: str
    digest_system: str
    fetched_at: datetime


def _extract_prompt(value: dict | None, fallback: str) -> str:
    text = (value or {}).get("text")
    if isinstance(text, str) and text.strip():
        return text
    return fallback


class PromptConfig:
    """Cached view of the current system prompts."""

    def __init__(self, kv: KeyValueStore, clock: Clock | None = None):
        self.kv = kv
        self.clock = clock or SystemClock()
        self._snapshot: PromptSnapshot | None = None

    async def refresh(self) -> PromptSnapshot:
        mini = await self.kv.get(MINI_PROMPT_KEY)
        digest = await self.kv.get(DIGEST_PROMPT_KEY)
        self._snapshot = PromptSnapshot(
            mini_summary_system=_extract_prompt(mini, DEFAULT_MINI_PROMPT),
            digest_system=_extract_prompt(digest, DEFAULT_DIGEST_PROMPT),
            fetched_at=self.clock.now(),
        )
        return self._snapshot

    async def snapshot(self) -> PromptSnapshot:
        cached = self._snapshot
        if cached is not None and self.clock.now() - cached.fetched_at < CACHE_TTL:
            return cached
        return await self.refresh()

    async def mini_summary_system(self) -> str:
        return (await self.snapshot()).mini_summary_system

    async def digest_system(self) -> str:
        return (await self.snapshot()).digest_system

    async def update_prompts(
        self, *, mini: str | None = None, digest: str | None = None
    ) -> PromptSnapshot:
        """Store prompt overrides and return the refreshed snapshot.

        Raises:
            ValidationError: If neither prompt is provided.
        """
        mini = (mini or "").strip() or None
        digest = (digest or "").strip() or None
        if mini is None and digest is None:
            raise ValidationError("At least one prompt field is required")

        now = utc_iso(self.clock.now())
        if mini is not None:
            await self.kv.upsert_set(MINI_PROMPT_KEY, {"text": mini, "updated_at": now})
        if digest is not None:
            await self.kv.upsert_set(
                DIGEST_PROMPT_KEY, {"text": digest, "updated_at": now}
            )

        self._snapshot = None
        return await self.refresh()
