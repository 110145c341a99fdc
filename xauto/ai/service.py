"""AI service: summaries, digests and vocabulary cards with provider failover.

Each operation builds an ordered candidate list from the provider selector
and a terminal fallback value up front, then walks the candidates. A
candidate that errors, returns unparseable JSON or fails shape validation is
skipped. Summaries and digests never raise; vocabulary lookups raise
ServiceUnavailable when every candidate failed.
"""

import json
import logging
import re
from collections.abc import Callable, Sequence
from datetime import timedelta

from xauto.ai.budget import (
    VOCABULARY_COST_PER_CALL,
    BudgetTracker,
    estimate_digest_cost,
    estimate_markdown_cost,
    estimate_mini_cost,
)
from xauto.ai.llm_client import ChatModel, LLMFactory, extract_json_object
from xauto.ai.markdown import render_summary_markdown, summary_context
from xauto.ai.normalizer import (
    build_fallback_digest,
    build_fallback_summary,
    normalize_digest,
    normalize_summary,
)
from xauto.ai.prompts import MARKDOWN_PROMPT, REPAIR_PROMPT, VOCABULARY_PROMPT, PromptConfig
from xauto.ai.providers import ProviderCandidate, ProviderSelector
from xauto.ai.vocabulary import (
    build_user_prompt,
    build_vocabulary_request,
    cache_key,
    normalize_vocabulary_card,
)
from xauto.core.clock import Clock, SystemClock
from xauto.core.exceptions import ExtractionError, ServiceUnavailable
from xauto.core.models import DigestInput, DigestResult, SummaryResult, VocabularyCard
from xauto.store.state_store import KeyValueStore

logger = logging.getLogger(__name__)

ClientFactory = Callable[[ProviderCandidate, str], ChatModel]

# Digests stop calling models once the month's budget is spent
DIGEST_BUDGET_GATE = 1.0

NO_PROVIDER = "none"
BUDGET_RISK_NOTE = "模型预算限制，已使用降级结果"
FAILURE_RISK_NOTE = "模型调用失败，已使用降级结果"
EMPTY_RISK_NOTE = "本周期没有可汇总的条目"

MARKDOWN_TEMPERATURE = 0.3
VOCABULARY_CACHE_TTL = timedelta(days=30)

_MARKDOWN_FENCE_RE = re.compile(r"^```(?:markdown|md)?\s*\n(.*?)\n```\s*$", re.DOTALL)


def default_client_factory(candidate: ProviderCandidate, model: str) -> ChatModel:
    return LLMFactory.create(candidate.base_url, candidate.api_key, model)


def _strip_markdown_fence(text: str) -> str:
    match = _MARKDOWN_FENCE_RE.match(text.strip())
    return match.group(1).strip() if match else text.strip()


class AiService:
    """Model-backed operations with ordered failover and fixed fallbacks."""

    def __init__(
        self,
        selector: ProviderSelector,
        budget: BudgetTracker,
        prompts: PromptConfig,
        *,
        kv: KeyValueStore | None = None,
        client_factory: ClientFactory | None = None,
        clock: Clock | None = None,
    ):
        self.selector = selector
        self.budget = budget
        self.prompts = prompts
        self.kv = kv
        self.client_factory = client_factory or default_client_factory
        self.clock = clock or SystemClock()

    async def generate_mini_summary(
        self,
        text: str,
        *,
        author: str | None = None,
        url: str | None = None,
    ) -> SummaryResult:
        """Summarize one post. Always returns a summary with the required fields."""
        candidates = await self.selector.pick_providers()
        fallback = build_fallback_summary(
            text, provider=candidates[0].provider if candidates else NO_PROVIDER
        )
        fallback.markdown = render_summary_markdown(fallback)

        system_prompt = await self.prompts.mini_summary_system()
        user_prompt = self._mini_user_prompt(text, author, url)

        for candidate in candidates:
            model = candidate.model_for("mini")
            try:
                client = self.client_factory(candidate, model)
                response = await client.complete(
                    [
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": user_prompt},
                    ],
                    json_mode=True,
                )
                payload = extract_json_object(response.content)
                summary = normalize_summary(
                    payload,
                    source_text=text,
                    provider=candidate.provider,
                    model=response.model or model,
                )
            except Exception as e:
                logger.warning(
                    "Provider %s failed mini summary: %s: %s",
                    candidate.provider,
                    type(e).__name__,
                    e,
                )
                continue

            await self.budget.record(estimate_mini_cost(text))
            summary.markdown = await self._render_markdown(client, candidate, summary)
            return summary

        logger.warning(
            "No provider produced a usable summary (%d tried), using fallback",
            len(candidates),
        )
        return fallback

    async def generate_digest(
        self, period: str, items: Sequence[DigestInput]
    ) -> DigestResult:
        """Aggregate summaries into a digest. Never raises."""
        usage_ratio = await self.budget.usage_ratio()
        candidates = await self.selector.pick_providers(usage_ratio)
        provider = candidates[0].provider if candidates else NO_PROVIDER

        if not items:
            return build_fallback_digest([], provider=provider, risk_note=EMPTY_RISK_NOTE)
        if usage_ratio >= DIGEST_BUDGET_GATE:
            logger.info(
                "Budget exhausted (usage ratio %.2f), skipping model digest", usage_ratio
            )
            return build_fallback_digest(items, provider=provider, risk_note=BUDGET_RISK_NOTE)

        fallback = build_fallback_digest(
            items, provider=provider, risk_note=FAILURE_RISK_NOTE
        )
        system_prompt = await self.prompts.digest_system()
        user_prompt = json.dumps(
            {
                "period": period,
                "items": [item.model_dump(mode="json") for item in items],
            },
            ensure_ascii=False,
        )
        known_ids = [item.tweet_id for item in items]

        for candidate in candidates:
            model = candidate.model_for("digest")
            try:
                client = self.client_factory(candidate, model)
                response = await client.complete(
                    [
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": user_prompt},
                    ],
                    json_mode=True,
                )
                digest = normalize_digest(
                    extract_json_object(response.content),
                    known_ids=known_ids,
                    provider=candidate.provider,
                    model=response.model or model,
                )
            except Exception as e:
                logger.warning(
                    "Provider %s failed %s digest: %s: %s",
                    candidate.provider,
                    period,
                    type(e).__name__,
                    e,
                )
                continue

            await self.budget.record(estimate_digest_cost(len(items)))
            return digest

        logger.warning("No provider produced a usable %s digest, using fallback", period)
        return fallback

    async def lookup_vocabulary_card(
        self,
        term: str,
        context: str | None = None,
        source_lang_hint: str | None = None,
        target_lang: str | None = None,
        *,
        refresh: bool = False,
    ) -> VocabularyCard:
        """Explain a term in context, serving cached cards when fresh.

        Raises:
            ValidationError: Invalid term.
            ServiceUnavailable: Every provider failed.
        """
        request = build_vocabulary_request(term, context, source_lang_hint, target_lang)
        key = cache_key(request)

        if self.kv is not None and not refresh:
            cached = await self.kv.get(key)
            if cached:
                card = VocabularyCard.model_validate(cached)
                if card.cached_at and self.clock.now() - card.cached_at < VOCABULARY_CACHE_TTL:
                    card.source = "cache"
                    return card

        candidates = await self.selector.pick_providers()
        user_prompt = build_user_prompt(request)

        for candidate in candidates:
            model = candidate.model_for("mini")
            try:
                client = self.client_factory(candidate, model)
                response = await client.complete(
                    [
                        {"role": "system", "content": VOCABULARY_PROMPT},
                        {"role": "user", "content": user_prompt},
                    ],
                    json_mode=True,
                )
                await self.budget.record(VOCABULARY_COST_PER_CALL)
                try:
                    payload = extract_json_object(response.content)
                except ExtractionError:
                    logger.info("Repairing vocabulary output from %s", candidate.provider)
                    repaired = await client.complete(
                        [
                            {"role": "system", "content": REPAIR_PROMPT},
                            {"role": "user", "content": response.content},
                        ],
                        json_mode=True,
                        temperature=0.0,
                    )
                    await self.budget.record(VOCABULARY_COST_PER_CALL)
                    payload = extract_json_object(repaired.content)

                card = normalize_vocabulary_card(
                    payload,
                    request=request,
                    provider=candidate.provider,
                    model=response.model or model,
                    now=self.clock.now(),
                )
            except Exception as e:
                logger.warning(
                    "Provider %s failed vocabulary lookup: %s: %s",
                    candidate.provider,
                    type(e).__name__,
                    e,
                )
                continue

            if self.kv is not None:
                await self.kv.replace(key, card.model_dump(mode="json"))
            return card

        raise ServiceUnavailable(
            f"Vocabulary lookup failed for '{request.term}' ({len(candidates)} providers tried)"
        )

    async def _render_markdown(
        self, client: ChatModel, candidate: ProviderCandidate, summary: SummaryResult
    ) -> str:
        """Ask the same provider for markdown; fall back to the template."""
        if await self.budget.usage_ratio() >= DIGEST_BUDGET_GATE:
            return render_summary_markdown(summary)

        context = summary_context(summary)
        try:
            response = await client.complete(
                [
                    {"role": "system", "content": MARKDOWN_PROMPT},
                    {"role": "user", "content": context},
                ],
                json_mode=False,
                temperature=MARKDOWN_TEMPERATURE,
            )
        except Exception as e:
            logger.info(
                "Provider %s markdown rendering failed, using template: %s",
                candidate.provider,
                e,
            )
            return render_summary_markdown(summary)

        await self.budget.record(estimate_markdown_cost(context))
        markdown = _strip_markdown_fence(response.content)
        if not markdown:
            return render_summary_markdown(summary)
        return markdown + "\n"

    @staticmethod
    def _mini_user_prompt(text: str, author: str | None, url: str | None) -> str:
        lines = []
        if author:
            lines.append(f"作者: {author}")
        if url:
            lines.append(f"链接: {url}")
        lines.append("正文:")
        lines.append(text)
        return "\n".join(lines)
