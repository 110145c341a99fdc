"""Shared test fixtures for the X bookmark sync engine.

Provides a pinned clock, in-memory stores, an encryption key and scripted
chat models so no test touches the network or the real data directory.
"""

import base64
from datetime import datetime, timezone
from pathlib import Path
from zoneinfo import ZoneInfo

import pytest

from xauto.ai.budget import BudgetTracker
from xauto.ai.llm_client import LLMResponse
from xauto.ai.prompts import PromptConfig
from xauto.ai.providers import ProviderConfigService, ProviderSelector
from xauto.ai.service import AiService
from xauto.core.clock import FixedClock
from xauto.core.config import Config
from xauto.core.crypto import SecretCipher
from xauto.core.exceptions import ExtractionError
from xauto.core.models import BookmarkItem, ItemSummary
from xauto.sources.x_api_auth import TOKENS_KEY
from xauto.sources.x_api_client import BookmarkPage, BookmarkPageEntry, TweetDetail
from xauto.store.document_store import DocumentStore
from xauto.store.state_store import StateStore

TEST_MASTER_KEY = base64.b64encode(bytes(range(32))).decode("ascii")
SHANGHAI = ZoneInfo("Asia/Shanghai")

# 12:00 on Tuesday 2026-03-10 in Asia/Shanghai
NOW = datetime(2026, 3, 10, 4, 0, tzinfo=timezone.utc)


class FakeChatModel:
    """Chat model that replays scripted responses.

    Each response is either a string (returned as content) or an exception
    (raised). Running out of responses raises ExtractionError.
    """

    def __init__(self, responses=(), model: str = "fake-model"):
        self._model = model
        self.responses = list(responses)
        self.calls: list[dict] = []

    @property
    def model(self) -> str:
        return self._model

    async def complete(self, messages, *, json_mode=False, temperature=0.2):
        self.calls.append(
            {"messages": messages, "json_mode": json_mode, "temperature": temperature}
        )
        if not self.responses:
            raise ExtractionError("no scripted response left")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return LLMResponse(content=response, model=self._model)


class ScriptedModels:
    """Client factory handing out one FakeChatModel per provider name."""

    def __init__(self):
        self.models: dict[str, FakeChatModel] = {}
        self.factory_calls: list[tuple[str, str]] = []

    def script(self, provider: str, *responses, model: str = "fake-model") -> FakeChatModel:
        fake = FakeChatModel(responses, model=model)
        self.models[provider] = fake
        return fake

    def factory(self, candidate, model: str) -> FakeChatModel:
        self.factory_calls.append((candidate.provider, model))
        return self.models.setdefault(candidate.provider, FakeChatModel())


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(NOW)


@pytest.fixture
def kv() -> StateStore:
    return StateStore()


@pytest.fixture
def store() -> DocumentStore:
    return DocumentStore()


@pytest.fixture
def cipher() -> SecretCipher:
    return SecretCipher(TEST_MASTER_KEY)


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """Configuration pointing at a temporary data directory."""
    return Config(
        x_client_id="client-123",
        data_dir=tmp_path / "data",
        encryption_master_key=TEST_MASTER_KEY,
    )


@pytest.fixture
def budget(kv, clock) -> BudgetTracker:
    return BudgetTracker(kv, monthly_ceiling=100.0, tz=SHANGHAI, clock=clock)


@pytest.fixture
def provider_service(store, cipher, clock) -> ProviderConfigService:
    return ProviderConfigService(store.providers, cipher, clock)


@pytest.fixture
def prompts(kv, clock) -> PromptConfig:
    return PromptConfig(kv, clock)


@pytest.fixture
def scripted_models() -> ScriptedModels:
    return ScriptedModels()


@pytest.fixture
def ai(provider_service, budget, prompts, kv, scripted_models, clock) -> AiService:
    """AiService with no providers configured until a test adds some."""
    return AiService(
        ProviderSelector(provider_service, budget),
        budget,
        prompts,
        kv=kv,
        client_factory=scripted_models.factory,
        clock=clock,
    )


@pytest.fixture
def summary_payload() -> dict:
    """A well-formed mini summary as a provider would return it."""
    return {
        "one_liner_zh": "用向量检索降低大模型幻觉",
        "one_liner_en": "Vector retrieval reduces LLM hallucination",
        "bullets_zh": ["先检索再生成", "引用来源"],
        "tags_zh": ["检索增强", "大模型"],
        "tags_en": ["rag", "llm"],
        "actions": ["试用 pgvector"],
        "core_viewpoint": "检索增强生成是降低幻觉最实用的手段",
        "underlying_problem": "模型参数中的知识过时且不可追溯",
        "key_technologies": [{"concept": "RAG", "solves": "知识时效性"}],
        "claim_types": [
            {"statement": "RAG 降低幻觉", "label": "fact"},
            {"statement": "明年所有应用都会用 RAG", "label": "speculation"},
        ],
        "research_keywords_en": ["retrieval augmented generation", "pgvector"],
        "quality_score": 0.9,
    }


class FakeXClient:
    """In-memory X API client serving scripted bookmark pages.

    `pages` is a list of (tweet_ids, next_token) tuples; an item in it may
    also be an exception, raised when that page is requested. Details are
    produced for every id except those listed in `missing_details`.
    """

    def __init__(self, pages=(), *, user_id="42", missing_details=(), texts=None):
        self.pages = list(pages)
        self.user_id = user_id
        self.missing_details = set(missing_details)
        self.texts = texts or {}
        self.page_requests: list[str | None] = []
        self.detail_requests: list[list[str]] = []
        self.user_requests = 0

    async def fetch_current_user(self, access_token):
        self.user_requests += 1
        return self.user_id

    async def fetch_bookmark_page(self, access_token, user_id, pagination_token=None, max_results=100):
        self.page_requests.append(pagination_token)
        if not self.pages:
            return BookmarkPage(entries=[])
        page = self.pages.pop(0)
        if isinstance(page, Exception):
            raise page
        ids, next_token = page
        return BookmarkPage(
            entries=[BookmarkPageEntry(tweet_id=i, raw={"id": i}) for i in ids],
            next_token=next_token,
        )

    async def fetch_tweet_details(self, access_token, tweet_ids):
        self.detail_requests.append(list(tweet_ids))
        return {
            i: TweetDetail(
                tweet_id=i,
                text=self.texts.get(i, f"post {i} about #RAG"),
                author_name="Alice",
                author_username="alice",
                created_at="2026-03-09T10:00:00.000Z",
                url=f"https://x.com/alice/status/{i}",
                raw={"id": i},
            )
            for i in tweet_ids
            if i not in self.missing_details
        }


async def connect_account(kv, user_id="42", **fields):
    """Store a connected, non-expired X account."""
    data = {
        "access_token": "access-token",
        "refresh_token": "refresh-token",
        "expires_at": "2026-03-10T06:00:00+00:00",
        "user_id": user_id,
    }
    data.update(fields)
    await kv.replace(TOKENS_KEY, data)


async def seed_bookmark(store, tweet_id, *, synced_at=NOW, text=None, **fields):
    """Insert a stored bookmark row."""
    item = BookmarkItem(
        tweet_id=tweet_id,
        text=f"post {tweet_id} about #RAG" if text is None else text,
        url=f"https://x.com/alice/status/{tweet_id}",
        author_name="Alice",
        author_username="alice",
        synced_at=synced_at,
        **fields,
    )
    await store.bookmarks.upsert_by_key(item.model_dump(mode="json"))
    return item


async def seed_summary(store, tweet_id, *, version=1, one_liner_zh=None, tags_zh=("RAG",)):
    """Insert a stored summary row."""
    summary = ItemSummary(
        tweet_id=tweet_id,
        version=version,
        one_liner_zh=one_liner_zh or f"条目 {tweet_id} 的摘要",
        core_viewpoint="观点",
        underlying_problem="问题",
        tags_zh=list(tags_zh),
        provider="deepseek",
        model="deepseek-chat",
        summarized_at=NOW,
    )
    await store.summaries.upsert_by_key(summary.model_dump(mode="json"))
    return summary
