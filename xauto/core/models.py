"""Persisted records and model-output shapes.

BookmarkItem, ItemSummary, DigestReport, JobRun and ProviderConfig are the
document-store records. SummaryResult, DigestResult and VocabularyCard are
what the AI layer hands back after normalization; ItemSummary is a
SummaryResult pinned to a tweet and a version.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

SUMMARY_VERSION = 1


class ClaimLabel(str, Enum):
    FACT = "fact"
    OPINION = "opinion"
    SPECULATION = "speculation"


class JobStatus(str, Enum):
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class DigestPeriod(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"


class BookmarkItem(BaseModel):
    tweet_id: str
    created_at_external: datetime | None = None
    author_name: str = "unknown"
    author_username: str | None = None
    text: str = ""
    url: str
    raw_payload: dict[str, Any] = Field(default_factory=dict)
    synced_at: datetime


class KeyTechnology(BaseModel):
    concept: str
    solves: str = ""


class ClaimType(BaseModel):
    statement: str
    label: ClaimLabel


class SummaryResult(BaseModel):
    one_liner_zh: str
    one_liner_en: str = ""
    bullets_zh: list[str] = Field(default_factory=list)
    bullets_en: list[str] = Field(default_factory=list)
    tags_zh: list[str] = Field(default_factory=list)
    tags_en: list[str] = Field(default_factory=list)
    actions: list[str] = Field(default_factory=list)
    core_viewpoint: str
    underlying_problem: str
    key_technologies: list[KeyTechnology] = Field(default_factory=list)
    claim_types: list[ClaimType] = Field(default_factory=list)
    research_keywords_en: list[str] = Field(default_factory=list)
    reusable_insights: list[str] = Field(default_factory=list)
    logic_structure: list[str] = Field(default_factory=list)
    hidden_assumptions: list[str] = Field(default_factory=list)
    counter_views: list[str] = Field(default_factory=list)
    referenced_libraries: list[str] = Field(default_factory=list)
    markdown: str = ""
    quality_score: float = Field(default=0.5, ge=0.0, le=1.0)
    provider: str
    model: str


class ItemSummary(SummaryResult):
    tweet_id: str
    version: int = SUMMARY_VERSION
    summarized_at: datetime


class DigestTopItem(BaseModel):
    tweet_id: str
    reason: str = ""
    next_step: str = ""


class DigestResult(BaseModel):
    top_themes: list[str] = Field(default_factory=list)
    top_items: list[DigestTopItem] = Field(default_factory=list)
    risks: list[str] = Field(default_factory=list)
    tomorrow_actions: list[str] = Field(default_factory=list)
    provider: str
    model: str


class DigestReport(DigestResult):
    period: DigestPeriod
    period_key: str
    generated_at: datetime


class DigestInput(BaseModel):
    """One summarized item fed into digest generation."""

    tweet_id: str
    one_liner_zh: str
    one_liner_en: str = ""
    tags_zh: list[str] = Field(default_factory=list)
    actions: list[str] = Field(default_factory=list)


class JobRun(BaseModel):
    run_id: str
    job_name: str
    status: JobStatus
    started_at: datetime
    finished_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    retry_count: int = 0
    cost_estimate: float = 0.0


class ProviderConfig(BaseModel):
    provider: str
    base_url: str
    encrypted_api_key: str
    key_iv: str
    key_tag: str
    mini_model: str
    digest_model: str
    enabled: bool = True
    priority: int = 100
    monthly_budget: float = 100.0
    updated_at: datetime | None = None


class Phonetic(BaseModel):
    ipa: str = ""
    us: str = ""
    uk: str = ""


class Collocation(BaseModel):
    text: str
    translation: str = ""


class UsageExample(BaseModel):
    source: str = ""
    target: str = ""


class Confusable(BaseModel):
    word: str
    diff: str = ""


class VocabularyCard(BaseModel):
    term: str
    normalized_term: str
    source_language: str = "unknown"
    target_language: str = "zh-CN"
    translation: str
    short_definition_zh: str
    short_definition_en: str = ""
    phonetic: Phonetic = Field(default_factory=Phonetic)
    part_of_speech: list[str] = Field(default_factory=list)
    domain_tags: list[str] = Field(default_factory=list)
    collocations: list[Collocation] = Field(default_factory=list)
    example: UsageExample = Field(default_factory=UsageExample)
    confusable: list[Confusable] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    provider: str
    model: str
    source: str = "model"
    cached_at: datetime | None = None
