"""Vocabulary lookup request validation and card normalization."""

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from xauto.ai.normalizer import (
    coerce_quality_score,
    coerce_string_list,
    coerce_text,
    first_key,
    lookup_field,
)
from xauto.core.exceptions import ExtractionError, ValidationError
from xauto.core.models import (
    Collocation,
    Confusable,
    Phonetic,
    UsageExample,
    VocabularyCard,
)

MAX_TERM_LENGTH = 64
MAX_CONTEXT_LENGTH = 240
MAX_TARGET_LANG_LENGTH = 16
DEFAULT_TARGET_LANG = "zh-CN"
LANG_HINTS = ("en", "zh", "mixed", "unknown")

VOCABULARY_ALIASES: dict[str, tuple[str, ...]] = {
    "translation": ("translation", "translation_zh", "meaning", "翻译", "译文"),
    "short_definition_zh": ("short_definition_zh", "shortDefinitionZh", "definition_zh", "释义"),
    "short_definition_en": ("short_definition_en", "shortDefinitionEn", "definition_en", "definition"),
    "source_language": ("source_language", "sourceLanguage"),
    "phonetic": ("phonetic", "pronunciation", "音标"),
    "part_of_speech": ("part_of_speech", "partOfSpeech", "pos", "词性"),
    "domain_tags": ("domain_tags", "domainTags", "domains", "tags"),
    "collocations": ("collocations", "phrases", "搭配"),
    "example": ("example", "examples", "例句"),
    "confusable": ("confusable", "confusables", "easily_confused", "易混词"),
    "confidence": ("confidence", "score"),
}


@dataclass(frozen=True)
class VocabularyRequest:
    term: str
    normalized_term: str
    context: str
    source_lang_hint: str
    target_lang: str


def normalize_term(term: str) -> str:
    collapsed = " ".join(term.split()).lower()
    return collapsed.strip(" \t\"'`.,;:!?()[]{}")


def build_vocabulary_request(
    term: str,
    context: str | None = None,
    source_lang_hint: str | None = None,
    target_lang: str | None = None,
) -> VocabularyRequest:
    """Validate and normalize a lookup request.

    Raises:
        ValidationError: Empty or over-long term.
    """
    cleaned = " ".join((term or "").split())
    if not cleaned:
        raise ValidationError("term must not be empty")
    if len(cleaned) > MAX_TERM_LENGTH:
        raise ValidationError(f"term must be at most {MAX_TERM_LENGTH} characters")

    hint = (source_lang_hint or "").strip().lower()
    if hint not in LANG_HINTS:
        hint = "unknown"

    target = (target_lang or "").strip()[:MAX_TARGET_LANG_LENGTH] or DEFAULT_TARGET_LANG

    return VocabularyRequest(
        term=cleaned,
        normalized_term=normalize_term(cleaned) or cleaned.lower(),
        context=" ".join((context or "").split())[:MAX_CONTEXT_LENGTH],
        source_lang_hint=hint,
        target_lang=target,
    )


def cache_key(request: VocabularyRequest) -> str:
    return f"vocab:{request.target_lang.lower()}:{request.normalized_term}"


def build_user_prompt(request: VocabularyRequest) -> str:
    lines = [f"term: {request.term}", f"target_language: {request.target_lang}"]
    if request.source_lang_hint != "unknown":
        lines.append(f"source_language_hint: {request.source_lang_hint}")
    if request.context:
        lines.append(f"context: {request.context}")
    return "\n".join(lines)


def _coerce_pairs(value: Any, first_keys: tuple[str, ...], second_keys: tuple[str, ...]) -> list[tuple[str, str]]:
    if isinstance(value, dict):
        value = [value]
    if isinstance(value, str):
        value = coerce_string_list(value)
    if not isinstance(value, (list, tuple)):
        return []

    pairs: list[tuple[str, str]] = []
    for item in value:
        if isinstance(item, dict):
            first = coerce_text(first_key(item, first_keys))
            second = coerce_text(first_key(item, second_keys))
        elif isinstance(item, str):
            parts = re.split(r"\s*[:：|]\s*", item, maxsplit=1)
            first, second = parts[0].strip(), (parts[1].strip() if len(parts) > 1 else "")
        else:
            continue
        if first:
            pairs.append((first, second))
    return pairs


def _coerce_phonetic(value: Any) -> Phonetic:
    if isinstance(value, str):
        return Phonetic(ipa=value.strip())
    if isinstance(value, dict):
        return Phonetic(
            ipa=coerce_text(value.get("ipa")),
            us=coerce_text(value.get("us")),
            uk=coerce_text(value.get("uk")),
        )
    return Phonetic()


def _coerce_example(value: Any) -> UsageExample:
    if isinstance(value, list) and value:
        value = value[0]
    if isinstance(value, str):
        return UsageExample(source=value.strip())
    if isinstance(value, dict):
        return UsageExample(
            source=coerce_text(first_key(value, ("source", "sentence", "en", "text"))),
            target=coerce_text(first_key(value, ("target", "translation", "zh"))),
        )
    return UsageExample()


def normalize_vocabulary_card(
    payload: dict[str, Any],
    *,
    request: VocabularyRequest,
    provider: str,
    model: str,
    now: datetime,
) -> VocabularyCard:
    """Build a VocabularyCard from parsed model output.

    Raises:
        ExtractionError: translation or short_definition_zh is missing.
    """

    def field(name: str) -> Any:
        return lookup_field(payload, VOCABULARY_ALIASES[name])

    translation = coerce_text(field("translation"))
    definition_zh = coerce_text(field("short_definition_zh"))
    if not translation or not definition_zh:
        raise ExtractionError("Vocabulary output missing translation or definition")

    source_language = coerce_text(field("source_language")).lower()
    if source_language not in LANG_HINTS:
        source_language = request.source_lang_hint

    return VocabularyCard(
        term=request.term,
        normalized_term=request.normalized_term,
        source_language=source_language,
        target_language=request.target_lang,
        translation=translation,
        short_definition_zh=definition_zh,
        short_definition_en=coerce_text(field("short_definition_en")),
        phonetic=_coerce_phonetic(field("phonetic")),
        part_of_speech=coerce_string_list(field("part_of_speech"))[:4],
        domain_tags=coerce_string_list(field("domain_tags"))[:5],
        collocations=[
            Collocation(text=text, translation=meaning)
            for text, meaning in _coerce_pairs(
                field("collocations"), ("text", "phrase"), ("translation", "meaning")
            )[:5]
        ],
        example=_coerce_example(field("example")),
        confusable=[
            Confusable(word=word, diff=diff)
            for word, diff in _coerce_pairs(
                field("confusable"), ("word", "term"), ("diff", "difference")
            )[:3]
        ],
        confidence=coerce_quality_score(field("confidence"), default=0.0),
        provider=provider,
        model=model,
        source="model",
        cached_at=now,
    )
