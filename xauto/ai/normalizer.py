"""Model output normalization.

Providers return loosely structured JSON: fields get renamed, nested under
wrapper objects, written in Chinese, or flattened into strings. This module
turns whatever came back into a validated SummaryResult or DigestResult.

Lookup is table driven: each logical field has an ordered alias list, and
aliases are tried against a fixed set of root paths. Values then go through
generic coercion into deduplicated string lists or single strings.
Fallback builders produce the fixed degraded results used when no provider
succeeds.
"""

import math
import re
from collections import Counter
from collections.abc import Iterable, Sequence
from typing import Any

from xauto.core.exceptions import ExtractionError, SummaryShapeError
from xauto.core.models import (
    ClaimLabel,
    ClaimType,
    DigestInput,
    DigestResult,
    DigestTopItem,
    KeyTechnology,
    SummaryResult,
)

FALLBACK_MODEL = "fallback"
FALLBACK_QUALITY = 0.2
DEFAULT_QUALITY = 0.5

MAX_COERCE_DEPTH = 2

# Root objects searched for aliased fields, in priority order
ROOT_PATHS: tuple[tuple[str, ...], ...] = (
    (),
    ("A",),
    ("a",),
    ("analysis",),
    ("data",),
    ("result",),
    ("output",),
)

FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "one_liner_zh": ("one_liner_zh", "oneLinerZh", "summary_zh", "一句话总结", "一句话摘要", "核心摘要"),
    "one_liner_en": ("one_liner_en", "oneLinerEn", "summary_en", "one_liner", "summary"),
    "bullets_zh": ("bullets_zh", "bulletsZh", "key_points_zh", "要点"),
    "bullets_en": ("bullets_en", "bulletsEn", "key_points_en", "key_points"),
    "tags_zh": ("tags_zh", "tagsZh", "标签"),
    "tags_en": ("tags_en", "tagsEn", "tags"),
    "actions": ("actions", "action_items", "next_actions", "行动建议"),
    "core_viewpoint": ("core_viewpoint", "coreViewpoint", "core_view", "main_point", "核心观点"),
    "underlying_problem": (
        "underlying_problem",
        "underlyingProblem",
        "root_problem",
        "底层问题",
        "背后的底层问题",
    ),
    "key_technologies": ("key_technologies", "keyTechnologies", "technologies", "关键技术"),
    "claim_types": ("claim_types", "claimTypes", "claims", "事实观点推测"),
    "research_keywords_en": (
        "research_keywords_en",
        "researchKeywordsEn",
        "research_keywords",
        "keywords_en",
        "keywords",
    ),
    "reusable_insights": ("reusable_insights", "reusableInsights", "insights", "可复用洞见"),
    "logic_structure": ("logic_structure", "logicStructure", "reasoning_chain", "逻辑结构"),
    "hidden_assumptions": ("hidden_assumptions", "hiddenAssumptions", "assumptions", "隐含假设"),
    "counter_views": ("counter_views", "counterViews", "counterarguments", "反方观点"),
    "referenced_libraries": ("referenced_libraries", "referencedLibraries", "libraries", "repos"),
    "quality_score": ("quality_score", "qualityScore", "quality", "confidence"),
    "top_themes": ("top_themes", "topThemes", "themes", "主题"),
    "top_items": ("top_items", "topItems", "highlights", "items", "重点条目"),
    "risks": ("risks", "risk", "风险"),
    "tomorrow_actions": ("tomorrow_actions", "tomorrowActions", "next_actions", "actions", "明日行动"),
}

PLACEHOLDER_VALUES = frozenset(
    {
        "",
        "-",
        "--",
        "...",
        "…",
        "n/a",
        "na",
        "none",
        "null",
        "nil",
        "unknown",
        "todo",
        "tbd",
        "no summary",
        "无",
        "无摘要",
        "暂无",
        "未知",
        "待补充",
    }
)

RESEARCH_KEYWORD_BLOCKLIST = frozenset(
    {
        "x-post-analysis",
        "analysis",
        "research",
        "keyword",
        "keywords",
        "summary",
        "summaries",
        "insight",
        "insights",
        "topic",
        "topics",
        "model-retry",
        "summary-fallback",
        "system-fallback",
        "http",
        "https",
        "www",
        "com",
        "org",
        "net",
        "t.co",
        "uncategorized",
        "unknown",
        "none",
        "n-a",
        "na",
    }
)

ENGLISH_STOPWORDS = frozenset(
    {
        "a", "about", "an", "and", "are", "as", "at", "be", "by", "for", "from",
        "how", "in", "into", "is", "it", "its", "new", "of", "on", "or", "that",
        "the", "this", "to", "use", "using", "via", "vs", "what", "why", "with",
    }
)

MAX_RESEARCH_KEYWORDS = 5
MAX_SYNTHESIZED_KEYWORDS = 3

_SPLIT_RE = re.compile(r"[\n;；]+")
_BULLET_RE = re.compile(r"^\s*(?:[-*•·]+\s*|\d+(?:[.)](?=\s)|、)\s*|[(（]\d+[)）]\s*)")
_URL_RE = re.compile(r"https?://\S+")
_NON_ASCII_RE = re.compile(r"[^\x00-\x7f]")
_KEYWORD_DISALLOWED_RE = re.compile(r"[^a-z0-9+._/\-\s]")
_HASHTAG_RE = re.compile(r"#([A-Za-z][A-Za-z0-9_+.-]{1,39})")
_PAIR_SPLIT_RE = re.compile(r"\s*[:：]\s*|\s+-\s+")

_TEXT_KEYS = ("text", "value", "content", "statement", "point", "title", "name", "concept")
_CONCEPT_KEYS = ("concept", "name", "technology", "tech", "term", "title", "概念", "技术")
_SOLVES_KEYS = ("solves", "purpose", "problem", "what_it_solves", "role", "description", "解决", "作用")
_STATEMENT_KEYS = ("statement", "claim", "text", "content", "陈述")
_LABEL_KEYS = ("label", "type", "kind", "category", "类型")
_TWEET_ID_KEYS = ("tweet_id", "tweetId", "id")
_REASON_KEYS = ("reason", "why", "summary", "理由")
_NEXT_STEP_KEYS = ("next_step", "nextStep", "action", "下一步")

_LABEL_ALIASES: dict[str, ClaimLabel] = {
    "fact": ClaimLabel.FACT,
    "facts": ClaimLabel.FACT,
    "factual": ClaimLabel.FACT,
    "事实": ClaimLabel.FACT,
    "opinion": ClaimLabel.OPINION,
    "opinions": ClaimLabel.OPINION,
    "view": ClaimLabel.OPINION,
    "观点": ClaimLabel.OPINION,
    "speculation": ClaimLabel.SPECULATION,
    "speculative": ClaimLabel.SPECULATION,
    "prediction": ClaimLabel.SPECULATION,
    "推测": ClaimLabel.SPECULATION,
    "猜测": ClaimLabel.SPECULATION,
}
_LABELLED_STATEMENT_RE = re.compile(
    r"^\s*[\[【(（]?\s*(" + "|".join(map(re.escape, _LABEL_ALIASES)) + r")\s*[\]】)）:：]\s*(.+)$",
    re.IGNORECASE | re.DOTALL,
)


def is_placeholder(value: str) -> bool:
    return value.strip().casefold() in PLACEHOLDER_VALUES


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return is_placeholder(value)
    if isinstance(value, (list, tuple, dict)):
        return len(value) == 0
    return False


def resolve_roots(payload: dict[str, Any]) -> list[dict[str, Any]]:
    roots: list[dict[str, Any]] = []
    for path in ROOT_PATHS:
        node: Any = payload
        for part in path:
            node = node.get(part) if isinstance(node, dict) else None
        if isinstance(node, dict) and all(node is not r for r in roots):
            roots.append(node)
    return roots


def lookup_field(
    payload: dict[str, Any], aliases: Sequence[str], *, flat: bool = False
) -> Any:
    """Return the first non-empty value for any alias, roots first."""
    roots = [payload] if flat else resolve_roots(payload)
    for root in roots:
        for alias in aliases:
            value = root.get(alias)
            if not _is_empty(value):
                return value
    return None


def first_key(item: dict[str, Any], keys: Sequence[str]) -> Any:
    for key in keys:
        value = item.get(key)
        if not _is_empty(value):
            return value
    return None


def _collect_strings(value: Any, out: list[str], depth: int, split: bool) -> None:
    if value is None or isinstance(value, bool):
        return
    if isinstance(value, str):
        parts = _SPLIT_RE.split(value) if split else [value]
        for part in parts:
            cleaned = _BULLET_RE.sub("", part).strip()
            if cleaned:
                out.append(cleaned)
        return
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            return
        out.append(str(value))
        return
    if depth >= MAX_COERCE_DEPTH:
        return
    if isinstance(value, (list, tuple)):
        for item in value:
            _collect_strings(item, out, depth + 1, split=False)
    elif isinstance(value, dict):
        preferred = first_key(value, _TEXT_KEYS)
        if isinstance(preferred, str):
            _collect_strings(preferred, out, depth + 1, split=False)
            return
        for item in value.values():
            _collect_strings(item, out, depth + 1, split=False)


def dedupe(values: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    result: list[str] = []
    for value in values:
        key = value.strip().casefold()
        if not key or key in PLACEHOLDER_VALUES or key in seen:
            continue
        seen.add(key)
        result.append(value.strip())
    return result


def coerce_string_list(value: Any) -> list[str]:
    """Coerce any JSON value into an order-preserving list of distinct strings.

    A bare string is split on newlines and semicolons with bullet markers
    removed; array items are kept whole. Nesting deeper than two levels is
    ignored.
    """
    out: list[str] = []
    _collect_strings(value, out, depth=0, split=True)
    return dedupe(out)


def coerce_text(value: Any) -> str:
    if isinstance(value, str):
        text = " ".join(value.split())
        return "" if is_placeholder(text) else text
    items = coerce_string_list(value)
    return items[0] if items else ""


def first_meaningful(*candidates: str | None) -> str:
    for candidate in candidates:
        if candidate and not is_placeholder(candidate):
            return candidate.strip()
    return ""


def coerce_quality_score(value: Any, default: float = DEFAULT_QUALITY) -> float:
    if isinstance(value, bool) or value is None:
        return default
    if isinstance(value, str):
        try:
            value = float(value.strip().rstrip("%"))
        except ValueError:
            return default
    if not isinstance(value, (int, float)) or not math.isfinite(value):
        return default
    score = float(value)
    # Scores on a 0-100 scale
    if 1.0 < score <= 100.0:
        score = score / 100.0
    return min(1.0, max(0.0, score))


def _split_pair(text: str) -> tuple[str, str]:
    parts = _PAIR_SPLIT_RE.split(text, maxsplit=1)
    if len(parts) == 2:
        return parts[0].strip(), parts[1].strip()
    return text.strip(), ""


def coerce_key_technologies(value: Any, limit: int = 6) -> list[KeyTechnology]:
    if isinstance(value, dict):
        if first_key(value, _CONCEPT_KEYS) is not None:
            items: list[Any] = [value]
        else:
            items = [{"concept": k, "solves": v} for k, v in value.items()]
    elif isinstance(value, (list, tuple)):
        items = list(value)
    elif isinstance(value, str):
        items = coerce_string_list(value)
    else:
        return []

    result: list[KeyTechnology] = []
    seen: set[str] = set()
    for item in items:
        if isinstance(item, dict):
            concept = coerce_text(first_key(item, _CONCEPT_KEYS))
            solves = coerce_text(first_key(item, _SOLVES_KEYS))
        elif isinstance(item, str):
            concept, solves = _split_pair(item)
        else:
            continue
        if not concept or is_placeholder(concept) or concept.casefold() in seen:
            continue
        seen.add(concept.casefold())
        result.append(KeyTechnology(concept=concept, solves=solves))
        if len(result) >= limit:
            break
    return result


def _normalize_label(value: Any) -> ClaimLabel | None:
    if not isinstance(value, str):
        return None
    return _LABEL_ALIASES.get(value.strip().casefold())


def coerce_claim_types(value: Any, limit: int = 8) -> list[ClaimType]:
    pairs: list[tuple[str, ClaimLabel | None]] = []

    if isinstance(value, dict):
        if first_key(value, _STATEMENT_KEYS) is not None:
            value = [value]
        else:
            # {"fact": [...], "opinion": [...]}
            for key, statements in value.items():
                label = _normalize_label(key)
                for statement in coerce_string_list(statements):
                    pairs.append((statement, label))
            value = []
    elif isinstance(value, str):
        value = coerce_string_list(value)

    if isinstance(value, (list, tuple)):
        for item in value:
            if isinstance(item, dict):
                pairs.append(
                    (
                        coerce_text(first_key(item, _STATEMENT_KEYS)),
                        _normalize_label(first_key(item, _LABEL_KEYS)),
                    )
                )
            elif isinstance(item, str):
                match = _LABELLED_STATEMENT_RE.match(item)
                if match:
                    pairs.append((match.group(2).strip(), _normalize_label(match.group(1))))

    result: list[ClaimType] = []
    seen: set[str] = set()
    for statement, label in pairs:
        if label is None or not statement or is_placeholder(statement):
            continue
        if statement.casefold() in seen:
            continue
        seen.add(statement.casefold())
        result.append(ClaimType(statement=statement, label=label))
        if len(result) >= limit:
            break
    return result


def normalize_research_keyword(value: str) -> str | None:
    """Normalize one research keyword, or return None if it is not usable.

    Idempotent: normalizing an accepted keyword returns it unchanged.
    """
    normalized = value.strip().lower()
    if not normalized:
        return None

    normalized = normalized.lstrip("#")
    normalized = _URL_RE.sub(" ", normalized)
    normalized = _NON_ASCII_RE.sub(" ", normalized)
    normalized = _KEYWORD_DISALLOWED_RE.sub(" ", normalized)
    normalized = re.sub(r"\s+", "-", normalized)
    normalized = re.sub(r"-+", "-", normalized).strip("-")

    if len(normalized) < 3 or len(normalized) > 40:
        return None
    if not re.search(r"[a-z]", normalized):
        return None
    if normalized in RESEARCH_KEYWORD_BLOCKLIST:
        return None

    segments = [s for s in normalized.split("-") if s]
    if all(s in ENGLISH_STOPWORDS or s in RESEARCH_KEYWORD_BLOCKLIST for s in segments):
        return None
    return normalized


def normalize_research_keywords(
    values: Iterable[str], limit: int = MAX_RESEARCH_KEYWORDS
) -> list[str]:
    result: list[str] = []
    for value in values:
        keyword = normalize_research_keyword(value)
        if keyword and keyword not in result:
            result.append(keyword)
        if len(result) >= limit:
            break
    return result


def synthesize_research_keywords(
    *,
    tags_en: Sequence[str] = (),
    technologies: Sequence[KeyTechnology] = (),
    libraries: Sequence[str] = (),
    source_text: str = "",
    limit: int = MAX_SYNTHESIZED_KEYWORDS,
) -> list[str]:
    """Derive research keywords when the model supplied none that survive."""
    candidates: list[str] = []
    candidates.extend(tags_en)
    candidates.extend(tech.concept for tech in technologies)
    candidates.extend(libraries)
    candidates.extend(_HASHTAG_RE.findall(source_text or ""))
    return normalize_research_keywords(candidates, limit=limit)


def normalize_summary(
    payload: dict[str, Any],
    *,
    source_text: str,
    provider: str,
    model: str,
) -> SummaryResult:
    """Build a validated SummaryResult from parsed model output.

    Raises:
        SummaryShapeError: A required field is empty or a placeholder.
    """

    def field(name: str) -> Any:
        return lookup_field(payload, FIELD_ALIASES[name])

    def text(name: str) -> str:
        return coerce_text(field(name))

    def items(name: str, limit: int) -> list[str]:
        return coerce_string_list(field(name))[:limit]

    def first(values: Sequence[str]) -> str:
        return values[0] if values else ""

    one_liner_zh = text("one_liner_zh")
    key_technologies = coerce_key_technologies(field("key_technologies"))
    claim_types = coerce_claim_types(field("claim_types"))
    reusable_insights = items("reusable_insights", 5)
    logic_structure = items("logic_structure", 6)
    hidden_assumptions = items("hidden_assumptions", 5)
    counter_views = items("counter_views", 5)
    referenced_libraries = items("referenced_libraries", 8)
    first_claim = claim_types[0].statement if claim_types else ""

    core_viewpoint = first_meaningful(
        text("core_viewpoint"),
        one_liner_zh,
        first(reusable_insights),
        first(logic_structure),
        first(hidden_assumptions),
        first(counter_views),
        first_claim,
    )
    underlying_problem = first_meaningful(
        text("underlying_problem"),
        next((t.solves for t in key_technologies if t.solves), ""),
        first(hidden_assumptions),
        first(logic_structure),
        first(counter_views),
        first_claim,
    )

    missing = [
        name
        for name, value in (
            ("one_liner_zh", one_liner_zh),
            ("core_viewpoint", core_viewpoint),
            ("underlying_problem", underlying_problem),
        )
        if not value
    ]
    if missing:
        raise SummaryShapeError(
            f"Model output missing required fields: {', '.join(missing)}"
        )

    tags_en = items("tags_en", 5)
    research_keywords = normalize_research_keywords(
        coerce_string_list(field("research_keywords_en"))
    )
    if not research_keywords:
        research_keywords = synthesize_research_keywords(
            tags_en=tags_en,
            technologies=key_technologies,
            libraries=referenced_libraries,
            source_text=source_text,
        )

    return SummaryResult(
        one_liner_zh=one_liner_zh,
        one_liner_en=text("one_liner_en"),
        bullets_zh=items("bullets_zh", 5),
        bullets_en=items("bullets_en", 5),
        tags_zh=items("tags_zh", 5),
        tags_en=tags_en,
        actions=items("actions", 3),
        core_viewpoint=core_viewpoint,
        underlying_problem=underlying_problem,
        key_technologies=key_technologies,
        claim_types=claim_types,
        research_keywords_en=research_keywords,
        reusable_insights=reusable_insights,
        logic_structure=logic_structure,
        hidden_assumptions=hidden_assumptions,
        counter_views=counter_views,
        referenced_libraries=referenced_libraries,
        quality_score=coerce_quality_score(field("quality_score")),
        provider=provider,
        model=model,
    )


def build_fallback_summary(source_text: str, *, provider: str) -> SummaryResult:
    """Fixed, clearly marked summary used when every provider failed."""
    snippet = " ".join((source_text or "").split())[:80]
    one_liner_zh = f"摘要暂不可用：{snippet}" if snippet else "摘要暂不可用"
    return SummaryResult(
        one_liner_zh=one_liner_zh,
        one_liner_en="Summary unavailable; showing the original text.",
        bullets_zh=[snippet] if snippet else [],
        tags_zh=["待复核"],
        tags_en=["summary-fallback"],
        actions=["稍后重新生成摘要"],
        core_viewpoint="模型暂时无法完成分析，请直接阅读原文。",
        underlying_problem="所有模型提供方调用失败或输出不合格，需要稍后重新生成摘要。",
        research_keywords_en=synthesize_research_keywords(source_text=source_text),
        quality_score=FALLBACK_QUALITY,
        provider=provider,
        model=FALLBACK_MODEL,
    )


def _coerce_top_items(
    value: Any, known_ids: set[str] | None, limit: int = 5
) -> list[DigestTopItem]:
    if isinstance(value, dict):
        value = [value]
    if not isinstance(value, (list, tuple)):
        return []

    result: list[DigestTopItem] = []
    seen: set[str] = set()
    for item in value:
        if not isinstance(item, dict):
            continue
        raw_id = first_key(item, _TWEET_ID_KEYS)
        if raw_id is None or isinstance(raw_id, (dict, list, bool)):
            continue
        tweet_id = str(raw_id).strip()
        if not tweet_id or tweet_id in seen:
            continue
        if known_ids and tweet_id not in known_ids:
            continue
        seen.add(tweet_id)
        result.append(
            DigestTopItem(
                tweet_id=tweet_id,
                reason=coerce_text(first_key(item, _REASON_KEYS)),
                next_step=coerce_text(first_key(item, _NEXT_STEP_KEYS)),
            )
        )
        if len(result) >= limit:
            break
    return result


def normalize_digest(
    payload: dict[str, Any],
    *,
    known_ids: Iterable[str] = (),
    provider: str,
    model: str,
) -> DigestResult:
    """Build a validated DigestResult from a flat digest payload.

    Raises:
        ExtractionError: Neither themes nor top items survived.
    """

    def items(name: str, limit: int) -> list[str]:
        return coerce_string_list(lookup_field(payload, FIELD_ALIASES[name], flat=True))[:limit]

    themes = items("top_themes", 5)
    top_items = _coerce_top_items(
        lookup_field(payload, FIELD_ALIASES["top_items"], flat=True),
        set(known_ids) or None,
    )
    if not themes and not top_items:
        raise ExtractionError("Digest output has neither themes nor top items")

    return DigestResult(
        top_themes=themes,
        top_items=top_items,
        risks=items("risks", 5),
        tomorrow_actions=items("tomorrow_actions", 5),
        provider=provider,
        model=model,
    )


def build_fallback_digest(
    items: Sequence[DigestInput], *, provider: str, risk_note: str
) -> DigestResult:
    """Deterministic digest: top tags as themes, first five items verbatim."""
    counter = Counter(
        tag for item in items for tag in item.tags_zh if tag and not is_placeholder(tag)
    )
    themes = [tag for tag, _ in counter.most_common(3)] or ["无主题"]
    top_items = [
        DigestTopItem(
            tweet_id=item.tweet_id,
            reason=item.one_liner_zh,
            next_step=item.actions[0] if item.actions else "继续观察",
        )
        for item in items[:5]
    ]
    return DigestResult(
        top_themes=themes,
        top_items=top_items,
        risks=[risk_note],
        tomorrow_actions=["复查高优先级条目"],
        provider=provider,
        model=FALLBACK_MODEL,
    )
