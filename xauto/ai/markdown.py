"""Deterministic markdown rendering for item summaries.

Used whenever the provider-rendered markdown is missing or empty, so every
stored summary carries a non-empty rendering.
"""

import json
import re
from pathlib import Path

from jinja2 import Environment, FileSystemLoader

from xauto.core.models import SummaryResult

TEMPLATES_DIR = Path(__file__).parent / "templates"

_TAG_UNSAFE_RE = re.compile(r"[\s#]+")


def _create_jinja_env() -> Environment:
    return Environment(
        loader=FileSystemLoader(str(TEMPLATES_DIR)),
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
    )


_env = _create_jinja_env()


def format_tag_line(tags: list[str]) -> str:
    """Render tags as '#tag' tokens, collapsing whitespace inside a tag."""
    tokens = []
    for tag in tags:
        cleaned = _TAG_UNSAFE_RE.sub("-", tag.strip()).strip("-")
        if cleaned:
            tokens.append(f"#{cleaned}")
    return " ".join(tokens)


def render_summary_markdown(summary: SummaryResult) -> str:
    template = _env.get_template("summary.md.j2")
    rendered = template.render(
        summary=summary,
        tag_line=format_tag_line(summary.tags_zh + summary.tags_en),
    )
    # Collapse the blank runs left by skipped sections
    return re.sub(r"\n{3,}", "\n\n", rendered).strip() + "\n"


def summary_context(summary: SummaryResult) -> str:
    """Structured fields handed to the provider for its markdown rendering."""
    fields = summary.model_dump(
        mode="json",
        include={
            "one_liner_zh",
            "one_liner_en",
            "core_viewpoint",
            "underlying_problem",
            "key_technologies",
            "claim_types",
            "bullets_zh",
            "actions",
            "tags_zh",
        },
    )
    return json.dumps(fields, ensure_ascii=False, indent=2)
