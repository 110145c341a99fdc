"""Rate-limited X API v2 client.

Endpoints:
    GET /2/users/me                  resolve the connected user id
    GET /2/users/:id/bookmarks       one page of bookmark ids (max 100)
    GET /2/tweets?ids=...            batched detail lookup (max 100 ids)

A 429 answer is retried on the fixed schedule 60s, 300s, 900s. Any other
failure, or running out of the schedule, raises ServiceUnavailable carrying
the upstream status and a short error detail. This module knows nothing about
persistence or summarization.
"""

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

import httpx

from xauto.core.exceptions import RateLimitError, ServiceUnavailable
from xauto.core.http_client import (
    BOOKMARKS_TIMEOUT,
    USER_LOOKUP_TIMEOUT,
    create_client,
    get_headers,
)
from xauto.core.retry import RATE_LIMIT_BACKOFF_SCHEDULE, SleepFunc, retry_on_schedule

logger = logging.getLogger(__name__)

MAX_IDS_PER_LOOKUP = 100
MAX_PAGE_SIZE = 100
ERROR_DETAIL_LIMIT = 240

# The page request only needs ids; details come from the tweet lookup
PAGE_TWEET_FIELDS = ["id", "created_at"]

DETAIL_TWEET_FIELDS = ["id", "text", "created_at", "author_id", "note_tweet", "entities"]
DETAIL_EXPANSIONS = ["author_id"]
DETAIL_USER_FIELDS = ["id", "name", "username"]


@dataclass
class BookmarkPageEntry:
    tweet_id: str
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class BookmarkPage:
    entries: list[BookmarkPageEntry]
    next_token: str | None = None

    @property
    def tweet_ids(self) -> list[str]:
        return [entry.tweet_id for entry in self.entries]


@dataclass
class TweetDetail:
    tweet_id: str
    text: str
    author_name: str
    author_username: str | None
    created_at: str | None
    url: str
    raw: dict[str, Any] = field(default_factory=dict)


def read_error_details(response: httpx.Response) -> str:
    """Extract a short, human-readable error detail from an X API response."""
    try:
        payload = response.json()
    except ValueError:
        return response.text[:ERROR_DETAIL_LIMIT]

    if isinstance(payload, dict):
        parts: list[str] = []
        for key in ("error", "title", "detail"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                parts.append(value.strip())
        errors = payload.get("errors")
        if isinstance(errors, list):
            for err in errors:
                if isinstance(err, dict) and isinstance(err.get("message"), str):
                    parts.append(err["message"].strip())
        if parts:
            return " | ".join(parts)[:ERROR_DETAIL_LIMIT]

    return json.dumps(payload, ensure_ascii=False)[:ERROR_DETAIL_LIMIT]


def canonical_url(tweet_id: str, username: str | None) -> str:
    if username:
        return f"https://x.com/{username}/status/{tweet_id}"
    return f"https://x.com/i/web/status/{tweet_id}"


def tweet_to_detail(tweet: dict[str, Any], users_map: dict[str, dict]) -> TweetDetail:
    """Convert an X API tweet object plus user includes into a TweetDetail."""
    tweet_id = str(tweet["id"])
    text = tweet.get("text", "") or ""

    # Long posts carry their full body in note_tweet
    note_tweet = tweet.get("note_tweet")
    if isinstance(note_tweet, dict) and note_tweet.get("text"):
        text = note_tweet["text"]

    author = users_map.get(str(tweet.get("author_id", "")), {})
    username = author.get("username") or None
    author_name = author.get("name") or username or "unknown"

    return TweetDetail(
        tweet_id=tweet_id,
        text=text,
        author_name=author_name,
        author_username=username,
        created_at=tweet.get("created_at"),
        url=canonical_url(tweet_id, username),
        raw=tweet,
    )


class XApiClient:
    """Thin, rate-limit aware wrapper over the X API v2 REST endpoints."""

    def __init__(
        self,
        base_url: str = "https://api.x.com/2",
        *,
        backoff_schedule: Sequence[float] = RATE_LIMIT_BACKOFF_SCHEDULE,
        sleep: SleepFunc | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.backoff_schedule = tuple(backoff_schedule)
        self._sleep = sleep
        self._transport = transport

    async def fetch_current_user(self, access_token: str) -> str:
        """Return the id of the user owning `access_token`."""
        data = await self._get(
            "/users/me", access_token, params=None, timeout=USER_LOOKUP_TIMEOUT
        )
        user_id = (data.get("data") or {}).get("id")
        if not user_id:
            raise ServiceUnavailable("X API /users/me returned no user id")
        return str(user_id)

    async def fetch_bookmark_page(
        self,
        access_token: str,
        user_id: str,
        pagination_token: str | None = None,
        max_results: int = MAX_PAGE_SIZE,
    ) -> BookmarkPage:
        """Fetch one page of bookmarks, most recent first."""
        params: dict[str, Any] = {
            "max_results": max(1, min(MAX_PAGE_SIZE, max_results)),
            "tweet.fields": ",".join(PAGE_TWEET_FIELDS),
        }
        if pagination_token:
            params["pagination_token"] = pagination_token

        data = await self._get(
            f"/users/{user_id}/bookmarks",
            access_token,
            params=params,
            timeout=BOOKMARKS_TIMEOUT,
        )

        entries = [
            BookmarkPageEntry(tweet_id=str(tweet["id"]), raw=tweet)
            for tweet in data.get("data") or []
            if isinstance(tweet, dict) and tweet.get("id")
        ]
        next_token = (data.get("meta") or {}).get("next_token") or None
        return BookmarkPage(entries=entries, next_token=next_token)

    async def fetch_tweet_details(
        self, access_token: str, tweet_ids: Sequence[str]
    ) -> dict[str, TweetDetail]:
        """Look up full tweet details, 100 ids per request.

        Ids missing from the response (deleted or protected posts) are simply
        absent from the returned mapping.
        """
        details: dict[str, TweetDetail] = {}
        unique_ids = list(dict.fromkeys(str(t) for t in tweet_ids))

        for start in range(0, len(unique_ids), MAX_IDS_PER_LOOKUP):
            chunk = unique_ids[start : start + MAX_IDS_PER_LOOKUP]
            data = await self._get(
                "/tweets",
                access_token,
                params={
                    "ids": ",".join(chunk),
                    "tweet.fields": ",".join(DETAIL_TWEET_FIELDS),
                    "expansions": ",".join(DETAIL_EXPANSIONS),
                    "user.fields": ",".join(DETAIL_USER_FIELDS),
                },
                timeout=BOOKMARKS_TIMEOUT,
            )
            includes = data.get("includes") or {}
            users_map = {
                str(u["id"]): u for u in includes.get("users", []) if u.get("id")
            }
            for tweet in data.get("data") or []:
                if isinstance(tweet, dict) and tweet.get("id"):
                    detail = tweet_to_detail(tweet, users_map)
                    details[detail.tweet_id] = detail

            logger.debug(
                "Fetched details for %d/%d ids", len(details), len(unique_ids)
            )

        return details

    async def _get(
        self,
        path: str,
        access_token: str,
        *,
        params: dict[str, Any] | None,
        timeout: float,
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"schedule": self.backoff_schedule}
        if self._sleep is not None:
            kwargs["sleep"] = self._sleep

        try:
            return await retry_on_schedule(
                self._get_once, path, access_token, params, timeout, **kwargs
            )
        except RateLimitError as e:
            raise ServiceUnavailable(
                f"X API rate limit persisted after retries "
                f"(status={e.status} detail={e.detail})",
                status=e.status,
                detail=e.detail,
            ) from e

    async def _get_once(
        self,
        path: str,
        access_token: str,
        params: dict[str, Any] | None,
        timeout: float,
    ) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            async with create_client(timeout=timeout, transport=self._transport) as client:
                response = await client.get(
                    url, params=params, headers=get_headers(access_token)
                )
        except httpx.HTTPError as e:
            raise ServiceUnavailable(f"X API request failed: {e!r}") from e

        if response.status_code == 429:
            detail = read_error_details(response)
            logger.warning("X API rate limited on %s: %s", path, detail)
            raise RateLimitError("X API rate limited", detail=detail)

        if response.status_code >= 400:
            detail = read_error_details(response)
            raise ServiceUnavailable(
                f"Failed to call X API {path} "
                f"(status={response.status_code} detail={detail})",
                status=response.status_code,
                detail=detail,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ServiceUnavailable(
                f"X API {path} returned a non-JSON body",
                status=response.status_code,
            ) from e
        if not isinstance(data, dict):
            raise ServiceUnavailable(
                f"X API {path} returned an unexpected body",
                status=response.status_code,
            )
        return data
