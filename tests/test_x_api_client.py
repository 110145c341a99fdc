"""Tests for the X API v2 client."""

import httpx
import pytest

from xauto.core.exceptions import ServiceUnavailable
from xauto.sources.x_api_client import (
    XApiClient,
    canonical_url,
    read_error_details,
    tweet_to_detail,
)

BASE_URL = "https://api.x.com/2"


class SleepRecorder:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class ScriptedEndpoint:
    """MockTransport handler replaying a list of responses."""

    def __init__(self, *responses: httpx.Response):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responses.pop(0)


def make_client(endpoint, sleep=None, schedule=(60.0, 300.0, 900.0)) -> XApiClient:
    return XApiClient(
        BASE_URL,
        backoff_schedule=schedule,
        sleep=sleep or SleepRecorder(),
        transport=httpx.MockTransport(endpoint),
    )


def tweets_response(tweets, users=(), status=200) -> httpx.Response:
    return httpx.Response(
        status, json={"data": list(tweets), "includes": {"users": list(users)}}
    )


class TestFetchCurrentUser:
    @pytest.mark.asyncio
    async def test_returns_user_id(self):
        endpoint = ScriptedEndpoint(httpx.Response(200, json={"data": {"id": "42"}}))

        assert await make_client(endpoint).fetch_current_user("tok") == "42"
        request = endpoint.requests[0]
        assert request.url.path == "/2/users/me"
        assert request.headers["Authorization"] == "Bearer tok"

    @pytest.mark.asyncio
    async def test_missing_id(self):
        endpoint = ScriptedEndpoint(httpx.Response(200, json={"data": {}}))

        with pytest.raises(ServiceUnavailable, match="no user id"):
            await make_client(endpoint).fetch_current_user("tok")


class TestFetchBookmarkPage:
    @pytest.mark.asyncio
    async def test_parses_entries_and_next_token(self):
        endpoint = ScriptedEndpoint(
            httpx.Response(
                200,
                json={
                    "data": [{"id": "3"}, {"id": "2"}, {"text": "no id"}],
                    "meta": {"next_token": "page-2"},
                },
            )
        )

        page = await make_client(endpoint).fetch_bookmark_page("tok", "42", "page-1", 50)

        assert page.tweet_ids == ["3", "2"]
        assert page.next_token == "page-2"
        params = endpoint.requests[0].url.params
        assert endpoint.requests[0].url.path == "/2/users/42/bookmarks"
        assert params["max_results"] == "50"
        assert params["pagination_token"] == "page-1"

    @pytest.mark.asyncio
    async def test_last_page_has_no_token(self):
        endpoint = ScriptedEndpoint(httpx.Response(200, json={"meta": {"result_count": 0}}))

        page = await make_client(endpoint).fetch_bookmark_page("tok", "42")

        assert page.entries == []
        assert page.next_token is None
        assert "pagination_token" not in endpoint.requests[0].url.params

    @pytest.mark.asyncio
    async def test_page_size_is_clamped(self):
        endpoint = ScriptedEndpoint(httpx.Response(200, json={"data": []}))

        await make_client(endpoint).fetch_bookmark_page("tok", "42", max_results=500)

        assert endpoint.requests[0].url.params["max_results"] == "100"


class TestFetchTweetDetails:
    @pytest.mark.asyncio
    async def test_maps_authors_and_long_posts(self):
        endpoint = ScriptedEndpoint(
            tweets_response(
                [
                    {"id": "1", "text": "short", "author_id": "u1", "created_at": "2026-03-09T10:00:00.000Z"},
                    {
                        "id": "2",
                        "text": "truncated…",
                        "author_id": "u2",
                        "note_tweet": {"text": "the full long post"},
                    },
                ],
                users=[
                    {"id": "u1", "name": "Alice", "username": "alice"},
                    {"id": "u2", "username": "bob"},
                ],
            )
        )

        details = await make_client(endpoint).fetch_tweet_details("tok", ["1", "2", "3"])

        assert set(details) == {"1", "2"}
        assert details["1"].author_name == "Alice"
        assert details["1"].url == "https://x.com/alice/status/1"
        assert details["1"].created_at == "2026-03-09T10:00:00.000Z"
        assert details["2"].text == "the full long post"
        assert details["2"].author_name == "bob"

    @pytest.mark.asyncio
    async def test_batches_by_one_hundred(self):
        endpoint = ScriptedEndpoint(tweets_response([]), tweets_response([]))
        ids = [str(i) for i in range(150)]

        await make_client(endpoint).fetch_tweet_details("tok", ids + ids[:5])

        assert len(endpoint.requests) == 2
        first_ids = endpoint.requests[0].url.params["ids"].split(",")
        second_ids = endpoint.requests[1].url.params["ids"].split(",")
        assert len(first_ids) == 100
        assert len(second_ids) == 50


class TestErrorHandling:
    @pytest.mark.asyncio
    async def test_rate_limit_backs_off_then_succeeds(self):
        sleep = SleepRecorder()
        endpoint = ScriptedEndpoint(
            httpx.Response(429, json={"title": "Too Many Requests"}),
            httpx.Response(200, json={"data": {"id": "42"}}),
        )

        assert await make_client(endpoint, sleep).fetch_current_user("tok") == "42"
        assert sleep.delays == [60.0]

    @pytest.mark.asyncio
    async def test_persistent_rate_limit_becomes_unavailable(self):
        sleep = SleepRecorder()
        endpoint = ScriptedEndpoint(
            *[httpx.Response(429, json={"title": "Too Many Requests"}) for _ in range(3)]
        )

        with pytest.raises(ServiceUnavailable) as exc_info:
            await make_client(endpoint, sleep, schedule=(1.0, 2.0)).fetch_current_user("tok")

        assert exc_info.value.status == 429
        assert exc_info.value.detail == "Too Many Requests"
        assert sleep.delays == [1.0, 2.0]
        assert len(endpoint.requests) == 3

    @pytest.mark.asyncio
    async def test_http_error_is_not_retried(self):
        sleep = SleepRecorder()
        endpoint = ScriptedEndpoint(
            httpx.Response(503, json={"errors": [{"message": "Service Unavailable"}]})
        )

        with pytest.raises(ServiceUnavailable) as exc_info:
            await make_client(endpoint, sleep).fetch_bookmark_page("tok", "42")

        assert "status=503" in str(exc_info.value)
        assert "/users/42/bookmarks" in str(exc_info.value)
        assert exc_info.value.detail == "Service Unavailable"
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        client = XApiClient(BASE_URL, transport=httpx.MockTransport(handler))

        with pytest.raises(ServiceUnavailable, match="request failed"):
            await client.fetch_current_user("tok")

    @pytest.mark.asyncio
    async def test_non_json_body(self):
        endpoint = ScriptedEndpoint(httpx.Response(200, text="<html>oops</html>"))

        with pytest.raises(ServiceUnavailable, match="non-JSON"):
            await make_client(endpoint).fetch_current_user("tok")


class TestHelpers:
    def test_read_error_details_joins_fields(self):
        response = httpx.Response(
            403,
            json={
                "title": "Forbidden",
                "detail": "Missing scope",
                "errors": [{"message": "bookmark.read required"}],
            },
        )

        assert read_error_details(response) == "Forbidden | Missing scope | bookmark.read required"

    def test_read_error_details_truncates_text(self):
        response = httpx.Response(500, text="x" * 1000)
        assert len(read_error_details(response)) == 240

    def test_read_error_details_falls_back_to_json(self):
        response = httpx.Response(500, json={"unexpected": True})
        assert read_error_details(response) == '{"unexpected": true}'

    def test_canonical_url(self):
        assert canonical_url("9", "alice") == "https://x.com/alice/status/9"
        assert canonical_url("9", None) == "https://x.com/i/web/status/9"

    def test_tweet_without_author(self):
        detail = tweet_to_detail({"id": 5, "text": "hi"}, {})

        assert detail.tweet_id == "5"
        assert detail.author_name == "unknown"
        assert detail.author_username is None
        assert detail.url == "https://x.com/i/web/status/5"
