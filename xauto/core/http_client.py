"""HTTP client factory for X API and OAuth requests.

Configures httpx clients with explicit timeouts and a user agent. Every
network call the engine makes goes through a client created here so the
timeout budget is always set.
"""

import httpx

# Per-endpoint read budgets (seconds)
USER_LOOKUP_TIMEOUT = 15.0
BOOKMARKS_TIMEOUT = 20.0
OAUTH_TIMEOUT = 15.0

DEFAULT_CONNECT_TIMEOUT = 10.0

USER_AGENT = "xauto-sync/0.1"


def get_timeout(read: float) -> httpx.Timeout:
    """Build a timeout with the given read budget and a capped connect phase."""
    return httpx.Timeout(read, connect=min(DEFAULT_CONNECT_TIMEOUT, read))


def get_headers(access_token: str | None = None) -> dict[str, str]:
    """Default headers; adds a bearer Authorization header when a token is given."""
    headers = {
        "User-Agent": USER_AGENT,
        "Accept": "application/json",
    }
    if access_token:
        headers["Authorization"] = f"Bearer {access_token}"
    return headers


def create_client(
    *,
    timeout: float,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """Create an async HTTP client with the given read timeout.

    Args:
        timeout: Read timeout in seconds.
        transport: Optional transport override (httpx.MockTransport in tests).

    Example:
        async with create_client(timeout=BOOKMARKS_TIMEOUT) as client:
            response = await client.get(url, headers=get_headers(token))
    """
    return httpx.AsyncClient(
        timeout=get_timeout(timeout),
        headers={"User-Agent": USER_AGENT},
        transport=transport,
    )
