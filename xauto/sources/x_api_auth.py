"""X API OAuth 2.0 PKCE authentication and token lifecycle.

Flow:
1. start_authorization() stores a PKCE verifier under a random state and
   returns the authorize URL for the user to open.
2. X redirects back with code + state; handle_callback() exchanges them for
   an access/refresh token pair and resolves the user id.
3. ensure_valid_token() is called before every sync. It refreshes an expired
   access token when a refresh token is available.

The token bundle lives in the key/value store under `oauth:tokens` and is
always written as a whole, never field by field.
"""

import base64
import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

import httpx

from xauto.core.clock import Clock, SystemClock, parse_iso, utc_iso
from xauto.core.exceptions import ServiceUnavailable, Unauthorized, ValidationError
from xauto.core.http_client import OAUTH_TIMEOUT, create_client
from xauto.store.state_store import KeyValueStore

if TYPE_CHECKING:
    from xauto.sources.x_api_client import XApiClient

logger = logging.getLogger(__name__)

TOKENS_KEY = "oauth:tokens"
STATE_KEY_PREFIX = "oauth:state:"

SCOPES = ["bookmark.read", "tweet.read", "users.read", "offline.access"]

# Pending authorizations older than this are rejected
STATE_TTL = timedelta(minutes=10)

DEFAULT_EXPIRES_IN = 7200


@dataclass
class TokenBundle:
    """Stored OAuth credentials for the connected X account."""

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    user_id: str | None = None
    scope: str = ""
    updated_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def to_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": utc_iso(self.expires_at) if self.expires_at else None,
            "user_id": self.user_id,
            "scope": self.scope,
            "updated_at": utc_iso(self.updated_at) if self.updated_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TokenBundle":
        return cls(
            access_token=data.get("access_token") or "",
            refresh_token=data.get("refresh_token") or None,
            expires_at=parse_iso(data.get("expires_at")),
            user_id=data.get("user_id") or None,
            scope=data.get("scope", ""),
            updated_at=parse_iso(data.get("updated_at")),
        )


def generate_pkce_pair() -> tuple[str, str]:
    """Generate a PKCE code_verifier and S256 code_challenge pair."""
    code_verifier = secrets.token_urlsafe(96)
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    code_challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return code_verifier, code_challenge


class XApiAuth:
    """OAuth 2.0 PKCE manager backed by the key/value store."""

    def __init__(
        self,
        kv: KeyValueStore,
        *,
        client_id: str,
        client_secret: str | None = None,
        redirect_uri: str = "http://localhost:8766/oauth/callback",
        authorize_url: str = "https://twitter.com/i/oauth2/authorize",
        token_url: str = "https://api.x.com/2/oauth2/token",
        clock: Clock | None = None,
        block_paid_external_apis: bool = False,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.kv = kv
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.authorize_url = authorize_url
        self.token_url = token_url
        self.clock = clock or SystemClock()
        self.block_paid_external_apis = block_paid_external_apis
        self._transport = transport

    def _guard_network(self) -> None:
        if self.block_paid_external_apis:
            raise ServiceUnavailable("Paid external APIs are blocked by configuration")
        if not self.client_id:
            raise ServiceUnavailable("X_CLIENT_ID is not configured")

    async def start_authorization(self) -> tuple[str, str]:
        """Create a pending PKCE authorization.

        Returns:
            Tuple of (authorization_url, state).
        """
        self._guard_network()
        code_verifier, code_challenge = generate_pkce_pair()
        state = secrets.token_urlsafe(32)

        await self.kv.replace(
            f"{STATE_KEY_PREFIX}{state}",
            {"code_verifier": code_verifier, "created_at": utc_iso(self.clock.now())},
        )

        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": " ".join(SCOPES),
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
        }
        return f"{self.authorize_url}?{urlencode(params)}", state

    async def handle_callback(
        self, code: str, state: str, x_client: "XApiClient"
    ) -> TokenBundle:
        """Finish an authorization started by start_authorization().

        Raises:
            ValidationError: Unknown or expired state, or missing code.
            Unauthorized: The token exchange was rejected.
        """
        self._guard_network()
        if not code or not state:
            raise ValidationError("Missing code or state")

        state_key = f"{STATE_KEY_PREFIX}{state}"
        pending = await self.kv.get(state_key)
        await self.kv.delete(state_key)
        if not pending:
            raise ValidationError("Unknown OAuth state")

        created_at = parse_iso(pending.get("created_at"))
        if created_at is None or self.clock.now() - created_at > STATE_TTL:
            raise ValidationError("OAuth state expired")

        data = await self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.redirect_uri,
                "code_verifier": pending["code_verifier"],
            }
        )
        bundle = self._bundle_from_response(data)
        bundle.user_id = await x_client.fetch_current_user(bundle.access_token)

        await self.save_bundle(bundle)
        logger.info("Connected X account %s", bundle.user_id)
        return bundle

    async def load_bundle(self) -> TokenBundle | None:
        data = await self.kv.get(TOKENS_KEY)
        if not data:
            return None
        return TokenBundle.from_dict(data)

    async def save_bundle(self, bundle: TokenBundle) -> None:
        bundle.updated_at = self.clock.now()
        await self.kv.replace(TOKENS_KEY, bundle.to_dict())

    async def refresh(self, bundle: TokenBundle) -> TokenBundle:
        """Exchange the refresh token for a new pair and persist it.

        Raises:
            Unauthorized: If the bundle has no refresh token or X rejects it.
        """
        if not bundle.refresh_token:
            raise Unauthorized("No refresh token available; reconnect the X account")
        self._guard_network()

        data = await self._token_request(
            {
                "grant_type": "refresh_token",
                "refresh_token": bundle.refresh_token,
            }
        )
        new_bundle = self._bundle_from_response(data, previous=bundle)
        await self.save_bundle(new_bundle)
        logger.info("Refreshed X access token")
        return new_bundle

    async def ensure_valid_token(self) -> TokenBundle:
        """Return a bundle whose access token is usable right now.

        Raises:
            Unauthorized: No account connected, or the refresh failed.
        """
        bundle = await self.load_bundle()
        if bundle is None or not bundle.access_token:
            raise Unauthorized("X account is not connected")

        if bundle.is_expired(self.clock.now()) and bundle.refresh_token:
            logger.info("Access token expired, refreshing")
            bundle = await self.refresh(bundle)

        return bundle

    async def ensure_user_id(self, bundle: TokenBundle, x_client: "XApiClient") -> str:
        """Resolve the external user id once and cache it in the bundle."""
        if bundle.user_id:
            return bundle.user_id
        bundle.user_id = await x_client.fetch_current_user(bundle.access_token)
        await self.save_bundle(bundle)
        return bundle.user_id

    async def _token_request(self, form: dict[str, str]) -> dict[str, Any]:
        headers = {"Content-Type": "application/x-www-form-urlencoded"}
        auth: httpx.BasicAuth | None = None
        if self.client_secret:
            auth = httpx.BasicAuth(self.client_id, self.client_secret)
        else:
            form = {**form, "client_id": self.client_id}

        try:
            async with create_client(
                timeout=OAUTH_TIMEOUT, transport=self._transport
            ) as client:
                response = await client.post(
                    self.token_url, data=form, headers=headers, auth=auth
                )
        except httpx.HTTPError as e:
            logger.warning("Token request failed: %r", e)
            raise Unauthorized(f"X token request failed: {e!r}") from e

        if response.status_code >= 400:
            logger.warning(
                "Token request rejected (status=%d): %s",
                response.status_code,
                response.text[:240],
            )
            raise Unauthorized(
                f"X token request rejected (status={response.status_code})"
            )

        try:
            data = response.json()
        except ValueError as e:
            raise Unauthorized("X token response was not JSON") from e
        if not isinstance(data, dict) or not data.get("access_token"):
            raise Unauthorized("X token response has no access_token")
        return data

    def _bundle_from_response(
        self, data: dict[str, Any], previous: TokenBundle | None = None
    ) -> TokenBundle:
        expires_in = data.get("expires_in", DEFAULT_EXPIRES_IN)
        try:
            expires_in = int(expires_in)
        except (TypeError, ValueError):
            expires_in = DEFAULT_EXPIRES_IN

        return TokenBundle(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token")
            or (previous.refresh_token if previous else None),
            expires_at=self.clock.now() + timedelta(seconds=expires_in),
            user_id=previous.user_id if previous else None,
            scope=data.get("scope", previous.scope if previous else ""),
        )
