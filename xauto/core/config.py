"""Configuration Manager for the X bookmark sync engine.

Centralized configuration loading from environment variables with sensible defaults.
All configuration is validated at load time to fail fast on invalid values.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from xauto.core.exceptions import ConfigurationError

DEFAULT_AUTHORIZE_URL = "https://twitter.com/i/oauth2/authorize"
DEFAULT_TOKEN_URL = "https://api.x.com/2/oauth2/token"
DEFAULT_API_BASE_URL = "https://api.x.com/2"


@dataclass
class Config:
    """Application configuration loaded from environment variables.

    X API:
        x_client_id: OAuth 2.0 client id (required for authorize/refresh).
        x_client_secret: Optional secret; when set, token calls use Basic auth.
        x_redirect_uri: Redirect URI registered in the X developer portal.
        x_authorize_url / x_token_url / x_api_base_url: Endpoint overrides.

    Runtime:
        data_dir: Directory holding the JSON-backed stores.
        timezone: IANA zone used for budget months and digest periods.
        budget_monthly: Monthly model spend ceiling (CNY).
        encryption_master_key: Base64 32-byte key for provider credentials.
        block_paid_external_apis: Refuse OAuth network calls when set.
        page_size: Bookmarks requested per page (1-100).
        auto_digest_cooldown_minutes: Minimum gap between auto digests.
        poll_interval: Daemon wake-up interval in seconds.
        log_level: Logging verbosity (DEBUG, INFO, WARNING, ERROR).
    """

    x_client_id: str = ""
    x_client_secret: str | None = None
    x_redirect_uri: str = "http://localhost:8766/oauth/callback"
    x_authorize_url: str = DEFAULT_AUTHORIZE_URL
    x_token_url: str = DEFAULT_TOKEN_URL
    x_api_base_url: str = DEFAULT_API_BASE_URL

    data_dir: Path = field(default_factory=lambda: Path("data"))
    timezone: str = "Asia/Shanghai"
    budget_monthly: float = 100.0
    encryption_master_key: str | None = None
    block_paid_external_apis: bool = False
    page_size: int = 100
    auto_digest_cooldown_minutes: int = 30
    poll_interval: int = 300
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        if isinstance(self.data_dir, str):
            self.data_dir = Path(self.data_dir)

        valid_log_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if self.log_level.upper() not in valid_log_levels:
            raise ConfigurationError(
                f"Invalid LOG_LEVEL '{self.log_level}'. "
                f"Must be one of: {', '.join(sorted(valid_log_levels))}"
            )
        self.log_level = self.log_level.upper()

        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            raise ConfigurationError(f"Unknown TIMEZONE '{self.timezone}'")

        if self.budget_monthly < 0:
            raise ConfigurationError("BUDGET_CNY_MONTHLY must be non-negative")
        if not 1 <= self.page_size <= 100:
            raise ConfigurationError("XAUTO_PAGE_SIZE must be between 1 and 100")
        if self.auto_digest_cooldown_minutes < 0:
            raise ConfigurationError(
                "XAUTO_AUTO_DIGEST_COOLDOWN_MINUTES must be non-negative"
            )
        if self.poll_interval < 1:
            raise ConfigurationError("XAUTO_POLL_INTERVAL must be at least 1")

        self.x_api_base_url = self.x_api_base_url.rstrip("/")

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


def load_config() -> Config:
    """Load configuration from environment variables.

    Returns:
        Config object with all settings loaded.

    Raises:
        ConfigurationError: If values are invalid.
    """

    def get_float(key: str, default: float) -> float:
        """Parse float from env var with default."""
        value = os.environ.get(key)
        if value is None:
            return default
        try:
            return float(value)
        except ValueError:
            raise ConfigurationError(f"{key} must be a valid number, got '{value}'")

    def get_int(key: str, default: int) -> int:
        """Parse int from env var with default."""
        value = os.environ.get(key)
        if value is None:
            return default
        try:
            return int(value)
        except ValueError:
            raise ConfigurationError(f"{key} must be a valid integer, got '{value}'")

    def get_bool(key: str, default: bool) -> bool:
        value = os.environ.get(key)
        if value is None:
            return default
        return value.strip().lower() in {"1", "true", "yes", "on"}

    return Config(
        x_client_id=os.environ.get("X_CLIENT_ID", ""),
        x_client_secret=os.environ.get("X_CLIENT_SECRET") or None,
        x_redirect_uri=os.environ.get(
            "X_REDIRECT_URI", "http://localhost:8766/oauth/callback"
        ),
        x_authorize_url=os.environ.get("X_OAUTH_AUTHORIZE_URL", DEFAULT_AUTHORIZE_URL),
        x_token_url=os.environ.get("X_OAUTH_TOKEN_URL", DEFAULT_TOKEN_URL),
        x_api_base_url=os.environ.get("X_API_BASE_URL", DEFAULT_API_BASE_URL),
        data_dir=Path(os.environ.get("XAUTO_DATA_DIR", "data")),
        timezone=os.environ.get("TIMEZONE", "Asia/Shanghai"),
        budget_monthly=get_float("BUDGET_CNY_MONTHLY", 100.0),
        encryption_master_key=os.environ.get("ENCRYPTION_MASTER_KEY") or None,
        block_paid_external_apis=get_bool("BLOCK_PAID_EXTERNAL_APIS", False),
        page_size=get_int("XAUTO_PAGE_SIZE", 100),
        auto_digest_cooldown_minutes=get_int("XAUTO_AUTO_DIGEST_COOLDOWN_MINUTES", 30),
        poll_interval=get_int("XAUTO_POLL_INTERVAL", 300),
        log_level=os.environ.get("LOG_LEVEL", "INFO"),
    )


# Singleton instance for convenience
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance.

    Loads configuration on first call and caches it for subsequent calls.
    Use reset_config() to force a reload.
    """
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """Reset the global configuration instance.

    Forces the next get_config() call to reload from environment variables.
    Useful for testing.
    """
    global _config
    _config = None
