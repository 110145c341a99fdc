"""Model provider configuration and selection.

Provider configs live in the document store with their API key encrypted
(AES-256-GCM). The selector turns enabled configs into an ordered candidate
list: ascending priority normally, reversed once 70% of the monthly budget
is spent so the cheaper fallback providers are tried first.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Literal

from pydantic import ValidationError as PydanticValidationError

from xauto.ai.budget import BudgetTracker
from xauto.core.clock import Clock, SystemClock
from xauto.core.crypto import EncryptedSecret, SecretCipher
from xauto.core.exceptions import ConfigurationError, ValidationError
from xauto.core.models import ProviderConfig
from xauto.store.document_store import ASCENDING, Collection

logger = logging.getLogger(__name__)

# Usage ratio at which the provider order flips
REVERSE_ORDER_RATIO = 0.7

_PROVIDER_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9_-]{0,63}$")

Task = Literal["mini", "digest"]


@dataclass
class ProviderCandidate:
    """A decrypted, ready-to-call provider."""

    provider: str
    base_url: str
    api_key: str
    mini_model: str
    digest_model: str
    priority: int

    def model_for(self, task: Task) -> str:
        return self.digest_model if task == "digest" else self.mini_model


class ProviderConfigService:
    """Admin operations over stored provider configs."""

    def __init__(
        self,
        collection: Collection,
        cipher: SecretCipher | None,
        clock: Clock | None = None,
    ):
        self.collection = collection
        self.cipher = cipher
        self.clock = clock or SystemClock()

    async def upsert_provider(
        self,
        *,
        provider: str,
        base_url: str,
        api_key: str,
        mini_model: str,
        digest_model: str,
        enabled: bool = True,
        priority: int = 100,
        monthly_budget: float = 100.0,
    ) -> dict[str, Any]:
        """Validate, encrypt and store a provider config.

        Raises:
            ValidationError: Malformed input (nothing is written).
            ConfigurationError: No encryption master key configured.
        """
        name = (provider or "").strip().lower()
        if not _PROVIDER_NAME_RE.match(name):
            raise ValidationError(f"Invalid provider name: {provider!r}")
        base_url = (base_url or "").strip()
        if not base_url.startswith(("http://", "https://")):
            raise ValidationError("base_url must be an http(s) URL")
        if not (api_key or "").strip():
            raise ValidationError("api_key must not be empty")
        if not (mini_model or "").strip() or not (digest_model or "").strip():
            raise ValidationError("mini_model and digest_model must not be empty")
        if isinstance(priority, bool) or not isinstance(priority, int) or priority < 0:
            raise ValidationError("priority must be a non-negative integer")
        if monthly_budget < 0:
            raise ValidationError("monthly_budget must be non-negative")

        if self.cipher is None:
            raise ConfigurationError("ENCRYPTION_MASTER_KEY is required to store API keys")
        secret = self.cipher.encrypt(api_key.strip())

        config = ProviderConfig(
            provider=name,
            base_url=base_url.rstrip("/"),
            encrypted_api_key=secret.ciphertext,
            key_iv=secret.iv,
            key_tag=secret.tag,
            mini_model=mini_model.strip(),
            digest_model=digest_model.strip(),
            enabled=enabled,
            priority=priority,
            monthly_budget=monthly_budget,
            updated_at=self.clock.now(),
        )
        await self.collection.upsert_by_key(config.model_dump(mode="json"))
        logger.info("Stored provider config %s (priority %d)", name, priority)
        return self._public_view(config)

    async def list_public_configs(self) -> list[dict[str, Any]]:
        docs = await self.collection.range_query(sort=[("priority", ASCENDING)])
        return [self._public_view(ProviderConfig.model_validate(doc)) for doc in docs]

    async def active_candidates(self) -> list[ProviderCandidate]:
        """Enabled providers, ascending priority, with decrypted keys.

        Configs that fail to parse or decrypt are logged and skipped.
        """
        docs = await self.collection.range_query(
            where=lambda d: bool(d.get("enabled", True)),
            sort=[("priority", ASCENDING)],
        )
        candidates: list[ProviderCandidate] = []
        for doc in docs:
            try:
                config = ProviderConfig.model_validate(doc)
            except PydanticValidationError as e:
                logger.warning("Skipping malformed provider config: %s", e)
                continue
            if self.cipher is None:
                logger.warning(
                    "Skipping provider %s: no encryption master key", config.provider
                )
                continue
            try:
                api_key = self.cipher.decrypt(
                    EncryptedSecret(
                        ciphertext=config.encrypted_api_key,
                        iv=config.key_iv,
                        tag=config.key_tag,
                    )
                )
            except ValueError as e:
                logger.warning("Skipping provider %s: %s", config.provider, e)
                continue
            candidates.append(
                ProviderCandidate(
                    provider=config.provider,
                    base_url=config.base_url,
                    api_key=api_key,
                    mini_model=config.mini_model,
                    digest_model=config.digest_model,
                    priority=config.priority,
                )
            )
        return candidates

    @staticmethod
    def _public_view(config: ProviderConfig) -> dict[str, Any]:
        data = config.model_dump(
            mode="json", exclude={"encrypted_api_key", "key_iv", "key_tag"}
        )
        data["has_api_key"] = bool(config.encrypted_api_key)
        return data


class ProviderSelector:
    """Orders provider candidates for a call, taking spend into account."""

    def __init__(self, configs: ProviderConfigService, budget: BudgetTracker):
        self.configs = configs
        self.budget = budget

    async def pick_providers(self, usage_ratio: float | None = None) -> list[ProviderCandidate]:
        if usage_ratio is None:
            usage_ratio = await self.budget.usage_ratio()
        candidates = await self.configs.active_candidates()
        if usage_ratio >= REVERSE_ORDER_RATIO:
            candidates = list(reversed(candidates))
        return candidates
