"""Object graph for one process: stores, X API, AI services and the job ledger."""

from dataclasses import dataclass
from datetime import timedelta

import httpx

from xauto.ai.budget import BudgetTracker
from xauto.ai.prompts import PromptConfig
from xauto.ai.providers import ProviderConfigService, ProviderSelector
from xauto.ai.service import AiService, ClientFactory
from xauto.core.clock import Clock, SystemClock
from xauto.core.config import Config
from xauto.core.crypto import SecretCipher
from xauto.pipeline.digest import DigestService
from xauto.pipeline.jobs import JobLedger
from xauto.pipeline.resummarize import ResummarizeOrchestrator
from xauto.pipeline.sync import SyncOrchestrator
from xauto.pipeline.sync_settings import SyncSettings
from xauto.sources.x_api_auth import XApiAuth
from xauto.sources.x_api_client import XApiClient
from xauto.store.document_store import DocumentStore
from xauto.store.state_store import StateStore

STATE_FILENAME = "state.json"


@dataclass
class App:
    config: Config
    store: DocumentStore
    kv: StateStore
    auth: XApiAuth
    x_client: XApiClient
    budget: BudgetTracker
    providers: ProviderConfigService
    prompts: PromptConfig
    ai: AiService
    settings: SyncSettings
    ledger: JobLedger


def build_app(
    config: Config,
    *,
    clock: Clock | None = None,
    client_factory: ClientFactory | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    in_memory: bool = False,
) -> App:
    """Wire every service from configuration.

    Args:
        config: Loaded configuration.
        clock: Clock shared by every time-dependent component.
        client_factory: Override for model client construction (tests).
        transport: httpx transport for the X API and OAuth calls (tests).
        in_memory: Keep all state in memory instead of under data_dir.
    """
    clock = clock or SystemClock()
    if in_memory:
        store = DocumentStore()
        kv = StateStore()
    else:
        store = DocumentStore(config.data_dir)
        kv = StateStore(config.data_dir / STATE_FILENAME)

    cipher = (
        SecretCipher(config.encryption_master_key)
        if config.encryption_master_key
        else None
    )

    auth = XApiAuth(
        kv,
        client_id=config.x_client_id,
        client_secret=config.x_client_secret,
        redirect_uri=config.x_redirect_uri,
        authorize_url=config.x_authorize_url,
        token_url=config.x_token_url,
        clock=clock,
        block_paid_external_apis=config.block_paid_external_apis,
        transport=transport,
    )
    x_client = XApiClient(config.x_api_base_url, transport=transport)

    budget = BudgetTracker(
        kv, monthly_ceiling=config.budget_monthly, tz=config.tz, clock=clock
    )
    providers = ProviderConfigService(store.providers, cipher, clock)
    prompts = PromptConfig(kv, clock)
    ai = AiService(
        ProviderSelector(providers, budget),
        budget,
        prompts,
        kv=kv,
        client_factory=client_factory,
        clock=clock,
    )

    settings = SyncSettings(kv, clock)
    ledger = JobLedger(
        store,
        kv,
        budget,
        sync=SyncOrchestrator(
            auth, x_client, store, ai, page_size=config.page_size, clock=clock
        ),
        digests=DigestService(store, ai, tz=config.tz, clock=clock),
        resummarize=ResummarizeOrchestrator(store, ai, clock=clock),
        settings=settings,
        auto_digest_cooldown=timedelta(minutes=config.auto_digest_cooldown_minutes),
        clock=clock,
    )

    return App(
        config=config,
        store=store,
        kv=kv,
        auth=auth,
        x_client=x_client,
        budget=budget,
        providers=providers,
        prompts=prompts,
        ai=ai,
        settings=settings,
        ledger=ledger,
    )
