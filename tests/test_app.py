"""End-to-end tests over the wired application."""

import json

import httpx
import pytest

from xauto.app import build_app

from conftest import connect_account, seed_bookmark
from test_providers import add_provider


class FakeXApi:
    """MockTransport handler standing in for the X API v2."""

    def __init__(self, bookmark_ids):
        self.bookmark_ids = bookmark_ids
        self.paths: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.paths.append(request.url.path)
        if request.url.path.endswith("/bookmarks"):
            return httpx.Response(
                200, json={"data": [{"id": i} for i in self.bookmark_ids], "meta": {}}
            )
        if request.url.path == "/2/tweets":
            ids = request.url.params["ids"].split(",")
            return httpx.Response(
                200,
                json={
                    "data": [
                        {"id": i, "text": f"post {i} on #LLM ops", "author_id": "u1"}
                        for i in ids
                    ],
                    "includes": {"users": [{"id": "u1", "name": "Alice", "username": "alice"}]},
                },
            )
        return httpx.Response(404, json={"title": "Not Found"})


class TestBuildApp:
    def test_wires_services(self, config, clock):
        app = build_app(config, clock=clock, in_memory=True)

        assert app.providers.cipher is not None
        assert app.ledger.sync.auth is app.auth
        assert app.budget.tz.key == "Asia/Shanghai"

    def test_no_master_key_means_no_cipher(self, config, clock):
        config.encryption_master_key = None

        app = build_app(config, clock=clock, in_memory=True)

        assert app.providers.cipher is None


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_daily_digest_job(self, config, clock, scripted_models):
        app = build_app(
            config, clock=clock, client_factory=scripted_models.factory, in_memory=True
        )
        await add_provider(app.providers, "a", 10)
        await seed_bookmark(app.store, "1")
        scripted_models.script(
            "a",
            json.dumps(
                {
                    "top_themes": ["LLM 运维"],
                    "top_items": [{"tweet_id": "1", "reason": "实用", "next_step": "试试"}],
                    "risks": [],
                    "tomorrow_actions": ["整理笔记"],
                },
                ensure_ascii=False,
            ),
        )

        outcome = await app.ledger.run_job("digest_daily")

        assert outcome.status == "SUCCESS"
        assert outcome.result["provider"] == "a"
        report = await app.store.digests.find_by_key("daily", "2026-03-10")
        assert report["top_themes"] == ["LLM 运维"]
        [run] = await app.ledger.list_job_runs()
        assert run.cost_estimate > 0

    @pytest.mark.asyncio
    async def test_sync_job_over_http(self, config, clock, scripted_models, summary_payload):
        x_api = FakeXApi(["3", "2", "1"])
        app = build_app(
            config,
            clock=clock,
            client_factory=scripted_models.factory,
            transport=httpx.MockTransport(x_api),
            in_memory=True,
        )
        await connect_account(app.kv)
        await add_provider(app.providers, "a", 10)
        payload = json.dumps(summary_payload, ensure_ascii=False)
        scripted_models.script("a", payload, "# 1", payload, "# 2", payload, "# 3")

        outcome = await app.ledger.run_incremental_sync()

        assert outcome.status == "SUCCESS"
        assert outcome.result["total_inserted"] == 3
        assert outcome.result["summarized"] == 3
        assert outcome.result["auto_digest"]["status"] == "triggered"
        assert x_api.paths == ["/2/users/42/bookmarks", "/2/tweets"]
        summary = await app.store.summaries.find_by_key("3", 1)
        assert summary["provider"] == "a"
        assert summary["markdown"] == "# 1\n"

    @pytest.mark.asyncio
    async def test_state_persists_under_data_dir(self, config, clock):
        app = build_app(config, clock=clock)
        await app.settings.update_settings(6)
        await add_provider(app.providers, "a", 10)

        reloaded = build_app(config, clock=clock)

        assert (await reloaded.settings.get_settings()).sync_interval_hours == 6
        assert [c.provider for c in await reloaded.providers.active_candidates()] == ["a"]
        assert (config.data_dir / "state.json").exists()
        assert (config.data_dir / "provider_configs.json").exists()
