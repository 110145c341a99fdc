"""Tests for the job ledger."""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from xauto.core.clock import parse_iso
from xauto.core.exceptions import ServiceUnavailable, ValidationError
from xauto.core.models import JobRun, JobStatus
from xauto.pipeline.digest import DigestRunResult, DigestService
from xauto.pipeline.jobs import (
    AUTO_DIGEST_KEY,
    JOB_DIGEST_DAILY,
    JOB_RESUMMARIZE,
    JOB_SYNC,
    STATUS_SKIPPED,
    JobLedger,
)
from xauto.pipeline.resummarize import ResummarizeFilter, ResummarizeOrchestrator
from xauto.pipeline.sync import SyncResult
from xauto.pipeline.sync_settings import SyncSettings

from conftest import NOW, SHANGHAI, seed_bookmark


@pytest.fixture
def sync() -> MagicMock:
    sync = MagicMock()
    sync.run = AsyncMock(return_value=SyncResult(user_id="42", total_inserted=0))
    return sync


@pytest.fixture
def settings(kv, clock) -> SyncSettings:
    return SyncSettings(kv, clock)


@pytest.fixture
def ledger(store, kv, budget, ai, sync, settings, clock) -> JobLedger:
    return JobLedger(
        store,
        kv,
        budget,
        sync=sync,
        digests=DigestService(store, ai, tz=SHANGHAI, clock=clock),
        resummarize=ResummarizeOrchestrator(store, ai, clock=clock),
        settings=settings,
        clock=clock,
    )


async def runs_by_name(store, name):
    return await store.job_runs.range_query(where=lambda d: d["job_name"] == name)


class TestExecuteJob:
    """Tests for ledger rows around a task."""

    @pytest.mark.asyncio
    async def test_success_row(self, ledger, store, clock):
        async def task():
            clock.advance(seconds=5)
            return {"answer": 42}

        outcome = await ledger.execute_job("custom", task)

        assert outcome.status == "SUCCESS"
        assert outcome.result == {"answer": 42}
        doc = await store.job_runs.find_by_key(outcome.run_id)
        assert doc["status"] == "SUCCESS"
        assert doc["metadata"] == {"answer": 42}
        assert parse_iso(doc["started_at"]) == NOW
        assert parse_iso(doc["finished_at"]) == NOW + timedelta(seconds=5)
        assert doc["error"] is None

    @pytest.mark.asyncio
    async def test_failure_row_and_reraise(self, ledger, store):
        async def task():
            raise ServiceUnavailable("X API down")

        with pytest.raises(ServiceUnavailable):
            await ledger.execute_job("custom", task)

        [doc] = await store.job_runs.range_query()
        assert doc["status"] == "FAILED"
        assert doc["error"] == "X API down"
        assert doc["finished_at"] is not None

    @pytest.mark.asyncio
    async def test_records_cost_delta(self, ledger, budget):
        await budget.record(1.0)

        async def task():
            await budget.record(0.25)
            return {}

        outcome = await ledger.execute_job("custom", task)

        [run] = [r for r in await ledger.list_job_runs() if r.run_id == outcome.run_id]
        assert run.cost_estimate == pytest.approx(0.25)

    @pytest.mark.asyncio
    async def test_running_row_exists_during_task(self, ledger, store):
        seen = {}

        async def task():
            [doc] = await store.job_runs.range_query()
            seen["status"] = doc["status"]
            return {}

        await ledger.execute_job("custom", task)

        assert seen["status"] == "RUNNING"

    @pytest.mark.asyncio
    async def test_expires_old_runs(self, ledger, store):
        old = JobRun(
            run_id="old",
            job_name=JOB_SYNC,
            status=JobStatus.SUCCESS,
            started_at=NOW - timedelta(days=91),
        )
        recent = JobRun(
            run_id="recent",
            job_name=JOB_SYNC,
            status=JobStatus.SUCCESS,
            started_at=NOW - timedelta(days=89),
        )
        await store.job_runs.insert(old.model_dump(mode="json"))
        await store.job_runs.insert(recent.model_dump(mode="json"))

        async def task():
            return {}

        await ledger.execute_job("custom", task)

        assert await store.job_runs.find_by_key("old") is None
        assert await store.job_runs.find_by_key("recent") is not None


class TestIncrementalSync:
    """Tests for the scheduled sync entry point."""

    @pytest.mark.asyncio
    async def test_first_run_executes(self, ledger, store, sync, settings):
        outcome = await ledger.run_incremental_sync()

        assert outcome.status == "SUCCESS"
        assert outcome.result["user_id"] == "42"
        assert "auto_digest" not in outcome.result
        sync.run.assert_awaited_once()
        assert await settings.last_run_at() == NOW
        assert len(await runs_by_name(store, JOB_SYNC)) == 1

    @pytest.mark.asyncio
    async def test_skipped_when_not_due(self, ledger, store, sync, settings, clock):
        await settings.mark_sync_run()
        clock.advance(hours=1)

        outcome = await ledger.run_incremental_sync()

        assert outcome.status == STATUS_SKIPPED
        assert outcome.run_id is None
        assert outcome.result == {"reason": "interval_not_reached", "sync_interval_hours": 24}
        sync.run.assert_not_awaited()
        assert await store.job_runs.count() == 0

    @pytest.mark.asyncio
    async def test_force_ignores_interval(self, ledger, sync, settings, clock):
        await settings.mark_sync_run()
        clock.advance(hours=1)

        outcome = await ledger.run_incremental_sync(force=True)

        assert outcome.status == "SUCCESS"
        sync.run.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_sync_failure_is_recorded(self, ledger, store, sync, settings):
        sync.run.side_effect = ServiceUnavailable("X API down")

        with pytest.raises(ServiceUnavailable):
            await ledger.run_incremental_sync()

        [doc] = await runs_by_name(store, JOB_SYNC)
        assert doc["status"] == "FAILED"
        assert await settings.last_run_at() is None

    @pytest.mark.asyncio
    async def test_new_items_trigger_daily_digest(self, ledger, store, sync, kv):
        sync.run.return_value = SyncResult(user_id="42", total_inserted=2)
        await seed_bookmark(store, "1")

        outcome = await ledger.run_incremental_sync()

        auto = outcome.result["auto_digest"]
        assert auto["status"] == "triggered"
        assert auto["period_key"] == "2026-03-10"
        assert auto["summary_count"] == 1
        [digest_run] = await runs_by_name(store, JOB_DIGEST_DAILY)
        assert digest_run["run_id"] == auto["run_id"]
        assert (await kv.get(AUTO_DIGEST_KEY))["at"] == NOW.isoformat()

    @pytest.mark.asyncio
    async def test_auto_digest_cooldown(self, ledger, store, sync, clock):
        sync.run.return_value = SyncResult(user_id="42", total_inserted=1)
        await ledger.run_incremental_sync(force=True)
        clock.advance(minutes=10)

        outcome = await ledger.run_incremental_sync(force=True)

        auto = outcome.result["auto_digest"]
        assert auto["status"] == "cooldown"
        assert parse_iso(auto["next_allowed_at"]) == NOW + timedelta(minutes=30)
        assert len(await runs_by_name(store, JOB_DIGEST_DAILY)) == 1

    @pytest.mark.asyncio
    async def test_auto_digest_failure_does_not_fail_sync(self, ledger, store, sync):
        sync.run.return_value = SyncResult(user_id="42", total_inserted=1)
        ledger.digests.generate_daily_digest = AsyncMock(side_effect=RuntimeError("boom"))

        outcome = await ledger.run_incremental_sync()

        assert outcome.status == "SUCCESS"
        assert outcome.result["auto_digest"] == {"status": "failed", "error": "boom"}
        [sync_run] = await runs_by_name(store, JOB_SYNC)
        assert sync_run["status"] == "SUCCESS"
        [digest_run] = await runs_by_name(store, JOB_DIGEST_DAILY)
        assert digest_run["status"] == "FAILED"


    @pytest.mark.asyncio
    async def test_auto_digest_cost_is_not_counted_twice(self, ledger, store, sync, budget):
        async def run_sync():
            await budget.record(0.25)
            return SyncResult(user_id="42", total_inserted=1)

        async def run_digest():
            await budget.record(0.5)
            return DigestRunResult(
                period="daily", period_key="2026-03-10", summary_count=1, provider="a", model="m"
            )

        sync.run.side_effect = run_sync
        ledger.digests.generate_daily_digest = AsyncMock(side_effect=run_digest)

        await ledger.run_incremental_sync()

        [sync_run] = await runs_by_name(store, JOB_SYNC)
        [digest_run] = await runs_by_name(store, JOB_DIGEST_DAILY)
        assert sync_run["cost_estimate"] == pytest.approx(0.25)
        assert digest_run["cost_estimate"] == pytest.approx(0.5)


class TestOtherJobs:
    @pytest.mark.asyncio
    async def test_weekly_digest(self, ledger):
        outcome = await ledger.generate_weekly_digest()

        assert outcome.job_name == "digest_weekly"
        assert outcome.result["period_key"] == "2026-W11"

    @pytest.mark.asyncio
    async def test_rerun_summaries(self, ledger, store):
        await seed_bookmark(store, "1")

        outcome = await ledger.rerun_summaries(ResummarizeFilter(limit=10))

        assert outcome.job_name == JOB_RESUMMARIZE
        assert outcome.result["updated"] == 1

    @pytest.mark.asyncio
    async def test_invalid_filter_creates_no_row(self, ledger, store):
        with pytest.raises(ValidationError):
            await ledger.rerun_summaries(ResummarizeFilter(limit=0))

        assert await store.job_runs.count() == 0

    @pytest.mark.asyncio
    async def test_run_job_by_name(self, ledger, sync, settings, clock):
        await settings.mark_sync_run()
        clock.advance(hours=1)

        outcome = await ledger.run_job("sync")

        assert outcome.status == "SUCCESS"
        sync.run.assert_awaited_once()
        assert (await ledger.run_job("digest_daily")).job_name == JOB_DIGEST_DAILY
        assert (await ledger.run_job("resummarize")).job_name == JOB_RESUMMARIZE

    @pytest.mark.asyncio
    async def test_run_job_unknown(self, ledger):
        with pytest.raises(ValidationError, match="Unknown job"):
            await ledger.run_job("cleanup")


class TestListJobRuns:
    @pytest.mark.asyncio
    async def test_most_recent_first_and_limit(self, ledger, clock):
        async def task():
            return {}

        for name in ["a", "b", "c"]:
            await ledger.execute_job(name, task)
            clock.advance(minutes=1)

        runs = await ledger.list_job_runs(limit=2)

        assert [r.job_name for r in runs] == ["c", "b"]
        assert all(isinstance(r, JobRun) for r in runs)

    @pytest.mark.asyncio
    async def test_limit_is_clamped(self, ledger):
        async def task():
            return {}

        await ledger.execute_job("a", task)

        assert len(await ledger.list_job_runs(limit=0)) == 1
        assert len(await ledger.list_job_runs(limit=1000)) == 1
