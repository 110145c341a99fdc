"""Job ledger: every sync, digest and resummarize run is recorded as a JobRun.

A run row is created RUNNING and receives exactly one terminal update,
SUCCESS with the task result as metadata or FAILED with the error message.
Failures are re-raised to the caller after the row is updated.
"""

import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from typing import Any

from xauto.ai.budget import BudgetTracker
from xauto.core.clock import Clock, SystemClock, parse_iso, utc_iso
from xauto.core.exceptions import ValidationError
from xauto.core.logger import get_job_logger
from xauto.core.models import JobRun, JobStatus
from xauto.pipeline.digest import DigestService
from xauto.pipeline.resummarize import ResummarizeFilter, ResummarizeOrchestrator
from xauto.pipeline.sync import SyncOrchestrator
from xauto.pipeline.sync_settings import SyncSettings
from xauto.store.document_store import DESCENDING, DocumentStore
from xauto.store.state_store import KeyValueStore

logger = logging.getLogger(__name__)

JOB_RETENTION = timedelta(days=90)
AUTO_DIGEST_KEY = "digest:auto_daily:last_triggered_at"
DEFAULT_AUTO_DIGEST_COOLDOWN = timedelta(minutes=30)

DEFAULT_LIST_LIMIT = 30
MAX_LIST_LIMIT = 100

STATUS_SKIPPED = "SKIPPED"

JOB_SYNC = "sync"
JOB_DIGEST_DAILY = "digest_daily"
JOB_DIGEST_WEEKLY = "digest_weekly"
JOB_RESUMMARIZE = "resummarize"
JOB_NAMES = (JOB_SYNC, JOB_DIGEST_DAILY, JOB_DIGEST_WEEKLY, JOB_RESUMMARIZE)

Task = Callable[[], Awaitable[dict[str, Any]]]


@dataclass
class JobOutcome:
    job_name: str
    status: str
    run_id: str | None = None
    result: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class JobLedger:
    """Runs jobs and records them in the job_runs collection."""

    def __init__(
        self,
        store: DocumentStore,
        kv: KeyValueStore,
        budget: BudgetTracker,
        *,
        sync: SyncOrchestrator,
        digests: DigestService,
        resummarize: ResummarizeOrchestrator,
        settings: SyncSettings,
        auto_digest_cooldown: timedelta = DEFAULT_AUTO_DIGEST_COOLDOWN,
        clock: Clock | None = None,
    ):
        self.store = store
        self.kv = kv
        self.budget = budget
        self.sync = sync
        self.digests = digests
        self.resummarize = resummarize
        self.settings = settings
        self.auto_digest_cooldown = auto_digest_cooldown
        self.clock = clock or SystemClock()
        # Spend of runs started inside the task of each active run
        self._nested_costs: list[float] = []

    async def execute_job(self, name: str, task: Task) -> JobOutcome:
        """Run `task` under a ledger row.

        Raises:
            Whatever the task raised, after the row is marked FAILED.
        """
        await self.expire_old_runs()

        run = JobRun(
            run_id=uuid.uuid4().hex,
            job_name=name,
            status=JobStatus.RUNNING,
            started_at=self.clock.now(),
        )
        await self.store.job_runs.insert(run.model_dump(mode="json"))
        job_logger = get_job_logger(__name__, name, run.run_id)
        job_logger.info("Job started")

        usage_before = await self.budget.get_usage()
        self._nested_costs.append(0.0)
        try:
            result = await task()
        except Exception as e:
            await self._finish(
                run,
                JobStatus.FAILED,
                usage_before,
                error=str(e) or type(e).__name__,
            )
            job_logger.error("Job failed: %s: %s", type(e).__name__, e)
            raise

        await self._finish(run, JobStatus.SUCCESS, usage_before, metadata=result)
        job_logger.info("Job succeeded")
        return JobOutcome(job_name=name, status=JobStatus.SUCCESS.value, run_id=run.run_id, result=result)

    async def _finish(
        self,
        run: JobRun,
        status: JobStatus,
        usage_before: float,
        *,
        metadata: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> None:
        nested = self._nested_costs.pop()
        spent = max(0.0, await self.budget.get_usage() - usage_before)
        if self._nested_costs:
            self._nested_costs[-1] += spent
        cost = max(0.0, spent - nested)
        update: dict[str, Any] = {
            "run_id": run.run_id,
            "status": status.value,
            "finished_at": utc_iso(self.clock.now()),
            "cost_estimate": round(cost, 6),
        }
        if metadata is not None:
            update["metadata"] = metadata
        if error is not None:
            update["error"] = error
        await self.store.job_runs.upsert_by_key(update)

    async def expire_old_runs(self) -> int:
        cutoff = self.clock.now() - JOB_RETENTION

        def expired(doc: dict[str, Any]) -> bool:
            started_at = parse_iso(doc.get("started_at"))
            return started_at is not None and started_at < cutoff

        removed = await self.store.job_runs.delete_where(expired)
        if removed:
            logger.info("Expired %d job runs older than %d days", removed, JOB_RETENTION.days)
        return removed

    async def run_incremental_sync(self, force: bool = False) -> JobOutcome:
        """Run a sync unless the interval policy says it is not due.

        A skipped sync creates no ledger row. When new items were inserted, a
        daily digest is attempted; its outcome is reported under
        `auto_digest` and never fails the sync.
        """
        if not force:
            should_run, reason, settings = await self.settings.should_run_now()
            if not should_run:
                logger.info("Sync skipped: %s", reason)
                return JobOutcome(
                    job_name=JOB_SYNC,
                    status=STATUS_SKIPPED,
                    result={
                        "reason": reason,
                        "sync_interval_hours": settings.sync_interval_hours,
                    },
                )

        async def task() -> dict[str, Any]:
            result = (await self.sync.run()).to_dict()
            await self.settings.mark_sync_run()
            if result["total_inserted"] > 0:
                result["auto_digest"] = await self._auto_daily_digest()
            return result

        return await self.execute_job(JOB_SYNC, task)

    async def _auto_daily_digest(self) -> dict[str, Any]:
        now = self.clock.now()
        marker = await self.kv.get(AUTO_DIGEST_KEY) or {}
        last = parse_iso(marker.get("at"))
        if last is not None and now - last < self.auto_digest_cooldown:
            next_allowed = last + self.auto_digest_cooldown
            logger.info("Auto digest in cooldown until %s", utc_iso(next_allowed))
            return {"status": "cooldown", "next_allowed_at": utc_iso(next_allowed)}

        await self.kv.replace(AUTO_DIGEST_KEY, {"at": utc_iso(now)})
        try:
            outcome = await self.generate_daily_digest()
        except Exception as e:
            logger.warning("Auto digest failed: %s", e)
            return {"status": "failed", "error": str(e) or type(e).__name__}
        return {"status": "triggered", "run_id": outcome.run_id, **outcome.result}

    async def generate_daily_digest(self) -> JobOutcome:
        async def task() -> dict[str, Any]:
            return (await self.digests.generate_daily_digest()).to_dict()

        return await self.execute_job(JOB_DIGEST_DAILY, task)

    async def generate_weekly_digest(self) -> JobOutcome:
        async def task() -> dict[str, Any]:
            return (await self.digests.generate_weekly_digest()).to_dict()

        return await self.execute_job(JOB_DIGEST_WEEKLY, task)

    async def rerun_summaries(self, filter: ResummarizeFilter | None = None) -> JobOutcome:
        """Resummarize stored items.

        Raises:
            ValidationError: Invalid filter (no ledger row is created).
        """
        filter = filter or ResummarizeFilter()
        filter.validate()

        async def task() -> dict[str, Any]:
            return (await self.resummarize.run(filter)).to_dict()

        return await self.execute_job(JOB_RESUMMARIZE, task)

    async def list_job_runs(self, limit: int = DEFAULT_LIST_LIMIT) -> list[JobRun]:
        limit = max(1, min(MAX_LIST_LIMIT, limit))
        docs = await self.store.job_runs.range_query(
            sort=[("started_at", DESCENDING)], limit=limit
        )
        return [JobRun.model_validate(doc) for doc in docs]

    async def run_job(self, name: str) -> JobOutcome:
        """Run a job by name with default arguments.

        Raises:
            ValidationError: Unknown job name.
        """
        if name == JOB_SYNC:
            return await self.run_incremental_sync(force=True)
        if name == JOB_DIGEST_DAILY:
            return await self.generate_daily_digest()
        if name == JOB_DIGEST_WEEKLY:
            return await self.generate_weekly_digest()
        if name == JOB_RESUMMARIZE:
            return await self.rerun_summaries()
        raise ValidationError(
            f"Unknown job '{name}'. Must be one of: {', '.join(JOB_NAMES)}"
        )
