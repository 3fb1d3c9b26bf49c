"""Tests for queue backends and arq task wiring."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from arq import Retry

from catalog_sync.core.enums import Stage
from catalog_sync.core.schema import SearchJob, SemanticJob
from catalog_sync.ingestion import jobs as jobs_module
from catalog_sync.ingestion.jobs import WORKER_SETTINGS, nightly_cron_jobs, run_nightly_sync, run_search_job
from catalog_sync.ingestion.queues import (
    ArqQueueBackend,
    InMemoryQueueBackend,
    function_name,
    job_id_for,
    queue_name,
)
from catalog_sync.ingestion.registry import StagePolicy, SupplierRegistry
from catalog_sync.ingestion.runner import JobOutcome, OutcomeKind, SyncStartResult


class FakeRunner:
    """Runner that fails each job a fixed number of times before succeeding."""

    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.calls: list[tuple[Stage, str, int]] = []

    async def execute(self, stage: Stage, data: dict, attempt: int = 1) -> JobOutcome:
        self.calls.append((stage, data["entity_id"], attempt))
        if attempt <= self.failures:
            return JobOutcome(OutcomeKind.RETRY, stage, retry_in=0.0)
        return JobOutcome(OutcomeKind.SUCCEEDED, stage)


class TestNaming:
    """Tests for queue and job naming."""

    def test_names(self) -> None:
        assert queue_name(Stage.ASSETS) == "catalog_sync:assets"
        assert function_name(Stage.ASSETS) == "run_assets_job"

    def test_job_id(self) -> None:
        assert job_id_for(SearchJob(session_id="s1", entity_id="p1")) == "s1:search:upsert:product:p1"
        assert job_id_for(SemanticJob(source_id="p1")) == "adhoc:semantic:upsert:p1"

    def test_worker_settings_use_stage_queues(self) -> None:
        for stage, settings in WORKER_SETTINGS.items():
            assert settings.queue_name == queue_name(stage)
            assert settings.functions[0].__name__ == function_name(stage)


class TestArqQueueBackend:
    """Tests for ArqQueueBackend."""

    @pytest.mark.asyncio
    async def test_enqueue(self) -> None:
        redis = MagicMock()
        redis.enqueue_job = AsyncMock(return_value=MagicMock())
        job = SearchJob(session_id="s1", entity_id="p1")

        assert await ArqQueueBackend(redis).enqueue(Stage.SEARCH, job) is True

        args, kwargs = redis.enqueue_job.call_args
        assert args[0] == "run_search_job"
        assert args[1]["entity_id"] == "p1"
        assert kwargs == {"_job_id": job_id_for(job), "_queue_name": "catalog_sync:search"}

    @pytest.mark.asyncio
    async def test_duplicate_job(self) -> None:
        redis = MagicMock()
        redis.enqueue_job = AsyncMock(return_value=None)
        assert await ArqQueueBackend(redis).enqueue(Stage.SEARCH, SearchJob(entity_id="p1")) is False


class TestInMemoryQueueBackend:
    """Tests for InMemoryQueueBackend."""

    @pytest.mark.asyncio
    async def test_deduplicates(self) -> None:
        queue = InMemoryQueueBackend()
        job = SearchJob(session_id="s1", entity_id="p1")

        assert await queue.enqueue(Stage.SEARCH, job) is True
        assert await queue.enqueue(Stage.SEARCH, job) is False
        assert queue.enqueued[Stage.SEARCH] == 1
        assert queue.outstanding == 1

    @pytest.mark.asyncio
    async def test_runs_until_idle_with_retries(self) -> None:
        policies = {stage: StagePolicy(concurrency=2) for stage in Stage}
        queue = InMemoryQueueBackend(policies)
        runner = FakeRunner(failures=2)
        for product_id in ("p1", "p2"):
            await queue.enqueue(Stage.SEARCH, SearchJob(session_id="s1", entity_id=product_id))

        await queue.run_until_idle(runner)

        assert queue.outstanding == 0
        attempts = sorted((entity_id, attempt) for _, entity_id, attempt in runner.calls)
        assert attempts == [("p1", 1), ("p1", 2), ("p1", 3), ("p2", 1), ("p2", 2), ("p2", 3)]


class TestArqTasks:
    """Tests for the arq task functions."""

    @pytest.mark.asyncio
    async def test_retry_outcome_raises_arq_retry(self) -> None:
        runner = MagicMock()
        runner.execute = AsyncMock(return_value=JobOutcome(OutcomeKind.RETRY, Stage.SEARCH, retry_in=5.0))

        with pytest.raises(Retry):
            await run_search_job({"runner": runner, "job_try": 2}, {"entity_id": "p1"})
        runner.execute.assert_awaited_once_with(Stage.SEARCH, {"entity_id": "p1"}, attempt=2)

    @pytest.mark.asyncio
    async def test_other_outcomes_are_returned(self) -> None:
        runner = MagicMock()
        runner.execute = AsyncMock(return_value=JobOutcome(OutcomeKind.FAILED, Stage.SEARCH, error="bad"))

        result = await run_search_job({"runner": runner}, {"entity_id": "p1"})

        assert result["kind"] == "failed"
        assert result["error"] == "bad"


class TestNightlySync:
    """Tests for the nightly cron job on the diff worker."""

    def test_diff_worker_schedules_nightly_sync(self) -> None:
        cron_jobs = WORKER_SETTINGS[Stage.DIFF].cron_jobs
        assert [job.coroutine for job in cron_jobs] == [run_nightly_sync]
        assert cron_jobs[0].minute == 0
        for stage in (Stage.MATERIALIZE, Stage.ASSETS, Stage.SEARCH, Stage.SEMANTIC):
            assert not getattr(WORKER_SETTINGS[stage], "cron_jobs", None)

    def test_schedule_follows_config(self, monkeypatch) -> None:
        registry = SupplierRegistry()
        registry.global_config.nightly_sync_hour = 4
        monkeypatch.setattr(jobs_module, "get_default_registry", lambda: registry)
        assert nightly_cron_jobs()[0].hour == 4

        registry.global_config.nightly_sync_hour = None
        assert nightly_cron_jobs() == []

    @pytest.mark.asyncio
    async def test_nightly_task_starts_scheduled_syncs(self, monkeypatch) -> None:
        start = AsyncMock(return_value=[SyncStartResult("A113", started=True, session_id="s1")])
        monkeypatch.setattr(jobs_module, "start_scheduled_syncs", start)
        runner = MagicMock()

        result = await run_nightly_sync({"runner": runner})

        start.assert_awaited_once_with(
            runner.context.tracker, runner.context.locks, runner.queue, registry=runner.context.registry
        )
        assert result == [{"supplier_code": "A113", "started": True, "session_id": "s1", "message": ""}]


class TestSearchWorkerStartup:
    """Tests for search worker startup."""

    @pytest.mark.asyncio
    async def test_applies_index_settings(self, monkeypatch) -> None:
        context = MagicMock()

        async def fake_startup(ctx: dict) -> None:
            ctx["context"] = context

        monkeypatch.setattr(jobs_module, "startup", fake_startup)

        await jobs_module.search_startup({})

        assert WORKER_SETTINGS[Stage.SEARCH].on_startup is jobs_module.search_startup
        context.search_indexer.index.setup_index.assert_called_once_with()
