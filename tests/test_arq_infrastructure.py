"""Tests for ARQ infrastructure, the advertising job task and Redis degraded mode."""

import signal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import BackgroundTasks

from ad_batch.api.jobs import enqueue_job_run, run_job_task
from ad_batch.workers.tasks import process_advertising_job


class TestConfigHasRedisSettings:
    """Test that config includes Redis/ARQ settings."""

    def test_redis_url_default(self):
        """Config has redis_url with default."""
        from ad_batch.config import Settings

        settings = Settings()
        assert settings.redis_url == "redis://localhost:6379"

    def test_arq_defaults(self):
        """Config has ARQ worker limits."""
        from ad_batch.config import Settings

        settings = Settings()
        assert settings.arq_job_timeout == 1800
        assert settings.arq_max_jobs == 4
        assert settings.use_arq_worker is True


class TestRedisPool:
    """Tests for Redis connection pool with degraded mode."""

    @pytest.mark.asyncio
    async def test_get_redis_pool_returns_none_when_unavailable(self):
        """get_redis_pool returns None when Redis is not running."""
        import ad_batch.core.redis as redis_module

        # Reset cached pool and checked flag
        redis_module._redis_pool = None
        redis_module._redis_checked = False

        with patch(
            "ad_batch.core.redis.create_pool",
            side_effect=ConnectionError("Connection refused"),
        ):
            pool = await redis_module.get_redis_pool()
            assert pool is None
            # Only one connection attempt is made
            assert await redis_module.get_redis_pool() is None

        # Clean up
        redis_module._redis_pool = None
        redis_module._redis_checked = False

    @pytest.mark.asyncio
    async def test_is_redis_available_false_when_no_pool(self):
        """is_redis_available returns False when pool is None."""
        import ad_batch.core.redis as redis_module

        redis_module._redis_pool = None
        redis_module._redis_checked = False

        with patch(
            "ad_batch.core.redis.create_pool",
            side_effect=ConnectionError("Connection refused"),
        ):
            result = await redis_module.is_redis_available()
            assert result is False

        redis_module._redis_pool = None
        redis_module._redis_checked = False

    @pytest.mark.asyncio
    async def test_close_redis_pool_closes_connection(self):
        """close_redis_pool calls aclose on the pool."""
        import ad_batch.core.redis as redis_module

        mock_pool = AsyncMock()
        redis_module._redis_pool = mock_pool

        await redis_module.close_redis_pool()

        mock_pool.aclose.assert_called_once()
        assert redis_module._redis_pool is None

    def test_fail_fast_settings(self):
        """Fail-fast settings give up after a single short attempt."""
        from ad_batch.core.redis import redis_settings_from_url

        settings = redis_settings_from_url("redis://cache.internal:6380/2")
        assert settings.host == "cache.internal"
        assert settings.port == 6380
        assert settings.database == 2
        assert settings.conn_retries == 0

        relaxed = redis_settings_from_url("redis://cache.internal:6380/2", fail_fast=False)
        assert relaxed.conn_retries != 0


class TestEnqueueJobRun:
    """Test job runs fall back to BackgroundTasks when there is no Redis."""

    @pytest.mark.asyncio
    async def test_background_tasks_when_arq_disabled(self, pipeline):
        background_tasks = BackgroundTasks()

        queued = await enqueue_job_run("job-1", background_tasks, pipeline)

        assert queued is False
        assert len(background_tasks.tasks) == 1
        assert background_tasks.tasks[0].func is run_job_task

    @pytest.mark.asyncio
    async def test_falls_back_when_redis_unavailable(self, pipeline):
        pipeline.settings.use_arq_worker = True
        background_tasks = BackgroundTasks()

        with patch("ad_batch.api.jobs.get_redis_pool", AsyncMock(return_value=None)):
            queued = await enqueue_job_run("job-1", background_tasks, pipeline)

        assert queued is False
        assert len(background_tasks.tasks) == 1

    @pytest.mark.asyncio
    async def test_enqueues_via_arq_when_redis_available(self, pipeline):
        pipeline.settings.use_arq_worker = True
        redis = AsyncMock()
        redis.enqueue_job.return_value = MagicMock(job_id="arq-1")
        background_tasks = BackgroundTasks()

        with patch("ad_batch.api.jobs.get_redis_pool", AsyncMock(return_value=redis)):
            queued = await enqueue_job_run("job-1", background_tasks, pipeline)

        assert queued is True
        redis.enqueue_job.assert_awaited_once_with("process_advertising_job", "job-1")
        assert background_tasks.tasks == []

    @pytest.mark.asyncio
    async def test_enqueue_failure_falls_back(self, pipeline):
        pipeline.settings.use_arq_worker = True
        redis = AsyncMock()
        redis.enqueue_job.side_effect = ConnectionError("Redis went away")
        background_tasks = BackgroundTasks()

        with patch("ad_batch.api.jobs.get_redis_pool", AsyncMock(return_value=redis)):
            queued = await enqueue_job_run("job-1", background_tasks, pipeline)

        assert queued is False
        assert len(background_tasks.tasks) == 1

    @pytest.mark.asyncio
    async def test_run_job_task_swallows_missing_job(self, pipeline):
        """A background run for a deleted job only logs."""
        await run_job_task(pipeline, "missing")


class TestProcessAdvertisingJobTask:
    """Tests for the ARQ task function."""

    @pytest.mark.asyncio
    async def test_runs_job_with_pipeline_from_ctx(self, pipeline, owner_id, variant_factory, fake_client):
        job = pipeline.orchestrator.create_job(
            owner_id,
            {"source_image_url": "https://cdn.example.com/uploads/product.png"},
            variant_factory(2),
        )

        result = await process_advertising_job({"pipeline": pipeline}, job.id)

        assert result["success"] is True
        assert result["status"] == "completed"
        assert result["completed"] == 2
        assert len(fake_client.submitted) == 2

    @pytest.mark.asyncio
    async def test_missing_job(self, pipeline):
        result = await process_advertising_job({"pipeline": pipeline}, "missing")
        assert result == {"success": False, "error": "Job not found"}

    @pytest.mark.asyncio
    async def test_unexpected_error_reported(self, pipeline):
        scheduler = MagicMock()
        scheduler.run_job = AsyncMock(side_effect=RuntimeError("boom"))

        with patch.object(type(pipeline), "scheduler", return_value=scheduler):
            result = await process_advertising_job({"pipeline": pipeline}, "job-1")

        assert result == {"success": False, "error": "boom"}


class TestWorkerSettings:
    def test_worker_registers_task(self):
        from ad_batch.workers.settings import WorkerSettings

        assert WorkerSettings.functions == [process_advertising_job]
        assert WorkerSettings.max_jobs == WorkerSettings.settings.arq_max_jobs


class TestEmbeddedArqWorker:
    """Tests for the in-process job-run consumer."""

    @pytest.mark.asyncio
    async def test_start_and_stop_share_pool_and_pipeline(self, pipeline):
        from ad_batch.workers.arq_worker import EmbeddedArqWorker

        redis = AsyncMock()
        worker = MagicMock()
        worker.main = AsyncMock()
        worker.tasks = {}
        worker.health_check_key = "arq:health-check"

        with patch("ad_batch.workers.arq_worker.Worker", return_value=worker) as worker_cls:
            embedded = EmbeddedArqWorker(redis, pipeline.settings, pipeline)
            await embedded.start()
            await embedded.stop()

        kwargs = worker_cls.call_args.kwargs
        assert kwargs["functions"] == [process_advertising_job]
        assert kwargs["redis_pool"] is redis
        assert kwargs["handle_signals"] is False
        assert kwargs["ctx"]["pipeline"] is pipeline
        worker.main.assert_awaited_once()
        worker.handle_sig.assert_called_once_with(signal.SIGUSR1)
        redis.delete.assert_awaited_once_with("arq:health-check")
        redis.aclose.assert_not_called()
        assert embedded.running is False

    @pytest.mark.asyncio
    async def test_stop_before_start_is_noop(self, pipeline):
        from ad_batch.workers.arq_worker import EmbeddedArqWorker

        redis = AsyncMock()
        await EmbeddedArqWorker(redis, pipeline.settings, pipeline).stop()

        redis.delete.assert_not_called()
