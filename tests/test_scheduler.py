"""Tests for background alert jobs."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from booster_beacon.jobs import scheduler as jobs


class FakeSessionFactory:
    def __init__(self):
        self.session = MagicMock()
        self.session.commit = AsyncMock()

    def __call__(self):
        return self

    async def __aenter__(self):
        return self.session

    async def __aexit__(self, *exc):
        return False


class TestScheduler:
    def test_jobs_registered(self):
        scheduler = jobs.create_scheduler()

        ids = {job.id for job in scheduler.get_jobs()}
        assert ids == {"process_pending_alerts", "retry_failed_alerts", "cleanup_old_alerts"}

    @pytest.mark.asyncio
    async def test_retry_sweep_requeues_candidates(self):
        factory = FakeSessionFactory()
        repo_cls = MagicMock()
        repo = repo_cls.return_value
        repo.get_failed_alerts_for_retry = AsyncMock(return_value=[MagicMock(id="a1"), MagicMock(id="a2")])
        repo.requeue_for_retry = AsyncMock(return_value=2)

        with patch.object(jobs, "async_session_maker", factory), \
                patch.object(jobs, "AlertRepository", repo_cls):
            requeued = await jobs.job_retry_failed_alerts()

        assert requeued == 2
        assert repo.requeue_for_retry.await_args.args[0] == ["a1", "a2"]
        factory.session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_cleanup_commits(self):
        factory = FakeSessionFactory()
        repo_cls = MagicMock()
        repo_cls.return_value.cleanup_old_alerts = AsyncMock(return_value=7)

        with patch.object(jobs, "async_session_maker", factory), \
                patch.object(jobs, "AlertRepository", repo_cls):
            deleted = await jobs.job_cleanup_old_alerts()

        assert deleted == 7
        factory.session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_pending_job_uses_delivery_service(self):
        service = MagicMock()
        service.process_pending_alerts = AsyncMock(
            return_value={"processed": 1, "sent": 1, "failed": 0, "skipped": 0, "errors": 0}
        )

        with patch.object(jobs, "get_delivery_service", return_value=service):
            summary = await jobs.job_process_pending_alerts()

        assert summary["sent"] == 1
