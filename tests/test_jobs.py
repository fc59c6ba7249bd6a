import asyncio
from datetime import timedelta

import pytest

from server.jobs import JobManager, JobStatus


class TestJobManager:
    """Test suite for background job execution."""

    @pytest.fixture
    def manager(self):
        return JobManager()

    async def test_successful_job(self, manager):
        async def handler(job, cancel_token):
            job.add_log("working")
            return {"echo": job.parameters["value"]}

        manager.register_handler("echo", handler)
        job_id = await manager.enqueue_job("echo", {"value": 42})
        record = await manager.wait_for(job_id)

        assert record.status == JobStatus.DONE
        assert record.result == {"echo": 42}
        assert record.started_at is not None
        assert record.completed_at is not None
        assert any("working" in line for line in record.logs)
        assert record.to_dict()["status"] == "done"

    async def test_failed_job(self, manager):
        async def handler(job, cancel_token):
            raise RuntimeError("sitemap exploded")

        manager.register_handler("boom", handler)
        record = await manager.wait_for(await manager.enqueue_job("boom"))

        assert record.status == JobStatus.FAILED
        assert record.error == "sitemap exploded"

    async def test_unknown_job_type(self, manager):
        with pytest.raises(ValueError):
            await manager.enqueue_job("missing")

    async def test_cancel_job(self, manager):
        """Test that cancellation reaches the handler through its token."""
        started = asyncio.Event()

        async def handler(job, cancel_token):
            started.set()
            await cancel_token.sleep(10)
            return {"partial": True}

        manager.register_handler("slow", handler)
        job_id = await manager.enqueue_job("slow")
        await asyncio.wait_for(started.wait(), timeout=1)

        record = await manager.cancel_job(job_id)
        assert record is not None
        record = await asyncio.wait_for(manager.wait_for(job_id), timeout=1)
        assert record.status == JobStatus.CANCELLED
        assert record.result == {"partial": True}
        assert await manager.cancel_job("nope") is None

    async def test_list_jobs_filter(self, manager):
        async def ok(job, cancel_token):
            return {}

        async def bad(job, cancel_token):
            raise ValueError("bad")

        manager.register_handler("ok", ok)
        manager.register_handler("bad", bad)
        first = await manager.enqueue_job("ok")
        second = await manager.enqueue_job("bad")
        await manager.wait_for(first)
        await manager.wait_for(second)

        assert [j.id for j in await manager.list_jobs(JobStatus.FAILED)] == [second]
        assert len(await manager.list_jobs()) == 2
        assert len(await manager.list_jobs(limit=1)) == 1

    async def test_shutdown_cancels_running_jobs(self, manager):
        async def forever(job, cancel_token):
            await asyncio.sleep(60)

        manager.register_handler("forever", forever)
        job_id = await manager.enqueue_job("forever")
        await asyncio.sleep(0)
        await asyncio.wait_for(manager.shutdown(), timeout=1)

        record = await manager.get_job_status(job_id)
        assert record.status == JobStatus.CANCELLED

    async def test_finished_job_releases_token(self, manager):
        async def ok(job, cancel_token):
            return {}

        manager.register_handler("ok", ok)
        job_id = await manager.enqueue_job("ok")
        await manager.wait_for(job_id)

        assert job_id not in manager._tokens
        assert job_id not in manager._tasks
        assert (await manager.cancel_job(job_id)).status == JobStatus.DONE

    async def test_oldest_finished_jobs_evicted_over_cap(self):
        """Test that only the newest finished records are kept past the cap."""
        manager = JobManager(max_finished_jobs=2)

        async def ok(job, cancel_token):
            return {}

        manager.register_handler("ok", ok)
        job_ids = []
        for _ in range(4):
            job_id = await manager.enqueue_job("ok")
            await manager.wait_for(job_id)
            job_ids.append(job_id)
        await manager.wait_for(await manager.enqueue_job("ok"))

        remaining = {job.id for job in await manager.list_jobs()}
        assert len(remaining) == 3
        assert job_ids[0] not in remaining
        assert job_ids[1] not in remaining
        assert job_ids[3] in remaining

    async def test_expired_jobs_evicted_but_running_kept(self, manager):
        release = asyncio.Event()

        async def ok(job, cancel_token):
            return {}

        async def blocked(job, cancel_token):
            await release.wait()
            return {}

        manager.register_handler("ok", ok)
        manager.register_handler("blocked", blocked)
        running = await manager.enqueue_job("blocked")
        finished = await manager.enqueue_job("ok")
        await manager.wait_for(finished)
        (await manager.get_job_status(finished)).completed_at -= timedelta(days=8)
        await manager.wait_for(await manager.enqueue_job("ok"))

        assert await manager.get_job_status(finished) is None
        assert (await manager.get_job_status(running)).status == JobStatus.RUNNING
        release.set()
        assert (await manager.wait_for(running)).status == JobStatus.DONE
