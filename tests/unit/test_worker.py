import pytest

from retention_os.jobs import worker


@pytest.fixture
def lifecycle(monkeypatch):
    events = []

    def record(name):
        async def _call():
            events.append(name)

        return _call

    monkeypatch.setattr(worker.db_pool, "initialize", record("db_open"))
    monkeypatch.setattr(worker.db_pool, "close", record("db_close"))
    monkeypatch.setattr(worker.fast_redis, "initialize", record("redis_open"))
    monkeypatch.setattr(worker.fast_redis, "close", record("redis_close"))
    monkeypatch.setattr(worker, "close_billing_client", record("billing_close"))
    return events


@pytest.mark.asyncio
async def test_run_worker_runs_job(monkeypatch, lifecycle):
    async def dummy_job():
        lifecycle.append("job")

    monkeypatch.setitem(worker.JOB_REGISTRY, "dummy", dummy_job)

    await worker.run_worker("dummy")

    assert lifecycle == ["db_open", "redis_open", "job", "billing_close", "redis_close", "db_close"]


@pytest.mark.asyncio
async def test_run_worker_closes_resources_when_job_fails(monkeypatch, lifecycle):
    async def broken_job():
        raise RuntimeError("boom")

    monkeypatch.setitem(worker.JOB_REGISTRY, "broken", broken_job)

    with pytest.raises(RuntimeError):
        await worker.run_worker("broken")

    assert lifecycle[-3:] == ["billing_close", "redis_close", "db_close"]


@pytest.mark.asyncio
async def test_run_worker_unknown_job(lifecycle):
    with pytest.raises(ValueError):
        await worker.run_worker("missing")

    assert lifecycle == []


def test_job_name_from_env(monkeypatch):
    monkeypatch.setattr(worker.sys, "argv", ["worker"])
    monkeypatch.setenv("WORKER_JOB", " Billing_Confirmation ")

    assert worker._resolve_job_name() == "billing_confirmation"
