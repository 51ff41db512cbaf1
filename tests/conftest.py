"""Shared fixtures: a controllable clock and an in-memory stand-in for the APScheduler job store."""

from datetime import UTC, datetime, timedelta
from types import SimpleNamespace
from typing import Any

import pytest

from shiftclock.core.store import APPEND_ONLY, SINGLE_SLOT, MemoryTokenStore

T0 = datetime(2025, 10, 23, 18, 0, 0, tzinfo=UTC)


class MutableClock:
    """Callable clock that only moves when a test says so."""

    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now

    def set(self, when: datetime) -> None:
        self.now = when


class FakeScheduler:
    """Records date jobs by id with APScheduler's replace_existing semantics."""

    def __init__(self) -> None:
        self.jobs: dict[str, SimpleNamespace] = {}
        self.history: list[datetime] = []

    def add_job(self, func: Any, trigger: str, **kwargs: Any) -> SimpleNamespace:
        job_id = kwargs["id"]
        if job_id in self.jobs and not kwargs.get("replace_existing"):
            raise ValueError(f"job {job_id} already scheduled")
        job = SimpleNamespace(func=func, trigger=trigger, run_date=kwargs["run_date"])
        self.jobs[job_id] = job
        self.history.append(job.run_date)
        return job

    def get_job(self, job_id: str) -> SimpleNamespace | None:
        return self.jobs.get(job_id)

    def remove_job(self, job_id: str) -> None:
        del self.jobs[job_id]

    async def fire(self, job_id: str) -> None:
        """Run a pending job the way the scheduler would when its run_date arrives."""
        job = self.jobs.pop(job_id)
        await job.func()


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture(params=[SINGLE_SLOT, APPEND_ONLY])
def any_store(request: pytest.FixtureRequest) -> MemoryTokenStore:
    """Memory store under each identity scheme."""
    return MemoryTokenStore(scheme=request.param)
