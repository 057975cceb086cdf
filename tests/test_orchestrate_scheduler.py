import asyncio
from pathlib import Path

import pytest

from bench_harness.orchestrate.config import CampaignConfig, HarnessConfig, ManifestTemplate
from bench_harness.orchestrate.expand import TrialManifest, expand_campaign
from bench_harness.orchestrate.resources import ResourceError, WorkerSlots, default_worker_count
from bench_harness.orchestrate.scheduler import TrialScheduler


class DummySlots(WorkerSlots):
    """Refuses every reservation."""

    def reserve(self, trial_id: str) -> int:
        raise ResourceError("No free worker slots.")


def _trials(tmp_path: Path, count: int) -> list[TrialManifest]:
    campaign = CampaignConfig(
        name="fw",
        output_root=tmp_path,
        matrix={"trial": [str(idx) for idx in range(count)]},
        template=ManifestTemplate(tasks=[{"kind": "sleep", "duration": 1}]),
    )
    return expand_campaign(campaign, HarnessConfig(cache_dir=tmp_path / "cache"))


@pytest.mark.asyncio
async def test_scheduler_caps_concurrency_and_backfills(tmp_path: Path) -> None:
    trials = _trials(tmp_path, 5)
    scheduler = TrialScheduler(WorkerSlots(2))
    active = 0
    peak = 0
    slots_seen: set[int] = set()
    started: list[str] = []

    async def runner(trial: TrialManifest, allocation) -> None:
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        slots_seen.add(allocation.slot)
        started.append(trial.trial_id)
        await asyncio.sleep(0.02)
        active -= 1

    await asyncio.wait_for(scheduler.run(trials, runner), timeout=5.0)

    assert scheduler.max_parallel == 2
    assert peak == 2
    assert slots_seen == {0, 1}
    assert started == [trial.trial_id for trial in trials]


@pytest.mark.asyncio
async def test_failing_trial_does_not_stop_siblings(tmp_path: Path) -> None:
    trials = _trials(tmp_path, 3)
    scheduler = TrialScheduler(WorkerSlots(1))
    finished: list[str] = []

    async def runner(trial: TrialManifest, allocation) -> None:
        if trial.coordinates["trial"] == "0":
            raise RuntimeError("boom")
        finished.append(trial.trial_id)

    await asyncio.wait_for(scheduler.run(trials, runner), timeout=5.0)

    assert finished == [trials[1].trial_id, trials[2].trial_id]


@pytest.mark.asyncio
async def test_shutdown_stops_dispatch_and_drains_in_flight(tmp_path: Path) -> None:
    trials = _trials(tmp_path, 4)
    slots = WorkerSlots(2)
    scheduler = TrialScheduler(slots)
    shutdown = asyncio.Event()
    release = asyncio.Event()
    started: list[str] = []
    finished: list[str] = []

    async def runner(trial: TrialManifest, allocation) -> None:
        started.append(trial.trial_id)
        await release.wait()
        finished.append(trial.trial_id)

    run_task = asyncio.create_task(scheduler.run(trials, runner, shutdown_event=shutdown))
    while len(started) < 2:
        await asyncio.sleep(0.01)
    shutdown.set()
    await asyncio.sleep(0.05)
    assert run_task.done() is False
    release.set()
    await asyncio.wait_for(run_task, timeout=5.0)

    assert started == finished == [trials[0].trial_id, trials[1].trial_id]
    assert slots.in_use() == {}


@pytest.mark.asyncio
async def test_scheduler_cancellation_cleans_waiters(tmp_path: Path) -> None:
    scheduler = TrialScheduler(DummySlots(1))

    async def runner(trial: TrialManifest, allocation) -> None:
        return None

    run_task = asyncio.create_task(scheduler.run(_trials(tmp_path, 1), runner))
    await asyncio.sleep(0.05)
    run_task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await run_task
    await asyncio.sleep(0)

    pending = [task for task in asyncio.all_tasks() if not task.done() and task is not asyncio.current_task()]
    assert pending == []


def test_worker_slots_reserve_and_release() -> None:
    slots = WorkerSlots(2)

    assert slots.reserve("a") == 0
    assert slots.reserve("b") == 1
    with pytest.raises(ResourceError):
        slots.reserve("c")
    slots.release(0)
    assert slots.reserve("c") == 0
    assert slots.in_use() == {0: "c", 1: "b"}
    with pytest.raises(ValueError):
        WorkerSlots(0)


def test_default_worker_count(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr("bench_harness.orchestrate.resources.os.cpu_count", lambda: 8)

    assert default_worker_count(HarnessConfig(cache_dir=tmp_path), "default") >= 1
    assert default_worker_count(HarnessConfig(cache_dir=tmp_path, workers=3), "default") == 3
