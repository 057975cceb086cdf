"""Worker pool scheduler: at most W trial pipelines in flight."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from typing import Awaitable, Callable, Iterable

from bench_harness.orchestrate.expand import TrialManifest
from bench_harness.orchestrate.resources import ResourceError, WorkerSlots

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Allocation:
    slot: int


TrialRunner = Callable[[TrialManifest, Allocation], Awaitable[None]]


class TrialScheduler:
    """Dispatch trials in order, one per free worker slot."""

    def __init__(self, slots: WorkerSlots) -> None:
        self._slots = slots

    @property
    def max_parallel(self) -> int:
        return self._slots.capacity

    async def run(
        self,
        trials: Iterable[TrialManifest],
        runner: TrialRunner,
        *,
        shutdown_event: asyncio.Event | None = None,
    ) -> None:
        """Run every trial unless ``shutdown_event`` is set; in-flight trials are always awaited."""
        slot_freed = asyncio.Event()
        runner_tasks: set[asyncio.Task[None]] = set()

        async def _wait_for_events() -> None:
            waiters = [asyncio.create_task(slot_freed.wait())]
            if shutdown_event:
                waiters.append(asyncio.create_task(shutdown_event.wait()))
            try:
                await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for waiter in waiters:
                    if not waiter.done():
                        waiter.cancel()
                await asyncio.gather(*waiters, return_exceptions=True)

        async def _reserve(trial: TrialManifest) -> Allocation | None:
            while True:
                if shutdown_event and shutdown_event.is_set():
                    return None
                try:
                    return Allocation(slot=self._slots.reserve(trial.trial_id))
                except ResourceError:
                    slot_freed.clear()
                await _wait_for_events()

        async def _runner_wrapper(trial: TrialManifest, allocation: Allocation) -> None:
            try:
                await runner(trial, allocation)
            except Exception:
                # Trial failures are recorded by the runner; one trial never stops its siblings.
                logger.exception("Trial runner for %s raised", trial.trial_id)
            finally:
                self._slots.release(allocation.slot)
                slot_freed.set()

        try:
            for trial in trials:
                allocation = await _reserve(trial)
                if allocation is None:
                    logger.info("Shutdown requested; not starting %s or later trials", trial.trial_id)
                    break
                task = asyncio.create_task(_runner_wrapper(trial, allocation), name=f"trial:{trial.trial_id}")
                runner_tasks.add(task)
                task.add_done_callback(runner_tasks.discard)
            if runner_tasks:
                await asyncio.gather(*runner_tasks)
        except asyncio.CancelledError:
            for task in runner_tasks:
                task.cancel()
            await asyncio.gather(*runner_tasks, return_exceptions=True)
            raise


__all__ = ["Allocation", "TrialRunner", "TrialScheduler"]
