"""Worker slot reservation and host capacity defaults for the scheduler."""

from __future__ import annotations

import os

from bench_harness.orchestrate.config import HarnessConfig


class ResourceError(RuntimeError):
    """Raised when resources cannot be discovered or allocated."""


def default_worker_count(config: HarnessConfig, instance: str) -> int:
    """One worker per ``vcpu_count`` host CPUs, at least one."""
    if config.workers is not None:
        return config.workers
    vcpus = config.instance(instance).machine.vcpu_count
    return max(1, (os.cpu_count() or 1) // vcpus)


class WorkerSlots:
    """In-process map of worker slot index to the trial holding it."""

    def __init__(self, count: int) -> None:
        if count < 1:
            raise ValueError("WorkerSlots needs at least one slot.")
        self._indices = list(range(count))
        self._reservations: dict[int, str] = {}

    @property
    def capacity(self) -> int:
        return len(self._indices)

    def in_use(self) -> dict[int, str]:
        return dict(self._reservations)

    def reserve(self, trial_id: str) -> int:
        for index in self._indices:
            if index not in self._reservations:
                self._reservations[index] = trial_id
                return index
        raise ResourceError("No free worker slots.")

    def release(self, index: int) -> None:
        self._reservations.pop(index, None)


__all__ = ["ResourceError", "WorkerSlots", "default_worker_count"]
