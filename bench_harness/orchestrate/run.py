"""Campaign runtime loop wiring the scheduler, sandbox backend, executor and trial state."""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field, replace
import hashlib
import logging
from pathlib import Path
import signal
from typing import Iterable
import uuid

from dotenv import dotenv_values

from bench_harness.orchestrate.config import HarnessConfig
from bench_harness.orchestrate.dashboard import ACTIVE_STATES, CampaignDashboard, format_elapsed
from bench_harness.orchestrate.executor import ExecutionOutcome, TaskGraphExecutor, dump_result, is_orchestrator_error
from bench_harness.orchestrate.expand import TrialManifest
from bench_harness.orchestrate.resources import WorkerSlots
from bench_harness.orchestrate.sandbox import (
    ProvisionError,
    Sandbox,
    SandboxBackend,
    build_sandbox_spec,
    guest_environment,
)
from bench_harness.orchestrate.scheduler import Allocation, TrialScheduler
from bench_harness.orchestrate.state import (
    SUMMARY_NAME,
    TrialPaths,
    TrialRecord,
    TrialState,
    finalize_trial,
    prepare_trial_dir,
    utcnow,
    write_json_atomic,
    write_summary,
)
from bench_harness.orchestrate.steps import ResultCollector, TaskStep

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INTERRUPTED = 2
EXIT_HALTED = 3

# Summary writes are batched; every state change marks the summary dirty.
SUMMARY_FLUSH_INTERVAL_S = 1.0


def new_run_id() -> str:
    return uuid.uuid4().hex[:8]


def sandbox_id_for(run_id: str, bench: str, trial_id: str, slot: int) -> str:
    """Sandbox name unique to one run of one campaign.

    Campaigns share the sandbox root, so ids from concurrent runs must never collide.
    Kept short because backends put unix sockets under a directory named after it.
    """
    digest = hashlib.sha1(f"{run_id}/{bench}/{trial_id}".encode("utf-8")).hexdigest()[:12]  # noqa: S324
    return f"w{slot}-{digest}"


@dataclass(frozen=True)
class RunOptions:
    bench: str
    output_root: Path
    workers: int
    rerun_failed: bool = False
    use_dashboard: bool = True

    @property
    def bench_dir(self) -> Path:
        return self.output_root / self.bench


@dataclass
class RunReport:
    counts: dict[str, int]
    failures: list[TrialRecord] = field(default_factory=list)
    halted_by: str | None = None
    interrupted: bool = False

    @property
    def exit_code(self) -> int:
        if self.halted_by is not None:
            return EXIT_HALTED
        if self.interrupted or self.counts.get(TrialState.cancelled, 0):
            return EXIT_INTERRUPTED
        if self.counts.get(TrialState.failed, 0):
            return EXIT_FAILED
        return EXIT_OK


class CampaignRunner:
    def __init__(
        self,
        config: HarnessConfig,
        trials: Iterable[TrialManifest],
        backend: SandboxBackend,
        *,
        options: RunOptions,
        dashboard: CampaignDashboard | None = None,
        run_id: str | None = None,
    ) -> None:
        self._config = config
        self.run_id = run_id or new_run_id()
        self._trials = list(trials)
        self._backend = backend
        self._options = options
        self._dashboard = dashboard or CampaignDashboard(enabled=options.use_dashboard)
        self._records: dict[str, TrialRecord] = {
            trial.trial_id: TrialRecord(
                trial_id=trial.trial_id, coordinates=dict(trial.coordinates), instance=trial.instance
            )
            for trial in self._trials
        }
        self._active_sandboxes: dict[str, Sandbox] = {}
        self._active_runner_tasks: dict[str, asyncio.Task] = {}
        self._shutdown = asyncio.Event()
        self._shutdown_mode: str | None = None
        self._shutdown_requested_at: str | None = None
        self._force_timer: asyncio.TimerHandle | None = None
        self._halted_by: str | None = None
        self._run_started_at: str | None = None
        self._dashboard_refresh_task: asyncio.Task[None] | None = None
        self._summary_task: asyncio.Task[None] | None = None
        self._summary_dirty = False
        self._base_env = _load_env_file(config.env_file)
        self._executor = TaskGraphExecutor(
            backend,
            kill_grace_s=config.kill_grace_s,
            shutdown_event=self._shutdown,
            rerun_failed=options.rerun_failed,
        )
        self.sandboxes_created = 0

    @property
    def records(self) -> list[TrialRecord]:
        return list(self._records.values())

    def run(self) -> RunReport:
        return asyncio.run(self.run_async())

    async def run_async(self) -> RunReport:
        scheduler = TrialScheduler(WorkerSlots(self._options.workers))
        self._run_started_at = utcnow()
        self._options.bench_dir.mkdir(parents=True, exist_ok=True)
        self._dashboard.start()
        self._refresh_dashboard()
        self._dashboard_refresh_task = self._start_dashboard_refresh()
        self._dashboard.log(
            f"RUN started bench={self._options.bench} run={self.run_id} trials={len(self._trials)} "
            f"workers={scheduler.max_parallel} backend={self._backend.name} output={self._options.bench_dir}"
        )
        self._write_summary()
        self._summary_task = asyncio.create_task(self._summary_loop())
        loop = asyncio.get_running_loop()
        runner_task = asyncio.create_task(scheduler.run(self._trials, self._run_trial, shutdown_event=self._shutdown))
        _register_signal_handlers(loop, lambda: self._handle_shutdown(runner_task, loop))
        try:
            try:
                await runner_task
            except asyncio.CancelledError:
                if self._shutdown_mode != "force":
                    raise
        finally:
            _unregister_signal_handlers(loop)
            if self._force_timer is not None:
                self._force_timer.cancel()
            if self._dashboard_refresh_task:
                self._dashboard_refresh_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._dashboard_refresh_task
                self._dashboard_refresh_task = None
            await self._teardown_active()
            self._mark_cancelled()
            if self._summary_task is not None:
                self._summary_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._summary_task
                self._summary_task = None
            await self._flush_summary()
            self._dashboard.stop()
        report = self._report()
        self._dashboard.log(
            f"RUN finished "
            + " ".join(f"{state}={count}" for state, count in report.counts.items() if count)
            + f" elapsed={format_elapsed(self._run_started_at, None)}"
        )
        return report

    async def _run_trial(self, trial: TrialManifest, allocation: Allocation) -> None:
        current = asyncio.current_task()
        if current:
            self._active_runner_tasks[trial.trial_id] = current
        record = self._records[trial.trial_id]
        record.slot = allocation.slot
        record.started_at = record.started_at or utcnow()
        paths = TrialPaths(trial.trial_dir)
        try:
            tripped = self._executor.preflight(trial)
            if tripped is not None:
                record.step = "exit_if_existing"
                self._set_state(record, TrialState.skipped)
                return
            await self._provision_and_execute(trial, record, paths, allocation)
        except asyncio.CancelledError:
            record.failure_reason = record.failure_reason or "cancelled"
            self._set_state(record, TrialState.cancelled)
            raise
        except Exception as exc:
            if is_orchestrator_error(exc):
                record.error = str(exc)
                record.failure_reason = "orchestrator error"
                self._halt(exc)
                self._set_state(record, TrialState.cancelled)
                return
            # Anything else stays local to this trial; no marker, so the next run retries it.
            logger.exception("Trial %s raised outside its steps", trial.trial_id)
            record.error = f"{type(exc).__name__}: {exc}"
            record.failure_reason = record.error
            self._set_state(record, TrialState.failed)
        finally:
            self._active_runner_tasks.pop(trial.trial_id, None)

    async def _provision_and_execute(
        self, trial: TrialManifest, record: TrialRecord, paths: TrialPaths, allocation: Allocation
    ) -> None:
        await asyncio.to_thread(prepare_trial_dir, trial.trial_dir, rerun_failed=self._options.rerun_failed)
        paths.logs_dir.mkdir(parents=True, exist_ok=True)
        write_json_atomic(paths.manifest_path, trial.to_dict())

        instance = self._config.instance(trial.instance)
        spec = build_sandbox_spec(
            sandbox_id=sandbox_id_for(self.run_id, trial.bench, trial.trial_id, allocation.slot),
            instance_name=trial.instance,
            instance=instance,
            config=self._config,
            env=guest_environment(
                base=self._base_env,
                trial_vars=trial.vars,
                entropy=instance.entropy if instance.entropy is not None else self._config.entropy,
                trial_id=trial.trial_id,
            ),
            labels={
                "bench_harness.bench": trial.bench,
                "bench_harness.run": self.run_id,
                "bench_harness.trial": trial.trial_id,
            },
            log_dir=paths.logs_dir,
        )
        record.sandbox_id = spec.sandbox_id
        self._set_state(record, TrialState.provisioning)
        try:
            sandbox = await self._backend.create(spec)
        except ProvisionError as exc:
            record.failure_reason = f"provisioning: {exc.reason}"
            record.failure_kind = None
            outcome = ExecutionOutcome(status=TrialState.failed)
            finalize_trial(paths, status=TrialState.failed, result=dump_result(trial, outcome, error=exc.reason))
            self._set_state(record, TrialState.failed)
            return
        self.sandboxes_created += 1
        self._active_sandboxes[trial.trial_id] = sandbox
        try:
            self._set_state(record, TrialState.running)
            outcome = await self._executor.run(
                sandbox, trial, on_step=lambda index, step: self._on_step(record, index, step)
            )
        finally:
            self._active_sandboxes.pop(trial.trial_id, None)
            await asyncio.shield(self._destroy(sandbox))

        if outcome.failure is not None:
            record.failure_step = outcome.failure.step_index
            record.failure_kind = outcome.failure.kind
            record.failure_reason = outcome.failure.reason
        if outcome.status in (TrialState.completed, TrialState.timed_out, TrialState.failed):
            finalize_trial(
                paths,
                status=outcome.status,
                result=dump_result(trial, outcome, sandbox_id=spec.sandbox_id, backend=self._backend.name),
            )
        elif outcome.status == TrialState.cancelled:
            record.failure_reason = "shutdown"
        self._set_state(record, outcome.status)

    def _on_step(self, record: TrialRecord, index: int, step: TaskStep) -> None:
        record.step = f"{index}:{step.kind}"
        if isinstance(step, ResultCollector):
            self._set_state(record, TrialState.collecting)
        else:
            record.touch()

    async def _destroy(self, sandbox: Sandbox) -> None:
        try:
            await self._backend.destroy(sandbox)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to destroy sandbox %s: %s", sandbox.sandbox_id, exc)

    def _set_state(self, record: TrialRecord, state: str) -> None:
        prev_state = record.state
        now = utcnow()
        if state != prev_state:
            record.state = state
            record.state_entered_at = now
        if state in (TrialState.completed, TrialState.skipped, TrialState.timed_out, TrialState.failed, TrialState.cancelled):
            record.completed_at = now
        record.touch()
        self._summary_dirty = True
        if state != prev_state:
            self._log_state_transition(record, prev_state, state, now)
        self._refresh_dashboard()

    def _write_summary(self) -> None:
        write_summary(self._options.bench_dir / SUMMARY_NAME, self._records.values())

    async def _flush_summary(self) -> None:
        if not self._summary_dirty:
            return
        self._summary_dirty = False
        snapshot = [replace(record) for record in self._records.values()]
        await asyncio.to_thread(write_summary, self._options.bench_dir / SUMMARY_NAME, snapshot)

    async def _summary_loop(self) -> None:
        while True:
            await asyncio.sleep(SUMMARY_FLUSH_INTERVAL_S)
            try:
                await self._flush_summary()
            except OSError as exc:
                self._summary_dirty = True
                logger.warning("Failed to write campaign summary: %s", exc)

    def _halt(self, exc: BaseException) -> None:
        if self._halted_by is not None:
            return
        self._halted_by = f"{type(exc).__name__}: {exc}"
        logger.error("Orchestrator-level failure, no new trials will start: %s", self._halted_by)
        self._dashboard.log(f"RUN halt error={self._halted_by!r} active={self._count_active()}")
        self._shutdown_mode = self._shutdown_mode or "halt"
        self._shutdown.set()

    def _mark_cancelled(self) -> None:
        for record in self._records.values():
            if record.state in ACTIVE_STATES:
                record.failure_reason = record.failure_reason or "cancelled"
                self._set_state(record, TrialState.cancelled)

    async def _teardown_active(self) -> None:
        for sandbox in list(self._active_sandboxes.values()):
            await self._destroy(sandbox)
        self._active_sandboxes.clear()

    def _handle_shutdown(self, runner_task: asyncio.Task, loop: asyncio.AbstractEventLoop) -> None:
        if not self._shutdown.is_set() or self._shutdown_mode == "halt":
            self._shutdown_mode = "graceful"
            self._shutdown_requested_at = self._shutdown_requested_at or utcnow()
            self._dashboard.log(
                "SHUTDOWN graceful requested (press Ctrl+C again to force) "
                f"active={self._count_active()} pending={self._count_pending()} "
                f"grace={self._config.shutdown_grace_s:.0f}s note=\"no new trials will start\""
            )
            self._shutdown.set()
            self._force_timer = loop.call_later(
                self._config.shutdown_grace_s, self._force_shutdown, runner_task, "grace period expired"
            )
            self._refresh_dashboard()
            return
        self._force_shutdown(runner_task, "second signal")

    def _force_shutdown(self, runner_task: asyncio.Task, reason: str) -> None:
        if self._shutdown_mode == "force":
            return
        self._shutdown_mode = "force"
        self._dashboard.log(
            f"SHUTDOWN force requested reason={reason!r} active={self._count_active()} "
            f"sandboxes={len(self._active_sandboxes)}"
        )
        runner_task.cancel()
        for task in list(self._active_runner_tasks.values()):
            task.cancel()
        self._refresh_dashboard()

    def _report(self) -> RunReport:
        counts = {state: 0 for state in (
            TrialState.completed,
            TrialState.skipped,
            TrialState.timed_out,
            TrialState.failed,
            TrialState.cancelled,
            TrialState.pending,
        )}
        for record in self._records.values():
            counts[record.state] = counts.get(record.state, 0) + 1
        return RunReport(
            counts=counts,
            failures=[record for record in self._records.values() if record.state == TrialState.failed],
            halted_by=self._halted_by,
            interrupted=self._shutdown_mode in ("graceful", "force"),
        )

    def _count_active(self) -> int:
        return sum(1 for record in self._records.values() if record.state in ACTIVE_STATES)

    def _count_pending(self) -> int:
        return sum(1 for record in self._records.values() if record.state == TrialState.pending)

    def _dashboard_caption(self) -> str | None:
        if not self._run_started_at:
            return None
        uptime = format_elapsed(self._run_started_at, None)
        mode = self._shutdown_mode or "running"
        return f"uptime={uptime} mode={mode}"

    def _refresh_dashboard(self) -> None:
        self._dashboard.update(self._records.values(), caption=self._dashboard_caption())

    def _start_dashboard_refresh(self) -> asyncio.Task[None] | None:
        if not self._dashboard.enabled:
            return None

        async def refresh_loop() -> None:
            interval_s = 1.0 / max(0.1, float(self._dashboard.refresh_hz or 1.0))
            while True:
                await asyncio.sleep(interval_s)
                try:
                    self._refresh_dashboard()
                except Exception as exc:  # noqa: BLE001
                    self._dashboard.log(f"RUN dashboard-refresh failed error={exc!r}")

        return asyncio.create_task(refresh_loop())

    def _log_state_transition(self, record: TrialRecord, prev_state: str, state: str, now: str) -> None:
        total_elapsed = format_elapsed(record.started_at, now)
        if state == TrialState.provisioning:
            self._dashboard.log(
                f"TRIAL start trial={record.trial_id} instance={record.instance} "
                f"slot={record.slot} sandbox={record.sandbox_id}"
            )
        elif state == TrialState.running:
            self._dashboard.log(f"TRIAL ready trial={record.trial_id} total_elapsed={total_elapsed}")
        elif state == TrialState.completed:
            self._dashboard.log(f"TRIAL complete trial={record.trial_id} total_elapsed={total_elapsed}")
        elif state == TrialState.timed_out:
            self._dashboard.log(f"TRIAL timed-out trial={record.trial_id} total_elapsed={total_elapsed}")
        elif state == TrialState.skipped:
            self._dashboard.log(f"TRIAL skipped trial={record.trial_id} reason=complete")
        elif state == TrialState.failed:
            reason = record.failure_reason or "unknown"
            self._dashboard.log(
                f"TRIAL failed trial={record.trial_id} step={record.failure_kind or '-'} "
                f"reason={reason!r} total_elapsed={total_elapsed}"
            )
        elif state == TrialState.cancelled:
            self._dashboard.log(
                f"TRIAL cancelled trial={record.trial_id} at_state={prev_state} total_elapsed={total_elapsed}"
            )


def _load_env_file(path: Path | None) -> dict[str, str]:
    if path is None:
        return {}
    env_path = Path(path).expanduser()
    if not env_path.exists():
        raise ValueError(f"env_file not found: {env_path}")
    values = dotenv_values(env_path)
    return {key: value for key, value in values.items() if value is not None}


def _register_signal_handlers(loop: asyncio.AbstractEventLoop, handler) -> None:
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, handler)
        except (NotImplementedError, RuntimeError):
            continue


def _unregister_signal_handlers(loop: asyncio.AbstractEventLoop) -> None:
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.remove_signal_handler(sig)
        except (NotImplementedError, RuntimeError):
            continue


__all__ = [
    "CampaignRunner",
    "EXIT_FAILED",
    "EXIT_HALTED",
    "EXIT_INTERRUPTED",
    "EXIT_OK",
    "RunOptions",
    "RunReport",
    "SUMMARY_FLUSH_INTERVAL_S",
    "new_run_id",
    "sandbox_id_for",
]
