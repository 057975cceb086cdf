"""Run a trial's task list against a provisioned sandbox.

Steps run strictly in order. A guard that trips ends the trial as skipped, a
timed run that hits its duration is recorded and the trial carries on, and any
other step failure stops the trial. Shutdown requests are honoured between
steps only.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import errno
import gzip
import io
import logging
import os
from pathlib import Path, PurePosixPath
import tarfile
import time
from typing import IO, Any, Callable

from bench_harness.orchestrate.bench import run_bounded, start_process
from bench_harness.orchestrate.expand import TrialManifest
from bench_harness.orchestrate.sandbox import (
    BackendUnavailable,
    GuestCommand,
    ProvisionError,
    Sandbox,
    SandboxBackend,
    SandboxError,
)
from bench_harness.orchestrate.state import (
    TrialPaths,
    TrialState,
    is_trial_complete,
    open_atomic,
    read_json,
    write_bytes_atomic,
    write_json_atomic,
    write_text_atomic,
)
from bench_harness.orchestrate.steps import (
    CopyDir,
    CopyFile,
    ExitIfExisting,
    MergeJson,
    ResultCollector,
    Run,
    RunHost,
    SaveEnv,
    Sleep,
    TaskStep,
    split_command,
)
from bench_harness.utils.pathing import remove_tree

logger = logging.getLogger(__name__)

ARCHIVE_COMPRESSLEVEL = 6
# Host I/O failures that no other trial could avoid either; these halt the campaign.
HOST_FATAL_ERRNOS = frozenset({errno.ENOSPC, errno.EDQUOT, errno.EROFS})


class StepFailed(Exception):
    def __init__(self, reason: str, *, code: int | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.code = code


class ArtifactMissing(Exception):
    def __init__(self, path: str) -> None:
        super().__init__(f"artifact missing: {path}")
        self.path = path


class TimedOut(Exception):
    """A timed run reached its duration. Expected for fuzzing steps; the trial continues."""

    def __init__(self, duration_s: float, *, exit_code: int | None = None) -> None:
        super().__init__(f"stopped after {duration_s:.1f}s")
        self.duration_s = duration_s
        self.exit_code = exit_code


class _GuardTripped(Exception):
    def __init__(self, path: Path) -> None:
        super().__init__(str(path))
        self.path = path


@dataclass(frozen=True)
class StepRecord:
    index: int
    kind: str
    status: str
    duration_s: float
    exit_code: int | None = None
    detail: str | None = None


@dataclass(frozen=True)
class TrialFailure:
    step_index: int
    kind: str
    reason: str


@dataclass
class ExecutionOutcome:
    status: str
    steps: list[StepRecord] = field(default_factory=list)
    failure: TrialFailure | None = None
    skipped_by: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "status": self.status,
            "steps": [record.__dict__ for record in self.steps],
        }
        if self.failure is not None:
            payload["failure"] = self.failure.__dict__
        if self.skipped_by is not None:
            payload["skipped_by"] = self.skipped_by
        return payload


StepCallback = Callable[[int, TaskStep], None]


def _passes_guard(step: ExitIfExisting, manifest: TrialManifest, *, rerun_failed: bool) -> Path | None:
    """Return the path that tripped the guard, or None to continue."""
    if step.path is None:
        marker = TrialPaths(manifest.trial_dir).marker_path
        if is_trial_complete(manifest.trial_dir, rerun_failed=rerun_failed):
            return marker
        return None
    target = _host_path(manifest, step.path)
    return target if target.exists() else None


def _host_path(manifest: TrialManifest, value: str) -> Path:
    path = Path(value).expanduser()
    if not path.is_absolute():
        path = manifest.trial_dir / path
    return path


def _guest_path(sandbox: Sandbox, value: str) -> str:
    if value.startswith("/"):
        return value
    return str(PurePosixPath(sandbox.spec.workdir) / value)


class TaskGraphExecutor:
    def __init__(
        self,
        backend: SandboxBackend,
        *,
        kill_grace_s: float = 5.0,
        shutdown_event: asyncio.Event | None = None,
        rerun_failed: bool = False,
    ) -> None:
        self._backend = backend
        self._kill_grace_s = kill_grace_s
        self._shutdown = shutdown_event
        self._rerun_failed = rerun_failed

    def preflight(self, manifest: TrialManifest) -> Path | None:
        """Evaluate the leading guards without a sandbox; return the tripping path, if any."""
        for step in manifest.tasks:
            if not isinstance(step, ExitIfExisting):
                return None
            tripped = _passes_guard(step, manifest, rerun_failed=self._rerun_failed)
            if tripped is not None:
                return tripped
        return None

    async def run(
        self,
        sandbox: Sandbox,
        manifest: TrialManifest,
        *,
        on_step: StepCallback | None = None,
    ) -> ExecutionOutcome:
        outcome = ExecutionOutcome(status=TrialState.completed)
        timed_out = False
        for index, step in enumerate(manifest.tasks):
            if self._shutdown is not None and self._shutdown.is_set():
                outcome.status = TrialState.cancelled
                logger.info("Trial %s stopped before step %d (%s): shutdown", manifest.trial_id, index, step.kind)
                return outcome
            if on_step is not None:
                on_step(index, step)
            started = time.monotonic()
            try:
                exit_code = await self._run_step(sandbox, manifest, step, index)
            except _GuardTripped as exc:
                outcome.steps.append(StepRecord(index, step.kind, TrialState.skipped, time.monotonic() - started))
                outcome.status = TrialState.skipped
                outcome.skipped_by = str(exc.path)
                return outcome
            except TimedOut as exc:
                timed_out = True
                outcome.steps.append(
                    StepRecord(
                        index,
                        step.kind,
                        TrialState.timed_out,
                        time.monotonic() - started,
                        exit_code=exc.exit_code,
                        detail=str(exc),
                    )
                )
                continue
            except Exception as exc:
                if is_orchestrator_error(exc):
                    raise
                if not isinstance(exc, (StepFailed, ArtifactMissing, ProvisionError, SandboxError, ConnectionError)):
                    logger.debug("Step %d of %s raised", index, manifest.trial_id, exc_info=True)
                reason = _failure_reason(exc)
                code = exc.code if isinstance(exc, StepFailed) else None
                outcome.steps.append(
                    StepRecord(index, step.kind, TrialState.failed, time.monotonic() - started, code, reason)
                )
                outcome.status = TrialState.failed
                outcome.failure = TrialFailure(step_index=index, kind=step.kind, reason=reason)
                logger.info("Trial %s failed at step %d (%s): %s", manifest.trial_id, index, step.kind, reason)
                return outcome
            outcome.steps.append(
                StepRecord(index, step.kind, TrialState.completed, time.monotonic() - started, exit_code)
            )
        if timed_out:
            outcome.status = TrialState.timed_out
        return outcome

    async def _run_step(self, sandbox: Sandbox, manifest: TrialManifest, step: TaskStep, index: int) -> int | None:
        if isinstance(step, ExitIfExisting):
            tripped = _passes_guard(step, manifest, rerun_failed=self._rerun_failed)
            if tripped is not None:
                raise _GuardTripped(tripped)
            return None
        if isinstance(step, SaveEnv):
            lines = "".join(f"{key}={value}\n" for key, value in manifest.vars.items())
            await asyncio.to_thread(write_text_atomic, _host_path(manifest, step.path), lines)
            return None
        if isinstance(step, Run):
            return await self._run_guest(sandbox, step)
        if isinstance(step, RunHost):
            return await self._run_host(manifest, step, index)
        if isinstance(step, Sleep):
            await self._sleep(step.duration)
            return None
        if isinstance(step, CopyFile):
            await self._copy_file(sandbox, manifest, step)
            return None
        if isinstance(step, CopyDir):
            await self._copy_dir(sandbox, manifest, step)
            return None
        if isinstance(step, ResultCollector):
            return await self._collect(sandbox, manifest, step)
        if isinstance(step, MergeJson):
            await asyncio.to_thread(self._merge_json, manifest, step)
            return None
        raise StepFailed(f"unsupported step kind {step.kind!r}")

    async def _run_guest(self, sandbox: Sandbox, step: Run) -> int | None:
        env, argv = split_command(step.command)
        command = GuestCommand(
            argv=argv,
            env=env,
            stdout=_guest_path(sandbox, step.stdout) if step.stdout else None,
            stderr=_guest_path(sandbox, step.stderr) if step.stderr else None,
        )
        outcome = await sandbox.run_command(command, timeout_s=step.duration, kill_grace_s=self._kill_grace_s)
        if outcome.timed_out:
            raise TimedOut(outcome.duration_s, exit_code=outcome.exit_code)
        if outcome.exit_code != 0:
            raise StepFailed(f"{argv[0]} exited with status {outcome.exit_code}", code=outcome.exit_code)
        return outcome.exit_code

    async def _run_host(self, manifest: TrialManifest, step: RunHost, index: int) -> int:
        env, argv = split_command(step.command)
        logs = TrialPaths(manifest.trial_dir).logs_dir
        stdout_path = _host_path(manifest, step.stdout) if step.stdout else logs / f"host-{index}.stdout"
        stderr_path = _host_path(manifest, step.stderr) if step.stderr else logs / f"host-{index}.stderr"
        manifest.trial_dir.mkdir(parents=True, exist_ok=True)
        try:
            proc = await start_process(
                argv,
                cwd=manifest.trial_dir,
                env={**os.environ, **manifest.vars, **env},
                stdout_path=stdout_path,
                stderr_path=stderr_path,
            )
        except FileNotFoundError as exc:
            raise StepFailed(f"host command not found: {argv[0]}", code=127) from exc
        except PermissionError as exc:
            raise StepFailed(f"host command not executable: {argv[0]}", code=126) from exc
        result, _ = await run_bounded(proc, timeout_s=step.duration, kill_grace_s=self._kill_grace_s)
        if result.terminated:
            raise TimedOut(result.duration_s, exit_code=result.exit_code)
        if result.exit_code != 0:
            raise StepFailed(f"{argv[0]} exited with status {result.exit_code}", code=result.exit_code)
        return result.exit_code

    async def _sleep(self, duration_s: float) -> None:
        if self._shutdown is None:
            await asyncio.sleep(duration_s)
            return
        try:
            await asyncio.wait_for(self._shutdown.wait(), timeout=duration_s)
        except asyncio.TimeoutError:
            pass

    async def _read_artifact(self, sandbox: Sandbox, path: str) -> bytes:
        try:
            return await sandbox.read_file(path)
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError) as exc:
            raise ArtifactMissing(path) from exc

    async def _copy_file(self, sandbox: Sandbox, manifest: TrialManifest, step: CopyFile) -> None:
        src = _guest_path(sandbox, step.src)
        data = await self._read_artifact(sandbox, src)
        dst = _host_path(manifest, step.dst)
        if step.append and dst.exists():
            data = await asyncio.to_thread(dst.read_bytes) + data
        await asyncio.to_thread(write_bytes_atomic, dst, data)

    async def _copy_dir(self, sandbox: Sandbox, manifest: TrialManifest, step: CopyDir) -> None:
        """Copy a guest tree one file at a time into an archive or a staging directory."""
        src = _guest_path(sandbox, step.src)
        try:
            entries = await sandbox.list_tree(src)
        except (FileNotFoundError, NotADirectoryError) as exc:
            raise ArtifactMissing(src) from exc
        directories = sorted(entry.path for entry in entries if not entry.is_file)
        files = sorted(entry.path for entry in entries if entry.is_file)
        base = src.rstrip("/")
        dst = _host_path(manifest, step.dst)
        if step.archive:
            with open_atomic(dst) as handle:
                archive = TreeArchive(handle, PurePosixPath(src).name or "root")
                try:
                    await asyncio.to_thread(archive.add_directories, directories)
                    for name in files:
                        data = await self._read_artifact(sandbox, f"{base}/{name}")
                        await asyncio.to_thread(archive.add_file, name, data)
                finally:
                    await asyncio.to_thread(archive.close)
            return
        staging = dst.with_name(f".{dst.name}.staging")
        await asyncio.to_thread(_prepare_staging, staging, directories)
        try:
            for name in files:
                data = await self._read_artifact(sandbox, f"{base}/{name}")
                await asyncio.to_thread(_write_staged, staging / name, data)
        except Exception:
            await asyncio.to_thread(remove_tree, staging)
            raise
        await asyncio.to_thread(_swap_directory, staging, dst)

    async def _collect(self, sandbox: Sandbox, manifest: TrialManifest, step: ResultCollector) -> int | None:
        input_dir = _host_path(manifest, step.input)
        if not input_dir.is_dir():
            raise ArtifactMissing(str(input_dir))
        spec = sandbox.spec.with_input(
            sandbox_id=f"{sandbox.sandbox_id}-c", host_dir=input_dir, guest_path=step.mount_at
        )
        env, argv = split_command(step.command)
        collector = await self._backend.create(spec)
        try:
            outcome = await collector.run_command(
                GuestCommand(argv=argv, env=env),
                timeout_s=step.timeout,
                kill_grace_s=self._kill_grace_s,
                capture_stdout=True,
            )
        finally:
            await asyncio.shield(self._backend.destroy(collector))
        if outcome.timed_out:
            raise StepFailed(f"result collector exceeded {step.timeout}s")
        if outcome.exit_code != 0:
            raise StepFailed(f"result collector exited with status {outcome.exit_code}", code=outcome.exit_code)
        await asyncio.to_thread(write_bytes_atomic, _host_path(manifest, step.dst), outcome.stdout)
        return outcome.exit_code

    def _merge_json(self, manifest: TrialManifest, step: MergeJson) -> None:
        src = _host_path(manifest, step.src)
        if not src.exists():
            raise ArtifactMissing(str(src))
        try:
            value = read_json(src)
        except ValueError as exc:
            raise StepFailed(f"{src} is not valid JSON: {exc}") from exc
        dst = _host_path(manifest, step.dst)
        merged: dict[str, Any] = {}
        if dst.exists():
            try:
                existing = read_json(dst)
            except ValueError as exc:
                raise StepFailed(f"{dst} is not valid JSON: {exc}") from exc
            if not isinstance(existing, dict):
                raise StepFailed(f"{dst} does not hold a JSON object")
            merged.update(existing)
        merged[step.tag] = value
        write_json_atomic(dst, merged)


class TreeArchive:
    """Gzip-compressed tar written entry by entry with normalised metadata.

    The gzip header carries no timestamp, so identical trees give identical bytes
    as long as entries are added in the same order.
    """

    def __init__(self, fileobj: IO[bytes], root_name: str) -> None:
        self._root_name = root_name
        self._compressed = gzip.GzipFile(
            filename="", mode="wb", fileobj=fileobj, compresslevel=ARCHIVE_COMPRESSLEVEL, mtime=0
        )
        self._tar = tarfile.open(fileobj=self._compressed, mode="w", format=tarfile.GNU_FORMAT)
        self._add_dir(root_name)

    def _add_dir(self, name: str) -> None:
        info = tarfile.TarInfo(name)
        info.type = tarfile.DIRTYPE
        info.mode = 0o755
        self._tar.addfile(info)

    def add_directories(self, names: list[str]) -> None:
        for name in names:
            self._add_dir(f"{self._root_name}/{name}")

    def add_file(self, name: str, data: bytes) -> None:
        info = tarfile.TarInfo(f"{self._root_name}/{name}")
        info.size = len(data)
        info.mode = 0o644
        self._tar.addfile(info, io.BytesIO(data))

    def close(self) -> None:
        self._tar.close()
        self._compressed.close()


def build_archive(root_name: str, directories: list[str], files: list[tuple[str, bytes]]) -> bytes:
    buffer = io.BytesIO()
    archive = TreeArchive(buffer, root_name)
    archive.add_directories(sorted(directories))
    for name, data in sorted(files):
        archive.add_file(name, data)
    archive.close()
    return buffer.getvalue()


def _prepare_staging(staging: Path, directories: list[str]) -> None:
    if staging.exists():
        remove_tree(staging)
    staging.mkdir(parents=True)
    for name in directories:
        (staging / name).mkdir(parents=True, exist_ok=True)


def _write_staged(target: Path, data: bytes) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(data)


def _swap_directory(staging: Path, dst: Path) -> None:
    if dst.exists():
        remove_tree(dst)
    os.replace(staging, dst)


def is_orchestrator_error(exc: BaseException) -> bool:
    """True for failures that are not the trial's fault: a lost backend or a full or read-only host disk."""
    if isinstance(exc, BackendUnavailable):
        return True
    return isinstance(exc, OSError) and exc.errno in HOST_FATAL_ERRNOS


def _failure_reason(exc: Exception) -> str:
    if isinstance(exc, StepFailed):
        return exc.reason
    if isinstance(exc, ProvisionError):
        return f"collector sandbox: {exc.reason}"
    if isinstance(exc, (ArtifactMissing, SandboxError, ConnectionError)):
        return str(exc) or type(exc).__name__
    return f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__


def dump_result(manifest: TrialManifest, outcome: ExecutionOutcome, **extra: Any) -> dict[str, Any]:
    return {"trial_id": manifest.trial_id, "coordinates": dict(manifest.coordinates), **outcome.to_dict(), **extra}


__all__ = [
    "ArtifactMissing",
    "ExecutionOutcome",
    "HOST_FATAL_ERRNOS",
    "StepFailed",
    "StepRecord",
    "TaskGraphExecutor",
    "TimedOut",
    "TreeArchive",
    "TrialFailure",
    "build_archive",
    "dump_result",
    "is_orchestrator_error",
]
