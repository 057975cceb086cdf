"""Host process launch, bounded waiting and termination."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import IO, Callable, Mapping, Sequence
import asyncio
import os
import signal
import time


@dataclass(frozen=True)
class ProcessResult:
    exit_code: int
    duration_s: float
    terminated: bool = False


# Hashed by identity so live processes can be tracked in sets.
@dataclass(eq=False)
class ManagedProcess:
    command: list[str]
    process: asyncio.subprocess.Process
    start_time: float
    stdout_handle: IO[bytes] | None
    stderr_handle: IO[bytes] | None
    terminated: bool = False


def _open_sink(path: Path | None, *, append: bool = False) -> IO[bytes] | None:
    if path is None:
        return None
    path.parent.mkdir(parents=True, exist_ok=True)
    return open(path, "ab" if append else "wb")


async def start_process(
    command: Sequence[str],
    *,
    cwd: Path,
    env: Mapping[str, str] | None,
    stdout_path: Path | None,
    stderr_path: Path | None,
    capture_stdout: bool = False,
    preexec_fn: Callable[[], None] | None = None,
) -> ManagedProcess:
    """Start ``command`` in its own session so the whole process group can be signalled."""
    stdout_handle = None if capture_stdout else _open_sink(stdout_path)
    stderr_handle = _open_sink(stderr_path)
    try:
        process = await asyncio.create_subprocess_exec(
            *list(command),
            cwd=str(cwd),
            env=dict(env) if env is not None else None,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE if capture_stdout else (stdout_handle or asyncio.subprocess.DEVNULL),
            stderr=stderr_handle or asyncio.subprocess.DEVNULL,
            start_new_session=True,
            preexec_fn=preexec_fn,
        )
    except Exception:
        for handle in (stdout_handle, stderr_handle):
            if handle is not None:
                handle.close()
        raise
    return ManagedProcess(
        command=list(command),
        process=process,
        start_time=time.monotonic(),
        stdout_handle=stdout_handle,
        stderr_handle=stderr_handle,
    )


def _close_handles(proc: ManagedProcess) -> None:
    for handle in (proc.stdout_handle, proc.stderr_handle):
        if handle is not None:
            handle.close()


async def wait_process(proc: ManagedProcess) -> ProcessResult:
    try:
        await proc.process.wait()
    finally:
        _close_handles(proc)
    duration = time.monotonic() - proc.start_time
    exit_code = proc.process.returncode if proc.process.returncode is not None else 0
    return ProcessResult(exit_code=exit_code, duration_s=duration, terminated=proc.terminated)


async def communicate_process(proc: ManagedProcess) -> tuple[ProcessResult, bytes]:
    """Wait for a process started with ``capture_stdout=True`` and return its stdout."""
    try:
        stdout, _ = await proc.process.communicate()
    finally:
        _close_handles(proc)
    duration = time.monotonic() - proc.start_time
    exit_code = proc.process.returncode if proc.process.returncode is not None else 0
    return ProcessResult(exit_code=exit_code, duration_s=duration, terminated=proc.terminated), stdout or b""


async def terminate_process(
    proc: ManagedProcess,
    *,
    first_signal: int = signal.SIGTERM,
    term_timeout_s: float = 5.0,
) -> None:
    """Signal the process group, escalating to SIGKILL after ``term_timeout_s``."""
    if proc.process.returncode is not None:
        return
    proc.terminated = True
    pid = proc.process.pid
    try:
        os.killpg(pid, first_signal)
    except ProcessLookupError:
        return
    except PermissionError:
        proc.process.send_signal(first_signal)
    try:
        await asyncio.wait_for(proc.process.wait(), timeout=term_timeout_s)
        return
    except asyncio.TimeoutError:
        pass
    try:
        os.killpg(pid, signal.SIGKILL)
    except ProcessLookupError:
        return
    except PermissionError:
        proc.process.kill()
    await proc.process.wait()


async def run_bounded(
    proc: ManagedProcess,
    *,
    timeout_s: float | None,
    kill_grace_s: float,
    capture_stdout: bool = False,
) -> tuple[ProcessResult, bytes]:
    """Wait for ``proc``; at ``timeout_s`` send SIGINT, then SIGKILL after ``kill_grace_s``.

    Cancellation kills the process group before propagating.
    """
    waiter = asyncio.ensure_future(
        communicate_process(proc) if capture_stdout else _wait_no_output(proc)
    )
    try:
        done, _ = await asyncio.wait({waiter}, timeout=timeout_s)
        if not done:
            await terminate_process(proc, first_signal=signal.SIGINT, term_timeout_s=kill_grace_s)
        return await waiter
    except asyncio.CancelledError:
        await terminate_process(proc, first_signal=signal.SIGKILL, term_timeout_s=0.0)
        waiter.cancel()
        raise


async def _wait_no_output(proc: ManagedProcess) -> tuple[ProcessResult, bytes]:
    return await wait_process(proc), b""


__all__ = [
    "ManagedProcess",
    "ProcessResult",
    "communicate_process",
    "run_bounded",
    "start_process",
    "terminate_process",
    "wait_process",
]
