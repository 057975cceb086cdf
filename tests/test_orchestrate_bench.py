import asyncio
from pathlib import Path
import sys

import pytest

from bench_harness.orchestrate.bench import run_bounded, start_process, terminate_process


def _py(code: str) -> list[str]:
    return [sys.executable, "-c", code]


@pytest.mark.asyncio
async def test_run_bounded_writes_stdout_sink(tmp_path: Path) -> None:
    proc = await start_process(
        _py("print('hello')"), cwd=tmp_path, env=None, stdout_path=tmp_path / "logs" / "out.log", stderr_path=None
    )

    result, stdout = await run_bounded(proc, timeout_s=10, kill_grace_s=1)

    assert result.exit_code == 0
    assert result.terminated is False
    assert stdout == b""
    assert (tmp_path / "logs" / "out.log").read_text(encoding="utf-8") == "hello\n"


@pytest.mark.asyncio
async def test_run_bounded_captures_stdout(tmp_path: Path) -> None:
    proc = await start_process(
        _py("print('{}')"), cwd=tmp_path, env=None, stdout_path=None, stderr_path=None, capture_stdout=True
    )

    result, stdout = await run_bounded(proc, timeout_s=10, kill_grace_s=1, capture_stdout=True)

    assert result.exit_code == 0
    assert stdout == b"{}\n"


@pytest.mark.asyncio
async def test_run_bounded_interrupts_at_timeout(tmp_path: Path) -> None:
    proc = await start_process(
        _py("import time; time.sleep(30)"), cwd=tmp_path, env=None, stdout_path=None, stderr_path=None
    )

    result, _ = await run_bounded(proc, timeout_s=0.5, kill_grace_s=2)

    assert result.terminated is True
    assert result.exit_code != 0
    assert result.duration_s < 10


@pytest.mark.asyncio
async def test_terminate_escalates_when_interrupt_is_ignored(tmp_path: Path) -> None:
    proc = await start_process(
        _py("import signal, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); print('ready', flush=True); time.sleep(30)"),
        cwd=tmp_path,
        env=None,
        stdout_path=tmp_path / "out.log",
        stderr_path=None,
    )
    while "ready" not in (tmp_path / "out.log").read_text(encoding="utf-8"):
        await asyncio.sleep(0.05)

    await terminate_process(proc, term_timeout_s=0.3)

    assert proc.process.returncode == -9
    assert proc.terminated is True


@pytest.mark.asyncio
async def test_cancellation_kills_the_process(tmp_path: Path) -> None:
    proc = await start_process(
        _py("import time; time.sleep(30)"), cwd=tmp_path, env=None, stdout_path=None, stderr_path=None
    )
    task = asyncio.create_task(run_bounded(proc, timeout_s=None, kill_grace_s=1))
    await asyncio.sleep(0.2)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert proc.process.returncode is not None
