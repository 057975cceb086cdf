"""Process sandbox: each trial gets a private directory standing in for ``/``.

Guest paths are rebased under the sandbox root and commands run as host
processes in their own session. There is no kernel-level isolation, so this
backend is meant for development, CI and tests.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from pathlib import Path
import shutil
import signal

from bench_harness.orchestrate.bench import ManagedProcess, run_bounded, start_process, terminate_process
from bench_harness.orchestrate.config import HarnessConfig
from bench_harness.orchestrate.images import ImageNotFound, ImageRegistry, duplicate_tree
from bench_harness.orchestrate.sandbox import (
    CommandOutcome,
    GuestCommand,
    GuestEntry,
    ProvisionError,
    SandboxSpec,
    VolumeMount,
)
from bench_harness.utils.pathing import rebase_guest_path, remove_tree

logger = logging.getLogger(__name__)

# Shell conventions for a program that is missing or cannot be executed.
EXIT_NOT_FOUND = 127
EXIT_NOT_EXECUTABLE = 126


def _append_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a", encoding="utf-8") as handle:
        handle.write(text)


class LocalSandbox:
    def __init__(
        self,
        spec: SandboxSpec,
        *,
        private_dir: Path,
        resources: contextlib.AsyncExitStack,
        enforce_limits: bool = False,
    ) -> None:
        self.sandbox_id = spec.sandbox_id
        self.spec = spec
        self.private_dir = private_dir
        self.root = private_dir / "root"
        self.log_dir = private_dir / "logs"
        self._resources = resources
        self._enforce_limits = enforce_limits
        self._processes: set[ManagedProcess] = set()
        self._command_count = 0
        self.closed = False

    def host_path(self, guest_path: str) -> Path:
        return rebase_guest_path(self.root, guest_path)

    def _program(self, program: str) -> str:
        if program.startswith("/"):
            rebased = self.host_path(program)
            if rebased.exists():
                return str(rebased)
        return program

    def _environment(self, command: GuestCommand) -> dict[str, str]:
        env = {
            "PATH": os.environ.get("PATH", os.defpath),
            "HOME": str(self.root),
            "BENCH_HARNESS_ROOT": str(self.root),
        }
        env.update(self.spec.env)
        env.update(command.env)
        return env

    def _preexec(self):
        if not self._enforce_limits:
            return None
        limit = self.spec.machine.mem_size_mib * 1024 * 1024

        def apply_limits() -> None:
            import resource

            resource.setrlimit(resource.RLIMIT_AS, (limit, limit))

        return apply_limits

    async def run_command(
        self,
        command: GuestCommand,
        *,
        timeout_s: float | None = None,
        kill_grace_s: float = 5.0,
        capture_stdout: bool = False,
    ) -> CommandOutcome:
        self._command_count += 1
        index = self._command_count
        stdout_path = (
            self.host_path(command.stdout) if command.stdout else self.log_dir / f"cmd-{index}.stdout"
        )
        stderr_path = (
            self.host_path(command.stderr) if command.stderr else self.log_dir / f"cmd-{index}.stderr"
        )
        cwd = self.host_path(command.cwd or self.spec.workdir)
        cwd.mkdir(parents=True, exist_ok=True)
        argv = [self._program(command.argv[0]), *command.argv[1:]]
        try:
            proc = await start_process(
                argv,
                cwd=cwd,
                env=self._environment(command),
                stdout_path=stdout_path,
                stderr_path=stderr_path,
                capture_stdout=capture_stdout,
                preexec_fn=self._preexec(),
            )
        except (FileNotFoundError, PermissionError) as exc:
            exit_code = EXIT_NOT_FOUND if isinstance(exc, FileNotFoundError) else EXIT_NOT_EXECUTABLE
            logger.info("Sandbox %s could not start %s: %s", self.sandbox_id, command.argv[0], exc)
            await asyncio.to_thread(_append_text, stderr_path, f"{command.argv[0]}: {exc.strerror or exc}\n")
            return CommandOutcome(exit_code=exit_code, duration_s=0.0)
        self._processes.add(proc)
        try:
            result, stdout = await run_bounded(
                proc, timeout_s=timeout_s, kill_grace_s=kill_grace_s, capture_stdout=capture_stdout
            )
        finally:
            self._processes.discard(proc)
        return CommandOutcome(
            exit_code=result.exit_code,
            duration_s=result.duration_s,
            timed_out=result.terminated,
            stdout=stdout,
        )

    async def read_file(self, path: str) -> bytes:
        return await asyncio.to_thread(self._read_file, path)

    def _read_file(self, path: str) -> bytes:
        target = self.host_path(path)
        if not target.is_file():
            raise FileNotFoundError(f"not a regular file: {path}")
        return target.read_bytes()

    async def list_tree(self, path: str) -> list[GuestEntry]:
        return await asyncio.to_thread(self._list_tree, path)

    def _list_tree(self, path: str) -> list[GuestEntry]:
        base = self.host_path(path)
        if not base.exists():
            raise FileNotFoundError(path)
        if base.is_file():
            return [GuestEntry(path=base.name, is_file=True, size=base.stat().st_size)]
        entries: list[GuestEntry] = []
        for dirpath, dirnames, filenames in os.walk(base, followlinks=True):
            dirnames.sort()
            current = Path(dirpath)
            for dirname in dirnames:
                rel = (current / dirname).relative_to(base).as_posix()
                entries.append(GuestEntry(path=rel, is_file=False))
            for filename in sorted(filenames):
                full = current / filename
                rel = full.relative_to(base).as_posix()
                entries.append(GuestEntry(path=rel, is_file=True, size=full.stat().st_size))
        return entries

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        for proc in list(self._processes):
            await terminate_process(proc, first_signal=signal.SIGKILL, term_timeout_s=0.0)
        await self._resources.aclose()


class LocalBackend:
    name = "local"

    def __init__(self, config: HarnessConfig, registry: ImageRegistry) -> None:
        self._config = config
        self._registry = registry
        self._root = config.sandbox_root / self.name

    async def create(self, spec: SandboxSpec) -> LocalSandbox:
        private_dir = self._root / spec.sandbox_id
        async with contextlib.AsyncExitStack() as stack:
            if private_dir.exists():
                logger.warning("Removing stale sandbox directory %s", private_dir)
                await asyncio.to_thread(remove_tree, private_dir)
            private_dir.mkdir(parents=True)
            stack.push_async_callback(asyncio.to_thread, remove_tree, private_dir)
            root = private_dir / "root"
            root.mkdir()
            (private_dir / "logs").mkdir()
            for mount in spec.volumes:
                if mount.is_root:
                    # Local sandboxes share the host root filesystem.
                    continue
                await asyncio.to_thread(self.attach_volume, private_dir, mount)
            resources = stack.pop_all()
        logger.debug("Created local sandbox %s at %s", spec.sandbox_id, private_dir)
        return LocalSandbox(
            spec,
            private_dir=private_dir,
            resources=resources,
            enforce_limits=self._config.local.enforce_limits,
        )

    def attach_volume(self, private_dir: Path, mount: VolumeMount) -> None:
        target = rebase_guest_path(private_dir / "root", mount.guest_path)
        if target.exists() or target.is_symlink():
            raise ProvisionError(f"guest path {mount.guest_path} is already mounted")
        target.parent.mkdir(parents=True, exist_ok=True)
        if mount.host_path is not None:
            if not mount.host_path.exists():
                raise ProvisionError(f"input volume not found: {mount.host_path}")
            os.symlink(mount.host_path.resolve(), target)
            return
        assert mount.image is not None
        try:
            image = self._registry.resolve(mount.image)
        except ImageNotFound as exc:
            raise ProvisionError(f"image not found: {mount.image}") from exc
        if mount.mode == "read_only":
            os.symlink(image.path, target)
        elif image.is_tree:
            duplicate_tree(image.path, target)
        else:
            shutil.copy2(image.path, target)
            os.chmod(target, os.stat(target).st_mode | 0o200)

    async def destroy(self, sandbox: LocalSandbox) -> None:
        await sandbox.close()
        logger.debug("Destroyed local sandbox %s", sandbox.sandbox_id)

    def cleanup_orphans(self) -> list[str]:
        if not self._root.exists():
            return []
        removed: list[str] = []
        for entry in sorted(self._root.iterdir()):
            remove_tree(entry)
            removed.append(entry.name)
        return removed


__all__ = ["EXIT_NOT_EXECUTABLE", "EXIT_NOT_FOUND", "LocalBackend", "LocalSandbox"]
