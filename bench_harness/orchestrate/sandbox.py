"""Sandbox capability interface shared by the local, container and microVM backends.

The executor only ever talks to these protocols; the backend is picked by
name from configuration via ``create_backend``.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Mapping, Protocol, Sequence, runtime_checkable

from bench_harness.orchestrate.config import HarnessConfig, InstanceConfig, MachineConfig, MountMode


class ProvisionError(RuntimeError):
    """Raised when a sandbox cannot be created; partial resources are already released."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class ProvisionTimeout(ProvisionError):
    """Raised when a sandbox does not become ready within its boot timeout."""


class BackendUnavailable(RuntimeError):
    """Raised when the backend itself cannot be used at all (daemon down, binary missing)."""


class SandboxError(RuntimeError):
    """Raised when a running sandbox stops responding to requests."""


@dataclass(frozen=True)
class VolumeMount:
    name: str
    guest_path: str
    mode: MountMode = "read_only"
    image: str | None = None
    host_path: Path | None = None
    is_root: bool = False

    def __post_init__(self) -> None:
        if (self.image is None) == (self.host_path is None):
            raise ValueError(f"Volume {self.name!r} needs exactly one of image or host_path.")
        if self.host_path is not None and self.mode != "read_only":
            raise ValueError(f"Host directory volume {self.name!r} must be read_only.")


@dataclass(frozen=True)
class SandboxSpec:
    sandbox_id: str
    instance: str
    machine: MachineConfig
    volumes: tuple[VolumeMount, ...]
    entropy: tuple[int, ...]
    env: Mapping[str, str]
    workdir: str = "/"
    boot_timeout_s: float = 30.0
    boot_delay_s: float = 0.0
    labels: Mapping[str, str] = field(default_factory=dict)
    log_dir: Path | None = None

    def with_input(self, *, sandbox_id: str, host_dir: Path, guest_path: str) -> "SandboxSpec":
        """Same images and limits, fresh scratch, plus ``host_dir`` attached read-only."""
        volumes = tuple(volume for volume in self.volumes if volume.guest_path != guest_path)
        volumes += (VolumeMount(name="input", guest_path=guest_path, host_path=host_dir),)
        return replace(self, sandbox_id=sandbox_id, volumes=volumes)


@dataclass(frozen=True)
class GuestCommand:
    argv: Sequence[str]
    env: Mapping[str, str] = field(default_factory=dict)
    stdout: str | None = None
    stderr: str | None = None
    cwd: str | None = None


@dataclass(frozen=True)
class CommandOutcome:
    exit_code: int | None
    duration_s: float
    timed_out: bool = False
    stdout: bytes = b""

    @property
    def succeeded(self) -> bool:
        return not self.timed_out and self.exit_code == 0


@dataclass(frozen=True)
class GuestEntry:
    path: str
    is_file: bool
    size: int = 0


class Sandbox(Protocol):
    sandbox_id: str
    spec: SandboxSpec

    async def run_command(
        self,
        command: GuestCommand,
        *,
        timeout_s: float | None = None,
        kill_grace_s: float = 5.0,
        capture_stdout: bool = False,
    ) -> CommandOutcome: ...

    async def read_file(self, path: str) -> bytes: ...

    async def list_tree(self, path: str) -> list[GuestEntry]: ...


@runtime_checkable
class SandboxBackend(Protocol):
    name: str

    async def create(self, spec: SandboxSpec) -> Sandbox: ...

    def attach_volume(self, private_dir: Path, mount: VolumeMount) -> object:
        """Prepare the host side of one volume for the sandbox being built in ``private_dir``."""
        ...

    async def destroy(self, sandbox: Sandbox) -> None: ...

    def cleanup_orphans(self) -> list[str]: ...


def entropy_hex(entropy: Sequence[int]) -> str:
    return "".join(f"{value:08x}" for value in entropy)


def guest_environment(
    *,
    base: Mapping[str, str],
    trial_vars: Mapping[str, str],
    entropy: Sequence[int],
    trial_id: str,
) -> dict[str, str]:
    """Layer dotenv values, trial vars and the fixed determinism settings."""
    env = {**base, **trial_vars}
    env.update(
        {
            "PYTHONHASHSEED": "0",
            "LC_ALL": "C",
            "TZ": "UTC",
            "BENCH_HARNESS_ENTROPY": entropy_hex(entropy),
            "BENCH_HARNESS_TRIAL": trial_id,
        }
    )
    return env


def build_sandbox_spec(
    *,
    sandbox_id: str,
    instance_name: str,
    instance: InstanceConfig,
    config: HarnessConfig,
    env: Mapping[str, str],
    labels: Mapping[str, str] | None = None,
    log_dir: Path | None = None,
) -> SandboxSpec:
    volumes: list[VolumeMount] = []
    if instance.rootfs is not None:
        volumes.append(
            VolumeMount(
                name="rootfs",
                guest_path="/",
                mode=instance.rootfs.mount_as,
                image=instance.rootfs.image,
                is_root=True,
            )
        )
    for drive in instance.drives:
        volumes.append(
            VolumeMount(name=drive.name, guest_path=drive.guest_path, mode=drive.mount_as, image=drive.image)
        )
    entropy = tuple(instance.entropy if instance.entropy is not None else config.entropy)
    return SandboxSpec(
        sandbox_id=sandbox_id,
        instance=instance_name,
        machine=instance.machine,
        volumes=tuple(volumes),
        entropy=entropy,
        env=dict(env),
        workdir=instance.workdir,
        boot_timeout_s=instance.boot_timeout_s,
        boot_delay_s=instance.boot_delay_s,
        labels=dict(labels or {}),
        log_dir=log_dir,
    )


def create_backend(config: HarnessConfig, registry, name: str | None = None) -> SandboxBackend:
    """Instantiate the backend selected by ``name`` (or ``config.backend``)."""
    backend = name or config.backend
    if backend == "local":
        from bench_harness.orchestrate.local import LocalBackend

        return LocalBackend(config, registry)
    if backend == "docker":
        from bench_harness.orchestrate.docker_backend import DockerBackend

        return DockerBackend(config, registry)
    if backend == "firecracker":
        from bench_harness.orchestrate.firecracker import FirecrackerBackend

        return FirecrackerBackend(config, registry)
    raise ValueError(f"Unknown sandbox backend {backend!r} (expected local, docker or firecracker)")


__all__ = [
    "BackendUnavailable",
    "CommandOutcome",
    "GuestCommand",
    "GuestEntry",
    "ProvisionError",
    "ProvisionTimeout",
    "Sandbox",
    "SandboxBackend",
    "SandboxError",
    "SandboxSpec",
    "VolumeMount",
    "build_sandbox_spec",
    "create_backend",
    "entropy_hex",
    "guest_environment",
]
