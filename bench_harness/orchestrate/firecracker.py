"""MicroVM sandbox backend driving the Firecracker VMM over its API socket."""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
import logging
from pathlib import Path
import shutil
import signal
import time
from typing import Any, Mapping

import httpx

from bench_harness.orchestrate.agent import AgentError, AgentSandbox, connect_with_retry
from bench_harness.orchestrate.config import HarnessConfig
from bench_harness.orchestrate.images import ImageError, ImageNotFound, ImageRegistry, make_ext4
from bench_harness.utils.pathing import remove_tree
from bench_harness.orchestrate.sandbox import (
    BackendUnavailable,
    ProvisionError,
    ProvisionTimeout,
    SandboxSpec,
    VolumeMount,
)

logger = logging.getLogger(__name__)

API_SOCKET_NAME = "firecracker-api.socket"
VSOCK_NAME = "vm.vsock"
GUEST_CID = 3
REBOOT_WAIT_S = 10.0


class FirecrackerApiError(ProvisionError):
    """Raised when the VMM rejects a configuration request."""


@dataclass(frozen=True)
class DriveSpec:
    drive_id: str
    path_on_host: Path
    is_root_device: bool
    is_read_only: bool

    def payload(self) -> dict[str, Any]:
        return {
            "drive_id": self.drive_id,
            "path_on_host": str(self.path_on_host),
            "is_root_device": self.is_root_device,
            "is_read_only": self.is_read_only,
        }


class FirecrackerApi:
    """Minimal client for the VMM's configuration API on a unix socket."""

    def __init__(self, socket_path: Path, *, timeout_s: float = 5.0) -> None:
        transport = httpx.HTTPTransport(uds=str(socket_path))
        self._client = httpx.Client(transport=transport, base_url="http://localhost", timeout=timeout_s)

    def put(self, path: str, payload: Mapping[str, Any]) -> None:
        try:
            response = self._client.put(path, json=dict(payload))
        except httpx.HTTPError as exc:
            raise FirecrackerApiError(f"PUT {path} failed: {exc}") from exc
        if response.status_code >= 400:
            raise FirecrackerApiError(f"PUT {path} rejected ({response.status_code}): {_api_error(response)}")

    def close(self) -> None:
        self._client.close()


def _api_error(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text.strip() or "<empty>"
    if isinstance(body, Mapping):
        return str(body.get("fault_message") or body.get("error") or body)
    return str(body)


def vm_config_requests(
    *,
    kernel: Path,
    boot_args: str,
    spec: SandboxSpec,
    drives: list[DriveSpec],
    vsock_path: Path,
) -> list[tuple[str, dict[str, Any]]]:
    """Ordered API calls that configure and start one microVM."""
    machine = spec.machine
    calls: list[tuple[str, dict[str, Any]]] = [
        ("/boot-source", {"kernel_image_path": str(kernel), "boot_args": boot_args}),
        (
            "/machine-config",
            {"vcpu_count": machine.vcpu_count, "mem_size_mib": machine.mem_size_mib, "smt": machine.smt},
        ),
    ]
    for drive in drives:
        calls.append((f"/drives/{drive.drive_id}", drive.payload()))
    calls.append(("/vsock", {"guest_cid": GUEST_CID, "uds_path": str(vsock_path)}))
    calls.append(("/actions", {"action_type": "InstanceStart"}))
    return calls


@dataclass
class _VmState:
    process: asyncio.subprocess.Process
    private_dir: Path
    resources: contextlib.AsyncExitStack


class FirecrackerBackend:
    name = "firecracker"

    def __init__(self, config: HarnessConfig, registry: ImageRegistry) -> None:
        self._config = config
        self._registry = registry
        self._root = config.sandbox_root / self.name

    def binary(self) -> str:
        name = self._config.firecracker.binary
        if name in self._config.images:
            try:
                return str(self._registry.resolve(name).path)
            except ImageNotFound as exc:
                raise BackendUnavailable(f"firecracker binary image not built: {name}") from exc
        found = shutil.which(name)
        if found is None:
            raise BackendUnavailable(f"firecracker binary not found: {name}")
        return found

    def kernel(self) -> Path:
        name = self._config.firecracker.kernel
        if not name:
            raise BackendUnavailable("firecracker.kernel is not configured.")
        try:
            return self._registry.resolve(name).path
        except ImageNotFound as exc:
            raise ProvisionError(f"image not found: {name}") from exc

    async def create(self, spec: SandboxSpec) -> AgentSandbox:
        fc_cfg = self._config.firecracker
        binary = self.binary()
        private_dir = self._root / spec.sandbox_id
        api_socket = private_dir / API_SOCKET_NAME
        vsock_path = private_dir / VSOCK_NAME
        async with contextlib.AsyncExitStack() as stack:
            if private_dir.exists():
                await asyncio.to_thread(remove_tree, private_dir)
            private_dir.mkdir(parents=True)
            stack.push_async_callback(asyncio.to_thread, remove_tree, private_dir)

            kernel = self.kernel()
            drives = [
                await asyncio.to_thread(self.attach_volume, private_dir, mount)
                for mount in spec.volumes
            ]
            if not any(drive.is_root_device for drive in drives):
                raise ProvisionError(f"instance {spec.instance!r} has no rootfs for the microVM backend")

            log_dir = spec.log_dir or private_dir
            log_dir.mkdir(parents=True, exist_ok=True)
            stdout = open(log_dir / f"{spec.sandbox_id}.vmm.stdout", "wb")
            stack.callback(stdout.close)
            stderr = open(log_dir / f"{spec.sandbox_id}.vmm.stderr", "wb")
            stack.callback(stderr.close)
            try:
                process = await asyncio.create_subprocess_exec(
                    binary,
                    "--api-sock",
                    str(api_socket),
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=stdout,
                    stderr=stderr,
                    start_new_session=True,
                )
            except OSError as exc:
                raise BackendUnavailable(f"failed to start {binary}: {exc}") from exc
            stack.push_async_callback(_kill_vmm, process)

            await _wait_for_socket(api_socket, process, timeout_s=fc_cfg.api_timeout_s)
            api = FirecrackerApi(api_socket, timeout_s=fc_cfg.api_timeout_s)
            try:
                for path, payload in vm_config_requests(
                    kernel=kernel, boot_args=fc_cfg.boot_args, spec=spec, drives=drives, vsock_path=vsock_path
                ):
                    await asyncio.to_thread(api.put, path, payload)
            finally:
                api.close()

            if spec.boot_delay_s:
                await asyncio.sleep(spec.boot_delay_s)
            try:
                agent = await connect_with_retry(
                    str(vsock_path), timeout_s=spec.boot_timeout_s, vsock_port=fc_cfg.agent_port
                )
            except TimeoutError as exc:
                raise ProvisionTimeout(f"microVM agent not ready within {spec.boot_timeout_s}s: {exc}") from exc
            stack.push_async_callback(agent.close)
            try:
                await agent.add_entropy(spec.entropy)
            except AgentError as exc:
                raise ProvisionError(f"failed to seed guest entropy: {exc}") from exc
            stack.push_async_callback(_reboot_and_wait, agent, process)
            resources = stack.pop_all()
        logger.debug("Booted microVM %s (pid=%s)", spec.sandbox_id, process.pid)
        return AgentSandbox(spec, agent, backend_state=_VmState(process, private_dir, resources))

    def attach_volume(self, private_dir: Path, mount: VolumeMount) -> DriveSpec:
        """Materialise ``mount`` as a block device on the host and describe it for the VMM."""
        drive_id = mount.name
        if mount.host_path is not None:
            if not mount.host_path.is_dir():
                raise ProvisionError(f"input volume not found: {mount.host_path}")
            target = private_dir / f"{drive_id}.ext4"
            try:
                make_ext4(mount.host_path, target, label=drive_id)
            except ImageError as exc:
                raise ProvisionError(str(exc)) from exc
            return DriveSpec(drive_id, target, is_root_device=False, is_read_only=True)
        assert mount.image is not None
        try:
            image = self._registry.resolve(mount.image)
            source = self._registry.ext4_image(image)
        except ImageNotFound as exc:
            raise ProvisionError(f"image not found: {mount.image}") from exc
        except ImageError as exc:
            raise ProvisionError(str(exc)) from exc
        if mount.mode == "read_only":
            return DriveSpec(drive_id, source, is_root_device=mount.is_root, is_read_only=True)
        copy_path = private_dir / f"{drive_id}.ext4"
        shutil.copyfile(source, copy_path)
        return DriveSpec(drive_id, copy_path.resolve(), is_root_device=mount.is_root, is_read_only=False)

    async def destroy(self, sandbox: AgentSandbox) -> None:
        state = sandbox.backend_state
        if not isinstance(state, _VmState):
            return
        await state.resources.aclose()
        logger.debug("Destroyed microVM %s", sandbox.sandbox_id)

    def cleanup_orphans(self) -> list[str]:
        if not self._root.exists():
            return []
        removed: list[str] = []
        for entry in sorted(self._root.iterdir()):
            remove_tree(entry)
            removed.append(entry.name)
        return removed


async def _wait_for_socket(path: Path, process: asyncio.subprocess.Process, *, timeout_s: float) -> None:
    deadline = time.monotonic() + timeout_s
    while not path.exists():
        if process.returncode is not None:
            raise ProvisionError(f"firecracker exited early with status {process.returncode}")
        if time.monotonic() >= deadline:
            raise ProvisionTimeout(f"firecracker API socket did not appear within {timeout_s}s")
        await asyncio.sleep(0.1)


async def _reboot_and_wait(agent, process: asyncio.subprocess.Process) -> None:
    """Ask the guest to shut down cleanly and give the VMM time to exit on its own."""
    try:
        await agent.reboot()
    except (AgentError, OSError, asyncio.TimeoutError) as exc:
        logger.debug("Guest reboot request failed: %s", exc)
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=REBOOT_WAIT_S)
    except asyncio.TimeoutError:
        logger.debug("VMM pid %s still running after reboot request", process.pid)


async def _kill_vmm(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        try:
            process.send_signal(signal.SIGKILL)
        except ProcessLookupError:
            pass
    await process.wait()


__all__ = [
    "DriveSpec",
    "FirecrackerApi",
    "FirecrackerApiError",
    "FirecrackerBackend",
    "vm_config_requests",
]
