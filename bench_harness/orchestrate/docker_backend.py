"""Container sandbox backend built on the docker SDK."""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
import logging
import os
from pathlib import Path
import threading
from typing import Mapping

from bench_harness.orchestrate.agent import AgentSandbox, connect_with_retry
from bench_harness.orchestrate.config import HarnessConfig
from bench_harness.orchestrate.images import ImageNotFound, ImageRegistry, duplicate_tree
from bench_harness.orchestrate.sandbox import (
    BackendUnavailable,
    ProvisionError,
    ProvisionTimeout,
    SandboxSpec,
    VolumeMount,
)
from bench_harness.utils.pathing import remove_tree, sanitize_name

logger = logging.getLogger(__name__)

ORCHESTRATOR_LABEL_KEY = "bench_harness.managed"
SANDBOX_LABEL_KEY = "bench_harness.sandbox"


class DockerLaunchError(ProvisionError):
    """Raised when container launch fails."""


def normalize_volumes(volumes: object) -> dict[str, dict[str, str]]:
    """Turn ``host:container[:ro|rw]`` strings into the docker SDK volume mapping."""
    if volumes is None:
        return {}
    if isinstance(volumes, Mapping):
        return dict(volumes)
    if not isinstance(volumes, list):
        raise DockerLaunchError("volumes must be a list of mount strings or a mapping.")
    mounts: dict[str, dict[str, str]] = {}
    for entry in volumes:
        if not entry:
            continue
        if not isinstance(entry, str):
            raise DockerLaunchError("volume entries must be strings like host:container[:mode].")
        parts = entry.split(":")
        if len(parts) < 2 or len(parts) > 3:
            raise DockerLaunchError(f"Invalid volume mount: {entry!r} (expected host:container[:mode])")
        host = parts[0].strip()
        container_path = parts[1].strip()
        mode = parts[2].strip() if len(parts) == 3 else "rw"
        if not host or not container_path:
            raise DockerLaunchError(f"Invalid volume mount: {entry!r} (host and container path required)")
        if mode not in {"ro", "rw"}:
            raise DockerLaunchError(f"Invalid volume mount mode: {entry!r} (expected ro/rw)")
        mounts[host] = {"bind": container_path, "mode": mode}
    return mounts


def sanitize_container_name(value: str, *, max_len: int = 128) -> str:
    return sanitize_name(value, max_len=max_len, fallback="sandbox")


def resource_limits(spec: SandboxSpec) -> dict[str, object]:
    machine = spec.machine
    limits: dict[str, object] = {
        "mem_limit": f"{machine.mem_size_mib}m",
        "memswap_limit": f"{machine.mem_size_mib}m",
        "nano_cpus": int(machine.vcpu_count * 1_000_000_000),
    }
    if machine.disk_quota_mib is not None:
        limits["storage_opt"] = {"size": f"{machine.disk_quota_mib}M"}
    return limits


def create_and_start_container(
    client,
    *,
    image: str,
    name: str,
    command: list[str],
    env: Mapping[str, str],
    volumes: object,
    labels: Mapping[str, str],
    limits: Mapping[str, object],
    user: str | None,
):
    def remove_existing_if_safe() -> bool:
        try:
            existing = client.containers.get(name)
        except Exception:
            return False
        existing_labels = getattr(existing, "labels", None) or {}
        if existing_labels.get(ORCHESTRATOR_LABEL_KEY) != "true":
            return False
        try:
            existing.remove(v=True, force=True)
            return True
        except Exception:
            return False

    container_create_kwargs = {
        "image": image,
        "name": name,
        "command": command,
        "environment": dict(env),
        "volumes": normalize_volumes(volumes),
        "labels": {ORCHESTRATOR_LABEL_KEY: "true", **dict(labels)},
        "network_disabled": True,
        "user": user,
        "detach": True,
        **dict(limits),
    }
    remove_existing_if_safe()
    try:
        container = client.containers.create(**container_create_kwargs)
    except Exception as exc:
        message = str(exc)
        if "already in use" in message.lower() or "conflict" in message.lower():
            if not remove_existing_if_safe():
                raise DockerLaunchError(message) from exc
            container = client.containers.create(**container_create_kwargs)
        elif "No such image" in message or "not found" in message.lower():
            try:
                client.images.pull(image)
            except Exception as pull_exc:
                raise DockerLaunchError(f"image not found: {image} ({pull_exc})") from pull_exc
            container = client.containers.create(**container_create_kwargs)
        else:
            raise DockerLaunchError(message) from exc
    try:
        container.start()
    except Exception as exc:
        try:
            container.remove(v=True, force=True)
        except Exception:
            logger.warning("Failed to remove container %s after start failure", name)
        raise DockerLaunchError(f"container failed to start: {exc}") from exc
    return container


class ContainerLogStreamer:
    def __init__(self, container, sink_path: str) -> None:
        self._container = container
        self._sink_path = sink_path
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._stream = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._run, name="container-log-streamer", daemon=True)
        self._thread.start()

    def is_alive(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def stop(self, *, timeout: float = 2.0) -> None:
        self._stop_event.set()
        self._close_stream()
        if self._thread:
            self._thread.join(timeout=timeout)

    def _run(self) -> None:
        try:
            self._stream = self._container.logs(stream=True, follow=True)
            with open(self._sink_path, "w", encoding="utf-8") as handle:
                for chunk in self._stream:
                    if self._stop_event.is_set():
                        break
                    handle.write(chunk.decode("utf-8", errors="replace"))
                    handle.flush()
        except Exception as exc:  # noqa: BLE001
            logger.debug("Container log stream ended: %s", exc)
        finally:
            self._close_stream()

    def _close_stream(self) -> None:
        stream = self._stream
        if stream is None:
            return
        close = getattr(stream, "close", None)
        if callable(close):
            try:
                close()
            except Exception:
                pass


@dataclass
class _ContainerState:
    container: object
    private_dir: Path
    resources: contextlib.AsyncExitStack


class DockerBackend:
    name = "docker"

    def __init__(self, config: HarnessConfig, registry: ImageRegistry, *, client_factory=None) -> None:
        self._config = config
        self._registry = registry
        self._root = config.sandbox_root / self.name
        self._client_factory = client_factory
        self._client = None

    def client(self):
        if self._client is None:
            try:
                if self._client_factory is not None:
                    self._client = self._client_factory()
                else:
                    import docker

                    # Container creation under heavy daemon load can exceed the SDK's 60s default.
                    self._client = docker.from_env(timeout=600)
            except Exception as exc:
                raise BackendUnavailable(f"docker daemon unavailable: {exc}") from exc
        return self._client

    async def create(self, spec: SandboxSpec) -> AgentSandbox:
        client = self.client()
        docker_cfg = self._config.docker
        private_dir = self._root / spec.sandbox_id
        socket_dir = private_dir / "agent"
        async with contextlib.AsyncExitStack() as stack:
            if private_dir.exists():
                await asyncio.to_thread(remove_tree, private_dir)
            socket_dir.mkdir(parents=True)
            stack.push_async_callback(asyncio.to_thread, remove_tree, private_dir)
            binds = [f"{socket_dir}:{os.path.dirname(docker_cfg.agent_socket)}:rw"]
            for mount in spec.volumes:
                if mount.is_root:
                    continue
                binds.append(await asyncio.to_thread(self.attach_volume, private_dir, mount))
            name = sanitize_container_name(f"bench-{spec.sandbox_id}")
            labels = {SANDBOX_LABEL_KEY: spec.sandbox_id, **dict(spec.labels)}
            launch = asyncio.ensure_future(
                asyncio.to_thread(
                    create_and_start_container,
                    client,
                    image=docker_cfg.image,
                    name=name,
                    command=list(docker_cfg.agent_command),
                    env=spec.env,
                    volumes=binds,
                    labels=labels,
                    limits=resource_limits(spec),
                    user=docker_cfg.user or f"{os.getuid()}:{os.getgid()}",
                )
            )
            # Registered before awaiting: a cancelled create still removes whatever the thread starts.
            stack.push_async_callback(_discard_launch, launch)
            container = await asyncio.shield(launch)
            if spec.log_dir is not None:
                spec.log_dir.mkdir(parents=True, exist_ok=True)
                streamer = ContainerLogStreamer(container, str(spec.log_dir / f"{spec.sandbox_id}.container.log"))
                streamer.start()
                stack.push_async_callback(asyncio.to_thread, streamer.stop)
            host_socket = socket_dir / os.path.basename(docker_cfg.agent_socket)
            try:
                agent = await connect_with_retry(str(host_socket), timeout_s=spec.boot_timeout_s)
            except TimeoutError as exc:
                raise ProvisionTimeout(f"container agent not ready within {spec.boot_timeout_s}s: {exc}") from exc
            stack.push_async_callback(agent.close)
            if spec.boot_delay_s:
                await asyncio.sleep(spec.boot_delay_s)
            resources = stack.pop_all()
        logger.debug("Started container %s for sandbox %s", name, spec.sandbox_id)
        return AgentSandbox(spec, agent, backend_state=_ContainerState(container, private_dir, resources))

    def attach_volume(self, private_dir: Path, mount: VolumeMount) -> str:
        """Prepare the host side of ``mount`` and return its bind specification."""
        if mount.host_path is not None:
            if not mount.host_path.exists():
                raise ProvisionError(f"input volume not found: {mount.host_path}")
            return f"{mount.host_path.resolve()}:{mount.guest_path}:ro"
        assert mount.image is not None
        try:
            image = self._registry.resolve(mount.image)
        except ImageNotFound as exc:
            raise ProvisionError(f"image not found: {mount.image}") from exc
        if mount.mode == "read_only":
            return f"{image.path}:{mount.guest_path}:ro"
        copy_path = private_dir / "volumes" / mount.name
        copy_path.parent.mkdir(parents=True, exist_ok=True)
        if image.is_tree:
            duplicate_tree(image.path, copy_path)
        else:
            copy_path.write_bytes(image.path.read_bytes())
        return f"{copy_path}:{mount.guest_path}:rw"

    async def destroy(self, sandbox: AgentSandbox) -> None:
        state = sandbox.backend_state
        if not isinstance(state, _ContainerState):
            return
        await state.resources.aclose()
        logger.debug("Destroyed container sandbox %s", sandbox.sandbox_id)

    def cleanup_orphans(self) -> list[str]:
        client = self.client()
        containers = client.containers.list(all=True, filters={"label": [f"{ORCHESTRATOR_LABEL_KEY}=true"]})
        removed: list[str] = []
        for container in containers:
            try:
                if container.status == "running":
                    container.stop(timeout=10)
                container.remove(v=True, force=True)
                removed.append(container.name)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Failed to remove container %s: %s", getattr(container, "name", "?"), exc)
        if self._root.exists():
            for entry in sorted(self._root.iterdir()):
                remove_tree(entry)
        return removed


async def _remove_container(container) -> None:
    try:
        await asyncio.to_thread(container.stop, timeout=10)
    except Exception as exc:  # noqa: BLE001
        logger.debug("Container stop failed: %s", exc)
    await asyncio.to_thread(container.remove, v=True, force=True)


async def _discard_launch(launch: asyncio.Future) -> None:
    """Wait for a container launch to settle, then remove the container if it exists."""
    try:
        container = await launch
    except Exception as exc:  # noqa: BLE001
        # create_and_start_container leaves nothing behind when it raises.
        logger.debug("Container launch did not complete: %s", exc)
        return
    await _remove_container(container)


__all__ = [
    "ContainerLogStreamer",
    "DockerBackend",
    "DockerLaunchError",
    "ORCHESTRATOR_LABEL_KEY",
    "create_and_start_container",
    "normalize_volumes",
    "resource_limits",
    "sanitize_container_name",
]
