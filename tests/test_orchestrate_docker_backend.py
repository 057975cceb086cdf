import asyncio
import queue
from pathlib import Path
import threading
import time

import pytest

from bench_harness.orchestrate.config import DriveConfig, HarnessConfig, ImageConfig, ImagePath, InstanceConfig, MachineConfig
from bench_harness.orchestrate.docker_backend import (
    ORCHESTRATOR_LABEL_KEY,
    ContainerLogStreamer,
    DockerBackend,
    DockerLaunchError,
    create_and_start_container,
    normalize_volumes,
    resource_limits,
    sanitize_container_name,
)
from bench_harness.orchestrate.images import ImageRegistry
from bench_harness.orchestrate.sandbox import (
    BackendUnavailable,
    ProvisionError,
    SandboxBackend,
    VolumeMount,
    build_sandbox_spec,
)


class DummyContainer:
    def __init__(self, name: str, *, labels=None, status: str = "created", fail_start: bool = False) -> None:
        self.name = name
        self.labels = labels or {}
        self.status = status
        self.fail_start = fail_start
        self.removed = False
        self.stopped = False

    def start(self) -> None:
        if self.fail_start:
            raise RuntimeError("OCI runtime create failed")
        self.status = "running"

    def stop(self, timeout: int = 10) -> None:
        self.stopped = True

    def remove(self, v: bool = False, force: bool = False) -> None:
        self.removed = True


class DummyContainers:
    def __init__(self) -> None:
        self.existing: dict[str, DummyContainer] = {}
        self.created: list[dict] = []
        self.create_errors: list[Exception] = []
        self.list_filters = None
        self.fail_start = False

    def get(self, name: str) -> DummyContainer:
        if name not in self.existing:
            raise LookupError(name)
        return self.existing[name]

    def create(self, **kwargs) -> DummyContainer:
        if self.create_errors:
            raise self.create_errors.pop(0)
        self.created.append(kwargs)
        return DummyContainer(kwargs["name"], labels=kwargs["labels"], fail_start=self.fail_start)

    def list(self, all: bool = False, filters=None) -> list[DummyContainer]:
        self.list_filters = filters
        return list(self.existing.values())


class DummyImages:
    def __init__(self) -> None:
        self.pulled: list[str] = []

    def pull(self, image: str) -> None:
        self.pulled.append(image)


class DummyClient:
    def __init__(self) -> None:
        self.containers = DummyContainers()
        self.images = DummyImages()


def _launch(client: DummyClient, name: str = "bench-w0-abc"):
    return create_and_start_container(
        client,
        image="guest:latest",
        name=name,
        command=["/bin/agent"],
        env={"PYTHONHASHSEED": "0"},
        volumes=["/host/tools:/tools:ro"],
        labels={"bench_harness.sandbox": "w0-abc"},
        limits={"mem_limit": "512m"},
        user="1000:1000",
    )


def test_normalize_volumes_parses_mount_strings():
    volumes = normalize_volumes(["/host/seeds:/seeds:ro", "/host/work:/work"])
    assert volumes["/host/seeds"] == {"bind": "/seeds", "mode": "ro"}
    assert volumes["/host/work"] == {"bind": "/work", "mode": "rw"}


@pytest.mark.parametrize("entry", ["/host/only", "/host:/guest:rx", ":/guest"])
def test_normalize_volumes_rejects_bad_mount_string(entry):
    with pytest.raises(DockerLaunchError):
        normalize_volumes([entry])


def test_sanitize_container_name():
    assert sanitize_container_name("bench-w0-abc") == "bench-w0-abc"
    cleaned = sanitize_container_name("bench-w0-abc/def")
    assert cleaned.startswith("bench-w0-abc-def-")
    assert cleaned != sanitize_container_name("bench-w0-abc:def")


def test_resource_limits_follow_machine_config(tmp_path: Path):
    config = HarnessConfig(
        cache_dir=tmp_path,
        instances={"default": InstanceConfig(machine=MachineConfig(vcpu_count=2, mem_size_mib=2048, disk_quota_mib=4096))},
    )
    spec = build_sandbox_spec(
        sandbox_id="w0-abc", instance_name="default", instance=config.instance("default"), config=config, env={}
    )

    assert resource_limits(spec) == {
        "mem_limit": "2048m",
        "memswap_limit": "2048m",
        "nano_cpus": 2_000_000_000,
        "storage_opt": {"size": "4096M"},
    }


def test_create_and_start_container_labels_and_isolates():
    client = DummyClient()

    container = _launch(client)

    (kwargs,) = client.containers.created
    assert container.status == "running"
    assert kwargs["labels"][ORCHESTRATOR_LABEL_KEY] == "true"
    assert kwargs["network_disabled"] is True
    assert kwargs["volumes"] == {"/host/tools": {"bind": "/tools", "mode": "ro"}}
    assert kwargs["mem_limit"] == "512m"


def test_create_replaces_stale_managed_container_only():
    client = DummyClient()
    stale = DummyContainer("bench-w0-abc", labels={ORCHESTRATOR_LABEL_KEY: "true"})
    client.containers.existing["bench-w0-abc"] = stale

    _launch(client)
    assert stale.removed is True

    foreign = DummyContainer("bench-w1-abc", labels={})
    client.containers.existing["bench-w1-abc"] = foreign
    client.containers.create_errors.append(RuntimeError("Conflict. The container name is already in use"))
    with pytest.raises(DockerLaunchError, match="already in use"):
        _launch(client, name="bench-w1-abc")
    assert foreign.removed is False


def test_create_pulls_missing_image_then_retries():
    client = DummyClient()
    client.containers.create_errors.append(RuntimeError("No such image: guest:latest"))

    _launch(client)

    assert client.images.pulled == ["guest:latest"]
    assert len(client.containers.created) == 1


def test_start_failure_removes_container():
    client = DummyClient()
    client.containers.fail_start = True

    with pytest.raises(DockerLaunchError, match="failed to start"):
        _launch(client)


def test_container_log_streamer_stop_does_not_hang(tmp_path):
    class BlockingStream:
        def __init__(self):
            self._queue = queue.Queue()

        def __iter__(self):
            return self

        def __next__(self):
            item = self._queue.get()
            if item is None:
                raise StopIteration
            return item

        def send(self, payload: bytes) -> None:
            self._queue.put(payload)

        def close(self) -> None:
            self._queue.put(None)

    class FakeContainer:
        def __init__(self, stream):
            self._stream = stream

        def logs(self, stream: bool, follow: bool):
            return self._stream

    stream = BlockingStream()
    sink_path = tmp_path / "container.log"
    streamer = ContainerLogStreamer(FakeContainer(stream), str(sink_path))
    streamer.start()
    stream.send(b"agent listening\n")
    time.sleep(0.1)
    streamer.stop(timeout=1.0)

    assert streamer.is_alive() is False
    assert sink_path.read_text(encoding="utf-8") == "agent listening\n"


def _backend(tmp_path: Path, client=None, *, factory=None) -> tuple[HarnessConfig, DockerBackend]:
    source = tmp_path / "seeds"
    source.mkdir(exist_ok=True)
    (source / "seed-0").write_bytes(b"\x00")
    config = HarnessConfig(
        cache_dir=tmp_path / "cache",
        images={"seeds": ImageConfig(paths=[ImagePath(src=source, dst="/")])},
        instances={"default": InstanceConfig(drives=[DriveConfig(name="seeds", image="seeds", guest_path="/seeds")])},
    )
    registry = ImageRegistry(config)
    registry.ensure()
    return config, DockerBackend(config, registry, client_factory=factory or (lambda: client))


def test_attach_volume_shares_read_only_and_copies_duplicates(tmp_path: Path):
    config, backend = _backend(tmp_path, DummyClient())
    private_dir = tmp_path / "private"
    image_path = backend._registry.resolve("seeds").path

    shared = backend.attach_volume(private_dir, VolumeMount(name="seeds", image="seeds", guest_path="/seeds"))
    copied = backend.attach_volume(
        private_dir, VolumeMount(name="scratch", image="seeds", guest_path="/scratch", mode="duplicate")
    )

    assert shared == f"{image_path}:/seeds:ro"
    assert copied == f"{private_dir / 'volumes' / 'scratch'}:/scratch:rw"
    assert (private_dir / "volumes" / "scratch" / "seed-0").read_bytes() == b"\x00"
    with pytest.raises(ProvisionError, match="image not found: missing"):
        backend.attach_volume(private_dir, VolumeMount(name="x", image="missing", guest_path="/x"))


@pytest.mark.asyncio
async def test_failed_launch_releases_private_dir(tmp_path: Path):
    client = DummyClient()
    client.containers.create_errors.append(RuntimeError("invalid reference format"))
    config, backend = _backend(tmp_path, client)
    spec = build_sandbox_spec(
        sandbox_id="w0-abc", instance_name="default", instance=config.instance("default"), config=config, env={}
    )

    with pytest.raises(ProvisionError, match="invalid reference format"):
        await backend.create(spec)

    assert not (config.sandbox_root / "docker" / "w0-abc").exists()


def test_unreachable_daemon_is_backend_unavailable(tmp_path: Path):
    def factory():
        raise ConnectionError("connection refused")

    _, backend = _backend(tmp_path, factory=factory)

    with pytest.raises(BackendUnavailable, match="docker daemon unavailable"):
        backend.client()


def test_cleanup_orphans_removes_only_labelled_containers(tmp_path: Path):
    client = DummyClient()
    running = DummyContainer("bench-w0-abc", labels={ORCHESTRATOR_LABEL_KEY: "true"}, status="running")
    client.containers.existing["bench-w0-abc"] = running
    config, backend = _backend(tmp_path, client)
    leftover = config.sandbox_root / "docker" / "w0-abc"
    leftover.mkdir(parents=True)

    assert backend.cleanup_orphans() == ["bench-w0-abc"]
    assert client.containers.list_filters == {"label": [f"{ORCHESTRATOR_LABEL_KEY}=true"]}
    assert running.stopped is True and running.removed is True
    assert not leftover.exists()


@pytest.mark.asyncio
async def test_cancelled_create_removes_container_started_afterwards(tmp_path: Path):
    client = DummyClient()
    entered = threading.Event()
    gate = threading.Event()
    launched: list[DummyContainer] = []
    create = client.containers.create

    def slow_create(**kwargs):
        entered.set()
        gate.wait(5)
        container = create(**kwargs)
        launched.append(container)
        return container

    client.containers.create = slow_create
    config, backend = _backend(tmp_path, client)
    spec = build_sandbox_spec(
        sandbox_id="w0-abc", instance_name="default", instance=config.instance("default"), config=config, env={}
    )
    task = asyncio.create_task(backend.create(spec))
    while not entered.is_set():
        await asyncio.sleep(0.01)

    task.cancel()
    await asyncio.sleep(0.05)
    assert task.done() is False
    gate.set()
    with pytest.raises(asyncio.CancelledError):
        await task

    (container,) = launched
    assert container.status == "running"
    assert container.stopped is True and container.removed is True
    assert not (config.sandbox_root / "docker" / "w0-abc").exists()


def test_docker_backend_satisfies_the_backend_protocol(tmp_path: Path):
    _, backend = _backend(tmp_path, DummyClient())

    assert isinstance(backend, SandboxBackend)
