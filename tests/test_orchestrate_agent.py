import asyncio
import base64
import json
from pathlib import Path
import shutil
import signal
import tempfile

import pytest

from bench_harness.orchestrate.agent import AgentClient, AgentError, AgentSandbox, connect_with_retry, run_command_payload
from bench_harness.orchestrate.config import HarnessConfig, InstanceConfig
from bench_harness.orchestrate.sandbox import GuestCommand, build_sandbox_spec


class FakeAgent:
    """In-process stand-in for the guest agent speaking JSON lines."""

    def __init__(self, files: dict[str, bytes] | None = None, *, exit_code: int = 0, hang: bool = False) -> None:
        self.files = dict(files or {})
        self.exit_code = exit_code
        self.hang = hang
        self.spawned: list[dict] = []
        self.kills: list[int] = []
        self.entropy: list[int] | None = None
        self.handshakes: list[str] = []
        self._polls: dict[int, int] = {}
        self._killed: set[int] = set()

    async def handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        first = await reader.readline()
        if first.startswith(b"CONNECT"):
            self.handshakes.append(first.decode("ascii").strip())
            writer.write(b"OK 1073741824\n")
            await writer.drain()
            first = await reader.readline()
        line = first
        while line:
            message = json.loads(line)
            response = {"id": message["id"], "body": self.dispatch(message["body"])}
            writer.write(json.dumps(response).encode("utf-8") + b"\n")
            await writer.drain()
            line = await reader.readline()
        writer.close()

    def dispatch(self, body):
        if body == "reboot":
            return None
        ((op, value),) = body.items()
        if op == "spawn_process":
            self.spawned.append(value)
            pid = len(self.spawned)
            self._polls[pid] = 0
            return pid
        if op == "get_status":
            self._polls[value] += 1
            if value in self._killed:
                return 130
            if self.hang or self._polls[value] < 2:
                return None
            return self.exit_code
        if op == "kill_process":
            self.kills.append(value["signal"])
            self._killed.add(value["pid"])
            return None
        if op == "read_file":
            data = self.files.get(value["path"])
            if data is None:
                return {"error": f"No such file or directory: {value['path']}"}
            end = None if value["len"] is None else value["offset"] + value["len"]
            return base64.b64encode(data[value["offset"] : end]).decode("ascii")
        if op == "stat_file":
            if value in self.files:
                return {"is_file": True, "len": len(self.files[value])}
            return {"is_file": False}
        if op == "read_dir":
            prefix = value.rstrip("/") + "/"
            children: dict[str, dict] = {}
            for path, data in self.files.items():
                if not path.startswith(prefix):
                    continue
                head = path[len(prefix) :].split("/", 1)
                full = prefix + head[0]
                if len(head) == 1:
                    children[full] = {"path": full, "is_file": True, "len": len(data)}
                else:
                    children[full] = {"path": full, "is_file": False}
            return list(children.values())
        if op == "add_entropy":
            self.entropy = value
            return None
        return {"error": f"unknown op {op}"}


@pytest.fixture
def socket_dir():
    # Unix socket paths are limited to ~100 bytes; pytest's tmp_path can be longer.
    path = Path(tempfile.mkdtemp(prefix="bh-"))
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture(autouse=True)
def fast_polling(monkeypatch):
    monkeypatch.setattr("bench_harness.orchestrate.agent.STATUS_POLL_INTERVAL_S", 0.01)


def _spec(tmp_path: Path):
    config = HarnessConfig(cache_dir=tmp_path, instances={"default": InstanceConfig(workdir="/work")})
    return build_sandbox_spec(
        sandbox_id="w0-agent",
        instance_name="default",
        instance=config.instance("default"),
        config=config,
        env={"PYTHONHASHSEED": "0"},
    )


async def _sandbox(agent: FakeAgent, socket_dir: Path, tmp_path: Path):
    path = socket_dir / "agent.sock"
    server = await asyncio.start_unix_server(agent.handle, path=str(path))
    client = await AgentClient.connect(str(path))
    return server, AgentSandbox(_spec(tmp_path), client)


async def _close(server, sandbox: AgentSandbox) -> None:
    await sandbox.client.close()
    server.close()
    await server.wait_closed()


def test_run_command_payload_merges_env_and_defaults_cwd():
    payload = run_command_payload(
        GuestCommand(argv=["/bin/afl-fuzz", "-i", "seeds"], env={"AFL_NO_UI": "1"}, stdout="/work/fuzz.log"),
        env={"PYTHONHASHSEED": "0"},
        workdir="/work",
    )

    assert payload == {
        "vars": [["PYTHONHASHSEED", "0"], ["AFL_NO_UI", "1"]],
        "program": "/bin/afl-fuzz",
        "args": ["-i", "seeds"],
        "stdin": "null",
        "stdout": {"file": "/work/fuzz.log"},
        "stderr": "null",
        "current_dir": "/work",
    }


@pytest.mark.asyncio
async def test_run_command_waits_for_exit(socket_dir: Path, tmp_path: Path):
    agent = FakeAgent(exit_code=3)
    server, sandbox = await _sandbox(agent, socket_dir, tmp_path)
    try:
        outcome = await sandbox.run_command(GuestCommand(argv=["/bin/false"]))
    finally:
        await _close(server, sandbox)

    assert outcome.exit_code == 3
    assert outcome.timed_out is False
    assert agent.spawned[0]["current_dir"] == "/work"
    assert agent.kills == []


@pytest.mark.asyncio
async def test_run_command_timeout_sends_interrupt(socket_dir: Path, tmp_path: Path):
    agent = FakeAgent(hang=True)
    server, sandbox = await _sandbox(agent, socket_dir, tmp_path)
    try:
        outcome = await sandbox.run_command(GuestCommand(argv=["/bin/afl-fuzz"]), timeout_s=0.1, kill_grace_s=0.5)
    finally:
        await _close(server, sandbox)

    assert outcome.timed_out is True
    assert outcome.exit_code == 130
    assert agent.kills == [int(signal.SIGINT)]


@pytest.mark.asyncio
async def test_capture_stdout_reads_redirect_file(socket_dir: Path, tmp_path: Path):
    agent = FakeAgent(files={"/tmp/.bench-harness-capture-1": b'{"edges": 12}\n'})
    server, sandbox = await _sandbox(agent, socket_dir, tmp_path)
    try:
        outcome = await sandbox.run_command(GuestCommand(argv=["/bin/collect"]), capture_stdout=True)
    finally:
        await _close(server, sandbox)

    assert agent.spawned[0]["stdout"] == {"file": "/tmp/.bench-harness-capture-1"}
    assert outcome.stdout == b'{"edges": 12}\n'


@pytest.mark.asyncio
async def test_read_file_in_chunks_and_missing_file(socket_dir: Path, tmp_path: Path, monkeypatch):
    monkeypatch.setattr("bench_harness.orchestrate.agent.READ_CHUNK_BYTES", 4)
    agent = FakeAgent(files={"/work/stats": b"0123456789"})
    server, sandbox = await _sandbox(agent, socket_dir, tmp_path)
    try:
        assert await sandbox.read_file("/work/stats") == b"0123456789"
        with pytest.raises(FileNotFoundError):
            await sandbox.read_file("/work/missing")
    finally:
        await _close(server, sandbox)


@pytest.mark.asyncio
async def test_list_tree_walks_directories(socket_dir: Path, tmp_path: Path):
    agent = FakeAgent(files={"/work/out/a": b"1", "/work/out/sub/b": b"22"})
    server, sandbox = await _sandbox(agent, socket_dir, tmp_path)
    try:
        entries = await sandbox.list_tree("/work/out")
    finally:
        await _close(server, sandbox)

    assert [(entry.path, entry.is_file, entry.size) for entry in entries] == [
        ("a", True, 1),
        ("sub", False, 0),
        ("sub/b", True, 2),
    ]


@pytest.mark.asyncio
async def test_error_body_raises_agent_error(socket_dir: Path, tmp_path: Path):
    server, sandbox = await _sandbox(FakeAgent(), socket_dir, tmp_path)
    try:
        with pytest.raises(AgentError, match="unknown op"):
            await sandbox.client.request({"explode": True})
    finally:
        await _close(server, sandbox)


@pytest.mark.asyncio
async def test_vsock_handshake_and_entropy(socket_dir: Path):
    agent = FakeAgent()
    path = socket_dir / "vm.vsock"
    server = await asyncio.start_unix_server(agent.handle, path=str(path))
    try:
        client = await connect_with_retry(str(path), timeout_s=2.0, vsock_port=52)
        await client.add_entropy([1, 2, 3])
        await client.close()
    finally:
        server.close()
        await server.wait_closed()

    assert agent.handshakes == ["CONNECT 52"]
    assert agent.entropy == [1, 2, 3]


@pytest.mark.asyncio
async def test_connect_with_retry_times_out(socket_dir: Path):
    with pytest.raises(TimeoutError, match="agent not ready"):
        await connect_with_retry(str(socket_dir / "absent.sock"), timeout_s=0.3, retry_interval_s=0.05)
