"""Client for the guest agent running inside container and microVM sandboxes.

Requests and responses are newline-delimited JSON wrapped as
``{"id": n, "body": ...}``. A response body is either a plain value or
``{"error": "..."}``. The microVM exposes the agent through the VMM's vsock
proxy, which needs a ``CONNECT <port>`` handshake before the first request.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import signal
import time
from typing import Any, Mapping, Sequence

from bench_harness.orchestrate.sandbox import (
    CommandOutcome,
    GuestCommand,
    GuestEntry,
    SandboxError,
    SandboxSpec,
)

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT_S = 10.0
STATUS_POLL_INTERVAL_S = 1.0
READ_CHUNK_BYTES = 4 * 1024 * 1024


class AgentError(SandboxError):
    """Raised when the agent returns an error or breaks the protocol."""


class AgentClient:
    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._reader = reader
        self._writer = writer
        self._next_id = 1
        self._lock = asyncio.Lock()

    @classmethod
    async def connect(cls, socket_path: str, *, vsock_port: int | None = None, timeout_s: float = 5.0) -> "AgentClient":
        reader, writer = await asyncio.wait_for(
            asyncio.open_unix_connection(socket_path, limit=64 * 1024 * 1024), timeout=timeout_s
        )
        try:
            if vsock_port is not None:
                writer.write(f"CONNECT {vsock_port}\n".encode("ascii"))
                await writer.drain()
                line = await asyncio.wait_for(reader.readline(), timeout=timeout_s)
                if not line.startswith(b"OK"):
                    raise AgentError(f"vsock handshake failed: {line.decode('utf-8', errors='replace').strip()!r}")
        except BaseException:
            writer.close()
            raise
        return cls(reader, writer)

    async def request(self, body: Any, *, timeout_s: float | None = DEFAULT_REQUEST_TIMEOUT_S) -> Any:
        async with self._lock:
            request_id = self._next_id
            self._next_id += 1
            payload = _dumps({"id": request_id, "body": body})
            self._writer.write(payload)
            await self._writer.drain()
            while True:
                line = await asyncio.wait_for(self._reader.readline(), timeout=timeout_s)
                if not line:
                    raise AgentError("agent closed the connection")
                try:
                    message = _loads(line)
                except ValueError as exc:
                    raise AgentError(f"invalid response from agent: {line[:200]!r}") from exc
                response_id = message.get("id")
                if not isinstance(response_id, int):
                    raise AgentError(f"response without id: {line[:200]!r}")
                if response_id < request_id:
                    logger.warning("Agent returned stale response (wanted %d, got %d)", request_id, response_id)
                    continue
                if response_id > request_id:
                    raise AgentError(f"unexpected response id {response_id} (wanted {request_id})")
                result = message.get("body")
                if isinstance(result, Mapping) and set(result) == {"error"}:
                    raise AgentError(str(result["error"]))
                return result

    async def spawn_process(self, command: Mapping[str, Any]) -> int:
        return int(await self.request({"spawn_process": command}))

    async def get_status(self, pid: int) -> int | None:
        value = await self.request({"get_status": pid})
        return None if value is None else int(value)

    async def kill_process(self, pid: int, sig: int) -> None:
        await self.request({"kill_process": {"pid": pid, "signal": int(sig)}})

    async def read_file(self, path: str, *, offset: int = 0, length: int | None = None) -> bytes:
        value = await self.request({"read_file": {"path": path, "offset": offset, "len": length}})
        return _decode_bytes(value)

    async def read_dir(self, path: str) -> list[Mapping[str, Any]]:
        value = await self.request({"read_dir": path})
        if not isinstance(value, list):
            raise AgentError(f"invalid read_dir response for {path}")
        return value

    async def stat_file(self, path: str) -> Mapping[str, Any]:
        value = await self.request({"stat_file": path})
        if not isinstance(value, Mapping):
            raise AgentError(f"invalid stat_file response for {path}")
        return value

    async def add_entropy(self, entropy: Sequence[int]) -> None:
        await self.request({"add_entropy": list(entropy)})

    async def reboot(self) -> None:
        await self.request("reboot")

    async def close(self) -> None:
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except (ConnectionError, OSError):
            pass


def _dumps(payload: Any) -> bytes:
    return json.dumps(payload, separators=(",", ":")).encode("utf-8") + b"\n"


def _loads(line: bytes) -> Mapping[str, Any]:
    message = json.loads(line)
    if not isinstance(message, Mapping):
        raise ValueError("response is not an object")
    return message


def _decode_bytes(value: Any) -> bytes:
    if isinstance(value, list):
        return bytes(value)
    if isinstance(value, str):
        return base64.b64decode(value)
    raise AgentError("invalid read_file response")


def run_command_payload(command: GuestCommand, *, env: Mapping[str, str], workdir: str) -> dict[str, Any]:
    return {
        "vars": [[key, value] for key, value in {**env, **command.env}.items()],
        "program": command.argv[0],
        "args": list(command.argv[1:]),
        "stdin": "null",
        "stdout": {"file": command.stdout} if command.stdout else "null",
        "stderr": {"file": command.stderr} if command.stderr else "null",
        "current_dir": command.cwd or workdir,
    }


class AgentSandbox:
    """Sandbox capability on top of an ``AgentClient`` connection."""

    def __init__(self, spec: SandboxSpec, client: AgentClient, *, backend_state: Any = None) -> None:
        self.sandbox_id = spec.sandbox_id
        self.spec = spec
        self.client = client
        self.backend_state = backend_state
        self._capture_count = 0

    async def run_command(
        self,
        command: GuestCommand,
        *,
        timeout_s: float | None = None,
        kill_grace_s: float = 5.0,
        capture_stdout: bool = False,
    ) -> CommandOutcome:
        if capture_stdout:
            self._capture_count += 1
            capture_path = f"/tmp/.bench-harness-capture-{self._capture_count}"
            command = GuestCommand(
                argv=command.argv, env=command.env, stdout=capture_path, stderr=command.stderr, cwd=command.cwd
            )
        payload = run_command_payload(command, env=self.spec.env, workdir=self.spec.workdir)
        started = time.monotonic()
        pid = await self.client.spawn_process(payload)
        deadline = started + timeout_s if timeout_s is not None else None
        timed_out = False
        exit_code: int | None = None
        try:
            while True:
                exit_code = await self.client.get_status(pid)
                if exit_code is not None:
                    break
                now = time.monotonic()
                if deadline is not None and now >= deadline:
                    timed_out = True
                    exit_code = await self._terminate(pid, kill_grace_s)
                    break
                wait_s = STATUS_POLL_INTERVAL_S
                if deadline is not None:
                    wait_s = min(wait_s, max(0.0, deadline - now))
                await asyncio.sleep(wait_s)
        except asyncio.CancelledError:
            await asyncio.shield(self._kill_quietly(pid))
            raise
        stdout = b""
        if capture_stdout and command.stdout:
            stdout = await self.read_file(command.stdout)
        return CommandOutcome(
            exit_code=exit_code,
            duration_s=time.monotonic() - started,
            timed_out=timed_out,
            stdout=stdout,
        )

    async def _terminate(self, pid: int, kill_grace_s: float) -> int | None:
        await self.client.kill_process(pid, signal.SIGINT)
        grace_deadline = time.monotonic() + kill_grace_s
        while time.monotonic() < grace_deadline:
            status = await self.client.get_status(pid)
            if status is not None:
                return status
            await asyncio.sleep(min(0.2, kill_grace_s))
        await self.client.kill_process(pid, signal.SIGKILL)
        return await self.client.get_status(pid)

    async def _kill_quietly(self, pid: int) -> None:
        try:
            await self.client.kill_process(pid, signal.SIGKILL)
        except (AgentError, OSError, asyncio.TimeoutError) as exc:
            logger.debug("Failed to kill guest pid %d in %s: %s", pid, self.sandbox_id, exc)

    async def read_file(self, path: str) -> bytes:
        chunks: list[bytes] = []
        offset = 0
        while True:
            try:
                chunk = await self.client.read_file(path, offset=offset, length=READ_CHUNK_BYTES)
            except AgentError as exc:
                if "no such file" in str(exc).lower() or "not found" in str(exc).lower():
                    raise FileNotFoundError(path) from exc
                raise
            chunks.append(chunk)
            offset += len(chunk)
            if len(chunk) < READ_CHUNK_BYTES:
                return b"".join(chunks)

    async def list_tree(self, path: str) -> list[GuestEntry]:
        try:
            root = await self.client.stat_file(path)
        except AgentError as exc:
            raise FileNotFoundError(path) from exc
        if root.get("is_file"):
            name = path.rstrip("/").rsplit("/", 1)[-1]
            return [GuestEntry(path=name, is_file=True, size=int(root.get("len", 0)))]
        base = path.rstrip("/") or "/"
        entries: list[GuestEntry] = []
        pending = [base]
        while pending:
            current = pending.pop()
            for item in await self.client.read_dir(current):
                full = str(item.get("path", ""))
                if not full.startswith("/"):
                    full = f"{current.rstrip('/')}/{full}"
                rel = full[len(base) :].lstrip("/")
                if item.get("is_file"):
                    entries.append(GuestEntry(path=rel, is_file=True, size=int(item.get("len", 0))))
                else:
                    entries.append(GuestEntry(path=rel, is_file=False))
                    pending.append(full)
        entries.sort(key=lambda entry: entry.path)
        return entries


async def connect_with_retry(
    socket_path: str,
    *,
    timeout_s: float,
    vsock_port: int | None = None,
    retry_interval_s: float = 0.5,
) -> AgentClient:
    """Keep trying to reach the agent until ``timeout_s`` elapses."""
    deadline = time.monotonic() + timeout_s
    last_error: Exception | None = None
    attempts = 0
    while True:
        attempts += 1
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise TimeoutError(f"agent not ready after {attempts} attempts: {last_error}")
        try:
            return await AgentClient.connect(socket_path, vsock_port=vsock_port, timeout_s=min(5.0, remaining))
        except (OSError, AgentError, asyncio.TimeoutError, asyncio.IncompleteReadError) as exc:
            last_error = exc
        await asyncio.sleep(min(retry_interval_s, max(0.0, deadline - time.monotonic())))


__all__ = [
    "AgentClient",
    "AgentError",
    "AgentSandbox",
    "connect_with_retry",
    "run_command_payload",
]
