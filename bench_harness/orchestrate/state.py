"""Trial directory layout, atomic writes, completion markers and the campaign summary.

Whether a trial is done is decided only by its completion marker. The marker is
the last file written into a trial directory, so a directory without one is an
abandoned attempt and gets cleared before the trial runs again.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
import json
import logging
import os
from pathlib import Path
from typing import IO, Any, Iterable, Iterator, Mapping
import uuid

from bench_harness.utils.pathing import remove_tree

logger = logging.getLogger(__name__)

MARKER_NAME = ".complete"
SUMMARY_NAME = "summary.json"


class TrialState:
    pending = "pending"
    provisioning = "provisioning"
    running = "running"
    collecting = "collecting"
    completed = "completed"
    skipped = "skipped"
    timed_out = "timed_out"
    failed = "failed"
    cancelled = "cancelled"


TERMINAL_STATES = frozenset(
    {TrialState.completed, TrialState.skipped, TrialState.timed_out, TrialState.failed, TrialState.cancelled}
)
# Outcomes that leave a completion marker behind.
MARKED_STATES = frozenset({TrialState.completed, TrialState.timed_out, TrialState.failed})


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class TrialPaths:
    root: Path

    @property
    def env_path(self) -> Path:
        return self.root / "env"

    @property
    def raw_outputs(self) -> Path:
        return self.root / "raw-outputs"

    @property
    def workdir_archive(self) -> Path:
        return self.root / "workdir.tar.gz"

    @property
    def coverage_path(self) -> Path:
        return self.root / "coverage.json"

    @property
    def manifest_path(self) -> Path:
        return self.root / "manifest.json"

    @property
    def result_path(self) -> Path:
        return self.root / "result.json"

    @property
    def logs_dir(self) -> Path:
        return self.root / "logs"

    @property
    def marker_path(self) -> Path:
        return self.root / MARKER_NAME


def _tmp_path(path: Path) -> Path:
    return path.with_name(f".{path.name}.tmp-{uuid.uuid4().hex}")


@contextmanager
def open_atomic(path: Path) -> Iterator[IO[bytes]]:
    """Yield a binary handle whose contents replace ``path`` only if the block exits cleanly.

    Readers see either the old file or the complete new one.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = _tmp_path(path)
    try:
        with open(tmp_path, "wb") as handle:
            yield handle
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


def write_bytes_atomic(path: Path, data: bytes) -> None:
    with open_atomic(path) as handle:
        handle.write(data)


def write_text_atomic(path: Path, text: str) -> None:
    write_bytes_atomic(path, text.encode("utf-8"))


def write_json_atomic(path: Path, payload: Mapping[str, Any] | list[Any]) -> None:
    write_text_atomic(path, json.dumps(payload, indent=2, sort_keys=True) + "\n")


def read_json(path: Path) -> Any:
    with open(path, "r", encoding="utf-8") as handle:
        return json.load(handle)


def read_marker(trial_dir: Path) -> dict[str, Any] | None:
    marker = TrialPaths(trial_dir).marker_path
    if not marker.exists():
        return None
    try:
        payload = read_json(marker)
    except (OSError, ValueError) as exc:
        logger.warning("Unreadable completion marker %s: %s", marker, exc)
        return None
    return payload if isinstance(payload, dict) else None


def is_trial_complete(trial_dir: Path, *, rerun_failed: bool = False) -> bool:
    marker = read_marker(trial_dir)
    if marker is None:
        return False
    if rerun_failed and marker.get("status") == TrialState.failed:
        return False
    return True


def trial_status(trial_dir: Path) -> str:
    """``completed``/``timed_out``/``failed`` from the marker, else ``incomplete`` or ``pending``."""
    marker = read_marker(trial_dir)
    if marker is not None:
        return str(marker.get("status", TrialState.completed))
    if trial_dir.exists():
        return "incomplete"
    return TrialState.pending


def prepare_trial_dir(trial_dir: Path, *, rerun_failed: bool = False) -> str | None:
    """Make ``trial_dir`` ready for a new attempt; return what was removed, if anything.

    A directory left behind by an attempt that never finished is cleared. A marked
    trial that runs again (its template has no guard) loses only its marker, so the
    trial never reads as done while its files are being rewritten.
    """
    if not trial_dir.exists():
        return None
    if is_trial_complete(trial_dir, rerun_failed=rerun_failed):
        logger.info("Re-running marked trial %s; removing its completion marker", trial_dir)
        TrialPaths(trial_dir).marker_path.unlink()
        return "marker"
    logger.info("Clearing incomplete trial directory %s", trial_dir)
    remove_tree(trial_dir)
    return "directory"


def finalize_trial(paths: TrialPaths, *, status: str, result: Mapping[str, Any]) -> None:
    """Persist ``result.json`` and then the marker; nothing may be written after this."""
    if status not in MARKED_STATES:
        raise ValueError(f"Trial status {status!r} does not get a completion marker.")
    write_json_atomic(paths.result_path, dict(result))
    write_json_atomic(paths.marker_path, {"status": status, "completed_at": utcnow()})


@dataclass
class TrialRecord:
    trial_id: str
    coordinates: dict[str, str]
    instance: str
    state: str = TrialState.pending
    state_entered_at: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    updated_at: str = field(default_factory=utcnow)
    slot: int | None = None
    sandbox_id: str | None = None
    step: str | None = None
    failure_step: int | None = None
    failure_kind: str | None = None
    failure_reason: str | None = None
    error: str | None = None

    def touch(self) -> None:
        self.updated_at = utcnow()

    def describe(self) -> str:
        return ", ".join(f"{key}={value}" for key, value in self.coordinates.items())

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def write_summary(path: Path, records: Iterable[TrialRecord]) -> None:
    records = list(records)
    counts: dict[str, int] = {}
    for record in records:
        counts[record.state] = counts.get(record.state, 0) + 1
    write_json_atomic(
        path,
        {
            "updated_at": utcnow(),
            "counts": counts,
            "trials": [record.to_dict() for record in records],
        },
    )


def load_summary(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {"trials": []}
    payload = read_json(path)
    if not isinstance(payload, dict):
        raise ValueError(f"Summary file {path} is not a JSON object.")
    return payload


__all__ = [
    "MARKED_STATES",
    "MARKER_NAME",
    "SUMMARY_NAME",
    "TERMINAL_STATES",
    "TrialPaths",
    "TrialRecord",
    "TrialState",
    "finalize_trial",
    "is_trial_complete",
    "load_summary",
    "read_json",
    "read_marker",
    "open_atomic",
    "prepare_trial_dir",
    "trial_status",
    "utcnow",
    "write_bytes_atomic",
    "write_json_atomic",
    "write_summary",
    "write_text_atomic",
]
