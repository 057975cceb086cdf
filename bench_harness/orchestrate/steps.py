"""Declarative task steps executed in order for each trial."""

from __future__ import annotations

import shlex
from typing import Annotated, Any, Literal, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from bench_harness.utils.durations import parse_duration

# Nominal cost of steps that do not declare a duration, used for campaign estimates.
NOMINAL_STEP_S = 1.0


class _Step(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    def estimate_duration(self) -> float:
        return NOMINAL_STEP_S

    @property
    def host_only(self) -> bool:
        return False


class ExitIfExisting(_Step):
    """Skip the rest of the trial when ``path`` exists (defaults to the completion marker)."""

    kind: Literal["exit_if_existing"] = "exit_if_existing"
    path: str | None = None

    def estimate_duration(self) -> float:
        return 0.0

    @property
    def host_only(self) -> bool:
        return True


class SaveEnv(_Step):
    kind: Literal["save_env"] = "save_env"
    path: str

    def estimate_duration(self) -> float:
        return 0.0

    @property
    def host_only(self) -> bool:
        return True


class _CommandStep(_Step):
    command: str | list[str]
    stdout: str | None = None
    stderr: str | None = None
    duration: float | None = None

    @field_validator("duration", mode="before")
    @classmethod
    def _parse_duration(cls, value: object) -> float | None:
        if value is None:
            return None
        return parse_duration(value)

    @field_validator("command")
    @classmethod
    def _non_empty(cls, value: str | list[str]) -> str | list[str]:
        if isinstance(value, str) and not value.strip():
            raise ValueError("command must not be empty.")
        if isinstance(value, list) and not value:
            raise ValueError("command must not be empty.")
        return value

    def estimate_duration(self) -> float:
        return self.duration if self.duration is not None else NOMINAL_STEP_S


class Run(_CommandStep):
    """Run a command inside the sandbox, optionally bounded by ``duration``."""

    kind: Literal["run"] = "run"


class RunHost(_CommandStep):
    """Run a command on the host inside the trial directory."""

    kind: Literal["run_host"] = "run_host"

    @property
    def host_only(self) -> bool:
        return True


class Sleep(_Step):
    kind: Literal["sleep"] = "sleep"
    duration: float

    @field_validator("duration", mode="before")
    @classmethod
    def _parse_duration(cls, value: object) -> float:
        return parse_duration(value)

    def estimate_duration(self) -> float:
        return self.duration


class CopyFile(_Step):
    kind: Literal["copy_file"] = "copy_file"
    src: str
    dst: str
    append: bool = False


class CopyDir(_Step):
    kind: Literal["copy_dir"] = "copy_dir"
    src: str
    dst: str
    archive: bool = False


class ResultCollector(_Step):
    """Summarise harvested outputs in a fresh sandbox; stdout becomes ``dst``."""

    kind: Literal["result_collector"] = "result_collector"
    command: str | list[str]
    dst: str
    input: str
    mount_at: str = "/input"
    timeout: float | None = None

    @field_validator("timeout", mode="before")
    @classmethod
    def _parse_timeout(cls, value: object) -> float | None:
        if value is None:
            return None
        return parse_duration(value)


class MergeJson(_Step):
    kind: Literal["merge_json"] = "merge_json"
    src: str
    dst: str
    tag: str

    def estimate_duration(self) -> float:
        return 0.0

    @property
    def host_only(self) -> bool:
        return True


TaskStep = Annotated[
    Union[ExitIfExisting, SaveEnv, Run, RunHost, Sleep, CopyFile, CopyDir, ResultCollector, MergeJson],
    Field(discriminator="kind"),
]

_STEP_LIST = TypeAdapter(list[TaskStep])


def parse_steps(payload: Sequence[Any]) -> list[TaskStep]:
    """Validate resolved task records into step models.

    Raises ``ValueError`` naming the offending entry.
    """
    try:
        return _STEP_LIST.validate_python(list(payload))
    except ValidationError as exc:
        raise ValueError(f"Invalid task list: {exc}") from exc


def split_command(command: str | Sequence[str]) -> tuple[dict[str, str], list[str]]:
    """Split a command into leading ``KEY=VALUE`` assignments and argv."""
    argv = shlex.split(command) if isinstance(command, str) else [str(part) for part in command]
    env: dict[str, str] = {}
    while argv:
        head = argv[0]
        key, sep, value = head.partition("=")
        if not sep or not key or not (key[0].isalpha() or key[0] == "_"):
            break
        if not all(ch.isalnum() or ch == "_" for ch in key):
            break
        env[key] = value
        argv.pop(0)
    if not argv:
        raise ValueError(f"Command has no program: {command!r}")
    return env, argv


def estimate_steps(steps: Sequence[TaskStep]) -> float:
    return sum(step.estimate_duration() for step in steps)


__all__ = [
    "CopyDir",
    "CopyFile",
    "ExitIfExisting",
    "MergeJson",
    "ResultCollector",
    "Run",
    "RunHost",
    "SaveEnv",
    "Sleep",
    "TaskStep",
    "estimate_steps",
    "parse_steps",
    "split_command",
]
