"""Expand a campaign's trial matrix and template into concrete trial manifests."""

from __future__ import annotations

from dataclasses import dataclass, field
import heapq
import itertools
import logging
from pathlib import Path
import re
from typing import Any, Iterator, Mapping, Sequence

from omegaconf import OmegaConf

from bench_harness.orchestrate.config import CampaignConfig, HarnessConfig
from bench_harness.orchestrate.steps import TaskStep, estimate_steps, parse_steps
from bench_harness.orchestrate.template import TemplateError, check_condition

logger = logging.getLogger(__name__)

DEFAULT_INSTANCE = "default"
RESERVED_NAMES = frozenset({"bench", "trial_id", "trial_dir", "output_root", "vars", "tasks"})

_REFERENCE = re.compile(r"(?<!\\)\$\{([^}]*)\}")


class InvalidDimensionValue(ValueError):
    """Raised when a dimension value cannot be used as a path component."""


@dataclass(frozen=True)
class TrialMatrix:
    """Ordered named dimensions whose cross product is the campaign's trial universe."""

    dimensions: tuple[tuple[str, tuple[str, ...]], ...]
    exclude: tuple[Mapping[str, str], ...] = ()

    @classmethod
    def from_campaign(cls, campaign: CampaignConfig) -> "TrialMatrix":
        return cls(
            dimensions=tuple((name, tuple(values)) for name, values in campaign.matrix.items()),
            exclude=tuple(dict(entry) for entry in campaign.exclude),
        )

    @property
    def names(self) -> list[str]:
        return [name for name, _ in self.dimensions]

    def size(self) -> int:
        total = 1
        for _, values in self.dimensions:
            total *= len(values)
        return total

    def validate(self) -> None:
        for name, values in self.dimensions:
            if name in RESERVED_NAMES:
                raise ValueError(f"Dimension name {name!r} is reserved.")
            for value in values:
                validate_dimension_value(name, value)
        for entry in self.exclude:
            unknown = sorted(set(entry) - set(self.names))
            if unknown:
                raise ValueError(f"exclude entry {dict(entry)} references unknown dimensions: {unknown}")

    def points(self) -> Iterator[dict[str, str]]:
        names = self.names
        for combo in itertools.product(*(values for _, values in self.dimensions)):
            point = dict(zip(names, combo))
            if any(all(point.get(key) == value for key, value in entry.items()) for entry in self.exclude):
                continue
            yield point


@dataclass(frozen=True)
class TrialManifest:
    """One fully-substituted trial: pure data, owns no resources."""

    bench: str
    trial_id: str
    coordinates: Mapping[str, str]
    instance: str
    vars: Mapping[str, str]
    tasks: Sequence[TaskStep]
    trial_dir: Path
    estimated_s: float = field(default=0.0, compare=False)

    def describe(self) -> str:
        return ", ".join(f"{key}={value}" for key, value in self.coordinates.items())

    def to_dict(self) -> dict[str, Any]:
        return {
            "bench": self.bench,
            "trial_id": self.trial_id,
            "coordinates": dict(self.coordinates),
            "instance": self.instance,
            "vars": dict(self.vars),
            "tasks": [step.model_dump(exclude_none=True) for step in self.tasks],
            "trial_dir": str(self.trial_dir),
        }


def validate_dimension_value(name: str, value: str) -> None:
    if value == "":
        raise InvalidDimensionValue(f"Dimension {name!r} has an empty value.")
    if "/" in value or "\\" in value:
        raise InvalidDimensionValue(f"Dimension {name!r} value {value!r} contains a path separator.")
    if value in {".", ".."}:
        raise InvalidDimensionValue(f"Dimension {name!r} value {value!r} is not a valid path component.")


def default_path_format(names: Sequence[str]) -> str:
    """``fuzzer`` and ``mode`` share one path component; every other dimension gets its own."""
    parts: list[str] = []
    for name in names:
        if name == "mode" and "fuzzer" in names:
            continue
        if name == "fuzzer" and "mode" in names:
            parts.append("{fuzzer}-{mode}")
        else:
            parts.append("{" + name + "}")
    return "/".join(parts)


def format_trial_path(path_format: str, coordinates: Mapping[str, str]) -> str:
    try:
        rendered = path_format.format(**coordinates)
    except KeyError as exc:
        missing = exc.args[0] if exc.args else "?"
        raise ValueError(f"path_format references unknown dimension {missing!r}: {path_format!r}") from exc
    except (IndexError, ValueError) as exc:
        raise ValueError(f"Invalid path_format {path_format!r}: {exc}") from exc
    segments = rendered.split("/")
    if any(segment in {"", ".", ".."} for segment in segments):
        raise ValueError(f"path_format {path_format!r} produced an invalid trial path {rendered!r}")
    return rendered


def expand_campaign(campaign: CampaignConfig, config: HarnessConfig | None = None) -> list[TrialManifest]:
    """Produce one manifest per matrix point, in cross-product order.

    Configuration errors surface here, before anything is scheduled.
    """
    matrix = TrialMatrix.from_campaign(campaign)
    matrix.validate()
    template = campaign.manifest_template
    path_format = campaign.path_format or default_path_format(matrix.names)
    base_vars = {**(config.vars if config is not None else {}), **campaign.vars}
    instance = template.instance or campaign.instance or DEFAULT_INSTANCE
    if config is not None:
        config.instance(instance)

    manifests: list[TrialManifest] = []
    seen: dict[str, Mapping[str, str]] = {}
    for coordinates in matrix.points():
        trial_id = format_trial_path(path_format, coordinates)
        if trial_id in seen:
            raise ValueError(
                f"Trials {dict(seen[trial_id])} and {coordinates} map to the same directory {trial_id!r}; "
                "path_format must include every dimension."
            )
        seen[trial_id] = coordinates
        manifests.append(
            _expand_trial(
                campaign,
                coordinates,
                trial_id=trial_id,
                base_vars=base_vars,
                template_vars=template.vars,
                template_tasks=template.tasks,
                instance=instance,
            )
        )
    logger.debug("Expanded campaign %s into %d trials", campaign.name, len(manifests))
    return manifests


def _expand_trial(
    campaign: CampaignConfig,
    coordinates: Mapping[str, str],
    *,
    trial_id: str,
    base_vars: Mapping[str, str],
    template_vars: Mapping[str, Any],
    template_tasks: Sequence[Mapping[str, Any]],
    instance: str,
) -> TrialManifest:
    trial_dir = campaign.output_root / campaign.name / trial_id
    condition_context = {**coordinates, "bench": campaign.name}
    selected_vars = _select_vars(template_vars, condition_context, coordinates)
    selected_tasks = _select_tasks(template_tasks, condition_context, coordinates)
    root: dict[str, Any] = {
        **coordinates,
        "bench": campaign.name,
        "trial_id": trial_id,
        "trial_dir": str(trial_dir),
        "output_root": str(campaign.output_root),
        "vars": {**base_vars, **selected_vars},
        "tasks": selected_tasks,
    }
    _check_references(root, coordinates)
    try:
        resolved = OmegaConf.to_container(OmegaConf.create(root), resolve=True)
    except Exception as exc:  # omegaconf raises several unrelated error types
        raise TemplateError(f"Failed to resolve template for trial {_describe(coordinates)}: {exc}") from exc
    assert isinstance(resolved, dict)
    try:
        tasks = parse_steps(resolved["tasks"])
    except ValueError as exc:
        raise TemplateError(f"Invalid tasks for trial {_describe(coordinates)}: {exc}") from exc
    resolved_vars = {str(key): "" if value is None else str(value) for key, value in resolved["vars"].items()}
    return TrialManifest(
        bench=campaign.name,
        trial_id=trial_id,
        coordinates=dict(coordinates),
        instance=instance,
        vars=resolved_vars,
        tasks=tasks,
        trial_dir=trial_dir,
        estimated_s=estimate_steps(tasks),
    )


def _select_vars(
    template_vars: Mapping[str, Any], context: Mapping[str, str], coordinates: Mapping[str, str]
) -> dict[str, Any]:
    selected: dict[str, Any] = {}
    for key, entry in template_vars.items():
        if isinstance(entry, Mapping):
            if "value" not in entry:
                raise TemplateError(f"vars.{key} must be a scalar or a {{value, when}} mapping.")
            condition = entry.get("when")
            if condition is not None and not check_condition(str(condition), context, coordinates=coordinates):
                continue
            selected[str(key)] = entry["value"]
        else:
            selected[str(key)] = entry
    return selected


def _select_tasks(
    template_tasks: Sequence[Mapping[str, Any]], context: Mapping[str, str], coordinates: Mapping[str, str]
) -> list[dict[str, Any]]:
    selected: list[dict[str, Any]] = []
    for entry in template_tasks:
        task = dict(entry)
        condition = task.pop("when", None)
        if condition is not None and not check_condition(str(condition), context, coordinates=coordinates):
            continue
        selected.append(task)
    return selected


def _check_references(root: Mapping[str, Any], coordinates: Mapping[str, str]) -> None:
    known_vars = root.get("vars") or {}
    for text in _iter_strings(root):
        for match in _REFERENCE.finditer(text):
            body = match.group(1).strip()
            if ":" in body:
                # Resolver call such as ${oc.env:HOME}.
                continue
            head, _, rest = body.partition(".")
            if head not in root:
                raise TemplateError(f"Unresolved variable {body!r} for trial {_describe(coordinates)}")
            if head == "vars" and rest and rest.split(".", 1)[0] not in known_vars:
                raise TemplateError(f"Unresolved variable {body!r} for trial {_describe(coordinates)}")


def _iter_strings(value: Any) -> Iterator[str]:
    if isinstance(value, str):
        yield value
    elif isinstance(value, Mapping):
        for item in value.values():
            yield from _iter_strings(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from _iter_strings(item)


def _describe(coordinates: Mapping[str, str]) -> str:
    return ", ".join(f"{key}={value}" for key, value in coordinates.items())


def estimate_campaign_duration(manifests: Sequence[TrialManifest], workers: int) -> float:
    """Simulate ``workers`` parallel slots pulling trials in order; return the makespan."""
    if workers < 1:
        raise ValueError("workers must be >= 1.")
    finish_times: list[float] = [0.0] * min(workers, max(1, len(manifests)))
    heapq.heapify(finish_times)
    for manifest in manifests:
        start = heapq.heappop(finish_times)
        heapq.heappush(finish_times, start + manifest.estimated_s)
    return max(finish_times) if finish_times else 0.0


__all__ = [
    "DEFAULT_INSTANCE",
    "InvalidDimensionValue",
    "TrialManifest",
    "TrialMatrix",
    "default_path_format",
    "estimate_campaign_duration",
    "expand_campaign",
    "format_trial_path",
    "validate_dimension_value",
]
