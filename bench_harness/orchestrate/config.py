"""Configuration schemas and loaders for the harness and its campaigns."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal, Mapping

from omegaconf import OmegaConf
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from bench_harness.utils.pathing import resolve_relative

DEFAULT_CONFIG_NAME = "bench-harness.yaml"

# Fixed seed fed to every guest unless an instance overrides it.
DEFAULT_ENTROPY: tuple[int, ...] = (
    0x6A09E667,
    0xBB67AE85,
    0x3C6EF372,
    0xA54FF53A,
    0x510E527F,
    0x9B05688C,
    0x1F83D9AB,
    0x5BE0CD19,
    0x428A2F98,
    0x71374491,
    0xB5C0FBCF,
    0xE9B5DBA5,
    0x3956C25B,
    0x59F111F1,
    0x923F82A4,
    0xAB1C5ED5,
)

MountMode = Literal["read_only", "duplicate"]
BackendName = Literal["local", "docker", "firecracker"]


class ConfigFormatError(ValueError):
    """Raised when a configuration file cannot be interpreted as a mapping."""


def _stringify_vars(value: object) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValueError("vars must be a mapping of names to scalar values.")
    result: dict[str, str] = {}
    for key, item in value.items():
        if isinstance(item, (Mapping, list)):
            raise ValueError(f"vars.{key} must be a scalar value.")
        if isinstance(item, bool):
            result[str(key)] = "1" if item else "0"
        else:
            result[str(key)] = "" if item is None else str(item)
    return result


def _validate_entropy(value: list[int] | None) -> list[int] | None:
    if value is None:
        return None
    if not value:
        raise ValueError("entropy must list at least one value.")
    for item in value:
        if not 0 <= item <= 0xFFFFFFFF:
            raise ValueError(f"entropy values must be unsigned 32-bit integers (got {item}).")
    return value


class ImagePath(BaseModel):
    src: Path
    dst: str


class ImageConfig(BaseModel):
    """Declared image: where it comes from and what it is for."""

    kind: Literal["host", "fetch", "docker"] = "host"
    role: Literal["rootfs", "payload", "scratch", "kernel", "binary"] = "payload"
    paths: list[ImagePath] = Field(default_factory=list)
    create_dirs: list[str] = Field(default_factory=list)
    url: str | None = None
    sha256: str | None = None
    member: str | None = None
    tag: str | None = None
    build_path: Path | None = None
    export: list[str] = Field(default_factory=list)
    size_mib: int | None = Field(default=None, ge=1)

    @model_validator(mode="after")
    def _check_source(self) -> "ImageConfig":
        if self.kind == "fetch":
            if not self.url:
                raise ValueError("fetch images require url.")
            if not self.sha256:
                raise ValueError("fetch images require sha256.")
        if self.kind == "docker" and not self.tag:
            raise ValueError("docker images require tag.")
        if self.sha256 is not None:
            self.sha256 = self.sha256.lower()
        return self


class MachineConfig(BaseModel):
    vcpu_count: int = Field(default=1, ge=1)
    mem_size_mib: int = Field(default=1024, ge=16)
    smt: bool = False
    disk_quota_mib: int | None = Field(default=None, ge=1)


class RootfsConfig(BaseModel):
    image: str
    mount_as: MountMode = "read_only"


class DriveConfig(BaseModel):
    name: str
    image: str
    guest_path: str
    mount_as: MountMode = "read_only"

    @field_validator("guest_path")
    @classmethod
    def _absolute_guest_path(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError(f"guest_path must be absolute (got {value!r}).")
        return value


class InstanceConfig(BaseModel):
    boot_timeout_s: float = Field(default=30.0, gt=0)
    boot_delay_s: float = Field(default=0.0, ge=0)
    machine: MachineConfig = Field(default_factory=MachineConfig)
    rootfs: RootfsConfig | None = None
    drives: list[DriveConfig] = Field(default_factory=list)
    workdir: str = "/"
    entropy: list[int] | None = None

    @field_validator("entropy")
    @classmethod
    def _check_entropy(cls, value: list[int] | None) -> list[int] | None:
        return _validate_entropy(value)

    @model_validator(mode="after")
    def _unique_drives(self) -> "InstanceConfig":
        names = [drive.name for drive in self.drives]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"Duplicate drive names: {duplicates}")
        return self


class FirecrackerConfig(BaseModel):
    binary: str = "firecracker"
    kernel: str | None = None
    boot_args: str = "console=ttyS0 reboot=k panic=1 pci=off"
    agent_port: int = 52
    api_timeout_s: float = Field(default=5.0, gt=0)


class DockerConfig(BaseModel):
    image: str = "bench-harness-guest:latest"
    build_path: Path | None = None
    agent_command: list[str] = Field(default_factory=lambda: ["/bin/agent", "-u", "/run/bench-harness/agent.sock"])
    agent_socket: str = "/run/bench-harness/agent.sock"
    user: str | None = None


class LocalConfig(BaseModel):
    enforce_limits: bool = False


class HarnessConfig(BaseModel):
    """Schema for the harness configuration file."""

    cache_dir: Path = Path(".cache/bench-harness")
    runtime_dir: Path | None = None
    campaigns_dir: Path | None = None
    backend: BackendName = "local"
    env_file: Path | None = None
    vars: dict[str, str] = Field(default_factory=dict)
    entropy: list[int] = Field(default_factory=lambda: list(DEFAULT_ENTROPY))
    images: dict[str, ImageConfig] = Field(default_factory=dict)
    firecracker: FirecrackerConfig = Field(default_factory=FirecrackerConfig)
    docker: DockerConfig = Field(default_factory=DockerConfig)
    local: LocalConfig = Field(default_factory=LocalConfig)
    instances: dict[str, InstanceConfig] = Field(default_factory=lambda: {"default": InstanceConfig()})
    workers: int | None = Field(default=None, ge=1)
    shutdown_grace_s: float = Field(default=30.0, ge=0)
    kill_grace_s: float = Field(default=5.0, ge=0)

    @field_validator("vars", mode="before")
    @classmethod
    def _stringify(cls, value: object) -> dict[str, str]:
        return _stringify_vars(value)

    @field_validator("entropy")
    @classmethod
    def _check_entropy(cls, value: list[int]) -> list[int]:
        _validate_entropy(value)
        return value

    @property
    def images_dir(self) -> Path:
        return self.cache_dir / "images"

    @property
    def sandbox_root(self) -> Path:
        return self.runtime_dir if self.runtime_dir is not None else self.cache_dir / "run"

    def instance(self, name: str) -> InstanceConfig:
        try:
            return self.instances[name]
        except KeyError:
            known = ", ".join(sorted(self.instances)) or "<none>"
            raise ValueError(f"Unknown instance {name!r} (known: {known})") from None


class ManifestTemplate(BaseModel):
    """Raw, unresolved manifest template: vars and tasks may still hold ``${...}`` references."""

    instance: str | None = None
    vars: dict[str, Any] = Field(default_factory=dict)
    tasks: list[dict[str, Any]] = Field(default_factory=list)


class CampaignConfig(BaseModel):
    """Schema for a campaign document: the trial matrix plus its manifest template."""

    name: str = Field(..., min_length=1)
    output_root: Path = Path("output")
    instance: str | None = None
    matrix: dict[str, list[str]] = Field(..., min_length=1)
    exclude: list[dict[str, str]] = Field(default_factory=list)
    path_format: str | None = None
    template: Path | ManifestTemplate
    vars: dict[str, str] = Field(default_factory=dict)
    source_path: Path | None = Field(default=None, exclude=True)

    @field_validator("vars", mode="before")
    @classmethod
    def _stringify(cls, value: object) -> dict[str, str]:
        return _stringify_vars(value)

    @field_validator("matrix", mode="before")
    @classmethod
    def _expand_matrix(cls, value: object) -> object:
        if not isinstance(value, Mapping):
            return value
        return {str(key): _dimension_values(str(key), values) for key, values in value.items()}

    @field_validator("exclude", mode="before")
    @classmethod
    def _stringify_exclude(cls, value: object) -> object:
        if not isinstance(value, list):
            return value
        return [
            {str(k): str(v) for k, v in entry.items()} if isinstance(entry, Mapping) else entry
            for entry in value
        ]

    @property
    def manifest_template(self) -> ManifestTemplate:
        if not isinstance(self.template, ManifestTemplate):
            raise ValueError(f"Campaign {self.name!r} template has not been loaded.")
        return self.template


def _dimension_values(name: str, values: object) -> list[str]:
    if isinstance(values, Mapping):
        bounds = values.get("range")
        if not isinstance(bounds, list) or len(bounds) not in {1, 2}:
            raise ValueError(f"matrix.{name}.range must be [stop] or [start, stop].")
        start, stop = (0, bounds[0]) if len(bounds) == 1 else (bounds[0], bounds[1])
        return [str(idx) for idx in range(int(start), int(stop))]
    if isinstance(values, (list, tuple)):
        return [_scalar_text(name, item) for item in values]
    return [_scalar_text(name, values)]


def _scalar_text(name: str, value: object) -> str:
    if isinstance(value, (Mapping, list)):
        raise ValueError(f"matrix.{name} values must be scalars.")
    return "" if value is None else str(value)


def load_harness_config(path: Path | None = None) -> HarnessConfig:
    if path is None:
        candidate = Path.cwd() / DEFAULT_CONFIG_NAME
        if not candidate.exists():
            config = HarnessConfig()
            _resolve_harness_paths(config, base_dir=Path.cwd())
            return config
        path = candidate
    resolved = path.expanduser().resolve()
    payload = _load_mapping(resolved)
    try:
        config = HarnessConfig(**payload)
    except ValidationError as exc:
        raise ValueError(f"Invalid harness config: {resolved}\n{exc}") from exc
    _resolve_harness_paths(config, base_dir=resolved.parent)
    return config


def _resolve_harness_paths(config: HarnessConfig, *, base_dir: Path) -> None:
    config.cache_dir = resolve_relative(config.cache_dir, base_dir=base_dir)
    if config.runtime_dir is not None:
        config.runtime_dir = resolve_relative(config.runtime_dir, base_dir=base_dir)
    if config.campaigns_dir is not None:
        config.campaigns_dir = resolve_relative(config.campaigns_dir, base_dir=base_dir)
    if config.env_file is not None:
        config.env_file = resolve_relative(config.env_file, base_dir=base_dir)
    if config.docker.build_path is not None:
        config.docker.build_path = resolve_relative(config.docker.build_path, base_dir=base_dir)
    for image in config.images.values():
        for entry in image.paths:
            entry.src = resolve_relative(entry.src, base_dir=base_dir)
        if image.build_path is not None:
            image.build_path = resolve_relative(image.build_path, base_dir=base_dir)


def resolve_campaign_path(value: str | Path, config: HarnessConfig) -> Path:
    """Accept either a campaign file path or a bare name looked up in ``campaigns_dir``."""
    candidate = Path(value).expanduser()
    if candidate.exists():
        return candidate.resolve()
    if config.campaigns_dir is not None:
        for suffix in (".yaml", ".yml"):
            named = config.campaigns_dir / f"{value}{suffix}"
            if named.exists():
                return named.resolve()
    raise FileNotFoundError(f"Campaign not found: {value}")


def load_campaign(path: Path) -> CampaignConfig:
    resolved = path.expanduser().resolve()
    # Templates are resolved per trial, so the campaign document is read unresolved.
    payload = _load_mapping(resolved, resolve=False)
    try:
        campaign = CampaignConfig(**payload)
    except ValidationError as exc:
        raise ValueError(f"Invalid campaign file: {resolved}\n{exc}") from exc
    base_dir = resolved.parent
    campaign.source_path = resolved
    campaign.output_root = resolve_relative(campaign.output_root, base_dir=base_dir)
    if isinstance(campaign.template, Path):
        campaign.template = load_template(resolve_relative(campaign.template, base_dir=base_dir))
    return campaign


def load_template(path: Path) -> ManifestTemplate:
    resolved = path.expanduser().resolve()
    payload = _load_mapping(resolved, resolve=False)
    try:
        return ManifestTemplate(**payload)
    except ValidationError as exc:
        raise ValueError(f"Invalid manifest template: {resolved}\n{exc}") from exc


def apply_overrides(
    campaign: CampaignConfig,
    *,
    dimension_overrides: Mapping[str, list[str]] | None = None,
    trials: int | None = None,
) -> CampaignConfig:
    """Return a copy of ``campaign`` with CLI dimension overrides applied."""
    matrix = {name: list(values) for name, values in campaign.matrix.items()}
    for name, values in (dimension_overrides or {}).items():
        if name not in matrix:
            raise ValueError(f"Unknown matrix dimension {name!r} (known: {', '.join(matrix)})")
        matrix[name] = list(values)
    if trials is not None:
        if "trial" not in matrix:
            raise ValueError("--trials requires a 'trial' matrix dimension.")
        if trials < 1:
            raise ValueError("--trials must be >= 1.")
        matrix["trial"] = [str(idx) for idx in range(trials)]
    return campaign.model_copy(update={"matrix": matrix})


def parse_dimension_override(expr: str) -> tuple[str, list[str]]:
    """Parse ``"mode=full,no-cmplog"`` into ``("mode", ["full", "no-cmplog"])``."""
    if "=" not in expr:
        raise ValueError(f"Invalid override {expr!r} (expected DIM=value[,value...])")
    name, _, raw_values = expr.partition("=")
    name = name.strip()
    values = [value.strip() for value in raw_values.split(",")]
    if not name:
        raise ValueError(f"Invalid override {expr!r} (dimension name is empty)")
    return name, values


def _load_mapping(path: Path, *, resolve: bool = True) -> Mapping[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Config not found: {path}")
    if path.suffix not in {".yaml", ".yml", ".json"}:
        raise ValueError(f"Unsupported config format: {path} (expected .yaml/.yml/.json)")
    try:
        data = OmegaConf.to_container(OmegaConf.load(path), resolve=resolve)
    except Exception as exc:  # pragma: no cover - OmegaConf error types vary
        raise ConfigFormatError(f"Failed to load config: {path}") from exc
    if not isinstance(data, Mapping):
        raise ConfigFormatError(f"Config must be a mapping at top level: {path}")
    return data


__all__ = [
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_ENTROPY",
    "CampaignConfig",
    "ConfigFormatError",
    "DockerConfig",
    "DriveConfig",
    "FirecrackerConfig",
    "HarnessConfig",
    "ImageConfig",
    "InstanceConfig",
    "LocalConfig",
    "MachineConfig",
    "ManifestTemplate",
    "MountMode",
    "apply_overrides",
    "load_campaign",
    "load_harness_config",
    "load_template",
    "parse_dimension_override",
    "resolve_campaign_path",
]
