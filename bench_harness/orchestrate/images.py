"""Content-addressed image cache: build, fetch and resolve named images."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import hashlib
import json
import logging
import os
from pathlib import Path
import shutil
import subprocess
import tarfile
from tempfile import NamedTemporaryFile
from typing import Iterable
import uuid

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from bench_harness.orchestrate.config import HarnessConfig, ImageConfig
from bench_harness.orchestrate.state import write_json_atomic
from bench_harness.utils.pathing import rebase_guest_path

logger = logging.getLogger(__name__)

TREE_DIRNAME = "tree"
EXT4_FILENAME = "image.ext4"
CURRENT_FILENAME = "current.json"


class ImageError(RuntimeError):
    """Raised when an image cannot be built, fetched or verified."""


class ImageNotFound(ImageError):
    """Raised when an image is undeclared or has not been built yet."""


@dataclass(frozen=True)
class ResolvedImage:
    name: str
    digest: str
    kind: str
    role: str
    path: Path

    @property
    def is_tree(self) -> bool:
        return self.path.is_dir()


def tree_digest(root: Path) -> str:
    """Digest a directory tree from relative paths, executable bits and contents."""
    digest = hashlib.sha256()
    for path in sorted(root.rglob("*"), key=lambda item: item.relative_to(root).as_posix()):
        rel = path.relative_to(root).as_posix()
        if path.is_symlink():
            digest.update(f"l {rel} {os.readlink(path)}\n".encode("utf-8"))
        elif path.is_dir():
            digest.update(f"d {rel}\n".encode("utf-8"))
        else:
            executable = "x" if os.stat(path).st_mode & 0o111 else "-"
            digest.update(f"f {rel} {executable} {file_digest(path)}\n".encode("utf-8"))
    return digest.hexdigest()


def file_digest(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def duplicate_tree(src: Path, dst: Path) -> None:
    """Copy an image tree into a private, writable location."""
    shutil.copytree(src, dst, symlinks=True)
    for path in [dst, *dst.rglob("*")]:
        if path.is_symlink():
            continue
        mode = os.stat(path).st_mode
        os.chmod(path, mode | 0o200)


def _freeze_tree(root: Path) -> None:
    # Deepest paths first so directories are locked after their contents.
    for path in sorted(root.rglob("*"), key=lambda item: len(item.parts), reverse=True) + [root]:
        if path.is_symlink():
            continue
        mode = os.stat(path).st_mode
        os.chmod(path, mode & ~0o222)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def download_file(
    url: str,
    dest: Path,
    *,
    connect_timeout: int = 5,
    read_timeout: int = 60,
    retries: int = 5,
) -> Path:
    """Download ``url`` to ``dest`` with retries/backoff and an atomic rename."""
    dest.parent.mkdir(parents=True, exist_ok=True)
    retry = Retry(
        total=retries,
        backoff_factor=0.5,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods={"GET"},
        raise_on_status=False,
        respect_retry_after_header=True,
    )
    adapter = HTTPAdapter(max_retries=retry)
    tmp_path: Path | None = None
    try:
        with requests.Session() as session:
            session.mount("http://", adapter)
            session.mount("https://", adapter)
            with session.get(url, stream=True, timeout=(connect_timeout, read_timeout)) as response:
                response.raise_for_status()
                with NamedTemporaryFile(
                    dir=dest.parent, prefix=f"{dest.name}.", suffix=".part", delete=False
                ) as tmp_file:
                    tmp_path = Path(tmp_file.name)
                    for chunk in response.iter_content(chunk_size=1024 * 64):
                        if chunk:
                            tmp_file.write(chunk)
        if tmp_path is None:
            raise ImageError("Temporary file was not created during download.")
        tmp_path.replace(dest)
        return dest
    except Exception:
        if tmp_path is not None:
            tmp_path.unlink(missing_ok=True)
        raise


class ImageRegistry:
    """Named images under ``<cache_dir>/images/<name>/<digest>/``.

    A digest directory is never written to again once ``current.json`` points at it.
    """

    def __init__(self, config: HarnessConfig, *, docker_client_factory=None) -> None:
        self._config = config
        self._root = config.images_dir
        self._docker_client_factory = docker_client_factory

    @property
    def root(self) -> Path:
        return self._root

    def declared(self) -> list[str]:
        return sorted(self._config.images)

    def spec(self, name: str) -> ImageConfig:
        try:
            return self._config.images[name]
        except KeyError:
            raise ImageNotFound(f"image not declared: {name}") from None

    def resolve(self, name: str) -> ResolvedImage:
        spec = self.spec(name)
        record_path = self._root / name / CURRENT_FILENAME
        if not record_path.exists():
            raise ImageNotFound(f"image not built: {name}")
        with open(record_path, "r", encoding="utf-8") as handle:
            record = json.load(handle)
        path = self._root / name / record["digest"] / record["artifact"]
        if not path.exists():
            raise ImageNotFound(f"image artifact missing: {name} ({path})")
        return ResolvedImage(name=name, digest=record["digest"], kind=spec.kind, role=spec.role, path=path)

    def is_built(self, name: str) -> bool:
        try:
            self.resolve(name)
        except ImageNotFound:
            return False
        return True

    def ensure(self, names: Iterable[str] | None = None) -> list[ResolvedImage]:
        """Build whatever is missing or stale; return resolved images."""
        resolved: list[ResolvedImage] = []
        for name in names if names is not None else self.declared():
            if self.is_built(name) and not self._is_stale(name):
                resolved.append(self.resolve(name))
            else:
                resolved.append(self.build(name))
        return resolved

    def build(self, name: str) -> ResolvedImage:
        spec = self.spec(name)
        logger.info("Building image %s (kind=%s)", name, spec.kind)
        if spec.kind == "fetch":
            digest, artifact = self._fetch(name, spec)
        else:
            digest, artifact = self._build_tree(name, spec)
        write_json_atomic(
            self._root / name / CURRENT_FILENAME,
            {
                "name": name,
                "digest": digest,
                "artifact": artifact,
                "kind": spec.kind,
                "role": spec.role,
                "built_at": _now(),
                "source_mtime": self._source_mtime(spec),
            },
        )
        return self.resolve(name)

    def ext4_image(self, image: ResolvedImage, *, size_mib: int | None = None) -> Path:
        """Materialise a tree image as an ext4 filesystem beside it (cached per digest)."""
        if not image.is_tree:
            return image.path
        target = image.path.parent / EXT4_FILENAME
        if target.exists():
            return target
        spec = self.spec(image.name)
        tmp_path = target.with_suffix(f".tmp-{uuid.uuid4().hex}")
        make_ext4(
            image.path,
            tmp_path,
            label=image.name,
            fs_uuid=str(uuid.UUID(image.digest[:32])),
            size_mib=size_mib or spec.size_mib,
        )
        os.chmod(tmp_path, 0o444)
        os.replace(tmp_path, target)
        return target

    def _is_stale(self, name: str) -> bool:
        spec = self.spec(name)
        if spec.kind != "host":
            return False
        record_path = self._root / name / CURRENT_FILENAME
        with open(record_path, "r", encoding="utf-8") as handle:
            record = json.load(handle)
        recorded = record.get("source_mtime")
        current = self._source_mtime(spec)
        return recorded is None or (current is not None and current > recorded)

    @staticmethod
    def _source_mtime(spec: ImageConfig) -> float | None:
        if spec.kind != "host":
            return None
        newest: float | None = None
        for entry in spec.paths:
            if not entry.src.exists():
                continue
            candidates = [entry.src, *entry.src.rglob("*")] if entry.src.is_dir() else [entry.src]
            for candidate in candidates:
                mtime = candidate.stat().st_mtime
                newest = mtime if newest is None else max(newest, mtime)
        return newest

    def _build_tree(self, name: str, spec: ImageConfig) -> tuple[str, str]:
        image_root = self._root / name
        staging = image_root / f".staging-{uuid.uuid4().hex}"
        tree = staging / TREE_DIRNAME
        tree.mkdir(parents=True)
        try:
            if spec.kind == "docker":
                self._export_docker(spec, tree)
            for entry in spec.paths:
                if not entry.src.exists():
                    raise ImageError(f"Image {name}: source path not found: {entry.src}")
                target = rebase_guest_path(tree, entry.dst)
                target.parent.mkdir(parents=True, exist_ok=True)
                if entry.src.is_dir():
                    shutil.copytree(entry.src, target, symlinks=True, dirs_exist_ok=True)
                else:
                    shutil.copy2(entry.src, target)
            for directory in spec.create_dirs:
                rebase_guest_path(tree, directory).mkdir(parents=True, exist_ok=True)
            digest = tree_digest(tree)
            final = image_root / digest
            if final.exists():
                logger.debug("Image %s digest %s already cached", name, digest[:12])
            else:
                _freeze_tree(tree)
                os.replace(staging, final)
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)
        return digest, TREE_DIRNAME

    def _fetch(self, name: str, spec: ImageConfig) -> tuple[str, str]:
        assert spec.url is not None and spec.sha256 is not None
        digest = spec.sha256
        final = self._root / name / digest
        filename = Path(spec.member or spec.url.rsplit("/", 1)[-1] or name).name
        if (final / filename).exists():
            return digest, filename
        download_dir = self._root / name / "downloads"
        archive = download_file(spec.url, download_dir / f"{digest}.download")
        try:
            actual = file_digest(archive)
            if actual != digest:
                raise ImageError(f"Image {name}: sha256 mismatch for {spec.url} (expected {digest}, got {actual})")
            staging = self._root / name / f".staging-{uuid.uuid4().hex}"
            staging.mkdir(parents=True)
            try:
                target = staging / filename
                if spec.member:
                    _extract_member(archive, spec.member, target)
                else:
                    shutil.copyfile(archive, target)
                mode = 0o555 if spec.role == "binary" else 0o444
                os.chmod(target, mode)
                final.parent.mkdir(parents=True, exist_ok=True)
                if not final.exists():
                    os.replace(staging, final)
            finally:
                if staging.exists():
                    shutil.rmtree(staging, ignore_errors=True)
        finally:
            archive.unlink(missing_ok=True)
        return digest, filename

    def _export_docker(self, spec: ImageConfig, tree: Path) -> None:
        client = self._docker_client()
        assert spec.tag is not None
        if spec.build_path is not None:
            logger.info("docker build %s from %s", spec.tag, spec.build_path)
            client.images.build(path=str(spec.build_path), tag=spec.tag, rm=True)
        container = client.containers.create(spec.tag, command=["true"])
        try:
            for export_path in spec.export or ["/"]:
                stream, _ = container.get_archive(export_path)
                with NamedTemporaryFile(suffix=".tar") as tmp_file:
                    for chunk in stream:
                        tmp_file.write(chunk)
                    tmp_file.flush()
                    parent = rebase_guest_path(tree, export_path).parent
                    parent.mkdir(parents=True, exist_ok=True)
                    with tarfile.open(tmp_file.name, "r") as archive:
                        archive.extractall(parent, filter="data")
        finally:
            container.remove(force=True)

    def _docker_client(self):
        if self._docker_client_factory is not None:
            return self._docker_client_factory()
        import docker

        return docker.from_env(timeout=600)


def make_ext4(
    tree: Path,
    target: Path,
    *,
    label: str,
    fs_uuid: str | None = None,
    size_mib: int | None = None,
) -> Path:
    """Build an ext4 filesystem at ``target`` populated from ``tree`` without root privileges.

    With a fixed ``fs_uuid`` the result is reproducible for identical input trees.
    """
    size = size_mib or _estimate_ext4_mib(tree)
    env = {**os.environ, "E2FSPROGS_FAKE_TIME": "1"}
    command = ["mkfs.ext4", "-q", "-F", "-L", label[:16]]
    if fs_uuid is not None:
        command += ["-U", fs_uuid, "-E", f"root_owner=0:0,hash_seed={fs_uuid}"]
    else:
        command += ["-E", "root_owner=0:0"]
    command += ["-d", str(tree), str(target), f"{size}M"]
    try:
        subprocess.run(command, check=True, capture_output=True, env=env)
    except FileNotFoundError as exc:
        raise ImageError("mkfs.ext4 is required to build microVM drive images.") from exc
    except subprocess.CalledProcessError as exc:
        target.unlink(missing_ok=True)
        stderr = exc.stderr.decode("utf-8", errors="replace") if exc.stderr else ""
        raise ImageError(f"mkfs.ext4 failed for {label}: {stderr.strip()}") from exc
    return target


def _extract_member(archive: Path, member: str, target: Path) -> None:
    with tarfile.open(archive, "r:*") as handle:
        try:
            info = handle.getmember(member)
        except KeyError as exc:
            raise ImageError(f"Archive {archive.name} has no member {member!r}") from exc
        source = handle.extractfile(info)
        if source is None:
            raise ImageError(f"Archive member {member!r} is not a regular file")
        with source, open(target, "wb") as sink:
            shutil.copyfileobj(source, sink)


def _estimate_ext4_mib(tree: Path) -> int:
    total = sum(path.stat().st_size for path in tree.rglob("*") if path.is_file() and not path.is_symlink())
    return max(16, int(total * 1.5 / (1024 * 1024)) + 16)


__all__ = [
    "ImageError",
    "ImageNotFound",
    "ImageRegistry",
    "ResolvedImage",
    "download_file",
    "duplicate_tree",
    "file_digest",
    "make_ext4",
    "tree_digest",
]
