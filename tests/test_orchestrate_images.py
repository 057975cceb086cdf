import hashlib
import os
from pathlib import Path

import pytest

from bench_harness.orchestrate.config import HarnessConfig, ImageConfig, ImagePath
from bench_harness.orchestrate.images import ImageError, ImageNotFound, ImageRegistry, tree_digest


def _registry(tmp_path: Path, images: dict[str, ImageConfig]) -> ImageRegistry:
    return ImageRegistry(HarnessConfig(cache_dir=tmp_path / "cache", images=images))


def _tools_source(tmp_path: Path) -> Path:
    source = tmp_path / "src"
    source.mkdir()
    (source / "fuzz").write_text("#!/bin/sh\necho fuzz\n", encoding="utf-8")
    os.chmod(source / "fuzz", 0o755)
    return source


def test_host_image_build_is_content_addressed(tmp_path: Path) -> None:
    source = _tools_source(tmp_path)
    registry = _registry(
        tmp_path,
        {"tools": ImageConfig(paths=[ImagePath(src=source, dst="/bin")], create_dirs=["/work"])},
    )

    first = registry.build("tools")
    second = registry.build("tools")

    assert first.digest == second.digest
    assert first.path == registry.root / "tools" / first.digest / "tree"
    assert (first.path / "bin" / "fuzz").read_text(encoding="utf-8").startswith("#!/bin/sh")
    assert (first.path / "work").is_dir()
    assert tree_digest(first.path) == first.digest
    assert not os.access(first.path / "bin" / "fuzz", os.W_OK) or os.geteuid() == 0


def test_changed_source_produces_new_digest(tmp_path: Path) -> None:
    source = _tools_source(tmp_path)
    registry = _registry(tmp_path, {"tools": ImageConfig(paths=[ImagePath(src=source, dst="/bin")])})
    original = registry.ensure(["tools"])[0]

    (source / "fuzz").write_text("#!/bin/sh\necho fuzz v2\n", encoding="utf-8")
    future = os.stat(source / "fuzz").st_mtime + 10
    os.utime(source / "fuzz", (future, future))
    updated = registry.ensure(["tools"])[0]

    assert updated.digest != original.digest
    assert registry.resolve("tools").digest == updated.digest
    # Earlier digests stay on disk for trials that still reference them.
    assert original.path.exists()


def test_resolve_unknown_and_unbuilt_images(tmp_path: Path) -> None:
    source = _tools_source(tmp_path)
    registry = _registry(tmp_path, {"tools": ImageConfig(paths=[ImagePath(src=source, dst="/bin")])})

    with pytest.raises(ImageNotFound, match="not declared"):
        registry.resolve("kernel")
    with pytest.raises(ImageNotFound, match="not built"):
        registry.resolve("tools")
    assert registry.is_built("tools") is False


def test_missing_source_path_fails_build(tmp_path: Path) -> None:
    registry = _registry(tmp_path, {"tools": ImageConfig(paths=[ImagePath(src=tmp_path / "nope", dst="/bin")])})

    with pytest.raises(ImageError, match="source path not found"):
        registry.build("tools")


def test_fetch_image_verifies_sha256(tmp_path: Path, monkeypatch) -> None:
    payload = b"vmlinux-bytes"
    digest = hashlib.sha256(payload).hexdigest()

    def fake_download(url: str, dest: Path, **kwargs) -> Path:
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(payload)
        return dest

    monkeypatch.setattr("bench_harness.orchestrate.images.download_file", fake_download)
    registry = _registry(
        tmp_path,
        {
            "kernel": ImageConfig(kind="fetch", role="kernel", url="https://example.invalid/vmlinux", sha256=digest),
            "bad": ImageConfig(kind="fetch", url="https://example.invalid/other", sha256="0" * 64),
        },
    )

    kernel = registry.build("kernel")
    assert kernel.path.read_bytes() == payload
    assert kernel.path.name == "vmlinux"
    assert kernel.is_tree is False

    with pytest.raises(ImageError, match="sha256 mismatch"):
        registry.build("bad")


def test_fetch_image_requires_checksum() -> None:
    with pytest.raises(ValueError, match="sha256"):
        ImageConfig(kind="fetch", url="https://example.invalid/vmlinux")
