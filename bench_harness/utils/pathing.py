"""Filesystem helpers shared by the expander, the backends and the aggregator."""

from __future__ import annotations

import hashlib
import os
from pathlib import Path, PurePosixPath
import re
import shutil
import sys

_NAME_ALLOWED = re.compile(r"[^a-zA-Z0-9_.-]+")


def resolve_relative(path: Path | str, *, base_dir: Path) -> Path:
    """Resolve ``path`` against ``base_dir`` unless it is already absolute."""
    candidate = Path(path).expanduser()
    if candidate.is_absolute():
        return candidate.resolve()
    return (base_dir / candidate).resolve()


def sanitize_name(value: str, *, max_len: int = 120, fallback: str = "trial") -> str:
    """Turn an arbitrary id into a name usable for containers, sockets and directories.

    A short hash suffix keeps distinct inputs distinct after lossy cleaning.
    """
    cleaned = _NAME_ALLOWED.sub("-", value).strip("-.")
    if not cleaned:
        cleaned = fallback
    if cleaned != value:
        suffix = hashlib.sha1(value.encode("utf-8")).hexdigest()[:8]  # noqa: S324
        cleaned = f"{cleaned}-{suffix}"
    if len(cleaned) > max_len:
        cleaned = cleaned[:max_len].rstrip("-.")
    return cleaned or fallback


def rebase_guest_path(root: Path, guest_path: str) -> Path:
    """Map an absolute guest path onto a host directory that stands in for ``/``."""
    pure = PurePosixPath("/") / guest_path
    parts = [part for part in pure.parts[1:] if part not in {"", "."}]
    if ".." in parts:
        raise ValueError(f"Guest path escapes the sandbox root: {guest_path!r}")
    return root.joinpath(*parts)


def remove_tree(path: Path) -> None:
    """Remove ``path`` even when parts of it were made read-only."""
    if not path.exists() and not path.is_symlink():
        return

    def _retry_writable(func, failed_path, _exc) -> None:
        parent = os.path.dirname(failed_path)
        os.chmod(parent, os.stat(parent).st_mode | 0o700)
        if os.path.isdir(failed_path) and not os.path.islink(failed_path):
            os.chmod(failed_path, os.stat(failed_path).st_mode | 0o700)
        func(failed_path)

    # onerror is deprecated from 3.12 on; both hooks take (func, path, error).
    if sys.version_info >= (3, 12):
        shutil.rmtree(path, onexc=_retry_writable)
    else:
        shutil.rmtree(path, onerror=_retry_writable)


__all__ = ["rebase_guest_path", "remove_tree", "resolve_relative", "sanitize_name"]
