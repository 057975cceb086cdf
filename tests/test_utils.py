import os
from pathlib import Path

import pytest

from bench_harness.utils import (
    format_duration,
    parse_duration,
    rebase_guest_path,
    remove_tree,
    resolve_relative,
    sanitize_name,
)


@pytest.mark.parametrize(
    ("value", "seconds"),
    [
        (90, 90.0),
        ("45", 45.0),
        ("24h", 86400.0),
        ("30 min", 1800.0),
        ("1h30m", 5400.0),
        ("2.5s", 2.5),
    ],
)
def test_parse_duration(value, seconds) -> None:
    assert parse_duration(value) == seconds


@pytest.mark.parametrize("value", ["", "soon", "5 fortnights", "-3", True, None, "1h x"])
def test_parse_duration_rejects_garbage(value) -> None:
    with pytest.raises(ValueError):
        parse_duration(value)


def test_format_duration() -> None:
    assert format_duration(5) == "5s"
    assert format_duration(125) == "2m05s"
    assert format_duration(86400 + 600) == "24h10m"


def test_rebase_guest_path_stays_under_root(tmp_path: Path) -> None:
    assert rebase_guest_path(tmp_path, "/opt/tools/bin") == tmp_path / "opt" / "tools" / "bin"
    assert rebase_guest_path(tmp_path, "/") == tmp_path
    with pytest.raises(ValueError, match="escapes"):
        rebase_guest_path(tmp_path, "/../etc/passwd")


def test_sanitize_name_keeps_distinct_inputs_distinct() -> None:
    assert sanitize_name("w0-abc") == "w0-abc"
    first = sanitize_name("afl-full/a/0")
    second = sanitize_name("afl-full:a:0")
    assert "/" not in first
    assert first != second


def test_resolve_relative(tmp_path: Path) -> None:
    assert resolve_relative("sub/file", base_dir=tmp_path) == (tmp_path / "sub" / "file").resolve()
    assert resolve_relative(tmp_path / "abs", base_dir=Path("/elsewhere")) == (tmp_path / "abs").resolve()


def test_remove_tree_clears_read_only_directories(tmp_path: Path) -> None:
    tree = tmp_path / "image"
    (tree / "bin").mkdir(parents=True)
    (tree / "bin" / "tool").write_bytes(b"\x7fELF")
    os.chmod(tree / "bin" / "tool", 0o444)
    os.chmod(tree / "bin", 0o555)
    os.chmod(tree, 0o555)

    remove_tree(tree)
    remove_tree(tree)

    assert not tree.exists()
