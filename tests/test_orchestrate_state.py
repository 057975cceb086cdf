import json
from pathlib import Path

import pytest

from bench_harness.orchestrate.state import (
    TrialPaths,
    TrialRecord,
    TrialState,
    finalize_trial,
    is_trial_complete,
    load_summary,
    open_atomic,
    prepare_trial_dir,
    trial_status,
    write_json_atomic,
    write_summary,
)


def test_finalize_writes_result_then_marker(tmp_path: Path) -> None:
    paths = TrialPaths(tmp_path / "trial")

    finalize_trial(paths, status=TrialState.completed, result={"trial_id": "a/0"})

    assert json.loads(paths.result_path.read_text(encoding="utf-8")) == {"trial_id": "a/0"}
    marker = json.loads(paths.marker_path.read_text(encoding="utf-8"))
    assert marker["status"] == "completed"
    assert "completed_at" in marker
    assert paths.marker_path.stat().st_mtime_ns >= paths.result_path.stat().st_mtime_ns
    assert not list(paths.root.glob(".*.tmp-*"))


def test_finalize_rejects_unmarked_status(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        finalize_trial(TrialPaths(tmp_path), status=TrialState.cancelled, result={})


def test_failed_marker_is_complete_unless_rerun_failed(tmp_path: Path) -> None:
    paths = TrialPaths(tmp_path / "trial")
    finalize_trial(paths, status=TrialState.failed, result={})

    assert is_trial_complete(paths.root) is True
    assert is_trial_complete(paths.root, rerun_failed=True) is False
    assert trial_status(paths.root) == "failed"


def test_prepare_trial_dir_clears_unmarked_dirs(tmp_path: Path) -> None:
    partial = tmp_path / "partial"
    (partial / "raw-outputs").mkdir(parents=True)
    (partial / "raw-outputs" / "queue").write_text("x", encoding="utf-8")

    assert trial_status(partial) == "incomplete"
    assert prepare_trial_dir(partial) == "directory"
    assert not partial.exists()
    assert trial_status(partial) == "pending"
    assert prepare_trial_dir(partial) is None


def test_prepare_trial_dir_drops_only_the_marker_of_a_marked_trial(tmp_path: Path) -> None:
    done = TrialPaths(tmp_path / "done")
    finalize_trial(done, status=TrialState.timed_out, result={})
    done.coverage_path.write_text("{}", encoding="utf-8")

    assert prepare_trial_dir(done.root) == "marker"

    assert not done.marker_path.exists()
    assert done.coverage_path.exists()
    assert trial_status(done.root) == "incomplete"


def test_prepare_trial_dir_clears_failed_trial_on_rerun_failed(tmp_path: Path) -> None:
    failed = TrialPaths(tmp_path / "failed")
    finalize_trial(failed, status=TrialState.failed, result={})

    assert prepare_trial_dir(failed.root, rerun_failed=True) == "directory"
    assert not failed.root.exists()


def test_unreadable_marker_counts_as_incomplete(tmp_path: Path) -> None:
    paths = TrialPaths(tmp_path / "trial")
    paths.root.mkdir()
    paths.marker_path.write_text("{not json", encoding="utf-8")

    assert is_trial_complete(paths.root) is False


def test_write_json_atomic_replaces_existing(tmp_path: Path) -> None:
    target = tmp_path / "nested" / "data.json"
    write_json_atomic(target, {"a": 1})
    write_json_atomic(target, {"b": 2})

    assert json.loads(target.read_text(encoding="utf-8")) == {"b": 2}
    assert sorted(path.name for path in target.parent.iterdir()) == ["data.json"]


def test_open_atomic_keeps_old_file_when_the_block_fails(tmp_path: Path) -> None:
    target = tmp_path / "workdir.tar.gz"
    target.write_bytes(b"old")

    with pytest.raises(RuntimeError):
        with open_atomic(target) as handle:
            handle.write(b"partial")
            raise RuntimeError("read failed")

    assert target.read_bytes() == b"old"
    assert [path.name for path in tmp_path.iterdir()] == ["workdir.tar.gz"]


def test_summary_counts_states(tmp_path: Path) -> None:
    records = [
        TrialRecord(trial_id="a/0", coordinates={"binary": "a"}, instance="default", state=TrialState.completed),
        TrialRecord(trial_id="b/0", coordinates={"binary": "b"}, instance="default", state=TrialState.failed),
        TrialRecord(trial_id="c/0", coordinates={"binary": "c"}, instance="default", state=TrialState.completed),
    ]
    path = tmp_path / "summary.json"

    write_summary(path, records)
    summary = load_summary(path)

    assert summary["counts"] == {"completed": 2, "failed": 1}
    assert [trial["trial_id"] for trial in summary["trials"]] == ["a/0", "b/0", "c/0"]
    assert load_summary(tmp_path / "missing.json") == {"trials": []}
