from pathlib import Path

import pytest

from bench_harness.orchestrate.config import (
    apply_overrides,
    load_campaign,
    load_harness_config,
    parse_dimension_override,
    resolve_campaign_path,
)


def test_harness_config_resolves_paths_relative_to_file(tmp_path: Path) -> None:
    config_path = tmp_path / "bench-harness.yaml"
    config_path.write_text(
        """
cache_dir: cache
campaigns_dir: campaigns
backend: docker
workers: 4
vars:
  FUZZ_TIME: 24h
  DEBUG: true
instances:
  default:
    machine:
      vcpu_count: 2
      mem_size_mib: 2048
    drives:
      - name: tools
        image: tools
        guest_path: /opt/tools
images:
  tools:
    paths:
      - src: tools
        dst: /bin
""".lstrip(),
        encoding="utf-8",
    )

    config = load_harness_config(config_path)

    assert config.cache_dir == (tmp_path / "cache").resolve()
    assert config.campaigns_dir == (tmp_path / "campaigns").resolve()
    assert config.backend == "docker"
    assert config.workers == 4
    assert config.vars == {"FUZZ_TIME": "24h", "DEBUG": "1"}
    assert config.instance("default").machine.vcpu_count == 2
    assert config.images["tools"].paths[0].src == (tmp_path / "tools").resolve()
    assert config.sandbox_root == config.cache_dir / "run"


def test_harness_config_rejects_relative_guest_path(tmp_path: Path) -> None:
    config_path = tmp_path / "bench-harness.yaml"
    config_path.write_text(
        """
instances:
  default:
    drives:
      - name: tools
        image: tools
        guest_path: opt/tools
""".lstrip(),
        encoding="utf-8",
    )

    with pytest.raises(ValueError, match="guest_path must be absolute"):
        load_harness_config(config_path)


def test_unknown_instance_lists_known_names(tmp_path: Path) -> None:
    config_path = tmp_path / "bench-harness.yaml"
    config_path.write_text("cache_dir: cache\n", encoding="utf-8")
    config = load_harness_config(config_path)

    with pytest.raises(ValueError, match="known: default"):
        config.instance("large")


def test_campaign_loads_template_file_and_range_dimension(tmp_path: Path) -> None:
    (tmp_path / "template.yaml").write_text(
        """
instance: default
tasks:
  - kind: exit_if_existing
  - kind: run
    command: fuzz --binary ${binary}
    duration: ${vars.FUZZ_TIME}
""".lstrip(),
        encoding="utf-8",
    )
    campaign_path = tmp_path / "campaigns" / "fw.yaml"
    campaign_path.parent.mkdir()
    campaign_path.write_text(
        """
name: fw
output_root: ../results
template: ../template.yaml
matrix:
  binary: [Heat_Press, CNC]
  trial:
    range: [3]
""".lstrip(),
        encoding="utf-8",
    )

    campaign = load_campaign(campaign_path)

    assert campaign.output_root == (tmp_path / "results").resolve()
    assert campaign.matrix == {"binary": ["Heat_Press", "CNC"], "trial": ["0", "1", "2"]}
    template = campaign.manifest_template
    assert template.instance == "default"
    assert template.tasks[1]["command"] == "fuzz --binary ${binary}"


def test_resolve_campaign_path_by_name(tmp_path: Path) -> None:
    config_path = tmp_path / "bench-harness.yaml"
    config_path.write_text("campaigns_dir: campaigns\n", encoding="utf-8")
    (tmp_path / "campaigns").mkdir()
    campaign_file = tmp_path / "campaigns" / "fw.yml"
    campaign_file.write_text("name: fw\n", encoding="utf-8")
    config = load_harness_config(config_path)

    assert resolve_campaign_path("fw", config) == campaign_file.resolve()
    with pytest.raises(FileNotFoundError):
        resolve_campaign_path("missing", config)


def test_overrides_replace_dimension_values(tmp_path: Path) -> None:
    campaign_path = tmp_path / "fw.yaml"
    campaign_path.write_text(
        """
name: fw
template:
  tasks: []
matrix:
  mode: [full, no-cmplog]
  trial: [0, 1, 2, 3]
""".lstrip(),
        encoding="utf-8",
    )
    campaign = load_campaign(campaign_path)

    name, values = parse_dimension_override("mode=full")
    updated = apply_overrides(campaign, dimension_overrides={name: values}, trials=2)

    assert updated.matrix == {"mode": ["full"], "trial": ["0", "1"]}
    assert campaign.matrix["trial"] == ["0", "1", "2", "3"]
    with pytest.raises(ValueError, match="Unknown matrix dimension"):
        apply_overrides(campaign, dimension_overrides={"fuzzer": ["afl"]})
    with pytest.raises(ValueError, match="expected DIM=value"):
        parse_dimension_override("mode")
