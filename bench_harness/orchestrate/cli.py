"""CLI entrypoint for the benchmark trial harness."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
import sys

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
import yaml

from bench_harness.orchestrate.config import (
    CampaignConfig,
    HarnessConfig,
    apply_overrides,
    load_campaign,
    load_harness_config,
    parse_dimension_override,
    resolve_campaign_path,
)
from bench_harness.orchestrate.dashboard import STATE_STYLES, print_report
from bench_harness.orchestrate.expand import TrialManifest, estimate_campaign_duration, expand_campaign
from bench_harness.orchestrate.images import ImageError, ImageRegistry
from bench_harness.orchestrate.resources import default_worker_count
from bench_harness.orchestrate.run import EXIT_HALTED, EXIT_INTERRUPTED, CampaignRunner, RunOptions
from bench_harness.orchestrate.sandbox import BackendUnavailable, create_backend
from bench_harness.orchestrate.state import trial_status
from bench_harness.utils.durations import format_duration

logger = logging.getLogger(__name__)

EXIT_CONFIG_ERROR = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bench-harness",
        description="Run sandboxed benchmark trial campaigns.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Harness configuration YAML (defaults to ./bench-harness.yaml when present).",
    )
    parser.add_argument(
        "--backend",
        choices=("local", "docker", "firecracker"),
        default=None,
        help="Sandbox backend (overrides the configuration).",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Expand and execute a campaign.")
    _add_campaign_arguments(run)
    run.add_argument("--workers", type=int, default=None, help="Maximum concurrent trials.")
    run.add_argument("--dry-run", action="store_true", help="Print resolved trials and exit without running.")
    run.add_argument("--rerun-failed", action="store_true", help="Re-run trials whose marker records a failure.")
    run.add_argument("--no-dashboard", action="store_true", help="Disable the live progress table.")

    expand = subparsers.add_parser("expand", help="Print the resolved trial manifests as YAML.")
    _add_campaign_arguments(expand)

    build = subparsers.add_parser("build", help="Build or fetch images.")
    build.add_argument("images", nargs="*", help="Image names (default: all declared images).")

    status = subparsers.add_parser("status", help="Show per-trial status from completion markers.")
    _add_campaign_arguments(status)

    subparsers.add_parser("cleanup", help="Remove orphaned sandboxes left by earlier runs.")
    return parser


def _add_campaign_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("campaign", help="Campaign YAML path or name under campaigns_dir.")
    parser.add_argument(
        "--set",
        dest="overrides",
        action="append",
        default=[],
        metavar="DIM=V1,V2",
        help="Replace the values of a matrix dimension (repeatable).",
    )
    parser.add_argument("--trials", type=int, default=None, help="Set the trial dimension to 0..N-1.")


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False, rich_tracebacks=True)],
        force=True,
    )


def _load_campaign(args: argparse.Namespace, config: HarnessConfig) -> CampaignConfig:
    campaign = load_campaign(resolve_campaign_path(args.campaign, config))
    overrides = dict(parse_dimension_override(expr) for expr in args.overrides)
    return apply_overrides(campaign, dimension_overrides=overrides, trials=args.trials)


def _print_trials(console: Console, trials: list[TrialManifest], *, workers: int) -> None:
    for trial in trials:
        console.print(f"{trial.trial_id}\t{trial.instance}\t{len(trial.tasks)} steps\t~{format_duration(trial.estimated_s)}")
    estimate = estimate_campaign_duration(trials, workers)
    console.print(f"{len(trials)} trials, {workers} workers, estimated {format_duration(estimate)}")


def _cmd_run(args: argparse.Namespace, config: HarnessConfig, console: Console) -> int:
    campaign = _load_campaign(args, config)
    trials = expand_campaign(campaign, config)
    instance = trials[0].instance if trials else "default"
    workers = args.workers if args.workers is not None else default_worker_count(config, instance)
    if workers < 1:
        raise ValueError("--workers must be >= 1.")
    if args.dry_run:
        _print_trials(console, trials, workers=workers)
        return 0
    registry = ImageRegistry(config)
    registry.ensure(_images_for(config, {trial.instance for trial in trials}))
    backend = create_backend(config, registry, args.backend)
    runner = CampaignRunner(
        config,
        trials,
        backend,
        options=RunOptions(
            bench=campaign.name,
            output_root=campaign.output_root,
            workers=workers,
            rerun_failed=args.rerun_failed,
            use_dashboard=not args.no_dashboard,
        ),
    )
    logger.info(
        "Campaign %s: %d trials, estimated %s with %d workers",
        campaign.name,
        len(trials),
        format_duration(estimate_campaign_duration(trials, workers)),
        workers,
    )
    report = runner.run()
    print_report(report.counts, report.failures, console=console)
    if report.halted_by is not None:
        logger.error("Campaign halted: %s", report.halted_by)
    return report.exit_code


def _images_for(config: HarnessConfig, instances: set[str]) -> list[str]:
    """Images needed by the given instances plus the VMM kernel and binary when used."""
    names: list[str] = []
    for name in sorted(instances):
        instance = config.instance(name)
        if instance.rootfs is not None and config.backend == "firecracker":
            names.append(instance.rootfs.image)
        names.extend(drive.image for drive in instance.drives)
    if config.backend == "firecracker":
        for name in (config.firecracker.kernel, config.firecracker.binary):
            if name and name in config.images:
                names.append(name)
    return list(dict.fromkeys(names))


def _cmd_expand(args: argparse.Namespace, config: HarnessConfig, console: Console) -> int:
    campaign = _load_campaign(args, config)
    trials = expand_campaign(campaign, config)
    sys.stdout.write(yaml.safe_dump([trial.to_dict() for trial in trials], sort_keys=False))
    return 0


def _cmd_build(args: argparse.Namespace, config: HarnessConfig, console: Console) -> int:
    registry = ImageRegistry(config)
    names = args.images or registry.declared()
    for name in names:
        image = registry.build(name)
        console.print(f"{image.name}\t{image.digest[:16]}\t{image.path}")
    return 0


def _cmd_status(args: argparse.Namespace, config: HarnessConfig, console: Console) -> int:
    campaign = _load_campaign(args, config)
    trials = expand_campaign(campaign, config)
    table = Table(title=f"{campaign.name} ({len(trials)} trials)")
    table.add_column("Trial", no_wrap=True)
    table.add_column("Status", no_wrap=True)
    counts: dict[str, int] = {}
    for trial in trials:
        status = trial_status(trial.trial_dir)
        counts[status] = counts.get(status, 0) + 1
        table.add_row(trial.trial_id, f"[{STATE_STYLES.get(status, '')}]{status}")
    console.print(table)
    console.print(" ".join(f"{status}={count}" for status, count in sorted(counts.items())))
    return 0


def _cmd_cleanup(args: argparse.Namespace, config: HarnessConfig, console: Console) -> int:
    backend = create_backend(config, ImageRegistry(config), args.backend)
    removed = backend.cleanup_orphans()
    for name in removed:
        console.print(name)
    console.print(f"removed {len(removed)} orphaned {backend.name} sandboxes")
    return 0


COMMANDS = {
    "run": _cmd_run,
    "expand": _cmd_expand,
    "build": _cmd_build,
    "status": _cmd_status,
    "cleanup": _cmd_cleanup,
}


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)
    console = Console(highlight=False)
    try:
        config = load_harness_config(args.config.expanduser().resolve() if args.config else None)
        if args.backend:
            config = config.model_copy(update={"backend": args.backend})
        return COMMANDS[args.command](args, config, console)
    except (ValueError, FileNotFoundError, ImageError) as exc:
        logger.error("%s", exc)
        return EXIT_CONFIG_ERROR
    except BackendUnavailable as exc:
        logger.error("Sandbox backend unavailable: %s", exc)
        return EXIT_HALTED
    except KeyboardInterrupt:
        return EXIT_INTERRUPTED


__all__ = ["build_parser", "main"]
