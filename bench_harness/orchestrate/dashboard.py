"""Rich live dashboard and final report for campaign progress."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Mapping

from rich.console import Console
from rich.live import Live
from rich.table import Table
from rich.text import Text

from bench_harness.orchestrate.state import TrialRecord, TrialState


ACTIVE_STATES = {TrialState.provisioning, TrialState.running, TrialState.collecting}
SUMMARY_STATES = (
    TrialState.completed,
    TrialState.skipped,
    TrialState.timed_out,
    TrialState.failed,
    TrialState.cancelled,
)

STATE_STYLES: dict[str, str] = {
    "pending": "dim",
    "provisioning": "cyan",
    "running": "yellow",
    "collecting": "blue",
    "completed": "green",
    "skipped": "dim green",
    "timed_out": "green",
    "failed": "bold red",
    "cancelled": "magenta",
}

LOG_PREFIX_STYLES: dict[str, str] = {
    "RUN": "bold cyan",
    "TRIAL": "bold",
    "SHUTDOWN": "bold red",
}

LOG_EVENT_STYLES: dict[str, str] = {
    "started": "cyan",
    "start": "cyan",
    "ready": "blue",
    "step": "dim",
    "complete": "bold green",
    "timed-out": "green",
    "skipped": "dim",
    "failed": "bold red",
    "cancelled": "magenta",
    "halt": "bold red",
    "finished": "bold cyan",
}


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def format_elapsed(started_at: str | None, completed_at: str | None) -> str:
    start = _parse_time(started_at)
    if not start:
        return "-"
    end = _parse_time(completed_at) or datetime.now(timezone.utc)
    total_seconds = int((end - start).total_seconds())
    minutes, seconds = divmod(total_seconds, 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h{minutes:02d}m"
    if minutes:
        return f"{minutes}m{seconds:02d}s"
    return f"{seconds}s"


def count_states(trials: Iterable[TrialRecord]) -> dict[str, int]:
    counts = {state: 0 for state in (TrialState.pending, *ACTIVE_STATES, *SUMMARY_STATES)}
    for trial in trials:
        counts[trial.state] = counts.get(trial.state, 0) + 1
    return counts


def build_table(
    trials: Iterable[TrialRecord],
    *,
    caption: str | None = None,
    include_summary: bool = False,
) -> Table:
    trial_list = list(trials)
    counts = count_states(trial_list)

    table = Table(title=Text("Campaign", style="bold cyan"), caption=caption, expand=True)
    table.add_column("Trial", no_wrap=True, style="bold")
    table.add_column("Instance", no_wrap=True, style="dim")
    table.add_column("State", no_wrap=True)
    table.add_column("State Elapsed", no_wrap=True, style="dim")
    table.add_column("Total Elapsed", no_wrap=True, style="dim")
    table.add_column("Slot", no_wrap=True, style="cyan")
    table.add_column("Step", no_wrap=True, style="cyan")
    table.add_column("Note")
    for trial in trial_list:
        if trial.state not in ACTIVE_STATES:
            continue
        note = trial.error or trial.failure_reason or ""
        table.add_row(
            Text(trial.trial_id),
            Text(trial.instance, style="dim"),
            Text(trial.state, style=STATE_STYLES.get(trial.state, "")),
            format_elapsed(trial.state_entered_at, None),
            format_elapsed(trial.started_at, None),
            str(trial.slot) if trial.slot is not None else "-",
            trial.step or "-",
            Text(note, style="red" if note else "dim"),
        )

    if include_summary:
        for state in (TrialState.pending, *SUMMARY_STATES):
            if state != TrialState.pending and not counts.get(state):
                continue
            table.add_row(
                Text(f"{state.upper()} (all)", style="dim"),
                Text("-", style="dim"),
                Text(state, style=STATE_STYLES[state]),
                Text("-", style="dim"),
                Text("-", style="dim"),
                Text("-", style="dim"),
                Text("-", style="dim"),
                Text(f"count={counts.get(state, 0)}", style="dim"),
            )
    return table


def build_summary_table(counts: Mapping[str, int], *, title: str = "Campaign summary") -> Table:
    table = Table(title=Text(title, style="bold cyan"))
    table.add_column("State", no_wrap=True)
    table.add_column("Trials", justify="right")
    for state in SUMMARY_STATES:
        table.add_row(Text(state, style=STATE_STYLES[state]), str(counts.get(state, 0)))
    return table


def format_log_message(message: str) -> Text:
    text = Text(message)
    parts = message.split(" ", maxsplit=2)
    if not parts:
        return text
    prefix = parts[0]
    prefix_style = LOG_PREFIX_STYLES.get(prefix)
    if prefix_style:
        text.stylize(prefix_style, 0, len(prefix))
    if len(parts) >= 2:
        event = parts[1]
        event_style = LOG_EVENT_STYLES.get(event)
        if event_style:
            start = len(prefix) + 1
            text.stylize(event_style, start, start + len(event))
    return text


@dataclass
class CampaignDashboard:
    refresh_hz: float = 1.0
    enabled: bool = True

    def __post_init__(self) -> None:
        # Keep logs human-readable: no source file/line prefixes and no automatic syntax highlighting.
        self._console = Console(log_path=False, highlight=False)
        self._live = Live(
            build_table([], include_summary=True),
            refresh_per_second=self.refresh_hz,
            transient=False,
            console=self._console,
        )

    @property
    def console(self) -> Console:
        return self._console

    def start(self) -> None:
        if self.enabled:
            self._live.start()

    def update(self, trials: Iterable[TrialRecord], *, caption: str | None = None) -> None:
        if self.enabled:
            self._live.update(build_table(trials, caption=caption, include_summary=True))

    def stop(self) -> None:
        if self.enabled:
            self._live.stop()

    def log(self, message: str) -> None:
        self._console.log(format_log_message(message))


def print_report(
    counts: Mapping[str, int],
    failures: Iterable[TrialRecord],
    *,
    console: Console | None = None,
    error_console: Console | None = None,
) -> None:
    """Print the final counts table; list failed trials on stderr."""
    console = console or Console(highlight=False)
    error_console = error_console or Console(stderr=True, highlight=False)
    console.print(build_summary_table(counts))
    for record in failures:
        step = f" step {record.failure_step} ({record.failure_kind}):" if record.failure_kind else ""
        error_console.print(
            Text.assemble(
                ("FAILED ", "bold red"),
                (record.trial_id, "bold"),
                f" [{record.describe()}]{step} {record.failure_reason or record.error or 'unknown'}",
            )
        )


__all__ = [
    "ACTIVE_STATES",
    "STATE_STYLES",
    "CampaignDashboard",
    "build_summary_table",
    "build_table",
    "count_states",
    "format_elapsed",
    "print_report",
]
