"""CLI entry point for rigwatch."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from . import __version__
from .config import ConfigValidationError, MonitorConfig, load_config
from .exec import SubprocessRunner
from .log import configure_logging
from .models import AggregationFailure, Snapshot
from .monitor import build_aggregator


def _status_style(status: str) -> str:
    return {
        "active": "cyan",
        "processing": "cyan",
        "idle": "dim",
        "stalled": "yellow",
        "completed": "green",
        "done": "green",
        "error": "red",
        "stopped": "red",
    }.get(status, "white")


def _load(config_path: str | None, console: Console) -> MonitorConfig | None:
    try:
        cfg = load_config(Path(config_path) if config_path else None)
    except ConfigValidationError as exc:
        console.print(f"[red]Invalid configuration:[/red] {exc}")
        return None
    configure_logging(cfg.log_level, cfg.log_format)
    return cfg


def _print_help(console: Console) -> None:
    help_text = Text()
    help_text.append("rigwatch", style="bold")
    help_text.append(f" {__version__}", style="dim")
    help_text.append(" - status backend for a Gas Town dashboard")
    console.print(help_text)
    console.print()

    cmds = Table(show_header=False, expand=False, show_edge=False, pad_edge=False, box=None)
    cmds.add_column("Command", style="bold cyan")
    cmds.add_column("Description")
    cmds.add_row("rigwatch serve", "Run the JSON API")
    cmds.add_row("rigwatch snapshot", "Aggregate once and print the result")
    cmds.add_row("rigwatch activity", "Show what each running agent is doing")
    console.print(cmds)
    console.print()

    opts = Table(show_header=False, expand=False, show_edge=False, pad_edge=False, box=None)
    opts.add_column("Option", style="bold")
    opts.add_column("Description", style="dim")
    opts.add_row("--config PATH", "TOML file with a [monitor] table")
    opts.add_row("--json", "JSON output (snapshot, activity)")
    opts.add_row("--version", "Show version")
    console.print(opts)


def _render_snapshot(snap: Snapshot, console: Console) -> None:
    convoys = Table(title="Convoys", expand=False, show_edge=False, pad_edge=False)
    convoys.add_column("ID", style="bold")
    convoys.add_column("Title")
    convoys.add_column("Status")
    convoys.add_column("Progress", justify="right")
    convoys.add_column("Assignee", style="dim")
    for convoy in snap.convoys:
        convoys.add_row(
            convoy.id,
            convoy.title,
            Text(convoy.status, style=_status_style(convoy.status)),
            f"{convoy.progress.completed}/{convoy.progress.total}",
            convoy.assignee or "-",
        )
    console.print(convoys)
    console.print()

    polecats = Table(title="Polecats", expand=False, show_edge=False, pad_edge=False)
    polecats.add_column("Name", style="bold")
    polecats.add_column("Rig")
    polecats.add_column("Status")
    polecats.add_column("Hooked", style="dim")
    for polecat in snap.polecats:
        polecats.add_row(
            polecat.name,
            polecat.rig or "-",
            Text(polecat.status, style=_status_style(polecat.status)),
            polecat.hooked_work or "-",
        )
    console.print(polecats)
    console.print()

    sources = Table(title="Sources", expand=False, show_edge=False, pad_edge=False)
    sources.add_column("Source", style="bold")
    sources.add_column("OK")
    sources.add_column("ms", justify="right")
    sources.add_column("Error", style="dim")
    for name, health in snap.sources.items():
        ok = bool(health.get("ok"))
        sources.add_row(
            name,
            Text("yes" if ok else "no", style="green" if ok else "red"),
            str(health.get("elapsed_ms", 0)),
            str(health.get("error") or ""),
        )
    console.print(sources)
    console.print(
        f"[dim]{len(snap.issues)} issues, {len(snap.rigs)} rigs, "
        f"{len(snap.witnesses)} witnesses, {len(snap.refineries)} refineries "
        f"at {snap.timestamp}[/dim]"
    )


def cmd_serve(argv: list[str], console: Console) -> int:
    p = argparse.ArgumentParser(prog="rigwatch serve")
    p.add_argument("--host", default=None)
    p.add_argument("--port", type=int, default=None)
    p.add_argument("--config", default=None)
    args = p.parse_args(argv)

    cfg = _load(args.config, console)
    if cfg is None:
        return 2
    host = args.host or cfg.host
    port = args.port or cfg.port

    import uvicorn

    from .web import create_app

    console.print(
        Panel(
            f"Serving at [bold]http://{host}:{port}[/bold]",
            title="rigwatch serve",
            style="cyan",
            expand=False,
        )
    )
    uvicorn.run(create_app(cfg), host=host, port=port, log_level=cfg.log_level)
    return 0


def cmd_snapshot(argv: list[str], console: Console) -> int:
    p = argparse.ArgumentParser(prog="rigwatch snapshot")
    p.add_argument("--json", action="store_true")
    p.add_argument("--config", default=None)
    args = p.parse_args(argv)

    cfg = _load(args.config, console)
    if cfg is None:
        return 2
    aggregator, _ = build_aggregator(cfg, SubprocessRunner(cfg.gt_root))
    result = asyncio.run(aggregator.snapshot())

    if args.json:
        print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
        return 1 if isinstance(result, AggregationFailure) else 0

    if isinstance(result, AggregationFailure):
        console.print(
            Panel(
                result.detail,
                title=f"Failed to fetch {result.source}",
                style="red",
                expand=False,
            )
        )
        return 1
    _render_snapshot(result, console)
    return 0


def cmd_activity(argv: list[str], console: Console) -> int:
    p = argparse.ArgumentParser(prog="rigwatch activity")
    p.add_argument("--json", action="store_true")
    p.add_argument("--config", default=None)
    args = p.parse_args(argv)

    cfg = _load(args.config, console)
    if cfg is None:
        return 2
    _, activity = build_aggregator(cfg, SubprocessRunner(cfg.gt_root))
    report = asyncio.run(activity.collect())

    if args.json:
        print(json.dumps(report, indent=2, ensure_ascii=False))
        return 0
    if not report["tmux_available"]:
        console.print("[yellow]tmux is not available[/yellow]")
        return 0
    if report.get("error"):
        console.print(f"[red]{report['error']}[/red]")
        return 1

    table = Table(title="Agent Activity", expand=False, show_edge=False, pad_edge=False)
    table.add_column("Session", style="bold")
    table.add_column("Role")
    table.add_column("Activity")
    table.add_column("Time", style="dim")
    for item in report["activities"]:
        table.add_row(item["session"], item["role"], item["activity"], item["duration"] or "")
    console.print(table)
    return 0


def main(argv: list[str] | None = None) -> None:
    raw = argv if argv is not None else sys.argv[1:]
    console = Console()

    if "--version" in raw:
        console.print(Text(f"rigwatch {__version__}", style="bold"))
        sys.exit(0)
    if not raw or raw[0] in ("-h", "--help"):
        _print_help(console)
        sys.exit(0)

    commands = {
        "serve": cmd_serve,
        "snapshot": cmd_snapshot,
        "activity": cmd_activity,
    }
    handler = commands.get(raw[0])
    if handler is None:
        console.print(f"[red]Unknown command:[/red] {raw[0]}")
        _print_help(console)
        sys.exit(2)
    sys.exit(handler(raw[1:], console))


if __name__ == "__main__":
    main()
