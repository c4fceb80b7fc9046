#!/usr/bin/env python3
"""
ReflectHunt - Main Launcher
Entry point that runs the whole reconnaissance pipeline for one domain:
1. Passive URL harvesting (waybackurls + gau) and parameter extraction
2. Liveness filtering of dynamic URLs, optional x8 brute-force
3. kxss reflection probing over every (URL, parameter) mutation
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional

from reflecthunt import __version__
from reflecthunt.config import RunContext, apply_overrides, default_workdir, get_config
from reflecthunt.errors import ConfigError
from reflecthunt.pipeline import Pipeline
from reflecthunt.summary import render
from reflecthunt.tools import ToolRunner

# Rich for pretty terminal output
from rich.console import Console
from rich.logging import RichHandler

console = Console()


BANNER = r"""
   ___      __ _         _   _  _          _
  | _ \___ / _| |___ __| |_| || |_  _ _ _| |_
  |   / -_)  _| / -_) _|  _| __ | || | ' \  _|
  |_|_\___|_| |_\___\__|\__|_||_|\_,_|_||_\__|

        ReflectHunt v{version}
        Reflected parameter discovery
"""


def setup_logging(verbose: bool = False):
    """Route the package loggers through rich."""
    handler = RichHandler(console=console, show_path=False, markup=False)
    handler.setFormatter(logging.Formatter("%(message)s", datefmt="%H:%M:%S"))
    logger = logging.getLogger("reflecthunt")
    logger.handlers[:] = [handler]
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    logger.propagate = False


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        prog="reflecthunt",
        description="Harvest URLs for a domain and find parameters that reflect unfiltered characters.",
        epilog="Example: reflecthunt -H 'Cookie: session=abc123' example.com",
    )
    p.add_argument("domain", help="Target domain, e.g. example.com")
    p.add_argument("-H", "--header", dest="headers", action="append", default=[],
                   help="Extra request header forwarded to probing tools (repeatable)")
    p.add_argument("--workdir", type=Path, default=None, help="Run directory (default: ./<domain>_recon)")
    p.add_argument("--config", type=Path, default=None, help="JSON config overrides file")
    p.add_argument("--marker", default=None, help="Marker injected into parameters (default: KXSS)")
    p.add_argument("--workers", type=int, default=None, help="Concurrent kxss invocations")
    p.add_argument("--chunk-size", type=int, default=None, help="URLs per kxss invocation")
    p.add_argument("--timeout", type=float, default=None, help="Per-chunk kxss timeout in seconds")
    p.add_argument("--no-healthcheck", action="store_true", help="Do not probe the health-check URL")
    p.add_argument("--skip-harvest", action="store_true",
                   help="Reuse parameter and URL lists already in the workdir")
    p.add_argument("--no-x8", action="store_true", help="Skip the x8 brute-force stage")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return p.parse_args(argv)


def cli_overrides(args: argparse.Namespace) -> dict:
    probe = {
        "marker": args.marker,
        "workers": args.workers,
        "chunk_size": args.chunk_size,
        "timeout": args.timeout,
    }
    overrides = {"probe": {k: v for k, v in probe.items() if v is not None}}
    if args.no_healthcheck:
        overrides["probe"]["healthcheck_enabled"] = False
    if args.skip_harvest:
        overrides["harvest"] = {"enabled": False}
    if args.no_x8:
        overrides["brute"] = {"enabled": False}
    return overrides


def build_context(args: argparse.Namespace) -> RunContext:
    config = get_config(args.config)
    apply_overrides(config, cli_overrides(args))
    config.validate()
    return RunContext(
        domain=args.domain,
        workdir=(args.workdir or default_workdir(args.domain)).resolve(),
        config=config,
        headers=list(args.headers),
    )


def show_preflight(ctx: RunContext, runner: ToolRunner):
    console.print("\n[bold]Preflight Checks[/bold]")
    console.print("─" * 40)
    for name, info in runner.get_available_tools().items():
        if info["installed"]:
            console.print(f"[green]✓ {name} found[/green]")
        else:
            console.print(f"[yellow]✗ {name} not found, its stage will be skipped[/yellow]")

    probe = ctx.config.probe
    console.print("\n[bold]Configuration[/bold]")
    console.print("─" * 40)
    console.print(f"  Workdir:     {ctx.workdir}")
    console.print(f"  Marker:      {probe.marker}")
    console.print(f"  Chunks:      {probe.chunk_size} URLs, {probe.workers} workers, {probe.timeout:g}s timeout")
    if ctx.headers:
        console.print(f"  Headers:     {'; '.join(ctx.headers)}")


def show_running(runner: ToolRunner):
    """List tool processes still alive when the run is interrupted."""
    for info in runner.get_running_tools().values():
        console.print(f"  stopping {info['tool_name']} (pid {info['pid']}): {info['command']}",
                      style="yellow", markup=False, highlight=False)


async def main(ctx: RunContext, runner: Optional[ToolRunner] = None) -> int:
    """Main entry point."""
    console.print(BANNER.format(version=__version__), style="bold cyan")
    runner = runner or ToolRunner(ctx.config.tools)
    show_preflight(ctx, runner)

    console.print("\n[bold]Running Pipeline[/bold]")
    console.print("─" * 40)
    pipeline = Pipeline(ctx, runner=runner)
    try:
        summary = await pipeline.run()
    finally:
        await runner.cancel_all()

    console.print()
    render(summary, console)
    return 0


def run(argv: Optional[List[str]] = None) -> int:
    """Entry point with signal handling."""
    args = parse_args(argv)
    setup_logging(args.verbose)
    try:
        ctx = build_context(args)
    except ConfigError as e:
        console.print(f"[red]✗ {e}[/red]")
        return 2

    loop = asyncio.new_event_loop()
    runner = ToolRunner(ctx.config.tools)
    task = loop.create_task(main(ctx, runner))

    def signal_handler(sig, frame):
        console.print("\n[yellow]Received shutdown signal...[/yellow]")
        show_running(runner)
        task.cancel()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        return loop.run_until_complete(task)
    except asyncio.CancelledError:
        console.print("\n[yellow]Interrupted.[/yellow]")
        return 130
    finally:
        loop.close()


if __name__ == "__main__":
    sys.exit(run())
