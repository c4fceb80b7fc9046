"""
ReflectHunt - Run Summary
Counts every artifact of a run, checks the health-check sentinel and renders
the result as a table.
"""

from typing import Dict, List, Optional
from urllib.parse import urlsplit

from pydantic import BaseModel
from rich.console import Console
from rich.table import Table

from reflecthunt.parser import Finding


class FindingOut(BaseModel):
    url: str
    param: str
    unfiltered: str


class ChunkStats(BaseModel):
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    timed_out: int = 0


class RunSummary(BaseModel):
    domain: str
    workdir: str
    waybackurls: int = 0
    gau: int = 0
    all_urls: int = 0
    static_urls: int = 0
    dynamic_urls: int = 0
    params: int = 0
    live_urls: int = 0
    x8_lines: int = 0
    kxss_lines: int = 0
    candidates: int = 0
    chunks: ChunkStats = ChunkStats()
    findings: int = 0
    new_findings: int = 0
    headers: List[str] = []
    skipped_stages: Dict[str, str] = {}
    first_findings: List[FindingOut] = []
    healthcheck: Optional[bool] = None


def host_of(url: str) -> str:
    try:
        return (urlsplit(url).hostname or "").lower()
    except ValueError:
        return ""


def healthcheck_passed(findings: List[Finding], sentinel_url: Optional[str]) -> Optional[bool]:
    """True if any finding hits the sentinel host; None when there is no sentinel."""
    if not sentinel_url:
        return None
    sentinel_host = host_of(sentinel_url)
    return any(host_of(f.url) == sentinel_host for f in findings)


def render(summary: RunSummary, console: Console):
    table = Table(title=f"Recon Summary for {summary.domain}", show_header=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Count", justify="right", style="green")

    rows = [
        ("waybackurls", summary.waybackurls),
        ("gau", summary.gau),
        ("All unique URLs", summary.all_urls),
        ("Static URLs", summary.static_urls),
        ("Dynamic URLs", summary.dynamic_urls),
        ("Unique URL params", summary.params),
        ("httpx (alive URLs)", summary.live_urls),
        ("x8 reflections lines", summary.x8_lines),
        ("kxss candidates", summary.candidates),
        ("kxss chunks (failed)", f"{summary.chunks.total} ({summary.chunks.failed + summary.chunks.timed_out})"),
        ("kxss scan lines", summary.kxss_lines),
        ("Reflected pairs", f"{summary.findings} (+{summary.new_findings})"),
    ]
    for name, value in rows:
        table.add_row(name, str(value))
    if summary.headers:
        table.add_row("Headers used", "; ".join(summary.headers))
    console.print(table)

    for stage, reason in summary.skipped_stages.items():
        console.print(f"[yellow]  skipped {stage}: {reason}[/yellow]")

    if summary.first_findings:
        console.print(f"[cyan][*] First {len(summary.first_findings)} reflected pairs:[/cyan]")
        for f in summary.first_findings:
            console.print(f"  {f.url} | {f.param} | Unfiltered: {f.unfiltered}", markup=False, highlight=False)
    else:
        console.print("[red][!] No reflected pairs found.[/red]")

    if summary.healthcheck is True:
        console.print("[green][✓] Health check passed.[/green]")
    elif summary.healthcheck is False:
        console.print("[red][✗] Health check failed.[/red]")

    console.print(f"[cyan][*] All logs & artifacts are in: {summary.workdir}[/cyan]")
