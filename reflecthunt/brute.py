"""
ReflectHunt - x8 Parameter Brute-Force
Runs x8 against every live dynamic URL with the harvested parameter list and
keeps the lines reporting reflections.
"""

import asyncio
import hashlib
import logging
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import List

from reflecthunt.config import RunContext
from reflecthunt.errors import MissingCollaborator
from reflecthunt.stage import Completed, Skipped, StageResult
from reflecthunt.store import read_lines, write_lines, write_sorted_unique
from reflecthunt.tools import ToolRunner

log = logging.getLogger(__name__)

BRUTE_OUT = "x8-brute.txt"
BRUTE_REFLECTED = "x8-brute-reflected.txt"
REFLECT_RE = re.compile(r"reflects:|change reflect", re.IGNORECASE)


@dataclass
class BruteReport:
    lines: int
    reflected: List[str]
    failed_urls: int = 0


def _temp_name(url: str) -> str:
    return hashlib.md5(url.encode('utf-8')).hexdigest() + ".txt"


async def run_brute(ctx: RunContext, runner: ToolRunner, urls: List[str],
                    params_path: Path) -> "StageResult[BruteReport]":
    """Brute-force hidden parameters with x8; Skipped when x8 is missing."""
    cfg = ctx.config.brute
    out_path = ctx.scan_artifact(BRUTE_OUT)
    reflected_path = ctx.scan_artifact(BRUTE_REFLECTED)

    if not cfg.enabled:
        reason = "x8 stage disabled"
    elif not urls or not read_lines(params_path):
        reason = "no live dynamic URLs or parameters"
    else:
        reason = ""
        try:
            runner.require(cfg.tool)
        except MissingCollaborator as e:
            reason = e.reason
    if reason:
        log.warning("[!] x8 skipped: %s", reason)
        write_lines(out_path, [])
        write_lines(reflected_path, [])
        return Skipped(reason)

    extra_args: List[str] = []
    for header in ctx.headers:
        extra_args.extend(["-H", header])
    if ctx.headers:
        log.info("[*] x8 using headers: %s", "; ".join(ctx.headers))

    temp_dir = ctx.scan_dir / "x8_temp"
    temp_dir.mkdir(parents=True, exist_ok=True)
    sem = asyncio.Semaphore(cfg.workers)

    async def brute_one(url: str) -> bool:
        async with sem:
            result = await runner.run_tool(
                cfg.tool,
                runner.build_command(cfg.tool, target=url, wordlist=str(params_path),
                                     extra_args=extra_args),
                stdout_path=temp_dir / _temp_name(url),
                timeout=cfg.timeout,
            )
        if not result.ok:
            log.debug("x8 on %s: exit=%s timed_out=%s", url, result.exit_code, result.timed_out)
        return result.ok

    try:
        outcomes = await asyncio.gather(*(brute_one(u) for u in urls))
        lines: List[str] = []
        for path in sorted(temp_dir.glob("*.txt")):
            lines.extend(path.read_text(encoding='utf-8', errors='replace').splitlines())
    finally:
        shutil.rmtree(temp_dir, ignore_errors=True)

    write_lines(out_path, lines)
    write_sorted_unique(reflected_path, (line for line in lines if REFLECT_RE.search(line)))
    report = BruteReport(
        lines=len(lines),
        reflected=read_lines(reflected_path),
        failed_urls=sum(1 for ok in outcomes if not ok),
    )
    log.info("[+] x8: %d output lines, %d reflection lines", report.lines, len(report.reflected))
    return Completed(report)
