"""
ReflectHunt - Passive URL Harvesting
Collects historical URLs from waybackurls/gau and extracts the query
parameter names they use.
"""

import logging
from typing import Iterable, List, Set
from urllib.parse import parse_qsl, urlsplit

from reflecthunt.config import RunContext, STATIC_EXT_RE
from reflecthunt.errors import MissingCollaborator
from reflecthunt.stage import Completed, StageResult
from reflecthunt.store import (
    ParameterStore, append_new, read_lines, write_lines, write_sorted_unique,
)
from reflecthunt.tools import ToolRunner

log = logging.getLogger(__name__)

ALL_URLS = "all-urls.txt"
PARAMS_FILE = "unfurl-params.txt"


def passive_file(ctx: RunContext) -> str:
    return f"{ctx.domain}.passive"


def is_static(url: str) -> bool:
    return bool(STATIC_EXT_RE.search(url))


async def run_harvester(ctx: RunContext, runner: ToolRunner, tool_name: str) -> List[str]:
    """Run one harvester; a missing tool or a timeout yields what was collected."""
    out_path = ctx.artifact(f"{tool_name}.txt")
    try:
        tool_def = runner.require(tool_name)
    except MissingCollaborator as e:
        log.warning("[!] %s, skipping", e.reason)
        write_lines(out_path, [])
        return []

    command = runner.build_command(tool_name, target=ctx.domain)
    result = await runner.run_tool(
        tool_name,
        command,
        stdout_path=out_path,
        stdin_data=ctx.domain + "\n" if tool_def.reads_stdin else None,
        timeout=ctx.config.harvest.timeout,
    )
    if result.timed_out:
        log.warning("[!] %s timed out, keeping partial output", tool_name)
    elif not result.ok:
        log.warning("[!] %s exited with code %s", tool_name, result.exit_code)

    urls = [line.strip() for line in result.read_output().splitlines() if line.strip()]
    log.info("[+] %s: %d URLs", tool_name, len(urls))
    return urls


async def harvest_passive(ctx: RunContext, runner: ToolRunner) -> "StageResult[List[str]]":
    """Collect passive URLs into ``<domain>.passive`` and return its contents."""
    collected: Set[str] = {f"https://{ctx.domain}/"}
    for tool_name in ctx.config.harvest.tools:
        collected.update(await run_harvester(ctx, runner, tool_name))

    write_sorted_unique(ctx.artifact(ALL_URLS), collected)
    kept = [u for u in sorted(collected) if not is_static(u)]
    added = append_new(ctx.artifact(passive_file(ctx)), kept)
    log.info("[+] %d passive URLs kept, %d new", len(kept), len(added))
    return Completed(read_lines(ctx.artifact(passive_file(ctx))))


def extract_param_names(urls: Iterable[str]) -> Set[str]:
    """Unique query keys across ``urls``."""
    names: Set[str] = set()
    for url in urls:
        try:
            query = urlsplit(url).query
        except ValueError:
            continue
        for key, _ in parse_qsl(query, keep_blank_values=True):
            if key:
                names.add(key)
    return names


def update_param_store(ctx: RunContext, urls: Iterable[str]) -> ParameterStore:
    """Merge parameter names from ``urls`` into the persisted parameter list."""
    path = ctx.artifact(PARAMS_FILE)
    store = ParameterStore.load(path)
    added = store.add(extract_param_names(urls))
    store.save(path)
    log.info("[+] %d unique param(s) extracted, %d new", len(store), added)
    return store
