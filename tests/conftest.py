"""Pytest configuration for ReflectHunt."""
import asyncio
from typing import Iterable, Optional
from urllib.parse import parse_qsl, urlsplit

import pytest

from reflecthunt.config import ReconConfig, RunContext
from reflecthunt.dispatcher import Chunk, ProbeTool
from reflecthunt.errors import ChunkFailure

REFLECTED = "[\" ' < >]"


def kxss_line(url: str, marker: str = "KXSS", chars: str = REFLECTED) -> str:
    """What kxss prints for a URL whose marked parameter reflects."""
    query = urlsplit(url).query
    for key, value in parse_qsl(query, keep_blank_values=True):
        if value == marker:
            return f"URL: {url} Param: {key} Unfiltered: {chars}\n"
    return ""


class FakeProbe(ProbeTool):
    """In-process stand-in for kxss that tracks concurrency."""

    name = "fake-kxss"

    def __init__(self, delay: float = 0.0, fail: Iterable[int] = (),
                 hang: Iterable[int] = (), marker: str = "KXSS"):
        self.delay = delay
        self.fail = set(fail)
        self.hang = set(hang)
        self.marker = marker
        self.active = 0
        self.max_active = 0
        self.calls = []

    async def run_chunk(self, chunk: Chunk, timeout: float) -> str:
        self.calls.append(chunk.index)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            output = "kxss banner\n" + "".join(kxss_line(u, self.marker) for u in chunk.urls)
            if chunk.index in self.hang:
                await asyncio.sleep(3600)
            await asyncio.sleep(self.delay)
            if chunk.index in self.fail:
                first = output.splitlines(keepends=True)[:2]
                raise ChunkFailure(chunk.index, "exited with code 1", exit_code=1,
                                   partial_output="".join(first))
            return output
        finally:
            self.active -= 1


class MissingProbe(ProbeTool):
    name = "missing-kxss"

    def check(self):
        from reflecthunt.errors import MissingCollaborator
        raise MissingCollaborator("kxss")

    async def run_chunk(self, chunk: Chunk, timeout: float) -> str:
        raise AssertionError("should not run")


@pytest.fixture
def config() -> ReconConfig:
    cfg = ReconConfig()
    cfg.harvest.enabled = False
    cfg.brute.enabled = False
    return cfg


@pytest.fixture
def ctx(tmp_path, config) -> RunContext:
    context = RunContext(domain="ex.com", workdir=tmp_path / "ex.com_recon", config=config)
    context.ensure_dirs()
    return context


def write_artifact(path, lines: Optional[Iterable[str]] = None):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(line + "\n" for line in (lines or [])), encoding="utf-8")
