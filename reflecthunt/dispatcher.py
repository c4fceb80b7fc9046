"""
ReflectHunt - Bounded Dispatcher
Splits candidate URLs into fixed-size chunks and runs each chunk through the
reflection probe with a capped number of concurrent invocations.

A chunk that times out or exits non-zero is recorded as failed and keeps the
output it produced; it never stops its siblings and is never retried.
"""

import asyncio
import itertools
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Tuple

from reflecthunt.errors import ChunkFailure, MissingCollaborator
from reflecthunt.logger import RunLog
from reflecthunt.stage import Completed, Skipped, StageResult
from reflecthunt.tools import ToolRunner

log = logging.getLogger(__name__)

STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"
STATUS_TIMEOUT = "timeout"


@dataclass(frozen=True)
class Chunk:
    """A fixed-size slice of candidate URLs."""
    index: int
    urls: Tuple[str, ...]

    @property
    def name(self) -> str:
        return f"chunk_{self.index:05d}"

    def __len__(self) -> int:
        return len(self.urls)


def chunked(urls: Iterable[str], size: int) -> Iterator[Chunk]:
    """Lazily partition ``urls`` into chunks of at most ``size`` items."""
    if size < 1:
        raise ValueError(f"chunk size must be >= 1, got {size}")
    it = iter(urls)
    for index in itertools.count():
        batch = tuple(itertools.islice(it, size))
        if not batch:
            return
        yield Chunk(index=index, urls=batch)


@dataclass
class ChunkResult:
    """Outcome of one chunk invocation."""
    index: int
    size: int
    status: str
    output: str = ""
    exit_code: Optional[int] = None
    reason: str = ""
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == STATUS_SUCCESS

    @property
    def output_lines(self) -> int:
        return len(self.output.splitlines())


@dataclass
class DispatchReport:
    """All chunk results of a dispatch, ordered by chunk index."""
    chunks: List[ChunkResult] = field(default_factory=list)

    @property
    def output(self) -> str:
        parts = []
        for chunk in self.chunks:
            if chunk.output:
                parts.append(chunk.output if chunk.output.endswith("\n") else chunk.output + "\n")
        return "".join(parts)

    @property
    def candidates(self) -> int:
        return sum(c.size for c in self.chunks)

    @property
    def failed(self) -> List[ChunkResult]:
        return [c for c in self.chunks if not c.ok]


# ── Probe Tools ───────────────────────────────────────────────────

class ProbeTool(ABC):
    """Something that turns a chunk of URLs into raw probe output."""

    name = "probe"

    def check(self):
        """Raise MissingCollaborator when the probe cannot run at all."""

    @abstractmethod
    async def run_chunk(self, chunk: Chunk, timeout: float) -> str:
        """Probe every URL in ``chunk`` and return the raw text output.

        Raises ChunkFailure (carrying any partial output) on timeout or a
        non-zero exit.
        """


class SubprocessProbe(ProbeTool):
    """Runs a stdin-driven probe binary (kxss) once per chunk.

    Each chunk gets its own input, output and stderr files in ``scratch_dir``.
    """

    def __init__(self, runner: ToolRunner, scratch_dir: Path, tool_name: str = "kxss"):
        self.runner = runner
        self.scratch_dir = scratch_dir
        self.tool_name = tool_name
        self.name = tool_name

    def check(self):
        self.runner.require(self.tool_name)

    def paths(self, chunk: Chunk) -> Tuple[Path, Path, Path]:
        base = self.scratch_dir / chunk.name
        return base, base.with_suffix(".out"), base.with_suffix(".log")

    async def run_chunk(self, chunk: Chunk, timeout: float) -> str:
        input_path, output_path, log_path = self.paths(chunk)
        self.scratch_dir.mkdir(parents=True, exist_ok=True)
        input_path.write_text("".join(u + "\n" for u in chunk.urls), encoding='utf-8')

        try:
            result = await self.runner.run_tool(
                self.tool_name,
                self.runner.build_command(self.tool_name),
                stdout_path=output_path,
                stdin_path=input_path,
                stderr_path=log_path,
                timeout=timeout,
            )
        except OSError as e:
            raise ChunkFailure(chunk.index, f"could not start {self.tool_name}: {e}") from e

        output = result.read_output()
        if result.timed_out:
            raise ChunkFailure(chunk.index, f"timed out after {timeout:g}s",
                               partial_output=output, timed_out=True)
        if result.exit_code != 0:
            raise ChunkFailure(chunk.index, f"exited with code {result.exit_code}",
                               exit_code=result.exit_code, partial_output=output)
        return output

    def collect_logs(self) -> str:
        """Concatenated stderr of every chunk, in chunk order."""
        if not self.scratch_dir.exists():
            return ""
        return "".join(
            p.read_text(encoding='utf-8', errors='replace')
            for p in sorted(self.scratch_dir.glob("chunk_*.log"))
        )


# ── Dispatcher ────────────────────────────────────────────────────

class Dispatcher:
    """Runs chunks through a ProbeTool with at most ``workers`` in flight."""

    def __init__(
        self,
        probe: ProbeTool,
        chunk_size: int = 100,
        workers: int = 6,
        timeout: float = 300.0,
        run_log: Optional[RunLog] = None,
        run_id: Optional[int] = None,
    ):
        if workers < 1:
            raise ValueError(f"workers must be >= 1, got {workers}")
        self.probe = probe
        self.chunk_size = chunk_size
        self.workers = workers
        self.timeout = timeout
        self.run_log = run_log
        self.run_id = run_id
        # Extra time a probe gets past its own timeout to kill its process
        self.kill_grace = 5.0

    async def dispatch(self, urls: Iterable[str]) -> "StageResult[DispatchReport]":
        """Probe every URL; Skipped when the probe tool is unavailable."""
        try:
            self.probe.check()
        except MissingCollaborator as e:
            log.warning("[!] %s unavailable, skipping reflection probing: %s", e.tool, e.reason)
            return Skipped(e.reason)

        chunks = chunked(urls, self.chunk_size)
        results: List[ChunkResult] = []
        # Workers share one chunk iterator; next() never yields to the loop,
        # so each chunk is handed to exactly one worker.
        workers = [asyncio.ensure_future(self._worker(chunks, results)) for _ in range(self.workers)]
        try:
            await asyncio.gather(*workers)
        except BaseException:
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            raise

        results.sort(key=lambda r: r.index)
        report = DispatchReport(chunks=results)
        log.info(
            "[+] %s finished %d chunk(s), %d failed",
            self.probe.name, len(results), len(report.failed),
        )
        return Completed(report)

    async def _worker(self, chunks: Iterator[Chunk], results: List[ChunkResult]):
        for chunk in chunks:
            results.append(await self._run_chunk(chunk))

    async def _run_chunk(self, chunk: Chunk) -> ChunkResult:
        chunk_run_id = None
        if self.run_log is not None and self.run_id is not None:
            try:
                chunk_run_id = await self.run_log.log_chunk_start(
                    self.run_id, chunk.index, self.probe.name, len(chunk))
            except Exception as e:
                log.warning("[!] Could not record start of %s: %s", chunk.name, e)
        log.debug("Starting %s on %s (%d URLs)", self.probe.name, chunk.name, len(chunk))

        started = time.time()
        result = ChunkResult(index=chunk.index, size=len(chunk), status=STATUS_SUCCESS, exit_code=0)
        try:
            result.output = await asyncio.wait_for(
                self.probe.run_chunk(chunk, self.timeout),
                timeout=self.timeout + self.kill_grace,
            )
        except ChunkFailure as e:
            result.status = STATUS_TIMEOUT if e.timed_out else STATUS_FAILED
            result.output = e.partial_output
            result.exit_code = e.exit_code
            result.reason = e.reason
        except asyncio.TimeoutError:
            result.status = STATUS_TIMEOUT
            result.exit_code = None
            result.reason = f"no result within {self.timeout + self.kill_grace:g}s"
        except Exception as e:
            result.status = STATUS_FAILED
            result.exit_code = None
            result.reason = f"{type(e).__name__}: {e}"
        result.duration_ms = (time.time() - started) * 1000

        if result.ok:
            log.debug("Completed %s on %s (%d lines)", self.probe.name, chunk.name, result.output_lines)
        else:
            log.warning("[!] %s %s on %s: %s (%d lines kept)",
                        self.probe.name, result.status, chunk.name, result.reason, result.output_lines)

        if chunk_run_id is not None:
            try:
                await self.run_log.finish_chunk(
                    chunk_run_id,
                    status=result.status,
                    exit_code=result.exit_code,
                    output_lines=result.output_lines,
                    duration_ms=result.duration_ms,
                    reason=result.reason,
                )
            except Exception as e:
                log.warning("[!] Could not record result of %s: %s", chunk.name, e)
        return result
