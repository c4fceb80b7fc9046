"""
ReflectHunt - Pipeline Orchestrator
Sequences harvesting, mutation, dispatch, parsing and persistence for one
target and produces the run summary.

States advance linearly:

    CORPUS_READY -> MUTATED -> DISPATCHED -> PARSED -> PERSISTED

With an empty parameter store or URL corpus the MUTATED state is skipped and
only the health-check candidate is dispatched. PARSED and PERSISTED always
run, so every run leaves a complete (possibly empty) artifact set.
"""

import asyncio
import logging
import shutil
from enum import Enum
from typing import Dict, List, Optional, Tuple

from reflecthunt.brute import BRUTE_OUT, run_brute
from reflecthunt.config import RunContext, config_to_dict
from reflecthunt.dispatcher import (
    STATUS_FAILED, STATUS_SUCCESS, STATUS_TIMEOUT,
    DispatchReport, Dispatcher, ProbeTool, SubprocessProbe,
)
from reflecthunt.harvest import ALL_URLS, PARAMS_FILE, harvest_passive, update_param_store
from reflecthunt.liveness import DYNAMIC_LIVE_FILE, LIVE_FILE, LivenessProber, filter_live
from reflecthunt.logger import RUN_LOG_NAME, RunLog
from reflecthunt.mutator import MutatedURL, generate, healthcheck_candidate, unique_urls
from reflecthunt.parser import Finding, parse_output
from reflecthunt.stage import Skipped, StageResult, output_or
from reflecthunt.store import (
    FindingSink, ParameterStore, URLCorpus,
    count_lines, iter_lines, read_lines, write_lines,
)
from reflecthunt.summary import ChunkStats, FindingOut, RunSummary, healthcheck_passed
from reflecthunt.tools import ToolRunner

log = logging.getLogger(__name__)

CANDIDATES_FILE = "kxss_urls.txt"
RAW_OUTPUT_FILE = "kxss-out.txt"
PROBE_LOG_FILE = "kxss.log"
FINDINGS_FILE = "kxss-reflected-pairs.txt"
SUMMARY_FILE = "summary.json"


class PipelineState(str, Enum):
    INIT = "init"
    CORPUS_READY = "corpus_ready"
    MUTATED = "mutated"
    DISPATCHED = "dispatched"
    PARSED = "parsed"
    PERSISTED = "persisted"


TRANSITIONS = {
    PipelineState.INIT: {PipelineState.CORPUS_READY},
    PipelineState.CORPUS_READY: {PipelineState.MUTATED, PipelineState.DISPATCHED},
    PipelineState.MUTATED: {PipelineState.DISPATCHED},
    PipelineState.DISPATCHED: {PipelineState.PARSED},
    PipelineState.PARSED: {PipelineState.PERSISTED},
    PipelineState.PERSISTED: set(),
}


class Pipeline:
    """One reconnaissance run for a single domain."""

    def __init__(
        self,
        ctx: RunContext,
        runner: Optional[ToolRunner] = None,
        probe: Optional[ProbeTool] = None,
        prober: Optional[LivenessProber] = None,
        run_log: Optional[RunLog] = None,
    ):
        self.ctx = ctx
        self.runner = runner or ToolRunner(ctx.config.tools)
        self.probe = probe
        self.prober = prober
        self.run_log = run_log
        self.run_id: Optional[int] = None
        self.state = PipelineState.INIT
        self.history: List[PipelineState] = []
        self.skipped: Dict[str, str] = {}
        self.report = DispatchReport()
        self.candidates = 0
        self.new_findings = 0
        self.findings: List[Finding] = []

    # ── State ───────────────────────────────────────────────────

    async def _advance(self, state: PipelineState, detail: str = ""):
        if state not in TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal pipeline transition {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)
        log.debug("Pipeline state: %s %s", state.value, detail)
        if self.run_log is not None and self.run_id is not None:
            await self.run_log.log_stage(self.run_id, state.value, "entered", detail)

    async def _record(self, stage: str, result: StageResult):
        if isinstance(result, Skipped):
            self.skipped[stage] = result.reason
        if self.run_log is not None and self.run_id is not None:
            status = "skipped" if isinstance(result, Skipped) else "completed"
            detail = result.reason if isinstance(result, Skipped) else ""
            await self.run_log.log_stage(self.run_id, stage, status, detail)

    def sentinel(self) -> Optional[MutatedURL]:
        probe_cfg = self.ctx.config.probe
        if not probe_cfg.healthcheck_enabled or not probe_cfg.healthcheck_url:
            return None
        return healthcheck_candidate(probe_cfg.healthcheck_url, probe_cfg.healthcheck_param, probe_cfg.marker)

    # ── Collaborator Stages ─────────────────────────────────────

    async def collect(self) -> Tuple[ParameterStore, URLCorpus]:
        """Populate and freeze the parameter store and URL corpus."""
        ctx = self.ctx
        if ctx.config.harvest.enabled:
            log.info("[+] Collecting passive URLs (%s)", " + ".join(ctx.config.harvest.tools))
            harvested = await harvest_passive(ctx, self.runner)
            await self._record("harvest", harvested)
            passive = output_or(harvested, list)
            update_param_store(ctx, passive)

            log.info("[*] Probing dynamic URLs for liveness")
            live = await filter_live(ctx, passive, self.prober)
            await self._record("liveness", live)
        else:
            log.info("[*] Harvest disabled, reusing artifacts in %s", ctx.workdir)

        params = ParameterStore.load(ctx.artifact(PARAMS_FILE)).freeze()
        corpus = URLCorpus.load(ctx.artifact(DYNAMIC_LIVE_FILE)).freeze()

        log.info("[*] Running x8")
        brute = await run_brute(ctx, self.runner, list(corpus), ctx.artifact(PARAMS_FILE))
        await self._record("x8", brute)
        return params, corpus

    # ── Core ────────────────────────────────────────────────────

    def write_candidates(self, params: ParameterStore, corpus: URLCorpus) -> int:
        """Write the deduplicated candidate list and return its size."""
        ctx = self.ctx
        if params and corpus:
            candidates = generate(corpus, params, ctx.marker, self.sentinel())
        else:
            candidates = generate([], [], ctx.marker, self.sentinel())
        count = write_lines(ctx.scan_artifact(CANDIDATES_FILE), unique_urls(candidates))
        log.info(
            "[+] Generated %d unique URLs (URLs: %d, Params: %d, combinations: %d)",
            count, len(corpus), len(params), len(corpus) * len(params),
        )
        return count

    async def dispatch(self) -> "StageResult[DispatchReport]":
        ctx = self.ctx
        probe_cfg = ctx.config.probe
        if self.candidates == 0:
            return Skipped("no candidate URLs")

        probe = self.probe
        scratch_dir = ctx.scan_dir / "kxss_temp"
        if probe is None:
            probe = SubprocessProbe(self.runner, scratch_dir, probe_cfg.tool)
        dispatcher = Dispatcher(
            probe,
            chunk_size=probe_cfg.chunk_size,
            workers=probe_cfg.workers,
            timeout=probe_cfg.timeout,
            run_log=self.run_log,
            run_id=self.run_id,
        )
        log.info("[*] Processing %d URLs in chunks of %d (%d workers)",
                 self.candidates, probe_cfg.chunk_size, probe_cfg.workers)
        try:
            return await dispatcher.dispatch(iter_lines(ctx.scan_artifact(CANDIDATES_FILE)))
        finally:
            if isinstance(probe, SubprocessProbe):
                write_lines(ctx.scan_artifact(PROBE_LOG_FILE), probe.collect_logs().splitlines())
                shutil.rmtree(scratch_dir, ignore_errors=True)

    async def run_core(self, params: ParameterStore, corpus: URLCorpus) -> List[Finding]:
        """Mutate, dispatch, parse and persist; returns this run's findings."""
        ctx = self.ctx
        ctx.ensure_dirs()
        await self._advance(PipelineState.CORPUS_READY, f"{len(params)} params, {len(corpus)} URLs")

        self.candidates = self.write_candidates(params, corpus)
        if params and corpus:
            await self._advance(PipelineState.MUTATED, f"{self.candidates} candidates")
        else:
            log.warning("[!] No parameters or dynamic URLs found for kxss scanning")

        result = await self.dispatch()
        await self._record("kxss", result)
        if isinstance(result, Skipped):
            write_lines(ctx.scan_artifact(PROBE_LOG_FILE), [f"[!] kxss skipped: {result.reason}"])
        elif not ctx.scan_artifact(PROBE_LOG_FILE).exists():
            write_lines(ctx.scan_artifact(PROBE_LOG_FILE), [])
        self.report = output_or(result, DispatchReport)
        write_lines(ctx.scan_artifact(RAW_OUTPUT_FILE), self.report.output.splitlines())
        await self._advance(PipelineState.DISPATCHED,
                            f"{len(self.report.chunks)} chunks, {len(self.report.failed)} failed")

        findings = parse_output(iter_lines(ctx.scan_artifact(RAW_OUTPUT_FILE)))
        self.findings = findings
        await self._advance(PipelineState.PARSED, f"{len(findings)} findings")

        self.new_findings = FindingSink(ctx.scan_artifact(FINDINGS_FILE)).merge(findings)
        await self._advance(PipelineState.PERSISTED, f"{self.new_findings} new findings")
        log.info("[+] kxss completed - %d reflections (%d new)", len(findings), self.new_findings)
        return findings

    # ── Run ─────────────────────────────────────────────────────

    async def run(self) -> RunSummary:
        """Run every stage and return the summary."""
        ctx = self.ctx
        ctx.ensure_dirs()
        own_log = self.run_log is None
        if own_log:
            self.run_log = RunLog(ctx.scan_artifact(RUN_LOG_NAME))
            await self.run_log.connect()
        try:
            self.run_id = await self.run_log.start_run(ctx.domain, config_to_dict(ctx.config))
            try:
                params, corpus = await self.collect()
                await self.run_core(params, corpus)
            except (Exception, asyncio.CancelledError):
                await self.run_log.finish_run(self.run_id, "failed")
                raise
            await self.run_log.finish_run(self.run_id, "completed")
        finally:
            if own_log:
                await self.run_log.close()
                self.run_log = None

        summary = self.summarize()
        with open(ctx.artifact(SUMMARY_FILE), 'w', encoding='utf-8') as f:
            f.write(summary.model_dump_json(indent=2))
        return summary

    def chunk_stats(self) -> ChunkStats:
        statuses = [c.status for c in self.report.chunks]
        return ChunkStats(
            total=len(statuses),
            succeeded=statuses.count(STATUS_SUCCESS),
            failed=statuses.count(STATUS_FAILED),
            timed_out=statuses.count(STATUS_TIMEOUT),
        )

    def summarize(self) -> RunSummary:
        ctx = self.ctx
        sink = FindingSink(ctx.scan_artifact(FINDINGS_FILE))
        findings = sink.load()
        sentinel = self.sentinel()
        return RunSummary(
            domain=ctx.domain,
            workdir=str(ctx.workdir),
            waybackurls=count_lines(ctx.artifact("waybackurls.txt")),
            gau=count_lines(ctx.artifact("gau.txt")),
            all_urls=count_lines(ctx.artifact(ALL_URLS)),
            static_urls=len({u for u in read_lines(ctx.artifact(ALL_URLS)) if "?" not in u}),
            dynamic_urls=count_lines(ctx.artifact(DYNAMIC_LIVE_FILE)),
            params=count_lines(ctx.artifact(PARAMS_FILE)),
            live_urls=count_lines(ctx.artifact(LIVE_FILE)),
            x8_lines=count_lines(ctx.scan_artifact(BRUTE_OUT)),
            kxss_lines=count_lines(ctx.scan_artifact(RAW_OUTPUT_FILE)),
            candidates=self.candidates,
            chunks=self.chunk_stats(),
            findings=len(findings),
            new_findings=self.new_findings,
            headers=list(ctx.headers),
            skipped_stages=dict(self.skipped),
            first_findings=[FindingOut(**f.to_dict()) for f in findings[:5]],
            healthcheck=healthcheck_passed(self.findings, sentinel.url if sentinel else None),
        )
