import asyncio
import sys
import textwrap

import pytest

from conftest import FakeProbe, MissingProbe, kxss_line
from reflecthunt.config import ToolDefinition
from reflecthunt.dispatcher import (
    STATUS_FAILED, STATUS_SUCCESS, STATUS_TIMEOUT,
    Chunk, Dispatcher, SubprocessProbe, chunked,
)
from reflecthunt.errors import ChunkFailure
from reflecthunt.logger import RunLog
from reflecthunt.parser import parse_text
from reflecthunt.stage import Completed, Skipped
from reflecthunt.tools import ToolRunner


def candidates(n):
    return [f"https://ex.com/{i}?id=KXSS" for i in range(n)]


# ── Chunking ──────────────────────────────────────────────────────

@pytest.mark.parametrize("n,size,expected", [
    (0, 100, []),
    (1, 100, [1]),
    (100, 100, [100]),
    (101, 100, [100, 1]),
    (250, 100, [100, 100, 50]),
])
def test_chunk_sizes(n, size, expected):
    chunks = list(chunked(candidates(n), size))
    assert [len(c) for c in chunks] == expected
    assert [c.index for c in chunks] == list(range(len(expected)))
    assert [u for c in chunks for u in c.urls] == candidates(n)


def test_chunk_name():
    assert Chunk(index=7, urls=()).name == "chunk_00007"


def test_chunk_size_must_be_positive():
    with pytest.raises(ValueError):
        list(chunked(["a"], 0))


# ── Dispatch ──────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_concurrency_never_exceeds_workers():
    probe = FakeProbe(delay=0.01)
    dispatcher = Dispatcher(probe, chunk_size=10, workers=6, timeout=5)
    result = await dispatcher.dispatch(candidates(1000))

    assert isinstance(result, Completed)
    assert probe.max_active <= 6
    assert probe.max_active > 1
    assert sorted(probe.calls) == list(range(100))
    assert len(result.output.chunks) == 100


@pytest.mark.asyncio
async def test_single_worker_is_sequential():
    probe = FakeProbe(delay=0.001)
    await Dispatcher(probe, chunk_size=3, workers=1, timeout=5).dispatch(candidates(10))
    assert probe.max_active == 1
    assert probe.calls == [0, 1, 2, 3]


@pytest.mark.asyncio
async def test_output_is_concatenated_in_chunk_order():
    result = await Dispatcher(FakeProbe(), chunk_size=2, workers=3, timeout=5).dispatch(candidates(5))
    report = result.output
    findings = parse_text(report.output)
    assert sorted(f.url for f in findings) == sorted(candidates(5))
    assert [c.index for c in report.chunks] == [0, 1, 2]
    assert report.candidates == 5


@pytest.mark.asyncio
async def test_failed_chunk_keeps_partial_output_and_siblings_finish():
    probe = FakeProbe(fail={1})
    result = await Dispatcher(probe, chunk_size=3, workers=2, timeout=5).dispatch(candidates(9))
    report = result.output

    statuses = {c.index: c.status for c in report.chunks}
    assert statuses == {0: STATUS_SUCCESS, 1: STATUS_FAILED, 2: STATUS_SUCCESS}
    assert report.failed[0].exit_code == 1
    # banner plus the first reflection line of chunk 1 survive
    urls = {f.url for f in parse_text(report.output)}
    assert candidates(9)[3] in urls
    assert candidates(9)[4] not in urls
    assert len(urls) == 7


@pytest.mark.asyncio
async def test_hung_probe_is_cut_off():
    probe = FakeProbe(hang={0})
    dispatcher = Dispatcher(probe, chunk_size=2, workers=2, timeout=0.1)
    dispatcher.kill_grace = 0
    report = (await dispatcher.dispatch(candidates(4))).output

    assert report.chunks[0].status == STATUS_TIMEOUT
    assert report.chunks[0].output == ""
    assert report.chunks[1].status == STATUS_SUCCESS
    assert probe.active == 0


@pytest.mark.asyncio
async def test_unexpected_probe_error_fails_only_that_chunk():
    class Exploding(FakeProbe):
        async def run_chunk(self, chunk, timeout):
            if chunk.index == 0:
                raise RuntimeError("disk full")
            return await super().run_chunk(chunk, timeout)

    report = (await Dispatcher(Exploding(), chunk_size=1, workers=2, timeout=5).dispatch(candidates(2))).output
    assert report.chunks[0].status == STATUS_FAILED
    assert "disk full" in report.chunks[0].reason
    assert report.chunks[1].ok


@pytest.mark.asyncio
async def test_missing_probe_is_skipped():
    result = await Dispatcher(MissingProbe()).dispatch(candidates(3))
    assert isinstance(result, Skipped)
    assert "kxss" in result.reason


@pytest.mark.asyncio
async def test_empty_input_dispatches_nothing():
    probe = FakeProbe()
    result = await Dispatcher(probe).dispatch([])
    assert result.output.chunks == []
    assert probe.calls == []


def test_workers_must_be_positive():
    with pytest.raises(ValueError):
        Dispatcher(FakeProbe(), workers=0)


@pytest.mark.asyncio
async def test_chunks_recorded_in_run_log(tmp_path):
    async with RunLog(tmp_path / "runs.db") as run_log:
        run_id = await run_log.start_run("ex.com")
        dispatcher = Dispatcher(FakeProbe(fail={1}), chunk_size=2, workers=2, timeout=5,
                                run_log=run_log, run_id=run_id)
        await dispatcher.dispatch(candidates(6))

        chunk_runs = await run_log.get_chunk_runs(run_id)
        assert [r["chunk_index"] for r in chunk_runs] == [0, 1, 2]
        assert chunk_runs[1]["status"] == STATUS_FAILED
        stats = await run_log.get_run_stats(run_id)
        assert stats["chunks_total"] == 3
        assert stats["chunks_by_status"] == {STATUS_SUCCESS: 2, STATUS_FAILED: 1}


class BrokenStartLog:
    """Run log whose chunk writes always fail."""

    def __init__(self):
        self.finished = []

    async def log_chunk_start(self, run_id, chunk_index, tool_name, url_count):
        raise RuntimeError("database is locked")

    async def finish_chunk(self, chunk_run_id, **kwargs):
        self.finished.append(chunk_run_id)


@pytest.mark.asyncio
async def test_run_log_failure_does_not_stop_chunks():
    run_log = BrokenStartLog()
    probe = FakeProbe()
    dispatcher = Dispatcher(probe, chunk_size=2, workers=2, timeout=5, run_log=run_log, run_id=1)
    report = (await dispatcher.dispatch(candidates(6))).output

    assert [c.status for c in report.chunks] == [STATUS_SUCCESS] * 3
    assert len(parse_text(report.output)) == 6
    assert run_log.finished == []
    assert probe.active == 0


@pytest.mark.asyncio
async def test_worker_crash_cancels_sibling_workers():
    class Crashing(Dispatcher):
        async def _run_chunk(self, chunk):
            if chunk.index == 0:
                await asyncio.sleep(0.05)
                raise RuntimeError("worker crashed")
            return await super()._run_chunk(chunk)

    probe = FakeProbe(hang={1})
    dispatcher = Crashing(probe, chunk_size=1, workers=2, timeout=5)
    with pytest.raises(RuntimeError, match="worker crashed"):
        await dispatcher.dispatch(candidates(2))

    assert probe.calls == [1]
    assert probe.active == 0


# ── Subprocess Probe ──────────────────────────────────────────────

FAKE_KXSS = textwrap.dedent("""
    import sys, time
    mode = sys.argv[1]
    for url in sys.stdin.read().split():
        print("URL: " + url + " Param: id Unfiltered: [<]", flush=True)
        if mode == "hang":
            time.sleep(60)
    if mode == "fail":
        sys.exit(3)
""")


def fake_kxss_runner(tmp_path, mode):
    script = tmp_path / "fake_kxss.py"
    script.write_text(FAKE_KXSS)
    tool = ToolDefinition(
        name="kxss",
        command=sys.executable,
        description="fake kxss",
        category="probe",
        args_template=f"{script} {mode}",
        reads_stdin=True,
    )
    return ToolRunner({"kxss": tool})


@pytest.mark.asyncio
async def test_subprocess_probe_success(tmp_path):
    probe = SubprocessProbe(fake_kxss_runner(tmp_path, "ok"), tmp_path / "scratch")
    output = await probe.run_chunk(Chunk(0, tuple(candidates(3))), timeout=30)
    assert [f.url for f in parse_text(output)] == sorted(candidates(3))


@pytest.mark.asyncio
async def test_subprocess_probe_timeout_keeps_partial_output(tmp_path):
    probe = SubprocessProbe(fake_kxss_runner(tmp_path, "hang"), tmp_path / "scratch")
    with pytest.raises(ChunkFailure) as exc:
        await probe.run_chunk(Chunk(0, tuple(candidates(3))), timeout=3)

    assert exc.value.timed_out
    assert exc.value.exit_code is None
    assert exc.value.partial_output == kxss_line(candidates(3)[0]).replace("[\" ' < >]", "[<]")


@pytest.mark.asyncio
async def test_subprocess_probe_nonzero_exit(tmp_path):
    probe = SubprocessProbe(fake_kxss_runner(tmp_path, "fail"), tmp_path / "scratch")
    with pytest.raises(ChunkFailure) as exc:
        await probe.run_chunk(Chunk(4, tuple(candidates(2))), timeout=30)

    assert exc.value.index == 4
    assert exc.value.exit_code == 3
    assert len(parse_text(exc.value.partial_output)) == 2


@pytest.mark.asyncio
async def test_subprocess_probe_missing_binary_is_skipped(tmp_path):
    tool = ToolDefinition(name="kxss", command="kxss-not-installed-anywhere",
                          description="", category="probe", reads_stdin=True)
    probe = SubprocessProbe(ToolRunner({"kxss": tool}), tmp_path / "scratch")
    result = await Dispatcher(probe).dispatch(candidates(1))
    assert isinstance(result, Skipped)


@pytest.mark.asyncio
async def test_same_chunk_twice_gives_same_findings():
    chunk = Chunk(0, tuple(candidates(5)))
    probe = FakeProbe()
    first = parse_text(await probe.run_chunk(chunk, timeout=5))
    second = parse_text(await probe.run_chunk(chunk, timeout=5))
    assert first == second
