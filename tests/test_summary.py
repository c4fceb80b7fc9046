from rich.console import Console

from reflecthunt.parser import Finding
from reflecthunt.summary import ChunkStats, FindingOut, RunSummary, healthcheck_passed, host_of, render

SENTINEL = "https://1.bigdav.ir/test.php?test=KXSS"


def test_host_of():
    assert host_of("https://EX.com:8443/a?x=1") == "ex.com"
    assert host_of("not a url") == ""


def test_healthcheck():
    hit = Finding(url="https://1.bigdav.ir/test.php?test=KXSS", param="test", reflected="[<]")
    other = Finding(url="https://ex.com/?q=KXSS", param="q", reflected="[<]")
    assert healthcheck_passed([other, hit], SENTINEL) is True
    assert healthcheck_passed([other], SENTINEL) is False
    assert healthcheck_passed([hit], None) is None


def test_render_lists_counts_and_findings():
    console = Console(record=True, width=120)
    summary = RunSummary(
        domain="ex.com",
        workdir="/tmp/ex.com_recon",
        candidates=3,
        chunks=ChunkStats(total=1, succeeded=1),
        findings=1,
        new_findings=1,
        headers=["Cookie: a=b"],
        skipped_stages={"x8": "x8 stage disabled"},
        first_findings=[FindingOut(url="https://ex.com/?q=KXSS", param="q", unfiltered="[<]")],
        healthcheck=True,
    )
    render(summary, console)
    text = console.export_text()

    assert "Recon Summary for ex.com" in text
    assert "https://ex.com/?q=KXSS | q | Unfiltered: [<]" in text
    assert "skipped x8: x8 stage disabled" in text
    assert "Health check passed" in text
    assert "Cookie: a=b" in text


def test_render_without_findings():
    console = Console(record=True, width=120)
    render(RunSummary(domain="ex.com", workdir="/tmp/w", healthcheck=False), console)
    text = console.export_text()
    assert "No reflected pairs found" in text
    assert "Health check failed" in text


def test_summary_json_roundtrip():
    summary = RunSummary(domain="ex.com", workdir="/w", findings=2)
    assert RunSummary.model_validate_json(summary.model_dump_json()) == summary
