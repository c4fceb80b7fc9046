"""
ReflectHunt - Liveness Prober
Keeps the dynamic URLs that still answer over HTTP(S).
"""

import asyncio
import logging
from typing import Dict, Iterator, List, Optional

import httpx

from reflecthunt.config import LivenessConfig, RunContext
from reflecthunt.stage import Completed, StageResult
from reflecthunt.store import append_new, read_lines

log = logging.getLogger(__name__)

LIVE_FILE = "httpx.txt"
DYNAMIC_LIVE_FILE = "dynamic-httpx.txt"


def get_batches(items: List[str], size: int) -> Iterator[List[str]]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


class LivenessProber:
    """Concurrent GET probe; any HTTP response counts as alive."""

    def __init__(self, config: LivenessConfig, headers: Optional[Dict[str, str]] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self.headers = headers or {}
        self.transport = transport

    async def probe(self, urls: List[str]) -> List[str]:
        alive: List[str] = []
        async with httpx.AsyncClient(
            transport=self.transport or httpx.AsyncHTTPTransport(
                verify=self.config.verify_tls,
                retries=self.config.retries,
            ),
            follow_redirects=False,
            timeout=self.config.timeout,
            limits=httpx.Limits(max_connections=self.config.concurrency),
            headers=self.headers,
        ) as client:
            for batch in get_batches(urls, self.config.batch_size):
                results = await asyncio.gather(*(self._is_alive(client, url) for url in batch))
                alive.extend(url for url, ok in zip(batch, results) if ok)
                log.debug("Liveness batch: %d/%d alive", sum(results), len(batch))
        return alive

    async def _is_alive(self, client: httpx.AsyncClient, url: str) -> bool:
        try:
            async with client.stream("GET", url):
                return True
        except (httpx.HTTPError, httpx.InvalidURL):
            return False


async def filter_live(ctx: RunContext, passive_urls: List[str],
                      prober: Optional[LivenessProber] = None) -> "StageResult[List[str]]":
    """Probe dynamic passive URLs and return the live dynamic URL list."""
    dynamic = sorted({u for u in passive_urls if "?" in u})
    prober = prober or LivenessProber(ctx.config.liveness, ctx.header_dict())

    live = await prober.probe(dynamic) if dynamic else []
    append_new(ctx.artifact(LIVE_FILE), live)
    append_new(ctx.artifact(DYNAMIC_LIVE_FILE), [u for u in live if "?" in u])

    log.info("[+] liveness: %d live of %d dynamic", len(live), len(dynamic))
    return Completed(read_lines(ctx.artifact(DYNAMIC_LIVE_FILE)))
