"""
ReflectHunt - Mutation Generator
Builds one candidate URL per (base URL, parameter) pair with the marker
injected into that parameter only.
"""

import re
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional, Set


@dataclass(frozen=True)
class MutatedURL:
    """A base URL with a single parameter set to the marker."""
    base: str
    param: str
    marker: str

    @property
    def url(self) -> str:
        return mutate(self.base, self.param, self.marker)

    def __str__(self) -> str:
        return self.url


def mutate(base: str, param: str, marker: str) -> str:
    """Inject ``marker`` as the value of ``param`` in ``base``.

    An existing key keeps its position and only its value (up to the next
    ``&`` or the end) changes; otherwise the key is appended.
    """
    path, sep, query = base.partition("?")
    if not sep:
        return f"{base}?{param}={marker}"
    if not query:
        return f"{base}{param}={marker}"

    pattern = re.compile(r"([?&]" + re.escape(param) + r"=)[^&]*")
    replaced, count = pattern.subn(lambda m: m.group(1) + marker, "?" + query, count=1)
    if count:
        return path + replaced
    return f"{base}&{param}={marker}"


def healthcheck_candidate(url: str, param: str, marker: str) -> MutatedURL:
    return MutatedURL(base=url, param=param, marker=marker)


def generate(urls: Iterable[str], params: Iterable[str], marker: str,
             sentinel: Optional[MutatedURL] = None) -> Iterator[MutatedURL]:
    """Yield the sentinel, then every url x param mutation, params innermost."""
    if sentinel is not None:
        yield sentinel
    params = list(params)
    for base in urls:
        for param in params:
            yield MutatedURL(base=base, param=param, marker=marker)


def unique_urls(candidates: Iterable[MutatedURL]) -> Iterator[str]:
    """Candidate URL strings in generation order, first occurrence only."""
    seen: Set[str] = set()
    for candidate in candidates:
        url = candidate.url
        if url in seen:
            continue
        seen.add(url)
        yield url
