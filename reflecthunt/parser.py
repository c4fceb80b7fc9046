"""
ReflectHunt - kxss Output Parser
Turns raw kxss output into Finding records.

kxss prints one line per reflected parameter:

    URL: <url> Param: <param> Unfiltered: [<chars>]

Anything else (banners, errors, blank lines) is noise and is dropped.
A url or param containing the findings-file separator " | " cannot be
written back unambiguously, so such lines are dropped as well.
"""

from dataclasses import dataclass
from typing import Iterable, List, Optional, Set

URL_MARK = "URL: "
PARAM_MARK = " Param: "
UNFILTERED_MARK = " Unfiltered: "
EMPTY_PAYLOAD = "[]"

# Separator used in the persisted findings file
FIELD_SEP = " | "


@dataclass(frozen=True)
class Finding:
    """A verified (url, parameter, reflected characters) result."""
    url: str
    param: str
    reflected: str

    def to_line(self) -> str:
        if FIELD_SEP in self.url or FIELD_SEP in self.param:
            raise ValueError(f"finding field contains {FIELD_SEP!r}: {self.url!r} {self.param!r}")
        return f"{self.url}{FIELD_SEP}{self.param}{FIELD_SEP}Unfiltered: {self.reflected}"

    @classmethod
    def from_line(cls, line: str) -> Optional["Finding"]:
        """Read back a line written by ``to_line``."""
        line = line.rstrip("\r\n")
        url, sep, rest = line.partition(FIELD_SEP)
        if not sep:
            return None
        param, sep, reflected = rest.partition(f"{FIELD_SEP}Unfiltered: ")
        if not sep or not url or not param or reflected in ("", EMPTY_PAYLOAD):
            return None
        return cls(url=url, param=param, reflected=reflected)

    def to_dict(self) -> dict:
        return {"url": self.url, "param": self.param, "unfiltered": self.reflected}


def parse_line(line: str) -> Optional[Finding]:
    """Parse one kxss output line, or return None for noise."""
    line = line.rstrip("\r\n")
    url_at = line.find(URL_MARK)
    if url_at < 0:
        return None
    url_start = url_at + len(URL_MARK)
    param_at = line.find(PARAM_MARK, url_start)
    if param_at < 0:
        return None
    param_start = param_at + len(PARAM_MARK)
    unfiltered_at = line.find(UNFILTERED_MARK, param_start)
    if unfiltered_at < 0:
        return None

    url = line[url_start:param_at]
    param = line[param_start:unfiltered_at]
    reflected = line[line.rfind(UNFILTERED_MARK) + len(UNFILTERED_MARK):]

    if not url or not param or reflected in ("", EMPTY_PAYLOAD):
        return None
    if FIELD_SEP in url or FIELD_SEP in param:
        return None
    return Finding(url=url, param=param, reflected=reflected)


def parse_output(lines: Iterable[str]) -> List[Finding]:
    """Parse raw kxss output into unique findings sorted by serialized line."""
    found: Set[Finding] = set()
    for line in lines:
        finding = parse_line(line)
        if finding is not None:
            found.add(finding)
    return sort_findings(found)


def parse_text(text: str) -> List[Finding]:
    return parse_output(text.splitlines())


def sort_findings(findings: Iterable[Finding]) -> List[Finding]:
    return sorted(set(findings), key=Finding.to_line)
