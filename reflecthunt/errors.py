"""
ReflectHunt - Errors
Typed exceptions raised inside stages and handled at stage boundaries.
"""

from typing import Optional


class ReconError(Exception):
    """Base class for all pipeline errors."""


class ConfigError(ReconError):
    """Configuration value the pipeline cannot run with."""


class MissingCollaborator(ReconError):
    """An external tool is not installed or not resolvable."""

    def __init__(self, tool: str, reason: str = ""):
        self.tool = tool
        self.reason = reason or f"{tool} not found in PATH"
        super().__init__(self.reason)


class ChunkFailure(ReconError):
    """A probe chunk timed out or exited non-zero.

    Whatever the tool flushed before failing travels with the exception in
    ``partial_output`` so the caller can still parse it.
    """

    def __init__(self, index: int, reason: str, exit_code: Optional[int] = None,
                 partial_output: str = "", timed_out: bool = False):
        self.index = index
        self.reason = reason
        self.exit_code = exit_code
        self.partial_output = partial_output
        self.timed_out = timed_out
        super().__init__(f"chunk {index}: {reason}")
