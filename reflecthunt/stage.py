"""
ReflectHunt - Stage Results
Every stage returns Completed(output) or Skipped(reason). Downstream stages
read a Skipped result as an empty Completed one.
"""

from dataclasses import dataclass
from typing import Any, Callable, Generic, TypeVar, Union

T = TypeVar("T")


@dataclass(frozen=True)
class Completed(Generic[T]):
    output: T

    skipped = False


@dataclass(frozen=True)
class Skipped:
    reason: str

    skipped = True


StageResult = Union[Completed[T], Skipped]


def output_or(result: "StageResult[T]", empty: Callable[[], Any]) -> T:
    """The stage output, or ``empty()`` when the stage was skipped."""
    if isinstance(result, Skipped):
        return empty()
    return result.output
