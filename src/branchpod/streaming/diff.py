"""Line-level delta between successive console captures."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class DeltaKind(str, Enum):
    NONE = "none"
    APPEND = "append"
    REFRESH = "refresh"


@dataclass(frozen=True)
class CaptureDelta:
    kind: DeltaKind
    lines: tuple[str, ...] = ()
    full_content: str = ""


def normalize_capture(text: str) -> str:
    """Drop trailing blank lines; tmux pads captures with the pane's empty rows."""
    lines = text.rstrip("\n").split("\n")
    while lines and not lines[-1].strip():
        lines.pop()
    return "\n".join(lines)


def compute_delta(previous: str, current: str) -> CaptureDelta:
    """Compare two normalized captures.

    A pure append (``current == previous + "\\n" + tail``) yields the tail's
    lines. Any other change, including truncation of the scrollback or an
    in-place edit of the last line, yields a full refresh.
    """
    if current == previous:
        return CaptureDelta(DeltaKind.NONE)

    if previous and len(current) > len(previous) and current.startswith(previous):
        tail = current[len(previous) :]
        if tail.startswith("\n"):
            return CaptureDelta(DeltaKind.APPEND, lines=tuple(tail[1:].split("\n")))

    if not previous:
        return CaptureDelta(DeltaKind.APPEND, lines=tuple(current.split("\n")))

    return CaptureDelta(DeltaKind.REFRESH, full_content=current)
