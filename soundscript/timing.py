"""Numeric token parsing, beat/bar conversion and the clocks Runs suspend on.

Script numbers are read the forgiving way the language always has: only the
leading numeric prefix of a token counts, so ``"0.5b"`` reads as ``0.5`` and
``"abc"`` reads as nothing at all.
"""

from __future__ import annotations

import asyncio
import math
import re
from collections.abc import Iterable
from typing import Protocol

_FLOAT_PREFIX = re.compile(r"^\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)")
_INT_PREFIX = re.compile(r"^\s*([+-]?\d+)")

BEATS_PER_BAR = 4
BARS_SUFFIX = "b"
DEFAULT_NOTE_SECONDS = 0.5


def parse_number(token: object) -> float | None:
    """Leading float of ``token``, or ``None`` when there is none."""
    if token is None:
        return None
    if isinstance(token, (int, float)):
        value = float(token)
    else:
        match = _FLOAT_PREFIX.match(str(token))
        if match is None:
            return None
        value = float(match.group(1))
    # Overflowing literals such as 1e999 read as nothing.
    return value if math.isfinite(value) else None


def parse_count(token: object) -> int | None:
    """Leading integer of ``token``, or ``None`` when there is none."""
    if token is None:
        return None
    if isinstance(token, (int, float)):
        return int(token)
    match = _INT_PREFIX.match(str(token))
    if match is None:
        return None
    return int(match.group(1))


def number_or(token: object, default: float) -> float:
    """Parse ``token``; missing, unparsable and zero values all give ``default``."""
    value = parse_number(token)
    return value if value else default


def count_or(token: object, default: int) -> int:
    value = parse_count(token)
    return value if value else default


def beats_to_seconds(beats: float, bpm: float) -> float:
    return beats * 60.0 / bpm


def bars_to_seconds(bars: float, bpm: float) -> float:
    return bars * BEATS_PER_BAR * (60.0 / bpm)


def note_seconds(token: object, bpm: float) -> float:
    """Duration of a ``tone``/``tones`` token: ``<n>b`` is bars, anything else seconds."""
    if isinstance(token, str) and token.endswith(BARS_SUFFIX):
        return bars_to_seconds(number_or(token, DEFAULT_NOTE_SECONDS), bpm)
    return number_or(token, DEFAULT_NOTE_SECONDS)


# -----------------------------------------------------------------------------
# Clocks
# -----------------------------------------------------------------------------


class Clock(Protocol):
    """Where Runs suspend. Positions are seconds on the performance timeline."""

    def start(self) -> None: ...

    def now(self) -> float: ...

    async def advance(self, position: float, seconds: float) -> float: ...

    def settle(self, position: float, finished: Iterable[float]) -> float: ...


class RealtimeClock:
    """Wall-clock timing: ``wait`` really sleeps."""

    def __init__(self) -> None:
        self._origin: float | None = None

    def start(self) -> None:
        self._origin = asyncio.get_running_loop().time()

    def now(self) -> float:
        if self._origin is None:
            return 0.0
        return asyncio.get_running_loop().time() - self._origin

    async def advance(self, position: float, seconds: float) -> float:
        _ = position
        await asyncio.sleep(max(0.0, seconds))
        return self.now()

    def settle(self, position: float, finished: Iterable[float]) -> float:
        _ = position, finished
        return self.now()


class VirtualClock:
    """Offline timing: each Run carries its own position and never really sleeps.

    Children start at their parent's position and a parent resumes at the
    latest end of the children it waited for, so timestamps are exact no
    matter how the event loop interleaves the tasks.
    """

    def __init__(self) -> None:
        self._horizon = 0.0

    def start(self) -> None:
        self._horizon = 0.0

    def now(self) -> float:
        return self._horizon

    async def advance(self, position: float, seconds: float) -> float:
        await asyncio.sleep(0)
        target = position + max(0.0, seconds)
        self._horizon = max(self._horizon, target)
        return target

    def settle(self, position: float, finished: Iterable[float]) -> float:
        return max([position, *finished])
