"""Static prediction of how long a script performs.

The estimate only sizes the offline render buffer, so it errs long: loop
bodies are walked once by the linear pass and again for the repeat count, and
every block adds a fixed allowance for reverb and delay tails.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from .config import DEFAULT_BPM
from .parser import MAIN_BLOCK, BlockMap, Command, parse_command
from .state import is_effect_type
from .timing import beats_to_seconds, count_or, note_seconds, number_or

_LOGGER = logging.getLogger("soundscript.estimator")

TAIL_SECONDS = 1.5
WAITFORFINISH_SECONDS = 1.0
UNTERMINATED_LOOP_SECONDS = 2.0
MIN_ESTIMATE_SECONDS = 10.0
SAFETY_MARGIN = 1.1


def is_loop_end(command: Command) -> bool:
    """``end`` closes a loop unless it names an effect type."""
    if command.verb != "end":
        return False
    return not is_effect_type(command.args[0] if command.args else None)


def _timing_seconds(command: Command, bpm: float) -> float:
    match command.verb:
        case "wait":
            return beats_to_seconds(number_or(command.args[0] if command.args else None, 0.0), bpm)
        case "waitsec":
            return number_or(command.args[0] if command.args else None, 0.0)
        case "tone" | "tones":
            return note_seconds(command.args[-1] if command.args else None, bpm)
        case _:
            return 0.0


def _loop_body(commands: Sequence[Command], start: int) -> list[Command] | None:
    """Commands between the loop at ``start`` and its matching end, or ``None``."""
    body: list[Command] = []
    depth = 0
    for command in commands[start + 1 :]:
        if command.verb == "loop":
            depth += 1
        elif is_loop_end(command):
            if depth == 0:
                return body
            depth -= 1
        body.append(command)
    return None


class DurationEstimator:
    def __init__(self, blocks: BlockMap, bpm: float = DEFAULT_BPM) -> None:
        self._blocks = blocks
        self._bpm = bpm if bpm > 0 else DEFAULT_BPM
        self._in_progress: set[str] = set()

    def block(self, name: str) -> float:
        """Seconds for one pass of ``name``; re-entry while it is being estimated counts 0."""
        if name in self._in_progress:
            _LOGGER.debug("Block '%s' re-entered during estimation; counted as 0", name)
            return 0.0
        lines = self._blocks.get(name)
        if lines is None:
            return 0.0

        self._in_progress.add(name)
        try:
            commands = [c for c in (parse_command(line) for line in lines) if c is not None]
            total = sum(self._command(commands, index) for index in range(len(commands)))
        finally:
            self._in_progress.discard(name)
        return total + TAIL_SECONDS

    def _command(self, commands: Sequence[Command], index: int) -> float:
        command = commands[index]
        match command.verb:
            case "wait" | "waitsec" | "tone" | "tones":
                return _timing_seconds(command, self._bpm)
            case "play" if command.args[:1] == ("together",):
                return max((self.block(name) for name in command.args[1:]), default=0.0)
            case "play" if command.args:
                return self.block(command.args[0])
            case "loop":
                iterations = count_or(command.args[0] if command.args else None, 1)
                body = _loop_body(commands, index)
                if body is None:
                    return iterations * UNTERMINATED_LOOP_SECONDS
                return sum(_timing_seconds(c, self._bpm) for c in body) * iterations
            case "waitforfinish":
                return WAITFORFINISH_SECONDS
            case _:
                return 0.0


def estimate_block_duration(blocks: BlockMap, name: str, bpm: float = DEFAULT_BPM) -> float:
    return DurationEstimator(blocks, bpm).block(name)


def estimate_duration(blocks: BlockMap, bpm: float = DEFAULT_BPM) -> float:
    """Total seconds from ``main``, with a 10% margin and a 10 second floor."""
    total = 0.0
    if MAIN_BLOCK in blocks:
        total = estimate_block_duration(blocks, MAIN_BLOCK, bpm)
    else:
        _LOGGER.warning("No '%s' block; duration estimate falls back to the floor", MAIN_BLOCK)
    estimate = max(MIN_ESTIMATE_SECONDS, total * SAFETY_MARGIN)
    _LOGGER.info("Estimated duration: %.1fs", estimate)
    return estimate
