from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Literal, TypeAlias

_LOGGER = logging.getLogger("soundscript.parser")

_BLOCK_START = re.compile(r"^(\w+):")
_BLOCK_END = re.compile(r"^end\s+(\w+)")
COMMENT_PREFIX = "//"
MAIN_BLOCK = "main"

BlockMap: TypeAlias = Mapping[str, tuple[str, ...]]

Verb = Literal[
    "tone",
    "tones",
    "wait",
    "waitsec",
    "waitforfinish",
    "volume",
    "pan",
    "bpm",
    "tempo",
    "reverb",
    "delay",
    "filter",
    "distortion",
    "envelope",
    "autopan",
    "autovolume",
    "sample",
    "play",
    "loop",
    "end",
    "begin",
]
VERBS: frozenset[str] = frozenset(Verb.__args__)  # type: ignore[attr-defined]


@dataclass(frozen=True, slots=True)
class Command:
    verb: str
    args: tuple[str, ...]
    line: str

    @property
    def known(self) -> bool:
        return self.verb in VERBS


def is_blank_or_comment(line: str) -> bool:
    stripped = line.strip()
    return not stripped or stripped.startswith(COMMENT_PREFIX)


def parse_command(line: str) -> Command | None:
    """Split one source line into a verb and its arguments."""
    stripped = line.strip()
    if is_blank_or_comment(stripped):
        return None
    verb, *args = stripped.split()
    return Command(verb=verb, args=tuple(args), line=stripped)


def parse_script(code: str) -> BlockMap:
    """Collect ``name: ... end name`` blocks from ``code``.

    Never raises: content outside blocks is dropped, a block opened before the
    previous one closed abandons the previous one, and unterminated blocks are
    left out of the result.
    """
    blocks: dict[str, tuple[str, ...]] = {}
    current_name: str | None = None
    current_lines: list[str] = []

    for number, raw in enumerate(code.splitlines(), start=1):
        line = raw.strip()
        if is_blank_or_comment(line):
            continue

        start = _BLOCK_START.match(line)
        if start:
            if current_name is not None:
                _LOGGER.warning(
                    "Block '%s' abandoned: '%s' opened on line %d before 'end %s'",
                    current_name,
                    start.group(1),
                    number,
                    current_name,
                )
            current_name = start.group(1)
            current_lines = []
            continue

        end = _BLOCK_END.match(line)
        if end and current_name is not None and end.group(1) == current_name:
            if current_name in blocks:
                _LOGGER.debug("Block '%s' redefined; previous definition replaced", current_name)
            blocks[current_name] = tuple(current_lines)
            current_name = None
            current_lines = []
            continue

        if current_name is not None:
            current_lines.append(line)

    if current_name is not None:
        _LOGGER.warning("Block '%s' has no matching 'end %s'; ignored", current_name, current_name)

    _LOGGER.info("Parsed %d blocks", len(blocks))
    return MappingProxyType(blocks)
