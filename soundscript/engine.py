"""Contract between the scheduler and whatever produces sound.

The scheduler only issues parameter changes and note triggers. Gains are in
decibels, times in seconds on the performance timeline.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Literal, Protocol, TypeAlias

ChainMode: TypeAlias = Literal["full", "direct", "raw"]
CHAIN_MODES: tuple[ChainMode, ...] = ("full", "direct", "raw")


class Lfo(Protocol):
    def stop(self) -> None: ...


class Voice(Protocol):
    """Polyphonic synth plus its effect chain, one per block name."""

    name: str
    mode: ChainMode

    def set_gain(self, db: float) -> None: ...

    def set_pan(self, pan: float) -> None: ...

    def set_filter(self, kind: str, frequency: float, q: float) -> None: ...

    def set_distortion(self, amount: float) -> None: ...

    def set_envelope(self, attack: float, decay: float, sustain: float, release: float) -> None: ...

    def set_reverb(self, wet: float, dry: float, decay: float, predelay: float) -> None: ...

    def set_delay(
        self, time: float, feedback: float, pingpong: bool, width: float, wet: float
    ) -> None: ...

    def set_autopan(self, rate: float, depth: float) -> None: ...

    def start_gain_lfo(self, rate: float, min_db: float, max_db: float, at: float) -> Lfo: ...

    def trigger(self, frequencies: Sequence[float], duration: float, at: float) -> None: ...

    def release_all(self) -> None: ...

    def silence(self) -> None:
        """Gain to -inf and reverb/delay wet to 0, immediately."""
        ...


class AudioEngine(Protocol):
    def create_voice(self, name: str, mode: ChainMode) -> Voice:
        """Build a voice routed according to ``mode``; raises when the graph cannot be built."""
        ...

    def has_sample(self, name: str) -> bool: ...

    def play_sample(self, name: str, gain_db: float, at: float) -> None: ...

    def stop_samples(self) -> None: ...
