"""Per-block synthesis parameters and the controller that pushes them to a voice.

One :class:`ParameterState` exists per block name. Every Run of that block
shares it and mutates it in place, so two concurrent Runs of the same block
race on it and the last write wins. That is the intended contract: a block
name denotes one instrument, not one performance of it.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from .engine import Lfo, Voice

_LOGGER = logging.getLogger("soundscript.state")

MIN_LINEAR = 1e-5
DEFAULT_VOLUME = 80.0
BOOSTED_VOLUME = 85.0
MAX_DELAY_FEEDBACK = 0.9
MAX_DELAY_WET = 0.8


@dataclass(frozen=True, slots=True)
class FilterSettings:
    kind: str = "lowpass"
    frequency: float = 20_000.0
    q: float = 1.0


@dataclass(frozen=True, slots=True)
class DistortionSettings:
    amount: float = 0.0


@dataclass(frozen=True, slots=True)
class ReverbSettings:
    wet: float = 0.0
    dry: float = 1.0
    decay: float = 1.5
    predelay: float = 0.01


@dataclass(frozen=True, slots=True)
class DelaySettings:
    time: float = 0.0
    feedback: float = 0.0
    pingpong: int = 0
    width: float = 0.5
    wet: float = 0.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "feedback", min(self.feedback, MAX_DELAY_FEEDBACK))
        object.__setattr__(self, "wet", min(self.wet, MAX_DELAY_WET))


@dataclass(frozen=True, slots=True)
class EnvelopeSettings:
    attack: float = 0.01
    decay: float = 0.1
    sustain: float = 0.5
    release: float = 0.1


@dataclass(frozen=True, slots=True)
class AutoPanSettings:
    rate: float = 0.0
    depth: float = 0.0


@dataclass(frozen=True, slots=True)
class AutoVolumeSettings:
    """Bounds are linear gain (0-1)."""

    min: float = 0.0
    max: float = 0.0
    rate: float = 0.0

    @property
    def active(self) -> bool:
        return self.rate > 0 and self.max > self.min


@dataclass(slots=True)
class ParameterState:
    volume: float = DEFAULT_VOLUME
    pan: float = 0.0
    filter: FilterSettings = field(default_factory=FilterSettings)
    distortion: DistortionSettings = field(default_factory=DistortionSettings)
    reverb: ReverbSettings = field(default_factory=ReverbSettings)
    delay: DelaySettings = field(default_factory=DelaySettings)
    envelope: EnvelopeSettings = field(default_factory=EnvelopeSettings)
    autopan: AutoPanSettings = field(default_factory=AutoPanSettings)
    autovolume: AutoVolumeSettings = field(default_factory=AutoVolumeSettings)
    effect_stack: list[tuple[str, Any]] = field(default_factory=list)
    volume_lfo: Lfo | None = None


# Effect type named by ``begin``/``end`` -> ParameterState attribute.
EFFECT_TYPES: Mapping[str, str] = MappingProxyType(
    {
        "filter": "filter",
        "distortion": "distortion",
        "reverb": "reverb",
        "delay": "delay",
        "envelope": "envelope",
        "pan": "pan",
        "autopan": "autopan",
        "autovolume": "autovolume",
        "volume": "volume",
    }
)


def is_effect_type(token: str | None) -> bool:
    return token is not None and token in EFFECT_TYPES


# -----------------------------------------------------------------------------
# Gain
# -----------------------------------------------------------------------------


def linear_to_db(linear: float) -> float:
    return 20 * math.log10(max(MIN_LINEAR, linear))


def volume_to_db(volume: float) -> float:
    """0-100 volume to decibels."""
    return linear_to_db(volume / 100)


def command_compensation_db(state: ParameterState) -> float:
    """Gain trim applied whenever volume, delay or reverb change."""
    compensation = 0.0
    delay = state.delay
    if delay.time > 0 and delay.wet > 0.3:
        compensation += -3 * (delay.wet * 0.7) * (delay.feedback * 0.8)
    if state.reverb.wet > 0.2:
        compensation += -1.5 * state.reverb.wet
    return compensation


def normalization_compensation_db(state: ParameterState) -> float:
    """Gain trim used by the pre-replay normalization pass."""
    compensation = 0.0
    if state.delay.wet > 0.2:
        compensation += -2 * state.delay.wet * state.delay.feedback
    if state.reverb.wet > 0.2:
        compensation += -1.5 * state.reverb.wet
    return compensation


def engine_gain_db(state: ParameterState) -> float:
    return volume_to_db(state.volume) + command_compensation_db(state)


# -----------------------------------------------------------------------------
# Controller
# -----------------------------------------------------------------------------


class BlockController:
    """Applies parameter changes to the shared state and mirrors them on the voice."""

    def __init__(self, name: str, state: ParameterState, voice: Voice) -> None:
        self.name = name
        self.state = state
        self.voice = voice

    def sync(self) -> None:
        """Push every stored parameter to the voice."""
        state = self.state
        self.voice.set_pan(state.pan)
        self._apply_filter()
        self.voice.set_distortion(state.distortion.amount)
        self._apply_envelope()
        self._apply_reverb()
        self._apply_delay()
        self.voice.set_autopan(state.autopan.rate, state.autopan.depth)
        self.apply_gain()

    def apply_gain(self) -> None:
        self.voice.set_gain(engine_gain_db(self.state))

    # Parameters -----------------------------------------------------------------

    def set_volume(self, volume: float) -> None:
        self.state.volume = volume
        gain = engine_gain_db(self.state)
        compensation = command_compensation_db(self.state)
        if compensation:
            _LOGGER.debug("%s: volume %s with %.1fdB compensation", self.name, volume, compensation)
        self.voice.set_gain(gain)

    def set_pan(self, pan: float) -> None:
        self.state.pan = pan
        self.voice.set_pan(pan)

    def set_filter(self, settings: FilterSettings) -> None:
        self.state.filter = settings
        self._apply_filter()
        _LOGGER.debug(
            "%s: %s filter at %sHz, Q=%s", self.name, settings.kind, settings.frequency, settings.q
        )

    def set_distortion(self, settings: DistortionSettings) -> None:
        self.state.distortion = settings
        self.voice.set_distortion(settings.amount)

    def set_envelope(self, settings: EnvelopeSettings) -> None:
        self.state.envelope = settings
        self._apply_envelope()

    def set_reverb(self, settings: ReverbSettings) -> None:
        self.state.reverb = settings
        self._apply_reverb()
        self.apply_gain()

    def set_delay(self, settings: DelaySettings) -> None:
        self.state.delay = settings
        self._apply_delay()
        self.apply_gain()
        compensation = command_compensation_db(self.state)
        if compensation:
            _LOGGER.info("%s: applied %.1fdB compensation for effects", self.name, compensation)
        if settings.feedback > 0.7:
            _LOGGER.info("%s: high delay feedback (%s), volume compensated", self.name, settings.feedback)

    def set_autopan(self, settings: AutoPanSettings) -> None:
        self.state.autopan = settings
        self.voice.set_autopan(settings.rate, settings.depth)

    def set_autovolume(self, settings: AutoVolumeSettings, at: float) -> None:
        """Start, replace or tear down the volume LFO."""
        state = self.state
        if state.volume_lfo is not None:
            state.volume_lfo.stop()
            state.volume_lfo = None
        if settings.active:
            state.volume_lfo = self.voice.start_gain_lfo(
                settings.rate, linear_to_db(settings.min), linear_to_db(settings.max), at
            )
        else:
            self.apply_gain()
        state.autovolume = settings

    # Effect snapshots -------------------------------------------------------------

    def begin(self, effect_type: str) -> None:
        attribute = EFFECT_TYPES[effect_type]
        self.state.effect_stack.append((effect_type, getattr(self.state, attribute)))

    def end(self, effect_type: str, at: float) -> None:
        """Pop the latest snapshot; restore it only when its type matches."""
        if not self.state.effect_stack:
            return
        saved_type, snapshot = self.state.effect_stack.pop()
        if saved_type != effect_type:
            _LOGGER.debug("%s: 'end %s' does not match 'begin %s'", self.name, effect_type, saved_type)
            return
        match effect_type:
            case "volume":
                self.set_volume(snapshot)
            case "pan":
                self.set_pan(snapshot)
            case "filter":
                self.set_filter(snapshot)
            case "distortion":
                self.set_distortion(snapshot)
            case "envelope":
                self.set_envelope(snapshot)
            case "reverb":
                self.set_reverb(snapshot)
            case "delay":
                self.set_delay(snapshot)
            case "autopan":
                self.set_autopan(snapshot)
            case "autovolume":
                self.set_autovolume(snapshot, at)

    # Notes and lifecycle ----------------------------------------------------------

    def trigger(self, frequencies: Sequence[float], duration: float, at: float) -> None:
        self.voice.trigger(frequencies, duration, at)

    def normalize(self) -> None:
        """Default-volume boost plus effect compensation, ahead of a replay."""
        state = self.state
        if state.volume == DEFAULT_VOLUME:
            state.volume = BOOSTED_VOLUME
        self.sync()
        self.voice.set_gain(volume_to_db(state.volume) + normalization_compensation_db(state))

    def release(self) -> None:
        if self.state.volume_lfo is not None:
            self.state.volume_lfo.stop()
            self.state.volume_lfo = None
        self.voice.release_all()

    def silence(self) -> None:
        if self.state.volume_lfo is not None:
            self.state.volume_lfo.stop()
            self.state.volume_lfo = None
        self.voice.silence()

    def _apply_filter(self) -> None:
        settings = self.state.filter
        self.voice.set_filter(settings.kind, settings.frequency, settings.q)

    def _apply_envelope(self) -> None:
        env = self.state.envelope
        self.voice.set_envelope(env.attack, env.decay, env.sustain, env.release)

    def _apply_reverb(self) -> None:
        reverb = self.state.reverb
        self.voice.set_reverb(reverb.wet, reverb.dry, reverb.decay, reverb.predelay)

    def _apply_delay(self) -> None:
        delay = self.state.delay
        self.voice.set_delay(delay.time, delay.feedback, bool(delay.pingpong), delay.width, delay.wet)
