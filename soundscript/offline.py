# pyright: reportUnknownMemberType=false
# pyright: reportUnknownArgumentType=false

"""Non-real-time audio engine: records what the scheduler asks for, then renders it.

Each note is synthesized with a snapshot of its voice's parameters taken when
it was triggered; parameter changes never reach a note already sounding.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from types import MappingProxyType

import numpy as np
from pydantic import BaseModel, ConfigDict

from .config import CompressorSettings, LimiterSettings
from .engine import CHAIN_MODES, ChainMode
from .errors import EngineSetupError, InvalidAudioError, RenderError
from .synth import (
    FloatArray,
    add_note,
    apply_adsr,
    apply_delay,
    apply_distortion,
    apply_filter,
    apply_reverb,
    autopan_curve,
    compress,
    db_to_gain,
    delay_tail_seconds,
    generate_lfo,
    generate_triangle,
    limit,
    pan_stereo,
    reverb_tail_seconds,
)

_LOGGER = logging.getLogger("soundscript.offline")

NOTE_AMPLITUDE = 0.3
MAX_POLYPHONY = 6


class RenderedBuffer(BaseModel):
    """Interleaving-free ``(frames, channels)`` float32 audio."""

    samples: np.ndarray
    sample_rate: int

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        arbitrary_types_allowed=True,
    )

    @property
    def channels(self) -> int:
        return 1 if self.samples.ndim == 1 else int(self.samples.shape[1])

    @property
    def frames(self) -> int:
        return int(self.samples.shape[0])

    @property
    def duration(self) -> float:
        return self.frames / self.sample_rate if self.sample_rate else 0.0

    def channel(self, index: int) -> FloatArray:
        if self.samples.ndim == 1:
            if index != 0:
                raise InvalidAudioError(f"Mono buffer has no channel {index}")
            return self.samples
        return self.samples[:, index]


class DynamicsTelemetry(BaseModel):
    compressor_reduction: float = 0.0
    limiter_reduction: float = 0.0
    peak_compressor_reduction: float = 0.0
    peak_limiter_reduction: float = 0.0

    model_config = ConfigDict(frozen=True, extra="forbid")


@dataclass(frozen=True, slots=True)
class VoiceSnapshot:
    gain_db: float
    pan: float
    filter: tuple[str, float, float]
    distortion: float
    envelope: tuple[float, float, float, float]
    reverb: tuple[float, float, float, float]
    delay: tuple[float, float, bool, float, float]
    autopan: tuple[float, float]


@dataclass(slots=True)
class GainLfo:
    rate: float
    min_db: float
    max_db: float
    start: float
    running: bool = True

    def stop(self) -> None:
        self.running = False

    def gain_curve(self, at: float, num_samples: int, sr: int) -> FloatArray:
        wave = generate_lfo(num_samples / sr, self.rate, sr, phase_offset=at - self.start)
        wave = np.pad(wave, (0, max(0, num_samples - len(wave))))[:num_samples]
        return np.asarray(db_to_gain(self.min_db + (self.max_db - self.min_db) * wave))


@dataclass(frozen=True, slots=True)
class NoteEvent:
    frequencies: tuple[float, ...]
    duration: float
    at: float
    snapshot: VoiceSnapshot
    lfo: GainLfo | None


@dataclass(frozen=True, slots=True)
class SampleEvent:
    name: str
    gain_db: float
    at: float


class OfflineVoice:
    def __init__(
        self, name: str, mode: ChainMode, sample_rate: int, horizon: float = math.inf
    ) -> None:
        self.name = name
        self.mode: ChainMode = mode
        self.sample_rate = sample_rate
        self.horizon = horizon
        self.notes: list[NoteEvent] = []
        self._gain_db = 0.0
        self._pan = 0.0
        self._filter: tuple[str, float, float] = ("lowpass", 20_000.0, 1.0)
        self._distortion = 0.0
        self._envelope = (0.01, 0.1, 0.5, 0.1)
        self._reverb = (0.0, 1.0, 1.5, 0.01)
        self._delay: tuple[float, float, bool, float, float] = (0.0, 0.0, False, 0.5, 0.0)
        self._autopan = (0.0, 0.0)
        self._lfo: GainLfo | None = None

    @property
    def gain_db(self) -> float:
        return self._gain_db

    def set_gain(self, db: float) -> None:
        self._gain_db = db

    def set_pan(self, pan: float) -> None:
        self._pan = pan

    def set_filter(self, kind: str, frequency: float, q: float) -> None:
        self._filter = (kind, frequency, q)

    def set_distortion(self, amount: float) -> None:
        self._distortion = amount

    def set_envelope(self, attack: float, decay: float, sustain: float, release: float) -> None:
        self._envelope = (attack, decay, sustain, release)

    def set_reverb(self, wet: float, dry: float, decay: float, predelay: float) -> None:
        self._reverb = (wet, dry, decay, predelay)

    def set_delay(
        self, time: float, feedback: float, pingpong: bool, width: float, wet: float
    ) -> None:
        self._delay = (time, feedback, pingpong, width, wet)

    def set_autopan(self, rate: float, depth: float) -> None:
        self._autopan = (rate, depth)

    def start_gain_lfo(self, rate: float, min_db: float, max_db: float, at: float) -> GainLfo:
        self._lfo = GainLfo(rate=rate, min_db=min_db, max_db=max_db, start=at)
        return self._lfo

    def trigger(self, frequencies: Sequence[float], duration: float, at: float) -> None:
        if not frequencies or duration <= 0:
            return
        lfo = self._lfo if self._lfo is not None and self._lfo.running else None
        self.notes.append(
            NoteEvent(
                frequencies=tuple(frequencies[:MAX_POLYPHONY]),
                duration=duration,
                at=at,
                snapshot=self._snapshot(),
                lfo=lfo,
            )
        )

    def release_all(self) -> None:
        _LOGGER.debug("%s: released %d notes", self.name, len(self.notes))

    def silence(self) -> None:
        self._gain_db = -math.inf
        self._reverb = (0.0, *self._reverb[1:])
        self._delay = (*self._delay[:4], 0.0)
        if self._lfo is not None:
            self._lfo.stop()
        self.notes.clear()

    def _snapshot(self) -> VoiceSnapshot:
        return VoiceSnapshot(
            gain_db=self._gain_db,
            pan=self._pan,
            filter=self._filter,
            distortion=self._distortion,
            envelope=self._envelope,
            reverb=self._reverb,
            delay=self._delay,
            autopan=self._autopan,
        )

    def render_note(self, note: NoteEvent) -> FloatArray | None:
        """Stereo audio for ``note`` including its effect tails."""
        snap = note.snapshot
        sr = self.sample_rate
        if snap.gain_db == -math.inf and note.lfo is None:
            return None
        remaining = self.horizon - note.at
        if remaining <= 0:
            return None

        attack, decay, sustain, release = snap.envelope
        # Nothing past the end of the render is ever heard.
        voiced = min(note.duration, remaining) + max(release, 0.01)
        mono = np.zeros(int(voiced * sr))
        for frequency in note.frequencies:
            tone = generate_triangle(frequency, voiced, sr, NOTE_AMPLITUDE)
            mono[: len(tone)] += tone[: len(mono)]
        mono = apply_adsr(mono, attack, decay, sustain, release, sr)

        kind, frequency, q = snap.filter
        mono = apply_filter(mono, kind, frequency, q, sr)
        mono = apply_distortion(mono, snap.distortion)

        if note.lfo is not None:
            mono = mono * note.lfo.gain_curve(note.at, len(mono), sr)
        else:
            mono = mono * float(db_to_gain(snap.gain_db))

        wet, dry, reverb_decay, predelay = snap.reverb
        time, feedback, pingpong, width, delay_wet = snap.delay
        tail = reverb_tail_seconds(wet, reverb_decay, predelay)
        if delay_wet > 0:
            tail += delay_tail_seconds(time, feedback)
        mono = np.pad(mono, (0, int(tail * sr)))

        rate, depth = snap.autopan
        pan: float | FloatArray = snap.pan
        if rate > 0 and depth > 0:
            pan = np.clip(snap.pan + autopan_curve(len(mono), rate, depth, sr, note.at), -1, 1)
        stereo = pan_stereo(mono, pan)

        stereo = apply_reverb(stereo, wet, dry, reverb_decay, predelay, sr)
        stereo = apply_delay(stereo, time, feedback, delay_wet, pingpong, width, sr)
        return stereo


class OfflineContext:
    """Fixed-length stereo render target implementing the engine contract."""

    def __init__(
        self,
        duration: float,
        *,
        sample_rate: int = 48_000,
        channels: int = 2,
        master_volume: float = 0.7,
        compressor: CompressorSettings | None = None,
        limiter: LimiterSettings | None = None,
    ) -> None:
        if duration <= 0:
            raise RenderError(f"Render duration must be positive, got {duration}")
        self.duration = duration
        self.sample_rate = sample_rate
        self.channels = channels
        self.master_volume = master_volume
        self.compressor = compressor or CompressorSettings()
        self.limiter = limiter or LimiterSettings()
        self.voices: dict[str, OfflineVoice] = {}
        self.telemetry = DynamicsTelemetry()
        self._samples: dict[str, FloatArray] = {}
        self._sample_events: list[SampleEvent] = []
        self._rendered = False

    @property
    def frames(self) -> int:
        return int(math.ceil(self.duration * self.sample_rate))

    @property
    def samples(self) -> Mapping[str, FloatArray]:
        return MappingProxyType(self._samples)

    # Engine contract --------------------------------------------------------------

    def create_voice(self, name: str, mode: ChainMode) -> OfflineVoice:
        if self._rendered:
            raise EngineSetupError("Offline context has already been rendered")
        if mode not in CHAIN_MODES:
            raise EngineSetupError(f"Unknown chain mode: {mode}")
        voice = OfflineVoice(name, mode, self.sample_rate, horizon=self.duration)
        self.voices[name] = voice
        return voice

    def add_sample(self, name: str, data: FloatArray) -> None:
        """Register a sample already at this context's sample rate."""
        array = np.asarray(data, dtype=np.float64)
        if array.ndim == 1:
            array = np.stack((array, array), axis=-1)
        if array.ndim != 2 or array.shape[1] not in (1, 2):
            raise InvalidAudioError(f"Sample '{name}' must be mono or stereo")
        if array.shape[1] == 1:
            array = np.repeat(array, 2, axis=1)
        self._samples[name] = array

    def has_sample(self, name: str) -> bool:
        return name in self._samples

    def play_sample(self, name: str, gain_db: float, at: float) -> None:
        if name not in self._samples:
            raise KeyError(name)
        self._sample_events.append(SampleEvent(name=name, gain_db=gain_db, at=at))

    def stop_samples(self) -> None:
        self._sample_events.clear()

    # Rendering ------------------------------------------------------------------------

    def render(self) -> RenderedBuffer:
        if self._rendered:
            raise RenderError("Offline context can only be rendered once")
        self._rendered = True
        frames = self.frames
        sr = self.sample_rate
        buses = {mode: np.zeros((frames, 2)) for mode in CHAIN_MODES}

        note_count = 0
        for voice in self.voices.values():
            for note in voice.notes:
                audio = voice.render_note(note)
                if audio is None:
                    continue
                add_note(buses[voice.mode], audio, int(round(note.at * sr)), sr)
                note_count += 1

        for event in self._sample_events:
            if event.gain_db == -math.inf:
                continue
            audio = self._samples[event.name] * float(db_to_gain(event.gain_db))
            add_note(buses["full"], audio, int(round(event.at * sr)), sr)

        master = float(self.master_volume)
        chain = buses["full"] * master
        comp = self.compressor.effective()
        compressed = compress(chain, comp.threshold, comp.ratio, comp.attack, comp.release, sr)
        lim = self.limiter.effective()
        limited = limit(compressed.signal, lim.threshold, lim.release, sr)
        self.telemetry = DynamicsTelemetry(
            compressor_reduction=abs(compressed.last_reduction_db),
            limiter_reduction=abs(limited.last_reduction_db),
            peak_compressor_reduction=abs(compressed.max_reduction_db),
            peak_limiter_reduction=abs(limited.max_reduction_db),
        )

        mix = limited.signal + buses["direct"] * master + buses["raw"]
        mix = np.clip(mix, -1.0, 1.0)
        if self.channels == 1:
            mix = mix.mean(axis=1)
        _LOGGER.info(
            "Rendered %d notes and %d samples into %.1fs of audio",
            note_count,
            len(self._sample_events),
            frames / sr,
        )
        return RenderedBuffer(samples=mix.astype(np.float32), sample_rate=sr)
