# pyright: reportUnknownVariableType=false
# pyright: reportUnknownParameterType=false
# pyright: reportUnknownMemberType=false
# pyright: reportUnknownArgumentType=false

"""
DSP primitives used by the offline render context.

1. Notes: note names and numeric Hz to frequency
2. Primitives: oscillator, envelope, filters, distortion, pan
3. Effects: ping-pong delay, convolution reverb, gain LFO
4. Dynamics: block-based compressor and limiter with reduction telemetry
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from functools import lru_cache
from types import MappingProxyType
from typing import TypeAlias

import numpy as np
from numpy.typing import NDArray
from scipy.signal import butter, fftconvolve, lfilter  # type: ignore[import]

from .timing import parse_number

# =============================================================================
# CONSTANTS
# =============================================================================

SAMPLE_RATE = 48_000
A4_FREQUENCY = 440.0
A4_MIDI = 69

FloatArray: TypeAlias = NDArray[np.float64]

NOTE_SEMITONES: Mapping[str, int] = MappingProxyType(
    {"c": 0, "d": 2, "e": 4, "f": 5, "g": 7, "a": 9, "b": 11}
)
ACCIDENTALS: Mapping[str, int] = MappingProxyType({"": 0, "#": 1, "b": -1})
FILTER_KINDS: Mapping[str, str] = MappingProxyType(
    {"lowpass": "low", "highpass": "high", "bandpass": "band"}
)

_NOTE_NAME = re.compile(r"^([a-gA-G])(#|b)?(-?\d+)$")
_DELAY_TAPS = 8
_REVERB_SEED = 0x5EED


# =============================================================================
# PART 1: NOTES
# =============================================================================


def note_to_frequency(token: str) -> float:
    """Frequency in Hz for ``c4``/``G#5``/``Bb3`` style names or a numeric token."""
    match = _NOTE_NAME.match(token.strip())
    if match is None:
        value = parse_number(token)
        if value is None or value <= 0:
            raise ValueError(f"Invalid note: {token}")
        return value
    letter, accidental, octave = match.groups()
    semitone = NOTE_SEMITONES[letter.lower()] + ACCIDENTALS[accidental or ""]
    midi = (int(octave) + 1) * 12 + semitone
    return A4_FREQUENCY * 2 ** ((midi - A4_MIDI) / 12)


# =============================================================================
# PART 2: PRIMITIVES
# =============================================================================


def generate_triangle(
    freq: float, duration: float, sr: int = SAMPLE_RATE, amp: float = 0.3
) -> FloatArray:
    """Generate triangle wave."""
    t = np.linspace(0, duration, int(sr * duration), False)
    return amp * 2 * np.abs(2 * (t * freq - np.floor(t * freq + 0.5))) - amp


def apply_adsr(
    signal: FloatArray,
    attack: float,
    decay: float,
    sustain: float,
    release: float,
    sr: int = SAMPLE_RATE,
) -> FloatArray:
    """Apply ADSR envelope; the release segment occupies the end of ``signal``."""
    # Minimum times to prevent clicks (5ms attack, 10ms release)
    attack = max(attack, 0.005)
    release = max(release, 0.01)
    sustain = float(np.clip(sustain, 0.0, 1.0))

    total = len(signal)
    a_samples = int(attack * sr)
    d_samples = int(decay * sr)
    r_samples = int(release * sr)
    s_samples = max(0, total - a_samples - d_samples - r_samples)

    envelope = np.concatenate(
        (
            np.linspace(0, 1, max(1, a_samples)),
            np.linspace(1, sustain, max(1, d_samples)),
            np.ones(max(1, s_samples)) * sustain,
            np.linspace(sustain, 0, max(1, r_samples)),
        )
    )

    if len(envelope) < total:
        envelope = np.pad(envelope, (0, total - len(envelope)))
    else:
        envelope = envelope[:total]

    return signal * envelope


def _quantize(value: float, step: float = 0.001) -> float:
    return round(value / step) * step


@lru_cache(maxsize=512)
def _butter_cached(
    kind: str, normalized_cutoff: float | tuple[float, float]
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    coeffs = butter(2, normalized_cutoff, btype=kind, output="ba")
    assert isinstance(coeffs, tuple)
    assert len(coeffs) == 2
    b_raw, a_raw = coeffs
    assert isinstance(b_raw, np.ndarray)
    assert isinstance(a_raw, np.ndarray)
    return b_raw, a_raw


def apply_filter(
    signal: FloatArray, kind: str, frequency: float, q: float = 1.0, sr: int = SAMPLE_RATE
) -> FloatArray:
    """Apply a lowpass, highpass or bandpass filter along the first axis."""
    btype = FILTER_KINDS.get(kind.lower())
    if btype is None:
        raise ValueError(f"Unknown filter type: {kind}")
    nyquist = sr / 2
    normalized = min(max(frequency / nyquist, 0.001), 0.99)
    if btype == "low" and normalized >= 0.99:
        return signal
    if btype == "band":
        half_width = normalized / max(q, 0.1) / 2
        low = min(max(normalized - half_width, 0.001), 0.98)
        high = min(max(normalized + half_width, low + 0.001), 0.99)
        b, a = _butter_cached(btype, (_quantize(low), _quantize(high)))
    else:
        b, a = _butter_cached(btype, _quantize(normalized))
    filtered = lfilter(b, a, signal, axis=0)
    return np.asarray(filtered, dtype=np.float64)


def apply_distortion(signal: FloatArray, amount: float) -> FloatArray:
    """tanh waveshaper; ``amount`` (0-1) is both drive and wet level."""
    wet = float(np.clip(amount, 0.0, 1.0))
    if wet <= 0.0:
        return signal
    drive = 1.0 + min(amount * 10.0, 100.0)
    shaped = np.tanh(signal * drive) / np.tanh(drive)
    return signal * (1.0 - wet) + shaped * wet


def pan_stereo(mono: FloatArray, pan: float | FloatArray) -> FloatArray:
    """Equal-power pan of a mono signal into an ``(n, 2)`` array."""
    position = np.clip(pan, -1.0, 1.0)
    angle = (position + 1.0) * np.pi / 4
    left = mono * np.cos(angle)
    right = mono * np.sin(angle)
    return np.stack((left, right), axis=-1)


def generate_lfo(
    duration: float, rate: float, sr: int = SAMPLE_RATE, phase_offset: float = 0.0
) -> FloatArray:
    """Generate LFO signal (0 to 1 range)."""
    t = np.linspace(0, duration, int(sr * duration), False) + phase_offset
    return 0.5 + 0.5 * np.sin(2 * np.pi * rate * t)


def autopan_curve(
    num_samples: int, rate: float, depth: float, sr: int = SAMPLE_RATE, start: float = 0.0
) -> FloatArray:
    t = np.arange(num_samples) / sr + start
    return float(np.clip(depth, 0.0, 1.0)) * np.sin(2 * np.pi * rate * t)


def db_to_gain(db: float | FloatArray) -> float | FloatArray:
    return np.power(10.0, np.asarray(db) / 20.0)


def add_note(signal: FloatArray, note: FloatArray, start_index: int, sr: int = SAMPLE_RATE) -> None:
    """Safely adds a note to the signal buffer, clipping if necessary."""
    if start_index >= len(signal) or start_index < 0:
        return

    end_index = start_index + len(note)

    if end_index <= len(signal):
        signal[start_index:end_index] += note
    else:
        available = len(signal) - start_index
        clipped = note[:available].copy()

        # Quick fade-out to prevent click from abrupt cutoff
        fade_samples = min(int(sr * 0.01), available // 4)
        if fade_samples > 1:
            ramp = np.linspace(1, 0, fade_samples)
            clipped[-fade_samples:] *= ramp.reshape((-1,) + (1,) * (clipped.ndim - 1))

        signal[start_index:] += clipped


# =============================================================================
# PART 3: EFFECTS
# =============================================================================


def delay_tail_seconds(time: float, feedback: float) -> float:
    if time <= 0:
        return 0.0
    return time * _delay_tap_count(feedback)


def _delay_tap_count(feedback: float) -> int:
    if feedback <= 0:
        return 1
    taps = 1
    while taps < _DELAY_TAPS and feedback**taps > 1e-3:
        taps += 1
    return taps


def apply_delay(
    stereo: FloatArray,
    delay_time: float,
    feedback: float,
    wet: float,
    pingpong: bool = True,
    width: float = 0.5,
    sr: int = SAMPLE_RATE,
) -> FloatArray:
    """Feedback delay on an ``(n, 2)`` signal; ping-pong alternates taps between sides."""
    delay_samples = int(delay_time * sr)
    if delay_samples <= 0 or wet <= 0:
        return stereo
    output = stereo.copy()
    mono = stereo.mean(axis=1)
    spread = float(np.clip(width, 0.0, 1.0))

    for i in range(1, _delay_tap_count(feedback) + 1):
        offset = delay_samples * i
        if offset >= len(stereo):
            break
        level = (feedback ** (i - 1)) * wet
        if pingpong:
            side = 1.0 if i % 2 else -1.0
            left = 0.5 * (1.0 - side * spread)
            right = 0.5 * (1.0 + side * spread)
            output[offset:, 0] += mono[:-offset] * level * left * 2
            output[offset:, 1] += mono[:-offset] * level * right * 2
        else:
            output[offset:] += stereo[:-offset] * level

    return output


@lru_cache(maxsize=32)
def reverb_impulse(decay: float, predelay: float, sr: int = SAMPLE_RATE) -> FloatArray:
    """Stereo noise impulse response decaying 60 dB over ``decay`` seconds."""
    decay = max(decay, 0.05)
    length = int(decay * sr)
    rng = np.random.default_rng(_REVERB_SEED)
    t = np.arange(length) / sr
    envelope = np.exp(-6.9 * t / decay)
    impulse = rng.standard_normal((length, 2)) * envelope[:, None]
    impulse /= np.sqrt(np.sum(impulse**2, axis=0, keepdims=True)) + 1e-12
    pad = int(max(predelay, 0.0) * sr)
    if pad:
        impulse = np.concatenate((np.zeros((pad, 2)), impulse))
    impulse.setflags(write=False)
    return impulse


def apply_reverb(
    stereo: FloatArray,
    wet: float,
    dry: float = 1.0,
    decay: float = 1.5,
    predelay: float = 0.01,
    sr: int = SAMPLE_RATE,
) -> FloatArray:
    """Convolution reverb; output keeps the input length."""
    if wet <= 0:
        return stereo * dry if dry != 1.0 else stereo
    impulse = reverb_impulse(round(decay, 3), round(predelay, 4), sr)
    tail = fftconvolve(stereo, impulse, axes=0)[: len(stereo)]
    return stereo * dry * (1.0 - wet) + tail * wet


def reverb_tail_seconds(wet: float, decay: float, predelay: float) -> float:
    if wet <= 0:
        return 0.0
    return max(decay, 0.05) + max(predelay, 0.0)


# =============================================================================
# PART 4: DYNAMICS
# =============================================================================


@dataclass(frozen=True, slots=True)
class DynamicsResult:
    signal: FloatArray
    max_reduction_db: float
    last_reduction_db: float


def _envelope_db(signal: FloatArray, block: int) -> FloatArray:
    frames = signal if signal.ndim == 1 else np.max(np.abs(signal), axis=1)
    frames = np.abs(frames)
    count = -(-len(frames) // block)
    padded = np.pad(frames, (0, count * block - len(frames)))
    peaks = padded.reshape(count, block).max(axis=1)
    return 20 * np.log10(np.maximum(peaks, 1e-5))


def _smooth(target: FloatArray, attack: float, release: float, block_seconds: float) -> FloatArray:
    attack_coeff = np.exp(-block_seconds / attack) if attack > 0 else 0.0
    release_coeff = np.exp(-block_seconds / release) if release > 0 else 0.0
    smoothed = np.empty_like(target)
    current = 0.0
    for index, value in enumerate(target):
        coeff = attack_coeff if value > current else release_coeff
        current = coeff * current + (1.0 - coeff) * value
        smoothed[index] = current
    return smoothed


def _apply_reduction(signal: FloatArray, reduction_db: FloatArray, block: int) -> FloatArray:
    gains = np.repeat(np.power(10.0, -reduction_db / 20.0), block)[: len(signal)]
    if signal.ndim > 1:
        gains = gains[:, None]
    return signal * gains


def compress(
    signal: FloatArray,
    threshold: float,
    ratio: float,
    attack: float,
    release: float,
    sr: int = SAMPLE_RATE,
    block: int = 256,
) -> DynamicsResult:
    """Downward compressor driven by a block peak detector."""
    if len(signal) == 0 or ratio <= 1.0:
        return DynamicsResult(signal, 0.0, 0.0)
    level = _envelope_db(signal, block)
    over = np.maximum(level - threshold, 0.0)
    target = over * (1.0 - 1.0 / ratio)
    reduction = _smooth(target, attack, release, block / sr)
    return DynamicsResult(
        _apply_reduction(signal, reduction, block),
        float(reduction.max(initial=0.0)),
        float(reduction[-1]),
    )


def limit(
    signal: FloatArray,
    threshold: float,
    release: float,
    sr: int = SAMPLE_RATE,
    block: int = 64,
) -> DynamicsResult:
    """Brickwall limiter: instant attack, smoothed release."""
    if len(signal) == 0:
        return DynamicsResult(signal, 0.0, 0.0)
    level = _envelope_db(signal, block)
    target = np.maximum(level - threshold, 0.0)
    reduction = np.maximum(_smooth(target, 0.0, release, block / sr), target)
    return DynamicsResult(
        _apply_reduction(signal, reduction, block),
        float(reduction.max(initial=0.0)),
        float(reduction[-1]),
    )
