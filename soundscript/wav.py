from __future__ import annotations

import logging
import struct
from pathlib import Path

import numpy as np

from .errors import InvalidAudioError
from .offline import RenderedBuffer

_LOGGER = logging.getLogger("soundscript.wav")

HEADER_SIZE = 44
_HEADER = struct.Struct("<4sI4s4sIHHIIHH4sI")
FORMAT_PCM = 1
FORMAT_IEEE_FLOAT = 3


def _as_frames(samples: np.ndarray) -> np.ndarray:
    array = np.asarray(samples)
    if array.ndim == 1:
        array = array[:, None]
    if array.ndim != 2:
        raise InvalidAudioError("Audio must be a 1-D or (frames, channels) array")
    if array.shape[1] not in (1, 2):
        raise InvalidAudioError(f"Only mono or stereo audio is supported, got {array.shape[1]} channels")
    return array


def encode_wav(samples: np.ndarray, sample_rate: int, *, float32: bool = False) -> bytes:
    """Canonical 44-byte-header WAV: 16-bit PCM, or 32-bit IEEE float when ``float32``."""
    frames = _as_frames(samples)
    channels = int(frames.shape[1])
    clipped = np.clip(frames.astype(np.float64), -1.0, 1.0)

    if float32:
        audio_format, bit_depth = FORMAT_IEEE_FLOAT, 32
        payload = clipped.astype("<f4").tobytes()
    else:
        audio_format, bit_depth = FORMAT_PCM, 16
        scaled = np.where(clipped < 0, clipped * 0x8000, clipped * 0x7FFF)
        payload = np.trunc(scaled).astype("<i2").tobytes()

    block_align = channels * bit_depth // 8
    header = _HEADER.pack(
        b"RIFF",
        36 + len(payload),
        b"WAVE",
        b"fmt ",
        16,
        audio_format,
        channels,
        sample_rate,
        sample_rate * block_align,
        block_align,
        bit_depth,
        b"data",
        len(payload),
    )
    return header + payload


def write_wav(
    path: str | Path,
    buffer: RenderedBuffer,
    *,
    float32: bool = False,
) -> Path:
    target = Path(path)
    target.write_bytes(encode_wav(buffer.samples, buffer.sample_rate, float32=float32))
    _LOGGER.info("Exported %.1fs of audio to %s", buffer.duration, target)
    return target
