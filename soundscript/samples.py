from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from math import gcd
from pathlib import Path

import numpy as np
import soundfile as sf  # type: ignore[import]
from scipy.signal import resample_poly  # type: ignore[import]

from .errors import InvalidAudioError
from .synth import FloatArray

_LOGGER = logging.getLogger("soundscript.samples")

SAMPLE_EXTENSIONS = (".wav", ".mp3", ".flac", ".ogg", ".aiff")


def sample_name(path: str | Path) -> str:
    """Scripts refer to a sample by its file name without the extension."""
    return Path(path).stem


def resample(data: FloatArray, source_rate: int, target_rate: int) -> FloatArray:
    if source_rate == target_rate:
        return data
    divisor = gcd(source_rate, target_rate)
    resampled = resample_poly(data, target_rate // divisor, source_rate // divisor, axis=0)
    return np.asarray(resampled, dtype=np.float64)


def load_sample(path: str | Path, target_rate: int) -> FloatArray:
    """Decode ``path`` to a ``(frames, channels)`` array at ``target_rate``."""
    try:
        data, source_rate = sf.read(str(path), dtype="float64", always_2d=True)
    except (RuntimeError, OSError) as exc:
        raise InvalidAudioError(f"Failed to load sample: {path}") from exc
    if data.shape[1] > 2:
        data = data[:, :2]
    return resample(np.asarray(data), int(source_rate), target_rate)


def iter_sample_files(directory: str | Path) -> Iterator[Path]:
    root = Path(directory)
    for path in sorted(root.rglob("*")):
        if path.is_file() and path.suffix.lower() in SAMPLE_EXTENSIONS:
            yield path


def load_sample_directory(
    directory: str | Path,
    target_rate: int,
    *,
    existing: Mapping[str, object] | None = None,
) -> dict[str, FloatArray]:
    """Load every sample under ``directory``; failures are logged and skipped."""
    files = list(iter_sample_files(directory))
    _LOGGER.info("Found %d samples to preload", len(files))
    loaded: dict[str, FloatArray] = {}
    known = existing or {}
    for path in files:
        name = sample_name(path)
        if name in known or name in loaded:
            _LOGGER.info("Sample %s already loaded", name)
            continue
        try:
            loaded[name] = load_sample(path, target_rate)
        except InvalidAudioError as exc:
            _LOGGER.error("%s", exc)
            continue
        _LOGGER.info("Loaded sample: %s (%d/%d)", name, len(loaded), len(files))
    return loaded
