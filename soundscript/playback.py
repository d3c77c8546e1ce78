from __future__ import annotations

import logging
import time
from typing import Any, Callable

import numpy as np
from numpy.typing import NDArray
from pydantic import BaseModel, ConfigDict

from .errors import PlaybackError
from .offline import RenderedBuffer
from .samples import resample
from .synth import FloatArray

_LOGGER = logging.getLogger("soundscript.playback")

ANALYSER_SIZE = 1024


class PlaybackBackend(BaseModel):
    name: str
    start: Callable[[NDArray[np.float32], int], None]
    stop: Callable[[], None]
    wait: Callable[[], None]

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        arbitrary_types_allowed=True,
    )


def _load_backend() -> PlaybackBackend | None:
    return _load_sounddevice() or _load_simpleaudio()


def _resolve_backend() -> PlaybackBackend:
    backend = _load_backend()
    if backend is None:
        raise PlaybackError(
            "Playback requires sounddevice or simpleaudio. "
            "Install one of them (or export a WAV file instead)."
        )
    return backend


def to_playback_buffer(buffer: RenderedBuffer, sample_rate: int) -> NDArray[np.float32]:
    """Channel data resampled to the real-time rate, shaped ``(frames, channels)``."""
    data = np.asarray(buffer.samples, dtype=np.float64)
    if data.ndim == 1:
        data = data[:, None]
    converted = resample(data, buffer.sample_rate, sample_rate)
    return np.ascontiguousarray(np.clip(converted, -1.0, 1.0), dtype=np.float32)


class PlaybackHandle:
    """A buffer being played, with waveform and spectrum taps for visualizers."""

    def __init__(
        self,
        samples: NDArray[np.float32],
        sample_rate: int,
        backend: PlaybackBackend,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.samples = samples
        self.sample_rate = sample_rate
        self.backend = backend
        self._clock = clock
        self._started: float | None = None
        self._stopped = False

    @property
    def duration(self) -> float:
        return len(self.samples) / self.sample_rate

    @property
    def position(self) -> float:
        if self._started is None:
            return 0.0
        return min(self._clock() - self._started, self.duration)

    @property
    def playing(self) -> bool:
        return self._started is not None and not self._stopped and self.position < self.duration

    def start(self) -> None:
        self.backend.start(self.samples, self.sample_rate)
        self._started = self._clock()
        _LOGGER.info("Playing %.1fs buffer via %s", self.duration, self.backend.name)

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        self.backend.stop()

    def wait(self) -> None:
        self.backend.wait()

    def _window(self, size: int) -> FloatArray:
        frame = int(self.position * self.sample_rate)
        mono = self.samples[frame : frame + size].mean(axis=1).astype(np.float64)
        if len(mono) < size:
            mono = np.pad(mono, (0, size - len(mono)))
        return mono

    def waveform(self, size: int = ANALYSER_SIZE) -> FloatArray:
        """Time-domain samples at the playhead."""
        if not self.playing:
            return np.zeros(size)
        return self._window(size)

    def spectrum(self, size: int = ANALYSER_SIZE) -> FloatArray:
        """Magnitude spectrum in dB at the playhead, ``size`` bins."""
        if not self.playing:
            return np.full(size, -np.inf)
        window = self._window(size * 2) * np.hanning(size * 2)
        magnitude = np.abs(np.fft.rfft(window))[:size] / size
        return 20 * np.log10(np.maximum(magnitude, 1e-12))


def play_buffer(
    buffer: RenderedBuffer,
    *,
    sample_rate: int,
    backend: PlaybackBackend | None = None,
) -> PlaybackHandle:
    handle = PlaybackHandle(
        to_playback_buffer(buffer, sample_rate),
        sample_rate,
        backend or _resolve_backend(),
    )
    handle.start()
    return handle


def _load_sounddevice() -> PlaybackBackend | None:
    try:
        import sounddevice as sd_module  # type: ignore[import]
    except (ImportError, OSError) as exc:
        _LOGGER.info("sounddevice not available: %s", exc, exc_info=True)
        return None
    sd: Any = sd_module

    def _start(samples: NDArray[np.float32], sample_rate: int) -> None:
        sd.play(samples, sample_rate)

    return PlaybackBackend(
        name="sounddevice",
        start=_start,
        stop=sd.stop,
        wait=sd.wait,
    )


def _load_simpleaudio() -> PlaybackBackend | None:
    try:
        import simpleaudio as sa_module  # type: ignore[import]
    except ImportError as exc:
        _LOGGER.info("simpleaudio not available: %s", exc, exc_info=True)
        return None
    sa: Any = sa_module
    current: list[Any] = []

    def _start(samples: NDArray[np.float32], sample_rate: int) -> None:
        audio = (np.clip(samples, -1.0, 1.0) * 32_767).astype(np.int16)
        channels = 1 if audio.ndim == 1 else audio.shape[1]
        current[:] = [sa.play_buffer(np.ascontiguousarray(audio), channels, 2, sample_rate)]

    def _stop() -> None:
        for play in current:
            play.stop()

    def _wait() -> None:
        for play in current:
            play.wait_done()

    return PlaybackBackend(
        name="simpleaudio",
        start=_start,
        stop=_stop,
        wait=_wait,
    )
