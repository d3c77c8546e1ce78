import numpy as np
import pytest

from soundscript import playback
from soundscript.errors import PlaybackError
from soundscript.offline import RenderedBuffer
from soundscript.playback import PlaybackBackend, PlaybackHandle, play_buffer, to_playback_buffer


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _backend(calls: list[str]) -> PlaybackBackend:
    return PlaybackBackend(
        name="stub",
        start=lambda samples, rate: calls.append("start"),
        stop=lambda: calls.append("stop"),
        wait=lambda: calls.append("wait"),
    )


def _tone(seconds: float = 1.0, sr: int = 8_000) -> np.ndarray:
    t = np.arange(int(seconds * sr)) / sr
    mono = 0.5 * np.sin(2 * np.pi * 1_000 * t)
    return np.stack((mono, mono), axis=1).astype(np.float32)


def test_playback_buffer_is_resampled() -> None:
    buffer = RenderedBuffer(samples=np.zeros(800, dtype=np.float32), sample_rate=8_000)
    data = to_playback_buffer(buffer, 16_000)

    assert data.shape == (1600, 1)
    assert data.dtype == np.float32
    assert data.flags.c_contiguous


def test_handle_tracks_position() -> None:
    calls: list[str] = []
    clock = FakeClock()
    handle = PlaybackHandle(_tone(), 8_000, _backend(calls), clock=clock)

    assert not handle.playing
    assert not handle.waveform(64).any()
    handle.start()
    clock.now = 0.25
    assert handle.position == pytest.approx(0.25)
    assert handle.playing
    clock.now = 5.0
    assert handle.position == pytest.approx(1.0)
    assert not handle.playing


def test_analysers_read_at_the_playhead() -> None:
    clock = FakeClock()
    handle = PlaybackHandle(_tone(), 8_000, _backend([]), clock=clock)
    handle.start()
    clock.now = 0.5

    assert handle.waveform(128).shape == (128,)
    spectrum = handle.spectrum(256)
    assert spectrum.shape == (256,)
    # 1 kHz sits in bin 1000 / (8000 / 512)
    assert int(np.argmax(spectrum)) == 64


def test_stop_is_idempotent() -> None:
    calls: list[str] = []
    handle = PlaybackHandle(_tone(), 8_000, _backend(calls))
    handle.start()
    handle.stop()
    handle.stop()
    handle.wait()

    assert calls == ["start", "stop", "wait"]
    assert np.isneginf(handle.spectrum(16)).all()


def test_play_buffer_starts_immediately() -> None:
    calls: list[str] = []
    buffer = RenderedBuffer(samples=_tone(), sample_rate=8_000)
    handle = play_buffer(buffer, sample_rate=8_000, backend=_backend(calls))

    assert calls == ["start"]
    assert handle.duration == pytest.approx(1.0)


def test_missing_backends_raise(monkeypatch) -> None:
    monkeypatch.setattr(playback, "_load_backend", lambda: None)
    buffer = RenderedBuffer(samples=_tone(), sample_rate=8_000)
    with pytest.raises(PlaybackError):
        play_buffer(buffer, sample_rate=8_000)
