import numpy as np
import pytest
import soundfile as sf

from soundscript.config import SessionConfig
from soundscript.errors import EngineSetupError, RenderError, ScriptError
from soundscript.offline import OfflineContext
from soundscript.orchestrator import SoundScript, render_length
from soundscript.playback import PlaybackBackend
from soundscript.timing import VirtualClock
from stubs import RecordingEngine

SR = 8_000
SCRIPT = """
bass:
    tone c4 0.5b
    wait 0.5b
end bass

main:
    bpm 120
    play bass
    waitforfinish
end main
"""


class StubBackend:
    def __init__(self) -> None:
        self.started: list[tuple[np.ndarray, int]] = []
        self.stops = 0
        self.waits = 0

    def model(self) -> PlaybackBackend:
        return PlaybackBackend(name="stub", start=self.start, stop=self.stop, wait=self.wait)

    def start(self, samples: np.ndarray, sample_rate: int) -> None:
        self.started.append((samples, sample_rate))

    def stop(self) -> None:
        self.stops += 1

    def wait(self) -> None:
        self.waits += 1


def _config(**kwargs) -> SessionConfig:
    return SessionConfig(render_sample_rate=SR, playback_sample_rate=SR, **kwargs)


def _engine(code: str = SCRIPT, **kwargs) -> SoundScript:
    engine = SoundScript(_config(), **kwargs)
    engine.parse(code)
    return engine


def test_render_length_has_headroom_and_a_floor() -> None:
    assert render_length(2.75) == 10.0
    assert render_length(20.0) == pytest.approx(27.0)


@pytest.mark.asyncio
async def test_render_produces_audio_of_estimated_length() -> None:
    engine = _engine()
    buffer = await engine.render()

    assert engine.estimate_duration() == pytest.approx(10.0)
    assert buffer.sample_rate == SR
    assert buffer.duration == pytest.approx(15.0)
    assert buffer.samples.shape == (15 * SR, 2)
    assert np.abs(buffer.samples[: SR // 2]).max() > 0.01
    assert engine.rendered is buffer
    assert engine.session is None


@pytest.mark.asyncio
async def test_render_without_main_fails() -> None:
    engine = _engine("bass:\ntone c4 1\nend bass")
    with pytest.raises(ScriptError, match="No main block"):
        await engine.render()


@pytest.mark.asyncio
async def test_unexpected_failures_become_render_errors() -> None:
    def broken(duration: float, config: SessionConfig) -> OfflineContext:
        raise MemoryError("buffer too large")

    engine = _engine(context_factory=broken)
    with pytest.raises(RenderError) as info:
        await engine.render()
    assert isinstance(info.value.__cause__, MemoryError)


@pytest.mark.asyncio
async def test_engine_setup_failure_passes_through_and_keeps_previous_buffer() -> None:
    engine = _engine()
    previous = await engine.render()

    def no_voices(duration: float, config: SessionConfig) -> OfflineContext:
        context = OfflineContext(duration, sample_rate=config.render_sample_rate)

        def create_voice(name, mode):
            raise RuntimeError("no output")

        context.create_voice = create_voice  # type: ignore[method-assign]
        return context

    engine._context_factory = no_voices
    with pytest.raises(EngineSetupError):
        await engine.render()
    assert engine.rendered is previous


@pytest.mark.asyncio
async def test_export_wav(tmp_path) -> None:
    engine = _engine()
    with pytest.raises(RenderError):
        engine.export_wav(tmp_path / "early.wav")

    await engine.render()
    path = engine.export_wav(tmp_path / "out.wav", float32=True)
    info = sf.info(str(path))
    assert info.samplerate == SR
    assert info.channels == 2
    assert info.subtype == "FLOAT"


@pytest.mark.asyncio
async def test_perform_plays_the_rendered_buffer() -> None:
    stub = StubBackend()
    engine = SoundScript(_config(), backend=stub.model())
    handle = await engine.perform(SCRIPT)

    samples, rate = stub.started[0]
    assert rate == SR
    assert samples.dtype == np.float32
    assert handle.duration == pytest.approx(15.0)

    engine.play_rendered()
    assert stub.stops == 1
    engine.stop()
    assert stub.stops == 2


def test_play_before_render_fails() -> None:
    with pytest.raises(RenderError):
        _engine().play_rendered()


@pytest.mark.asyncio
async def test_master_bus_settings() -> None:
    engine = _engine()
    engine.set_compressor(-30.0, 8.0, 0.001, 0.1)
    engine.set_limiter(-3.0, 0.05, enabled=False)

    assert engine.config.compressor.ratio == 8.0
    assert not engine.config.limiter.enabled
    await engine.render()
    assert engine.compressor_reduction >= 0
    assert engine.limiter_reduction == 0


@pytest.mark.asyncio
async def test_samples_are_resampled_and_rendered() -> None:
    engine = _engine("main:\nsample click\nend main")
    engine.add_sample("click", np.full(400, 0.5), 16_000)

    assert engine.sample_names == ("click",)
    assert engine._samples["click"].shape == (200,)
    buffer = await engine.render()
    assert np.abs(buffer.samples[:100]).max() > 0.05


def test_load_samples_counts_new_files(tmp_path) -> None:
    sf.write(str(tmp_path / "kick.wav"), np.zeros(100, dtype=np.float32), SR)
    sf.write(str(tmp_path / "snare.wav"), np.zeros(100, dtype=np.float32), SR)
    engine = _engine()

    assert engine.load_samples(tmp_path) == 2
    assert engine.load_samples(tmp_path) == 0
    assert engine.sample_names == ("kick", "snare")


@pytest.mark.asyncio
async def test_play_live_reuses_voices_and_normalizes() -> None:
    engine = _engine()
    target = RecordingEngine()

    await engine.play_live(target, clock=VirtualClock())
    voice = target.voices["bass"]
    await engine.play_live(target, clock=VirtualClock())

    assert target.voices["bass"] is voice
    assert len(voice.notes) == 2
    assert engine._live is not None
    assert engine._live.states["bass"].volume == 85


@pytest.mark.asyncio
async def test_play_live_requires_main() -> None:
    engine = _engine("bass:\ntone c4 1\nend bass")
    with pytest.raises(ScriptError):
        await engine.play_live(RecordingEngine())


def test_stop_without_activity_is_harmless() -> None:
    engine = _engine()
    engine.stop()
    engine.force_stop()
    assert engine.session is None


@pytest.mark.asyncio
async def test_overflowing_numbers_do_not_break_the_render() -> None:
    engine = _engine("a:\nwait 1e999\ntone c4 1e999\nend a\nmain:\nplay a\nend main")

    assert engine.estimate_duration() == pytest.approx(10.0)
    buffer = await engine.render()
    assert buffer.duration == pytest.approx(15.0)
    assert np.abs(buffer.samples[: SR // 2]).max() > 0.01


@pytest.mark.asyncio
async def test_overflow_during_render_becomes_render_error() -> None:
    def broken(duration: float, config: SessionConfig) -> OfflineContext:
        raise OverflowError("cannot convert float infinity to integer")

    engine = _engine(context_factory=broken)
    with pytest.raises(RenderError) as info:
        await engine.render()
    assert isinstance(info.value.__cause__, OverflowError)


@pytest.mark.asyncio
async def test_script_tempo_change_that_outruns_the_buffer_is_reported(caplog) -> None:
    engine = _engine("main:\nbpm 30\nwait 16\nend main")
    with caplog.at_level("WARNING", logger="soundscript.orchestrator"):
        buffer = await engine.render()

    assert buffer.duration < 32.0
    assert "the end is cut off" in caplog.text


@pytest.mark.asyncio
async def test_performance_inside_the_buffer_is_not_reported(caplog) -> None:
    with caplog.at_level("WARNING", logger="soundscript.orchestrator"):
        await _engine().render()
    assert "cut off" not in caplog.text
