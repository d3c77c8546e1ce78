"""Two-phase pipeline: render the whole script offline, then play the buffer.

Synthesizing in real time drops out under load, so a performance is computed
once into a fixed buffer sized from the duration estimate and the buffer is
what actually plays.
"""

from __future__ import annotations

import logging
from pathlib import Path
from types import MappingProxyType
from typing import Callable

import numpy as np

from .config import CompressorSettings, LimiterSettings, SessionConfig
from .engine import AudioEngine
from .errors import EngineSetupError, RenderError, ScriptError, SoundScriptError
from .estimator import estimate_duration
from .offline import DynamicsTelemetry, OfflineContext, RenderedBuffer
from .parser import MAIN_BLOCK, BlockMap, parse_script
from .playback import PlaybackBackend, PlaybackHandle, play_buffer
from .samples import load_sample_directory, resample
from .scheduler import Scheduler
from .session import SessionState
from .synth import FloatArray
from .timing import Clock, RealtimeClock, VirtualClock
from .wav import write_wav

_LOGGER = logging.getLogger("soundscript.orchestrator")

RENDER_HEADROOM = 1.2
RENDER_PADDING_SECONDS = 3.0
MIN_RENDER_SECONDS = 10.0

ContextFactory = Callable[[float, SessionConfig], OfflineContext]


def render_length(estimate: float) -> float:
    return max(estimate * RENDER_HEADROOM + RENDER_PADDING_SECONDS, MIN_RENDER_SECONDS)


def _default_context(duration: float, config: SessionConfig) -> OfflineContext:
    return OfflineContext(
        duration,
        sample_rate=config.render_sample_rate,
        channels=config.channels,
        master_volume=config.master_volume,
        compressor=config.compressor,
        limiter=config.limiter,
    )


class SoundScript:
    def __init__(
        self,
        config: SessionConfig | None = None,
        *,
        backend: PlaybackBackend | None = None,
        context_factory: ContextFactory = _default_context,
    ) -> None:
        self.config = config or SessionConfig()
        self.blocks: BlockMap = MappingProxyType({})
        self.rendered: RenderedBuffer | None = None
        self.playback: PlaybackHandle | None = None
        self.telemetry = DynamicsTelemetry()
        self._backend = backend
        self._context_factory = context_factory
        self._samples: dict[str, FloatArray] = {}
        self._active: Scheduler | None = None
        self._live: Scheduler | None = None

    # Script -------------------------------------------------------------------------

    def parse(self, code: str) -> BlockMap:
        self.blocks = parse_script(code)
        return self.blocks

    def estimate_duration(self) -> float:
        return estimate_duration(self.blocks, self.config.bpm)

    @property
    def session(self) -> SessionState | None:
        """Counters of the render or live run in progress, if any."""
        return self._active.session if self._active is not None else None

    # Samples ------------------------------------------------------------------------

    @property
    def sample_names(self) -> tuple[str, ...]:
        return tuple(sorted(self._samples))

    def add_sample(self, name: str, data: FloatArray, sample_rate: int) -> None:
        array = np.asarray(data, dtype=np.float64)
        self._samples[name] = resample(array, sample_rate, self.config.render_sample_rate)
        _LOGGER.info("Sample '%s' loaded", name)

    def load_samples(self, directory: str | Path) -> int:
        loaded = load_sample_directory(
            directory, self.config.render_sample_rate, existing=self._samples
        )
        self._samples.update(loaded)
        return len(loaded)

    # Master bus -----------------------------------------------------------------------

    def set_compressor(
        self,
        threshold: float,
        ratio: float,
        attack: float,
        release: float,
        enabled: bool = True,
    ) -> None:
        settings = CompressorSettings(
            threshold=threshold, ratio=ratio, attack=attack, release=release, enabled=enabled
        )
        self.config = self.config.model_copy(update={"compressor": settings})
        _LOGGER.info(
            "Compressor set: threshold=%sdB, ratio=%s:1, attack=%ss, release=%ss, enabled=%s",
            threshold,
            ratio,
            attack,
            release,
            enabled,
        )

    def set_limiter(self, threshold: float, release: float, enabled: bool = True) -> None:
        settings = LimiterSettings(threshold=threshold, release=release, enabled=enabled)
        self.config = self.config.model_copy(update={"limiter": settings})
        _LOGGER.info("Limiter set: threshold=%sdB, release=%ss, enabled=%s", threshold, release, enabled)

    @property
    def compressor_reduction(self) -> float:
        return self.telemetry.compressor_reduction

    @property
    def limiter_reduction(self) -> float:
        return self.telemetry.limiter_reduction

    # Rendering ------------------------------------------------------------------------

    async def render(self) -> RenderedBuffer:
        """Run ``main`` against a fresh offline context sized from the estimate."""
        if MAIN_BLOCK not in self.blocks:
            raise ScriptError("No main block found in script")

        duration = render_length(self.estimate_duration())
        _LOGGER.info("Pre-rendering script to audio buffer (%.1fs)...", duration)
        clock: Clock = RealtimeClock() if self.config.realtime_render else VirtualClock()

        try:
            context = self._context_factory(duration, self.config)
            for name, data in self._samples.items():
                context.add_sample(name, data)
            scheduler = Scheduler(
                self.blocks,
                context,
                SessionState(self.config.bpm),
                clock=clock,
                config=self.config,
            )
            self._active = scheduler
            try:
                end = await scheduler.run_main()
            except BaseException:
                scheduler.force_stop()
                raise
            if end > duration:
                _LOGGER.warning(
                    "Performance ran %.1fs but the buffer holds %.1fs; the end is cut off",
                    end,
                    duration,
                )
            buffer = context.render()
        except (EngineSetupError, ScriptError, RenderError):
            raise
        except SoundScriptError as exc:
            raise RenderError(f"Render failed: {exc}") from exc
        except (ValueError, RuntimeError, OverflowError, MemoryError) as exc:
            raise RenderError(f"Render failed: {exc}") from exc
        finally:
            self._active = None

        self.rendered = buffer
        self.telemetry = context.telemetry
        _LOGGER.info("Rendering complete - %.1fs audio generated", buffer.duration)
        return buffer

    def play_rendered(self) -> PlaybackHandle:
        if self.rendered is None:
            raise RenderError("No rendered buffer available; call render() first")
        if self.playback is not None:
            self.playback.stop()
        self.playback = play_buffer(
            self.rendered,
            sample_rate=self.config.playback_sample_rate,
            backend=self._backend,
        )
        return self.playback

    async def perform(self, code: str) -> PlaybackHandle:
        self.parse(code)
        await self.render()
        return self.play_rendered()

    async def play_live(self, engine: AudioEngine, *, clock: Clock | None = None) -> float:
        """Drive ``main`` in real time against an external engine.

        Voices persist between calls on the same engine and are normalized
        before each replay.
        """
        if MAIN_BLOCK not in self.blocks:
            raise ScriptError("No main block found in script")
        live = self._live
        if live is None or live.engine is not engine or live.blocks is not self.blocks:
            live = Scheduler(
                self.blocks,
                engine,
                SessionState(self.config.bpm),
                clock=clock or RealtimeClock(),
                config=self.config,
            )
            self._live = live
        self._active = live
        try:
            return await live.replay()
        finally:
            self._active = None

    # Control ---------------------------------------------------------------------------

    def stop(self) -> None:
        if self._active is not None:
            self._active.stop()
        if self.playback is not None:
            self.playback.stop()

    def force_stop(self) -> None:
        if self._active is not None:
            self._active.force_stop()
        if self.playback is not None:
            self.playback.stop()
        _LOGGER.info("Playback force stopped")

    def export_wav(self, path: str | Path, *, float32: bool = False) -> Path:
        if self.rendered is None:
            raise RenderError("No rendered buffer available; call render() first")
        return write_wav(path, self.rendered, float32=float32)
