"""Executes blocks as cooperative asyncio tasks.

Every ``play`` spawns one task (a Run) per named block. A Run walks its
block's lines in order; only ``wait``, ``waitsec`` and ``waitforfinish``
suspend it, and ``play`` suspends the caller until the spawned Runs finish.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from .config import SessionConfig
from .engine import CHAIN_MODES, AudioEngine, Voice
from .errors import CommandError, EngineSetupError
from .estimator import is_loop_end
from .parser import MAIN_BLOCK, BlockMap, Command, parse_command
from .session import SessionState
from .state import (
    AutoPanSettings,
    AutoVolumeSettings,
    BlockController,
    DelaySettings,
    DistortionSettings,
    EnvelopeSettings,
    FilterSettings,
    ParameterState,
    ReverbSettings,
    is_effect_type,
    linear_to_db,
)
from .synth import FILTER_KINDS, note_to_frequency
from .timing import (
    Clock,
    VirtualClock,
    beats_to_seconds,
    count_or,
    note_seconds,
    number_or,
    parse_number,
)

_LOGGER = logging.getLogger("soundscript.scheduler")


@dataclass(slots=True)
class LoopFrame:
    total: int
    remaining: int
    return_index: int


@dataclass(slots=True)
class Run:
    name: str
    lines: tuple[str, ...]
    generation: int
    controller: BlockController | None
    position: float = 0.0
    cursor: int = 0
    loops: list[LoopFrame] = field(default_factory=list)


Handler = Callable[[Run, Command], Awaitable[None]]


def _arg(command: Command, index: int) -> str | None:
    return command.args[index] if len(command.args) > index else None


class Scheduler:
    def __init__(
        self,
        blocks: BlockMap,
        engine: AudioEngine,
        session: SessionState | None = None,
        *,
        clock: Clock | None = None,
        config: SessionConfig | None = None,
    ) -> None:
        self.blocks = blocks
        self.engine = engine
        self.config = config or SessionConfig()
        self.session = session or SessionState(self.config.bpm)
        self.clock: Clock = clock or VirtualClock()
        self.states: dict[str, ParameterState] = {}
        self.controllers: dict[str, BlockController] = {}
        self._tasks: set[asyncio.Task[float]] = set()
        self._handlers: Mapping[str, Handler] = MappingProxyType(
            {
                "tone": self._tone,
                "tones": self._tones,
                "wait": self._wait,
                "waitsec": self._waitsec,
                "waitforfinish": self._waitforfinish,
                "play": self._play,
                "volume": self._volume,
                "pan": self._pan,
                "bpm": self._bpm,
                "tempo": self._tempo,
                "reverb": self._reverb,
                "delay": self._delay,
                "filter": self._filter,
                "distortion": self._distortion,
                "envelope": self._envelope,
                "autopan": self._autopan,
                "autovolume": self._autovolume,
                "sample": self._sample,
                "loop": self._loop,
                "end": self._end,
                "begin": self._begin,
            }
        )

    @property
    def handlers(self) -> Mapping[str, Handler]:
        return self._handlers

    # Lifecycle ------------------------------------------------------------------------

    async def run_main(self) -> float:
        """Play ``main`` to completion and return the timeline position it ended at."""
        self.session.start()
        self.clock.start()
        generation = self.session.generation
        task = self.spawn(MAIN_BLOCK, 0.0)
        if task is None:
            return 0.0
        try:
            return await task
        except asyncio.CancelledError:
            if self.session.generation != generation:
                _LOGGER.info("Playback force stopped")
                return self.clock.now()
            raise

    async def replay(self) -> float:
        """Run ``main`` again on the voices built so far, normalized first."""
        if self.session.playing:
            self.force_stop()
        self.normalize_volumes()
        return await self.run_main()

    def spawn(self, name: str, position: float) -> asyncio.Task[float] | None:
        """Start a Run of ``name`` at ``position``; counted before this returns."""
        lines = self.blocks.get(name)
        if lines is None:
            _LOGGER.error("Block %s not found", name)
            return None
        controller = self._controller_for(name)
        generation = self.session.run_started()
        run = Run(
            name=name,
            lines=lines,
            generation=generation,
            controller=controller,
            position=position,
        )
        _LOGGER.info("Executing block: %s", name)
        task = asyncio.create_task(self._execute(run), name=f"soundscript:{name}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def stop(self) -> None:
        """Stop dispatching; Runs wind down on their own and sounding notes decay."""
        self.session.stop()
        for controller in self.controllers.values():
            controller.release()
        self.engine.stop_samples()
        _LOGGER.info("Playback stopped (allowing delay/reverb tails to complete)")

    def force_stop(self) -> None:
        """Cancel every Run and silence every voice before returning."""
        for task in list(self._tasks):
            task.cancel()
        for controller in self.controllers.values():
            controller.silence()
        self.engine.stop_samples()
        self.session.reset()

    def normalize_volumes(self) -> None:
        for controller in self.controllers.values():
            controller.normalize()
        _LOGGER.info(
            "Master volume set to %d%% with adaptive normalization",
            round(self.config.master_volume * 100),
        )

    # Execution ------------------------------------------------------------------------

    async def _execute(self, run: Run) -> float:
        session = self.session
        try:
            while run.cursor < len(run.lines):
                if not session.playing or run.generation != session.generation:
                    break
                line = run.lines[run.cursor]
                run.cursor += 1
                command = parse_command(line)
                if command is None:
                    continue
                await self.dispatch(run, command)
        finally:
            session.run_finished(run.generation, run.position)
        return run.position

    async def dispatch(self, run: Run, command: Command) -> None:
        handler = self._handlers.get(command.verb)
        if handler is None:
            _LOGGER.error("Unknown command: %s", command.verb)
            return
        try:
            await handler(run, command)
        except EngineSetupError:
            raise
        except CommandError as exc:
            _LOGGER.error("%s: %s", run.name, exc)
        except Exception as exc:
            _LOGGER.error(
                "Error executing line %d in %s: %s (%s)", run.cursor, run.name, command.line, exc
            )

    def _controller_for(self, name: str) -> BlockController | None:
        if name == MAIN_BLOCK:
            return None
        controller = self.controllers.get(name)
        if controller is not None:
            return controller
        state = self.states.setdefault(name, ParameterState())
        controller = BlockController(name, state, self._create_voice(name))
        controller.sync()
        self.controllers[name] = controller
        _LOGGER.info("Created synth for block: %s", name)
        return controller

    def _create_voice(self, name: str) -> Voice:
        """Full effect chain, else direct to master volume, else straight to output."""
        failure: Exception | None = None
        for mode in CHAIN_MODES:
            try:
                voice = self.engine.create_voice(name, mode)
            except Exception as exc:
                _LOGGER.error("Error connecting %s audio for %s: %s", mode, name, exc)
                failure = exc
                continue
            if mode != "full":
                _LOGGER.warning("Using %s connection for %s (fallback)", mode, name)
            return voice
        raise EngineSetupError(f"Complete audio failure for {name}") from failure

    # Timing -----------------------------------------------------------------------------

    async def _wait(self, run: Run, command: Command) -> None:
        beats = parse_number(_arg(command, 0))
        if beats is None or beats < 0:
            raise CommandError(f"Invalid wait duration: {_arg(command, 0)}")
        seconds = beats_to_seconds(beats, self.session.bpm)
        run.position = await self.clock.advance(run.position, seconds)
        _LOGGER.debug("Waited %s beats (%.2fs at %s BPM)", beats, seconds, self.session.bpm)

    async def _waitsec(self, run: Run, command: Command) -> None:
        seconds = parse_number(_arg(command, 0))
        if seconds is None:
            raise CommandError(f"Invalid waitsec duration: {_arg(command, 0)}")
        run.position = await self.clock.advance(run.position, seconds)

    async def _waitforfinish(self, run: Run, command: Command) -> None:
        _ = command
        settled = await self.session.wait_until_settled(1, self.config.finish_timeout)
        if not settled:
            _LOGGER.warning(
                "waitforfinish timed out after %s seconds, continuing execution",
                self.config.finish_timeout,
            )
            return
        if not self.session.playing:
            return
        run.position = self.clock.settle(run.position, [self.session.latest_finish])
        # Let reverb and delay tails ring out.
        run.position = await self.clock.advance(run.position, self.config.finish_grace)

    async def _play(self, run: Run, command: Command) -> None:
        if not command.args:
            raise CommandError("play requires a block name")
        names = command.args[1:] if command.args[0] == "together" else command.args[:1]
        tasks = [task for task in (self.spawn(name, run.position) for name in names) if task]
        if not tasks:
            return
        finished = await asyncio.gather(*tasks)
        run.position = self.clock.settle(run.position, finished)

    async def _loop(self, run: Run, command: Command) -> None:
        count = count_or(_arg(command, 0), 1)
        run.loops.append(LoopFrame(total=count, remaining=count, return_index=run.cursor))

    async def _end(self, run: Run, command: Command) -> None:
        if not is_loop_end(command):
            if run.controller is not None:
                run.controller.end(command.args[0], run.position)
            return
        if not run.loops:
            return
        frame = run.loops[-1]
        frame.remaining -= 1
        if frame.remaining > 0:
            run.cursor = frame.return_index
        else:
            run.loops.pop()

    # Notes --------------------------------------------------------------------------------

    async def _tone(self, run: Run, command: Command) -> None:
        if run.controller is None:
            return
        note = _arg(command, 0)
        if note is None:
            raise CommandError("tone requires a note")
        frequency = self._frequency(note)
        seconds = note_seconds(_arg(command, 1), self.session.bpm)
        run.controller.trigger([frequency], seconds, run.position)
        _LOGGER.debug("Playing %s for %.2fs in %s", note, seconds, run.name)

    async def _tones(self, run: Run, command: Command) -> None:
        if run.controller is None:
            return
        if len(command.args) < 2:
            raise CommandError("tones requires at least one note and a duration")
        *notes, duration = command.args
        frequencies = [self._frequency(note) for note in notes]
        seconds = note_seconds(duration, self.session.bpm)
        run.controller.trigger(frequencies, seconds, run.position)
        _LOGGER.debug("Playing %d tones for %.2fs in %s", len(frequencies), seconds, run.name)

    async def _sample(self, run: Run, command: Command) -> None:
        name = _arg(command, 0)
        if name is None:
            raise CommandError("sample requires a sample name")
        if not self.engine.has_sample(name):
            raise CommandError(f"Sample {name} not found")
        volume = number_or(_arg(command, 1), 1.0)
        self.engine.play_sample(name, linear_to_db(volume), run.position)
        _LOGGER.debug("Playing sample %s at volume %s", name, volume)

    @staticmethod
    def _frequency(note: str) -> float:
        try:
            return note_to_frequency(note)
        except ValueError as exc:
            raise CommandError(str(exc)) from exc

    # Parameters -------------------------------------------------------------------------

    async def _bpm(self, run: Run, command: Command) -> None:
        bpm = parse_number(_arg(command, 0))
        if bpm is None or bpm <= 0:
            raise CommandError(f"Invalid BPM value: {_arg(command, 0)}")
        self.session.set_bpm(bpm)
        _LOGGER.info("Tempo set to %s BPM", bpm)

    async def _tempo(self, run: Run, command: Command) -> None:
        bpm = count_or(_arg(command, 0), 120)
        if bpm <= 0:
            raise CommandError(f"Invalid tempo value: {_arg(command, 0)}")
        self.session.set_bpm(float(bpm))
        _LOGGER.info("Tempo set to %s", bpm)

    async def _volume(self, run: Run, command: Command) -> None:
        if run.controller is None:
            return
        run.controller.set_volume(number_or(_arg(command, 0), 80.0))
        if len(command.args) >= 3:
            settings = AutoVolumeSettings(
                min=number_or(_arg(command, 0), 0.0) / 100,
                max=number_or(_arg(command, 1), 100.0) / 100,
                rate=number_or(_arg(command, 2), 0.0),
            )
            run.controller.set_autovolume(settings, run.position)

    async def _pan(self, run: Run, command: Command) -> None:
        if run.controller is None:
            return
        run.controller.set_pan(number_or(_arg(command, 0), 0.0))

    async def _reverb(self, run: Run, command: Command) -> None:
        if run.controller is None:
            return
        run.controller.set_reverb(
            ReverbSettings(
                wet=number_or(_arg(command, 0), 0.0),
                dry=number_or(_arg(command, 1), 1.0),
                decay=number_or(_arg(command, 2), 1.5),
                predelay=number_or(_arg(command, 3), 0.01),
            )
        )

    async def _delay(self, run: Run, command: Command) -> None:
        if run.controller is None:
            return
        run.controller.set_delay(
            DelaySettings(
                time=number_or(_arg(command, 0), 0.0),
                feedback=number_or(_arg(command, 1), 0.0),
                pingpong=count_or(_arg(command, 2), 0),
                width=number_or(_arg(command, 3), 0.5),
                wet=number_or(_arg(command, 4), 0.0),
            )
        )

    async def _filter(self, run: Run, command: Command) -> None:
        if run.controller is None:
            return
        kind = (_arg(command, 0) or "lowpass").lower()
        if kind not in FILTER_KINDS:
            raise CommandError(f"Unknown filter type: {kind}")
        run.controller.set_filter(
            FilterSettings(
                kind=kind,
                frequency=number_or(_arg(command, 1), 1000.0),
                q=number_or(_arg(command, 2), 1.0),
            )
        )

    async def _distortion(self, run: Run, command: Command) -> None:
        if run.controller is None:
            return
        run.controller.set_distortion(DistortionSettings(amount=number_or(_arg(command, 0), 0.0)))

    async def _envelope(self, run: Run, command: Command) -> None:
        if run.controller is None:
            return
        defaults = EnvelopeSettings()
        attack, decay, sustain, release = (
            number_or(token, 0.0) if token is not None else default
            for token, default in zip(
                (_arg(command, i) for i in range(4)),
                (defaults.attack, defaults.decay, defaults.sustain, defaults.release),
            )
        )
        run.controller.set_envelope(EnvelopeSettings(attack, decay, sustain, release))

    async def _autopan(self, run: Run, command: Command) -> None:
        if run.controller is None:
            return
        run.controller.set_autopan(
            AutoPanSettings(
                rate=number_or(_arg(command, 0), 0.0),
                depth=number_or(_arg(command, 1), 0.0),
            )
        )

    async def _autovolume(self, run: Run, command: Command) -> None:
        if run.controller is None:
            return
        settings = AutoVolumeSettings(
            min=number_or(_arg(command, 0), 0.0) / 100,
            max=number_or(_arg(command, 1), 0.0) / 100,
            rate=number_or(_arg(command, 2), 0.0),
        )
        run.controller.set_autovolume(settings, run.position)

    async def _begin(self, run: Run, command: Command) -> None:
        if run.controller is None:
            return
        effect_type = _arg(command, 0)
        if not is_effect_type(effect_type):
            raise CommandError(f"Unknown effect type: {effect_type}")
        assert effect_type is not None
        run.controller.begin(effect_type)
