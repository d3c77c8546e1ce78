from __future__ import annotations

import asyncio
import logging

from .config import DEFAULT_BPM

_LOGGER = logging.getLogger("soundscript.session")


class SessionState:
    """Tempo, run bookkeeping and the playing flag shared by every Run.

    Methods never suspend, so each read-modify-write is atomic under the
    cooperative event loop. Waiters block on :meth:`changed`, an event that is
    replaced (and the old one set) whenever the run count or the playing flag
    moves.
    """

    def __init__(self, bpm: float = DEFAULT_BPM) -> None:
        self.bpm = bpm
        self.active_blocks_running = 0
        self.playing = False
        self.generation = 0
        self.latest_finish = 0.0
        self._changed = asyncio.Event()

    def set_bpm(self, bpm: float) -> None:
        self.bpm = bpm

    def start(self) -> None:
        self.playing = True
        self.latest_finish = 0.0

    def run_started(self) -> int:
        """Count a new Run and return the generation it belongs to."""
        self.active_blocks_running += 1
        self._notify()
        return self.generation

    def run_finished(self, generation: int, position: float = 0.0) -> None:
        if generation != self.generation:
            # Counter was already reset by a force stop.
            return
        if self.active_blocks_running <= 0:
            _LOGGER.error("Run finished with no active runs recorded")
            self.active_blocks_running = 0
        else:
            self.active_blocks_running -= 1
        self.latest_finish = max(self.latest_finish, position)
        self._notify()

    def stop(self) -> None:
        self.playing = False
        self._notify()

    def reset(self) -> None:
        """Synchronous hard reset: count to zero and orphan every live Run."""
        self.playing = False
        self.active_blocks_running = 0
        self.generation += 1
        self._notify()

    def changed(self) -> asyncio.Event:
        return self._changed

    async def wait_until_settled(self, baseline: int, timeout: float) -> bool:
        """Wait until at most ``baseline`` Runs are active; ``False`` on timeout."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while self.playing and self.active_blocks_running > baseline:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            try:
                await asyncio.wait_for(self._changed.wait(), remaining)
            except asyncio.TimeoutError:
                return False
        return True

    def _notify(self) -> None:
        event = self._changed
        self._changed = asyncio.Event()
        event.set()
