from __future__ import annotations

from .config import CompressorSettings, LimiterSettings, SessionConfig
from .engine import AudioEngine, ChainMode, Voice
from .errors import (
    CommandError,
    EngineSetupError,
    InvalidAudioError,
    PlaybackError,
    RenderError,
    ScriptError,
    SoundScriptError,
)
from .estimator import estimate_block_duration, estimate_duration
from .logging_utils import configure_logging as _configure_logging
from .offline import OfflineContext, RenderedBuffer
from .orchestrator import SoundScript
from .parser import Command, parse_command, parse_script
from .playback import PlaybackHandle
from .scheduler import Scheduler
from .session import SessionState
from .state import ParameterState
from .timing import RealtimeClock, VirtualClock
from .wav import encode_wav, write_wav

__all__ = [
    "AudioEngine",
    "ChainMode",
    "Command",
    "CommandError",
    "CompressorSettings",
    "EngineSetupError",
    "InvalidAudioError",
    "LimiterSettings",
    "OfflineContext",
    "ParameterState",
    "PlaybackError",
    "PlaybackHandle",
    "RealtimeClock",
    "RenderError",
    "RenderedBuffer",
    "Scheduler",
    "ScriptError",
    "SessionConfig",
    "SessionState",
    "SoundScript",
    "SoundScriptError",
    "VirtualClock",
    "Voice",
    "encode_wav",
    "estimate_block_duration",
    "estimate_duration",
    "parse_command",
    "parse_script",
    "write_wav",
]

__version__ = "0.1.0"

_configure_logging()
del _configure_logging
