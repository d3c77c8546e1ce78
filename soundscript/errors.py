from __future__ import annotations


class SoundScriptError(Exception):
    """Base error for the SoundScript interpreter."""


class ScriptError(SoundScriptError):
    """Raised when a script cannot be performed (for example, no main block)."""


class CommandError(SoundScriptError):
    """Raised when a single command line is malformed. Never escapes a run."""


class EngineSetupError(SoundScriptError):
    """Raised when the audio engine cannot build a voice for a block."""


class RenderError(SoundScriptError):
    """Raised when offline rendering fails."""


class PlaybackError(SoundScriptError):
    """Raised when no playback backend is available or playback fails."""


class InvalidAudioError(SoundScriptError):
    """Raised when audio data does not match the expected shape or format."""
