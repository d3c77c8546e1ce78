import math

import pytest

from soundscript.state import (
    AutoVolumeSettings,
    BlockController,
    DelaySettings,
    FilterSettings,
    ParameterState,
    ReverbSettings,
    command_compensation_db,
    engine_gain_db,
    is_effect_type,
    linear_to_db,
    normalization_compensation_db,
    volume_to_db,
)
from stubs import RecordingVoice


def _controller() -> tuple[BlockController, RecordingVoice]:
    voice = RecordingVoice("lead", "full")
    controller = BlockController("lead", ParameterState(), voice)
    controller.sync()
    return controller, voice


def test_defaults() -> None:
    state = ParameterState()
    assert state.volume == 80
    assert state.pan == 0
    assert state.filter == FilterSettings("lowpass", 20_000.0, 1.0)
    assert state.reverb.wet == 0 and state.delay.wet == 0
    assert state.volume_lfo is None


def test_gain_conversion() -> None:
    assert linear_to_db(1.0) == 0.0
    assert linear_to_db(0.0) == pytest.approx(-100.0)
    assert volume_to_db(50) == pytest.approx(20 * math.log10(0.5))


def test_delay_settings_are_clamped() -> None:
    settings = DelaySettings(time=0.25, feedback=0.95, wet=1.0)
    assert settings.feedback == 0.9
    assert settings.wet == 0.8


def test_command_compensation() -> None:
    state = ParameterState(delay=DelaySettings(time=0.25, feedback=0.5, wet=0.5))
    assert command_compensation_db(state) == pytest.approx(-3 * 0.35 * 0.4)

    state.reverb = ReverbSettings(wet=0.5)
    assert command_compensation_db(state) == pytest.approx(-0.42 - 0.75)


def test_command_compensation_thresholds() -> None:
    assert command_compensation_db(ParameterState(delay=DelaySettings(0.25, 0.5, 0, 0.5, 0.3))) == 0
    assert command_compensation_db(ParameterState(delay=DelaySettings(0.0, 0.5, 0, 0.5, 0.8))) == 0
    assert command_compensation_db(ParameterState(reverb=ReverbSettings(wet=0.2))) == 0


def test_normalization_compensation() -> None:
    state = ParameterState(delay=DelaySettings(time=0.0, feedback=0.5, wet=0.5))
    assert normalization_compensation_db(state) == pytest.approx(-0.5)
    state.reverb = ReverbSettings(wet=0.4)
    assert normalization_compensation_db(state) == pytest.approx(-0.5 - 0.6)


def test_volume_keeps_user_value_and_compensates_engine_gain() -> None:
    controller, voice = _controller()
    controller.set_delay(DelaySettings(time=0.25, feedback=0.5, wet=0.5))
    controller.set_volume(60)

    assert controller.state.volume == 60
    assert voice.gain_db == pytest.approx(volume_to_db(60) - 0.42)


def test_reverb_change_recomputes_gain() -> None:
    controller, voice = _controller()
    controller.set_reverb(ReverbSettings(wet=0.6))
    assert voice.gain_db == pytest.approx(volume_to_db(80) - 0.9)
    assert controller.state.volume == 80


def test_effect_snapshot_restores_matching_type() -> None:
    controller, voice = _controller()
    controller.begin("filter")
    controller.set_filter(FilterSettings("highpass", 500.0, 2.0))
    controller.end("filter", at=0.0)

    assert controller.state.filter == FilterSettings()
    assert voice.last("set_filter") == ("lowpass", 20_000.0, 1.0)
    assert controller.state.effect_stack == []


def test_mismatched_end_drops_the_snapshot() -> None:
    controller, _ = _controller()
    controller.begin("reverb")
    controller.set_reverb(ReverbSettings(wet=0.5))
    controller.end("filter", at=0.0)

    assert controller.state.effect_stack == []
    assert controller.state.reverb.wet == 0.5


def test_nested_snapshots_unwind_in_order() -> None:
    controller, _ = _controller()
    controller.begin("volume")
    controller.set_volume(50)
    controller.begin("volume")
    controller.set_volume(20)
    controller.end("volume", at=0.0)
    assert controller.state.volume == 50
    controller.end("volume", at=0.0)
    assert controller.state.volume == 80


def test_autovolume_lfo_lifecycle() -> None:
    controller, voice = _controller()
    controller.set_autovolume(AutoVolumeSettings(min=0.2, max=0.8, rate=2.0), at=1.0)

    lfo = controller.state.volume_lfo
    assert lfo is voice.lfos[0]
    assert lfo.min_db == pytest.approx(linear_to_db(0.2))
    assert lfo.max_db == pytest.approx(linear_to_db(0.8))
    assert lfo.at == 1.0

    controller.set_autovolume(AutoVolumeSettings(min=0.8, max=0.2, rate=2.0), at=2.0)
    assert lfo.stopped
    assert controller.state.volume_lfo is None
    assert voice.gain_db == pytest.approx(engine_gain_db(controller.state))


def test_replacing_autovolume_stops_previous_lfo() -> None:
    controller, voice = _controller()
    controller.set_autovolume(AutoVolumeSettings(0.1, 0.5, 1.0), at=0.0)
    controller.set_autovolume(AutoVolumeSettings(0.1, 0.9, 3.0), at=0.0)

    assert voice.lfos[0].stopped
    assert controller.state.volume_lfo is voice.lfos[1]


def test_normalize_boosts_default_volume() -> None:
    controller, voice = _controller()
    controller.set_reverb(ReverbSettings(wet=0.4))
    controller.normalize()

    assert controller.state.volume == 85
    assert voice.gain_db == pytest.approx(volume_to_db(85) - 0.6)


def test_normalize_leaves_custom_volume() -> None:
    controller, _ = _controller()
    controller.set_volume(40)
    controller.normalize()
    assert controller.state.volume == 40


def test_silence_drives_voice_to_minus_infinity() -> None:
    controller, voice = _controller()
    controller.set_autovolume(AutoVolumeSettings(0.1, 0.5, 1.0), at=0.0)
    controller.silence()

    assert voice.silenced
    assert voice.gain_db == -math.inf
    assert voice.lfos[0].stopped


def test_effect_types() -> None:
    assert is_effect_type("filter")
    assert is_effect_type("autovolume")
    assert not is_effect_type("main")
    assert not is_effect_type(None)
