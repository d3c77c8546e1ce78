import asyncio

import pytest

from soundscript.timing import (
    RealtimeClock,
    VirtualClock,
    bars_to_seconds,
    beats_to_seconds,
    count_or,
    note_seconds,
    number_or,
    parse_count,
    parse_number,
)


@pytest.mark.parametrize(
    ("token", "expected"),
    [
        ("0.5b", 0.5),
        ("2", 2.0),
        (".5", 0.5),
        ("1.", 1.0),
        ("-3.2e1x", -32.0),
        ("  7hz", 7.0),
        ("abc", None),
        ("", None),
        (None, None),
    ],
)
def test_parse_number_reads_leading_prefix(token, expected) -> None:
    assert parse_number(token) == expected


def test_parse_count_truncates() -> None:
    assert parse_count("3.9") == 3
    assert parse_count("-2") == -2
    assert parse_count("x3") is None


def test_zero_and_garbage_fall_back_to_default() -> None:
    assert number_or("0", 5.0) == 5.0
    assert number_or("abc", 5.0) == 5.0
    assert number_or(None, 5.0) == 5.0
    assert number_or("0.25", 5.0) == 0.25
    assert count_or("0", 1) == 1


def test_beat_and_bar_conversion() -> None:
    assert beats_to_seconds(1, 120) == pytest.approx(0.5)
    assert bars_to_seconds(0.5, 120) == pytest.approx(1.0)


def test_note_duration_bars_suffix() -> None:
    assert note_seconds("0.5b", 120) == pytest.approx(1.0)
    assert note_seconds("0.25", 120) == pytest.approx(0.25)
    assert note_seconds("xyz", 120) == pytest.approx(0.5)
    assert note_seconds(None, 120) == pytest.approx(0.5)


@pytest.mark.asyncio
async def test_virtual_clock_advances_position_without_sleeping() -> None:
    clock = VirtualClock()
    clock.start()

    assert await clock.advance(1.0, 0.5) == pytest.approx(1.5)
    assert await clock.advance(0.0, -1.0) == 0.0
    assert clock.now() == pytest.approx(1.5)
    assert clock.settle(1.0, [0.5, 3.0]) == 3.0
    assert clock.settle(2.0, []) == 2.0


@pytest.mark.asyncio
async def test_realtime_clock_sleeps_for_the_requested_time(monkeypatch) -> None:
    sleeps: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    clock = RealtimeClock()
    clock.start()
    monkeypatch.setattr(asyncio, "sleep", fake_sleep)
    await clock.advance(0.0, 0.25)
    await clock.advance(0.0, -1.0)

    assert sleeps == [0.25, 0.0]


@pytest.mark.parametrize("token", ["1e999", "-1e999", float("inf"), float("nan")])
def test_non_finite_numbers_read_as_nothing(token) -> None:
    assert parse_number(token) is None
    assert number_or(token, 5.0) == 5.0
    assert note_seconds(token, 120) == pytest.approx(0.5)
