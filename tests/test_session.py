import asyncio

import pytest

from soundscript.session import SessionState


def test_run_bookkeeping() -> None:
    session = SessionState()
    session.start()
    generation = session.run_started()
    session.run_started()

    session.run_finished(generation, 1.5)
    assert session.active_blocks_running == 1
    session.run_finished(generation, 0.5)
    assert session.active_blocks_running == 0
    assert session.latest_finish == 1.5


def test_stale_generation_is_ignored() -> None:
    session = SessionState()
    session.start()
    generation = session.run_started()
    session.reset()

    session.run_finished(generation, 9.0)
    assert session.active_blocks_running == 0
    assert session.latest_finish == 0.0
    assert session.generation == generation + 1


def test_counter_never_goes_negative() -> None:
    session = SessionState()
    session.run_finished(session.generation)
    assert session.active_blocks_running == 0


@pytest.mark.asyncio
async def test_wait_until_settled_wakes_on_finish() -> None:
    session = SessionState()
    session.start()
    generation = session.run_started()
    session.run_started()

    waiter = asyncio.create_task(session.wait_until_settled(1, timeout=1.0))
    await asyncio.sleep(0)
    assert not waiter.done()
    session.run_finished(generation)

    assert await waiter is True


@pytest.mark.asyncio
async def test_wait_until_settled_times_out() -> None:
    session = SessionState()
    session.start()
    session.run_started()
    session.run_started()

    assert await session.wait_until_settled(1, timeout=0.01) is False


@pytest.mark.asyncio
async def test_stop_releases_waiters() -> None:
    session = SessionState()
    session.start()
    session.run_started()
    session.run_started()

    waiter = asyncio.create_task(session.wait_until_settled(1, timeout=1.0))
    await asyncio.sleep(0)
    session.stop()

    assert await waiter is True
