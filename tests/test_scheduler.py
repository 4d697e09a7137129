from __future__ import annotations

import asyncio

import pytest

from lactate_engine.core.scheduler import AsyncioScheduler, ManualScheduler


def test_manual_call_every_fires_once_per_interval() -> None:
    scheduler = ManualScheduler()
    ticks: list[float] = []
    scheduler.call_every(1.0, lambda: ticks.append(scheduler.time()))

    scheduler.advance(3.5)

    assert ticks == [1.0, 2.0, 3.0]
    assert scheduler.time() == 3.5


def test_manual_timers_due_together_fire_in_arming_order() -> None:
    scheduler = ManualScheduler()
    order: list[str] = []
    scheduler.call_every(1.0, lambda: order.append("total"))
    scheduler.call_every(1.0, lambda: order.append("phase"))
    scheduler.call_later(1.0, lambda: order.append("once"))
    scheduler.call_every(1.0, lambda: order.append("sampling"))

    scheduler.advance(2.0)

    assert order == ["total", "phase", "once", "sampling", "total", "phase", "sampling"]


def test_cancelled_timer_never_fires_even_when_already_due() -> None:
    scheduler = ManualScheduler()
    fired: list[str] = []
    handles = []
    # Both due at t=1; the first one cancels the second.
    scheduler.call_later(1.0, lambda: handles[0].cancel())
    handles.append(scheduler.call_later(1.0, lambda: fired.append("late")))

    scheduler.advance(2.0)

    assert fired == []
    assert handles[0].cancelled is True
    assert scheduler.pending == 0


def test_cancel_stops_a_periodic_timer() -> None:
    scheduler = ManualScheduler()
    ticks: list[int] = []
    handle = scheduler.call_every(1.0, lambda: ticks.append(1))

    scheduler.advance(2.0)
    handle.cancel()
    scheduler.advance(5.0)

    assert len(ticks) == 2


def test_non_positive_interval_is_rejected() -> None:
    with pytest.raises(ValueError):
        ManualScheduler().call_every(0, lambda: None)


def test_asyncio_scheduler_ticks_and_cancels() -> None:
    async def _run() -> None:
        scheduler = AsyncioScheduler()
        ticks: list[int] = []
        handle = scheduler.call_every(0.01, lambda: ticks.append(1))
        await asyncio.sleep(0.055)
        handle.cancel()
        count = len(ticks)
        await asyncio.sleep(0.03)

        assert count >= 3
        assert len(ticks) == count

    asyncio.run(_run())


def test_spawned_tasks_are_drained() -> None:
    async def _run() -> None:
        scheduler = ManualScheduler()
        done: list[str] = []

        async def _work(name: str) -> None:
            await asyncio.sleep(0)
            done.append(name)

        async def _boom() -> None:
            raise RuntimeError("trainer unplugged")

        scheduler.spawn(_work("a"))
        scheduler.spawn(_boom())
        scheduler.spawn(_work("b"))
        await scheduler.drain()

        assert sorted(done) == ["a", "b"]

    asyncio.run(_run())
