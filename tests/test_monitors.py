"""Tests for PeriodicTask."""

from __future__ import annotations

import asyncio

import pytest

from lodestar.core.monitors import PeriodicTask


class TestPeriodicTask:
    @pytest.mark.asyncio
    async def test_ticks_until_stopped(self):
        calls = []

        async def tick():
            calls.append(1)

        task = PeriodicTask("t", 0.01, tick)
        task.start()
        await asyncio.sleep(0.08)
        await task.stop()
        count = len(calls)
        assert count >= 2
        assert task.running is False
        await asyncio.sleep(0.03)
        assert len(calls) == count

    @pytest.mark.asyncio
    async def test_predicate_ends_loop(self):
        state = {"running": True, "ticks": 0}

        async def tick():
            state["ticks"] += 1
            if state["ticks"] == 2:
                state["running"] = False

        task = PeriodicTask("t", 0.005, tick, lambda: state["running"])
        task.start()
        await asyncio.sleep(0.1)
        assert state["ticks"] == 2
        assert task.running is False
        await task.stop()

    @pytest.mark.asyncio
    async def test_failing_tick_does_not_kill_loop(self):
        calls = []

        async def tick():
            calls.append(1)
            raise RuntimeError("flaky")

        task = PeriodicTask("t", 0.005, tick)
        task.start()
        await asyncio.sleep(0.06)
        await task.stop()
        assert len(calls) >= 2
        assert task.ticks == len(calls)

    @pytest.mark.asyncio
    async def test_stop_from_inside_tick(self):
        holder: dict[str, PeriodicTask] = {}

        async def tick():
            await holder["task"].stop()

        task = PeriodicTask("t", 0.005, tick)
        holder["task"] = task
        task.start()
        await asyncio.sleep(0.05)
        assert task.ticks == 1
        assert task.running is False

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self):
        async def tick():
            pass

        task = PeriodicTask("t", 10, tick)
        task.start()
        await task.stop()
        await task.stop()
        assert task.running is False
