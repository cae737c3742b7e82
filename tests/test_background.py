"""Background runner error boundary and drain."""

import asyncio
import logging

import pytest

from chatrelay.relay.background import BackgroundRunner


@pytest.mark.asyncio
async def test_failure_is_logged_not_raised(caplog):
    async def explode():
        raise RuntimeError("kaboom")

    runner = BackgroundRunner()
    with caplog.at_level(logging.ERROR, logger="chatrelay.relay.background"):
        runner.spawn(explode(), name="explode")
        await runner.drain(1.0)

    assert runner.pending == 0
    assert any("explode" in r.getMessage() for r in caplog.records)


@pytest.mark.asyncio
async def test_drain_waits_for_work_spawned_by_work():
    done = []
    runner = BackgroundRunner()

    async def child():
        await asyncio.sleep(0.01)
        done.append("child")

    async def parent():
        await asyncio.sleep(0.01)
        runner.spawn(child())
        done.append("parent")

    runner.spawn(parent())
    await runner.drain(1.0)
    assert done == ["parent", "child"]


@pytest.mark.asyncio
async def test_drain_gives_up_after_timeout():
    runner = BackgroundRunner()
    never = asyncio.Event()
    task = runner.spawn(never.wait())
    await runner.drain(0.01)
    assert runner.pending == 1
    never.set()
    await task
