import asyncio
import logging

import pytest

from relay_console.clients.api import BusyError
from relay_console.core.bg_tasks import BackgroundTasks
from relay_console.services.guard import InFlightGuard


async def test_guard_rejects_second_holder():
    guard = InFlightGuard()
    async with guard.hold("inbound", 1):
        assert guard.busy("inbound", 1)
        with pytest.raises(BusyError):
            async with guard.hold("inbound", 1):
                pass
        # different entity is independent
        async with guard.hold("inbound", 2):
            pass
    assert not guard.busy("inbound", 1)


async def test_guard_released_on_error():
    guard = InFlightGuard()
    with pytest.raises(RuntimeError):
        async with guard.hold("user", 3):
            raise RuntimeError("boom")
    async with guard.hold("user", 3):
        pass


async def test_drain_waits_for_nested_spawns():
    tasks = BackgroundTasks()
    order = []

    async def child():
        await asyncio.sleep(0)
        order.append("child")

    async def parent():
        order.append("parent")
        tasks.spawn(child(), label="child")

    tasks.spawn(parent(), label="parent")
    await tasks.drain()
    assert order == ["parent", "child"]
    assert len(tasks) == 0


async def test_cancel_all():
    tasks = BackgroundTasks()
    started = asyncio.Event()

    async def forever():
        started.set()
        await asyncio.Event().wait()

    t = tasks.spawn(forever())
    await started.wait()
    await tasks.cancel_all()
    assert t.cancelled()
    assert len(tasks) == 0


async def test_crash_is_logged(caplog):
    tasks = BackgroundTasks()

    async def crash():
        raise ValueError("kaboom")

    with caplog.at_level(logging.ERROR, logger="relay_console.core.bg_tasks"):
        tasks.spawn(crash(), label="refresh users")
        await tasks.drain()
        await asyncio.sleep(0)
    assert "refresh users task crashed" in caplog.text
