from __future__ import annotations

import asyncio
from typing import List

from devicehub.services.background import PeriodicTask
from devicehub.services.container import AuthContainer
from devicehub.services.permissions import PermissionSet


def test_periodic_task_runs_until_shutdown() -> None:
    calls: List[int] = []

    async def scenario() -> None:
        task = PeriodicTask("counter", 0.01, lambda: calls.append(1))
        task.start()
        assert task.running
        await asyncio.sleep(0.1)
        await task.shutdown()
        assert not task.running

    asyncio.run(scenario())
    assert calls


def test_periodic_task_survives_failing_job() -> None:
    calls: List[int] = []

    def flaky() -> None:
        calls.append(1)
        raise RuntimeError("boom")

    async def scenario() -> None:
        task = PeriodicTask("flaky", 0.01, flaky)
        task.start()
        await asyncio.sleep(0.1)
        await task.shutdown()

    asyncio.run(scenario())
    assert len(calls) > 1


def test_container_owns_cache_and_clears_it_on_shutdown() -> None:
    container = AuthContainer(resolver=lambda user_id: PermissionSet(permissions=frozenset({"device.read"})))

    async def scenario() -> None:
        container.start()
        container.cache.get(3)
        assert 3 in container.cache
        await container.shutdown()

    asyncio.run(scenario())
    assert 3 not in container.cache
    assert all(not task.running for task in container.tasks)
