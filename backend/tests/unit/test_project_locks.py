import asyncio

import pytest

from living_story.services.project_locks import LockTimeout, ProjectLocks


@pytest.mark.asyncio
async def test_same_project_is_serialized():
    locks = ProjectLocks(timeout_seconds=1.0)
    order: list[str] = []

    async def worker(name: str) -> None:
        async with locks.hold("p1"):
            order.append(f"{name}-start")
            await asyncio.sleep(0.01)
            order.append(f"{name}-end")

    await asyncio.gather(worker("a"), worker("b"))

    assert order == ["a-start", "a-end", "b-start", "b-end"]


@pytest.mark.asyncio
async def test_different_projects_do_not_block_each_other():
    locks = ProjectLocks(timeout_seconds=0.05)
    async with locks.hold("p1"):
        async with locks.hold("p2"):
            pass


@pytest.mark.asyncio
async def test_acquisition_times_out():
    locks = ProjectLocks(timeout_seconds=0.05)
    async with locks.hold("p1"):
        with pytest.raises(LockTimeout):
            async with locks.hold("p1"):
                pass
    async with locks.hold("p1"):
        pass


@pytest.mark.asyncio
async def test_idle_locks_are_evicted():
    locks = ProjectLocks(timeout_seconds=0.05)
    for n in range(5):
        async with locks.hold(f"p{n}"):
            assert len(locks) == 1
    assert len(locks) == 0

    with pytest.raises(RuntimeError):
        async with locks.hold("p1"):
            raise RuntimeError("boom")
    assert len(locks) == 0


@pytest.mark.asyncio
async def test_lock_is_kept_while_someone_waits():
    locks = ProjectLocks(timeout_seconds=1.0)
    order: list[str] = []
    released = asyncio.Event()

    async def first() -> None:
        async with locks.hold("p1"):
            order.append("first")
            await released.wait()

    async def second() -> None:
        async with locks.hold("p1"):
            order.append("second")

    task_a = asyncio.create_task(first())
    await asyncio.sleep(0)
    task_b = asyncio.create_task(second())
    await asyncio.sleep(0.01)
    assert order == ["first"]
    assert len(locks) == 1

    released.set()
    await asyncio.gather(task_a, task_b)

    assert order == ["first", "second"]
    assert len(locks) == 0
