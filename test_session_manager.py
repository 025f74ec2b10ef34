"""Tests for the process-wide session registry."""

import asyncio

import pytest

from agent.manager import ProjectContext, SessionManager
from sessions import SessionStore
from shell.runtime import ShellRuntime
from vfs import MemoryFS


class CountingFactory:
    """Async project factory that yields once so concurrent callers overlap."""

    def __init__(self):
        self.created = []

    async def __call__(self, project_id):
        self.created.append(project_id)
        await asyncio.sleep(0)
        vfs = MemoryFS()
        return ProjectContext(vfs=vfs, shell=ShellRuntime(vfs))


@pytest.fixture
def factory():
    return CountingFactory()


@pytest.fixture
def manager(factory, provider):
    return SessionManager(factory, provider, session_options={"model_timeout": 5})


@pytest.mark.asyncio
async def test_concurrent_get_or_create_builds_one_session(manager, factory):
    sessions = await asyncio.gather(*(manager.get_or_create("p1") for _ in range(5)))
    assert all(s is sessions[0] for s in sessions)
    assert factory.created == ["p1"]
    assert manager.project_ids() == ["p1"]
    assert await manager.get_or_create("p1") is sessions[0]


@pytest.mark.asyncio
async def test_projects_are_isolated(manager):
    a = await manager.get_or_create("a")
    b = await manager.get_or_create("b")
    assert a is not b
    assert a.executor.context.vfs is not b.executor.context.vfs


@pytest.mark.asyncio
async def test_empty_project_id_rejected(manager):
    with pytest.raises(ValueError):
        await manager.get_or_create("")


@pytest.mark.asyncio
async def test_sync_factory_is_accepted(provider):
    def make(project_id):
        vfs = MemoryFS()
        return ProjectContext(vfs=vfs, shell=ShellRuntime(vfs))

    manager = SessionManager(make, provider)
    session = await manager.get_or_create("sync")
    assert session.project_id == "sync"


@pytest.mark.asyncio
async def test_running_project_ids_and_dispose(manager, provider):
    provider.block()
    session = await manager.get_or_create("busy")
    await manager.get_or_create("quiet")
    session.submit("work")
    await provider.wait_entered()
    assert manager.running_project_ids() == ["busy"]

    assert await manager.dispose("busy") is True
    assert session.disposed
    assert manager.get("busy") is None
    assert await manager.dispose("busy") is False


@pytest.mark.asyncio
async def test_cleanup_disposes_everything(manager, provider):
    provider.block()
    first = await manager.get_or_create("one")
    second = await manager.get_or_create("two")
    first.submit("long task")
    await provider.wait_entered()

    await manager.cleanup()
    assert first.disposed and second.disposed
    assert manager.project_ids() == []


@pytest.mark.asyncio
async def test_sessions_reload_from_store(factory, provider, tmp_path):
    store = SessionStore(str(tmp_path))
    manager = SessionManager(factory, provider, store=store)
    session = await manager.get_or_create("p")
    session.submit("remember me")
    await session.wait_idle()
    session.queue.enqueue("still waiting")
    await manager.dispose("p")

    restarted = SessionManager(factory, provider, store=store)
    session = await restarted.get_or_create("p")
    assert [m.content for m in session.history] == ["remember me", "done"]
    assert [m.content for m in session.queue.snapshot()] == ["still waiting"]
    assert not session.is_running


@pytest.mark.asyncio
async def test_least_recently_active_idle_session_evicted(factory, provider):
    manager = SessionManager(factory, provider, max_sessions=2)
    old = await manager.get_or_create("old")
    recent = await manager.get_or_create("recent")
    old.last_activity -= 100

    await manager.get_or_create("new")
    assert sorted(manager.project_ids()) == ["new", "recent"]
    assert old.disposed
    assert not recent.disposed


@pytest.mark.asyncio
async def test_sessions_past_max_age_evicted(factory, provider):
    manager = SessionManager(factory, provider, max_session_age=60)
    stale = await manager.get_or_create("stale")
    fresh = await manager.get_or_create("fresh")
    stale.last_activity -= 120

    assert await manager.evict_stale() == ["stale"]
    assert stale.disposed
    assert manager.project_ids() == ["fresh"]
    assert not fresh.disposed


@pytest.mark.asyncio
async def test_running_session_is_not_evicted(factory, provider):
    manager = SessionManager(factory, provider, max_sessions=1, max_session_age=60)
    provider.block()
    busy = await manager.get_or_create("busy")
    busy.submit("work")
    await provider.wait_entered()
    busy.last_activity -= 120

    await manager.get_or_create("other")
    assert sorted(manager.project_ids()) == ["busy", "other"]
    assert not busy.disposed
    await busy.cancel()


class GatedFactory(CountingFactory):
    def __init__(self):
        super().__init__()
        self.release = asyncio.Event()

    async def __call__(self, project_id):
        self.created.append(project_id)
        await self.release.wait()
        vfs = MemoryFS()
        return ProjectContext(vfs=vfs, shell=ShellRuntime(vfs))


@pytest.mark.asyncio
async def test_cleanup_waits_for_creation_in_flight(provider):
    factory = GatedFactory()
    manager = SessionManager(factory, provider)
    creating = asyncio.create_task(manager.get_or_create("late"))
    for _ in range(100):
        if factory.created:
            break
        await asyncio.sleep(0)

    cleanup = asyncio.create_task(manager.cleanup())
    await asyncio.sleep(0)
    assert not cleanup.done()
    factory.release.set()
    await cleanup

    session = await creating
    assert session.disposed
    assert manager.project_ids() == []
