import asyncio
from datetime import timedelta

from conftest import build_service
from sessiongate.service.errors import StoreUnavailableError
from sessiongate.service.sweeper import ExpirySweeper
from sessiongate.storage.memory import MemoryStore


async def test_sweep_once_removes_expired_rows(clock, store):
    service = build_service(clock, store=store)
    await service.create("user-1", "agent", "192.0.2.1", "tok-1", ttl=timedelta(minutes=1))
    clock.advance(minutes=2)
    sweeper = ExpirySweeper(service, interval=60)

    assert await sweeper.sweep_once() == 1
    assert sweeper.last_removed == 1
    assert await sweeper.sweep_once() == 0


async def test_background_loop_runs_until_stopped(clock, store):
    service = build_service(clock, store=store)
    await service.create("user-1", "agent", "192.0.2.1", "tok-1", ttl=timedelta(minutes=1))
    clock.advance(minutes=2)
    sweeper = ExpirySweeper(service, interval=0.01)

    await sweeper.start()
    assert sweeper.running
    await sweeper.start()  # second start is a no-op
    for _ in range(50):
        if not store.inner.sessions:
            break
        await asyncio.sleep(0.01)
    await sweeper.stop()

    assert store.inner.sessions == {}
    assert not sweeper.running
    assert store.calls["delete_expired_sessions"] >= 1


class FailingStore(MemoryStore):
    def __init__(self):
        super().__init__()
        self.calls = 0

    def delete_expired_sessions(self, before):
        self.calls += 1
        raise RuntimeError("disk on fire")


async def test_loop_survives_failures(clock):
    backing = FailingStore()
    service = build_service(clock, store=backing)
    sweeper = ExpirySweeper(service, interval=0.01)

    await sweeper.start()
    for _ in range(50):
        if backing.calls >= 2:
            break
        await asyncio.sleep(0.01)
    await sweeper.stop()

    assert backing.calls >= 2


class UnavailableStore(MemoryStore):
    def delete_expired_sessions(self, before):
        from sessiongate.storage.errors import StoreUnavailable

        raise StoreUnavailable("connection refused")


async def test_sweep_once_surfaces_store_outage(clock):
    service = build_service(clock, store=UnavailableStore())
    sweeper = ExpirySweeper(service, interval=60)

    try:
        await sweeper.sweep_once()
    except StoreUnavailableError:
        pass
    else:
        raise AssertionError("expected StoreUnavailableError")
