"""Tests for per-target connection pools and the connection manager."""

from __future__ import annotations

import asyncio
from dataclasses import replace

import pytest

from objserv_exporter.errors import ConnectFailed, PoolExhausted
from objserv_exporter.pool import ConnectionManager, TargetPool

from tests.fakes import FakeServer, make_target


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.anyio
async def test_released_connection_is_reused_after_liveness_check() -> None:
    server = FakeServer()
    pool = TargetPool(make_target(), server)

    first = await pool.acquire(1.0)
    await pool.release(first)
    second = await pool.acquire(1.0)

    assert second.connection is first.connection
    assert second.reused is True
    assert server.pings == 1
    assert pool.stats().in_use == 1
    await pool.release(second)
    await pool.close()


@pytest.mark.anyio
async def test_pool_never_opens_more_than_its_size() -> None:
    server = FakeServer()
    pool = TargetPool(make_target(pool_size=2), server)
    leases = [await pool.acquire(1.0), await pool.acquire(1.0)]

    with pytest.raises(PoolExhausted):
        await pool.acquire(0.05)
    with pytest.raises(PoolExhausted):
        await pool.acquire(0)

    assert server.open == 2
    for lease in leases:
        await pool.release(lease)
    await pool.close()
    assert server.open == 0


@pytest.mark.anyio
async def test_waiter_receives_released_connection() -> None:
    server = FakeServer()
    pool = TargetPool(make_target(pool_size=1), server)
    held = await pool.acquire(1.0)

    waiter = asyncio.ensure_future(pool.acquire(1.0))
    await asyncio.sleep(0.01)
    assert not waiter.done()
    await pool.release(held)
    lease = await waiter

    assert lease.connection is held.connection
    await pool.release(lease)
    await pool.close()


@pytest.mark.anyio
async def test_dead_idle_connection_is_replaced() -> None:
    server = FakeServer()
    pool = TargetPool(make_target(pool_size=1), server)
    await pool.release(await pool.acquire(1.0))
    server.dead.add(0)

    lease = await pool.acquire(1.0)

    assert lease.connection is server.connections[1]
    assert server.connections[0].closed
    assert pool.stats().open == 1
    await pool.release(lease)
    await pool.close()


@pytest.mark.anyio
async def test_connect_is_retried_before_giving_up() -> None:
    server = FakeServer()
    server.connect_failures = 1
    pool = TargetPool(make_target(), server, connect_attempts=2)

    lease = await pool.acquire(1.0)
    assert len(server.connections) == 1
    await pool.release(lease)

    server.connect_failures = 2
    await pool.acquire(1.0)
    with pytest.raises(ConnectFailed):
        await pool.acquire(1.0)
    assert pool.stats().open == 1
    await pool.close()


@pytest.mark.anyio
async def test_unhealthy_release_destroys_connection_and_frees_slot() -> None:
    server = FakeServer()
    pool = TargetPool(make_target(pool_size=1), server)
    lease = await pool.acquire(1.0)

    await pool.release(lease, healthy=False)

    assert server.connections[0].closed
    assert pool.stats().open == 0
    replacement = await pool.acquire(0)
    assert replacement.connection is server.connections[1]
    await pool.release(replacement)
    await pool.close()


@pytest.mark.anyio
async def test_tainted_lease_is_destroyed_on_release() -> None:
    server = FakeServer()
    pool = TargetPool(make_target(), server)
    lease = await pool.acquire(1.0)

    lease.taint()
    await pool.release(lease)

    assert pool.stats().idle == 0
    assert server.open == 0
    await pool.close()


@pytest.mark.anyio
async def test_release_rejects_double_and_foreign_release() -> None:
    server = FakeServer()
    pool = TargetPool(make_target(), server)
    other = TargetPool(make_target("T2"), server)
    lease = await pool.acquire(1.0)

    with pytest.raises(ValueError):
        await other.release(lease)
    await pool.release(lease)
    with pytest.raises(RuntimeError):
        await pool.release(lease)
    await pool.close()


@pytest.mark.anyio
async def test_idle_connections_expire() -> None:
    clock = _Clock()
    server = FakeServer()
    pool = TargetPool(make_target(idle_timeout=60.0), server, clock=clock)
    await pool.release(await pool.acquire(1.0))

    clock.now += 61.0
    lease = await pool.acquire(1.0)

    assert lease.reused is False
    assert server.connections[0].closed
    assert server.pings == 0
    await pool.release(lease)
    await pool.close()


@pytest.mark.anyio
async def test_closed_pool_refuses_acquire_and_closes_returned_leases() -> None:
    server = FakeServer()
    pool = TargetPool(make_target(), server)
    outstanding = await pool.acquire(1.0)
    await pool.release(await pool.acquire(1.0))

    await pool.close()

    assert pool.closed
    with pytest.raises(PoolExhausted):
        await pool.acquire(1.0)
    await pool.release(outstanding)
    assert server.open == 0


@pytest.mark.anyio
async def test_manager_keeps_one_pool_per_target() -> None:
    servers: dict[str, FakeServer] = {}

    def _driver(target):  # type: ignore[no-untyped-def]
        return servers.setdefault(target.name, FakeServer())

    manager = ConnectionManager(_driver)
    t1, t2 = make_target("T1"), make_target("T2")
    for target in (t1, t2, t1):
        await manager.release(await manager.acquire(target))

    assert len(servers["T1"].connections) == 1
    assert len(servers["T2"].connections) == 1
    stats = manager.stats("T1")
    assert stats is not None and stats.idle == 1
    assert manager.stats("missing") is None
    await manager.close()


@pytest.mark.anyio
async def test_manager_retires_pool_when_target_changes() -> None:
    server = FakeServer()
    manager = ConnectionManager(lambda target: server)
    target = make_target()
    await manager.release(await manager.acquire(target))

    changed = replace(target, pool_size=3)
    lease = await manager.acquire(changed)
    await asyncio.sleep(0.01)

    assert lease.connection is server.connections[1]
    assert server.connections[0].closed
    stats = manager.stats("T1")
    assert stats is not None and stats.size == 3
    await manager.release(lease)
    await manager.close()


@pytest.mark.anyio
async def test_manager_prune_and_close() -> None:
    server = FakeServer()
    manager = ConnectionManager(lambda target: server)
    await manager.release(await manager.acquire(make_target("T1")))
    await manager.release(await manager.acquire(make_target("T2")))

    await manager.prune({"T2"})

    assert manager.stats("T1") is None
    assert server.open == 1
    await manager.close()
    assert server.open == 0
    with pytest.raises(PoolExhausted):
        await manager.acquire(make_target("T2"))
