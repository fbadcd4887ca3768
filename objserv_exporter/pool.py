"""Per-target connection pools shared by concurrent scrapes."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from .drivers import Connection, Driver, driver_for
from .errors import ConnectFailed, ExporterError, PoolExhausted
from .models import Target

LOG = logging.getLogger(__name__)

DriverFactory = Callable[[Target], Driver]

PING_TIMEOUT = 2.0
CLOSE_TIMEOUT = 2.0


@dataclass(eq=False, slots=True)
class PooledConnection:
    """Lease on a pooled connection; exactly one task holds it at a time."""

    connection: Connection
    pool: TargetPool
    created_at: float
    last_used: float
    reused: bool = False
    tainted: bool = False
    released: bool = field(default=False, repr=False)

    @property
    def target(self) -> str:
        return self.pool.target.name

    def taint(self) -> None:
        """Mark the connection unusable so release destroys it."""

        self.tainted = True


@dataclass(frozen=True, slots=True)
class PoolStats:
    """Occupancy snapshot for one target's pool."""

    target: str
    size: int
    open: int
    idle: int
    in_use: int


class TargetPool:
    """Bounded pool of connections to one target."""

    def __init__(
        self,
        target: Target,
        driver: Driver,
        *,
        connect_attempts: int = 2,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.target = target
        self._driver = driver
        self._connect_attempts = max(1, connect_attempts)
        self._clock = clock
        self._cond = asyncio.Condition()
        self._idle: list[PooledConnection] = []
        self._open = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def stats(self) -> PoolStats:
        return PoolStats(
            target=self.target.name,
            size=self.target.pool_size,
            open=self._open,
            idle=len(self._idle),
            in_use=self._open - len(self._idle),
        )

    async def acquire(self, timeout: float | None) -> PooledConnection:
        """Hand out a live connection, waiting at most ``timeout`` seconds for capacity."""

        wait = timeout is None or timeout > 0
        deadline = asyncio.get_running_loop().time() + timeout if wait and timeout is not None else None
        lease = await self._checkout(deadline, wait=wait)
        try:
            if lease is not None:
                if await self._is_alive(lease):
                    return lease
                LOG.info("Discarding connection that failed its liveness check", extra={"target": self.target.name})
                stale, lease = lease, None
                await _close_quietly(stale.connection, self.target.name)
            # The reserved slot, or the one the dead connection held, is filled here.
            connection = await self._open_connection()
        except BaseException:
            if lease is not None:
                await _close_quietly(lease.connection, self.target.name)
            await self._free_slot()
            raise
        now = self._clock()
        return PooledConnection(connection=connection, pool=self, created_at=now, last_used=now)

    async def release(self, lease: PooledConnection, healthy: bool = True) -> None:
        """Return ``lease`` to the pool, or destroy it when it is unhealthy."""

        if lease.pool is not self:
            raise ValueError(f"Connection belongs to pool '{lease.pool.target.name}'.")
        if lease.released:
            raise RuntimeError(f"Connection for target '{self.target.name}' released twice.")
        lease.released = True
        if not healthy or lease.tainted or self._closed:
            await _close_quietly(lease.connection, self.target.name)
            await self._free_slot()
            return
        async with self._cond:
            self._idle.append(
                PooledConnection(
                    connection=lease.connection,
                    pool=self,
                    created_at=lease.created_at,
                    last_used=self._clock(),
                )
            )
            self._cond.notify()

    async def close(self) -> None:
        """Close idle connections; outstanding leases are destroyed on release."""

        async with self._cond:
            self._closed = True
            idle, self._idle = self._idle, []
            self._open -= len(idle)
            self._cond.notify_all()
        for lease in idle:
            await _close_quietly(lease.connection, self.target.name)

    async def _checkout(self, deadline: float | None, *, wait: bool) -> PooledConnection | None:
        """Take an idle lease, or reserve a slot for a new connection (``None``)."""

        expired: list[PooledConnection] = []
        try:
            async with asyncio.timeout_at(deadline):
                async with self._cond:
                    while True:
                        if self._closed:
                            raise PoolExhausted(f"Pool for target '{self.target.name}' is closed.")
                        expired.extend(self._evict_expired())
                        if self._idle:
                            entry = self._idle.pop()
                            return PooledConnection(
                                connection=entry.connection,
                                pool=self,
                                created_at=entry.created_at,
                                last_used=entry.last_used,
                                reused=True,
                            )
                        if self._open < self.target.pool_size:
                            self._open += 1
                            return None
                        if not wait:
                            raise PoolExhausted(f"Pool for target '{self.target.name}' is at capacity.")
                        await self._cond.wait()
        except TimeoutError:
            raise PoolExhausted(
                f"No connection to target '{self.target.name}' became available "
                f"(pool size {self.target.pool_size})."
            ) from None
        finally:
            for lease in expired:
                await _close_quietly(lease.connection, self.target.name)

    def _evict_expired(self) -> list[PooledConnection]:
        """Drop idle connections past the idle timeout; caller holds the lock."""

        cutoff = self._clock() - self.target.idle_timeout
        fresh = [lease for lease in self._idle if lease.last_used >= cutoff]
        expired = [lease for lease in self._idle if lease.last_used < cutoff]
        if expired:
            self._idle = fresh
            self._open -= len(expired)
            LOG.debug("Evicted idle connections", extra={"target": self.target.name, "count": len(expired)})
        return expired

    async def _is_alive(self, lease: PooledConnection) -> bool:
        try:
            await asyncio.wait_for(lease.connection.ping(self.target.ping_query), PING_TIMEOUT)
        except (ExporterError, OSError, TimeoutError) as exc:
            LOG.debug("Liveness check failed", extra={"target": self.target.name, "error": str(exc)})
            return False
        return True

    async def _open_connection(self) -> Connection:
        last_error: Exception | None = None
        for attempt in range(1, self._connect_attempts + 1):
            try:
                return await self._driver.connect(self.target)
            except (ExporterError, OSError) as exc:
                last_error = exc
            LOG.warning(
                "Connection attempt failed",
                extra={"target": self.target.name, "attempt": attempt, "error": str(last_error)},
            )
        raise ConnectFailed(
            f"Could not connect to target '{self.target.name}' after {self._connect_attempts} attempt(s): {last_error}"
        ) from last_error

    async def _free_slot(self) -> None:
        async with self._cond:
            self._open -= 1
            self._cond.notify()


class ConnectionManager:
    """Registry of per-target pools with an explicit lifetime.

    Pools are created on first use and live until :meth:`close`. When a
    configuration reload changes a target, its old pool is retired and a new
    one takes its place; leases from the old pool are destroyed on release.
    """

    def __init__(
        self,
        driver_factory: DriverFactory = driver_for,
        *,
        connect_attempts: int = 2,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._driver_factory = driver_factory
        self._connect_attempts = connect_attempts
        self._clock = clock
        self._pools: dict[str, TargetPool] = {}
        self._retiring: set[asyncio.Task[None]] = set()
        self._closed = False

    async def acquire(self, target: Target, timeout: float | None = None) -> PooledConnection:
        """Acquire a connection to ``target``; ``timeout`` defaults to the target's pool timeout."""

        if self._closed:
            raise PoolExhausted("Connection manager is shut down.")
        pool = self._pool_for(target)
        return await pool.acquire(target.pool_timeout if timeout is None else timeout)

    async def release(self, lease: PooledConnection, healthy: bool = True) -> None:
        await lease.pool.release(lease, healthy)

    def stats(self, name: str) -> PoolStats | None:
        pool = self._pools.get(name)
        return pool.stats() if pool else None

    async def prune(self, keep: set[str]) -> None:
        """Close pools for targets that are no longer configured."""

        for name in [name for name in self._pools if name not in keep]:
            LOG.info("Target removed from configuration, closing its pool", extra={"target": name})
            await self._pools.pop(name).close()

    async def close(self) -> None:
        """Close every pool; further acquires fail."""

        self._closed = True
        pools, self._pools = list(self._pools.values()), {}
        for pool in pools:
            await pool.close()
        if self._retiring:
            await asyncio.gather(*self._retiring, return_exceptions=True)

    def _pool_for(self, target: Target) -> TargetPool:
        pool = self._pools.get(target.name)
        if pool is not None and pool.target == target:
            return pool
        if pool is not None:
            LOG.info("Target definition changed, retiring its pool", extra={"target": target.name})
            task = asyncio.get_running_loop().create_task(pool.close())
            self._retiring.add(task)
            task.add_done_callback(self._retiring.discard)
        pool = TargetPool(
            target,
            self._driver_factory(target),
            connect_attempts=self._connect_attempts,
            clock=self._clock,
        )
        self._pools[target.name] = pool
        return pool


async def _close_quietly(connection: Connection, target: str) -> None:
    try:
        await asyncio.wait_for(connection.close(), CLOSE_TIMEOUT)
    except (ExporterError, OSError, TimeoutError) as exc:
        LOG.warning("Failed to close connection", extra={"target": target, "error": str(exc)})


__all__ = [
    "ConnectionManager",
    "DriverFactory",
    "PoolStats",
    "PooledConnection",
    "TargetPool",
]
