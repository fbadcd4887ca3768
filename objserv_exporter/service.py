"""Process-wide exporter service owning the event loop, pools and config."""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Coroutine, TypeVar

from prometheus_client import CollectorRegistry

from . import __version__
from .collector import ExporterMetrics, TargetCollector
from .config import ConfigStore, Configuration
from .engine import CollectionEngine
from .models import ScrapeResult, Target
from .pool import ConnectionManager
from .runner import QueryRunner

LOG = logging.getLogger(__name__)

T = TypeVar("T")


class ExporterService:
    """Runs scrapes for HTTP request threads on a dedicated event loop.

    The service is the explicit owner of the connection pools: they come to
    life with it and are closed by :meth:`shutdown`.
    """

    def __init__(
        self,
        store: ConfigStore,
        *,
        manager: ConnectionManager | None = None,
        runner: QueryRunner | None = None,
        registry: CollectorRegistry | None = None,
    ) -> None:
        self.store = store
        self.manager = manager or ConnectionManager()
        self.engine = CollectionEngine(self.manager, runner)
        self.registry = registry or CollectorRegistry()
        self.metrics = ExporterMetrics(self.registry, version=__version__)
        self._stopped = False
        self._loop = asyncio.new_event_loop()
        self._loop_thread = threading.Thread(
            target=self._loop.run_forever,
            name="objserv-exporter-engine",
            daemon=True,
        )
        self._loop_thread.start()

    def scrape(
        self,
        name: str | None = None,
        scrape_timeout: float | None = None,
        *,
        config: Configuration | None = None,
    ) -> ScrapeResult:
        """Scrape one target; ``scrape_timeout`` is the caller's budget before the offset.

        ``config`` pins the snapshot the target was resolved from, so a reload
        landing mid-request cannot remove it.
        """

        config = config or self.store.current
        target = config.target(name)
        budget = self.budget(target, scrape_timeout, config.scrape_timeout_offset)
        result = self._run(self.engine.collect(target, budget))
        self.metrics.observe(result)
        return result

    def collector_for(
        self,
        name: str | None = None,
        scrape_timeout: float | None = None,
        *,
        config: Configuration | None = None,
    ) -> TargetCollector:
        """Collector that performs one scrape each time the registry collects it."""

        return TargetCollector(lambda: self.scrape(name, scrape_timeout, config=config))

    @staticmethod
    def budget(target: Target, scrape_timeout: float | None, offset: float) -> float:
        """Seconds a scrape may take given the Prometheus timeout header.

        The offset is ignored when it would use up the whole header budget.
        """

        if scrape_timeout is None or scrape_timeout <= 0:
            return target.scrape_timeout
        available = scrape_timeout - offset
        if available <= 0:
            available = scrape_timeout
        return min(target.scrape_timeout, available)

    def reload(self) -> bool:
        """Reload the configuration file and close pools of removed targets."""

        if not self.store.reload():
            return False
        keep = set(self.store.current.targets)
        self._run(self.manager.prune(keep))
        return True

    def shutdown(self) -> None:
        """Close every pool and stop the event loop."""

        if self._stopped:
            return
        self._stopped = True
        try:
            self._run(self.manager.close())
        finally:
            self._loop.call_soon_threadsafe(self._loop.stop)
            self._loop_thread.join(timeout=5)
            if not self._loop.is_running():
                self._loop.close()
        LOG.info("Exporter service stopped")

    def _run(self, coro: Coroutine[Any, Any, T]) -> T:
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        return future.result()


__all__ = ["ExporterService"]
