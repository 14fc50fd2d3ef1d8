"""SitePulse — Snapshot Poller.

APScheduler interval job that walks the adapter registry, persists one
point-in-time snapshot per site and tenant, and prunes history past the
retention window. One cycle at a time: a timer tick or manual trigger that
arrives while a cycle is running is skipped.
"""

import asyncio
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, FrozenSet, List, Optional, Set, Tuple

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from pydantic import BaseModel

from sitepulse.config import settings
from sitepulse.connectors.base import PlatformClient
from sitepulse.connectors.registry import PlatformRegistry
from sitepulse.core.logging import get_logger
from sitepulse.models.resource_models import PlatformType, SiteSummary, TenantAllocation
from sitepulse.models.snapshot_models import utc_now
from sitepulse.storage.snapshot_store import SnapshotStore

logger = get_logger("scheduler")

JOB_ID = "snapshot_poll"
# Backup reporting has no time-series value
DEFAULT_EXCLUDED_TYPES: FrozenSet[PlatformType] = frozenset({PlatformType.VEEAM})


class PollCycleResult(BaseModel):
    """Outcome of one poll cycle (or of a skipped attempt)."""

    polled_at: Optional[datetime] = None
    skipped: bool = False
    sites_polled: int = 0
    sites_failed: List[str] = []
    tenant_rows: int = 0
    pruned_rows: int = 0
    duration_ms: int = 0


class SnapshotPoller:
    """Owns the polling timer, the re-entrancy guard and the last poll time."""

    def __init__(
        self,
        registry: PlatformRegistry,
        store: SnapshotStore,
        interval_seconds: Optional[float] = None,
        initial_delay_seconds: Optional[float] = None,
        retention_days: Optional[int] = None,
        adapter_timeout_seconds: Optional[float] = None,
        excluded_types: FrozenSet[PlatformType] = DEFAULT_EXCLUDED_TYPES,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.registry = registry
        self.store = store
        self.interval_seconds = interval_seconds or settings.poll_interval_seconds
        self.initial_delay_seconds = (
            settings.initial_poll_delay_seconds
            if initial_delay_seconds is None
            else initial_delay_seconds
        )
        self.retention_days = retention_days or settings.snapshot_retention_days
        self.adapter_timeout_seconds = (
            adapter_timeout_seconds or settings.adapter_timeout_seconds
        )
        self.excluded_types = excluded_types
        self._clock = clock
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._is_polling = False
        self._last_poll_time: Optional[datetime] = None
        self._background: Set[asyncio.Task] = set()

    # ── State ──

    @property
    def is_running(self) -> bool:
        """True while a cycle is in progress."""
        return self._is_polling

    @property
    def is_scheduled(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    @property
    def last_poll_time(self) -> Optional[datetime]:
        return self._last_poll_time

    @property
    def next_poll_time(self) -> Optional[datetime]:
        if not self.is_scheduled:
            return None
        job = self._scheduler.get_job(JOB_ID)
        return job.next_run_time if job else None

    # ── Cycle ──

    async def poll_all_sites(self) -> PollCycleResult:
        """Run one guarded cycle: fetch, persist, then prune.

        Pruning runs whether or not polling succeeded. A SnapshotWriteError
        propagates after pruning and releasing the guard.
        """
        if self._is_polling:
            logger.info("Poll cycle already in progress, skipping")
            return PollCycleResult(skipped=True)
        self._is_polling = True

        started = time.monotonic()
        polled_at = self._clock()
        result = PollCycleResult(polled_at=polled_at)
        try:
            await self._poll(polled_at, result)
        finally:
            result.pruned_rows = self._prune(self._clock())
            result.duration_ms = int((time.monotonic() - started) * 1000)
            self._is_polling = False

        logger.info(
            f"Poll cycle complete: {result.sites_polled} sites, "
            f"{result.tenant_rows} tenant rows, {len(result.sites_failed)} failed",
            extra={"polled_at": polled_at, "duration_ms": result.duration_ms},
        )
        return result

    async def _fetch_site(
        self, key: str, client: PlatformClient
    ) -> Optional[Tuple[SiteSummary, List[TenantAllocation]]]:
        """Summary + tenants for one adapter under its own deadline."""

        async def both():
            tasks = [
                asyncio.ensure_future(client.get_site_summary()),
                asyncio.ensure_future(client.get_tenant_allocations()),
            ]
            try:
                return await asyncio.gather(*tasks)
            finally:
                # Cancel whichever half is still running
                for task in tasks:
                    if not task.done():
                        task.cancel()

        started = time.monotonic()
        try:
            summary, tenants = await asyncio.wait_for(
                both(), timeout=self.adapter_timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.error(
                f"Polling {key} timed out after {self.adapter_timeout_seconds}s",
                extra={"site_id": client.config.site_id},
            )
            return None
        except Exception as e:
            logger.error(
                f"Polling {key} failed: {e}",
                extra={
                    "site_id": client.config.site_id,
                    "platform_type": client.platform_type().value,
                },
            )
            return None

        logger.info(
            f"Polled {key}: {len(tenants)} tenants",
            extra={
                "site_id": client.config.site_id,
                "duration_ms": int((time.monotonic() - started) * 1000),
            },
        )
        return summary, tenants

    async def _poll(self, polled_at: datetime, result: PollCycleResult) -> None:
        targets = [
            (key, client)
            for key, client in self.registry.get_all_clients().items()
            if client.platform_type() not in self.excluded_types
        ]
        if not targets:
            logger.info("No pollable sites registered")
            return

        logger.info(f"Polling {len(targets)} sites", extra={"polled_at": polled_at})
        fetched = await asyncio.gather(*(self._fetch_site(k, c) for k, c in targets))

        for (key, _), data in zip(targets, fetched):
            if data is None:
                result.sites_failed.append(key)
                continue
            summary, tenants = data
            result.tenant_rows += self.store.save_site_snapshot(summary, tenants, polled_at)
            result.sites_polled += 1
            self._last_poll_time = polled_at

    def _prune(self, now: datetime) -> int:
        """Delete rows older than the retention window. Errors are logged."""
        cutoff = now - timedelta(days=self.retention_days)
        try:
            sites, tenants = self.store.prune_snapshots(cutoff)
        except Exception as e:
            logger.error(f"Snapshot pruning failed: {e}")
            return 0
        if sites or tenants:
            logger.info(
                f"Pruned {sites} site and {tenants} tenant snapshots older than {cutoff}"
            )
        return sites + tenants

    async def _scheduled_run(self) -> None:
        """Timer / trigger entry point. Nothing escapes into the scheduler."""
        try:
            await self.poll_all_sites()
        except Exception as e:
            logger.exception(f"Poll cycle failed: {e}")

    # ── Lifecycle ──

    def start(self) -> None:
        """Schedule the first cycle after the initial delay, then every interval."""
        if self.is_scheduled:
            return
        try:
            self._last_poll_time = self.store.get_last_poll_time()
        except Exception as e:
            logger.warning(f"Could not read last poll time: {e}")

        self._scheduler = AsyncIOScheduler(timezone=timezone.utc)
        self._scheduler.add_job(
            self._scheduled_run,
            "interval",
            seconds=self.interval_seconds,
            next_run_time=datetime.now(timezone.utc)
            + timedelta(seconds=self.initial_delay_seconds),
            id=JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=3600,
        )
        self._scheduler.start()
        logger.info(
            f"Snapshot poller started: first poll in {self.initial_delay_seconds}s, "
            f"then every {self.interval_seconds / 3600:g}h"
        )

    def stop(self) -> None:
        if self.is_scheduled:
            self._scheduler.shutdown(wait=False)
            logger.info("Snapshot poller stopped")
        self._scheduler = None
        for task in list(self._background):
            task.cancel()

    def trigger_now(self) -> bool:
        """Start a cycle in the background. False when one is already running."""
        if self._is_polling:
            logger.info("Manual trigger ignored: poll cycle already in progress")
            return False
        task = asyncio.get_running_loop().create_task(self._scheduled_run())
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        logger.info("Manual poll cycle triggered")
        return True
