"""Scheduled auto-sync.

An APScheduler interval job checks every tenant with auto_sync enabled and
runs a two-way sync_all for those whose sync_interval has elapsed since
their oldest per-type last sync. One tenant failing does not stop the rest.

Exports:
    AutoSyncScheduler: AsyncIOScheduler wrapper owning the check job.
    is_sync_due: Interval check used by the job.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timedelta

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from src.ledgerlink.accounting.credentials import Clock, utc_now
from src.ledgerlink.accounting.errors import SyncAlreadyInProgressError
from src.ledgerlink.accounting.schemas import (
    ConnectionSettings,
    EntityType,
    SyncDirection,
    SyncInterval,
    SyncStateSnapshot,
)
from src.ledgerlink.accounting.service import AccountingSyncService
from src.ledgerlink.accounting.stores import ConnectionStore, SyncStateStore

logger = structlog.get_logger(__name__)

INTERVALS: dict[SyncInterval, timedelta] = {
    SyncInterval.HOURLY: timedelta(hours=1),
    SyncInterval.DAILY: timedelta(days=1),
}


def is_sync_due(settings: ConnectionSettings, states: Iterable[SyncStateSnapshot], now: datetime) -> bool:
    """True when auto sync is on and the interval has elapsed for the stalest type.

    A type that never synced makes the tenant due immediately. manual is never due.
    """
    if not settings.auto_sync:
        return False
    interval = INTERVALS.get(settings.sync_interval)
    if interval is None:
        return False

    last_by_type = {s.entity_type: s.last_sync_at for s in states}
    if any(last_by_type.get(entity_type) is None for entity_type in EntityType):
        return True
    oldest = min(last_by_type[entity_type] for entity_type in EntityType)
    return now - oldest >= interval


class AutoSyncScheduler:
    """Runs due tenant syncs on an interval.

    Args:
        service: Facade used to run sync_all.
        connections: Source of tenants with auto_sync enabled.
        sync_states: Per-type last sync times.
        check_minutes: How often to look for due tenants.
        clock: Returns the current UTC time.
    """

    JOB_ID = "accounting_auto_sync"

    def __init__(
        self,
        service: AccountingSyncService,
        connections: ConnectionStore,
        sync_states: SyncStateStore,
        check_minutes: int = 15,
        clock: Clock = utc_now,
    ) -> None:
        self._service = service
        self._connections = connections
        self._sync_states = sync_states
        self._check_minutes = check_minutes
        self._clock = clock
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        if self.running:
            return
        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self.run_due_syncs,
            trigger=IntervalTrigger(minutes=self._check_minutes),
            id=self.JOB_ID,
            name="Run due accounting auto-syncs",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=300,
        )
        self._scheduler.start()
        logger.info("auto_sync.scheduler_started", check_minutes=self._check_minutes)

    def shutdown(self) -> None:
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("auto_sync.scheduler_stopped")
        self._scheduler = None

    async def run_due_syncs(self) -> dict[str, int]:
        """Sync every due tenant; returns counts of synced, skipped and failed tenants."""
        counts = {"synced": 0, "skipped": 0, "failed": 0}
        try:
            connections = await self._connections.list_auto_sync()
        except Exception as exc:
            logger.error("auto_sync.list_failed", error=str(exc))
            return counts

        now = self._clock()
        for record in connections:
            tenant_id = record.tenant_id
            try:
                states = await self._sync_states.list_states(tenant_id)
                if not is_sync_due(record.settings, states, now):
                    counts["skipped"] += 1
                    continue
                report = await self._service.sync_all(tenant_id, SyncDirection.BOTH)
                counts["synced"] += 1
                total = report.total
                logger.info(
                    "auto_sync.tenant_synced",
                    tenant_id=tenant_id,
                    created=total.created,
                    updated=total.updated,
                    skipped=total.skipped,
                    errors=len(total.errors),
                )
            except SyncAlreadyInProgressError:
                counts["skipped"] += 1
                logger.info("auto_sync.tenant_in_progress", tenant_id=tenant_id)
            except Exception as exc:
                counts["failed"] += 1
                logger.error(
                    "auto_sync.tenant_failed",
                    tenant_id=tenant_id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )

        logger.info("auto_sync.check_complete", **counts)
        return counts
