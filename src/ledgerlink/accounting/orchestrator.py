"""Sync orchestrator -- runs one entity type (or all of them) for one tenant.

Each run moves through fetching -> mapping -> reconciling -> writing ->
completed; failed is entered only when the run as a whole cannot continue
(auth or configuration errors). A "both" run does the pull leg and then
the push leg, returning to fetching between them.

Pull: page through remote records (modified since last sync, less a small
overlap, when known), create unknown ones, update changed ones unless the
local copy is newer (conflict), skip ones whose revision token is
unchanged. The watermark never moves past a record that failed to import.

Push: create remote records for local entities that were never linked,
with a deterministic idempotency key, then write the linkage back.
Updates only reach the remote through conflict resolution.

Per-item failures are folded into the SyncResult and the batch continues.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from functools import partial
from typing import Any, assert_never

import structlog

from src.ledgerlink.accounting.conflicts import ConflictManager
from src.ledgerlink.accounting.credentials import Clock, CredentialManager, utc_now
from src.ledgerlink.accounting.errors import (
    AuthError,
    ConfigurationError,
    SyncAlreadyInProgressError,
)
from src.ledgerlink.accounting.locks import RunGuard
from src.ledgerlink.accounting.mapping.common import MappingContext
from src.ledgerlink.accounting.mapping.registry import MappingRegistry
from src.ledgerlink.accounting.remote.adapter import RemoteClient
from src.ledgerlink.accounting.retry import RetryExecutor
from src.ledgerlink.accounting.schemas import (
    SYNC_ORDER,
    ConflictRef,
    EntityLinkage,
    EntityType,
    LocalEntity,
    RemoteRecord,
    RunState,
    SyncDirection,
    SyncItemError,
    SyncReport,
    SyncResult,
    SyncStateSnapshot,
)
from src.ledgerlink.accounting.stores import EntityStore, SyncStateStore
from src.ledgerlink.core.monitoring import (
    sync_records_total,
    sync_run_duration_seconds,
    sync_runs_total,
)

logger = structlog.get_logger(__name__)

IDEMPOTENCY_NAMESPACE = uuid.UUID("6f1c2a4e-8b7d-4f0e-9a35-2d6c81b0e5a7")
DEFAULT_PULL_OVERLAP = timedelta(seconds=5)

_TRANSITIONS: dict[RunState, frozenset[RunState]] = {
    RunState.PENDING: frozenset({RunState.FETCHING}),
    RunState.FETCHING: frozenset({RunState.MAPPING}),
    RunState.MAPPING: frozenset({RunState.RECONCILING}),
    RunState.RECONCILING: frozenset({RunState.WRITING}),
    RunState.WRITING: frozenset({RunState.COMPLETED, RunState.FETCHING}),
    RunState.COMPLETED: frozenset(),
    RunState.FAILED: frozenset(),
}


def idempotency_key(tenant_id: str, entity_type: EntityType, entity: LocalEntity) -> str:
    """Stable per local entity version, so a retried create is deduplicated remotely."""
    name = f"{tenant_id}:{entity_type.value}:{entity.id}:{entity.updated_at.isoformat()}"
    return str(uuid.uuid5(IDEMPOTENCY_NAMESPACE, name))


class CancellationToken:
    """Cooperative cancellation for sync_all, checked between entity types."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


@dataclass
class SyncRun:
    """State of one (tenant, entity type, direction) run."""

    tenant_id: str
    entity_type: EntityType
    direction: SyncDirection
    started_at: datetime
    state: RunState = RunState.PENDING
    result: SyncResult = field(default_factory=SyncResult)
    fetch_failed: bool = False
    # Earliest remote modification time among pulled records that failed
    earliest_failed_at: datetime | None = None

    def hold_watermark(self, record: RemoteRecord) -> None:
        if self.earliest_failed_at is None or record.last_modified_at < self.earliest_failed_at:
            self.earliest_failed_at = record.last_modified_at

    def next_watermark(self, previous: datetime | None) -> datetime | None:
        """last_sync_at to persist: never past a record that still needs importing."""
        if self.fetch_failed:
            return previous
        if self.earliest_failed_at is not None:
            return min(self.started_at, self.earliest_failed_at)
        return self.started_at

    def transition(self, new_state: RunState) -> None:
        if new_state != RunState.FAILED and new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal sync state transition {self.state.value} -> {new_state.value}")
        logger.debug(
            "sync.state",
            tenant_id=self.tenant_id,
            entity_type=self.entity_type.value,
            direction=self.direction.value,
            from_state=self.state.value,
            to_state=new_state.value,
        )
        self.state = new_state


@dataclass
class _PullItem:
    record: RemoteRecord
    data: dict[str, Any] | None = None
    local: LocalEntity | None = None


@dataclass
class _PushItem:
    entity: LocalEntity
    payload: dict[str, Any] | None = None


class SyncOrchestrator:
    """Runs sync for one tenant and entity type at a time.

    Args:
        credentials: Supplies valid remote clients (refreshing as needed).
        entities: Local entity store.
        sync_states: Last sync time and result per (tenant, entity type).
        conflicts: Conflict detection and recording.
        registry: Mapper registry.
        retry: RetryExecutor for every remote call.
        run_guard: Rejects concurrent runs for the same (tenant, entity type).
        page_size: Remote page size for listing.
        pull_overlap: How far before last_sync_at an incremental pull starts.
            Remote timestamps have whole-second precision and clocks drift;
            records seen twice are no-ops by revision token.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        credentials: CredentialManager,
        entities: EntityStore,
        sync_states: SyncStateStore,
        conflicts: ConflictManager,
        registry: MappingRegistry,
        retry: RetryExecutor,
        run_guard: RunGuard | None = None,
        page_size: int = 100,
        pull_overlap: timedelta = DEFAULT_PULL_OVERLAP,
        clock: Clock = utc_now,
    ) -> None:
        self._credentials = credentials
        self._entities = entities
        self._sync_states = sync_states
        self._conflicts = conflicts
        self._registry = registry
        self._retry = retry
        self._run_guard = run_guard or RunGuard()
        self._page_size = page_size
        self._pull_overlap = pull_overlap
        self._clock = clock

    # ── Public API ──────────────────────────────────────────────────────────

    async def sync_entity_type(
        self, tenant_id: str, entity_type: EntityType, direction: SyncDirection
    ) -> SyncResult:
        """Run one entity type in the given direction.

        Raises:
            SyncAlreadyInProgressError: A run for (tenant, entity_type) is in flight.
            NotConnectedError / ConfigurationError: Integration not set up.
            AuthError / RefreshFailedError: Credentials rejected.
        """
        async with self._run_guard.hold(tenant_id, entity_type):
            run = SyncRun(tenant_id, entity_type, direction, started_at=self._clock())
            started = time.perf_counter()
            logger.info(
                "sync.started",
                tenant_id=tenant_id,
                entity_type=entity_type.value,
                direction=direction.value,
            )
            try:
                previous = await self._sync_states.get(tenant_id, entity_type)
                client = await self._credentials.get_valid_client(tenant_id)
                links = await self._entities.link_index(tenant_id, self._registry.link_types(entity_type))
                ctx = MappingContext(tenant_id=tenant_id, as_of=run.started_at, links=links)

                since = previous.last_sync_at - self._pull_overlap if previous and previous.last_sync_at else None
                match direction:
                    case SyncDirection.FROM_REMOTE:
                        await self._pull(run, client, ctx, since)
                    case SyncDirection.TO_REMOTE:
                        await self._push(run, client, ctx)
                    case SyncDirection.BOTH:
                        await self._pull(run, client, ctx, since)
                        await self._push(run, client, ctx)
                    case _:
                        assert_never(direction)

                run.transition(RunState.COMPLETED)
                await self._sync_states.save(SyncStateSnapshot(
                    tenant_id=tenant_id,
                    entity_type=entity_type,
                    last_sync_at=run.next_watermark(previous.last_sync_at if previous else None),
                    last_result=run.result,
                ))
            except Exception as exc:
                run.transition(RunState.FAILED)
                sync_runs_total.labels(
                    entity_type=entity_type.value, direction=direction.value, status=RunState.FAILED.value
                ).inc()
                logger.error(
                    "sync.failed",
                    tenant_id=tenant_id,
                    entity_type=entity_type.value,
                    direction=direction.value,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise

            duration = time.perf_counter() - started
            sync_runs_total.labels(
                entity_type=entity_type.value, direction=direction.value, status=RunState.COMPLETED.value
            ).inc()
            sync_run_duration_seconds.labels(
                entity_type=entity_type.value, direction=direction.value
            ).observe(duration)
            self._count_records(entity_type, run.result)
            logger.info(
                "sync.completed",
                tenant_id=tenant_id,
                entity_type=entity_type.value,
                direction=direction.value,
                created=run.result.created,
                updated=run.result.updated,
                skipped=run.result.skipped,
                errors=len(run.result.errors),
                conflicts=len(run.result.conflicts),
                duration_seconds=round(duration, 3),
            )
            return run.result

    async def sync_all(
        self,
        tenant_id: str,
        direction: SyncDirection,
        entity_types: list[EntityType] | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> SyncReport:
        """Run entity types in dependency order, checking for cancellation between them.

        Types not reached keep their previous last_sync_at. A type already
        running elsewhere is skipped with a warning.
        """
        wanted = set(entity_types) if entity_types is not None else set(SYNC_ORDER)
        results: dict[EntityType, SyncResult] = {}
        cancelled = False

        for entity_type in SYNC_ORDER:
            if entity_type not in wanted:
                continue
            if cancel_token is not None and cancel_token.cancelled:
                cancelled = True
                logger.info(
                    "sync.cancelled",
                    tenant_id=tenant_id,
                    next_entity_type=entity_type.value,
                    completed=[t.value for t in results],
                )
                break
            try:
                results[entity_type] = await self.sync_entity_type(tenant_id, entity_type, direction)
            except SyncAlreadyInProgressError:
                logger.warning("sync.type_in_progress", tenant_id=tenant_id, entity_type=entity_type.value)
            # Let other tasks (and cancel requests) run between entity types
            await asyncio.sleep(0)

        return SyncReport(results=results, cancelled=cancelled)

    def is_running(self, tenant_id: str, entity_type: EntityType) -> bool:
        return self._run_guard.is_running(tenant_id, entity_type)

    # ── Pull ────────────────────────────────────────────────────────────────

    async def _fetch_remote(
        self, run: SyncRun, client: RemoteClient, since: datetime | None
    ) -> list[RemoteRecord]:
        records: list[RemoteRecord] = []
        start = 1
        while True:
            page = await self._retry.execute(
                partial(client.list_page, run.entity_type, start, self._page_size, since),
                description=f"list:{run.entity_type.value}",
            )
            records.extend(page)
            if len(page) < self._page_size:
                return records
            start += self._page_size

    async def _pull(
        self, run: SyncRun, client: RemoteClient, ctx: MappingContext, since: datetime | None
    ) -> None:
        entity_type = run.entity_type
        run.transition(RunState.FETCHING)
        try:
            records = await self._fetch_remote(run, client, since)
        except (AuthError, ConfigurationError):
            raise
        except Exception as exc:
            run.fetch_failed = True
            run.result = run.result.with_error(
                SyncItemError(type=entity_type, id="*", message=f"Listing remote records failed: {exc}")
            )
            logger.error("sync.fetch_error", tenant_id=run.tenant_id, entity_type=entity_type.value, error=str(exc))
            records = []

        run.transition(RunState.MAPPING)
        items: list[_PullItem] = []
        for record in records:
            try:
                items.append(_PullItem(record=record, data=self._registry.to_local(entity_type, record, ctx)))
            except ConfigurationError:
                raise
            except Exception as exc:
                self._record_pull_error(run, record, exc, "sync.map_error")

        run.transition(RunState.RECONCILING)
        to_write: list[_PullItem] = []
        for item in items:
            try:
                local = await self._entities.get_by_remote_id(run.tenant_id, entity_type, item.record.id)
                if local is None:
                    to_write.append(item)
                    continue
                if local.linkage.remote_revision_token == item.record.revision_token:
                    continue
                conflict = await self._conflicts.check_and_record(
                    run.tenant_id, entity_type, local, item.record, SyncDirection.FROM_REMOTE
                )
                if conflict is not None:
                    run.result = run.result.with_conflict(
                        ConflictRef(type=entity_type, id=local.id, conflict_id=conflict.id)
                    )
                    continue
                item.local = local
                to_write.append(item)
            except (AuthError, ConfigurationError):
                raise
            except Exception as exc:
                self._record_pull_error(run, item.record, exc, "sync.reconcile_error")

        run.transition(RunState.WRITING)
        for item in to_write:
            record = item.record
            linkage = EntityLinkage(
                remote_id=record.id,
                remote_revision_token=record.revision_token,
                last_synced_at=self._clock(),
            )
            try:
                if item.local is None:
                    # Re-check right before creating; a concurrent writer may have linked it
                    if await self._entities.get_by_remote_id(run.tenant_id, entity_type, record.id):
                        continue
                    created = await self._entities.create(
                        run.tenant_id, entity_type, item.data or {}, linkage, updated_at=record.last_modified_at
                    )
                    ctx.links.add(entity_type, record.id, created.id)
                    run.result = run.result.with_created()
                else:
                    await self._entities.update(
                        run.tenant_id, entity_type, item.local.id, item.data or {}, linkage,
                        updated_at=record.last_modified_at,
                    )
                    run.result = run.result.with_updated()
            except (AuthError, ConfigurationError):
                raise
            except Exception as exc:
                self._record_pull_error(run, record, exc, "sync.write_error")

    # ── Push ────────────────────────────────────────────────────────────────

    async def _push(self, run: SyncRun, client: RemoteClient, ctx: MappingContext) -> None:
        entity_type = run.entity_type
        run.transition(RunState.FETCHING)
        entities = await self._entities.list_unlinked(run.tenant_id, entity_type)

        run.transition(RunState.MAPPING)
        items: list[_PushItem] = []
        for entity in entities:
            try:
                items.append(_PushItem(entity=entity, payload=self._registry.to_remote(entity_type, entity.data, ctx)))
            except ConfigurationError:
                raise
            except Exception as exc:
                self._record_error(run, entity.id, exc, "sync.map_error")

        run.transition(RunState.RECONCILING)
        to_write: list[_PushItem] = []
        for item in items:
            try:
                fresh = await self._entities.get(run.tenant_id, entity_type, item.entity.id)
            except Exception as exc:
                self._record_error(run, item.entity.id, exc, "sync.reconcile_error")
                continue
            if fresh is None or fresh.linkage.remote_id is not None:
                logger.debug(
                    "sync.push_skip_linked",
                    tenant_id=run.tenant_id,
                    entity_type=entity_type.value,
                    entity_id=item.entity.id,
                )
                continue
            to_write.append(item)

        run.transition(RunState.WRITING)
        for item in to_write:
            entity = item.entity
            try:
                remote = await self._retry.execute(
                    partial(
                        client.create,
                        entity_type,
                        item.payload or {},
                        idempotency_key(run.tenant_id, entity_type, entity),
                    ),
                    description=f"create:{entity_type.value}",
                )
                await self._entities.set_linkage(
                    run.tenant_id,
                    entity_type,
                    entity.id,
                    EntityLinkage(
                        remote_id=remote.id,
                        remote_revision_token=remote.revision_token,
                        last_synced_at=self._clock(),
                    ),
                )
                ctx.links.add(entity_type, remote.id, entity.id)
                run.result = run.result.with_created()
            except (AuthError, ConfigurationError):
                raise
            except Exception as exc:
                self._record_error(run, entity.id, exc, "sync.push_error")

    # ── Helpers ─────────────────────────────────────────────────────────────

    def _record_pull_error(self, run: SyncRun, record: RemoteRecord, exc: Exception, event: str) -> None:
        run.hold_watermark(record)
        self._record_error(run, record.id, exc, event)

    def _record_error(self, run: SyncRun, item_id: str, exc: Exception, event: str) -> None:
        run.result = run.result.with_error(
            SyncItemError(type=run.entity_type, id=item_id, message=str(exc))
        )
        logger.error(
            event,
            tenant_id=run.tenant_id,
            entity_type=run.entity_type.value,
            item_id=item_id,
            error_type=type(exc).__name__,
            error=str(exc),
        )

    @staticmethod
    def _count_records(entity_type: EntityType, result: SyncResult) -> None:
        for outcome, count in (
            ("created", result.created),
            ("updated", result.updated),
            ("conflict", len(result.conflicts)),
            ("error", len(result.errors)),
        ):
            if count:
                sync_records_total.labels(entity_type=entity_type.value, outcome=outcome).inc(count)
