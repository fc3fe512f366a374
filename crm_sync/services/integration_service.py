"""Integration lifecycle: create, update, sync and the status state machine.

    PENDING --sync ok--> ACTIVE <--sync ok / sync failed--> ERROR
    PENDING --sync failed--> ERROR
    any --deactivate--> INACTIVE (terminal)

A failed sync is always persisted as ERROR (with ``sync_attempts`` bumped)
before the exception reaches the caller.
"""
from __future__ import annotations

import asyncio
import datetime as dt
import logging
import time
import weakref
from typing import Any, Callable, Dict, List, Mapping, Optional, Union
from uuid import UUID

from crm_sync.constants import PENDING_SYNC_STALENESS, IntegrationStatus, ProviderType
from crm_sync.db import utcnow
from crm_sync.errors import ConflictError, NotFoundError
from crm_sync.schemas.integration import (
    IntegrationPatch,
    IntegrationRecord,
    SyncEventRead,
    SyncOutcome,
    SyncResult,
)
from crm_sync.services.crm_gateway import CRMGateway
from crm_sync.services.integration_repository import IntegrationStore
from crm_sync.services.metrics import LoggingObserver, MetricEvent, MetricsObserver
from crm_sync.services.validators import (
    parse_provider_type,
    validate_config,
    validate_credentials,
    validate_patch,
)

logger = logging.getLogger(__name__)


class IntegrationService:
    """Orchestrates integration records against the store and the CRM gateway."""

    def __init__(
        self,
        store: IntegrationStore,
        gateway: CRMGateway,
        observer: Optional[MetricsObserver] = None,
        clock: Callable[[], dt.datetime] = utcnow,
        staleness: dt.timedelta = PENDING_SYNC_STALENESS,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.observer = observer or LoggingObserver()
        self.staleness = staleness
        self._clock = clock
        self._sync_locks: "weakref.WeakValueDictionary[UUID, asyncio.Lock]" = weakref.WeakValueDictionary()

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def _deliver(self, event: MetricEvent) -> None:
        try:
            self.observer.record(event)
        except Exception:
            logger.exception(f"Metrics observer failed on {event.name}")

    def _emit(self, name: str, started: float, **attributes: Any) -> None:
        """Hand a metric to the observer on the next loop iteration."""
        event = MetricEvent(name=name, duration_ms=(time.perf_counter() - started) * 1000, attributes=attributes)
        asyncio.get_running_loop().call_soon(self._deliver, event)

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    async def _require(self, integration_id: UUID, tenant_id: UUID) -> IntegrationRecord:
        record = await self.store.find_by_id_and_tenant(integration_id, tenant_id)
        if record is None:
            raise NotFoundError("Integration", integration_id)
        return record

    async def create_integration(
        self,
        tenant_id: UUID,
        provider_type: Union[ProviderType, str],
        credentials: Mapping[str, Any],
        config: Mapping[str, Any],
    ) -> IntegrationRecord:
        """Validate, check the credentials live against the provider, persist as PENDING."""
        started = time.perf_counter()
        attributes: Dict[str, Any] = {"tenant_id": str(tenant_id), "provider_type": str(provider_type)}
        try:
            provider = parse_provider_type(provider_type)
            attributes["provider_type"] = provider.value
            parsed_config = validate_config(config)
            parsed_credentials = validate_credentials(credentials)

            if await self.store.find_by_tenant_and_provider(tenant_id, provider):
                raise ConflictError(
                    f"An integration for {provider.value} already exists for this tenant",
                    {"tenant_id": str(tenant_id), "provider_type": provider.value},
                )

            live = await self.gateway.connect(provider, parsed_credentials, force_refresh=True)
            record = await self.store.create(tenant_id, provider, live, parsed_config)
        except Exception as exc:
            self._emit("integration.create.error", started, error_type=type(exc).__name__, **attributes)
            raise

        self._emit("integration.create.success", started, integration_id=str(record.id), **attributes)
        return record

    async def update_integration(
        self,
        integration_id: UUID,
        tenant_id: UUID,
        patch: Union[IntegrationPatch, Mapping[str, Any]],
    ) -> IntegrationRecord:
        """Merge a credentials and/or config patch; new credentials are checked live first."""
        started = time.perf_counter()
        attributes: Dict[str, Any] = {"tenant_id": str(tenant_id), "integration_id": str(integration_id)}
        try:
            parsed_patch = validate_patch(patch)
            record = await self._require(integration_id, tenant_id)
            attributes["provider_type"] = record.provider_type.value

            config = None
            if parsed_patch.config is not None:
                config = validate_config({**record.config.model_dump(mode="json"), **parsed_patch.config})

            credentials = None
            if parsed_patch.credentials is not None:
                merged = validate_credentials({**record.credentials.reveal(), **parsed_patch.credentials})
                credentials = await self.gateway.connect(record.provider_type, merged, force_refresh=True)

            if config is None and credentials is None:
                updated = record
            else:
                updated = await self.store.update(
                    integration_id, tenant_id, credentials=credentials, config=config
                )
                if updated is None:
                    raise NotFoundError("Integration", integration_id)
        except Exception as exc:
            self._emit("integration.update.error", started, error_type=type(exc).__name__, **attributes)
            raise

        self._emit(
            "integration.update.success",
            started,
            credentials_changed=credentials is not None,
            config_changed=config is not None,
            **attributes,
        )
        return updated

    async def get_integration(self, integration_id: UUID, tenant_id: UUID) -> IntegrationRecord:
        return await self._require(integration_id, tenant_id)

    async def list_integrations(self, tenant_id: UUID) -> List[IntegrationRecord]:
        return await self.store.find_by_tenant(tenant_id)

    async def delete_integration(self, integration_id: UUID, tenant_id: UUID) -> None:
        if not await self.store.delete(integration_id, tenant_id):
            raise NotFoundError("Integration", integration_id)

    async def deactivate_integration(self, integration_id: UUID, tenant_id: UUID) -> IntegrationRecord:
        record = await self._require(integration_id, tenant_id)
        if record.status == IntegrationStatus.INACTIVE:
            return record
        updated = await self.store.update_status(integration_id, tenant_id, IntegrationStatus.INACTIVE)
        if updated is None:
            raise NotFoundError("Integration", integration_id)
        logger.info(f"Deactivated integration {integration_id} for tenant {tenant_id}")
        return updated

    async def list_sync_events(self, integration_id: UUID, tenant_id: UUID, limit: int = 20) -> List[SyncEventRead]:
        await self._require(integration_id, tenant_id)
        return await self.store.list_sync_events(integration_id, tenant_id, limit=limit)

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    def _lock_for(self, integration_id: UUID) -> asyncio.Lock:
        lock = self._sync_locks.get(integration_id)
        if lock is None:
            lock = asyncio.Lock()
            self._sync_locks[integration_id] = lock
        return lock

    async def sync_integration(self, integration_id: UUID, tenant_id: UUID) -> SyncResult:
        """Push the field mappings to the provider and record the outcome.

        Raises whatever the gateway raised, after the ERROR status is stored.
        Overlapping calls for the same id run one after the other.
        """
        lock = self._lock_for(integration_id)
        async with lock:
            return await self._sync(integration_id, tenant_id)

    async def _sync(self, integration_id: UUID, tenant_id: UUID) -> SyncResult:
        record = await self._require(integration_id, tenant_id)
        if record.status == IntegrationStatus.INACTIVE:
            raise ConflictError(
                f"Integration {integration_id} is inactive and cannot be synced",
                {"integration_id": str(integration_id), "status": record.status.value},
            )

        started = time.perf_counter()
        started_at = self._clock()
        attributes: Dict[str, Any] = {
            "tenant_id": str(tenant_id),
            "integration_id": str(integration_id),
            "provider_type": record.provider_type.value,
        }
        try:
            result = await self.gateway.sync(
                record.provider_type, record.credentials, record.config.field_mappings
            )
        except Exception as exc:
            await self._record_failure(record, exc, started_at)
            self._emit("integration.sync.error", started, error_type=type(exc).__name__, **attributes)
            raise

        completed_at = self._clock()
        rotated = result.credentials if result.credentials and result.credentials != record.credentials else None
        updated = await self.store.update_status(
            integration_id,
            tenant_id,
            IntegrationStatus.ACTIVE,
            last_sync_at=completed_at,
            credentials=rotated,
            credentials_read_at=record.credentials_updated_at,
        )
        if updated is None:
            logger.warning(f"Integration {integration_id} disappeared while syncing; status not stored")
        elif updated.status == IntegrationStatus.INACTIVE:
            logger.info(f"Integration {integration_id} was deactivated while syncing; status left INACTIVE")

        await self._log_sync_event(
            record,
            result.status,
            started_at,
            completed_at,
            records_processed=result.success,
            records_failed=result.failed,
            error_details={"errors": result.errors} if result.errors else None,
        )
        logger.info(
            f"Synced integration {integration_id} ({record.provider_type.value}): "
            f"{result.success} ok, {result.failed} failed"
        )
        self._emit(
            "integration.sync.success",
            started,
            records_processed=result.success,
            records_failed=result.failed,
            batches=result.batches,
            **attributes,
        )
        return result

    async def _record_failure(self, record: IntegrationRecord, exc: Exception, started_at: dt.datetime) -> None:
        completed_at = self._clock()
        entry = {
            "timestamp": completed_at.isoformat(),
            "type": type(exc).__name__,
            "code": getattr(exc, "code", None),
            "message": str(exc),
        }
        logger.error(f"Sync failed for integration {record.id} ({record.provider_type.value}): {exc}")
        try:
            updated = await self.store.update_status(
                record.id, record.tenant_id, IntegrationStatus.ERROR, error=entry
            )
        except Exception:
            # The caller gets the sync error, not the store's
            logger.exception(f"Could not store ERROR status for integration {record.id}")
        else:
            if updated is None:
                logger.warning(f"Integration {record.id} disappeared while syncing; failure not stored")
        await self._log_sync_event(
            record,
            "failed",
            started_at,
            completed_at,
            error_message=str(exc),
            error_details={"type": entry["type"], "code": entry["code"]},
        )

    async def _log_sync_event(
        self,
        record: IntegrationRecord,
        status: str,
        started_at: dt.datetime,
        completed_at: dt.datetime,
        **fields: Any,
    ) -> None:
        # The sync history is informational; the status write above is what counts
        try:
            await self.store.record_sync_event(
                record.id, record.tenant_id, status, started_at, completed_at, **fields
            )
        except Exception:
            logger.exception(f"Could not record sync event for integration {record.id}")

    async def process_pending_sync(self, tenant_id: Optional[UUID] = None) -> List[SyncOutcome]:
        """Sync every active or failing integration that is due, one at a time.

        Failures are logged and reported in the outcome list; they never stop
        the pass.
        """
        stale_before = self._clock() - self.staleness
        pending = await self.store.find_pending_sync(stale_before, tenant_id)
        if pending:
            logger.info(f"Processing {len(pending)} pending integration syncs")

        outcomes: List[SyncOutcome] = []
        for record in pending:
            outcome = SyncOutcome(
                integration_id=record.id,
                tenant_id=record.tenant_id,
                provider_type=record.provider_type,
                ok=False,
            )
            try:
                outcome.result = await self.sync_integration(record.id, record.tenant_id)
                outcome.ok = True
            except Exception as exc:
                logger.error(f"Pending sync failed for integration {record.id} (tenant {record.tenant_id}): {exc}")
                outcome.error = str(exc)
                outcome.error_type = type(exc).__name__
            outcomes.append(outcome)
        return outcomes
