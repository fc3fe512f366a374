"""Persistence for integrations.

Credentials cross this boundary encrypted: callers hand in and get back
``OAuthCredentials``, the table only ever sees the Fernet token. Every method
opens its own session and commits a single-record change.
"""
from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Dict, List, Optional, Protocol
from uuid import UUID

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from crm_sync.constants import MAX_SYNC_ERRORS, IntegrationStatus, ProviderType
from crm_sync.db import as_utc, utcnow
from crm_sync.errors import ConflictError
from crm_sync.models.integration import Integration
from crm_sync.models.sync_event import SyncEvent
from crm_sync.schemas.integration import IntegrationConfig, IntegrationRecord, OAuthCredentials, SyncEventRead
from crm_sync.services.credential_cipher import CredentialCipher

logger = logging.getLogger(__name__)


class IntegrationStore(Protocol):
    async def create(
        self,
        tenant_id: UUID,
        provider_type: ProviderType,
        credentials: OAuthCredentials,
        config: IntegrationConfig,
    ) -> IntegrationRecord:
        ...

    async def find_by_id_and_tenant(self, integration_id: UUID, tenant_id: UUID) -> Optional[IntegrationRecord]:
        ...

    async def find_by_tenant_and_provider(
        self, tenant_id: UUID, provider_type: ProviderType
    ) -> Optional[IntegrationRecord]:
        ...

    async def find_by_tenant(self, tenant_id: UUID) -> List[IntegrationRecord]:
        ...

    async def update(
        self,
        integration_id: UUID,
        tenant_id: UUID,
        *,
        credentials: Optional[OAuthCredentials] = None,
        config: Optional[IntegrationConfig] = None,
    ) -> Optional[IntegrationRecord]:
        ...

    async def update_status(
        self,
        integration_id: UUID,
        tenant_id: UUID,
        status: IntegrationStatus,
        *,
        last_sync_at: Optional[dt.datetime] = None,
        error: Optional[Dict[str, Any]] = None,
        credentials: Optional[OAuthCredentials] = None,
        credentials_read_at: Optional[dt.datetime] = None,
    ) -> Optional[IntegrationRecord]:
        ...

    async def delete(self, integration_id: UUID, tenant_id: UUID) -> bool:
        ...

    async def find_pending_sync(
        self, stale_before: dt.datetime, tenant_id: Optional[UUID] = None
    ) -> List[IntegrationRecord]:
        ...

    async def record_sync_event(
        self,
        integration_id: UUID,
        tenant_id: UUID,
        status: str,
        started_at: dt.datetime,
        completed_at: dt.datetime,
        records_processed: int = 0,
        records_failed: int = 0,
        error_message: Optional[str] = None,
        error_details: Optional[Dict[str, Any]] = None,
    ) -> None:
        ...

    async def list_sync_events(self, integration_id: UUID, tenant_id: UUID, limit: int = 20) -> List[SyncEventRead]:
        ...


class IntegrationRepository:
    """SQLAlchemy implementation of ``IntegrationStore``."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], cipher: CredentialCipher) -> None:
        self._session_factory = session_factory
        self._cipher = cipher

    # -- Mapping --------------------------------------------------------------

    def _to_record(self, row: Integration) -> IntegrationRecord:
        return IntegrationRecord(
            id=row.id,
            tenant_id=row.tenant_id,
            provider_type=row.provider_type,
            status=row.status,
            credentials=self._cipher.decrypt(row.credentials),
            config=IntegrationConfig.model_validate(row.config),
            last_sync_at=as_utc(row.last_sync_at),
            sync_attempts=row.sync_attempts,
            sync_errors=list(row.sync_errors or []),
            credentials_updated_at=as_utc(row.credentials_updated_at),
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
            deleted_at=as_utc(row.deleted_at),
        )

    @staticmethod
    def _live(integration_id: UUID, tenant_id: UUID):
        return and_(
            Integration.id == integration_id,
            Integration.tenant_id == tenant_id,
            Integration.deleted_at.is_(None),
        )

    async def _get_row(
        self, session: AsyncSession, integration_id: UUID, tenant_id: UUID, for_update: bool = False
    ) -> Optional[Integration]:
        stmt = select(Integration).where(self._live(integration_id, tenant_id))
        if for_update:
            # Row lock on Postgres; SQLite serializes writers on its own
            stmt = stmt.with_for_update()
        result = await session.execute(stmt)
        return result.scalars().first()

    # -- Reads ----------------------------------------------------------------

    async def find_by_id_and_tenant(self, integration_id: UUID, tenant_id: UUID) -> Optional[IntegrationRecord]:
        async with self._session_factory() as session:
            row = await self._get_row(session, integration_id, tenant_id)
            return self._to_record(row) if row else None

    async def find_by_tenant_and_provider(
        self, tenant_id: UUID, provider_type: ProviderType
    ) -> Optional[IntegrationRecord]:
        stmt = select(Integration).where(
            and_(
                Integration.tenant_id == tenant_id,
                Integration.provider_type == provider_type,
                Integration.deleted_at.is_(None),
            )
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            row = result.scalars().first()
            return self._to_record(row) if row else None

    async def find_by_tenant(self, tenant_id: UUID) -> List[IntegrationRecord]:
        stmt = (
            select(Integration)
            .where(and_(Integration.tenant_id == tenant_id, Integration.deleted_at.is_(None)))
            .order_by(Integration.created_at)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [self._to_record(row) for row in result.scalars().all()]

    async def find_pending_sync(
        self, stale_before: dt.datetime, tenant_id: Optional[UUID] = None
    ) -> List[IntegrationRecord]:
        """Active or failing integrations never synced, or last synced before ``stale_before``."""
        conditions = [
            Integration.deleted_at.is_(None),
            Integration.status.in_([IntegrationStatus.ACTIVE, IntegrationStatus.ERROR]),
            or_(Integration.last_sync_at.is_(None), Integration.last_sync_at < stale_before),
        ]
        if tenant_id is not None:
            conditions.append(Integration.tenant_id == tenant_id)
        stmt = (
            select(Integration)
            .where(and_(*conditions))
            .order_by(Integration.last_sync_at.asc().nulls_first(), Integration.created_at)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [self._to_record(row) for row in result.scalars().all()]

    # -- Writes ---------------------------------------------------------------

    async def create(
        self,
        tenant_id: UUID,
        provider_type: ProviderType,
        credentials: OAuthCredentials,
        config: IntegrationConfig,
    ) -> IntegrationRecord:
        now = utcnow()
        row = Integration(
            tenant_id=tenant_id,
            provider_type=provider_type,
            status=IntegrationStatus.PENDING,
            credentials=self._cipher.encrypt(credentials),
            credentials_updated_at=now,
            config=config.model_dump(mode="json"),
            last_sync_at=None,
            sync_attempts=0,
            sync_errors=[],
            created_at=now,
            updated_at=now,
        )
        async with self._session_factory() as session:
            session.add(row)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise ConflictError(
                    f"An integration for {provider_type.value} already exists for this tenant",
                    {"tenant_id": str(tenant_id), "provider_type": provider_type.value},
                ) from None
            await session.refresh(row)
            logger.info(f"Created integration {row.id} ({provider_type.value}) for tenant {tenant_id}")
            return self._to_record(row)

    async def update(
        self,
        integration_id: UUID,
        tenant_id: UUID,
        *,
        credentials: Optional[OAuthCredentials] = None,
        config: Optional[IntegrationConfig] = None,
    ) -> Optional[IntegrationRecord]:
        async with self._session_factory() as session:
            row = await self._get_row(session, integration_id, tenant_id, for_update=True)
            if not row:
                return None
            if credentials is not None:
                row.credentials = self._cipher.encrypt(credentials)
                row.credentials_updated_at = utcnow()
            if config is not None:
                row.config = config.model_dump(mode="json")
            await session.commit()
            await session.refresh(row)
            return self._to_record(row)

    async def update_status(
        self,
        integration_id: UUID,
        tenant_id: UUID,
        status: IntegrationStatus,
        *,
        last_sync_at: Optional[dt.datetime] = None,
        error: Optional[Dict[str, Any]] = None,
        credentials: Optional[OAuthCredentials] = None,
        credentials_read_at: Optional[dt.datetime] = None,
    ) -> Optional[IntegrationRecord]:
        """Set status; ERROR also bumps ``sync_attempts`` and appends ``error``.

        An INACTIVE row only accepts INACTIVE, so a sync finishing after a
        deactivation leaves the row as it is. ``credentials`` are skipped when
        ``credentials_read_at`` no longer matches the stored
        ``credentials_updated_at``.
        """
        async with self._session_factory() as session:
            row = await self._get_row(session, integration_id, tenant_id, for_update=True)
            if not row:
                return None
            if row.status == IntegrationStatus.INACTIVE and status != IntegrationStatus.INACTIVE:
                logger.info(f"Integration {integration_id} is inactive; keeping it instead of {status.value}")
                return self._to_record(row)
            row.status = status
            if last_sync_at is not None:
                row.last_sync_at = last_sync_at
            if credentials is not None:
                if credentials_read_at is None or as_utc(row.credentials_updated_at) == credentials_read_at:
                    row.credentials = self._cipher.encrypt(credentials)
                    row.credentials_updated_at = utcnow()
                else:
                    logger.info(f"Credentials of integration {integration_id} changed meanwhile; keeping the newer ones")
            if status == IntegrationStatus.ERROR:
                # Incremented in SQL so concurrent writers cannot lose a count
                row.sync_attempts = Integration.sync_attempts + 1
                if error is not None:
                    row.sync_errors = (list(row.sync_errors or []) + [error])[-MAX_SYNC_ERRORS:]
            await session.commit()
            await session.refresh(row)
            return self._to_record(row)

    async def delete(self, integration_id: UUID, tenant_id: UUID) -> bool:
        """Soft delete; the (tenant, provider) slot becomes free again."""
        async with self._session_factory() as session:
            row = await self._get_row(session, integration_id, tenant_id)
            if not row:
                return False
            row.deleted_at = utcnow()
            await session.commit()
            logger.info(f"Soft-deleted integration {integration_id} for tenant {tenant_id}")
            return True

    async def record_sync_event(
        self,
        integration_id: UUID,
        tenant_id: UUID,
        status: str,
        started_at: dt.datetime,
        completed_at: dt.datetime,
        records_processed: int = 0,
        records_failed: int = 0,
        error_message: Optional[str] = None,
        error_details: Optional[Dict[str, Any]] = None,
    ) -> None:
        event = SyncEvent(
            integration_id=integration_id,
            tenant_id=tenant_id,
            status=status,
            records_processed=records_processed,
            records_failed=records_failed,
            started_at=started_at,
            completed_at=completed_at,
            duration_ms=int((completed_at - started_at).total_seconds() * 1000),
            error_message=error_message,
            error_details=error_details,
        )
        async with self._session_factory() as session:
            session.add(event)
            await session.commit()

    async def list_sync_events(self, integration_id: UUID, tenant_id: UUID, limit: int = 20) -> List[SyncEventRead]:
        stmt = (
            select(SyncEvent)
            .where(and_(SyncEvent.integration_id == integration_id, SyncEvent.tenant_id == tenant_id))
            .order_by(SyncEvent.started_at.desc())
            .limit(limit)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [SyncEventRead.model_validate(row) for row in result.scalars().all()]
