from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from crm_sync.config import Settings
from crm_sync.services.credential_cipher import CredentialCipher
from crm_sync.services.crm_gateway import CRMGateway, build_provider_registry, create_http_client
from crm_sync.services.integration_repository import IntegrationRepository
from crm_sync.services.integration_service import IntegrationService
from crm_sync.services.metrics import LoggingObserver
from crm_sync.services.scheduler_service import SchedulerService


@dataclass
class ServiceContainer:
    gateway: CRMGateway
    integration_service: IntegrationService
    scheduler: SchedulerService

    async def aclose(self) -> None:
        await self.scheduler.stop()
        await self.gateway.aclose()


def create_services(settings: Settings, session_factory: async_sessionmaker[AsyncSession]) -> ServiceContainer:
    """Wire the object graph once per process."""
    repository = IntegrationRepository(session_factory, CredentialCipher(settings.credentials_encryption_key))
    gateway = CRMGateway(
        build_provider_registry(settings),
        create_http_client(settings),
        batch_size=settings.sync_batch_size,
        acquire_timeout=settings.rate_limit_acquire_timeout_seconds,
    )
    integration_service = IntegrationService(repository, gateway, observer=LoggingObserver())
    scheduler = SchedulerService(integration_service, interval=settings.scheduler_interval_seconds)
    return ServiceContainer(gateway=gateway, integration_service=integration_service, scheduler=scheduler)


def get_services(request: Request) -> ServiceContainer:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise RuntimeError("Services are not initialised; the startup hook has not run")
    return services


def get_integration_service(services: ServiceContainer = Depends(get_services)) -> IntegrationService:
    return services.integration_service


def get_scheduler_service(services: ServiceContainer = Depends(get_services)) -> SchedulerService:
    return services.scheduler


async def get_tenant_id(x_tenant_id: UUID = Header(..., alias="X-Tenant-ID")) -> UUID:
    return x_tenant_id


async def get_optional_tenant_id(x_tenant_id: Optional[UUID] = Header(None, alias="X-Tenant-ID")) -> Optional[UUID]:
    return x_tenant_id
