from __future__ import annotations

from typing import Any, Dict, List
from uuid import UUID

from fastapi import APIRouter, Body, Depends, Query, Response

from crm_sync.api.deps import get_integration_service, get_tenant_id
from crm_sync.schemas.integration import (
    IntegrationCreateRequest,
    IntegrationRead,
    SyncEventRead,
    SyncResult,
)
from crm_sync.services.integration_service import IntegrationService

router = APIRouter(prefix="/api/integrations", tags=["Integrations"])


@router.post("", response_model=IntegrationRead, status_code=201)
async def create_integration(
    request: IntegrationCreateRequest,
    tenant_id: UUID = Depends(get_tenant_id),
    service: IntegrationService = Depends(get_integration_service),
) -> IntegrationRead:
    """Connect a CRM account for the calling tenant."""
    record = await service.create_integration(
        tenant_id, request.provider_type, request.credentials, request.config
    )
    return IntegrationRead.from_record(record)


@router.get("", response_model=List[IntegrationRead])
async def list_integrations(
    tenant_id: UUID = Depends(get_tenant_id),
    service: IntegrationService = Depends(get_integration_service),
) -> List[IntegrationRead]:
    records = await service.list_integrations(tenant_id)
    return [IntegrationRead.from_record(record) for record in records]


@router.get("/{integration_id}", response_model=IntegrationRead)
async def get_integration(
    integration_id: UUID,
    tenant_id: UUID = Depends(get_tenant_id),
    service: IntegrationService = Depends(get_integration_service),
) -> IntegrationRead:
    return IntegrationRead.from_record(await service.get_integration(integration_id, tenant_id))


@router.patch("/{integration_id}", response_model=IntegrationRead)
async def update_integration(
    integration_id: UUID,
    patch: Dict[str, Any] = Body(...),
    tenant_id: UUID = Depends(get_tenant_id),
    service: IntegrationService = Depends(get_integration_service),
) -> IntegrationRead:
    """Merge new credentials and/or config onto an integration."""
    record = await service.update_integration(integration_id, tenant_id, patch)
    return IntegrationRead.from_record(record)


@router.delete("/{integration_id}", status_code=204)
async def delete_integration(
    integration_id: UUID,
    tenant_id: UUID = Depends(get_tenant_id),
    service: IntegrationService = Depends(get_integration_service),
) -> Response:
    await service.delete_integration(integration_id, tenant_id)
    return Response(status_code=204)


@router.post("/{integration_id}/deactivate", response_model=IntegrationRead)
async def deactivate_integration(
    integration_id: UUID,
    tenant_id: UUID = Depends(get_tenant_id),
    service: IntegrationService = Depends(get_integration_service),
) -> IntegrationRead:
    return IntegrationRead.from_record(await service.deactivate_integration(integration_id, tenant_id))


@router.post("/{integration_id}/sync", response_model=SyncResult)
async def sync_integration(
    integration_id: UUID,
    tenant_id: UUID = Depends(get_tenant_id),
    service: IntegrationService = Depends(get_integration_service),
) -> SyncResult:
    """Run a sync now; failures come back as error responses after the status is stored."""
    return await service.sync_integration(integration_id, tenant_id)


@router.get("/{integration_id}/sync-events", response_model=List[SyncEventRead])
async def list_sync_events(
    integration_id: UUID,
    limit: int = Query(20, ge=1, le=100, description="Number of events to return"),
    tenant_id: UUID = Depends(get_tenant_id),
    service: IntegrationService = Depends(get_integration_service),
) -> List[SyncEventRead]:
    """Most recent sync attempts, newest first."""
    return await service.list_sync_events(integration_id, tenant_id, limit=limit)
