from __future__ import annotations

from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends

from crm_sync.api.deps import get_optional_tenant_id, get_scheduler_service
from crm_sync.schemas.integration import SyncOutcome
from crm_sync.services.scheduler_service import SchedulerService

router = APIRouter(prefix="/api/sync", tags=["Sync"])


@router.get("/status")
async def get_sync_status(
    scheduler: SchedulerService = Depends(get_scheduler_service),
) -> Dict[str, Any]:
    """Scheduler state and per-provider circuit breaker / rate limiter state."""
    return scheduler.get_sync_status()


@router.post("/pending", response_model=List[SyncOutcome])
async def process_pending_sync(
    tenant_id: Optional[UUID] = Depends(get_optional_tenant_id),
    scheduler: SchedulerService = Depends(get_scheduler_service),
) -> List[SyncOutcome]:
    """Run a pending-sync pass now, for one tenant when X-Tenant-ID is sent."""
    return await scheduler.run_once(tenant_id)


@router.post("/start")
async def start_scheduler(scheduler: SchedulerService = Depends(get_scheduler_service)) -> Dict[str, Any]:
    """Start the background scheduler service."""
    await scheduler.start()
    return {"success": True, "message": "Scheduler started"}


@router.post("/stop")
async def stop_scheduler(scheduler: SchedulerService = Depends(get_scheduler_service)) -> Dict[str, Any]:
    """Stop the background scheduler service."""
    await scheduler.stop()
    return {"success": True, "message": "Scheduler stopped"}
