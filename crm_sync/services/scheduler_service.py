from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional
from uuid import UUID

from crm_sync.db import utcnow
from crm_sync.schemas.integration import SyncOutcome
from crm_sync.services.integration_service import IntegrationService

logger = logging.getLogger(__name__)


class SchedulerService:
    """Runs a pending-sync pass every ``interval`` seconds."""

    def __init__(self, integration_service: IntegrationService, interval: float = 60.0):
        self.integration_service = integration_service
        self.interval = interval
        self.running = False
        self.passes = 0
        self.last_run_at = None
        self.last_outcomes: List[SyncOutcome] = []
        self._passes_in_flight = 0
        self._task: Optional[asyncio.Task] = None
        self._stop_requested: Optional[asyncio.Event] = None

    async def start(self) -> None:
        """Start the scheduler loop."""
        if self.running:
            return

        self.running = True
        self._stop_requested = asyncio.Event()
        logger.info(f"Starting scheduler service (every {self.interval:.0f}s)")
        self._task = asyncio.create_task(self._run_scheduler(), name="crm_sync_scheduler")

    async def stop(self) -> None:
        """Stop the loop, letting a pass that is already running finish."""
        if not self.running:
            return

        self.running = False
        self._stop_requested.set()
        if self._task is not None:
            await self._task
            self._task = None
        logger.info("Stopped scheduler service")

    async def _run_scheduler(self) -> None:
        """Main scheduler loop."""
        while self.running:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Scheduler error: {e}")
            try:
                await asyncio.wait_for(self._stop_requested.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    async def run_once(self, tenant_id: Optional[UUID] = None) -> List[SyncOutcome]:
        """Run one pending-sync pass now."""
        self._passes_in_flight += 1
        try:
            outcomes = await self.integration_service.process_pending_sync(tenant_id)
        finally:
            self._passes_in_flight -= 1

        self.passes += 1
        self.last_run_at = utcnow()
        self.last_outcomes = outcomes
        if outcomes:
            failed = sum(1 for outcome in outcomes if not outcome.ok)
            logger.info(f"Pending sync pass finished: {len(outcomes) - failed} ok, {failed} failed")
        return outcomes

    def get_sync_status(self) -> Dict[str, Any]:
        """Scheduler state plus each provider's breaker and limiter."""
        failed = sum(1 for outcome in self.last_outcomes if not outcome.ok)
        return {
            "running": self.running,
            "pass_in_flight": self._passes_in_flight > 0,
            "interval_seconds": self.interval,
            "passes": self.passes,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_pass": {
                "total": len(self.last_outcomes),
                "ok": len(self.last_outcomes) - failed,
                "failed": failed,
            },
            "providers": self.integration_service.gateway.status(),
        }
