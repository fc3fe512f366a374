from __future__ import annotations

import uuid

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text, Uuid

from crm_sync.db import Base, utcnow


class SyncEvent(Base):
    """One row per sync attempt against a provider."""

    __tablename__ = "sync_events"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    integration_id = Column(Uuid(as_uuid=True), nullable=False, index=True)

    status = Column(String, nullable=False)  # 'success', 'partial', 'failed'

    # Record counts reported by the provider
    records_processed = Column(Integer, nullable=False, default=0)
    records_failed = Column(Integer, nullable=False, default=0)

    # Timing
    started_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    duration_ms = Column(Integer, nullable=True)

    # Error tracking
    error_message = Column(Text, nullable=True)
    error_details = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
