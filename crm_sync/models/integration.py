from __future__ import annotations

import uuid

from sqlalchemy import JSON, Column, DateTime, Enum, Index, Integer, Text, Uuid, text

from crm_sync.constants import IntegrationStatus, ProviderType
from crm_sync.db import Base, utcnow


class Integration(Base):
    __tablename__ = "integrations"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    provider_type = Column(Enum(ProviderType, name="provider_type"), nullable=False)
    status = Column(
        Enum(IntegrationStatus, name="integration_status"),
        nullable=False,
        default=IntegrationStatus.PENDING,
        index=True,
    )

    # Fernet token of the JSON credential bundle, never cleartext
    credentials = Column(Text, nullable=False)
    credentials_updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    # sync_interval, field_mappings, webhook_url/secret, custom_settings, retry_policy
    config = Column(JSON, nullable=False, default=dict)

    # Sync tracking
    last_sync_at = Column(DateTime(timezone=True), nullable=True, index=True)
    sync_attempts = Column(Integer, nullable=False, default=0)
    sync_errors = Column(JSON, nullable=False, default=list)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        # One live integration per tenant and provider; soft-deleted rows free the slot
        Index(
            "uq_integrations_tenant_provider_live",
            "tenant_id",
            "provider_type",
            unique=True,
            postgresql_where=text("deleted_at IS NULL"),
            sqlite_where=text("deleted_at IS NULL"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<Integration id={self.id} tenant_id={self.tenant_id} "
            f"provider_type={self.provider_type} status={self.status}>"
        )
