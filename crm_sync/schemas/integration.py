from __future__ import annotations

import datetime as dt
import uuid
from typing import Any, Dict, List, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    StrictFloat,
    StrictInt,
    field_validator,
    model_validator,
)

from crm_sync.constants import IntegrationStatus, ProviderType

Numeric = Union[StrictInt, StrictFloat]

REDACTED = "**********"


class OAuthCredentials(BaseModel):
    """OAuth bundle for one provider account. Secret fields never print."""

    model_config = ConfigDict(frozen=True)

    client_id: str
    client_secret: SecretStr
    access_token: SecretStr
    refresh_token: Optional[SecretStr] = None
    token_expiry: dt.datetime
    scope: List[str] = Field(default_factory=list)
    instance_url: Optional[str] = None

    @field_validator("client_id")
    @classmethod
    def _client_id_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be empty")
        return value

    @field_validator("client_secret", "access_token")
    @classmethod
    def _secret_not_blank(cls, value: SecretStr) -> SecretStr:
        if not value.get_secret_value().strip():
            raise ValueError("must not be empty")
        return value

    @field_validator("refresh_token", mode="before")
    @classmethod
    def _blank_refresh_token_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("scope", mode="before")
    @classmethod
    def _split_scope_string(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.split()
        return value

    @field_validator("token_expiry")
    @classmethod
    def _expiry_is_utc(cls, value: dt.datetime) -> dt.datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=dt.timezone.utc)
        return value.astimezone(dt.timezone.utc)

    def is_live(self, now: dt.datetime, skew: dt.timedelta = dt.timedelta(0)) -> bool:
        """True when the access token can be used without a refresh."""
        return bool(
            self.client_id.strip()
            and self.client_secret.get_secret_value().strip()
            and self.access_token.get_secret_value().strip()
            and self.token_expiry > now + skew
        )

    def reveal(self) -> Dict[str, Any]:
        """Plain JSON-ready dict including secrets. Only the cipher should call this."""
        return {
            "client_id": self.client_id,
            "client_secret": self.client_secret.get_secret_value(),
            "access_token": self.access_token.get_secret_value(),
            "refresh_token": self.refresh_token.get_secret_value() if self.refresh_token else None,
            "token_expiry": self.token_expiry.isoformat(),
            "scope": list(self.scope),
            "instance_url": self.instance_url,
        }


class FieldMapping(BaseModel):
    source_field: str = Field(min_length=1)
    target_field: str = Field(min_length=1)
    transform: Optional[str] = None
    required: bool = False
    validation: Dict[str, Any] = Field(default_factory=dict)


class RetryPolicy(BaseModel):
    max_attempts: Numeric
    backoff_interval_ms: Numeric
    timeout_ms: Numeric


class IntegrationConfig(BaseModel):
    sync_interval: int = Field(gt=0, description="Milliseconds between syncs")
    field_mappings: List[FieldMapping]
    webhook_url: Optional[str] = None
    webhook_secret: Optional[str] = None
    custom_settings: Dict[str, Any] = Field(default_factory=dict)
    retry_policy: Optional[RetryPolicy] = None

    @model_validator(mode="after")
    def _webhook_needs_secret(self) -> "IntegrationConfig":
        if self.webhook_url and not self.webhook_secret:
            raise ValueError("webhook_secret is required when webhook_url is provided")
        return self


class IntegrationRecord(BaseModel):
    """A persisted integration with credentials already decrypted."""

    id: uuid.UUID
    tenant_id: uuid.UUID
    provider_type: ProviderType
    status: IntegrationStatus
    credentials: OAuthCredentials = Field(repr=False)
    config: IntegrationConfig
    last_sync_at: Optional[dt.datetime] = None
    sync_attempts: int = 0
    sync_errors: List[Dict[str, Any]] = Field(default_factory=list)
    credentials_updated_at: dt.datetime
    created_at: dt.datetime
    updated_at: dt.datetime
    deleted_at: Optional[dt.datetime] = None


class IntegrationPatch(BaseModel):
    """Partial update: credentials merge onto the stored bundle, config merges shallowly."""

    credentials: Optional[Dict[str, Any]] = None
    config: Optional[Dict[str, Any]] = None


class SyncResult(BaseModel):
    success: int = 0
    failed: int = 0
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    details: Dict[str, Any] = Field(default_factory=dict)
    batches: int = 0
    # Credentials the sync ran with; differ from the input when a refresh happened
    credentials: Optional[OAuthCredentials] = Field(default=None, exclude=True, repr=False)

    @property
    def status(self) -> str:
        if self.failed == 0:
            return "success"
        if self.success == 0:
            return "failed"
        return "partial"


class SyncEventRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    integration_id: uuid.UUID
    status: str
    records_processed: int
    records_failed: int
    started_at: dt.datetime
    completed_at: Optional[dt.datetime] = None
    duration_ms: Optional[int] = None
    error_message: Optional[str] = None


class SyncOutcome(BaseModel):
    """Per-integration result of a pending-sync pass."""

    integration_id: uuid.UUID
    tenant_id: uuid.UUID
    provider_type: ProviderType
    ok: bool
    result: Optional[SyncResult] = None
    error: Optional[str] = None
    error_type: Optional[str] = None


# ---------------------------------------------------------------------------
# API payloads
# ---------------------------------------------------------------------------


class IntegrationCreateRequest(BaseModel):
    provider_type: str
    credentials: Dict[str, Any]
    config: Dict[str, Any]


class IntegrationRead(BaseModel):
    id: uuid.UUID
    tenant_id: uuid.UUID
    provider_type: ProviderType
    status: IntegrationStatus
    config: Dict[str, Any]
    scope: List[str]
    instance_url: Optional[str] = None
    token_expiry: dt.datetime
    last_sync_at: Optional[dt.datetime] = None
    sync_attempts: int
    sync_errors: List[Dict[str, Any]]
    credentials_updated_at: dt.datetime
    created_at: dt.datetime
    updated_at: dt.datetime

    @classmethod
    def from_record(cls, record: IntegrationRecord) -> "IntegrationRead":
        config = record.config.model_dump(mode="json")
        if config.get("webhook_secret"):
            config["webhook_secret"] = REDACTED
        return cls(
            id=record.id,
            tenant_id=record.tenant_id,
            provider_type=record.provider_type,
            status=record.status,
            config=config,
            scope=record.credentials.scope,
            instance_url=record.credentials.instance_url,
            token_expiry=record.credentials.token_expiry,
            last_sync_at=record.last_sync_at,
            sync_attempts=record.sync_attempts,
            sync_errors=record.sync_errors,
            credentials_updated_at=record.credentials_updated_at,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )
