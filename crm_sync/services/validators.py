"""Structural checks for integration config and credentials.

Pure and synchronous: nothing here touches the network or the database, so
callers run these before any provider or persistence work.
"""
from __future__ import annotations

from typing import Any, Dict, List, Mapping, Type, TypeVar

import pydantic
from pydantic import BaseModel

from crm_sync.constants import ProviderType
from crm_sync.errors import ValidationError
from crm_sync.schemas.integration import IntegrationConfig, IntegrationPatch, OAuthCredentials

M = TypeVar("M", bound=BaseModel)


def _field_errors(exc: pydantic.ValidationError) -> List[Dict[str, Any]]:
    # Drop "input" so rejected secrets never end up in error payloads or logs
    return [
        {"field": ".".join(str(part) for part in err["loc"]) or "__root__", "message": err["msg"]}
        for err in exc.errors()
    ]


def _parse(model: Type[M], data: Any, what: str) -> M:
    if isinstance(data, model):
        return data
    if not isinstance(data, Mapping):
        raise ValidationError(f"{what} must be an object", {"errors": []})
    try:
        return model.model_validate(dict(data))
    except pydantic.ValidationError as exc:
        errors = _field_errors(exc)
        summary = "; ".join(f"{e['field']}: {e['message']}" for e in errors)
        raise ValidationError(f"Invalid {what}: {summary}", {"errors": errors}) from None


def validate_config(config: Any) -> IntegrationConfig:
    """Check sync interval, field mappings, webhook secret and retry policy."""
    return _parse(IntegrationConfig, config, "config")


def validate_credentials(credentials: Any) -> OAuthCredentials:
    """Check that client id/secret, access token and token expiry are present.

    An expiry in the past is accepted; the gateway refreshes such tokens.
    """
    return _parse(OAuthCredentials, credentials, "credentials")


def parse_provider_type(value: Any) -> ProviderType:
    if isinstance(value, ProviderType):
        return value
    try:
        return ProviderType(str(value).upper())
    except ValueError:
        supported = ", ".join(p.value for p in ProviderType)
        raise ValidationError(
            f"Unsupported provider type {value!r} (expected one of {supported})",
            {"errors": [{"field": "provider_type", "message": "unsupported"}]},
        ) from None


def validate_patch(patch: Any) -> IntegrationPatch:
    return _parse(IntegrationPatch, patch, "update")
