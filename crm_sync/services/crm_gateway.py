"""Outbound gateway to the supported CRM providers.

A single gateway serves every tenant. Each provider type gets one
``ProviderGuard`` (circuit breaker + token bucket) from a registry built once
at startup, so a burst from one tenant throttles, and an outage trips, that
provider for all tenants alike.

Every outbound HTTP request takes a limiter token first and then runs through
the provider's breaker, whose call timeout bounds that single request. Nothing
bounds a whole multi-batch sync.
"""
from __future__ import annotations

import asyncio
import datetime as dt
import email.utils
import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

import httpx
from pydantic import SecretStr

from crm_sync.config import Settings
from crm_sync.constants import (
    CRM_API_VERSIONS,
    CRM_DEFAULT_BASE_URLS,
    CRM_TOKEN_ENDPOINTS,
    SYNC_BATCH_SIZE,
    TOKEN_REFRESH_SKEW,
    ProviderType,
)
from crm_sync.db import utcnow
from crm_sync.errors import CircuitOpenError, ProviderError, RateLimitExceededError, ValidationError
from crm_sync.schemas.integration import FieldMapping, OAuthCredentials, SyncResult
from crm_sync.services.circuit_breaker import CircuitBreaker
from crm_sync.services.rate_limiter import TokenBucket

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_LIFETIME = 3600


@dataclass(frozen=True)
class ProviderGuard:
    provider_type: ProviderType
    circuit_breaker: CircuitBreaker
    rate_limiter: TokenBucket


ProviderRegistry = Mapping[ProviderType, ProviderGuard]


def build_provider_registry(settings: Settings) -> ProviderRegistry:
    """One breaker and one limiter per provider type, shared across tenants."""
    guards: Dict[ProviderType, ProviderGuard] = {}
    for provider_type in ProviderType:
        name = f"crm:{provider_type.value.lower()}"
        guards[provider_type] = ProviderGuard(
            provider_type=provider_type,
            circuit_breaker=CircuitBreaker(
                name,
                call_timeout=settings.circuit_call_timeout_seconds,
                error_threshold_percent=settings.circuit_error_threshold_percent,
                rolling_window=settings.circuit_rolling_window_seconds,
                volume_threshold=settings.circuit_volume_threshold,
                reset_timeout=settings.circuit_reset_timeout_seconds,
                excluded=(ValidationError,),
            ),
            rate_limiter=TokenBucket(
                name,
                capacity=settings.rate_limit_tokens,
                interval=settings.rate_limit_interval_seconds,
            ),
        )
    return MappingProxyType(guards)


def create_http_client(settings: Settings) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=settings.http_timeout_seconds,
        headers={"User-Agent": "crm-sync/1.0", "Accept": "application/json"},
    )


def parse_retry_after(value: Optional[str], now: dt.datetime) -> Optional[float]:
    """Seconds to wait from a Retry-After header (delta-seconds or HTTP date)."""
    if value is None or not value.strip():
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = email.utils.parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=dt.timezone.utc)
    return max(0.0, (when - now).total_seconds())


def chunked(items: Sequence[FieldMapping], size: int) -> Iterator[Sequence[FieldMapping]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class CRMGateway:
    """Token refresh and batched sync against the CRM providers."""

    def __init__(
        self,
        registry: ProviderRegistry,
        client: httpx.AsyncClient,
        batch_size: int = SYNC_BATCH_SIZE,
        acquire_timeout: Optional[float] = None,
        refresh_skew: dt.timedelta = TOKEN_REFRESH_SKEW,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], dt.datetime] = utcnow,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self._registry = registry
        self._client = client
        self.batch_size = batch_size
        self.acquire_timeout = acquire_timeout
        self.refresh_skew = refresh_skew
        self._sleep = sleep
        self._clock = clock

    def guard(self, provider_type: ProviderType) -> ProviderGuard:
        try:
            return self._registry[provider_type]
        except KeyError:
            raise ValidationError(f"No gateway configured for provider {provider_type}") from None

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def connect(
        self,
        provider_type: ProviderType,
        credentials: OAuthCredentials,
        force_refresh: bool = False,
    ) -> OAuthCredentials:
        """Return credentials with a usable access token.

        Live tokens come back as a copy without any network call unless
        ``force_refresh`` asks for a live check against the token endpoint.
        The caller's object is never modified.
        """
        return await self._connect(self.guard(provider_type), credentials, force_refresh)

    async def sync(
        self,
        provider_type: ProviderType,
        credentials: OAuthCredentials,
        field_mappings: Sequence[FieldMapping],
    ) -> SyncResult:
        """Push field mappings in sequential batches.

        A failed batch is counted as failed in full and the remaining batches
        still run; once the breaker opens, the rest fail fast with
        ``CircuitOpenError`` and send nothing. Only failures before the first
        batch (token refresh, missing instance URL) make the whole call raise.
        """
        return await self._sync(self.guard(provider_type), credentials, list(field_mappings))

    def status(self) -> Dict[str, Any]:
        return {
            provider_type.value: {
                "circuit_breaker": guard.circuit_breaker.to_dict(),
                "rate_limiter": guard.rate_limiter.to_dict(),
            }
            for provider_type, guard in self._registry.items()
        }

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    async def _connect(
        self, guard: ProviderGuard, credentials: OAuthCredentials, force_refresh: bool
    ) -> OAuthCredentials:
        if not force_refresh and credentials.is_live(self._clock(), self.refresh_skew):
            return credentials.model_copy()
        return await self._refresh(guard, credentials)

    async def _refresh(self, guard: ProviderGuard, credentials: OAuthCredentials) -> OAuthCredentials:
        provider = guard.provider_type
        if credentials.refresh_token is None:
            raise ValidationError(
                f"{provider.value} access token needs a refresh but no refresh_token is configured",
                {"errors": [{"field": "refresh_token", "message": "required to renew the access token"}]},
            )

        data = {
            "grant_type": "refresh_token",
            "client_id": credentials.client_id,
            "client_secret": credentials.client_secret.get_secret_value(),
            "refresh_token": credentials.refresh_token.get_secret_value(),
        }
        response = await self._send(
            guard,
            "POST",
            CRM_TOKEN_ENDPOINTS[provider],
            data=data,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        payload = self._json(guard, response)

        access_token = payload.get("access_token")
        if not access_token:
            raise ProviderError(provider.value, "token endpoint returned no access_token")
        try:
            expires_in = int(payload.get("expires_in") or DEFAULT_TOKEN_LIFETIME)
        except (TypeError, ValueError):
            raise ProviderError(provider.value, f"invalid expires_in {payload.get('expires_in')!r}") from None

        update: Dict[str, Any] = {
            "access_token": SecretStr(access_token),
            "token_expiry": self._clock() + dt.timedelta(seconds=expires_in),
        }
        # Providers may rotate the refresh token; keep the old one otherwise
        if payload.get("refresh_token"):
            update["refresh_token"] = SecretStr(payload["refresh_token"])
        if payload.get("instance_url"):
            update["instance_url"] = payload["instance_url"]

        logger.info(f"Refreshed {provider.value} access token (expires in {expires_in}s)")
        return credentials.model_copy(update=update)

    # ------------------------------------------------------------------
    # Batch sync
    # ------------------------------------------------------------------

    def _sync_url(self, provider: ProviderType, credentials: OAuthCredentials) -> str:
        base_url = credentials.instance_url or CRM_DEFAULT_BASE_URLS.get(provider)
        if not base_url:
            raise ValidationError(
                f"{provider.value} credentials need an instance_url to sync",
                {"errors": [{"field": "instance_url", "message": "required"}]},
            )
        return f"{base_url.rstrip('/')}/api/{CRM_API_VERSIONS[provider]}/sync"

    async def _sync(
        self, guard: ProviderGuard, credentials: OAuthCredentials, field_mappings: List[FieldMapping]
    ) -> SyncResult:
        live = await self._connect(guard, credentials, force_refresh=False)
        url = self._sync_url(guard.provider_type, live)
        result = SyncResult(credentials=live)

        for index, batch in enumerate(chunked(field_mappings, self.batch_size)):
            result.batches += 1
            try:
                succeeded, errors, details = await self._push_batch(guard, url, live, batch)
            except (ProviderError, RateLimitExceededError, CircuitOpenError) as exc:
                self._record_batch_failure(guard, result, index, batch, exc)
                continue
            result.success += len(succeeded)
            result.failed += len(errors)
            result.errors.extend(errors)
            result.details.update(details)

        logger.info(
            f"{guard.provider_type.value} sync finished: {result.success} ok, "
            f"{result.failed} failed in {result.batches} batches"
        )
        return result

    async def _push_batch(
        self,
        guard: ProviderGuard,
        url: str,
        credentials: OAuthCredentials,
        batch: Sequence[FieldMapping],
    ) -> Tuple[List[Any], List[Any], Dict[str, Any]]:
        response = await self._send(
            guard,
            "POST",
            url,
            json={
                "mappings": [mapping.model_dump(mode="json") for mapping in batch],
                "options": {"upsert": True},
            },
            headers={"Authorization": f"Bearer {credentials.access_token.get_secret_value()}"},
        )
        payload = self._json(guard, response)
        succeeded = payload.get("success", [])
        errors = payload.get("errors", [])
        details = payload.get("details", {})
        if not isinstance(succeeded, list) or not isinstance(errors, list) or not isinstance(details, dict):
            raise ProviderError(guard.provider_type.value, "malformed sync response")
        return succeeded, errors, details

    def _record_batch_failure(
        self,
        guard: ProviderGuard,
        result: SyncResult,
        index: int,
        batch: Sequence[FieldMapping],
        exc: Exception,
    ) -> None:
        result.failed += len(batch)
        result.errors.append(
            {
                "batch": index,
                "size": len(batch),
                "source_fields": [mapping.source_field for mapping in batch],
                "error": str(exc),
                "type": type(exc).__name__,
                "code": getattr(exc, "provider_status", None),
            }
        )
        logger.error(f"{guard.provider_type.value} batch {index} ({len(batch)} mappings) failed: {exc}")

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _request(self, guard: ProviderGuard, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """A single HTTP exchange. 429 comes back as a response; other error statuses raise."""
        provider = guard.provider_type.value
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise ProviderError(provider, f"{method} {url} failed: {exc.__class__.__name__}: {exc}") from exc
        if response.is_error and response.status_code != 429:
            raise ProviderError(
                provider,
                f"{method} {url} failed with HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return response

    async def _send(self, guard: ProviderGuard, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """One rate-limited request through the breaker; a 429 with Retry-After is replayed once.

        The limiter wait and the Retry-After wait happen outside the breaker,
        so only the HTTP exchanges themselves are subject to its call timeout.
        """
        provider = guard.provider_type.value
        await guard.rate_limiter.acquire(timeout=self.acquire_timeout)

        response = await guard.circuit_breaker.call(self._request, guard, method, url, **kwargs)
        if response.status_code == 429:
            retry_after = parse_retry_after(response.headers.get("Retry-After"), self._clock())
            if retry_after is None:
                raise RateLimitExceededError(provider)
            logger.warning(f"{provider} answered 429 for {method} {url}, replaying once in {retry_after:.1f}s")
            await self._sleep(retry_after)
            response = await guard.circuit_breaker.call(self._request, guard, method, url, **kwargs)
            if response.status_code == 429:
                raise RateLimitExceededError(
                    provider, retry_after=parse_retry_after(response.headers.get("Retry-After"), self._clock())
                )
        return response

    def _json(self, guard: ProviderGuard, response: httpx.Response) -> Dict[str, Any]:
        try:
            payload = response.json()
        except ValueError:
            raise ProviderError(guard.provider_type.value, "response body is not JSON") from None
        if not isinstance(payload, dict):
            raise ProviderError(guard.provider_type.value, "response body is not a JSON object")
        return payload
