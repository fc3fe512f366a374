from __future__ import annotations

import asyncio
import datetime as dt
import email.utils
import json
from urllib.parse import parse_qs

import httpx
import pytest

from conftest import NOW, FakeClock, FakeCRM, FakeWallClock, RecordingSleep, make_guard, make_mappings, make_registry
from crm_sync.constants import ProviderType
from crm_sync.errors import CircuitOpenError, ProviderError, RateLimitExceededError, ValidationError
from crm_sync.schemas.integration import FieldMapping
from crm_sync.services.circuit_breaker import CircuitBreaker, CircuitState
from crm_sync.services.crm_gateway import CRMGateway, ProviderGuard, build_provider_registry, parse_retry_after
from crm_sync.services.rate_limiter import TokenBucket
from crm_sync.services.validators import validate_credentials

SF = ProviderType.SALESFORCE


def _mappings(count: int):
    return [FieldMapping.model_validate(m) for m in make_mappings(count)]


def _expired(sample_credentials):
    sample_credentials["token_expiry"] = (NOW - dt.timedelta(minutes=1)).isoformat()
    return validate_credentials(sample_credentials)


class TestConnect:
    """Test OAuth token handling."""

    @pytest.mark.asyncio
    async def test_live_token_is_returned_without_network(self, gateway, fake_crm, sample_credentials):
        credentials = validate_credentials(sample_credentials)
        result = await gateway.connect(SF, credentials)
        assert result == credentials
        assert result is not credentials
        assert fake_crm.requests == []

    @pytest.mark.asyncio
    async def test_token_inside_skew_is_refreshed(self, gateway, fake_crm, sample_credentials):
        sample_credentials["token_expiry"] = (NOW + dt.timedelta(minutes=2)).isoformat()
        credentials = validate_credentials(sample_credentials)
        result = await gateway.connect(SF, credentials)
        assert result.access_token.get_secret_value() == "fresh-access-token"
        assert len(fake_crm.token_requests) == 1

    @pytest.mark.asyncio
    async def test_expired_token_is_refreshed(self, gateway, fake_crm, sample_credentials):
        credentials = _expired(sample_credentials)
        fake_crm.token_responses.append(
            httpx.Response(
                200,
                json={"access_token": "new-access", "refresh_token": "rotated-refresh", "expires_in": 7200},
            )
        )

        result = await gateway.connect(SF, credentials)

        assert result.access_token.get_secret_value() == "new-access"
        assert result.refresh_token.get_secret_value() == "rotated-refresh"
        assert result.token_expiry == NOW + dt.timedelta(seconds=7200)
        # Caller's bundle is untouched
        assert credentials.access_token.get_secret_value() == "access-token-value"
        assert credentials.refresh_token.get_secret_value() == "refresh-token-value"

        request = fake_crm.token_requests[0]
        assert str(request.url) == "https://login.salesforce.com/services/oauth2/token"
        assert request.headers["content-type"] == "application/x-www-form-urlencoded"
        form = parse_qs(request.content.decode())
        assert form["grant_type"] == ["refresh_token"]
        assert form["client_id"] == ["client-123"]
        assert form["client_secret"] == ["client-secret-value"]
        assert form["refresh_token"] == ["refresh-token-value"]

    @pytest.mark.asyncio
    async def test_refresh_keeps_refresh_token_when_not_rotated(self, gateway, sample_credentials):
        result = await gateway.connect(SF, _expired(sample_credentials))
        assert result.refresh_token.get_secret_value() == "refresh-token-value"

    @pytest.mark.asyncio
    async def test_force_refresh_on_live_token(self, gateway, fake_crm, sample_credentials):
        result = await gateway.connect(SF, validate_credentials(sample_credentials), force_refresh=True)
        assert result.access_token.get_secret_value() == "fresh-access-token"
        assert len(fake_crm.token_requests) == 1

    @pytest.mark.asyncio
    async def test_missing_refresh_token(self, gateway, fake_crm, sample_credentials):
        sample_credentials["refresh_token"] = None
        with pytest.raises(ValidationError):
            await gateway.connect(SF, _expired(sample_credentials))
        assert fake_crm.requests == []
        breaker = gateway.guard(SF).circuit_breaker
        assert breaker.error_rate() == 0.0

    @pytest.mark.asyncio
    async def test_token_endpoint_failure(self, gateway, fake_crm, sample_credentials):
        fake_crm.token_responses.append(httpx.Response(401, json={"error": "invalid_grant"}))
        with pytest.raises(ProviderError) as exc_info:
            await gateway.connect(SF, _expired(sample_credentials))
        assert exc_info.value.provider_status == 401
        # No secret ends up in the error
        assert "refresh-token-value" not in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_token_response_without_access_token(self, gateway, fake_crm, sample_credentials):
        fake_crm.token_responses.append(httpx.Response(200, json={"expires_in": 3600}))
        with pytest.raises(ProviderError):
            await gateway.connect(SF, _expired(sample_credentials))

    @pytest.mark.asyncio
    async def test_network_error_becomes_provider_error(self, gateway, fake_crm, sample_credentials):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        fake_crm.token_responses.append(refuse)
        with pytest.raises(ProviderError) as exc_info:
            await gateway.connect(SF, _expired(sample_credentials))
        assert "ConnectError" in str(exc_info.value)


class TestSync:
    """Test chunked batch sync."""

    @pytest.mark.asyncio
    async def test_batches_are_sent_sequentially(self, gateway, fake_crm, sample_credentials):
        credentials = validate_credentials(sample_credentials)
        result = await gateway.sync(SF, credentials, _mappings(250))

        assert len(fake_crm.sync_requests) == 3
        assert result.success == 250
        assert result.failed == 0
        assert result.batches == 3
        assert result.status == "success"
        assert result.details["field_0"] == "upserted"

        first = fake_crm.sync_requests[0]
        assert str(first.url) == "https://acme.my.salesforce.com/api/v53.0/sync"
        assert first.headers["authorization"] == "Bearer access-token-value"
        body = json.loads(first.content)
        assert body["options"] == {"upsert": True}
        assert len(body["mappings"]) == 100
        assert [len(json.loads(r.content)["mappings"]) for r in fake_crm.sync_requests] == [100, 100, 50]

    @pytest.mark.asyncio
    async def test_failed_batch_does_not_abort_the_rest(self, gateway, fake_crm, sample_credentials):
        fake_crm.sync_responses.extend(
            [FakeCRM.accept_all, httpx.Response(500, json={"error": "boom"}), FakeCRM.accept_all]
        )

        result = await gateway.sync(SF, validate_credentials(sample_credentials), _mappings(250))

        assert len(fake_crm.sync_requests) == 3
        assert result.failed == 100
        assert result.success == 150
        assert result.status == "partial"
        assert len(result.errors) == 1
        batch_error = result.errors[0]
        assert batch_error["batch"] == 1
        assert batch_error["size"] == 100
        assert batch_error["code"] == 500
        assert batch_error["type"] == "ProviderError"
        assert batch_error["source_fields"][0] == "field_100"

    @pytest.mark.asyncio
    async def test_provider_reported_record_errors(self, gateway, fake_crm, sample_credentials):
        fake_crm.sync_responses.append(
            httpx.Response(
                200,
                json={
                    "success": ["field_0"],
                    "errors": [{"field": "field_1", "message": "unknown target"}],
                    "details": {"field_0": "upserted"},
                },
            )
        )
        result = await gateway.sync(SF, validate_credentials(sample_credentials), _mappings(2))
        assert result.success == 1
        assert result.failed == 1
        assert result.errors == [{"field": "field_1", "message": "unknown target"}]

    @pytest.mark.asyncio
    async def test_malformed_batch_response_counts_as_failure(self, gateway, fake_crm, sample_credentials):
        fake_crm.sync_responses.append(httpx.Response(200, json={"success": "yes"}))
        result = await gateway.sync(SF, validate_credentials(sample_credentials), _mappings(3))
        assert result.failed == 3
        assert result.success == 0
        assert result.status == "failed"

    @pytest.mark.asyncio
    async def test_empty_mappings(self, gateway, fake_crm, sample_credentials):
        result = await gateway.sync(SF, validate_credentials(sample_credentials), [])
        assert result.batches == 0
        assert fake_crm.sync_requests == []

    @pytest.mark.asyncio
    async def test_sync_refreshes_first(self, gateway, fake_crm, sample_credentials):
        result = await gateway.sync(SF, _expired(sample_credentials), _mappings(1))
        assert [r.url.path for r in fake_crm.requests] == ["/services/oauth2/token", "/api/v53.0/sync"]
        assert fake_crm.sync_requests[0].headers["authorization"] == "Bearer fresh-access-token"
        assert result.credentials.access_token.get_secret_value() == "fresh-access-token"

    @pytest.mark.asyncio
    async def test_refresh_failure_fails_whole_sync(self, gateway, fake_crm, sample_credentials):
        fake_crm.token_responses.append(httpx.Response(500))
        with pytest.raises(ProviderError):
            await gateway.sync(SF, _expired(sample_credentials), _mappings(5))
        assert fake_crm.sync_requests == []

    @pytest.mark.asyncio
    async def test_default_base_url(self, gateway, fake_crm, sample_credentials):
        sample_credentials["instance_url"] = None
        await gateway.sync(ProviderType.HUBSPOT, validate_credentials(sample_credentials), _mappings(1))
        assert str(fake_crm.sync_requests[0].url) == "https://api.hubapi.com/api/v3/sync"

    @pytest.mark.asyncio
    async def test_salesforce_requires_instance_url(self, gateway, sample_credentials):
        sample_credentials["instance_url"] = None
        with pytest.raises(ValidationError):
            await gateway.sync(SF, validate_credentials(sample_credentials), _mappings(1))


class TestRetryAfter:
    """Test transport-level 429 handling."""

    @pytest.mark.asyncio
    async def test_429_is_replayed_once(self, gateway, fake_crm, recording_sleep, sample_credentials):
        fake_crm.sync_responses.append(httpx.Response(429, headers={"Retry-After": "2"}))
        result = await gateway.sync(SF, validate_credentials(sample_credentials), _mappings(3))
        assert recording_sleep.calls == [2.0]
        assert len(fake_crm.sync_requests) == 2
        assert result.success == 3
        assert result.failed == 0

    @pytest.mark.asyncio
    async def test_second_429_fails_the_batch(self, gateway, fake_crm, recording_sleep, sample_credentials):
        fake_crm.sync_responses.extend(
            [
                httpx.Response(429, headers={"Retry-After": "1"}),
                httpx.Response(429, headers={"Retry-After": "1"}),
            ]
        )
        result = await gateway.sync(SF, validate_credentials(sample_credentials), _mappings(3))
        assert len(fake_crm.sync_requests) == 2
        assert recording_sleep.calls == [1.0]
        assert result.failed == 3
        assert result.errors[0]["type"] == "RateLimitExceededError"

    @pytest.mark.asyncio
    async def test_429_without_retry_after(self, gateway, fake_crm, sample_credentials):
        fake_crm.token_responses.append(httpx.Response(429))
        with pytest.raises(RateLimitExceededError):
            await gateway.connect(SF, _expired(sample_credentials))
        assert len(fake_crm.token_requests) == 1

    @pytest.mark.asyncio
    async def test_http_date_retry_after(self, gateway, fake_crm, recording_sleep, sample_credentials):
        retry_at = email.utils.format_datetime(NOW + dt.timedelta(seconds=5), usegmt=True)
        fake_crm.token_responses.append(httpx.Response(429, headers={"Retry-After": retry_at}))
        result = await gateway.connect(SF, _expired(sample_credentials))
        assert recording_sleep.calls == [pytest.approx(5.0)]
        assert result.access_token.get_secret_value() == "fresh-access-token"

    def test_parse_retry_after(self):
        assert parse_retry_after("3", NOW) == 3.0
        assert parse_retry_after("-4", NOW) == 0.0
        assert parse_retry_after(None, NOW) is None
        assert parse_retry_after("soon", NOW) is None
        past = email.utils.format_datetime(NOW - dt.timedelta(seconds=30), usegmt=True)
        assert parse_retry_after(past, NOW) == 0.0


class TestProviderGuards:
    """Test the per-provider circuit breaker and rate limiter."""

    @pytest.mark.asyncio
    async def test_registry_has_one_guard_per_provider(self, settings):
        registry = build_provider_registry(settings)
        assert set(registry) == set(ProviderType)
        with pytest.raises(TypeError):
            registry[SF] = None

    @pytest.mark.asyncio
    async def test_circuit_opens_and_skips_network(self, fake_crm, sample_credentials):
        guard = make_guard(volume_threshold=2)
        client = fake_crm.client()
        gateway = CRMGateway(make_registry(guard), client, clock=FakeWallClock(), sleep=RecordingSleep())
        fake_crm.token_responses.extend([httpx.Response(500), httpx.Response(500)])
        credentials = _expired(sample_credentials)

        for _ in range(2):
            with pytest.raises(ProviderError):
                await gateway.connect(SF, credentials)
        assert guard.circuit_breaker.state == CircuitState.OPEN

        with pytest.raises(CircuitOpenError):
            await gateway.sync(SF, credentials, _mappings(1))
        assert len(fake_crm.requests) == 2
        await client.aclose()

    @pytest.mark.asyncio
    async def test_every_request_takes_a_token(self, fake_crm, sample_credentials):
        clock = FakeClock()
        sleep = RecordingSleep(clock)
        guard = make_guard(clock=clock, sleep=sleep, capacity=2, interval=60)
        client = fake_crm.client()
        gateway = CRMGateway(make_registry(guard), client, batch_size=1, clock=FakeWallClock())

        # token refresh + 3 batches = 4 requests on a bucket of 2
        await gateway.sync(SF, _expired(sample_credentials), _mappings(3))
        assert len(fake_crm.requests) == 4
        assert sleep.calls == [pytest.approx(30.0), pytest.approx(30.0)]
        await client.aclose()

    @pytest.mark.asyncio
    async def test_acquire_timeout_fails_batch(self, fake_crm, sample_credentials):
        guard = make_guard(capacity=1, interval=60)
        client = fake_crm.client()
        gateway = CRMGateway(make_registry(guard), client, batch_size=1, acquire_timeout=1, clock=FakeWallClock())

        result = await gateway.sync(SF, validate_credentials(sample_credentials), _mappings(2))
        assert result.success == 1
        assert result.failed == 1
        assert result.errors[0]["type"] == "RateLimitExceededError"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_limiter_is_shared_across_tenants(self, fake_crm, sample_credentials):
        """Tenant B blocks on the shared bucket instead of failing."""
        clock = FakeClock()
        sleep = RecordingSleep(clock)
        guard = make_guard(clock=clock, sleep=sleep, capacity=1, interval=60)
        client = fake_crm.client()
        gateway = CRMGateway(make_registry(guard), client, clock=FakeWallClock())

        tenant_a = validate_credentials(sample_credentials)
        tenant_b = validate_credentials({**sample_credentials, "client_id": "tenant-b", "access_token": "token-b"})

        result_a, result_b = await asyncio.gather(
            gateway.sync(SF, tenant_a, _mappings(1)),
            gateway.sync(SF, tenant_b, _mappings(1)),
        )

        assert result_a.success == 1
        assert result_b.success == 1
        assert sleep.calls == [pytest.approx(60.0)]
        assert {r.headers["authorization"] for r in fake_crm.sync_requests} == {
            "Bearer access-token-value",
            "Bearer token-b",
        }
        await client.aclose()

    def test_status_snapshot(self, settings):
        gateway = CRMGateway(build_provider_registry(settings), httpx.AsyncClient())
        status = gateway.status()
        assert status["SALESFORCE"]["circuit_breaker"]["state"] == "closed"
        assert status["HUBSPOT"]["rate_limiter"]["capacity"] == 100


class TestBreakerAroundRequests:
    """The breaker guards single requests, not whole syncs."""

    @pytest.mark.asyncio
    async def test_failed_batches_open_the_circuit(self, fake_crm, sample_credentials):
        guard = make_guard(volume_threshold=2)
        client = fake_crm.client()
        gateway = CRMGateway(make_registry(guard), client, batch_size=1, clock=FakeWallClock(), sleep=RecordingSleep())
        fake_crm.sync_responses.extend([httpx.Response(503), httpx.Response(503)])
        credentials = validate_credentials(sample_credentials)

        result = await gateway.sync(SF, credentials, _mappings(3))

        assert guard.circuit_breaker.state == CircuitState.OPEN
        assert result.failed == 3
        assert [error["type"] for error in result.errors] == ["ProviderError", "ProviderError", "CircuitOpenError"]
        assert len(fake_crm.sync_requests) == 2

        # Outage continues: later syncs send nothing
        again = await gateway.sync(SF, credentials, _mappings(3))
        assert again.failed == 3
        assert {error["type"] for error in again.errors} == {"CircuitOpenError"}
        assert len(fake_crm.sync_requests) == 2
        await client.aclose()

    @pytest.mark.asyncio
    async def test_limiter_wait_is_not_bounded_by_call_timeout(self, fake_crm, sample_credentials):
        """Waiting for tokens takes longer than the call timeout, yet every batch goes through."""
        guard = ProviderGuard(
            provider_type=SF,
            circuit_breaker=CircuitBreaker("crm:salesforce", call_timeout=0.15, excluded=(ValidationError,)),
            rate_limiter=TokenBucket("crm:salesforce", capacity=1, interval=0.2),
        )
        client = fake_crm.client()
        gateway = CRMGateway(make_registry(guard), client, batch_size=1, clock=FakeWallClock())

        result = await gateway.sync(SF, validate_credentials(sample_credentials), _mappings(4))

        assert result.success == 4
        assert result.failed == 0
        assert len(fake_crm.sync_requests) == 4
        assert guard.circuit_breaker.error_rate() == 0.0
        await client.aclose()

    @pytest.mark.asyncio
    async def test_slow_request_fails_only_its_batch(self, fake_crm, sample_credentials):
        calls = []

        async def slow_then_fast(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) == 1:
                await asyncio.sleep(0.5)
            return fake_crm.handler(request)

        guard = ProviderGuard(
            provider_type=SF,
            circuit_breaker=CircuitBreaker("crm:salesforce", call_timeout=0.1, excluded=(ValidationError,)),
            rate_limiter=TokenBucket("crm:salesforce"),
        )
        client = httpx.AsyncClient(transport=httpx.MockTransport(slow_then_fast))
        gateway = CRMGateway(make_registry(guard), client, batch_size=1, clock=FakeWallClock())

        result = await gateway.sync(SF, validate_credentials(sample_credentials), _mappings(2))

        assert result.success == 1
        assert result.failed == 1
        assert "timed out" in result.errors[0]["error"]
        assert len(calls) == 2
        await client.aclose()
