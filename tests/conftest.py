from __future__ import annotations

import asyncio
import dataclasses
import datetime as dt
import json
import uuid
from types import MappingProxyType
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional, Union
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from crm_sync.config import Settings
from crm_sync.constants import ProviderType
from crm_sync.db import create_engine, init_models
from crm_sync.errors import ValidationError
from crm_sync.schemas.integration import SyncResult
from crm_sync.services.circuit_breaker import CircuitBreaker
from crm_sync.services.credential_cipher import CredentialCipher
from crm_sync.services.crm_gateway import CRMGateway, ProviderGuard, build_provider_registry
from crm_sync.services.integration_repository import IntegrationRepository
from crm_sync.services.integration_service import IntegrationService
from crm_sync.services.metrics import MetricEvent
from crm_sync.services.rate_limiter import TokenBucket

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
NOW = dt.datetime(2026, 1, 15, 12, 0, tzinfo=dt.timezone.utc)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeClock:
    """Monotonic clock for breakers and limiters."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeWallClock:
    """Aware UTC clock for token expiry and sync timestamps."""

    def __init__(self, start: dt.datetime = NOW) -> None:
        self.now = start

    def __call__(self) -> dt.datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += dt.timedelta(**kwargs)


class RecordingSleep:
    """Stands in for asyncio.sleep; moves the given clock instead of waiting."""

    def __init__(self, clock: Optional[FakeClock] = None) -> None:
        self.calls: List[float] = []
        self.clock = clock

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if self.clock is not None:
            self.clock.advance(seconds)
        await asyncio.sleep(0)


class RecordingObserver:
    def __init__(self) -> None:
        self.events: List[MetricEvent] = []

    def record(self, event: MetricEvent) -> None:
        self.events.append(event)

    @property
    def names(self) -> List[str]:
        return [event.name for event in self.events]


Responder = Union[httpx.Response, Callable[[httpx.Request], httpx.Response]]


class FakeCRM:
    """In-process CRM provider behind httpx.MockTransport.

    Queued responses are served first; afterwards the token endpoint hands
    out fresh tokens and the sync endpoint accepts every mapping.
    """

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.token_responses: List[Responder] = []
        self.sync_responses: List[Responder] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path.endswith("/token"):
            if self.token_responses:
                return self._serve(self.token_responses.pop(0), request)
            return httpx.Response(200, json={"access_token": "fresh-access-token", "expires_in": 3600})
        if request.url.path.endswith("/sync"):
            if self.sync_responses:
                return self._serve(self.sync_responses.pop(0), request)
            return self.accept_all(request)
        return httpx.Response(404, json={"error": "not found"})

    @staticmethod
    def _serve(responder: Responder, request: httpx.Request) -> httpx.Response:
        return responder(request) if callable(responder) else responder

    @staticmethod
    def accept_all(request: httpx.Request) -> httpx.Response:
        mappings = json.loads(request.content)["mappings"]
        return httpx.Response(
            200,
            json={
                "success": [mapping["source_field"] for mapping in mappings],
                "errors": [],
                "details": {mapping["source_field"]: "upserted" for mapping in mappings},
            },
        )

    @property
    def token_requests(self) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith("/token")]

    @property
    def sync_requests(self) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith("/sync")]

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def make_guard(
    provider_type: ProviderType = ProviderType.SALESFORCE,
    clock: Optional[FakeClock] = None,
    sleep: Optional[RecordingSleep] = None,
    capacity: int = 100,
    interval: float = 60.0,
    volume_threshold: int = 5,
    error_threshold_percent: float = 50.0,
    reset_timeout: float = 30.0,
    call_timeout: float = 15.0,
) -> ProviderGuard:
    clock = clock or FakeClock()
    name = f"crm:{provider_type.value.lower()}"
    return ProviderGuard(
        provider_type=provider_type,
        circuit_breaker=CircuitBreaker(
            name,
            call_timeout=call_timeout,
            error_threshold_percent=error_threshold_percent,
            volume_threshold=volume_threshold,
            reset_timeout=reset_timeout,
            excluded=(ValidationError,),
            clock=clock,
        ),
        rate_limiter=TokenBucket(
            name,
            capacity=capacity,
            interval=interval,
            clock=clock,
            sleep=sleep or RecordingSleep(clock),
        ),
    )


def make_registry(*guards: ProviderGuard):
    return MappingProxyType({guard.provider_type: guard for guard in guards})


def make_mappings(count: int) -> List[Dict[str, Any]]:
    return [{"source_field": f"field_{i}", "target_field": f"Target_{i}__c"} for i in range(count)]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def encryption_key() -> str:
    return CredentialCipher.generate_key()


@pytest.fixture
def cipher(encryption_key: str) -> CredentialCipher:
    return CredentialCipher(encryption_key)


@pytest.fixture
def settings(encryption_key: str) -> Settings:
    return Settings(
        database_url=TEST_DATABASE_URL,
        credentials_encryption_key=encryption_key,
        scheduler_enabled=False,
    )


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """Fresh in-memory database per test."""
    test_engine = create_engine(TEST_DATABASE_URL)
    await init_models(test_engine)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest.fixture
def repository(session_factory, cipher: CredentialCipher) -> IntegrationRepository:
    return IntegrationRepository(session_factory, cipher)


@pytest.fixture
def wall_clock() -> FakeWallClock:
    return FakeWallClock()


@pytest.fixture
def fake_crm() -> FakeCRM:
    return FakeCRM()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest_asyncio.fixture
async def gateway(settings: Settings, fake_crm: FakeCRM, wall_clock, recording_sleep) -> AsyncGenerator[CRMGateway, None]:
    crm_gateway = CRMGateway(
        build_provider_registry(settings),
        fake_crm.client(),
        sleep=recording_sleep,
        clock=wall_clock,
    )
    yield crm_gateway
    await crm_gateway.aclose()


@pytest.fixture
def observer() -> RecordingObserver:
    return RecordingObserver()


@pytest.fixture
def service(repository, gateway, observer, wall_clock) -> IntegrationService:
    """Service wired to the real gateway talking to FakeCRM."""
    return IntegrationService(repository, gateway, observer=observer, clock=wall_clock)


@pytest.fixture
def mock_gateway() -> AsyncMock:
    """Gateway double: connect echoes the credentials, sync reports 10 successes."""
    gateway = AsyncMock(spec=CRMGateway)

    async def connect(provider_type, credentials, force_refresh=False):
        return credentials.model_copy()

    gateway.connect.side_effect = connect
    gateway.sync.return_value = SyncResult(success=10, failed=0, batches=1)
    gateway.status.return_value = {}
    return gateway


@pytest.fixture
def mocked_service(repository, mock_gateway, observer, wall_clock) -> IntegrationService:
    return IntegrationService(repository, mock_gateway, observer=observer, clock=wall_clock)


@pytest.fixture
def sample_tenant_id() -> uuid.UUID:
    """Generate a sample tenant ID for testing."""
    return uuid.uuid4()


@pytest.fixture
def other_tenant_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def sample_credentials() -> Dict[str, Any]:
    return {
        "client_id": "client-123",
        "client_secret": "client-secret-value",
        "access_token": "access-token-value",
        "refresh_token": "refresh-token-value",
        "token_expiry": (NOW + dt.timedelta(hours=1)).isoformat(),
        "scope": ["api", "refresh_token"],
        "instance_url": "https://acme.my.salesforce.com",
    }


@pytest.fixture
def sample_config() -> Dict[str, Any]:
    return {
        "sync_interval": 60 * 60 * 1000,
        "field_mappings": make_mappings(3),
        "webhook_url": "https://hooks.example.com/crm",
        "webhook_secret": "whsec_example",
        "custom_settings": {"region": "eu"},
    }


@pytest.fixture
def client(monkeypatch, encryption_key: str, mock_gateway: AsyncMock, observer: RecordingObserver):
    """TestClient over a fresh in-memory database and a mocked gateway."""
    from crm_sync import main
    from crm_sync.api.deps import ServiceContainer
    from crm_sync.services.scheduler_service import SchedulerService

    monkeypatch.setattr(main, "settings", dataclasses.replace(main.settings, scheduler_enabled=False))

    test_engine = create_engine(TEST_DATABASE_URL)
    repository = IntegrationRepository(
        async_sessionmaker(test_engine, expire_on_commit=False, class_=AsyncSession),
        CredentialCipher(encryption_key),
    )
    integration_service = IntegrationService(repository, mock_gateway, observer=observer, clock=FakeWallClock())
    main.app.state.services = ServiceContainer(
        gateway=mock_gateway,
        integration_service=integration_service,
        scheduler=SchedulerService(integration_service, interval=3600),
    )

    with TestClient(main.app) as test_client:
        # Tables live on the client's event loop
        test_client.portal.call(init_models, test_engine)
        yield test_client
        test_client.portal.call(test_engine.dispose)
    main.app.state.services = None
