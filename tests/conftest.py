from __future__ import annotations

from typing import Callable

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from src.booksphere.config import AppConfig, PipelineSettings, load_config
from src.booksphere.cataloging.cataloging_state_machine import CatalogingStateMachine
from src.booksphere.dependencies import PipelineServices, build_services, include_routers
from src.booksphere.outbox.outbox_dispatcher import DispatcherPolicy, OutboxDispatcher
from src.booksphere.outbox.outbox_locks import NamedLockManager
from src.booksphere.outbox.outbox_rate_limit import TenantRateLimiter
from src.booksphere.outbox.outbox_repository import OutboxRepository
from src.booksphere.outbox.outbox_writer import OutboxWriter
from tests.mocks.clock import FakeClock
from tests.mocks.extraction import FakeExtractionClient
from tests.mocks.samples import START
from tests.mocks.transports import RecordingTransport


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(START)


@pytest.fixture
def settings(tmp_path) -> PipelineSettings:
    return PipelineSettings(
        database_url=f"sqlite:///{tmp_path / 'booksphere.db'}",
        gemini_api_key=None,
        image_storage_root=str(tmp_path / "media"),
        run_background_workers=False,
    )


@pytest.fixture
def config(settings: PipelineSettings) -> AppConfig:
    cfg = load_config(settings)
    yield cfg
    cfg.engine.dispose()


@pytest.fixture
def session_factory(config: AppConfig):
    return config.session_factory


@pytest.fixture
def writer(clock: FakeClock) -> OutboxWriter:
    return OutboxWriter(clock=clock)


@pytest.fixture
def state_machine(session_factory, writer: OutboxWriter, clock: FakeClock) -> CatalogingStateMachine:
    return CatalogingStateMachine(session_factory, writer=writer, clock=clock)


@pytest.fixture
def outbox_repo(session_factory) -> OutboxRepository:
    return OutboxRepository(session_factory)


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def make_dispatcher(outbox_repo: OutboxRepository, session_factory, clock: FakeClock) -> Callable[..., OutboxDispatcher]:
    """Build dispatchers sharing the database; each has its own lock owner."""

    def _make(
        transport,
        *,
        batch_size: int = 100,
        rate_limit: int = 1000,
        max_attempts: int = 3,
        owner: str | None = None,
    ) -> OutboxDispatcher:
        return OutboxDispatcher(
            repository=outbox_repo,
            transport=transport,
            locks=NamedLockManager(session_factory, ttl_seconds=30, owner=owner, clock=clock),
            rate_limiter=TenantRateLimiter(outbox_repo, limit_per_minute=rate_limit, clock=clock),
            policy=DispatcherPolicy(
                batch_size=batch_size,
                max_delivery_attempts=max_attempts,
                poll_interval_min=0.01,
                poll_interval_max=0.05,
            ),
            clock=clock,
        )

    return _make


@pytest.fixture
def extraction_client() -> FakeExtractionClient:
    return FakeExtractionClient()


@pytest.fixture
def api_services(config: AppConfig, extraction_client: FakeExtractionClient, clock: FakeClock) -> PipelineServices:
    return build_services(config, extraction_client=extraction_client, clock=clock)


@pytest.fixture
def api_client(config: AppConfig, api_services: PipelineServices) -> TestClient:
    """Client for an app wired like production, minus the background tasks."""

    app = FastAPI()
    include_routers(app, config, api_services)
    return TestClient(app)
