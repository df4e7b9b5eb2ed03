"""Shared test fixtures for the qwenproxy test suite.

External HTTP is mocked with ``pytest_httpx``; the FastAPI app runs
in-process over ``httpx.ASGITransport`` with its lifespan started.
"""

from collections.abc import AsyncGenerator, Callable
from datetime import UTC, datetime, timedelta

import httpx
import pytest
from fastapi import FastAPI

from qwenproxy.api.app import create_app
from qwenproxy.config.settings import (
    SecuritySettings,
    Settings,
    StorageSettings,
    UploadSettings,
    UpstreamSettings,
)
from qwenproxy.core.logging import setup_logging
from qwenproxy.credentials import CredentialPoolManager, MemoryCredentialStore

from tests.fixtures.upstream_api import TOKEN, UPSTREAM_BASE


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest with custom settings."""
    setup_logging(json_logs=False, log_level_name="DEBUG")


class FakeClock:
    """Deterministic clock advancing one second per call when ``step`` is set."""

    def __init__(self, start: datetime | None = None, step: float = 0.0) -> None:
        self.now = start or datetime(2024, 1, 1, tzinfo=UTC)
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + timedelta(seconds=self.step)
        return current


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def pool(fake_clock: FakeClock) -> CredentialPoolManager:
    return CredentialPoolManager(MemoryCredentialStore(), clock=fake_clock)


@pytest.fixture
def upstream_settings() -> UpstreamSettings:
    return UpstreamSettings(base_url=UPSTREAM_BASE)


@pytest.fixture
def upload_settings() -> UploadSettings:
    return UploadSettings()


@pytest.fixture
def make_settings() -> Callable[..., Settings]:
    """Factory for isolated settings using the memory store."""

    def _make(
        api_keys: str = TOKEN,
        ssxmod_itna: str = "",
        auth_token: str | None = None,
        **upstream: object,
    ) -> Settings:
        return Settings(
            storage=StorageSettings(backend="memory"),
            security=SecuritySettings(auth_token=auth_token),
            upstream=UpstreamSettings(
                base_url=UPSTREAM_BASE,
                api_keys=api_keys,
                ssxmod_itna=ssxmod_itna,
                **upstream,
            ),
        )

    return _make


@pytest.fixture
def settings(make_settings: Callable[..., Settings]) -> Settings:
    return make_settings()


@pytest.fixture
async def app(settings: Settings) -> AsyncGenerator[FastAPI, None]:
    application = create_app(settings)
    async with application.router.lifespan_context(application):
        yield application


@pytest.fixture
async def client(app: FastAPI) -> AsyncGenerator[httpx.AsyncClient, None]:
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(
        transport=transport, base_url="http://testserver"
    ) as c:
        yield c
