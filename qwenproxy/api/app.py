"""FastAPI application factory for the Qwen proxy."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from qwenproxy import __version__
from qwenproxy.api.middleware.errors import setup_error_handlers
from qwenproxy.api.middleware.request_id import RequestIDMiddleware
from qwenproxy.api.routes.admin import router as admin_router
from qwenproxy.api.routes.chat import router as chat_router
from qwenproxy.api.routes.health import router as health_router
from qwenproxy.config.settings import Settings, get_settings
from qwenproxy.core.http_client import HTTPClientFactory
from qwenproxy.core.logging import get_logger
from qwenproxy.credentials import (
    CredentialKind,
    CredentialPoolManager,
    CredentialStore,
    JsonFileCredentialStore,
    MemoryCredentialStore,
)
from qwenproxy.services import AssetUploader, ProxyService, RequestTransformer


logger = get_logger(__name__)


def create_credential_store(settings: Settings) -> CredentialStore:
    """Build the configured credential store backend."""
    if settings.storage.backend == "memory":
        return MemoryCredentialStore()
    return JsonFileCredentialStore(settings.storage.path.expanduser())


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Wire the pool, HTTP client and proxy service onto ``app.state``."""
    settings: Settings = app.state.settings

    logger.info(
        "server_starting",
        version=__version__,
        host=settings.server.host,
        port=settings.server.port,
        upstream=settings.upstream.base_url,
        category="lifecycle",
    )
    if settings.security.auth_token is None:
        logger.warning(
            "client_auth_disabled",
            message="No security.auth_token configured, the proxy accepts any client",
            category="lifecycle",
        )

    store = create_credential_store(settings)
    pool = CredentialPoolManager(store)
    seeded_keys = await pool.seed(
        CredentialKind.API_KEY, settings.upstream.api_key_list
    )
    seeded_cookies = await pool.seed(
        CredentialKind.SSXMOD_ITNA, settings.upstream.ssxmod_itna_list
    )
    logger.info(
        "credential_store_ready",
        location=store.get_location(),
        seeded_api_keys=seeded_keys,
        seeded_ssxmod_itna=seeded_cookies,
        category="lifecycle",
    )

    client = HTTPClientFactory.create_client(settings=settings)
    uploader = AssetUploader(client, settings.upstream, settings.upload)
    transformer = RequestTransformer(uploader, settings.upstream.default_model)

    app.state.pool = pool
    app.state.http_client = client
    app.state.proxy_service = ProxyService(
        pool, client, transformer, settings.upstream
    )

    try:
        yield
    finally:
        await client.aclose()
        await store.close()
        logger.info("server_stopped", category="lifecycle")


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Settings to use; the cached global settings when omitted
    """
    if settings is None:
        settings = get_settings()

    app = FastAPI(
        title="Qwen Proxy",
        description="OpenAI-compatible proxy in front of the Qwen chat service",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestIDMiddleware)

    setup_error_handlers(app)

    app.include_router(health_router, tags=["health"])
    app.include_router(chat_router, prefix="/v1", tags=["openai"])
    app.include_router(admin_router, prefix="/admin", tags=["admin"])

    return app
