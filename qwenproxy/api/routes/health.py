"""Service banner and health endpoints."""

from typing import Any

from fastapi import APIRouter, Response

from qwenproxy import __version__
from qwenproxy.api.dependencies import PoolDep
from qwenproxy.core.logging import get_logger
from qwenproxy.credentials import CredentialKind


router = APIRouter()
logger = get_logger(__name__)


@router.get("/")
async def root() -> dict[str, Any]:
    return {
        "service": "qwenproxy",
        "version": __version__,
        "endpoints": {
            "chat": "/v1/chat/completions",
            "models": "/v1/models",
            "health": "/health",
            "admin": "/admin/credentials",
        },
    }


@router.get("/health")
async def health_check(response: Response, pool: PoolDep) -> dict[str, Any]:
    """Liveness check with the size of each credential pool.

    Reports ``warn`` when no valid primary token is pooled, since every
    proxied request would then fail with 503.
    """
    response.headers["Cache-Control"] = "no-cache, no-store, must-revalidate"

    pools = {kind.value: await pool.counts(kind) for kind in CredentialKind}
    status = "pass" if pools[CredentialKind.API_KEY.value].valid else "warn"

    logger.debug("health_check_request", status=status)

    return {
        "status": status,
        "version": __version__,
        "pools": {name: counts.model_dump() for name, counts in pools.items()},
    }
