"""Credential pool administration endpoints."""

from typing import Any

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel, Field

from qwenproxy.api.dependencies import PoolDep
from qwenproxy.api.middleware.auth import verify_token
from qwenproxy.core.errors import NotFoundError
from qwenproxy.core.logging import get_logger
from qwenproxy.credentials import CredentialKind, ImportResult, import_cookie_headers


router = APIRouter(dependencies=[Depends(verify_token)])
logger = get_logger(__name__)


class ImportCookiesRequest(BaseModel):
    """Raw browser cookie headers to harvest credentials from."""

    cookies: list[str] = Field(..., description="One Cookie header per entry")


class ImportCookiesResponse(BaseModel):
    added: ImportResult


class PurgeResponse(BaseModel):
    removed: dict[str, int]


@router.post("/credentials/import")
async def import_credentials(
    body: ImportCookiesRequest, pool: PoolDep
) -> ImportCookiesResponse:
    result = await import_cookie_headers(pool, body.cookies)
    return ImportCookiesResponse(added=result)


@router.get("/credentials")
async def list_credentials(pool: PoolDep) -> dict[str, Any]:
    """Masked view of both pools with valid/invalid totals."""
    pools: dict[str, Any] = {}
    for kind in CredentialKind:
        snapshots = await pool.snapshot(kind)
        counts = await pool.counts(kind)
        pools[kind.value] = {
            "credentials": [s.model_dump(mode="json") for s in snapshots],
            **counts.model_dump(),
        }
    return pools


@router.post("/credentials/purge")
async def purge_credentials(pool: PoolDep) -> PurgeResponse:
    removed = {kind.value: await pool.purge_invalid(kind) for kind in CredentialKind}
    return PurgeResponse(removed=removed)


@router.delete(
    "/credentials/{kind}/{masked_value}", status_code=status.HTTP_204_NO_CONTENT
)
async def delete_credential(
    kind: CredentialKind, masked_value: str, pool: PoolDep
) -> Response:
    """Delete one invalid credential by its masked display value."""
    if not await pool.delete_invalid(kind, masked_value):
        raise NotFoundError(
            f"No invalid {kind.value} credential matches {masked_value}"
        )
    return Response(status_code=status.HTTP_204_NO_CONTENT)
