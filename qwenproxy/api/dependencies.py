"""Shared dependencies for the proxy API."""

from typing import Annotated, Any

from fastapi import Depends, Request

from qwenproxy.core.errors import ServiceUnavailableError
from qwenproxy.credentials import CredentialPoolManager
from qwenproxy.services import ProxyService


def _from_state(request: Request, name: str) -> Any:
    value = getattr(request.app.state, name, None)
    if value is None:
        raise ServiceUnavailableError(f"{name} not initialized")
    return value


def get_pool(request: Request) -> CredentialPoolManager:
    """Get the credential pool manager from app state."""
    return _from_state(request, "pool")


def get_proxy_service(request: Request) -> ProxyService:
    """Get the proxy service from app state."""
    return _from_state(request, "proxy_service")


PoolDep = Annotated[CredentialPoolManager, Depends(get_pool)]
ProxyServiceDep = Annotated[ProxyService, Depends(get_proxy_service)]
