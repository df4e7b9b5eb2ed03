"""Bearer authentication for client requests."""

import secrets
from typing import Annotated

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from qwenproxy.config.settings import Settings
from qwenproxy.core.errors import AuthenticationError
from qwenproxy.core.logging import get_logger


logger = get_logger(__name__)

# HTTP Bearer scheme for extracting tokens
bearer_scheme = HTTPBearer(auto_error=False)


def verify_token(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
    request: Request,
) -> None:
    """Verify the client bearer token against ``security.auth_token``.

    Authentication is skipped when no token is configured.

    Raises:
        AuthenticationError: If the token is missing or wrong
    """
    settings: Settings = request.app.state.settings
    expected = settings.security.auth_token
    if expected is None:
        return

    if credentials is None:
        logger.warning("auth_token_missing", path=request.url.path)
        raise AuthenticationError("Missing authentication token")

    if not secrets.compare_digest(
        credentials.credentials.encode(), expected.get_secret_value().encode()
    ):
        logger.warning("auth_token_invalid", path=request.url.path)
        raise AuthenticationError("Invalid authentication token")
